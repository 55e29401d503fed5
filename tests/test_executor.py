"""Tests for the HTTP step executor using httpx.MockTransport."""

import asyncio
import gzip
import json
from typing import Callable, List

import httpx
import pytest

from flowrunner.config import EngineSettings, FlowConfig, TestStep
from flowrunner.context import ExecutionContext
from flowrunner.executor import DEFAULT_HEADERS, StepExecutor
from flowrunner.types import CancelSignal, StepStatus


def make_executor(handler: Callable, **settings) -> StepExecutor:
    return StepExecutor(EngineSettings(**settings), transport=httpx.MockTransport(handler))


class Recorder:
    """Handler that records requests and returns a fixed response."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response


class TestRequestBuilding:
    """Tests for URL, header and body construction."""

    @pytest.mark.asyncio
    async def test_base_url_join_and_interpolation(self) -> None:
        recorder = Recorder(httpx.Response(200, json={"ok": True}))
        context = ExecutionContext({"id": 42})
        step = TestStep(name="Get {{id}}", url="/users/{{id}}")
        async with make_executor(recorder) as executor:
            result = await executor.execute(
                step, context, FlowConfig(base_url="https://api.example.com/")
            )

        assert result.status == StepStatus.PASSED
        assert result.name == "Get 42"
        assert str(recorder.requests[0].url) == "https://api.example.com/users/42"
        assert result.request.url == "https://api.example.com/users/42"

    @pytest.mark.asyncio
    async def test_absolute_url_ignores_base(self) -> None:
        recorder = Recorder(httpx.Response(200))
        step = TestStep(name="abs", url="https://other.example.com/x")
        async with make_executor(recorder) as executor:
            await executor.execute(step, ExecutionContext(), FlowConfig(base_url="https://a"))
        assert recorder.requests[0].url.host == "other.example.com"

    @pytest.mark.asyncio
    async def test_get_never_sends_body_or_content_type(self) -> None:
        """GET drops the body and any Content-Type header."""
        recorder = Recorder(httpx.Response(200))
        step = TestStep(
            name="get",
            url="https://x.test/a",
            headers={"content-type": "application/json"},
            body={"ignored": True},
        )
        async with make_executor(recorder) as executor:
            result = await executor.execute(step, ExecutionContext(), FlowConfig())

        sent = recorder.requests[0]
        assert sent.content == b""
        assert "content-type" not in sent.headers
        assert result.request.body is None

    @pytest.mark.asyncio
    async def test_post_json_body(self) -> None:
        """Object bodies are interpolated, JSON encoded and typed."""
        recorder = Recorder(httpx.Response(201))
        context = ExecutionContext({"user": "demo"})
        step = TestStep(name="post", method="POST", url="https://x.test/a", body={"user": "{{user}}"})
        async with make_executor(recorder) as executor:
            await executor.execute(step, context, FlowConfig())

        sent = recorder.requests[0]
        assert json.loads(sent.content) == {"user": "demo"}
        assert sent.headers["content-type"] == "application/json"

    @pytest.mark.asyncio
    async def test_header_precedence_and_defaults(self) -> None:
        """Step headers override config headers; defaults fill the rest."""
        recorder = Recorder(httpx.Response(200))
        context = ExecutionContext({"token": "t1"})
        config = FlowConfig(headers={"Authorization": "Bearer {{token}}", "X-Env": "config"})
        step = TestStep(
            name="h",
            url="https://x.test/a",
            headers={"x-env": "step", "User-Agent": "custom"},
        )
        async with make_executor(recorder) as executor:
            result = await executor.execute(step, context, config)

        sent = recorder.requests[0]
        assert sent.headers["authorization"] == "Bearer t1"
        assert sent.headers["x-env"] == "step"
        assert sent.headers["user-agent"] == "custom"
        assert sent.headers["accept-language"] == DEFAULT_HEADERS["Accept-Language"]
        assert "X-Env" not in result.request.headers


class TestResponses:
    """Tests for response decoding and verification."""

    @pytest.mark.asyncio
    async def test_json_response_is_parsed_and_pretty_printed(self) -> None:
        recorder = Recorder(httpx.Response(200, json={"id": 1, "tags": ["a"]}))
        async with make_executor(recorder) as executor:
            result = await executor.execute(
                TestStep(name="j", url="https://x.test/a"), ExecutionContext(), FlowConfig()
            )
        assert result.response.data == {"id": 1, "tags": ["a"]}
        assert result.response.body == json.dumps({"id": 1, "tags": ["a"]}, indent=2)

    @pytest.mark.asyncio
    async def test_gzip_response_is_inflated(self) -> None:
        payload = gzip.compress(b'{"compressed": true}')
        recorder = Recorder(
            httpx.Response(
                200,
                headers={"content-encoding": "gzip", "content-type": "application/json"},
                content=payload,
            )
        )
        async with make_executor(recorder) as executor:
            result = await executor.execute(
                TestStep(name="gz", url="https://x.test/a"), ExecutionContext(), FlowConfig()
            )
        assert result.response.data == {"compressed": True}

    @pytest.mark.asyncio
    async def test_text_response(self) -> None:
        recorder = Recorder(httpx.Response(200, text="pong"))
        async with make_executor(recorder) as executor:
            result = await executor.execute(
                TestStep(name="t", url="https://x.test/a"), ExecutionContext(), FlowConfig()
            )
        assert result.response.body == "pong"
        assert result.response.data == "pong"

    @pytest.mark.asyncio
    async def test_status_mismatch_fails_with_snapshots(self) -> None:
        """A 404 against verify.status 200 fails but keeps the response."""
        recorder = Recorder(httpx.Response(404, json={"error": "missing"}))
        step = TestStep(name="v", url="https://x.test/a", verify={"status": 200})
        async with make_executor(recorder) as executor:
            result = await executor.execute(step, ExecutionContext(), FlowConfig())

        assert result.status == StepStatus.FAILED
        assert result.error == "Verification failed: expected status 200, got 404"
        assert result.response.status == 404
        assert result.request is not None

    @pytest.mark.asyncio
    async def test_body_verification_with_variables(self) -> None:
        recorder = Recorder(httpx.Response(200, json={"user": {"id": 7, "active": True}}))
        context = ExecutionContext({"expectedId": 7})
        step = TestStep(
            name="v",
            url="https://x.test/a",
            verify={"status": "200", "body.user.id": "{{expectedId}}", "body.user.active": "true"},
        )
        async with make_executor(recorder) as executor:
            result = await executor.execute(step, context, FlowConfig())
        assert result.status == StepStatus.PASSED

    @pytest.mark.asyncio
    async def test_body_verification_missing_path(self) -> None:
        recorder = Recorder(httpx.Response(200, json={}))
        step = TestStep(name="v", url="https://x.test/a", verify={"body.user.id": 7})
        async with make_executor(recorder) as executor:
            result = await executor.execute(step, ExecutionContext(), FlowConfig())
        assert result.status == StepStatus.FAILED
        assert result.error == "Verification failed for body.user.id: expected 7, got undefined"

    @pytest.mark.asyncio
    async def test_invalid_response_time_limit(self) -> None:
        recorder = Recorder(httpx.Response(200))
        step = TestStep(name="v", url="https://x.test/a", verify={"responseTime": "fast"})
        async with make_executor(recorder) as executor:
            result = await executor.execute(step, ExecutionContext(), FlowConfig())
        assert result.status == StepStatus.FAILED
        assert result.error == 'Invalid responseTime limit: "fast"'

    @pytest.mark.asyncio
    async def test_extract_runs_after_successful_verify(self) -> None:
        recorder = Recorder(
            httpx.Response(200, json={"token": "abc"}, headers={"X-Trace": "t-1"})
        )
        context = ExecutionContext()
        step = TestStep(
            name="login",
            url="https://x.test/a",
            extract={"token": "body.token", "trace": "headers.x-trace", "code": "status"},
        )
        async with make_executor(recorder) as executor:
            await executor.execute(step, context, FlowConfig())
        assert context.variables == {"token": "abc", "trace": "t-1", "code": 200}

    @pytest.mark.asyncio
    async def test_failed_verify_does_not_extract(self) -> None:
        recorder = Recorder(httpx.Response(500, json={"token": "abc"}))
        context = ExecutionContext()
        step = TestStep(
            name="login",
            url="https://x.test/a",
            verify={"status": 200},
            extract={"token": "body.token"},
        )
        async with make_executor(recorder) as executor:
            await executor.execute(step, context, FlowConfig())
        assert context.variables == {}


class TestFailuresAndCancellation:
    """Tests for network errors, timeouts and cancellation."""

    @pytest.mark.asyncio
    async def test_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with make_executor(handler) as executor:
            result = await executor.execute(
                TestStep(name="n", url="https://x.test/a"), ExecutionContext(), FlowConfig()
            )
        assert result.status == StepStatus.FAILED
        assert result.error == "Network error: connection refused"
        assert result.response is None

    @pytest.mark.asyncio
    async def test_timeout_from_flow_config(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(2)
            return httpx.Response(200)

        async with make_executor(handler) as executor:
            result = await executor.execute(
                TestStep(name="slow", url="https://x.test/a"),
                ExecutionContext(),
                FlowConfig(timeout=50),
            )
        assert result.status == StepStatus.FAILED
        assert result.error == "Timeout after 50ms"

    @pytest.mark.asyncio
    async def test_cancel_during_request(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(2)
            return httpx.Response(200)

        cancel = CancelSignal()
        asyncio.get_running_loop().call_later(0.05, cancel.cancel)
        async with make_executor(handler) as executor:
            result = await executor.execute(
                TestStep(name="slow", url="https://x.test/a"),
                ExecutionContext(),
                FlowConfig(),
                cancel=cancel,
            )
        assert result.status == StepStatus.CANCELLED
        assert result.error == "Cancelled by user"

    @pytest.mark.asyncio
    async def test_already_cancelled_never_sends(self) -> None:
        recorder = Recorder(httpx.Response(200))
        cancel = CancelSignal()
        cancel.cancel()
        async with make_executor(recorder) as executor:
            result = await executor.execute(
                TestStep(name="x", url="https://x.test/a"),
                ExecutionContext(),
                FlowConfig(),
                cancel=cancel,
            )
        assert result.status == StepStatus.CANCELLED
        assert recorder.requests == []
