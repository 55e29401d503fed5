"""HTTP step executor.

Turns one flow step into a request/response/verify/extract cycle using
httpx. The request races the run's cancel signal and the step timeout;
whichever fires first aborts it.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, Optional, Tuple

import httpx

from .config import EngineSettings, FlowConfig, TestStep
from .context import MISSING, ExecutionContext, get_value_by_path, loose_equals, stringify
from .errors import (
    RunCancelledError,
    StepExecutionError,
    StepNetworkError,
    StepTimeoutError,
    VerificationFailure,
)
from .types import CancelSignal, RequestSnapshot, ResponseSnapshot, StepResult, StepStatus

# Methods that never carry a body or a Content-Type
BODYLESS_METHODS = ("GET", "HEAD")

# Filled in for any header the flow does not set. Targets behind
# bot-detection middleware reject requests without browser-like headers.
DEFAULT_HEADERS: Dict[str, str] = {
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
    "Cache-Control": "no-cache",
    "Sec-Fetch-Mode": "cors",
    "Sec-Fetch-Site": "cross-site",
    "Sec-Fetch-Dest": "empty",
    "Sec-Fetch-User": "?1",
    "Sec-CH-UA": '"Chromium";v="122", "Not(A:Brand";v="8", "Google Chrome";v="122"',
    "Sec-CH-UA-Mobile": "?0",
    "Sec-CH-UA-Platform": '"macOS"',
    "Sec-CH-UA-Platform-Version": '"14.1.0"',
    "Sec-CH-UA-Arch": '"x86"',
    "Sec-CH-UA-Bitness": '"64"',
    "Sec-CH-UA-Full-Version": '"122.0.0.0"',
    "Sec-CH-UA-Full-Version-List": (
        '"Chromium";v="122.0.6261.128", "Not(A:Brand";v="8.0.0.0", '
        '"Google Chrome";v="122.0.6261.128"'
    ),
    "Sec-CH-UA-Model": '""',
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
    ),
}


def _has_header(headers: Dict[str, str], name: str) -> bool:
    lowered = name.lower()
    return any(key.lower() == lowered for key in headers)


def _set_header(headers: Dict[str, str], name: str, value: str) -> None:
    """Set a header, replacing any existing key that differs only in case."""
    lowered = name.lower()
    for key in [k for k in headers if k.lower() == lowered]:
        del headers[key]
    headers[name] = value


def _describe(value: Any) -> str:
    """Render a value for a verification message."""
    if value is MISSING:
        return "undefined"
    return json.dumps(value, ensure_ascii=False, default=str)


class StepExecutor:
    """Executes HTTP action steps.

    Use as an async context manager so the underlying client is closed:

        async with StepExecutor(settings) as executor:
            result = await executor.execute(step, context, config)
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the executor.

        Args:
            settings: Engine settings (default timeout)
            transport: Optional httpx transport (e.g. httpx.MockTransport)
        """
        self.settings = settings or EngineSettings()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "StepExecutor":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self._transport, follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def execute(
        self,
        step: TestStep,
        context: ExecutionContext,
        config: FlowConfig,
        depth: int = 0,
        cancel: Optional[CancelSignal] = None,
        file_id: Optional[str] = None,
        local_index: Optional[int] = None,
    ) -> StepResult:
        """Execute one action step.

        Args:
            step: The step to run (not yet interpolated)
            context: Run environment; extraction writes into it
            config: Effective flow config (base URL, headers, timeout)
            depth: Nesting depth for display
            cancel: Run-level cancel signal
            file_id: File the step belongs to
            local_index: Index of the step within that file

        Returns:
            StepResult with status passed, failed or cancelled
        """
        started = time.time()
        result = StepResult(
            name=context.interpolate(step.name),
            status=StepStatus.RUNNING,
            started_at=started,
            depth=depth,
            file_id=file_id,
            local_index=local_index,
        )

        if cancel is not None and cancel.aborted:
            return self._settle(result, StepStatus.CANCELLED, str(RunCancelledError()))

        method = context.interpolate(step.method).upper()
        base_url = context.interpolate(config.base_url) if config.base_url else None
        url = self._build_url(context.interpolate(step.url or ""), base_url)
        body = None if method in BODYLESS_METHODS else context.deep_interpolate(step.body)
        headers = self._build_headers(method, config, step, context, body)
        result.request = RequestSnapshot(url=url, method=method, headers=headers, body=body)

        timeout_ms = config.timeout or self.settings.default_timeout_ms

        try:
            response, elapsed_ms = await self._send(method, url, headers, body, timeout_ms, cancel)
        except RunCancelledError as e:
            return self._settle(result, StepStatus.CANCELLED, str(e))
        except StepExecutionError as e:
            return self._settle(result, StepStatus.FAILED, str(e))

        result.response = response
        result.duration = elapsed_ms

        try:
            self._verify(step.verify, response, elapsed_ms, context)
        except VerificationFailure as e:
            return self._settle(result, StepStatus.FAILED, str(e), elapsed_ms)

        context.extract(step.extract, response)
        return self._settle(result, StepStatus.PASSED, None, elapsed_ms)

    # =========================================================================
    # Request building
    # =========================================================================

    @staticmethod
    def _build_url(url: str, base_url: Optional[str]) -> str:
        """Join a relative url onto the base URL with exactly one slash."""
        if base_url and not url.lower().startswith(("http://", "https://")):
            return base_url.rstrip("/") + "/" + url.lstrip("/")
        return url

    @staticmethod
    def _build_headers(
        method: str,
        config: FlowConfig,
        step: TestStep,
        context: ExecutionContext,
        body: Any,
    ) -> Dict[str, str]:
        """Merge config and step headers, then apply safety rules and defaults."""
        headers: Dict[str, str] = {}
        for source in (config.headers or {}, step.headers):
            for key, value in context.deep_interpolate(source).items():
                _set_header(headers, str(key), stringify(value))

        if method in BODYLESS_METHODS:
            headers = {k: v for k, v in headers.items() if k.lower() != "content-type"}
        elif isinstance(body, (dict, list)) and not _has_header(headers, "Content-Type"):
            headers["Content-Type"] = "application/json"

        for key, value in DEFAULT_HEADERS.items():
            if not _has_header(headers, key):
                headers[key] = value

        return headers

    @staticmethod
    def _encode_body(body: Any) -> Optional[bytes]:
        if body is None:
            return None
        if isinstance(body, bytes):
            return body
        if isinstance(body, str):
            return body.encode("utf-8")
        return json.dumps(body, ensure_ascii=False).encode("utf-8")

    # =========================================================================
    # Transport
    # =========================================================================

    async def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any,
        timeout_ms: int,
        cancel: Optional[CancelSignal],
    ) -> Tuple[ResponseSnapshot, int]:
        """Send the request, racing it against cancel and the timeout.

        Returns:
            Tuple of (response snapshot, elapsed milliseconds)

        Raises:
            RunCancelledError: If the cancel signal fired first
            StepTimeoutError: If the timeout elapsed first
            StepExecutionError: On transport or request-building errors
        """
        client = self._get_client()
        timeout_s = timeout_ms / 1000
        try:
            request = client.build_request(
                method,
                url,
                headers=headers,
                content=self._encode_body(body),
                timeout=timeout_s,
            )
        except (httpx.InvalidURL, ValueError) as e:
            raise StepExecutionError(f"Invalid request: {e}")

        start = time.perf_counter()
        send_task = asyncio.ensure_future(self._perform(client, request, timeout_ms))
        waiters = {send_task}
        cancel_task = None
        if cancel is not None:
            cancel_task = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancel_task is not None:
                cancel_task.cancel()

        if send_task in done:
            response = send_task.result()
            return response, int((time.perf_counter() - start) * 1000)

        send_task.cancel()
        try:
            await send_task
        except (asyncio.CancelledError, StepExecutionError):
            pass

        if cancel is not None and cancel.aborted:
            raise RunCancelledError()
        raise StepTimeoutError(timeout_ms)

    async def _perform(
        self,
        client: httpx.AsyncClient,
        request: httpx.Request,
        timeout_ms: int,
    ) -> ResponseSnapshot:
        """Send a request and read its body (gzip/deflate inflated by httpx)."""
        try:
            response = await client.send(request)
        except httpx.TimeoutException:
            raise StepTimeoutError(timeout_ms)
        except httpx.HTTPError as e:
            raise StepNetworkError(str(e) or type(e).__name__)

        return self._decode_response(response)

    # =========================================================================
    # Response decoding
    # =========================================================================

    @staticmethod
    def _decode_response(response: httpx.Response) -> ResponseSnapshot:
        """Decode body text and parse JSON content types."""
        charset = response.charset_encoding or "utf-8"
        try:
            text = response.content.decode(charset, errors="replace")
        except LookupError:
            text = response.content.decode("utf-8", errors="replace")

        body = text
        parsed: Any = text
        if "json" in response.headers.get("content-type", "").lower():
            try:
                parsed = json.loads(text)
                body = json.dumps(parsed, indent=2, ensure_ascii=False)
            except ValueError:
                parsed = text

        return ResponseSnapshot(
            status=response.status_code,
            headers=dict(response.headers.items()),
            body=body,
            data=parsed,
        )

    # =========================================================================
    # Verification
    # =========================================================================

    @staticmethod
    def _verify(
        verify: Dict[str, Any],
        response: ResponseSnapshot,
        elapsed_ms: int,
        context: ExecutionContext,
    ) -> None:
        """Check every verify assertion; the first mismatch raises.

        Raises:
            VerificationFailure: Naming the path, expected and actual values
        """
        for key, raw_expected in verify.items():
            expected = context.resolve_value(raw_expected)

            if key == "status":
                try:
                    expected_status = int(expected)
                except (TypeError, ValueError):
                    expected_status = expected
                if response.status != expected_status:
                    raise VerificationFailure(
                        "status",
                        expected_status,
                        response.status,
                        message=(
                            f"Verification failed: expected status {expected_status}, "
                            f"got {response.status}"
                        ),
                    )

            elif key == "responseTime":
                try:
                    limit = int(expected)
                except (TypeError, ValueError):
                    raise VerificationFailure(
                        "responseTime",
                        expected,
                        elapsed_ms,
                        message=f"Invalid responseTime limit: {_describe(expected)}",
                    )
                if elapsed_ms > limit:
                    raise VerificationFailure(
                        "responseTime",
                        limit,
                        elapsed_ms,
                        message=f"Response too slow: {elapsed_ms}ms > {limit}ms",
                    )

            elif key == "body" or key.startswith("body."):
                actual = get_value_by_path(response.data, key[len("body."):])
                comparable = None if actual is MISSING else actual
                if not loose_equals(comparable, expected):
                    raise VerificationFailure(
                        key,
                        expected,
                        comparable,
                        message=(
                            f"Verification failed for {key}: expected "
                            f"{_describe(expected)}, got {_describe(actual)}"
                        ),
                    )

    @staticmethod
    def _settle(
        result: StepResult,
        status: StepStatus,
        error: Optional[str],
        duration: Optional[int] = None,
    ) -> StepResult:
        result.status = status
        result.error = error
        result.finished_at = time.time()
        result.duration = (
            duration if duration is not None else int((result.finished_at - result.started_at) * 1000)
        )
        return result
