"""Tests for recursive flow composition."""

from typing import Dict, List

import httpx
import pytest

from flowrunner.composer import FlowComposer, FlowReferenceState, StepCounts
from flowrunner.config import EngineSettings, load_flow
from flowrunner.context import ExecutionContext
from flowrunner.errors import CyclicFlowReferenceError, MaxDepthExceededError
from flowrunner.events import (
    CommandCancelled,
    CommandFailed,
    CommandPassed,
    CommandStarted,
    FlowFinished,
    FlowStarted,
    ProgressEvent,
)
from flowrunner.executor import StepExecutor
from flowrunner.files import InMemoryFileProvider
from flowrunner.types import CancelSignal, StepResult, StepStatus

MAIN = "/flows/main.yaml"

LOGIN_FLOW = """name: Login
steps:
  - name: Get token
    method: POST
    url: /auth
    extract:
      token: body.token
"""

MAIN_FLOW = """name: Main
config:
  baseUrl: https://api.test
steps:
  - name: Login
    flow: auth/login.yaml
  - name: Profile
    url: /me
    headers:
      Authorization: Bearer {{token}}
    verify:
      status: 200
"""


def api_handler(request: httpx.Request) -> httpx.Response:
    """Fake API: /auth issues a token, /me requires it."""
    if request.url.path == "/auth":
        return httpx.Response(200, json={"token": "secret"})
    if request.url.path == "/me":
        if request.headers.get("authorization") == "Bearer secret":
            return httpx.Response(200, json={"name": "demo"})
        return httpx.Response(401)
    return httpx.Response(404)


class Harness:
    """Composer wired to an in-memory tree and a fake API."""

    def __init__(self, files: Dict[str, str], **settings) -> None:
        settings.setdefault("step_delay_ms", 0)
        self.settings = EngineSettings(**settings)
        self.files = InMemoryFileProvider(files)
        self.executor = StepExecutor(self.settings, transport=httpx.MockTransport(api_handler))
        self.events: List[ProgressEvent] = []
        self.results: List[StepResult] = []
        self.context = ExecutionContext()
        self.composer = FlowComposer(
            self.executor, self.files, self.settings, on_event=self.events.append
        )

    async def run(self, file_id: str = MAIN, cancel: CancelSignal = None) -> StepCounts:
        flow = load_flow(self.files.read_file(file_id), source=file_id)
        try:
            return await self.composer.run_root(
                flow, file_id, self.context, self.results.append, cancel
            )
        finally:
            await self.executor.aclose()

    def names(self) -> List[str]:
        return [r.name for r in self.results]


class TestFlowReferenceState:
    """Tests for the cycle and depth guard."""

    def test_push_pop(self) -> None:
        state = FlowReferenceState()
        state.push("/a.yaml")
        state.push("/b.yaml")
        assert state.depth == 1
        assert state.current_file == "/b.yaml"
        assert state.pop() == "/b.yaml"
        assert state.depth == 0

    def test_cycle_detected_with_chain(self) -> None:
        state = FlowReferenceState()
        state.push("/a.yaml")
        state.push("/b.yaml")
        with pytest.raises(CyclicFlowReferenceError) as exc_info:
            state.push("/a.yaml")
        assert exc_info.value.chain == ["/a.yaml", "/b.yaml", "/a.yaml"]
        assert "/a.yaml → /b.yaml → /a.yaml" in str(exc_info.value)

    def test_max_depth(self) -> None:
        state = FlowReferenceState(max_depth=1)
        state.push("/a.yaml")
        state.push("/b.yaml")
        with pytest.raises(MaxDepthExceededError) as exc_info:
            state.push("/c.yaml")
        assert exc_info.value.max_depth == 1


class TestComposition:
    """Tests for nested flow execution."""

    @pytest.mark.asyncio
    async def test_nested_flow_shares_environment(self) -> None:
        """A token extracted in a nested flow is visible to the parent."""
        harness = Harness({MAIN: MAIN_FLOW, "/flows/auth/login.yaml": LOGIN_FLOW})
        counts = await harness.run()

        assert counts == StepCounts(passed=2, failed=0)
        assert harness.names() == ["Flow: auth/login.yaml (Start)", "Get token", "Profile"]
        marker, nested, profile = harness.results
        assert marker.marker and marker.status == StepStatus.PASSED and marker.depth == 0
        assert nested.depth == 1
        assert nested.file_id == "/flows/auth/login.yaml"
        assert nested.local_index == 0
        assert profile.depth == 0
        assert profile.local_index == 1
        assert profile.status == StepStatus.PASSED
        assert harness.context.get("token") == "secret"

    @pytest.mark.asyncio
    async def test_nested_flow_inherits_base_url(self) -> None:
        """The child has no baseUrl of its own and uses the parent's."""
        harness = Harness({MAIN: MAIN_FLOW, "/flows/auth/login.yaml": LOGIN_FLOW})
        await harness.run()
        assert harness.results[1].request.url == "https://api.test/auth"

    @pytest.mark.asyncio
    async def test_reference_found_by_name_elsewhere(self) -> None:
        """References fall back to a file-name match anywhere in the tree."""
        main = MAIN_FLOW.replace("auth/login.yaml", "login.yaml")
        harness = Harness({MAIN: main, "/shared/login.yaml": LOGIN_FLOW})
        counts = await harness.run()
        assert counts.failed == 0
        assert harness.results[1].file_id == "/shared/login.yaml"

    @pytest.mark.asyncio
    async def test_missing_flow_is_one_failure(self) -> None:
        """A missing file fails its step and the run continues."""
        harness = Harness({MAIN: MAIN_FLOW})
        counts = await harness.run()

        assert harness.names() == [
            "Flow: auth/login.yaml (Start)",
            "Flow: auth/login.yaml (Error)",
            "Profile",
        ]
        error_result = harness.results[1]
        assert error_result.status == StepStatus.FAILED
        assert error_result.error == "File 'auth/login.yaml' not found."
        # No token was extracted, so the profile call is rejected
        assert harness.results[2].status == StepStatus.FAILED
        assert counts == StepCounts(passed=0, failed=2)

    @pytest.mark.asyncio
    async def test_broken_flow_is_parse_error(self) -> None:
        harness = Harness({MAIN: MAIN_FLOW, "/flows/auth/login.yaml": "steps: [unclosed\n"})
        counts = await harness.run()
        assert harness.names()[1] == "Flow: auth/login.yaml (Parse Error)"
        assert "Flow parse error" in harness.results[1].error
        assert counts.failed == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            PermissionError(13, "Permission denied"),
            UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"),
        ],
    )
    async def test_unreadable_flow_is_one_failure(self, error: Exception) -> None:
        harness = Harness({MAIN: MAIN_FLOW, "/flows/auth/login.yaml": "binary"})
        original_read = harness.files.read_file

        def read_file(file_id: str) -> str:
            if file_id == "/flows/auth/login.yaml":
                raise error
            return original_read(file_id)

        harness.files.read_file = read_file
        counts = await harness.run()

        assert harness.names()[1] == "Flow: auth/login.yaml (Error)"
        assert harness.results[1].error.startswith("Could not read 'auth/login.yaml'")
        assert harness.names()[2] == "Profile"
        assert counts == StepCounts(passed=0, failed=2)

    @pytest.mark.asyncio
    async def test_cycle_aborts_the_run(self) -> None:
        harness = Harness(
            {
                "/flows/a.yaml": "steps:\n  - flow: b.yaml\n",
                "/flows/b.yaml": "steps:\n  - flow: a.yaml\n",
            }
        )
        with pytest.raises(CyclicFlowReferenceError) as exc_info:
            await harness.run("/flows/a.yaml")
        assert exc_info.value.chain == ["/flows/a.yaml", "/flows/b.yaml", "/flows/a.yaml"]
        # The guard is unwound for the next run
        assert harness.composer.reference_state.resolution_stack == []

    @pytest.mark.asyncio
    async def test_self_reference_is_a_cycle(self) -> None:
        harness = Harness({"/flows/a.yaml": "flow: a.yaml\n"})
        with pytest.raises(CyclicFlowReferenceError):
            await harness.run("/flows/a.yaml")

    @pytest.mark.asyncio
    async def test_max_depth(self) -> None:
        files = {f"/flows/f{i}.yaml": f"steps:\n  - flow: f{i + 1}.yaml\n" for i in range(5)}
        files["/flows/f5.yaml"] = "steps: []\n"
        harness = Harness(files, max_flow_depth=2)
        with pytest.raises(MaxDepthExceededError):
            await harness.run("/flows/f0.yaml")

    @pytest.mark.asyncio
    async def test_sections_share_one_index_space(self) -> None:
        harness = Harness(
            {
                MAIN: """beforeTest:
  - name: setup
    url: https://api.test/auth
steps:
  - name: main
    url: https://api.test/auth
afterTest:
  - name: teardown
    url: https://api.test/auth
"""
            }
        )
        await harness.run()
        assert [r.local_index for r in harness.results] == [0, 1, 2]


class TestEvents:
    """Tests for the progress events emitted during local runs."""

    @pytest.mark.asyncio
    async def test_event_sequence_for_nested_flow(self) -> None:
        harness = Harness({MAIN: MAIN_FLOW, "/flows/auth/login.yaml": LOGIN_FLOW})
        await harness.run()

        kinds = [type(e).__name__ for e in harness.events]
        assert kinds == [
            "FlowStarted",
            "CommandStarted",
            "FlowStarted",
            "CommandStarted",
            "CommandPassed",
            "FlowFinished",
            "CommandPassed",
            "CommandStarted",
            "CommandPassed",
            "FlowFinished",
        ]
        root, flow_cmd, child = harness.events[:3]
        assert isinstance(root, FlowStarted) and root.depth == 0 and root.flow_path == MAIN
        assert isinstance(flow_cmd, CommandStarted) and flow_cmd.command == "flow: auth/login.yaml"
        assert isinstance(child, FlowStarted)
        assert child.depth == 1 and child.flow_path == "/flows/auth/login.yaml"
        assert isinstance(harness.events[-1], FlowFinished) and harness.events[-1].passed

    @pytest.mark.asyncio
    async def test_failed_nested_flow_fails_its_command(self) -> None:
        login = LOGIN_FLOW + "    verify:\n      status: 500\n"
        harness = Harness({MAIN: MAIN_FLOW, "/flows/auth/login.yaml": login})
        await harness.run()

        finished = [e for e in harness.events if isinstance(e, FlowFinished)]
        assert [e.status for e in finished] == ["Failed", "Failed"]
        failed = [e for e in harness.events if isinstance(e, CommandFailed)]
        assert failed[0].index == 0  # the nested step
        assert failed[1].index == 0  # the flow command in the parent
        assert "1 step(s) failed" in failed[1].error
        assert not any(isinstance(e, CommandPassed) for e in harness.events)


class TestCancellation:
    """Tests for run-level cancellation."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self) -> None:
        """Every step, nested references included, is reported cancelled."""
        harness = Harness({MAIN: MAIN_FLOW, "/flows/auth/login.yaml": LOGIN_FLOW})
        cancel = CancelSignal()
        cancel.cancel()
        counts = await harness.run(cancel=cancel)

        assert counts == StepCounts()
        assert harness.names() == ["Flow: auth/login.yaml", "Profile"]
        assert all(r.status == StepStatus.CANCELLED for r in harness.results)
        assert all(r.error == "Cancelled by user" for r in harness.results)

    @pytest.mark.asyncio
    async def test_cancel_mid_run_skips_remaining_steps(self) -> None:
        harness = Harness(
            {
                MAIN: """steps:
  - name: first
    url: https://api.test/auth
  - name: second
    url: https://api.test/auth
""",
            },
            step_delay_ms=10,
        )
        cancel = CancelSignal()

        def on_step(result: StepResult) -> None:
            harness.results.append(result)
            cancel.cancel()

        flow = load_flow(harness.files.read_file(MAIN))
        async with harness.executor:
            await harness.composer.run_root(flow, MAIN, harness.context, on_step, cancel)

        assert [(r.name, r.status) for r in harness.results] == [
            ("first", StepStatus.PASSED),
            ("second", StepStatus.CANCELLED),
        ]

    @pytest.mark.asyncio
    async def test_cancelled_steps_emit_cancel_events(self) -> None:
        harness = Harness({MAIN: MAIN_FLOW, "/flows/auth/login.yaml": LOGIN_FLOW})
        cancel = CancelSignal()
        cancel.cancel()
        await harness.run(cancel=cancel)

        cancelled = [e for e in harness.events if isinstance(e, CommandCancelled)]
        assert [e.index for e in cancelled] == [0, 1]
        assert all(e.reason == "Cancelled by user" for e in cancelled)
        assert not any(isinstance(e, CommandStarted) for e in harness.events)
        finished = harness.events[-1]
        assert isinstance(finished, FlowFinished)
        assert finished.cancelled

    @pytest.mark.asyncio
    async def test_cancel_inside_nested_flow(self) -> None:
        """A nested flow interrupted by cancel reports the flow step as cancelled."""
        harness = Harness({MAIN: MAIN_FLOW, "/flows/auth/login.yaml": LOGIN_FLOW})
        cancel = CancelSignal()

        def on_step(result: StepResult) -> None:
            harness.results.append(result)
            if result.name == "Get token":
                cancel.cancel()

        flow = load_flow(harness.files.read_file(MAIN))
        async with harness.executor:
            await harness.composer.run_root(flow, MAIN, harness.context, on_step, cancel)

        finished = [e for e in harness.events if isinstance(e, FlowFinished)]
        assert [(e.depth, e.status) for e in finished] == [(1, "Cancelled"), (0, "Cancelled")]
        cancelled = [e for e in harness.events if isinstance(e, CommandCancelled)]
        # The flow command in the parent, then the profile step
        assert [e.index for e in cancelled] == [0, 1]
