"""Result types shared by the executor, composer, reconciler and aggregator."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


class StepStatus(str, Enum):
    """Lifecycle status of a step."""

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class RequestSnapshot:
    """The request as it was sent."""

    url: str
    method: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None


@dataclass
class ResponseSnapshot:
    """The response as it was received.

    Attributes:
        status: HTTP status code
        headers: Response headers
        body: Display text (pretty-printed for JSON)
        data: Parsed JSON body, or the raw text when not JSON
    """

    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""
    data: Any = None


@dataclass
class StepResult:
    """Outcome of one step (or one synthetic flow marker).

    Attributes:
        name: Display name of the step
        status: Final or current status
        started_at: Epoch seconds when the step started
        finished_at: Epoch seconds when the step settled
        duration: Elapsed milliseconds
        request: Captured request, if one was built
        response: Captured response, if one was received
        error: Human-readable failure cause
        depth: Nesting level relative to the run's root file
        file_id: Identity of the file the step belongs to
        local_index: Index of the step within that file
        logs: Log lines attached while the step was running
        marker: True for synthetic flow-start markers
    """

    name: str
    status: StepStatus = StepStatus.PENDING
    started_at: float = 0.0
    finished_at: float = 0.0
    duration: int = 0
    request: Optional[RequestSnapshot] = None
    response: Optional[ResponseSnapshot] = None
    error: Optional[str] = None
    depth: int = 0
    file_id: Optional[str] = None
    local_index: Optional[int] = None
    logs: List[str] = field(default_factory=list)
    marker: bool = False


@dataclass
class TestResult:
    """One run of one flow file."""

    __test__ = False  # not a pytest test class

    id: str
    file_id: str
    file_name: str
    status: StepStatus
    timestamp: float
    total_duration: int = 0
    passed: int = 0
    failed: int = 0
    steps: List[StepResult] = field(default_factory=list)
    batch_id: Optional[str] = None
    folder_name: Optional[str] = None


@dataclass
class BatchSummary:
    """Aggregate view over the TestResults that share a batch id."""

    batch_id: str
    folder_name: Optional[str]
    timestamp: float
    runs: List[TestResult] = field(default_factory=list)
    passed: int = 0
    failed: int = 0
    total_duration: int = 0

    @property
    def status(self) -> StepStatus:
        """Failed if any run failed, otherwise passed."""
        if any(run.status == StepStatus.FAILED for run in self.runs):
            return StepStatus.FAILED
        return StepStatus.PASSED


def generate_run_id() -> str:
    """Generate a unique id for a run or batch."""
    return f"run_{int(time.time() * 1000)}_{uuid4().hex[:8]}"


class CancelSignal:
    """Run-level cancellation token.

    One signal governs every step of a run, nested flows included.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def aborted(self) -> bool:
        """Whether the run has been cancelled."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Cancel from code running on the event loop."""
        self._event.set()

    def cancel_threadsafe(self, loop: asyncio.AbstractEventLoop) -> None:
        """Cancel from another thread (e.g. a signal handler)."""
        loop.call_soon_threadsafe(self._event.set)

    async def wait(self) -> None:
        """Wait until the signal fires."""
        await self._event.wait()
