"""Recursive flow composer.

Walks a flow's steps in order, delegating action steps to the executor and
descending into referenced flow files. All nested flows share the run's
ExecutionContext and cancel signal.
"""

from __future__ import annotations

import asyncio
import posixpath
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .config import EngineSettings, FlowConfig, TestFlow, TestStep, flatten_steps, load_flow
from .context import ExecutionContext
from .errors import (
    CyclicFlowReferenceError,
    FlowNotFoundError,
    LoadError,
    MaxDepthExceededError,
    RunCancelledError,
)
from .events import (
    CommandCancelled,
    CommandFailed,
    CommandPassed,
    CommandSkipped,
    CommandStarted,
    FlowFinished,
    FlowStarted,
    ProgressEvent,
)
from .executor import StepExecutor
from .files import FileProvider
from .types import CancelSignal, StepResult, StepStatus

StepCallback = Callable[[StepResult], None]
EventCallback = Callable[[ProgressEvent], None]


@dataclass
class StepCounts:
    """Pass/fail totals of a step list (nested flows included)."""

    passed: int = 0
    failed: int = 0

    def add(self, other: "StepCounts") -> None:
        self.passed += other.passed
        self.failed += other.failed


@dataclass
class FlowReferenceState:
    """Tracks the flow files currently being composed.

    Used for cycle detection and depth limiting.

    Attributes:
        resolution_stack: File identities from the root to the current flow
        max_depth: Maximum allowed nesting depth
    """

    resolution_stack: List[str] = field(default_factory=list)
    max_depth: int = 10

    def push(self, file_id: str) -> None:
        """Enter a flow file.

        Raises:
            CyclicFlowReferenceError: If file_id is already being composed
            MaxDepthExceededError: If max depth would be exceeded
        """
        if file_id in self.resolution_stack:
            chain = self.resolution_stack + [file_id]
            raise CyclicFlowReferenceError(
                f"Circular flow reference detected: {' → '.join(chain)}",
                chain=chain,
            )

        if len(self.resolution_stack) > self.max_depth:
            raise MaxDepthExceededError(
                f"Maximum flow nesting depth ({self.max_depth}) exceeded. "
                f"Current stack: {' → '.join(self.resolution_stack)}",
                depth=len(self.resolution_stack),
                max_depth=self.max_depth,
            )

        self.resolution_stack.append(file_id)

    def pop(self) -> str:
        """Leave the most recently entered flow file."""
        return self.resolution_stack.pop()

    @property
    def depth(self) -> int:
        """Current nesting depth (0 for the root file)."""
        return max(len(self.resolution_stack) - 1, 0)

    @property
    def current_file(self) -> Optional[str]:
        return self.resolution_stack[-1] if self.resolution_stack else None


class FlowComposer:
    """Runs step lists, recursing into referenced flows."""

    def __init__(
        self,
        executor: StepExecutor,
        files: FileProvider,
        settings: Optional[EngineSettings] = None,
        on_event: Optional[EventCallback] = None,
    ) -> None:
        """Initialize the composer.

        Args:
            executor: Executor for action steps
            files: File provider used to resolve flow references
            settings: Engine settings (pacing delay, max depth)
            on_event: Optional sink for progress events
        """
        self.executor = executor
        self.files = files
        self.settings = settings or EngineSettings()
        self.on_event = on_event
        self.reference_state = FlowReferenceState(max_depth=self.settings.max_flow_depth)

    def _emit(self, event: ProgressEvent) -> None:
        if self.on_event:
            self.on_event(event)

    async def run_root(
        self,
        flow: TestFlow,
        file_id: str,
        context: ExecutionContext,
        on_step: StepCallback,
        cancel: Optional[CancelSignal] = None,
    ) -> StepCounts:
        """Run a run's main flow at depth 0.

        Raises:
            CyclicFlowReferenceError: If a flow references an ancestor
            MaxDepthExceededError: If nesting goes deeper than allowed
        """
        self.reference_state.push(file_id)
        started = time.perf_counter()
        try:
            self._emit(FlowStarted(depth=0, flow_path=file_id, flow_name=flow.name))
            counts = await self.run_flow(flow, context, flow.config, 0, on_step, cancel, file_id)
            self._emit(
                FlowFinished(
                    depth=0,
                    status=self._flow_status(counts, cancel),
                    duration_ms=int((time.perf_counter() - started) * 1000),
                )
            )
        finally:
            self.reference_state.pop()
        return counts

    async def run_flow(
        self,
        flow: TestFlow,
        context: ExecutionContext,
        config: FlowConfig,
        depth: int,
        on_step: StepCallback,
        cancel: Optional[CancelSignal],
        source_id: str,
    ) -> StepCounts:
        """Run beforeTest, steps and afterTest of one flow as one index space."""
        return await self.run(
            flatten_steps(flow), context, config, depth, on_step, cancel, source_id
        )

    async def run(
        self,
        steps: List[TestStep],
        context: ExecutionContext,
        config: FlowConfig,
        depth: int,
        on_step: StepCallback,
        cancel: Optional[CancelSignal],
        source_id: str,
    ) -> StepCounts:
        """Run a step list in order.

        Failures never short-circuit the list. Once cancelled, remaining
        steps are reported as cancelled without being started.

        Args:
            steps: Steps to run
            context: Shared run environment
            config: Effective config for this flow
            depth: Nesting depth of these steps
            on_step: Receives every StepResult, markers included
            cancel: Run-level cancel signal
            source_id: File the steps belong to

        Returns:
            Pass/fail counts including nested flows
        """
        counts = StepCounts()

        for index, step in enumerate(steps):
            if index and self.settings.step_delay_ms > 0 and not self._aborted(cancel):
                await asyncio.sleep(self.settings.step_delay_ms / 1000)

            if self._aborted(cancel):
                result = self._cancelled_result(step, depth, source_id, index)
                on_step(result)
                self._emit(CommandCancelled(index=index, reason=result.error or ""))
                continue

            if step.is_flow_reference:
                counts.add(
                    await self._run_reference(
                        step, context, config, depth, on_step, cancel, source_id, index
                    )
                )
                continue

            self._emit(CommandStarted(depth=depth, index=index, command=step.name))
            result = await self.executor.execute(
                step, context, config, depth, cancel, file_id=source_id, local_index=index
            )
            on_step(result)

            if result.status == StepStatus.PASSED:
                counts.passed += 1
                self._emit(CommandPassed(index=index, duration_ms=result.duration))
            elif result.status == StepStatus.FAILED:
                counts.failed += 1
                self._emit(
                    CommandFailed(index=index, error=result.error or "", duration_ms=result.duration)
                )
            elif result.status == StepStatus.CANCELLED:
                self._emit(CommandCancelled(index=index, reason=result.error or ""))
            else:
                self._emit(CommandSkipped(index=index, reason=result.error or ""))

        return counts

    async def _run_reference(
        self,
        step: TestStep,
        context: ExecutionContext,
        config: FlowConfig,
        depth: int,
        on_step: StepCallback,
        cancel: Optional[CancelSignal],
        source_id: str,
        index: int,
    ) -> StepCounts:
        """Run a flow-reference step by composing the referenced file."""
        reference = context.interpolate(step.flow or "")
        now = time.time()

        self._emit(CommandStarted(depth=depth, index=index, command=f"flow: {reference}"))
        on_step(
            StepResult(
                name=f"Flow: {reference} (Start)",
                status=StepStatus.PASSED,
                started_at=now,
                finished_at=now,
                depth=depth,
                file_id=source_id,
                local_index=index,
                marker=True,
            )
        )

        try:
            source = self.files.resolve_reference(reference, posixpath.dirname(source_id))
        except FlowNotFoundError as e:
            return self._flow_failure(
                f"Flow: {reference} (Error)", str(e), depth, source_id, index, on_step
            )
        except (OSError, UnicodeDecodeError) as e:
            return self._flow_failure(
                f"Flow: {reference} (Error)",
                f"Could not read '{reference}': {e}",
                depth,
                source_id,
                index,
                on_step,
            )

        try:
            child = load_flow(
                source.text,
                default_name=posixpath.splitext(source.name)[0],
                source=source.file_id,
            )
        except LoadError as e:
            return self._flow_failure(
                f"Flow: {reference} (Parse Error)", str(e), depth, source_id, index, on_step
            )

        self.reference_state.push(source.file_id)
        started = time.perf_counter()
        try:
            self._emit(FlowStarted(depth=depth + 1, flow_path=source.file_id, flow_name=child.name))
            counts = await self.run_flow(
                child,
                context,
                config.merged(child.config),
                depth + 1,
                on_step,
                cancel,
                source.file_id,
            )
        finally:
            self.reference_state.pop()

        duration_ms = int((time.perf_counter() - started) * 1000)
        if counts.failed:
            self._emit(FlowFinished(depth=depth + 1, status="Failed", duration_ms=duration_ms))
            self._emit(
                CommandFailed(
                    index=index,
                    error=f"{counts.failed} step(s) failed in {reference}",
                    duration_ms=duration_ms,
                )
            )
        elif self._aborted(cancel):
            self._emit(FlowFinished(depth=depth + 1, status="Cancelled", duration_ms=duration_ms))
            self._emit(CommandCancelled(index=index, reason=str(RunCancelledError())))
        else:
            self._emit(FlowFinished(depth=depth + 1, status="Passed", duration_ms=duration_ms))
            self._emit(CommandPassed(index=index, duration_ms=duration_ms))
        return counts

    def _flow_failure(
        self,
        name: str,
        error: str,
        depth: int,
        source_id: str,
        index: int,
        on_step: StepCallback,
    ) -> StepCounts:
        """Report a nested flow that could not be loaded as one failure."""
        now = time.time()
        on_step(
            StepResult(
                name=name,
                status=StepStatus.FAILED,
                started_at=now,
                finished_at=now,
                error=error,
                depth=depth,
                file_id=source_id,
                local_index=index,
            )
        )
        self._emit(CommandFailed(index=index, error=error))
        return StepCounts(failed=1)

    @classmethod
    def _flow_status(cls, counts: StepCounts, cancel: Optional[CancelSignal]) -> str:
        if counts.failed:
            return "Failed"
        return "Cancelled" if cls._aborted(cancel) else "Passed"

    @staticmethod
    def _aborted(cancel: Optional[CancelSignal]) -> bool:
        return cancel is not None and cancel.aborted

    @staticmethod
    def _cancelled_result(step: TestStep, depth: int, source_id: str, index: int) -> StepResult:
        now = time.time()
        name = f"Flow: {step.flow}" if step.is_flow_reference else step.name
        return StepResult(
            name=name,
            status=StepStatus.CANCELLED,
            started_at=now,
            finished_at=now,
            error=str(RunCancelledError()),
            depth=depth,
            file_id=source_id,
            local_index=index,
        )
