"""Public run surface: run one flow file or a folder of flow files."""

from __future__ import annotations

import posixpath
import time
from dataclasses import replace
from typing import Callable, List, Optional

import httpx

from .aggregator import ResultAggregator, summarize_batches
from .composer import FlowComposer
from .config import EngineSettings, EnvVar, initial_environment, load_flow
from .context import ExecutionContext
from .display_adapter import get_display
from .errors import (
    BridgeError,
    CyclicFlowReferenceError,
    LoadError,
    MaxDepthExceededError,
    RunInProgressError,
)
from .executor import StepExecutor
from .files import FileProvider
from .reconciler import ProgressReconciler
from .server import Bridge, RunRequest
from .state import ExecutionStateStore
from .types import CancelSignal, StepResult, StepStatus, TestResult, generate_run_id

UpdateCallback = Callable[[TestResult], None]
StepCompleteCallback = Callable[[StepResult], None]

_SETTLED = (StepStatus.PASSED, StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.CANCELLED)


def _failed_step(name: str, error: str, file_id: str) -> StepResult:
    now = time.time()
    return StepResult(
        name=name,
        status=StepStatus.FAILED,
        started_at=now,
        finished_at=now,
        error=error,
        file_id=file_id,
    )


class FlowRunner:
    """Runs flows locally, executing HTTP steps with the StepExecutor.

    Only one run may be active per instance. Progress events emitted by the
    composer feed a ProgressReconciler, so the ExecutionStateStore is kept
    current the same way as for a delegated run.
    """

    def __init__(
        self,
        files: FileProvider,
        settings: Optional[EngineSettings] = None,
        store: Optional[ExecutionStateStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        env_vars: Optional[List[EnvVar]] = None,
    ) -> None:
        """Initialize the runner.

        Args:
            files: File provider holding the flows
            settings: Engine settings
            store: Shared execution state store (created if omitted)
            transport: Optional httpx transport for the executor
            env_vars: Variables seeding every run's environment
        """
        self.files = files
        self.settings = settings or EngineSettings()
        self.store = store or ExecutionStateStore()
        self.env_vars = list(env_vars or [])
        self._transport = transport
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def _acquire(self) -> None:
        if self._running:
            raise RunInProgressError("A run is already in progress")
        self._running = True

    async def run_flow(
        self,
        source_text: str,
        file_id: str,
        file_name: str,
        on_update: Optional[UpdateCallback] = None,
        on_step_complete: Optional[StepCompleteCallback] = None,
        cancel: Optional[CancelSignal] = None,
    ) -> TestResult:
        """Run one flow from its source text.

        Args:
            source_text: Flow YAML (may differ from what is saved on disk)
            file_id: Identity of the flow file
            file_name: Display name of the flow file
            on_update: Receives a partial TestResult after every step
            on_step_complete: Receives every settled StepResult
            cancel: Cancel signal governing the whole run

        Returns:
            The final TestResult

        Raises:
            RunInProgressError: If another run is active on this runner
        """
        self._acquire()
        try:
            return await self._run(
                source_text, file_id, file_name, on_update, on_step_complete, cancel or CancelSignal()
            )
        finally:
            self._running = False

    async def run_folder(
        self,
        folder_id: str,
        on_update: Optional[UpdateCallback] = None,
        on_step_complete: Optional[StepCompleteCallback] = None,
        cancel: Optional[CancelSignal] = None,
    ) -> List[TestResult]:
        """Run every flow file in a folder, one after another.

        Each file gets its own TestResult tagged with a shared batch id.
        Empty files are skipped; cancellation stops before the next file.
        """
        self._acquire()
        cancel = cancel or CancelSignal()
        try:
            display = get_display()
            folder_name = posixpath.basename(folder_id.rstrip("/")) or folder_id
            batch_id = generate_run_id()
            flow_files = sorted(
                (
                    node
                    for node in self.files.iter_files(folder_id)
                    if node.name.endswith(tuple(self.settings.flow_extensions))
                ),
                key=lambda node: node.id,
            )

            display.print_batch_header(folder_name, len(flow_files))
            results: List[TestResult] = []
            for node in flow_files:
                if cancel.aborted:
                    break
                text = self.files.read_file(node.id)
                if not text.strip():
                    continue
                with display.indent():
                    result = await self._run(
                        text,
                        node.id,
                        node.name,
                        on_update,
                        on_step_complete,
                        cancel,
                        batch_id=batch_id,
                        folder_name=folder_name,
                    )
                results.append(result)

            for summary in summarize_batches(results):
                display.print_batch_summary(summary)
            return results
        finally:
            self._running = False

    async def _run(
        self,
        source_text: str,
        file_id: str,
        file_name: str,
        on_update: Optional[UpdateCallback],
        on_step_complete: Optional[StepCompleteCallback],
        cancel: CancelSignal,
        batch_id: Optional[str] = None,
        folder_name: Optional[str] = None,
    ) -> TestResult:
        display = get_display()
        aggregator = ResultAggregator(file_id, file_name, batch_id, folder_name)
        reconciler = ProgressReconciler(self.store, self.files, file_id, file_name)
        reconciler.start(source_text)

        def on_step(result: StepResult) -> None:
            aggregator.add(result)
            display.print_step_result(result)
            if on_step_complete:
                on_step_complete(result)
            if on_update:
                on_update(aggregator.snapshot())

        try:
            flow = load_flow(
                source_text,
                default_name=posixpath.splitext(file_name)[0],
                source=file_id,
            )
        except LoadError as e:
            display.print_header(file_name, file_name)
            on_step(_failed_step("YAML Parse", str(e), file_id))
            reconciler.finish()
            result = aggregator.finalize()
            display.print_summary(result)
            return result

        display.print_header(flow.name, file_name, flow.config.base_url)
        context = ExecutionContext(initial_environment(self.env_vars))

        async with StepExecutor(self.settings, transport=self._transport) as executor:
            composer = FlowComposer(executor, self.files, self.settings, on_event=reconciler.handle)
            try:
                await composer.run_root(flow, file_id, context, on_step, cancel)
            except (CyclicFlowReferenceError, MaxDepthExceededError) as e:
                on_step(_failed_step("Flow Composition", str(e), file_id))
            finally:
                reconciler.finish()

        if cancel.aborted:
            display.print_run_interrupted()
        result = aggregator.finalize(cancelled=cancel.aborted)
        display.print_summary(result)
        return result


class DelegatedRunner:
    """Runs flows through an external automation backend.

    The backend reports progress events through the bridge; results are
    built by reconciling that stream.
    """

    def __init__(
        self,
        bridge: Bridge,
        files: FileProvider,
        store: Optional[ExecutionStateStore] = None,
        env_vars: Optional[List[EnvVar]] = None,
    ) -> None:
        self.bridge = bridge
        self.files = files
        self.store = store or ExecutionStateStore()
        self.env_vars = list(env_vars or [])
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_flow(
        self,
        source_text: str,
        file_id: str,
        file_name: str,
        on_update: Optional[UpdateCallback] = None,
        on_step_complete: Optional[StepCompleteCallback] = None,
        cancel: Optional[CancelSignal] = None,
    ) -> TestResult:
        """Run one flow on the backend and reconcile its event stream.

        Raises:
            RunInProgressError: If another run is active on this runner
        """
        if self._running:
            raise RunInProgressError("A run is already in progress")
        self._running = True
        cancel = cancel or CancelSignal()
        display = get_display()
        aggregator = ResultAggregator(file_id, file_name)
        reported: set = set()

        def handle_update(steps: List[StepResult]) -> None:
            aggregator.replace_all(steps)
            for position, step in enumerate(steps):
                if position in reported or step.status not in _SETTLED:
                    continue
                reported.add(position)
                display.print_step_result(step)
                if on_step_complete:
                    on_step_complete(step)
            if on_update:
                on_update(aggregator.snapshot())

        reconciler = ProgressReconciler(
            self.store, self.files, file_id, file_name, on_update=handle_update
        )

        try:
            display.print_header(file_name, file_name, mode="backend")
            reconciler.start(source_text)
            request = RunRequest(
                file_id=file_id,
                file_name=file_name,
                source_text=source_text,
                env=initial_environment(self.env_vars),
            )
            try:
                return_code = await self.bridge.invoke(request, reconciler.handle, cancel)
            except BridgeError as e:
                aggregator.replace_all(reconciler.steps)
                aggregator.add(_failed_step("Backend", str(e), file_id))
            else:
                aggregator.replace_all(self._close_open_steps(reconciler.steps, cancel))
                if return_code and not cancel.aborted and not aggregator.failed:
                    aggregator.add(
                        _failed_step("Backend", f"Backend exited with code {return_code}", file_id)
                    )
            finally:
                reconciler.finish()

            for log in reconciler.run_logs:
                display.print_log(log)
            if cancel.aborted:
                display.print_run_interrupted()
            result = aggregator.finalize(cancelled=cancel.aborted)
            display.print_summary(result)
            return result
        finally:
            self._running = False

    @staticmethod
    def _close_open_steps(steps: List[StepResult], cancel: CancelSignal) -> List[StepResult]:
        """Settle steps the backend left running when it exited."""
        closed = []
        for step in steps:
            if step.status == StepStatus.RUNNING:
                if cancel.aborted:
                    status, error = StepStatus.CANCELLED, "Cancelled by user"
                else:
                    status, error = StepStatus.FAILED, "Backend exited before the step finished"
                step = replace(step, status=status, error=error, finished_at=time.time())
            closed.append(step)
        return closed
