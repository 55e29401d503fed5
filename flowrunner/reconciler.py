"""Reconcile a progress event stream into per-file execution state.

Events carry indices local to the file that is running and a nesting
depth, but not always a usable file identity. The reconciler keeps a
stack of {path, offset} entries that mirrors the nesting reported by the
stream, resolves every flow path to a known file, and writes statuses and
executing markers into the ExecutionStateStore.
"""

from __future__ import annotations

import posixpath
import re
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Tuple

from .display_adapter import get_display
from .errors import PathResolutionAmbiguous
from .events import (
    CommandCancelled,
    CommandFailed,
    CommandPassed,
    CommandRetrying,
    CommandSkipped,
    CommandStarted,
    FlowFinished,
    FlowStarted,
    Log,
    ProgressEvent,
)
from .files import FileProvider, is_absolute, normalize_path
from .state import ExecutionStateStore
from .types import StepResult, StepStatus

# Log prefix for the reason attached to a settled step
SETTLED_LOG_PREFIXES = {StepStatus.FAILED: "Error", StepStatus.CANCELLED: "Cancelled"}

# Backends run unsaved buffers from a sibling temp file, e.g. "login.yaml.x_tmp_run"
TEMP_SUFFIX_PATTERN = re.compile(r"\.[A-Za-z_]*tmp_run$")

# Commands that start a nested flow: runFlow("x.yaml"), flow: x.yaml
FLOW_COMMAND_PATTERN = re.compile(r"^\s*(?:run_?flow|flow)\b", re.IGNORECASE)

UpdateCallback = Callable[[List[StepResult]], None]


@dataclass
class FlowPathEntry:
    """State of the parent flow saved when a nested flow starts.

    Attributes:
        path: File identity that was current before the nested flow
        offset: Global offset that was in effect in that file
        parent_step_index: Index in the parent that triggered the nested flow
    """

    path: str
    offset: int
    parent_step_index: Optional[int] = None


class FlowPathStack:
    """Stack of FlowPathEntry, seeded with the run's main file.

    Its depth (entries beyond the seed) equals the nesting depth of the
    flow currently running.
    """

    def __init__(self, main_path: str) -> None:
        self._entries: List[FlowPathEntry] = [FlowPathEntry(path=main_path, offset=0)]

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def depth(self) -> int:
        """Nesting depth of the current flow."""
        return len(self._entries) - 1

    @property
    def top(self) -> FlowPathEntry:
        return self._entries[-1]

    @property
    def entries(self) -> List[FlowPathEntry]:
        return list(self._entries)

    def push(self, entry: FlowPathEntry) -> None:
        """Save the parent's path and offset before entering a nested flow."""
        self._entries.append(entry)

    def pop(self) -> Optional[FlowPathEntry]:
        """Restore the parent's entry; the seed is never popped.

        Returns:
            The popped entry, or None if only the seed remains
        """
        if len(self._entries) == 1:
            return None
        return self._entries.pop()

    def reset(self, main_path: str) -> None:
        """Drop every nested entry and reseed with the main file."""
        self._entries = [FlowPathEntry(path=main_path, offset=0)]


@dataclass
class _Frame:
    """Bookkeeping for the file currently running at one depth."""

    file_id: str
    serial: int
    origin: int
    depth: int
    next_index: int = 0
    open_index: Optional[int] = None
    open_command: str = ""


class ProgressReconciler:
    """Consumes progress events and maintains live per-file state.

    Attributes:
        store: State store that observers read
        files: File provider used to resolve identities and line maps
        main_file_id: Identity of the file that started the run
        diagnostics: Paths that could not be resolved to a known file
        run_logs: Log lines received before any step started
    """

    def __init__(
        self,
        store: ExecutionStateStore,
        files: FileProvider,
        main_file_id: str,
        main_file_name: Optional[str] = None,
        on_update: Optional[UpdateCallback] = None,
    ) -> None:
        self.store = store
        self.files = files
        self.main_file_id = main_file_id
        self.main_file_name = main_file_name or posixpath.basename(main_file_id)
        self.on_update = on_update
        self.diagnostics: List[PathResolutionAmbiguous] = []
        self.run_logs: List[str] = []

        self._stack = FlowPathStack(main_file_id)
        self._frames: List[_Frame] = [_Frame(main_file_id, serial=0, origin=0, depth=0)]
        self._serial = 0
        self._global_offset = 0
        self._current_path = main_file_id
        self._steps: List[StepResult] = []
        self._positions: Dict[Tuple[int, int], int] = {}
        self._mapped: set = set()

    # =========================================================================
    # Public surface
    # =========================================================================

    @property
    def steps(self) -> List[StepResult]:
        """Flat, ordered results seen so far."""
        return list(self._steps)

    @property
    def stack(self) -> FlowPathStack:
        return self._stack

    @property
    def depth(self) -> int:
        return self._stack.depth

    @property
    def current_file_id(self) -> str:
        return self._current_path

    @property
    def global_offset(self) -> int:
        """Step index origin currently in effect."""
        return self._global_offset

    def global_index(self, local_index: int) -> int:
        """Translate an index of the current file into the run's numbering."""
        return self._frames[-1].origin + local_index

    def start(self, source_text: Optional[str] = None) -> None:
        """Clear all file states and begin the main file's execution.

        Args:
            source_text: Main file text, used for line mapping when the
                buffer differs from what the file provider holds
        """
        self.store.clear_all()
        self.store.start_file_execution(self.main_file_id, self.main_file_name)
        if source_text is not None:
            self.attach_source(self.main_file_id, source_text)
        else:
            self._ensure_state(self.main_file_id)

    def finish(self) -> None:
        """Stop every file that is still marked running."""
        for state in self.store.snapshot().values():
            if state.is_running:
                self.store.stop_file_execution(state.file_id)

    def attach_source(self, file_id: str, source_text: str) -> None:
        """Provide a file's text so its line map can be built or backfilled."""
        self.store.map_steps_from_content(file_id, source_text)
        self._mapped.add(file_id)

    def handle(self, event: ProgressEvent) -> None:
        """Apply one event to the live state."""
        if isinstance(event, FlowStarted):
            self._on_flow_started(event)
        elif isinstance(event, FlowFinished):
            self._on_flow_finished(event)
        elif isinstance(event, CommandStarted):
            self._on_command_started(event)
        elif isinstance(event, CommandPassed):
            self._on_command_settled(event.index, StepStatus.PASSED, event.duration_ms)
        elif isinstance(event, CommandFailed):
            self._on_command_settled(
                event.index, StepStatus.FAILED, event.duration_ms, event.error
            )
        elif isinstance(event, CommandSkipped):
            self._on_command_settled(event.index, StepStatus.SKIPPED, 0, event.reason or None)
        elif isinstance(event, CommandCancelled):
            self._on_command_settled(event.index, StepStatus.CANCELLED, 0, event.reason or None)
        elif isinstance(event, CommandRetrying):
            self._append_log(
                f"Retrying ({event.attempt}/{event.max_attempts})",
                key=(self._frames[-1].serial, event.index),
            )
        elif isinstance(event, Log):
            self._append_log(event.message)
        else:
            return

        if self.on_update:
            self.on_update(self.steps)

    # =========================================================================
    # File identity
    # =========================================================================

    def resolve_file_id(self, reported_path: str, depth: int = 0) -> str:
        """Map a path reported by an event to a known file identity.

        Order: exact match; relative to the main file's directory; relative
        to the current flow's directory; filename suffix match; finally the
        normalized path itself, recorded as a diagnostic.
        """
        is_temp = bool(TEMP_SUFFIX_PATTERN.search(reported_path or ""))
        normalized = normalize_path(TEMP_SUFFIX_PATTERN.sub("", reported_path or ""))

        if depth == 0 and (is_temp or not normalized):
            return self.main_file_id
        if not normalized:
            return self._current_path

        known = [node.id for node in self.files.iter_files()]
        known_set = set(known)

        if normalized in known_set:
            return normalized

        if not is_absolute(normalized):
            for base in (self.main_file_id, self._current_path):
                candidate = normalize_path(posixpath.join(posixpath.dirname(base), normalized))
                if candidate in known_set:
                    return candidate

        suffix = normalized.lstrip("./")
        matches = [file_id for file_id in known if file_id.endswith("/" + suffix)]
        if not matches:
            basename = posixpath.basename(normalized)
            matches = [file_id for file_id in known if posixpath.basename(file_id) == basename]
        if matches:
            current_dir = posixpath.dirname(self._current_path)
            nearby = [m for m in matches if m.startswith(current_dir + "/")]
            return (nearby or matches)[0]

        diagnostic = PathResolutionAmbiguous(reported_path, normalized)
        self.diagnostics.append(diagnostic)
        get_display().print_warning(str(diagnostic))
        return normalized

    # =========================================================================
    # Event handlers
    # =========================================================================

    def _on_flow_started(self, event: FlowStarted) -> None:
        file_id = self.resolve_file_id(event.flow_path, event.depth)

        if event.depth == 0:
            if self._stack.depth > 0:
                get_display().print_warning(
                    f"Root flow restarted at nesting depth {self._stack.depth}, resetting"
                )
                self._stack.reset(self.main_file_id)
                self._frames = self._frames[:1]
                self._current_path = self.main_file_id
                self._global_offset = 0
            self._ensure_state(self.main_file_id)
            return

        parent = self._frames[-1]
        if parent.open_index is not None and FLOW_COMMAND_PATTERN.match(parent.open_command):
            trigger = parent.open_index
        else:
            trigger = parent.next_index

        current_offset = self._global_offset
        self._global_offset = len(self._steps)
        self._stack.push(
            FlowPathEntry(path=self._current_path, offset=current_offset, parent_step_index=trigger)
        )

        self.store.set_step_status(parent.file_id, trigger, StepStatus.RUNNING)
        self.store.set_executing_step(parent.file_id, trigger)
        parent.next_index = max(parent.next_index, trigger + 1)
        parent.open_index = trigger

        flow_name = event.flow_name or posixpath.basename(file_id)
        if (parent.serial, trigger) not in self._positions:
            self._upsert(
                parent,
                trigger,
                lambda r: replace(r, status=StepStatus.RUNNING),
                name=f"Flow: {flow_name}",
            )

        self._serial += 1
        self._frames.append(
            _Frame(file_id, serial=self._serial, origin=self._global_offset, depth=event.depth)
        )
        self._current_path = file_id
        self.store.start_file_execution(file_id, flow_name)
        self._ensure_state(file_id)

    def _on_flow_finished(self, event: FlowFinished) -> None:
        if event.passed:
            status = StepStatus.PASSED
        elif event.cancelled:
            status = StepStatus.CANCELLED
        else:
            status = StepStatus.FAILED
        finishing = self._frames[-1]
        self.store.clear_executing_step(finishing.file_id)
        self.store.stop_file_execution(finishing.file_id)

        entry = self._stack.pop()
        if entry is None:
            return

        self._frames.pop()
        parent = self._frames[-1]
        index = entry.parent_step_index
        if index is not None:
            self.store.set_step_status(parent.file_id, index, status)
            if status == StepStatus.FAILED:
                self.store.set_step_error(
                    parent.file_id, index, f"Flow '{posixpath.basename(finishing.file_id)}' failed"
                )
            self.store.clear_executing_step(parent.file_id)
            self._upsert(
                parent,
                index,
                lambda r: replace(
                    r,
                    status=status,
                    finished_at=time.time(),
                    duration=event.duration_ms or r.duration,
                ),
            )
            if parent.open_index == index:
                parent.open_index = None

        self._global_offset = entry.offset
        self._current_path = entry.path

    def _on_command_started(self, event: CommandStarted) -> None:
        frame = self._frames[-1]
        self._ensure_state(frame.file_id)
        self.store.set_step_status(frame.file_id, event.index, StepStatus.RUNNING)
        self.store.set_executing_step(frame.file_id, event.index)

        frame.open_index = event.index
        frame.open_command = event.command
        frame.next_index = max(frame.next_index, event.index + 1)

        now = time.time()
        self._upsert(
            frame,
            event.index,
            lambda r: replace(
                r,
                name=event.command or r.name,
                status=StepStatus.RUNNING,
                started_at=now,
                depth=event.depth,
            ),
            name=event.command,
        )

    def _on_command_settled(
        self,
        index: int,
        status: StepStatus,
        duration_ms: int,
        error: Optional[str] = None,
    ) -> None:
        frame = self._frames[-1]
        self.store.set_step_status(frame.file_id, index, status)
        if error and status == StepStatus.FAILED:
            self.store.set_step_error(frame.file_id, index, error)
        self.store.clear_executing_step(frame.file_id)

        if frame.open_index == index:
            frame.open_index = None
        frame.next_index = max(frame.next_index, index + 1)

        def settle(result: StepResult) -> StepResult:
            logs = result.logs
            if error:
                prefix = SETTLED_LOG_PREFIXES.get(status, "Skipped")
                logs = [*logs, f"{prefix}: {error}"]
            return replace(
                result,
                status=status,
                finished_at=time.time(),
                duration=duration_ms or result.duration,
                error=error if status in SETTLED_LOG_PREFIXES else result.error,
                logs=logs,
            )

        self._upsert(frame, index, settle)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _ensure_state(self, file_id: str) -> None:
        """Create a file's state and line map lazily."""
        if self.store.get_file_state(file_id) is None:
            self.store.start_file_execution(file_id, posixpath.basename(file_id))
        if file_id in self._mapped:
            return
        try:
            text = self.files.read_file(file_id)
        except (OSError, UnicodeDecodeError):
            # Unmapped lines stay -1 until attach_source backfills them
            return
        self.attach_source(file_id, text)

    def _upsert(
        self,
        frame: _Frame,
        index: int,
        change: Callable[[StepResult], StepResult],
        name: Optional[str] = None,
    ) -> None:
        """Create or replace the flat result for (frame, index)."""
        key = (frame.serial, index)
        position = self._positions.get(key)
        if position is None:
            base = StepResult(
                name=name or f"Step {index + 1}",
                depth=frame.depth,
                file_id=frame.file_id,
                local_index=index,
                started_at=time.time(),
            )
            self._positions[key] = len(self._steps)
            self._steps.append(change(base))
        else:
            self._steps[position] = change(self._steps[position])

    def _append_log(self, message: str, key: Optional[Tuple[int, int]] = None) -> None:
        """Attach a log line to a step (running step, else most recent)."""
        position = self._positions.get(key) if key else None
        if position is None:
            for idx in range(len(self._steps) - 1, -1, -1):
                if self._steps[idx].status == StepStatus.RUNNING:
                    position = idx
                    break
        if position is None and self._steps:
            position = len(self._steps) - 1
        if position is None:
            self.run_logs.append(message)
            return
        result = self._steps[position]
        self._steps[position] = replace(result, logs=[*result.logs, message])
