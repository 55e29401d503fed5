"""Live per-file execution state.

Every write builds a new FileExecutionState and a new mapping of states,
then swaps it in under a lock. Readers (display, editor gutter, reports)
only ever see complete snapshots.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional

from .line_mapping import map_steps
from .types import StepStatus

StateListener = Callable[[Mapping[str, "FileExecutionState"]], None]


@dataclass(frozen=True)
class FileExecutionState:
    """What is running, what passed, and on which line, for one file.

    Attributes:
        file_id: Identity of the file
        file_name: Display name of the file
        step_lines: Step index to 0-based source line
        step_statuses: Step index to status
        step_errors: Step index to failure message
        executing_step_index: Index currently running, -1 when idle
        executing_line: Line currently running, -1 when unknown
        is_running: Whether the file's execution is in progress
    """

    file_id: str
    file_name: str
    step_lines: Mapping[int, int] = field(default_factory=lambda: MappingProxyType({}))
    step_statuses: Mapping[int, StepStatus] = field(default_factory=lambda: MappingProxyType({}))
    step_errors: Mapping[int, str] = field(default_factory=lambda: MappingProxyType({}))
    executing_step_index: int = -1
    executing_line: int = -1
    is_running: bool = False


def _frozen(mapping: Dict) -> Mapping:
    return MappingProxyType(mapping)


class ExecutionStateStore:
    """Holds FileExecutionState records keyed by file identity."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: Mapping[str, FileExecutionState] = _frozen({})
        self._listeners: List[StateListener] = []

    # =========================================================================
    # Reads
    # =========================================================================

    def snapshot(self) -> Mapping[str, FileExecutionState]:
        """Return the current immutable mapping of all file states."""
        return self._states

    def get_file_state(self, file_id: str) -> Optional[FileExecutionState]:
        """Get the state of one file, or None if it has not run."""
        return self._states.get(file_id)

    def get_executing_line(self, file_id: str) -> int:
        """Get the line currently executing in a file (-1 if none)."""
        state = self._states.get(file_id)
        return state.executing_line if state else -1

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener called with every new snapshot.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # =========================================================================
    # Writes
    # =========================================================================

    def _update(
        self,
        file_id: str,
        change: Callable[[FileExecutionState], FileExecutionState],
        file_name: Optional[str] = None,
    ) -> FileExecutionState:
        """Apply a change to one file's state and swap in a new mapping."""
        with self._lock:
            current = self._states.get(file_id) or FileExecutionState(
                file_id=file_id,
                file_name=file_name or file_id.rsplit("/", 1)[-1],
            )
            updated = change(current)
            states = dict(self._states)
            states[file_id] = updated
            self._states = _frozen(states)
            snapshot = self._states

        self._notify(snapshot)
        return updated

    def _notify(self, snapshot: Mapping[str, FileExecutionState]) -> None:
        for listener in list(self._listeners):
            listener(snapshot)

    def start_file_execution(self, file_id: str, file_name: str) -> FileExecutionState:
        """Begin a fresh execution of a file, keeping its line mapping."""

        def change(state: FileExecutionState) -> FileExecutionState:
            return FileExecutionState(
                file_id=file_id,
                file_name=file_name,
                step_lines=state.step_lines,
                is_running=True,
            )

        return self._update(file_id, change, file_name)

    def stop_file_execution(self, file_id: str) -> FileExecutionState:
        """Mark a file's execution finished and clear its executing marker."""
        return self._update(
            file_id,
            lambda s: replace(s, is_running=False, executing_step_index=-1, executing_line=-1),
        )

    def set_step_lines(self, file_id: str, step_lines: Mapping[int, int]) -> FileExecutionState:
        """Store a file's line mapping.

        An executing marker recorded before the mapping existed gets its
        line backfilled.
        """

        def change(state: FileExecutionState) -> FileExecutionState:
            executing_line = state.executing_line
            if state.executing_step_index >= 0 and executing_line < 0:
                executing_line = step_lines.get(state.executing_step_index, -1)
            return replace(
                state,
                step_lines=_frozen(dict(step_lines)),
                executing_line=executing_line,
            )

        return self._update(file_id, change)

    def map_steps_from_content(self, file_id: str, source_text: str) -> FileExecutionState:
        """Compute and store a file's line mapping from its text."""
        return self.set_step_lines(file_id, map_steps(source_text))

    def set_step_status(self, file_id: str, index: int, status: StepStatus) -> FileExecutionState:
        """Set the status of one step index."""

        def change(state: FileExecutionState) -> FileExecutionState:
            statuses = dict(state.step_statuses)
            statuses[index] = status
            return replace(state, step_statuses=_frozen(statuses))

        return self._update(file_id, change)

    def set_step_error(self, file_id: str, index: int, error: str) -> FileExecutionState:
        """Record the failure message of one step index."""

        def change(state: FileExecutionState) -> FileExecutionState:
            errors = dict(state.step_errors)
            errors[index] = error
            return replace(state, step_errors=_frozen(errors))

        return self._update(file_id, change)

    def set_executing_step(self, file_id: str, index: int) -> FileExecutionState:
        """Mark a step index as the one currently executing.

        The line is -1 until a mapping for the index is available.
        """
        return self._update(
            file_id,
            lambda s: replace(
                s,
                executing_step_index=index,
                executing_line=s.step_lines.get(index, -1),
            ),
        )

    def clear_executing_step(self, file_id: str) -> FileExecutionState:
        """Clear the currently executing marker of a file."""
        return self._update(
            file_id,
            lambda s: replace(s, executing_step_index=-1, executing_line=-1),
        )

    def clear_file_state(self, file_id: str) -> None:
        """Forget a file's state entirely."""
        with self._lock:
            if file_id not in self._states:
                return
            states = dict(self._states)
            del states[file_id]
            self._states = _frozen(states)
            snapshot = self._states
        self._notify(snapshot)

    def clear_all(self) -> None:
        """Forget every file's state (a new run is starting)."""
        with self._lock:
            self._states = _frozen({})
            snapshot = self._states
        self._notify(snapshot)
