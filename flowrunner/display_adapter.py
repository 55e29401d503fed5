"""Display adapter: one switchable entry point for all console output.

Usage:
    from flowrunner.display_adapter import get_display

    display = get_display()
    display.print_header(flow.name, file_name)
    display.print_step_result(result)

To enable request/response details:
    DisplayAdapter.use_verbose = True
    DisplayAdapter.reset()
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from . import display as display_module

if TYPE_CHECKING:
    from .types import BatchSummary, StepResult, TestResult


class DisplayAdapter:
    """Adapter over the display module with an optional verbose mode."""

    # Global switch - set before creating instances
    use_verbose: bool = False

    _instance: Optional["DisplayAdapter"] = None

    @classmethod
    def get_instance(cls) -> "DisplayAdapter":
        """Get or create the singleton adapter instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None

    def __init__(self) -> None:
        self._display = display_module
        self._is_verbose = self.use_verbose

    @property
    def console(self):
        """Get the Rich console instance."""
        return self._display.console

    # =========================================================================
    # Header
    # =========================================================================

    def print_header(
        self,
        flow_name: str,
        file_name: str,
        base_url: Optional[str] = None,
        mode: str = "local",
    ) -> None:
        """Print run header."""
        self._display.print_header(flow_name, file_name, base_url, mode)

    def print_batch_header(self, folder_name: str, file_count: int) -> None:
        """Print folder batch header."""
        self._display.print_batch_header(folder_name, file_count)

    # =========================================================================
    # Step Display
    # =========================================================================

    def print_step_result(self, result: "StepResult") -> None:
        """Print a settled step (plus request/response when verbose)."""
        if result.marker:
            self.print_flow_marker(result.name, result.depth)
            return
        self._display.print_step_result(result)
        if self._is_verbose:
            self._display.print_step_details(result)

    def print_flow_marker(self, name: str, depth: int = 0) -> None:
        """Print the group line that opens a nested flow."""
        self._display.print_flow_marker(name, depth)

    def print_log(self, message: str, depth: int = 0) -> None:
        """Print a log line (verbose mode only)."""
        if self._is_verbose:
            self._display.print_log(message, depth)

    def print_warning(self, message: str) -> None:
        """Print a warning line."""
        self._display.print_warning(message)

    def indent(self):
        """Context manager for indentation."""
        return self._display.indent()

    # =========================================================================
    # Run Lifecycle
    # =========================================================================

    def print_run_interrupted(self) -> None:
        """Print run interrupted message."""
        self._display.print_run_interrupted()

    def print_summary(self, result: "TestResult") -> None:
        """Print run summary."""
        self._display.print_summary(result)

    def print_batch_summary(self, summary: "BatchSummary") -> None:
        """Print batch summary."""
        self._display.print_batch_summary(summary)


def get_display() -> DisplayAdapter:
    """Get the display adapter singleton instance."""
    return DisplayAdapter.get_instance()
