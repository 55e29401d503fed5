"""CI-style terminal display for flow runs.

Single-line step results with status icons, indentation by nesting depth,
and a compact summary per file and per batch.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generator, Optional

from rich.console import Console
from rich.markup import escape

from .types import StepStatus

if TYPE_CHECKING:
    from .types import BatchSummary, StepResult, TestResult


# Shared console instance
console = Console()

ICONS = {
    "rocket": "🚀",
    "info": "ℹ",
    "file": "📄",
    "folder": "📁",
    "cross": "✗",
    "check": "✓",
    "warning": "⚠",
    "stop": "⏹",
    "arrow": "❯",
    "diamond": "◆",
}


@dataclass
class StatusIcons:
    """Status icons with colors for CI-style display."""

    RUNNING = "[cyan][bold]•[/bold][/cyan]"
    SUCCESS = "[green][bold]✓[/bold][/green]"
    FAILED = "[red][bold]✗[/bold][/red]"
    SKIPPED = "[yellow]⏭[/yellow]"
    CANCELLED = "[yellow]⏹[/yellow]"
    GROUP = "[white]▶[/white]"
    PENDING = "[dim]○[/dim]"


_STATUS_ICONS = {
    StepStatus.RUNNING: StatusIcons.RUNNING,
    StepStatus.PASSED: StatusIcons.SUCCESS,
    StepStatus.FAILED: StatusIcons.FAILED,
    StepStatus.SKIPPED: StatusIcons.SKIPPED,
    StepStatus.CANCELLED: StatusIcons.CANCELLED,
    StepStatus.PENDING: StatusIcons.PENDING,
}


@dataclass
class DisplayState:
    """Tracks the base indentation (e.g. inside a batch)."""

    indent_level: int = 0


# Global display state
_state = DisplayState()


def _get_indent(depth: int = 0) -> str:
    """Get indentation string for a nesting depth."""
    return "    " * (_state.indent_level + depth)


def _format_duration(milliseconds: float) -> str:
    """Format a millisecond duration in human-readable form."""
    if milliseconds < 1000:
        return f"{int(milliseconds)}ms"
    seconds = milliseconds / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes}m {secs:02d}s"


def _format_body(body: Any, max_lines: int = 20) -> str:
    """Render a request/response body, truncated to max_lines."""
    if body is None or body == "":
        return ""
    text = body if isinstance(body, str) else json.dumps(body, indent=2, ensure_ascii=False)
    lines = text.splitlines()
    if len(lines) > max_lines:
        lines = lines[:max_lines] + [f"... ({len(lines) - max_lines} more lines)"]
    return "\n".join(lines)


@contextmanager
def indent() -> Generator[None, None, None]:
    """Context manager for increasing indentation level."""
    _state.indent_level += 1
    try:
        yield
    finally:
        _state.indent_level -= 1


# =============================================================================
# Header
# =============================================================================


def print_header(
    flow_name: str,
    file_name: str,
    base_url: Optional[str] = None,
    mode: str = "local",
) -> None:
    """Print run header."""
    console.print()
    console.print(f"[bold]Flow:[/bold] {escape(str(flow_name))}")
    parts = [f"File: {escape(file_name)}", f"Mode: {mode}"]
    if base_url:
        parts.append(f"Base URL: {escape(base_url)}")
    console.print(" | ".join(parts))
    console.print()


def print_batch_header(folder_name: str, file_count: int) -> None:
    """Print folder batch header."""
    console.print()
    console.print(
        f"[bold cyan]{ICONS['folder']} {escape(folder_name)}[/bold cyan] "
        f"[dim]({file_count} flows)[/dim]"
    )


# =============================================================================
# Step Display
# =============================================================================


def print_step_result(result: "StepResult") -> None:
    """Print a settled step as a single line.

    Format: [✓] Step name                                    120ms
            Error: message
    """
    if result.marker:
        print_flow_marker(result.name, result.depth)
        return

    indent_str = _get_indent(result.depth)
    name = escape(result.name)
    icon = _STATUS_ICONS.get(result.status, StatusIcons.PENDING)
    line = f"{indent_str}[{icon}] {name}"
    if result.request is not None:
        line += f" [dim]{result.request.method} {escape(result.request.url)}[/dim]"
    console.print(f"{line}  [dim]{_format_duration(result.duration)}[/dim]")

    if result.error and result.status in (StepStatus.FAILED, StepStatus.CANCELLED):
        console.print(f"{indent_str}    [red]Error: {escape(result.error)}[/red]")


def print_flow_marker(name: str, depth: int = 0) -> None:
    """Print the group line that opens a nested flow."""
    console.print(f"{_get_indent(depth)}[{StatusIcons.GROUP}] [cyan]{escape(name)}[/cyan]")


def print_step_details(result: "StepResult") -> None:
    """Print request and response snapshots (verbose mode)."""
    indent_str = _get_indent(result.depth) + "    "

    if result.request is not None:
        console.print(f"{indent_str}[bold]Request[/bold] {result.request.method} "
                      f"{escape(result.request.url)}")
        for key, value in result.request.headers.items():
            console.print(f"{indent_str}  [dim]{escape(key)}: {escape(str(value))}[/dim]")
        body = _format_body(result.request.body)
        if body:
            for line in body.splitlines():
                console.print(f"{indent_str}  {escape(line)}")

    if result.response is not None:
        console.print(f"{indent_str}[bold]Response[/bold] {result.response.status}")
        body = _format_body(result.response.body)
        if body:
            for line in body.splitlines():
                console.print(f"{indent_str}  {escape(line)}")


def print_log(message: str, depth: int = 0) -> None:
    """Print a backend log line under the running step."""
    console.print(f"{_get_indent(depth)}    [dim]{escape(message)}[/dim]")


def print_warning(message: str) -> None:
    """Print a warning line."""
    console.print(f"[yellow]{ICONS['warning']} Warning: {escape(message)}[/yellow]")


# =============================================================================
# Run Lifecycle
# =============================================================================


def print_run_interrupted() -> None:
    """Print run interrupted message."""
    console.print()
    console.print("[yellow]Run cancelled by user[/yellow]")


def print_summary(result: "TestResult") -> None:
    """Print compact run summary.

    Format: ────────────────────────────────────────
            ✓ Passed | 3 passed, 0 failed | 1.2s
    """
    console.print()
    console.print("─" * 40)

    duration_str = _format_duration(result.total_duration)
    counts = f"{result.passed} passed, {result.failed} failed"
    if result.status == StepStatus.PASSED:
        label = f"[green]{ICONS['check']} Passed[/green]"
    elif result.status == StepStatus.CANCELLED:
        label = f"[yellow]{ICONS['stop']} Cancelled[/yellow]"
    else:
        label = f"[red]{ICONS['cross']} Failed[/red]"
    console.print(f"{label} | {counts} | {duration_str}")
    console.print()


def print_batch_summary(summary: "BatchSummary") -> None:
    """Print one line per file and a batch total."""
    console.print()
    console.print("═" * 40)
    for run in summary.runs:
        icon = _STATUS_ICONS.get(run.status, StatusIcons.PENDING)
        console.print(
            f"[{icon}] {escape(run.file_name)}  "
            f"[dim]{run.passed} passed, {run.failed} failed, "
            f"{_format_duration(run.total_duration)}[/dim]"
        )
    status = summary.status
    color = "green" if status == StepStatus.PASSED else "red"
    console.print(
        f"[{color}]{escape(summary.folder_name or summary.batch_id)}[/{color}] | "
        f"{len(summary.runs)} flows | {summary.passed} passed, {summary.failed} failed | "
        f"{_format_duration(summary.total_duration)}"
    )
    console.print()
