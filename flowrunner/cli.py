"""
flowrunner CLI

Runs YAML test flows: HTTP steps locally, or delegated to an external
automation backend that reports progress events.

Usage:
    flowrunner path/to/flows            # pick a flow interactively
    flowrunner path/to/login.yaml       # run one file
    flowrunner path/to/flows --all      # run the whole folder
"""

import argparse
import asyncio
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

from rich import box
from rich.panel import Panel
from rich.text import Text

from flowrunner.config import (
    EngineSettings,
    EnvVar,
    FlowInfo,
    discover_flows,
    find_flow_by_name,
    initial_environment,
    load_env_vars,
    load_settings,
    validate_flow_file,
)
from flowrunner.display import ICONS
from flowrunner.display_adapter import DisplayAdapter, get_display
from flowrunner.errors import FlowError
from flowrunner.files import LocalFileProvider
from flowrunner.runner import DelegatedRunner, FlowRunner
from flowrunner.selector import RUN_ALL, format_flow_list, select_flow_interactive
from flowrunner.server import ProcessBridge
from flowrunner.types import CancelSignal, StepStatus, TestResult

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130


def _print_error_panel(message: str) -> None:
    """Print an error message in a red rounded panel."""
    console = get_display().console
    console.print()
    console.print(
        Panel(
            Text.from_markup(message),
            title="[bold red]Error[/bold red]",
            border_style="red",
            box=box.ROUNDED,
            expand=False,
        )
    )
    console.print()


def _fail(message: str) -> None:
    _print_error_panel(f"[bold red]{ICONS['cross']} {message}[/bold red]")
    sys.exit(EXIT_FAILED)


def parse_env_assignments(assignments: List[str]) -> List[EnvVar]:
    """Parse KEY=VALUE command-line assignments.

    Raises:
        ValueError: If an assignment has no '=' or an empty key
    """
    env_vars = []
    for assignment in assignments:
        key, sep, value = assignment.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid variable assignment '{assignment}', expected KEY=VALUE")
        env_vars.append(EnvVar(key=key.strip(), value=value))
    return env_vars


def exit_code_for(results: List[TestResult]) -> int:
    """Map run results to a process exit code."""
    if any(result.status == StepStatus.FAILED for result in results):
        return EXIT_FAILED
    if any(result.status == StepStatus.CANCELLED for result in results):
        return EXIT_INTERRUPTED
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flowrunner",
        description="Run YAML test flows",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
{ICONS['rocket']} Examples:
    flowrunner flows/
    flowrunner flows/ -w "Login"
    flowrunner flows/ --all --env-file env.yaml
    flowrunner flows/login.yaml -e token=abc --verbose
    flowrunner flows/login.yaml --backend "mobile-runner --events {{event_url}} {{file}}"

{ICONS['file']} Flow files:
    - Extensions: .yaml or .yml
    - Optional settings: <project>/.flowrunner/settings.yml
        """,
    )
    parser.add_argument(
        "path",
        nargs="?",
        default=".",
        help="Flow file or folder containing flows (default: current directory)",
    )
    parser.add_argument(
        "-f",
        "--file",
        dest="flow_file",
        default=None,
        help="Direct path to a flow file",
    )
    parser.add_argument(
        "-w",
        "--flow",
        dest="flow_name",
        default=None,
        help="Name of the flow to run (from 'name' field or file name)",
    )
    parser.add_argument(
        "--all",
        dest="run_all",
        action="store_true",
        default=False,
        help="Run every flow in the folder as one batch",
    )
    parser.add_argument(
        "--env-file",
        dest="env_file",
        default=None,
        help="YAML file with variables seeding the run environment",
    )
    parser.add_argument(
        "-e",
        "--env",
        dest="env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Set a variable (repeatable, overrides --env-file)",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=None,
        metavar="MS",
        help="Default request timeout in milliseconds",
    )
    parser.add_argument(
        "--delay",
        type=int,
        default=None,
        metavar="MS",
        help="Pacing delay between steps in milliseconds",
    )
    parser.add_argument(
        "--backend",
        default=None,
        metavar="CMD",
        help="Delegate execution to a backend command ({event_url} and {file} are substituted)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=False,
        help="Show request and response details and backend logs",
    )
    return parser


def _resolve_targets(
    args: argparse.Namespace,
    root: Path,
    settings: EngineSettings,
) -> Optional[List[FlowInfo]]:
    """Work out which flows to run.

    Returns:
        The flows to run, or None to run the whole folder as a batch
    """
    if args.flow_name and args.flow_file:
        _fail("Cannot use both -w/--flow and -f/--file flags together")

    target = Path(args.flow_file).resolve() if args.flow_file else None
    if target is None and Path(args.path).is_file():
        target = Path(args.path).resolve()

    if target is not None:
        is_valid, error_msg = validate_flow_file(target)
        if not is_valid:
            _print_error_panel(
                f"[bold red]{ICONS['cross']} Invalid flow file![/bold red]\n\n"
                f"[white]File:[/white] [cyan]{target}[/cyan]\n\n"
                f"[white]Error:[/white] {error_msg}"
            )
            sys.exit(EXIT_FAILED)
        return [FlowInfo(name=target.stem, file_path=target)]

    if args.run_all:
        return None

    flows = discover_flows(root, settings.flow_extensions)

    if args.flow_name:
        found = find_flow_by_name(flows, args.flow_name)
        if found is None:
            if flows:
                _print_error_panel(
                    f"[bold red]{ICONS['cross']} Flow '{args.flow_name}' not found![/bold red]\n\n"
                    f"[white]Available flows:[/white]\n"
                    f"{format_flow_list(flows)}"
                )
            else:
                _print_error_panel(
                    f"[bold red]{ICONS['cross']} No flows found in {root}![/bold red]"
                )
            sys.exit(EXIT_FAILED)
        return [found]

    if not flows:
        _print_error_panel(
            f"[bold red]{ICONS['cross']} No flow files found![/bold red]\n\n"
            f"[white]Create a flow file in:[/white]\n"
            f"  [cyan]{root}[/cyan]\n\n"
            f"[white]Example:[/white]\n"
            f"  [cyan]name: Health check[/cyan]\n"
            f"  [cyan]steps:[/cyan]\n"
            f"  [cyan]  - name: Ping[/cyan]\n"
            f"  [cyan]    url: https://example.com/health[/cyan]"
        )
        sys.exit(EXIT_FAILED)

    selected = select_flow_interactive(flows)
    if selected is None:
        get_display().console.print(f"[yellow]{ICONS['stop']} Cancelled[/yellow]")
        sys.exit(EXIT_OK)
    if selected == RUN_ALL:
        return None
    return [selected]


def _install_interrupt_handler(cancel: CancelSignal, loop: asyncio.AbstractEventLoop) -> None:
    """Make Ctrl+C cancel the run instead of killing the process."""
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel)
    except NotImplementedError:
        # Python-level handlers can fire while the loop is blocked in select
        signal.signal(signal.SIGINT, lambda signum, frame: cancel.cancel_threadsafe(loop))


async def _run(
    args: argparse.Namespace,
    root: Path,
    settings: EngineSettings,
    env_vars: List[EnvVar],
    targets: Optional[List[FlowInfo]],
) -> List[TestResult]:
    cancel = CancelSignal()
    _install_interrupt_handler(cancel, asyncio.get_running_loop())

    files = LocalFileProvider(root)
    results: List[TestResult] = []

    if args.backend:
        bridge = ProcessBridge(args.backend, port=settings.event_port, cwd=root)
        bridge_runner = DelegatedRunner(bridge, files, env_vars=env_vars)
        if targets is None:
            targets = discover_flows(root, settings.flow_extensions)
        for flow in targets:
            if cancel.aborted:
                break
            file_id = files.id_for(flow.file_path)
            results.append(
                await bridge_runner.run_flow(
                    files.read_file(file_id), file_id, flow.file_path.name, cancel=cancel
                )
            )
        return results

    runner = FlowRunner(files, settings=settings, env_vars=env_vars)
    if targets is None:
        return await runner.run_folder(files.id_for(root), cancel=cancel)

    for flow in targets:
        if cancel.aborted:
            break
        file_id = files.id_for(flow.file_path)
        results.append(
            await runner.run_flow(
                files.read_file(file_id), file_id, flow.file_path.name, cancel=cancel
            )
        )
    return results


def main() -> None:
    """Main entry point."""
    args = build_parser().parse_args()

    # Configure display mode (must be done before any display calls)
    DisplayAdapter.use_verbose = args.verbose
    DisplayAdapter.reset()

    path = Path(args.path).resolve()
    if not path.exists():
        _fail(f"Path not found: {path}")
    root = path if path.is_dir() else path.parent

    try:
        settings = load_settings(root)
        if args.timeout is not None:
            settings = replace(settings, default_timeout_ms=args.timeout)
        if args.delay is not None:
            settings = replace(settings, step_delay_ms=args.delay)

        env_vars: List[EnvVar] = []
        if args.env_file:
            env_vars.extend(load_env_vars(Path(args.env_file)))
        env_vars.extend(parse_env_assignments(args.env))
    except (FlowError, OSError, ValueError) as e:
        _fail(str(e))

    if args.verbose and env_vars:
        variables: Dict[str, object] = initial_environment(env_vars)
        get_display().console.print(f"[dim]Variables: {', '.join(sorted(variables))}[/dim]")

    targets = _resolve_targets(args, root, settings)

    try:
        results = asyncio.run(_run(args, root, settings, env_vars, targets))
    except KeyboardInterrupt:
        get_display().print_run_interrupted()
        sys.exit(EXIT_INTERRUPTED)
    except FlowError as e:
        _fail(str(e))

    sys.exit(exit_code_for(results))


if __name__ == "__main__":
    main()
