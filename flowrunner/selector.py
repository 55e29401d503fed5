"""Interactive flow selection using questionary."""

from typing import List, Optional

import questionary

from .config import FlowInfo
from .display import ICONS, console

# Value of the choice that runs every discovered flow
RUN_ALL = "__all__"


def select_flow_interactive(
    flows: List[FlowInfo],
    allow_all: bool = True,
) -> Optional[object]:
    """Show interactive picker for flow selection.

    Args:
        flows: List of discovered flows
        allow_all: Offer a choice that runs the whole folder

    Returns:
        Selected FlowInfo, RUN_ALL, or None if cancelled
    """
    if not flows:
        return None

    # Format: "Flow Name (filename.yaml)"
    choices: List[questionary.Choice] = [
        questionary.Choice(title=f"{flow.name} ({flow.file_path.name})", value=flow)
        for flow in flows
    ]

    if allow_all and len(flows) > 1:
        choices.append(questionary.Choice(title=f"Run all ({len(flows)} flows)", value=RUN_ALL))

    choices.append(
        questionary.Choice(
            title="Cancel",
            value=None,
        )
    )

    console.print()
    console.print(f"[bold cyan]{ICONS['file']} {len(flows)} flows found[/bold cyan]")
    console.print()

    selected = questionary.select(
        "Select a flow to run:",
        choices=choices,
        use_arrow_keys=True,
        use_shortcuts=False,
        pointer=ICONS["arrow"],
        qmark=ICONS["diamond"],
    ).ask()

    # questionary returns the title string for a None-valued choice
    if isinstance(selected, FlowInfo) or selected == RUN_ALL:
        return selected
    return None


def format_flow_list(flows: List[FlowInfo]) -> str:
    """Format flow list for display in error messages."""
    return "\n".join(f"  - {flow.name} ({flow.file_path.name})" for flow in flows)
