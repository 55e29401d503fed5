"""Static mapping from step index to source line.

`map_steps` is a pure function of the flow text. The indices it assigns
are the same ones `config.flatten_steps` assigns: beforeTest, then steps,
then afterTest, regardless of the order the sections appear in the file.
"""

import re
from typing import Dict, List, Optional, Set

SECTION_ORDER = ("beforeTest", "steps", "afterTest")

# Lines scanned below a list item when its own line carries no key
LOOKAHEAD_LINES = 4

_LIST_ITEM = re.compile(r"^(\s*)-(?:\s|$)")
_INLINE_KEY = re.compile(r"^\s*-\s*\w+:\s*")
_INLINE_FLOW = re.compile(r"-\s*(?:flow|runFlow):")
_NESTED_KEY = re.compile(r"^\s+\w+:\s*")
_NESTED_FLOW = re.compile(r"^\s*(?:flow|runFlow):")
_NESTED_FILE = re.compile(r"^\s+file:")
_TOP_LEVEL_KEY = re.compile(r"^([A-Za-z_]\w*)\s*:")


def _is_step_item(lines: List[str], idx: int, indent: int) -> bool:
    """Decide whether the list item at lines[idx] starts a step.

    Single-line steps carry a key on the item line itself; block steps
    carry one on a following line before the next sibling item.
    """
    line = lines[idx]
    if _INLINE_KEY.match(line) or "name:" in line or _INLINE_FLOW.search(line):
        return True

    for nxt in lines[idx + 1: idx + 1 + LOOKAHEAD_LINES]:
        sibling = _LIST_ITEM.match(nxt)
        if sibling and len(sibling.group(1)) <= indent:
            break
        if (
            _NESTED_KEY.match(nxt)
            or "name:" in nxt
            or _NESTED_FLOW.match(nxt)
            or _NESTED_FILE.match(nxt)
        ):
            return True

    return False


def map_steps(source_text: str) -> Dict[int, int]:
    """Map each step index of a flow document to its 0-based line number.

    A `---` divider that follows content starts the step document; a bare
    list there is the `steps` section. A section present in the step
    document replaces the header document's section of the same name.
    Within a section, the first list item's indentation is the step
    indentation and deeper items belong to step bodies. A flow that only
    delegates maps index 0 to its `flow:` line.

    Args:
        source_text: Raw flow text

    Returns:
        Mapping of step index to line number
    """
    lines = source_text.splitlines()
    collected: Dict[str, List[int]] = {name: [] for name in SECTION_ORDER}
    indents: Dict[str, int] = {}
    section: Optional[str] = None
    seen_content = False
    in_step_document = False
    replaced: Set[str] = set()
    flow_line: Optional[int] = None

    def enter(name: str) -> None:
        if in_step_document and name not in replaced:
            replaced.add(name)
            collected[name] = []
            indents.pop(name, None)

    for idx, line in enumerate(lines):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        if stripped == "---":
            section = "steps" if seen_content else None
            in_step_document = seen_content
            continue

        seen_content = True

        key_match = _TOP_LEVEL_KEY.match(line)
        if key_match:
            key = key_match.group(1)
            section = key if key in SECTION_ORDER else None
            if section:
                enter(section)
            if key == "flow":
                flow_line = idx
            continue

        item = _LIST_ITEM.match(line)
        if not item or section is None:
            continue

        enter(section)
        indent = len(item.group(1))
        if indents.setdefault(section, indent) != indent:
            continue

        if _is_step_item(lines, idx, indent):
            collected[section].append(idx)

    if not collected["steps"] and flow_line is not None:
        collected["steps"].append(flow_line)

    mapping: Dict[int, int] = {}
    for name in SECTION_ORDER:
        for line_number in collected[name]:
            mapping[len(mapping)] = line_number
    return mapping
