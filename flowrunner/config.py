"""Flow dataclasses, YAML loading, engine settings and flow discovery."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import LoadError

# Keys that make a step an HTTP action rather than a flow reference
ACTION_KEYS = ("method", "url", "body", "verify", "extract")

SETTINGS_DIR = ".flowrunner"
SETTINGS_FILE = "settings.yml"


@dataclass
class FlowConfig:
    """Request defaults applied to every step of a flow."""

    base_url: Optional[str] = None
    headers: Optional[Dict[str, Any]] = None
    timeout: Optional[int] = None  # Milliseconds

    def merged(self, child: "FlowConfig") -> "FlowConfig":
        """Shallow-merge a nested flow's config over this one.

        Fields the child sets win; a child headers mapping replaces the
        parent's entirely.
        """
        return FlowConfig(
            base_url=child.base_url if child.base_url is not None else self.base_url,
            headers=child.headers if child.headers is not None else self.headers,
            timeout=child.timeout if child.timeout is not None else self.timeout,
        )


@dataclass
class TestStep:
    """A single flow step: an HTTP action or a reference to another flow."""

    __test__ = False  # not a pytest test class

    name: str
    method: str = "GET"
    url: Optional[str] = None
    headers: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    verify: Dict[str, Any] = field(default_factory=dict)
    extract: Dict[str, str] = field(default_factory=dict)
    flow: Optional[str] = None

    @property
    def is_flow_reference(self) -> bool:
        """Whether this step delegates to another flow file."""
        return self.flow is not None


@dataclass
class TestFlow:
    """A parsed flow document."""

    __test__ = False  # not a pytest test class

    name: str
    description: Optional[str] = None
    config: FlowConfig = field(default_factory=FlowConfig)
    before_test: List[TestStep] = field(default_factory=list)
    steps: List[TestStep] = field(default_factory=list)
    after_test: List[TestStep] = field(default_factory=list)
    flow: Optional[str] = None


@dataclass
class FlowInfo:
    """Metadata about a discovered flow file."""

    name: str  # From the 'name' field in YAML
    file_path: Path  # Absolute path to the flow file


@dataclass
class EnvVar:
    """A variable seeded into the run environment."""

    key: str
    value: Any
    enabled: bool = True


@dataclass
class EngineSettings:
    """Engine-wide defaults, overridable from .flowrunner/settings.yml."""

    default_timeout_ms: int = 10_000
    step_delay_ms: int = 100
    max_flow_depth: int = 10
    event_port: int = 7433
    flow_extensions: Tuple[str, ...] = (".yaml", ".yml")


def flatten_steps(flow: TestFlow) -> List[TestStep]:
    """Return the flow's steps in execution order.

    beforeTest, steps and afterTest form one zero-based index space. A
    flow that only delegates to another flow becomes a single synthetic
    step referencing it.
    """
    main_steps = flow.steps
    if not main_steps and flow.flow:
        main_steps = [TestStep(name=f"Flow Reference: {flow.flow}", flow=flow.flow)]
    return [*flow.before_test, *main_steps, *flow.after_test]


def parse_flow_document(text: str, source: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Parse flow text into a single mapping.

    Accepts one mapping document, or two documents where the first holds
    header fields and the second is either the step list or a mapping
    merged over the first.

    Args:
        text: Raw YAML text
        source: Optional file identity used in error messages

    Returns:
        The merged mapping, or None for empty input

    Raises:
        LoadError: If the YAML is invalid or the documents have another shape
    """
    try:
        documents = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise LoadError(f"Flow parse error: {e}", source=source)

    if not documents or all(doc is None for doc in documents):
        return None

    if len(documents) > 2:
        raise LoadError(
            f"Expected at most 2 YAML documents, got {len(documents)}",
            source=source,
        )

    base = documents[0]
    if base is None:
        base = {}
    if not isinstance(base, dict):
        raise LoadError(
            f"Flow document must be a mapping, got: {type(base).__name__}",
            source=source,
        )

    if len(documents) == 1:
        return base

    second = documents[1]
    if second is None:
        return base
    if isinstance(second, list):
        return {**base, "steps": second}
    if isinstance(second, dict):
        return {**base, **second}

    raise LoadError(
        f"Second YAML document must be a list of steps or a mapping, "
        f"got: {type(second).__name__}",
        source=source,
    )


def _parse_step(step_data: Any, idx: int, section: str) -> TestStep:
    """Parse a step dictionary into a TestStep dataclass."""
    if step_data is None:
        raise LoadError(f"Step {idx} in '{section}' is null/empty")
    if not isinstance(step_data, dict):
        raise LoadError(
            f"Step {idx} in '{section}' must be a dictionary, "
            f"got: {type(step_data).__name__}"
        )

    flow_ref = step_data.get("flow")
    if flow_ref is not None:
        conflicting = [key for key in ACTION_KEYS if key in step_data]
        if conflicting:
            raise LoadError(
                f"Step {idx} in '{section}' cannot combine 'flow' with "
                f"{', '.join(conflicting)}"
            )
        return TestStep(
            name=str(step_data.get("name", f"Flow: {flow_ref}")),
            flow=str(flow_ref),
        )

    if "url" not in step_data:
        raise LoadError(f"Step {idx} in '{section}' must define 'url' or 'flow'")

    for key in ("headers", "verify", "extract"):
        value = step_data.get(key)
        if value is not None and not isinstance(value, dict):
            raise LoadError(f"Step {idx} in '{section}': '{key}' must be a mapping")

    return TestStep(
        name=str(step_data.get("name", f"Step {idx + 1}")),
        method=str(step_data.get("method", "GET")).upper(),
        url=str(step_data["url"]),
        headers=step_data.get("headers") or {},
        body=step_data.get("body"),
        verify=step_data.get("verify") or {},
        extract=step_data.get("extract") or {},
    )


def _parse_flow_config(config_data: Any) -> FlowConfig:
    """Parse the 'config' block of a flow."""
    if config_data is None:
        return FlowConfig()
    if not isinstance(config_data, dict):
        raise LoadError("'config' must be a mapping")

    headers = config_data.get("headers")
    if headers is not None and not isinstance(headers, dict):
        raise LoadError("'config.headers' must be a mapping")

    timeout = config_data.get("timeout")
    return FlowConfig(
        base_url=config_data.get("baseUrl"),
        headers=headers,
        timeout=int(timeout) if timeout is not None else None,
    )


def _parse_section(data: Dict[str, Any], key: str) -> List[TestStep]:
    """Parse one of beforeTest/steps/afterTest."""
    items = data.get(key)
    if items is None:
        return []
    if not isinstance(items, list):
        raise LoadError(f"'{key}' must be a list of steps")
    return [_parse_step(item, idx, key) for idx, item in enumerate(items)]


def load_flow(
    text: str,
    default_name: str = "Untitled Flow",
    source: Optional[str] = None,
) -> TestFlow:
    """Load flow text into a TestFlow.

    Args:
        text: Raw YAML text (one or two documents)
        default_name: Name used when the document has none
        source: Optional file identity used in error messages

    Returns:
        Parsed TestFlow

    Raises:
        LoadError: If the text is empty, invalid YAML, or has an invalid shape
    """
    data = parse_flow_document(text, source=source)
    if data is None:
        raise LoadError("Empty flow document", source=source)

    try:
        flow_ref = data.get("flow")
        return TestFlow(
            name=str(data.get("name") or default_name),
            description=data.get("description"),
            config=_parse_flow_config(data.get("config")),
            before_test=_parse_section(data, "beforeTest"),
            steps=_parse_section(data, "steps"),
            after_test=_parse_section(data, "afterTest"),
            flow=str(flow_ref) if flow_ref is not None else None,
        )
    except LoadError as e:
        if e.source is None:
            e.source = source
        raise


def load_flow_file(file_path: Path) -> TestFlow:
    """Load a flow from disk.

    Raises:
        FileNotFoundError: If the file does not exist
        LoadError: If the content is not a valid flow
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Flow file not found at:\n  {file_path}")

    text = file_path.read_text(encoding="utf-8")
    return load_flow(text, default_name=file_path.stem, source=str(file_path))


def load_settings(project_path: Path) -> EngineSettings:
    """Load engine settings from <project>/.flowrunner/settings.yml.

    Missing file or missing keys fall back to defaults.
    """
    settings_path = project_path / SETTINGS_DIR / SETTINGS_FILE
    if not settings_path.exists():
        return EngineSettings()

    with open(settings_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise LoadError("Settings file must contain a YAML dictionary", source=str(settings_path))

    defaults = EngineSettings()
    extensions = data.get("flow_extensions", defaults.flow_extensions)
    return EngineSettings(
        default_timeout_ms=int(data.get("default_timeout_ms", defaults.default_timeout_ms)),
        step_delay_ms=int(data.get("step_delay_ms", defaults.step_delay_ms)),
        max_flow_depth=int(data.get("max_flow_depth", defaults.max_flow_depth)),
        event_port=int(data.get("event_port", defaults.event_port)),
        flow_extensions=tuple(extensions),
    )


def load_env_vars(file_path: Path) -> List[EnvVar]:
    """Load environment variables from a YAML file.

    Accepts either a list of {key, value, enabled} mappings or a plain
    key/value mapping (all enabled).
    """
    with open(file_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        return []

    if isinstance(data, dict):
        return [EnvVar(key=str(k), value=v) for k, v in data.items()]

    if not isinstance(data, list):
        raise LoadError("Environment file must be a list or a mapping", source=str(file_path))

    env_vars: List[EnvVar] = []
    for idx, item in enumerate(data):
        if not isinstance(item, dict) or "key" not in item:
            raise LoadError(
                f"Environment entry {idx} must be a mapping with a 'key'",
                source=str(file_path),
            )
        env_vars.append(
            EnvVar(
                key=str(item["key"]),
                value=item.get("value"),
                enabled=bool(item.get("enabled", True)),
            )
        )
    return env_vars


def initial_environment(env_vars: List[EnvVar]) -> Dict[str, Any]:
    """Build the starting environment from the enabled variables."""
    return {var.key: var.value for var in env_vars if var.enabled}


def discover_flows(
    directory: Path,
    extensions: Tuple[str, ...] = (".yaml", ".yml"),
) -> List[FlowInfo]:
    """Discover all loadable flow files under a directory.

    Hidden directories (such as .flowrunner/) are skipped.

    Args:
        directory: Directory to scan recursively
        extensions: File suffixes that mark flow files

    Returns:
        List of FlowInfo sorted by name
    """
    if not directory.is_dir():
        return []

    flows: List[FlowInfo] = []

    for file_path in sorted(directory.rglob("*")):
        if not file_path.is_file() or file_path.suffix not in extensions:
            continue
        relative_parts = file_path.relative_to(directory).parts
        if any(part.startswith(".") for part in relative_parts):
            continue

        try:
            data = parse_flow_document(file_path.read_text(encoding="utf-8"))
        except (LoadError, OSError, UnicodeDecodeError):
            continue

        if data is None:
            continue

        flows.append(
            FlowInfo(
                name=str(data.get("name") or file_path.stem),
                file_path=file_path.resolve(),
            )
        )

    flows.sort(key=lambda f: f.name.lower())

    return flows


def validate_flow_file(file_path: Path) -> tuple[bool, Optional[str]]:
    """Validate that a file contains a loadable flow.

    Returns:
        Tuple of (is_valid, error_message). If valid, error_message is None.
    """
    if not file_path.exists():
        return False, f"File not found: {file_path}"

    if not file_path.is_file():
        return False, f"Not a file: {file_path}"

    try:
        load_flow_file(file_path)
    except (LoadError, UnicodeDecodeError) as e:
        return False, str(e)

    return True, None


def find_flow_by_name(
    flows: List[FlowInfo],
    name: str,
) -> Optional[FlowInfo]:
    """Find a flow by name or file name (case-insensitive).

    Args:
        flows: List of discovered flows
        name: Flow name to search for

    Returns:
        Matching FlowInfo or None if not found
    """
    name_lower = name.lower()

    # First try exact match on name, then on file name
    for flow in flows:
        if flow.name.lower() == name_lower:
            return flow
    for flow in flows:
        if flow.file_path.name.lower() == name_lower:
            return flow

    # Then try partial match (single match only)
    matches = [f for f in flows if name_lower in f.name.lower()]

    if len(matches) == 1:
        return matches[0]

    return None
