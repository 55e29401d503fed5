"""Execution context for variable storage, interpolation and extraction."""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from . import mocks
from .types import ResponseSnapshot

# Pattern matches {{ var }}, {{ var.path.0 }}, {{ $mock.email }}
_INTERPOLATION_PATTERN = re.compile(r"\{\{([^}]+)\}\}")


class _Missing:
    """Sentinel for a path that does not resolve."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def get_value_by_path(obj: Any, path: Union[str, List[str]]) -> Any:
    """Walk a dot-separated path through nested dicts and lists.

    Args:
        obj: The root object
        path: Dot path ("data.items.0.id") or pre-split segments

    Returns:
        The value at the path (None included), or MISSING if any
        segment is absent
    """
    segments = path.split(".") if isinstance(path, str) else path
    current = obj
    for segment in segments:
        if segment == "":
            continue
        if isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, list):
            try:
                idx = int(segment)
            except ValueError:
                return MISSING
            if not 0 <= idx < len(current):
                return MISSING
            current = current[idx]
        else:
            return MISSING
    return current


def stringify(value: Any) -> str:
    """Render a value for substitution into text.

    Strings pass through, numbers use str(), everything else is JSON so
    objects never degrade to a Python repr.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return json.dumps(value, ensure_ascii=False)


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _to_bool(value: Any) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "false"):
            return lowered == "true"
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value in (0, 1):
        return bool(value)
    return value


def _parse_json_if_string(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except (json.JSONDecodeError, ValueError):
            return value
    return value


def loose_equals(actual: Any, expected: Any) -> bool:
    """Compare a response value with an expected value, coercing types.

    Numbers compare numerically against numeric strings, booleans against
    "true"/"false", and objects against their JSON text.
    """
    if actual is None or expected is None:
        return actual is None and expected is None

    if isinstance(actual, bool) or isinstance(expected, bool):
        return _to_bool(actual) == _to_bool(expected)

    if isinstance(actual, (int, float)) or isinstance(expected, (int, float)):
        actual_num = _to_number(actual)
        return actual_num is not None and actual_num == _to_number(expected)

    if isinstance(actual, (dict, list)) or isinstance(expected, (dict, list)):
        return _parse_json_if_string(actual) == _parse_json_if_string(expected)

    return str(actual) == str(expected)


@dataclass
class ExecutionContext:
    """The run environment: one mutable variable map shared by every step.

    The same instance is passed by reference into nested flows, so values
    extracted anywhere are visible to every later step of the run.
    """

    variables: Dict[str, Any] = field(default_factory=dict)

    def set(self, name: str, value: Any) -> None:
        """Set a variable value."""
        self.variables[name] = value

    def get(self, name: str, default: Optional[Any] = None) -> Any:
        """Get a variable value with optional default."""
        return self.variables.get(name, default)

    def update(self, variables: Dict[str, Any]) -> None:
        """Update multiple variables at once."""
        self.variables.update(variables)

    def lookup(self, expr: str) -> Any:
        """Resolve placeholder content to a raw value.

        Mock keys generate a fresh value. Other keys are looked up as a
        variable name, then as a dot path into a variable.

        Returns:
            The resolved value, or MISSING
        """
        kind = mocks.mock_kind(expr)
        if kind is not None:
            value = mocks.generate(kind)
            return MISSING if value is None else value

        if expr in self.variables:
            return self.variables[expr]

        parts = expr.split(".")
        if len(parts) > 1 and parts[0] in self.variables:
            base = _parse_json_if_string(self.variables[parts[0]])
            return get_value_by_path(base, parts[1:])

        return MISSING

    def interpolate(self, template: str) -> str:
        """Replace {{expr}} placeholders with values.

        Unresolved placeholders are left in place unchanged.

        Args:
            template: String containing {{expr}} placeholders

        Returns:
            String with resolvable placeholders replaced
        """

        def replace_match(match: "re.Match[str]") -> str:
            value = self.lookup(match.group(1).strip())
            if value is MISSING:
                return match.group(0)
            return stringify(value)

        return _INTERPOLATION_PATTERN.sub(replace_match, template)

    def deep_interpolate(self, value: Any) -> Any:
        """Interpolate strings inside nested lists and dicts."""
        if isinstance(value, str):
            return self.interpolate(value)
        if isinstance(value, list):
            return [self.deep_interpolate(item) for item in value]
        if isinstance(value, dict):
            return {key: self.deep_interpolate(item) for key, item in value.items()}
        return value

    def resolve_value(self, value: Any) -> Any:
        """Resolve an expected value without a stringify round trip.

        A string that is exactly one placeholder yields the raw variable
        (objects stay objects); other strings are interpolated as text.
        """
        if isinstance(value, str):
            match = _INTERPOLATION_PATTERN.fullmatch(value.strip())
            if match:
                resolved = self.lookup(match.group(1).strip())
                return value if resolved is MISSING else resolved
        return self.deep_interpolate(value)

    def extract(
        self,
        extract_map: Dict[str, Any],
        response: ResponseSnapshot,
    ) -> Dict[str, Any]:
        """Write response values into the environment.

        Sources: "body.<path>" (or "body"), "status", "headers.<name>".
        Paths that do not resolve are skipped.

        Args:
            extract_map: Mapping of variable name to source expression
            response: The step's response

        Returns:
            The variables that were written
        """
        written: Dict[str, Any] = {}

        for name, source in extract_map.items():
            if not isinstance(source, str):
                continue
            source = source.strip()

            if source == "body":
                value = response.data
            elif source.startswith("body."):
                value = get_value_by_path(response.data, source[len("body."):])
            elif source == "status":
                value = response.status
            elif source.startswith("headers."):
                header = source[len("headers."):].lower()
                value = MISSING
                for key, header_value in response.headers.items():
                    if key.lower() == header:
                        value = header_value
                        break
            else:
                continue

            if value is not MISSING:
                self.set(name, value)
                written[name] = value

        return written
