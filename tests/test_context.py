"""Tests for the run environment: interpolation, extraction and comparison."""

import re

import pytest

from flowrunner.context import (
    MISSING,
    ExecutionContext,
    get_value_by_path,
    loose_equals,
    stringify,
)
from flowrunner.types import ResponseSnapshot


class TestGetValueByPath:
    """Tests for dot-path traversal."""

    def test_nested_dicts_and_lists(self) -> None:
        data = {"data": {"items": [{"id": 7}, {"id": 8}]}}
        assert get_value_by_path(data, "data.items.1.id") == 8

    def test_missing_segment(self) -> None:
        assert get_value_by_path({"a": {}}, "a.b") is MISSING

    def test_index_out_of_range(self) -> None:
        assert get_value_by_path({"a": [1]}, "a.3") is MISSING

    def test_non_numeric_list_segment(self) -> None:
        assert get_value_by_path({"a": [1]}, "a.first") is MISSING

    def test_none_is_a_value(self) -> None:
        """A present key holding null resolves to None, not MISSING."""
        assert get_value_by_path({"a": None}, "a") is None

    def test_traversing_scalar(self) -> None:
        assert get_value_by_path({"a": 5}, "a.b") is MISSING


class TestStringify:
    """Tests for value rendering in text."""

    def test_string_passthrough(self) -> None:
        assert stringify("abc") == "abc"

    def test_numbers(self) -> None:
        assert stringify(42) == "42"
        assert stringify(1.5) == "1.5"

    def test_objects_render_as_json(self) -> None:
        assert stringify({"a": [1, 2]}) == '{"a": [1, 2]}'
        assert stringify(True) == "true"
        assert stringify(None) == "null"


class TestInterpolate:
    """Tests for {{placeholder}} substitution."""

    def test_simple_variable(self) -> None:
        context = ExecutionContext({"token": "abc"})
        assert context.interpolate("Bearer {{token}}") == "Bearer abc"

    def test_whitespace_inside_braces(self) -> None:
        context = ExecutionContext({"id": 3})
        assert context.interpolate("/users/{{ id }}") == "/users/3"

    def test_missing_variable_left_unchanged(self) -> None:
        context = ExecutionContext()
        assert context.interpolate("/users/{{id}}") == "/users/{{id}}"

    def test_dot_path_into_object(self) -> None:
        context = ExecutionContext({"user": {"profile": {"city": "Hanoi"}}})
        assert context.interpolate("{{user.profile.city}}") == "Hanoi"

    def test_dot_path_into_json_string(self) -> None:
        """String variables holding JSON are parsed for path lookup."""
        context = ExecutionContext({"user": '{"id": 9}'})
        assert context.interpolate("{{user.id}}") == "9"

    def test_exact_key_with_dot_wins(self) -> None:
        """A variable whose name contains a dot is found before path lookup."""
        context = ExecutionContext({"a.b": "exact", "a": {"b": "path"}})
        assert context.interpolate("{{a.b}}") == "exact"

    def test_object_value_renders_as_json(self) -> None:
        context = ExecutionContext({"ids": [1, 2]})
        assert context.interpolate("ids={{ids}}") == "ids=[1, 2]"

    def test_mock_placeholders(self) -> None:
        """Mock placeholders generate values; unknown kinds stay literal."""
        context = ExecutionContext()
        assert re.fullmatch(r"[0-9a-f-]{36}", context.interpolate("{{$uuid}}"))
        assert "@" in context.interpolate("{{$mock.email}}")
        assert context.interpolate("{{$mock.nope}}") == "{{$mock.nope}}"

    def test_mock_values_are_fresh_per_occurrence(self) -> None:
        context = ExecutionContext()
        first, second = context.interpolate("{{$uuid}} {{$uuid}}").split()
        assert first != second

    def test_deep_interpolate(self) -> None:
        context = ExecutionContext({"name": "Ann", "n": 2})
        body = {"user": {"name": "{{name}}"}, "tags": ["{{n}}", 5], "flag": True}
        assert context.deep_interpolate(body) == {
            "user": {"name": "Ann"},
            "tags": ["2", 5],
            "flag": True,
        }


class TestResolveValue:
    """Tests for expected-value resolution."""

    def test_single_placeholder_keeps_type(self) -> None:
        context = ExecutionContext({"ids": [1, 2], "count": 3})
        assert context.resolve_value("{{ids}}") == [1, 2]
        assert context.resolve_value("{{count}}") == 3

    def test_mixed_text_is_interpolated(self) -> None:
        context = ExecutionContext({"count": 3})
        assert context.resolve_value("n={{count}}") == "n=3"

    def test_unresolved_single_placeholder_stays_literal(self) -> None:
        assert ExecutionContext().resolve_value("{{nope}}") == "{{nope}}"

    def test_non_strings_pass_through(self) -> None:
        assert ExecutionContext().resolve_value(201) == 201


class TestExtract:
    """Tests for writing response values into the environment."""

    @pytest.fixture
    def response(self) -> ResponseSnapshot:
        return ResponseSnapshot(
            status=201,
            headers={"X-Request-Id": "req-1", "content-type": "application/json"},
            body='{"id": 5}',
            data={"id": 5, "items": [{"sku": "A1"}], "empty": None},
        )

    def test_body_paths(self, response: ResponseSnapshot) -> None:
        context = ExecutionContext()
        written = context.extract(
            {"orderId": "body.id", "sku": "body.items.0.sku", "whole": "body"},
            response,
        )
        assert written["orderId"] == 5
        assert context.get("sku") == "A1"
        assert context.get("whole") == response.data

    def test_status_and_headers(self, response: ResponseSnapshot) -> None:
        """Header names match case-insensitively."""
        context = ExecutionContext()
        context.extract({"code": "status", "rid": "headers.x-request-id"}, response)
        assert context.variables == {"code": 201, "rid": "req-1"}

    def test_unresolvable_paths_skipped(self, response: ResponseSnapshot) -> None:
        context = ExecutionContext({"keep": 1})
        written = context.extract(
            {"keep": "body.missing", "other": "cookies.a", "bad": 5},
            response,
        )
        assert written == {}
        assert context.variables == {"keep": 1}

    def test_null_value_is_extracted(self, response: ResponseSnapshot) -> None:
        context = ExecutionContext()
        context.extract({"e": "body.empty"}, response)
        assert "e" in context.variables
        assert context.get("e") is None


class TestLooseEquals:
    """Tests for type-coercing comparison used by verify."""

    @pytest.mark.parametrize(
        "actual, expected",
        [
            (200, "200"),
            ("200", 200),
            (1.0, 1),
            (True, "true"),
            (False, "false"),
            ({"a": 1}, '{"a": 1}'),
            ([1, 2], [1, 2]),
            ("ok", "ok"),
            (None, None),
        ],
    )
    def test_equal(self, actual, expected) -> None:
        assert loose_equals(actual, expected)

    @pytest.mark.parametrize(
        "actual, expected",
        [
            (200, "201"),
            ("abc", 1),
            (True, "false"),
            ({"a": 1}, '{"a": 2}'),
            (None, "null"),
            (0, None),
            ("ok", "OK"),
        ],
    )
    def test_not_equal(self, actual, expected) -> None:
        assert not loose_equals(actual, expected)
