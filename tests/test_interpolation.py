from __future__ import annotations

import copy

from fleet.workflow.interpolation import interpolate, lookup, substitute_parameters


def test_whole_placeholder_keeps_value_type() -> None:
    variables = {"count": 3, "items": [1, 2], "user": {"name": "Ada"}}

    assert interpolate("${count}", variables) == 3
    assert interpolate("${items}", variables) == [1, 2]
    assert interpolate("${user.name}", variables) == "Ada"


def test_embedded_placeholders_render_as_text() -> None:
    variables = {"count": 3, "user": {"name": "Ada"}}
    assert interpolate("${user.name} has ${count} jobs", variables) == "Ada has 3 jobs"


def test_unknown_placeholders_are_left_untouched() -> None:
    assert interpolate("${missing}", {}) == "${missing}"
    assert interpolate("hello ${missing}", {"other": 1}) == "hello ${missing}"


def test_nested_structures_are_rebuilt_without_mutation() -> None:
    config = {"payload": {"to": "${email}", "ids": ["${first}", 7]}, "flag": True}
    original = copy.deepcopy(config)

    result = interpolate(config, {"email": "a@example.com", "first": 1})

    assert result == {"payload": {"to": "a@example.com", "ids": [1, 7]}, "flag": True}
    assert config == original


def test_lookup_walks_mappings_and_sequences() -> None:
    values = {"a": {"b": [{"c": 5}]}, "dotted.key": "direct"}

    assert lookup(values, "a.b.0.c") == (True, 5)
    assert lookup(values, "dotted.key") == (True, "direct")
    assert lookup(values, "a.b.3") == (False, None)
    assert lookup(values, "a.x") == (False, None)


def test_template_parameters_use_double_braces() -> None:
    template = {"agent_id": "{{ agent }}", "content": "Hi {{name}}", "keep": "${runtime}"}

    result = substitute_parameters(template, {"agent": "echo-1", "name": "Bob"})

    assert result == {"agent_id": "echo-1", "content": "Hi Bob", "keep": "${runtime}"}
