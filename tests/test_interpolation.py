"""Tests for prompt variable interpolation."""

from curriculum_engine.core.interpolation import (
    extract_variables,
    has_unresolved_variables,
    interpolate_prompt_variables,
)


def test_interpolate_replaces_known_keys():
    template = "学校：{{school_name}}，地区：{{ region }}"
    result = interpolate_prompt_variables(
        template, {"school_name": "实验小学", "region": "杭州"}
    )

    assert result == "学校：实验小学，地区：杭州"


def test_interpolate_leaves_unknown_placeholders():
    result = interpolate_prompt_variables("{{a}} and {{b}}", {"a": "x"})

    assert result == "x and {{b}}"
    assert has_unresolved_variables(result)


def test_interpolate_replaces_every_occurrence():
    assert interpolate_prompt_variables("{{a}}-{{ a }}-{{a}}", {"a": "1"}) == "1-1-1"


def test_interpolate_inserts_values_literally():
    """Backslashes and group references are not interpreted."""
    result = interpolate_prompt_variables("{{path}}", {"path": r"C:\new\1 $1 \g<0>"})

    assert result == r"C:\new\1 $1 \g<0>"


def test_interpolate_key_with_regex_characters():
    assert interpolate_prompt_variables("{{a.b}} {{axb}}", {"a.b": "dot"}) == "dot {{axb}}"


def test_extract_variables_unique_in_order():
    assert extract_variables("{{ b }} {{a}} {{b}}") == ["b", "a"]
    assert extract_variables("") == []


def test_has_unresolved_variables():
    assert not has_unresolved_variables("plain text")
    assert not has_unresolved_variables("")
    assert has_unresolved_variables("{{x}}")
