"""Tests for per-stage form parsing and generation input."""

import pytest

from curriculum_engine.core.errors import InvalidStageError
from curriculum_engine.core.stage_forms import (
    Q1Form,
    Q4Form,
    build_generation_input,
    parse_form,
)


class TestParseForm:
    def test_missing_and_null_fields_default(self):
        form = parse_form("Q3", {"purpose": None, "school_values": "求真"})

        assert form.purpose == ""
        assert form.school_values == "求真"

    def test_comma_list_from_string(self):
        form = parse_form("Q4", {"five_virtues_priority": "德育, 智育,,体育 "})

        assert form.five_virtues_priority == ["德育", "智育", "体育"]

    def test_comma_list_from_list(self):
        form = parse_form("q2", {"selected_theories": ["建构主义", " ", "多元智能"]})

        assert form.selected_theories == ["建构主义", "多元智能"]

    def test_unknown_keys_dropped(self):
        form = parse_form("Q6", {"course_form": "x", "unexpected": 1})

        assert "unexpected" not in form.model_dump()

    def test_q1_keeps_swot_item_keys(self):
        form = parse_form("Q1", {"school_name": "实验小学", "strength_1_description": "师资强"})

        assert isinstance(form, Q1Form)
        assert form.model_dump()["strength_1_description"] == "师资强"

    def test_none_data(self):
        assert isinstance(parse_form("Q4", None), Q4Form)

    def test_invalid_stage(self):
        with pytest.raises(InvalidStageError):
            parse_form("Q11", {})


class TestBuildGenerationInput:
    def test_lists_joined(self):
        form = parse_form("Q4", {"five_virtues_priority": ["德育", "美育"]})

        result = build_generation_input("Q4", form)

        assert result["five_virtues_priority"] == "德育、美育"

    def test_q3_core_concept_renamed(self):
        form = parse_form("Q3", {"core_concept": "向美而行"})

        result = build_generation_input("Q3", form, {"Q2": "philosophy text"})

        assert result["core_concept_hint"] == "向美而行"
        assert "core_concept" not in result
        assert result["q2_philosophy"] == "philosophy text"

    def test_upstream_fields_attached(self):
        context_map = {
            "Q2": "哲学",
            "Q3_output": {"core_concept": "和美"},
            "Q4": "目标",
            "Q5": {"name_suggestion": "和美课程"},
        }
        form = parse_form("Q6", {})

        result = build_generation_input("Q6", form, context_map)

        assert result["q2_philosophy"] == "哲学"
        assert result["q3_concept"] == "和美"
        assert result["q4_goal"] == "目标"
        assert result["q5_name"] == "和美课程"

    def test_missing_upstream_is_empty(self):
        result = build_generation_input("Q10", parse_form("Q10", {}))

        for variable in ("q2_philosophy", "q3_concept", "q8_structure", "q9_plan"):
            assert result[variable] == ""

    def test_field_of_non_dict_output_is_empty(self):
        result = build_generation_input("Q4", parse_form("Q4", {}), {"Q3": "plain text"})

        assert result["q3_concept"] == ""
