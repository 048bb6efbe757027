"""Typed form input per stage.

Each stage has its own form model. Raw wizard input is loosely typed
(missing keys, nulls, comma-joined lists), so every model tolerates that
shape and normalizes it: missing or null strings become "", and list fields
accept either a list or a comma-separated string.
"""

from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, model_validator

from curriculum_engine.core.stages import normalize_stage


def _split_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, list | tuple):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


CommaList = Annotated[list[str], BeforeValidator(_split_list)]


class StageForm(BaseModel):
    """Base form: nulls fall back to field defaults, unknown keys dropped."""

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


# =============================================================================
# Stage forms
# =============================================================================


class Q1Form(StageForm):
    """School context plus up to five items per SWOT category.

    Items arrive as ``{strength|weakness|opportunity|threat}_{i}_description``
    keys, so extra keys are kept.
    """

    model_config = ConfigDict(extra="allow")

    school_name: str = ""
    school_region: str = ""
    school_type: str = ""
    additional_notes: str = ""


class Q2Form(StageForm):
    selected_theories: CommaList = []
    custom_theories: str = ""
    era_spirit: str = ""
    regional_culture: str = ""
    school_profile: str = ""
    philosophy_statement_hint: str = ""
    additional_notes: str = ""


class Q3Form(StageForm):
    purpose: str = ""
    school_values: str = ""
    student_profile: str = ""
    action_value: str = ""
    core_concept: str = ""
    supplement: str = ""


class Q4Form(StageForm):
    history_keywords: str = ""
    motto: str = ""
    student_metaphor: str = ""
    student_background: str = ""
    student_strengths_weaknesses: str = ""
    teacher_strengths: str = ""
    campus_hardware: str = ""
    future_traits: str = ""
    five_virtues_priority: CommaList = []
    community_resources: str = ""
    expression_style: str = ""
    landing_preferences: str = ""


class Q5Form(StageForm):
    name_sources: CommaList = []
    theme_keywords: str = ""
    metaphor: str = ""
    custom_name: str = ""
    custom_tagline: str = ""
    cultural_symbols: str = ""
    stakeholder_preferences: str = ""
    uniqueness_constraints: str = ""


class Q6Form(StageForm):
    course_form: str = ""
    student_development: str = ""
    value_alignment: str = ""
    school_alignment: str = ""
    style_hint: str = ""


class Q7Form(StageForm):
    current_strengths: str = ""
    current_gaps: str = ""
    feature_carriers: str = ""
    dimension_focus: CommaList = []
    low_stage_targets: str = ""
    mid_stage_targets: str = ""
    high_stage_targets: str = ""
    style_hint: str = ""


class Q8Form(StageForm):
    core_keywords: str = ""
    core_metaphor: str = ""
    framework: str = ""
    board_names: str = ""
    modules_plan: str = ""
    mapping_notes: str = ""
    doc_style: str = ""
    additional_notes: str = ""


class Q9Form(StageForm):
    implementation_vision: str = ""
    learning_modes: str = ""
    path_choices: CommaList = []
    path_keywords: str = ""
    teacher_roles: str = ""
    support_system: str = ""
    module_path_mapping: str = ""
    phase_plan: str = ""
    style_hint: str = ""


class Q10Form(StageForm):
    evaluation_model: str = ""
    model_notes: str = ""
    dimension_requirements: str = ""
    incentive_preferences: str = ""
    visual_need: str = ""
    doc_style: str = ""
    additional_notes: str = ""


STAGE_FORMS: dict[str, type[StageForm]] = {
    "Q1": Q1Form,
    "Q2": Q2Form,
    "Q3": Q3Form,
    "Q4": Q4Form,
    "Q5": Q5Form,
    "Q6": Q6Form,
    "Q7": Q7Form,
    "Q8": Q8Form,
    "Q9": Q9Form,
    "Q10": Q10Form,
}


def parse_form(stage: str, data: dict[str, Any] | None) -> StageForm:
    """
    Normalize raw form input for a stage.

    Raises:
        InvalidStageError: If stage is not Q1..Q10
    """
    return STAGE_FORMS[normalize_stage(stage)].model_validate(data or {})


# =============================================================================
# Generation input
# =============================================================================

# (variable, upstream stage, field of that stage's output or None for all of it)
UPSTREAM_REFERENCES: dict[str, list[tuple[str, str, str | None]]] = {
    "Q2": [("q1_background", "Q1", None)],
    "Q3": [("q2_philosophy", "Q2", None)],
    "Q4": [("q2_philosophy", "Q2", None), ("q3_concept", "Q3", "core_concept")],
}
UPSTREAM_REFERENCES["Q5"] = UPSTREAM_REFERENCES["Q4"] + [("q4_goal", "Q4", None)]
UPSTREAM_REFERENCES["Q6"] = UPSTREAM_REFERENCES["Q5"] + [("q5_name", "Q5", "name_suggestion")]
UPSTREAM_REFERENCES["Q7"] = UPSTREAM_REFERENCES["Q6"] + [("q6_concept", "Q6", None)]
UPSTREAM_REFERENCES["Q8"] = UPSTREAM_REFERENCES["Q7"]
UPSTREAM_REFERENCES["Q9"] = UPSTREAM_REFERENCES["Q8"] + [("q8_structure", "Q8", None)]
UPSTREAM_REFERENCES["Q10"] = UPSTREAM_REFERENCES["Q9"] + [("q9_plan", "Q9", None)]

# Form fields renamed in the prompt input
RENAMED_FIELDS = {"Q3": {"core_concept": "core_concept_hint"}}


def _upstream_value(context_map: dict[str, Any], stage: str, field: str | None) -> Any:
    output = context_map.get(f"{stage}_output") or context_map.get(stage)
    if field is None:
        return output or ""
    if isinstance(output, dict):
        return output.get(field) or ""
    return ""


def build_generation_input(
    stage: str, form: StageForm, context_map: dict[str, Any] | None = None
) -> dict[str, Any]:
    """
    Prompt-ready input for stages Q2..Q10.

    List fields are joined with "、" and upstream outputs are attached
    under the stage's reference variables.
    """
    stage = normalize_stage(stage)
    context_map = context_map or {}
    renamed = RENAMED_FIELDS.get(stage, {})

    result: dict[str, Any] = {}
    for name, value in form.model_dump().items():
        key = renamed.get(name, name)
        result[key] = "、".join(value) if isinstance(value, list) else value

    for variable, upstream, field in UPSTREAM_REFERENCES.get(stage, []):
        result[variable] = _upstream_value(context_map, upstream, field)

    return result
