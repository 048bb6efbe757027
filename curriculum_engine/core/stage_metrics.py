"""Deterministic per-stage scoring heuristics.

Every function here is pure. Scores are clamped to 0..100, SWOT item
scores to 1..5. Heuristics that take ``rag_support`` reward retrieved
reference material with a capped bonus.
"""

import math
import re
from typing import Any

from pydantic import BaseModel, Field

from curriculum_engine.core.stage_forms import (
    Q1Form,
    Q2Form,
    Q5Form,
    Q6Form,
    Q7Form,
    Q8Form,
    Q9Form,
    Q10Form,
    StageForm,
)

SCORE_MIN = 0
SCORE_MAX = 100
ITEM_SCORE_MIN = 1
ITEM_SCORE_MAX = 5
ITEMS_PER_CATEGORY = 5
MAX_KEYWORDS = 8

FIVE_VIRTUES = ["德育", "智育", "体育", "美育", "劳育"]
VIRTUE_WEIGHTS = [30, 25, 20, 15, 10]
VIRTUE_BASELINE = 12
VIRTUE_UNIFORM = 20


def clamp_score(score: float) -> int:
    """Round and clamp into 0..100; non-finite input scores 0."""
    if not math.isfinite(score):
        return 0
    return max(SCORE_MIN, min(SCORE_MAX, round(score)))


def rag_bonus(rag_support: int, per_hit: int, cap: int) -> int:
    return min(rag_support * per_hit, cap) if rag_support > 0 else 0


class ScoredSuggestions(BaseModel):
    score: int
    suggestions: list[str] = Field(default_factory=list)


class DimensionScores(BaseModel):
    score: int = 0
    overall: int = 0
    dimensions: dict[str, int] = Field(default_factory=dict)
    suggestions: list[str] = Field(default_factory=list)


# =============================================================================
# Keywords (all stages)
# =============================================================================

KEYWORD_SEEDS: dict[str, list[str]] = {
    "Q2": ["selected_theories", "custom_theories", "era_spirit", "regional_culture"],
    "Q3": ["core_concept", "school_values", "student_profile", "action_value"],
    "Q4": ["history_keywords", "motto", "future_traits", "five_virtues_priority"],
    "Q5": ["custom_name", "custom_tagline", "theme_keywords", "metaphor"],
    "Q6": ["course_form", "student_development", "value_alignment", "school_alignment"],
    "Q7": [
        "dimension_focus",
        "feature_carriers",
        "low_stage_targets",
        "mid_stage_targets",
        "high_stage_targets",
    ],
    "Q8": ["core_keywords", "core_metaphor", "framework", "board_names"],
    "Q9": ["path_choices", "path_keywords", "module_path_mapping", "phase_plan"],
    "Q10": ["evaluation_model", "dimension_requirements", "incentive_preferences", "doc_style"],
}

SEED_SPLIT = re.compile(r"[,，、\s]+")
CONTENT_SPLIT = re.compile(r"[^A-Za-z一-龥]+")


def _seed_text(stage: str, form: StageForm) -> str:
    parts = []
    for name in KEYWORD_SEEDS.get(stage, []):
        value = getattr(form, name, "")
        if isinstance(value, list):
            if stage == "Q2" and name == "selected_theories":
                value = [item.replace("_", " ") for item in value]
            value = "、".join(value)
        parts.append(value or "")
    return "、".join(parts)


def extract_keywords(stage: str, content: str, form: StageForm) -> list[str]:
    """Form seed terms first, then content words of 2+ chars; unique, max 8."""
    seeds = [s for s in SEED_SPLIT.split(_seed_text(stage, form)) if s]
    words = [w for w in CONTENT_SPLIT.split(content or "") if len(w) >= 2]

    unique: list[str] = []
    for word in seeds + words:
        if word not in unique:
            unique.append(word)
        if len(unique) >= MAX_KEYWORDS:
            break
    return unique


# =============================================================================
# Q1: SWOT
# =============================================================================

SWOT_CATEGORIES = [
    ("strength", "internal", "strengths"),
    ("weakness", "internal", "weaknesses"),
    ("opportunity", "external", "opportunities"),
    ("threat", "external", "threats"),
]
POSITIVE_SIGNALS = ["优势", "突出", "优秀", "领先", "充足", "丰富", "成熟", "完善"]
NEGATIVE_SIGNALS = ["缺乏", "不足", "短板", "困难", "滞后", "薄弱", "风险", "威胁", "压力", "竞争"]

SWOT_TERMS = ["优势", "劣势", "机会", "威胁", "SWOT"]
SCHOOL_TERMS = ["学校", "课程", "教育", "资源"]
MIN_Q1_CONTENT_LENGTH = 200


class SWOTItem(BaseModel):
    id: str
    category: str
    type: str
    description: str
    score: int


class SWOTAnalysis(BaseModel):
    items: dict[str, list[SWOTItem]]
    dimension_scores: dict[str, int]
    overall_score: int
    strongest_areas: list[str] = Field(default_factory=list)
    areas_for_improvement: list[str] = Field(default_factory=list)
    strategic_recommendations: list[str] = Field(default_factory=list)
    is_valid: bool = True
    validation_errors: list[str] = Field(default_factory=list)

    def analysis(self) -> dict[str, list[str]]:
        return {
            "strongestAreas": self.strongest_areas,
            "areasForImprovement": self.areas_for_improvement,
            "strategicRecommendations": self.strategic_recommendations,
        }


def auto_score_from_text(description: str, item_type: str) -> int:
    """
    Item score 1..5 from its description.

    Base 3, +1 for descriptions of 80+ chars, +1 when the text carries a
    signal matching the item type (positive for strengths and
    opportunities, negative for weaknesses and threats).
    """
    text = (description or "").strip()
    if not text:
        return 3

    length_boost = min(1, len(text) // 80)
    signals = POSITIVE_SIGNALS if item_type in ("strength", "opportunity") else NEGATIVE_SIGNALS
    keyword_boost = 1 if any(signal in text for signal in signals) else 0

    return max(ITEM_SCORE_MIN, min(ITEM_SCORE_MAX, 3 + length_boost + keyword_boost))


def swot_items_from_form(form: Q1Form) -> dict[str, list[SWOTItem]]:
    """Read ``{type}_{i}_description`` for i in 1..5; blank slots are skipped."""
    data = form.model_dump()
    items: dict[str, list[SWOTItem]] = {}
    for item_type, category, plural in SWOT_CATEGORIES:
        items[plural] = []
        for i in range(1, ITEMS_PER_CATEGORY + 1):
            description = data.get(f"{item_type}_{i}_description")
            if description:
                items[plural].append(
                    SWOTItem(
                        id=f"{item_type}_{i}",
                        category=category,
                        type=item_type,
                        description=str(description),
                        score=auto_score_from_text(str(description), item_type),
                    )
                )
    return items


def dimension_score(items: list[SWOTItem]) -> int:
    valid = [item.score for item in items if ITEM_SCORE_MIN <= item.score <= ITEM_SCORE_MAX]
    if not valid:
        return 0
    return clamp_score(sum(valid) / (len(valid) * ITEM_SCORE_MAX) * 100)


def overall_swot_score(scores: dict[str, int]) -> int:
    """Strengths and opportunities count for, weaknesses and threats against."""
    return clamp_score(
        (
            scores["strengths"]
            + scores["opportunities"]
            + (SCORE_MAX - scores["weaknesses"])
            + (SCORE_MAX - scores["threats"])
        )
        / 4
    )


def validate_swot_item(item: SWOTItem) -> list[str]:
    errors = []
    if not item.id:
        errors.append("Item ID is required")
    if not item.description.strip():
        errors.append(f"Item {item.id}: Description is required")
    if not ITEM_SCORE_MIN <= item.score <= ITEM_SCORE_MAX:
        errors.append(f"Item {item.id}: Score must be between {ITEM_SCORE_MIN} and {ITEM_SCORE_MAX}")
    if item.type not in ("strength", "weakness", "opportunity", "threat"):
        errors.append(f"Item {item.id}: Invalid type")
    if item.category not in ("internal", "external"):
        errors.append(f"Item {item.id}: Invalid category")
    return errors


def validate_swot_items(items: dict[str, list[SWOTItem]]) -> list[str]:
    errors = []
    for _, _, plural in SWOT_CATEGORIES:
        if len(items.get(plural, [])) < ITEMS_PER_CATEGORY:
            errors.append(f"At least {ITEMS_PER_CATEGORY} {plural} are required")
    for _, _, plural in SWOT_CATEGORIES:
        for item in items.get(plural, []):
            errors.extend(validate_swot_item(item))
    return errors


def analyze_swot(form: Q1Form) -> SWOTAnalysis:
    """Score, validate and derive strategy insights for a Q1 form."""
    items = swot_items_from_form(form)
    scores = {plural: dimension_score(items[plural]) for _, _, plural in SWOT_CATEGORIES}
    errors = validate_swot_items(items)

    strongest = []
    if scores["strengths"] >= 70:
        strongest.append("内部优势明显")
    if scores["opportunities"] >= 70:
        strongest.append("外部机遇丰富")

    improvement = []
    if scores["weaknesses"] >= 70:
        improvement.append("内部劣势需要关注")
    if scores["threats"] >= 70:
        improvement.append("外部威胁需要应对")

    recommendations = []
    if scores["strengths"] >= 60 and scores["opportunities"] >= 60:
        recommendations.append("SO策略：利用优势抓住机遇")
    if scores["strengths"] >= 60 and scores["threats"] >= 60:
        recommendations.append("ST策略：利用优势应对威胁")
    if scores["weaknesses"] >= 60 and scores["opportunities"] >= 60:
        recommendations.append("WO策略：克服劣势把握机遇")
    if scores["weaknesses"] >= 60 and scores["threats"] >= 60:
        recommendations.append("WT策略：减少劣势规避威胁")

    return SWOTAnalysis(
        items=items,
        dimension_scores=scores,
        overall_score=overall_swot_score(scores),
        strongest_areas=strongest,
        areas_for_improvement=improvement,
        strategic_recommendations=recommendations,
        is_valid=not errors,
        validation_errors=errors,
    )


def validate_q1_content(content: str) -> tuple[bool, list[str]]:
    """SWOT vocabulary, school context and minimum length checks."""
    suggestions = []
    if not any(term in content for term in SWOT_TERMS):
        suggestions.append("建议在内容中包含SWOT分析相关术语")
    if not any(term in content for term in SCHOOL_TERMS):
        suggestions.append("建议在内容中体现学校课程情境")
    if len(content) < MIN_Q1_CONTENT_LENGTH:
        suggestions.append("内容较短，建议补充更多分析细节")
    return not suggestions, suggestions


def build_q1_generation_input(form: Q1Form, swot: SWOTAnalysis) -> dict[str, Any]:
    def numbered(plural: str) -> str:
        return "\n".join(
            f"{i}. {item.description} (评分: {item.score}/5)"
            for i, item in enumerate(swot.items[plural], start=1)
        )

    scores = swot.dimension_scores
    return {
        "school_name": form.school_name,
        "school_region": form.school_region,
        "school_type": form.school_type,
        "strengths": numbered("strengths"),
        "weaknesses": numbered("weaknesses"),
        "opportunities": numbered("opportunities"),
        "threats": numbered("threats"),
        "strengths_score": scores["strengths"],
        "weaknesses_score": scores["weaknesses"],
        "opportunities_score": scores["opportunities"],
        "threats_score": scores["threats"],
        "overall_score": swot.overall_score,
        "strongest_areas": "、".join(swot.strongest_areas),
        "areas_for_improvement": "、".join(swot.areas_for_improvement),
        "strategic_recommendations": "\n".join(swot.strategic_recommendations),
        "additional_notes": form.additional_notes,
    }


# =============================================================================
# Q2..Q10
# =============================================================================


def theory_fit_score(form: Q2Form, rag_support: int) -> int:
    score = 40
    if form.selected_theories:
        score += min(len(form.selected_theories) * 6, 30)
    if form.era_spirit:
        score += 8
    if form.regional_culture:
        score += 8
    if form.school_profile:
        score += 6
    if form.philosophy_statement_hint:
        score += 4
    score += rag_bonus(rag_support, 3, 12)
    return clamp_score(score)


RISK_WORDS = ["暴力", "歧视", "惩罚", "服从至上"]


def positive_alignment(content: str) -> tuple[bool, list[str]]:
    """Core concept must carry the five-virtues and moral-education signals."""
    text = (content or "").lower()
    missing = []
    if "五育" not in text and "德智体美劳" not in text:
        missing.append("补充“五育并举”相关表述")
    if "立德树人" not in text:
        missing.append("补充“立德树人”价值取向")

    has_risk = any(word in content for word in RISK_WORDS)
    suggestions = list(missing)
    if has_risk:
        suggestions.append("移除可能的负向或违背教育方针的表述")
    return not has_risk and not missing, suggestions


def five_virtues_coverage(priorities: list[str]) -> DimensionScores:
    """
    Coverage over the five virtues.

    Priorities get descending weights 30/25/20/15/10; virtues left out get
    a baseline of 12. No priorities at all means 20 each.
    """
    dims: dict[str, int] = {}
    if not priorities:
        dims = {virtue: VIRTUE_UNIFORM for virtue in FIVE_VIRTUES}
    else:
        for index, name in enumerate(priorities[:5]):
            dims.setdefault(name, VIRTUE_WEIGHTS[index])
        for virtue in FIVE_VIRTUES:
            dims.setdefault(virtue, VIRTUE_BASELINE)

    dims = {name: clamp_score(value) for name, value in dims.items()}
    overall = clamp_score(sum(dims.values()) / len(dims))
    suggestions = [
        f"提高{name}维度的落地举措，例如活动/课程/项目嵌入" for name, value in dims.items() if value < 15
    ]
    return DimensionScores(score=overall, overall=overall, dimensions=dims, suggestions=suggestions)


def name_suitability(form: Q5Form, rag_support: int) -> ScoredSuggestions:
    score = 40
    if form.name_sources:
        score += min(len(form.name_sources) * 8, 24)
    if form.theme_keywords:
        score += 10
    if form.metaphor:
        score += 6
    if form.custom_name:
        score += 8
    if form.custom_tagline:
        score += 4
    if form.uniqueness_constraints:
        score += 4
    score += rag_bonus(rag_support, 3, 12)

    suggestions = []
    if not form.metaphor:
        suggestions.append("补充核心隐喻/意象，便于命名具象化")
    if not form.custom_tagline:
        suggestions.append("添加口号/副标题，提升传播力")
    if not form.uniqueness_constraints:
        suggestions.append("注明需规避的相似名称，避免重名")
    return ScoredSuggestions(score=clamp_score(score), suggestions=suggestions)


def pick_name_and_tagline(content: str, form: Q5Form) -> tuple[str, str]:
    """Custom values win; otherwise the first line and the first 6-20 char line."""
    lines = [line.strip() for line in (content or "").split("\n") if line.strip()]
    name = form.custom_name or (lines[0] if lines else "")
    tagline = form.custom_tagline or next((line for line in lines if 6 <= len(line) <= 20), "")
    return name, tagline


def value_consistency(form: Q6Form, rag_support: int) -> ScoredSuggestions:
    score = 40
    for value in (form.course_form, form.student_development, form.value_alignment, form.school_alignment):
        if value:
            score += 10
    mentions_five_virtues = "五育" in form.value_alignment or "德智体美劳" in form.value_alignment
    mentions_moral_education = "立德树人" in form.value_alignment
    if mentions_five_virtues:
        score += 8
    if mentions_moral_education:
        score += 6
    score += rag_bonus(rag_support, 3, 12)

    suggestions = []
    if not mentions_five_virtues:
        suggestions.append("补充五育并举的价值表述，体现全面发展")
    if not mentions_moral_education:
        suggestions.append("强调立德树人，表明课程的育人导向")
    if not form.school_alignment:
        suggestions.append("说明课程如何支撑学校品牌/战略目标")
    return ScoredSuggestions(score=clamp_score(score), suggestions=suggestions)


def gap_analysis(form: Q7Form) -> DimensionScores:
    score = 45
    dims: dict[str, int] = {}
    for index, name in enumerate(form.dimension_focus[:5]):
        dims.setdefault(name, 80 - index * 5)
    if not form.dimension_focus:
        dims = {virtue: 70 for virtue in FIVE_VIRTUES}

    if form.current_gaps:
        score -= 5
    if form.feature_carriers:
        score += 10
    targets = (form.low_stage_targets, form.mid_stage_targets, form.high_stage_targets)
    if all(targets):
        score += 10

    suggestions = [f"加强 {name} 维度的学段任务设计，补足薄弱点" for name, value in dims.items() if value < 70]
    if not all(targets):
        suggestions.append("补全低/中/高学段目标描述，便于分层落地")

    overall = clamp_score(score)
    return DimensionScores(score=overall, overall=overall, dimensions=dims, suggestions=suggestions)


def structure_score(form: Q8Form, rag_support: int) -> ScoredSuggestions:
    score = 45
    if form.core_keywords:
        score += 10
    if form.core_metaphor:
        score += 6
    if form.framework:
        score += 10
    if form.board_names:
        score += 10
    if form.modules_plan:
        score += 12
    if form.mapping_notes:
        score += 4
    score += rag_bonus(rag_support, 3, 9)

    suggestions = []
    if not form.core_metaphor:
        suggestions.append("补充核心隐喻，便于板块命名与叙事一致")
    if not form.mapping_notes:
        suggestions.append("标注模块×目标支撑强度，明确落地路径")
    if not form.board_names:
        suggestions.append("为顶层框架命名一级板块，增强可传播性")
    return ScoredSuggestions(score=clamp_score(score), suggestions=suggestions)


def feasibility_score(form: Q9Form, rag_support: int) -> ScoredSuggestions:
    score = 45
    if form.implementation_vision:
        score += 8
    if form.path_choices:
        score += min(len(form.path_choices) * 4, 16)
    if form.module_path_mapping:
        score += 12
    if form.phase_plan:
        score += 10
    if form.teacher_roles and form.support_system:
        score += 8
    score += rag_bonus(rag_support, 3, 9)

    suggestions = []
    if not form.phase_plan:
        suggestions.append("补充学段/周期计划，明确节奏与节点")
    if not form.module_path_mapping:
        suggestions.append("将Q8二级模块映射到具体实施路径")
    if not form.support_system:
        suggestions.append("补充教研/资源支持体系，确保落地")
    return ScoredSuggestions(score=clamp_score(score), suggestions=suggestions)


def evaluation_score(form: Q10Form, rag_support: int) -> ScoredSuggestions:
    score = 45
    if form.evaluation_model:
        score += 8
    if form.model_notes:
        score += 8
    if form.dimension_requirements:
        score += 12
    if form.incentive_preferences:
        score += 4
    if form.visual_need == "yes":
        score += 4
    if form.doc_style:
        score += 6
    score += rag_bonus(rag_support, 3, 9)

    suggestions = []
    if "德" not in form.dimension_requirements or "智" not in form.dimension_requirements:
        suggestions.append("明确五维（德智体美劳）评价要点，确保全面性")
    if "过程" not in form.model_notes and "项目" not in form.model_notes:
        suggestions.append("补充过程性/项目化评价要素，增强科学性")
    return ScoredSuggestions(score=clamp_score(score), suggestions=suggestions)
