"""Stage identifiers, ordering and progress arithmetic."""

from typing import Any, Literal

from curriculum_engine.core.errors import InvalidStageError

StageId = Literal["Q1", "Q2", "Q3", "Q4", "Q5", "Q6", "Q7", "Q8", "Q9", "Q10"]
StageStatus = Literal["not_started", "in_progress", "completed"]

VALID_STAGES: tuple[str, ...] = ("Q1", "Q2", "Q3", "Q4", "Q5", "Q6", "Q7", "Q8", "Q9", "Q10")
TOTAL_STAGES = len(VALID_STAGES)

STAGE_NAMES: dict[str, str] = {
    "Q1": "学校课程情境分析",
    "Q2": "教育哲学",
    "Q3": "办学理念",
    "Q4": "育人目标",
    "Q5": "课程模式命名",
    "Q6": "课程理念",
    "Q7": "课程目标",
    "Q8": "课程结构",
    "Q9": "课程实施",
    "Q10": "课程评价",
}

# Topic phrases prepended to retrieval queries for each stage
STAGE_CONTEXTS: dict[str, str] = {
    "Q1": "学校课程情境分析 SWOT分析 教育资源",
    "Q2": "教育哲学 教育理论 地域文化",
    "Q3": "办学理念 价值观 教育方针",
    "Q4": "育人目标 五育并举 德智体美劳",
    "Q5": "课程模式 课程命名 文化内涵",
    "Q6": "课程理念 价值取向 课程论",
    "Q7": "课程目标 学段目标 课程标准",
    "Q8": "课程结构 课程群 模块设计",
    "Q9": "课程实施 实施方案 教学路径",
    "Q10": "课程评价 评价体系 335成长体系",
}


def normalize_stage(stage: str | None) -> str:
    """Upper-case a stage id and check it against Q1..Q10.

    Raises:
        InvalidStageError: If the id is not a known stage
    """
    normalized = (stage or "").strip().upper()
    if normalized not in VALID_STAGES:
        raise InvalidStageError(stage)
    return normalized


def stage_index(stage: str) -> int:
    """Zero-based position of a stage in the fixed ordering."""
    return VALID_STAGES.index(normalize_stage(stage))


def stages_before(stage: str) -> list[str]:
    """All stages ordered strictly before ``stage``."""
    return list(VALID_STAGES[: stage_index(stage)])


def create_default_stage_data() -> dict[str, Any]:
    return {"status": "not_started", "input": None, "output": None}


def initialize_stages() -> dict[str, dict[str, Any]]:
    """Seed a fresh stage map with every stage not started."""
    return {stage: create_default_stage_data() for stage in VALID_STAGES}


def calculate_progress(stages: dict[str, Any] | None) -> int:
    """Overall progress as round(100 * completed / 10).

    Pure function of the stage map. Keys outside Q1..Q10 are ignored.
    """
    if not stages:
        return 0
    completed = sum(
        1
        for key, data in stages.items()
        if key in VALID_STAGES and isinstance(data, dict) and data.get("status") == "completed"
    )
    return round(100 * completed / TOTAL_STAGES)
