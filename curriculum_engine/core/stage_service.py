"""Per-project stage state machine.

Each stage moves not_started -> in_progress -> completed. Stage data lives
in the project's ``stages`` JSON map; overall progress is always recomputed
from that map, never adjusted incrementally.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from curriculum_engine.core.errors import MissingRequiredFieldError
from curriculum_engine.core.logging import get_logger
from curriculum_engine.core.stages import (
    VALID_STAGES,
    calculate_progress,
    create_default_stage_data,
    normalize_stage,
    stages_before,
)
from curriculum_engine.db.projects import require_project, update_project

logger = get_logger(__name__)


def _stage_map(project: dict[str, Any]) -> dict[str, dict[str, Any]]:
    return {key: dict(value or {}) for key, value in (project.get("stages") or {}).items()}


def _has_content(output: Any) -> bool:
    if output is None:
        return False
    if isinstance(output, str):
        return bool(output.strip())
    if isinstance(output, dict | list):
        return len(output) > 0
    return True


def get_stage_data(project_id: UUID | str, stage: str) -> dict[str, Any]:
    """
    Current state of one stage.

    Raises:
        InvalidStageError: If stage is not Q1..Q10
        NotFoundError: If the project does not exist
    """
    stage = normalize_stage(stage)
    project = require_project(project_id)
    data = _stage_map(project).get(stage) or {}

    return {
        "status": data.get("status") or "not_started",
        "input": data.get("input"),
        "output": data.get("output"),
        "current_version_id": data.get("current_version_id"),
        "completed_at": data.get("completed_at"),
        "diagnostic_score": data.get("diagnostic_score"),
    }


def save_stage_input(project_id: UUID | str, stage: str, input_data: dict[str, Any]) -> dict[str, Any]:
    """
    Persist form input; a not-started stage becomes in progress.

    Returns:
        The updated stage data
    """
    stage = normalize_stage(stage)
    project = require_project(project_id)
    stages = _stage_map(project)
    data = stages.get(stage) or create_default_stage_data()

    data["input"] = input_data
    if data.get("status") in (None, "not_started"):
        data["status"] = "in_progress"

    stages[stage] = data
    update_project(project_id, {"stages": stages})

    logger.debug(
        f"Saved input for {stage}",
        extra={"project_id": str(project_id), "stage": stage},
    )
    return data


def save_stage_output(
    project_id: UUID | str,
    stage: str,
    output: dict[str, Any],
    score: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Merge output into the stage without changing its status.

    Keys absent from ``output`` keep their stored values, so a manual edit
    of the report does not erase computed fields and vice versa.

    Args:
        project_id: Project id
        stage: Stage id
        output: Fields to write
        score: Optional diagnostic score {overall, dimensions}

    Returns:
        The updated stage data
    """
    stage = normalize_stage(stage)
    project = require_project(project_id)
    stages = _stage_map(project)
    data = stages.get(stage) or {"status": "in_progress", "input": None, "output": None}

    existing = data.get("output")
    merged = dict(existing) if isinstance(existing, dict) else {}
    merged.update(output)
    data["output"] = merged

    if score is not None:
        data["diagnostic_score"] = score

    stages[stage] = data
    update_project(project_id, {"stages": stages})
    return data


def complete_stage(project_id: UUID | str, stage: str) -> dict[str, Any]:
    """
    Mark a stage completed and refresh overall progress.

    Raises:
        InvalidStageError: If stage is not Q1..Q10
        MissingRequiredFieldError: If the stage has no output yet
    """
    stage = normalize_stage(stage)
    project = require_project(project_id)
    stages = _stage_map(project)
    data = stages.get(stage) or create_default_stage_data()

    if not _has_content(data.get("output")):
        raise MissingRequiredFieldError(
            f"Stage {stage} has no output to complete", field="output"
        )

    data["status"] = "completed"
    data["completed_at"] = datetime.now(UTC).isoformat()
    stages[stage] = data

    updates: dict[str, Any] = {
        "stages": stages,
        "overall_progress": calculate_progress(stages),
    }

    # Advance the cursor when the active stage is finished
    if project.get("current_stage", "Q1") == stage:
        position = VALID_STAGES.index(stage)
        if position + 1 < len(VALID_STAGES):
            updates["current_stage"] = VALID_STAGES[position + 1]

    update_project(project_id, updates)

    logger.info(
        f"Completed stage {stage}, progress {updates['overall_progress']}",
        extra={"project_id": str(project_id), "stage": stage},
    )
    return data


def update_progress(project_id: UUID | str) -> int:
    """Recompute and store overall progress from the stage map."""
    project = require_project(project_id)
    progress = calculate_progress(_stage_map(project))
    update_project(project_id, {"overall_progress": progress})
    return progress


def get_previous_stages_context(project_id: UUID | str, stage: str) -> list[dict[str, Any]]:
    """
    Outputs of completed stages ordered before ``stage``.

    Returns:
        List of {stage, output, completed_at} in Q1..Q10 order
    """
    stage = normalize_stage(stage)
    project = require_project(project_id)
    stages = _stage_map(project)

    context = []
    for previous in stages_before(stage):
        data = stages.get(previous) or {}
        if data.get("status") == "completed" and _has_content(data.get("output")):
            context.append(
                {
                    "stage": previous,
                    "output": data["output"],
                    "completed_at": data.get("completed_at"),
                }
            )
    return context


def to_context_map(previous_context: list[dict[str, Any]]) -> dict[str, Any]:
    """Index upstream outputs by both ``Qn`` and ``Qn_output``."""
    context_map: dict[str, Any] = {}
    for item in previous_context:
        context_map[item["stage"]] = item["output"]
        context_map[f"{item['stage']}_output"] = item["output"]
    return context_map
