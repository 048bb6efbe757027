"""Append-only version history per (project, stage) with rollback."""

import json
from typing import Any
from uuid import UUID

from curriculum_engine.core.errors import NotFoundError, ValidationError
from curriculum_engine.core.logging import get_logger
from curriculum_engine.core.stage_service import (
    get_stage_data,
    save_stage_output,
    update_progress,
)
from curriculum_engine.core.stages import normalize_stage
from curriculum_engine.db import stage_versions
from curriculum_engine.db.projects import require_project, update_project

logger = get_logger(__name__)

DEFAULT_KEEP_VERSIONS = 10
SYSTEM_AUTHOR = {"user_id": "system", "name": "AI Generation"}


def list_versions(project_id: UUID | str, stage: str, limit: int = 20) -> list[dict[str, Any]]:
    """Newest-first version history."""
    return stage_versions.list_versions(project_id, normalize_stage(stage), limit)


def get_version(project_id: UUID | str, stage: str, version: int) -> dict[str, Any]:
    """
    Fetch one version.

    Raises:
        NotFoundError: If the version does not exist
    """
    stage = normalize_stage(stage)
    record = stage_versions.get_version(project_id, stage, version)
    if record is None:
        raise NotFoundError(f"Version {version} not found for {stage}")
    return record


def create_version(
    project_id: UUID | str,
    stage: str,
    content: Any,
    author: dict[str, Any] | None = None,
    is_ai_generated: bool = False,
    generation_metadata: dict[str, Any] | None = None,
    change_note: str | None = None,
) -> dict[str, Any]:
    """
    Append a version numbered one past the current maximum.

    Args:
        project_id: Project id
        stage: Stage id
        content: Snapshot of the stage output
        author: {user_id, name}; defaults to the system author
        is_ai_generated: Whether the snapshot came from generation
        generation_metadata: Prompt, retrieval results and token usage;
            required for AI-generated versions
        change_note: Optional description of the change

    Raises:
        ValidationError: If an AI version lacks generation metadata
    """
    stage = normalize_stage(stage)

    if is_ai_generated and not generation_metadata:
        raise ValidationError("AI-generated versions must include generation_metadata")

    record = {
        "project_id": str(project_id),
        "stage": stage,
        "content": content,
        "author": author or SYSTEM_AUTHOR,
        "is_ai_generated": is_ai_generated,
        "generation_metadata": generation_metadata,
        "change_note": change_note,
    }
    return stage_versions.insert_version(record)


def restore_output(content: Any) -> dict[str, Any]:
    """Turn a version snapshot into a live stage output.

    Strings become {report, content}. Dicts keep their fields and get
    report/content filled from text, report or content, else their JSON.
    """
    if isinstance(content, str):
        return {"report": content, "content": content}

    if isinstance(content, dict) and content:
        serialized = json.dumps(content, ensure_ascii=False)
        return {
            **content,
            "report": content.get("text") or content.get("report") or content.get("content") or serialized,
            "content": content.get("text") or content.get("content") or content.get("report") or serialized,
        }

    text = "" if content is None or isinstance(content, dict) else str(content)
    return {"report": text, "content": text}


def rollback(project_id: UUID | str, stage: str, version: int) -> dict[str, Any]:
    """
    Make a past version the live stage output.

    The stage becomes completed and records the version as current; history
    is untouched and no new version is written.

    Returns:
        The version record that was restored

    Raises:
        NotFoundError: If the version or project does not exist
    """
    stage = normalize_stage(stage)
    target = get_version(project_id, stage, version)
    project = require_project(project_id)

    stages = {key: dict(value or {}) for key, value in (project.get("stages") or {}).items()}
    data = stages.get(stage) or {"status": "in_progress"}

    data["output"] = restore_output(target.get("content"))
    data["status"] = "completed"
    data["current_version_id"] = str(version)
    stages[stage] = data

    update_project(project_id, {"stages": stages})
    update_progress(project_id)

    logger.info(
        f"Rolled back {stage} to v{version}",
        extra={"project_id": str(project_id), "stage": stage},
    )
    return target


def _current_version(project_id: UUID | str, stage: str) -> str | None:
    project = require_project(project_id)
    data = (project.get("stages") or {}).get(stage) or {}
    current = data.get("current_version_id")
    return str(current) if current is not None else None


def delete_version(project_id: UUID | str, stage: str, version: int) -> None:
    """
    Delete one version.

    Raises:
        ValidationError: If it is the stage's current version
        NotFoundError: If it does not exist
    """
    stage = normalize_stage(stage)
    if _current_version(project_id, stage) == str(version):
        raise ValidationError(f"Version {version} is the current version of {stage}")

    deleted = stage_versions.delete_versions(project_id, stage, [version])
    if deleted == 0:
        raise NotFoundError(f"Version {version} not found for {stage}")


def delete_versions(project_id: UUID | str, stage: str, versions: list[int]) -> int:
    """
    Delete several versions; returns the number removed.

    Raises:
        ValidationError: If the list contains the stage's current version
    """
    stage = normalize_stage(stage)
    current = _current_version(project_id, stage)
    if current is not None and current in {str(v) for v in versions}:
        raise ValidationError(f"Version {current} is the current version of {stage}")

    return stage_versions.delete_versions(project_id, stage, versions)


def cleanup_old_versions(
    project_id: UUID | str, stage: str, keep_count: int = DEFAULT_KEEP_VERSIONS
) -> int:
    """
    Keep the newest ``keep_count`` versions and delete the rest.

    The stage's current version is always kept. Remaining versions are
    never renumbered.

    Returns:
        Number of versions deleted
    """
    stage = normalize_stage(stage)
    numbers = stage_versions.list_version_numbers(project_id, stage)
    if len(numbers) <= keep_count:
        return 0

    current = _current_version(project_id, stage)
    to_delete = [n for n in sorted(numbers, reverse=True)[keep_count:] if str(n) != current]
    deleted = stage_versions.delete_versions(project_id, stage, to_delete)

    logger.info(
        f"Cleaned up {deleted} old {stage} versions",
        extra={"project_id": str(project_id), "stage": stage},
    )
    return deleted


def _report_text(output: Any) -> str:
    if isinstance(output, dict):
        return str(output.get("report") or output.get("content") or "").strip()
    if isinstance(output, str):
        return output.strip()
    return ""


def save_output_with_version(
    project_id: UUID | str,
    stage: str,
    output: dict[str, Any],
    author: dict[str, Any] | None = None,
    change_note: str | None = None,
) -> dict[str, Any]:
    """
    Save an edited output and version it when the report text changed.

    Whitespace-only edits do not produce a version.

    Returns:
        Dict with the updated stage ``data`` and the created ``version``
        (None when the report text is unchanged)
    """
    stage = normalize_stage(stage)
    previous = get_stage_data(project_id, stage).get("output")
    data = save_stage_output(project_id, stage, output)

    new_report = _report_text(data.get("output"))
    if not new_report or new_report == _report_text(previous):
        return {"data": data, "version": None}

    version = create_version(
        project_id,
        stage,
        content=data["output"],
        author=author,
        is_ai_generated=False,
        change_note=change_note,
    )
    return {"data": data, "version": version}
