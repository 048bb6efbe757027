"""Database access layer for stage versions."""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from postgrest.exceptions import APIError

from curriculum_engine.core.logging import get_logger
from curriculum_engine.db.supabase_client import get_supabase

logger = get_logger(__name__)

TABLE = "stage_versions"

# Postgres unique_violation, raised when two writers race for the same number
UNIQUE_VIOLATION = "23505"
MAX_INSERT_ATTEMPTS = 3


def get_latest_version_number(project_id: UUID | str, stage: str) -> int:
    """Highest version number for a project stage, 0 when none exist."""
    supabase = get_supabase()
    response = (
        supabase.table(TABLE)
        .select("version")
        .eq("project_id", str(project_id))
        .eq("stage", stage)
        .order("version", desc=True)
        .limit(1)
        .execute()
    )
    return int(response.data[0]["version"]) if response.data else 0


def insert_version(record: dict[str, Any]) -> dict[str, Any]:
    """
    Insert a version numbered max + 1.

    The (project_id, stage, version) unique index rejects a number taken
    by a concurrent writer; the number is then recomputed and retried.

    Raises:
        APIError: If the insert keeps failing
    """
    supabase = get_supabase()
    project_id = record["project_id"]
    stage = record["stage"]

    for attempt in range(1, MAX_INSERT_ATTEMPTS + 1):
        data = {
            **record,
            "version": get_latest_version_number(project_id, stage) + 1,
            "created_at": datetime.now(UTC).isoformat(),
        }
        try:
            response = supabase.table(TABLE).insert(data).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION and attempt < MAX_INSERT_ATTEMPTS:
                logger.debug(f"Version {data['version']} taken for {stage}, retrying")
                continue
            raise

        if not response.data:
            raise ValueError("Failed to create stage version")

        version = response.data[0]
        logger.info(
            f"Created {stage} version v{version['version']}",
            extra={"project_id": str(project_id), "stage": stage},
        )
        return version

    raise ValueError("Failed to create stage version")


def list_versions(project_id: UUID | str, stage: str, limit: int = 20) -> list[dict[str, Any]]:
    """Versions for a project stage, newest first."""
    supabase = get_supabase()
    response = (
        supabase.table(TABLE)
        .select("*")
        .eq("project_id", str(project_id))
        .eq("stage", stage)
        .order("version", desc=True)
        .limit(limit)
        .execute()
    )
    return response.data or []


def list_version_numbers(project_id: UUID | str, stage: str) -> list[int]:
    """All version numbers for a project stage, newest first."""
    supabase = get_supabase()
    response = (
        supabase.table(TABLE)
        .select("version")
        .eq("project_id", str(project_id))
        .eq("stage", stage)
        .order("version", desc=True)
        .execute()
    )
    return [int(row["version"]) for row in (response.data or [])]


def get_version(project_id: UUID | str, stage: str, version: int) -> dict[str, Any] | None:
    supabase = get_supabase()
    response = (
        supabase.table(TABLE)
        .select("*")
        .eq("project_id", str(project_id))
        .eq("stage", stage)
        .eq("version", version)
        .limit(1)
        .execute()
    )
    return response.data[0] if response.data else None


def delete_versions(project_id: UUID | str, stage: str, versions: list[int]) -> int:
    """Delete the given version numbers; returns how many rows went away."""
    if not versions:
        return 0

    supabase = get_supabase()
    response = (
        supabase.table(TABLE)
        .delete()
        .eq("project_id", str(project_id))
        .eq("stage", stage)
        .in_("version", list(versions))
        .execute()
    )
    return len(response.data or [])
