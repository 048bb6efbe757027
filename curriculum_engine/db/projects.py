"""Projects database operations."""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from curriculum_engine.core.errors import NotFoundError
from curriculum_engine.core.logging import get_logger
from curriculum_engine.core.stages import initialize_stages
from curriculum_engine.db.supabase_client import get_supabase

logger = get_logger(__name__)

TABLE = "projects"

# Conversation sessions keep only the most recent messages
MAX_SESSION_MESSAGES = 10


def create_project(
    name: str,
    tenant_id: str,
    school_id: str,
    config_version: str = "v1",
) -> dict[str, Any]:
    """
    Create a curriculum-design project with every stage not started.

    Args:
        name: Project name
        tenant_id: Owning tenant
        school_id: School the curriculum is designed for
        config_version: Stage form configuration version

    Returns:
        Created project row as dict

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        data = {
            "name": name,
            "tenant_id": tenant_id,
            "school_id": school_id,
            "config_version": config_version,
            "current_stage": "Q1",
            "overall_progress": 0,
            "stages": initialize_stages(),
            "conversation_sessions": {},
            "audit_log": [],
        }

        response = supabase.table(TABLE).insert(data).execute()

        if not response.data:
            raise ValueError("No data returned from create_project")

        project = response.data[0]
        logger.info(
            f"Created project {project['id']}: {name}",
            extra={"project_id": project["id"]},
        )
        return project

    except Exception as e:
        logger.error(f"Failed to create project {name}: {e}")
        raise


def get_project(project_id: UUID | str) -> dict[str, Any] | None:
    """Get a project row by ID."""
    supabase = get_supabase()

    response = supabase.table(TABLE).select("*").eq("id", str(project_id)).execute()

    return response.data[0] if response.data else None


def require_project(project_id: UUID | str) -> dict[str, Any]:
    """Get a project or raise NotFoundError."""
    project = get_project(project_id)
    if project is None:
        raise NotFoundError(f"Project not found: {project_id}")
    return project


def update_project(project_id: UUID | str, updates: dict[str, Any]) -> dict[str, Any]:
    """
    Apply a partial update to a project.

    Raises:
        NotFoundError: If no row matched
    """
    supabase = get_supabase()

    response = (
        supabase.table(TABLE)
        .update({**updates, "updated_at": datetime.now(UTC).isoformat()})
        .eq("id", str(project_id))
        .execute()
    )

    if not response.data:
        raise NotFoundError(f"Project not found: {project_id}")

    return response.data[0]


def append_conversation_message(
    project_id: UUID | str,
    session_key: str,
    role: str,
    content: str,
) -> list[dict[str, Any]]:
    """
    Append a message to a conversation session, keeping the last 10.

    Returns:
        The session's messages after the append
    """
    project = require_project(project_id)
    sessions = dict(project.get("conversation_sessions") or {})
    session = dict(sessions.get(session_key) or {"messages": []})

    messages = list(session.get("messages") or [])
    messages.append(
        {"role": role, "content": content, "timestamp": datetime.now(UTC).isoformat()}
    )
    session["messages"] = messages[-MAX_SESSION_MESSAGES:]
    sessions[session_key] = session

    update_project(project_id, {"conversation_sessions": sessions})
    return session["messages"]


def get_conversation_history(project_id: UUID | str, session_key: str) -> list[dict[str, str]]:
    """Role/content pairs for a conversation session, oldest first."""
    project = require_project(project_id)
    session = (project.get("conversation_sessions") or {}).get(session_key) or {}
    return [
        {"role": msg["role"], "content": msg["content"]}
        for msg in session.get("messages") or []
    ]
