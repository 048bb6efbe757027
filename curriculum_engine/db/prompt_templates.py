"""Prompt template store (managed prompts and their version snapshots)."""

from typing import Any

from curriculum_engine.db.supabase_client import get_supabase

TEMPLATES_TABLE = "prompt_templates"
VERSIONS_TABLE = "prompt_template_versions"


def get_template(key: str) -> dict[str, Any] | None:
    """
    Get a managed prompt by key.

    Returns:
        Row with template, current_version and ab_testing
        ({enabled, versions: [{version, weight}]}), or None
    """
    supabase = get_supabase()
    response = supabase.table(TEMPLATES_TABLE).select("*").eq("key", key).limit(1).execute()
    return response.data[0] if response.data else None


def get_version_snapshot(template_id: str, version: int) -> dict[str, Any] | None:
    """Get the stored template text for one version of a prompt."""
    supabase = get_supabase()
    response = (
        supabase.table(VERSIONS_TABLE)
        .select("*")
        .eq("template_id", template_id)
        .eq("version", version)
        .limit(1)
        .execute()
    )
    return response.data[0] if response.data else None
