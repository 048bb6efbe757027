"""Stage prompt resolution with A/B variant selection."""

import random
from collections.abc import Callable
from dataclasses import dataclass

from curriculum_engine.core.logging import get_logger
from curriculum_engine.db import prompt_templates as template_store

logger = get_logger(__name__)


# =============================================================================
# Built-in templates
# =============================================================================

DEFAULT_STAGE_PROMPTS: dict[str, str] = {
    "Q1": """你是一名课程设计专家，需基于学校情境（SWOT）生成《学校课程资源分析》。
用户输入（SWOT与学校信息）：{{user_input}}
前序阶段：{{previous_stages}}
相关资料：{{rag_results}}
请输出：优势/劣势/机会/威胁的总结与建议，结构清晰分段，给出行动建议。""",
    "Q2": """你是一名课程哲学顾问，需基于用户输入生成教育哲学陈述。
用户输入：{{user_input}}
前序阶段：{{previous_stages}}
参考资料：{{rag_results}}
请给出：核心关键词、适配性评分、教育哲学陈述（分段阐述）。""",
}

GENERIC_STAGE_PROMPT = """You are creating content for stage {{stage}}. User Input:
{{user_input}}
Previous Stages:
{{previous_stages}}
RAG:
{{rag_results}}
Generate a concise, well-structured report."""


@dataclass
class ResolvedPrompt:
    key: str
    template: str
    version: int
    is_ab_test: bool = False
    source: str = "store"


def template_key(stage: str) -> str:
    return f"stage_{stage.lower()}"


def default_template(stage: str) -> str:
    return DEFAULT_STAGE_PROMPTS.get(stage) or GENERIC_STAGE_PROMPT.replace("{{stage}}", stage)


# =============================================================================
# A/B selection
# =============================================================================


def _utf16_units(text: str) -> list[int]:
    units = []
    for char in text:
        code = ord(char)
        if code > 0xFFFF:
            code -= 0x10000
            units.append(0xD800 + (code >> 10))
            units.append(0xDC00 + (code & 0x3FF))
        else:
            units.append(code)
    return units


def string_hash(seed: str) -> int:
    """31-multiplier string hash over UTF-16 code units in int32 arithmetic."""
    h = 0
    for unit in _utf16_units(seed):
        h = (h * 31 + unit) & 0xFFFFFFFF
    return h - 0x100000000 if h >= 0x80000000 else h


def select_variant(
    weights: list[float],
    seed: str | None = None,
    rng: Callable[[], float] = random.random,
) -> int:
    """
    Pick a variant index by weight.

    Weights are normalized to sum to 100. With a seed the draw is
    ``abs(string_hash(seed)) % 100`` so one user always gets the same
    variant; without a seed it is uniform in [0, 100).

    Raises:
        ValueError: If weights is empty
    """
    if not weights:
        raise ValueError("select_variant needs at least one weight")

    total = sum(weights)
    if total <= 0:
        return 0

    draw = abs(string_hash(seed)) % 100 if seed else rng() * 100

    cumulative = 0.0
    for index, weight in enumerate(weights):
        cumulative += weight / total * 100
        if draw < cumulative:
            return index
    return len(weights) - 1


# =============================================================================
# Resolution
# =============================================================================


def resolve_prompt(stage: str, user_id: str | None = None) -> ResolvedPrompt:
    """
    Template for a stage: managed prompt when present, else the built-in one.

    When the managed prompt has A/B testing enabled, a variant version is
    selected and its snapshot replaces the current template. A missing
    snapshot keeps the current template.
    """
    key = template_key(stage)

    try:
        record = template_store.get_template(key)
    except Exception as e:
        logger.warning(f"Prompt store lookup failed for {key}, using built-in template: {e}")
        record = None

    if not record or not record.get("template"):
        logger.info(f"Prompt not found: {key}, using built-in template")
        return ResolvedPrompt(key=key, template=default_template(stage), version=0, source="default")

    resolved = ResolvedPrompt(
        key=key,
        template=record["template"],
        version=int(record.get("current_version") or 1),
    )

    ab_testing = record.get("ab_testing") or {}
    variants = ab_testing.get("versions") or []
    if ab_testing.get("enabled") and variants:
        resolved.is_ab_test = True
        chosen = variants[select_variant([float(v.get("weight") or 0) for v in variants], user_id)]
        snapshot = template_store.get_version_snapshot(record["id"], int(chosen["version"]))
        if snapshot and snapshot.get("template"):
            resolved.template = snapshot["template"]
            resolved.version = int(chosen["version"])

    return resolved
