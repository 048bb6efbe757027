"""Stage generation orchestration for Q1..Q10.

One call normalizes the stage form, gathers upstream context and retrieval
results, generates the report, scores it, and persists input, output,
completion and an AI version. Nothing is persisted when generation fails.
"""

import asyncio
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from curriculum_engine.core.config import get_settings
from curriculum_engine.core.content_validator import ContentValidator
from curriculum_engine.core.errors import MissingRequiredFieldError
from curriculum_engine.core.generation_service import (
    GenerationRequest,
    GenerationResult,
    GenerationService,
    get_generation_service,
)
from curriculum_engine.core.logging import get_logger
from curriculum_engine.core.retrieval import retrieve_web_results
from curriculum_engine.core.stage_forms import Q1Form, StageForm, build_generation_input, parse_form
from curriculum_engine.core.stage_metrics import (
    analyze_swot,
    build_q1_generation_input,
    evaluation_score,
    extract_keywords,
    feasibility_score,
    five_virtues_coverage,
    gap_analysis,
    name_suitability,
    pick_name_and_tagline,
    positive_alignment,
    structure_score,
    theory_fit_score,
    validate_q1_content,
    value_consistency,
)
from curriculum_engine.core.stage_service import (
    complete_stage,
    get_previous_stages_context,
    get_stage_data,
    save_stage_input,
    save_stage_output,
    to_context_map,
    update_progress,
)
from curriculum_engine.core.stages import normalize_stage
from curriculum_engine.core.version_manager import create_version
from curriculum_engine.db.projects import append_conversation_message, get_conversation_history

logger = get_logger(__name__)

AI_AUTHOR_NAME = "AI Generation"


@dataclass
class StagePlan:
    """A stage call after its inputs are resolved, before generation."""

    project_id: UUID | str
    stage: str
    form: StageForm
    request: GenerationRequest
    precomputed: Any = None
    user: dict[str, Any] | None = None


@dataclass
class StageOutcome:
    output: dict[str, Any]
    score: dict[str, Any]
    payload: dict[str, Any]
    suggestions: list[str] = field(default_factory=list)
    version_content: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Per-stage derivation
# =============================================================================


def _q1_outcome(form: Q1Form, content: str, swot: Any, validator: ContentValidator) -> StageOutcome:
    checks = validator.validate(content)
    q1_valid, q1_suggestions = validate_q1_content(content)
    validation = {
        "isValid": checks.is_valid and q1_valid,
        "suggestions": checks.suggestions + q1_suggestions,
    }
    return StageOutcome(
        output={
            "content": content,
            "report": content,
            "swotScores": swot.dimension_scores,
            "overallScore": swot.overall_score,
            "analysis": swot.analysis(),
        },
        score={"overall": swot.overall_score, "dimensions": swot.dimension_scores},
        payload={"swotAnalysis": swot.model_dump(), "validation": validation},
        suggestions=validation["suggestions"],
        version_content={
            "text": content,
            "swotScores": swot.dimension_scores,
            "overallScore": swot.overall_score,
        },
    )


def derive_outcome(
    stage: str,
    form: StageForm,
    content: str,
    rag_count: int,
    precomputed: Any,
    validator: ContentValidator,
) -> StageOutcome:
    """
    Stage-specific output fields, diagnostic score and caller payload.

    Args:
        stage: Stage id
        form: Normalized stage form
        content: Generated report
        rag_count: Number of retrieved chunks backing the report
        precomputed: Content-independent metrics computed before generation
        validator: Policy checks applied to the report
    """
    if stage == "Q1":
        return _q1_outcome(form, content, precomputed, validator)

    checks = validator.validate(content)
    keywords = extract_keywords(stage, content, form)
    output: dict[str, Any] = {"report": content, "keywords": keywords}
    payload: dict[str, Any] = {"keywords": keywords}
    suggestions = list(checks.suggestions)

    if stage == "Q2":
        fit = theory_fit_score(form, rag_count)
        output["theory_fit_score"] = fit
        payload["theoryFitScore"] = fit
        score = {"overall": fit, "dimensions": {"theory_fit": fit}}

    elif stage == "Q3":
        core_concept = form.core_concept or (keywords[0] if keywords else "")
        positive, extra = positive_alignment(content)
        suggestions += extra
        output.update(core_concept=core_concept, positive=positive, suggestions=suggestions)
        payload.update(coreConcept=core_concept, positive=positive)
        score = {"overall": 90 if positive else 65, "dimensions": {"positive_alignment": int(positive)}}

    elif stage == "Q4":
        coverage = precomputed
        suggestions += coverage.suggestions
        output["coverage"] = coverage.model_dump()
        payload["coverage"] = coverage.model_dump()
        score = {"overall": coverage.overall, "dimensions": coverage.dimensions}

    elif stage == "Q5":
        suitability = name_suitability(form, rag_count)
        name, tagline = pick_name_and_tagline(content, form)
        suggestions += suitability.suggestions
        output.update(name_suggestion=name, tagline=tagline, suitability=suitability.model_dump())
        payload.update(nameSuggestion=name, tagline=tagline, suitability=suitability.model_dump())
        score = {"overall": suitability.score, "dimensions": {"suitability": suitability.score}}

    elif stage == "Q6":
        consistency = value_consistency(form, rag_count)
        suggestions += consistency.suggestions
        output["consistency"] = consistency.model_dump()
        payload["consistency"] = consistency.model_dump()
        score = {"overall": consistency.score, "dimensions": {"consistency": consistency.score}}

    elif stage == "Q7":
        gaps = precomputed
        suggestions += gaps.suggestions
        output["gap_analysis"] = gaps.model_dump()
        payload["gapAnalysis"] = gaps.model_dump()
        score = {"overall": gaps.overall, "dimensions": gaps.dimensions}

    else:
        scorer, name, key = {
            "Q8": (structure_score, "structure_score", "structureScore"),
            "Q9": (feasibility_score, "feasibility", "feasibility"),
            "Q10": (evaluation_score, "evaluation_score", "evaluationScore"),
        }[stage]
        result = scorer(form, rag_count)
        suggestions += result.suggestions
        output[name] = result.model_dump()
        payload[key] = result.model_dump()
        score = {"overall": result.score, "dimensions": {name: result.score}}

    payload["suggestions"] = suggestions
    payload["validation"] = {"isValid": checks.is_valid, "suggestions": suggestions}
    version_content = {key: value for key, value in output.items() if key != "report"}
    return StageOutcome(
        output=output,
        score=score,
        payload=payload,
        suggestions=suggestions,
        version_content={"text": content, **version_content},
    )


# =============================================================================
# Orchestration
# =============================================================================


async def plan_stage(
    project_id: UUID | str,
    stage: str,
    form_data: dict[str, Any] | None,
    use_rag: bool = True,
    use_web: bool | None = None,
    include_citations: bool = True,
    conversation_history: list[dict[str, str]] | None = None,
    user: dict[str, Any] | None = None,
) -> StagePlan:
    """
    Resolve form, upstream context and web results for a stage.

    Raises:
        InvalidStageError: If stage is not Q1..Q10
        NotFoundError: If the project does not exist
        MissingRequiredFieldError: If web search needs a school name that is unknown
    """
    stage = normalize_stage(stage)
    form = parse_form(stage, form_data)

    previous = await asyncio.to_thread(get_previous_stages_context, project_id, stage)
    context_map = to_context_map(previous)

    precomputed: Any = None
    school_info = None
    if stage == "Q1":
        precomputed = analyze_swot(form)
        generation_input = build_q1_generation_input(form, precomputed)
        school_info = {"name": form.school_name, "region": form.school_region, "type": form.school_type}
    else:
        generation_input = build_generation_input(stage, form, context_map)
        if stage == "Q4":
            precomputed = five_virtues_coverage(form.five_virtues_priority)
        elif stage == "Q7":
            precomputed = gap_analysis(form)

    if use_web is None:
        use_web = get_settings().WEB_SEARCH_ENABLED
    web_results = (
        await retrieve_web_results(project_id, stage, form.model_dump()) if use_web else []
    )

    request = GenerationRequest(
        project_id=project_id,
        stage=stage,
        user_input=generation_input,
        previous_stages_context={item["stage"]: item["output"] for item in previous} or None,
        school_info=school_info,
        conversation_history=conversation_history,
        web_results=web_results,
        use_rag=use_rag,
        include_citations=include_citations,
        user_id=(user or {}).get("id"),
    )
    return StagePlan(
        project_id=project_id,
        stage=stage,
        form=form,
        request=request,
        precomputed=precomputed,
        user=user,
    )


def _persist(plan: StagePlan, result: GenerationResult, outcome: StageOutcome) -> None:
    save_stage_input(plan.project_id, plan.stage, plan.form.model_dump())
    save_stage_output(
        plan.project_id,
        plan.stage,
        {**outcome.output, "rag_results": result.rag_results, "web_results": result.web_results},
        outcome.score,
    )
    complete_stage(plan.project_id, plan.stage)

    author = {
        "user_id": (plan.user or {}).get("id") or "system",
        "name": (plan.user or {}).get("name") or AI_AUTHOR_NAME,
    }
    try:
        create_version(
            plan.project_id,
            plan.stage,
            content=outcome.version_content,
            author=author,
            is_ai_generated=True,
            generation_metadata={
                "prompt_used": result.metadata.get("prompt_used"),
                "prompt_version": result.metadata.get("prompt_version"),
                "rag_results": result.rag_results,
                "web_results": result.web_results,
                "token_usage": result.usage,
            },
        )
    except Exception:
        logger.exception(
            f"Failed to create {plan.stage} version",
            extra={"project_id": str(plan.project_id), "stage": plan.stage},
        )

    update_progress(plan.project_id)


async def finish_stage(
    plan: StagePlan,
    result: GenerationResult,
    validator: ContentValidator | None = None,
) -> dict[str, Any]:
    """Score a generated report, persist it and build the caller payload."""
    outcome = derive_outcome(
        plan.stage,
        plan.form,
        result.content,
        len(result.rag_results),
        plan.precomputed,
        validator or ContentValidator(),
    )
    await asyncio.to_thread(_persist, plan, result, outcome)

    logger.info(
        f"Generated {plan.stage} with {len(result.rag_results)} RAG results",
        extra={"project_id": str(plan.project_id), "stage": plan.stage},
    )
    return {
        "success": True,
        "stage": plan.stage,
        "report": result.content,
        **outcome.payload,
        "ragResults": result.rag_results,
        "webResults": result.web_results,
        "metadata": {
            "promptUsed": result.metadata.get("prompt_used"),
            "tokenUsage": result.usage,
            "timestamp": result.metadata.get("timestamp"),
            "fromCache": result.metadata.get("from_cache", False),
        },
    }


async def generate_stage(
    project_id: UUID | str,
    stage: str,
    form_data: dict[str, Any] | None = None,
    use_rag: bool = True,
    use_web: bool | None = None,
    include_citations: bool = True,
    conversation_history: list[dict[str, str]] | None = None,
    user: dict[str, Any] | None = None,
    on_token: Callable[[str], Any] | None = None,
    service: GenerationService | None = None,
) -> dict[str, Any]:
    """
    Generate, score and persist one stage.

    With ``on_token`` the answer is streamed into the callback; the
    persisted result is the same either way.

    Returns:
        Payload with report, stage-specific fields, ragResults,
        webResults and metadata

    Raises:
        InvalidStageError: If stage is not Q1..Q10
        MissingRequiredFieldError: If web search needs an unknown school name
        LLMTimeoutError: Generation timed out
        LLMError: Generation failed
    """
    service = service or get_generation_service()
    plan = await plan_stage(
        project_id, stage, form_data, use_rag, use_web, include_citations, conversation_history, user
    )

    if on_token is not None:
        result = await service.generate_with_callback(plan.request, on_token)
    else:
        result = await service.generate(plan.request)

    return await finish_stage(plan, result)


async def stream_stage(
    project_id: UUID | str,
    stage: str,
    form_data: dict[str, Any] | None = None,
    use_rag: bool = True,
    use_web: bool | None = None,
    include_citations: bool = True,
    conversation_history: list[dict[str, str]] | None = None,
    user: dict[str, Any] | None = None,
    service: GenerationService | None = None,
) -> AsyncGenerator[dict[str, Any], None]:
    """Generate a stage as events: start, token*, then done or error.

    ``done`` carries the same payload ``generate_stage`` returns. Output is
    persisted before ``done`` is yielded, so a consumer that stops early
    does not prevent persistence once generation has finished.
    """
    service = service or get_generation_service()
    try:
        plan = await plan_stage(
            project_id, stage, form_data, use_rag, use_web, include_citations, conversation_history, user
        )
    except Exception as e:
        yield {"type": "error", "message": str(e)}
        return

    async for event in service.generate_stream(plan.request):
        if event["type"] == "done":
            try:
                payload = await finish_stage(plan, event["result"])
            except Exception as e:
                logger.exception(f"Failed to persist {plan.stage}")
                yield {"type": "error", "message": str(e)}
                return
            yield {"type": "done", **payload}
        elif event["type"] == "error":
            yield {"type": "error", "message": event["message"]}
            return
        else:
            yield event


async def regenerate_stage(
    project_id: UUID | str,
    stage: str,
    feedback: str | None = None,
    use_rag: bool = True,
    user: dict[str, Any] | None = None,
    service: GenerationService | None = None,
) -> dict[str, Any]:
    """
    Regenerate a stage from its stored input, optionally steered by feedback.

    Feedback is appended to the stage's conversation session so later
    regenerations keep it as history.

    Raises:
        MissingRequiredFieldError: If the stage has no saved input
    """
    stage = normalize_stage(stage)
    data = await asyncio.to_thread(get_stage_data, project_id, stage)
    if not data.get("input"):
        raise MissingRequiredFieldError(f"Stage {stage} has no saved input", field="input")

    if feedback and feedback.strip():
        await asyncio.to_thread(
            append_conversation_message, project_id, stage, "user", feedback.strip()
        )
    history = await asyncio.to_thread(get_conversation_history, project_id, stage)

    payload = await generate_stage(
        project_id,
        stage,
        data["input"],
        use_rag=use_rag,
        conversation_history=history or None,
        user=user,
        service=service,
    )

    await asyncio.to_thread(
        append_conversation_message, project_id, stage, "assistant", payload["report"]
    )
    return payload
