"""End-to-end stage generation tests with a fake database and mocked LLM."""

from contextlib import ExitStack
from functools import partial
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from curriculum_engine.core.content_validator import ContentValidator
from curriculum_engine.core.errors import (
    EmbeddingTimeoutError,
    InvalidStageError,
    LLMError,
    MissingRequiredFieldError,
)
from curriculum_engine.core.generation_service import GenerationService
from curriculum_engine.core.llm_client import ChatResponse
from curriculum_engine.core.prompt_templates import ResolvedPrompt
from curriculum_engine.core.retrieval import retrieve_chunks
from curriculum_engine.core.stage_forms import parse_form
from curriculum_engine.core.stage_generation import (
    AI_AUTHOR_NAME,
    derive_outcome,
    generate_stage,
    regenerate_stage,
    stream_stage,
)
from curriculum_engine.core.stage_metrics import analyze_swot, five_virtues_coverage
from tests.fakes.fake_db import VERSION_FUNCTIONS, FakeDB, FakeVectorStore

PROJECT_ACCESS = ("require_project", "update_project")
USAGE = {"prompt_tokens": 30, "completion_tokens": 20, "total_tokens": 50}
Q3_REPORT = "和美教育：坚持立德树人，五育并举，让每个孩子向美而行。"


class FakeStream:
    def __init__(self, deltas):
        self.deltas = deltas
        self.usage = USAGE
        self.model = "test-model"

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for delta in self.deltas:
            yield delta


def _service(content: str = Q3_REPORT, error: Exception | None = None) -> GenerationService:
    """Service whose retrieval always fails to embed and whose LLM returns ``content``."""
    embedding_client = MagicMock()
    embedding_client.embed_one = AsyncMock(side_effect=EmbeddingTimeoutError("slow"))
    llm = MagicMock()
    llm.chat = AsyncMock(
        return_value=ChatResponse(content=content, usage=USAGE, model="test-model"), side_effect=error
    )
    llm.chat_stream = MagicMock(return_value=FakeStream([content[:4], content[4:]]))
    retriever = partial(retrieve_chunks, embedding_client=embedding_client, vector_store=FakeVectorStore())
    return GenerationService(llm_client=llm, retriever=retriever, cache_ttl=0)


@pytest.fixture
def db():
    fake = FakeDB()
    with ExitStack() as stack:
        stack.enter_context(fake.patched("curriculum_engine.core.stage_service", PROJECT_ACCESS))
        stack.enter_context(fake.patched("curriculum_engine.core.version_manager", PROJECT_ACCESS))
        stack.enter_context(fake.patched("curriculum_engine.db.stage_versions", VERSION_FUNCTIONS))
        stack.enter_context(
            fake.patched(
                "curriculum_engine.core.stage_generation",
                ("append_conversation_message", "get_conversation_history"),
            )
        )
        stack.enter_context(
            patch(
                "curriculum_engine.core.generation_service.resolve_prompt",
                return_value=ResolvedPrompt(key="stage_q3", template="核心理念：{{purpose}}", version=1),
            )
        )
        yield fake


class TestGenerateStage:
    @pytest.mark.asyncio
    async def test_rag_failure_still_generates_and_persists(self, db):
        project = db.add_project()

        payload = await generate_stage(
            project["id"],
            "q3",
            {"purpose": "培养全面发展的人", "core_concept": "和美"},
            use_web=False,
            service=_service(),
        )

        assert payload["success"] is True
        assert payload["stage"] == "Q3"
        assert payload["report"] == Q3_REPORT
        assert payload["ragResults"] == []
        assert payload["coreConcept"] == "和美"
        assert payload["positive"] is True
        assert payload["metadata"]["tokenUsage"] == USAGE
        assert payload["metadata"]["promptUsed"] == "核心理念：培养全面发展的人"

        stored = db.projects[project["id"]]
        stage = stored["stages"]["Q3"]
        assert stage["status"] == "completed"
        assert stage["input"]["purpose"] == "培养全面发展的人"
        assert stage["output"]["report"] == Q3_REPORT
        assert stage["output"]["rag_results"] == []
        assert stage["diagnostic_score"]["overall"] == 90
        assert stored["overall_progress"] == 10

        (version,) = db.versions
        assert version["is_ai_generated"] is True
        assert version["author"] == {"user_id": "system", "name": AI_AUTHOR_NAME}
        assert version["content"]["text"] == Q3_REPORT
        assert version["generation_metadata"]["token_usage"] == USAGE

    @pytest.mark.asyncio
    async def test_q3_uses_completed_q2_when_rag_is_down(self, db):
        project = db.add_project()
        q2_report = "融合建构主义与本土文化，形成和美育人的理论支撑。"
        project["stages"]["Q2"].update(
            status="completed", output={"report": q2_report}, completed_at="2025-01-01T00:00:00+00:00"
        )
        template = ResolvedPrompt(key="stage_q3", template="理论基础：{{Q2_output}}\n理念：{{core_concept}}", version=1)

        with patch("curriculum_engine.core.generation_service.resolve_prompt", return_value=template):
            payload = await generate_stage(
                project["id"], "Q3", {"purpose": "", "core_concept": ""}, use_web=False, service=_service()
            )

        assert payload["success"] is True
        assert payload["ragResults"] == []
        assert q2_report in payload["metadata"]["promptUsed"]
        assert payload["coreConcept"] == "和美教育"
        assert db.projects[project["id"]]["stages"]["Q3"]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_user_recorded_as_version_author(self, db):
        project = db.add_project()

        await generate_stage(
            project["id"], "Q3", {"purpose": "育人"}, use_web=False,
            user={"id": "u-7", "name": "王老师"}, service=_service(),
        )

        assert db.versions[0]["author"] == {"user_id": "u-7", "name": "王老师"}

    @pytest.mark.asyncio
    async def test_version_failure_does_not_fail_generation(self, db):
        project = db.add_project()

        with patch(
            "curriculum_engine.core.stage_generation.create_version", side_effect=RuntimeError("db down")
        ):
            payload = await generate_stage(
                project["id"], "Q3", {"purpose": "育人"}, use_web=False, service=_service()
            )

        assert payload["success"] is True
        assert db.projects[project["id"]]["stages"]["Q3"]["status"] == "completed"
        assert db.versions == []

    @pytest.mark.asyncio
    async def test_llm_failure_persists_nothing(self, db):
        project = db.add_project()
        service = _service(error=LLMError("upstream", code="HTTP_500", retryable=True))

        with pytest.raises(LLMError):
            await generate_stage(project["id"], "Q3", {"purpose": "育人"}, use_web=False, service=service)

        stage = db.projects[project["id"]]["stages"]["Q3"]
        assert stage["status"] == "not_started"
        assert stage["input"] is None
        assert db.versions == []

    @pytest.mark.asyncio
    async def test_invalid_stage(self, db):
        project = db.add_project()

        with pytest.raises(InvalidStageError):
            await generate_stage(project["id"], "Q11", {}, use_web=False, service=_service())

    @pytest.mark.asyncio
    async def test_callback_streams_tokens(self, db):
        project = db.add_project()
        tokens = []

        payload = await generate_stage(
            project["id"], "Q3", {"purpose": "育人"}, use_web=False,
            on_token=tokens.append, service=_service(),
        )

        assert "".join(tokens) == Q3_REPORT
        assert payload["report"] == Q3_REPORT


class TestStreamStage:
    @pytest.mark.asyncio
    async def test_persists_before_done(self, db):
        project = db.add_project()
        seen = []

        async for event in stream_stage(
            project["id"], "Q3", {"purpose": "育人"}, use_web=False, service=_service()
        ):
            seen.append(event["type"])
            if event["type"] == "done":
                assert db.projects[project["id"]]["stages"]["Q3"]["status"] == "completed"
                assert event["report"] == Q3_REPORT
                break

        assert seen == ["start", "token", "token", "done"]

    @pytest.mark.asyncio
    async def test_plan_failure_is_error_event(self, db):
        events = [
            event async for event in stream_stage("missing", "Q3", {}, use_web=False, service=_service())
        ]

        assert [e["type"] for e in events] == ["error"]


class TestRegenerateStage:
    @pytest.mark.asyncio
    async def test_requires_saved_input(self, db):
        project = db.add_project()

        with pytest.raises(MissingRequiredFieldError) as exc_info:
            await regenerate_stage(project["id"], "Q3", service=_service())

        assert exc_info.value.field == "input"

    @pytest.mark.asyncio
    async def test_feedback_becomes_history(self, db, settings_override):
        settings_override(WEB_SEARCH_ENABLED="false")
        project = db.add_project()
        project["stages"]["Q3"]["input"] = {"purpose": "育人"}
        service = _service()

        await regenerate_stage(project["id"], "Q3", feedback="  更简洁一些 ", service=service)

        messages = service.llm_client.chat.call_args.args[0]
        assert messages[-1] == {"role": "user", "content": "更简洁一些"}
        assert db.get_conversation_history(project["id"], "Q3") == [
            {"role": "user", "content": "更简洁一些"},
            {"role": "assistant", "content": Q3_REPORT},
        ]


class TestDeriveOutcome:
    def test_q1_uses_swot(self):
        data = {"school_name": "实验小学"}
        for i in range(1, 6):
            data[f"strength_{i}_description"] = "师资力量突出"
            data[f"weakness_{i}_description"] = "设施不足"
            data[f"opportunity_{i}_description"] = "政策支持"
        form = parse_form("Q1", data)
        swot = analyze_swot(form)

        outcome = derive_outcome("Q1", form, "SWOT 报告", 0, swot, ContentValidator())

        assert outcome.output["overallScore"] == 65
        assert outcome.score["overall"] == 65
        assert outcome.payload["swotAnalysis"]["overall_score"] == 65
        assert outcome.version_content["text"] == "SWOT 报告"

    def test_q3_without_virtue_signals(self):
        outcome = derive_outcome("Q3", parse_form("Q3", {}), "普通的理念", 0, None, ContentValidator())

        assert outcome.output["positive"] is False
        assert outcome.score["overall"] == 65
        assert outcome.suggestions

    def test_q4_uses_precomputed_coverage(self):
        coverage = five_virtues_coverage([])

        outcome = derive_outcome("Q4", parse_form("Q4", {}), "育人目标", 0, coverage, ContentValidator())

        assert outcome.score["overall"] == 20
        assert outcome.payload["coverage"]["dimensions"] == coverage.dimensions

    def test_q5_custom_name_wins(self):
        form = parse_form("Q5", {"custom_name": "向美课程"})

        outcome = derive_outcome("Q5", form, "和美课程\n美美与共 和而不同", 0, None, ContentValidator())

        assert outcome.output["name_suggestion"] == "向美课程"
        assert outcome.payload["tagline"] == "美美与共 和而不同"

    @pytest.mark.parametrize(
        "stage,output_key,payload_key",
        [
            ("Q8", "structure_score", "structureScore"),
            ("Q9", "feasibility", "feasibility"),
            ("Q10", "evaluation_score", "evaluationScore"),
        ],
    )
    def test_late_stage_scores(self, stage, output_key, payload_key):
        outcome = derive_outcome(stage, parse_form(stage, {}), "方案正文", 2, None, ContentValidator())

        assert outcome.output[output_key] == outcome.payload[payload_key]
        assert outcome.score["overall"] == outcome.output[output_key]["score"]
        assert "report" not in outcome.version_content
        assert outcome.version_content["text"] == "方案正文"
