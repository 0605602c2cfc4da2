"""
Visit Triage - Pipeline Integration Tests

End-to-end tests of VisitPipeline with offline collaborators.
These tests verify:
- Alert rows are written if and only if the decision alerts
- Extraction failure falls back to the raw-transcript analysis
- Best-effort stages degrade; fail-fast stages propagate
- Metrics are emitted per operation

Run with: pytest tests/test_pipeline.py -v
"""

import logging
from typing import List

import pytest

from conftest import (
    FailingAlertStore,
    FailingChunkStore,
    FailingEmbedder,
    FailingTranslator,
    ScriptedGenerator,
    SlowGenerator,
)
from visit_triage.core.alert_store import InMemoryAlertStore
from visit_triage.core.exceptions import (
    CollaboratorTimeoutError,
    GenerationError,
    MalformedIdentifierError,
    NoPreviousVisitError,
    PersistenceError,
    ValidationError,
    VersionConflictError,
)
from visit_triage.core.pipeline import PipelineMetrics, VisitPipeline
from visit_triage.core.prompts import NO_CONTEXT_PLACEHOLDER
from visit_triage.core.types import (
    ClinicalRecord,
    ExtractionFailure,
    Message,
    PromptKind,
    Role,
    Severity,
)


# =============================================================================
# Analyze
# =============================================================================

class TestAnalyze:

    @pytest.mark.asyncio
    async def test_emergency_raises_high_alert(
        self, pipeline: VisitPipeline, alert_store: InMemoryAlertStore, emergency_messages
    ):
        outcome = await pipeline.analyze("visit-1", emergency_messages)

        assert outcome.alert is not None
        assert outcome.alert.alert is True
        assert outcome.alert.severity is Severity.HIGH
        assert outcome.alert.label == "Difficulty Breathing"
        assert isinstance(outcome.structured_data, ClinicalRecord)
        assert outcome.structured_data.main_complaint == "chest pain"
        assert "Emergency" in outcome.analysis

        assert len(alert_store) == 1
        [stored] = await alert_store.list_all()
        assert stored.visit_id == "visit-1"
        assert stored.severity is Severity.HIGH
        assert list(stored.triggering_messages) == emergency_messages

    @pytest.mark.asyncio
    async def test_routine_visit_writes_no_alert(
        self, pipeline: VisitPipeline, alert_store: InMemoryAlertStore, routine_messages
    ):
        outcome = await pipeline.analyze("visit-2", routine_messages)

        assert outcome.alert is None
        assert len(alert_store) == 0
        assert "Headache" in outcome.analysis

    @pytest.mark.asyncio
    async def test_doctor_visit_raises_medium_alert(
        self, pipeline: VisitPipeline, alert_store: InMemoryAlertStore, doctor_messages
    ):
        outcome = await pipeline.analyze("visit-3", doctor_messages)

        assert outcome.alert.severity is Severity.MEDIUM
        assert len(alert_store) == 1

    @pytest.mark.asyncio
    async def test_structured_prompt_used_when_extraction_succeeds(
        self, make_pipeline, routine_messages
    ):
        generator = ScriptedGenerator()
        pipeline = make_pipeline(generator=generator)

        await pipeline.analyze("visit-2", routine_messages)

        prompt = generator.requests_of(PromptKind.ANALYSIS)[0].turns[0].text
        assert "*structured summary*" in prompt
        assert '"main_complaint": "headache"' in prompt

    @pytest.mark.asyncio
    async def test_extraction_failure_uses_raw_prompt(self, make_pipeline, emergency_messages):
        generator = ScriptedGenerator({PromptKind.EXTRACTION: "I could not produce JSON, sorry."})
        pipeline = make_pipeline(generator=generator)

        outcome = await pipeline.analyze("visit-1", emergency_messages)

        assert outcome.structured_data == ExtractionFailure()
        assert outcome.structured_data.to_dict() == {"error": "Extraction failed"}
        prompt = generator.requests_of(PromptKind.ANALYSIS)[0].turns[0].text
        assert "*raw*" in prompt
        assert "Health Worker: I have chest pain and can't breathe" in prompt
        # The analysis still runs to completion and triage still alerts
        assert outcome.alert.severity is Severity.HIGH

    @pytest.mark.asyncio
    async def test_classifier_failure_writes_no_alert(
        self, make_pipeline, alert_store: InMemoryAlertStore, emergency_messages
    ):
        pipeline = make_pipeline(generator=ScriptedGenerator({PromptKind.TRIAGE: "not json"}))

        outcome = await pipeline.analyze("visit-1", emergency_messages)

        assert outcome.alert is None
        assert len(alert_store) == 0

    @pytest.mark.asyncio
    async def test_analysis_failure_propagates(self, make_pipeline, alert_store, emergency_messages):
        pipeline = make_pipeline(generator=ScriptedGenerator({PromptKind.ANALYSIS: RuntimeError("boom")}))

        with pytest.raises(GenerationError):
            await pipeline.analyze("visit-1", emergency_messages)

        assert len(alert_store) == 0

    @pytest.mark.asyncio
    async def test_alert_persistence_failure_propagates(self, make_pipeline, emergency_messages):
        pipeline = make_pipeline(alert_store=FailingAlertStore())

        with pytest.raises(PersistenceError):
            await pipeline.analyze("visit-1", emergency_messages)

    @pytest.mark.asyncio
    async def test_too_few_messages(self, pipeline: VisitPipeline):
        with pytest.raises(ValidationError):
            await pipeline.analyze("visit-1", [Message(Role.USER, "hi")])

    @pytest.mark.asyncio
    async def test_analysis_is_translated(self, pipeline: VisitPipeline, translator_service, routine_messages):
        outcome = await pipeline.analyze("visit-2", routine_messages, target_language="sw-KE")

        assert outcome.analysis.startswith("[sw-KE] ")
        assert len(translator_service.calls) == 1

    @pytest.mark.asyncio
    async def test_translation_failure_keeps_analysis(self, make_pipeline, routine_messages):
        pipeline = make_pipeline(translation=FailingTranslator())

        outcome = await pipeline.analyze("visit-2", routine_messages, target_language="sw-KE")

        assert outcome.analysis.startswith("1.  **Main Symptoms/Concerns:**")


# =============================================================================
# Chat
# =============================================================================

class TestChat:

    @pytest.mark.asyncio
    async def test_reply_follows_latest_symptom(self, pipeline: VisitPipeline):
        reply = await pipeline.chat("visit-1", [Message(Role.USER, "I have a bad cough")])
        assert reply == "Are you coughing up anything, and what colour is it?"

    @pytest.mark.asyncio
    async def test_context_included_after_indexing(self, make_pipeline):
        generator = ScriptedGenerator()
        pipeline = make_pipeline(generator=generator)
        stored = await pipeline.index_transcript("visit-1", "Patient has a cough. She also has a fever.")

        await pipeline.chat("visit-1", [Message(Role.USER, "Tell me about the cough")])

        assert stored == 2
        system_prompt = generator.requests_of(PromptKind.CHAT)[0].turns[0].text
        assert "Context Document 1:" in system_prompt
        assert "Patient has a cough." in system_prompt

    @pytest.mark.asyncio
    async def test_no_context_placeholder(self, make_pipeline):
        generator = ScriptedGenerator()
        pipeline = make_pipeline(generator=generator)

        await pipeline.chat("visit-1", [Message(Role.USER, "hello")])

        system_prompt = generator.requests_of(PromptKind.CHAT)[0].turns[0].text
        assert NO_CONTEXT_PLACEHOLDER in system_prompt

    @pytest.mark.asyncio
    async def test_retrieval_failure_degrades(self, make_pipeline):
        pipeline = make_pipeline(embedder=FailingEmbedder(), chunk_store=FailingChunkStore())
        reply = await pipeline.chat("visit-1", [Message(Role.USER, "I have a fever")])
        assert "fever" in reply

    @pytest.mark.asyncio
    async def test_reply_is_translated(self, pipeline: VisitPipeline):
        reply = await pipeline.chat("visit-1", [Message(Role.USER, "I have a fever")], target_language="hi-IN")
        assert reply.startswith("[hi-IN] How many days have you had the fever")

    @pytest.mark.asyncio
    async def test_generation_failure_propagates(self, make_pipeline):
        pipeline = make_pipeline(generator=ScriptedGenerator({PromptKind.CHAT: GenerationError("quota")}))

        with pytest.raises(GenerationError):
            await pipeline.chat("visit-1", [Message(Role.USER, "hi")])

    @pytest.mark.asyncio
    async def test_generation_timeout(self, make_pipeline, test_settings):
        settings = test_settings.model_copy(update={"collaborator_timeout_seconds": 0.05})
        pipeline = make_pipeline(generator=SlowGenerator(delay_seconds=2.0), settings=settings)

        with pytest.raises(CollaboratorTimeoutError):
            await pipeline.chat("visit-1", [Message(Role.USER, "hi")])

    @pytest.mark.asyncio
    async def test_empty_messages(self, pipeline: VisitPipeline):
        with pytest.raises(ValidationError):
            await pipeline.chat("visit-1", [])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_id", ["", "has space", "slash/inside", "x" * 129])
    async def test_malformed_visit_id(self, pipeline: VisitPipeline, bad_id):
        with pytest.raises(MalformedIdentifierError):
            await pipeline.chat(bad_id, [Message(Role.USER, "hi")])


# =============================================================================
# Indexing
# =============================================================================

class TestIndexTranscript:

    @pytest.mark.asyncio
    async def test_returns_chunk_count(self, pipeline: VisitPipeline, chunk_store):
        assert await pipeline.index_transcript("visit-1", "Patient has fever. She also has a cough.") == 2
        assert len(chunk_store) == 2

    @pytest.mark.asyncio
    async def test_blank_transcript_rejected(self, pipeline: VisitPipeline):
        with pytest.raises(ValidationError):
            await pipeline.index_transcript("visit-1", "   ")


# =============================================================================
# Sessions and Follow-Up
# =============================================================================

class TestSessions:

    @pytest.mark.asyncio
    async def test_unknown_visit_has_empty_shape(self, pipeline: VisitPipeline):
        assert await pipeline.get_chat_by_visit_id("nobody") == {
            "messages": [],
            "analysis": None,
            "structuredData": None,
            "alert": None,
        }

    @pytest.mark.asyncio
    async def test_saved_chat_with_latest_alert(self, pipeline: VisitPipeline, emergency_messages):
        outcome = await pipeline.analyze("visit-1", emergency_messages)
        await pipeline.save_chat(
            "visit-1", emergency_messages, outcome.analysis, outcome.structured_data.to_dict()
        )

        result = await pipeline.get_chat_by_visit_id("visit-1")

        assert result["messages"] == [m.to_dict() for m in emergency_messages]
        assert result["analysis"] == outcome.analysis
        assert result["structuredData"]["main_complaint"] == "chest pain"
        assert result["alert"]["severity"] == "high"
        assert result["alert"]["label"] == "Difficulty Breathing"

    @pytest.mark.asyncio
    async def test_save_with_stale_version(self, pipeline: VisitPipeline, routine_messages):
        first = await pipeline.save_chat("visit-1", routine_messages)
        await pipeline.save_chat("visit-1", routine_messages, expected_version=first.version)

        with pytest.raises(VersionConflictError):
            await pipeline.save_chat("visit-1", routine_messages, expected_version=first.version)

    @pytest.mark.asyncio
    async def test_get_chat_by_id(self, pipeline: VisitPipeline, routine_messages):
        saved = await pipeline.save_chat("visit-1", routine_messages)
        loaded = await pipeline.get_chat_by_id(saved.id)
        assert loaded.visit_id == "visit-1"

    @pytest.mark.asyncio
    async def test_follow_up_appends_question(self, pipeline: VisitPipeline, doctor_messages):
        await pipeline.save_chat("visit-3", doctor_messages, "High fever for 2 days", None)

        question = await pipeline.follow_up("visit-3")

        assert question == "How is your high fever feeling today compared to our last visit?"
        result = await pipeline.get_chat_by_visit_id("visit-3")
        assert result["messages"][-1] == {"role": "assistant", "content": question}
        assert len(result["messages"]) == len(doctor_messages) + 1

    @pytest.mark.asyncio
    async def test_follow_up_without_history(self, pipeline: VisitPipeline):
        with pytest.raises(NoPreviousVisitError):
            await pipeline.follow_up("visit-unknown")


# =============================================================================
# Dashboard, Health and Metrics
# =============================================================================

class TestDashboardAndMetrics:

    @pytest.mark.asyncio
    async def test_dashboard_groups_by_visit(
        self, pipeline: VisitPipeline, emergency_messages, doctor_messages, routine_messages
    ):
        await pipeline.analyze("visit-1", emergency_messages)
        await pipeline.analyze("visit-3", doctor_messages)
        await pipeline.analyze("visit-3", emergency_messages)
        await pipeline.analyze("visit-2", routine_messages)

        groups = await pipeline.alerts_dashboard()

        by_visit = {g.visit_id: g for g in groups}
        assert set(by_visit) == {"visit-1", "visit-3"}
        assert by_visit["visit-3"].total_alerts == 2
        assert by_visit["visit-3"].highest_severity is Severity.HIGH

    def test_health_lists_components(self, pipeline: VisitPipeline):
        health = pipeline.health()
        assert health["generator"] == "scripted-generator"
        assert health["session_store"] == "InMemorySessionStore"

    @pytest.mark.asyncio
    async def test_metrics_emitted_on_success_and_failure(self, pipeline: VisitPipeline):
        emitted: List[PipelineMetrics] = []
        pipeline.set_metrics_callback(emitted.append)

        await pipeline.chat("visit-2024-0042", [Message(Role.USER, "I have a fever")])
        with pytest.raises(NoPreviousVisitError):
            await pipeline.follow_up("visit-2024-0042")

        assert [m.operation for m in emitted] == ["chat", "follow_up"]
        ok, failed = emitted
        assert ok.success is True
        assert ok.request_id.startswith("req_")
        assert set(ok.stage_ms) == {"retrieval", "generation", "translation"}
        assert failed.success is False
        assert failed.error_code == "NO_PREVIOUS_VISIT"
        assert ok.to_dict()["visit_id"] == "visit-20..."


# =============================================================================
# Log Anonymization
# =============================================================================

class TestLogAnonymization:

    VISIT = "visit-2024-0042"

    @staticmethod
    def alert_lines(caplog) -> List[str]:
        return [r.getMessage() for r in caplog.records if "ALERT raised" in r.getMessage()]

    @pytest.mark.asyncio
    async def test_alert_log_masks_visit_by_default(self, pipeline: VisitPipeline, emergency_messages, caplog):
        with caplog.at_level(logging.INFO, logger="visit_triage.core.pipeline"):
            await pipeline.analyze(self.VISIT, emergency_messages)

        [line] = self.alert_lines(caplog)
        assert "visit=visit-20..." in line
        assert self.VISIT not in caplog.text

    @pytest.mark.asyncio
    async def test_alert_and_input_logs_show_visit_when_not_anonymized(
        self, make_pipeline, test_settings, emergency_messages, caplog
    ):
        settings = test_settings.model_copy(update={"anonymize_logs": False})
        pipeline = make_pipeline(settings=settings)

        with caplog.at_level(logging.INFO, logger="visit_triage.core.pipeline"):
            await pipeline.analyze(self.VISIT, emergency_messages)

        [line] = self.alert_lines(caplog)
        assert f"visit={self.VISIT}," in line
        assert any(f"analyze: visit={self.VISIT}," in r.getMessage() for r in caplog.records)
