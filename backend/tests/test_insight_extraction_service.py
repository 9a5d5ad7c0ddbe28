"""
Tests for InsightExtractionService
"""
import json
import re

import pytest

from context_engine.core.cancellation import CancellationToken
from context_engine.core.errors import PipelineCancelled
from context_engine.core.model_gateway import ModelRole
from context_engine.models.insight import (ConfidenceLevel, ExtractionMethod,
                                           ImportanceLevel, InsightCategory)
from context_engine.models.stage import StageType
from context_engine.services.insight_extraction_service import (
    InsightExtractionService, calculate_quality_score, extract_with_patterns,
    generate_tags)

LONG_TEXT = (
    "We benchmarked three caching strategies across the request path. "
    "Discovered: response caching reduces median latency for repeated queries.\n"
    "- Important: eviction policy choice dominates cache hit ratio\n"
    "- Write-through caching simplifies invalidation at a throughput cost\n"
)


def model_payload(*items) -> str:
    return json.dumps({"insights": list(items), "summary": "caching matters"})


_DEFAULT_EVIDENCE = ["benchmark run 1", "benchmark run 2"]
_UNSET = object()


def item(text, category="discovery", importance="high", confidence="high", evidence=_UNSET, **extra):
    data = {
        "insight": text,
        "category": category,
        "importance": importance,
        "confidence": confidence,
        "evidence": list(_DEFAULT_EVIDENCE) if evidence is _UNSET else evidence,
    }
    data.update(extra)
    return data


class TestDerivedFields:
    """Tests for the pure quality score and tag derivations"""

    def test_quality_score_formula(self):
        """Test the derived insight quality score"""
        assert calculate_quality_score(ImportanceLevel.MEDIUM, 0, ConfidenceLevel.MEDIUM) == 8
        assert calculate_quality_score(ImportanceLevel.LOW, 0, ConfidenceLevel.SPECULATIVE) == 6
        assert calculate_quality_score(ImportanceLevel.LOW, 0, ConfidenceLevel.LOW) == 7
        assert calculate_quality_score(ImportanceLevel.CRITICAL, 5, ConfidenceLevel.VERIFIED) == 10

    def test_tags(self):
        """Test tag derivation from category, importance and confidence"""
        assert generate_tags(InsightCategory.SOLUTION, ImportanceLevel.CRITICAL, ConfidenceLevel.LOW) == [
            "solution", "priority", "needs-verification",
        ]
        assert generate_tags(InsightCategory.PROBLEM, ImportanceLevel.MEDIUM, ConfidenceLevel.HIGH) == ["problem"]


class TestPatternExtraction:
    """Tests for the deterministic fallback extractor"""

    def test_cue_phrases_and_bullets(self):
        """Test pattern extraction from cue phrases and bullet lines"""
        text = "- Important: caching reduces latency\n- Discovered: eviction policy matters"
        insights = extract_with_patterns(text, StageType.DISCOVERING, 1)

        assert len(insights) >= 2
        for insight in insights:
            assert insight.extraction_method == ExtractionMethod.PATTERN
            assert insight.importance == ImportanceLevel.MEDIUM
            assert insight.confidence == ConfidenceLevel.MEDIUM
            assert insight.category == InsightCategory.DISCOVERY
            assert insight.quality_score == 8

    def test_matches_outside_length_window_are_dropped(self):
        """Test that too short and too long matches are ignored"""
        text = "- too short\n- " + "x" * 400 + "\n"
        assert extract_with_patterns(text, StageType.SOLVING, 2) == []

    def test_duplicates_are_collapsed(self):
        """Test case-insensitive de-duplication of pattern matches"""
        text = "- caching reduces latency for reads\n- Caching reduces latency for reads\n"
        insights = extract_with_patterns(text, StageType.SOLVING, 2)

        assert len(insights) == 1


class TestInsightExtractionService:
    """Tests for InsightExtractionService.extract"""

    @pytest.mark.asyncio
    async def test_short_input_returns_empty_without_backend_call(self, settings, scripted_gateway):
        """Test that short input yields nothing and skips the backend"""
        service = InsightExtractionService(scripted_gateway, settings)
        insights = await service.extract("Too short to analyse.", StageType.DISCOVERING, 1)

        assert insights == []
        assert scripted_gateway.call_count == 0

    @pytest.mark.asyncio
    async def test_model_output_becomes_structured_insights(self, settings, gateway_factory):
        """Test conversion of model output into insights"""
        gateway = gateway_factory(responses=[model_payload(
            item("Caching reduces latency by 40 percent", category="Discovery"),
            item("Cache stampedes are unhandled", category="problem", importance="low",
                 confidence="speculative", evidence=None, assumptions=["traffic is bursty"]),
        )])
        service = InsightExtractionService(gateway, settings)

        insights = await service.extract(LONG_TEXT, StageType.CHASING, 2, source_stage_id="stage-2")

        assert len(insights) == 2
        first, second = insights
        assert first.extraction_method == ExtractionMethod.MODEL
        assert first.category == InsightCategory.DISCOVERY
        assert first.quality_score == 10
        assert first.tags == ["discovery", "priority"]
        assert first.source_stage_id == "stage-2"
        assert re.match(r"^insight_2_0_[0-9a-f]{8}$", first.id)
        assert second.evidence == []
        assert second.assumptions == ["traffic is bursty"]
        assert second.quality_score == 6
        assert second.tags == ["problem", "needs-verification"]

        request = gateway.requests[0]
        assert request.role == ModelRole.FAST
        assert request.max_output_tokens == settings.insight_max_tokens
        assert "chasing stage output" in request.prompt

    @pytest.mark.asyncio
    async def test_output_is_capped_at_ten(self, settings, gateway_factory):
        """Test that at most ten insights are returned"""
        items = [item(f"Insight number {n} about caching") for n in range(12)]
        gateway = gateway_factory(responses=[model_payload(*items)])
        service = InsightExtractionService(gateway, settings)

        insights = await service.extract(LONG_TEXT, StageType.DISCOVERING, 1)

        assert len(insights) == 10

    @pytest.mark.asyncio
    async def test_null_and_scalar_evidence_become_lists(self, settings, gateway_factory):
        """Test that null evidence decodes as empty and a bare string as one item"""
        gateway = gateway_factory(responses=[model_payload(
            item("Eviction storms follow deploys", evidence=None, assumptions=None),
            item("Warm caches cut cold-start cost", evidence="canary metrics"),
        )])
        service = InsightExtractionService(gateway, settings)

        first, second = await service.extract(LONG_TEXT, StageType.DISCOVERING, 1)

        assert first.evidence == []
        assert first.assumptions == []
        assert first.quality_score == 10
        assert second.evidence == ["canary metrics"]
        assert second.extraction_method == ExtractionMethod.MODEL

    @pytest.mark.asyncio
    async def test_fenced_output_is_accepted(self, settings, gateway_factory):
        """Test decoding of fenced JSON output"""
        fenced = "```json\n" + model_payload(item("Caching reduces latency")) + "\n```"
        service = InsightExtractionService(gateway_factory(responses=[fenced]), settings)

        insights = await service.extract(LONG_TEXT, StageType.DISCOVERING, 1)

        assert [i.extraction_method for i in insights] == [ExtractionMethod.MODEL]

    @pytest.mark.parametrize("reply", [
        "Here are some insights: caching is good.",
        json.dumps({"insights": [item("x", category="epiphany")]}),
        json.dumps({"summary": "no insights key"}),
    ])
    @pytest.mark.asyncio
    async def test_unusable_output_falls_back_to_patterns(self, settings, gateway_factory, reply):
        """Test pattern fallback on malformed model output"""
        service = InsightExtractionService(gateway_factory(responses=[reply]), settings)

        insights = await service.extract(LONG_TEXT, StageType.DISCOVERING, 1)

        assert insights
        assert all(i.extraction_method == ExtractionMethod.PATTERN for i in insights)

    @pytest.mark.asyncio
    async def test_failing_backend_falls_back_to_patterns(self, settings, failing_gateway):
        """Test pattern fallback when the backend keeps failing"""
        service = InsightExtractionService(failing_gateway, settings)

        insights = await service.extract(LONG_TEXT, StageType.DISCOVERING, 3)

        assert len(insights) >= 1
        assert all(i.extraction_method == ExtractionMethod.PATTERN for i in insights)
        assert all(i.stage_ordinal == 3 for i in insights)

    @pytest.mark.asyncio
    async def test_cancellation_is_not_swallowed(self, settings, scripted_gateway):
        """Test that cancellation escapes extraction"""
        token = CancellationToken()
        token.cancel()
        service = InsightExtractionService(scripted_gateway, settings)

        with pytest.raises(PipelineCancelled):
            await service.extract(LONG_TEXT, StageType.DISCOVERING, 1, cancel_token=token)

    @pytest.mark.asyncio
    async def test_extract_batch_keeps_stage_order(self, settings, scripted_gateway, stage_factory):
        """Test batch extraction returns results per stage in order"""
        stages = [stage_factory(n) for n in (1, 2, 3)]
        service = InsightExtractionService(scripted_gateway, settings)

        results = await service.extract_batch(stages)

        assert len(results) == 3
        for stage, insights in zip(stages, results):
            assert insights
            assert {i.source_stage_id for i in insights} == {stage.id}
            assert {i.stage_ordinal for i in insights} == {stage.ordinal}

    @pytest.mark.asyncio
    async def test_reextract_joins_legacy_insights(self, settings, gateway_factory):
        """Test re-extraction over legacy string insights"""
        gateway = gateway_factory(responses=[model_payload(item("Caching reduces latency"))])
        service = InsightExtractionService(gateway, settings)
        legacy = [
            "Caching reduces latency for repeated queries across the fleet",
            "Eviction policy choice dominates the observed cache hit ratio",
        ]

        insights = await service.reextract(legacy, StageType.SEARCHING, 4)

        assert len(insights) == 1
        assert insights[0].stage_type == StageType.SEARCHING
        assert legacy[1] in gateway.requests[0].prompt
