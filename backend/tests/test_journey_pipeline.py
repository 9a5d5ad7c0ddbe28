"""
Tests for JourneyPipeline
"""
import json

import pytest

from context_engine.core.cancellation import CancellationToken
from context_engine.core.errors import PipelineCancelled
from context_engine.models.insight import ExtractionMethod
from context_engine.models.quality import QUALITY_DIMENSIONS
from context_engine.models.stage import StageType
from context_engine.services import JourneyPipeline, StageAnalysis


def routed_responder(request):
    """Answer extraction and evaluation prompts with matching payloads"""
    if request.prompt.startswith("You are an expert insight extractor"):
        return json.dumps({
            "insights": [{
                "insight": "Response caching halves median latency",
                "category": "discovery",
                "importance": "high",
                "confidence": "high",
                "evidence": ["load test"],
            }],
        })
    if request.prompt.startswith("You are a quality assessor"):
        return json.dumps({"scores": {dimension: 9 for dimension in QUALITY_DIMENSIONS}})
    return "Summary text."


class TestProcessStage:
    """Tests for per-stage analysis"""

    @pytest.mark.asyncio
    async def test_backend_down_still_produces_analysis(self, settings, failing_gateway, stage_factory):
        """Test stage analysis falls back when the backend is down"""
        pipeline = JourneyPipeline(failing_gateway, settings)
        stage = stage_factory(1)

        analysis = await pipeline.process_stage(stage)

        assert isinstance(analysis, StageAnalysis)
        assert analysis.stage_id == stage.id
        assert analysis.insights
        assert all(i.extraction_method == ExtractionMethod.PATTERN for i in analysis.insights)
        assert analysis.report.overall_score == 5.0
        assert analysis.report.is_fallback is True

    @pytest.mark.asyncio
    async def test_model_outputs_flow_through(self, settings, gateway_factory, stage_factory):
        """Test stage analysis from model extraction and evaluation"""
        gateway = gateway_factory(responder=routed_responder)
        pipeline = JourneyPipeline(gateway, settings)

        analysis = await pipeline.process_stage(stage_factory(2, StageType.CHALLENGING))

        assert gateway.call_count == 2
        assert [i.text for i in analysis.insights] == ["Response caching halves median latency"]
        assert analysis.insights[0].source_stage_id == "stage-2"
        assert analysis.report.overall_score == 9.0
        assert analysis.report.should_revise is False

    @pytest.mark.asyncio
    async def test_cancelled_stage_raises(self, settings, scripted_gateway, stage_factory):
        """Test that a cancelled stage analysis raises"""
        token = CancellationToken()
        token.cancel("user stopped the journey")
        pipeline = JourneyPipeline(scripted_gateway, settings)

        with pytest.raises(PipelineCancelled) as exc_info:
            await pipeline.process_stage(stage_factory(1), cancel_token=token)

        assert exc_info.value.reason == "user stopped the journey"
        assert scripted_gateway.call_count == 0


class TestSummaryRefresh:
    """Tests for summary cadence and rendering"""

    @pytest.mark.parametrize("count, expected", [
        (0, False), (1, False), (2, False), (3, True), (4, False), (6, True), (9, True),
    ])
    def test_cadence(self, settings, scripted_gateway, count, expected):
        """Test the default summary refresh cadence"""
        pipeline = JourneyPipeline(scripted_gateway, settings)
        assert pipeline.should_refresh_summary(count) is expected

    def test_custom_cadence(self, settings, scripted_gateway):
        """Test a configured summary refresh cadence"""
        settings = settings.model_copy(update={"summary_cadence": 2})
        pipeline = JourneyPipeline(scripted_gateway, settings)

        assert pipeline.should_refresh_summary(2)
        assert not pipeline.should_refresh_summary(3)

    @pytest.mark.asyncio
    async def test_refresh_and_render(self, settings, gateway_factory, stage_factory):
        """Test summary refresh and prompt rendering"""
        pipeline = JourneyPipeline(gateway_factory(responder=routed_responder), settings)
        stages = [stage_factory(n) for n in range(1, 4)]

        first = await pipeline.refresh_summary(stages, [], [])
        second = await pipeline.refresh_summary(stages, [], [], previous=first)
        rendered = pipeline.render_context(second)

        assert second.version == first.version + 1
        assert second.cluster_summaries == first.cluster_summaries
        assert "**JOURNEY OVERVIEW**:\nSummary text." in rendered
        assert pipeline.render_context(None) == ""
