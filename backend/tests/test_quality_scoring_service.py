"""
Tests for QualityScoringService
"""
import json

import pytest

from context_engine.core.model_gateway import ModelRole
from context_engine.models.quality import QUALITY_DIMENSIONS, QualityScores
from context_engine.models.stage import StageType
from context_engine.services.quality_scoring_service import (
    STAGE_QUALITY_CRITERIA, QualityScoringService, normalize_score,
    quality_statistics, quality_trend)


def evaluation(scores, **feedback) -> str:
    body = {
        "scores": scores,
        "strengths": ["Clear structure"],
        "weaknesses": ["Few sources"],
        "improvements": ["Cite benchmarks"],
        "shouldRevise": False,
        "revisionSuggestions": ["Add a comparison table"],
    }
    body.update(feedback)
    return json.dumps(body)


def uniform(value) -> dict:
    return {dimension: value for dimension in QUALITY_DIMENSIONS}


class TestNormalizeScore:
    """Tests for normalize_score"""

    @pytest.mark.parametrize("raw, expected", [
        (7, 7.0),
        (7.5, 7.5),
        ("8", 8.0),
        ("6.5/10", 6.5),
        (15, 10.0),
        (-2, 0.0),
        ("n/a", 5.0),
        (None, 5.0),
        (True, 5.0),
        (float("nan"), 5.0),
        ([7], 5.0),
        ("1e3", 10.0),
        ("2.5E0 points", 2.5),
        ("Infinity", 10.0),
        ("-Infinity", 0.0),
        (float("inf"), 10.0),
        ("information", 5.0),
    ])
    def test_normalize(self, raw, expected):
        """Test score coercion and clamping for numeric and textual values"""
        assert normalize_score(raw) == expected


class TestQualityScoringService:
    """Tests for QualityScoringService.evaluate"""

    def test_every_stage_type_has_a_rubric(self):
        """Test rubric coverage for every stage type"""
        assert set(STAGE_QUALITY_CRITERIA) == set(StageType)

    @pytest.mark.asyncio
    async def test_scores_are_normalized_and_overall_recomputed(self, settings, gateway_factory, stage_factory):
        """Test score normalization and recomputed overall score"""
        scores = {
            "completeness": 7,
            "depth": "8",
            "specificity": 15,
            "actionability": -3,
            "coherence": "n/a",
            "novelty": True,
        }
        gateway = gateway_factory(responses=[evaluation(scores, overallScore=9.9)])
        service = QualityScoringService(gateway, settings)

        report = await service.evaluate(stage_factory(1, StageType.SOLVING))

        assert report.scores.as_dict() == {
            "completeness": 7.0,
            "depth": 8.0,
            "specificity": 10.0,
            "actionability": 0.0,
            "coherence": 5.0,
            "novelty": 5.0,
        }
        assert report.overall_score == 5.8
        assert report.should_revise is True
        assert report.revision_suggestions == ["Add a comparison table"]
        assert report.is_fallback is False

        request = gateway.requests[0]
        assert request.role == ModelRole.FAST
        assert request.max_output_tokens == settings.quality_max_tokens
        assert "SOLVING stage" in request.prompt
        assert STAGE_QUALITY_CRITERIA[StageType.SOLVING].strip() in request.prompt

    @pytest.mark.asyncio
    async def test_good_stage_is_not_flagged(self, settings, gateway_factory, stage_factory):
        """Test that a high score clears the revision flag"""
        gateway = gateway_factory(responses=[evaluation(uniform(8), shouldRevise=True)])
        service = QualityScoringService(gateway, settings)

        report = await service.evaluate(stage_factory(1))

        assert report.overall_score == 8.0
        assert report.should_revise is False
        assert report.revision_suggestions == []
        assert report.strengths == ["Clear structure"]

    @pytest.mark.asyncio
    async def test_missing_scores_and_feedback_default(self, settings, gateway_factory, stage_factory):
        """Test neutral defaults for missing scores and feedback"""
        reply = json.dumps({"strengths": "not a list"})
        service = QualityScoringService(gateway_factory(responses=[reply]), settings)

        report = await service.evaluate(stage_factory(1))

        assert report.scores == QualityScores.neutral()
        assert report.overall_score == 5.0
        assert report.strengths == []
        assert report.is_fallback is False

    @pytest.mark.parametrize("values", [
        uniform(0),
        uniform(10),
        {"completeness": 3.3, "depth": 6.6, "specificity": 9.9, "actionability": "2", "coherence": 11, "novelty": -1},
        {"completeness": "abc", "depth": None},
    ])
    @pytest.mark.asyncio
    async def test_overall_is_rounded_mean_in_range(self, settings, gateway_factory, stage_factory, values):
        """Test overall score is the rounded mean within range"""
        service = QualityScoringService(gateway_factory(responses=[evaluation(values)]), settings)

        report = await service.evaluate(stage_factory(1))

        assert all(0.0 <= v <= 10.0 for v in report.scores.as_dict().values())
        assert 0.0 <= report.overall_score <= 10.0
        assert report.overall_score == report.scores.mean()
        assert report.should_revise == (report.overall_score < 6.0)

    @pytest.mark.asyncio
    async def test_backend_failure_returns_neutral_report(self, settings, failing_gateway, stage_factory):
        """Test neutral fallback report when the backend fails"""
        service = QualityScoringService(failing_gateway, settings)

        report = await service.evaluate(stage_factory(2, StageType.BUILDING))

        assert report.overall_score == 5.0
        assert report.should_revise is False
        assert report.is_fallback is True
        assert report.scores == QualityScores.neutral()
        assert report.strengths == ["Evaluation failed - unable to assess strengths"]
        assert report.weaknesses[0].startswith("Evaluation error:")
        assert report.improvements == ["Re-run quality evaluation when service is available"]

    @pytest.mark.asyncio
    async def test_malformed_output_returns_neutral_report(self, settings, gateway_factory, stage_factory):
        """Test neutral fallback report on malformed output"""
        service = QualityScoringService(gateway_factory(responses=["Overall it is pretty good, 7/10"]), settings)

        report = await service.evaluate(stage_factory(1))

        assert report.is_fallback is True
        assert report.overall_score == 5.0
        assert "Invalid evaluation response format" in report.weaknesses[0]


class TestQualityAggregates:
    """Tests for batch evaluation and statistics"""

    @pytest.mark.asyncio
    async def test_evaluate_batch_keeps_order(self, settings, gateway_factory, stage_factory):
        """Test batch evaluation order, trend and statistics"""
        def responder(request):
            return evaluation(uniform(4)) if "CHALLENGING" in request.prompt else evaluation(uniform(8))

        service = QualityScoringService(gateway_factory(responder=responder), settings)
        stages = [
            stage_factory(1, StageType.DISCOVERING),
            stage_factory(2, StageType.CHALLENGING),
            stage_factory(3, StageType.BUILDING),
        ]

        reports = await service.evaluate_batch(stages)

        assert [r.stage_id for r in reports] == [s.id for s in stages]
        assert quality_trend(reports) == [8.0, 4.0, 8.0]

        stats = quality_statistics(reports)
        assert stats.average == 6.7
        assert stats.min == 4.0
        assert stats.max == 8.0
        assert stats.needs_revision == 1
        assert stats.total_stages == 3
        assert stats.by_dimension["depth"].mean == 6.7
        assert stats.by_dimension["depth"].min == 4.0

    def test_statistics_of_nothing(self):
        """Test statistics over an empty report list"""
        stats = quality_statistics([])

        assert stats.total_stages == 0
        assert stats.average == 0.0
        assert set(stats.by_dimension) == set(QUALITY_DIMENSIONS)
