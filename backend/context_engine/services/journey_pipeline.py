"""
Journey pipeline: the entry points called by the stage-sequencing collaborator

Wires the extraction, scoring and summarization services around one shared
model gateway. The pipeline keeps no journey state; callers persist and
append whatever it returns.
"""
import asyncio
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from context_engine.core.cancellation import CancellationToken, check_cancelled
from context_engine.core.config import Settings
from context_engine.core.logging_config import LoggingConfig
from context_engine.core.model_gateway import ModelGateway
from context_engine.core.tracing import add_span_attributes, get_tracer
from context_engine.models.insight import Insight
from context_engine.models.quality import QualityReport
from context_engine.models.question import TrackedQuestion
from context_engine.models.stage import Stage
from context_engine.models.summary import ContextSummary
from context_engine.services.context_summarization_service import (
    ContextSummarizationService, format_for_prompt)
from context_engine.services.insight_extraction_service import \
    InsightExtractionService
from context_engine.services.quality_scoring_service import \
    QualityScoringService

logger = LoggingConfig.get_logger(__name__)


class StageAnalysis(BaseModel):
    """Outputs produced for one finished stage"""
    stage_id: str
    insights: List[Insight] = Field(default_factory=list)
    report: QualityReport


class JourneyPipeline:
    """Facade over the context-management services"""

    def __init__(
        self,
        gateway: ModelGateway,
        settings: Settings,
        extractor: Optional[InsightExtractionService] = None,
        scorer: Optional[QualityScoringService] = None,
        summarizer: Optional[ContextSummarizationService] = None,
    ):
        """
        Initialize the pipeline

        Args:
            gateway: Shared model gateway
            settings: Pipeline settings
            extractor: Optional insight extractor (built from gateway when omitted)
            scorer: Optional quality scorer
            summarizer: Optional context summarizer
        """
        self.gateway = gateway
        self.settings = settings
        self.extractor = extractor or InsightExtractionService(gateway, settings)
        self.scorer = scorer or QualityScoringService(gateway, settings)
        self.summarizer = summarizer or ContextSummarizationService(gateway, settings)
        self.tracer = get_tracer(__name__)

    async def process_stage(
        self,
        stage: Stage,
        cancel_token: Optional[CancellationToken] = None,
    ) -> StageAnalysis:
        """
        Extract insights and evaluate quality for a finished stage

        Both run concurrently; each degrades to its own fallback, so only
        cancellation can make this raise.
        """
        with self.tracer.start_as_current_span("pipeline.process_stage") as span:
            add_span_attributes(span, stage_id=stage.id, stage_ordinal=stage.ordinal, stage_type=stage.type.value)
            check_cancelled(cancel_token)

            insights, report = await asyncio.gather(
                self.extractor.extract_from_stage(stage, cancel_token=cancel_token),
                self.scorer.evaluate(stage, cancel_token=cancel_token),
            )
            add_span_attributes(
                span,
                insight_count=len(insights),
                overall_score=report.overall_score,
                should_revise=report.should_revise,
            )
            logger.info(
                f"Processed stage {stage.ordinal} ({stage.type.value}): "
                f"{len(insights)} insights, quality {report.overall_score}/10"
            )
            return StageAnalysis(stage_id=stage.id, insights=insights, report=report)

    def should_refresh_summary(self, stage_count: int) -> bool:
        """True when the summary is due for a rebuild after stage_count stages"""
        cadence = self.settings.summary_cadence
        return stage_count > 0 and stage_count % cadence == 0

    async def refresh_summary(
        self,
        stages: Sequence[Stage],
        insights: Sequence[Insight],
        questions: Sequence[TrackedQuestion],
        previous: Optional[ContextSummary] = None,
        goal: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ContextSummary:
        return await self.summarizer.build_summary(
            stages,
            insights,
            questions,
            previous=previous,
            goal=goal,
            cancel_token=cancel_token,
        )

    @staticmethod
    def render_context(summary: Optional[ContextSummary]) -> str:
        return format_for_prompt(summary)
