from context_engine.services.context_summarization_service import (
    ContextSummarizationService, format_for_prompt)
from context_engine.services.insight_extraction_service import \
    InsightExtractionService
from context_engine.services.journey_pipeline import (JourneyPipeline,
                                                      StageAnalysis)
from context_engine.services.quality_scoring_service import \
    QualityScoringService
from context_engine.services.question_tracking_service import \
    QuestionTrackingService

__all__ = [
    "ContextSummarizationService",
    "InsightExtractionService",
    "JourneyPipeline",
    "QualityScoringService",
    "QuestionTrackingService",
    "StageAnalysis",
    "format_for_prompt",
]
