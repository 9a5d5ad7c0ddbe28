from context_engine.models.artifact import Artifact, ArtifactType
from context_engine.models.insight import (ConfidenceLevel, ExtractionMethod,
                                           ImportanceLevel, Insight,
                                           InsightCategory)
from context_engine.models.quality import (QUALITY_DIMENSIONS,
                                           DimensionStatistics, QualityReport,
                                           QualityScores, QualityStatistics)
from context_engine.models.question import (QuestionCategory, QuestionStatus,
                                            QuestionTrackingMetrics,
                                            TrackedQuestion)
from context_engine.models.stage import Stage, StageType
from context_engine.models.summary import (ClusterSummary, ContextSummary,
                                           Contradiction)

__all__ = [
    "Artifact",
    "ArtifactType",
    "ClusterSummary",
    "ConfidenceLevel",
    "ContextSummary",
    "Contradiction",
    "DimensionStatistics",
    "ExtractionMethod",
    "ImportanceLevel",
    "Insight",
    "InsightCategory",
    "QUALITY_DIMENSIONS",
    "QualityReport",
    "QualityScores",
    "QualityStatistics",
    "QuestionCategory",
    "QuestionStatus",
    "QuestionTrackingMetrics",
    "Stage",
    "StageType",
    "TrackedQuestion",
]
