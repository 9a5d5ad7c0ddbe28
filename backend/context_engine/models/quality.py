"""
Quality report models
"""
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field

from context_engine.models.stage import StageType
from context_engine.utils.datetime_utils import utc_now_ms

QUALITY_DIMENSIONS = (
    "completeness",
    "depth",
    "specificity",
    "actionability",
    "coherence",
    "novelty",
)


class QualityScores(BaseModel):
    model_config = ConfigDict(frozen=True)

    completeness: float = Field(..., ge=0.0, le=10.0)
    depth: float = Field(..., ge=0.0, le=10.0)
    specificity: float = Field(..., ge=0.0, le=10.0)
    actionability: float = Field(..., ge=0.0, le=10.0)
    coherence: float = Field(..., ge=0.0, le=10.0)
    novelty: float = Field(..., ge=0.0, le=10.0)

    @classmethod
    def neutral(cls) -> "QualityScores":
        return cls(**{dimension: 5.0 for dimension in QUALITY_DIMENSIONS})

    def as_dict(self) -> Dict[str, float]:
        return {dimension: getattr(self, dimension) for dimension in QUALITY_DIMENSIONS}

    def mean(self) -> float:
        """Overall score: mean of the six dimensions rounded to one decimal"""
        return round(sum(self.as_dict().values()) / len(QUALITY_DIMENSIONS), 1)


class QualityReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage_id: str
    stage_type: StageType
    scores: QualityScores
    overall_score: float = Field(..., ge=0.0, le=10.0)
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    should_revise: bool = False
    revision_suggestions: List[str] = Field(default_factory=list)
    is_fallback: bool = False
    evaluated_at: int = Field(default_factory=utc_now_ms)


class DimensionStatistics(BaseModel):
    mean: float = 0.0
    min: float = 0.0
    max: float = 0.0


class QualityStatistics(BaseModel):
    average: float = 0.0
    min: float = 0.0
    max: float = 0.0
    needs_revision: int = 0
    total_stages: int = 0
    by_dimension: Dict[str, DimensionStatistics] = Field(
        default_factory=lambda: {dimension: DimensionStatistics() for dimension in QUALITY_DIMENSIONS}
    )
