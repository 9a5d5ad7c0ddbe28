"""
Insight model: a structured distillation of one claim found in a stage's text
"""
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from context_engine.models.stage import StageType
from context_engine.utils.datetime_utils import utc_now_ms


class InsightCategory(str, Enum):
    DISCOVERY = "discovery"
    PROBLEM = "problem"
    SOLUTION = "solution"
    QUESTION = "question"
    CONNECTION = "connection"
    RECOMMENDATION = "recommendation"
    SYNTHESIS = "synthesis"


class ImportanceLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ConfidenceLevel(str, Enum):
    VERIFIED = "verified"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    SPECULATIVE = "speculative"


class ExtractionMethod(str, Enum):
    MODEL = "model"
    PATTERN = "pattern"
    MANUAL = "manual"


IMPORTANCE_WEIGHTS: Dict[ImportanceLevel, int] = {
    ImportanceLevel.CRITICAL: 4,
    ImportanceLevel.HIGH: 3,
    ImportanceLevel.MEDIUM: 2,
    ImportanceLevel.LOW: 1,
}

CONFIDENCE_WEIGHTS: Dict[ConfidenceLevel, float] = {
    ConfidenceLevel.VERIFIED: 2.0,
    ConfidenceLevel.HIGH: 1.5,
    ConfidenceLevel.MEDIUM: 1.0,
    ConfidenceLevel.LOW: 0.5,
    ConfidenceLevel.SPECULATIVE: 0.0,
}


class Insight(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    category: InsightCategory
    importance: ImportanceLevel
    evidence: List[str] = Field(default_factory=list)
    confidence: ConfidenceLevel
    assumptions: List[str] = Field(default_factory=list)
    stage_ordinal: int = Field(..., ge=1)
    stage_type: StageType
    source_stage_id: Optional[str] = None
    quality_score: int = Field(..., ge=0, le=10)
    tags: List[str] = Field(default_factory=list)
    extraction_method: ExtractionMethod
    created_at: int = Field(default_factory=utc_now_ms)

    @property
    def importance_weight(self) -> int:
        return IMPORTANCE_WEIGHTS[self.importance]
