"""
Tracked question model
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from context_engine.models.insight import ConfidenceLevel, ImportanceLevel
from context_engine.models.stage import StageType
from context_engine.utils.datetime_utils import utc_now_ms


class QuestionStatus(str, Enum):
    UNANSWERED = "unanswered"
    PARTIAL = "partial"
    ANSWERED = "answered"
    OBSOLETE = "obsolete"


class QuestionCategory(str, Enum):
    CLARIFYING = "clarifying"
    PROBING = "probing"
    HYPOTHETICAL = "hypothetical"
    CHALLENGE = "challenge"
    META = "meta"
    FUTURE = "future"


OPEN_STATUSES = (QuestionStatus.UNANSWERED, QuestionStatus.PARTIAL)


class TrackedQuestion(BaseModel):
    """A question raised in a stage; status changes produce a new copy"""
    model_config = ConfigDict(frozen=True)

    id: str
    question: str
    asked_in_stage: int = Field(..., ge=1)
    stage_type: StageType
    priority: ImportanceLevel = ImportanceLevel.MEDIUM
    status: QuestionStatus = QuestionStatus.UNANSWERED
    answer: Optional[str] = None
    answered_in_stage: Optional[int] = None
    confidence: Optional[ConfidenceLevel] = None
    evidence: List[str] = Field(default_factory=list)
    related_insight_ids: List[str] = Field(default_factory=list)
    category: QuestionCategory = QuestionCategory.CLARIFYING
    requires_research: bool = False
    research_attempts: int = 0
    created_at: int = Field(default_factory=utc_now_ms)
    updated_at: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


class QuestionTrackingMetrics(BaseModel):
    total_questions: int = 0
    unanswered_count: int = 0
    partial_count: int = 0
    answered_count: int = 0
    high_priority_unanswered: int = 0
    average_confidence: float = 0.0
