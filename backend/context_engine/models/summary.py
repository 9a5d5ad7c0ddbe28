"""
Hierarchical context summary models
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from context_engine.models.stage import StageType
from context_engine.utils.datetime_utils import utc_now_ms


class ClusterSummary(BaseModel):
    """Summary of a complete, fixed-size run of stages; never rewritten"""
    model_config = ConfigDict(frozen=True)

    stages: List[int]
    stage_types: List[StageType]
    summary: str
    key_insight_ids: List[str] = Field(default_factory=list)
    key_question_ids: List[str] = Field(default_factory=list)
    is_fallback: bool = False
    created_at: int = Field(default_factory=utc_now_ms)

    @property
    def label(self) -> str:
        if not self.stages:
            return ""
        if len(self.stages) == 1:
            return str(self.stages[0])
        return f"{self.stages[0]}-{self.stages[-1]}"


class Contradiction(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    source_a: str
    source_b: str
    resolution: Optional[str] = None
    resolved: bool = False


class ContextSummary(BaseModel):
    """The versioned, budget-bounded aggregate handed to the next stage's prompt"""
    model_config = ConfigDict(frozen=True)

    overall_summary: str
    cluster_summaries: List[ClusterSummary] = Field(default_factory=list)
    key_insights_summary: str = ""
    critical_questions_summary: str = ""
    emerging_patterns: List[str] = Field(default_factory=list)
    contradictions: List[Contradiction] = Field(default_factory=list)
    clustered_through: int = Field(default=0, ge=0, description="Highest stage ordinal already folded into a cluster summary")
    version: int = Field(default=1, ge=1)
    last_updated: int = Field(default_factory=utc_now_ms)
