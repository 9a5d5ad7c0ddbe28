"""
Stage model: one immutable unit of process output, consumed read-only
"""
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from context_engine.models.artifact import Artifact
from context_engine.utils.datetime_utils import utc_now_ms


class StageType(str, Enum):
    """Process phases a stage can belong to"""
    DISCOVERING = "discovering"
    CHASING = "chasing"
    SOLVING = "solving"
    CHALLENGING = "challenging"
    QUESTIONING = "questioning"
    SEARCHING = "searching"
    IMAGINING = "imagining"
    BUILDING = "building"


class Stage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"stage_{uuid4().hex[:12]}")
    journey_id: Optional[str] = None
    ordinal: int = Field(..., ge=1, description="1-based position in the journey")
    type: StageType
    prompt: str = ""
    result: str = ""
    deliberation: Optional[str] = None
    artifacts: List[Artifact] = Field(default_factory=list)
    created_at: int = Field(default_factory=utc_now_ms)
