"""
Artifact model: a typed sub-document attached to a stage or found in a model response
"""
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from context_engine.utils.datetime_utils import utc_now_ms


class ArtifactType(str, Enum):
    """Artifact type enumeration"""
    CODE = "code"
    DOCUMENT = "document"
    VISUALIZATION = "visualization"
    DATA = "data"
    MINDMAP = "mindmap"
    OTHER = "other"


class Artifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"artifact_{uuid4().hex[:12]}")
    stage_id: Optional[str] = None
    type: ArtifactType = ArtifactType.DOCUMENT
    title: str = ""
    content: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: int = Field(default_factory=utc_now_ms)
