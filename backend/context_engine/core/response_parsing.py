"""
Parsing helpers for model responses: fenced-block artifacts and schema-validated JSON
"""
import json
import re
from typing import Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from context_engine.models.artifact import Artifact, ArtifactType

T = TypeVar("T", bound=BaseModel)

CODE_BLOCK_RE = re.compile(r"```(\w+)?\n([\s\S]*?)```")
JSON_BLOCK_RE = re.compile(r"```json\n([\s\S]*?)```")
_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")

CODE_LANGUAGES = {
    "javascript", "typescript", "python", "java", "rust", "go", "cpp", "c",
    "html", "css", "jsx", "tsx", "ruby", "php", "swift", "kotlin", "scala",
    "bash", "sh", "sql",
}
VISUALIZATION_LANGUAGES = {"mermaid", "graphviz", "dot", "plantuml"}
DATA_LANGUAGES = {"json", "yaml", "toml", "xml", "csv"}

MIN_ARTIFACT_LENGTH = 10


class DecodeResult(Generic[T]):
    """Outcome of decoding structured model output"""

    def __init__(self, value: Optional[T] = None, error: Optional[str] = None):
        self.value = value
        self.error = error

    @property
    def ok(self) -> bool:
        return self.value is not None

    @classmethod
    def success(cls, value: T) -> "DecodeResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: str) -> "DecodeResult[T]":
        return cls(error=error)


def strip_code_fence(content: str) -> str:
    """Remove an optional ```json ... ``` wrapper around a payload"""
    text = content.strip()
    if text.startswith("```"):
        text = _FENCE_OPEN_RE.sub("", text, count=1)
        text = _FENCE_CLOSE_RE.sub("", text)
    return text.strip()


def decode_structured(content: str, model: Type[T]) -> DecodeResult[T]:
    """
    Decode model output into a pydantic model

    Args:
        content: Raw response text, optionally fenced
        model: Target schema

    Returns:
        DecodeResult carrying either the validated value or the failure reason
    """
    text = strip_code_fence(content or "")
    if not text:
        return DecodeResult.failure("empty response")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        return DecodeResult.failure(f"JSON parse error: {e.msg} at position {e.pos}")
    try:
        return DecodeResult.success(model.model_validate(payload))
    except ValidationError as e:
        return DecodeResult.failure(f"schema validation failed: {e.error_count()} error(s)")


def artifact_type_for_language(language: str) -> ArtifactType:
    """Determine artifact type from a fenced block's language tag"""
    lang = language.lower()
    if lang in CODE_LANGUAGES:
        return ArtifactType.CODE
    if lang in VISUALIZATION_LANGUAGES:
        return ArtifactType.VISUALIZATION
    if lang in DATA_LANGUAGES:
        return ArtifactType.DATA
    return ArtifactType.DOCUMENT


def extract_artifacts(content: str) -> List[Artifact]:
    """
    Extract artifacts from fenced blocks in response text

    Every fenced block with a meaningful body becomes an artifact typed by
    its language tag; ```json blocks that parse additionally yield a data
    artifact carrying the parsed value.
    """
    artifacts: List[Artifact] = []
    if not content:
        return artifacts

    for match in CODE_BLOCK_RE.finditer(content):
        language = match.group(1) or "text"
        code = match.group(2).strip()
        if len(code) <= MIN_ARTIFACT_LENGTH:
            continue
        artifacts.append(Artifact(
            type=artifact_type_for_language(language),
            title=f"{language[:1].upper()}{language[1:]} Code",
            content=code,
            metadata={"language": language, "line_count": len(code.split("\n"))},
        ))

    for match in JSON_BLOCK_RE.finditer(content):
        raw = match.group(1)
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            continue
        artifacts.append(Artifact(
            type=ArtifactType.DATA,
            title="JSON Data",
            content=raw,
            metadata={"format": "json", "parsed": parsed},
        ))

    return artifacts
