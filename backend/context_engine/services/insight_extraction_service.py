"""
Insight Extraction Service

Distills one stage's output into a bounded list of structured insights using
a fast model. Falls back to deterministic cue-phrase and bullet matching when
the model call fails or its output does not validate.
"""
import asyncio
import math
import re
from typing import List, Optional, Sequence
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from context_engine.core.cancellation import CancellationToken, check_cancelled
from context_engine.core.config import Settings
from context_engine.core.logging_config import LoggingConfig
from context_engine.core.model_gateway import ModelGateway, ModelRequest, ModelRole
from context_engine.core.response_parsing import decode_structured
from context_engine.core.tracing import add_span_attributes, get_tracer
from context_engine.models.insight import (CONFIDENCE_WEIGHTS,
                                           IMPORTANCE_WEIGHTS, ConfidenceLevel,
                                           ExtractionMethod, ImportanceLevel,
                                           Insight, InsightCategory)
from context_engine.models.stage import Stage, StageType

logger = LoggingConfig.get_logger(__name__)

MAX_INSIGHTS = 10
PATTERN_MIN_LENGTH = 20
PATTERN_MAX_LENGTH = 300

INSIGHT_PATTERNS = [
    re.compile(r"(?:discovered|found|realized|insight|key finding)[:\s]+(.+?)(?:[\n.]|$)", re.IGNORECASE),
    re.compile(r"(?:important|crucial|significant)[:\s]+(.+?)(?:[\n.]|$)", re.IGNORECASE),
    re.compile(r"^[ \t]*[-•*][ \t]*(.+?)[ \t]*$", re.MULTILINE),
]


class ExtractedInsight(BaseModel):
    """One insight as returned by the model"""
    insight: str = Field(..., min_length=1)
    category: InsightCategory
    importance: ImportanceLevel
    evidence: List[str] = Field(default_factory=list)
    confidence: ConfidenceLevel
    assumptions: List[str] = Field(default_factory=list)

    @field_validator("category", "importance", "confidence", mode="before")
    @classmethod
    def lower_enum(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("evidence", "assumptions", mode="before")
    @classmethod
    def none_to_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v


class ExtractionPayload(BaseModel):
    insights: List[ExtractedInsight]
    summary: Optional[str] = None


def calculate_quality_score(
    importance: ImportanceLevel,
    evidence_count: int,
    confidence: ConfidenceLevel,
) -> int:
    """
    Derive an insight's 0-10 quality score from its own fields

    Base 5, plus importance weight (4..1), plus up to 3 for evidence, plus the
    confidence weight (2..0), rounded half up and capped at 10.
    """
    score = 5 + IMPORTANCE_WEIGHTS[importance] + min(evidence_count, 3) + CONFIDENCE_WEIGHTS[confidence]
    return min(math.floor(score + 0.5), 10)


def generate_tags(
    category: InsightCategory,
    importance: ImportanceLevel,
    confidence: ConfidenceLevel,
) -> List[str]:
    tags = [category.value]
    if importance in (ImportanceLevel.CRITICAL, ImportanceLevel.HIGH):
        tags.append("priority")
    if confidence in (ConfidenceLevel.LOW, ConfidenceLevel.SPECULATIVE):
        tags.append("needs-verification")
    return tags


def _new_insight_id(stage_ordinal: int, index: int) -> str:
    return f"insight_{stage_ordinal}_{index}_{uuid4().hex[:8]}"


def build_insight(
    text: str,
    category: InsightCategory,
    importance: ImportanceLevel,
    confidence: ConfidenceLevel,
    stage_type: StageType,
    stage_ordinal: int,
    index: int,
    extraction_method: ExtractionMethod,
    evidence: Optional[List[str]] = None,
    assumptions: Optional[List[str]] = None,
    source_stage_id: Optional[str] = None,
) -> Insight:
    """Assemble an Insight, deriving its quality score and tags"""
    evidence = [e.strip() for e in (evidence or []) if e and e.strip()]
    return Insight(
        id=_new_insight_id(stage_ordinal, index),
        text=text.strip(),
        category=category,
        importance=importance,
        evidence=evidence,
        confidence=confidence,
        assumptions=[a.strip() for a in (assumptions or []) if a and a.strip()],
        stage_ordinal=stage_ordinal,
        stage_type=stage_type,
        source_stage_id=source_stage_id,
        quality_score=calculate_quality_score(importance, len(evidence), confidence),
        tags=generate_tags(category, importance, confidence),
        extraction_method=extraction_method,
    )


def extract_with_patterns(
    content: str,
    stage_type: StageType,
    stage_ordinal: int,
    source_stage_id: Optional[str] = None,
    limit: int = MAX_INSIGHTS,
) -> List[Insight]:
    """
    Deterministic fallback extractor

    Scans for cue phrases (discovered/found/insight/important...) and bullet
    lines; every match between 20 and 300 characters becomes a medium
    importance, medium confidence discovery.
    """
    seen = set()
    insights: List[Insight] = []
    for pattern in INSIGHT_PATTERNS:
        for match in pattern.finditer(content):
            text = match.group(1).strip()
            if not (PATTERN_MIN_LENGTH < len(text) < PATTERN_MAX_LENGTH):
                continue
            key = text.lower()
            if key in seen:
                continue
            seen.add(key)
            insights.append(build_insight(
                text=text,
                category=InsightCategory.DISCOVERY,
                importance=ImportanceLevel.MEDIUM,
                confidence=ConfidenceLevel.MEDIUM,
                stage_type=stage_type,
                stage_ordinal=stage_ordinal,
                index=len(insights),
                extraction_method=ExtractionMethod.PATTERN,
                source_stage_id=source_stage_id,
            ))
            if len(insights) >= limit:
                return insights
    return insights


class InsightExtractionService:
    """Service for extracting structured insights from stage output"""

    def __init__(self, gateway: ModelGateway, settings: Settings):
        """
        Initialize Insight Extraction Service

        Args:
            gateway: Model gateway used for extraction requests
            settings: Pipeline settings (minimum length, output cap)
        """
        self.gateway = gateway
        self.settings = settings
        self.tracer = get_tracer(__name__)

    async def extract(
        self,
        content: str,
        stage_type: StageType,
        stage_ordinal: int,
        source_stage_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[Insight]:
        """
        Extract insights from one stage's text

        Args:
            content: The stage output text
            stage_type: Type of stage
            stage_ordinal: 1-based stage position in the journey
            source_stage_id: Optional originating stage id
            cancel_token: Optional cancellation token

        Returns:
            Up to 10 insights; empty when the text is too short to analyse
        """
        with self.tracer.start_as_current_span("insights.extract") as span:
            add_span_attributes(span, stage_type=stage_type.value, stage_ordinal=stage_ordinal)

            if len(content) < self.settings.insight_min_content_length:
                logger.warning(
                    f"Content too short for insight extraction ({len(content)} chars, stage {stage_ordinal})"
                )
                return []

            check_cancelled(cancel_token)
            logger.info(f"Extracting insights from {stage_type.value} stage {stage_ordinal}")

            result = await self.gateway.try_execute(
                ModelRequest(
                    prompt=self.build_prompt(content, stage_type),
                    role=ModelRole.FAST,
                    max_output_tokens=self.settings.insight_max_tokens,
                ),
                cancel_token=cancel_token,
            )

            if not result.ok:
                logger.warning(f"Model extraction failed, falling back to patterns: {result.error_message}")
                return self._fallback(content, stage_type, stage_ordinal, source_stage_id, span)

            decoded = decode_structured(result.response.text, ExtractionPayload)
            if not decoded.ok:
                logger.warning(f"Unusable extraction output, falling back to patterns: {decoded.error}")
                return self._fallback(content, stage_type, stage_ordinal, source_stage_id, span)

            insights = [
                build_insight(
                    text=item.insight,
                    category=item.category,
                    importance=item.importance,
                    confidence=item.confidence,
                    stage_type=stage_type,
                    stage_ordinal=stage_ordinal,
                    index=index,
                    extraction_method=ExtractionMethod.MODEL,
                    evidence=item.evidence,
                    assumptions=item.assumptions,
                    source_stage_id=source_stage_id,
                )
                for index, item in enumerate(decoded.value.insights[:MAX_INSIGHTS])
            ]
            add_span_attributes(span, insight_count=len(insights), fallback=False)
            logger.info(f"Extracted {len(insights)} insights from {stage_type.value} stage {stage_ordinal}")
            return insights

    def _fallback(
        self,
        content: str,
        stage_type: StageType,
        stage_ordinal: int,
        source_stage_id: Optional[str],
        span,
    ) -> List[Insight]:
        insights = extract_with_patterns(content, stage_type, stage_ordinal, source_stage_id)
        add_span_attributes(span, insight_count=len(insights), fallback=True)
        logger.info(f"Pattern fallback extracted {len(insights)} insights")
        return insights

    async def extract_from_stage(
        self,
        stage: Stage,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[Insight]:
        return await self.extract(
            stage.result,
            stage.type,
            stage.ordinal,
            source_stage_id=stage.id,
            cancel_token=cancel_token,
        )

    async def extract_batch(
        self,
        stages: Sequence[Stage],
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[List[Insight]]:
        """Extract insights from many stages concurrently, one result list per stage"""
        logger.info(f"Batch extracting insights from {len(stages)} stages")
        return list(await asyncio.gather(
            *(self.extract_from_stage(stage, cancel_token=cancel_token) for stage in stages)
        ))

    async def reextract(
        self,
        old_insights: Sequence[str],
        stage_type: StageType,
        stage_ordinal: int,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[Insight]:
        """Re-run extraction over legacy plain-string insights"""
        logger.info(f"Re-extracting {len(old_insights)} legacy insights for stage {stage_ordinal}")
        return await self.extract("\n".join(old_insights), stage_type, stage_ordinal, cancel_token=cancel_token)

    @staticmethod
    def build_prompt(content: str, stage_type: StageType) -> str:
        return f"""You are an expert insight extractor. Analyze this {stage_type.value} stage output and extract 5-10 key insights.

<stage_content>
{content}
</stage_content>

<task>
Extract the most important insights from this stage. For each insight:
1. Identify the core discovery, finding, or conclusion
2. Categorize it appropriately
3. Assess its importance level
4. Provide supporting evidence from the text
5. Rate your confidence in the insight

Categories:
- discovery: New information or finding
- problem: Issue or challenge identified
- solution: Proposed solution or approach
- question: Important question raised
- connection: Link between concepts
- recommendation: Actionable suggestion
- synthesis: Cross-concept synthesis

Importance levels: critical, high, medium, low
Confidence levels: verified, high, medium, low, speculative
</task>

<output_format>
Return ONLY valid JSON in this exact format (no markdown, no explanation):
{{
  "insights": [
    {{
      "insight": "Brief 1-2 sentence insight",
      "category": "discovery|problem|solution|question|connection|recommendation|synthesis",
      "importance": "critical|high|medium|low",
      "evidence": ["Supporting fact 1", "Supporting fact 2"],
      "confidence": "verified|high|medium|low|speculative",
      "assumptions": ["Optional assumption 1"]
    }}
  ],
  "summary": "Optional brief summary of all insights"
}}
</output_format>

<guidelines>
- Extract 5-10 insights (quality over quantity)
- Keep insights concise (1-2 sentences each)
- Provide specific evidence, not vague statements
- Don't extract trivial or obvious points
- Return ONLY the JSON object, no other text
</guidelines>"""
