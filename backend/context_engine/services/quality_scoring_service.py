"""
Quality Scoring Service for assessing stage output against stage-type rubrics

Scores six dimensions (completeness, depth, specificity, actionability,
coherence, novelty) on a 0-10 scale. The overall score and the revision flag
are always computed locally from the normalized dimension scores.
"""
import asyncio
import math
import re
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

from context_engine.core.cancellation import CancellationToken, check_cancelled
from context_engine.core.config import Settings
from context_engine.core.logging_config import LoggingConfig
from context_engine.core.model_gateway import ModelGateway, ModelRequest, ModelRole
from context_engine.core.response_parsing import decode_structured
from context_engine.core.tracing import add_span_attributes, get_tracer
from context_engine.models.quality import (QUALITY_DIMENSIONS,
                                           DimensionStatistics, QualityReport,
                                           QualityScores, QualityStatistics)
from context_engine.models.stage import Stage, StageType

logger = LoggingConfig.get_logger(__name__)

NEUTRAL_SCORE = 5.0

_LEADING_NUMBER_RE = re.compile(
    r"^\s*([-+]?(?:infinity|(?:\d+\.?\d*|\.\d+)(?:e[-+]?\d+)?))",
    re.IGNORECASE,
)

STAGE_QUALITY_CRITERIA: Dict[StageType, str] = {
    StageType.DISCOVERING: """
- Completeness: Covers core concepts, historical context, current state, interdisciplinary connections
- Depth: Goes beyond surface-level, provides detailed explanations
- Specificity: Includes concrete examples, specific sources, precise definitions
- Actionability: Identifies clear next steps, areas for further research
- Coherence: Well-structured research report with logical flow
- Novelty: Reveals non-obvious insights, unique perspectives, surprising connections""",

    StageType.CHASING: """
- Completeness: Identifies surface symptoms, root causes, hidden assumptions, systemic patterns
- Depth: Traces problems through 5-Why analysis, explores interconnections
- Specificity: Clear cause-effect relationships, specific examples of problems
- Actionability: Identifies leverage points for intervention
- Coherence: Logical problem mapping with clear hierarchies
- Novelty: Uncovers non-obvious root causes, challenges conventional thinking""",

    StageType.SOLVING: """
- Completeness: Generates 5-7 diverse solutions across different categories
- Depth: Each solution has implementation details, feasibility analysis, risk assessment
- Specificity: Concrete first steps, success metrics, resource requirements
- Actionability: Solutions can be implemented with clear next actions
- Coherence: Solutions ranked by priority, complementary approaches identified
- Novelty: Includes unconventional and innovative approaches, not just obvious fixes""",

    StageType.CHALLENGING: """
- Completeness: Identifies explicit, implicit, and hidden assumptions; assesses risks and blind spots
- Depth: Genuine adversarial analysis, not superficial criticism
- Specificity: Concrete counter-examples, specific failure modes
- Actionability: Provides mitigation strategies for identified risks
- Coherence: Distinguishes fatal flaws from minor issues, prioritizes concerns
- Novelty: Reveals non-obvious weaknesses, unexpected failure modes""",

    StageType.QUESTIONING: """
- Completeness: 15-20 questions across all 6 categories (clarifying, probing, hypothetical, challenge, meta, future)
- Depth: Probing questions go 5 levels deep, not just surface-level
- Specificity: Questions are specific and actionable, not vague or generic
- Actionability: Questions can be researched and answered
- Coherence: Questions prioritized and categorized clearly
- Novelty: Asks non-obvious questions that reveal new angles""",

    StageType.SEARCHING: """
- Completeness: Answers top priority questions with thorough research
- Depth: Multiple authoritative sources per question, cross-referenced
- Specificity: Specific citations with URLs, publication dates, concrete evidence
- Actionability: Clear answers with confidence levels and remaining gaps
- Coherence: Well-organized research findings with source quality assessment
- Novelty: Discovers surprising information, challenges assumptions with evidence""",

    StageType.IMAGINING: """
- Completeness: At least 4 distinct scenarios (best-case, worst-case, likely, wildcard) with timelines
- Depth: Detailed narratives with key drivers, indicators, stakeholder impacts
- Specificity: Concrete timelines (1yr, 5yr, 10yr), specific decision points
- Actionability: Identifies early warning signals and robust strategies
- Coherence: Clear scenario logic, realistic causal mechanisms
- Novelty: Wildcard scenarios challenge conventional thinking, innovative possibilities""",

    StageType.BUILDING: """
- Completeness: 1-3 high-quality artifacts fully developed, not sketches
- Depth: Artifacts include examples, usage instructions, metadata
- Specificity: Professional formatting, concrete details, no vague placeholders
- Actionability: Artifacts can be used immediately by someone else
- Coherence: Well-structured, clear documentation, logical organization
- Novelty: Artifacts provide unique value, not just rehashing existing content""",
}


def normalize_score(value: Any) -> float:
    """
    Coerce a backend-supplied score into [0, 10]

    Numbers and strings with a leading number (exponent and infinity forms
    included) are clamped; anything else (missing, booleans, NaN, free text)
    becomes the neutral score 5.
    """
    if isinstance(value, bool):
        return NEUTRAL_SCORE
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        match = _LEADING_NUMBER_RE.match(value)
        if not match:
            return NEUTRAL_SCORE
        number = float(match.group(1))
    else:
        return NEUTRAL_SCORE
    if math.isnan(number):
        return NEUTRAL_SCORE
    return max(0.0, min(10.0, number))


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None and str(item).strip()]


class EvaluationPayload(BaseModel):
    """Evaluation JSON as returned by the model; every field is optional"""
    scores: Dict[str, Any] = Field(default_factory=dict)
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    should_revise: Optional[Any] = Field(default=None, alias="shouldRevise")
    revision_suggestions: List[str] = Field(default_factory=list, alias="revisionSuggestions")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("scores", mode="before")
    @classmethod
    def scores_dict(cls, v):
        return v if isinstance(v, dict) else {}

    @field_validator("strengths", "weaknesses", "improvements", "revision_suggestions", mode="before")
    @classmethod
    def feedback_list(cls, v):
        return _string_list(v)

    def normalized_scores(self) -> QualityScores:
        return QualityScores(**{
            dimension: normalize_score(self.scores.get(dimension))
            for dimension in QUALITY_DIMENSIONS
        })


def build_evaluation_prompt(stage: Stage) -> str:
    criteria = STAGE_QUALITY_CRITERIA[stage.type]
    return f"""You are a quality assessor evaluating the output of a {stage.type.value.upper()} stage in an exploration journey.

<stage_output>
{stage.result}
</stage_output>

<evaluation_criteria>
Evaluate this output on 6 dimensions (score 0-10 for each):
{criteria}
</evaluation_criteria>

<scoring_scale>
10: Exceptional - Far exceeds expectations
8-9: Excellent - Exceeds expectations in most areas
6-7: Good - Meets expectations with minor gaps
4-5: Adequate - Meets some expectations but has significant gaps
2-3: Poor - Falls short of most expectations
0-1: Unacceptable - Fails to meet basic requirements
</scoring_scale>

<instructions>
1. Score each dimension 0-10
2. Identify 2-3 specific strengths (what was done well)
3. Identify 2-3 specific weaknesses (what could be improved)
4. Provide 2-3 concrete improvement suggestions
5. Determine if revision is needed (overall score < 6.0)
6. If revision needed, provide specific revision suggestions

Be honest and constructive. Focus on actionable feedback.
</instructions>

<output_format>
Return ONLY valid JSON (no markdown, no explanations):
{{
  "scores": {{
    "completeness": 7,
    "depth": 8,
    "specificity": 6,
    "actionability": 7,
    "coherence": 9,
    "novelty": 5
  }},
  "strengths": ["Specific strength with example", "Another strength"],
  "weaknesses": ["Specific weakness with example", "Another weakness"],
  "improvements": ["Concrete improvement suggestion", "Another suggestion"],
  "shouldRevise": false,
  "revisionSuggestions": []
}}
</output_format>"""


class QualityScoringService:
    """Service for evaluating stage output quality"""

    def __init__(self, gateway: ModelGateway, settings: Settings):
        self.gateway = gateway
        self.settings = settings
        self.tracer = get_tracer(__name__)

    @property
    def revision_threshold(self) -> float:
        return self.settings.quality_revision_threshold

    async def evaluate(
        self,
        stage: Stage,
        cancel_token: Optional[CancellationToken] = None,
    ) -> QualityReport:
        """
        Evaluate the quality of a stage's output

        Never raises for backend failures; a neutral fallback report is
        returned instead so evaluation cannot block the journey.

        Args:
            stage: Stage to evaluate
            cancel_token: Optional cancellation token

        Returns:
            QualityReport
        """
        with self.tracer.start_as_current_span("quality.evaluate") as span:
            add_span_attributes(span, stage_id=stage.id, stage_type=stage.type.value)
            check_cancelled(cancel_token)
            logger.info(f"Evaluating quality for {stage.type.value} stage {stage.ordinal}")

            result = await self.gateway.try_execute(
                ModelRequest(
                    prompt=build_evaluation_prompt(stage),
                    role=ModelRole.FAST,
                    max_output_tokens=self.settings.quality_max_tokens,
                ),
                cancel_token=cancel_token,
            )
            if not result.ok:
                logger.error(f"Quality evaluation failed for stage {stage.id}: {result.error_message}")
                add_span_attributes(span, fallback=True)
                return self.fallback_report(stage, result.error_message)

            decoded = decode_structured(result.response.text, EvaluationPayload)
            if not decoded.ok:
                logger.error(f"Invalid evaluation response for stage {stage.id}: {decoded.error}")
                add_span_attributes(span, fallback=True)
                return self.fallback_report(stage, f"Invalid evaluation response format ({decoded.error})")

            report = self.build_report(stage, decoded.value)
            add_span_attributes(
                span,
                overall_score=report.overall_score,
                should_revise=report.should_revise,
                fallback=False,
            )
            logger.info(
                f"Quality evaluation complete for stage {stage.ordinal}: overall {report.overall_score}/10",
                extra={"scores": report.scores.as_dict()},
            )
            if report.should_revise:
                logger.warning(
                    f"Quality below threshold ({self.revision_threshold}) for stage {stage.ordinal}, revision recommended"
                )
            return report

    def build_report(self, stage: Stage, payload: EvaluationPayload) -> QualityReport:
        """Build a report from decoded output; overall score and flag are recomputed here"""
        scores = payload.normalized_scores()
        overall = scores.mean()
        should_revise = overall < self.revision_threshold
        return QualityReport(
            stage_id=stage.id,
            stage_type=stage.type,
            scores=scores,
            overall_score=overall,
            strengths=payload.strengths,
            weaknesses=payload.weaknesses,
            improvements=payload.improvements,
            should_revise=should_revise,
            revision_suggestions=payload.revision_suggestions if should_revise else [],
        )

    @staticmethod
    def fallback_report(stage: Stage, reason: str) -> QualityReport:
        return QualityReport(
            stage_id=stage.id,
            stage_type=stage.type,
            scores=QualityScores.neutral(),
            overall_score=NEUTRAL_SCORE,
            strengths=["Evaluation failed - unable to assess strengths"],
            weaknesses=[f"Evaluation error: {reason or 'unknown error'}"],
            improvements=["Re-run quality evaluation when service is available"],
            should_revise=False,
            revision_suggestions=[],
            is_fallback=True,
        )

    async def evaluate_batch(
        self,
        stages: Sequence[Stage],
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[QualityReport]:
        """Evaluate many stages concurrently; reports keep the input order"""
        logger.info(f"Batch evaluating {len(stages)} stages")
        reports = list(await asyncio.gather(
            *(self.evaluate(stage, cancel_token=cancel_token) for stage in stages)
        ))
        if reports:
            stats = quality_statistics(reports)
            logger.info(
                f"Batch evaluation complete: average {stats.average}/10, "
                f"{stats.needs_revision}/{stats.total_stages} need revision"
            )
        return reports


def quality_trend(reports: Sequence[QualityReport]) -> List[float]:
    return [report.overall_score for report in reports]


def quality_statistics(reports: Sequence[QualityReport]) -> QualityStatistics:
    """Aggregate statistics over a journey's quality reports"""
    if not reports:
        return QualityStatistics()

    overall = [report.overall_score for report in reports]
    by_dimension = {}
    for dimension in QUALITY_DIMENSIONS:
        values = [getattr(report.scores, dimension) for report in reports]
        by_dimension[dimension] = DimensionStatistics(
            mean=round(sum(values) / len(values), 1),
            min=min(values),
            max=max(values),
        )

    return QualityStatistics(
        average=round(sum(overall) / len(overall), 1),
        min=round(min(overall), 1),
        max=round(max(overall), 1),
        needs_revision=sum(1 for report in reports if report.should_revise),
        total_stages=len(reports),
        by_dimension=by_dimension,
    )
