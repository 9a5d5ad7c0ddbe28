"""
Context Summarization Service

Builds the hierarchical, token-budgeted journey summary that is injected into
the next stage's prompt:
- overall journey narrative (2-3 paragraphs)
- one summary per complete run of stages (default 3), created once and reused
- condensed top-10 insights and top-5 open questions
- locally detected recurring themes and contradiction candidates
"""
import math
from collections import Counter
from typing import List, Optional, Sequence, Tuple

from context_engine.core.cancellation import CancellationToken, check_cancelled
from context_engine.core.config import Settings
from context_engine.core.logging_config import LoggingConfig
from context_engine.core.model_gateway import ModelGateway, ModelRequest, ModelRole
from context_engine.core.tracing import add_span_attributes, get_tracer
from context_engine.models.insight import IMPORTANCE_WEIGHTS, Insight
from context_engine.models.question import OPEN_STATUSES, TrackedQuestion
from context_engine.models.stage import Stage
from context_engine.models.summary import (ClusterSummary, ContextSummary,
                                           Contradiction)
from context_engine.utils.datetime_utils import utc_now_ms

logger = LoggingConfig.get_logger(__name__)

MIN_STAGES_FOR_HIERARCHY = 3
TOP_INSIGHTS = 10
TOP_QUESTIONS = 5
MAX_PATTERNS = 5
MAX_CONTRADICTIONS = 3
THEME_MIN_OCCURRENCES = 3
PROGRESSION_MIN_STAGES = 6
PROGRESSION_MAX_STAGES = 24
CATEGORY_MIN_INSIGHTS = 3
SIGNIFICANT_WORD_LENGTH = 4

COMPRESSED_CLUSTERS = 5
COMPRESSED_OVERALL_CHARS = 800
COMPRESSED_DIGEST_CHARS = 500
COMPRESSED_PATTERNS = 3
COMPRESSED_PATTERN_CHARS = 300
COMPRESSED_CONTRADICTIONS = 2

MINIMAL_FOCUS_CHARS = 200
MINIMAL_DIGEST_CHARS = 500
GOAL_CHARS = 200

NO_INSIGHTS = "No insights yet."
NO_QUESTIONS = "No questions yet."
ALL_ANSWERED = "All critical questions answered."

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "is", "are", "was", "were", "been", "be", "have", "has", "had",
    "do", "does", "did", "will", "would", "should", "could", "may", "might", "can",
})

ANTONYM_PAIRS: Tuple[Tuple[str, str], ...] = (
    ("increase", "decrease"),
    ("benefit", "drawback"),
    ("advantage", "disadvantage"),
    ("positive", "negative"),
    ("support", "oppose"),
    ("effective", "ineffective"),
    ("success", "failure"),
    ("important", "unimportant"),
)


def _truncate(text: str, limit: int) -> str:
    return text[:limit] if len(text) > limit else text


def estimate_tokens(summary: ContextSummary) -> int:
    """Approximate token count: serialized characters / 4"""
    return math.ceil(len(summary.model_dump_json()) / 4)


def rank_insights(insights: Sequence[Insight]) -> List[Insight]:
    """Order by importance, ties broken by recency (later stage, later position first)"""
    ranked = sorted(
        enumerate(insights),
        key=lambda pair: (pair[1].importance_weight, pair[1].stage_ordinal, pair[0]),
        reverse=True,
    )
    return [insight for _, insight in ranked]


def rank_open_questions(questions: Sequence[TrackedQuestion]) -> List[TrackedQuestion]:
    """Unresolved questions ordered by priority, ties broken by recency"""
    ranked = sorted(
        ((index, q) for index, q in enumerate(questions) if q.status in OPEN_STATUSES),
        key=lambda pair: (IMPORTANCE_WEIGHTS[pair[1].priority], pair[1].asked_in_stage, pair[0]),
        reverse=True,
    )
    return [question for _, question in ranked]


def detect_emerging_patterns(stages: Sequence[Stage], insights: Sequence[Insight]) -> List[str]:
    """
    Surface recurring themes across the journey

    - terms longer than 4 characters (minus stop words) seen 3+ times in insights
    - the stage-type progression once 6+ stages exist (last 24 stages)
    - the dominant insight category once it covers 3+ insights
    """
    patterns: List[str] = []

    words = " ".join(insight.text.lower() for insight in insights).split()
    frequencies = Counter(
        word for word in words
        if len(word) > SIGNIFICANT_WORD_LENGTH and word not in STOP_WORDS
    )
    for word, count in frequencies.items():
        if count >= THEME_MIN_OCCURRENCES:
            patterns.append(f'Recurring theme: "{word}" (mentioned {count} times)')

    if len(stages) >= PROGRESSION_MIN_STAGES:
        recent = stages[-PROGRESSION_MAX_STAGES:]
        progression = " → ".join(stage.type.value for stage in recent)
        if len(stages) > PROGRESSION_MAX_STAGES:
            patterns.append(f"Stage progression (last {len(recent)} of {len(stages)}): {progression}")
        else:
            patterns.append(f"Stage progression: {progression}")

    categories = Counter(insight.category.value for insight in insights)
    if categories:
        category, count = categories.most_common(1)[0]
        if count >= CATEGORY_MIN_INSIGHTS:
            patterns.append(f"Primary insight type: {category} ({count} insights)")

    return patterns[:MAX_PATTERNS]


def _shared_significant_words(text_a: str, text_b: str) -> List[str]:
    words_b = set(text_b.split())
    shared = []
    for word in dict.fromkeys(text_a.split()):
        if len(word) > SIGNIFICANT_WORD_LENGTH and word in words_b:
            shared.append(word)
    return shared


def detect_contradictions(insights: Sequence[Insight]) -> List[Contradiction]:
    """
    Flag insight pairs that may contradict each other

    Advisory keyword heuristic: one insight carries one side of an antonym
    pair, the other carries the opposite side, and the two share at least two
    words longer than 4 characters.
    """
    contradictions: List[Contradiction] = []
    lowered = [insight.text.lower() for insight in insights]

    for i in range(len(insights)):
        for j in range(i + 1, len(insights)):
            text_a, text_b = lowered[i], lowered[j]
            opposed = any(
                (first in text_a and second in text_b) or (second in text_a and first in text_b)
                for first, second in ANTONYM_PAIRS
            )
            if not opposed:
                continue
            shared = _shared_significant_words(text_a, text_b)
            if len(shared) < 2:
                continue
            a, b = insights[i], insights[j]
            contradictions.append(Contradiction(
                description=f"Potential contradiction regarding {', '.join(shared)}",
                source_a=f"{a.id} (Stage {a.stage_ordinal})",
                source_b=f"{b.id} (Stage {b.stage_ordinal})",
            ))
            if len(contradictions) >= MAX_CONTRADICTIONS:
                return contradictions

    return contradictions


def format_for_prompt(summary: Optional[ContextSummary]) -> str:
    """Render a summary as the flat context block consumed by the next stage prompt"""
    if summary is None:
        return ""

    clusters = "\n".join(
        f"Cluster {index} (Stages {cluster.label}): {cluster.summary}"
        for index, cluster in enumerate(summary.cluster_summaries, start=1)
    )
    sections = [
        "<hierarchical_context>",
        f"**JOURNEY OVERVIEW**:\n{summary.overall_summary}",
        f"**STAGE CLUSTERS** (Progressive Detail):\n{clusters}",
        f"**KEY INSIGHTS**:\n{summary.key_insights_summary}",
        f"**CRITICAL OPEN QUESTIONS**:\n{summary.critical_questions_summary}",
    ]
    if summary.emerging_patterns:
        patterns = "\n".join(f"- {pattern}" for pattern in summary.emerging_patterns)
        sections.append(f"**EMERGING PATTERNS**:\n{patterns}")
    if summary.contradictions:
        contradictions = "\n".join(f"- {c.description}" for c in summary.contradictions)
        sections.append(f"**CONTRADICTIONS TO RESOLVE**:\n{contradictions}")
    sections.append("</hierarchical_context>")
    return "\n\n".join(sections) + "\n"


class ContextSummarizationService:
    """
    Service for building hierarchical journey context

    Cluster summaries are append-only: a run of stages is summarized once,
    when it first becomes complete, and reused by reference afterwards.
    """

    def __init__(self, gateway: ModelGateway, settings: Settings):
        """
        Initialize Context Summarization Service

        Args:
            gateway: Model gateway for summarization requests
            settings: Cluster size, token budget and tolerance
        """
        self.gateway = gateway
        self.settings = settings
        self.tracer = get_tracer(__name__)

    @property
    def cluster_size(self) -> int:
        return self.settings.summary_cluster_size

    @property
    def token_limit(self) -> float:
        return self.settings.summary_token_budget * self.settings.summary_budget_tolerance

    async def build_summary(
        self,
        stages: Sequence[Stage],
        insights: Sequence[Insight],
        questions: Sequence[TrackedQuestion],
        previous: Optional[ContextSummary] = None,
        goal: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ContextSummary:
        """
        Build or incrementally update the journey context summary

        Args:
            stages: Full stage history
            insights: All accumulated insights
            questions: All tracked questions
            previous: Previously built summary whose clusters are reused
            goal: Explicit goal statement (defaults to the first stage's prompt)
            cancel_token: Optional cancellation token

        Returns:
            A new ContextSummary with version = previous version + 1
        """
        stages = sorted(stages, key=lambda s: s.ordinal)
        version = previous.version + 1 if previous else 1

        with self.tracer.start_as_current_span("summarizer.build_summary") as span:
            add_span_attributes(
                span,
                stage_count=len(stages),
                insight_count=len(insights),
                question_count=len(questions),
                version=version,
            )
            logger.info(f"Building hierarchical context summary ({len(stages)} stages, v{version})")

            if len(stages) < MIN_STAGES_FOR_HIERARCHY:
                summary = self.minimal_summary(stages, insights, questions, version)
                return self._enforce_budget(summary, span)

            existing = list(previous.cluster_summaries) if previous else []
            clustered_through = previous.clustered_through if previous else 0
            clusters = await self.build_cluster_summaries(
                stages,
                insights,
                questions,
                existing,
                covered_through=clustered_through,
                cancel_token=cancel_token,
            )
            for cluster in clusters:
                clustered_through = max([clustered_through] + cluster.stages)

            goal_statement = goal.strip()[:GOAL_CHARS] if goal else self.goal_from_stages(stages)
            overall = await self.build_overall_summary(
                stages, insights, questions, clusters, goal_statement, cancel_token=cancel_token
            )
            key_insights = await self.build_key_insights_summary(insights, cancel_token=cancel_token)
            critical_questions = await self.build_critical_questions_summary(
                questions, cancel_token=cancel_token
            )

            summary = ContextSummary(
                overall_summary=overall,
                cluster_summaries=clusters,
                key_insights_summary=key_insights,
                critical_questions_summary=critical_questions,
                emerging_patterns=detect_emerging_patterns(stages, insights),
                contradictions=detect_contradictions(insights),
                clustered_through=clustered_through,
                version=version,
                last_updated=utc_now_ms(),
            )
            summary = self._enforce_budget(summary, span)
            logger.info(f"Context summary built (v{summary.version}, {len(summary.cluster_summaries)} clusters)")
            return summary

    def minimal_summary(
        self,
        stages: Sequence[Stage],
        insights: Sequence[Insight],
        questions: Sequence[TrackedQuestion],
        version: int,
    ) -> ContextSummary:
        """Flat summary for journeys too short to structure; no backend call"""
        stage_types = ", ".join(stage.type.value for stage in stages)
        focus = " ".join(insight.text for insight in insights[-5:])

        if insights:
            early_insights = "Early insights: " + "; ".join(insight.text for insight in insights[-3:])
        else:
            early_insights = NO_INSIGHTS
        if questions:
            raised = "Questions raised: " + "; ".join(q.question for q in questions[-3:])
        else:
            raised = NO_QUESTIONS

        return ContextSummary(
            overall_summary=(
                f"Journey in progress: {len(stages)} stage(s) completed ({stage_types}). "
                f"Key focus: {focus[:MINIMAL_FOCUS_CHARS]}..."
            ),
            key_insights_summary=_truncate(early_insights, MINIMAL_DIGEST_CHARS),
            critical_questions_summary=_truncate(raised, MINIMAL_DIGEST_CHARS),
            version=version,
            last_updated=utc_now_ms(),
        )

    @staticmethod
    def goal_from_stages(stages: Sequence[Stage]) -> str:
        if not stages or not stages[0].prompt.strip():
            return "Unknown"
        return stages[0].prompt.strip().split("\n")[0][:GOAL_CHARS]

    def cluster_runs(self, stages: Sequence[Stage]) -> List[List[Stage]]:
        """Split ordered stages into complete runs of cluster_size; a partial tail is omitted"""
        size = self.cluster_size
        complete = len(stages) // size
        return [list(stages[k * size:(k + 1) * size]) for k in range(complete)]

    async def build_cluster_summaries(
        self,
        stages: Sequence[Stage],
        insights: Sequence[Insight],
        questions: Sequence[TrackedQuestion],
        existing: Sequence[ClusterSummary],
        covered_through: int = 0,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[ClusterSummary]:
        """
        Append summaries for complete runs not yet covered

        Existing summaries are returned unchanged; only runs that start after
        the last covered ordinal are summarized, in ascending order. Runs
        dropped from the list by compression stay covered.
        """
        clusters = list(existing)
        covered_through = max([covered_through] + [max(c.stages) for c in clusters if c.stages])

        for run in self.cluster_runs(stages):
            if run[0].ordinal <= covered_through:
                continue
            check_cancelled(cancel_token)
            cluster = await self.summarize_cluster(run, insights, questions, cancel_token=cancel_token)
            clusters.append(cluster)
            logger.info(f"Created cluster summary for stages {cluster.label}")

        return clusters

    async def summarize_cluster(
        self,
        run: Sequence[Stage],
        insights: Sequence[Insight],
        questions: Sequence[TrackedQuestion],
        cancel_token: Optional[CancellationToken] = None,
    ) -> ClusterSummary:
        ordinals = [stage.ordinal for stage in run]
        stage_types = [stage.type for stage in run]
        members = set(ordinals)
        cluster_insights = [i for i in insights if i.stage_ordinal in members]
        cluster_questions = [q for q in questions if q.asked_in_stage in members]
        label = f"{ordinals[0]}-{ordinals[-1]}"
        progression = " → ".join(t.value for t in stage_types)

        stage_blocks = "\n".join(
            f"**Stage {stage.ordinal} ({stage.type.value})**:\n{stage.result[:400]}...\n"
            for stage in run
        )
        insight_lines = "\n".join(f"- {i.text}" for i in cluster_insights[:5])
        question_lines = "\n".join(f"- {q.question}" for q in cluster_questions[:3])
        prompt = f"""Summarize this cluster of exploration stages concisely (2-3 sentences max).

Stages {label} ({progression}):

{stage_blocks}
**Key Insights** ({len(cluster_insights)}):
{insight_lines}

**Questions Raised** ({len(cluster_questions)}):
{question_lines}

Provide a 2-3 sentence summary capturing:
1. What was explored in these stages
2. Key findings or patterns
3. Main questions or challenges identified

Be concise and specific."""

        text = await self._complete(prompt, max_output_tokens=300, purpose=f"cluster {label}", cancel_token=cancel_token)
        is_fallback = text is None
        if is_fallback:
            text = (
                f"Stages {label}: {progression}. "
                f"{len(cluster_insights)} insights, {len(cluster_questions)} questions."
            )

        return ClusterSummary(
            stages=ordinals,
            stage_types=stage_types,
            summary=text,
            key_insight_ids=[i.id for i in cluster_insights[:5]],
            key_question_ids=[q.id for q in cluster_questions[:3]],
            is_fallback=is_fallback,
        )

    async def build_overall_summary(
        self,
        stages: Sequence[Stage],
        insights: Sequence[Insight],
        questions: Sequence[TrackedQuestion],
        clusters: Sequence[ClusterSummary],
        goal: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        cluster_lines = "\n".join(
            f"Cluster {index} (Stages {cluster.label}): {cluster.summary}"
            for index, cluster in enumerate(clusters, start=1)
        )
        recent = "\n".join(
            f"Stage {stage.ordinal} ({stage.type.value}): {stage.result[:300]}...\n"
            for stage in stages[-2:]
        )
        prompt = f"""Create a comprehensive 2-3 paragraph summary of this exploration journey.

**Original Question**: {goal}

**Journey Progress**:
- {len(stages)} stages completed
- {len(insights)} insights gathered
- {len(questions)} questions raised

**Stage Cluster Summaries**:
{cluster_lines}

**Recent Progress** (last 2 stages):
{recent}
Write 2-3 paragraphs that:
1. State the original question and overall goal
2. Summarize the exploration journey and major milestones
3. Highlight key discoveries and current understanding

Be concise but comprehensive. This summary will be used as context for future stages."""

        text = await self._complete(prompt, max_output_tokens=500, purpose="overall summary", cancel_token=cancel_token)
        if text is not None:
            return text
        return (
            f"Journey exploring: {goal[:100]}. {len(stages)} stages completed across "
            f"{len(clusters)} clusters. {len(insights)} insights gathered, "
            f"{len(questions)} questions raised. Currently in {stages[-1].type.value} stage."
        )

    async def build_key_insights_summary(
        self,
        insights: Sequence[Insight],
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        if not insights:
            return NO_INSIGHTS

        top = rank_insights(insights)[:TOP_INSIGHTS]
        lines = "\n".join(
            f"{index}. [{i.importance.value}] {i.text} (Stage {i.stage_ordinal}: {i.stage_type.value})"
            for index, i in enumerate(top, start=1)
        )
        prompt = f"""Condense these top insights into a brief summary (3-4 sentences).

**Top {len(top)} Insights**:
{lines}

Create a 3-4 sentence summary that captures:
- The most critical findings
- Key patterns or themes
- Main discoveries

Be concise and actionable."""

        text = await self._complete(prompt, max_output_tokens=200, purpose="key insights", cancel_token=cancel_token)
        if text is not None:
            return text
        return "; ".join(i.text for i in top[:5])

    async def build_critical_questions_summary(
        self,
        questions: Sequence[TrackedQuestion],
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        open_questions = rank_open_questions(questions)
        if not open_questions:
            return ALL_ANSWERED

        top = open_questions[:TOP_QUESTIONS]
        lines = "\n".join(
            f"{index}. [{q.priority.value}] {q.question} (Stage {q.asked_in_stage})"
            for index, q in enumerate(top, start=1)
        )
        prompt = f"""Summarize these critical unanswered questions (2-3 sentences).

**Top {len(top)} Unanswered Questions**:
{lines}

Create a 2-3 sentence summary highlighting:
- The most critical open questions
- What areas need investigation
- What's blocking progress

Be concise and specific."""

        text = await self._complete(prompt, max_output_tokens=200, purpose="critical questions", cancel_token=cancel_token)
        if text is not None:
            return text
        return "; ".join(q.question for q in top[:3])

    async def _complete(
        self,
        prompt: str,
        max_output_tokens: int,
        purpose: str,
        cancel_token: Optional[CancellationToken],
    ) -> Optional[str]:
        """Run one summarization request; None means the caller should use its fallback"""
        result = await self.gateway.try_execute(
            ModelRequest(
                prompt=prompt,
                role=ModelRole.BALANCED,
                max_output_tokens=max_output_tokens,
            ),
            cancel_token=cancel_token,
        )
        if not result.ok:
            logger.error(f"Failed to build {purpose}, using fallback: {result.error_message}")
            return None
        text = result.response.text.strip()
        if not text:
            logger.warning(f"Empty model output for {purpose}, using fallback")
            return None
        return text

    def _enforce_budget(self, summary: ContextSummary, span=None) -> ContextSummary:
        tokens = estimate_tokens(summary)
        add_span_attributes(span, estimated_tokens=tokens)
        logger.info(f"Context summary tokens: ~{tokens} (target: {self.settings.summary_token_budget})")
        if tokens <= self.token_limit:
            return summary
        logger.warning("Context summary exceeds token budget, compressing")
        compressed = self.compress(summary)
        add_span_attributes(span, compressed=True, compressed_tokens=estimate_tokens(compressed))
        return compressed

    def compress(self, summary: ContextSummary) -> ContextSummary:
        """
        Shrink a summary until it fits the token limit

        First keeps the 5 most recent clusters and caps the narrative (800),
        digests (500) and each pattern (300); then drops older clusters one
        by one; finally halves the text caps and pattern/contradiction lists.
        Cluster texts are never edited. No backend call is made.
        """
        compressed = summary.model_copy(update={
            "cluster_summaries": list(summary.cluster_summaries[-COMPRESSED_CLUSTERS:]),
            "overall_summary": _truncate(summary.overall_summary, COMPRESSED_OVERALL_CHARS),
            "key_insights_summary": _truncate(summary.key_insights_summary, COMPRESSED_DIGEST_CHARS),
            "critical_questions_summary": _truncate(summary.critical_questions_summary, COMPRESSED_DIGEST_CHARS),
            "emerging_patterns": [
                _truncate(pattern, COMPRESSED_PATTERN_CHARS)
                for pattern in summary.emerging_patterns[:COMPRESSED_PATTERNS]
            ],
            "contradictions": list(summary.contradictions[:COMPRESSED_CONTRADICTIONS]),
        })

        while estimate_tokens(compressed) > self.token_limit and compressed.cluster_summaries:
            compressed = compressed.model_copy(update={
                "cluster_summaries": list(compressed.cluster_summaries[1:]),
            })

        overall_cap = COMPRESSED_OVERALL_CHARS
        digest_cap = COMPRESSED_DIGEST_CHARS
        while estimate_tokens(compressed) > self.token_limit:
            overall_cap //= 2
            digest_cap //= 2
            compressed = compressed.model_copy(update={
                "overall_summary": _truncate(compressed.overall_summary, overall_cap),
                "key_insights_summary": _truncate(compressed.key_insights_summary, digest_cap),
                "critical_questions_summary": _truncate(compressed.critical_questions_summary, digest_cap),
                "emerging_patterns": list(compressed.emerging_patterns[:len(compressed.emerging_patterns) // 2]),
                "contradictions": list(compressed.contradictions[:len(compressed.contradictions) // 2]),
            })
            if overall_cap == 0:
                break

        logger.info(
            f"Compressed context summary to ~{estimate_tokens(compressed)} tokens "
            f"({len(compressed.cluster_summaries)} clusters kept)"
        )
        return compressed

    @staticmethod
    def format_for_prompt(summary: Optional[ContextSummary]) -> str:
        return format_for_prompt(summary)
