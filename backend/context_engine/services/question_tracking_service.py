"""
Question Tracking Service

Keeps the journey's questions from the stage that raised them through to
their answers. Questions are immutable; every status change stores a new
version under the same id.
"""
import re
from typing import Dict, List, Optional
from uuid import uuid4

from context_engine.core.logging_config import LoggingConfig
from context_engine.models.insight import ConfidenceLevel, ImportanceLevel
from context_engine.models.question import (OPEN_STATUSES, QuestionCategory,
                                            QuestionStatus,
                                            QuestionTrackingMetrics,
                                            TrackedQuestion)
from context_engine.models.stage import StageType
from context_engine.utils.datetime_utils import utc_now_ms

logger = LoggingConfig.get_logger(__name__)

SIMILARITY_THRESHOLD = 0.85

PRIORITY_ORDER = (
    ImportanceLevel.CRITICAL,
    ImportanceLevel.HIGH,
    ImportanceLevel.MEDIUM,
    ImportanceLevel.LOW,
)

CRITICAL_CUES = ("why", "root cause", "fundamental", "assumption", "critical")
HIGH_CUES = ("how", "what if", "evidence", "impact", "consequence")
LOW_CUES = ("what is", "define", "example")
RESEARCH_CUES = ("evidence", "data", "study", "research", "statistics", "source", "example", "case")

ANSWER_CONFIDENCE: Dict[ConfidenceLevel, float] = {
    ConfidenceLevel.VERIFIED: 1.0,
    ConfidenceLevel.HIGH: 0.8,
    ConfidenceLevel.MEDIUM: 0.5,
    ConfidenceLevel.LOW: 0.3,
    ConfidenceLevel.SPECULATIVE: 0.1,
}

_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")


def determine_priority(question: str) -> ImportanceLevel:
    lowered = question.lower()
    if any(cue in lowered for cue in CRITICAL_CUES):
        return ImportanceLevel.CRITICAL
    if any(cue in lowered for cue in HIGH_CUES):
        return ImportanceLevel.HIGH
    if any(cue in lowered for cue in LOW_CUES):
        return ImportanceLevel.LOW
    return ImportanceLevel.MEDIUM


def requires_research(question: str) -> bool:
    lowered = question.lower()
    return any(cue in lowered for cue in RESEARCH_CUES)


def categorize_question(question: str) -> QuestionCategory:
    lowered = question.lower().strip()
    if lowered.startswith("why"):
        return QuestionCategory.PROBING
    if lowered.startswith("what if"):
        return QuestionCategory.HYPOTHETICAL
    if lowered.startswith("how"):
        return QuestionCategory.CLARIFYING
    if "challenge" in lowered or "disagree" in lowered:
        return QuestionCategory.CHALLENGE
    if "future" in lowered or "will" in lowered:
        return QuestionCategory.FUTURE
    if "should we" in lowered or "are we" in lowered:
        return QuestionCategory.META
    return QuestionCategory.CLARIFYING


def normalize_question(question: str) -> str:
    text = _PUNCTUATION_RE.sub("", question.lower().strip())
    return _WHITESPACE_RE.sub(" ", text)


def word_similarity(first: str, second: str) -> float:
    """Jaccard similarity over the words of two normalized questions"""
    words_first = set(first.split(" "))
    words_second = set(second.split(" "))
    union = words_first | words_second
    if not union:
        return 0.0
    return len(words_first & words_second) / len(union)


class QuestionTrackingService:
    """In-memory registry of a journey's tracked questions"""

    def __init__(self):
        self._questions: Dict[str, TrackedQuestion] = {}
        self._by_stage: Dict[int, List[str]] = {}

    def track(
        self,
        question: str,
        stage_ordinal: int,
        stage_type: StageType,
        priority: Optional[ImportanceLevel] = None,
    ) -> TrackedQuestion:
        """
        Track a question raised in a stage

        Args:
            question: Question text
            stage_ordinal: Stage in which it was asked
            stage_type: Type of that stage
            priority: Explicit priority; inferred from cue words when omitted

        Returns:
            The new TrackedQuestion, or the existing one when it is a duplicate
        """
        duplicate = self.find_similar(question)
        if duplicate is not None:
            logger.info(f"Duplicate question detected, returning existing: {duplicate.id}")
            return duplicate

        tracked = TrackedQuestion(
            id=f"question_{uuid4().hex[:12]}",
            question=question.strip(),
            asked_in_stage=stage_ordinal,
            stage_type=stage_type,
            priority=priority or determine_priority(question),
            category=categorize_question(question),
            requires_research=requires_research(question),
        )
        self._questions[tracked.id] = tracked
        self._by_stage.setdefault(stage_ordinal, []).append(tracked.id)

        logger.info(f"Tracked question [{tracked.priority.value}]: {tracked.question[:60]}")
        return tracked

    def find_similar(self, question: str) -> Optional[TrackedQuestion]:
        normalized = normalize_question(question)
        for existing in self._questions.values():
            other = normalize_question(existing.question)
            if normalized == other or word_similarity(normalized, other) > SIMILARITY_THRESHOLD:
                return existing
        return None

    def _update(self, question_id: str, **changes) -> Optional[TrackedQuestion]:
        current = self._questions.get(question_id)
        if current is None:
            logger.warning(f"Question not found: {question_id}")
            return None
        changes["updated_at"] = utc_now_ms()
        updated = current.model_copy(update=changes)
        self._questions[question_id] = updated
        return updated

    def mark_answered(
        self,
        question_id: str,
        answer: str,
        confidence: ConfidenceLevel,
        answered_in_stage: Optional[int] = None,
        evidence: Optional[List[str]] = None,
    ) -> Optional[TrackedQuestion]:
        updated = self._update(
            question_id,
            status=QuestionStatus.ANSWERED,
            answer=answer.strip(),
            confidence=confidence,
            answered_in_stage=answered_in_stage,
            evidence=list(evidence or []),
        )
        if updated is not None:
            logger.info(f"Question answered [{confidence.value}]: {updated.question[:60]}")
        return updated

    def mark_partial(
        self,
        question_id: str,
        partial_answer: str,
        confidence: ConfidenceLevel,
        answered_in_stage: Optional[int] = None,
    ) -> Optional[TrackedQuestion]:
        current = self._questions.get(question_id)
        attempts = current.research_attempts + 1 if current is not None else 0
        updated = self._update(
            question_id,
            status=QuestionStatus.PARTIAL,
            answer=partial_answer.strip(),
            confidence=confidence,
            answered_in_stage=answered_in_stage,
            research_attempts=attempts,
        )
        if updated is not None:
            logger.info(f"Question partially answered [{confidence.value}]: {updated.question[:60]}")
        return updated

    def mark_obsolete(self, question_id: str) -> Optional[TrackedQuestion]:
        updated = self._update(question_id, status=QuestionStatus.OBSOLETE)
        if updated is not None:
            logger.info(f"Question marked obsolete: {updated.question[:60]}")
        return updated

    def link_to_insight(self, question_id: str, insight_id: str) -> Optional[TrackedQuestion]:
        current = self._questions.get(question_id)
        if current is None:
            logger.warning(f"Question not found: {question_id}")
            return None
        if insight_id in current.related_insight_ids:
            return current
        return self._update(question_id, related_insight_ids=current.related_insight_ids + [insight_id])

    def unanswered(self) -> List[TrackedQuestion]:
        return [q for q in self._questions.values() if q.status in OPEN_STATUSES]

    def priority_questions(self, limit: int = 10) -> List[TrackedQuestion]:
        """Open questions, highest priority first, tracking order within a priority"""
        results: List[TrackedQuestion] = []
        for priority in PRIORITY_ORDER:
            for question in self._questions.values():
                if question.priority == priority and question.is_open:
                    results.append(question)
                    if len(results) >= limit:
                        return results
        return results

    def requiring_research(self) -> List[TrackedQuestion]:
        return [q for q in self.unanswered() if q.requires_research]

    def by_stage(self, stage_ordinal: int) -> List[TrackedQuestion]:
        return [self._questions[qid] for qid in self._by_stage.get(stage_ordinal, [])]

    def all(self) -> List[TrackedQuestion]:
        return list(self._questions.values())

    def get(self, question_id: str) -> Optional[TrackedQuestion]:
        return self._questions.get(question_id)

    def metrics(self) -> QuestionTrackingMetrics:
        questions = self.all()
        unanswered = [q for q in questions if q.status == QuestionStatus.UNANSWERED]
        answered = [q for q in questions if q.status == QuestionStatus.ANSWERED]
        confident = [q for q in answered if q.confidence is not None]

        average_confidence = 0.0
        if confident:
            average_confidence = sum(ANSWER_CONFIDENCE[q.confidence] for q in confident) / len(confident)

        return QuestionTrackingMetrics(
            total_questions=len(questions),
            unanswered_count=len(unanswered),
            partial_count=sum(1 for q in questions if q.status == QuestionStatus.PARTIAL),
            answered_count=len(answered),
            high_priority_unanswered=sum(
                1 for q in unanswered if q.priority in (ImportanceLevel.CRITICAL, ImportanceLevel.HIGH)
            ),
            average_confidence=average_confidence,
        )

    def clear(self):
        """Forget every tracked question (new journey)"""
        self._questions.clear()
        self._by_stage.clear()
