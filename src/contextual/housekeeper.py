"""Heuristic answer scoring, filtering and amplification for CONTEXTUAL.

Scores candidate answers on eight signals, keeps the best one, and can
expand an answer through a fixed six-stage rewrite.  All heuristics are
intentionally lightweight -- keyword lists, regular expressions, and
simple length and overlap ratios.  Given the same input, every function
here returns the same output.
"""

from __future__ import annotations

import logging
import math
import re
from collections import deque
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Signal weights
# ---------------------------------------------------------------------------

ANSWER_FACTORS: tuple[str, ...] = (
    "relevance",
    "completeness",
    "structure",
    "confidence",
    "contradiction",
    "context",
    "specificity",
    "evidence",
)


@dataclass(frozen=True)
class AnswerWeights:
    """Weight table for the eight answer signals (must sum to 1)."""

    relevance: float = 0.25
    completeness: float = 0.15
    structure: float = 0.12
    confidence: float = 0.15
    contradiction: float = 0.10
    context: float = 0.10
    specificity: float = 0.08
    evidence: float = 0.05

    def __post_init__(self) -> None:
        values = [getattr(self, name) for name in ANSWER_FACTORS]
        if any(v < 0 for v in values):
            raise ValueError("Answer weights must be non-negative.")
        if not math.isclose(sum(values), 1.0, abs_tol=1e-6):
            raise ValueError(f"Answer weights must sum to 1 (got {sum(values):.6f}).")


# ---------------------------------------------------------------------------
# Keyword lists and patterns
# ---------------------------------------------------------------------------

_WORD_RE = re.compile(r"\b\w+\b")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_FIRST_SENTENCE_RE = re.compile(r"[.!?]")

_OPTIMAL_WORDS = 150
_WORD_TOLERANCE = 100

_CONNECTORS = (
    "therefore",
    "however",
    "moreover",
    "furthermore",
    "additionally",
    "consequently",
    "nevertheless",
    "thus",
)

_CONFIDENT_MARKERS = (
    "research shows",
    "studies indicate",
    "evidence suggests",
    "proven",
    "established",
)
_UNCERTAIN_MARKERS = ("might", "maybe", "perhaps", "possibly", "unclear", "uncertain")

_CONTRADICTION_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"but (then|also|however).*(?:not|never|no)", re.IGNORECASE),
    re.compile(r"(although|while|whereas).*(?:but|however)", re.IGNORECASE),
    re.compile(r"(?:yes|true|correct).*(?:but|however).*(?:no|false|incorrect)", re.IGNORECASE),
]

_SPECIFIC_RE = re.compile(r"(\d+|specific|particular|exact|precise|detailed)", re.IGNORECASE)
_VAGUE_RE = re.compile(r"(some|many|few|several|various|general|roughly)", re.IGNORECASE)

_EVIDENCE_MARKERS = (
    "study",
    "research",
    "data",
    "statistics",
    "example",
    "case",
    "experiment",
    "analysis",
    "findings",
    "results",
)

# question type -> pattern an aligned answer should match
_ANSWER_FORMATS: dict[str, re.Pattern[str]] = {
    "how": re.compile(r"step|first|second|next|then|finally", re.IGNORECASE),
    "why": re.compile(r"because|since|due to|reason|cause", re.IGNORECASE),
    "what": re.compile(r"is|means|refers to|defined as", re.IGNORECASE),
    "when": re.compile(r"when|during|after|before|time|period", re.IGNORECASE),
}

_STOP_WORDS: frozenset[str] = frozenset({"this", "that", "with", "from", "have", "been", "were"})

_MAX_CONCEPTS = 10


def _words(text: str) -> list[str]:
    return _WORD_RE.findall(text)


# ---------------------------------------------------------------------------
# Individual signal scorers (each returns a value in [0.0, 1.0])
# ---------------------------------------------------------------------------


def score_relevance(answer: str, question: str) -> float:
    """Share of question words echoed by the answer, plus a 0.3 baseline."""
    answer_words = _words(answer.lower())
    question_words = _words(question.lower())
    if not question_words:
        return 0.3
    question_set = set(question_words)
    overlap = sum(1 for w in answer_words if w in question_set)
    return min(1.0, overlap / len(question_words) + 0.3)


def score_completeness(answer: str) -> float:
    """Score closeness to a ~150-word answer.

    Answers under 20 words score 0.3 and answers over 500 words 0.6.
    """
    word_count = len(_words(answer))
    if word_count < 20:
        return 0.3
    if word_count > 500:
        return 0.6
    distance = abs(word_count - _OPTIMAL_WORDS)
    score = 1 - distance / (_OPTIMAL_WORDS + _WORD_TOLERANCE)
    return max(0.0, min(1.0, score))


def score_structure(answer: str) -> float:
    """Score how well an answer is organised.

    Starts from a 0.4 baseline and rewards logical connectors, at least
    three sentences, and paragraph breaks.

    Args:
        answer: The candidate answer.

    Returns:
        A float in ``[0.4, 1.0]``.
    """
    sentences = [s for s in _SENTENCE_SPLIT_RE.split(answer) if s.strip()]
    lowered = answer.lower()
    score = 0.4
    if any(c in lowered for c in _CONNECTORS):
        score += 0.3
    if len(sentences) >= 3:
        score += 0.2
    if "\n\n" in answer:
        score += 0.1
    return min(1.0, score)


def score_confidence_markers(answer: str) -> float:
    """Score the answer's tone from confident and hedging phrases.

    Args:
        answer: The candidate answer.

    Returns:
        0.9 for confident phrasing only, 0.7 for a mix, 0.5 for neither,
        0.3 for hedging only.
    """
    lowered = answer.lower()
    confident = any(m in lowered for m in _CONFIDENT_MARKERS)
    uncertain = any(m in lowered for m in _UNCERTAIN_MARKERS)
    if confident and not uncertain:
        return 0.9
    if confident and uncertain:
        return 0.7
    if not confident and not uncertain:
        return 0.5
    return 0.3


def score_contradictions(answer: str) -> float:
    """1.0 for no self-contradiction pattern, 0.3 otherwise."""
    return 0.3 if any(p.search(answer) for p in _CONTRADICTION_PATTERNS) else 1.0


def detect_question_type(question: str) -> str:
    """Return ``how``, ``why``, ``what``, ``when`` or ``general``."""
    lowered = question.lower()
    for qtype in ("how", "why", "what", "when"):
        if lowered.startswith(qtype):
            return qtype
    return "general"


def score_context_alignment(answer: str, question: str) -> float:
    """0.9 when the answer's form suits the question type, else 0.5."""
    pattern = _ANSWER_FORMATS.get(detect_question_type(question))
    return 0.9 if pattern is not None and pattern.search(answer) else 0.5


def score_specificity(answer: str) -> float:
    """Compare concrete terms (numbers, "specific", "exact") with vague ones.

    Args:
        answer: The candidate answer.

    Returns:
        0.8 when concrete terms dominate, 0.5 on a tie, 0.3 otherwise.
    """
    specific = len(_SPECIFIC_RE.findall(answer))
    vague = len(_VAGUE_RE.findall(answer))
    if specific > vague:
        return 0.8
    if specific == vague:
        return 0.5
    return 0.3


def score_evidence(answer: str) -> float:
    """Count evidence markers such as "study", "data" or "example".

    Args:
        answer: The candidate answer.

    Returns:
        0.2 per distinct marker found, capped at 1.0.
    """
    lowered = answer.lower()
    count = sum(1 for m in _EVIDENCE_MARKERS if m in lowered)
    return min(1.0, count * 0.2)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class AnswerScore:
    """The eight signal scores for one answer plus their weighted sum."""

    relevance: float
    completeness: float
    structure: float
    confidence: float
    contradiction: float
    context: float
    specificity: float
    evidence: float
    overall: float = 0.0

    @property
    def factors(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in ANSWER_FACTORS}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FilterResult:
    """The winning candidate of :meth:`AIHousekeeper.filter_answers`.

    Attributes:
        answer: The best candidate text.
        score: Its :class:`AnswerScore`.
        confidence: Confidence in the choice (the overall score).
        index: Position of the winner in the candidate list.
        meets_threshold: Whether ``confidence`` reaches the housekeeper's
            ``min_quality_score``.
    """

    answer: str
    score: AnswerScore
    confidence: float
    index: int = 0
    meets_threshold: bool = False


@dataclass
class Amplification:
    """Every intermediate stage of :meth:`AIHousekeeper.amplify_detailed`."""

    original: str
    concepts: list[str]
    reasoning: list[dict[str, Any]]
    depth: dict[str, str]
    sections: dict[str, str]
    text: str = ""


# ---------------------------------------------------------------------------
# Housekeeper
# ---------------------------------------------------------------------------


class AIHousekeeper:
    """Filters candidate answers and amplifies the chosen one.

    Args:
        weights: An :class:`AnswerWeights` table.
        min_quality_score: Threshold reported as
            :attr:`FilterResult.meets_threshold`.
        max_history: Number of filter log entries kept.
    """

    def __init__(
        self,
        weights: AnswerWeights | None = None,
        min_quality_score: float = 0.6,
        max_history: int = 1000,
    ) -> None:
        self.weights = weights or AnswerWeights()
        self.min_quality_score = min_quality_score
        self._history: deque[dict[str, Any]] = deque(maxlen=max(1, max_history))
        self._amplifications = 0

    # ------------------------------------------------------------------
    # Scoring and filtering
    # ------------------------------------------------------------------

    def score_answer(self, answer: str, question: str) -> AnswerScore:
        """Score one answer against *question* on all eight signals."""
        answer = answer or ""
        question = question or ""
        score = AnswerScore(
            relevance=score_relevance(answer, question),
            completeness=score_completeness(answer),
            structure=score_structure(answer),
            confidence=score_confidence_markers(answer),
            contradiction=score_contradictions(answer),
            context=score_context_alignment(answer, question),
            specificity=score_specificity(answer),
            evidence=score_evidence(answer),
        )
        score.overall = sum(
            value * getattr(self.weights, name) for name, value in score.factors.items()
        )
        return score

    def filter_answers(self, candidates: Sequence[str], question: str) -> FilterResult:
        """Pick the best of *candidates* for *question*.

        Candidates are ranked by overall score; ties keep their input
        order.

        Args:
            candidates: A non-empty sequence of answer strings.
            question: The original question.

        Returns:
            A :class:`FilterResult` for the winner.

        Raises:
            ValueError: If *candidates* is not a non-empty sequence of
                strings.
        """
        if isinstance(candidates, (str, bytes)) or not isinstance(candidates, Sequence):
            raise ValueError("Candidates must be a non-empty sequence of strings.")
        if len(candidates) == 0:
            raise ValueError("Candidates must be a non-empty sequence of strings.")
        if not all(isinstance(c, str) for c in candidates):
            raise ValueError("Every candidate must be a string.")

        scored = [(i, self.score_answer(c, question)) for i, c in enumerate(candidates)]
        # sort() is stable, so equal scores keep their input order.
        scored.sort(key=lambda pair: pair[1].overall, reverse=True)
        best_index, best_score = scored[0]

        self._history.append(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "question": question,
                "candidate_count": len(candidates),
                "best_score": best_score.overall,
                "rejected": len(scored) - 1,
            }
        )
        logger.debug(
            "Filtered %d candidate(s): kept #%d (%.3f), rejected %d",
            len(candidates),
            best_index,
            best_score.overall,
            len(scored) - 1,
        )

        return FilterResult(
            answer=candidates[best_index],
            score=best_score,
            confidence=best_score.overall,
            index=best_index,
            meets_threshold=best_score.overall >= self.min_quality_score,
        )

    # ------------------------------------------------------------------
    # Amplification
    # ------------------------------------------------------------------

    def amplify(self, answer: str, question: str) -> str:
        """Expand *answer* through the six-stage pipeline and return the text."""
        return self.amplify_detailed(answer, question).text

    def amplify_detailed(self, answer: str, question: str) -> Amplification:
        """Run the amplification pipeline and keep every stage.

        Stages: extract concepts, chain them, derive depth sentences,
        restructure the answer, add a takeaway line, and join the
        sections.
        """
        answer = answer or ""
        question = question or ""

        concepts = self._extract_concepts(answer, question)
        reasoning = [
            {
                "step": i + 1,
                "concept": concept,
                "connection": concepts[i + 1] if i + 1 < len(concepts) else None,
            }
            for i, concept in enumerate(concepts)
        ]
        depth = self._depth_layers(concepts)

        introduction = _FIRST_SENTENCE_RE.split(answer, maxsplit=1)[0] + "."
        sections = {
            "introduction": introduction,
            "body": answer,
            "depth": " ".join(depth.values()),
            "insights": "Key takeaways: " + introduction,
        }
        text = "\n\n".join(
            (sections["introduction"], sections["body"], sections["depth"], sections["insights"])
        )

        self._amplifications += 1
        return Amplification(
            original=answer,
            concepts=concepts,
            reasoning=reasoning,
            depth=depth,
            sections=sections,
            text=text,
        )

    @staticmethod
    def _extract_concepts(answer: str, question: str) -> list[str]:
        """First ten distinct words longer than five characters."""
        concepts: list[str] = []
        for word in _words(f"{answer} {question}"):
            if len(word) > 5 and word.lower() not in _STOP_WORDS and word not in concepts:
                concepts.append(word)
                if len(concepts) == _MAX_CONCEPTS:
                    break
        return concepts

    @staticmethod
    def _depth_layers(concepts: list[str]) -> dict[str, str]:
        first = concepts[0] if concepts else "the topic"
        leading = ", ".join(concepts[:3]) if concepts else "the topic"
        trailing = " and ".join(concepts[-2:]) if concepts else "the topic"
        return {
            "implications": f"This implies deeper connections between {leading}.",
            "applications": f"Practically, this applies to scenarios involving {first}.",
            "extensions": f"This can be extended to consider {trailing}.",
        }

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    @property
    def history(self) -> list[dict[str, Any]]:
        return list(self._history)

    def get_stats(self) -> dict[str, Any]:
        entries = list(self._history)
        total = len(entries)
        return {
            "total_filtered": total,
            "avg_best_score": sum(e["best_score"] for e in entries) / total if total else 0.0,
            "total_rejected": sum(e["rejected"] for e in entries),
            "amplifications": self._amplifications,
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"AIHousekeeper(min_quality_score={self.min_quality_score})"
