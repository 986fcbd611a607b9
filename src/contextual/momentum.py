"""Momentum scoring and decay engine for CONTEXTUAL.

Combines five signals -- temporal decay, semantic similarity, operational
continuity, reasoning depth, and confidence -- into a single momentum score
that describes how "live" a context still is after a switch.

All heuristics are deliberately simple bag-of-words checks.
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from .context import Context, TransitionRecord

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Word tables
# ---------------------------------------------------------------------------

_KEYWORD_RE = re.compile(r"\b\w{4,}\b")

_STOP_WORDS: frozenset[str] = frozenset(
    {
        "this",
        "that",
        "with",
        "from",
        "have",
        "been",
        "were",
        "what",
        "when",
        "where",
        "which",
        "while",
    }
)

_REASONING_KEYS: tuple[str, ...] = ("steps", "reasoning", "chain", "analysis", "conclusions")

_CONTINUITY_MARKERS: tuple[str, ...] = (
    "therefore",
    "thus",
    "consequently",
    "following",
    "building on",
    "extending",
    "continuing",
    "next",
)

FACTOR_NAMES: tuple[str, ...] = ("temporal", "semantic", "operational", "depth", "confidence")


# ---------------------------------------------------------------------------
# Weights and vectors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MomentumWeights:
    """Weights that control how each factor contributes to ``overall``.

    The weights must be non-negative and sum to 1.

    Attributes:
        temporal: Weight for exponential time decay since last access.
        semantic: Weight for state similarity with the previous context.
        operational: Weight for application / transition continuity.
        depth: Weight for reasoning-chain depth.
        confidence: Weight for stored confidence plus access bonus.
    """

    temporal: float = 0.25
    semantic: float = 0.30
    operational: float = 0.20
    depth: float = 0.15
    confidence: float = 0.10

    def __post_init__(self) -> None:
        values = [getattr(self, name) for name in FACTOR_NAMES]
        if any(v < 0 for v in values):
            raise ValueError("Momentum weights must be non-negative.")
        if not math.isclose(sum(values), 1.0, abs_tol=1e-6):
            raise ValueError(f"Momentum weights must sum to 1 (got {sum(values):.6f}).")

    def as_dict(self) -> dict[str, float]:
        """Return the weight table as a plain dictionary."""
        return asdict(self)


@dataclass
class MomentumVector:
    """A computed momentum reading for one context.

    Vectors are derived values: recomputing momentum for a context
    replaces the previous vector outright.

    Attributes:
        context_id: The scored context.
        temporal: Temporal decay factor in ``[min_momentum, 1]``.
        semantic: Semantic similarity factor in ``[0, 1]``.
        operational: Operational continuity factor in ``[0, 1]``.
        depth: Reasoning depth factor in ``[0, 1]``.
        confidence: Confidence factor in ``[0, 1]``.
        overall: Weighted combination clamped to ``[min_momentum, 1]``.
        timestamp: When the vector was computed.
    """

    context_id: str
    temporal: float
    semantic: float
    operational: float
    depth: float
    confidence: float
    overall: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def factors(self) -> dict[str, float]:
        """The five factor scores keyed by name."""
        return {name: getattr(self, name) for name in FACTOR_NAMES}

    def to_dict(self) -> dict[str, Any]:
        return {
            "context_id": self.context_id,
            "timestamp": self.timestamp.isoformat(),
            "factors": self.factors,
            "overall": self.overall,
        }


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def _serialise_state(state: Mapping[str, Any]) -> str:
    """Return the lower-cased JSON form of *state* used for text heuristics."""
    return json.dumps(state, ensure_ascii=False, default=str).lower()


def extract_keywords(state: Mapping[str, Any]) -> set[str]:
    """Extract keywords (4+ word characters, minus stop words) from *state*.

    Args:
        state: A context state mapping.

    Returns:
        A set of lower-cased keywords.
    """
    words = _KEYWORD_RE.findall(_serialise_state(state))
    return {w for w in words if w not in _STOP_WORDS}


def overlap_ratio(a: Iterable[Any], b: Iterable[Any]) -> float:
    """Return ``|a & b| / |a | b|``, or ``0.0`` when both are empty."""
    set_a = set(a)
    set_b = set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def count_reasoning_steps(state: Mapping[str, Any]) -> int:
    """Count reasoning steps stored under the well-known reasoning keys.

    Sequences count their length, mappings count their keys, and any
    other non-empty value counts as one step.
    """
    steps = 0
    for key in _REASONING_KEYS:
        value = state.get(key)
        if isinstance(value, (list, tuple)):
            steps += len(value)
        elif isinstance(value, Mapping):
            steps += len(value)
        elif value:
            steps += 1
    return steps


def has_continuity_markers(state: Mapping[str, Any]) -> bool:
    """Return ``True`` if the serialised state contains a discourse connective."""
    text = _serialise_state(state)
    return any(marker in text for marker in _CONTINUITY_MARKERS)


def _transition_ids(transitions: Iterable[TransitionRecord]) -> set[str]:
    ids: set[str] = set()
    for record in transitions:
        ids.add(record.to_id)
        if record.from_id is not None:
            ids.add(record.from_id)
    return ids


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class MomentumEngine:
    """Scores contexts and keeps the latest momentum vector per context.

    Args:
        half_life: Seconds after which the temporal factor halves.
        min_momentum: Floor for the temporal factor and for ``overall``.
        weights: A :class:`MomentumWeights` table.
        max_history: Maximum number of transitions kept in the history.
    """

    def __init__(
        self,
        half_life: float = 30.0,
        min_momentum: float = 0.1,
        weights: MomentumWeights | None = None,
        max_history: int = 1000,
    ) -> None:
        if half_life <= 0:
            raise ValueError("half_life must be positive.")
        if not 0.0 <= min_momentum <= 1.0:
            raise ValueError("min_momentum must be within [0, 1].")
        self.half_life = float(half_life)
        self.min_momentum = float(min_momentum)
        self.weights = weights or MomentumWeights()
        self.max_history = max(1, int(max_history))
        self._vectors: dict[str, MomentumVector] = {}
        self._history: deque[dict[str, Any]] = deque(maxlen=self.max_history)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def calculate_momentum(
        self,
        context: Context,
        previous: Context | None = None,
        now: datetime | None = None,
    ) -> MomentumVector:
        """Compute and cache the momentum vector for *context*.

        Args:
            context: The context to score (normally the new active one).
            previous: The previously active context, used by the
                semantic and operational factors.
            now: The current time.  Defaults to UTC now.

        Returns:
            The new :class:`MomentumVector`, which replaces any cached
            vector for the same context.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        vector = MomentumVector(
            context_id=context.id,
            temporal=self.temporal_factor(context, now=now),
            semantic=self.semantic_factor(context, previous),
            operational=self.operational_factor(context, previous),
            depth=self.depth_factor(context),
            confidence=self.confidence_factor(context),
            timestamp=now,
        )
        vector.overall = self.combine(vector.factors)
        self._vectors[context.id] = vector
        logger.debug("Momentum for %s: %.3f %r", context.id, vector.overall, vector.factors)
        return vector

    def temporal_factor(self, context: Context, now: datetime | None = None) -> float:
        """Exponential decay since last access.

        ``exp(-ln(2) / half_life * elapsed)``, floored at ``min_momentum``,
        so the value is exactly 0.5 after one half-life.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        last = context.last_access
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        elapsed = max(0.0, (now - last).total_seconds())
        decay_constant = math.log(2) / self.half_life
        return max(self.min_momentum, math.exp(-decay_constant * elapsed))

    def semantic_factor(self, context: Context, previous: Context | None) -> float:
        """``0.6 * key Jaccard + 0.4 * keyword overlap``; 1.0 without a previous context."""
        if previous is None:
            return 1.0
        jaccard = overlap_ratio(context.state.keys(), previous.state.keys())
        keywords = overlap_ratio(extract_keywords(context.state), extract_keywords(previous.state))
        return 0.6 * jaccard + 0.4 * keywords

    def operational_factor(self, context: Context, previous: Context | None) -> float:
        if previous is None:
            return 1.0
        if context.app_id == previous.app_id:
            return 0.9
        if self._shares_transitions(context, previous):
            return 0.7
        return 0.3

    def depth_factor(self, context: Context) -> float:
        depth = min(1.0, count_reasoning_steps(context.state) / 10)
        bonus = 0.2 if has_continuity_markers(context.state) else 0.0
        return min(1.0, depth + bonus)

    def confidence_factor(self, context: Context) -> float:
        """Stored confidence plus an access-frequency bonus; 0.5 when absent."""
        raw = context.state.get("confidence") or context.state.get("certainty")
        if not raw:
            return 0.5
        try:
            confidence = float(raw)
        except (TypeError, ValueError):
            return 0.5
        access_bonus = min(0.3, context.access_count * 0.05)
        return max(0.0, min(1.0, confidence + access_bonus))

    def combine(self, factors: Mapping[str, float]) -> float:
        """Weighted sum of *factors*, clamped to ``[min_momentum, 1]``."""
        weights = self.weights.as_dict()
        overall = sum(factors[name] * weights[name] for name in FACTOR_NAMES)
        return max(self.min_momentum, min(1.0, overall))

    @staticmethod
    def _shares_transitions(a: Context, b: Context) -> bool:
        if not a.transitions or not b.transitions:
            return False
        return overlap_ratio(_transition_ids(a.transitions), _transition_ids(b.transitions)) > 0.3

    # ------------------------------------------------------------------
    # History and lookup
    # ------------------------------------------------------------------

    def record_transition(self, record: TransitionRecord) -> None:
        """Append *record* to the bounded transition history."""
        entry = record.to_dict()
        entry["recorded_at"] = datetime.now(timezone.utc).isoformat()
        self._history.append(entry)

    @property
    def history(self) -> list[dict[str, Any]]:
        return list(self._history)

    def get_momentum_vector(self, context_id: str) -> MomentumVector | None:
        return self._vectors.get(context_id)

    def forget(self, context_id: str) -> None:
        """Drop the cached vector for *context_id*, if any."""
        self._vectors.pop(context_id, None)

    def get_stats(self) -> dict[str, Any]:
        """Aggregate statistics over all cached vectors.

        Returns:
            ``count``, ``average_momentum``, per-factor means under
            ``factors`` and the number of recorded ``transitions``.
        """
        vectors = list(self._vectors.values())
        if not vectors:
            return {
                "count": 0,
                "average_momentum": 0.0,
                "factors": {},
                "transitions": len(self._history),
            }
        n = len(vectors)
        return {
            "count": n,
            "average_momentum": sum(v.overall for v in vectors) / n,
            "factors": {name: sum(getattr(v, name) for v in vectors) / n for name in FACTOR_NAMES},
            "transitions": len(self._history),
        }

    def clear(self) -> None:
        """Clear all cached vectors and the transition history."""
        self._vectors.clear()
        self._history.clear()

    def __repr__(self) -> str:  # pragma: no cover
        w = self.weights
        return (
            f"MomentumEngine(half_life={self.half_life}, temporal={w.temporal}, "
            f"semantic={w.semantic}, operational={w.operational}, "
            f"depth={w.depth}, confidence={w.confidence})"
        )
