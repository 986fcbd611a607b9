"""Tests for the MomentumEngine.

Covers temporal decay, the semantic / operational / depth / confidence
factors, weight validation, combination clamping, caching and stats.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from contextual.context import Context, TransitionRecord
from contextual.momentum import (
    FACTOR_NAMES,
    MomentumEngine,
    MomentumWeights,
    count_reasoning_steps,
    extract_keywords,
    overlap_ratio,
)

T0 = datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _ctx(app_id: str = "chatgpt", state: dict | None = None, **kwargs) -> Context:
    return Context(app_id=app_id, state=state or {}, last_access=T0, **kwargs)


@pytest.fixture()
def engine() -> MomentumEngine:
    return MomentumEngine()


# ------------------------------------------------------------------
# Temporal decay
# ------------------------------------------------------------------


class TestTemporal:
    def test_no_elapsed_time_is_full_momentum(self, engine: MomentumEngine) -> None:
        assert engine.temporal_factor(_ctx(), now=T0) == pytest.approx(1.0)

    def test_half_at_half_life(self, engine: MomentumEngine) -> None:
        now = T0 + timedelta(seconds=engine.half_life)
        assert engine.temporal_factor(_ctx(), now=now) == pytest.approx(0.5)

    def test_quarter_at_two_half_lives(self) -> None:
        engine = MomentumEngine(half_life=10.0, min_momentum=0.0)
        now = T0 + timedelta(seconds=20)
        assert engine.temporal_factor(_ctx(), now=now) == pytest.approx(0.25)

    def test_floors_at_min_momentum(self, engine: MomentumEngine) -> None:
        now = T0 + timedelta(days=1)
        assert engine.temporal_factor(_ctx(), now=now) == pytest.approx(engine.min_momentum)

    def test_monotonically_non_increasing(self, engine: MomentumEngine) -> None:
        ctx = _ctx()
        values = [
            engine.temporal_factor(ctx, now=T0 + timedelta(seconds=s)) for s in range(0, 300, 7)
        ]
        assert all(a >= b for a, b in zip(values, values[1:]))

    def test_future_last_access_clamps_to_one(self, engine: MomentumEngine) -> None:
        assert engine.temporal_factor(_ctx(), now=T0 - timedelta(seconds=5)) == pytest.approx(1.0)

    def test_invalid_half_life(self) -> None:
        with pytest.raises(ValueError):
            MomentumEngine(half_life=0)


# ------------------------------------------------------------------
# Cross-context factors
# ------------------------------------------------------------------


class TestSemantic:
    def test_no_previous_is_one(self, engine: MomentumEngine) -> None:
        assert engine.semantic_factor(_ctx(state={"a": 1}), None) == 1.0

    def test_mixed_key_and_keyword_overlap(self, engine: MomentumEngine) -> None:
        current = _ctx(state={"task": "research", "topic": "quantum computing"})
        previous = _ctx(state={"task": "research", "notes": "quantum"})
        # keys 1/3, keywords {task, research, quantum} of 6
        assert engine.semantic_factor(current, previous) == pytest.approx(0.6 / 3 + 0.4 * 0.5)

    def test_disjoint_states(self, engine: MomentumEngine) -> None:
        current = _ctx(state={"alpha": "apples"})
        previous = _ctx(state={"bravo": "oranges"})
        assert engine.semantic_factor(current, previous) == 0.0

    def test_keywords_skip_short_and_stop_words(self) -> None:
        words = extract_keywords({"note": "this is what we have been doing with cat"})
        assert words == {"note", "doing"}

    def test_overlap_ratio_empty(self) -> None:
        assert overlap_ratio([], []) == 0.0


class TestOperational:
    def test_no_previous_is_one(self, engine: MomentumEngine) -> None:
        assert engine.operational_factor(_ctx(), None) == 1.0

    def test_same_app(self, engine: MomentumEngine) -> None:
        assert engine.operational_factor(_ctx("claude"), _ctx("claude")) == 0.9

    def test_different_app_without_shared_transitions(self, engine: MomentumEngine) -> None:
        assert engine.operational_factor(_ctx("claude"), _ctx("gemini")) == 0.3

    def test_different_app_with_shared_transitions(self, engine: MomentumEngine) -> None:
        current = _ctx("claude")
        previous = _ctx("gemini")
        record = TransitionRecord(to_id=current.id, from_id=previous.id)
        current.transitions.append(record)
        previous.transitions.append(record)
        assert engine.operational_factor(current, previous) == 0.7


# ------------------------------------------------------------------
# Single-context factors
# ------------------------------------------------------------------


class TestDepth:
    def test_empty_state(self, engine: MomentumEngine) -> None:
        assert engine.depth_factor(_ctx()) == 0.0

    def test_counts_sequences_mappings_and_scalars(self, engine: MomentumEngine) -> None:
        state = {"steps": [1, 2, 3], "analysis": {"x": 1, "y": 2}, "reasoning": "yes"}
        assert count_reasoning_steps(state) == 6
        assert engine.depth_factor(_ctx(state=state)) == pytest.approx(0.6)

    def test_continuity_bonus(self, engine: MomentumEngine) -> None:
        state = {"steps": [1, 2, 3], "conclusions": "therefore done"}
        assert engine.depth_factor(_ctx(state=state)) == pytest.approx(0.4 + 0.2)

    def test_capped_at_one(self, engine: MomentumEngine) -> None:
        state = {"steps": list(range(25)), "chain": "consequently"}
        assert engine.depth_factor(_ctx(state=state)) == 1.0


class TestConfidence:
    def test_absent_is_neutral(self, engine: MomentumEngine) -> None:
        assert engine.confidence_factor(_ctx()) == 0.5

    def test_non_numeric_is_neutral(self, engine: MomentumEngine) -> None:
        assert engine.confidence_factor(_ctx(state={"confidence": "high"})) == 0.5

    def test_access_bonus(self, engine: MomentumEngine) -> None:
        ctx = _ctx(state={"confidence": 0.6}, access_count=2)
        assert engine.confidence_factor(ctx) == pytest.approx(0.7)

    def test_access_bonus_capped(self, engine: MomentumEngine) -> None:
        ctx = _ctx(state={"certainty": 0.5}, access_count=100)
        assert engine.confidence_factor(ctx) == pytest.approx(0.8)

    def test_clamped_to_one(self, engine: MomentumEngine) -> None:
        ctx = _ctx(state={"confidence": 0.95}, access_count=10)
        assert engine.confidence_factor(ctx) == 1.0


# ------------------------------------------------------------------
# Weights and combination
# ------------------------------------------------------------------


class TestCombination:
    def test_default_weights_sum_to_one(self) -> None:
        assert sum(MomentumWeights().as_dict().values()) == pytest.approx(1.0)

    def test_weights_must_sum_to_one(self) -> None:
        with pytest.raises(ValueError):
            MomentumWeights(temporal=0.5)

    def test_weights_must_be_non_negative(self) -> None:
        with pytest.raises(ValueError):
            MomentumWeights(temporal=-0.25, semantic=0.8)

    def test_overall_clamped_to_floor(self, engine: MomentumEngine) -> None:
        zeros = dict.fromkeys(("temporal", "semantic", "operational", "depth", "confidence"), 0.0)
        assert engine.combine(zeros) == pytest.approx(engine.min_momentum)

    def test_overall_clamped_to_one(self, engine: MomentumEngine) -> None:
        ones = dict.fromkeys(("temporal", "semantic", "operational", "depth", "confidence"), 1.0)
        assert engine.combine(ones) == pytest.approx(1.0)

    def test_fresh_context_without_previous(self, engine: MomentumEngine) -> None:
        vector = engine.calculate_momentum(_ctx(), now=T0)
        assert vector.factors == {
            "temporal": pytest.approx(1.0),
            "semantic": 1.0,
            "operational": 1.0,
            "depth": 0.0,
            "confidence": 0.5,
        }
        assert vector.overall == pytest.approx(0.25 + 0.30 + 0.20 + 0.05)

    def test_custom_weights(self) -> None:
        weights = MomentumWeights(
            temporal=1.0, semantic=0.0, operational=0.0, depth=0.0, confidence=0.0
        )
        engine = MomentumEngine(weights=weights)
        vector = engine.calculate_momentum(_ctx(), now=T0 + timedelta(seconds=30))
        assert vector.overall == pytest.approx(0.5)


# ------------------------------------------------------------------
# Cache, history and stats
# ------------------------------------------------------------------


class TestBookkeeping:
    def test_vector_is_overwritten(self, engine: MomentumEngine) -> None:
        ctx = _ctx()
        engine.calculate_momentum(ctx, now=T0)
        later = engine.calculate_momentum(ctx, now=T0 + timedelta(hours=1))
        assert engine.get_momentum_vector(ctx.id) is later
        assert engine.get_stats()["count"] == 1

    def test_history_is_bounded(self) -> None:
        engine = MomentumEngine(max_history=3)
        for i in range(5):
            engine.record_transition(TransitionRecord(to_id=f"ctx{i}"))
        history = engine.history
        assert [entry["to"] for entry in history] == ["ctx2", "ctx3", "ctx4"]
        assert all("recorded_at" in entry for entry in history)

    def test_stats_average(self, engine: MomentumEngine) -> None:
        a = engine.calculate_momentum(_ctx(), now=T0)
        b = engine.calculate_momentum(_ctx(), now=T0 + timedelta(days=1))
        stats = engine.get_stats()
        assert stats["count"] == 2
        assert stats["average_momentum"] == pytest.approx((a.overall + b.overall) / 2)
        assert set(stats["factors"]) == set(FACTOR_NAMES)

    def test_empty_stats(self, engine: MomentumEngine) -> None:
        assert engine.get_stats() == {
            "count": 0,
            "average_momentum": 0.0,
            "factors": {},
            "transitions": 0,
        }

    def test_forget_and_clear(self, engine: MomentumEngine) -> None:
        ctx = _ctx()
        engine.calculate_momentum(ctx, now=T0)
        engine.record_transition(TransitionRecord(to_id=ctx.id))
        engine.forget(ctx.id)
        assert engine.get_momentum_vector(ctx.id) is None
        engine.clear()
        assert engine.history == []
