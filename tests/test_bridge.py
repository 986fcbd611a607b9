"""Tests for the ContextBridge.

Covers context creation, transitions and the ledger, state updates,
eviction through the vault, platform connections and message bridging.
"""

from __future__ import annotations

import threading

import pytest

from contextual.bridge import ContextBridge, NoActiveContextError, RegistryFullError
from contextual.momentum import MomentumEngine
from contextual.vault import StateVault

# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture()
def vault(tmp_path):
    return StateVault(tmp_path, backup_enabled=False)


@pytest.fixture()
def momentum() -> MomentumEngine:
    return MomentumEngine()


@pytest.fixture()
def bridge(momentum, vault) -> ContextBridge:
    return ContextBridge(momentum=momentum, vault=vault)


# ------------------------------------------------------------------
# Creation
# ------------------------------------------------------------------


class TestCreate:
    def test_create_registers_context(self, bridge: ContextBridge) -> None:
        cid = bridge.create_context("app1", {"task": "research"})
        ctx = bridge.get_context(cid)
        assert ctx is not None
        assert ctx.app_id == "app1"
        assert ctx.state == {"task": "research"}
        assert ctx.access_count == 0
        assert ctx.transitions == []
        assert cid in bridge

    def test_create_does_not_activate(self, bridge: ContextBridge) -> None:
        bridge.create_context("app1")
        assert bridge.active_context_id is None
        assert bridge.get_state() is None
        assert bridge.get_active_context() is None

    def test_initial_state_is_copied(self, bridge: ContextBridge) -> None:
        initial = {"task": "research"}
        cid = bridge.create_context("app1", initial)
        initial["task"] = "changed"
        assert bridge.get_context(cid).state == {"task": "research"}

    @pytest.mark.parametrize("app_id", ["", None, 5])
    def test_invalid_app_id(self, bridge: ContextBridge, app_id) -> None:
        with pytest.raises(ValueError):
            bridge.create_context(app_id)

    def test_invalid_initial_state(self, bridge: ContextBridge) -> None:
        with pytest.raises(ValueError):
            bridge.create_context("app1", ["not", "a", "mapping"])  # type: ignore[arg-type]


# ------------------------------------------------------------------
# Transitions
# ------------------------------------------------------------------


class TestTransition:
    def test_unknown_target_returns_false(self, bridge: ContextBridge) -> None:
        assert bridge.transition("missing") is False
        assert bridge.history == []

    def test_there_and_back_adds_two_records(self, bridge: ContextBridge) -> None:
        first = bridge.create_context("app1", {"task": "research"})
        assert bridge.transition(first) is True
        second = bridge.create_context("app2")
        before = len(bridge.history)

        assert bridge.transition(second) is True
        assert bridge.transition(first) is True

        assert len(bridge.history) == before + 2
        assert bridge.active_context_id == first
        last = bridge.history[-1]
        assert (last.from_id, last.to_id) == (second, first)

    def test_first_transition_has_no_source(self, bridge: ContextBridge) -> None:
        cid = bridge.create_context("app1")
        bridge.transition(cid, {"reason": "start"})
        record = bridge.history[0]
        assert record.from_id is None
        assert record.to_id == cid
        assert record.transferred is False
        assert record.reason == "start"

    def test_transition_touches_target(self, bridge: ContextBridge) -> None:
        cid = bridge.create_context("app1")
        before = bridge.get_context(cid).last_access
        bridge.transition(cid)
        ctx = bridge.get_context(cid)
        assert ctx.access_count == 1
        assert ctx.last_access >= before

    def test_records_appended_to_both_contexts(self, bridge: ContextBridge) -> None:
        a = bridge.create_context("app1")
        b = bridge.create_context("app2")
        bridge.transition(a)
        bridge.transition(b)
        assert len(bridge.get_context(a).transitions) == 2
        assert len(bridge.get_context(b).transitions) == 1
        assert bridge.get_context(b).transitions[0] == bridge.history[-1]

    def test_transition_scores_momentum(
        self, bridge: ContextBridge, momentum: MomentumEngine
    ) -> None:
        a = bridge.create_context("app1", {"topic": "quantum"})
        b = bridge.create_context("app1", {"topic": "quantum"})
        bridge.transition(a)
        bridge.transition(b)
        vector = momentum.get_momentum_vector(b)
        assert vector is not None
        assert vector.operational == 0.9
        assert vector.semantic == pytest.approx(1.0)
        assert momentum.get_stats()["transitions"] == 2

    def test_carry_is_merged_when_transferring(self, bridge: ContextBridge) -> None:
        a = bridge.create_context("app1")
        b = bridge.create_context("app2", {"own": 1})
        bridge.transition(a)
        bridge.transition(b, {"carry": {"summary": "so far"}, "reason": "handoff"})
        assert bridge.get_context(b).state == {"own": 1, "summary": "so far"}
        assert bridge.history[-1].transferred is True

    def test_carry_ignored_without_transfer(self, bridge: ContextBridge) -> None:
        a = bridge.create_context("app1")
        b = bridge.create_context("app2")
        bridge.transition(a)
        bridge.transition(b, {"carry": {"summary": "so far"}, "transfer": False})
        assert bridge.get_context(b).state == {}
        assert bridge.history[-1].transferred is False

    def test_carry_must_be_mapping(self, bridge: ContextBridge) -> None:
        a = bridge.create_context("app1")
        with pytest.raises(ValueError):
            bridge.transition(a, {"carry": "nope"})

    def test_works_without_collaborators(self) -> None:
        bridge = ContextBridge()
        cid = bridge.create_context("app1")
        assert bridge.transition(cid) is True
        assert bridge.flush() == 0


# ------------------------------------------------------------------
# State
# ------------------------------------------------------------------


class TestState:
    def test_update_without_active_context(self, bridge: ContextBridge) -> None:
        bridge.create_context("app1")
        with pytest.raises(NoActiveContextError):
            bridge.update_state({"a": 1})

    def test_update_merges_shallowly(self, bridge: ContextBridge) -> None:
        cid = bridge.create_context("app1", {"a": 1, "nested": {"x": 1}})
        bridge.transition(cid)
        committed = bridge.update_state({"b": 2, "nested": {"y": 2}})
        assert committed == {"a": 1, "b": 2, "nested": {"y": 2}}
        assert bridge.get_state() == committed
        assert bridge.get_context(cid).access_count == 2

    def test_update_must_be_mapping(self, bridge: ContextBridge) -> None:
        cid = bridge.create_context("app1")
        bridge.transition(cid)
        with pytest.raises(ValueError):
            bridge.update_state([("a", 1)])  # type: ignore[arg-type]

    def test_returned_state_is_a_copy(self, bridge: ContextBridge) -> None:
        cid = bridge.create_context("app1", {"a": 1})
        bridge.transition(cid)
        bridge.get_state()["a"] = 99
        assert bridge.get_state() == {"a": 1}

    def test_concurrent_updates_are_not_lost(self, bridge: ContextBridge) -> None:
        cid = bridge.create_context("app1")
        bridge.transition(cid)

        def worker(n: int) -> None:
            for i in range(50):
                bridge.update_state({f"w{n}-{i}": i})

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(bridge.get_state()) == 200
        assert bridge.get_context(cid).access_count == 201


# ------------------------------------------------------------------
# Registry limits and the vault
# ------------------------------------------------------------------


class TestRegistry:
    def test_evicts_least_recently_accessed_to_vault(self, momentum, vault) -> None:
        bridge = ContextBridge(momentum=momentum, vault=vault, max_contexts=2)
        oldest = bridge.create_context("app1", {"keep": "me"})
        newer = bridge.create_context("app2")
        bridge.transition(newer)

        third = bridge.create_context("app3")
        assert oldest not in bridge
        assert set(bridge.context_ids()) == {newer, third}
        assert vault.load_context(oldest).state == {"keep": "me"}

    def test_active_context_is_never_evicted(self, momentum, vault) -> None:
        bridge = ContextBridge(momentum=momentum, vault=vault, max_contexts=1)
        only = bridge.create_context("app1")
        bridge.transition(only)
        with pytest.raises(RegistryFullError):
            bridge.create_context("app2")
        assert bridge.context_ids() == [only]

    def test_full_without_vault(self) -> None:
        bridge = ContextBridge(max_contexts=1)
        bridge.create_context("app1")
        with pytest.raises(RegistryFullError):
            bridge.create_context("app2")

    def test_rehydrate_evicted_context(self, momentum, vault) -> None:
        bridge = ContextBridge(momentum=momentum, vault=vault, max_contexts=2)
        evicted = bridge.create_context("app1", {"keep": "me"})
        bridge.create_context("app2")
        bridge.create_context("app3")
        assert evicted not in bridge

        assert bridge.rehydrate(evicted) is True
        assert bridge.get_context(evicted).state == {"keep": "me"}
        assert len(bridge) == 2

    def test_rehydrate_unknown(self, bridge: ContextBridge) -> None:
        assert bridge.rehydrate("missing") is False

    def test_flush_saves_all(self, bridge: ContextBridge, vault) -> None:
        ids = [bridge.create_context("app1", {"n": n}) for n in range(3)]
        assert bridge.flush() == 3
        assert {c.id for c in vault.get_contexts()} == set(ids)

    def test_release_active_context(self, bridge: ContextBridge) -> None:
        cid = bridge.create_context("app1")
        bridge.transition(cid)
        released = bridge.release(cid)
        assert released is not None and released.id == cid
        assert bridge.active_context_id is None
        assert bridge.release(cid) is None

    def test_replace_all_keeps_ledger(self, bridge: ContextBridge, vault) -> None:
        a = bridge.create_context("app1")
        bridge.transition(a)
        bridge.flush()
        bridge.create_context("app2")

        assert bridge.replace_all(vault.get_contexts()) == 1
        assert bridge.context_ids() == [a]
        assert bridge.active_context_id == a
        assert len(bridge.history) == 1

    def test_adopt_rejects_duplicates(self, bridge: ContextBridge) -> None:
        cid = bridge.create_context("app1")
        assert bridge.adopt(bridge.get_context(cid)) is False

    def test_invalid_max_contexts(self) -> None:
        with pytest.raises(ValueError):
            ContextBridge(max_contexts=0)


# ------------------------------------------------------------------
# Platforms
# ------------------------------------------------------------------


class TestPlatforms:
    def test_connect_creates_platform_context(self, bridge: ContextBridge) -> None:
        assert bridge.connect("chatgpt", {"model": "gpt"}) is True
        cid = bridge.platform_context_id("chatgpt")
        assert bridge.get_context(cid).app_id == "chatgpt"
        assert bridge.connected_platforms() == ["chatgpt"]

    def test_reconnect_reuses_context(self, bridge: ContextBridge) -> None:
        bridge.connect("claude")
        cid = bridge.platform_context_id("claude")
        bridge.connect("claude")
        assert bridge.platform_context_id("claude") == cid
        assert len(bridge) == 1

    def test_unknown_platform(self, bridge: ContextBridge) -> None:
        assert bridge.connect("myspace") is False
        assert bridge.switch_platform("myspace") is False

    def test_switch_platform(self, bridge: ContextBridge) -> None:
        bridge.connect("chatgpt")
        bridge.connect("claude")
        assert bridge.switch_platform("chatgpt") is True
        assert bridge.switch_platform("claude", reason="second opinion") is True
        assert bridge.active_context_id == bridge.platform_context_id("claude")
        assert bridge.history[-1].transferred is True
        assert bridge.history[-1].reason == "second opinion"

    def test_switch_to_disconnected_platform(self, bridge: ContextBridge) -> None:
        assert bridge.switch_platform("gemini") is False

    def test_switch_to_evicted_platform_context(self, momentum, vault) -> None:
        bridge = ContextBridge(momentum=momentum, vault=vault, max_contexts=2)
        bridge.connect("claude")
        cid = bridge.platform_context_id("claude")
        bridge.transition(cid)
        bridge.update_state({"topic": "rust"})
        bridge.transition(bridge.create_context("app1"))
        bridge.create_context("app2")
        assert cid not in bridge

        assert bridge.switch_platform("claude") is True
        assert bridge.active_context_id == cid
        assert bridge.get_state() == {"topic": "rust"}
        assert len(bridge) == 2

    def test_reconnect_after_eviction_keeps_context(self, momentum, vault) -> None:
        bridge = ContextBridge(momentum=momentum, vault=vault, max_contexts=2)
        bridge.connect("claude")
        cid = bridge.platform_context_id("claude")
        bridge.create_context("app1")
        bridge.create_context("app2")
        assert cid not in bridge

        assert bridge.connect("claude") is True
        assert bridge.platform_context_id("claude") == cid
        assert cid in bridge

    def test_disconnect_active_platform(self, bridge: ContextBridge) -> None:
        bridge.connect("perplexity")
        bridge.switch_platform("perplexity")
        assert bridge.disconnect("perplexity") is True
        assert bridge.active_context_id is None
        assert bridge.connected_platforms() == []

    def test_disconnect_all_keeps_ledger(self, bridge: ContextBridge) -> None:
        bridge.connect("chatgpt")
        bridge.connect("gemini")
        bridge.switch_platform("gemini")
        bridge.disconnect_all()
        assert bridge.connected_platforms() == []
        assert bridge.active_context_id is None
        assert len(bridge.history) == 1

    def test_bridge_message_invokes_callbacks(self, bridge: ContextBridge) -> None:
        received = []
        bridge.connect("chatgpt")
        bridge.connect("claude")
        bridge.switch_platform("chatgpt")
        bridge.on_bridge("claude", received.append)

        result = bridge.bridge_message(
            {"role": "user", "content": "hello", "create_time": "2030-01-01"}, "claude"
        )
        assert result is not None
        assert result["success"] is True
        assert result["message"] == {"role": "user", "content": "hello", "timestamp": "2030-01-01"}
        assert result["target_platform"] == "claude"
        assert len(received) == 1
        assert received[0]["platform"] == "chatgpt"

    def test_bridge_message_to_disconnected_target(self, bridge: ContextBridge) -> None:
        assert bridge.bridge_message({"content": "hi"}, "gemini") is None

    def test_stats(self, bridge: ContextBridge) -> None:
        bridge.connect("chatgpt")
        bridge.switch_platform("chatgpt")
        stats = bridge.get_stats()
        assert stats == {
            "active": bridge.platform_context_id("chatgpt"),
            "total": 1,
            "transitions": 1,
            "connected_platforms": ["chatgpt"],
        }
