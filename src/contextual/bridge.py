"""Context lifecycle and transition ledger for CONTEXTUAL.

The :class:`ContextBridge` owns the in-memory registry of live contexts,
tracks which one is active, and records every switch in an append-only
ledger.  It also keeps track of connections to the known chat platforms
so that switching platforms is just a transition between their contexts.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .context import Context, TransitionRecord
from .platforms import PLATFORMS, normalize_conversation

if TYPE_CHECKING:
    from .momentum import MomentumEngine
    from .vault import StateVault

logger = logging.getLogger(__name__)


class NoActiveContextError(RuntimeError):
    """Raised when an operation needs an active context and there is none."""


class RegistryFullError(RuntimeError):
    """Raised when a context cannot be registered without losing another."""


class ContextBridge:
    """Registry of live contexts plus the transition ledger.

    Collaborators are injected: the momentum engine is asked to score the
    new active context on every transition, and the vault receives
    contexts that are flushed or evicted.

    Args:
        momentum: Engine used to score contexts on transition.
        vault: Vault used for flushes and for eviction.
        max_contexts: Maximum number of live contexts.  When full, the
            least recently accessed inactive context is flushed to the
            vault and then evicted from memory.
    """

    def __init__(
        self,
        momentum: MomentumEngine | None = None,
        vault: StateVault | None = None,
        max_contexts: int = 100,
    ) -> None:
        if max_contexts < 1:
            raise ValueError("max_contexts must be at least 1.")
        self._momentum = momentum
        self._vault = vault
        self.max_contexts = int(max_contexts)

        self._contexts: dict[str, Context] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.RLock()
        self._active: str | None = None
        self._ledger: list[TransitionRecord] = []

        self._platforms: dict[str, dict[str, Any]] = {
            key: {"name": name, "connected": False, "context_id": None, "config": {}}
            for key, name in PLATFORMS.items()
        }
        self._callbacks: dict[str, list[Callable[[dict[str, Any]], Any]]] = {}

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self, *context_ids: str) -> Iterator[None]:
        """Hold the per-context locks for *context_ids* (in a fixed order)."""
        with self._registry_lock:
            locks = [self._locks[cid] for cid in sorted(set(context_ids)) if cid in self._locks]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def create_context(self, app_id: str, initial_state: Mapping[str, Any] | None = None) -> str:
        """Create and register a new context.

        Args:
            app_id: Identifier of the owning application.
            initial_state: Initial state mapping (copied).

        Returns:
            The new context id.

        Raises:
            ValueError: If *app_id* is empty or *initial_state* is not a
                mapping.
            RegistryFullError: If the registry is full and the eviction
                victim cannot be flushed to a vault.
        """
        if not isinstance(app_id, str) or not app_id:
            raise ValueError("app_id must be a non-empty string.")
        if initial_state is not None and not isinstance(initial_state, Mapping):
            raise ValueError("initial_state must be a mapping.")

        context = Context(app_id=app_id, state=dict(initial_state or {}))
        self._register(context)
        logger.info("Context created: %s (app=%s)", context.id, app_id)
        return context.id

    def _register(self, context: Context) -> None:
        with self._registry_lock:
            while len(self._contexts) >= self.max_contexts:
                self._evict_one()
            self._contexts[context.id] = context
            self._locks[context.id] = threading.RLock()

    def _evict_one(self) -> None:
        """Flush the least recently accessed inactive context, then drop it."""
        candidates = [c for cid, c in self._contexts.items() if cid != self._active]
        if not candidates:
            raise RegistryFullError("Registry is full and only the active context remains.")
        if self._vault is None:
            raise RegistryFullError(
                f"Registry is full ({self.max_contexts}) and no vault is attached for eviction."
            )
        victim = min(candidates, key=lambda c: c.last_access)
        with self._locked(victim.id):
            if not self._vault.save_context(victim):
                logger.warning("Evicted context %s is only held in vault memory", victim.id)
            del self._contexts[victim.id]
        del self._locks[victim.id]
        logger.info("Evicted context %s to the vault", victim.id)

    def adopt(self, context: Context) -> bool:
        """Register an existing context (for example one loaded at start-up).

        Returns:
            ``False`` if a context with the same id is already registered
            or the registry is full.
        """
        with self._registry_lock:
            if context.id in self._contexts or len(self._contexts) >= self.max_contexts:
                return False
            self._contexts[context.id] = context
            self._locks[context.id] = threading.RLock()
        return True

    def rehydrate(self, context_id: str) -> bool:
        """Load a vault-held context (for example an evicted one) back into memory."""
        with self._registry_lock:
            if context_id in self._contexts:
                return True
        if self._vault is None:
            return False
        context = self._vault.load_context(context_id)
        if context is None:
            return False
        self._register(context)
        logger.info("Context %s rehydrated from the vault", context_id)
        return True

    def release(self, context_id: str) -> Context | None:
        """Remove a context from the registry without flushing it.

        Ownership of the returned context passes to the caller.  Releasing
        the active context leaves no context active.
        """
        with self._registry_lock:
            context = self._contexts.pop(context_id, None)
            self._locks.pop(context_id, None)
            if context is not None and self._active == context_id:
                self._active = None
        return context

    def replace_all(self, contexts: Iterable[Context]) -> int:
        """Swap the registry for *contexts* (used after a vault restore).

        The ledger is kept.  The active context stays active only if it is
        among the new contexts.

        Returns:
            The number of contexts registered.
        """
        with self._registry_lock:
            self._contexts.clear()
            self._locks.clear()
            for context in contexts:
                if len(self._contexts) >= self.max_contexts:
                    break
                self._contexts[context.id] = context
                self._locks[context.id] = threading.RLock()
            if self._active not in self._contexts:
                self._active = None
            return len(self._contexts)

    def flush(self) -> int:
        """Save every live context to the vault.

        Returns:
            The number of contexts handed to the vault.
        """
        if self._vault is None:
            return 0
        with self._registry_lock:
            ids = list(self._contexts)
        saved = 0
        for context_id in ids:
            with self._locked(context_id):
                context = self._contexts.get(context_id)
                if context is None:
                    continue
                self._vault.save_context(context)
                saved += 1
        logger.debug("Flushed %d context(s) to the vault", saved)
        return saved

    # ------------------------------------------------------------------
    # Transitions and state
    # ------------------------------------------------------------------

    def transition(
        self, target_context_id: str, transition_data: Mapping[str, Any] | None = None
    ) -> bool:
        """Make *target_context_id* the active context.

        Args:
            target_context_id: The context to switch to.
            transition_data: Optional ``reason`` (recorded), ``transfer``
                (default ``True``) and ``carry`` (mapping merged into the
                target state when transferring).

        Returns:
            ``True`` on success, ``False`` if the target is not registered.

        Raises:
            ValueError: If ``carry`` is present but not a mapping.
        """
        data = dict(transition_data or {})
        carry = data.get("carry")
        if carry is not None and not isinstance(carry, Mapping):
            raise ValueError("transition_data['carry'] must be a mapping.")

        with self._registry_lock:
            target = self._contexts.get(target_context_id)
            if target is None:
                logger.warning("Transition failed: unknown context %s", target_context_id)
                return False
            previous_id = self._active
            previous = self._contexts.get(previous_id) if previous_id else None
            transferred = bool(data.get("transfer", True)) and previous is not None
            record = TransitionRecord(
                to_id=target.id,
                from_id=previous_id,
                transferred=transferred,
                reason=data.get("reason"),
            )

            with self._locked(target.id, *([previous.id] if previous else [])):
                self._ledger.append(record)
                target.transitions.append(record)
                if previous is not None and previous is not target:
                    previous.transitions.append(record)
                if transferred and carry:
                    target.state.update(carry)
                self._active = target.id

                # Score before the access refresh so the temporal factor
                # reflects how long the target sat idle.
                if self._momentum is not None:
                    self._momentum.calculate_momentum(target, previous)
                    self._momentum.record_transition(record)
                target.touch()

        logger.info("Transitioned %s -> %s", previous_id, target.id)
        return True

    def update_state(self, update: Mapping[str, Any]) -> dict[str, Any]:
        """Shallow-merge *update* into the active context's state.

        Returns:
            A copy of the committed state.

        Raises:
            ValueError: If *update* is not a mapping.
            NoActiveContextError: If no context is active.
        """
        if not isinstance(update, Mapping):
            raise ValueError("State update must be a mapping.")
        with self._registry_lock:
            context = self._contexts.get(self._active) if self._active else None
        if context is None:
            raise NoActiveContextError("No active context to update.")
        with self._locked(context.id):
            context.state.update(update)
            context.touch()
            return dict(context.state)

    def get_state(self) -> dict[str, Any] | None:
        """Return a copy of the active context's state, or ``None``."""
        context = self.get_active_context()
        return context.state if context is not None else None

    def get_active_context(self) -> Context | None:
        """Return a copy of the active context, or ``None``."""
        with self._registry_lock:
            active = self._active
        return self.get_context(active) if active else None

    def get_context(self, context_id: str) -> Context | None:
        """Return a copy of a registered context, or ``None``."""
        with self._locked(context_id):
            context = self._contexts.get(context_id)
            return context.copy() if context is not None else None

    @property
    def active_context_id(self) -> str | None:
        return self._active

    @property
    def history(self) -> list[TransitionRecord]:
        """The transition ledger, oldest first."""
        with self._registry_lock:
            return list(self._ledger)

    def context_ids(self) -> list[str]:
        with self._registry_lock:
            return list(self._contexts)

    def __len__(self) -> int:
        return len(self._contexts)

    def __contains__(self, context_id: object) -> bool:
        return context_id in self._contexts

    # ------------------------------------------------------------------
    # Platforms
    # ------------------------------------------------------------------

    def connect(self, platform: str, config: Mapping[str, Any] | None = None) -> bool:
        """Connect a known platform, giving it a context of its own.

        Reconnecting reuses the platform's existing context, reloading
        it from the vault if it was evicted.

        Returns:
            ``False`` for an unknown platform.
        """
        entry = self._platforms.get(platform)
        if entry is None:
            logger.warning("Unknown platform: %s", platform)
            return False
        context_id = entry["context_id"]
        if context_id is None or not self.rehydrate(context_id):
            context_id = self.create_context(platform, {})
        entry.update(connected=True, context_id=context_id, config=dict(config or {}))
        logger.info("Connected to %s", entry["name"])
        return True

    def disconnect(self, platform: str) -> bool:
        entry = self._platforms.get(platform)
        if entry is None:
            return False
        with self._registry_lock:
            if entry["context_id"] is not None and self._active == entry["context_id"]:
                self._active = None
        entry.update(connected=False, context_id=None)
        return True

    def disconnect_all(self) -> None:
        for platform in self._platforms:
            self.disconnect(platform)
        with self._registry_lock:
            self._active = None

    def switch_platform(
        self, platform: str, transfer: bool = True, reason: str | None = None
    ) -> bool:
        """Transition to a connected platform's context.

        A platform context evicted to the vault is loaded back first.

        Returns:
            ``False`` if the platform is unknown or not connected.
        """
        entry = self._platforms.get(platform)
        if entry is None or not entry["connected"]:
            logger.warning("Platform %s is not connected", platform)
            return False
        if not self.rehydrate(entry["context_id"]):
            logger.warning("Context for platform %s is no longer available", platform)
            return False
        return self.transition(entry["context_id"], {"transfer": transfer, "reason": reason})

    def connected_platforms(self) -> list[str]:
        return [key for key, entry in self._platforms.items() if entry["connected"]]

    def platform_context_id(self, platform: str) -> str | None:
        entry = self._platforms.get(platform)
        return entry["context_id"] if entry else None

    def on_bridge(self, platform: str, callback: Callable[[dict[str, Any]], Any]) -> None:
        """Register *callback* to receive messages bridged to *platform*."""
        self._callbacks.setdefault(platform, []).append(callback)

    def bridge_message(
        self, message: Mapping[str, Any], target_platform: str
    ) -> dict[str, Any] | None:
        """Normalise *message* from the active platform and hand it to *target_platform*.

        Returns:
            A result dict, or ``None`` if the target is not connected.
        """
        entry = self._platforms.get(target_platform)
        if entry is None or not entry["connected"]:
            logger.warning("Target platform %s is not connected", target_platform)
            return None

        active = self.get_active_context()
        source = active.app_id if active is not None else None
        normalized = normalize_conversation({"messages": [message]}, source)
        for callback in self._callbacks.get(target_platform, []):
            callback(normalized)

        return {
            "success": True,
            "message": normalized["messages"][0],
            "target_platform": target_platform,
            "bridged_at": datetime.now(timezone.utc).isoformat(),
        }

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        with self._registry_lock:
            return {
                "active": self._active,
                "total": len(self._contexts),
                "transitions": len(self._ledger),
                "connected_platforms": self.connected_platforms(),
            }

    def __repr__(self) -> str:  # pragma: no cover
        return f"ContextBridge(contexts={len(self._contexts)}, active={self._active!r})"
