"""Core Contextual class -- the main entry point for the library.

Wires the vault, momentum engine, bridge and housekeeper together with
explicit dependency injection and exposes one facade over them::

    from contextual import Contextual

    with Contextual() as ctx:
        cid = ctx.create_context("chatgpt", {"task": "research"})
        ctx.transition(cid)
        ctx.update_state({"notes": ["first finding"]})
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from .bridge import ContextBridge
from .config import ContextualConfig
from .context import Context
from .housekeeper import AIHousekeeper, FilterResult
from .momentum import MomentumEngine
from .vault import StateVault

logger = logging.getLogger(__name__)


class Contextual:
    """Composition root for the bridge, momentum engine, vault and housekeeper.

    Contexts already held in the vault are loaded into the bridge at
    start-up, so a restarted process sees the same contexts it saved.

    Args:
        config: A :class:`ContextualConfig`.  Defaults to
            :meth:`ContextualConfig.from_env`.
        vault: A pre-built vault to use instead of one built from
            *config*.
        momentum: A pre-built momentum engine.
        housekeeper: A pre-built housekeeper.
    """

    def __init__(
        self,
        config: ContextualConfig | None = None,
        *,
        vault: StateVault | None = None,
        momentum: MomentumEngine | None = None,
        housekeeper: AIHousekeeper | None = None,
    ) -> None:
        self.config = config or ContextualConfig.from_env()
        cfg = self.config

        self.vault = vault or StateVault(
            storage_path=cfg.storage_path,
            encryption_enabled=cfg.encryption_enabled,
            encryption_key=cfg.encryption_key,
            backup_enabled=cfg.auto_backup,
            backup_interval=cfg.backup_interval,
            max_backups=cfg.max_backups,
        )
        self.momentum = momentum or MomentumEngine(
            half_life=cfg.momentum_half_life,
            min_momentum=cfg.min_momentum,
            weights=cfg.momentum_weights,
            max_history=cfg.max_history,
        )
        self.housekeeper = housekeeper or AIHousekeeper(max_history=cfg.max_history)
        self.bridge = ContextBridge(
            momentum=self.momentum,
            vault=self.vault,
            max_contexts=cfg.max_contexts,
        )
        self._closed = False

        loaded = self._load_from_vault()
        logger.info("Contextual ready (%d context(s) loaded from %s)", loaded, self.vault.path)

    def _load_from_vault(self) -> int:
        loaded = 0
        for context_id in self.vault.get_all_context_ids():
            context = self.vault.load_context(context_id)
            if context is None:
                continue
            if self.bridge.adopt(context):
                loaded += 1
            else:
                logger.debug("Context %s left in the vault (registry full)", context_id)
        return loaded

    # ------------------------------------------------------------------
    # Contexts
    # ------------------------------------------------------------------

    def create_context(self, app_id: str, initial_state: Mapping[str, Any] | None = None) -> str:
        """Create a context owned by *app_id* and return its id."""
        return self.bridge.create_context(app_id, initial_state)

    def transition(
        self, target_context_id: str, transition_data: Mapping[str, Any] | None = None
    ) -> bool:
        """Switch the active context.

        A target that was evicted to the vault is loaded back first.

        Returns:
            ``False`` if the target is unknown to both bridge and vault.
        """
        if target_context_id not in self.bridge:
            self.bridge.rehydrate(target_context_id)
        ok = self.bridge.transition(target_context_id, transition_data)
        if ok:
            vector = self.momentum.get_momentum_vector(target_context_id)
            if vector is not None:
                logger.info("Momentum for %s: %.3f", target_context_id, vector.overall)
        return ok

    def update_state(self, update: Mapping[str, Any]) -> dict[str, Any]:
        """Merge *update* into the active context's state."""
        return self.bridge.update_state(update)

    def get_state(self) -> dict[str, Any] | None:
        return self.bridge.get_state()

    def get_active_context(self) -> Context | None:
        return self.bridge.get_active_context()

    def get_context(self, context_id: str) -> Context | None:
        """Return a copy of a context from the bridge, or else from the vault."""
        context = self.bridge.get_context(context_id)
        if context is None:
            context = self.vault.load_context(context_id)
        return context

    def list_contexts(self) -> list[Context]:
        """Return copies of the live contexts, least recently accessed first."""
        contexts = [c for c in map(self.bridge.get_context, self.bridge.context_ids()) if c]
        return sorted(contexts, key=lambda c: c.last_access)

    def delete_context(self, context_id: str) -> bool:
        """Delete a context from the bridge, the momentum cache and the vault.

        Returns:
            ``True`` if the context existed anywhere.
        """
        released = self.bridge.release(context_id) is not None
        self.momentum.forget(context_id)
        removed = self.vault.delete_context(context_id)
        if released or removed:
            logger.info("Context deleted: %s", context_id)
        return released or removed

    # ------------------------------------------------------------------
    # Platforms
    # ------------------------------------------------------------------

    def connect(self, platform: str, config: Mapping[str, Any] | None = None) -> bool:
        return self.bridge.connect(platform, config)

    def disconnect(self, platform: str) -> bool:
        return self.bridge.disconnect(platform)

    def switch_platform(
        self, platform: str, transfer: bool = True, reason: str | None = None
    ) -> bool:
        return self.bridge.switch_platform(platform, transfer=transfer, reason=reason)

    # ------------------------------------------------------------------
    # Answers
    # ------------------------------------------------------------------

    def filter_answers(self, candidates: Sequence[str], question: str) -> FilterResult:
        return self.housekeeper.filter_answers(candidates, question)

    def amplify_answer(self, answer: str, question: str) -> str:
        return self.housekeeper.amplify(answer, question)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self) -> int:
        """Write every live context to the vault."""
        return self.bridge.flush()

    def backup(self) -> int | None:
        """Flush live contexts, then write a backup snapshot.

        Returns:
            The snapshot timestamp, or ``None`` if no snapshot was written.
        """
        self.bridge.flush()
        return self.vault.backup()

    def list_backups(self) -> list[int]:
        return self.vault.list_backups()

    def restore(self, timestamp: int | None = None) -> bool:
        """Restore a snapshot into the vault and reload the bridge from it.

        Returns:
            ``False`` if the vault could not restore the snapshot; the
            bridge is left untouched in that case.
        """
        if not self.vault.restore(timestamp):
            return False
        count = self.bridge.replace_all(self.vault.get_contexts())
        logger.info("Bridge reloaded with %d restored context(s)", count)
        return True

    def get_stats(self) -> dict[str, Any]:
        """Aggregate statistics for contexts, momentum, housekeeper and vault."""
        return {
            "contexts": self.bridge.get_stats(),
            "momentum": self.momentum.get_stats(),
            "housekeeper": self.housekeeper.get_stats(),
            "vault": self.vault.get_stats(),
        }

    def shutdown(self) -> int | None:
        """Flush live contexts, stop automatic backups and take a final backup.

        Safe to call more than once.

        Returns:
            The final backup timestamp, or ``None``.
        """
        if self._closed:
            return None
        self._closed = True
        self.bridge.flush()
        return self.vault.shutdown()

    # -- Context manager --------------------------------------------------

    def __enter__(self) -> Contextual:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.shutdown()

    def __repr__(self) -> str:  # pragma: no cover
        return f"Contextual(path={self.vault.path!r}, contexts={len(self.bridge)})"
