"""Configuration for the CONTEXTUAL facade.

Every option can be passed explicitly or read from ``CONTEXTUAL_*``
environment variables via :meth:`ContextualConfig.from_env`:

``CONTEXTUAL_PATH``             storage directory
``CONTEXTUAL_ENCRYPTION``       ``0``/``false``/``no``/``off`` disables encryption
``CONTEXTUAL_KEY``              64 hex characters or a passphrase
``CONTEXTUAL_AUTO_BACKUP``      ``0``/``false``/``no``/``off`` disables the backup thread
``CONTEXTUAL_BACKUP_INTERVAL``  seconds between automatic backups
``CONTEXTUAL_MAX_BACKUPS``      snapshots kept by rotation
``CONTEXTUAL_HALF_LIFE``        momentum half-life in seconds
``CONTEXTUAL_MAX_CONTEXTS``     maximum live contexts
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from .momentum import MomentumWeights

_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def _env_flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() not in _FALSE_VALUES


def _env_number(env: Mapping[str, str], name: str, default: float, cast: type = float) -> float:
    value = env.get(name)
    if value is None or not value.strip():
        return default
    try:
        return cast(value.strip())
    except ValueError:
        raise ValueError(f"{name} must be a number (got {value!r}).") from None


@dataclass
class ContextualConfig:
    """Options for :class:`~contextual.core.Contextual`.

    Attributes:
        storage_path: Vault directory.  ``None`` means ``~/.contextual``.
        encryption_enabled: Encrypt persisted contexts and backups.
        encryption_key: Key or passphrase.  ``None`` generates a key once
            and stores it next to the data.
        auto_backup: Run the periodic backup thread.
        backup_interval: Seconds between automatic backups.
        max_backups: Snapshots kept by rotation.
        momentum_half_life: Seconds after which temporal momentum halves.
        min_momentum: Floor for momentum scores.
        momentum_weights: Per-factor momentum weights.
        max_history: Bound for the momentum and filter histories.
        max_contexts: Maximum number of live contexts in the bridge.
    """

    storage_path: str | None = None
    encryption_enabled: bool = True
    encryption_key: str | None = None
    auto_backup: bool = True
    backup_interval: float = 300.0
    max_backups: int = 10
    momentum_half_life: float = 30.0
    min_momentum: float = 0.1
    momentum_weights: MomentumWeights = field(default_factory=MomentumWeights)
    max_history: int = 1000
    max_contexts: int = 100

    def __post_init__(self) -> None:
        if self.backup_interval <= 0:
            raise ValueError("backup_interval must be positive.")
        if self.max_backups < 1:
            raise ValueError("max_backups must be at least 1.")
        if self.momentum_half_life <= 0:
            raise ValueError("momentum_half_life must be positive.")
        if self.max_contexts < 1:
            raise ValueError("max_contexts must be at least 1.")

    @classmethod
    def from_env(
        cls, env: Mapping[str, str] | None = None, **overrides: object
    ) -> ContextualConfig:
        """Build a config from ``CONTEXTUAL_*`` environment variables.

        Args:
            env: Mapping to read instead of ``os.environ``.
            **overrides: Field values that take precedence over the
                environment.

        Raises:
            ValueError: If a numeric variable does not parse.
        """
        if env is None:
            env = os.environ
        values: dict[str, object] = {
            "storage_path": env.get("CONTEXTUAL_PATH") or None,
            "encryption_enabled": _env_flag(env, "CONTEXTUAL_ENCRYPTION", True),
            "encryption_key": env.get("CONTEXTUAL_KEY") or None,
            "auto_backup": _env_flag(env, "CONTEXTUAL_AUTO_BACKUP", True),
            "backup_interval": _env_number(env, "CONTEXTUAL_BACKUP_INTERVAL", 300.0),
            "max_backups": _env_number(env, "CONTEXTUAL_MAX_BACKUPS", 10, int),
            "momentum_half_life": _env_number(env, "CONTEXTUAL_HALF_LIFE", 30.0),
            "max_contexts": _env_number(env, "CONTEXTUAL_MAX_CONTEXTS", 100, int),
        }
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]
