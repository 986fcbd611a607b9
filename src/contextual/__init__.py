"""Contextual -- carry conversational context across AI chat platforms.

Tracks context objects as you switch between chat platforms, scores how
"live" each one still is, keeps them encrypted on disk with rotating
backups, and picks (and expands) the best of several candidate answers.

Quick start::

    from contextual import Contextual

    with Contextual() as ctx:
        first = ctx.create_context("chatgpt", {"task": "research"})
        ctx.transition(first)
        ctx.update_state({"confidence": 0.8})

Contexts are stored under ``~/.contextual`` by default.  No external
server is needed.
"""

from __future__ import annotations

__version__ = "1.0.0"

from .bridge import ContextBridge, NoActiveContextError, RegistryFullError
from .config import ContextualConfig
from .context import Context, TransitionRecord
from .core import Contextual
from .encryption import DecryptionError, decrypt_payload, derive_key, encrypt_payload, generate_key
from .housekeeper import AIHousekeeper, Amplification, AnswerScore, AnswerWeights, FilterResult
from .momentum import MomentumEngine, MomentumVector, MomentumWeights
from .platforms import PLATFORMS, normalize_conversation, normalize_message
from .vault import StateVault

__all__ = [
    # Core
    "Contextual",
    "ContextualConfig",
    # Data model
    "Context",
    "TransitionRecord",
    # Bridge
    "ContextBridge",
    "NoActiveContextError",
    "RegistryFullError",
    # Momentum
    "MomentumEngine",
    "MomentumVector",
    "MomentumWeights",
    # Vault and encryption
    "StateVault",
    "DecryptionError",
    "decrypt_payload",
    "derive_key",
    "encrypt_payload",
    "generate_key",
    # Housekeeper
    "AIHousekeeper",
    "Amplification",
    "AnswerScore",
    "AnswerWeights",
    "FilterResult",
    # Platforms
    "PLATFORMS",
    "normalize_conversation",
    "normalize_message",
    # Metadata
    "__version__",
]
