"""Known chat platforms and conversation normalisation.

Each platform exports messages in its own shape.  :func:`normalize_conversation`
maps them onto one ``{role, content, timestamp}`` form so that contexts
can be bridged between platforms.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any

# Display names of the platforms the bridge knows how to connect.
PLATFORMS: dict[str, str] = {
    "chatgpt": "ChatGPT",
    "claude": "Claude",
    "perplexity": "Perplexity",
    "gemini": "Gemini",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _gemini_text(msg: Mapping[str, Any]) -> str:
    parts = msg.get("parts") or []
    if parts and isinstance(parts[0], Mapping):
        return parts[0].get("text") or ""
    return ""


# platform -> (role field, content getter, timestamp field)
_MESSAGE_SHAPES: dict[str, tuple[str, Callable[[Mapping[str, Any]], str], str]] = {
    "chatgpt": ("role", lambda m: m.get("content") or "", "create_time"),
    "claude": ("sender", lambda m: m.get("text") or "", "created_at"),
    "perplexity": ("author", lambda m: m.get("text") or "", "timestamp"),
    "gemini": ("role", _gemini_text, "timestamp"),
}


def normalize_message(msg: Mapping[str, Any], platform: str | None) -> dict[str, Any]:
    """Normalise one platform message.

    Messages from unknown platforms are returned unchanged (as a copy).
    """
    shape = _MESSAGE_SHAPES.get(platform or "")
    if shape is None:
        return dict(msg)
    role_field, content_of, time_field = shape
    return {
        "role": msg.get(role_field) or "user",
        "content": content_of(msg),
        "timestamp": msg.get(time_field) or _now_iso(),
    }


def normalize_conversation(data: Mapping[str, Any], platform: str | None) -> dict[str, Any]:
    """Normalise a platform conversation export.

    Args:
        data: Raw export with a ``messages`` list and optional ``id`` and
            ``timestamp``.
        platform: Source platform identifier.

    Returns:
        A dict with ``id``, ``platform``, ``timestamp``, ``messages`` and
        ``metadata`` keys.
    """
    return {
        "id": data.get("id") or uuid.uuid4().hex,
        "platform": platform,
        "timestamp": data.get("timestamp") or _now_iso(),
        "messages": [normalize_message(m, platform) for m in data.get("messages") or []],
        "metadata": {},
    }
