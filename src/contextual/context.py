"""Context data model for CONTEXTUAL.

Defines the :class:`Context` dataclass that represents one unit of
conversational state tied to an external application, and the immutable
:class:`TransitionRecord` written to the transition ledger.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    """Generate a new unique context identifier."""
    return uuid.uuid4().hex


def _parse_datetime(value: Any) -> datetime:
    """Accept an ISO-8601 string or datetime and return an aware datetime."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if not isinstance(value, datetime):
        raise ValueError(f"Expected an ISO-8601 timestamp, got {value!r}.")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class TransitionRecord:
    """One switch of the active context.

    Records are created only by :meth:`ContextBridge.transition` and are
    never modified afterwards.

    Attributes:
        to_id: Identifier of the context that became active.
        from_id: Identifier of the previously active context, or ``None``
            when nothing was active.
        transferred: Whether state was carried over from the previous
            context.
        reason: Optional free-form reason supplied by the caller.
        timestamp: When the switch happened (UTC).
    """

    to_id: str
    from_id: str | None = None
    transferred: bool = False
    reason: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    def involves(self, context_id: str) -> bool:
        """Return ``True`` if *context_id* is the source or target."""
        return context_id in (self.from_id, self.to_id)

    def to_dict(self) -> dict[str, Any]:
        """Serialise using the ledger's wire names (``from`` / ``to``)."""
        data: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "from": self.from_id,
            "to": self.to_id,
            "transferred": self.transferred,
        }
        if self.reason is not None:
            data["reason"] = self.reason
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransitionRecord:
        """Reconstruct a record from :meth:`to_dict` output."""
        return cls(
            to_id=data["to"],
            from_id=data.get("from"),
            transferred=bool(data.get("transferred", False)),
            reason=data.get("reason"),
            timestamp=_parse_datetime(data["timestamp"]),
        )


@dataclass
class Context:
    """A unit of conversational state owned by one external application.

    Attributes:
        app_id: Identifier of the owning application or platform.
        state: Free-form payload.  Updated in place by shallow merges.
        id: Unique identifier (hex UUID). Auto-generated if not provided.
        last_access: Timestamp of the most recent read or mutation (UTC).
        access_count: Number of times the context has been accessed.
        transitions: Ledger records in which this context is the source
            or the target, oldest first.
    """

    app_id: str
    state: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    last_access: datetime = field(default_factory=_utcnow)
    access_count: int = 0
    transitions: list[TransitionRecord] = field(default_factory=list)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def __post_init__(self) -> None:
        """Validate field values after initialisation."""
        if not self.app_id:
            raise ValueError("Context app_id must not be empty.")
        if not isinstance(self.state, dict):
            raise ValueError("Context state must be a mapping.")
        self.access_count = max(0, int(self.access_count))

    # ------------------------------------------------------------------
    # Mutation helpers
    # ------------------------------------------------------------------

    def touch(self, now: datetime | None = None) -> None:
        """Record an access: refresh ``last_access`` and bump the counter."""
        self.last_access = now or _utcnow()
        self.access_count += 1

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialise the context to a JSON-safe dictionary.

        Returns:
            A dictionary with ISO-8601 timestamps and transition records
            expanded via :meth:`TransitionRecord.to_dict`.
        """
        return {
            "id": self.id,
            "app_id": self.app_id,
            "state": self.state,
            "last_access": self.last_access.isoformat(),
            "access_count": self.access_count,
            "transitions": [t.to_dict() for t in self.transitions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Context:
        """Reconstruct a Context from a dictionary.

        Args:
            data: Output of :meth:`to_dict` (for example a decrypted
                vault payload).

        Returns:
            A new :class:`Context` instance.

        Raises:
            ValueError: If required fields are missing or malformed.
        """
        if "id" not in data or "app_id" not in data:
            raise ValueError("Context payload must contain 'id' and 'app_id'.")
        return cls(
            id=data["id"],
            app_id=data["app_id"],
            state=dict(data.get("state") or {}),
            last_access=_parse_datetime(data.get("last_access") or _utcnow()),
            access_count=data.get("access_count", 0),
            transitions=[TransitionRecord.from_dict(t) for t in data.get("transitions", [])],
        )

    def to_json(self) -> str:
        """Serialise the context to a compact JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, raw: str) -> Context:
        """Reconstruct a Context from a JSON string produced by :meth:`to_json`."""
        return cls.from_dict(json.loads(raw))

    def copy(self) -> Context:
        """Return an independent deep copy via the JSON round-trip."""
        return Context.from_json(self.to_json())

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"Context(id={self.id!r}, app_id={self.app_id!r}, "
            f"keys={sorted(self.state)!r}, access_count={self.access_count})"
        )
