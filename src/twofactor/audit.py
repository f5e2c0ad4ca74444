"""Audit events for two-factor operations.

Events follow the ``twofactor.<resource>.<action>`` naming pattern and are
recorded by the orchestrator for every state transition and every
verification outcome.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .ports import ITwoFactorAuditStore


class TwoFactorEventType(Enum):
    """Types of two-factor audit events."""

    SETUP_STARTED = "twofactor.setup.started"
    ENABLED = "twofactor.enabled"
    DISABLED = "twofactor.disabled"
    VERIFIED = "twofactor.verified"
    FAILED = "twofactor.failed"
    LOCKED = "twofactor.locked"
    CODE_SENT = "twofactor.code.sent"
    CODE_DELIVERY_FAILED = "twofactor.code.delivery_failed"
    BACKUP_CODES_GENERATED = "twofactor.backup.generated"
    BACKUP_CODE_USED = "twofactor.backup.used"
    DEVICE_REMEMBERED = "twofactor.device.remembered"
    DEVICE_TRUSTED = "twofactor.device.trusted"
    POLICY_UPDATED = "twofactor.policy.updated"
    SECRETS_ROTATED = "twofactor.secrets.rotated"
    ADMIN_RESET = "twofactor.admin.reset"


@dataclass(frozen=True)
class TwoFactorAuditEvent:
    """Two-factor audit event.

    Never carries secret material: no codes, seeds or tokens.

    Attributes:
        event_type: What happened.
        user_id: Affected account (None for policy events).
        method: Two-factor method involved, if any.
        timestamp: When the event occurred (UTC).
        success: Whether the operation succeeded.
        error_code: Error code when it failed.
        metadata: Additional event-specific data.
    """

    event_type: TwoFactorEventType
    user_id: str | None = None
    method: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    success: bool = True
    error_code: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.success and not self.error_code:
            object.__setattr__(self, "error_code", "UNKNOWN_ERROR")

    def to_dict(self) -> dict[str, Any]:
        """Convert event to a JSON-serializable dictionary."""
        return {
            "event_type": self.event_type.value,
            "user_id": self.user_id,
            "method": self.method,
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "error_code": self.error_code,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TwoFactorAuditEvent:
        """Create event from dictionary.

        Raises:
            ValueError: If ``event_type`` is missing or unknown.
        """
        event_type_str = data.get("event_type")
        if event_type_str is None:
            raise ValueError("Missing required 'event_type'")

        try:
            event_type = TwoFactorEventType(event_type_str)
        except ValueError as e:
            raise ValueError(f"Invalid event_type: {event_type_str}") from e

        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
            if timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=timezone.utc)
        elif timestamp is None:
            timestamp = datetime.now(timezone.utc)

        return cls(
            event_type=event_type,
            user_id=data.get("user_id"),
            method=data.get("method"),
            timestamp=timestamp,
            success=data.get("success", True),
            error_code=data.get("error_code"),
            metadata=data.get("metadata", {}),
        )


class InMemoryTwoFactorAuditStore(ITwoFactorAuditStore):
    """In-memory audit store for testing and development.

    Events are lost on restart. Not suitable for production use.
    """

    def __init__(self) -> None:
        self._events: list[TwoFactorAuditEvent] = []
        self._by_user: dict[str, list[int]] = defaultdict(list)

    async def record(self, event: TwoFactorAuditEvent) -> None:
        index = len(self._events)
        self._events.append(event)
        if event.user_id:
            self._by_user[event.user_id].append(index)

    async def get_events(
        self,
        user_id: str,
        *,
        event_types: list[TwoFactorEventType] | None = None,
        limit: int = 100,
    ) -> list[TwoFactorAuditEvent]:
        results: list[TwoFactorAuditEvent] = []
        for idx in reversed(self._by_user.get(user_id, [])):  # Most recent first
            event = self._events[idx]
            if event_types and event.event_type not in event_types:
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    def all_events(self) -> list[TwoFactorAuditEvent]:
        """Every recorded event in insertion order."""
        return list(self._events)

    def clear(self) -> None:
        """Clear all stored events."""
        self._events.clear()
        self._by_user.clear()

    def count(self) -> int:
        return len(self._events)


__all__: list[str] = [
    "TwoFactorEventType",
    "TwoFactorAuditEvent",
    "InMemoryTwoFactorAuditStore",
]
