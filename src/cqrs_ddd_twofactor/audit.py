"""Audit events for two-factor operations.

Events never carry codes, secrets or tokens. Hosts persist them through an
``IAuditSink``; ``InMemoryAuditSink`` is provided for tests and development.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .ports import IAuditSink


class TwoFactorEventType(Enum):
    """Types of two-factor audit events.

    Event naming follows the pattern: `twofactor.<area>.<action>`
    """

    # Setup events
    SETUP_STARTED = "twofactor.setup.started"
    SETUP_CONFIRMED = "twofactor.setup.confirmed"
    SETUP_FAILED = "twofactor.setup.failed"
    METHOD_DISABLED = "twofactor.method.disabled"

    # Login events
    CHALLENGE_ISSUED = "twofactor.challenge.issued"
    VERIFY_SUCCEEDED = "twofactor.verify.succeeded"
    VERIFY_FAILED = "twofactor.verify.failed"
    VERIFY_EXPIRED = "twofactor.verify.expired"
    RATE_LIMITED = "twofactor.ratelimit.hit"

    # Recovery code events
    RECOVERY_USED = "twofactor.recovery.used"
    RECOVERY_FAILED = "twofactor.recovery.failed"
    RECOVERY_REGENERATED = "twofactor.recovery.regenerated"

    # Device events
    DEVICE_TRUSTED = "twofactor.device.trusted"
    DEVICE_REVOKED = "twofactor.device.revoked"

    # Delivery events
    DELIVERY_FAILED = "twofactor.delivery.failed"


@dataclass(frozen=True)
class TwoFactorAuditEvent:
    """Two-factor audit event.

    Attributes:
        event_type: The type of event.
        identity: Host user reference.
        method: Method involved, if any.
        timestamp: When the event occurred (UTC).
        success: Whether the operation succeeded.
        reason: Machine-readable outcome detail for failures.
        metadata: Additional event-specific data.
    """

    event_type: TwoFactorEventType
    identity: str
    method: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    success: bool = True
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.success and not self.reason:
            object.__setattr__(self, "reason", "unknown")

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for serialization."""
        return {
            "event_type": self.event_type.value,
            "identity": self.identity,
            "method": self.method,
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "reason": self.reason,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TwoFactorAuditEvent:
        """Create event from dictionary.

        Raises:
            ValueError: If required fields are missing or invalid.
        """
        event_type_str = data.get("event_type")
        if event_type_str is None:
            raise ValueError("Missing required 'event_type'")
        identity = data.get("identity")
        if identity is None:
            raise ValueError("Missing required 'identity'")

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
            identity=identity,
            method=data.get("method"),
            timestamp=timestamp,
            success=data.get("success", True),
            reason=data.get("reason"),
            metadata=data.get("metadata", {}),
        )


# ═══════════════════════════════════════════════════════════════
# EVENT FACTORY FUNCTIONS
# ═══════════════════════════════════════════════════════════════


def setup_confirmed_event(
    identity: str,
    method: str,
    *,
    timestamp: datetime | None = None,
    recovery_codes_issued: int = 0,
) -> TwoFactorAuditEvent:
    """Create a method enabled event."""
    return TwoFactorAuditEvent(
        event_type=TwoFactorEventType.SETUP_CONFIRMED,
        identity=identity,
        method=method,
        timestamp=timestamp or datetime.now(timezone.utc),
        metadata={"recovery_codes_issued": recovery_codes_issued},
    )


def verification_event(
    identity: str,
    method: str,
    *,
    status: str,
    reason: str | None = None,
    timestamp: datetime | None = None,
    metadata: dict[str, Any] | None = None,
) -> TwoFactorAuditEvent:
    """Create an event for a verification outcome.

    Args:
        identity: Host user reference.
        method: Method verified.
        status: ``verified``, ``failed``, ``expired`` or ``rate_limited``.
        reason: Failure detail (kept internal, e.g. ``already_used``).
        timestamp: Event time (defaults to now).
        metadata: Extra event data.
    """
    event_type = {
        "verified": TwoFactorEventType.VERIFY_SUCCEEDED,
        "expired": TwoFactorEventType.VERIFY_EXPIRED,
        "rate_limited": TwoFactorEventType.RATE_LIMITED,
    }.get(status, TwoFactorEventType.VERIFY_FAILED)
    success = event_type is TwoFactorEventType.VERIFY_SUCCEEDED
    return TwoFactorAuditEvent(
        event_type=event_type,
        identity=identity,
        method=method,
        timestamp=timestamp or datetime.now(timezone.utc),
        success=success,
        reason=None if success else (reason or status),
        metadata=metadata or {},
    )


def recovery_event(
    identity: str,
    *,
    outcome: str,
    remaining: int | None = None,
    timestamp: datetime | None = None,
) -> TwoFactorAuditEvent:
    """Create a recovery code consumption event.

    ``outcome`` keeps the internal distinction between ``already_used``
    and ``invalid`` that the caller-facing result hides.
    """
    success = outcome == "verified"
    meta: dict[str, Any] = {}
    if remaining is not None:
        meta["remaining"] = remaining
    return TwoFactorAuditEvent(
        event_type=(
            TwoFactorEventType.RECOVERY_USED
            if success
            else TwoFactorEventType.RECOVERY_FAILED
        ),
        identity=identity,
        method="recovery",
        timestamp=timestamp or datetime.now(timezone.utc),
        success=success,
        reason=None if success else outcome,
        metadata=meta,
    )


def method_event(
    event_type: TwoFactorEventType,
    identity: str,
    method: str | None = None,
    *,
    success: bool = True,
    reason: str | None = None,
    timestamp: datetime | None = None,
    metadata: dict[str, Any] | None = None,
) -> TwoFactorAuditEvent:
    """Create any other event (setup start, disable, device, delivery)."""
    return TwoFactorAuditEvent(
        event_type=event_type,
        identity=identity,
        method=method,
        timestamp=timestamp or datetime.now(timezone.utc),
        success=success,
        reason=reason,
        metadata=metadata or {},
    )


class InMemoryAuditSink(IAuditSink):
    """In-memory implementation of IAuditSink.

    Note:
        Events are stored in memory and will be lost on restart.
        Not suitable for production use.

    Example:
        ```python
        sink = InMemoryAuditSink()
        manager = TwoFactorManager(config, store, audit_sink=sink)
        ...
        failures = sink.get_events("user-123", event_types=[
            TwoFactorEventType.VERIFY_FAILED,
        ])
        ```
    """

    def __init__(self) -> None:
        self._events: list[TwoFactorAuditEvent] = []
        self._by_identity: dict[str, list[int]] = defaultdict(list)

    async def record(self, event: TwoFactorAuditEvent) -> None:
        index = len(self._events)
        self._events.append(event)
        self._by_identity[event.identity].append(index)

    def get_events(
        self,
        identity: str,
        *,
        event_types: list[TwoFactorEventType] | None = None,
        limit: int = 100,
    ) -> list[TwoFactorAuditEvent]:
        """Get events for an identity, most recent first."""
        results: list[TwoFactorAuditEvent] = []
        for idx in reversed(self._by_identity.get(identity, [])):
            event = self._events[idx]
            if event_types and event.event_type not in event_types:
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    @property
    def events(self) -> list[TwoFactorAuditEvent]:
        """All events in recording order."""
        return list(self._events)

    def count_by_type(self, event_type: TwoFactorEventType) -> int:
        return sum(1 for e in self._events if e.event_type is event_type)

    def clear(self) -> None:
        """Clear all stored events.

        Useful for test cleanup.
        """
        self._events.clear()
        self._by_identity.clear()


__all__: list[str] = [
    "TwoFactorEventType",
    "TwoFactorAuditEvent",
    "setup_confirmed_event",
    "verification_event",
    "recovery_event",
    "method_event",
    "InMemoryAuditSink",
]
