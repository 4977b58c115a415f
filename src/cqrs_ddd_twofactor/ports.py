"""Two-factor ports (protocols).

The engine owns none of persistence, delivery or audit storage. Hosts plug
them in through these interfaces.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .audit import TwoFactorAuditEvent
    from .models import Method


@runtime_checkable
class ICodeStore(Protocol):
    """Key-value store holding secrets, challenges, codes and counters.

    Values are JSON-compatible dicts. ``compare_and_swap`` is the only
    primitive the engine relies on for concurrency safety, so it MUST be
    atomic across every process sharing the store.

    Implementations raise ``StorageError`` when the backend is unavailable.
    """

    async def get(self, key: str) -> dict[str, Any] | None:
        """Read a record.

        Args:
            key: Record key.

        Returns:
            The stored record, or None if absent or expired.
        """
        ...

    async def put(
        self, key: str, value: dict[str, Any], ttl: int | None = None
    ) -> None:
        """Write a record unconditionally.

        Args:
            key: Record key.
            value: JSON-compatible record.
            ttl: Time-to-live in seconds (optional).
        """
        ...

    async def delete(self, key: str) -> None:
        """Delete a record. Deleting a missing key is not an error."""
        ...

    async def compare_and_swap(
        self,
        key: str,
        expected: dict[str, Any] | None,
        new: dict[str, Any] | None,
        ttl: int | None = None,
    ) -> bool:
        """Replace a record only if it still equals ``expected``.

        Args:
            key: Record key.
            expected: Value previously read, or None to require absence.
            new: Replacement value, or None to delete.
            ttl: Time-to-live in seconds for the new value (optional).

        Returns:
            True if the write happened, False if the record changed meanwhile.
        """
        ...


@runtime_checkable
class IDeliveryHook(Protocol):
    """Protocol for out-of-band code delivery.

    Applications implement this to send codes via email or SMS. The engine
    does NOT render templates or talk to providers; it hands over the
    plaintext code and forgets it.
    """

    async def send(
        self,
        identity: str,
        method: Method,
        code: str,
        context: dict[str, Any],
    ) -> bool:
        """Deliver a code.

        Args:
            identity: Host user reference.
            method: ``Method.EMAIL`` or ``Method.SMS``.
            code: Plaintext code.
            context: Delivery hints given at setup (address, phone, locale).

        Returns:
            True if the provider accepted the message.
        """
        ...


@runtime_checkable
class IAuditSink(Protocol):
    """Protocol for two-factor audit event storage."""

    async def record(self, event: TwoFactorAuditEvent) -> None:
        """Record an audit event.

        Args:
            event: The audit event to record.
        """
        ...


__all__: list[str] = [
    "ICodeStore",
    "IDeliveryHook",
    "IAuditSink",
]
