"""Time and randomness sources.

Both are injected into every engine so tests can pin time and draw
predictable values.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Source of the current UTC time."""

    def now(self) -> datetime:
        """Return a timezone-aware UTC datetime."""
        ...


@runtime_checkable
class RandomSource(Protocol):
    """Cryptographically secure randomness."""

    def token_bytes(self, nbytes: int) -> bytes: ...

    def token_urlsafe(self, nbytes: int) -> str: ...

    def randbelow(self, upper: int) -> int: ...

    def choice(self, alphabet: str) -> str: ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SecretsRandomSource(RandomSource):
    """RandomSource backed by the ``secrets`` module."""

    def token_bytes(self, nbytes: int) -> bytes:
        return secrets.token_bytes(nbytes)

    def token_urlsafe(self, nbytes: int) -> str:
        return secrets.token_urlsafe(nbytes)

    def randbelow(self, upper: int) -> int:
        return secrets.randbelow(upper)

    def choice(self, alphabet: str) -> str:
        return secrets.choice(alphabet)


class ManualClock(Clock):
    """Clock that only moves when told to. For tests.

    Example:
        ```python
        clock = ManualClock(datetime(2024, 6, 9, tzinfo=timezone.utc))
        clock.advance(seconds=301)
        ```
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 6, 9, 12, 0, 0, tzinfo=timezone.utc)
        if self._now.tzinfo is None:
            self._now = self._now.replace(tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, seconds: float = 0.0) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now


def from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


__all__: list[str] = [
    "Clock",
    "RandomSource",
    "SystemClock",
    "SecretsRandomSource",
    "ManualClock",
    "from_timestamp",
]
