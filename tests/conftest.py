"""Test configuration and fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any

import pytest

from cqrs_ddd_twofactor import (
    InMemoryAuditSink,
    InMemoryCodeStore,
    ManualClock,
    Method,
    RecordKeys,
    RecoveryCodeConfig,
    SecretsRandomSource,
    TwoFactorConfig,
    TwoFactorManager,
)


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests that require external services",
    )


class FixedCodeRandom(SecretsRandomSource):
    """Random source whose numeric codes are predictable."""

    def __init__(self, code: int = 482193) -> None:
        self.code = code

    def randbelow(self, upper: int) -> int:
        return self.code % upper


class RecordingDeliveryHook:
    """Delivery hook that remembers every code it was handed."""

    def __init__(self, accept: bool = True) -> None:
        self.accept = accept
        self.sent: list[tuple[str, Method, str, dict[str, Any]]] = []

    async def send(
        self, identity: str, method: Method, code: str, context: dict[str, Any]
    ) -> bool:
        self.sent.append((identity, method, code, context))
        return self.accept

    @property
    def last_code(self) -> str:
        return self.sent[-1][2]


class YieldingCodeStore(InMemoryCodeStore):
    """In-memory store that hands control back to the loop on every read.

    Lets `asyncio.gather` interleave read-modify-write cycles. An optional
    `after_read` callback runs once, right after the next read of its key.
    """

    def __init__(self, clock: ManualClock) -> None:
        super().__init__(clock=clock)
        self._after_read: tuple[str, Callable[[], Awaitable[Any]]] | None = None
        self.interleaved: Any = None

    def after_read(self, key: str, callback: Callable[[], Awaitable[Any]]) -> None:
        self._after_read = (key, callback)

    async def get(self, key: str) -> dict[str, Any] | None:
        record = await super().get(key)
        await asyncio.sleep(0)
        if self._after_read is not None and self._after_read[0] == key:
            _, callback = self._after_read
            self._after_read = None
            self.interleaved = await callback()
        return record


class FailingDeliveryHook:
    async def send(
        self, identity: str, method: Method, code: str, context: dict[str, Any]
    ) -> bool:
        raise ConnectionError("smtp down")


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store(clock: ManualClock) -> InMemoryCodeStore:
    return InMemoryCodeStore(clock=clock)


@pytest.fixture
def keys() -> RecordKeys:
    return RecordKeys("test")


@pytest.fixture
def delivery_hook() -> RecordingDeliveryHook:
    return RecordingDeliveryHook()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def config() -> TwoFactorConfig:
    """Default config with cheap bcrypt and SMS switched on."""
    return replace(
        TwoFactorConfig(),
        enabled_methods=frozenset({Method.TOTP, Method.EMAIL, Method.SMS}),
        recovery_codes=RecoveryCodeConfig(hash_rounds=4),
    )


@pytest.fixture
def manager(
    config: TwoFactorConfig,
    store: InMemoryCodeStore,
    clock: ManualClock,
    delivery_hook: RecordingDeliveryHook,
    audit_sink: InMemoryAuditSink,
) -> TwoFactorManager:
    return TwoFactorManager(
        config,
        store,
        delivery_hook=delivery_hook,
        audit_sink=audit_sink,
        clock=clock,
    )


@pytest.fixture
def fixed_random() -> FixedCodeRandom:
    return FixedCodeRandom()


@pytest.fixture
def failing_hook() -> FailingDeliveryHook:
    return FailingDeliveryHook()


@pytest.fixture
def yielding_store(clock: ManualClock) -> YieldingCodeStore:
    return YieldingCodeStore(clock)
