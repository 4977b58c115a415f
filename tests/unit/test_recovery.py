"""Tests for the recovery codes engine."""

from __future__ import annotations

import asyncio

import pytest

from cqrs_ddd_twofactor import (
    InMemoryCodeStore,
    ManualClock,
    RecordKeys,
    RecoveryCodeConfig,
    RecoveryCodeEngine,
    RecoveryStatus,
    SecretsRandomSource,
)


@pytest.fixture
def engine(
    store: InMemoryCodeStore, keys: RecordKeys, clock: ManualClock
) -> RecoveryCodeEngine:
    return RecoveryCodeEngine(
        config=RecoveryCodeConfig(count=10, hash_rounds=4, regenerate_threshold=3),
        store=store,
        keys=keys,
        clock=clock,
        random=SecretsRandomSource(),
    )


class TestGenerateBatch:
    @pytest.mark.asyncio
    async def test_generates_configured_count(self, engine: RecoveryCodeEngine) -> None:
        codes = await engine.generate_batch("U1")

        assert len(codes) == 10
        assert len(set(codes)) == 10
        assert await engine.remaining("U1") == 10

    @pytest.mark.asyncio
    async def test_code_format(self, engine: RecoveryCodeEngine) -> None:
        codes = await engine.generate_batch("U1", count=3)

        for code in codes:
            first, second = code.split("-")
            assert len(first) == len(second) == 5
            assert not set(first + second) & set("0O1I")

    @pytest.mark.asyncio
    async def test_only_hashes_stored(
        self, engine: RecoveryCodeEngine, store: InMemoryCodeStore, keys: RecordKeys
    ) -> None:
        codes = await engine.generate_batch("U1", count=2)

        record = await store.get(keys.recovery("U1"))
        assert record is not None
        raw = str(record)
        for code in codes:
            assert code.replace("-", "") not in raw

    @pytest.mark.asyncio
    async def test_regeneration_invalidates_old_batch(
        self, engine: RecoveryCodeEngine
    ) -> None:
        old = await engine.generate_batch("U1", count=3)
        new = await engine.generate_batch("U1", count=3)

        for code in old:
            assert await engine.consume("U1", code) is RecoveryStatus.INVALID
        assert await engine.consume("U1", new[0]) is RecoveryStatus.VERIFIED


    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [0, -1])
    async def test_non_positive_count_rejected(
        self, engine: RecoveryCodeEngine, count: int
    ) -> None:
        with pytest.raises(ValueError):
            await engine.generate_batch("U1", count=count)

        assert await engine.remaining("U1") == 0


class TestConsume:
    @pytest.mark.asyncio
    async def test_consume_once(self, engine: RecoveryCodeEngine) -> None:
        codes = await engine.generate_batch("U1", count=2)

        assert await engine.consume("U1", codes[0]) is RecoveryStatus.VERIFIED
        assert await engine.consume("U1", codes[0]) is RecoveryStatus.ALREADY_USED
        assert await engine.remaining("U1") == 1

    @pytest.mark.asyncio
    async def test_input_is_normalized(self, engine: RecoveryCodeEngine) -> None:
        codes = await engine.generate_batch("U1", count=1)
        sloppy = " " + codes[0].lower().replace("-", " ") + " "

        assert await engine.consume("U1", sloppy) is RecoveryStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_unknown_code_is_invalid(self, engine: RecoveryCodeEngine) -> None:
        await engine.generate_batch("U1", count=2)

        assert await engine.consume("U1", "ZZZZZ-ZZZZZ") is RecoveryStatus.INVALID

    @pytest.mark.asyncio
    async def test_wrong_shape_is_invalid(self, engine: RecoveryCodeEngine) -> None:
        await engine.generate_batch("U1", count=2)

        assert await engine.consume("U1", "123") is RecoveryStatus.INVALID

    @pytest.mark.asyncio
    async def test_no_batch_is_invalid(self, engine: RecoveryCodeEngine) -> None:
        assert await engine.consume("U1", "ABCDE-FGHJK") is RecoveryStatus.INVALID

    @pytest.mark.asyncio
    async def test_codes_are_per_identity(self, engine: RecoveryCodeEngine) -> None:
        codes = await engine.generate_batch("U1", count=1)
        await engine.generate_batch("U2", count=1)

        assert await engine.consume("U2", codes[0]) is RecoveryStatus.INVALID

    @pytest.mark.asyncio
    async def test_concurrent_consume_exactly_once(
        self, engine: RecoveryCodeEngine
    ) -> None:
        codes = await engine.generate_batch("U1", count=2)

        results = await asyncio.gather(
            *(engine.consume("U1", codes[0]) for _ in range(5))
        )

        assert results.count(RecoveryStatus.VERIFIED) == 1
        assert results.count(RecoveryStatus.ALREADY_USED) == 4
        assert await engine.remaining("U1") == 1


class TestBookkeeping:
    @pytest.mark.asyncio
    async def test_has_codes_and_revoke(self, engine: RecoveryCodeEngine) -> None:
        assert not await engine.has_codes("U1")

        await engine.generate_batch("U1", count=1)
        assert await engine.has_codes("U1")

        await engine.revoke("U1")
        assert not await engine.has_codes("U1")
        assert await engine.remaining("U1") == 0

    @pytest.mark.asyncio
    async def test_needs_regeneration_at_threshold(
        self, engine: RecoveryCodeEngine
    ) -> None:
        assert not await engine.needs_regeneration("U1")

        codes = await engine.generate_batch("U1", count=4)
        assert not await engine.needs_regeneration("U1")

        await engine.consume("U1", codes[0])
        assert await engine.needs_regeneration("U1")

    def test_looks_like_recovery_code(self, engine: RecoveryCodeEngine) -> None:
        assert engine.looks_like_recovery_code("ABCDE-FGHJK")
        assert engine.looks_like_recovery_code("abcde fghjk")
        assert not engine.looks_like_recovery_code("123456")
