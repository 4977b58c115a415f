"""Tests for the out-of-band (email/SMS) OTP engine."""

from __future__ import annotations

import asyncio

import pytest

from cqrs_ddd_twofactor import (
    ConfigurationError,
    DeliveryFailedError,
    InMemoryCodeStore,
    ManualClock,
    Method,
    OtpMethodConfig,
    OtpStatus,
    OutOfBandOtpEngine,
    RecordKeys,
)


@pytest.fixture
def engine(
    store: InMemoryCodeStore,
    keys: RecordKeys,
    clock: ManualClock,
    fixed_random,
    delivery_hook,
) -> OutOfBandOtpEngine:
    return OutOfBandOtpEngine(
        Method.EMAIL,
        config=OtpMethodConfig(code_length=6, ttl_seconds=300, max_attempts=3),
        store=store,
        keys=keys,
        clock=clock,
        random=fixed_random,
        delivery_hook=delivery_hook,
    )


class TestGenerate:
    @pytest.mark.asyncio
    async def test_generate_returns_plaintext_once(
        self, engine: OutOfBandOtpEngine, clock: ManualClock
    ) -> None:
        issued = await engine.generate("U1")

        assert issued.code == "482193"
        assert issued.method is Method.EMAIL
        assert issued.expires_at.timestamp() == clock.now().timestamp() + 300

    @pytest.mark.asyncio
    async def test_plaintext_never_stored(
        self, engine: OutOfBandOtpEngine, store: InMemoryCodeStore, keys: RecordKeys
    ) -> None:
        await engine.generate("U1")

        record = await store.get(keys.challenge("U1", Method.EMAIL))
        assert record is not None
        assert "482193" not in str(record)
        assert record["attempts"] == 0

    @pytest.mark.asyncio
    async def test_codes_are_zero_padded(
        self, engine: OutOfBandOtpEngine, fixed_random
    ) -> None:
        fixed_random.code = 42

        issued = await engine.generate("U1")

        assert issued.code == "000042"

    def test_rejects_non_out_of_band_method(
        self, store: InMemoryCodeStore, keys: RecordKeys, clock: ManualClock, fixed_random
    ) -> None:
        with pytest.raises(ConfigurationError):
            OutOfBandOtpEngine(
                Method.TOTP,
                config=OtpMethodConfig(),
                store=store,
                keys=keys,
                clock=clock,
                random=fixed_random,
            )


class TestVerify:
    @pytest.mark.asyncio
    async def test_verified_just_before_expiry(
        self, engine: OutOfBandOtpEngine, clock: ManualClock
    ) -> None:
        await engine.generate("U1")
        clock.advance(299)

        assert await engine.verify("U1", "482193") is OtpStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_expired_just_after_expiry(
        self, engine: OutOfBandOtpEngine, clock: ManualClock
    ) -> None:
        await engine.generate("U1")
        clock.advance(301)

        assert await engine.verify("U1", "482193") is OtpStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_expired_challenge_is_deleted(
        self, engine: OutOfBandOtpEngine, clock: ManualClock
    ) -> None:
        await engine.generate("U1")
        clock.advance(301)
        await engine.verify("U1", "482193")

        assert await engine.verify("U1", "482193") is OtpStatus.FAILED

    @pytest.mark.asyncio
    async def test_code_is_single_use(self, engine: OutOfBandOtpEngine) -> None:
        await engine.generate("U1")

        assert await engine.verify("U1", "482193") is OtpStatus.VERIFIED
        assert await engine.verify("U1", "482193") is OtpStatus.FAILED

    @pytest.mark.asyncio
    async def test_no_challenge_fails(self, engine: OutOfBandOtpEngine) -> None:
        assert await engine.verify("U1", "482193") is OtpStatus.FAILED

    @pytest.mark.asyncio
    async def test_wrong_code_counts_attempt(
        self, engine: OutOfBandOtpEngine, store: InMemoryCodeStore, keys: RecordKeys
    ) -> None:
        await engine.generate("U1")

        assert await engine.verify("U1", "000000") is OtpStatus.FAILED
        record = await store.get(keys.challenge("U1", Method.EMAIL))
        assert record is not None
        assert record["attempts"] == 1

    @pytest.mark.asyncio
    async def test_max_attempts_voids_challenge(self, engine: OutOfBandOtpEngine) -> None:
        await engine.generate("U1")
        for _ in range(3):
            assert await engine.verify("U1", "000000") is OtpStatus.FAILED

        # Correct code is refused once the cap is reached
        assert await engine.verify("U1", "482193") is OtpStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_concurrent_wrong_codes_count_every_attempt(
        self,
        yielding_store: InMemoryCodeStore,
        keys: RecordKeys,
        clock: ManualClock,
        fixed_random,
    ) -> None:
        engine = OutOfBandOtpEngine(
            Method.EMAIL,
            config=OtpMethodConfig(max_attempts=3),
            store=yielding_store,
            keys=keys,
            clock=clock,
            random=fixed_random,
        )
        await engine.generate("U1")

        results = await asyncio.gather(
            *(engine.verify("U1", "000000") for _ in range(3))
        )

        assert results == [OtpStatus.FAILED] * 3
        record = await yielding_store.get(keys.challenge("U1", Method.EMAIL))
        assert record is not None
        assert record["attempts"] == 3
        assert await engine.verify("U1", "482193") is OtpStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_concurrent_wrong_codes_never_exceed_cap(
        self,
        yielding_store: InMemoryCodeStore,
        keys: RecordKeys,
        clock: ManualClock,
        fixed_random,
    ) -> None:
        engine = OutOfBandOtpEngine(
            Method.EMAIL,
            config=OtpMethodConfig(max_attempts=3),
            store=yielding_store,
            keys=keys,
            clock=clock,
            random=fixed_random,
        )
        await engine.generate("U1")

        results = await asyncio.gather(
            *(engine.verify("U1", "000000") for _ in range(6))
        )

        assert OtpStatus.VERIFIED not in results
        assert OtpStatus.EXPIRED in results
        assert await engine.verify("U1", "482193") is not OtpStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_new_code_replaces_old(
        self, engine: OutOfBandOtpEngine, fixed_random
    ) -> None:
        await engine.generate("U1")
        fixed_random.code = 111111
        await engine.generate("U1")

        assert await engine.verify("U1", "482193") is OtpStatus.FAILED
        assert await engine.verify("U1", "111111") is OtpStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_invalidate(self, engine: OutOfBandOtpEngine) -> None:
        await engine.generate("U1")
        await engine.invalidate("U1")

        assert await engine.verify("U1", "482193") is OtpStatus.FAILED

    @pytest.mark.asyncio
    async def test_seconds_since_issue(
        self, engine: OutOfBandOtpEngine, clock: ManualClock
    ) -> None:
        assert await engine.seconds_since_issue("U1") is None

        await engine.generate("U1")
        clock.advance(42)

        assert await engine.seconds_since_issue("U1") == 42
        assert await engine.live_expiry("U1") is not None


class TestSend:
    @pytest.mark.asyncio
    async def test_send_hands_code_to_hook(
        self, engine: OutOfBandOtpEngine, delivery_hook
    ) -> None:
        issued = await engine.send("U1", {"email": "u1@example.com"})

        assert delivery_hook.sent == [
            ("U1", Method.EMAIL, issued.code, {"email": "u1@example.com"})
        ]

    @pytest.mark.asyncio
    async def test_refused_delivery_discards_challenge(
        self, engine: OutOfBandOtpEngine, delivery_hook
    ) -> None:
        delivery_hook.accept = False

        with pytest.raises(DeliveryFailedError):
            await engine.send("U1")
        assert await engine.verify("U1", "482193") is OtpStatus.FAILED

    @pytest.mark.asyncio
    async def test_raising_hook_is_wrapped(
        self, engine: OutOfBandOtpEngine, failing_hook
    ) -> None:
        engine.delivery_hook = failing_hook

        with pytest.raises(DeliveryFailedError) as exc_info:
            await engine.send("U1")
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert await engine.seconds_since_issue("U1") is None

    @pytest.mark.asyncio
    async def test_send_without_hook(self, engine: OutOfBandOtpEngine) -> None:
        engine.delivery_hook = None

        with pytest.raises(ConfigurationError, match="delivery hook"):
            await engine.send("U1")
