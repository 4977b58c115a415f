"""Tests for two-factor audit events and the in-memory sink."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from cqrs_ddd_twofactor import (
    IAuditSink,
    InMemoryAuditSink,
    TwoFactorAuditEvent,
    TwoFactorEventType,
    method_event,
    recovery_event,
    setup_confirmed_event,
    verification_event,
)


class TestTwoFactorAuditEvent:
    def test_event_names_follow_pattern(self) -> None:
        for event_type in TwoFactorEventType:
            assert event_type.value.startswith("twofactor.")
            assert event_type.value.count(".") == 2

    def test_failure_gets_default_reason(self) -> None:
        event = TwoFactorAuditEvent(
            event_type=TwoFactorEventType.VERIFY_FAILED, identity="U1", success=False
        )

        assert event.reason == "unknown"

    def test_to_dict_from_dict(self) -> None:
        at = datetime(2024, 6, 9, 12, 0, tzinfo=timezone.utc)
        event = verification_event(
            "U1", "totp", status="failed", reason="replayed", timestamp=at
        )

        restored = TwoFactorAuditEvent.from_dict(event.to_dict())

        assert restored == event
        assert event.to_dict()["event_type"] == "twofactor.verify.failed"

    def test_from_dict_naive_timestamp_is_utc(self) -> None:
        event = TwoFactorAuditEvent.from_dict(
            {
                "event_type": "twofactor.device.trusted",
                "identity": "U1",
                "timestamp": "2024-06-09T12:00:00",
            }
        )

        assert event.timestamp.tzinfo == timezone.utc

    @pytest.mark.parametrize(
        "data",
        [
            {"identity": "U1"},
            {"event_type": "twofactor.verify.failed"},
            {"event_type": "auth.login.success", "identity": "U1"},
        ],
    )
    def test_from_dict_rejects_bad_data(self, data: dict) -> None:
        with pytest.raises(ValueError):
            TwoFactorAuditEvent.from_dict(data)


class TestFactories:
    @pytest.mark.parametrize(
        ("status", "event_type", "success"),
        [
            ("verified", TwoFactorEventType.VERIFY_SUCCEEDED, True),
            ("failed", TwoFactorEventType.VERIFY_FAILED, False),
            ("expired", TwoFactorEventType.VERIFY_EXPIRED, False),
            ("rate_limited", TwoFactorEventType.RATE_LIMITED, False),
        ],
    )
    def test_verification_event(
        self, status: str, event_type: TwoFactorEventType, success: bool
    ) -> None:
        event = verification_event("U1", "email", status=status)

        assert event.event_type is event_type
        assert event.success is success
        assert (event.reason is None) is success

    def test_recovery_event_keeps_internal_outcome(self) -> None:
        used = recovery_event("U1", outcome="already_used", remaining=4)

        assert used.event_type is TwoFactorEventType.RECOVERY_FAILED
        assert used.reason == "already_used"
        assert used.metadata == {"remaining": 4}

    def test_setup_confirmed_event(self) -> None:
        event = setup_confirmed_event("U1", "totp", recovery_codes_issued=10)

        assert event.method == "totp"
        assert event.metadata["recovery_codes_issued"] == 10


class TestInMemoryAuditSink:
    def test_implements_protocol(self) -> None:
        assert isinstance(InMemoryAuditSink(), IAuditSink)

    @pytest.mark.asyncio
    async def test_record_and_query(self) -> None:
        sink = InMemoryAuditSink()
        await sink.record(method_event(TwoFactorEventType.SETUP_STARTED, "U1", "totp"))
        await sink.record(verification_event("U1", "totp", status="failed"))
        await sink.record(verification_event("U2", "totp", status="verified"))

        events = sink.get_events("U1")
        assert [e.event_type for e in events] == [
            TwoFactorEventType.VERIFY_FAILED,
            TwoFactorEventType.SETUP_STARTED,
        ]
        assert sink.get_events(
            "U1", event_types=[TwoFactorEventType.SETUP_STARTED]
        ) == [events[1]]
        assert sink.count_by_type(TwoFactorEventType.VERIFY_SUCCEEDED) == 1

        sink.clear()
        assert sink.events == []
