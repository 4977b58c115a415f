"""Unit tests for two-factor metrics."""

from __future__ import annotations

from unittest.mock import MagicMock, call, patch

import pytest

from cqrs_ddd_twofactor import Method, TwoFactorManager
from cqrs_ddd_twofactor import metrics as metrics_mod
from cqrs_ddd_twofactor.audit import verification_event
from cqrs_ddd_twofactor.metrics import TwoFactorMetrics


@pytest.fixture
def fresh_registry():
    registry = metrics_mod._registry
    saved = (registry._initialized, registry._histogram, registry._counter)
    registry._initialized = False
    registry._histogram = None
    registry._counter = None
    yield registry
    registry._initialized, registry._histogram, registry._counter = saved


class TestTwoFactorMetrics:
    def test_operation_records_success(self, fresh_registry) -> None:
        counter = MagicMock()
        histogram = MagicMock()
        with (
            patch("prometheus_client.Counter", return_value=counter),
            patch("prometheus_client.Histogram", return_value=histogram),
        ):
            with TwoFactorMetrics.operation("verify", method="totp"):
                pass

        counter.labels.assert_called_once_with(
            method="totp", operation="verify", result="success"
        )
        histogram.labels.assert_called_once_with(method="totp", operation="verify")

    def test_operation_records_error_and_reraises(self, fresh_registry) -> None:
        counter = MagicMock()
        with (
            patch("prometheus_client.Counter", return_value=counter),
            patch("prometheus_client.Histogram", MagicMock()),
        ):
            with pytest.raises(RuntimeError):
                with TwoFactorMetrics.operation("challenge", method="sms"):
                    raise RuntimeError("boom")

        counter.labels.assert_called_once_with(
            method="sms", operation="challenge", result="error"
        )

    def test_operation_records_outcome_label(self, fresh_registry) -> None:
        counter = MagicMock()
        with (
            patch("prometheus_client.Counter", return_value=counter),
            patch("prometheus_client.Histogram", MagicMock()),
        ):
            with TwoFactorMetrics.operation("verify", method="email") as outcome:
                outcome.result = "rate_limited"

        counter.labels.assert_called_once_with(
            method="email", operation="verify", result="rate_limited"
        )

    @pytest.mark.asyncio
    async def test_failed_verification_is_not_counted_as_success(
        self, fresh_registry, manager: TwoFactorManager
    ) -> None:
        counter = MagicMock()
        with (
            patch("prometheus_client.Counter", return_value=counter),
            patch("prometheus_client.Histogram", MagicMock()),
        ):
            await manager.verify("U1", Method.TOTP, "123456")

        counter.labels.assert_any_call(
            method="totp", operation="verify", result="failed"
        )
        assert (
            call(method="totp", operation="verify", result="success")
            not in counter.labels.call_args_list
        )

    def test_record_event(self, fresh_registry) -> None:
        counter = MagicMock()
        with (
            patch("prometheus_client.Counter", return_value=counter),
            patch("prometheus_client.Histogram", MagicMock()),
        ):
            TwoFactorMetrics.record_event(
                verification_event("U1", "email", status="failed")
            )

        counter.labels.assert_called_once_with(
            method="email", operation="twofactor.verify.failed", result="failure"
        )

    def test_without_prometheus(self, fresh_registry) -> None:
        import builtins

        real_import = builtins.__import__

        def raise_for_prometheus(name, *args, **kwargs):
            if name == "prometheus_client":
                raise ImportError("No module named 'prometheus_client'")
            return real_import(name, *args, **kwargs)

        with patch("builtins.__import__", side_effect=raise_for_prometheus):
            with TwoFactorMetrics.operation("verify", method="totp"):
                pass
            TwoFactorMetrics.record_event(
                verification_event("U1", "totp", status="verified")
            )

        assert fresh_registry.counter is None
