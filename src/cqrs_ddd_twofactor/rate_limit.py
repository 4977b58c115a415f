"""Fixed-window rate limiter keyed by (identity, method, operation)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .models import RateDecision, RateOperation
from .store import Change, RecordKeys, update_record

if TYPE_CHECKING:
    from .clock import Clock
    from .config import RateLimitConfig, RateLimitRule
    from .models import Method
    from .ports import ICodeStore

logger = logging.getLogger("cqrs_ddd.twofactor.rate_limit")


class RateLimiter:
    """Counts attempts per window in the code store.

    Counting and deciding happen in one compare-and-swap, so N concurrent
    callers against a limit of ``max_attempts`` produce exactly
    ``max_attempts`` allowed decisions.
    """

    def __init__(
        self,
        *,
        config: RateLimitConfig,
        store: ICodeStore,
        keys: RecordKeys,
        clock: Clock,
        cas_max_retries: int = 10,
    ) -> None:
        self.config = config
        self._store = store
        self._keys = keys
        self._clock = clock
        self._cas_max_retries = cas_max_retries

    def _rule(self, operation: RateOperation) -> RateLimitRule:
        if operation is RateOperation.SEND:
            return self.config.send
        return self.config.verify

    def _live_window(
        self, record: dict[str, Any] | None, rule: RateLimitRule, now: float
    ) -> dict[str, Any] | None:
        if record is None or now >= record["window_start"] + rule.window_seconds:
            return None
        return record

    async def check_and_increment(
        self, identity: str, method: Method, operation: RateOperation
    ) -> RateDecision:
        """Count one attempt and decide whether it may proceed.

        Args:
            identity: Host user reference.
            method: Method the attempt targets.
            operation: ``VERIFY`` or ``SEND``.

        Returns:
            Allowed decision with the new count, or a denial carrying
            ``retry_after`` (the attempt is not counted).
        """
        if not self.config.enabled:
            return RateDecision(allowed=True)

        rule = self._rule(operation)
        now = self._clock.now().timestamp()

        def mutate(current: dict[str, Any] | None) -> Change[RateDecision]:
            window = self._live_window(current, rule, now)
            if window is None:
                window = {"window_start": now, "attempts": 0}

            window_end = window["window_start"] + rule.window_seconds
            if window["attempts"] >= rule.max_attempts:
                return Change.keep(
                    RateDecision(
                        allowed=False,
                        attempts=window["attempts"],
                        retry_after=window_end - now,
                    )
                )

            attempts = window["attempts"] + 1
            return Change(
                result=RateDecision(allowed=True, attempts=attempts),
                value={**window, "attempts": attempts},
                ttl=max(int(window_end - now) + 1, 1),
            )

        decision = await update_record(
            self._store,
            self._keys.rate(identity, method, operation),
            mutate,
            max_retries=self._cas_max_retries,
        )
        if not decision.allowed:
            logger.warning(
                "Rate limit hit for %s (%s %s), retry in %.0fs",
                identity,
                method.value,
                operation.value,
                decision.retry_after,
            )
        return decision

    async def peek(
        self, identity: str, method: Method, operation: RateOperation
    ) -> RateDecision:
        """Report the current decision without counting an attempt."""
        if not self.config.enabled:
            return RateDecision(allowed=True)

        rule = self._rule(operation)
        now = self._clock.now().timestamp()
        record = await self._store.get(self._keys.rate(identity, method, operation))
        window = self._live_window(record, rule, now)
        if window is None:
            return RateDecision(allowed=True)
        if window["attempts"] >= rule.max_attempts:
            return RateDecision(
                allowed=False,
                attempts=window["attempts"],
                retry_after=window["window_start"] + rule.window_seconds - now,
            )
        return RateDecision(allowed=True, attempts=window["attempts"])

    async def reset(
        self, identity: str, method: Method, operation: RateOperation
    ) -> None:
        """Clear the counter (after a successful verification)."""
        await self._store.delete(self._keys.rate(identity, method, operation))


__all__: list[str] = ["RateLimiter"]
