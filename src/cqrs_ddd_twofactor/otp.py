"""Email/SMS OTP engine for out-of-band one-time codes.

This engine generates, stores and verifies codes, but the actual sending
via SMS or email is delegated to the application via IDeliveryHook.
Plaintext codes are never stored: a challenge holds an HMAC of the code
under a per-challenge salt.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .clock import Clock, RandomSource, from_timestamp
from .exceptions import ConfigurationError, DeliveryFailedError
from .hashing import digests_equal, otp_digest
from .models import IssuedCode, Method, OtpStatus
from .store import Change, RecordKeys, update_record

if TYPE_CHECKING:
    from datetime import datetime

    from .config import OtpMethodConfig
    from .ports import ICodeStore, IDeliveryHook

logger = logging.getLogger("cqrs_ddd.twofactor.otp")


class OutOfBandOtpEngine:
    """Out-of-band OTP engine, one instance per channel.

    Email and SMS share all logic and differ only in the ``method`` handed
    to the delivery hook.

    Example:
        ```python
        class MyDeliveryHook(IDeliveryHook):
            async def send(self, identity, method, code, context) -> bool:
                await mailer.send(to=context["email"], body=f"Your code: {code}")
                return True

        email_otp = OutOfBandOtpEngine(
            Method.EMAIL,
            config=OtpMethodConfig(),
            store=InMemoryCodeStore(),
            keys=RecordKeys("two_factor"),
            clock=SystemClock(),
            random=SecretsRandomSource(),
            delivery_hook=MyDeliveryHook(),
        )

        await email_otp.send("user-123", {"email": "user@example.com"})
        status = await email_otp.verify("user-123", "123456")
        ```
    """

    def __init__(
        self,
        method: Method,
        *,
        config: OtpMethodConfig,
        store: ICodeStore,
        keys: RecordKeys,
        clock: Clock,
        random: RandomSource,
        delivery_hook: IDeliveryHook | None = None,
        cas_max_retries: int = 10,
    ) -> None:
        if not method.is_out_of_band:
            raise ConfigurationError(f"'{method.value}' is not an out-of-band method")
        self.method = method
        self.config = config
        self.delivery_hook = delivery_hook
        self._store = store
        self._keys = keys
        self._clock = clock
        self._random = random
        self._cas_max_retries = cas_max_retries

    @property
    def _record_ttl(self) -> int:
        # Outlive the logical expiry so late submissions report EXPIRED
        return self.config.ttl_seconds * 2

    def _key(self, identity: str) -> str:
        return self._keys.challenge(identity, self.method)

    def _generate_code(self) -> str:
        """Generate numeric OTP code with the configured digit count."""
        code = self._random.randbelow(10**self.config.code_length)
        return str(code).zfill(self.config.code_length)

    async def generate(self, identity: str) -> IssuedCode:
        """Create a challenge, replacing any live one.

        Args:
            identity: Host user reference.

        Returns:
            The plaintext code (returned exactly once) and its expiry.
        """
        code = self._generate_code()
        salt = self._random.token_bytes(16).hex()
        now = self._clock.now().timestamp()
        expires_at = now + self.config.ttl_seconds

        await self._store.put(
            self._key(identity),
            {
                "identity": identity,
                "method": self.method.value,
                "code_hash": otp_digest(salt, code),
                "salt": salt,
                "created_at": now,
                "expires_at": expires_at,
                "attempts": 0,
            },
            ttl=self._record_ttl,
        )
        logger.debug("Issued %s challenge for %s", self.method.value, identity)
        return IssuedCode(
            method=self.method, code=code, expires_at=from_timestamp(expires_at)
        )

    async def send(
        self, identity: str, context: dict[str, Any] | None = None
    ) -> IssuedCode:
        """Generate a code and hand it to the delivery hook.

        Args:
            identity: Host user reference.
            context: Delivery hints (address, phone number, locale).

        Returns:
            The issued code (useful for testing).

        Raises:
            ConfigurationError: If no delivery hook is configured.
            DeliveryFailedError: If the hook refused or raised. The new
                challenge is discarded so an undelivered code cannot be used.

        Note:
            In production, you should NOT return or log the code.
        """
        if self.delivery_hook is None:
            raise ConfigurationError(
                f"A delivery hook is required for '{self.method.value}' codes",
                field="delivery_hook",
            )

        issued = await self.generate(identity)
        try:
            accepted = await self.delivery_hook.send(
                identity, self.method, issued.code, dict(context or {})
            )
        except Exception as e:  # noqa: BLE001
            await self.invalidate(identity)
            logger.warning(
                "Delivery hook raised for %s code to %s: %s",
                self.method.value,
                identity,
                type(e).__name__,
            )
            raise DeliveryFailedError(self.method.value) from e

        if not accepted:
            await self.invalidate(identity)
            logger.warning(
                "Delivery hook refused %s code to %s", self.method.value, identity
            )
            raise DeliveryFailedError(self.method.value)
        return issued

    async def verify(self, identity: str, code: str) -> OtpStatus:
        """Verify and consume a code.

        Args:
            identity: Host user reference.
            code: Submitted code.

        Returns:
            ``VERIFIED`` (challenge deleted), ``EXPIRED`` (challenge deleted)
            or ``FAILED`` (attempt counted, challenge voided at the cap).
        """
        submitted = code.strip().replace(" ", "")
        now = self._clock.now().timestamp()
        max_attempts = self.config.max_attempts

        def mutate(current: dict[str, Any] | None) -> Change[OtpStatus]:
            if current is None:
                return Change.keep(OtpStatus.FAILED)

            if now > current["expires_at"] or current["attempts"] >= max_attempts:
                return Change(result=OtpStatus.EXPIRED, value=None)

            if digests_equal(otp_digest(current["salt"], submitted), current["code_hash"]):
                return Change(result=OtpStatus.VERIFIED, value=None)

            attempts = current["attempts"] + 1
            updated = {**current, "attempts": attempts}
            if attempts >= max_attempts:
                updated["expires_at"] = now
            remaining_ttl = int(current["created_at"] + self._record_ttl - now)
            return Change(
                result=OtpStatus.FAILED, value=updated, ttl=max(remaining_ttl, 1)
            )

        status = await update_record(
            self._store,
            self._key(identity),
            mutate,
            max_retries=self._cas_max_retries,
        )
        logger.debug("%s verification for %s: %s", self.method.value, identity, status.value)
        return status

    async def invalidate(self, identity: str) -> None:
        """Delete any live challenge."""
        await self._store.delete(self._key(identity))

    async def live_expiry(self, identity: str) -> datetime | None:
        """Expiry of the live challenge, if any and not yet expired."""
        record = await self._store.get(self._key(identity))
        if record is None or self._clock.now().timestamp() > record["expires_at"]:
            return None
        return from_timestamp(record["expires_at"])

    async def seconds_since_issue(self, identity: str) -> float | None:
        """Seconds elapsed since the live challenge was issued.

        Returns:
            Seconds since issue, or None if no challenge is live.
        """
        record = await self._store.get(self._key(identity))
        if record is None or self._clock.now().timestamp() > record["expires_at"]:
            return None
        return self._clock.now().timestamp() - float(record["created_at"])


__all__: list[str] = ["OutOfBandOtpEngine"]
