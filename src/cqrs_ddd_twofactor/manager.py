"""Two-factor manager: the single entry point hosts talk to.

The manager owns method dispatch, the per-method state machine
(``NOT_SETUP -> PENDING_CONFIRMATION -> ENABLED``) and the rules that tie
the engines together: rate limiting before any code material is read,
recovery codes on first enablement, device trust after a successful login.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .audit import (
    TwoFactorEventType,
    method_event,
    recovery_event,
    setup_confirmed_event,
    verification_event,
)
from .clock import Clock, RandomSource, SecretsRandomSource, SystemClock
from .device_trust import DeviceTrustEngine
from .exceptions import (
    AlreadyEnabledError,
    DeliveryFailedError,
    MethodNotEnabledError,
    NotEnabledError,
    UnsupportedMethodError,
)
from .metrics import TwoFactorMetrics
from .models import (
    PRIMARY_METHODS,
    ChallengeResult,
    ChallengeStatus,
    DeviceStatus,
    FailureReason,
    Method,
    MethodState,
    OtpStatus,
    RateOperation,
    RecoveryStatus,
    SetupMaterial,
    TwoFactorStatus,
    VerificationResult,
    VerificationStatus,
)
from .otp import OutOfBandOtpEngine
from .rate_limit import RateLimiter
from .recovery import RecoveryCodeEngine
from .store import Change, RecordKeys, update_record
from .totp import TotpEngine

if TYPE_CHECKING:
    from .audit import TwoFactorAuditEvent
    from .config import TwoFactorConfig
    from .metrics import OperationOutcome
    from .models import TrustedDevice
    from .ports import IAuditSink, ICodeStore, IDeliveryHook

logger = logging.getLogger("cqrs_ddd.twofactor.manager")


def _settled(
    outcome: OperationOutcome, result: VerificationResult
) -> VerificationResult:
    if not result.succeeded:
        outcome.result = result.status.value
    return result


class TwoFactorManager:
    """Coordinates setup, challenge and verification of second factors.

    Example:
        ```python
        manager = TwoFactorManager(
            TwoFactorConfig(),
            RedisCodeStore(redis),
            delivery_hook=MyDeliveryHook(),
            audit_sink=MyAuditSink(),
        )

        material = await manager.begin_setup("user-123", Method.TOTP)
        render_qr(material.provisioning_uri)

        result = await manager.confirm_setup("user-123", Method.TOTP, code)
        if result.status is VerificationStatus.ENABLED:
            show_once(result.recovery_codes)

        # Login
        if not await manager.is_trusted_device("user-123", cookie):
            await manager.challenge("user-123", Method.TOTP)
            result = await manager.verify("user-123", Method.TOTP, code)
        ```
    """

    def __init__(
        self,
        config: TwoFactorConfig,
        store: ICodeStore,
        *,
        delivery_hook: IDeliveryHook | None = None,
        audit_sink: IAuditSink | None = None,
        clock: Clock | None = None,
        random: RandomSource | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            config: Validated on construction.
            store: Shared code store.
            delivery_hook: Required for email/SMS methods.
            audit_sink: Optional audit event sink.
            clock: Time source (defaults to the system clock).
            random: Randomness source (defaults to ``secrets``).
        """
        self.config = config.validate()
        self._store = store
        self._audit_sink = audit_sink
        self._clock = clock or SystemClock()
        self._random = random or SecretsRandomSource()
        self._keys = RecordKeys(config.store.key_prefix)
        retries = config.store.cas_max_retries

        self.totp = TotpEngine(config.totp, self._random)
        self._otp: dict[Method, OutOfBandOtpEngine] = {
            method: OutOfBandOtpEngine(
                method,
                config=config.otp_config(method),
                store=store,
                keys=self._keys,
                clock=self._clock,
                random=self._random,
                delivery_hook=delivery_hook,
                cas_max_retries=retries,
            )
            for method in (Method.EMAIL, Method.SMS)
        }
        self.recovery = RecoveryCodeEngine(
            config=config.recovery_codes,
            store=store,
            keys=self._keys,
            clock=self._clock,
            random=self._random,
            cas_max_retries=retries,
        )
        self.devices = DeviceTrustEngine(
            config=config.device_trust,
            store=store,
            keys=self._keys,
            clock=self._clock,
            random=self._random,
            cas_max_retries=retries,
        )
        self.rate_limiter = RateLimiter(
            config=config.rate_limit,
            store=store,
            keys=self._keys,
            clock=self._clock,
            cas_max_retries=retries,
        )

    # ═══════════════════════════════════════════════════════════════
    # INTERNALS
    # ═══════════════════════════════════════════════════════════════

    def otp_engine(self, method: Method) -> OutOfBandOtpEngine:
        """Engine for an out-of-band method."""
        try:
            return self._otp[method]
        except KeyError:
            raise UnsupportedMethodError(method.value, "otp") from None

    def _require_primary(self, method: Method, operation: str) -> None:
        if not method.is_primary:
            raise UnsupportedMethodError(method.value, operation)
        if not self.config.is_method_enabled(method):
            raise MethodNotEnabledError(method.value)

    async def _emit(self, event: TwoFactorAuditEvent) -> None:
        TwoFactorMetrics.record_event(event)
        if self._audit_sink is not None:
            await self._audit_sink.record(event)

    async def _load_secret(self, identity: str, method: Method) -> dict[str, Any] | None:
        return await self._store.get(self._keys.secret(identity, method))

    async def _is_confirmed(self, identity: str, method: Method) -> bool:
        record = await self._load_secret(identity, method)
        return record is not None and bool(record["confirmed"])

    async def _any_enabled(self, identity: str) -> bool:
        for method in PRIMARY_METHODS:
            if await self._is_confirmed(identity, method):
                return True
        return False

    async def _dispatch(
        self,
        identity: str,
        method: Method,
        context: dict[str, Any] | None,
        *,
        enforce_cooldown: bool,
    ) -> ChallengeResult:
        engine = self.otp_engine(method)

        if enforce_cooldown:
            elapsed = await engine.seconds_since_issue(identity)
            cooldown = engine.config.resend_cooldown_seconds
            if elapsed is not None and elapsed < cooldown:
                logger.debug("Resend cooldown active for %s (%s)", identity, method.value)
                return ChallengeResult(
                    method=method,
                    status=ChallengeStatus.RATE_LIMITED,
                    retry_after=cooldown - elapsed,
                )

        decision = await self.rate_limiter.check_and_increment(
            identity, method, RateOperation.SEND
        )
        if not decision.allowed:
            await self._emit(
                method_event(
                    TwoFactorEventType.RATE_LIMITED,
                    identity,
                    method.value,
                    success=False,
                    reason="send_limit",
                    timestamp=self._clock.now(),
                )
            )
            return ChallengeResult(
                method=method,
                status=ChallengeStatus.RATE_LIMITED,
                retry_after=decision.retry_after,
            )

        try:
            issued = await engine.send(identity, context)
        except DeliveryFailedError:
            await self._emit(
                method_event(
                    TwoFactorEventType.DELIVERY_FAILED,
                    identity,
                    method.value,
                    success=False,
                    reason="delivery_failed",
                    timestamp=self._clock.now(),
                )
            )
            raise

        await self._emit(
            method_event(
                TwoFactorEventType.CHALLENGE_ISSUED,
                identity,
                method.value,
                timestamp=self._clock.now(),
            )
        )
        return ChallengeResult(
            method=method, status=ChallengeStatus.ISSUED, expires_at=issued.expires_at
        )

    async def _rate_limited(
        self, identity: str, method: Method, retry_after: float
    ) -> VerificationResult:
        await self._emit(
            verification_event(
                identity,
                method.value,
                status="rate_limited",
                timestamp=self._clock.now(),
            )
        )
        return VerificationResult.rate_limited(method, retry_after)

    async def _issue_device(
        self, identity: str, remember_device: bool, fingerprint: str | None
    ) -> str | None:
        if not remember_device or not self.config.device_trust.enabled:
            return None
        issued = await self.devices.issue(identity, fingerprint=fingerprint)
        await self._emit(
            method_event(
                TwoFactorEventType.DEVICE_TRUSTED,
                identity,
                timestamp=self._clock.now(),
                metadata={"device_id": issued.device_id},
            )
        )
        return issued.token

    # ═══════════════════════════════════════════════════════════════
    # SETUP
    # ═══════════════════════════════════════════════════════════════

    async def begin_setup(
        self,
        identity: str,
        method: Method,
        options: dict[str, Any] | None = None,
    ) -> SetupMaterial:
        """Start enabling a method, replacing any unconfirmed setup.

        Args:
            identity: Host user reference.
            method: TOTP, email or SMS.
            options: Delivery hints kept with the secret and handed to the
                delivery hook (e.g. ``{"phone": "+30..."}``).

        Returns:
            TOTP secret material, or the dispatch result of the
            confirmation code for email/SMS.

        Raises:
            UnsupportedMethodError: For recovery codes.
            MethodNotEnabledError: If disabled in configuration.
            AlreadyEnabledError: If the method is already confirmed.
            DeliveryFailedError: If the confirmation code could not be sent.
        """
        self._require_primary(method, "setup")

        with TwoFactorMetrics.operation("setup", method=method.value):
            context = dict(options or {})
            record: dict[str, Any] = {
                "identity": identity,
                "method": method.value,
                "secret": None,
                "confirmed": False,
                "created_at": self._clock.now().timestamp(),
                "confirmed_at": None,
                "last_used_step": None,
                "context": context,
            }

            if method is Method.TOTP:
                record["secret"] = self.totp.generate_secret()

            def mutate(current: dict[str, Any] | None) -> Change[None]:
                if current is not None and current["confirmed"]:
                    raise AlreadyEnabledError(method.value)
                return Change(result=None, value=record)

            await update_record(
                self._store,
                self._keys.secret(identity, method),
                mutate,
                max_retries=self.config.store.cas_max_retries,
            )

            if method is Method.TOTP:
                secret = record["secret"]
                material = SetupMaterial(
                    method=method,
                    secret=secret,
                    provisioning_uri=self.totp.provisioning_uri(identity, secret),
                    manual_key=self.totp.format_secret(secret),
                )
            else:
                challenge = await self._dispatch(
                    identity, method, context, enforce_cooldown=False
                )
                material = SetupMaterial(method=method, challenge=challenge)

        await self._emit(
            method_event(
                TwoFactorEventType.SETUP_STARTED,
                identity,
                method.value,
                timestamp=self._clock.now(),
            )
        )
        logger.info("Started %s setup for %s", method.value, identity)
        return material

    async def confirm_setup(
        self, identity: str, method: Method, code: str
    ) -> VerificationResult:
        """Confirm a pending setup with a code from the new factor.

        On success the method becomes ``ENABLED`` and, when the identity has
        no recovery codes yet, the initial batch is generated and attached
        to the result.

        Raises:
            UnsupportedMethodError: For recovery codes.
            MethodNotEnabledError: If disabled in configuration.
            AlreadyEnabledError: If the method is already confirmed.
        """
        self._require_primary(method, "confirm_setup")

        with TwoFactorMetrics.operation(
            "confirm_setup", method=method.value
        ) as outcome:
            key = self._keys.secret(identity, method)
            record = await self._store.get(key)
            if record is not None and record["confirmed"]:
                raise AlreadyEnabledError(method.value)

            decision = await self.rate_limiter.check_and_increment(
                identity, method, RateOperation.VERIFY
            )
            if not decision.allowed:
                return _settled(
                    outcome,
                    await self._rate_limited(identity, method, decision.retry_after),
                )

            valid = False
            if record is not None:
                if method is Method.TOTP:
                    valid = self.totp.verify_code(
                        record["secret"], code, self._clock.now()
                    )
                else:
                    status = await self.otp_engine(method).verify(identity, code)
                    valid = status is OtpStatus.VERIFIED

            # A concurrent begin_setup replaces the record, which voids this one
            if valid and record is not None:
                confirmed = {
                    **record,
                    "confirmed": True,
                    "confirmed_at": self._clock.now().timestamp(),
                }
                valid = await self._store.compare_and_swap(key, record, confirmed)

            if not valid:
                await self._emit(
                    method_event(
                        TwoFactorEventType.SETUP_FAILED,
                        identity,
                        method.value,
                        success=False,
                        reason="no_pending_setup" if record is None else "invalid_code",
                        timestamp=self._clock.now(),
                    )
                )
                return _settled(outcome, VerificationResult.failed(method))

            await self.rate_limiter.reset(identity, method, RateOperation.VERIFY)
            codes: list[str] = []
            if self.config.recovery_codes.enabled and not await self.recovery.has_codes(
                identity
            ):
                codes = await self.recovery.generate_batch(identity)

        await self._emit(
            setup_confirmed_event(
                identity,
                method.value,
                timestamp=self._clock.now(),
                recovery_codes_issued=len(codes),
            )
        )
        logger.info("Enabled %s for %s", method.value, identity)
        return VerificationResult(
            method=method,
            status=VerificationStatus.ENABLED,
            recovery_codes=tuple(codes),
            remaining_recovery_codes=await self.recovery.remaining(identity),
        )

    # ═══════════════════════════════════════════════════════════════
    # LOGIN
    # ═══════════════════════════════════════════════════════════════

    async def challenge(self, identity: str, method: Method) -> ChallengeResult:
        """Issue a login challenge.

        TOTP needs no server-side challenge and returns ``NOT_REQUIRED``.
        Email/SMS dispatch a fresh code, replacing any live one, unless the
        resend cooldown or send limit applies.

        Raises:
            UnsupportedMethodError: For recovery codes.
            MethodNotEnabledError: If disabled in configuration.
            NotEnabledError: If the identity has not enabled the method.
            DeliveryFailedError: If the code could not be sent.
        """
        self._require_primary(method, "challenge")

        with TwoFactorMetrics.operation(
            "challenge", method=method.value
        ) as outcome:
            record = await self._load_secret(identity, method)
            if record is None or not record["confirmed"]:
                raise NotEnabledError(
                    f"Two-factor method '{method.value}' is not enabled for {identity}"
                )
            if method is Method.TOTP:
                return ChallengeResult(method=method, status=ChallengeStatus.NOT_REQUIRED)
            challenge = await self._dispatch(
                identity, method, record["context"], enforce_cooldown=True
            )
            if challenge.status is not ChallengeStatus.ISSUED:
                outcome.result = challenge.status.value
            return challenge

    async def _verify_totp(
        self, identity: str, code: str
    ) -> tuple[bool, str | None]:
        key = self._keys.secret(identity, Method.TOTP)
        record = await self._store.get(key)
        if record is None or not record["confirmed"]:
            return False, "not_enabled"

        step = self.totp.match_step(record["secret"], code, self._clock.now())
        if step is None:
            return False, "invalid_code"

        reject_replays = self.config.totp.reject_replayed_codes

        def mutate(current: dict[str, Any] | None) -> Change[bool]:
            if current is None or not current["confirmed"]:
                return Change.keep(False)
            if current["secret"] != record["secret"]:
                return Change.keep(False)
            last = current["last_used_step"]
            if reject_replays and last is not None and step <= last:
                return Change.keep(False)
            return Change(result=True, value={**current, "last_used_step": step})

        accepted = await update_record(
            self._store, key, mutate, max_retries=self.config.store.cas_max_retries
        )
        return accepted, None if accepted else "replayed"

    async def verify(
        self,
        identity: str,
        method: Method,
        code: str,
        *,
        remember_device: bool = False,
        fingerprint: str | None = None,
    ) -> VerificationResult:
        """Verify a login code.

        The rate limiter is consulted before any code material is read.

        Args:
            identity: Host user reference.
            method: Method the code belongs to. ``Method.RECOVERY`` is
                routed to ``verify_recovery_code``.
            code: Submitted code.
            remember_device: Issue a trusted-device token on success.
            fingerprint: Device fingerprint bound to that token.

        Returns:
            ``VERIFIED``, ``FAILED``, ``EXPIRED`` or ``RATE_LIMITED``.
        """
        if method is Method.RECOVERY:
            return await self.verify_recovery_code(
                identity, code, remember_device=remember_device, fingerprint=fingerprint
            )
        self._require_primary(method, "verify")

        with TwoFactorMetrics.operation(
            "verify", method=method.value
        ) as outcome:
            decision = await self.rate_limiter.check_and_increment(
                identity, method, RateOperation.VERIFY
            )
            if not decision.allowed:
                return _settled(
                    outcome,
                    await self._rate_limited(identity, method, decision.retry_after),
                )

            reason: str | None
            if method is Method.TOTP:
                ok, reason = await self._verify_totp(identity, code)
                status = OtpStatus.VERIFIED if ok else OtpStatus.FAILED
            elif not await self._is_confirmed(identity, method):
                status, reason = OtpStatus.FAILED, "not_enabled"
            else:
                status = await self.otp_engine(method).verify(identity, code)
                reason = None if status is OtpStatus.VERIFIED else status.value

            if status is not OtpStatus.VERIFIED:
                await self._emit(
                    verification_event(
                        identity,
                        method.value,
                        status=status.value,
                        reason=reason,
                        timestamp=self._clock.now(),
                    )
                )
                if status is OtpStatus.EXPIRED:
                    return _settled(
                        outcome,
                        VerificationResult(
                            method=method, status=VerificationStatus.EXPIRED
                        ),
                    )
                if reason == "not_enabled":
                    return _settled(
                        outcome,
                        VerificationResult.failed(method, FailureReason.NOT_ENABLED),
                    )
                return _settled(outcome, VerificationResult.failed(method))

            await self.rate_limiter.reset(identity, method, RateOperation.VERIFY)
            token = await self._issue_device(identity, remember_device, fingerprint)

        await self._emit(
            verification_event(
                identity, method.value, status="verified", timestamp=self._clock.now()
            )
        )
        logger.debug("Verified %s for %s", method.value, identity)
        return VerificationResult(
            method=method, status=VerificationStatus.VERIFIED, device_token=token
        )

    async def verify_recovery_code(
        self,
        identity: str,
        code: str,
        *,
        remember_device: bool = False,
        fingerprint: str | None = None,
    ) -> VerificationResult:
        """Log in with a recovery code, consuming it.

        A code that matches is spent even if the surrounding login later
        fails. Reused and unknown codes both surface as ``INVALID_CODE``.

        Raises:
            MethodNotEnabledError: If recovery codes are disabled.
        """
        if not self.config.is_method_enabled(Method.RECOVERY):
            raise MethodNotEnabledError(Method.RECOVERY.value)

        with TwoFactorMetrics.operation(
            "verify", method=Method.RECOVERY.value
        ) as outcome:
            decision = await self.rate_limiter.check_and_increment(
                identity, Method.RECOVERY, RateOperation.VERIFY
            )
            if not decision.allowed:
                return _settled(
                    outcome,
                    await self._rate_limited(
                        identity, Method.RECOVERY, decision.retry_after
                    ),
                )

            status = await self.recovery.consume(identity, code)
            remaining = await self.recovery.remaining(identity)
            await self._emit(
                recovery_event(
                    identity,
                    outcome=status.value,
                    remaining=remaining,
                    timestamp=self._clock.now(),
                )
            )
            if status is not RecoveryStatus.VERIFIED:
                return _settled(outcome, VerificationResult.failed(Method.RECOVERY))

            await self.rate_limiter.reset(identity, Method.RECOVERY, RateOperation.VERIFY)
            token = await self._issue_device(identity, remember_device, fingerprint)

        if remaining <= self.config.recovery_codes.regenerate_threshold:
            logger.info("%s has %d recovery codes left", identity, remaining)
        return VerificationResult(
            method=Method.RECOVERY,
            status=VerificationStatus.VERIFIED,
            device_token=token,
            remaining_recovery_codes=remaining,
        )

    # ═══════════════════════════════════════════════════════════════
    # RECOVERY CODES
    # ═══════════════════════════════════════════════════════════════

    async def regenerate_recovery_codes(
        self, identity: str, count: int | None = None
    ) -> list[str]:
        """Replace the recovery code batch.

        Raises:
            MethodNotEnabledError: If recovery codes are disabled.
            NotEnabledError: If the identity has no enabled method.
            ValueError: If ``count`` is not positive.
        """
        if not self.config.is_method_enabled(Method.RECOVERY):
            raise MethodNotEnabledError(Method.RECOVERY.value)
        if not await self._any_enabled(identity):
            raise NotEnabledError(f"Two-factor is not enabled for {identity}")

        codes = await self.recovery.generate_batch(identity, count)
        await self._emit(
            method_event(
                TwoFactorEventType.RECOVERY_REGENERATED,
                identity,
                Method.RECOVERY.value,
                timestamp=self._clock.now(),
                metadata={"count": len(codes)},
            )
        )
        return codes

    # ═══════════════════════════════════════════════════════════════
    # DISABLE
    # ═══════════════════════════════════════════════════════════════

    async def _clear_method(self, identity: str, method: Method) -> None:
        await self._store.delete(self._keys.secret(identity, method))
        if method.is_out_of_band:
            await self.otp_engine(method).invalidate(identity)
        for operation in RateOperation:
            await self.rate_limiter.reset(identity, method, operation)

    async def disable(self, identity: str, method: Method) -> None:
        """Disable one method. Idempotent.

        Disabling ``Method.RECOVERY`` deletes the recovery codes. When the
        last enabled primary method goes, recovery codes and trusted devices
        go with it.
        """
        if method is Method.RECOVERY:
            await self.recovery.revoke(identity)
            for operation in RateOperation:
                await self.rate_limiter.reset(identity, method, operation)
        else:
            await self._clear_method(identity, method)
            if not await self._any_enabled(identity):
                await self.recovery.revoke(identity)
                await self.devices.revoke_all(identity)

        await self._emit(
            method_event(
                TwoFactorEventType.METHOD_DISABLED,
                identity,
                method.value,
                timestamp=self._clock.now(),
            )
        )
        logger.info("Disabled %s for %s", method.value, identity)

    async def disable_all(self, identity: str) -> None:
        """Remove every two-factor record of an identity. Idempotent."""
        for method in PRIMARY_METHODS:
            await self._clear_method(identity, method)
        for operation in RateOperation:
            await self.rate_limiter.reset(identity, Method.RECOVERY, operation)
        await self.recovery.revoke(identity)
        await self.devices.revoke_all(identity)

        await self._emit(
            method_event(
                TwoFactorEventType.METHOD_DISABLED,
                identity,
                timestamp=self._clock.now(),
                metadata={"all": True},
            )
        )
        logger.info("Disabled two-factor for %s", identity)

    # ═══════════════════════════════════════════════════════════════
    # DEVICES
    # ═══════════════════════════════════════════════════════════════

    async def is_trusted_device(
        self, identity: str, device_token: str, fingerprint: str | None = None
    ) -> bool:
        """Whether a device may skip the challenge.

        Expired and unknown tokens are indistinguishable here.
        """
        if not self.config.device_trust.enabled or not device_token:
            return False
        status = await self.devices.validate(identity, device_token, fingerprint)
        return status is DeviceStatus.TRUSTED

    async def forget_device(self, identity: str, device_token: str) -> None:
        await self.devices.revoke(identity, device_token)
        await self._emit(
            method_event(
                TwoFactorEventType.DEVICE_REVOKED, identity, timestamp=self._clock.now()
            )
        )

    async def forget_all_devices(self, identity: str) -> None:
        await self.devices.revoke_all(identity)
        await self._emit(
            method_event(
                TwoFactorEventType.DEVICE_REVOKED,
                identity,
                timestamp=self._clock.now(),
                metadata={"all": True},
            )
        )

    async def list_trusted_devices(self, identity: str) -> list[TrustedDevice]:
        return await self.devices.list_devices(identity)

    # ═══════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════

    async def method_state(self, identity: str, method: Method) -> MethodState:
        """Lifecycle state of a primary method.

        Raises:
            UnsupportedMethodError: For recovery codes.
        """
        if not method.is_primary:
            raise UnsupportedMethodError(method.value, "method_state")
        record = await self._load_secret(identity, method)
        if record is None:
            return MethodState.NOT_SETUP
        if record["confirmed"]:
            return MethodState.ENABLED
        return MethodState.PENDING_CONFIRMATION

    async def status(self, identity: str) -> TwoFactorStatus:
        """Snapshot of the identity's methods and recovery codes."""
        methods = {
            method: await self.method_state(identity, method)
            for method in PRIMARY_METHODS
        }
        return TwoFactorStatus(
            identity=identity,
            methods=methods,
            recovery_codes_remaining=await self.recovery.remaining(identity),
            needs_regeneration=await self.recovery.needs_regeneration(identity),
        )


__all__: list[str] = ["TwoFactorManager"]
