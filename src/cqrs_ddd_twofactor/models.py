"""Methods, states and result types returned by the two-factor engine.

Every public operation returns one of these values instead of raising for
expected outcomes such as a wrong or expired code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Method(str, Enum):
    """Closed set of second factors."""

    TOTP = "totp"
    EMAIL = "email"
    SMS = "sms"
    RECOVERY = "recovery"

    @property
    def is_out_of_band(self) -> bool:
        return self in (Method.EMAIL, Method.SMS)

    @property
    def is_primary(self) -> bool:
        """Whether the method can be set up and challenged on its own."""
        return self is not Method.RECOVERY


PRIMARY_METHODS: tuple[Method, ...] = (Method.TOTP, Method.EMAIL, Method.SMS)


class MethodState(Enum):
    """Lifecycle of a method for one identity."""

    NOT_SETUP = "not_setup"
    PENDING_CONFIRMATION = "pending_confirmation"
    ENABLED = "enabled"


class VerificationStatus(Enum):
    VERIFIED = "verified"
    ENABLED = "enabled"
    FAILED = "failed"
    EXPIRED = "expired"
    RATE_LIMITED = "rate_limited"


class FailureReason(Enum):
    """Machine-readable failure reasons.

    ``INVALID_CODE`` covers wrong, reused, unknown and
    superseded codes so callers cannot tell them apart.
    """

    INVALID_CODE = "invalid_code"
    NOT_ENABLED = "not_enabled"


class ChallengeStatus(Enum):
    ISSUED = "issued"
    NOT_REQUIRED = "not_required"
    RATE_LIMITED = "rate_limited"


class OtpStatus(Enum):
    VERIFIED = "verified"
    FAILED = "failed"
    EXPIRED = "expired"


class RecoveryStatus(Enum):
    VERIFIED = "verified"
    ALREADY_USED = "already_used"
    INVALID = "invalid"


class DeviceStatus(Enum):
    TRUSTED = "trusted"
    NOT_TRUSTED = "not_trusted"
    EXPIRED = "expired"


class RateOperation(str, Enum):
    """Operation classes counted separately by the rate limiter."""

    VERIFY = "verify"
    SEND = "send"


@dataclass(frozen=True)
class RateDecision:
    """Outcome of a rate-limit check.

    Attributes:
        allowed: Whether the attempt may proceed.
        attempts: Attempts counted in the current window.
        retry_after: Seconds until the window resets (0 when allowed).
    """

    allowed: bool
    attempts: int = 0
    retry_after: float = 0.0


@dataclass(frozen=True)
class IssuedCode:
    """Plaintext out-of-band code handed out exactly once."""

    method: Method
    code: str = field(repr=False)
    expires_at: datetime


@dataclass(frozen=True)
class IssuedDevice:
    """Raw device token handed out exactly once."""

    device_id: str
    token: str = field(repr=False)
    expires_at: datetime


@dataclass(frozen=True)
class TrustedDevice:
    """Trusted device as listed to the host (no token material)."""

    device_id: str
    fingerprint: str | None
    created_at: datetime
    last_used_at: datetime | None
    expires_at: datetime


@dataclass(frozen=True)
class ChallengeResult:
    """Result of asking for a login challenge.

    Attributes:
        method: Method the challenge is for.
        status: ``ISSUED`` when a code was dispatched, ``NOT_REQUIRED`` for
            TOTP, ``RATE_LIMITED`` when sending is throttled.
        expires_at: Expiry of the dispatched code.
        retry_after: Seconds to wait when rate limited.
    """

    method: Method
    status: ChallengeStatus
    expires_at: datetime | None = None
    retry_after: float = 0.0


@dataclass(frozen=True)
class SetupMaterial:
    """Data returned when a method setup begins.

    Attributes:
        method: Method being set up.
        secret: Base32 TOTP secret (TOTP only).
        provisioning_uri: ``otpauth://`` URI for QR rendering (TOTP only).
        manual_key: Secret grouped by four for manual entry (TOTP only).
        challenge: Dispatch result of the confirmation code (email/SMS only).
    """

    method: Method
    secret: str | None = field(default=None, repr=False)
    provisioning_uri: str | None = field(default=None, repr=False)
    manual_key: str | None = field(default=None, repr=False)
    challenge: ChallengeResult | None = None


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of ``confirm_setup``, ``verify`` and ``verify_recovery_code``.

    Attributes:
        method: Method that was verified.
        status: Outcome kind.
        reason: Failure reason for ``FAILED``.
        retry_after: Seconds to wait for ``RATE_LIMITED``.
        recovery_codes: Plaintext codes generated on enablement, shown once.
        device_token: Raw trusted-device token when one was issued.
        remaining_recovery_codes: Unused codes left after a recovery login.
    """

    method: Method
    status: VerificationStatus
    reason: FailureReason | None = None
    retry_after: float = 0.0
    recovery_codes: tuple[str, ...] = field(default=(), repr=False)
    device_token: str | None = field(default=None, repr=False)
    remaining_recovery_codes: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in (VerificationStatus.VERIFIED, VerificationStatus.ENABLED)

    @classmethod
    def failed(
        cls, method: Method, reason: FailureReason = FailureReason.INVALID_CODE
    ) -> VerificationResult:
        return cls(method=method, status=VerificationStatus.FAILED, reason=reason)

    @classmethod
    def rate_limited(cls, method: Method, retry_after: float) -> VerificationResult:
        return cls(
            method=method,
            status=VerificationStatus.RATE_LIMITED,
            retry_after=retry_after,
        )


@dataclass(frozen=True)
class TwoFactorStatus:
    """Snapshot of an identity's two-factor configuration.

    Attributes:
        identity: Host user reference.
        methods: State of every primary method.
        recovery_codes_remaining: Unused recovery codes.
        needs_regeneration: Remaining codes are at or below the threshold.
    """

    identity: str
    methods: dict[Method, MethodState]
    recovery_codes_remaining: int = 0
    needs_regeneration: bool = False

    @property
    def enabled(self) -> bool:
        return any(state is MethodState.ENABLED for state in self.methods.values())

    @property
    def enabled_methods(self) -> list[Method]:
        return [m for m, state in self.methods.items() if state is MethodState.ENABLED]


__all__: list[str] = [
    "Method",
    "PRIMARY_METHODS",
    "MethodState",
    "VerificationStatus",
    "FailureReason",
    "ChallengeStatus",
    "OtpStatus",
    "RecoveryStatus",
    "DeviceStatus",
    "RateOperation",
    "RateDecision",
    "IssuedCode",
    "IssuedDevice",
    "TrustedDevice",
    "ChallengeResult",
    "SetupMaterial",
    "VerificationResult",
    "TwoFactorStatus",
]
