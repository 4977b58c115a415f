"""CQRS-DDD Two-Factor Package

Second factor: "Prove it's really you."

Pluggable two-factor authentication core: TOTP, email/SMS one-time codes,
single-use recovery codes, trusted devices and rate limiting, coordinated by
``TwoFactorManager``. Persistence, delivery and audit storage are supplied by
the host through ports.

Usage:
    ```python
    from cqrs_ddd_twofactor import (
        InMemoryCodeStore,
        Method,
        TwoFactorConfig,
        TwoFactorManager,
    )

    manager = TwoFactorManager(TwoFactorConfig(), InMemoryCodeStore())

    material = await manager.begin_setup("user-123", Method.TOTP)
    result = await manager.confirm_setup("user-123", Method.TOTP, "123456")
    ```

Submodules:
    - `redis_store`: Redis ``ICodeStore`` (requires the ``redis`` extra)
    - `metrics`: Prometheus metrics (requires the ``metrics`` extra)
"""

from __future__ import annotations

# Audit
from .audit import (
    InMemoryAuditSink,
    TwoFactorAuditEvent,
    TwoFactorEventType,
    method_event,
    recovery_event,
    setup_confirmed_event,
    verification_event,
)

# Time and randomness
from .clock import Clock, ManualClock, RandomSource, SecretsRandomSource, SystemClock

# Configuration
from .config import (
    DeviceTrustConfig,
    OtpMethodConfig,
    RateLimitConfig,
    RateLimitRule,
    RecoveryCodeConfig,
    StoreConfig,
    TotpConfig,
    TwoFactorConfig,
)

# Engines
from .device_trust import DeviceTrustEngine

# Exceptions
from .exceptions import (
    AlreadyEnabledError,
    ConfigurationError,
    DeliveryFailedError,
    InfrastructureError,
    MethodNotEnabledError,
    NotEnabledError,
    StorageConflictError,
    StorageError,
    TwoFactorError,
    UnsupportedMethodError,
)
from .hashing import RecoveryCodeHasher

# Manager
from .manager import TwoFactorManager

# Models
from .models import (
    PRIMARY_METHODS,
    ChallengeResult,
    ChallengeStatus,
    DeviceStatus,
    FailureReason,
    IssuedCode,
    IssuedDevice,
    Method,
    MethodState,
    OtpStatus,
    RateDecision,
    RateOperation,
    RecoveryStatus,
    SetupMaterial,
    TrustedDevice,
    TwoFactorStatus,
    VerificationResult,
    VerificationStatus,
)
from .otp import OutOfBandOtpEngine

# Ports
from .ports import IAuditSink, ICodeStore, IDeliveryHook
from .rate_limit import RateLimiter
from .recovery import RecoveryCodeEngine

# Stores
from .store import InMemoryCodeStore, RecordKeys
from .totp import TotpEngine

__all__: list[str] = [
    # Manager
    "TwoFactorManager",
    # Engines
    "TotpEngine",
    "OutOfBandOtpEngine",
    "RecoveryCodeEngine",
    "DeviceTrustEngine",
    "RateLimiter",
    "RecoveryCodeHasher",
    # Configuration
    "TwoFactorConfig",
    "TotpConfig",
    "OtpMethodConfig",
    "RecoveryCodeConfig",
    "DeviceTrustConfig",
    "RateLimitConfig",
    "RateLimitRule",
    "StoreConfig",
    # Models
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
    # Ports
    "ICodeStore",
    "IDeliveryHook",
    "IAuditSink",
    # Stores
    "InMemoryCodeStore",
    "RecordKeys",
    # Time and randomness
    "Clock",
    "RandomSource",
    "SystemClock",
    "SecretsRandomSource",
    "ManualClock",
    # Audit
    "TwoFactorEventType",
    "TwoFactorAuditEvent",
    "InMemoryAuditSink",
    "setup_confirmed_event",
    "verification_event",
    "recovery_event",
    "method_event",
    # Exceptions
    "TwoFactorError",
    "ConfigurationError",
    "MethodNotEnabledError",
    "UnsupportedMethodError",
    "AlreadyEnabledError",
    "NotEnabledError",
    "InfrastructureError",
    "StorageError",
    "StorageConflictError",
    "DeliveryFailedError",
]
