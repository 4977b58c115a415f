"""Two-factor configuration.

All tunables live in one explicit, immutable object passed to the manager at
construction. Nothing is read from ambient global state.

Example:
    ```python
    config = TwoFactorConfig.from_mapping({
        "enabled_methods": ["totp", "email"],
        "totp": {"issuer": "Acme"},
        "email": {"ttl_seconds": 600},
        "rate_limit": {"verify": {"max_attempts": 5, "window_seconds": 900}},
    })
    ```
"""

from __future__ import annotations

from dataclasses import MISSING, dataclass, field, fields, is_dataclass, replace
from typing import Any, Literal

from .exceptions import ConfigurationError
from .models import Method

TotpAlgorithm = Literal["sha1", "sha256", "sha512"]


@dataclass(frozen=True)
class TotpConfig:
    """TOTP configuration.

    Attributes:
        issuer: Application name shown in authenticator apps.
        digits: Code length (6 or 8).
        step_seconds: Time step in seconds.
        drift_window: Accepted steps before/after the current one.
        algorithm: HMAC digest.
        secret_bytes: Random bytes in a generated secret (20 = 160 bits).
        reject_replayed_codes: Refuse a step at or before the last accepted one.
    """

    issuer: str = "cqrs-ddd"
    digits: int = 6
    step_seconds: int = 30
    drift_window: int = 1
    algorithm: TotpAlgorithm = "sha1"
    secret_bytes: int = 20
    reject_replayed_codes: bool = True


@dataclass(frozen=True)
class OtpMethodConfig:
    """Out-of-band (email/SMS) OTP configuration.

    Attributes:
        code_length: Number of digits in a code.
        ttl_seconds: Lifetime of a code.
        max_attempts: Wrong guesses before the challenge is voided.
        resend_cooldown_seconds: Minimum gap between two sends.
    """

    code_length: int = 6
    ttl_seconds: int = 300  # 5 minutes
    max_attempts: int = 3
    resend_cooldown_seconds: int = 60


@dataclass(frozen=True)
class RecoveryCodeConfig:
    """Recovery code configuration.

    Attributes:
        enabled: Generate recovery codes on enablement.
        count: Codes per batch.
        code_length: Characters per code (excluding separators).
        group_size: Characters per display group.
        regenerate_threshold: Suggest regeneration at or below this many.
        hash_rounds: bcrypt cost factor.
    """

    enabled: bool = True
    count: int = 10
    code_length: int = 10
    group_size: int = 5
    regenerate_threshold: int = 3
    hash_rounds: int = 10


@dataclass(frozen=True)
class DeviceTrustConfig:
    """Trusted device configuration.

    Attributes:
        enabled: Allow "remember this device".
        ttl_seconds: Default token lifetime.
        fingerprint_validation: Require a matching fingerprint on validation.
    """

    enabled: bool = True
    ttl_seconds: int = 30 * 24 * 3600  # 30 days
    fingerprint_validation: bool = True


@dataclass(frozen=True)
class RateLimitRule:
    """Fixed-window threshold."""

    max_attempts: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitConfig:
    """Rate limit configuration.

    Attributes:
        enabled: Apply rate limiting at all.
        verify: Limit on verification attempts per (identity, method).
        send: Limit on out-of-band code sends per (identity, method).
    """

    enabled: bool = True
    verify: RateLimitRule = field(
        default_factory=lambda: RateLimitRule(max_attempts=5, window_seconds=900)
    )
    send: RateLimitRule = field(
        default_factory=lambda: RateLimitRule(max_attempts=5, window_seconds=3600)
    )


@dataclass(frozen=True)
class StoreConfig:
    """Code store layout.

    Attributes:
        key_prefix: Namespace prepended to every key.
        cas_max_retries: Compare-and-swap attempts before giving up.
    """

    key_prefix: str = "two_factor"
    cas_max_retries: int = 10


@dataclass(frozen=True)
class TwoFactorConfig:
    """Root configuration object.

    Attributes:
        enabled_methods: Primary methods users may set up.
        totp: TOTP settings.
        email: Email OTP settings.
        sms: SMS OTP settings.
        recovery_codes: Recovery code settings.
        device_trust: Trusted device settings.
        rate_limit: Rate limit settings.
        store: Store key layout and retry bound.
    """

    enabled_methods: frozenset[Method] = frozenset({Method.TOTP, Method.EMAIL})
    totp: TotpConfig = field(default_factory=TotpConfig)
    email: OtpMethodConfig = field(default_factory=OtpMethodConfig)
    sms: OtpMethodConfig = field(default_factory=OtpMethodConfig)
    recovery_codes: RecoveryCodeConfig = field(default_factory=RecoveryCodeConfig)
    device_trust: DeviceTrustConfig = field(default_factory=DeviceTrustConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    store: StoreConfig = field(default_factory=StoreConfig)

    def is_method_enabled(self, method: Method) -> bool:
        if method is Method.RECOVERY:
            return self.recovery_codes.enabled
        return method in self.enabled_methods

    def otp_config(self, method: Method) -> OtpMethodConfig:
        if method is Method.EMAIL:
            return self.email
        if method is Method.SMS:
            return self.sms
        raise ConfigurationError(f"No OTP settings for method '{method.value}'")

    def validate(self) -> TwoFactorConfig:
        """Check value ranges.

        Returns:
            self, for chaining.

        Raises:
            ConfigurationError: Naming the first offending field.
        """
        _check_types(self, path="")
        for method in self.enabled_methods:
            if not isinstance(method, Method) or not method.is_primary:
                raise ConfigurationError(
                    f"'{method.value}' cannot be listed as a primary method",
                    field="enabled_methods",
                )

        checks: list[tuple[str, bool]] = [
            ("totp.digits", self.totp.digits in (6, 7, 8)),
            ("totp.step_seconds", self.totp.step_seconds > 0),
            ("totp.drift_window", self.totp.drift_window >= 0),
            ("totp.algorithm", self.totp.algorithm in ("sha1", "sha256", "sha512")),
            ("totp.secret_bytes", self.totp.secret_bytes >= 10),
            ("totp.issuer", bool(self.totp.issuer)),
            ("recovery_codes.count", self.recovery_codes.count > 0),
            ("recovery_codes.code_length", self.recovery_codes.code_length >= 8),
            ("recovery_codes.group_size", self.recovery_codes.group_size > 0),
            ("recovery_codes.hash_rounds", 4 <= self.recovery_codes.hash_rounds <= 31),
            ("device_trust.ttl_seconds", self.device_trust.ttl_seconds > 0),
            ("store.cas_max_retries", self.store.cas_max_retries > 0),
            ("store.key_prefix", bool(self.store.key_prefix)),
        ]
        for name, otp in (("email", self.email), ("sms", self.sms)):
            checks += [
                (f"{name}.code_length", 4 <= otp.code_length <= 10),
                (f"{name}.ttl_seconds", otp.ttl_seconds > 0),
                (f"{name}.max_attempts", otp.max_attempts > 0),
                (f"{name}.resend_cooldown_seconds", otp.resend_cooldown_seconds >= 0),
            ]
        for name, rule in (
            ("rate_limit.verify", self.rate_limit.verify),
            ("rate_limit.send", self.rate_limit.send),
        ):
            checks += [
                (f"{name}.max_attempts", rule.max_attempts > 0),
                (f"{name}.window_seconds", rule.window_seconds > 0),
            ]

        for name, ok in checks:
            if not ok:
                raise ConfigurationError(f"Invalid value for '{name}'", field=name)
        return self

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> TwoFactorConfig:
        """Build a validated config from a nested mapping.

        Unknown keys are rejected rather than ignored.

        Args:
            data: Mapping shaped like this dataclass tree.

        Raises:
            ConfigurationError: On unknown keys, bad types or bad values.
        """
        data = dict(data)
        methods = data.pop("enabled_methods", None)
        config = _build(cls, data, path="")
        if methods is not None:
            try:
                parsed = frozenset(Method(m) for m in methods)
            except ValueError as e:
                raise ConfigurationError(
                    f"Unknown method in enabled_methods: {e}", field="enabled_methods"
                ) from e
            config = replace(config, enabled_methods=parsed)
        return config.validate()


def _build(cls: Any, data: dict[str, Any], path: str) -> Any:
    known = {f.name: f for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        name = f"{path}{key}"
        if key not in known:
            raise ConfigurationError(f"Unknown setting '{name}'", field=name)
        default = _default_of(known[key])
        if is_dataclass(default) and not isinstance(value, dict):
            raise ConfigurationError(f"Setting '{name}' must be a mapping", field=name)
        if is_dataclass(default):
            kwargs[key] = _build(type(default), value, path=f"{name}.")
        else:
            kwargs[key] = value
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ConfigurationError(
            f"Incomplete settings under '{path or '<root>'}': {e}",
            field=path.rstrip(".") or None,
        ) from e


_SCALAR_TYPES: dict[str, type] = {
    "int": int,
    "bool": bool,
    "str": str,
    "TotpAlgorithm": str,
}


def _check_types(obj: Any, path: str) -> None:
    for f in fields(obj):
        name = f"{path}{f.name}"
        value = getattr(obj, f.name)
        default = _default_of(f)
        if is_dataclass(default):
            if not isinstance(value, type(default)):
                raise ConfigurationError(
                    f"Setting '{name}' must be a {type(default).__name__}", field=name
                )
            _check_types(value, path=f"{name}.")
            continue

        expected = _SCALAR_TYPES.get(str(f.type))
        if expected is None:
            continue
        # bool is a subclass of int
        wrong_bool = expected is int and isinstance(value, bool)
        if wrong_bool or not isinstance(value, expected):
            raise ConfigurationError(
                f"Setting '{name}' must be {expected.__name__}, "
                f"got {type(value).__name__}",
                field=name,
            )
    if isinstance(obj, TwoFactorConfig) and not isinstance(
        obj.enabled_methods, (set, frozenset)
    ):
        raise ConfigurationError(
            "Setting 'enabled_methods' must be a set of methods",
            field="enabled_methods",
        )


def _default_of(f: Any) -> Any:
    if f.default_factory is not MISSING:
        return f.default_factory()
    return f.default


__all__: list[str] = [
    "TotpConfig",
    "OtpMethodConfig",
    "RecoveryCodeConfig",
    "DeviceTrustConfig",
    "RateLimitRule",
    "RateLimitConfig",
    "StoreConfig",
    "TwoFactorConfig",
]
