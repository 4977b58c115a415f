"""Two-factor exceptions.

Expected verification outcomes (wrong code, expired code, rate limited) are
NOT exceptions: they are returned as result values. Exceptions are reserved
for misconfiguration, invalid use of the API and infrastructure faults.
"""

from __future__ import annotations

# ═══════════════════════════════════════════════════════════════
# BASE ERROR
# ═══════════════════════════════════════════════════════════════


class TwoFactorError(Exception):
    """Root exception for the two-factor engine."""


# ═══════════════════════════════════════════════════════════════
# CONFIGURATION ERRORS
# ═══════════════════════════════════════════════════════════════


class ConfigurationError(TwoFactorError):
    """Raised when the configuration is missing a setting or holds a bad value.

    Attributes:
        field: Dotted name of the offending setting, if known.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class MethodNotEnabledError(ConfigurationError):
    """Raised when a method is used that is disabled in configuration."""

    def __init__(self, method: str) -> None:
        super().__init__(
            f"Two-factor method '{method}' is not enabled in configuration",
            field="enabled_methods",
        )
        self.method = method


# ═══════════════════════════════════════════════════════════════
# STATE ERRORS
# ═══════════════════════════════════════════════════════════════


class UnsupportedMethodError(TwoFactorError):
    """Raised when an operation is not defined for a method.

    Example: recovery codes cannot be set up or challenged directly.
    """

    def __init__(self, method: str, operation: str) -> None:
        super().__init__(f"Operation '{operation}' is not supported for '{method}'")
        self.method = method
        self.operation = operation


class AlreadyEnabledError(TwoFactorError):
    """Raised when setup is started for a method that is already confirmed."""

    def __init__(self, method: str) -> None:
        super().__init__(f"Two-factor method '{method}' is already enabled")
        self.method = method


class NotEnabledError(TwoFactorError):
    """Raised when an operation requires an enabled method the identity lacks."""


# ═══════════════════════════════════════════════════════════════
# INFRASTRUCTURE ERRORS
# ═══════════════════════════════════════════════════════════════


class InfrastructureError(TwoFactorError):
    """Base class for storage and delivery faults.

    The engine never retries these; the host decides on fallback.
    """


class StorageError(InfrastructureError):
    """Raised when the code store is unavailable or returns garbage."""


class StorageConflictError(StorageError):
    """Raised when a compare-and-swap loop gives up under contention."""

    def __init__(self, key: str, attempts: int) -> None:
        super().__init__(
            f"Conditional write on '{key}' lost {attempts} races in a row"
        )
        self.key = key
        self.attempts = attempts


class DeliveryFailedError(InfrastructureError):
    """Raised when the delivery hook could not hand off a code."""

    def __init__(self, method: str, message: str | None = None) -> None:
        super().__init__(message or f"Delivery of '{method}' code failed")
        self.method = method


__all__: list[str] = [
    # Base
    "TwoFactorError",
    # Configuration
    "ConfigurationError",
    "MethodNotEnabledError",
    # State
    "UnsupportedMethodError",
    "AlreadyEnabledError",
    "NotEnabledError",
    # Infrastructure
    "InfrastructureError",
    "StorageError",
    "StorageConflictError",
    "DeliveryFailedError",
]
