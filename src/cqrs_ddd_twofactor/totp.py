"""TOTP (Time-based One-Time Password) engine.

Works with any RFC 6238 authenticator app:
- Google Authenticator
- Microsoft Authenticator
- Authy
- 1Password
- FreeOTP

Stateless: only the shared secret is persisted, so a
TOTP login challenge has no server-side side effect.

Uses pyotp library internally.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import TYPE_CHECKING, Any

from .config import TotpConfig

if TYPE_CHECKING:
    from datetime import datetime

    from .clock import RandomSource

_DIGESTS = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}


class TotpEngine:
    """TOTP secret generation, provisioning and verification.

    Example:
        ```python
        engine = TotpEngine(TotpConfig(issuer="MyApp"), SecretsRandomSource())

        secret = engine.generate_secret()
        uri = engine.provisioning_uri("user-123", secret)

        if engine.verify_code(secret, "123456", clock.now()):
            print("Valid!")
        ```
    """

    def __init__(self, config: TotpConfig, random: RandomSource) -> None:
        """Initialize TOTP engine.

        Args:
            config: Digits, step, drift window, algorithm and issuer.
            random: Source of secret material.
        """
        self.config = config
        self._random = random

    def _get_pyotp(self) -> Any:
        """Lazy import pyotp."""
        try:
            import pyotp

            return pyotp
        except ImportError as e:
            raise ImportError(
                "pyotp is required for TOTP support. "
                "Install with: pip install pyotp"
            ) from e

    def _totp(self, secret: str) -> Any:
        pyotp = self._get_pyotp()
        return pyotp.TOTP(
            secret,
            digits=self.config.digits,
            digest=_DIGESTS[self.config.algorithm],
            interval=self.config.step_seconds,
        )

    def generate_secret(self) -> str:
        """Generate a base32 secret (160 bits by default)."""
        raw = self._random.token_bytes(self.config.secret_bytes)
        return base64.b32encode(raw).decode("ascii").rstrip("=")

    def provisioning_uri(
        self, identity: str, secret: str, issuer: str | None = None
    ) -> str:
        """Build the ``otpauth://totp/...`` URI for QR rendering.

        Args:
            identity: Account label shown in the app.
            secret: Base32 secret.
            issuer: Overrides the configured issuer.
        """
        return str(
            self._totp(secret).provisioning_uri(
                name=identity,
                issuer_name=issuer or self.config.issuer,
            )
        )

    def format_secret(self, secret: str) -> str:
        """Format secret for manual entry.

        Args:
            secret: Base32 secret.

        Returns:
            Secret formatted as groups of 4 characters.
        """
        secret = secret.rstrip("=")
        return " ".join(secret[i : i + 4] for i in range(0, len(secret), 4))

    def current_code(self, secret: str, at: datetime) -> str:
        """Compute the code valid at ``at``."""
        return str(self._totp(secret).at(at))

    def match_step(self, secret: str, code: str, at: datetime) -> int | None:
        """Find the time step a submitted code belongs to.

        Every step inside ``±drift_window`` is compared in constant time and
        no comparison short-circuits the loop.

        Returns:
            The matching step counter, or None.
        """
        code = code.strip().replace(" ", "")
        if len(code) != self.config.digits or not code.isdigit():
            return None

        totp = self._totp(secret)
        base = int(totp.timecode(at))
        matched: int | None = None
        window = self.config.drift_window
        for offset in range(-window, window + 1):
            candidate = str(totp.at(at, offset))
            if hmac.compare_digest(candidate.encode(), code.encode()) and matched is None:
                matched = base + offset
        return matched

    def verify_code(self, secret: str, code: str, at: datetime) -> bool:
        """Verify a code against the drift window around ``at``."""
        return self.match_step(secret, code, at) is not None


__all__: list[str] = ["TotpEngine"]
