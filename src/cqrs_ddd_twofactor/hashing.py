"""Hashing of codes and tokens.

- Recovery codes: bcrypt (salted, slow) since they outlive a login.
- Out-of-band codes: HMAC-SHA256 under a per-challenge random salt; the
  short TTL and attempt cap bound offline guessing.
- Device tokens: SHA-256; the token carries 256 bits of entropy.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Any, cast


class RecoveryCodeHasher:
    """bcrypt hasher for recovery codes.

    Example:
        ```python
        hasher = RecoveryCodeHasher(rounds=10)
        hashed = hasher.hash("ABCDE23456")
        assert hasher.verify(hashed, "ABCDE23456")
        ```
    """

    def __init__(self, *, rounds: int = 10) -> None:
        """Initialize the hasher.

        Args:
            rounds: bcrypt cost factor (4-31).
        """
        self.rounds = rounds
        self._bcrypt: Any = None

    def _get_bcrypt(self) -> Any:
        """Lazy import bcrypt."""
        if self._bcrypt is None:
            try:
                import bcrypt

                self._bcrypt = bcrypt
            except ImportError as e:
                raise ImportError(
                    "bcrypt is required for recovery code hashing. "
                    "Install with: pip install bcrypt"
                ) from e
        return self._bcrypt

    def hash(self, code: str) -> str:
        bcrypt_module = self._get_bcrypt()
        salt = bcrypt_module.gensalt(rounds=self.rounds)
        return bcrypt_module.hashpw(code.encode(), salt).decode()  # type: ignore[no-any-return]

    def verify(self, hashed: str, code: str) -> bool:
        """Check a code against a stored hash in constant time."""
        bcrypt_module = self._get_bcrypt()
        try:
            return cast("bool", bcrypt_module.checkpw(code.encode(), hashed.encode()))
        except ValueError:
            # Malformed hash
            return False


def otp_digest(salt: str, code: str) -> str:
    """Keyed digest of an out-of-band code."""
    return hmac.new(bytes.fromhex(salt), code.encode(), hashlib.sha256).hexdigest()


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def digests_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


__all__: list[str] = [
    "RecoveryCodeHasher",
    "otp_digest",
    "token_digest",
    "digests_equal",
]
