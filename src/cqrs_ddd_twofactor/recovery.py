"""Recovery codes engine.

Generates and consumes single-use recovery codes that users can use when
they lose access to their primary second factor.
"""

from __future__ import annotations

import asyncio
import logging
import re
import string
from typing import TYPE_CHECKING, Any

from .hashing import RecoveryCodeHasher
from .models import RecoveryStatus
from .store import Change, RecordKeys, update_record

if TYPE_CHECKING:
    from .clock import Clock, RandomSource
    from .config import RecoveryCodeConfig
    from .ports import ICodeStore

logger = logging.getLogger("cqrs_ddd.twofactor.recovery")

_NON_ALNUM = re.compile(r"[^A-Z0-9]")


class RecoveryCodeEngine:
    """Recovery codes engine.

    A batch lives in a single record, so replacing it is one write and a
    mix of old and new codes can never be valid at the same time. Codes are
    stored as bcrypt hashes; consumption flips ``used_at`` with a
    compare-and-swap so the same code cannot be spent twice.

    Example:
        ```python
        codes = await engine.generate_batch("user-123")
        print(f"Save these codes: {codes}")

        # Later, when user needs to recover
        if await engine.consume("user-123", user_code) is RecoveryStatus.VERIFIED:
            # Allow access, primary factor bypassed
            pass
        ```
    """

    # Characters used in recovery codes (exclude ambiguous: 0, O, 1, I)
    ALPHABET = string.ascii_uppercase.replace("O", "").replace(
        "I", ""
    ) + string.digits.replace("0", "").replace("1", "")

    def __init__(
        self,
        *,
        config: RecoveryCodeConfig,
        store: ICodeStore,
        keys: RecordKeys,
        clock: Clock,
        random: RandomSource,
        hasher: RecoveryCodeHasher | None = None,
        cas_max_retries: int = 10,
    ) -> None:
        self.config = config
        self._store = store
        self._keys = keys
        self._clock = clock
        self._random = random
        self._hasher = hasher or RecoveryCodeHasher(rounds=config.hash_rounds)
        self._cas_max_retries = cas_max_retries

    def _generate_code(self) -> str:
        return "".join(
            self._random.choice(self.ALPHABET) for _ in range(self.config.code_length)
        )

    def _format_code(self, code: str) -> str:
        """Format code with dashes for readability (e.g. "ABCDE-FGHJK")."""
        size = self.config.group_size
        return "-".join(code[i : i + size] for i in range(0, len(code), size))

    def normalize(self, code: str) -> str:
        """Upper-case and strip spaces, dashes and anything else non-alphanumeric."""
        return _NON_ALNUM.sub("", code.upper())

    def looks_like_recovery_code(self, code: str) -> bool:
        """Check the shape of a code without touching stored hashes."""
        return len(self.normalize(code)) == self.config.code_length

    async def generate_batch(self, identity: str, count: int | None = None) -> list[str]:
        """Generate a new batch, replacing the previous one.

        NOTE: The returned plaintext codes should be shown to the user ONCE
        and then discarded. Only hashes are stored.

        Args:
            identity: Host user reference.
            count: Number of codes (defaults to the configured count).

        Returns:
            Formatted plaintext codes.

        Raises:
            ValueError: If ``count`` is not positive.
        """
        if count is None:
            count = self.config.count
        if count <= 0:
            raise ValueError(f"Recovery code count must be positive, got {count}")
        plain = [self._generate_code() for _ in range(count)]
        hashes = await asyncio.to_thread(lambda: [self._hasher.hash(c) for c in plain])

        await self._store.put(
            self._keys.recovery(identity),
            {
                "batch_id": self._random.token_bytes(8).hex(),
                "generated_at": self._clock.now().timestamp(),
                "codes": [{"hash": h, "used_at": None} for h in hashes],
            },
        )
        logger.info("Generated %d recovery codes for %s", count, identity)
        return [self._format_code(c) for c in plain]

    def _find(self, entries: list[dict[str, Any]], code: str) -> int | None:
        for index, entry in enumerate(entries):
            if self._hasher.verify(entry["hash"], code):
                return index
        return None

    async def consume(self, identity: str, code: str) -> RecoveryStatus:
        """Consume a recovery code (single-use).

        Args:
            identity: Host user reference.
            code: Submitted code, with or without separators.

        Returns:
            ``VERIFIED`` once, ``ALREADY_USED`` on any later attempt with the
            same code, ``INVALID`` if the code is not in the current batch.
        """
        if not self.looks_like_recovery_code(code):
            return RecoveryStatus.INVALID
        normalized = self.normalize(code)
        now = self._clock.now().timestamp()
        # Hash matches survive CAS retries as long as the batch is unchanged
        found: dict[str, int | None] = {}

        async def mutate(current: dict[str, Any] | None) -> Change[RecoveryStatus]:
            if current is None:
                return Change.keep(RecoveryStatus.INVALID)

            batch_id = current["batch_id"]
            if batch_id not in found:
                found[batch_id] = await asyncio.to_thread(
                    self._find, current["codes"], normalized
                )
            index = found[batch_id]
            if index is None:
                return Change.keep(RecoveryStatus.INVALID)
            if current["codes"][index]["used_at"] is not None:
                return Change.keep(RecoveryStatus.ALREADY_USED)

            codes = [dict(entry) for entry in current["codes"]]
            codes[index]["used_at"] = now
            return Change(result=RecoveryStatus.VERIFIED, value={**current, "codes": codes})

        status = await update_record(
            self._store,
            self._keys.recovery(identity),
            mutate,
            max_retries=self._cas_max_retries,
        )
        logger.debug("Recovery code consumption for %s: %s", identity, status.value)
        return status

    async def remaining(self, identity: str) -> int:
        """Number of unused codes in the current batch."""
        record = await self._store.get(self._keys.recovery(identity))
        if record is None:
            return 0
        return sum(1 for entry in record["codes"] if entry["used_at"] is None)

    async def has_codes(self, identity: str) -> bool:
        return await self._store.get(self._keys.recovery(identity)) is not None

    async def needs_regeneration(self, identity: str) -> bool:
        """Whether unused codes are at or below the regeneration threshold."""
        if not await self.has_codes(identity):
            return False
        return await self.remaining(identity) <= self.config.regenerate_threshold

    async def revoke(self, identity: str) -> None:
        """Delete the whole batch."""
        await self._store.delete(self._keys.recovery(identity))


__all__: list[str] = ["RecoveryCodeEngine"]
