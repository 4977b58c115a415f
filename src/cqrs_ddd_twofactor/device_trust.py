"""Trusted device engine ("remember this device").

The raw token exists only in transit to the client. The store keeps its
SHA-256 digest together with the device fingerprint and expiry, one record
per identity.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .clock import from_timestamp
from .hashing import digests_equal, token_digest
from .models import DeviceStatus, IssuedDevice, TrustedDevice
from .store import Change, RecordKeys, update_record

if TYPE_CHECKING:
    from .clock import Clock, RandomSource
    from .config import DeviceTrustConfig
    from .ports import ICodeStore

logger = logging.getLogger("cqrs_ddd.twofactor.device_trust")

# Expired entries outlive their expiry so a late presentation reports EXPIRED
_EXPIRED_RETENTION_SECONDS = 24 * 3600


def _find(devices: dict[str, Any], digest: str) -> str | None:
    """Digest of the matching entry, compared in constant time."""
    matched: str | None = None
    for stored in devices:
        if digests_equal(stored, digest) and matched is None:
            matched = stored
    return matched


class DeviceTrustEngine:
    """Issues and validates long-lived device exemptions.

    Example:
        ```python
        issued = await engine.issue("user-123", fingerprint="ua-hash")
        response.set_cookie("two_factor_remember", issued.token)

        # Next login
        status = await engine.validate("user-123", cookie, fingerprint="ua-hash")
        ```
    """

    def __init__(
        self,
        *,
        config: DeviceTrustConfig,
        store: ICodeStore,
        keys: RecordKeys,
        clock: Clock,
        random: RandomSource,
        cas_max_retries: int = 10,
    ) -> None:
        self.config = config
        self._store = store
        self._keys = keys
        self._clock = clock
        self._random = random
        self._cas_max_retries = cas_max_retries

    def _record_ttl(self, devices: dict[str, Any], now: float) -> int:
        latest = max(entry["expires_at"] for entry in devices.values())
        return max(int(latest - now) + 1, 1) + _EXPIRED_RETENTION_SECONDS

    def _pruned(self, current: dict[str, Any] | None, now: float) -> dict[str, Any]:
        if current is None:
            return {}
        return {
            digest: dict(entry)
            for digest, entry in current["devices"].items()
            if entry["expires_at"] >= now
        }

    async def issue(
        self,
        identity: str,
        fingerprint: str | None = None,
        ttl: int | None = None,
    ) -> IssuedDevice:
        """Trust a device.

        Args:
            identity: Host user reference.
            fingerprint: Host-computed device fingerprint (optional).
            ttl: Lifetime in seconds (defaults to the configured TTL).

        Returns:
            The raw token, to be stored client-side by the host.

        Raises:
            ValueError: If ``ttl`` is not positive.
        """
        if ttl is None:
            ttl = self.config.ttl_seconds
        if ttl <= 0:
            raise ValueError(f"Device trust TTL must be positive, got {ttl}")

        token = self._random.token_urlsafe(32)
        device_id = self._random.token_bytes(8).hex()
        now = self._clock.now().timestamp()
        expires_at = now + ttl

        def mutate(current: dict[str, Any] | None) -> Change[None]:
            devices = self._pruned(current, now)
            devices[token_digest(token)] = {
                "device_id": device_id,
                "fingerprint": fingerprint,
                "created_at": now,
                "last_used_at": None,
                "expires_at": expires_at,
            }
            return Change(
                result=None,
                value={"devices": devices},
                ttl=self._record_ttl(devices, now),
            )

        await update_record(
            self._store,
            self._keys.devices(identity),
            mutate,
            max_retries=self._cas_max_retries,
        )
        logger.info("Trusted device %s for %s", device_id, identity)
        return IssuedDevice(
            device_id=device_id, token=token, expires_at=from_timestamp(expires_at)
        )

    async def validate(
        self, identity: str, token: str, fingerprint: str | None = None
    ) -> DeviceStatus:
        """Check a presented device token.

        Args:
            identity: Host user reference.
            token: Raw token from the client.
            fingerprint: Fingerprint of the presenting device.

        Returns:
            ``TRUSTED``, ``EXPIRED`` (entry removed) or ``NOT_TRUSTED``.
        """
        if not token:
            return DeviceStatus.NOT_TRUSTED
        digest = token_digest(token)
        now = self._clock.now().timestamp()

        def mutate(current: dict[str, Any] | None) -> Change[DeviceStatus]:
            if current is None:
                return Change.keep(DeviceStatus.NOT_TRUSTED)
            matched = _find(current["devices"], digest)
            if matched is None:
                return Change.keep(DeviceStatus.NOT_TRUSTED)

            entry = current["devices"][matched]
            if now > entry["expires_at"]:
                devices = self._pruned(current, now)
                devices.pop(matched, None)
                if not devices:
                    return Change(result=DeviceStatus.EXPIRED, value=None)
                return Change(
                    result=DeviceStatus.EXPIRED,
                    value={"devices": devices},
                    ttl=self._record_ttl(devices, now),
                )

            stored_fp = entry["fingerprint"]
            if self.config.fingerprint_validation and stored_fp is not None:
                if fingerprint is None or not digests_equal(stored_fp, fingerprint):
                    return Change.keep(DeviceStatus.NOT_TRUSTED)

            devices = {d: dict(e) for d, e in current["devices"].items()}
            devices[matched]["last_used_at"] = now
            return Change(
                result=DeviceStatus.TRUSTED,
                value={"devices": devices},
                ttl=self._record_ttl(devices, now),
            )

        return await update_record(
            self._store,
            self._keys.devices(identity),
            mutate,
            max_retries=self._cas_max_retries,
        )

    async def revoke(self, identity: str, token: str) -> None:
        """Forget one device. Idempotent."""
        digest = token_digest(token)
        now = self._clock.now().timestamp()

        def mutate(current: dict[str, Any] | None) -> Change[None]:
            if current is None:
                return Change.keep(None)
            matched = _find(current["devices"], digest)
            if matched is None:
                return Change.keep(None)
            devices = {d: dict(e) for d, e in current["devices"].items()}
            del devices[matched]
            if not devices:
                return Change(result=None, value=None)
            return Change(
                result=None,
                value={"devices": devices},
                ttl=self._record_ttl(devices, now),
            )

        await update_record(
            self._store,
            self._keys.devices(identity),
            mutate,
            max_retries=self._cas_max_retries,
        )

    async def revoke_all(self, identity: str) -> None:
        """Forget every device of an identity. Idempotent."""
        await self._store.delete(self._keys.devices(identity))

    async def list_devices(self, identity: str) -> list[TrustedDevice]:
        """Unexpired trusted devices, oldest first."""
        now = self._clock.now().timestamp()
        record = await self._store.get(self._keys.devices(identity))
        devices = self._pruned(record, now)
        return sorted(
            (
                TrustedDevice(
                    device_id=entry["device_id"],
                    fingerprint=entry["fingerprint"],
                    created_at=from_timestamp(entry["created_at"]),
                    last_used_at=(
                        from_timestamp(entry["last_used_at"])
                        if entry["last_used_at"] is not None
                        else None
                    ),
                    expires_at=from_timestamp(entry["expires_at"]),
                )
                for entry in devices.values()
            ),
            key=lambda device: device.created_at,
        )


__all__: list[str] = ["DeviceTrustEngine"]
