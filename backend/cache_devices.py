"""
Device ownership cache.

Every sync operation first confirms that the calling device belongs to
the calling account. That lookup is hot and rarely changes, so it is
served from a short-TTL read-through cache in front of `EventRepo`.

Staleness is bounded by the TTL and by `invalidate()`, which the sync
service calls after each successful write to the device. The cache is
only an admission check; it plays no part in event conflict resolution.
"""

import logging
from typing import Optional

from cache_memory import CacheBackend
from errors import NotFoundError
from models import Device

logger = logging.getLogger(__name__)

KEY_PREFIX = "device:"


class OwnershipCache:
    """Read-through cache mapping a device id to its `Device` record.

    Example usage:
        cache = OwnershipCache(InMemoryCache(), repo, ttl=300)
        cache.verify_ownership(device_id, owner_id)
    """

    def __init__(self, backend: CacheBackend, repo, ttl: Optional[float] = None):
        self.backend = backend
        self.repo = repo
        self.ttl = ttl

    def get(self, device_id: str) -> Optional[Device]:
        return self.backend.get(KEY_PREFIX + device_id)

    def set(self, device_id: str, device: Device, ttl: Optional[float] = None) -> None:
        self.backend.set(KEY_PREFIX + device_id, device, self.ttl if ttl is None else ttl)

    def invalidate(self, device_id: str) -> None:
        self.backend.delete(KEY_PREFIX + device_id)

    def clear(self) -> None:
        """Forget every cached device; other keys in a shared backend survive."""
        self.backend.delete_prefix(KEY_PREFIX)

    def lookup(self, device_id: str) -> Optional[Device]:
        """Return the active device, consulting the store on a cache miss.

        Inactive or unknown devices are never cached, so a device that is
        re-activated externally is picked up on the next call.
        """

        device = self.get(device_id)
        if device is not None:
            return device

        device = self.repo.get_device(device_id)
        if device is None or not device.active:
            return None

        self.set(device_id, device)
        logger.debug("Device %s cached for owner %s", device_id, device.owner_id)
        return device

    def verify_ownership(self, device_id: str, owner_id: str) -> Device:
        """Fail closed unless `device_id` is active and owned by `owner_id`."""

        device = self.lookup(device_id)
        if device is None:
            raise NotFoundError("Device not found or inactive")
        if device.owner_id != owner_id:
            raise NotFoundError("Device does not belong to user")
        return device
