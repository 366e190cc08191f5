"""
Device Fingerprint Service
Generates a stable pseudonymous device identifier for anonymous voting.
"""

import hashlib
import logging
import platform
import secrets
import socket
import string
import time
import uuid
from typing import Dict, Optional

from .interfaces import IEntropySource
from ...infrastructure.local_storage import DEVICE_ID_KEY, SessionStorage

logger = logging.getLogger(__name__)


class PlatformEntropySource(IEntropySource):
    """Samples host characteristics that stay stable across restarts."""

    def sample(self) -> Dict[str, str]:
        return {
            "hostname": socket.gethostname(),
            "node": format(uuid.getnode(), "x"),
            "system": platform.system(),
            "release": platform.release(),
            "machine": platform.machine(),
            "processor": platform.processor(),
            "python": platform.python_implementation(),
        }


def hash_components(components: Dict[str, str]) -> str:
    """SHA256 over the sorted components, truncated to 32 hex chars."""
    combined = "|".join(f"{k}={components[k]}" for k in sorted(components))
    return hashlib.sha256(combined.encode()).hexdigest()[:32]


def generate_fallback_id() -> str:
    suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(11))
    return f"fallback-{int(time.time() * 1000)}-{suffix}"


class FingerprintService:
    """
    First call samples entropy and persists the hash; later calls return the
    stored value without recomputing. If sampling fails a random fallback id is
    persisted instead: a degraded fingerprint beats blocking the user.
    """

    def __init__(self, storage: SessionStorage, entropy_source: Optional[IEntropySource] = None):
        self.storage = storage
        self.entropy_source = entropy_source or PlatformEntropySource()
        self._cached: Optional[str] = None

    def get_fingerprint(self) -> str:
        if self._cached:
            return self._cached

        stored = self.storage.get_item(DEVICE_ID_KEY)
        if stored:
            self._cached = stored
            return stored

        try:
            fingerprint = hash_components(self.entropy_source.sample())
        except Exception as e:
            logger.error(f"Error generating fingerprint: {e}")
            fingerprint = generate_fallback_id()

        self._cached = fingerprint
        self.storage.set_item(DEVICE_ID_KEY, fingerprint)
        return fingerprint

    async def get_device_fingerprint(self) -> str:
        """Awaitable spelling used by the async services."""
        return self.get_fingerprint()

    def clear(self) -> None:
        self._cached = None
        self.storage.remove_item(DEVICE_ID_KEY)

    def get_fingerprint_info(self) -> Optional[Dict[str, object]]:
        """Visitor id and sampled component names (debugging)."""
        try:
            components = self.entropy_source.sample()
        except Exception as e:
            logger.error(f"Error getting fingerprint info: {e}")
            return None
        return {
            "visitor_id": hash_components(components),
            "components": sorted(components),
        }
