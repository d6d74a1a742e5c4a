"""
Transient handles for source images and results.

Plays the part browsers give to object URLs: every encoded image a job holds
is registered here under an opaque `blob:` id, and must be released exactly
once when the owning job goes away. `live_handles()` makes leaks visible.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Dict, List
import uuid

logger = logging.getLogger(__name__)


class HandleReleased(KeyError):
    """Raised when reading a handle that has already been released."""


class ResourceHandle:
    def __init__(self, registry: "HandleRegistry", handle_id: str, content_type: str, size: int):
        self._registry = registry
        self.id = handle_id
        self.content_type = content_type
        self.size = size

    @property
    def released(self) -> bool:
        return not self._registry.is_live(self.id)

    def read(self) -> bytes:
        return self._registry.read(self.id)

    def release(self) -> bool:
        """Free the underlying bytes. Returns False if already released."""
        return self._registry.revoke(self.id)

    def __repr__(self) -> str:
        state = "released" if self.released else "live"
        return f"ResourceHandle({self.id!r}, {self.content_type}, {self.size}B, {state})"


class HandleRegistry:
    def __init__(self, prefix: str = "blob:cutout/"):
        self._prefix = prefix
        self._data: Dict[str, bytes] = {}
        self._lock = Lock()

    def create(self, data: bytes, content_type: str = "application/octet-stream") -> ResourceHandle:
        handle_id = f"{self._prefix}{uuid.uuid4()}"
        with self._lock:
            self._data[handle_id] = bytes(data)
        logger.debug("resources: created %s (%d bytes)", handle_id, len(data))
        return ResourceHandle(self, handle_id, content_type, len(data))

    def read(self, handle_id: str) -> bytes:
        with self._lock:
            try:
                return self._data[handle_id]
            except KeyError:
                raise HandleReleased(handle_id) from None

    def revoke(self, handle_id: str) -> bool:
        with self._lock:
            data = self._data.pop(handle_id, None)
        if data is None:
            return False
        logger.debug("resources: released %s", handle_id)
        return True

    def is_live(self, handle_id: str) -> bool:
        with self._lock:
            return handle_id in self._data

    def live_handles(self) -> List[str]:
        with self._lock:
            return list(self._data)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
