"""
Connection Registry

Maps device IDs to the live socket bound to them. One lock guards the
map; callers get the handle back and do their network I/O after the
lock is released.
"""

import asyncio
import logging
from typing import Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

Handle = TypeVar('Handle')


class ConnectionRegistry(Generic[Handle]):
    """Manages device registrations with lock-guarded operations."""

    def __init__(self):
        self._connections: Dict[str, Handle] = {}
        self._lock = asyncio.Lock()

    async def register(self, device_id: str, handle: Handle) -> Optional[Handle]:
        """
        Bind device_id to handle, replacing any prior binding.
        Returns the handle that was replaced, if any.
        """
        async with self._lock:
            previous = self._connections.get(device_id)
            self._connections[device_id] = handle

        if previous is not None and previous is not handle:
            # The superseded socket is left open until its own read loop ends
            logger.info(f"Re-registered: {device_id} (previous connection superseded)")
            return previous

        logger.info(f"Registered: {device_id}")
        return None

    async def unregister(self, device_id: str, handle: Handle) -> bool:
        """
        Remove the binding only if it still points at handle.

        A stale cleanup from an older connection never removes a fresher
        registration. Returns True if a binding was removed.
        """
        async with self._lock:
            if self._connections.get(device_id) is not handle:
                return False
            del self._connections[device_id]

        logger.info(f"Disconnected: {device_id}")
        return True

    async def lookup(self, device_id: str) -> Optional[Handle]:
        """Return the handle bound to device_id, or None."""
        async with self._lock:
            return self._connections.get(device_id)

    async def snapshot(self) -> Dict[str, Handle]:
        """Copy of the current bindings."""
        async with self._lock:
            return dict(self._connections)

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)
