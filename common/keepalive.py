"""
Keepalive Supervisor

Periodic heartbeat on one connection, running beside that connection's
read loop. It never closes the connection: when a heartbeat cannot be
written it stops itself and leaves it to the read loop to notice the
dead transport.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from websockets.exceptions import ConnectionClosed

from common.errors import LinkError

logger = logging.getLogger(__name__)


class Keepalive:
    """
    Sends `beat()` every `interval` seconds until stopped or a write fails.
    """

    def __init__(self, beat: Callable[[], Awaitable[None]], interval: float, name: str = "connection"):
        self._beat = beat
        self.interval = interval
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self.beats_sent = 0

    def start(self) -> None:
        """Start the heartbeat task."""
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"keepalive:{self.name}")

    async def stop(self) -> None:
        """Cancel the heartbeat task and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self._beat()
            except (ConnectionClosed, LinkError, OSError) as e:
                logger.debug(f"Keepalive stopped for {self.name}: {e}")
                return
            self.beats_sent += 1
