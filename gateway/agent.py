"""
Gateway Agent

Keeps the gateway's own connection to the relay alive and feeds the
signaling it receives into the SessionManager.

Every (re)connect:
1. Dial the relay; on failure wait reconnect_delay and dial again, forever
2. Send {"type": "register", "from": <gateway_id>}
3. Start a fresh keepalive and dispatch loop for this link
4. When the link dies, tear both down and go back to 1

Sessions are keyed by remote device ID and survive link churn.
"""

import asyncio
import logging
from typing import Any, Callable, List, Optional, Set

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from common.config import GatewayConfig, get_config
from common.errors import LinkError, ProtocolError
from common.keepalive import Keepalive
from common.protocol import (
    MessageType,
    SignalEnvelope,
    parse_envelope,
    ping_envelope,
    register_envelope,
)
from gateway.session import PayloadSink, SessionManager

logger = logging.getLogger(__name__)


class RelayLink:
    """
    One connection to the relay with a single writer task.

    Everything written to the socket goes through send(), which queues;
    only the writer task touches websocket.send().
    """

    def __init__(self, websocket: ClientConnection):
        self.websocket = websocket
        self._outbound: "asyncio.Queue[str]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    def start(self) -> None:
        self._task = asyncio.create_task(self._write_loop(), name="relay-link-writer")

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, envelope: SignalEnvelope) -> None:
        """Queue an envelope for the writer. Raises LinkError once the link is down."""
        if self._closed:
            raise LinkError("Relay link closed")
        self._outbound.put_nowait(envelope.to_json())

    async def close(self) -> None:
        self._closed = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _write_loop(self) -> None:
        try:
            while True:
                message = await self._outbound.get()
                await self.websocket.send(message)
        except ConnectionClosed as e:
            logger.debug(f"Relay link writer stopped: {e}")
        finally:
            self._closed = True


class GatewayAgent:
    """
    Reconnection supervisor for the gateway's relay link.

    Features:
    - Infinite retry with a fixed backoff, never exits on link errors
    - Re-registers under the gateway ID on every connect
    - Serialized writes to the relay link
    - Each inbound offer or candidate is handled on its own task, so a
      slow negotiation never stalls the read loop
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        session_manager: Optional[SessionManager] = None,
        on_payload: Optional[PayloadSink] = None,
        peer_connection_factory: Optional[Callable[[List[str]], Any]] = None,
    ):
        self.config = config or get_config().gateway
        self.session_manager = session_manager or SessionManager(
            self.send_envelope,
            gateway_id=self.config.gateway_id,
            ice_servers=self.config.ice_servers,
            peer_connection_factory=peer_connection_factory,
            on_payload=on_payload,
        )

        self._link: Optional[RelayLink] = None
        self._handlers: Set[asyncio.Task] = set()
        self._running = False
        self._stop_event = asyncio.Event()
        self.connected = asyncio.Event()

        # Stats
        self.connects = 0
        self.failed_attempts = 0

    @property
    def gateway_id(self) -> str:
        return self.config.gateway_id

    async def send_envelope(self, envelope: SignalEnvelope) -> None:
        """Send over the current link. Raises LinkError if there is none."""
        link = self._link
        if link is None or link.closed:
            raise LinkError("Not connected to relay")
        await link.send(envelope)

    async def run(self) -> None:
        """Connect, serve, and reconnect until stop() is called."""
        self._running = True
        self._stop_event.clear()

        while self._running:
            try:
                logger.info(f"Connecting to relay server: {self.config.relay_url}")
                async with connect(self.config.relay_url, ping_interval=None) as websocket:
                    await self._serve_link(websocket)
                logger.warning("Relay link closed")
            except ConnectionClosed as e:
                logger.warning(f"Relay link lost: {e}")
            except Exception as e:
                self.failed_attempts += 1
                logger.warning(f"Failed to connect to relay: {e}")

            if not self._running:
                break

            logger.info(f"Reconnecting in {self.config.reconnect_delay}s")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.reconnect_delay)
            except asyncio.TimeoutError:
                pass

        logger.info("Gateway agent stopped")

    async def stop(self) -> None:
        """Stop reconnecting, drop the link and close every session."""
        self._running = False
        self._stop_event.set()

        link = self._link
        if link is not None:
            try:
                await link.websocket.close()
            except Exception as e:
                logger.debug(f"Error closing relay link: {e}")

        handlers = list(self._handlers)
        for task in handlers:
            task.cancel()
        await asyncio.gather(*handlers, return_exceptions=True)

        await self.session_manager.close_all()

    async def _serve_link(self, websocket: ClientConnection) -> None:
        """Register, then run keepalive and dispatch until the link dies."""
        link = RelayLink(websocket)
        link.start()
        self._link = link

        keepalive = Keepalive(
            lambda: link.send(ping_envelope(self.gateway_id)),
            self.config.keepalive_interval,
            name="relay-link",
        )

        try:
            await link.send(register_envelope(self.gateway_id))
            self.connects += 1
            self.connected.set()
            logger.info(f"Registered with relay as {self.gateway_id}")

            keepalive.start()

            async for message in websocket:
                self._dispatch(message)
        finally:
            self.connected.clear()
            self._link = None
            await keepalive.stop()
            await link.close()

    def _dispatch(self, message) -> Optional[asyncio.Task]:
        """
        Route one inbound frame to the SessionManager.

        Returns the handler task, or None if the frame was dropped. Tasks
        start in arrival order, so an offer's session is in the map before
        any candidate that followed it looks it up.
        """
        try:
            envelope = parse_envelope(message)
        except ProtocolError as e:
            logger.debug(f"Dropped malformed frame from relay: {e}")
            return None

        if envelope.type == MessageType.OFFER:
            if not envelope.sender or envelope.sdp is None:
                logger.debug("Dropped offer without sender or sdp")
                return None
            logger.info(f"Received offer from {envelope.sender}")
            return self._spawn(
                self.session_manager.handle_offer(envelope.sender, envelope.sdp),
                name=f"offer:{envelope.sender}",
            )

        if envelope.type == MessageType.CANDIDATE:
            if not envelope.sender or envelope.candidate is None:
                logger.debug("Dropped candidate without sender or payload")
                return None
            return self._spawn(
                self.session_manager.handle_candidate(envelope.sender, envelope.candidate),
                name=f"candidate:{envelope.sender}",
            )

        logger.debug(f"Ignoring {envelope.type.value} from {envelope.sender or 'relay'}")
        return None

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._handlers.add(task)
        task.add_done_callback(self._handler_done)
        return task

    def _handler_done(self, task: asyncio.Task) -> None:
        self._handlers.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Handler {task.get_name()} failed: {task.exception()}")


async def run_gateway(config: Optional[GatewayConfig] = None) -> None:
    """Run the gateway agent."""
    agent = GatewayAgent(config)

    try:
        await agent.run()
    finally:
        await agent.stop()
