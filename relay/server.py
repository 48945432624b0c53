"""
Relay Server

WebSocket rendezvous relay. Devices register under an ID and exchange
signaling envelopes (offer / answer / candidate) addressed to each other.

Architecture:
    phone --> [Relay Server] <-- gateway
                   |
         Registry: {"phone": ws, "gateway": ws}

How it works:
1. Device connects to the socket path and sends {"type": "register", "from": <id>}
2. Relay binds the ID to that connection
3. Frames carrying a `to` are looked up in the registry and forwarded,
   with `from` overwritten by the sender's registered ID
4. When the socket closes the ID is unregistered
"""

import logging
from http import HTTPStatus
from typing import Dict, Optional

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from common.config import RelayConfig, get_config
from common.errors import ProtocolError, RoutingMiss, TransportError
from common.keepalive import Keepalive
from common.protocol import MessageType, SignalEnvelope, parse_envelope
from relay.registry import ConnectionRegistry

logger = logging.getLogger(__name__)

HEALTH_PATHS = ("/", "/health")
HEALTH_BODY = "Signaling relay is LIVE\n"


class RelayServer:
    """
    WebSocket signaling relay.

    Each accepted connection gets a read loop (the router) and a
    keepalive task; both end when the socket dies.
    """

    def __init__(self, config: Optional[RelayConfig] = None, registry: Optional[ConnectionRegistry] = None):
        self.config = config or get_config().relay
        self.registry: ConnectionRegistry[ServerConnection] = registry or ConnectionRegistry()

        self._server: Optional[Server] = None
        self._keepalives: Dict[ServerConnection, Keepalive] = {}

        # Stats
        self._total_connections = 0
        self._frames_forwarded = 0
        self._routing_misses = 0
        self._dropped_frames = 0
        self._keepalive_pings = 0
        self._failed_writes = 0

    async def listen(self) -> None:
        """Bind the listening socket."""
        self._server = await serve(
            self._handle_connection,
            self.config.host,
            self.config.port,
            process_request=self._process_request,
            max_size=self.config.max_message_size,
            # Heartbeats come from our own Keepalive task
            ping_interval=None,
        )
        logger.info(f"Relay server listening on ws://{self.config.host}:{self.port}{self.config.path}")

    async def start(self) -> None:
        """Start the relay server and serve until cancelled."""
        if self._server is None:
            await self.listen()
        await self._server.serve_forever()

    async def stop(self) -> None:
        """Stop the relay server and close every connection."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("Relay server stopped")

    @property
    def port(self) -> int:
        """Port actually bound (differs from config when it asked for 0)."""
        if self._server is None:
            return self.config.port
        return self._server.sockets[0].getsockname()[1]

    def _process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        """Answer liveness probes; only the socket path is upgraded."""
        path = request.path.split('?', 1)[0]
        if path == self.config.path:
            return None
        if path in HEALTH_PATHS:
            return connection.respond(HTTPStatus.OK, HEALTH_BODY)
        return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Read loop for one device connection."""
        remote = websocket.remote_address
        client_ip = remote[0] if remote else "unknown"
        self._total_connections += 1
        logger.debug(f"New connection from {client_ip}")

        keepalive = Keepalive(websocket.ping, self.config.keepalive_interval, name=client_ip)
        keepalive.start()
        self._keepalives[websocket] = keepalive

        identity: Optional[str] = None
        try:
            async for message in websocket:
                identity = await self._route(websocket, identity, message)

        except ConnectionClosed:
            logger.debug(f"Connection closed: {client_ip}")
        except Exception as e:
            logger.error(f"Error handling connection from {client_ip}: {e}")
        finally:
            await keepalive.stop()
            del self._keepalives[websocket]
            self._keepalive_pings += keepalive.beats_sent
            if identity is not None:
                await self.registry.unregister(identity, websocket)

    async def _route(self, websocket: ServerConnection, identity: Optional[str], message) -> Optional[str]:
        """Handle one frame. Returns the connection's identity after the frame."""
        try:
            envelope = parse_envelope(message)
        except ProtocolError as e:
            self._dropped_frames += 1
            logger.debug(f"Dropped malformed frame from {identity or 'unregistered'}: {e}")
            return identity

        if envelope.type == MessageType.PING:
            return identity

        if envelope.type == MessageType.REGISTER:
            if not envelope.sender:
                self._dropped_frames += 1
                logger.debug("Dropped register without a device ID")
                return identity
            if identity is not None and identity != envelope.sender:
                await self.registry.unregister(identity, websocket)
            await self.registry.register(envelope.sender, websocket)
            return envelope.sender

        if not envelope.is_routable:
            self._dropped_frames += 1
            return identity

        if identity is None:
            # Sender cannot be verified until it registers
            self._dropped_frames += 1
            logger.debug(f"Dropped {envelope.type.value} from unregistered connection")
            return identity

        try:
            await self._forward(identity, envelope)
        except RoutingMiss as e:
            self._routing_misses += 1
            logger.debug(f"{envelope.type.value} from {identity} dropped: {e}")
        except TransportError as e:
            self._failed_writes += 1
            logger.debug(f"{envelope.type.value} from {identity} lost: {e}")

        return identity

    async def _forward(self, sender: str, envelope: SignalEnvelope) -> None:
        """Deliver envelope to its target, stamped with the verified sender."""
        target = await self.registry.lookup(envelope.target)
        if target is None:
            raise RoutingMiss(envelope.target)

        try:
            await target.send(envelope.with_sender(sender).to_json())
        except ConnectionClosed as e:
            # The target's own read loop unregisters it
            raise TransportError(f"write to {envelope.target} failed: {e}") from e

        self._frames_forwarded += 1
        logger.info(f"{envelope.type.value}: {sender} -> {envelope.target}")

    @property
    def stats(self) -> dict:
        """Get server statistics."""
        return {
            'registered_devices': len(self.registry),
            'total_connections': self._total_connections,
            'frames_forwarded': self._frames_forwarded,
            'routing_misses': self._routing_misses,
            'failed_writes': self._failed_writes,
            'dropped_frames': self._dropped_frames,
            'keepalives_running': sum(1 for k in self._keepalives.values() if k.running),
            'keepalive_pings': self._keepalive_pings + sum(k.beats_sent for k in self._keepalives.values()),
        }


async def run_relay_server(config: Optional[RelayConfig] = None) -> None:
    """Run the relay server."""
    server = RelayServer(config)

    try:
        await server.start()
    finally:
        await server.stop()
