"""
Gateway Session Manager

Terminates one WebRTC negotiation per remote device. Each session owns a
peer connection, the data channel the remote side opens on it, and one
task that consumes the session's events in the order they were raised:

    idle -> negotiating -> answered -> connected -> closed

Callbacks from the peer connection (ICE candidate discovered, data channel
opened, message received, connection state changed) only enqueue events;
the session task does the work, so candidate trickling and lifecycle
transitions are observed in order.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from aiortc import (
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from common.errors import LinkError, NegotiationError, ProtocolError
from common.protocol import (
    IceCandidateInit,
    SdpKind,
    SessionDescription,
    SignalEnvelope,
    answer_envelope,
    candidate_envelope,
)

logger = logging.getLogger(__name__)

CANDIDATE_PREFIX = "candidate:"

Payload = Union[str, bytes]
SendEnvelope = Callable[[SignalEnvelope], Awaitable[None]]
PayloadSink = Callable[[str, Payload], None]


class SessionState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    ANSWERED = "answered"
    CONNECTED = "connected"
    CLOSED = "closed"


class SessionEvent(Enum):
    CANDIDATE = "candidate"
    DATA_CHANNEL = "datachannel"
    CHANNEL_OPEN = "open"
    CHANNEL_CLOSE = "channel_close"
    MESSAGE = "message"
    CONNECTION_STATE = "connectionstatechange"
    CLOSE = "close"


@dataclass
class PeerSession:
    """One negotiation with one remote device."""
    device_id: str
    peer_connection: Any
    data_channel: Any = None
    state: SessionState = SessionState.IDLE

    events: "asyncio.Queue[Tuple[SessionEvent, Any]]" = field(default_factory=asyncio.Queue)
    closed: asyncio.Event = field(default_factory=asyncio.Event)
    # Set once the offer is applied (or the session dies first)
    remote_described: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None

    @property
    def is_live(self) -> bool:
        return self.state != SessionState.CLOSED

    def post(self, kind: SessionEvent, value: Any = None) -> None:
        """Enqueue an event unless the session is already closed."""
        if not self.closed.is_set():
            self.events.put_nowait((kind, value))


def create_peer_connection(ice_servers: List[str]) -> RTCPeerConnection:
    """Build a peer connection with the fixed ICE configuration."""
    config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
    return RTCPeerConnection(configuration=config)


def candidate_to_init(candidate: RTCIceCandidate) -> IceCandidateInit:
    """Wrap a locally discovered candidate for the wire (browser form)."""
    return IceCandidateInit(
        candidate=CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        sdp_mid=candidate.sdpMid or "",
        sdp_mline_index=candidate.sdpMLineIndex or 0,
    )


def candidate_from_init(init: IceCandidateInit) -> RTCIceCandidate:
    """Parse a remote candidate. Raises ProtocolError if it is not valid SDP."""
    sdp = init.candidate.strip()
    if sdp.startswith(CANDIDATE_PREFIX):
        sdp = sdp[len(CANDIDATE_PREFIX):]

    try:
        candidate = candidate_from_sdp(sdp)
    except (AssertionError, ValueError, IndexError) as e:
        raise ProtocolError(f"Invalid ICE candidate {init.candidate!r}: {e}") from None

    candidate.sdpMid = init.sdp_mid or None
    candidate.sdpMLineIndex = init.sdp_mline_index
    return candidate


def embedded_candidates(sdp: str) -> List[IceCandidateInit]:
    """
    Candidates listed as a=candidate lines in an SDP blob, in order.

    aiortc gathers during setLocalDescription and writes every candidate
    into the description instead of raising icecandidate events; this
    recovers them so they can still be trickled to the remote side.
    """
    sections: List[Tuple[str, List[str]]] = []
    for line in sdp.splitlines():
        line = line.strip()
        if line.startswith("m="):
            sections.append(("", []))
        elif not sections:
            continue
        elif line.startswith("a=mid:"):
            sections[-1] = (line[len("a=mid:"):], sections[-1][1])
        elif line.startswith("a=" + CANDIDATE_PREFIX):
            sections[-1][1].append(line[2:])

    return [
        IceCandidateInit(candidate=candidate, sdp_mid=mid, sdp_mline_index=index)
        for index, (mid, candidates) in enumerate(sections)
        for candidate in candidates
    ]


class SessionManager:
    """
    Owns every PeerSession, keyed by remote device ID.

    The session map is guarded by one lock; replacing a session closes the
    old one and constructs the new one without releasing it. Negotiation
    itself runs outside the lock, so a slow offer only delays candidates
    for its own device. The map lives as long as the manager, independent
    of the relay link.
    """

    def __init__(
        self,
        send: SendEnvelope,
        gateway_id: str = "gateway",
        ice_servers: Optional[List[str]] = None,
        peer_connection_factory: Optional[Callable[[List[str]], Any]] = None,
        on_payload: Optional[PayloadSink] = None,
    ):
        self._send = send
        self.gateway_id = gateway_id
        self.ice_servers = list(ice_servers or [])
        self._factory = peer_connection_factory or create_peer_connection
        self.on_payload = on_payload

        self._sessions: Dict[str, PeerSession] = {}
        self._lock = asyncio.Lock()

        # Stats
        self._offers_handled = 0
        self._negotiation_failures = 0
        self._candidates_applied = 0
        self._candidates_dropped = 0
        self._candidates_sent = 0

    # -------------------------------------------------------------------------
    # Inbound signaling
    # -------------------------------------------------------------------------

    async def handle_offer(self, sender_id: str, offer: SessionDescription) -> Optional[PeerSession]:
        """
        Answer an offer from sender_id.

        Any existing session for sender_id is closed first. Returns the new
        session, or None if negotiation failed (the session is then closed).
        """
        async with self._lock:
            previous = self._sessions.pop(sender_id, None)
            if previous is not None:
                logger.info(f"New offer from {sender_id}, closing previous session")
                await self._close_session(previous)

            self._offers_handled += 1
            try:
                session = self._open_session(sender_id)
            except Exception as e:
                self._negotiation_failures += 1
                logger.error(f"Negotiation failed: {NegotiationError(sender_id, f'peer connection: {e}')}")
                return None
            self._sessions[sender_id] = session

        try:
            await self._negotiate(session, offer)
        except Exception as e:
            error = e if isinstance(e, NegotiationError) else NegotiationError(sender_id, str(e) or type(e).__name__)
            self._negotiation_failures += 1
            logger.error(f"Negotiation failed: {error}")
            await self._retire(session)
            return None

        return session

    async def handle_candidate(self, sender_id: str, init: IceCandidateInit) -> bool:
        """
        Apply a remote ICE candidate to sender_id's session.

        Returns False when the candidate was dropped: no session exists for
        sender_id, the candidate is an end-of-candidates marker, it does
        not parse, or the session died before the offer was applied.
        Waits for the session's remote description when it is still
        being set.
        """
        async with self._lock:
            session = self._sessions.get(sender_id)

        if session is None:
            self._candidates_dropped += 1
            logger.debug(f"Dropped candidate from {sender_id}: no session")
            return False

        if not init.candidate.strip():
            return False

        try:
            candidate = candidate_from_init(init)
        except ProtocolError as e:
            self._candidates_dropped += 1
            logger.debug(f"Dropped candidate from {sender_id}: {e}")
            return False

        await session.remote_described.wait()
        if session.closed.is_set():
            self._candidates_dropped += 1
            logger.debug(f"Dropped candidate from {sender_id}: session closed")
            return False

        try:
            await session.peer_connection.addIceCandidate(candidate)
        except Exception as e:
            self._negotiation_failures += 1
            logger.error(f"Negotiation failed: {NegotiationError(sender_id, f'addIceCandidate: {e}')}")
            await self._retire(session)
            return False

        self._candidates_applied += 1
        return True

    # -------------------------------------------------------------------------
    # Data channel
    # -------------------------------------------------------------------------

    async def send_data(self, device_id: str, data: Payload) -> None:
        """Write to device_id's data channel. Raises LookupError if it is not open."""
        async with self._lock:
            session = self._sessions.get(device_id)

        if session is None or session.state != SessionState.CONNECTED or session.data_channel is None:
            raise LookupError(f"No connected data channel for {device_id}")

        session.data_channel.send(data)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self, device_id: str) -> bool:
        """Close device_id's session. Returns False if there was none."""
        async with self._lock:
            session = self._sessions.pop(device_id, None)
            if session is None:
                return False
            await self._close_session(session)
        return True

    async def close_all(self) -> None:
        """Close every session (gateway shutdown)."""
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            for session in sessions:
                await self._close_session(session)

    def get(self, device_id: str) -> Optional[PeerSession]:
        return self._sessions.get(device_id)

    def sessions(self) -> Dict[str, SessionState]:
        """Snapshot of {device_id: state}."""
        return {device_id: s.state for device_id, s in self._sessions.items()}

    @property
    def stats(self) -> dict:
        return {
            'active_sessions': len(self._sessions),
            'offers_handled': self._offers_handled,
            'negotiation_failures': self._negotiation_failures,
            'candidates_applied': self._candidates_applied,
            'candidates_dropped': self._candidates_dropped,
            'candidates_sent': self._candidates_sent,
        }

    def _open_session(self, device_id: str) -> PeerSession:
        """Create a session, wire its event sinks and start its event task."""
        pc = self._factory(self.ice_servers)
        session = PeerSession(device_id=device_id, peer_connection=pc)

        @pc.on("icecandidate")
        def on_icecandidate(candidate) -> None:
            session.post(SessionEvent.CANDIDATE, candidate)

        @pc.on("datachannel")
        def on_datachannel(channel) -> None:
            # Channel handlers are attached here so no message is missed
            # between the channel arriving and the session task seeing it
            @channel.on("open")
            def on_open() -> None:
                session.post(SessionEvent.CHANNEL_OPEN, channel)

            @channel.on("close")
            def on_close() -> None:
                session.post(SessionEvent.CHANNEL_CLOSE, channel)

            @channel.on("message")
            def on_message(message) -> None:
                session.post(SessionEvent.MESSAGE, message)

            session.post(SessionEvent.DATA_CHANNEL, channel)

        @pc.on("connectionstatechange")
        def on_connectionstatechange() -> None:
            session.post(SessionEvent.CONNECTION_STATE, pc.connectionState)

        session.task = asyncio.create_task(self._consume_events(session), name=f"session:{device_id}")
        return session

    async def _negotiate(self, session: PeerSession, offer: SessionDescription) -> None:
        if offer.kind != SdpKind.OFFER:
            raise NegotiationError(session.device_id, f"expected an offer, got {offer.kind.value}")

        pc = session.peer_connection

        await pc.setRemoteDescription(RTCSessionDescription(sdp=offer.sdp, type=offer.kind.value))
        self._check_open(session)
        session.state = SessionState.NEGOTIATING
        session.remote_described.set()

        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        self._check_open(session)
        session.state = SessionState.ANSWERED

        # localDescription carries whatever candidates were gathered so far
        local = pc.localDescription or answer
        try:
            await self._send(answer_envelope(self.gateway_id, session.device_id, local.sdp))
        except LinkError as e:
            raise NegotiationError(session.device_id, f"answer not sent: {e}") from None

        logger.info(f"Sent answer to {session.device_id}")

        # Trickled after the answer, through the session task like any other
        for init in embedded_candidates(local.sdp):
            session.post(SessionEvent.CANDIDATE, init)

    @staticmethod
    def _check_open(session: PeerSession) -> None:
        # Replaced or closed while an SDP step was in flight
        if session.closed.is_set():
            raise NegotiationError(session.device_id, "session closed during negotiation")

    async def _consume_events(self, session: PeerSession) -> None:
        """Session task: handle events in order until the session closes."""
        while True:
            kind, value = await session.events.get()
            if kind is SessionEvent.CLOSE or session.closed.is_set():
                return
            try:
                await self._handle_event(session, kind, value)
            except Exception as e:
                logger.error(f"Error handling {kind.value} for {session.device_id}: {e}")

    async def _handle_event(self, session: PeerSession, kind: SessionEvent, value: Any) -> None:
        if kind is SessionEvent.CANDIDATE:
            if value is None:
                logger.debug(f"ICE gathering complete for {session.device_id}")
                return
            init = value if isinstance(value, IceCandidateInit) else candidate_to_init(value)
            envelope = candidate_envelope(self.gateway_id, session.device_id, init)
            try:
                await self._send(envelope)
            except LinkError as e:
                logger.debug(f"Candidate for {session.device_id} not sent: {e}")
                return
            self._candidates_sent += 1

        elif kind is SessionEvent.DATA_CHANNEL:
            session.data_channel = value
            logger.info(f"DataChannel '{value.label}' received from {session.device_id}")
            # aiortc announces answerer-side channels already open
            if value.readyState == "open":
                self._mark_connected(session)

        elif kind is SessionEvent.CHANNEL_OPEN:
            if value is session.data_channel:
                self._mark_connected(session)

        elif kind is SessionEvent.CHANNEL_CLOSE:
            logger.info(f"DataChannel closed for {session.device_id}")

        elif kind is SessionEvent.MESSAGE:
            self._deliver(session.device_id, value)

        elif kind is SessionEvent.CONNECTION_STATE:
            logger.info(f"Connection state for {session.device_id}: {value}")
            if value in ("failed", "closed"):
                if value == "failed":
                    self._negotiation_failures += 1
                await self._retire(session)

    def _mark_connected(self, session: PeerSession) -> None:
        if session.state in (SessionState.CONNECTED, SessionState.CLOSED):
            return
        session.state = SessionState.CONNECTED
        logger.info(f"Session connected: {session.device_id}")

    def _deliver(self, device_id: str, data: Payload) -> None:
        """Hand a data-channel payload to the external sink."""
        if self.on_payload is None:
            logger.debug(f"Payload from {device_id}: {len(data)} bytes (no sink)")
            return
        try:
            self.on_payload(device_id, data)
        except Exception as e:
            logger.error(f"Payload sink failed for {device_id}: {e}")

    async def _retire(self, session: PeerSession) -> None:
        """Remove session from the map if it is still current, then close it."""
        async with self._lock:
            if self._sessions.get(session.device_id) is session:
                del self._sessions[session.device_id]
        await self._close_session(session)

    async def _close_session(self, session: PeerSession) -> None:
        """
        Tear down a session: stop its task, drop event subscriptions, close
        the data channel and the peer connection. Idempotent.
        """
        if session.closed.is_set():
            return
        session.closed.set()
        session.state = SessionState.CLOSED
        # Releases candidates still waiting on this session's offer
        session.remote_described.set()
        session.events.put_nowait((SessionEvent.CLOSE, None))

        task = session.task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        pc = session.peer_connection
        pc.remove_all_listeners()

        if session.data_channel is not None:
            try:
                session.data_channel.close()
            except Exception as e:
                logger.debug(f"Error closing data channel for {session.device_id}: {e}")

        try:
            await pc.close()
        except Exception as e:
            logger.debug(f"Error closing peer connection for {session.device_id}: {e}")

        logger.info(f"Session closed: {session.device_id}")
