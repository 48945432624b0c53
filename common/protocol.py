"""
Signaling Protocol Definition

JSON text envelopes exchanged over the relay socket:

    {"type": "offer", "from": "phone", "to": "gateway", "sdp": "v=0..."}

`from` is the canonical sender field. The relay overwrites it with the
identity it registered for the sending connection before forwarding.
"""

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Union

from common.errors import ProtocolError


# =============================================================================
# Message Types
# =============================================================================

class MessageType(str, Enum):
    REGISTER = "register"     # Device -> Relay: bind identity to this socket
    OFFER = "offer"           # Device -> Device: SDP offer
    ANSWER = "answer"         # Device -> Device: SDP answer
    CANDIDATE = "candidate"   # Device -> Device: trickled ICE candidate
    PING = "ping"             # Device -> Relay: keepalive, never forwarded


class SdpKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"


# Types the relay forwards to the `to` device
ROUTABLE_TYPES = frozenset({MessageType.OFFER, MessageType.ANSWER, MessageType.CANDIDATE})

MAX_MLINE_INDEX = 0xFFFF


# =============================================================================
# Payload Dataclasses
# =============================================================================

@dataclass(frozen=True)
class SessionDescription:
    """SDP payload with its role in the negotiation."""
    kind: SdpKind
    sdp: str

    def to_dict(self) -> Dict[str, str]:
        return {'kind': self.kind.value, 'sdp': self.sdp}

    @classmethod
    def from_value(cls, value: Any, default_kind: SdpKind) -> 'SessionDescription':
        """Accept either {kind, sdp} or a bare SDP string."""
        if isinstance(value, str):
            return cls(kind=default_kind, sdp=value)

        if not isinstance(value, dict):
            raise ProtocolError(f"sdp must be an object or string, got {type(value).__name__}")

        sdp = value.get('sdp')
        if not isinstance(sdp, str):
            raise ProtocolError("sdp.sdp must be a string")

        # Browsers serialize RTCSessionDescription with `type` instead of `kind`
        kind = value.get('kind', value.get('type', default_kind.value))
        try:
            kind = SdpKind(kind)
        except ValueError:
            raise ProtocolError(f"Unknown sdp kind: {kind!r}") from None

        return cls(kind=kind, sdp=sdp)


@dataclass(frozen=True)
class IceCandidateInit:
    """Trickled ICE candidate, as produced by RTCIceCandidate.toJSON()."""
    candidate: str
    sdp_mid: str = ""
    sdp_mline_index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'candidate': self.candidate,
            'sdpMid': self.sdp_mid,
            'sdpMLineIndex': self.sdp_mline_index,
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'IceCandidateInit':
        if not isinstance(data, dict):
            raise ProtocolError("candidate must be an object")

        candidate = data.get('candidate')
        if not isinstance(candidate, str):
            raise ProtocolError("candidate.candidate must be a string")

        sdp_mid = data.get('sdpMid') or ""
        if not isinstance(sdp_mid, str):
            raise ProtocolError("candidate.sdpMid must be a string")

        index = data.get('sdpMLineIndex') or 0
        # bool is an int subclass; reject it explicitly
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index <= MAX_MLINE_INDEX:
            raise ProtocolError(f"candidate.sdpMLineIndex out of range: {index!r}")

        return cls(candidate=candidate, sdp_mid=sdp_mid, sdp_mline_index=index)


# =============================================================================
# Envelope
# =============================================================================

@dataclass(frozen=True)
class SignalEnvelope:
    """One signaling frame. Immutable once parsed."""
    type: MessageType
    sender: str = ""
    target: str = ""
    sdp: Optional[SessionDescription] = None
    candidate: Optional[IceCandidateInit] = None

    # Remembers a bare-string sdp so a forwarded frame keeps the sender's shape
    bare_sdp: bool = field(default=False, compare=False)

    @property
    def is_routable(self) -> bool:
        return self.type in ROUTABLE_TYPES and bool(self.target)

    def with_sender(self, sender: str) -> 'SignalEnvelope':
        """Copy of this envelope stamped with a verified sender."""
        return replace(self, sender=sender)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'type': self.type.value, 'from': self.sender}
        if self.target:
            data['to'] = self.target
        if self.sdp is not None:
            data['sdp'] = self.sdp.sdp if self.bare_sdp else self.sdp.to_dict()
        if self.candidate is not None:
            data['candidate'] = self.candidate.to_dict()
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(',', ':'))


def parse_envelope(raw: Union[str, bytes]) -> SignalEnvelope:
    """
    Parse one text frame into a SignalEnvelope.

    Raises ProtocolError for anything that is not a well-formed envelope.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not UTF-8: {e}") from None

    try:
        data = json.loads(raw)
    except ValueError as e:
        raise ProtocolError(f"Invalid JSON: {e}") from None

    if not isinstance(data, dict):
        raise ProtocolError("Envelope must be a JSON object")

    try:
        msg_type = MessageType(data.get('type'))
    except ValueError:
        raise ProtocolError(f"Unknown message type: {data.get('type')!r}") from None

    sender = data.get('from') or ""
    target = data.get('to') or ""
    if not isinstance(sender, str) or not isinstance(target, str):
        raise ProtocolError("from/to must be strings")

    sdp = None
    bare_sdp = False
    if data.get('sdp') is not None:
        default_kind = SdpKind.ANSWER if msg_type == MessageType.ANSWER else SdpKind.OFFER
        bare_sdp = isinstance(data['sdp'], str)
        sdp = SessionDescription.from_value(data['sdp'], default_kind)

    candidate = None
    if data.get('candidate') is not None:
        candidate = IceCandidateInit.from_dict(data['candidate'])

    return SignalEnvelope(
        type=msg_type,
        sender=sender,
        target=target,
        sdp=sdp,
        candidate=candidate,
        bare_sdp=bare_sdp,
    )


# =============================================================================
# Constructors
# =============================================================================

def register_envelope(device_id: str) -> SignalEnvelope:
    return SignalEnvelope(type=MessageType.REGISTER, sender=device_id)


def ping_envelope(device_id: str) -> SignalEnvelope:
    return SignalEnvelope(type=MessageType.PING, sender=device_id)


def answer_envelope(sender: str, target: str, sdp: str) -> SignalEnvelope:
    return SignalEnvelope(
        type=MessageType.ANSWER,
        sender=sender,
        target=target,
        sdp=SessionDescription(kind=SdpKind.ANSWER, sdp=sdp),
    )


def candidate_envelope(sender: str, target: str, candidate: IceCandidateInit) -> SignalEnvelope:
    return SignalEnvelope(
        type=MessageType.CANDIDATE,
        sender=sender,
        target=target,
        candidate=candidate,
    )
