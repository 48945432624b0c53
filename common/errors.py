"""
Signaling error taxonomy.

None of these are fatal to the process; each is caught at the boundary
of the loop that owns the failing resource.
"""


class SignalingError(Exception):
    """Base class for relay and gateway errors."""


class TransportError(SignalingError):
    """Upgrade, read or write failure on a socket. Ends the owning loop."""


class ProtocolError(SignalingError):
    """Malformed or unparseable envelope. The single frame is dropped."""


class RoutingMiss(SignalingError):
    """Target device is not registered. The forward is a no-op."""

    def __init__(self, target: str):
        super().__init__(f"No connection registered for {target!r}")
        self.target = target


class NegotiationError(SignalingError):
    """SDP or ICE application failed. The peer session is closed."""

    def __init__(self, device_id: str, message: str):
        super().__init__(f"{device_id}: {message}")
        self.device_id = device_id


class LinkError(SignalingError):
    """The gateway's own relay link is down."""
