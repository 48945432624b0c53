"""
Gateway: terminates WebRTC negotiations from many devices and keeps its
own link to the relay alive.
"""

from .agent import GatewayAgent, RelayLink
from .session import PeerSession, SessionManager, SessionState

__all__ = ['GatewayAgent', 'RelayLink', 'PeerSession', 'SessionManager', 'SessionState']
