"""
Rendezvous relay for device signaling.

Devices register under an opaque ID and exchange offer / answer /
candidate envelopes through this server.
"""

from .registry import ConnectionRegistry
from .server import RelayServer

__all__ = ['ConnectionRegistry', 'RelayServer']
