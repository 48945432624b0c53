"""
Shared pieces for the relay and the gateway: configuration, the signaling
envelope codec, the error taxonomy and the keepalive supervisor.
"""
