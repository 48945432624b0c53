"""
Signaling Configuration

Centralized configuration for the relay and the gateway.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


DEFAULT_PORT = 10000


@dataclass
class RelayConfig:
    """Relay server configuration."""
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    path: str = "/ws"

    # Transport heartbeat, defeats idle-connection timeouts on hosted proxies
    keepalive_interval: float = 20.0

    max_message_size: int = 1024 * 1024


@dataclass
class GatewayConfig:
    """Gateway agent configuration."""
    relay_url: str = f"ws://localhost:{DEFAULT_PORT}/ws"
    gateway_id: str = "gateway"

    keepalive_interval: float = 30.0
    reconnect_delay: float = 5.0

    # Fixed ICE configuration for every peer connection
    ice_servers: List[str] = field(default_factory=lambda: ["stun:stun.l.google.com:19302"])


@dataclass
class Config:
    """Master configuration."""
    relay: RelayConfig = field(default_factory=RelayConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


# Global default config
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def load_config_from_env() -> Config:
    """
    Load configuration from environment variables.

    Only PORT is read; everything else keeps its default.
    """
    config = Config()

    port = os.environ.get('PORT', '').strip()
    if port:
        config.relay.port = int(port)

    return config
