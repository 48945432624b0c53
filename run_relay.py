#!/usr/bin/env python3
"""
Run Relay Server

Deploy this on a public server (cloud VPS, Render, etc.) so devices can
find each other and negotiate direct connections.

The listen port comes from $PORT (default 10000) unless --port is given.

Usage:
    python run_relay.py [--port 10000]
"""

import argparse
import asyncio
import logging

from common.config import load_config_from_env
from relay.server import run_relay_server


def main():
    config = load_config_from_env()

    parser = argparse.ArgumentParser(description="Signaling Relay Server")
    parser.add_argument("--host", default=config.relay.host, help="Host to bind to")
    parser.add_argument("--port", type=int, default=config.relay.port, help="Port to listen on")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    config.relay.host = args.host
    config.relay.port = args.port

    log_level = logging.DEBUG if args.debug else config.log_level
    logging.basicConfig(level=log_level, format=config.log_format)

    print(f"""
╔══════════════════════════════════════════════════════════════╗
║           Signaling Relay Server                             ║
╠══════════════════════════════════════════════════════════════╣
║  Devices connect to:                                         ║
║  ws://<your-server-ip>:{args.port}{config.relay.path:<38}║
╠══════════════════════════════════════════════════════════════╣
║  Listening on: {args.host}:{args.port:<37}║
╠══════════════════════════════════════════════════════════════╣
║  Press Ctrl+C to stop                                        ║
╚══════════════════════════════════════════════════════════════╝
""")

    try:
        asyncio.run(run_relay_server(config.relay))
    except KeyboardInterrupt:
        print("\nShutting down...")


if __name__ == "__main__":
    main()
