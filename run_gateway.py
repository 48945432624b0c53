#!/usr/bin/env python3
"""
Run Gateway Agent

Connects to a relay, registers under a fixed ID and answers WebRTC
offers from any device that addresses it. Reconnects on its own when
the relay goes away.

Usage:
    python run_gateway.py [--relay ws://relay.example.com:10000/ws] [--id gateway]
"""

import argparse
import asyncio
import logging

from common.config import get_config
from gateway.agent import run_gateway


def main():
    config = get_config()

    parser = argparse.ArgumentParser(description="Signaling Gateway")
    parser.add_argument("--relay", default=config.gateway.relay_url,
                        help="Relay URL (e.g., ws://relay.example.com:10000/ws)")
    parser.add_argument("--id", default=config.gateway.gateway_id, help="Device ID to register as")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    config.gateway.relay_url = args.relay
    config.gateway.gateway_id = args.id

    log_level = logging.DEBUG if args.debug else config.log_level
    logging.basicConfig(level=log_level, format=config.log_format)

    try:
        asyncio.run(run_gateway(config.gateway))
    except KeyboardInterrupt:
        print("\nStopping...")


if __name__ == "__main__":
    main()
