"""Entry point for the meshcall signaling relay."""

import asyncio
import logging
from typing import Optional

from meshcall.config import get_config
from meshcall.relay.server import SignalingRelay


def run_relay(host: Optional[str] = None, port: Optional[int] = None):
    """Create a SignalingRelay and serve until interrupted.

    Args:
        host: Interface to bind. CLI option overrides config file.
        port: Port to listen on. CLI option overrides config file.
    """
    config = get_config()
    config.override("relay", host=host, port=port)

    relay = SignalingRelay(config.relay)
    try:
        asyncio.run(relay.serve_forever())
    except KeyboardInterrupt:
        logging.info("Relay interrupted by user. Shutting down...")
    finally:
        logging.info("Relay exiting...")
