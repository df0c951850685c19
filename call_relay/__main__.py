"""
Entry point for running the call relay.

Usage:
    python -m call_relay

Serves the webhook endpoint, the observer WebSocket and the control API on
HOST:PORT (default 0.0.0.0:3000).
"""
import uvicorn

from logging_setup import setup_logging
from call_relay.config import get_config

if __name__ == "__main__":
    config = get_config()
    setup_logging(level=config.log_level, use_json=config.log_json)

    uvicorn.run(
        "call_relay.server:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
