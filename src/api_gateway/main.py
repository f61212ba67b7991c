"""
Main entry point for the API gateway core.

This module is responsible for:
- Parsing command-line arguments and the YAML configuration.
- Constructing and starting the Gateway (transport, demultiplexer, dispatcher).
- Issuing one request/response call and printing the reply.
- Managing the overall lifecycle (start, signal-driven shutdown, stop).
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from api_gateway.config_loader import build_settings, load_config
from api_gateway.errors import GatewayError
from api_gateway.gateway import Gateway

def setup_logging(level: int = logging.INFO):
    """
    Configures the global logging settings for the entire application.
    This should be called as early as possible during startup.
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)-8s] %(name)s.%(funcName)s: %(message)s'
    )

logger = logging.getLogger(__name__)

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="api-gateway",
                                     description="Send one request over the broker and print the reply.")
    parser.add_argument("operation", help="operation name, e.g. make_appointment")
    parser.add_argument("payload", nargs="?", default="{}", help="JSON request payload")
    parser.add_argument("--timeout", type=float, default=None, help="seconds to wait for the reply")
    parser.add_argument("--config", default="config.yaml", help="path to the YAML config file")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    return parser.parse_args(argv)

async def shutdown(signal_name: str, gateway: Gateway, task: Optional[asyncio.Task] = None):
    """Graceful shutdown handler."""
    logger.info(f"Received exit signal {signal_name}...")

    # Fails in-flight calls and disconnects the transport
    await gateway.stop()

    if task is not None and not task.done():
        task.cancel()

async def main_application_runner(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.debug else logging.INFO)

    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as e:
        logger.error(f"Payload is not valid JSON: {e}")
        return 2

    settings = build_settings(load_config(args.config))
    gateway = Gateway(settings)

    try:
        await gateway.start()
    except GatewayError as e:
        logger.error(f"Gateway failed to start: {e}")
        return 1

    loop = asyncio.get_running_loop()
    call_task = asyncio.create_task(gateway.call(args.operation, payload, timeout=args.timeout))

    # Ctrl+C / SIGTERM stop the gateway, which fails the pending call
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(
            sig,
            lambda s=sig: asyncio.create_task(shutdown(s.name, gateway, call_task))
        )

    try:
        reply = await call_task
    except asyncio.CancelledError:
        return 130
    except GatewayError as e:
        logger.error(f"Call to '{args.operation}' failed: {type(e).__name__}: {e}")
        return 1
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await gateway.stop()

    print(json.dumps(reply, indent=2))
    return 0

def run():
    try:
        sys.exit(asyncio.run(main_application_runner()))
    except KeyboardInterrupt:
        # Handled by the signal handler, but good to catch here just in case.
        pass

if __name__ == "__main__":
    run()
