"""
PosSync sync agent - Main entry point.

This module runs a headless sync agent for one device:
- Opens the durable offline queue
- Runs the reconciler loop against the inventory API
- Stops cleanly on SIGINT / SIGTERM

Usage:
    python -m possync_sdk.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Logging is configured before any component starts
    - Shutdown stops the reconciler before the queue is closed

How to change safely:
    - Test the shutdown sequence with mutations still queued
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .client import InventoryClient
from .config import ClientConfig, ObservabilityConfig

logger = logging.getLogger(__name__)


def setup_logging(config: ObservabilityConfig) -> None:
    """Configure the root logger.

    Args:
        config: Logging configuration
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class SyncAgent:
    """Runs an InventoryClient's reconciler until shutdown is requested.

    Example:
        >>> agent = SyncAgent(ClientConfig.from_env())
        >>> await agent.start()  # Runs until request_shutdown()
    """

    def __init__(self, config: ClientConfig | None = None) -> None:
        self.config = config or ClientConfig.from_env()
        self.client: InventoryClient | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Connect, sync once, then run the reconciler loop."""
        self.config.log_config()
        self.client = InventoryClient(self.config)
        try:
            await self.client.connect()
            self._running = True

            summary = await self.client.sync_now()
            logger.info("Initial sync finished", extra=summary.to_dict())

            self.client.start_sync()
            logger.info("Sync agent started")

            await self._shutdown_event.wait()
        except Exception as e:
            logger.error(f"Sync agent startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the reconciler and release resources."""
        if self.client is None:
            return
        logger.info("Stopping sync agent")
        client, self.client = self.client, None
        await client.close()
        self._running = False
        logger.info("Sync agent stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ClientConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.observability)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    agent = SyncAgent(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        agent.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(agent.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(agent.stop())
        loop.close()


if __name__ == "__main__":
    main()
