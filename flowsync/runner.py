"""Standalone entry point for the sync engine.

Start with:  python -m flowsync.runner

Builds the engine from ``FLOWSYNC_*`` settings, initialises storage, runs
the scheduler, and stops cleanly on SIGINT/SIGTERM. A missing
``FLOWSYNC_ENCRYPTION_KEY`` aborts startup.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from flowsync.config import FlowSyncConfig
from flowsync.engine import FlowSyncEngine
from flowsync.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


async def run(config: FlowSyncConfig) -> None:
    """Main coroutine: start the engine and block until a stop signal."""
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    loop.add_signal_handler(signal.SIGINT, stop_event.set)

    engine = FlowSyncEngine.from_config(config)
    await engine.start()
    level = await engine.get_config("app.log_level")
    if level:
        logging.getLogger().setLevel(str(level).upper())
    status = engine.get_scheduler_status()
    logger.info("%s running (sync every %.0f min)", config.app_name, status.interval_seconds / 60)

    await stop_event.wait()

    logger.info("Shutting down; waiting for any in-flight sync pass")
    await engine.stop()
    logger.info("%s shut down cleanly", config.app_name)


def main() -> None:
    config = FlowSyncConfig()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    try:
        asyncio.run(run(config))
    except ConfigurationError as exc:
        logger.error("Startup aborted: %s", exc.message)
        sys.exit(2)


if __name__ == "__main__":
    main()
