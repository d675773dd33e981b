from __future__ import annotations

import asyncio
import logging
import signal

from motion_guard.config import Config, load_config
from motion_guard.events import Event
from motion_guard.service import SurveillanceService

logger = logging.getLogger(__name__)


def _log_event(event: Event) -> None:
    logger.info("event %s camera=%s %s", event.name, event.camera_id, event.payload)


async def run(config: Config) -> None:
    service = SurveillanceService(config)
    service.channel.subscribe(_log_event)

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_signal(signum: int) -> None:
        logger.info("Received signal %s, shutting down...", signum)
        shutdown.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, handle_signal, signum)

    await service.start()
    for camera_id in service.cameras.camera_ids():
        service.watch(camera_id)
    logger.info("Watching %d cameras", len(service.cameras.camera_ids()))

    try:
        await shutdown.wait()
    finally:
        await service.shutdown()
        logger.info("Shutdown complete")


def main() -> None:
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    asyncio.run(run(config))


if __name__ == "__main__":
    main()
