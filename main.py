"""
Entry point for the download queue service.
"""

import asyncio
import logging
import signal
import sys

from aiohttp import web
from dotenv import load_dotenv

load_dotenv()

from broadcaster import ProgressBroadcaster  # noqa: E402
from config import (  # noqa: E402
    CLEANUP_INTERVAL_SECONDS,
    DATABASE_PATH,
    HOST,
    LOG_FORMAT,
    LOG_LEVEL,
    PORT,
)
from errors import SystemFailure, setup_logging  # noqa: E402
from executor import YtDlpExecutor  # noqa: E402
from handlers import create_app  # noqa: E402
from managers import QueueManager  # noqa: E402
from recovery import cleanup_old_downloads, recover_download_queue  # noqa: E402
from store import JobStore  # noqa: E402

shutdown_event = asyncio.Event()


async def run_periodic_cleanup(store: JobStore, interval: int = CLEANUP_INTERVAL_SECONDS) -> None:
    """Delete expired completed/failed records until shutdown."""
    logger = logging.getLogger(__name__)
    while not shutdown_event.is_set():
        try:
            await cleanup_old_downloads(store)
        except SystemFailure:
            logger.warning("Periodic cleanup skipped: job store unavailable")
        try:
            await asyncio.wait_for(shutdown_event.wait(), interval)
        except asyncio.TimeoutError:
            continue


async def start_api_server(app: web.Application) -> None:
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host=HOST, port=PORT)
    await site.start()
    logging.getLogger(__name__).info("API server started on %s:%s", HOST, PORT)

    try:
        await shutdown_event.wait()
    finally:
        await runner.cleanup()


def _install_signal_handlers() -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except NotImplementedError:
            pass


async def main() -> None:
    logger = setup_logging(level=LOG_LEVEL, format_string=LOG_FORMAT)
    logger.info("Starting download queue service")

    manager = None
    server_task = None
    cleanup_task = None
    try:
        store = JobStore(DATABASE_PATH)
        store.ensure_schema()
        await recover_download_queue(store)

        broadcaster = ProgressBroadcaster()
        manager = QueueManager(store=store, executor=YtDlpExecutor(), broadcaster=broadcaster)
        await manager.start()

        _install_signal_handlers()
        server_task = asyncio.create_task(start_api_server(create_app(manager, broadcaster)))
        cleanup_task = asyncio.create_task(run_periodic_cleanup(store))
        await shutdown_event.wait()
    except Exception:
        logging.getLogger(__name__).exception("Fatal startup/runtime error")
        sys.exit(1)
    finally:
        shutdown_event.set()
        for task in (server_task, cleanup_task):
            if task is None:
                continue
            try:
                await task
            except Exception:
                logging.getLogger(__name__).debug("Background task shutdown failed", exc_info=True)
        if manager is not None:
            await manager.stop()
        logger.info("Download queue service stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
