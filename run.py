"""
Entry point: run the publishing worker (job scheduler + worker pool).

Usage::

    python run.py                      # settings from config/settings.yaml
    python run.py path/to/settings.yaml

Stops gracefully on SIGINT / SIGTERM: timers stop, in-flight publish jobs
get ``jobs.shutdown_timeout_seconds`` to finish, then the process exits.
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from content_pipeline.config import Settings, validate_env  # noqa: E402
from content_pipeline.database import get_db  # noqa: E402
from content_pipeline.service import build_service  # noqa: E402

logger = logging.getLogger("run")


async def main(settings_path: Optional[Path] = None) -> None:
    settings = Settings.from_yaml(settings_path)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )
    validate_env()

    store = await get_db()
    components = build_service(settings, store)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    await components.scheduler.start()
    logger.info("Worker running with jobs: %s", ", ".join(components.scheduler.job_ids))

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        drained = await components.scheduler.stop()
        await components.recorder.flush()
        if not drained:
            logger.warning("Some publish jobs were still running at exit")
        logger.info("Worker stopped")


if __name__ == "__main__":
    path = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    try:
        asyncio.run(main(path))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(0)
