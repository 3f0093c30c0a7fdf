from __future__ import annotations

"""
Dedicated maintenance worker for the background sweeps.

Runs the outbox publisher, outbox cleanup, session expiry, stale-media expiry,
PROCESSING timeout and validation sweeps on one APScheduler loop, for
deployments that start the API with MAINTENANCE_SCHEDULER=false.

Run:
  python scripts/worker.py
"""

import asyncio
import signal

from ingest.core.logger import configure_logging, logger
from ingest.core.redis_client import redis_wrapper
from ingest.db.session import async_engine
from ingest.main import build_maintenance_jobs
from ingest.utils.maintenance import start_maintenance_scheduler


async def _main() -> None:
    configure_logging("maintenance")
    try:
        await redis_wrapper.connect()
    except Exception as e:
        logger.warning("Redis unavailable at startup (jobs run unlocked): {}", e)

    scheduler = start_maintenance_scheduler(build_maintenance_jobs())

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # pragma: no cover (Windows)
            pass

    try:
        await stop.wait()
    finally:
        scheduler.shutdown(wait=False)
        await redis_wrapper.close()
        await async_engine.dispose()
        logger.info("Maintenance worker stopped")


def main() -> None:
    asyncio.run(_main())


if __name__ == "__main__":
    main()
