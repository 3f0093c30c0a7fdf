"""
Transcode worker entry point.

Run:
  python -m ingest.worker
"""

import asyncio
import signal
import socket

from ingest.core.config import settings
from ingest.core.logger import configure_logging, logger
from ingest.core.redis_client import redis_wrapper
from ingest.db.session import async_engine, async_session_maker
from ingest.schemas.enums import OutboxEventType
from ingest.services.media_state import MediaStateMachine
from ingest.utils.aws import S3Client
from ingest.utils.messaging import RedisStreamConsumer
from ingest.worker.consumer import TranscodeConsumer
from ingest.worker.probe import build_default_chain


async def _main() -> None:
    configure_logging("transcode-worker")
    await redis_wrapper.connect()
    blob = S3Client()
    stream = RedisStreamConsumer(
        OutboxEventType.TRANSCODE_REQUESTED.value,
        group=settings.WORKER_CONSUMER_GROUP,
        consumer=settings.WORKER_CONSUMER_NAME or socket.gethostname(),
        block_ms=settings.WORKER_BLOCK_MS,
    )
    consumer = TranscodeConsumer(stream, build_default_chain(blob), async_session_maker, MediaStateMachine(blob))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # pragma: no cover (Windows)
            pass

    logger.info("Transcode worker started | group={} consumer={}", stream.group, stream.consumer)
    try:
        await consumer.run(stop)
    finally:
        await redis_wrapper.close()
        await async_engine.dispose()
        logger.info("Transcode worker stopped")


def main() -> None:
    asyncio.run(_main())


if __name__ == "__main__":
    main()
