import asyncio
import logging
import signal

import redis.asyncio as aioredis

from .config import HEALTH_CHECK_INTERVAL, LOG_LEVEL, REDIS_URL
from .health import HealthMonitor, HealthState

logger = logging.getLogger(__name__)


async def main():
    """Roda apenas os probes de saude, espelhando o resultado no Redis."""
    logging.basicConfig(level=LOG_LEVEL)
    redis_client = aioredis.from_url(REDIS_URL, decode_responses=True)
    monitor = HealthMonitor(HealthState(), redis_client=redis_client)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info(f"🚀 HealthChecker started - checking every {HEALTH_CHECK_INTERVAL}s")
    monitor.start()
    try:
        await stop_event.wait()
    finally:
        await monitor.stop()
        await redis_client.aclose()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
