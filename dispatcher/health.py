import asyncio
import json
import logging
from typing import Dict, Optional, Tuple

import httpx
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .config import (
    HEALTH_CACHE_KEY,
    HEALTH_CACHE_TTL,
    HEALTH_CHECK_INTERVAL,
    HEALTH_CHECK_STAGGER,
    HEALTH_CHECK_TIMEOUT,
    PROCESSOR_URLS,
    PROCESSORS,
    SHUTDOWN_GRACE,
)
from .models import ProcessorHealth, format_timestamp, utcnow

logger = logging.getLogger(__name__)


class HealthState:
    """Mapa de saude dos processadores.

    O HealthMonitor e o unico escritor; leitores recebem copias.
    Antes do primeiro probe cada processador e considerado falhando.
    """

    def __init__(self, processors=PROCESSORS):
        self._records = {name: ProcessorHealth.assume_failing(name) for name in processors}
        self._lock = asyncio.Lock()

    def snapshot(self) -> Dict[str, ProcessorHealth]:
        return {name: record.copy() for name, record in self._records.items()}

    def get(self, name: str) -> ProcessorHealth:
        return self._records[name].copy()

    async def current(self) -> Tuple[ProcessorHealth, ProcessorHealth]:
        snapshot = self.snapshot()
        return snapshot["default"], snapshot["fallback"]

    async def apply_probe(self, name: str, failing: bool, min_response_time: int) -> ProcessorHealth:
        async with self._lock:
            record = self._records[name]
            record.failing = failing
            record.minResponseTime = min_response_time
            record.lastCheckedAt = format_timestamp(utcnow())
            record.consecutiveFailures = record.consecutiveFailures + 1 if failing else 0
            return record.copy()

    async def mark_failing(self, name: str) -> ProcessorHealth:
        # minResponseTime fica com o ultimo valor conhecido
        async with self._lock:
            record = self._records[name]
            record.failing = True
            record.lastCheckedAt = format_timestamp(utcnow())
            record.consecutiveFailures += 1
            return record.copy()


class HealthMonitor:
    def __init__(
        self,
        state: HealthState,
        http_client: Optional[httpx.AsyncClient] = None,
        redis_client: Optional[aioredis.Redis] = None,
        urls: Optional[Dict[str, str]] = None,
        interval: float = HEALTH_CHECK_INTERVAL,
        timeout: float = HEALTH_CHECK_TIMEOUT,
        stagger: float = HEALTH_CHECK_STAGGER,
        cache_ttl: int = HEALTH_CACHE_TTL,
        shutdown_grace: float = SHUTDOWN_GRACE,
    ):
        self.state = state
        self.http_client = http_client
        self._owns_client = http_client is None
        self.redis = redis_client
        self.urls = urls or PROCESSOR_URLS
        self.interval = interval
        self.timeout = timeout
        self.stagger = stagger
        self.cache_ttl = cache_ttl
        self.shutdown_grace = shutdown_grace
        self._stopping = asyncio.Event()
        self._tasks = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self):
        if self.running:
            return
        if self.http_client is None:
            self.http_client = httpx.AsyncClient()
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self.health_check("default", 0), name="health-check-default"),
            asyncio.create_task(self.health_check("fallback", self.stagger), name="health-check-fallback"),
        ]
        logger.info(f"[HealthChecker] Started - checking every {self.interval}s")

    async def stop(self, timeout: Optional[float] = None):
        self._stopping.set()
        if timeout is None:
            timeout = self.shutdown_grace
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
        if self._owns_client and self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None
        logger.info("[HealthChecker] Stopped.")

    async def health_check(self, name: str, delay: float = 0):
        if delay and await self._wait_stopping(delay):
            return
        while not self._stopping.is_set():
            try:
                await self.check_processor(name)
            except Exception:
                logger.exception(f"[HealthChecker][{name}] Unexpected error during health check")
            if await self._wait_stopping(self.interval):
                return

    async def _wait_stopping(self, seconds: float) -> bool:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def check_processor(self, name: str) -> ProcessorHealth:
        """Executa um unico probe e atualiza o registro do processador."""
        url = f"{self.urls[name]}/payments/service-health"
        try:
            response = await self.http_client.get(url, timeout=self.timeout)
        except httpx.TimeoutException as e:
            logger.warning(f"[HealthChecker][{name}] Timeout: {e!r}")
            return await self._mark_failing(name)
        except httpx.HTTPError as e:
            logger.warning(f"[HealthChecker][{name}] Transport error: {e!r}")
            return await self._mark_failing(name)

        if response.status_code == 429:
            logger.info(f"[HealthChecker][{name}] Rate limited (429). Respecting limit...")
            return self.state.get(name)

        if not response.is_success:
            logger.warning(f"[HealthChecker][{name}] HTTP {response.status_code}")
            return await self._mark_failing(name)

        try:
            data = response.json()
            failing = data["failing"]
            min_response_time = int(data["minResponseTime"])
            if not isinstance(failing, bool):
                raise TypeError(f"failing must be a boolean, got {failing!r}")
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"[HealthChecker][{name}] Malformed health payload: {e}")
            return await self._mark_failing(name)

        record = await self.state.apply_probe(name, failing, min_response_time)
        status = "FAILING" if failing else "HEALTHY"
        logger.info(f"[HealthChecker][{name}]: {status} (minResponseTime: {min_response_time}ms)")
        await self._mirror(record)
        return record

    async def _mark_failing(self, name: str) -> ProcessorHealth:
        record = await self.state.mark_failing(name)
        await self._mirror(record)
        return record

    async def _mirror(self, record: ProcessorHealth):
        if self.redis is None:
            return
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(HEALTH_CACHE_KEY, record.name, json.dumps(record.to_dict()))
                pipe.expire(HEALTH_CACHE_KEY, self.cache_ttl)
                await pipe.execute()
        except RedisError as e:
            logger.warning(f"[HealthChecker][{record.name}] Could not mirror health to Redis: {e}")


class CachedHealthView:
    """Le a saude espelhada no Redis por outro processo, sem fazer probes."""

    def __init__(self, redis_client: aioredis.Redis):
        self.redis = redis_client

    async def get_health(self, name: str) -> ProcessorHealth:
        try:
            cached = await self.redis.hget(HEALTH_CACHE_KEY, name)
        except RedisError as e:
            logger.warning(f"[CachedHealth][{name}] Redis unavailable: {e}")
            cached = None
        if not cached:
            return ProcessorHealth.assume_failing(name)
        try:
            return ProcessorHealth.from_dict(json.loads(cached))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"[CachedHealth][{name}] Malformed cached health: {e}")
            return ProcessorHealth.assume_failing(name)

    async def current(self) -> Tuple[ProcessorHealth, ProcessorHealth]:
        return await self.get_health("default"), await self.get_health("fallback")
