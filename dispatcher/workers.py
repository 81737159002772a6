import asyncio
import logging
import signal
from typing import Dict, Optional, Tuple

import httpx
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .config import (
    DEQUEUE_IDLE_SLEEP,
    HIGH_LATENCY_THRESHOLD_MS,
    LOG_LEVEL,
    MAX_ATTEMPTS,
    PROCESSOR_TIMEOUTS,
    PROCESSOR_URLS,
    QUEUE_ORDERING,
    REDIS_URL,
    RETRY_BACKOFF,
    SHUTDOWN_GRACE,
    WORKER_POOL_SIZE,
)
from .errors import StoreUnavailableError
from .health import CachedHealthView
from .intake import IntakeQueue
from .models import PaymentRequest
from .selector import choose_best_processor, other_processor
from .storage import PaymentStorage

logger = logging.getLogger(__name__)


class PaymentWorkerPool:
    """Consome a fila de entrada e entrega cada pagamento a um processador.

    Um unico loop retira itens da fila e os repassa a um numero fixo de
    workers por uma fila interna limitada; quando todos estao ocupados o
    loop bloqueia e o acumulo fica na fila do Redis.
    """

    def __init__(
        self,
        intake: IntakeQueue,
        storage: PaymentStorage,
        health_source,
        http_client: Optional[httpx.AsyncClient] = None,
        urls: Optional[Dict[str, str]] = None,
        pool_size: int = WORKER_POOL_SIZE,
        max_attempts: int = MAX_ATTEMPTS,
        retry_backoff: float = RETRY_BACKOFF,
        timeouts: Optional[Dict[str, float]] = None,
        idle_sleep: float = DEQUEUE_IDLE_SLEEP,
        high_latency_threshold_ms: int = HIGH_LATENCY_THRESHOLD_MS,
    ):
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.intake = intake
        self.storage = storage
        self.health_source = health_source
        self.http_client = http_client
        self._owns_client = http_client is None
        self.urls = urls or PROCESSOR_URLS
        self.pool_size = pool_size
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.timeouts = timeouts or PROCESSOR_TIMEOUTS
        self.idle_sleep = idle_sleep
        self.high_latency_threshold_ms = high_latency_threshold_ms

        self._slots: Optional[asyncio.Queue] = None
        self._feeder: Optional[asyncio.Task] = None
        self._workers = []
        self._running = False
        self.stats = {"processed": 0, "dropped": 0, "duplicates": 0, "reconciliation_gaps": 0, "abandoned": 0}

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        if self._running:
            return
        if self.http_client is None:
            limits = httpx.Limits(max_connections=1000, max_keepalive_connections=32)
            self.http_client = httpx.AsyncClient(limits=limits)
        self._running = True
        self._slots = asyncio.Queue(maxsize=self.pool_size)
        self._workers = [
            asyncio.create_task(self.worker(i), name=f"payment-worker-{i}") for i in range(self.pool_size)
        ]
        self._feeder = asyncio.create_task(self.dequeue_loop(), name="payment-dequeue-loop")
        logger.info(f"[PaymentWorker] Started with {self.pool_size} workers")

    async def stop(self, grace: float = SHUTDOWN_GRACE):
        if not self._running:
            return
        logger.info("[PaymentWorker] Stopping...")
        self._running = False

        _, pending = await asyncio.wait([self._feeder], timeout=grace)
        for task in pending:
            task.cancel()
        await asyncio.gather(self._feeder, return_exceptions=True)

        try:
            await asyncio.wait_for(self._slots.join(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("[PaymentWorker] Grace period expired with payments still in flight")

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        await self._requeue_pending()

        if self._owns_client and self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None
        logger.info("[PaymentWorker] Stopped.")

    async def _requeue_pending(self):
        # Itens entregues ao pool mas nao iniciados voltam para a fila de entrada
        while not self._slots.empty():
            payment = self._slots.get_nowait()
            self._slots.task_done()
            logger.warning(f"[PaymentWorker] Returning {payment.correlationId} to the intake queue")
            await self.intake.push(payment)

    async def dequeue_loop(self):
        while self._running:
            try:
                raw = await self.intake.pop()
            except RedisError as e:
                logger.warning(f"[PaymentWorker] Could not pop from queue: {e}")
                await asyncio.sleep(self.idle_sleep)
                continue

            if raw is None:
                await asyncio.sleep(self.idle_sleep)
                continue

            try:
                payment = IntakeQueue.decode(raw)
            except (ValueError, KeyError, TypeError) as e:
                logger.error(f"[PaymentWorker] Discarding malformed queue item {raw!r}: {e}")
                continue

            try:
                await self._slots.put(payment)
            except asyncio.CancelledError:
                logger.warning(f"[PaymentWorker] Dequeue loop cancelled holding {payment.correlationId}, requeueing")
                await self.intake.push(payment)
                raise

    async def worker(self, worker_id: int):
        while True:
            payment = await self._slots.get()
            try:
                await self.process_payment(payment)
            except asyncio.CancelledError:
                self.stats["abandoned"] += 1
                logger.error(
                    f"[PaymentWorker] Abandoned {payment.correlationId} ({payment.amount}) in flight on shutdown: "
                    f"it may have been delivered without being recorded"
                )
                raise
            except Exception:
                logger.exception(f"[PaymentWorker] Worker {worker_id} failed on {payment.correlationId}")
            finally:
                self._slots.task_done()

    async def process_payment(self, payment: PaymentRequest) -> Optional[str]:
        """Entrega e registra um pagamento. Retorna o processador usado, ou None."""
        logger.info(f"[PaymentWorker] Processing {payment.correlationId} ({payment.amount})")

        try:
            if await self.storage.is_processed(payment.correlationId):
                self.stats["duplicates"] += 1
                logger.info(f"[PaymentWorker] {payment.correlationId} already processed, skipping")
                return None
        except StoreUnavailableError as e:
            logger.warning(f"[PaymentWorker] Could not check duplicate for {payment.correlationId}: {e}")

        default_health, fallback_health = await self.health_source.current()
        preferred = choose_best_processor(default_health, fallback_health, self.high_latency_threshold_ms)

        processor_used = await self.dispatch(payment, preferred)
        if processor_used is None:
            self.stats["dropped"] += 1
            logger.error(
                f"[PaymentWorker] ❌ Failed to process payment {payment.correlationId}: "
                f"all processors exhausted, payment dropped"
            )
            return None

        try:
            await self.storage.record(
                payment.correlationId, processor_used, payment.amount, payment.requestedAt
            )
        except StoreUnavailableError as e:
            self.stats["reconciliation_gaps"] += 1
            logger.error(
                f"[PaymentWorker] Reconciliation gap: {payment.correlationId} ({payment.amount}) "
                f"delivered to {processor_used} at {payment.requestedAt} but not recorded: {e}"
            )
            return processor_used

        self.stats["processed"] += 1
        logger.info(f"[PaymentWorker] ✅ Payment {payment.correlationId} processed via {processor_used}")
        return processor_used

    async def dispatch(self, payment: PaymentRequest, preferred: str) -> Optional[str]:
        """Tenta o processador preferido ate max_attempts vezes e o outro uma vez."""
        for attempt in range(1, self.max_attempts + 1):
            success, _ = await self.send_payment(payment, preferred)
            if success:
                return preferred
            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_backoff * attempt)

        alternate = other_processor(preferred)
        logger.info(f"[PaymentWorker] Retrying {payment.correlationId} with {alternate} processor")
        success, _ = await self.send_payment(payment, alternate)
        if success:
            return alternate
        return None

    async def send_payment(self, payment: PaymentRequest, processor: str) -> Tuple[bool, Optional[str]]:
        """Uma unica tentativa. Retorna (sucesso, tipo da falha: timeout, transport ou status)."""
        url = f"{self.urls[processor]}/payments"
        try:
            response = await self.http_client.post(
                url, json=payment.processor_payload(), timeout=self.timeouts[processor]
            )
        except httpx.TimeoutException as e:
            logger.warning(f"[PaymentWorker] Timeout on {processor} for {payment.correlationId}: {e!r}")
            return False, "timeout"
        except httpx.HTTPError as e:
            logger.warning(f"[PaymentWorker] Error on {processor} for {payment.correlationId}: {e!r}")
            return False, "transport"

        if response.is_success:
            logger.debug(f"[PaymentWorker] Sent {payment.correlationId} to {processor}: HTTP {response.status_code}")
            return True, None

        logger.warning(f"[PaymentWorker] Failed on {processor} for {payment.correlationId}: HTTP {response.status_code}")
        return False, "status"


async def main():
    """Processo de workers isolado; le a saude espelhada pelo healthchecker."""
    logging.basicConfig(level=LOG_LEVEL)
    redis_client = aioredis.from_url(REDIS_URL, decode_responses=True)
    pool = PaymentWorkerPool(
        intake=IntakeQueue(redis_client, QUEUE_ORDERING),
        storage=PaymentStorage(redis_client),
        health_source=CachedHealthView(redis_client),
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    pool.start()
    try:
        await stop_event.wait()
    finally:
        await pool.stop()
        await redis_client.aclose()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
