import logging
from typing import Dict, Optional

import httpx
import redis.asyncio as aioredis

from .config import QUEUE_ORDERING, RUN_WORKERS
from .errors import InvalidPaymentError
from .health import HealthMonitor, HealthState
from .intake import IntakeQueue
from .models import PaymentRequest, format_timestamp, to_decimal, utcnow
from .storage import PaymentStorage
from .workers import PaymentWorkerPool

logger = logging.getLogger(__name__)


class PaymentDispatchService:
    """Ponto de entrada usado pela API HTTP: enfileira pagamentos e responde resumos.

    Com `run_workers` o mesmo processo tambem roda os health checks e o pool
    de workers; o ciclo de vida deles acompanha start/stop do servico.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        http_client: Optional[httpx.AsyncClient] = None,
        run_workers: bool = RUN_WORKERS,
        queue_ordering: str = QUEUE_ORDERING,
    ):
        self.redis = redis_client
        self.run_workers = run_workers
        self.health = HealthState()
        self.intake = IntakeQueue(redis_client, queue_ordering)
        self.storage = PaymentStorage(redis_client)
        self.monitor = HealthMonitor(self.health, http_client=http_client, redis_client=redis_client)
        self.pool = PaymentWorkerPool(self.intake, self.storage, self.health, http_client=http_client)

    async def start(self):
        if not self.run_workers:
            return
        self.monitor.start()
        self.pool.start()

    async def stop(self):
        # Primeiro para de consumir e espera os pagamentos em andamento
        await self.pool.stop()
        await self.monitor.stop()

    def create_payment_request(self, correlation_id: str, amount) -> PaymentRequest:
        if not isinstance(correlation_id, str) or not correlation_id.strip():
            raise InvalidPaymentError("correlationId must be a non-empty string")
        try:
            value = to_decimal(amount)
        except ValueError as e:
            raise InvalidPaymentError(str(e)) from e
        if not value.is_finite() or value <= 0:
            raise InvalidPaymentError(f"amount must be a positive number, got {amount!r}")

        now = format_timestamp(utcnow())
        return PaymentRequest(correlationId=correlation_id, amount=value, requestedAt=now, enqueuedAt=now)

    async def enqueue(self, payment: PaymentRequest) -> PaymentRequest:
        await self.intake.push(payment)
        logger.debug(f"Payment {payment.correlationId} queued")
        return payment

    async def create_payment(self, correlation_id: str, amount) -> PaymentRequest:
        """Recebe um pagamento, enfileira e retorna imediatamente."""
        return await self.enqueue(self.create_payment_request(correlation_id, amount))

    async def get_summary(self, from_time: Optional[str] = None, to_time: Optional[str] = None) -> Dict:
        return await self.storage.payments_summary(from_time, to_time)

    def health_report(self) -> Dict:
        return {
            "processors": {name: record.to_dict() for name, record in self.health.snapshot().items()},
            "workers": {"running": self.pool.running, **self.pool.stats},
        }
