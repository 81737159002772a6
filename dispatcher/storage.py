import json
import logging
from decimal import Decimal
from typing import Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .config import (
    PAYMENTS_LOG_KEY,
    PROCESSED_GUARD_PREFIX,
    PROCESSED_GUARD_TTL,
    PROCESSORS,
    SUMMARY_SCORE_FIELD,
    TOTAL_AMOUNT_PREFIX,
    TOTAL_REQUESTS_PREFIX,
)
from .errors import InvalidTimeRangeError, StoreUnavailableError
from .models import (
    ProcessedPayment,
    ProcessorCounters,
    format_timestamp,
    parse_timestamp,
    to_decimal,
    to_score,
    utcnow,
)

logger = logging.getLogger(__name__)

SCORE_FIELDS = ("processedAt", "requestedAt")


def _text(value) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode()
    return value


class PaymentStorage:
    """Registro dos pagamentos processados e dos contadores por processador.

    Chaves no Redis:
      processed:<correlationId>   guarda de de-duplicacao (com expiracao)
      payments_log                sorted set, score = timestamp do pagamento
      totalRequests:<processor>   contador inteiro
      totalAmount:<processor>     contador float

    A de-duplicacao e best-effort: vale enquanto a guarda nao expirar.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        guard_ttl: int = PROCESSED_GUARD_TTL,
        score_field: str = SUMMARY_SCORE_FIELD,
    ):
        if score_field not in SCORE_FIELDS:
            raise ValueError(f"unknown score field {score_field!r}, expected one of {SCORE_FIELDS}")
        self.redis = redis_client
        self.guard_ttl = guard_ttl
        self.score_field = score_field

    @staticmethod
    def guard_key(correlation_id: str) -> str:
        return f"{PROCESSED_GUARD_PREFIX}:{correlation_id}"

    async def is_processed(self, correlation_id: str) -> bool:
        try:
            return bool(await self.redis.exists(self.guard_key(correlation_id)))
        except RedisError as e:
            raise StoreUnavailableError(f"could not check payment {correlation_id}: {e}") from e

    async def record(
        self,
        correlation_id: str,
        processor_used: str,
        amount: Decimal,
        requested_at: str,
        processed_at: Optional[str] = None,
    ) -> Optional[ProcessedPayment]:
        """Registra um pagamento entregue com sucesso.

        Retorna o ProcessedPayment gravado, ou None se o correlationId ja
        estava marcado como processado (nenhum contador e alterado).
        """
        if processor_used not in PROCESSORS:
            raise ValueError(f"unknown processor {processor_used!r}")

        processed = ProcessedPayment(
            correlationId=correlation_id,
            amount=amount,
            processorType=processor_used,
            requestedAt=requested_at,
            processedAt=processed_at or format_timestamp(utcnow()),
        )
        score = to_score(getattr(processed, self.score_field))
        guard = self.guard_key(correlation_id)

        try:
            claimed = await self.redis.set(guard, processed.processedAt, nx=True, ex=self.guard_ttl)
        except RedisError as e:
            raise StoreUnavailableError(f"could not record payment {correlation_id}: {e}") from e
        if not claimed:
            logger.info(f"Payment {correlation_id} already recorded, skipping counters")
            return None

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zadd(PAYMENTS_LOG_KEY, {json.dumps(processed.to_dict()): score})
                pipe.incr(f"{TOTAL_REQUESTS_PREFIX}:{processor_used}")
                pipe.incrbyfloat(f"{TOTAL_AMOUNT_PREFIX}:{processor_used}", float(processed.amount))
                await pipe.execute()
        except RedisError as e:
            # Libera a guarda para que uma nova tentativa consiga registrar
            try:
                await self.redis.delete(guard)
            except RedisError as release_error:
                logger.error(f"Could not release guard for {correlation_id}: {release_error}")
            raise StoreUnavailableError(f"could not record payment {correlation_id}: {e}") from e

        logger.info(f"Stored payment {correlation_id} for {processor_used} with score {score}")
        return processed

    async def payments_summary(self, from_time: Optional[str] = None, to_time: Optional[str] = None) -> Dict:
        if not from_time and not to_time:
            return await self.summary_from_counters()
        return await self.summary_from_log(from_time, to_time)

    async def summary_from_counters(self) -> Dict:
        keys = []
        for processor in PROCESSORS:
            keys.append(f"{TOTAL_REQUESTS_PREFIX}:{processor}")
            keys.append(f"{TOTAL_AMOUNT_PREFIX}:{processor}")
        try:
            values = await self.redis.mget(keys)
        except RedisError as e:
            raise StoreUnavailableError(f"could not read payment counters: {e}") from e

        summary = {}
        for i, processor in enumerate(PROCESSORS):
            total_requests = _text(values[2 * i]) or "0"
            total_amount = _text(values[2 * i + 1]) or "0"
            summary[processor] = ProcessorCounters(int(total_requests), to_decimal(total_amount)).to_dict()
        return summary

    async def summary_from_log(self, from_time: Optional[str], to_time: Optional[str]) -> Dict:
        try:
            min_score = parse_timestamp(from_time).timestamp() if from_time else "-inf"
            max_score = parse_timestamp(to_time).timestamp() if to_time else "+inf"
        except ValueError as e:
            raise InvalidTimeRangeError(f"invalid summary range from={from_time!r} to={to_time!r}: {e}") from e

        try:
            entries = await self.redis.zrangebyscore(PAYMENTS_LOG_KEY, min_score, max_score)
        except RedisError as e:
            raise StoreUnavailableError(f"could not read payments log: {e}") from e

        counters = {processor: ProcessorCounters() for processor in PROCESSORS}
        for entry in entries:
            try:
                payment = ProcessedPayment.from_dict(json.loads(entry))
            except (ValueError, KeyError) as e:
                logger.warning(f"Skipping malformed payments log entry: {e}")
                continue
            if payment.processorType in counters:
                counters[payment.processorType].add(payment.amount)

        return {processor: counters[processor].to_dict() for processor in PROCESSORS}
