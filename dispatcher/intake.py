import json
import logging
from typing import Optional, Union

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .config import PAYMENT_PRIORITY_QUEUE_KEY, PAYMENT_QUEUE_KEY, QUEUE_ORDERING
from .errors import EnqueueError
from .models import PaymentRequest

logger = logging.getLogger(__name__)

ORDERINGS = ("fifo", "priority")


class IntakeQueue:
    """Fila de entrada no Redis.

    `fifo` usa uma lista (RPUSH/LPOP); `priority` usa um sorted set com o valor
    do pagamento como score e retira sempre o maior (ZPOPMAX).
    """

    def __init__(self, redis_client: aioredis.Redis, ordering: str = QUEUE_ORDERING):
        if ordering not in ORDERINGS:
            raise ValueError(f"unknown queue ordering {ordering!r}, expected one of {ORDERINGS}")
        self.redis = redis_client
        self.ordering = ordering
        self.key = PAYMENT_QUEUE_KEY if ordering == "fifo" else PAYMENT_PRIORITY_QUEUE_KEY

    async def push(self, payment: PaymentRequest):
        body = json.dumps(payment.to_dict())
        try:
            if self.ordering == "fifo":
                await self.redis.rpush(self.key, body)
            else:
                await self.redis.zadd(self.key, {body: float(payment.amount)})
        except RedisError as e:
            logger.error(f"Error enqueuing payment {payment.correlationId}: {e}")
            raise EnqueueError(f"could not enqueue payment {payment.correlationId}: {e}") from e

    async def pop(self) -> Optional[Union[str, bytes]]:
        """Retira atomicamente um item, ou None se a fila estiver vazia."""
        if self.ordering == "fifo":
            return await self.redis.lpop(self.key)
        popped = await self.redis.zpopmax(self.key, 1)
        if not popped:
            return None
        member, _score = popped[0]
        return member

    async def size(self) -> int:
        if self.ordering == "fifo":
            return await self.redis.llen(self.key)
        return await self.redis.zcard(self.key)

    @staticmethod
    def decode(raw: Union[str, bytes]) -> PaymentRequest:
        return PaymentRequest.from_dict(json.loads(raw))
