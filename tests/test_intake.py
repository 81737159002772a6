from decimal import Decimal

import pytest

from dispatcher.errors import EnqueueError
from dispatcher.intake import IntakeQueue
from dispatcher.models import PaymentRequest


def payment(correlation_id, amount):
    return PaymentRequest(correlation_id, Decimal(amount), "2025-01-01T00:00:00.000Z")


@pytest.mark.asyncio
async def test_fifo_queue_preserves_enqueue_order(fake_redis):
    queue = IntakeQueue(fake_redis, "fifo")
    for correlation_id, amount in [("a", "5"), ("b", "500"), ("c", "50")]:
        await queue.push(payment(correlation_id, amount))

    assert await queue.size() == 3
    popped = [IntakeQueue.decode(await queue.pop()).correlationId for _ in range(3)]

    assert popped == ["a", "b", "c"]
    assert await queue.pop() is None


@pytest.mark.asyncio
async def test_priority_queue_pops_largest_amount_first(fake_redis):
    queue = IntakeQueue(fake_redis, "priority")
    for correlation_id, amount in [("a", "5"), ("b", "500"), ("c", "50")]:
        await queue.push(payment(correlation_id, amount))

    popped = [IntakeQueue.decode(await queue.pop()).correlationId for _ in range(3)]

    assert popped == ["b", "c", "a"]
    assert await queue.pop() is None
    assert await queue.size() == 0


@pytest.mark.asyncio
async def test_decoded_payment_keeps_decimal_amount_and_timestamps(fake_redis):
    queue = IntakeQueue(fake_redis)
    original = PaymentRequest("x-1", Decimal("19.90"), "2025-01-01T00:00:00.000Z", "2025-01-01T00:00:00.005Z")
    await queue.push(original)

    decoded = IntakeQueue.decode(await queue.pop())

    assert decoded.to_dict() == original.to_dict()
    assert decoded.amount == Decimal("19.90")


@pytest.mark.asyncio
@pytest.mark.parametrize("ordering, command", [("fifo", "rpush"), ("priority", "zadd")])
async def test_push_failure_is_visible(fake_redis, ordering, command):
    fake_redis.fail_on.add(command)
    with pytest.raises(EnqueueError) as exc_info:
        await IntakeQueue(fake_redis, ordering).push(payment("z", "1"))
    assert exc_info.value.kind == "enqueue_failed"


def test_unknown_ordering_is_rejected(fake_redis):
    with pytest.raises(ValueError):
        IntakeQueue(fake_redis, "lifo")
