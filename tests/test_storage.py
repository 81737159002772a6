import json
from decimal import Decimal

import pytest

from dispatcher.config import PAYMENTS_LOG_KEY
from dispatcher.errors import InvalidTimeRangeError, StoreUnavailableError
from dispatcher.storage import PaymentStorage


def summed(*summaries):
    total = {name: {"totalRequests": 0, "totalAmount": Decimal("0")} for name in ("default", "fallback")}
    for summary in summaries:
        for name, values in summary.items():
            total[name]["totalRequests"] += values["totalRequests"]
            total[name]["totalAmount"] += Decimal(values["totalAmount"])
    return {
        name: {"totalRequests": v["totalRequests"], "totalAmount": f"{v['totalAmount']:.2f}"}
        for name, v in total.items()
    }


@pytest.mark.asyncio
async def test_record_writes_guard_log_and_counters(fake_redis):
    storage = PaymentStorage(fake_redis, guard_ttl=3600)

    processed = await storage.record(
        "abc-1", "default", Decimal("100.00"), "2025-01-01T10:00:00.000Z", "2025-01-01T10:00:01.000Z"
    )

    assert processed.processorType == "default"
    assert await storage.is_processed("abc-1")
    assert fake_redis.expiry["processed:abc-1"] == 3600
    [entry] = await fake_redis.zrangebyscore(PAYMENTS_LOG_KEY, "-inf", "+inf")
    assert json.loads(entry)["correlationId"] == "abc-1"
    assert await storage.payments_summary() == {
        "default": {"totalRequests": 1, "totalAmount": "100.00"},
        "fallback": {"totalRequests": 0, "totalAmount": "0.00"},
    }


@pytest.mark.asyncio
async def test_recording_same_payment_twice_does_not_double_count(fake_redis):
    storage = PaymentStorage(fake_redis)

    first = await storage.record("dup-1", "fallback", Decimal("19.90"), "2025-01-01T10:00:00.000Z")
    second = await storage.record("dup-1", "fallback", Decimal("19.90"), "2025-01-01T10:00:00.000Z")

    assert first is not None
    assert second is None
    summary = await storage.payments_summary()
    assert summary["fallback"] == {"totalRequests": 1, "totalAmount": "19.90"}
    assert len(await fake_redis.zrangebyscore(PAYMENTS_LOG_KEY, "-inf", "+inf")) == 1


@pytest.mark.asyncio
async def test_record_rejects_unknown_processor(fake_redis):
    with pytest.raises(ValueError):
        await PaymentStorage(fake_redis).record("x", "none", Decimal("1"), "2025-01-01T00:00:00Z")


@pytest.mark.asyncio
async def test_failed_batch_releases_guard_and_surfaces_error(fake_redis):
    storage = PaymentStorage(fake_redis)
    fake_redis.fail_on.add("execute")

    with pytest.raises(StoreUnavailableError):
        await storage.record("gap-1", "default", Decimal("5"), "2025-01-01T00:00:00Z")

    assert not await storage.is_processed("gap-1")
    fake_redis.fail_on.clear()
    assert await storage.record("gap-1", "default", Decimal("5"), "2025-01-01T00:00:00Z") is not None


@pytest.mark.asyncio
async def test_windowed_summary_only_counts_payments_inside_window(fake_redis):
    storage = PaymentStorage(fake_redis)
    await storage.record("in-1", "default", Decimal("10.00"), "2025-01-01T00:00:00Z", "2025-01-01T00:00:00.000Z")
    await storage.record("in-2", "default", Decimal("15.50"), "2025-01-01T00:00:00Z", "2025-01-01T12:30:00.000Z")
    await storage.record("in-3", "fallback", Decimal("7.25"), "2025-01-01T00:00:00Z", "2025-01-02T00:00:00.000Z")
    await storage.record("out-1", "default", Decimal("999.99"), "2025-01-02T00:00:00Z", "2025-01-02T00:00:00.001Z")

    summary = await storage.payments_summary("2025-01-01T00:00:00Z", "2025-01-02T00:00:00Z")

    assert summary == {
        "default": {"totalRequests": 2, "totalAmount": "25.50"},
        "fallback": {"totalRequests": 1, "totalAmount": "7.25"},
    }


@pytest.mark.asyncio
async def test_open_ended_windows(fake_redis):
    storage = PaymentStorage(fake_redis)
    await storage.record("a", "default", Decimal("1"), "2025-01-01T00:00:00Z", "2025-01-01T00:00:00Z")
    await storage.record("b", "default", Decimal("2"), "2025-01-03T00:00:00Z", "2025-01-03T00:00:00Z")

    assert (await storage.payments_summary(from_time="2025-01-02T00:00:00Z"))["default"]["totalRequests"] == 1
    assert (await storage.payments_summary(to_time="2025-01-02T00:00:00Z"))["default"]["totalAmount"] == "1.00"


@pytest.mark.asyncio
async def test_counters_match_sum_of_partitioning_windows(fake_redis):
    storage = PaymentStorage(fake_redis)
    payments = [
        ("p1", "default", "19.90", "2025-01-01T01:00:00.000Z"),
        ("p2", "fallback", "0.10", "2025-01-01T05:00:00.000Z"),
        ("p3", "default", "250.00", "2025-01-01T11:59:59.000Z"),
        ("p4", "default", "3.33", "2025-01-01T18:00:00.000Z"),
        ("p5", "fallback", "42.42", "2025-01-02T09:00:00.000Z"),
    ]
    for correlation_id, processor, amount, at in payments:
        await storage.record(correlation_id, processor, Decimal(amount), at, at)

    whole = await storage.payments_summary()
    windows = [
        await storage.payments_summary(None, "2025-01-01T06:00:00.000Z"),
        await storage.payments_summary("2025-01-01T06:00:00.001Z", "2025-01-01T12:00:00.000Z"),
        await storage.payments_summary("2025-01-01T12:00:00.001Z", None),
    ]

    assert whole == summed(*windows)
    assert whole["default"] == {"totalRequests": 3, "totalAmount": "273.23"}


@pytest.mark.asyncio
async def test_summary_can_score_by_requested_at(fake_redis):
    storage = PaymentStorage(fake_redis, score_field="requestedAt")
    await storage.record("r1", "default", Decimal("1"), "2024-12-31T23:59:59Z", "2025-01-01T00:00:01Z")

    summary = await storage.payments_summary("2025-01-01T00:00:00Z", None)

    assert summary["default"]["totalRequests"] == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("from_time, to_time", [("yesterday", None), (None, "2025-13-01T00:00:00Z"), ("2025-01-01", "soon")])
async def test_malformed_bounds_fail_without_mutation(fake_redis, from_time, to_time):
    storage = PaymentStorage(fake_redis)
    await storage.record("m1", "default", Decimal("1"), "2025-01-01T00:00:00Z")
    before = {key: (dict(v) if isinstance(v, dict) else v) for key, v in fake_redis.data.items()}

    with pytest.raises(InvalidTimeRangeError):
        await storage.payments_summary(from_time, to_time)

    assert fake_redis.data == before


@pytest.mark.asyncio
async def test_summary_surfaces_store_outage(fake_redis):
    fake_redis.fail_on.add("mget")
    with pytest.raises(StoreUnavailableError):
        await PaymentStorage(fake_redis).payments_summary()


def test_unknown_score_field_is_rejected(fake_redis):
    with pytest.raises(ValueError):
        PaymentStorage(fake_redis, score_field="enqueuedAt")
