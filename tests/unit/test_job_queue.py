"""Unit tests for PaymentQueue (enqueue side of the ARQ lanes)."""

import asyncio
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
import redis.exceptions
from services.payments_service.job_queue import (
    ConversionJobData,
    FundingJobData,
    JobLane,
    PaymentQueue,
    PayoutJobData,
    WebhookJobData,
)
from tests.conftest import settings


def _funding_data(**overrides) -> FundingJobData:
    data = {
        "payment_intent_id": "pi_123",
        "company_id": 1,
        "user_id": 1000,
        "amount_usd": Decimal("100.00"),
    }
    data.update(overrides)
    return FundingJobData(**data)


# ---------------------------------------------------------------------------
# Degraded mode
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_degraded_queue_returns_none():
    queue = PaymentQueue(None)

    assert queue.available is False
    assert await queue.add_funding_job(_funding_data()) is None
    assert await queue.add_webhook_job(WebhookJobData(webhook_event_id=uuid.uuid4())) is None
    await queue.close()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_connect_disabled_by_configuration():
    disabled = settings.model_copy(update={"QUEUE_ENABLED": False})

    with patch("services.payments_service.job_queue.create_pool") as create_pool:
        queue = await PaymentQueue.connect(disabled)

    assert queue.available is False
    create_pool.assert_not_called()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_connect_degrades_when_broker_is_unreachable():
    enabled = settings.model_copy(update={"QUEUE_ENABLED": True})

    with patch(
        "services.payments_service.job_queue.create_pool",
        AsyncMock(side_effect=OSError("Connection refused")),
    ):
        queue = await PaymentQueue.connect(enabled)

    assert queue.available is False


@pytest.mark.asyncio
@pytest.mark.unit
async def test_connect_uses_broker_when_reachable(arq_redis):
    enabled = settings.model_copy(update={"QUEUE_ENABLED": True})

    with patch(
        "services.payments_service.job_queue.create_pool",
        AsyncMock(return_value=arq_redis),
    ):
        queue = await PaymentQueue.connect(enabled)

    assert queue.available is True
    await queue.close()
    arq_redis.aclose.assert_awaited_once()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_broker_lost_after_startup_drops_the_job(arq_redis):
    arq_redis.enqueue_job.side_effect = redis.exceptions.ConnectionError("Connection refused")
    queue = PaymentQueue(arq_redis)

    assert queue.available is True
    assert await queue.add_funding_job(_funding_data()) is None
    assert await queue.add_webhook_job(WebhookJobData(webhook_event_id=uuid.uuid4())) is None
    assert arq_redis.enqueue_job.await_count == 2


@pytest.mark.asyncio
@pytest.mark.unit
async def test_enqueue_timeout_drops_the_job(arq_redis):
    arq_redis.enqueue_job.side_effect = asyncio.TimeoutError()
    queue = PaymentQueue(arq_redis)

    assert await queue.add_conversion_job(
        ConversionJobData(strike_quote_id="quote_1", company_id=1, user_id=1000)
    ) is None


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_funding_job_is_deferred_on_its_lane(arq_redis):
    queue = PaymentQueue(arq_redis, funding_delay_seconds=5)

    job = await queue.add_funding_job(_funding_data())

    assert job.job_id == "funding:pi_123"
    assert job.lane == JobLane.FUNDING
    args, kwargs = arq_redis.enqueue_job.call_args
    assert args[0] == "process_funding_job"
    assert args[1]["payment_intent_id"] == "pi_123"
    assert args[1]["amount_usd"] == "100.00"
    assert kwargs["_queue_name"] == "paidin:funding"
    assert kwargs["_defer_by"].total_seconds() == 5


@pytest.mark.asyncio
@pytest.mark.unit
async def test_manual_funding_retry_gets_its_own_job_id(arq_redis):
    queue = PaymentQueue(arq_redis)

    job = await queue.add_funding_job(_funding_data(), attempt="retry-1")

    assert job.job_id == "funding:pi_123:retry-1"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_lane_job_ids(arq_redis):
    queue = PaymentQueue(arq_redis)
    event_id = uuid.uuid4()

    conversion = await queue.add_conversion_job(
        ConversionJobData(strike_quote_id="quote_9", company_id=1, user_id=1000)
    )
    payout_data = PayoutJobData(
        company_id=1, user_id=1000, amount_sats=1000, description="Bonus"
    )
    payout = await queue.add_payout_job(payout_data)
    webhook = await queue.add_webhook_job(
        WebhookJobData(webhook_event_id=event_id), attempt=2
    )

    assert conversion.job_id == "conversion:quote_9"
    assert payout.job_id == f"payout:{payout_data.payout_id}"
    assert webhook.job_id == f"webhook:{event_id}:2"
    queue_names = [call.kwargs["_queue_name"] for call in arq_redis.enqueue_job.call_args_list]
    assert queue_names == ["paidin:conversion", "paidin:payout", "paidin:webhook"]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_duplicate_job_id_is_reported_as_deduplicated(arq_redis):
    arq_redis.enqueue_job.side_effect = None
    arq_redis.enqueue_job.return_value = None
    queue = PaymentQueue(arq_redis)

    job = await queue.add_conversion_job(
        ConversionJobData(strike_quote_id="quote_9", company_id=1, user_id=1000)
    )

    assert job.deduplicated is True
    assert job.job_id == "conversion:quote_9"
