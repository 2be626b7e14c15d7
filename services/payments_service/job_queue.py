"""Job queue for the payments pipeline.

Four lanes (funding, conversion, payout, webhook), each an ARQ queue with
its own worker. Whether the broker is available is decided once, when the
queue is constructed at process start. A queue built without a broker runs
in degraded mode: enqueue calls log a warning and return ``None``.
"""

import asyncio
import enum
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from arq import create_pool
from arq.connections import ArqRedis
from libs.common.arq_config import get_redis_settings
from libs.common.config import Settings
from libs.common.logging import get_logger
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

logger = get_logger(__name__)


class JobLane(str, enum.Enum):
    FUNDING = "funding"
    CONVERSION = "conversion"
    PAYOUT = "payout"
    WEBHOOK = "webhook"


@dataclass(frozen=True)
class LaneConfig:
    queue_name: str
    function_name: str
    max_tries: int


LANES: dict[JobLane, LaneConfig] = {
    JobLane.FUNDING: LaneConfig("paidin:funding", "process_funding_job", 3),
    JobLane.CONVERSION: LaneConfig("paidin:conversion", "process_conversion_job", 3),
    JobLane.PAYOUT: LaneConfig("paidin:payout", "process_payout_job", 3),
    JobLane.WEBHOOK: LaneConfig("paidin:webhook", "process_webhook_job", 5),
}


# ---------------------------------------------------------------------------
# Job payloads
# ---------------------------------------------------------------------------


class FundingJobData(BaseModel):
    payment_intent_id: str
    company_id: int
    user_id: int
    amount_usd: Decimal
    plaid_account_id: Optional[uuid.UUID] = None


class ConversionJobData(BaseModel):
    strike_quote_id: str
    company_id: int
    user_id: int


class PayoutJobData(BaseModel):
    company_id: int
    user_id: int
    amount_sats: int
    description: str
    wallet_id: Optional[uuid.UUID] = None
    payout_id: str = Field(default_factory=lambda: uuid.uuid4().hex)


class WebhookJobData(BaseModel):
    webhook_event_id: uuid.UUID


@dataclass(frozen=True)
class QueuedJob:
    """Handle for an enqueued job."""

    job_id: str
    lane: JobLane
    deduplicated: bool = False


class PaymentQueue:
    """Enqueue side of the job queue."""

    def __init__(
        self,
        redis: Optional[ArqRedis],
        *,
        funding_delay_seconds: int = 5,
    ):
        self._redis = redis
        self.funding_delay_seconds = funding_delay_seconds

    @classmethod
    async def connect(cls, settings: Settings) -> "PaymentQueue":
        """Connect to the broker, or build a degraded queue if it is absent."""
        if not settings.QUEUE_ENABLED:
            logger.warning("Job queue disabled by configuration, running degraded")
            return cls(None, funding_delay_seconds=settings.FUNDING_JOB_DELAY_SECONDS)
        try:
            redis = await create_pool(get_redis_settings(conn_retries=1))
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("Job queue broker unavailable, running degraded: %s", exc)
            redis = None
        return cls(redis, funding_delay_seconds=settings.FUNDING_JOB_DELAY_SECONDS)

    @property
    def available(self) -> bool:
        return self._redis is not None

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()

    async def _enqueue(
        self,
        lane: JobLane,
        payload: BaseModel,
        *,
        job_id: Optional[str] = None,
        defer_by: Optional[timedelta] = None,
    ) -> Optional[QueuedJob]:
        if self._redis is None:
            logger.warning(
                "Queue unavailable, %s job not enqueued",
                lane.value,
                extra={"extra_fields": {"lane": lane.value, "job_id": job_id}},
            )
            return None

        config = LANES[lane]
        try:
            job = await self._redis.enqueue_job(
                config.function_name,
                payload.model_dump(mode="json"),
                _job_id=job_id,
                _queue_name=config.queue_name,
                _defer_by=defer_by,
            )
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Broker error, %s job not enqueued: %s",
                lane.value,
                exc,
                extra={"extra_fields": {"lane": lane.value, "job_id": job_id}},
            )
            return None
        if job is None:
            # ARQ refuses a second job with the same id while the first exists.
            logger.info("Duplicate %s job %s ignored", lane.value, job_id)
            return QueuedJob(job_id=job_id, lane=lane, deduplicated=True)

        logger.info(
            "Enqueued %s job %s",
            lane.value,
            job.job_id,
            extra={"extra_fields": {"lane": lane.value, "job_id": job.job_id}},
        )
        return QueuedJob(job_id=job.job_id, lane=lane)

    async def add_funding_job(
        self, data: FundingJobData, *, attempt: str = ""
    ) -> Optional[QueuedJob]:
        """
        Funding runs after a delay so the bank debit can clear.

        ``attempt`` distinguishes a manual retry from the original job id.
        """
        job_id = f"funding:{data.payment_intent_id}"
        return await self._enqueue(
            JobLane.FUNDING,
            data,
            job_id=f"{job_id}:{attempt}" if attempt else job_id,
            defer_by=timedelta(seconds=self.funding_delay_seconds),
        )

    async def add_conversion_job(self, data: ConversionJobData) -> Optional[QueuedJob]:
        return await self._enqueue(
            JobLane.CONVERSION, data, job_id=f"conversion:{data.strike_quote_id}"
        )

    async def add_payout_job(self, data: PayoutJobData) -> Optional[QueuedJob]:
        return await self._enqueue(JobLane.PAYOUT, data, job_id=f"payout:{data.payout_id}")

    async def add_webhook_job(
        self, data: WebhookJobData, *, attempt: int = 0
    ) -> Optional[QueuedJob]:
        return await self._enqueue(
            JobLane.WEBHOOK, data, job_id=f"webhook:{data.webhook_event_id}:{attempt}"
        )
