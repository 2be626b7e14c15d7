"""ARQ workers for the funding, conversion, payout and webhook lanes.

Run one worker per lane, e.g.::

    arq services.payments_service.worker.FundingWorkerSettings
"""

from typing import Awaitable, Callable

from arq import Retry, cron, func
from libs.common.arq_config import get_redis_settings
from libs.common.config import get_settings
from libs.common.logging import configure_logging, get_logger
from libs.db.config import AsyncSessionLocal
from services.payments_service.container import PaymentServices, build_services
from services.payments_service.errors import is_retryable_job_error
from services.payments_service.job_queue import (
    LANES,
    ConversionJobData,
    FundingJobData,
    JobLane,
    PaymentQueue,
    PayoutJobData,
    WebhookJobData,
)

logger = get_logger(__name__)


def retry_delay(job_try: int, base_delay: float) -> float:
    """Exponential backoff before attempt ``job_try + 1``."""
    return base_delay * 2 ** (job_try - 1)


async def run_job(ctx: dict, lane: JobLane, work: Callable[[], Awaitable[dict]]) -> dict:
    """
    Run one job attempt and apply the lane's retry policy.

    Retryable failures below the lane's ``max_tries`` raise ``arq.Retry``;
    anything else is logged and returned as a failed result.
    """
    job_try = ctx.get("job_try", 1)
    max_tries = LANES[lane].max_tries
    log_fields = {"lane": lane.value, "job_id": ctx.get("job_id"), "job_try": job_try}

    try:
        result = await work()
    except Exception as exc:
        if is_retryable_job_error(exc) and job_try < max_tries:
            delay = retry_delay(job_try, ctx["settings"].JOB_RETRY_BASE_DELAY)
            logger.warning(
                "%s job attempt %d/%d failed, retrying in %.1fs: %s",
                lane.value,
                job_try,
                max_tries,
                delay,
                exc,
                extra={"extra_fields": log_fields},
            )
            raise Retry(defer=delay) from exc

        logger.error(
            "%s job failed after %d attempt(s): %s",
            lane.value,
            job_try,
            exc,
            extra={"extra_fields": log_fields},
        )
        return {"status": "failed", "error": str(exc), "attempts": job_try}

    return {"status": "completed", **result}


# ---------------------------------------------------------------------------
# Job functions
# ---------------------------------------------------------------------------


async def process_funding_job(ctx: dict, payload: dict) -> dict:
    data = FundingJobData.model_validate(payload)
    services: PaymentServices = ctx["services"]

    async def work() -> dict:
        transaction = await services.orchestrator.process_funding_completion(
            data.payment_intent_id
        )
        return {
            "payment_intent_id": data.payment_intent_id,
            "transaction_id": str(transaction.id) if transaction else None,
        }

    return await run_job(ctx, JobLane.FUNDING, work)


async def process_conversion_job(ctx: dict, payload: dict) -> dict:
    data = ConversionJobData.model_validate(payload)
    services: PaymentServices = ctx["services"]

    async def work() -> dict:
        conversion = await services.orchestrator.reconcile_conversion(
            data.strike_quote_id
        )
        return {
            "strike_quote_id": data.strike_quote_id,
            "conversion_status": conversion.status.value if conversion else None,
        }

    return await run_job(ctx, JobLane.CONVERSION, work)


async def process_payout_job(ctx: dict, payload: dict) -> dict:
    data = PayoutJobData.model_validate(payload)
    services: PaymentServices = ctx["services"]

    async def work() -> dict:
        transaction = await services.orchestrator.run_payout(data)
        return {
            "transaction_id": str(transaction.id),
            "transaction_status": transaction.status.value,
            "invoice_id": transaction.lightning_invoice_id,
        }

    return await run_job(ctx, JobLane.PAYOUT, work)


async def process_webhook_job(ctx: dict, payload: dict) -> dict:
    data = WebhookJobData.model_validate(payload)
    services: PaymentServices = ctx["services"]

    async def work() -> dict:
        event = await services.webhooks.process(data.webhook_event_id)
        return {"webhook_event_id": str(event.id)}

    return await run_job(ctx, JobLane.WEBHOOK, work)


async def reconcile_conversions(ctx: dict) -> None:
    settled = await ctx["services"].orchestrator.reconcile_pending_conversions()
    if settled:
        logger.info("Reconciled %d pending conversions", settled)


async def reconcile_swaps(ctx: dict) -> None:
    settled = await ctx["services"].orchestrator.reconcile_pending_swaps()
    if settled:
        logger.info("Reconciled %d pending swaps", settled)


# ---------------------------------------------------------------------------
# Worker lifecycle
# ---------------------------------------------------------------------------


async def startup(ctx: dict) -> None:
    settings = get_settings()
    configure_logging()
    ctx["settings"] = settings
    # Jobs enqueue follow-up work through the worker's own pool.
    queue = PaymentQueue(
        ctx["redis"], funding_delay_seconds=settings.FUNDING_JOB_DELAY_SECONDS
    )
    ctx["services"] = await build_services(settings, AsyncSessionLocal, queue=queue)


async def shutdown(ctx: dict) -> None:
    logger.info("Payments worker shutting down")


def _lane_function(lane: JobLane, coroutine):
    config = LANES[lane]
    return func(coroutine, name=config.function_name, max_tries=config.max_tries)


class _BaseWorkerSettings:
    redis_settings = get_redis_settings()
    on_startup = startup
    on_shutdown = shutdown


class FundingWorkerSettings(_BaseWorkerSettings):
    queue_name = LANES[JobLane.FUNDING].queue_name
    functions = [_lane_function(JobLane.FUNDING, process_funding_job)]


class ConversionWorkerSettings(_BaseWorkerSettings):
    queue_name = LANES[JobLane.CONVERSION].queue_name
    functions = [_lane_function(JobLane.CONVERSION, process_conversion_job)]
    cron_jobs = [
        cron(
            reconcile_conversions,
            minute={0, 10, 20, 30, 40, 50},
            run_at_startup=True,
        ),
        cron(reconcile_swaps, minute={5, 15, 25, 35, 45, 55}),
    ]


class PayoutWorkerSettings(_BaseWorkerSettings):
    queue_name = LANES[JobLane.PAYOUT].queue_name
    functions = [_lane_function(JobLane.PAYOUT, process_payout_job)]


class WebhookWorkerSettings(_BaseWorkerSettings):
    queue_name = LANES[JobLane.WEBHOOK].queue_name
    functions = [_lane_function(JobLane.WEBHOOK, process_webhook_job)]
