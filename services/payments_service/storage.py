"""Persistence helpers for the payments service.

Module-level async functions taking the session first, mirroring how the
wallet operations are written. Functions that change state commit before
returning so every pipeline step is durable before the next one starts.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional, Sequence

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.payments_service.models import (
    BreezWallet,
    Conversion,
    ConversionStatus,
    PaymentIntent,
    PaymentIntentStatus,
    PlaidAccount,
    PlaidAccountStatus,
    SourceType,
    TransactionStatus,
    TransactionType,
    User,
    WalletTransaction,
    WalletType,
    WebhookEvent,
    WebhookProvider,
)
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


async def get_user(db: AsyncSession, user_id: int) -> Optional[User]:
    return await db.get(User, user_id)


async def list_company_users(db: AsyncSession, company_id: int) -> Sequence[User]:
    result = await db.execute(select(User).where(User.company_id == company_id))
    return result.scalars().all()


# ---------------------------------------------------------------------------
# Plaid accounts
# ---------------------------------------------------------------------------


async def create_plaid_account(db: AsyncSession, **fields) -> PlaidAccount:
    account = PlaidAccount(**fields)
    db.add(account)
    await db.commit()
    await db.refresh(account)
    return account


async def get_plaid_account(
    db: AsyncSession, account_id: uuid.UUID
) -> Optional[PlaidAccount]:
    return await db.get(PlaidAccount, account_id)


async def list_plaid_accounts(
    db: AsyncSession, *, company_id: int, user_id: Optional[int] = None
) -> Sequence[PlaidAccount]:
    query = select(PlaidAccount).where(PlaidAccount.company_id == company_id)
    if user_id is not None:
        query = query.where(PlaidAccount.user_id == user_id)
    result = await db.execute(query.order_by(PlaidAccount.created_at))
    return result.scalars().all()


async def list_plaid_accounts_by_item(
    db: AsyncSession, item_id: str
) -> Sequence[PlaidAccount]:
    result = await db.execute(
        select(PlaidAccount).where(PlaidAccount.item_id == item_id)
    )
    return result.scalars().all()


async def set_plaid_item_status(
    db: AsyncSession, item_id: str, status: PlaidAccountStatus
) -> int:
    result = await db.execute(
        update(PlaidAccount)
        .where(PlaidAccount.item_id == item_id)
        .values(status=status, updated_at=utc_now())
    )
    await db.commit()
    return result.rowcount or 0


async def delete_plaid_account(db: AsyncSession, account: PlaidAccount) -> None:
    await db.delete(account)
    await db.commit()


# ---------------------------------------------------------------------------
# Payment intents
# ---------------------------------------------------------------------------


async def create_payment_intent(db: AsyncSession, **fields) -> PaymentIntent:
    intent = PaymentIntent(**fields)
    db.add(intent)
    await db.commit()
    await db.refresh(intent)
    return intent


async def get_payment_intent(
    db: AsyncSession, intent_id: uuid.UUID
) -> Optional[PaymentIntent]:
    return await db.get(PaymentIntent, intent_id)


async def get_payment_intent_by_stripe_id(
    db: AsyncSession, stripe_payment_intent_id: str
) -> Optional[PaymentIntent]:
    result = await db.execute(
        select(PaymentIntent).where(
            PaymentIntent.stripe_payment_intent_id == stripe_payment_intent_id
        )
    )
    return result.scalar_one_or_none()


async def update_payment_intent_status(
    db: AsyncSession, intent: PaymentIntent, status: PaymentIntentStatus
) -> PaymentIntent:
    """Move an intent to ``status`` unless it already reached a terminal one."""
    if intent.status == status:
        return intent
    if intent.status.is_terminal:
        logger.info(
            "Ignoring status %s for payment intent %s already %s",
            status.value,
            intent.stripe_payment_intent_id,
            intent.status.value,
        )
        return intent
    intent.status = status
    await db.commit()
    await db.refresh(intent)
    return intent


async def list_payment_intents(
    db: AsyncSession, *, company_id: int, user_id: Optional[int] = None
) -> Sequence[PaymentIntent]:
    query = select(PaymentIntent).where(PaymentIntent.company_id == company_id)
    if user_id is not None:
        query = query.where(PaymentIntent.user_id == user_id)
    result = await db.execute(query.order_by(PaymentIntent.created_at.desc()))
    return result.scalars().all()


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------


async def create_conversion(db: AsyncSession, **fields) -> Conversion:
    conversion = Conversion(**fields)
    if conversion.status == ConversionStatus.COMPLETED:
        conversion.completed_at = utc_now()
    db.add(conversion)
    await db.commit()
    await db.refresh(conversion)
    return conversion


async def get_conversion_by_quote_id(
    db: AsyncSession, strike_quote_id: str
) -> Optional[Conversion]:
    result = await db.execute(
        select(Conversion).where(Conversion.strike_quote_id == strike_quote_id)
    )
    return result.scalar_one_or_none()


async def finish_conversion(
    db: AsyncSession, conversion: Conversion, status: ConversionStatus
) -> Conversion:
    """Settle a pending conversion. Completed conversions are immutable."""
    if conversion.status != ConversionStatus.PENDING:
        return conversion
    conversion.status = status
    if status == ConversionStatus.COMPLETED:
        conversion.completed_at = utc_now()
    await db.commit()
    await db.refresh(conversion)
    return conversion


async def list_conversions(
    db: AsyncSession, *, company_id: Optional[int] = None, user_id: Optional[int] = None
) -> Sequence[Conversion]:
    query = select(Conversion)
    if company_id is not None:
        query = query.where(Conversion.company_id == company_id)
    if user_id is not None:
        query = query.where(Conversion.user_id == user_id)
    result = await db.execute(query.order_by(Conversion.created_at.desc()))
    return result.scalars().all()


async def list_pending_conversions(
    db: AsyncSession, *, older_than: datetime
) -> Sequence[Conversion]:
    result = await db.execute(
        select(Conversion).where(
            Conversion.status == ConversionStatus.PENDING,
            Conversion.created_at < older_than,
        )
    )
    return result.scalars().all()


async def conversion_stats(db: AsyncSession) -> dict:
    """Counts per status plus totals and average rate over completed conversions."""
    by_status = await db.execute(
        select(Conversion.status, func.count()).group_by(Conversion.status)
    )
    totals = await db.execute(
        select(
            func.coalesce(func.sum(Conversion.amount_usd), 0),
            func.coalesce(func.sum(Conversion.amount_btc), 0),
            func.avg(Conversion.exchange_rate),
        ).where(Conversion.status == ConversionStatus.COMPLETED)
    )
    total_usd, total_btc, average_rate = totals.one()
    counts = {status: count for status, count in by_status.all()}
    return {
        "total": sum(counts.values()),
        "by_status": counts,
        "total_usd": total_usd,
        "total_btc": total_btc,
        "average_rate": average_rate,
    }


# ---------------------------------------------------------------------------
# Breez wallets
# ---------------------------------------------------------------------------


async def create_wallet(db: AsyncSession, **fields) -> BreezWallet:
    wallet = BreezWallet(**fields)
    db.add(wallet)
    await db.commit()
    await db.refresh(wallet)
    return wallet


async def get_wallet(db: AsyncSession, wallet_id: uuid.UUID) -> Optional[BreezWallet]:
    return await db.get(BreezWallet, wallet_id)


async def get_wallet_by_node_id(
    db: AsyncSession, node_id: str
) -> Optional[BreezWallet]:
    result = await db.execute(select(BreezWallet).where(BreezWallet.node_id == node_id))
    return result.scalar_one_or_none()


async def find_wallet(
    db: AsyncSession,
    *,
    company_id: int,
    wallet_type: WalletType,
    user_id: Optional[int] = None,
) -> Optional[BreezWallet]:
    """Oldest wallet of the given type (company wallets have no user)."""
    query = select(BreezWallet).where(
        BreezWallet.company_id == company_id,
        BreezWallet.wallet_type == wallet_type,
    )
    if wallet_type == WalletType.EMPLOYEE:
        query = query.where(BreezWallet.user_id == user_id)
    result = await db.execute(query.order_by(BreezWallet.created_at).limit(1))
    return result.scalar_one_or_none()


async def list_wallets(
    db: AsyncSession, *, company_id: int, user_id: Optional[int] = None
) -> Sequence[BreezWallet]:
    query = select(BreezWallet).where(BreezWallet.company_id == company_id)
    if user_id is not None:
        query = query.where(BreezWallet.user_id == user_id)
    result = await db.execute(query.order_by(BreezWallet.created_at))
    return result.scalars().all()


async def save_wallet(db: AsyncSession, wallet: BreezWallet) -> BreezWallet:
    await db.commit()
    await db.refresh(wallet)
    return wallet


# ---------------------------------------------------------------------------
# Wallet transactions (ledger)
# ---------------------------------------------------------------------------


async def find_live_transaction(
    db: AsyncSession,
    *,
    transaction_type: TransactionType,
    source_type: SourceType,
    source_id: str,
) -> Optional[WalletTransaction]:
    """The non-failed ledger row for an effect, if one exists."""
    result = await db.execute(
        select(WalletTransaction).where(
            WalletTransaction.transaction_type == transaction_type,
            WalletTransaction.source_type == source_type,
            WalletTransaction.source_id == source_id,
            WalletTransaction.status != TransactionStatus.FAILED,
        )
    )
    return result.scalar_one_or_none()


async def record_transaction(db: AsyncSession, **fields) -> WalletTransaction:
    """Append a ledger row. Raises IntegrityError for a duplicate live effect."""
    transaction = WalletTransaction(**fields)
    if transaction.status == TransactionStatus.FAILED and not fields.get("source_id"):
        transaction.source_id = f"attempt:{uuid.uuid4().hex}"
    db.add(transaction)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise
    await db.refresh(transaction)
    return transaction


async def claim_transaction(
    db: AsyncSession, **fields
) -> tuple[WalletTransaction, bool]:
    """
    Insert a live ledger row for an effect, or return the one that exists.

    Returns ``(row, created)``. Concurrent claimers race on the partial
    unique index; the loser gets the winner's row with ``created=False``.
    """
    try:
        return await record_transaction(db, **fields), True
    except IntegrityError:
        existing = await find_live_transaction(
            db,
            transaction_type=fields["transaction_type"],
            source_type=fields["source_type"],
            source_id=fields["source_id"],
        )
        if existing is None:
            raise
        return existing, False


async def transition_transaction(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    status: TransactionStatus,
    *,
    error: Optional[str] = None,
    metadata: Optional[dict] = None,
    lightning_invoice_id: Optional[str] = None,
) -> Optional[WalletTransaction]:
    """
    Move a ledger row from a non-terminal status to ``status``.

    Returns the row when the transition happened and ``None`` when the row is
    missing or already terminal, so repeated calls are harmless.
    """
    result = await db.execute(
        select(WalletTransaction)
        .where(WalletTransaction.id == transaction_id)
        .with_for_update()
    )
    transaction = result.scalar_one_or_none()
    if transaction is None or transaction.status.is_terminal:
        await db.commit()
        return None

    transaction.status = status
    if error is not None:
        transaction.error = error[:2000]
    if lightning_invoice_id is not None:
        transaction.lightning_invoice_id = lightning_invoice_id
    if metadata:
        transaction.transaction_metadata = {
            **(transaction.transaction_metadata or {}),
            **metadata,
        }
    await db.commit()
    await db.refresh(transaction)
    return transaction


async def get_transaction(
    db: AsyncSession, transaction_id: uuid.UUID
) -> Optional[WalletTransaction]:
    return await db.get(WalletTransaction, transaction_id)


async def list_transactions(
    db: AsyncSession,
    *,
    company_id: int,
    user_id: Optional[int] = None,
    transaction_type: Optional[TransactionType] = None,
    limit: int = 50,
) -> Sequence[WalletTransaction]:
    query = select(WalletTransaction).where(WalletTransaction.company_id == company_id)
    if user_id is not None:
        query = query.where(WalletTransaction.user_id == user_id)
    if transaction_type is not None:
        query = query.where(WalletTransaction.transaction_type == transaction_type)
    result = await db.execute(
        query.order_by(WalletTransaction.created_at.desc()).limit(limit)
    )
    return result.scalars().all()


async def list_open_transactions_for_invoice(
    db: AsyncSession, lightning_invoice_id: str
) -> Sequence[WalletTransaction]:
    result = await db.execute(
        select(WalletTransaction).where(
            WalletTransaction.lightning_invoice_id == lightning_invoice_id,
            WalletTransaction.status.in_(
                [TransactionStatus.PENDING, TransactionStatus.AWAITING_PAYMENT]
            ),
        )
    )
    return result.scalars().all()


async def list_stale_claims(
    db: AsyncSession, *, transaction_type: TransactionType, older_than: datetime
) -> Sequence[WalletTransaction]:
    result = await db.execute(
        select(WalletTransaction).where(
            WalletTransaction.transaction_type == transaction_type,
            WalletTransaction.status == TransactionStatus.PENDING,
            WalletTransaction.created_at < older_than,
        )
    )
    return result.scalars().all()


async def count_transactions_since(
    db: AsyncSession, since: datetime
) -> dict[str, int]:
    """Ledger row counts per status created after ``since``."""
    result = await db.execute(
        select(WalletTransaction.status, func.count())
        .where(WalletTransaction.created_at >= since)
        .group_by(WalletTransaction.status)
    )
    return {status.value: count for status, count in result.all()}


# ---------------------------------------------------------------------------
# Webhook events
# ---------------------------------------------------------------------------


async def create_webhook_event(
    db: AsyncSession,
    *,
    provider: WebhookProvider,
    event_type: str,
    event_id: str,
    payload: dict,
) -> tuple[WebhookEvent, bool]:
    """Persist a delivery, returning the stored row for a duplicate event id."""
    event = WebhookEvent(
        provider=provider, event_type=event_type, event_id=event_id, payload=payload
    )
    db.add(event)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        result = await db.execute(
            select(WebhookEvent).where(
                WebhookEvent.provider == provider, WebhookEvent.event_id == event_id
            )
        )
        return result.scalar_one(), False
    await db.refresh(event)
    return event, True


async def get_webhook_event(
    db: AsyncSession, webhook_event_id: uuid.UUID
) -> Optional[WebhookEvent]:
    return await db.get(WebhookEvent, webhook_event_id)


async def mark_webhook_processed(db: AsyncSession, event: WebhookEvent) -> WebhookEvent:
    event.processed = True
    event.processed_at = utc_now()
    event.error = None
    event.attempts += 1
    await db.commit()
    await db.refresh(event)
    return event


async def mark_webhook_failed(
    db: AsyncSession, event: WebhookEvent, error: str
) -> WebhookEvent:
    event.error = error[:2000]
    event.attempts += 1
    await db.commit()
    await db.refresh(event)
    return event


async def list_webhook_events(
    db: AsyncSession,
    *,
    provider: Optional[WebhookProvider] = None,
    processed: Optional[bool] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[Sequence[WebhookEvent], int]:
    query = select(WebhookEvent)
    if provider is not None:
        query = query.where(WebhookEvent.provider == provider)
    if processed is not None:
        query = query.where(WebhookEvent.processed == processed)

    total = (
        await db.execute(select(func.count()).select_from(query.subquery()))
    ).scalar_one()
    result = await db.execute(
        query.order_by(WebhookEvent.received_at.desc()).limit(limit).offset(offset)
    )
    return result.scalars().all(), total


async def webhook_health_counts(
    db: AsyncSession, *, since: datetime, stale_after: timedelta
) -> dict:
    """Delivery counts since ``since`` plus the stale unprocessed backlog."""
    count_events = select(func.count()).select_from(WebhookEvent)

    total = (
        await db.execute(count_events.where(WebhookEvent.received_at >= since))
    ).scalar_one()
    failed = (
        await db.execute(
            count_events.where(
                WebhookEvent.received_at >= since,
                WebhookEvent.processed.is_(False),
                WebhookEvent.error.is_not(None),
            )
        )
    ).scalar_one()
    stale = (
        await db.execute(
            count_events.where(
                WebhookEvent.processed.is_(False),
                WebhookEvent.received_at < utc_now() - stale_after,
            )
        )
    ).scalar_one()
    return {"total": total, "failed": failed, "stale_unprocessed": stale}


async def list_transactions_for_source(
    db: AsyncSession,
    *,
    transaction_type: TransactionType,
    source_type: SourceType,
    source_id: str,
) -> Sequence[WalletTransaction]:
    """Every ledger row for an effect, failed attempts included."""
    result = await db.execute(
        select(WalletTransaction)
        .where(
            WalletTransaction.transaction_type == transaction_type,
            WalletTransaction.source_type == source_type,
            WalletTransaction.source_id == source_id,
        )
        .order_by(WalletTransaction.created_at)
    )
    return result.scalars().all()
