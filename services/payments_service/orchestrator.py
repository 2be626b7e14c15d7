"""Payment orchestration.

``PaymentOrchestrator`` sequences adapter calls into the three money
movement flows (fund company wallet, employee swap, employee payout) and
keeps the WalletTransaction ledger. It holds no state between calls: every
step is committed before the next one starts, so a crash leaves a partial
state that a retry or replay can pick up.
"""

import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Optional, Sequence

from libs.common.currency import (
    btc_to_sats,
    cents_to_usd,
    conversion_is_consistent,
    sats_to_btc,
    usd_to_cents,
)
from libs.common.datetime_utils import seconds_since, utc_now
from libs.common.logging import get_logger
from services.payments_service import storage
from services.payments_service.errors import (
    AuthorizationError,
    FundingNotReadyError,
    InsufficientFundsError,
    ProviderError,
    ValidationError,
    WalletNotFoundError,
)
from services.payments_service.events import (
    BreezInvoiceEvent,
    BreezPaymentEvent,
    BreezWalletSyncedEvent,
    PlaidItemEvent,
    ProviderEvent,
    StrikeInvoiceEvent,
    StrikeQuoteEvent,
    StrikeSwapEvent,
    StripeChargeEvent,
    StripePaymentIntentEvent,
)
from services.payments_service.job_queue import (
    ConversionJobData,
    FundingJobData,
    PaymentQueue,
    PayoutJobData,
)
from services.payments_service.models import (
    BreezWallet,
    ConversionStatus,
    LedgerCurrency,
    PaymentIntent,
    PaymentIntentStatus,
    PlaidAccountStatus,
    SourceType,
    SwapDirection,
    TransactionStatus,
    TransactionType,
    User,
    WalletTransaction,
    WalletType,
    WebhookProvider,
)
from services.payments_service.providers import (
    BreezAdapter,
    PlaidAdapter,
    StrikeAdapter,
    StripeAdapter,
)
from services.payments_service.providers.breez import LightningInvoice
from services.payments_service.providers.strike import Quote
from services.payments_service.providers.stripe import Refund
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

if TYPE_CHECKING:
    from services.payments_service.webhooks import WebhookDispatcher

logger = get_logger(__name__)

COMPLETED_QUOTE_STATUSES = frozenset({"completed", "executed"})
FAILED_QUOTE_STATUSES = frozenset({"failed", "expired", "canceled", "cancelled"})


@dataclass
class FundingRequest:
    company_id: int
    user_id: int
    amount_usd: Decimal
    plaid_account_id: uuid.UUID
    description: str = "Company wallet funding"


@dataclass
class SwapRequest:
    """``amount`` is sats for btc_to_usd and dollars for usd_to_btc."""

    company_id: int
    user_id: int
    direction: SwapDirection
    amount: Decimal
    description: str = ""


@dataclass
class PayoutRequest:
    company_id: int
    user_id: int
    amount_sats: int
    description: str
    wallet_id: Optional[uuid.UUID] = None


@dataclass
class FundingResult:
    payment_intent_id: str
    status: str


@dataclass
class SwapResult:
    status: str
    transaction_id: str


@dataclass
class PayoutResult:
    status: str
    invoice_id: Optional[str]


@dataclass
class PaymentStatusResult:
    status: str
    details: dict = field(default_factory=dict)


class PaymentOrchestrator:
    """Coordinates Plaid, Stripe, Strike and Breez into the payment flows."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        plaid: PlaidAdapter,
        stripe: StripeAdapter,
        strike: StrikeAdapter,
        breez: BreezAdapter,
        queue: PaymentQueue,
        conversion_fee_tolerance: float = 0.02,
        funding_claim_stale_seconds: int = 900,
    ):
        self._session_factory = session_factory
        self.plaid = plaid
        self.stripe = stripe
        self.strike = strike
        self.breez = breez
        self.queue = queue
        self.conversion_fee_tolerance = conversion_fee_tolerance
        self.funding_claim_stale_seconds = funding_claim_stale_seconds
        self.webhooks: Optional["WebhookDispatcher"] = None

        self._event_handlers = {
            StripePaymentIntentEvent: self._on_stripe_payment_intent,
            StripeChargeEvent: self._on_stripe_charge,
            StrikeQuoteEvent: self._on_strike_quote,
            StrikeSwapEvent: self._on_strike_swap,
            StrikeInvoiceEvent: self._on_strike_invoice,
            BreezInvoiceEvent: self._on_breez_invoice,
            BreezPaymentEvent: self._on_breez_payment,
            BreezWalletSyncedEvent: self._on_breez_wallet_synced,
            PlaidItemEvent: self._on_plaid_item,
        }

    # =========================================================================
    # Shared helpers
    # =========================================================================

    async def _authorize(self, db: AsyncSession, company_id: int, user_id: int) -> User:
        user = await storage.get_user(db, user_id)
        if user is None or user.company_id != company_id:
            raise AuthorizationError(
                f"User {user_id} is not a member of company {company_id}"
            )
        return user

    async def _ensure_wallet(
        self,
        db: AsyncSession,
        *,
        company_id: int,
        wallet_type: WalletType,
        user_id: Optional[int] = None,
    ) -> BreezWallet:
        wallet = await storage.find_wallet(
            db, company_id=company_id, wallet_type=wallet_type, user_id=user_id
        )
        if wallet is not None:
            return wallet
        return await self.breez.initialize_wallet(
            db, user_id=user_id, company_id=company_id, wallet_type=wallet_type
        )

    def _check_conversion(self, quote: Quote) -> None:
        if not conversion_is_consistent(
            quote.amount_usd,
            quote.amount_btc,
            quote.exchange_rate,
            self.conversion_fee_tolerance,
        ):
            raise ProviderError(
                "strike",
                f"Quote {quote.quote_id} amounts disagree with its exchange rate",
            )

    async def _resync_after_payment(
        self, db: AsyncSession, *wallet_ids: Optional[uuid.UUID]
    ) -> None:
        """
        Refresh cached balances once a payment is recorded.

        Failures are logged only: the money already moved, and the next sync
        or ``wallet.synced`` webhook corrects the cached balance.
        """
        for wallet_id in wallet_ids:
            if wallet_id is None:
                continue
            try:
                await self.breez.sync_wallet(db, wallet_id)
            except ProviderError as exc:
                logger.warning(
                    "Balance resync for wallet %s failed: %s",
                    wallet_id,
                    exc,
                    extra={"extra_fields": {"wallet_id": str(wallet_id)}},
                )

    async def _record_failure(
        self,
        db: AsyncSession,
        *,
        company_id: int,
        user_id: int,
        transaction_type: TransactionType,
        source_type: SourceType,
        amount: Decimal,
        currency: LedgerCurrency,
        error: Exception,
        source_id: Optional[str] = None,
        wallet_id: Optional[uuid.UUID] = None,
        context: Optional[dict] = None,
    ) -> WalletTransaction:
        """Write the failed ledger row for one attempt."""
        await db.rollback()
        transaction = await storage.record_transaction(
            db,
            company_id=company_id,
            user_id=user_id,
            wallet_id=wallet_id,
            transaction_type=transaction_type,
            source_type=source_type,
            source_id=source_id,
            amount=amount,
            currency=currency,
            status=TransactionStatus.FAILED,
            error=str(error),
            transaction_metadata={
                **(context or {}),
                "error_code": getattr(error, "code", type(error).__name__),
            },
        )
        logger.error(
            "%s failed: %s",
            transaction_type.value,
            error,
            extra={
                "extra_fields": {
                    "transaction_id": str(transaction.id),
                    "company_id": company_id,
                    "user_id": user_id,
                    **(context or {}),
                }
            },
        )
        return transaction

    # =========================================================================
    # Fund company wallet
    # =========================================================================

    async def fund_company_wallet(self, request: FundingRequest) -> FundingResult:
        """
        Start an ACH debit into the company wallet.

        Pulls ACH numbers from Plaid, creates and confirms a Stripe payment
        intent, then queues the funding job that converts and delivers the
        BTC once the debit settles. Returns without waiting for settlement.
        """
        if request.amount_usd <= 0:
            raise ValidationError("Funding amount must be positive")

        async with self._session_factory() as db:
            user = await self._authorize(db, request.company_id, request.user_id)
            account = await storage.get_plaid_account(db, request.plaid_account_id)
            if (
                account is None
                or account.company_id != request.company_id
                or account.user_id != request.user_id
            ):
                raise AuthorizationError("Bank account does not belong to requester")
            if account.status != PlaidAccountStatus.ACTIVE:
                raise ValidationError("Bank account needs to be re-linked")

            amount_cents = usd_to_cents(request.amount_usd)
            context = {"plaid_account_id": str(account.id)}
            intent: Optional[PaymentIntent] = None
            try:
                ach = await self.plaid.get_auth(db, account.id)
                method = await self.stripe.create_payment_method_from_plaid(
                    ach.account_number,
                    ach.routing_number,
                    user.full_name or user.email,
                    "savings" if account.account_subtype == "savings" else "checking",
                )
                context["payment_method_id"] = method.id
                intent = await self.stripe.create_payment_intent(
                    db,
                    amount_cents=amount_cents,
                    plaid_account_id=account.id,
                    company_id=request.company_id,
                    user_id=request.user_id,
                    metadata={"description": request.description},
                )
                context["payment_intent_id"] = intent.stripe_payment_intent_id
                confirmed = await self.stripe.confirm_payment_intent(
                    db, intent.stripe_payment_intent_id, method.id
                )
            except Exception as exc:
                await self._record_failure(
                    db,
                    company_id=request.company_id,
                    user_id=request.user_id,
                    transaction_type=TransactionType.FUNDING,
                    source_type=SourceType.STRIPE if intent else SourceType.PLAID,
                    source_id=intent.stripe_payment_intent_id if intent else None,
                    amount=request.amount_usd,
                    currency=LedgerCurrency.USD,
                    error=exc,
                    context=context,
                )
                raise

            status = (confirmed or intent).status

        await self.queue.add_funding_job(
            FundingJobData(
                payment_intent_id=intent.stripe_payment_intent_id,
                company_id=request.company_id,
                user_id=request.user_id,
                amount_usd=request.amount_usd,
                plaid_account_id=account.id,
            )
        )
        logger.info(
            "Funding initiated: %s for %s USD",
            intent.stripe_payment_intent_id,
            request.amount_usd,
            extra={"extra_fields": {"company_id": request.company_id}},
        )
        return FundingResult(
            payment_intent_id=intent.stripe_payment_intent_id, status=status.value
        )

    async def _claim_funding(
        self,
        db: AsyncSession,
        *,
        payment_intent_id: str,
        company_id: int,
        user_id: int,
        amount_usd: Decimal,
    ) -> Optional[WalletTransaction]:
        """
        Reserve the funding effect for a payment intent.

        Returns the new pending row, or ``None`` when another run already
        completed the effect or is still working on it.
        """
        claim, created = await storage.claim_transaction(
            db,
            company_id=company_id,
            user_id=user_id,
            transaction_type=TransactionType.FUNDING,
            source_type=SourceType.STRIPE,
            source_id=payment_intent_id,
            amount=amount_usd,
            currency=LedgerCurrency.USD,
            status=TransactionStatus.PENDING,
            transaction_metadata={"payment_intent_id": payment_intent_id},
        )
        if created:
            return claim

        if (
            claim.status == TransactionStatus.PENDING
            and seconds_since(claim.created_at) > self.funding_claim_stale_seconds
        ):
            abandoned = await storage.transition_transaction(
                db,
                claim.id,
                TransactionStatus.FAILED,
                error="Funding run abandoned before completing",
            )
            if abandoned is not None:
                logger.warning("Re-claiming stale funding for %s", payment_intent_id)
                return await self._claim_funding(
                    db,
                    payment_intent_id=payment_intent_id,
                    company_id=company_id,
                    user_id=user_id,
                    amount_usd=amount_usd,
                )

        logger.info(
            "Funding for %s already %s, skipping",
            payment_intent_id,
            claim.status.value,
        )
        return None

    async def process_funding_completion(
        self, payment_intent_id: str
    ) -> Optional[WalletTransaction]:
        """
        Convert a settled ACH debit to BTC and deliver it to the company wallet.

        Reached from the funding job and from the ``payment_intent.succeeded``
        webhook. Only one run per payment intent records a completed row;
        other runs return ``None``.
        """
        remote = await self.stripe.retrieve_payment_intent(payment_intent_id)
        if remote.status != PaymentIntentStatus.SUCCEEDED.value:
            raise FundingNotReadyError(
                f"Payment intent {payment_intent_id} is {remote.status}, not succeeded"
            )

        async with self._session_factory() as db:
            intent = await storage.get_payment_intent_by_stripe_id(db, payment_intent_id)
            if intent is None:
                raise ValidationError(f"Unknown payment intent {payment_intent_id}")
            await storage.update_payment_intent_status(
                db, intent, PaymentIntentStatus.SUCCEEDED
            )

            # A lost claim race rolls the session back, so keep plain values.
            intent_pk = intent.id
            company_id = intent.company_id
            user_id = intent.user_id
            amount_usd = cents_to_usd(intent.amount)
            claim = await self._claim_funding(
                db,
                payment_intent_id=payment_intent_id,
                company_id=company_id,
                user_id=user_id,
                amount_usd=amount_usd,
            )
            if claim is None:
                return None
            claim_id = claim.id

            context: dict = {"payment_intent_id": payment_intent_id}
            try:
                quote = await self.strike.create_quote(amount_usd)
                context["strike_quote_id"] = quote.quote_id
                executed = await self.strike.execute_quote(quote.quote_id, quote.expires_at)
                self._check_conversion(executed)

                conversion = await storage.create_conversion(
                    db,
                    company_id=company_id,
                    user_id=user_id,
                    payment_intent_id=intent_pk,
                    strike_quote_id=executed.quote_id,
                    amount_usd=executed.amount_usd,
                    amount_btc=executed.amount_btc,
                    exchange_rate=executed.exchange_rate,
                    status=ConversionStatus.COMPLETED
                    if executed.status in COMPLETED_QUOTE_STATUSES
                    else ConversionStatus.PENDING,
                )
                context["conversion_id"] = str(conversion.id)
                if conversion.status == ConversionStatus.PENDING:
                    await self.queue.add_conversion_job(
                        ConversionJobData(
                            strike_quote_id=executed.quote_id,
                            company_id=company_id,
                            user_id=user_id,
                        )
                    )

                wallet = await self._ensure_wallet(
                    db, company_id=company_id, wallet_type=WalletType.COMPANY
                )
                context["wallet_id"] = str(wallet.id)

                amount_sats = btc_to_sats(executed.amount_btc)
                invoice = await self.breez.generate_invoice(
                    db, wallet.id, amount_sats, f"Funding from {amount_usd} USD"
                )
                context["breez_invoice_id"] = invoice.invoice_id

                payment = await self.strike.pay_invoice(invoice.bolt11, executed.quote_id)
                context["strike_payment_id"] = payment.payment_id
            except Exception as exc:
                await db.rollback()
                await storage.transition_transaction(
                    db, claim_id, TransactionStatus.FAILED, error=str(exc), metadata=context
                )
                logger.error(
                    "Funding completion failed for %s: %s",
                    payment_intent_id,
                    exc,
                    extra={"extra_fields": {"transaction_id": str(claim_id), **context}},
                )
                raise

            completed = await storage.transition_transaction(
                db,
                claim_id,
                TransactionStatus.COMPLETED,
                metadata={
                    **context,
                    "amount_btc": str(executed.amount_btc),
                    "amount_sats": amount_sats,
                    "exchange_rate": str(executed.exchange_rate),
                },
            )
            await self._resync_after_payment(db, wallet.id)

        logger.info(
            "Funding completed for %s: %s USD -> %d sats",
            payment_intent_id,
            amount_usd,
            amount_sats,
            extra={"extra_fields": context},
        )
        return completed

    async def retry_funding(self, payment_intent_id: str) -> Optional[str]:
        """Queue another funding run unless the effect is already recorded."""
        async with self._session_factory() as db:
            intent = await storage.get_payment_intent_by_stripe_id(db, payment_intent_id)
            if intent is None:
                raise ValidationError(f"Unknown payment intent {payment_intent_id}")
            live = await storage.find_live_transaction(
                db,
                transaction_type=TransactionType.FUNDING,
                source_type=SourceType.STRIPE,
                source_id=payment_intent_id,
            )
            if live is not None and live.status == TransactionStatus.COMPLETED:
                return None

        job = await self.queue.add_funding_job(
            FundingJobData(
                payment_intent_id=payment_intent_id,
                company_id=intent.company_id,
                user_id=intent.user_id,
                amount_usd=cents_to_usd(intent.amount),
                plaid_account_id=intent.plaid_account_id,
            ),
            attempt=uuid.uuid4().hex[:8],
        )
        return job.job_id if job else None

    async def _record_funding_failure(
        self, intent: PaymentIntent, message: str, *, context: dict
    ) -> Optional[WalletTransaction]:
        """One failed funding row per dead intent; later calls are no-ops."""
        async with self._session_factory() as db:
            attempts = await storage.list_transactions_for_source(
                db,
                transaction_type=TransactionType.FUNDING,
                source_type=SourceType.STRIPE,
                source_id=intent.stripe_payment_intent_id,
            )
            if attempts:
                return None
            return await self._record_failure(
                db,
                company_id=intent.company_id,
                user_id=intent.user_id,
                transaction_type=TransactionType.FUNDING,
                source_type=SourceType.STRIPE,
                source_id=intent.stripe_payment_intent_id,
                amount=cents_to_usd(intent.amount),
                currency=LedgerCurrency.USD,
                error=ProviderError("stripe", message),
                context=context,
            )

    async def cancel_funding(self, payment_intent_id: str) -> PaymentIntent:
        """Cancel a bank debit Stripe has not settled yet."""
        async with self._session_factory() as db:
            intent = await storage.get_payment_intent_by_stripe_id(db, payment_intent_id)
            if intent is None:
                raise ValidationError(f"Unknown payment intent {payment_intent_id}")
            if intent.status.is_terminal:
                raise ValidationError(
                    f"Payment intent {payment_intent_id} is already {intent.status.value}"
                )
            canceled = await self.stripe.cancel_payment_intent(db, payment_intent_id)

        await self._record_funding_failure(
            canceled,
            f"Payment intent {payment_intent_id} canceled by an administrator",
            context={"canceled": True},
        )
        logger.info(
            "Canceled funding %s",
            payment_intent_id,
            extra={"extra_fields": {"company_id": canceled.company_id}},
        )
        return canceled

    async def refund_funding(
        self, payment_intent_id: str, amount_usd: Optional[Decimal] = None
    ) -> Refund:
        """
        Return a settled bank debit that never became BTC.

        Only intents whose funding has no live ledger row qualify: once a
        funding row is pending or completed the USD is already committed to
        a conversion. ``amount_usd`` defaults to the full debit.
        """
        async with self._session_factory() as db:
            intent = await storage.get_payment_intent_by_stripe_id(db, payment_intent_id)
            if intent is None:
                raise ValidationError(f"Unknown payment intent {payment_intent_id}")
            if intent.status != PaymentIntentStatus.SUCCEEDED:
                raise ValidationError(
                    f"Payment intent {payment_intent_id} is {intent.status.value}, "
                    "only settled debits can be refunded"
                )
            live = await storage.find_live_transaction(
                db,
                transaction_type=TransactionType.FUNDING,
                source_type=SourceType.STRIPE,
                source_id=payment_intent_id,
            )
            if live is not None:
                raise ValidationError(
                    f"Funding for {payment_intent_id} is {live.status.value}, "
                    "refund not allowed"
                )

        amount_cents = usd_to_cents(amount_usd) if amount_usd is not None else None
        if amount_cents is not None and not 0 < amount_cents <= intent.amount:
            raise ValidationError(
                f"Refund amount must be between 0.01 and {cents_to_usd(intent.amount)} USD"
            )

        refund = await self.stripe.create_refund(payment_intent_id, amount_cents)
        logger.info(
            "Refunded %s cents of %s",
            refund.amount,
            payment_intent_id,
            extra={
                "extra_fields": {"company_id": intent.company_id, "refund_id": refund.id}
            },
        )
        return refund

    # =========================================================================
    # Conversions
    # =========================================================================

    async def reconcile_conversion(self, strike_quote_id: str):
        """Settle a pending conversion from Strike's view of its quote."""
        async with self._session_factory() as db:
            conversion = await storage.get_conversion_by_quote_id(db, strike_quote_id)
            if conversion is None:
                logger.warning("No conversion recorded for quote %s", strike_quote_id)
                return None
            if conversion.status != ConversionStatus.PENDING:
                return conversion

            quote = await self.strike.get_quote_status(strike_quote_id)
            if quote.status in COMPLETED_QUOTE_STATUSES:
                return await storage.finish_conversion(
                    db, conversion, ConversionStatus.COMPLETED
                )
            if quote.status in FAILED_QUOTE_STATUSES:
                return await storage.finish_conversion(
                    db, conversion, ConversionStatus.FAILED
                )
            raise ProviderError(
                "strike", f"Quote {strike_quote_id} still {quote.status}", retryable=True
            )

    async def reconcile_pending_conversions(self, older_than_minutes: int = 10) -> int:
        """Poll Strike for conversions stuck in pending. Returns how many settled."""
        cutoff = utc_now() - timedelta(minutes=older_than_minutes)
        async with self._session_factory() as db:
            pending = await storage.list_pending_conversions(db, older_than=cutoff)
            quote_ids = [conversion.strike_quote_id for conversion in pending]

        settled = 0
        for quote_id in quote_ids:
            try:
                conversion = await self.reconcile_conversion(quote_id)
            except ProviderError as exc:
                logger.warning("Conversion %s not reconciled: %s", quote_id, exc)
                continue
            if conversion is not None and conversion.status != ConversionStatus.PENDING:
                settled += 1
        return settled

    async def reconcile_swap(self, swap_id: str) -> Optional[WalletTransaction]:
        """Settle a pending BTC->USD swap row from Strike's view of the swap."""
        async with self._session_factory() as db:
            transaction = await storage.find_live_transaction(
                db,
                transaction_type=TransactionType.SWAP_BTC_TO_USD,
                source_type=SourceType.STRIKE,
                source_id=swap_id,
            )
            if transaction is None:
                logger.warning("No swap recorded for %s", swap_id)
                return None
            if transaction.status != TransactionStatus.PENDING:
                return transaction

            swap = await self.strike.get_swap_status(swap_id)
            if swap.status == "completed":
                return await storage.transition_transaction(
                    db, transaction.id, TransactionStatus.COMPLETED
                )
            if swap.status in FAILED_QUOTE_STATUSES:
                return await storage.transition_transaction(
                    db,
                    transaction.id,
                    TransactionStatus.FAILED,
                    error=f"Swap {swap.status} at Strike",
                )
            return transaction

    async def reconcile_pending_swaps(self, older_than_minutes: int = 10) -> int:
        """Poll Strike for BTC->USD swaps stuck in pending. Returns how many settled."""
        cutoff = utc_now() - timedelta(minutes=older_than_minutes)
        async with self._session_factory() as db:
            pending = await storage.list_stale_claims(
                db, transaction_type=TransactionType.SWAP_BTC_TO_USD, older_than=cutoff
            )
            swap_ids = [transaction.source_id for transaction in pending]

        settled = 0
        for swap_id in swap_ids:
            try:
                transaction = await self.reconcile_swap(swap_id)
            except ProviderError as exc:
                logger.warning("Swap %s not reconciled: %s", swap_id, exc)
                continue
            if transaction is not None and transaction.status.is_terminal:
                settled += 1
        return settled

    # =========================================================================
    # Employee swap
    # =========================================================================

    async def process_employee_swap(self, request: SwapRequest) -> SwapResult:
        """Swap an employee's balance between BTC and USD."""
        if request.amount <= 0:
            raise ValidationError("Swap amount must be positive")

        async with self._session_factory() as db:
            await self._authorize(db, request.company_id, request.user_id)
            if request.direction == SwapDirection.BTC_TO_USD:
                return await self._swap_btc_to_usd(db, request)
            return await self._swap_usd_to_btc(db, request)

    async def _employee_wallet_or_fail(
        self,
        db: AsyncSession,
        request: SwapRequest,
        transaction_type: TransactionType,
        currency: LedgerCurrency,
    ) -> BreezWallet:
        try:
            return await self._ensure_wallet(
                db,
                company_id=request.company_id,
                wallet_type=WalletType.EMPLOYEE,
                user_id=request.user_id,
            )
        except Exception as exc:
            await self._record_failure(
                db,
                company_id=request.company_id,
                user_id=request.user_id,
                transaction_type=transaction_type,
                source_type=SourceType.BREEZ,
                amount=request.amount,
                currency=currency,
                error=exc,
                context={"step": "initialize_wallet"},
            )
            raise

    async def _swap_btc_to_usd(self, db: AsyncSession, request: SwapRequest) -> SwapResult:
        amount_sats = int(request.amount)
        if amount_sats != request.amount:
            raise ValidationError("BTC swaps are requested in whole satoshis")

        wallet = await self._employee_wallet_or_fail(
            db, request, TransactionType.SWAP_BTC_TO_USD, LedgerCurrency.SATS
        )
        if wallet.balance_sats < amount_sats:
            raise InsufficientFundsError(wallet.balance_sats, amount_sats)
        wallet_id = wallet.id

        try:
            swap = await self.strike.swap_btc_to_usd(sats_to_btc(amount_sats))
            await storage.record_transaction(
                db,
                company_id=request.company_id,
                user_id=request.user_id,
                wallet_id=wallet_id,
                transaction_type=TransactionType.SWAP_BTC_TO_USD,
                source_type=SourceType.STRIKE,
                source_id=swap.swap_id,
                amount=Decimal(amount_sats),
                currency=LedgerCurrency.SATS,
                status=TransactionStatus.COMPLETED
                if swap.status == "completed"
                else TransactionStatus.PENDING,
                transaction_metadata={
                    "swap_id": swap.swap_id,
                    "amount_usd": str(swap.amount_usd),
                    "exchange_rate": str(swap.exchange_rate),
                    "wallet_id": str(wallet_id),
                },
            )
        except Exception as exc:
            await self._record_failure(
                db,
                company_id=request.company_id,
                user_id=request.user_id,
                transaction_type=TransactionType.SWAP_BTC_TO_USD,
                source_type=SourceType.STRIKE,
                wallet_id=wallet_id,
                amount=Decimal(amount_sats),
                currency=LedgerCurrency.SATS,
                error=exc,
            )
            raise

        logger.info(
            "BTC->USD swap %s for user %s: %d sats",
            swap.swap_id,
            request.user_id,
            amount_sats,
        )
        return SwapResult(status=swap.status, transaction_id=swap.swap_id)

    async def _swap_usd_to_btc(self, db: AsyncSession, request: SwapRequest) -> SwapResult:
        wallet = await self._employee_wallet_or_fail(
            db, request, TransactionType.SWAP_USD_TO_BTC, LedgerCurrency.USD
        )

        wallet_id = wallet.id
        context: dict = {"wallet_id": str(wallet_id)}
        quote_id: Optional[str] = None
        try:
            quote = await self.strike.create_quote(request.amount)
            quote_id = quote.quote_id
            executed = await self.strike.execute_quote(quote.quote_id, quote.expires_at)
            self._check_conversion(executed)
            await storage.create_conversion(
                db,
                company_id=request.company_id,
                user_id=request.user_id,
                strike_quote_id=executed.quote_id,
                amount_usd=executed.amount_usd,
                amount_btc=executed.amount_btc,
                exchange_rate=executed.exchange_rate,
                status=ConversionStatus.COMPLETED
                if executed.status in COMPLETED_QUOTE_STATUSES
                else ConversionStatus.PENDING,
            )

            amount_sats = btc_to_sats(executed.amount_btc)
            invoice = await self.breez.generate_invoice(
                db,
                wallet_id,
                amount_sats,
                request.description or f"Swap {request.amount} USD to BTC",
            )
            context["breez_invoice_id"] = invoice.invoice_id
            payment = await self.strike.pay_invoice(invoice.bolt11, executed.quote_id)
            context["strike_payment_id"] = payment.payment_id

            completed = payment.status == "completed"
            await storage.record_transaction(
                db,
                company_id=request.company_id,
                user_id=request.user_id,
                wallet_id=wallet_id,
                transaction_type=TransactionType.SWAP_USD_TO_BTC,
                source_type=SourceType.STRIKE,
                source_id=executed.quote_id,
                lightning_invoice_id=invoice.invoice_id,
                amount=Decimal(amount_sats),
                currency=LedgerCurrency.SATS,
                status=TransactionStatus.COMPLETED
                if completed
                else TransactionStatus.PENDING,
                transaction_metadata={
                    **context,
                    "strike_quote_id": executed.quote_id,
                    "amount_usd": str(executed.amount_usd),
                    "exchange_rate": str(executed.exchange_rate),
                },
            )
        except Exception as exc:
            await self._record_failure(
                db,
                company_id=request.company_id,
                user_id=request.user_id,
                transaction_type=TransactionType.SWAP_USD_TO_BTC,
                source_type=SourceType.STRIKE,
                source_id=quote_id,
                wallet_id=wallet_id,
                amount=request.amount,
                currency=LedgerCurrency.USD,
                error=exc,
                context=context,
            )
            raise

        if completed:
            await self._resync_after_payment(db, wallet_id)
        logger.info(
            "USD->BTC swap %s for user %s: %s USD -> %d sats",
            executed.quote_id,
            request.user_id,
            request.amount,
            amount_sats,
        )
        return SwapResult(status=payment.status, transaction_id=executed.quote_id)

    # =========================================================================
    # Employee payout
    # =========================================================================

    async def process_employee_payout(self, request: PayoutRequest) -> PayoutResult:
        """Validate and queue a Lightning payout. No provider calls happen here."""
        if request.amount_sats <= 0:
            raise ValidationError("Payout amount must be a positive number of sats")

        async with self._session_factory() as db:
            await self._authorize(db, request.company_id, request.user_id)
            if request.wallet_id is not None:
                wallet = await storage.get_wallet(db, request.wallet_id)
                if wallet is None:
                    raise WalletNotFoundError(request.wallet_id)
                if wallet.company_id != request.company_id or (
                    wallet.wallet_type == WalletType.EMPLOYEE
                    and wallet.user_id != request.user_id
                ):
                    raise AuthorizationError("Wallet does not belong to requester")

        job = await self.queue.add_payout_job(
            PayoutJobData(
                company_id=request.company_id,
                user_id=request.user_id,
                amount_sats=request.amount_sats,
                description=request.description,
                wallet_id=request.wallet_id,
            )
        )
        return PayoutResult(status="queued", invoice_id=job.job_id if job else None)

    async def run_payout(self, data: PayoutJobData) -> WalletTransaction:
        """
        Payout job body: invoice the employee wallet and try to pay it.

        The ledger row is keyed by ``payout:<payout_id>``, so a retried job
        finds the row its first run claimed and never pays twice. The row
        moves to ``awaiting_payment`` once the invoice exists. A completed
        Lightning send from the company wallet, or a later Breez
        ``invoice.paid`` webhook, completes it; a failed send or
        ``invoice.expired`` fails it.
        """
        async with self._session_factory() as db:
            context: dict = {"payout_id": data.payout_id}
            try:
                if data.wallet_id is not None:
                    wallet = await storage.get_wallet(db, data.wallet_id)
                    if wallet is None:
                        raise WalletNotFoundError(data.wallet_id)
                else:
                    wallet = await self._ensure_wallet(
                        db,
                        company_id=data.company_id,
                        wallet_type=WalletType.EMPLOYEE,
                        user_id=data.user_id,
                    )
            except Exception as exc:
                await self._record_failure(
                    db,
                    company_id=data.company_id,
                    user_id=data.user_id,
                    transaction_type=TransactionType.PAYOUT,
                    source_type=SourceType.BREEZ,
                    amount=Decimal(data.amount_sats),
                    currency=LedgerCurrency.SATS,
                    error=exc,
                    context=context,
                )
                raise
            wallet_id = wallet.id
            context["wallet_id"] = str(wallet_id)

            transaction, created = await storage.claim_transaction(
                db,
                company_id=data.company_id,
                user_id=data.user_id,
                wallet_id=wallet_id,
                transaction_type=TransactionType.PAYOUT,
                source_type=SourceType.BREEZ,
                source_id=f"payout:{data.payout_id}",
                amount=Decimal(data.amount_sats),
                currency=LedgerCurrency.SATS,
                status=TransactionStatus.PENDING,
                transaction_metadata={**context, "description": data.description},
            )
            if not created:
                logger.info(
                    "Payout %s already recorded as %s, skipping",
                    data.payout_id,
                    transaction.status.value,
                    extra={"extra_fields": {"transaction_id": str(transaction.id)}},
                )
                return transaction

            transaction_id = transaction.id
            try:
                invoice = await self.breez.generate_invoice(
                    db, wallet_id, data.amount_sats, data.description
                )
            except Exception as exc:
                await db.rollback()
                await storage.transition_transaction(
                    db,
                    transaction_id,
                    TransactionStatus.FAILED,
                    error=str(exc),
                    metadata={"error_code": getattr(exc, "code", type(exc).__name__)},
                )
                logger.error(
                    "payout failed: %s",
                    exc,
                    extra={
                        "extra_fields": {
                            "transaction_id": str(transaction_id),
                            **context,
                        }
                    },
                )
                raise

            transaction = await storage.transition_transaction(
                db,
                transaction_id,
                TransactionStatus.AWAITING_PAYMENT,
                lightning_invoice_id=invoice.invoice_id,
                metadata={"breez_invoice_id": invoice.invoice_id},
            ) or transaction
            return await self._send_payout(db, transaction, invoice, data.company_id)

    async def _send_payout(
        self,
        db: AsyncSession,
        transaction: WalletTransaction,
        invoice: LightningInvoice,
        company_id: int,
    ) -> WalletTransaction:
        company_wallet = await storage.find_wallet(
            db, company_id=company_id, wallet_type=WalletType.COMPANY
        )
        if company_wallet is None or company_wallet.balance_sats < transaction.amount:
            logger.warning(
                "Payout %s left awaiting payment: company wallet cannot cover %s sats",
                transaction.id,
                transaction.amount,
            )
            return transaction

        transaction_id = transaction.id
        try:
            payment = await self.breez.pay_invoice(db, company_wallet.id, invoice.bolt11)
        except Exception as exc:
            await db.rollback()
            await storage.transition_transaction(
                db, transaction_id, TransactionStatus.FAILED, error=str(exc)
            )
            raise

        if payment.status == "completed":
            transaction = await storage.transition_transaction(
                db,
                transaction.id,
                TransactionStatus.COMPLETED,
                metadata={
                    "breez_payment_id": payment.payment_id,
                    "paid_from_wallet_id": str(company_wallet.id),
                },
            ) or transaction
            await self._resync_after_payment(db, company_wallet.id, transaction.wallet_id)
        elif payment.status == "failed":
            transaction = await storage.transition_transaction(
                db,
                transaction.id,
                TransactionStatus.FAILED,
                error=f"Lightning payment {payment.payment_id} failed",
            ) or transaction
        return transaction

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_payment_status(
        self, payment_intent_id: str, company_id: Optional[int] = None
    ) -> PaymentStatusResult:
        if company_id is not None:
            async with self._session_factory() as db:
                intent = await storage.get_payment_intent_by_stripe_id(
                    db, payment_intent_id
                )
            if intent is None or intent.company_id != company_id:
                raise AuthorizationError("Payment does not belong to this company")

        remote = await self.stripe.retrieve_payment_intent(payment_intent_id)
        return PaymentStatusResult(
            status=remote.status,
            details={
                "amount": remote.amount,
                "currency": remote.currency,
                "created": remote.created,
                "metadata": remote.metadata,
            },
        )

    async def get_wallet_balance(
        self, user_id: Optional[int], company_id: int, wallet_type: WalletType
    ) -> int:
        """Balance in sats; 0 when the wallet does not exist yet."""
        async with self._session_factory() as db:
            wallet = await storage.find_wallet(
                db, company_id=company_id, wallet_type=wallet_type, user_id=user_id
            )
            if wallet is None:
                return 0
            return await self.breez.get_wallet_balance(db, wallet.id)

    async def get_transaction_history(
        self, user_id: Optional[int], company_id: int, limit: int = 50
    ) -> Sequence[WalletTransaction]:
        async with self._session_factory() as db:
            return await storage.list_transactions(
                db, company_id=company_id, user_id=user_id, limit=limit
            )

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def handle_webhook(
        self,
        provider: WebhookProvider,
        event_type: str,
        event_id: str,
        payload: dict,
    ) -> None:
        """Hand a verified callback to the dispatcher's ingestion path."""
        if self.webhooks is None:
            raise RuntimeError("Webhook dispatcher is not attached")
        await self.webhooks.ingest(provider, event_type, event_id, payload)

    async def apply_event(self, event: ProviderEvent) -> None:
        """Run the bookkeeping for one decoded provider event."""
        handler = self._event_handlers.get(type(event))
        if handler is None:
            logger.info("No handler for %s event %s", event.event_type, event.event_id)
            return
        await handler(event)

    async def _on_stripe_payment_intent(self, event: StripePaymentIntentEvent) -> None:
        async with self._session_factory() as db:
            intent = await self.stripe.handle_webhook(db, event)
        if intent is None:
            return

        if event.status == PaymentIntentStatus.SUCCEEDED:
            await self.process_funding_completion(event.payment_intent_id)
        elif event.status in (PaymentIntentStatus.FAILED, PaymentIntentStatus.CANCELED):
            await self._record_funding_failure(
                intent,
                event.failure_message or f"Payment intent {event.status.value}",
                context={"event_id": event.event_id},
            )

    async def _on_stripe_charge(self, event: StripeChargeEvent) -> None:
        async with self._session_factory() as db:
            await self.stripe.handle_webhook(db, event)

    async def _on_strike_quote(self, event: StrikeQuoteEvent) -> None:
        async with self._session_factory() as db:
            conversion = await storage.get_conversion_by_quote_id(db, event.quote_id)
            if conversion is None:
                logger.info("Quote event for unknown quote %s", event.quote_id)
                return
            status = (
                ConversionStatus.COMPLETED
                if event.event_type == "quote.completed"
                else ConversionStatus.FAILED
            )
            await storage.finish_conversion(db, conversion, status)

    async def _on_strike_swap(self, event: StrikeSwapEvent) -> None:
        async with self._session_factory() as db:
            transaction = await storage.find_live_transaction(
                db,
                transaction_type=TransactionType.SWAP_BTC_TO_USD,
                source_type=SourceType.STRIKE,
                source_id=event.swap_id,
            )
            if transaction is None:
                logger.info("Swap event for unknown swap %s", event.swap_id)
                return
            if event.event_type == "swap.completed":
                await storage.transition_transaction(
                    db, transaction.id, TransactionStatus.COMPLETED
                )
            else:
                await storage.transition_transaction(
                    db,
                    transaction.id,
                    TransactionStatus.FAILED,
                    error=event.error or "Swap failed at Strike",
                )

    async def _on_strike_invoice(self, event: StrikeInvoiceEvent) -> None:
        logger.info("Strike invoice %s %s", event.invoice_id, event.event_type)

    async def _on_breez_invoice(self, event: BreezInvoiceEvent) -> None:
        paid = event.event_type == "invoice.paid"
        async with self._session_factory() as db:
            open_rows = await storage.list_open_transactions_for_invoice(
                db, event.invoice_id
            )
            wallet_ids = {row.wallet_id for row in open_rows if row.wallet_id}
            for row in open_rows:
                if paid:
                    await storage.transition_transaction(
                        db, row.id, TransactionStatus.COMPLETED
                    )
                else:
                    await storage.transition_transaction(
                        db,
                        row.id,
                        TransactionStatus.FAILED,
                        error=f"Lightning invoice {event.invoice_id} expired",
                    )

            if not paid:
                return
            if event.node_id:
                wallet = await storage.get_wallet_by_node_id(db, event.node_id)
                if wallet is not None:
                    wallet_ids.add(wallet.id)
            for wallet_id in wallet_ids:
                await self.breez.sync_wallet(db, wallet_id)

    async def _on_breez_payment(self, event: BreezPaymentEvent) -> None:
        if event.event_type == "payment.failed":
            logger.warning("Breez payment %s failed: %s", event.payment_id, event.error)
        if not event.node_id:
            return
        async with self._session_factory() as db:
            wallet = await storage.get_wallet_by_node_id(db, event.node_id)
            if wallet is None:
                logger.info("Payment event for unknown node %s", event.node_id)
                return
            await self.breez.sync_wallet(db, wallet.id)

    async def _on_breez_wallet_synced(self, event: BreezWalletSyncedEvent) -> None:
        async with self._session_factory() as db:
            wallet = await storage.get_wallet_by_node_id(db, event.node_id)
            if wallet is None:
                logger.info("Sync event for unknown node %s", event.node_id)
                return
            wallet.balance_sats = event.balance_sats
            wallet.last_sync_at = utc_now()
            await storage.save_wallet(db, wallet)

    async def _on_plaid_item(self, event: PlaidItemEvent) -> None:
        async with self._session_factory() as db:
            if event.event_type == "NEW_ACCOUNTS_AVAILABLE":
                await self.plaid.sync_new_accounts(db, event.item_id)
            elif event.event_type == "LOGIN_REPAIRED":
                await self.plaid.set_item_status(
                    db, event.item_id, PlaidAccountStatus.ACTIVE
                )
            elif event.event_type in ("ITEM_LOGIN_REQUIRED", "PENDING_EXPIRATION") or (
                event.error_code == "ITEM_LOGIN_REQUIRED"
            ):
                await self.plaid.set_item_status(
                    db, event.item_id, PlaidAccountStatus.INACTIVE
                )
            else:
                await self.plaid.set_item_status(
                    db, event.item_id, PlaidAccountStatus.ERROR
                )
