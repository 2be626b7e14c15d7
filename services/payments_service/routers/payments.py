"""Company and employee payment endpoints."""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from libs.auth.dependencies import require_company_member
from libs.auth.models import AuthUser
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.payments_service import orchestrator as flows
from services.payments_service import storage
from services.payments_service.container import PaymentServices, get_services
from services.payments_service.errors import AuthorizationError
from services.payments_service.models import WalletType
from services.payments_service.schemas import (
    ExchangeTokenRequest,
    FundWalletRequest,
    FundWalletResponse,
    LinkTokenResponse,
    PaymentStatusResponse,
    PayoutRequest,
    PayoutResponse,
    PlaidAccountResponse,
    SwapRequest,
    SwapResponse,
    TransactionResponse,
    WalletBalanceResponse,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/payments", tags=["payments"])
logger = get_logger(__name__)

CurrentMember = Annotated[AuthUser, Depends(require_company_member)]
Services = Annotated[PaymentServices, Depends(get_services)]


# ============================================================================
# PLAID ACCOUNTS
# ============================================================================


@router.post("/plaid/link-token", response_model=LinkTokenResponse)
async def create_link_token(current_user: CurrentMember, services: Services):
    link_token = await services.plaid.create_link_token(
        current_user.user_id, current_user.company_id
    )
    return LinkTokenResponse(link_token=link_token)


@router.post(
    "/plaid/exchange-token",
    response_model=PlaidAccountResponse,
    status_code=status.HTTP_201_CREATED,
)
async def exchange_public_token(
    payload: ExchangeTokenRequest,
    current_user: CurrentMember,
    services: Services,
    db: AsyncSession = Depends(get_async_db),
):
    """Exchange a Plaid Link public token and store the linked accounts."""
    return await services.plaid.exchange_public_token(
        db, payload.public_token, current_user.user_id, current_user.company_id
    )


@router.get("/plaid/accounts", response_model=list[PlaidAccountResponse])
async def list_plaid_accounts(
    current_user: CurrentMember,
    db: AsyncSession = Depends(get_async_db),
):
    return await storage.list_plaid_accounts(
        db, company_id=current_user.company_id, user_id=current_user.user_id
    )


@router.delete("/plaid/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_plaid_account(
    account_id: uuid.UUID,
    current_user: CurrentMember,
    services: Services,
    db: AsyncSession = Depends(get_async_db),
):
    account = await storage.get_plaid_account(db, account_id)
    if account is None or account.user_id != current_user.user_id:
        raise AuthorizationError("Bank account does not belong to requester")
    await services.plaid.remove_account(db, account_id)


# ============================================================================
# MONEY MOVEMENT
# ============================================================================


@router.post(
    "/fund-wallet",
    response_model=FundWalletResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def fund_wallet(
    payload: FundWalletRequest, current_user: CurrentMember, services: Services
):
    """
    Start funding the company wallet from a linked bank account.

    Returns once the ACH debit is confirmed at Stripe; conversion to BTC and
    delivery happen on the funding job lane.
    """
    result = await services.orchestrator.fund_company_wallet(
        flows.FundingRequest(
            company_id=current_user.company_id,
            user_id=current_user.user_id,
            amount_usd=payload.amount_usd,
            plaid_account_id=payload.plaid_account_id,
            description=payload.description,
        )
    )
    return FundWalletResponse(
        payment_intent_id=result.payment_intent_id, status=result.status
    )


@router.get("/status/{payment_intent_id}", response_model=PaymentStatusResponse)
async def get_payment_status(
    payment_intent_id: str, current_user: CurrentMember, services: Services
):
    result = await services.orchestrator.get_payment_status(
        payment_intent_id, company_id=current_user.company_id
    )
    return PaymentStatusResponse(
        payment_intent_id=payment_intent_id,
        status=result.status,
        details=result.details,
    )


@router.post("/swap", response_model=SwapResponse)
async def swap(payload: SwapRequest, current_user: CurrentMember, services: Services):
    result = await services.orchestrator.process_employee_swap(
        flows.SwapRequest(
            company_id=current_user.company_id,
            user_id=current_user.user_id,
            direction=payload.direction,
            amount=payload.amount,
            description=payload.description,
        )
    )
    return SwapResponse(status=result.status, transaction_id=result.transaction_id)


@router.post(
    "/payout", response_model=PayoutResponse, status_code=status.HTTP_202_ACCEPTED
)
async def payout(payload: PayoutRequest, current_user: CurrentMember, services: Services):
    result = await services.orchestrator.process_employee_payout(
        flows.PayoutRequest(
            company_id=current_user.company_id,
            user_id=current_user.user_id,
            amount_sats=payload.amount_sats,
            description=payload.description,
            wallet_id=payload.wallet_id,
        )
    )
    return PayoutResponse(status=result.status, invoice_id=result.invoice_id)


# ============================================================================
# HISTORY AND BALANCES
# ============================================================================


@router.get("/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    current_user: CurrentMember,
    services: Services,
    limit: int = Query(50, ge=1, le=200),
):
    return await services.orchestrator.get_transaction_history(
        current_user.user_id, current_user.company_id, limit
    )


@router.get("/wallets/balance", response_model=WalletBalanceResponse)
async def get_wallet_balance(
    current_user: CurrentMember,
    services: Services,
    wallet_type: WalletType = Query(WalletType.EMPLOYEE),
):
    user_id = current_user.user_id if wallet_type == WalletType.EMPLOYEE else None
    balance = await services.orchestrator.get_wallet_balance(
        user_id, current_user.company_id, wallet_type
    )
    return WalletBalanceResponse(wallet_type=wallet_type, balance_sats=balance)
