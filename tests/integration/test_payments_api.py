"""Integration tests for the /payments endpoints."""

import uuid

import pytest
import pytest_asyncio
from services.payments_service.models import PlaidAccount, WalletType
from sqlalchemy import select
from tests.conftest import auth_headers, persist
from tests.factories import PlaidAccountFactory, UserFactory, WalletFactory


@pytest_asyncio.fixture
async def linked_account(db_session, employee):
    return await persist(db_session, PlaidAccountFactory.create(user_id=employee.id))


# ---------------------------------------------------------------------------
# App and auth
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_health_check(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "payments"}


@pytest.mark.asyncio
@pytest.mark.integration
async def test_requests_without_token_are_rejected(client):
    response = await client.get("/payments/transactions")

    assert response.status_code in (401, 403)


@pytest.mark.asyncio
@pytest.mark.integration
async def test_token_without_company_is_forbidden(client, employee):
    response = await client.get(
        "/payments/transactions", headers=auth_headers(employee.id, company_id=None)
    )

    assert response.status_code == 403


@pytest.mark.asyncio
@pytest.mark.integration
async def test_invalid_token_is_unauthorized(client):
    response = await client.get(
        "/payments/transactions", headers={"Authorization": "Bearer not-a-jwt"}
    )

    assert response.status_code == 401


# ---------------------------------------------------------------------------
# Plaid accounts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_create_link_token(client, employee):
    response = await client.post(
        "/payments/plaid/link-token", headers=auth_headers(employee.id)
    )

    assert response.status_code == 200
    assert response.json() == {"link_token": "link-sandbox-123"}


@pytest.mark.asyncio
@pytest.mark.integration
async def test_exchange_token_then_list_accounts(client, employee):
    headers = auth_headers(employee.id)

    created = await client.post(
        "/payments/plaid/exchange-token",
        json={"public_token": "public-sandbox-1"},
        headers=headers,
    )
    listed = await client.get("/payments/plaid/accounts", headers=headers)

    assert created.status_code == 201
    assert created.json()["status"] == "active"
    assert "encrypted_access_token" not in created.json()
    assert listed.status_code == 200
    assert sorted(a["account_id"] for a in listed.json()) == [
        "acc-checking",
        "acc-savings",
    ]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_remove_own_account(
    client, fakes, employee, linked_account, session_factory
):
    response = await client.delete(
        f"/payments/plaid/accounts/{linked_account.id}",
        headers=auth_headers(employee.id),
    )

    assert response.status_code == 204
    async with session_factory() as db:
        remaining = (
            await db.execute(
                select(PlaidAccount).where(PlaidAccount.id == linked_account.id)
            )
        ).scalar_one_or_none()
    assert remaining is None
    assert fakes.count("plaid", "POST", "/item/remove") == 1


@pytest.mark.asyncio
@pytest.mark.integration
async def test_cannot_remove_someone_elses_account(client, db_session, linked_account):
    other = await persist(db_session, UserFactory.create(company_id=1))

    response = await client.delete(
        f"/payments/plaid/accounts/{linked_account.id}", headers=auth_headers(other.id)
    )

    assert response.status_code == 403
    assert response.json()["code"] == "AUTHORIZATION_ERROR"


# ---------------------------------------------------------------------------
# Funding
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_fund_wallet_is_accepted(client, employee, linked_account):
    headers = auth_headers(employee.id)

    response = await client.post(
        "/payments/fund-wallet",
        json={"amount_usd": "100.00", "plaid_account_id": str(linked_account.id)},
        headers=headers,
    )

    assert response.status_code == 202
    data = response.json()
    assert data["payment_intent_id"].startswith("pi_")
    assert data["status"] == "processing"

    status = await client.get(f"/payments/status/{data['payment_intent_id']}", headers=headers)
    assert status.status_code == 200
    assert status.json()["details"]["amount"] == 10000


@pytest.mark.asyncio
@pytest.mark.integration
async def test_fund_wallet_rejects_zero_amount(client, employee, linked_account):
    response = await client.post(
        "/payments/fund-wallet",
        json={"amount_usd": "0", "plaid_account_id": str(linked_account.id)},
        headers=auth_headers(employee.id),
    )

    assert response.status_code == 422


@pytest.mark.asyncio
@pytest.mark.integration
async def test_fund_wallet_with_foreign_account_is_forbidden(
    client, db_session, linked_account
):
    other = await persist(db_session, UserFactory.create(company_id=1))

    response = await client.post(
        "/payments/fund-wallet",
        json={"amount_usd": "50.00", "plaid_account_id": str(linked_account.id)},
        headers=auth_headers(other.id),
    )

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "AUTHORIZATION_ERROR"
    assert body["error"]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_status_of_unknown_payment_is_forbidden(client, employee):
    response = await client.get(
        "/payments/status/pi_unknown", headers=auth_headers(employee.id)
    )

    assert response.status_code == 403


# ---------------------------------------------------------------------------
# Swaps and payouts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_swap_with_insufficient_funds(client, db_session, employee):
    await persist(
        db_session, WalletFactory.create(user_id=employee.id, balance_sats=5_000)
    )

    response = await client.post(
        "/payments/swap",
        json={"direction": "btc_to_usd", "amount": "10000"},
        headers=auth_headers(employee.id),
    )

    assert response.status_code == 400
    assert response.json()["code"] == "INSUFFICIENT_FUNDS"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_swap_rejects_unknown_direction(client, employee):
    response = await client.post(
        "/payments/swap",
        json={"direction": "sideways", "amount": "10"},
        headers=auth_headers(employee.id),
    )

    assert response.status_code == 422


@pytest.mark.asyncio
@pytest.mark.integration
async def test_payout_is_accepted_without_queue(client, employee):
    response = await client.post(
        "/payments/payout",
        json={"amount_sats": 1000, "description": "Spot bonus"},
        headers=auth_headers(employee.id),
    )

    assert response.status_code == 202
    assert response.json() == {"status": "queued", "invoice_id": None}


@pytest.mark.asyncio
@pytest.mark.integration
@pytest.mark.parametrize(
    "payload",
    [
        {"amount_sats": 0, "description": "Nothing"},
        {"amount_sats": "1000", "description": "Stringly typed"},
        {"amount_sats": 1000, "description": ""},
    ],
)
async def test_payout_validation(client, employee, payload):
    response = await client.post(
        "/payments/payout", json=payload, headers=auth_headers(employee.id)
    )

    assert response.status_code == 422


@pytest.mark.asyncio
@pytest.mark.integration
async def test_payout_from_unknown_wallet(client, employee):
    response = await client.post(
        "/payments/payout",
        json={
            "amount_sats": 1000,
            "description": "Spot bonus",
            "wallet_id": str(uuid.uuid4()),
        },
        headers=auth_headers(employee.id),
    )

    assert response.status_code == 404
    assert response.json()["code"] == "WALLET_NOT_FOUND"


# ---------------------------------------------------------------------------
# History and balances
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_balance_is_zero_without_wallet(client, employee):
    response = await client.get(
        "/payments/wallets/balance", headers=auth_headers(employee.id)
    )

    assert response.status_code == 200
    assert response.json() == {"wallet_type": "employee", "balance_sats": 0}


@pytest.mark.asyncio
@pytest.mark.integration
async def test_company_balance(client, db_session, fakes, employee):
    wallet = await persist(
        db_session,
        WalletFactory.create(wallet_type=WalletType.COMPANY, balance_sats=42_000),
    )
    fakes.node_balances[wallet.node_id] = 42_000

    response = await client.get(
        "/payments/wallets/balance",
        params={"wallet_type": "company"},
        headers=auth_headers(employee.id),
    )

    assert response.json()["balance_sats"] == 42_000


@pytest.mark.asyncio
@pytest.mark.integration
async def test_transaction_history(client, employee, linked_account, fakes):
    headers = auth_headers(employee.id)
    fakes.fail("plaid", "POST", "/auth/get", status_code=400, body={
        "error_code": "ITEM_LOGIN_REQUIRED",
        "error_message": "the login details of this item have changed",
    })
    failed = await client.post(
        "/payments/fund-wallet",
        json={"amount_usd": "10.00", "plaid_account_id": str(linked_account.id)},
        headers=headers,
    )

    response = await client.get(
        "/payments/transactions", params={"limit": 10}, headers=headers
    )

    assert failed.status_code >= 400
    assert response.status_code == 200
    rows = response.json()
    assert len(rows) == 1
    assert rows[0]["status"] == "failed"
    assert rows[0]["source_type"] == "plaid"
    assert rows[0]["source_id"].startswith("attempt:")
