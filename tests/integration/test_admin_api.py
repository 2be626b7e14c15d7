"""Integration tests for the admin endpoints."""

import uuid
from decimal import Decimal

import pytest
from services.payments_service import storage
from services.payments_service.app.main import app
from services.payments_service.models import (
    ConversionStatus,
    PaymentIntentStatus,
    TransactionStatus,
    TransactionType,
    WebhookProvider,
)
from tests.conftest import auth_headers, override_services, persist
from tests.factories import (
    ConversionFactory,
    PaymentIntentFactory,
    WalletTransactionFactory,
)

ADMIN = auth_headers(1, company_id=None, role="admin")


async def _store_events(db, count, provider=WebhookProvider.STRIKE):
    events = []
    for n in range(count):
        event, _ = await storage.create_webhook_event(
            db,
            provider=provider,
            event_type="account.updated",
            event_id=f"evt_{n}",
            payload={"id": f"evt_{n}", "eventType": "account.updated"},
        )
        events.append(event)
    return events


# ---------------------------------------------------------------------------
# Access
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
@pytest.mark.parametrize(
    "method,path",
    [
        ("get", "/admin/webhooks"),
        ("get", "/admin/payments/health"),
        ("get", "/admin/payments/conversions"),
        ("post", "/admin/payments/pi_1/retry"),
        ("post", "/admin/payments/pi_1/cancel"),
        ("post", "/admin/payments/pi_1/refund"),
    ],
)
async def test_non_admins_are_forbidden(client, employee, method, path):
    response = await client.request(method, path, headers=auth_headers(employee.id))

    assert response.status_code == 403


@pytest.mark.asyncio
@pytest.mark.integration
async def test_service_role_counts_as_admin(client):
    response = await client.get(
        "/admin/payments/health", headers=auth_headers(1, company_id=None, role="service_role")
    )

    assert response.status_code == 200


# ---------------------------------------------------------------------------
# Webhook events
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_list_webhook_events_paginates(client, db_session):
    await _store_events(db_session, 3)

    first_page = await client.get(
        "/admin/webhooks", params={"limit": 2}, headers=ADMIN
    )
    last_page = await client.get(
        "/admin/webhooks", params={"limit": 2, "offset": 2}, headers=ADMIN
    )

    assert first_page.status_code == 200
    assert first_page.json()["total"] == 3
    assert len(first_page.json()["events"]) == 2
    assert first_page.json()["has_more"] is True
    assert last_page.json()["has_more"] is False


@pytest.mark.asyncio
@pytest.mark.integration
async def test_list_webhook_events_filters(client, db_session):
    await _store_events(db_session, 2)
    await _store_events(db_session, 1, provider=WebhookProvider.BREEZ)

    response = await client.get(
        "/admin/webhooks",
        params={"provider": "breez", "processed": "false"},
        headers=ADMIN,
    )

    data = response.json()
    assert data["total"] == 1
    assert data["events"][0]["provider"] == "breez"
    assert data["events"][0]["processed"] is False


@pytest.mark.asyncio
@pytest.mark.integration
async def test_replay_processes_stored_event(client, db_session):
    (event,) = await _store_events(db_session, 1)

    first = await client.post(f"/admin/webhooks/{event.id}/replay", headers=ADMIN)
    second = await client.post(f"/admin/webhooks/{event.id}/replay", headers=ADMIN)

    assert first.status_code == 200
    assert first.json()["processed"] is True
    assert second.json()["attempts"] == first.json()["attempts"] + 1


@pytest.mark.asyncio
@pytest.mark.integration
async def test_replay_of_unknown_event(client):
    response = await client.post(f"/admin/webhooks/{uuid.uuid4()}/replay", headers=ADMIN)

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


# ---------------------------------------------------------------------------
# Health and statistics
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_payments_health(client, db_session):
    await persist(
        db_session,
        WalletTransactionFactory.create(status=TransactionStatus.COMPLETED),
        WalletTransactionFactory.create(status=TransactionStatus.FAILED),
        WalletTransactionFactory.create(
            status=TransactionStatus.FAILED, transaction_type=TransactionType.SWAP
        ),
    )
    (event,) = await _store_events(db_session, 1)
    await storage.mark_webhook_failed(db_session, event, "boom")

    response = await client.get("/admin/payments/health", headers=ADMIN)

    assert response.status_code == 200
    data = response.json()
    assert data["window_hours"] == 24
    assert data["transactions"] == {"completed": 1, "failed": 2}
    assert data["webhooks"] == {"total": 1, "failed": 1, "stale_unprocessed": 0}
    assert data["queue_available"] is False


@pytest.mark.asyncio
@pytest.mark.integration
async def test_conversion_statistics(client, db_session):
    await persist(
        db_session,
        ConversionFactory.create(status=ConversionStatus.COMPLETED),
        ConversionFactory.create(status=ConversionStatus.FAILED),
    )

    response = await client.get("/admin/payments/conversions", headers=ADMIN)

    data = response.json()
    assert data["total"] == 2
    assert data["by_status"] == {"completed": 1, "failed": 1}
    assert Decimal(str(data["total_usd"])) == Decimal("100")


# ---------------------------------------------------------------------------
# Funding retries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_retry_without_queue_is_not_queued(client, db_session):
    intent = await persist(db_session, PaymentIntentFactory.create())

    response = await client.post(
        f"/admin/payments/{intent.stripe_payment_intent_id}/retry", headers=ADMIN
    )

    assert response.status_code == 200
    assert response.json() == {
        "payment_intent_id": intent.stripe_payment_intent_id,
        "job_id": None,
        "queued": False,
    }


@pytest.mark.asyncio
@pytest.mark.integration
async def test_retry_is_queued_on_funding_lane(client, db_session, queued_services):
    intent = await persist(db_session, PaymentIntentFactory.create())
    pi_id = intent.stripe_payment_intent_id

    with override_services(app, queued_services):
        response = await client.post(f"/admin/payments/{pi_id}/retry", headers=ADMIN)

    data = response.json()
    assert data["queued"] is True
    assert data["job_id"].startswith(f"funding:{pi_id}:")


@pytest.mark.asyncio
@pytest.mark.integration
async def test_retry_of_unknown_intent(client):
    response = await client.post("/admin/payments/pi_missing/retry", headers=ADMIN)

    assert response.status_code == 400


# ---------------------------------------------------------------------------
# Cancel and refund
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_cancel_unsettled_funding(client, db_session, fakes):
    intent = await persist(db_session, PaymentIntentFactory.create())
    pi_id = intent.stripe_payment_intent_id
    fakes.set_intent(pi_id, status="processing")

    response = await client.post(f"/admin/payments/{pi_id}/cancel", headers=ADMIN)
    repeated = await client.post(f"/admin/payments/{pi_id}/cancel", headers=ADMIN)

    assert response.status_code == 200
    assert response.json() == {"payment_intent_id": pi_id, "status": "canceled"}
    assert repeated.status_code == 400
    assert repeated.json()["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_refund_settled_funding(client, db_session, fakes):
    intent = await persist(
        db_session, PaymentIntentFactory.create(status=PaymentIntentStatus.SUCCEEDED)
    )
    pi_id = intent.stripe_payment_intent_id
    fakes.set_intent(pi_id, status="succeeded", amount=intent.amount)

    partial = await client.post(
        f"/admin/payments/{pi_id}/refund", json={"amount_usd": "10.00"}, headers=ADMIN
    )
    full = await client.post(f"/admin/payments/{pi_id}/refund", headers=ADMIN)

    assert partial.status_code == 200
    assert partial.json()["refund_id"].startswith("re_")
    assert Decimal(str(partial.json()["amount_usd"])) == Decimal("10.00")
    assert Decimal(str(full.json()["amount_usd"])) == Decimal("100.00")


@pytest.mark.asyncio
@pytest.mark.integration
async def test_refund_of_unsettled_funding_is_rejected(client, db_session, fakes):
    intent = await persist(db_session, PaymentIntentFactory.create())

    response = await client.post(
        f"/admin/payments/{intent.stripe_payment_intent_id}/refund", headers=ADMIN
    )

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"
    assert fakes.count("stripe", "POST", "/v1/refunds") == 0
