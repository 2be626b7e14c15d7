"""Unit tests for decoding provider webhook payloads into typed events."""

import pytest
from services.payments_service.errors import ValidationError
from services.payments_service.events import (
    BreezInvoiceEvent,
    BreezWalletSyncedEvent,
    PlaidItemEvent,
    StrikeQuoteEvent,
    StripeChargeEvent,
    StripePaymentIntentEvent,
    UnhandledEvent,
    decode_event,
    envelope,
)
from services.payments_service.models import PaymentIntentStatus, WebhookProvider


def _stripe_payload(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


# ---------------------------------------------------------------------------
# envelope
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_envelope_reads_provider_specific_fields():
    assert envelope(WebhookProvider.STRIPE, {"id": "evt_1", "type": "charge.refunded"}) == (
        "charge.refunded",
        "evt_1",
    )
    assert envelope(
        WebhookProvider.STRIKE, {"id": "st_1", "eventType": "quote.completed"}
    ) == ("quote.completed", "st_1")
    assert envelope(WebhookProvider.BREEZ, {"id": "bz_1", "type": "invoice.paid"}) == (
        "invoice.paid",
        "bz_1",
    )


@pytest.mark.unit
def test_plaid_event_id_is_stable_digest_of_payload():
    payload = {"webhook_type": "ITEM", "webhook_code": "ERROR", "item_id": "item-1"}
    reordered = {"item_id": "item-1", "webhook_code": "ERROR", "webhook_type": "ITEM"}

    event_type, event_id = envelope(WebhookProvider.PLAID, payload)

    assert event_type == "ERROR"
    assert event_id.startswith("plaid_")
    assert envelope(WebhookProvider.PLAID, reordered)[1] == event_id


@pytest.mark.unit
def test_envelope_without_id_is_rejected():
    with pytest.raises(ValidationError):
        envelope(WebhookProvider.STRIPE, {"type": "payment_intent.succeeded"})


# ---------------------------------------------------------------------------
# decode_event
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_decode_stripe_payment_failed_forces_failed_status():
    payload = _stripe_payload(
        "payment_intent.payment_failed",
        {
            "id": "pi_1",
            "status": "requires_payment_method",
            "amount": 10000,
            "last_payment_error": {"message": "Insufficient funds in account"},
        },
    )

    event = decode_event(
        WebhookProvider.STRIPE, "payment_intent.payment_failed", "evt_1", payload
    )

    assert isinstance(event, StripePaymentIntentEvent)
    assert event.status == PaymentIntentStatus.FAILED
    assert event.failure_message == "Insufficient funds in account"


@pytest.mark.unit
def test_decode_stripe_dispute_references_charge():
    payload = _stripe_payload(
        "charge.dispute.created",
        {"id": "dp_1", "charge": "ch_1", "payment_intent": "pi_1", "amount": 500},
    )

    event = decode_event(WebhookProvider.STRIPE, "charge.dispute.created", "evt_2", payload)

    assert isinstance(event, StripeChargeEvent)
    assert event.charge_id == "ch_1"
    assert event.amount == 500


@pytest.mark.unit
def test_decode_strike_and_breez_events():
    quote = decode_event(
        WebhookProvider.STRIKE,
        "quote.completed",
        "st_1",
        {"data": {"quoteId": "quote_1", "amountUsd": "100", "amountBtc": "0.002"}},
    )
    invoice = decode_event(
        WebhookProvider.BREEZ,
        "invoice.paid",
        "bz_1",
        {"data": {"invoiceId": "inv_1", "nodeId": "node_1", "amountSats": 1000}},
    )
    synced = decode_event(
        WebhookProvider.BREEZ,
        "wallet.synced",
        "bz_2",
        {"data": {"nodeId": "node_1", "balance": {"total": 4200}}},
    )

    assert isinstance(quote, StrikeQuoteEvent) and quote.quote_id == "quote_1"
    assert isinstance(invoice, BreezInvoiceEvent) and invoice.amount_sats == 1000
    assert isinstance(synced, BreezWalletSyncedEvent) and synced.balance_sats == 4200


@pytest.mark.unit
def test_decode_plaid_item_error_code():
    event = decode_event(
        WebhookProvider.PLAID,
        "ERROR",
        "plaid_x",
        {"item_id": "item-1", "error": {"error_code": "ITEM_LOGIN_REQUIRED"}},
    )

    assert isinstance(event, PlaidItemEvent)
    assert event.error_code == "ITEM_LOGIN_REQUIRED"


@pytest.mark.unit
def test_unknown_event_type_decodes_to_unhandled():
    event = decode_event(WebhookProvider.STRIPE, "customer.created", "evt_3", {})

    assert isinstance(event, UnhandledEvent)
    assert event.provider_name == WebhookProvider.STRIPE


@pytest.mark.unit
def test_malformed_payload_is_a_validation_error():
    with pytest.raises(ValidationError):
        decode_event(WebhookProvider.STRIKE, "quote.completed", "st_2", {"data": {}})
