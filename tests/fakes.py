"""
In-memory stand-ins for the Plaid, Stripe, Strike and Breez HTTP APIs.

``FakeProviders.transport`` is an ``httpx.MockTransport`` handed to every
adapter through ``build_services(..., transport=...)``. It answers with
plausible payloads, keeps just enough state to make the flows consistent
(intent statuses, node balances, invoices) and records every call.

Failures are injected per call:

    fakes.fail("strike", "POST", r"/v1/swaps", status_code=500, times=3)
"""

import hashlib
import hmac
import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from urllib.parse import parse_qs

import httpx

HOSTS = {
    "sandbox.plaid.com": "plaid",
    "api.stripe.com": "stripe",
    "api.strike.me": "strike",
    "api.breez.technology": "breez",
    "localhost": "btcpay",
    "legend.lnbits.com": "lnbits",
}

BTC_QUANT = Decimal("0.00000001")


@dataclass
class InjectedResponse:
    provider: str
    method: str
    path_pattern: str
    status_code: int
    body: dict
    remaining: int


@dataclass
class RecordedCall:
    provider: str
    method: str
    path: str
    body: dict = field(default_factory=dict)


def _iso_in(seconds: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat()


def sign_stripe(body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a ``Stripe-Signature`` header for ``body``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{body.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def sign_hmac(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 as sent by Strike and Breez."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class FakeProviders:
    def __init__(self, exchange_rate: Decimal = Decimal("50000")):
        self.exchange_rate = exchange_rate
        self.calls: list[RecordedCall] = []
        self._injected: list[InjectedResponse] = []
        self._counter = 0

        # Behaviour knobs
        self.confirm_status = "processing"
        self.quote_status = "completed"
        self.strike_payment_status = "completed"
        self.swap_status = "completed"
        self.breez_payment_status = "completed"

        # State
        self.intents: dict[str, dict] = {}
        self.quotes: dict[str, dict] = {}
        self.swaps: dict[str, dict] = {}
        self.node_balances: dict[str, int] = {}
        self.invoices: dict[str, dict] = {}  # bolt11 -> {invoice_id, node_id, amount}

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def fail(
        self,
        provider: str,
        method: str,
        path_pattern: str,
        *,
        status_code: int = 500,
        body: Optional[dict] = None,
        times: int = 1,
    ) -> None:
        self._injected.append(
            InjectedResponse(
                provider,
                method,
                path_pattern,
                status_code,
                body if body is not None else {"message": "upstream exploded"},
                times,
            )
        )

    def set_intent(self, payment_intent_id: str, *, status: str, amount: int = 10000):
        intent = self.intents.setdefault(
            payment_intent_id,
            {
                "id": payment_intent_id,
                "amount": amount,
                "currency": "usd",
                "created": int(time.time()),
                "metadata": {},
            },
        )
        intent["status"] = status

    def count(self, provider: str, method: str, path_pattern: str) -> int:
        return sum(
            1
            for call in self.calls
            if call.provider == provider
            and call.method == method
            and re.fullmatch(path_pattern, call.path)
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    @staticmethod
    def _body(request: httpx.Request) -> dict:
        if not request.content:
            return {}
        if request.headers.get("content-type", "").startswith(
            "application/x-www-form-urlencoded"
        ):
            parsed = parse_qs(request.content.decode())
            return {key: values[-1] for key, values in parsed.items()}
        return json.loads(request.content)

    def handle(self, request: httpx.Request) -> httpx.Response:
        provider = HOSTS.get(request.url.host, request.url.host)
        path = request.url.path
        body = self._body(request)
        self.calls.append(RecordedCall(provider, request.method, path, body))

        for injected in self._injected:
            if (
                injected.remaining > 0
                and injected.provider == provider
                and injected.method == request.method
                and re.fullmatch(injected.path_pattern, path)
            ):
                injected.remaining -= 1
                return httpx.Response(injected.status_code, json=injected.body)

        route = getattr(self, f"_{provider}", None)
        if route is None:
            return httpx.Response(404, json={"message": f"no fake for {provider}"})
        return route(request.method, path, body)

    # ------------------------------------------------------------------
    # Plaid
    # ------------------------------------------------------------------

    def _plaid(self, method: str, path: str, body: dict) -> httpx.Response:
        if path == "/link/token/create":
            return httpx.Response(200, json={"link_token": "link-sandbox-123"})
        if path == "/item/public_token/exchange":
            return httpx.Response(
                200,
                json={"access_token": "access-sandbox-abc", "item_id": "item-sandbox-1"},
            )
        if path == "/accounts/get":
            return httpx.Response(
                200,
                json={
                    "accounts": [
                        {
                            "account_id": "acc-checking",
                            "name": "Plaid Checking",
                            "type": "depository",
                            "subtype": "checking",
                            "mask": "0000",
                        },
                        {
                            "account_id": "acc-savings",
                            "name": "Plaid Saving",
                            "type": "depository",
                            "subtype": "savings",
                            "mask": "1111",
                        },
                    ],
                    "item": {"institution_id": "ins_109508"},
                },
            )
        if path == "/institutions/get_by_id":
            return httpx.Response(
                200, json={"institution": {"name": "First Platypus Bank"}}
            )
        if path == "/auth/get":
            account_ids = (body.get("options") or {}).get("account_ids") or ["acc"]
            return httpx.Response(
                200,
                json={
                    "numbers": {
                        "ach": [
                            {
                                "account_id": account_ids[0],
                                "account": "1111222233330000",
                                "routing": "011401533",
                            }
                        ]
                    }
                },
            )
        if path == "/item/remove":
            return httpx.Response(200, json={"request_id": "req-remove"})
        return httpx.Response(404, json={"error_code": "NOT_FOUND"})

    # ------------------------------------------------------------------
    # Stripe
    # ------------------------------------------------------------------

    def _stripe(self, method: str, path: str, body: dict) -> httpx.Response:
        if path == "/v1/payment_methods":
            return httpx.Response(
                200,
                json={
                    "id": self._next_id("pm"),
                    "type": "us_bank_account",
                    "us_bank_account": {"last4": "0000", "bank_name": "STRIPE TEST BANK"},
                },
            )
        if path == "/v1/payment_intents":
            intent_id = self._next_id("pi")
            self.set_intent(
                intent_id, status="requires_payment_method", amount=int(body["amount"])
            )
            return httpx.Response(200, json=self.intents[intent_id])
        if path == "/v1/refunds":
            return httpx.Response(
                200,
                json={
                    "id": self._next_id("re"),
                    "status": "succeeded",
                    "amount": int(
                        body.get("amount")
                        or self.intents.get(body.get("payment_intent"), {}).get("amount", 0)
                    ),
                },
            )

        match = re.fullmatch(r"/v1/payment_intents/([^/]+)(?:/(confirm|cancel))?", path)
        if match is None or match.group(1) not in self.intents:
            return httpx.Response(
                404, json={"error": {"message": "No such payment_intent"}}
            )
        intent = self.intents[match.group(1)]
        if match.group(2) == "confirm":
            intent["status"] = self.confirm_status
        elif match.group(2) == "cancel":
            intent["status"] = "canceled"
        return httpx.Response(200, json=intent)

    # ------------------------------------------------------------------
    # Strike
    # ------------------------------------------------------------------

    def _quote_payload(self, quote_id: str, amount_usd: Decimal, status: str) -> dict:
        amount_btc = (amount_usd / self.exchange_rate).quantize(BTC_QUANT, ROUND_HALF_UP)
        return {
            "quoteId": quote_id,
            "amountUsd": str(amount_usd),
            "amountBtc": str(amount_btc),
            "exchangeRate": str(self.exchange_rate),
            "expiresAt": _iso_in(60),
            "status": status,
            "fees": {"networkFee": "0", "serviceFee": "0", "totalFee": "0"},
        }

    def _strike(self, method: str, path: str, body: dict) -> httpx.Response:
        if path == "/v1/quotes":
            quote_id = self._next_id("quote")
            self.quotes[quote_id] = self._quote_payload(
                quote_id, Decimal(body["amount"]), "pending"
            )
            return httpx.Response(201, json=self.quotes[quote_id])

        match = re.fullmatch(r"/v1/quotes/([^/]+)(/execute)?", path)
        if match is not None:
            quote = self.quotes.get(match.group(1))
            if quote is None:
                return httpx.Response(404, json={"message": "Quote not found"})
            quote["status"] = self.quote_status
            return httpx.Response(200, json=quote)

        if path == "/v1/payments":
            self._settle_invoice(body["invoice"], self.strike_payment_status)
            return httpx.Response(
                200,
                json={
                    "paymentId": self._next_id("strike_pay"),
                    "status": self.strike_payment_status,
                    "transactionHash": "ab" * 32,
                },
            )
        if path == "/v1/swaps":
            amount_btc = Decimal(body["amount"])
            swap_id = self._next_id("swap")
            self.swaps[swap_id] = {
                "swapId": swap_id,
                "amountBtc": str(amount_btc),
                "amountUsd": str((amount_btc * self.exchange_rate).quantize(Decimal("0.01"))),
                "exchangeRate": str(self.exchange_rate),
                "status": self.swap_status,
            }
            return httpx.Response(200, json=self.swaps[swap_id])
        match = re.fullmatch(r"/v1/swaps/([^/]+)", path)
        if match is not None:
            swap = self.swaps.get(match.group(1))
            if swap is None:
                return httpx.Response(404, json={"message": "Swap not found"})
            return httpx.Response(200, json=swap)
        if path.startswith("/v1/rates/"):
            return httpx.Response(200, json={"rate": str(self.exchange_rate)})
        return httpx.Response(404, json={"message": "Not found"})

    # ------------------------------------------------------------------
    # Breez
    # ------------------------------------------------------------------

    def _settle_invoice(self, bolt11: str, status: str) -> Optional[dict]:
        invoice = self.invoices.get(bolt11)
        if invoice is not None and status == "completed":
            node_id = invoice["node_id"]
            self.node_balances[node_id] = (
                self.node_balances.get(node_id, 0) + invoice["amount"]
            )
        return invoice

    def _breez(self, method: str, path: str, body: dict) -> httpx.Response:
        if path == "/v1/wallets":
            node_id = body["nodeId"]
            self.node_balances.setdefault(node_id, 0)
            return httpx.Response(
                201,
                json={
                    "nodeId": node_id,
                    "credentials": "abandon ability able about above absent",
                    "balance": 0,
                    "invoiceCapability": True,
                    "status": "active",
                },
            )
        if path.startswith("/v1/nodes/"):
            node_id = path.rsplit("/", 1)[-1]
            balance = self.node_balances.get(node_id, 0)
            return httpx.Response(
                200,
                json={
                    "balance": {"total": balance, "available": balance, "pending": 0},
                    "status": "active",
                },
            )
        if path == "/v1/invoices":
            invoice_id = self._next_id("inv")
            bolt11 = f"lnbc{body['amount']}n1{invoice_id}"
            self.invoices[bolt11] = {
                "invoice_id": invoice_id,
                "node_id": body["nodeId"],
                "amount": int(body["amount"]),
            }
            return httpx.Response(
                201,
                json={
                    "invoiceId": invoice_id,
                    "invoice": bolt11,
                    "amountSats": int(body["amount"]),
                    "expiresAt": _iso_in(3600),
                },
            )
        if path == "/v1/payments":
            invoice = self.invoices.get(body["invoice"], {"amount": 0})
            if self.breez_payment_status == "completed":
                payer = body["nodeId"]
                self.node_balances[payer] = (
                    self.node_balances.get(payer, 0) - invoice["amount"]
                )
                self._settle_invoice(body["invoice"], "completed")
            return httpx.Response(
                200,
                json={
                    "paymentId": self._next_id("breez_pay"),
                    "amountSats": invoice["amount"],
                    "status": self.breez_payment_status,
                },
            )
        return httpx.Response(404, json={"message": "Not found"})
