"""
Plaid adapter: bank account linking and ACH numbers.

Provides async methods for:
- Creating Link tokens for the bank-linking widget
- Exchanging public tokens and storing linked accounts
- Fetching ACH account/routing numbers
- Removing linked items
- Verifying Plaid webhook JWTs

Plaid failures are never retried here; callers decide retry policy.
"""

import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import httpx
from jose import JWTError, jwt
from libs.common.config import Settings
from libs.common.encryption import decrypt_secret, encrypt_secret
from libs.common.logging import get_logger
from services.payments_service import storage
from services.payments_service.errors import (
    ProviderError,
    SignatureVerificationError,
    ValidationError,
)
from services.payments_service.models import PlaidAccount, PlaidAccountStatus
from services.payments_service.providers.base import ProviderClient
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

WEBHOOK_MAX_AGE_SECONDS = 5 * 60


@dataclass
class AchNumbers:
    """ACH numbers for one account. Never persisted."""

    account_number: str
    routing_number: str


class PlaidAdapter(ProviderClient):
    """Async client for the Plaid Link, Auth and Item APIs."""

    provider = "plaid"
    errors_retryable = False

    def __init__(
        self,
        client_id: str,
        secret: str,
        base_url: str,
        *,
        webhook_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url,
            {"Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )
        self.client_id = client_id
        self.secret = secret
        self.webhook_url = webhook_url
        self._verification_keys: dict[str, dict] = {}

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "PlaidAdapter":
        return cls(
            settings.PLAID_CLIENT_ID,
            settings.PLAID_SECRET,
            settings.PLAID_BASE_URL,
            webhook_url=f"{settings.BACKEND_URL}/webhooks/plaid",
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            **kwargs,
        )

    async def _call(self, endpoint: str, body: dict) -> dict:
        return await self._request(
            "POST",
            endpoint,
            json_data={"client_id": self.client_id, "secret": self.secret, **body},
        )

    def _error_message(self, data: dict) -> Optional[str]:
        if data.get("error_code"):
            return f"{data.get('error_code')}: {data.get('error_message')}"
        return super()._error_message(data)

    # =========================================================================
    # Linking
    # =========================================================================

    async def create_link_token(self, user_id: int, company_id: int) -> str:
        """Create a Link token for the user's bank-linking session."""
        body = {
            "client_name": "PaidIn",
            "user": {"client_user_id": str(user_id)},
            "products": ["auth", "transactions", "identity"],
            "country_codes": ["US"],
            "language": "en",
            "account_filters": {
                "depository": {"account_subtypes": ["checking", "savings"]}
            },
        }
        if self.webhook_url:
            body["webhook"] = self.webhook_url
        data = await self._call("/link/token/create", body)
        logger.info("Created Plaid link token for user %s company %s", user_id, company_id)
        return data["link_token"]

    async def exchange_public_token(
        self, db: AsyncSession, public_token: str, user_id: int, company_id: int
    ) -> PlaidAccount:
        """
        Exchange a Link public token and store every account on the item.

        The access token is encrypted before it is written. Returns the first
        stored account.
        """
        exchange = await self._call(
            "/item/public_token/exchange", {"public_token": public_token}
        )
        access_token = exchange["access_token"]
        item_id = exchange["item_id"]

        accounts = await self._store_accounts(
            db,
            access_token=access_token,
            item_id=item_id,
            user_id=user_id,
            company_id=company_id,
        )
        if not accounts:
            raise ProviderError(self.provider, f"Item {item_id} returned no accounts")

        logger.info(
            "Linked %d Plaid account(s) for user %s",
            len(accounts),
            user_id,
            extra={"extra_fields": {"item_id": item_id, "company_id": company_id}},
        )
        return accounts[0]

    async def _store_accounts(
        self,
        db: AsyncSession,
        *,
        access_token: str,
        item_id: str,
        user_id: int,
        company_id: int,
        skip_account_ids: frozenset = frozenset(),
    ) -> list[PlaidAccount]:
        data = await self._call("/accounts/get", {"access_token": access_token})
        institution_id = (data.get("item") or {}).get("institution_id")
        institution_name = await self._institution_name(institution_id)

        encrypted_token = encrypt_secret(access_token)
        stored = []
        for account in data.get("accounts", []):
            if account["account_id"] in skip_account_ids:
                continue
            stored.append(
                await storage.create_plaid_account(
                    db,
                    company_id=company_id,
                    user_id=user_id,
                    item_id=item_id,
                    encrypted_access_token=encrypted_token,
                    account_id=account["account_id"],
                    account_name=account.get("name") or "Bank account",
                    account_type=account.get("type") or "depository",
                    account_subtype=account.get("subtype"),
                    mask=account.get("mask"),
                    institution_id=institution_id,
                    institution_name=institution_name,
                    status=PlaidAccountStatus.ACTIVE,
                )
            )
        return stored

    async def _institution_name(self, institution_id: Optional[str]) -> Optional[str]:
        if not institution_id:
            return None
        try:
            data = await self._call(
                "/institutions/get_by_id",
                {"institution_id": institution_id, "country_codes": ["US"]},
            )
        except ProviderError as exc:
            logger.warning("Could not resolve institution %s: %s", institution_id, exc)
            return None
        return (data.get("institution") or {}).get("name")

    async def sync_new_accounts(self, db: AsyncSession, item_id: str) -> list[PlaidAccount]:
        """Store accounts added to an existing item since it was linked."""
        existing = await storage.list_plaid_accounts_by_item(db, item_id)
        if not existing:
            logger.warning("NEW_ACCOUNTS_AVAILABLE for unknown item %s", item_id)
            return []
        template = existing[0]
        return await self._store_accounts(
            db,
            access_token=decrypt_secret(template.encrypted_access_token),
            item_id=item_id,
            user_id=template.user_id,
            company_id=template.company_id,
            skip_account_ids=frozenset(account.account_id for account in existing),
        )

    # =========================================================================
    # Auth / Item
    # =========================================================================

    async def _get_account(self, db: AsyncSession, account_id: uuid.UUID) -> PlaidAccount:
        account = await storage.get_plaid_account(db, account_id)
        if account is None:
            raise ValidationError(f"Plaid account {account_id} not found")
        return account

    async def get_auth(self, db: AsyncSession, account_id: uuid.UUID) -> AchNumbers:
        """Fetch ACH numbers for a linked account."""
        account = await self._get_account(db, account_id)
        data = await self._call(
            "/auth/get",
            {
                "access_token": decrypt_secret(account.encrypted_access_token),
                "options": {"account_ids": [account.account_id]},
            },
        )
        for ach in (data.get("numbers") or {}).get("ach", []):
            if ach.get("account_id") in (None, account.account_id):
                return AchNumbers(
                    account_number=ach["account"], routing_number=ach["routing"]
                )
        raise ProviderError(
            self.provider, f"No ACH numbers returned for account {account_id}"
        )

    async def remove_account(self, db: AsyncSession, account_id: uuid.UUID) -> None:
        """Revoke the item upstream, then delete the local row."""
        account = await self._get_account(db, account_id)
        await self._call(
            "/item/remove",
            {"access_token": decrypt_secret(account.encrypted_access_token)},
        )
        await storage.delete_plaid_account(db, account)
        logger.info("Removed Plaid account %s", account_id)

    async def set_item_status(
        self, db: AsyncSession, item_id: str, status: PlaidAccountStatus
    ) -> int:
        updated = await storage.set_plaid_item_status(db, item_id, status)
        logger.info("Plaid item %s marked %s (%d accounts)", item_id, status.value, updated)
        return updated

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def _verification_key(self, key_id: str) -> dict:
        if key_id not in self._verification_keys:
            data = await self._call("/webhook_verification_key/get", {"key_id": key_id})
            self._verification_keys[key_id] = data["key"]
        return self._verification_keys[key_id]

    async def verify_webhook(self, body: bytes, verification_jwt: Optional[str]) -> dict:
        """
        Check the ``Plaid-Verification`` JWT against the raw body.

        Raises SignatureVerificationError unless the token is a valid ES256
        signature from a current Plaid key, was issued in the last five
        minutes and carries the SHA-256 of this exact body.
        """
        if not verification_jwt:
            raise SignatureVerificationError("Missing Plaid-Verification header")
        try:
            header = jwt.get_unverified_header(verification_jwt)
        except JWTError as exc:
            raise SignatureVerificationError("Malformed Plaid verification token") from exc
        if header.get("alg") != "ES256" or not header.get("kid"):
            raise SignatureVerificationError("Unexpected Plaid verification header")

        try:
            key = await self._verification_key(header["kid"])
        except ProviderError as exc:
            raise SignatureVerificationError("Unknown Plaid verification key") from exc
        if key.get("expired_at"):
            raise SignatureVerificationError("Plaid verification key has expired")

        try:
            claims = jwt.decode(verification_jwt, key, algorithms=["ES256"])
        except JWTError as exc:
            raise SignatureVerificationError("Invalid Plaid webhook signature") from exc

        if time.time() - claims.get("iat", 0) > WEBHOOK_MAX_AGE_SECONDS:
            raise SignatureVerificationError("Plaid webhook is too old")
        body_hash = hashlib.sha256(body).hexdigest()
        if not hmac.compare_digest(body_hash, claims.get("request_body_sha256", "")):
            raise SignatureVerificationError("Plaid webhook body hash mismatch")

        try:
            payload = json.loads(body or b"{}")
        except ValueError as exc:
            raise ValidationError("plaid webhook body is not JSON") from exc
        if not isinstance(payload, dict):
            raise ValidationError("plaid webhook body must be an object")
        return payload
