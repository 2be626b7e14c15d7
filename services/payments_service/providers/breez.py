"""
Breez adapter: Lightning node wallets for companies and employees.

Provides async methods for:
- Provisioning a node-backed wallet
- Generating and paying Lightning invoices
- Syncing the cached wallet balance from the node

Node credentials returned by Breez are encrypted before they are stored.
The cached balance on ``BreezWallet`` is only refreshed here.
"""

import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx
from libs.common.config import Settings
from libs.common.datetime_utils import utc_now
from libs.common.encryption import encrypt_secret
from libs.common.logging import get_logger
from services.payments_service import storage
from services.payments_service.errors import WalletNotFoundError
from services.payments_service.models import BreezWallet, WalletStatus, WalletType
from services.payments_service.providers.base import ProviderClient
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

INVOICE_EXPIRY_SECONDS = 3600


@dataclass
class LightningInvoice:
    invoice_id: str
    bolt11: str
    amount_sats: int
    description: str
    expires_at: Optional[datetime] = None


@dataclass
class LightningPayment:
    payment_id: str
    amount_sats: int
    status: str  # pending, completed, failed
    transaction_hash: Optional[str] = None


@dataclass
class NodeInfo:
    node_id: str
    total_sats: int
    available_sats: int
    pending_sats: int
    status: str


def generate_node_id() -> str:
    return f"paidin_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class BreezAdapter(ProviderClient):
    """Async client for the Breez node API."""

    provider = "breez"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.breez.technology",
        network: str = "testnet",
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url,
            {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            max_attempts=max_attempts,
            retry_base_delay=retry_base_delay,
            timeout=timeout,
            transport=transport,
        )
        self.network = network

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "BreezAdapter":
        return cls(
            settings.BREEZ_API_KEY,
            base_url=settings.BREEZ_BASE_URL,
            network=settings.BREEZ_NETWORK,
            max_attempts=settings.PROVIDER_MAX_RETRIES,
            retry_base_delay=settings.PROVIDER_RETRY_BASE_DELAY,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            **kwargs,
        )

    async def _wallet(self, db: AsyncSession, wallet_id: uuid.UUID) -> BreezWallet:
        wallet = await storage.get_wallet(db, wallet_id)
        if wallet is None:
            raise WalletNotFoundError(wallet_id)
        return wallet

    # =========================================================================
    # Wallets
    # =========================================================================

    async def initialize_wallet(
        self,
        db: AsyncSession,
        *,
        user_id: Optional[int],
        company_id: int,
        wallet_type: WalletType,
    ) -> BreezWallet:
        """Provision a node and store its wallet record."""
        node_id = generate_node_id()
        data = await self._request(
            "POST",
            "/v1/wallets",
            json_data={
                "nodeId": node_id,
                "network": self.network,
                "type": wallet_type.value,
                "userId": user_id,
                "companyId": company_id,
            },
        )
        credentials = data.get("credentials")
        wallet = await storage.create_wallet(
            db,
            company_id=company_id,
            user_id=user_id if wallet_type == WalletType.EMPLOYEE else None,
            wallet_type=wallet_type,
            node_id=data.get("nodeId", node_id),
            balance_sats=int(data.get("balance") or 0),
            invoice_capability=bool(data.get("invoiceCapability", False)),
            status=WalletStatus.ACTIVE
            if data.get("status") == "active"
            else WalletStatus.INITIALIZING,
            encrypted_credentials=encrypt_secret(credentials) if credentials else None,
        )
        logger.info(
            "Initialized %s Breez wallet %s",
            wallet_type.value,
            wallet.node_id,
            extra={"extra_fields": {"company_id": company_id, "user_id": user_id}},
        )
        return wallet

    async def sync_wallet(self, db: AsyncSession, wallet_id: uuid.UUID) -> NodeInfo:
        """Refresh the cached balance from the node."""
        wallet = await self._wallet(db, wallet_id)
        data = await self._request("GET", f"/v1/nodes/{wallet.node_id}")
        balance = data.get("balance") or {}
        info = NodeInfo(
            node_id=wallet.node_id,
            total_sats=int(balance.get("total", 0)),
            available_sats=int(balance.get("available", 0)),
            pending_sats=int(balance.get("pending", 0)),
            status=data.get("status", "active"),
        )
        wallet.balance_sats = info.total_sats
        wallet.status = WalletStatus.ERROR if info.status == "error" else WalletStatus.ACTIVE
        wallet.last_sync_at = utc_now()
        await storage.save_wallet(db, wallet)
        return info

    async def get_wallet_balance(self, db: AsyncSession, wallet_id: uuid.UUID) -> int:
        """Balance in sats, freshly synced."""
        info = await self.sync_wallet(db, wallet_id)
        return info.total_sats

    # =========================================================================
    # Invoices and payments
    # =========================================================================

    async def generate_invoice(
        self,
        db: AsyncSession,
        wallet_id: uuid.UUID,
        amount_sats: int,
        description: str,
    ) -> LightningInvoice:
        wallet = await self._wallet(db, wallet_id)
        data = await self._request(
            "POST",
            "/v1/invoices",
            json_data={
                "nodeId": wallet.node_id,
                "amount": amount_sats,
                "description": description,
                "expiry": INVOICE_EXPIRY_SECONDS,
            },
        )
        expires_at = data.get("expiresAt")
        return LightningInvoice(
            invoice_id=data["invoiceId"],
            bolt11=data["invoice"],
            amount_sats=int(data.get("amountSats", amount_sats)),
            description=description,
            expires_at=datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
            if expires_at
            else None,
        )

    async def pay_invoice(
        self, db: AsyncSession, wallet_id: uuid.UUID, invoice: str
    ) -> LightningPayment:
        """Pay a Lightning invoice from the wallet's node."""
        wallet = await self._wallet(db, wallet_id)
        data = await self._request(
            "POST",
            "/v1/payments",
            json_data={"nodeId": wallet.node_id, "invoice": invoice},
        )
        return LightningPayment(
            payment_id=data["paymentId"],
            amount_sats=int(data.get("amountSats", 0)),
            status=data.get("status", "pending"),
            transaction_hash=data.get("transactionHash"),
        )
