import uuid
from datetime import datetime
from decimal import Decimal

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.payments_service.models.enums import (
    ConversionStatus,
    LedgerCurrency,
    PaymentIntentStatus,
    PlaidAccountStatus,
    SourceType,
    TransactionStatus,
    TransactionType,
    WalletStatus,
    WalletType,
    WebhookProvider,
    enum_values,
)
from sqlalchemy import JSON, BigInteger, Boolean, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class User(Base):
    """
    Read-only view of the PaidIn user directory.

    The HR service owns this table; payments only reads it to check that a
    requester belongs to the company they are moving money for.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    role: Mapped[str] = mapped_column(String(32), default="employee", nullable=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self):
        return f"<User {self.id} company={self.company_id}>"


class PlaidAccount(Base):
    """A linked bank account. The Plaid access token is stored encrypted."""

    __tablename__ = "plaid_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)

    item_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    encrypted_access_token: Mapped[str] = mapped_column(Text, nullable=False)
    account_id: Mapped[str] = mapped_column(String(128), nullable=False)
    account_name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_type: Mapped[str] = mapped_column(String(32), nullable=False)
    account_subtype: Mapped[str | None] = mapped_column(String(32), nullable=True)
    mask: Mapped[str | None] = mapped_column(String(8), nullable=True)
    institution_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    institution_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[PlaidAccountStatus] = mapped_column(
        SAEnum(
            PlaidAccountStatus,
            name="plaid_account_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=PlaidAccountStatus.ACTIVE,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("item_id", "account_id", name="uq_plaid_accounts_item_account"),
    )

    def __repr__(self):
        return f"<PlaidAccount {self.account_name} ****{self.mask}>"


class PaymentIntent(Base):
    """One ACH bank-debit attempt, mirrored from Stripe."""

    __tablename__ = "payment_intents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)

    stripe_payment_intent_id: Mapped[str] = mapped_column(
        String(128), unique=True, index=True, nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)  # cents
    currency: Mapped[str] = mapped_column(String(8), default="usd", nullable=False)

    status: Mapped[PaymentIntentStatus] = mapped_column(
        SAEnum(
            PaymentIntentStatus,
            name="payment_intent_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=PaymentIntentStatus.REQUIRES_PAYMENT_METHOD,
        nullable=False,
    )

    plaid_account_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("plaid_accounts.id", ondelete="SET NULL"), nullable=True
    )

    # "metadata" is reserved by SQLAlchemy's Declarative API
    intent_metadata: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<PaymentIntent {self.stripe_payment_intent_id} {self.status.value}>"


class Conversion(Base):
    """One executed USD/BTC quote."""

    __tablename__ = "conversions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    payment_intent_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("payment_intents.id", ondelete="SET NULL"), nullable=True
    )

    strike_quote_id: Mapped[str] = mapped_column(
        String(128), unique=True, index=True, nullable=False
    )
    amount_usd: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    amount_btc: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    status: Mapped[ConversionStatus] = mapped_column(
        SAEnum(
            ConversionStatus,
            name="conversion_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=ConversionStatus.PENDING,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self):
        return f"<Conversion {self.strike_quote_id} {self.amount_usd} USD>"


class BreezWallet(Base):
    """
    Lightning wallet for a company (shared) or an employee.

    ``balance_sats`` is only a cache: Breez is the source of truth and the
    value is refreshed by sync calls and wallet webhooks.
    """

    __tablename__ = "breez_wallets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    user_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)

    wallet_type: Mapped[WalletType] = mapped_column(
        SAEnum(
            WalletType,
            name="wallet_type_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    node_id: Mapped[str] = mapped_column(
        String(128), unique=True, index=True, nullable=False
    )
    balance_sats: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    invoice_capability: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    status: Mapped[WalletStatus] = mapped_column(
        SAEnum(
            WalletStatus,
            name="wallet_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=WalletStatus.INITIALIZING,
        nullable=False,
    )
    encrypted_credentials: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def __repr__(self):
        return f"<BreezWallet {self.node_id} {self.wallet_type.value}>"


class WalletTransaction(Base):
    """
    Append-only money movement ledger.

    Rows are never edited except for a single status transition from
    pending/awaiting_payment to completed/failed. At most one non-failed row
    may exist per (transaction_type, source_type, source_id).
    """

    __tablename__ = "wallet_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    wallet_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("breez_wallets.id", ondelete="SET NULL"), nullable=True
    )

    transaction_type: Mapped[TransactionType] = mapped_column(
        SAEnum(
            TransactionType,
            name="transaction_type_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    source_type: Mapped[SourceType] = mapped_column(
        SAEnum(
            SourceType,
            name="transaction_source_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    source_id: Mapped[str] = mapped_column(String(128), nullable=False)
    lightning_invoice_id: Mapped[str | None] = mapped_column(
        String(128), index=True, nullable=True
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    currency: Mapped[LedgerCurrency] = mapped_column(
        SAEnum(
            LedgerCurrency,
            name="ledger_currency_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(
            TransactionStatus,
            name="transaction_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=TransactionStatus.PENDING,
        nullable=False,
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    transaction_metadata: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index(
            "uq_wallet_transactions_live_effect",
            "transaction_type",
            "source_type",
            "source_id",
            unique=True,
            postgresql_where=text("status <> 'failed'"),
            sqlite_where=text("status <> 'failed'"),
        ),
        Index("ix_wallet_transactions_company_created", "company_id", "created_at"),
    )

    def __repr__(self):
        return (
            f"<WalletTransaction {self.transaction_type.value} "
            f"{self.source_type.value}:{self.source_id} {self.status.value}>"
        )


class WebhookEvent(Base):
    """Every verified provider callback, kept for de-duplication and replay."""

    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider: Mapped[WebhookProvider] = mapped_column(
        SAEnum(
            WebhookProvider,
            name="webhook_provider_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)

    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, index=True
    )

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
    )

    def __repr__(self):
        return f"<WebhookEvent {self.provider.value}:{self.event_id} {self.event_type}>"
