"""create_payments_tables

Revision ID: 7c1e4a9d2b30
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "7c1e4a9d2b30"
down_revision = None
branch_labels = None
depends_on = None


JSONB = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

plaid_account_status = sa.Enum(
    "active", "inactive", "error", name="plaid_account_status_enum"
)
payment_intent_status = sa.Enum(
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "processing",
    "succeeded",
    "failed",
    "canceled",
    name="payment_intent_status_enum",
)
conversion_status = sa.Enum(
    "pending", "completed", "failed", name="conversion_status_enum"
)
wallet_type = sa.Enum("company", "employee", name="wallet_type_enum")
wallet_status = sa.Enum("initializing", "active", "error", name="wallet_status_enum")
transaction_type = sa.Enum(
    "funding",
    "payout",
    "swap_btc_to_usd",
    "swap_usd_to_btc",
    name="transaction_type_enum",
)
transaction_source = sa.Enum(
    "stripe", "strike", "breez", "plaid", name="transaction_source_enum"
)
ledger_currency = sa.Enum("usd", "sats", name="ledger_currency_enum")
transaction_status = sa.Enum(
    "pending",
    "awaiting_payment",
    "completed",
    "failed",
    name="transaction_status_enum",
)
webhook_provider = sa.Enum(
    "stripe", "strike", "breez", "plaid", name="webhook_provider_enum"
)


def upgrade() -> None:
    op.create_table(
        "plaid_accounts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.String(length=128), nullable=False),
        sa.Column("encrypted_access_token", sa.Text(), nullable=False),
        sa.Column("account_id", sa.String(length=128), nullable=False),
        sa.Column("account_name", sa.String(length=255), nullable=False),
        sa.Column("account_type", sa.String(length=32), nullable=False),
        sa.Column("account_subtype", sa.String(length=32), nullable=True),
        sa.Column("mask", sa.String(length=8), nullable=True),
        sa.Column("institution_id", sa.String(length=64), nullable=True),
        sa.Column("institution_name", sa.String(length=255), nullable=True),
        sa.Column("status", plaid_account_status, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "item_id", "account_id", name="uq_plaid_accounts_item_account"
        ),
    )
    op.create_index("ix_plaid_accounts_company_id", "plaid_accounts", ["company_id"])
    op.create_index("ix_plaid_accounts_user_id", "plaid_accounts", ["user_id"])
    op.create_index("ix_plaid_accounts_item_id", "plaid_accounts", ["item_id"])

    op.create_table(
        "payment_intents",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("stripe_payment_intent_id", sa.String(length=128), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("status", payment_intent_status, nullable=False),
        sa.Column("plaid_account_id", sa.Uuid(), nullable=True),
        sa.Column("metadata", JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["plaid_account_id"], ["plaid_accounts.id"], ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payment_intents_company_id", "payment_intents", ["company_id"])
    op.create_index("ix_payment_intents_user_id", "payment_intents", ["user_id"])
    op.create_index(
        "ix_payment_intents_stripe_payment_intent_id",
        "payment_intents",
        ["stripe_payment_intent_id"],
        unique=True,
    )

    op.create_table(
        "conversions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("payment_intent_id", sa.Uuid(), nullable=True),
        sa.Column("strike_quote_id", sa.String(length=128), nullable=False),
        sa.Column("amount_usd", sa.Numeric(18, 2), nullable=False),
        sa.Column("amount_btc", sa.Numeric(18, 8), nullable=False),
        sa.Column("exchange_rate", sa.Numeric(18, 2), nullable=False),
        sa.Column("status", conversion_status, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["payment_intent_id"], ["payment_intents.id"], ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_conversions_company_id", "conversions", ["company_id"])
    op.create_index("ix_conversions_user_id", "conversions", ["user_id"])
    op.create_index(
        "ix_conversions_strike_quote_id", "conversions", ["strike_quote_id"], unique=True
    )

    op.create_table(
        "breez_wallets",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("wallet_type", wallet_type, nullable=False),
        sa.Column("node_id", sa.String(length=128), nullable=False),
        sa.Column("balance_sats", sa.BigInteger(), nullable=False),
        sa.Column("invoice_capability", sa.Boolean(), nullable=False),
        sa.Column("status", wallet_status, nullable=False),
        sa.Column("encrypted_credentials", sa.Text(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_breez_wallets_company_id", "breez_wallets", ["company_id"])
    op.create_index("ix_breez_wallets_user_id", "breez_wallets", ["user_id"])
    op.create_index(
        "ix_breez_wallets_node_id", "breez_wallets", ["node_id"], unique=True
    )

    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("wallet_id", sa.Uuid(), nullable=True),
        sa.Column("transaction_type", transaction_type, nullable=False),
        sa.Column("source_type", transaction_source, nullable=False),
        sa.Column("source_id", sa.String(length=128), nullable=False),
        sa.Column("lightning_invoice_id", sa.String(length=128), nullable=True),
        sa.Column("amount", sa.Numeric(20, 8), nullable=False),
        sa.Column("currency", ledger_currency, nullable=False),
        sa.Column("status", transaction_status, nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("metadata", JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["wallet_id"], ["breez_wallets.id"], ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_wallet_transactions_company_id", "wallet_transactions", ["company_id"]
    )
    op.create_index("ix_wallet_transactions_user_id", "wallet_transactions", ["user_id"])
    op.create_index(
        "ix_wallet_transactions_lightning_invoice_id",
        "wallet_transactions",
        ["lightning_invoice_id"],
    )
    op.create_index(
        "ix_wallet_transactions_company_created",
        "wallet_transactions",
        ["company_id", "created_at"],
    )
    # At most one live (non-failed) row per effect.
    op.create_index(
        "uq_wallet_transactions_live_effect",
        "wallet_transactions",
        ["transaction_type", "source_type", "source_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'failed'"),
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("provider", webhook_provider, nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "provider", "event_id", name="uq_webhook_events_provider_event"
        ),
    )
    op.create_index("ix_webhook_events_received_at", "webhook_events", ["received_at"])


def downgrade() -> None:
    op.drop_index("ix_webhook_events_received_at", table_name="webhook_events")
    op.drop_table("webhook_events")

    op.drop_index("uq_wallet_transactions_live_effect", table_name="wallet_transactions")
    op.drop_index(
        "ix_wallet_transactions_company_created", table_name="wallet_transactions"
    )
    op.drop_index(
        "ix_wallet_transactions_lightning_invoice_id", table_name="wallet_transactions"
    )
    op.drop_index("ix_wallet_transactions_user_id", table_name="wallet_transactions")
    op.drop_index("ix_wallet_transactions_company_id", table_name="wallet_transactions")
    op.drop_table("wallet_transactions")

    op.drop_index("ix_breez_wallets_node_id", table_name="breez_wallets")
    op.drop_index("ix_breez_wallets_user_id", table_name="breez_wallets")
    op.drop_index("ix_breez_wallets_company_id", table_name="breez_wallets")
    op.drop_table("breez_wallets")

    op.drop_index("ix_conversions_strike_quote_id", table_name="conversions")
    op.drop_index("ix_conversions_user_id", table_name="conversions")
    op.drop_index("ix_conversions_company_id", table_name="conversions")
    op.drop_table("conversions")

    op.drop_index(
        "ix_payment_intents_stripe_payment_intent_id", table_name="payment_intents"
    )
    op.drop_index("ix_payment_intents_user_id", table_name="payment_intents")
    op.drop_index("ix_payment_intents_company_id", table_name="payment_intents")
    op.drop_table("payment_intents")

    op.drop_index("ix_plaid_accounts_item_id", table_name="plaid_accounts")
    op.drop_index("ix_plaid_accounts_user_id", table_name="plaid_accounts")
    op.drop_index("ix_plaid_accounts_company_id", table_name="plaid_accounts")
    op.drop_table("plaid_accounts")

    bind = op.get_bind()
    for enum_type in (
        webhook_provider,
        transaction_status,
        ledger_currency,
        transaction_source,
        transaction_type,
        wallet_status,
        wallet_type,
        conversion_status,
        payment_intent_status,
        plaid_account_status,
    ):
        enum_type.drop(bind, checkfirst=True)
