"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(updated: bool = False) -> list[sa.Column]:
    cols = [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        )
    ]
    if updated:
        cols.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                server_default=sa.text("now()"),
                nullable=False,
            )
        )
    return cols


def upgrade() -> None:
    # --- accounts ---
    op.create_table(
        "accounts",
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("credit_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("wallet_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("opening_credit_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("opening_wallet_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(updated=True),
        sa.CheckConstraint("credit_balance >= 0", name="ck_accounts_credit_non_negative"),
        sa.CheckConstraint("wallet_balance >= 0", name="ck_accounts_wallet_non_negative"),
        sa.PrimaryKeyConstraint("account_id"),
    )

    # --- ledger_transactions ---
    op.create_table(
        "ledger_transactions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("idempotency_slot", sa.String(300), nullable=True),
        sa.Column(
            "kind",
            sa.Enum(
                "credit_purchase",
                "credit_reward",
                "credit_spend",
                "credit_transfer",
                "wallet_load",
                "wallet_debit",
                name="transactionkind",
            ),
            nullable=False,
        ),
        sa.Column("from_account_id", sa.String(64), nullable=True),
        sa.Column("to_account_id", sa.String(64), nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "failed", name="transactionstatus"),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("from_balance_after", sa.BigInteger(), nullable=True),
        sa.Column("to_balance_after", sa.BigInteger(), nullable=True),
        sa.Column("failure_reason", sa.String(64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["from_account_id"], ["accounts.account_id"]),
        sa.ForeignKeyConstraint(["to_account_id"], ["accounts.account_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_slot"),
    )
    op.create_index("ix_ledger_tx_key_kind", "ledger_transactions", ["idempotency_key", "kind"])
    op.create_index("ix_ledger_tx_status_created", "ledger_transactions", ["status", "created_at"])
    op.create_index(
        "ix_ledger_transactions_from_account_id", "ledger_transactions", ["from_account_id"]
    )
    op.create_index(
        "ix_ledger_transactions_to_account_id", "ledger_transactions", ["to_account_id"]
    )

    # --- credit_bundles ---
    op.create_table(
        "credit_bundles",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("credits", sa.BigInteger(), nullable=False),
        sa.Column("bonus_credits", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("price", sa.BigInteger(), nullable=False),
        sa.Column("popular", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    # --- marketplace_offers ---
    op.create_table(
        "marketplace_offers",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("agent_id", sa.String(64), nullable=False),
        sa.Column("offer_type", sa.String(32), nullable=False),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column("property_id", sa.String(64), nullable=True),
        sa.Column("credit_cost", sa.BigInteger(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("active", "reserved", "completed", "cancelled", name="offerstatus"),
            nullable=False,
        ),
        sa.Column("purchased_by", sa.String(64), nullable=True),
        sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_offers_agent_status", "marketplace_offers", ["agent_id", "status"])

    # --- collaborations ---
    op.create_table(
        "collaborations",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("offer_id", sa.String(64), nullable=True),
        sa.Column("collaboration_type", sa.String(32), nullable=False),
        sa.Column("from_agent_id", sa.String(64), nullable=False),
        sa.Column("to_agent_id", sa.String(64), nullable=False),
        sa.Column("property_id", sa.String(64), nullable=True),
        sa.Column("credits", sa.BigInteger(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "active", "completed", "cancelled", name="collaborationstatus"),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_collaborations_offer_id", "collaborations", ["offer_id"])
    op.create_index("ix_collaborations_from_agent_id", "collaborations", ["from_agent_id"])
    op.create_index("ix_collaborations_to_agent_id", "collaborations", ["to_agent_id"])

    # --- territories ---
    op.create_table(
        "territories",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("agent_id", sa.String(64), nullable=False),
        sa.Column("area", sa.String(128), nullable=False),
        sa.Column("state", sa.String(64), nullable=False, server_default="Lagos"),
        sa.Column("cost", sa.BigInteger(), nullable=False),
        sa.Column("claim_attempt_id", sa.UUID(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("claiming", "active", name="territorystatus"),
            nullable=False,
        ),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("agent_id", "area", name="uq_territory_agent_area"),
        sa.UniqueConstraint("claim_attempt_id"),
    )
    op.create_index("ix_territories_agent_id", "territories", ["agent_id"])


def downgrade() -> None:
    op.drop_table("territories")
    op.drop_table("collaborations")
    op.drop_table("marketplace_offers")
    op.drop_table("credit_bundles")
    op.drop_table("ledger_transactions")
    op.drop_table("accounts")
    for enum_name in (
        "territorystatus",
        "collaborationstatus",
        "offerstatus",
        "transactionstatus",
        "transactionkind",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
