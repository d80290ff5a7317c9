"""mercury_sync_core

Revision ID: a7c1e2d3f4b5
Revises:
Create Date: 2026-03-02 09:00:00.000000
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "a7c1e2d3f4b5"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── business_entities ──────────────────────────────────────────────────────
    op.create_table(
        "business_entities",
        sa.Column("id", sa.String(50), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("legal_name", sa.String(255), nullable=False),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), server_default="active", nullable=False),
        sa.Column("credential_ref", sa.String(100), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )

    # ── bank_accounts ──────────────────────────────────────────────────────────
    op.create_table(
        "bank_accounts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "entity_id",
            sa.String(50),
            sa.ForeignKey("business_entities.id"),
            nullable=False,
        ),
        sa.Column("external_account_id", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("nickname", sa.String(255), nullable=True),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("routing_number_masked", sa.String(20), nullable=True),
        sa.Column("account_number_masked", sa.String(20), nullable=True),
        sa.Column("status", sa.String(20), server_default="active", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_bank_accounts_entity_id", "bank_accounts", ["entity_id"])

    # ── balance_snapshots (append-only) ────────────────────────────────────────
    op.create_table(
        "balance_snapshots",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            UUID(as_uuid=True),
            sa.ForeignKey("bank_accounts.id"),
            nullable=False,
        ),
        sa.Column("balance_cents", sa.BigInteger, nullable=False),
        sa.Column("available_cents", sa.BigInteger, nullable=True),
        sa.Column("currency", sa.String(3), server_default="USD", nullable=False),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ingested_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("account_id", "observed_at", name="uq_balance_snapshots_account_observed"),
    )
    op.create_index("ix_balance_snapshots_account_id", "balance_snapshots", ["account_id"])
    op.create_index("ix_balance_snapshots_observed_at", "balance_snapshots", ["observed_at"])

    # ── bank_transactions ──────────────────────────────────────────────────────
    op.create_table(
        "bank_transactions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            UUID(as_uuid=True),
            sa.ForeignKey("bank_accounts.id"),
            nullable=False,
        ),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("amount_cents", sa.BigInteger, nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("category", sa.String(255), nullable=True),
        sa.Column("counterparty", sa.String(255), nullable=True),
        sa.Column("counterparty_id", sa.String(255), nullable=True),
        sa.Column("note", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("account_id", "external_id", name="uq_bank_transactions_account_external"),
    )
    op.create_index("ix_bank_transactions_account_id", "bank_transactions", ["account_id"])
    op.create_index("ix_bank_transactions_occurred_at", "bank_transactions", ["occurred_at"])

    # ── sync_runs (audit trail) ────────────────────────────────────────────────
    op.create_table(
        "sync_runs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("trigger", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), server_default="running", nullable=False),
        sa.Column("entity_ids", sa.JSON, nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcomes", sa.JSON, nullable=False),
        sa.Column("accounts_touched", sa.Integer, server_default="0", nullable=False),
        sa.Column("transactions_added", sa.Integer, server_default="0", nullable=False),
        sa.Column("snapshots_written", sa.Integer, server_default="0", nullable=False),
        sa.Column("entities_synced", sa.Integer, server_default="0", nullable=False),
        sa.Column("entities_failed", sa.Integer, server_default="0", nullable=False),
        sa.Column("alert_raised", sa.Boolean, server_default=sa.text("false"), nullable=False),
        sa.Column("error", sa.Text, nullable=True),
    )
    op.create_index("ix_sync_runs_started_at", "sync_runs", ["started_at"])


def downgrade() -> None:
    op.drop_index("ix_sync_runs_started_at", table_name="sync_runs")
    op.drop_table("sync_runs")
    op.drop_index("ix_bank_transactions_occurred_at", table_name="bank_transactions")
    op.drop_index("ix_bank_transactions_account_id", table_name="bank_transactions")
    op.drop_table("bank_transactions")
    op.drop_index("ix_balance_snapshots_observed_at", table_name="balance_snapshots")
    op.drop_index("ix_balance_snapshots_account_id", table_name="balance_snapshots")
    op.drop_table("balance_snapshots")
    op.drop_index("ix_bank_accounts_entity_id", table_name="bank_accounts")
    op.drop_table("bank_accounts")
    op.drop_table("business_entities")
