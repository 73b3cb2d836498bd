"""Create correlation and sync-log tables.

Revision ID: 001_initial_sync
Revises:
Create Date: 2026-10-18

Creates four correlation tables (one per entity kind) and three operational
tables:
- synced_organizations / synced_persons / synced_deals / synced_orders
- sync_runs: one row per batch pass or webhook replay
- sync_item_logs: one row per replayed entity
- sync_errors: classified failures awaiting triage

No foreign key constraints between correlation tables; parent links are
maintained by the synchronizers.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial_sync"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CORRELATION_TABLES = (
    "synced_organizations",
    "synced_persons",
    "synced_deals",
    "synced_orders",
)


def _correlation_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("hubspot_id", sa.String(64), nullable=True, unique=True),
        sa.Column("rentman_id", sa.String(64), nullable=True, unique=True),
        sa.Column("display_name", sa.String(500), nullable=True),
        sa.Column("parent_local_id", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    # ── correlation tables ──────────────────────────────────────────────

    op.create_table("synced_organizations", *_correlation_columns())
    op.create_table("synced_persons", *_correlation_columns())
    op.create_table(
        "synced_deals",
        *_correlation_columns(),
        sa.Column("person_local_id", sa.Integer(), nullable=True),
        sa.Column("rentman_request_id", sa.String(64), nullable=True, unique=True),
    )
    op.create_table(
        "synced_orders",
        *_correlation_columns(),
        sa.Column("organization_local_id", sa.Integer(), nullable=True),
        sa.Column("person_local_id", sa.Integer(), nullable=True),
    )

    for table in CORRELATION_TABLES:
        op.create_index(f"ix_{table}_parent_local_id", table, ["parent_local_id"])

    # ── sync_runs table ─────────────────────────────────────────────────

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("sync_type", sa.String(50), nullable=False),
        sa.Column("direction", sa.String(50), nullable=False),
        sa.Column("triggered_by", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("total_items", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("processed_items", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("success_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("error_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("skip_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
    )
    op.create_index("idx_sync_runs_type_started", "sync_runs", ["sync_type", "started_at"])

    # ── sync_item_logs table ────────────────────────────────────────────

    op.create_table(
        "sync_item_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("sync_run_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("hubspot_id", sa.String(64), nullable=True),
        sa.Column("rentman_id", sa.String(64), nullable=True),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(20), nullable=True),
        sa.Column("data_after", sa.JSON(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_sync_item_logs_sync_run_id", "sync_item_logs", ["sync_run_id"])

    # ── sync_errors table ───────────────────────────────────────────────

    op.create_table(
        "sync_errors",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("sync_run_id", sa.Integer(), nullable=True),
        sa.Column("sync_item_log_id", sa.Integer(), nullable=True),
        sa.Column("error_type", sa.String(30), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("source_system", sa.String(20), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("error_code", sa.String(20), nullable=True),
        sa.Column("context", sa.JSON(), nullable=True),
        sa.Column("resolved", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("resolved_by", sa.String(100), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_sync_errors_sync_run_id", "sync_errors", ["sync_run_id"])
    op.create_index("idx_sync_errors_unresolved", "sync_errors", ["resolved", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_sync_errors_unresolved", table_name="sync_errors")
    op.drop_index("ix_sync_errors_sync_run_id", table_name="sync_errors")
    op.drop_table("sync_errors")
    op.drop_index("ix_sync_item_logs_sync_run_id", table_name="sync_item_logs")
    op.drop_table("sync_item_logs")
    op.drop_index("idx_sync_runs_type_started", table_name="sync_runs")
    op.drop_table("sync_runs")
    for table in reversed(CORRELATION_TABLES):
        op.drop_index(f"ix_{table}_parent_local_id", table_name=table)
        op.drop_table(table)
