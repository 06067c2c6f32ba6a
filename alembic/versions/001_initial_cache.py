"""Instances, execution cache and sync status.

Creates:
- instances: remote automation-engine deployments reached over SSH
- execution_logs: cached remote executions keyed by (instance_id, execution_id)
- sync_status: per-instance sync cursor and last outcome

Trigram indexes on the JSONB payloads back free-text search.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")

    op.create_table(
        "instances",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("ssh_host", sa.String(255), nullable=False),
        sa.Column("ssh_port", sa.Integer(), nullable=False, server_default="22"),
        sa.Column("ssh_user", sa.String(255), nullable=False),
        sa.Column("ssh_private_key_path", sa.Text(), nullable=False),
        sa.Column("db_host", sa.String(255), nullable=False, server_default="127.0.0.1"),
        sa.Column("db_port", sa.Integer(), nullable=False, server_default="5432"),
        sa.Column("db_name", sa.String(255), nullable=False),
        sa.Column("db_user", sa.String(255), nullable=False),
        sa.Column("db_password_encrypted", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "base_url",
            sa.String(500),
            nullable=False,
            server_default="http://localhost:5678",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "execution_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "instance_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("instances.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("execution_id", sa.Text(), nullable=False),
        sa.Column("workflow_id", sa.Text(), nullable=False),
        sa.Column("workflow_name", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("finished", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("mode", sa.Text(), nullable=True),
        sa.Column("node_count", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("execution_data", postgresql.JSONB(), nullable=True),
        sa.Column("workflow_data", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("instance_id", "execution_id", name="uq_instance_execution"),
    )
    op.create_index("idx_execution_logs_status", "execution_logs", ["status"])
    op.create_index("idx_execution_logs_workflow_name", "execution_logs", ["workflow_name"])
    op.create_index("idx_execution_logs_created_at", "execution_logs", ["created_at"])
    op.create_index(
        "idx_execution_logs_instance_created",
        "execution_logs",
        ["instance_id", "created_at"],
    )
    op.execute(
        "CREATE INDEX idx_execution_logs_execution_data_trgm "
        "ON execution_logs USING gin ((execution_data::text) gin_trgm_ops)"
    )
    op.execute(
        "CREATE INDEX idx_execution_logs_workflow_data_trgm "
        "ON execution_logs USING gin ((workflow_data::text) gin_trgm_ops)"
    )

    op.create_table(
        "sync_status",
        sa.Column(
            "instance_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("instances.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_success", sa.Boolean(), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("last_sync_record_count", sa.Integer(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )


def downgrade() -> None:
    op.drop_table("sync_status")
    op.execute("DROP INDEX IF EXISTS idx_execution_logs_workflow_data_trgm")
    op.execute("DROP INDEX IF EXISTS idx_execution_logs_execution_data_trgm")
    op.drop_index("idx_execution_logs_instance_created", table_name="execution_logs")
    op.drop_index("idx_execution_logs_created_at", table_name="execution_logs")
    op.drop_index("idx_execution_logs_workflow_name", table_name="execution_logs")
    op.drop_index("idx_execution_logs_status", table_name="execution_logs")
    op.drop_table("execution_logs")
    op.drop_table("instances")
