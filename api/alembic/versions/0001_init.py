"""init

Revision ID: 0001
Revises:
Create Date: 2024-12-28 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "environments",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False, unique=True),
        sa.Column("config", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("environment_id", sa.Integer, sa.ForeignKey("environments.id"), nullable=False),
        sa.Column("volume_name", sa.String(length=255), nullable=False),
        sa.Column("schedule", sa.String(length=100), nullable=False),
        sa.Column("retention_policy", sa.JSON, nullable=True),
        sa.Column("config", sa.JSON, nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("last_run", sa.DateTime, nullable=True),
        sa.Column("next_run", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("deleted_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_jobs_next_run", "jobs", ["next_run"])
    op.create_table(
        "chain_entries",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("volume_name", sa.String(length=255), nullable=False),
        sa.Column("backup_type", sa.String(length=50), nullable=False),
        sa.Column("parent_id", sa.Integer, sa.ForeignKey("chain_entries.id"), nullable=True),
        sa.Column("job_id", sa.Integer, sa.ForeignKey("jobs.id"), nullable=True),
        sa.Column("run_id", sa.Integer, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("size_bytes", sa.BigInteger, nullable=False),
        sa.Column("checksum_map", sa.JSON, nullable=False),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("transfer_handle", sa.String(length=500), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("retention_policy", sa.JSON, nullable=True),
        sa.Column("validated_at", sa.DateTime, nullable=True),
        sa.Column("deleted_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_chain_entries_volume_name", "chain_entries", ["volume_name"])
    op.create_index("ix_chain_entries_parent_id", "chain_entries", ["parent_id"])
    op.create_table(
        "run_records",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("job_id", sa.Integer, sa.ForeignKey("jobs.id"), nullable=True),
        sa.Column("started_at", sa.DateTime, nullable=False),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.Column("outcome", sa.String(length=50), nullable=True),
        sa.Column("bytes_moved", sa.BigInteger, nullable=False),
        sa.Column("error_detail", sa.Text, nullable=True),
        sa.Column("chain_entry_id", sa.Integer, sa.ForeignKey("chain_entries.id"), nullable=True),
        sa.Column("target_entry_id", sa.Integer, sa.ForeignKey("chain_entries.id"), nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("heartbeat_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_run_records_job_id", "run_records", ["job_id"])
    op.create_table(
        "job_leases",
        sa.Column("job_id", sa.Integer, sa.ForeignKey("jobs.id"), primary_key=True),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("token", sa.String(length=64), nullable=False),
        sa.Column("ttl_seconds", sa.Integer, nullable=False),
        sa.Column("acquired_at", sa.DateTime, nullable=False),
        sa.Column("expires_at", sa.DateTime, nullable=False),
    )
    op.create_table(
        "maintenance_locks",
        sa.Column("name", sa.String(length=100), primary_key=True),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("token", sa.String(length=64), nullable=False),
        sa.Column("acquired_at", sa.DateTime, nullable=False),
        sa.Column("expires_at", sa.DateTime, nullable=False),
    )


def downgrade() -> None:
    op.drop_table("maintenance_locks")
    op.drop_table("job_leases")
    op.drop_index("ix_run_records_job_id", table_name="run_records")
    op.drop_table("run_records")
    op.drop_index("ix_chain_entries_parent_id", table_name="chain_entries")
    op.drop_index("ix_chain_entries_volume_name", table_name="chain_entries")
    op.drop_table("chain_entries")
    op.drop_index("ix_jobs_next_run", table_name="jobs")
    op.drop_table("jobs")
    op.drop_table("environments")
