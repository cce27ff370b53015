from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

metadata = MetaData()

environments = Table(
    "environments",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("config", JSON, nullable=False),
    Column("created_at", DateTime, nullable=False),
)

jobs = Table(
    "jobs",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("environment_id", Integer, ForeignKey("environments.id"), nullable=False),
    Column("volume_name", String(255), nullable=False),
    Column("schedule", String(100), nullable=False),
    Column("retention_policy", JSON, nullable=True),
    Column("config", JSON, nullable=True),
    Column("status", String(50), nullable=False),
    Column("last_run", DateTime, nullable=True),
    Column("next_run", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("deleted_at", DateTime, nullable=True),
    Index("ix_jobs_next_run", "next_run"),
)

chain_entries = Table(
    "chain_entries",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("volume_name", String(255), nullable=False),
    Column("backup_type", String(50), nullable=False),
    Column("parent_id", Integer, ForeignKey("chain_entries.id"), nullable=True),
    Column("job_id", Integer, ForeignKey("jobs.id"), nullable=True),
    Column("run_id", Integer, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("size_bytes", BigInteger, nullable=False, default=0),
    Column("checksum_map", JSON, nullable=False),
    Column("metadata", JSON, nullable=True),
    Column("transfer_handle", String(500), nullable=True),
    Column("status", String(50), nullable=False),
    Column("retention_policy", JSON, nullable=True),
    Column("validated_at", DateTime, nullable=True),
    Column("deleted_at", DateTime, nullable=True),
    Index("ix_chain_entries_volume_name", "volume_name"),
    Index("ix_chain_entries_parent_id", "parent_id"),
)

run_records = Table(
    "run_records",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("kind", String(50), nullable=False),
    Column("job_id", Integer, ForeignKey("jobs.id"), nullable=True),
    Column("started_at", DateTime, nullable=False),
    Column("completed_at", DateTime, nullable=True),
    Column("outcome", String(50), nullable=True),
    Column("bytes_moved", BigInteger, nullable=False, default=0),
    Column("error_detail", Text, nullable=True),
    Column("chain_entry_id", Integer, ForeignKey("chain_entries.id"), nullable=True),
    Column("target_entry_id", Integer, ForeignKey("chain_entries.id"), nullable=True),
    Column("metadata", JSON, nullable=True),
    Column("heartbeat_at", DateTime, nullable=True),
    Index("ix_run_records_job_id", "job_id"),
)

job_leases = Table(
    "job_leases",
    metadata,
    Column("job_id", Integer, ForeignKey("jobs.id"), primary_key=True),
    Column("owner_id", String(255), nullable=False),
    Column("token", String(64), nullable=False),
    Column("ttl_seconds", Integer, nullable=False),
    Column("acquired_at", DateTime, nullable=False),
    Column("expires_at", DateTime, nullable=False),
)

maintenance_locks = Table(
    "maintenance_locks",
    metadata,
    Column("name", String(100), primary_key=True),
    Column("owner_id", String(255), nullable=False),
    Column("token", String(64), nullable=False),
    Column("acquired_at", DateTime, nullable=False),
    Column("expires_at", DateTime, nullable=False),
)
