from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    DISABLED = "disabled"


class BackupType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class EntryStatus(str, Enum):
    PENDING = "pending"
    VALID = "valid"
    CORRUPT = "corrupt"
    DELETED = "deleted"


class Outcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    ABORTED = "aborted"


class RunKind(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"


@dataclass(frozen=True)
class Environment:
    id: int
    name: str
    config: dict
    created_at: datetime


@dataclass(frozen=True)
class Job:
    id: int
    environment_id: int
    volume_name: str
    schedule: str
    retention_policy: dict | None
    config: dict | None
    status: JobStatus
    last_run: datetime | None
    next_run: datetime | None
    created_at: datetime
    deleted_at: datetime | None = None

    @property
    def enabled(self) -> bool:
        return self.status != JobStatus.DISABLED


@dataclass(frozen=True)
class ChainEntry:
    id: int
    volume_name: str
    backup_type: BackupType
    parent_id: int | None
    created_at: datetime
    status: EntryStatus
    checksum_map: dict = field(default_factory=dict)
    size_bytes: int = 0
    metadata: dict | None = None
    transfer_handle: str | None = None
    retention_policy: dict | None = None
    job_id: int | None = None
    run_id: int | None = None
    validated_at: datetime | None = None
    deleted_at: datetime | None = None

    def __post_init__(self):
        if self.backup_type == BackupType.FULL and self.parent_id is not None:
            raise ValueError(f"full entry {self.id} cannot have a parent")
        if self.backup_type == BackupType.INCREMENTAL and self.parent_id is None:
            raise ValueError(f"incremental entry {self.id} requires a parent")

    @property
    def is_full(self) -> bool:
        return self.backup_type == BackupType.FULL


@dataclass(frozen=True)
class RunRecord:
    id: int
    kind: RunKind
    job_id: int | None
    started_at: datetime
    completed_at: datetime | None = None
    outcome: Outcome | None = None
    bytes_moved: int = 0
    error_detail: str | None = None
    chain_entry_id: int | None = None
    target_entry_id: int | None = None
    metadata: dict | None = None
    heartbeat_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.completed_at is None


@dataclass(frozen=True)
class Lease:
    job_id: int
    owner_id: str
    token: str
    expires_at: datetime
    ttl_seconds: int

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["expires_at"] = self.expires_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Lease":
        return cls(
            job_id=int(data["job_id"]),
            owner_id=data["owner_id"],
            token=data["token"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            ttl_seconds=int(data["ttl_seconds"]),
        )

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.ttl_seconds)
