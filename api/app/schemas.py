from datetime import datetime
from typing import Any

from pydantic import BaseModel, field_validator

from worker.app.chain import RetentionPolicy
from worker.app.entities import BackupType, EntryStatus, JobStatus, Outcome, RunKind
from worker.app.schedule import validate_schedule


class EnvironmentIn(BaseModel):
    name: str
    config: dict[str, Any] = {}


class EnvironmentConfig(BaseModel):
    config: dict[str, Any]


class EnvironmentOut(BaseModel):
    id: int
    name: str
    config: dict[str, Any]
    created_at: datetime

    class Config:
        from_attributes = True


class RetentionPolicyIn(BaseModel):
    max_age: str | int | None = None
    min_count: int | None = None
    full_every: int | None = None

    def as_policy(self) -> dict[str, Any]:
        # Normalizes "168h" and 604800 alike to "1W".
        return RetentionPolicy.from_dict(self.model_dump()).to_dict()


class JobIn(BaseModel):
    environment_id: int
    volume_name: str
    schedule: str
    retention_policy: RetentionPolicyIn | None = None
    config: dict[str, Any] | None = None
    enabled: bool = True

    @field_validator("schedule")
    @classmethod
    def check_schedule(cls, value: str) -> str:
        return validate_schedule(value)


class LeaseOut(BaseModel):
    owner_id: str
    expires_at: datetime

    class Config:
        from_attributes = True


class JobOut(BaseModel):
    id: int
    environment_id: int
    volume_name: str
    schedule: str
    retention_policy: dict[str, Any] | None
    config: dict[str, Any] | None
    status: JobStatus
    last_run: datetime | None
    next_run: datetime | None
    created_at: datetime
    deleted_at: datetime | None = None
    lease: LeaseOut | None = None

    class Config:
        from_attributes = True


class ChainEntryOut(BaseModel):
    id: int
    volume_name: str
    backup_type: BackupType
    parent_id: int | None
    created_at: datetime
    status: EntryStatus
    size_bytes: int
    checksum_map: dict[str, str | None]
    metadata: dict[str, Any] | None
    retention_policy: dict[str, Any] | None
    job_id: int | None
    validated_at: datetime | None
    deleted_at: datetime | None

    class Config:
        from_attributes = True


class RunRecordOut(BaseModel):
    id: int
    kind: RunKind
    job_id: int | None
    started_at: datetime
    completed_at: datetime | None
    outcome: Outcome | None
    bytes_moved: int
    error_detail: str | None
    chain_entry_id: int | None
    target_entry_id: int | None
    metadata: dict[str, Any] | None
    heartbeat_at: datetime | None = None

    class Config:
        from_attributes = True


class RestoreRequest(BaseModel):
    destination: str


class QueuedOut(BaseModel):
    status: str = "queued"
    job_id: int | None = None
    entry_id: int | None = None
    task_id: str | None = None
