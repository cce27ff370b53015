import uuid
from datetime import timedelta
from typing import Iterable

from sqlalchemy import func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError as DBIntegrityError

from .chain import RetentionPolicy, ancestors, causal_order
from .entities import (
    BackupType,
    ChainEntry,
    EntryStatus,
    Environment,
    Job,
    JobStatus,
    Lease,
    Outcome,
    RunKind,
    RunRecord,
    utcnow,
)
from .errors import BrokenChainError, ConflictError, LeaseExpiredError, NotFoundError
from .models import chain_entries, environments, job_leases, jobs, maintenance_locks, run_records
from .schedule import next_run_after, validate_schedule

BLOB_COLLECTION = "blob_collection"


def _environment(row) -> Environment:
    data = row._mapping
    return Environment(
        id=data["id"],
        name=data["name"],
        config=data["config"] or {},
        created_at=data["created_at"],
    )


def _job(row) -> Job:
    data = row._mapping
    return Job(
        id=data["id"],
        environment_id=data["environment_id"],
        volume_name=data["volume_name"],
        schedule=data["schedule"],
        retention_policy=data["retention_policy"],
        config=data["config"],
        status=JobStatus(data["status"]),
        last_run=data["last_run"],
        next_run=data["next_run"],
        created_at=data["created_at"],
        deleted_at=data["deleted_at"],
    )


def _entry(row) -> ChainEntry:
    data = row._mapping
    return ChainEntry(
        id=data["id"],
        volume_name=data["volume_name"],
        backup_type=BackupType(data["backup_type"]),
        parent_id=data["parent_id"],
        created_at=data["created_at"],
        status=EntryStatus(data["status"]),
        checksum_map=data["checksum_map"] or {},
        size_bytes=data["size_bytes"] or 0,
        metadata=data["metadata"],
        transfer_handle=data["transfer_handle"],
        retention_policy=data["retention_policy"],
        job_id=data["job_id"],
        run_id=data["run_id"],
        validated_at=data["validated_at"],
        deleted_at=data["deleted_at"],
    )


def _run(row) -> RunRecord:
    data = row._mapping
    return RunRecord(
        id=data["id"],
        kind=RunKind(data["kind"]),
        job_id=data["job_id"],
        started_at=data["started_at"],
        completed_at=data["completed_at"],
        outcome=Outcome(data["outcome"]) if data["outcome"] else None,
        bytes_moved=data["bytes_moved"] or 0,
        error_detail=data["error_detail"],
        chain_entry_id=data["chain_entry_id"],
        target_entry_id=data["target_entry_id"],
        metadata=data["metadata"],
        heartbeat_at=data["heartbeat_at"],
    )


class MetadataStore:
    def __init__(self, session_factory, clock=utcnow):
        self._session_factory = session_factory
        self.clock = clock

    def session(self):
        return self._session_factory()

    # Environments

    def create_environment(self, name: str, config: dict | None = None) -> Environment:
        now = self.clock()
        with self.session() as session:
            try:
                result = session.execute(
                    insert(environments).values(name=name, config=config or {}, created_at=now)
                )
                session.commit()
            except DBIntegrityError as exc:
                raise ConflictError(f"environment {name!r} already exists") from exc
        return Environment(id=result.inserted_primary_key[0], name=name, config=config or {}, created_at=now)

    def get_environment(self, environment_id: int) -> Environment:
        with self.session() as session:
            return self._get_environment(session, environment_id)

    def _get_environment(self, session, environment_id: int) -> Environment:
        row = session.execute(select(environments).where(environments.c.id == environment_id)).first()
        if row is None:
            raise NotFoundError(f"environment {environment_id} not found")
        return _environment(row)

    def list_environments(self) -> list[Environment]:
        with self.session() as session:
            rows = session.execute(select(environments).order_by(environments.c.id)).all()
        return [_environment(row) for row in rows]

    def update_environment_config(self, environment_id: int, config: dict) -> Environment:
        with self.session() as session:
            result = session.execute(
                update(environments).where(environments.c.id == environment_id).values(config=config)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"environment {environment_id} not found")
            environment = self._get_environment(session, environment_id)
            session.commit()
        return environment

    def delete_environment(self, environment_id: int) -> None:
        with self.session() as session:
            self._get_environment(session, environment_id)
            active = session.execute(
                select(func.count())
                .select_from(jobs)
                .where(jobs.c.environment_id == environment_id, jobs.c.deleted_at.is_(None))
            ).scalar_one()
            if active:
                raise ConflictError(f"environment {environment_id} still owns {active} job(s)")
            # Deleted jobs keep their history, so they keep the row too.
            referenced = session.execute(
                select(func.count()).select_from(jobs).where(jobs.c.environment_id == environment_id)
            ).scalar_one()
            if referenced:
                raise ConflictError(f"environment {environment_id} is referenced by job history")
            session.execute(environments.delete().where(environments.c.id == environment_id))
            session.commit()

    # Jobs

    def create_job(
        self,
        environment_id: int,
        volume_name: str,
        schedule: str,
        retention_policy: dict | None = None,
        config: dict | None = None,
        enabled: bool = True,
    ) -> Job:
        schedule = validate_schedule(schedule)
        RetentionPolicy.from_dict(retention_policy)
        now = self.clock()
        next_run = next_run_after(schedule, now, anchor=now) if enabled else None
        status = JobStatus.IDLE if enabled else JobStatus.DISABLED
        with self.session() as session:
            self._get_environment(session, environment_id)
            result = session.execute(
                insert(jobs).values(
                    environment_id=environment_id,
                    volume_name=volume_name,
                    schedule=schedule,
                    retention_policy=retention_policy,
                    config=config,
                    status=status.value,
                    next_run=next_run,
                    created_at=now,
                )
            )
            job = self._get_job(session, result.inserted_primary_key[0])
            session.commit()
        return job

    def get_job(self, job_id: int) -> Job:
        with self.session() as session:
            return self._get_job(session, job_id)

    def _get_job(self, session, job_id: int) -> Job:
        row = session.execute(select(jobs).where(jobs.c.id == job_id)).first()
        if row is None:
            raise NotFoundError(f"job {job_id} not found")
        return _job(row)

    def list_jobs(self, environment_id: int | None = None, include_deleted: bool = False) -> list[Job]:
        query = select(jobs).order_by(jobs.c.id)
        if environment_id is not None:
            query = query.where(jobs.c.environment_id == environment_id)
        if not include_deleted:
            query = query.where(jobs.c.deleted_at.is_(None))
        with self.session() as session:
            rows = session.execute(query).all()
        return [_job(row) for row in rows]

    def due_jobs(self, now) -> list[Job]:
        query = (
            select(jobs)
            .where(
                jobs.c.status != JobStatus.DISABLED.value,
                jobs.c.deleted_at.is_(None),
                jobs.c.next_run.is_not(None),
                jobs.c.next_run <= now,
            )
            .order_by(jobs.c.next_run, jobs.c.id)
        )
        with self.session() as session:
            rows = session.execute(query).all()
        return [_job(row) for row in rows]

    def update_retention_policy(self, job_id: int, policy: dict | None) -> Job:
        # Existing entries keep the policy snapshot they were created under.
        RetentionPolicy.from_dict(policy)
        return self._update_job(job_id, retention_policy=policy)

    def set_job_enabled(self, job_id: int, enabled: bool) -> Job:
        with self.session() as session:
            job = self._get_job(session, job_id)
            if job.deleted_at is not None:
                raise ConflictError(f"job {job_id} is deleted")
            if enabled:
                if job.status != JobStatus.DISABLED:
                    return job
                now = self.clock()
                values = {
                    "status": JobStatus.IDLE.value,
                    "next_run": next_run_after(job.schedule, now, anchor=job.created_at),
                }
            else:
                values = {"status": JobStatus.DISABLED.value, "next_run": None}
            session.execute(update(jobs).where(jobs.c.id == job_id).values(**values))
            job = self._get_job(session, job_id)
            session.commit()
        return job

    def delete_job(self, job_id: int) -> Job:
        with self.session() as session:
            self._get_job(session, job_id)
            session.execute(
                update(jobs)
                .where(jobs.c.id == job_id, jobs.c.deleted_at.is_(None))
                .values(status=JobStatus.DISABLED.value, next_run=None, deleted_at=self.clock())
            )
            job = self._get_job(session, job_id)
            session.commit()
        return job

    def mark_job_queued(self, job_id: int, next_run=None) -> Job:
        values = {"status": JobStatus.QUEUED.value}
        if next_run is not None:
            values["next_run"] = next_run
        with self.session() as session:
            result = session.execute(
                update(jobs)
                .where(
                    jobs.c.id == job_id,
                    jobs.c.status != JobStatus.DISABLED.value,
                    jobs.c.deleted_at.is_(None),
                )
                .values(**values)
            )
            if result.rowcount == 0:
                self._get_job(session, job_id)
                raise ConflictError(f"job {job_id} is disabled")
            job = self._get_job(session, job_id)
            session.commit()
        return job

    def reset_job(self, job_id: int, next_run=None) -> Job:
        with self.session() as session:
            self._release_job(session, job_id, last_run=None)
            if next_run is not None:
                session.execute(
                    update(jobs)
                    .where(jobs.c.id == job_id, jobs.c.status != JobStatus.DISABLED.value)
                    .values(next_run=next_run)
                )
            job = self._get_job(session, job_id)
            session.commit()
        return job

    def _update_job(self, job_id: int, **values) -> Job:
        with self.session() as session:
            result = session.execute(update(jobs).where(jobs.c.id == job_id).values(**values))
            if result.rowcount == 0:
                raise NotFoundError(f"job {job_id} not found")
            job = self._get_job(session, job_id)
            session.commit()
        return job

    def _release_job(self, session, job_id: int, last_run) -> None:
        values = {"status": JobStatus.IDLE.value}
        if last_run is not None:
            values["last_run"] = last_run
        session.execute(
            update(jobs).where(jobs.c.id == job_id, jobs.c.status != JobStatus.DISABLED.value).values(**values)
        )
        if last_run is not None:
            session.execute(
                update(jobs).where(jobs.c.id == job_id, jobs.c.status == JobStatus.DISABLED.value).values(last_run=last_run)
            )

    # Run records

    def start_run(
        self,
        kind: RunKind,
        job_id: int | None = None,
        target_entry_id: int | None = None,
        metadata: dict | None = None,
    ) -> RunRecord:
        now = self.clock()
        with self.session() as session:
            if job_id is not None:
                self._get_job(session, job_id)
            if kind == RunKind.BACKUP:
                self._check_no_blob_collection(session, now)
            if target_entry_id is not None:
                self._get_entry(session, target_entry_id)
            result = session.execute(
                insert(run_records).values(
                    kind=RunKind(kind).value,
                    job_id=job_id,
                    started_at=now,
                    bytes_moved=0,
                    target_entry_id=target_entry_id,
                    metadata=metadata,
                    heartbeat_at=now,
                )
            )
            if kind == RunKind.BACKUP and job_id is not None:
                session.execute(
                    update(jobs)
                    .where(jobs.c.id == job_id, jobs.c.status != JobStatus.DISABLED.value)
                    .values(status=JobStatus.RUNNING.value)
                )
            run = self._get_run(session, result.inserted_primary_key[0])
            session.commit()
        return run

    def get_run(self, run_id: int) -> RunRecord:
        with self.session() as session:
            return self._get_run(session, run_id)

    def _get_run(self, session, run_id: int) -> RunRecord:
        row = session.execute(select(run_records).where(run_records.c.id == run_id)).first()
        if row is None:
            raise NotFoundError(f"run {run_id} not found")
        return _run(row)

    def list_runs(self, job_id: int | None = None, kind: RunKind | None = None, limit: int = 100) -> list[RunRecord]:
        query = select(run_records).order_by(run_records.c.started_at.desc(), run_records.c.id.desc()).limit(limit)
        if job_id is not None:
            query = query.where(run_records.c.job_id == job_id)
        if kind is not None:
            query = query.where(run_records.c.kind == RunKind(kind).value)
        with self.session() as session:
            rows = session.execute(query).all()
        return [_run(row) for row in rows]

    def open_runs(self) -> list[RunRecord]:
        with self.session() as session:
            rows = session.execute(
                select(run_records).where(run_records.c.completed_at.is_(None)).order_by(run_records.c.id)
            ).all()
        return [_run(row) for row in rows]

    def update_run_metadata(self, run_id: int, metadata: dict) -> RunRecord:
        with self.session() as session:
            self._update_open_run(session, run_id, metadata=metadata, heartbeat_at=self.clock())
            run = self._get_run(session, run_id)
            session.commit()
        return run

    def complete_run(
        self,
        run_id: int,
        outcome: Outcome,
        bytes_moved: int = 0,
        error_detail: str | None = None,
        metadata: dict | None = None,
        release_job: bool = False,
    ) -> RunRecord:
        """Write the terminal state of a run.

        ``release_job`` also returns the run's job to ``idle`` and stamps its
        last-run; leave it off when the worker no longer owns the job lease.
        """
        with self.session() as session:
            run = self._close_run(session, run_id, outcome, bytes_moved, error_detail, metadata)
            if release_job and run.job_id is not None:
                self._release_job(session, run.job_id, last_run=run.started_at)
            session.commit()
        return run

    def abort_open_runs(self, job_id: int, reason: str) -> int:
        """Close backup runs of a job whose worker died without a terminal record."""
        with self.session() as session:
            result = session.execute(
                update(run_records)
                .where(
                    run_records.c.job_id == job_id,
                    run_records.c.kind == RunKind.BACKUP.value,
                    run_records.c.completed_at.is_(None),
                )
                .values(outcome=Outcome.ABORTED.value, completed_at=self.clock(), error_detail=reason)
            )
            aborted = result.rowcount
            session.commit()
        return aborted

    def touch_run(self, run_id: int) -> None:
        with self.session() as session:
            self._update_open_run(session, run_id, heartbeat_at=self.clock())
            session.commit()

    def abort_stale_runs(self, stale_after: timedelta) -> list[int]:
        """Close open runs that stopped reporting progress ``stale_after`` ago.

        A backup run is only stale once its job holds no live lease either;
        the job then goes back to ``idle``.
        """
        now = self.clock()
        cutoff = now - stale_after
        live_leases = select(job_leases.c.job_id).where(job_leases.c.expires_at > now)
        last_seen = func.coalesce(run_records.c.heartbeat_at, run_records.c.started_at)
        with self.session() as session:
            rows = session.execute(
                select(run_records.c.id, run_records.c.kind, run_records.c.job_id).where(
                    run_records.c.completed_at.is_(None),
                    last_seen < cutoff,
                    or_(
                        run_records.c.kind != RunKind.BACKUP.value,
                        run_records.c.job_id.is_(None),
                        run_records.c.job_id.not_in(live_leases),
                    ),
                )
            ).all()
            stale = [row.id for row in rows]
            if not stale:
                return []
            session.execute(
                update(run_records)
                .where(run_records.c.id.in_(stale), run_records.c.completed_at.is_(None))
                .values(
                    outcome=Outcome.ABORTED.value,
                    completed_at=now,
                    error_detail=f"no progress reported since {cutoff.isoformat()}",
                )
            )
            job_ids = {row.job_id for row in rows if row.kind == RunKind.BACKUP.value and row.job_id is not None}
            if job_ids:
                session.execute(
                    update(jobs)
                    .where(
                        jobs.c.id.in_(job_ids),
                        jobs.c.status.in_([JobStatus.RUNNING.value, JobStatus.QUEUED.value]),
                        jobs.c.id.not_in(live_leases),
                    )
                    .values(status=JobStatus.IDLE.value)
                )
            session.commit()
        return stale

    # Blob collection lock

    def begin_blob_collection(self, owner_id: str, ttl: timedelta) -> str | None:
        """Take the blob collection lock and return its token.

        Returns ``None`` while a backup run is open or another collector
        holds the lock. Backup runs cannot start while the lock is live.
        """
        now = self.clock()
        token = uuid.uuid4().hex
        values = {"owner_id": owner_id, "token": token, "acquired_at": now, "expires_at": now + ttl}
        with self.session() as session:
            result = session.execute(
                update(maintenance_locks)
                .where(maintenance_locks.c.name == BLOB_COLLECTION, maintenance_locks.c.expires_at <= now)
                .values(**values)
            )
            if result.rowcount == 0:
                try:
                    session.execute(insert(maintenance_locks).values(name=BLOB_COLLECTION, **values))
                except DBIntegrityError:
                    session.rollback()
                    return None
            # Checked after the lock row is written so a backup starting
            # concurrently either sees the lock or is seen here.
            open_backup = session.execute(
                select(run_records.c.id)
                .where(run_records.c.kind == RunKind.BACKUP.value, run_records.c.completed_at.is_(None))
                .limit(1)
            ).first()
            if open_backup is not None:
                session.rollback()
                return None
            session.commit()
        return token

    def renew_blob_collection(self, token: str, ttl: timedelta) -> None:
        now = self.clock()
        with self.session() as session:
            result = session.execute(
                update(maintenance_locks)
                .where(
                    maintenance_locks.c.name == BLOB_COLLECTION,
                    maintenance_locks.c.token == token,
                    maintenance_locks.c.expires_at > now,
                )
                .values(expires_at=now + ttl)
            )
            if result.rowcount == 0:
                raise ConflictError("blob collection lock expired")
            session.commit()

    def end_blob_collection(self, token: str) -> None:
        # The row stays so backup starts always have a row to lock.
        with self.session() as session:
            session.execute(
                update(maintenance_locks)
                .where(maintenance_locks.c.name == BLOB_COLLECTION, maintenance_locks.c.token == token)
                .values(expires_at=self.clock())
            )
            session.commit()

    def blob_collection_active(self) -> bool:
        with self.session() as session:
            return self._blob_collection_holder(session, self.clock()) is not None

    def _check_no_blob_collection(self, session, now) -> None:
        holder = self._blob_collection_holder(session, now)
        if holder is not None:
            raise ConflictError(f"blob collection by {holder} in progress")

    def _blob_collection_holder(self, session, now) -> str | None:
        row = session.execute(
            select(maintenance_locks).where(maintenance_locks.c.name == BLOB_COLLECTION).with_for_update()
        ).first()
        if row is None or row.expires_at <= now:
            return None
        return row.owner_id

    def _update_open_run(self, session, run_id: int, **values) -> None:
        result = session.execute(
            update(run_records)
            .where(run_records.c.id == run_id, run_records.c.completed_at.is_(None))
            .values(**values)
        )
        if result.rowcount == 0:
            self._get_run(session, run_id)
            raise ConflictError(f"run {run_id} is already complete")

    def _close_run(self, session, run_id, outcome, bytes_moved, error_detail, metadata) -> RunRecord:
        values = {
            "outcome": Outcome(outcome).value,
            "completed_at": self.clock(),
            "bytes_moved": bytes_moved,
            "error_detail": error_detail,
        }
        if metadata is not None:
            values["metadata"] = metadata
        self._update_open_run(session, run_id, **values)
        return self._get_run(session, run_id)

    # Chain entries

    def create_pending_entry(
        self,
        run_id: int,
        volume_name: str,
        backup_type: BackupType,
        parent_id: int | None,
        checksum_map: dict,
        size_bytes: int,
        transfer_handle: str | None = None,
        retention_policy: dict | None = None,
        metadata: dict | None = None,
        job_id: int | None = None,
    ) -> ChainEntry:
        backup_type = BackupType(backup_type)
        if (backup_type == BackupType.INCREMENTAL) != (parent_id is not None):
            raise ValueError("parent id is required for incremental entries and only for them")
        now = self.clock()
        with self.session() as session:
            if parent_id is not None:
                parent = self._get_entry(session, parent_id)
                if parent.status != EntryStatus.VALID:
                    raise BrokenChainError(f"parent entry {parent_id} is {parent.status.value}")
                if parent.volume_name != volume_name:
                    raise BrokenChainError(f"parent entry {parent_id} belongs to volume {parent.volume_name}")
            if self._get_run(session, run_id).completed_at is not None:
                raise ConflictError(f"run {run_id} is already complete")
            result = session.execute(
                insert(chain_entries).values(
                    volume_name=volume_name,
                    backup_type=backup_type.value,
                    parent_id=parent_id,
                    job_id=job_id,
                    run_id=run_id,
                    created_at=now,
                    size_bytes=size_bytes,
                    checksum_map=checksum_map,
                    metadata=metadata,
                    transfer_handle=transfer_handle,
                    status=EntryStatus.PENDING.value,
                    retention_policy=retention_policy,
                )
            )
            entry_id = result.inserted_primary_key[0]
            self._update_open_run(session, run_id, chain_entry_id=entry_id)
            entry = self._get_entry(session, entry_id)
            session.commit()
        return entry

    def get_entry(self, entry_id: int) -> ChainEntry:
        with self.session() as session:
            return self._get_entry(session, entry_id)

    def _get_entry(self, session, entry_id: int) -> ChainEntry:
        row = session.execute(select(chain_entries).where(chain_entries.c.id == entry_id)).first()
        if row is None:
            raise NotFoundError(f"chain entry {entry_id} not found")
        return _entry(row)

    def list_entries(self, volume_name: str, include_deleted: bool = True) -> list[ChainEntry]:
        """Entries of one volume, parents before children."""
        with self.session() as session:
            entries = self._volume_entries(session, volume_name)
        if not include_deleted:
            entries = [entry for entry in entries if entry.status != EntryStatus.DELETED]
        return causal_order(entries)

    def _volume_entries(self, session, volume_name: str) -> list[ChainEntry]:
        rows = session.execute(
            select(chain_entries).where(chain_entries.c.volume_name == volume_name).order_by(chain_entries.c.id)
        ).all()
        return [_entry(row) for row in rows]

    def list_volumes(self) -> list[str]:
        with self.session() as session:
            rows = session.execute(
                select(chain_entries.c.volume_name).distinct().order_by(chain_entries.c.volume_name)
            ).all()
        return [row[0] for row in rows]

    def latest_valid_entry(self, volume_name: str) -> ChainEntry | None:
        with self.session() as session:
            row = session.execute(
                select(chain_entries)
                .where(
                    chain_entries.c.volume_name == volume_name,
                    chain_entries.c.status == EntryStatus.VALID.value,
                )
                .order_by(chain_entries.c.created_at.desc(), chain_entries.c.id.desc())
                .limit(1)
            ).first()
        return _entry(row) if row is not None else None

    def mark_corrupt(self, entry_id: int, reason: str | None = None) -> ChainEntry:
        with self.session() as session:
            entry = self._get_entry(session, entry_id)
            if entry.status == EntryStatus.DELETED:
                raise ConflictError(f"chain entry {entry_id} is deleted")
            metadata = dict(entry.metadata or {})
            if reason:
                metadata["corruption"] = reason
            session.execute(
                update(chain_entries)
                .where(chain_entries.c.id == entry_id)
                .values(status=EntryStatus.CORRUPT.value, metadata=metadata)
            )
            entry = self._get_entry(session, entry_id)
            session.commit()
        return entry

    def complete_backup(
        self,
        run_id: int,
        entry_id: int,
        lease: Lease,
        outcome: Outcome = Outcome.SUCCESS,
        bytes_moved: int = 0,
        error_detail: str | None = None,
        metadata: dict | None = None,
    ) -> tuple[ChainEntry, RunRecord]:
        """Validate a pending entry and close its run in one transaction.

        Raises ``LeaseExpiredError`` if the lease is no longer live,
        ``ConflictError`` if the entry is no longer pending or its parent
        already gained another valid successor, ``BrokenChainError`` if the
        parent stopped being valid. Nothing is written in those cases.
        """
        now = self.clock()
        with self.session() as session:
            self._assert_lease(session, lease, now)
            entry = self._get_entry(session, entry_id)
            if entry.parent_id is not None:
                parent = self._get_entry(session, entry.parent_id)
                if parent.status != EntryStatus.VALID:
                    raise BrokenChainError(f"parent entry {parent.id} is {parent.status.value}")
                sibling = session.execute(
                    select(chain_entries.c.id).where(
                        chain_entries.c.parent_id == entry.parent_id,
                        chain_entries.c.status == EntryStatus.VALID.value,
                        chain_entries.c.id != entry_id,
                    )
                ).first()
                if sibling is not None:
                    raise ConflictError(f"entry {sibling[0]} already succeeds parent {parent.id}")
            result = session.execute(
                update(chain_entries)
                .where(chain_entries.c.id == entry_id, chain_entries.c.status == EntryStatus.PENDING.value)
                .values(status=EntryStatus.VALID.value, validated_at=now)
            )
            if result.rowcount == 0:
                raise ConflictError(f"chain entry {entry_id} is {entry.status.value}, not pending")
            run = self._close_run(session, run_id, outcome, bytes_moved, error_detail, metadata)
            if run.job_id is not None:
                self._release_job(session, run.job_id, last_run=run.started_at)
            entry = self._get_entry(session, entry_id)
            session.commit()
        return entry, run

    def _assert_lease(self, session, lease: Lease, now) -> None:
        row = session.execute(
            select(job_leases.c.job_id)
            .where(
                job_leases.c.job_id == lease.job_id,
                job_leases.c.token == lease.token,
                job_leases.c.expires_at > now,
            )
            .with_for_update()
        ).first()
        if row is None:
            raise LeaseExpiredError(f"lease on job {lease.job_id} held by {lease.owner_id} is no longer live")

    def mark_deleted(self, entry_id: int) -> ChainEntry:
        """Tombstone an entry after rechecking nothing still depends on it."""
        with self.session() as session:
            entry = self._get_entry(session, entry_id)
            if entry.status == EntryStatus.DELETED:
                raise ConflictError(f"chain entry {entry_id} is already deleted")
            child = session.execute(
                select(chain_entries.c.id).where(
                    chain_entries.c.parent_id == entry_id,
                    chain_entries.c.status != EntryStatus.DELETED.value,
                )
            ).first()
            if child is not None:
                raise ConflictError(f"chain entry {entry_id} still has live child {child[0]}")
            if entry_id in self._in_use(session, entry.volume_name):
                raise ConflictError(f"chain entry {entry_id} is in use by an open run")
            session.execute(
                update(chain_entries)
                .where(chain_entries.c.id == entry_id, chain_entries.c.status != EntryStatus.DELETED.value)
                .values(status=EntryStatus.DELETED.value, deleted_at=self.clock())
            )
            entry = self._get_entry(session, entry_id)
            session.commit()
        return entry

    def in_use_entry_ids(self, volume_name: str) -> set[int]:
        """Entries an open run produces, builds on or restores, with their ancestors."""
        with self.session() as session:
            return self._in_use(session, volume_name)

    def _in_use(self, session, volume_name: str) -> set[int]:
        entries = {entry.id: entry for entry in self._volume_entries(session, volume_name)}
        rows = session.execute(select(run_records).where(run_records.c.completed_at.is_(None))).all()
        roots = set()
        for run in (_run(row) for row in rows):
            roots.update(_run_entry_refs(run))
        in_use = set()
        for entry_id in roots:
            if entry_id in entries:
                in_use.update(ancestors(entries, entry_id))
        return in_use

    def referenced_digests(self) -> set[str]:
        with self.session() as session:
            rows = session.execute(
                select(chain_entries.c.checksum_map).where(chain_entries.c.status != EntryStatus.DELETED.value)
            ).all()
        digests = set()
        for (checksum_map,) in rows:
            digests.update(digest for digest in (checksum_map or {}).values() if digest)
        return digests


def _run_entry_refs(run: RunRecord) -> Iterable[int]:
    if run.chain_entry_id is not None:
        yield run.chain_entry_id
    if run.target_entry_id is not None:
        yield run.target_entry_id
    base = (run.metadata or {}).get("parent_id")
    if base is not None:
        yield int(base)
