import logging

from .chain import RetentionPolicy, materialize, resolve_path
from .entities import BackupType, ChainEntry, Job, Lease, Outcome, RunKind, RunRecord
from .errors import (
    BrokenChainError,
    ConflictError,
    IntegrityError,
    LeaseExpiredError,
    TransferError,
)
from .locks import Heartbeat, LockManager
from .logs import log_event, logger
from .store import MetadataStore
from .transfer import ContentTransfer, Snapshot, sha256_hex


class BackupWorker:
    def __init__(
        self,
        store: MetadataStore,
        locks: LockManager,
        transfer: ContentTransfer,
        heartbeat_interval: float | None = None,
        transfer_attempts: int = 3,
    ):
        self._store = store
        self._locks = locks
        self._transfer = transfer
        self._heartbeat_interval = heartbeat_interval
        self._transfer_attempts = max(1, transfer_attempts)

    def run(self, job_id: int, lease: Lease) -> RunRecord:
        """Back up the job's volume under ``lease`` and return the run record.

        Every outcome other than success or partial writes a terminal run
        record first and then re-raises the error.
        """
        job = self._store.get_job(job_id)
        try:
            run = self._store.start_run(RunKind.BACKUP, job_id=job.id)
        except ConflictError as exc:
            # No run was recorded; hand the slot back so the next tick retries.
            log_event("backup_deferred", logging.WARNING, job_id=job.id, reason=exc)
            self._locks.release(lease)
            self._store.reset_job(job.id, next_run=self._store.clock())
            raise
        log_event("backup_started", job_id=job.id, run_id=run.id, volume=job.volume_name)
        try:
            lease = self._locks.renew(lease)
            backup_type, parent, base = self._plan(job)
            run_metadata = {"backup_type": backup_type.value, "parent_id": parent.id if parent else None}
            self._store.update_run_metadata(run.id, run_metadata)

            with Heartbeat(self._locks, lease, self._heartbeat_interval) as heartbeat:
                snapshot = self._snapshot(job.volume_name, base, heartbeat)
                heartbeat.check()
                entry = self._store.create_pending_entry(
                    run_id=run.id,
                    volume_name=job.volume_name,
                    backup_type=backup_type,
                    parent_id=parent.id if parent else None,
                    checksum_map=snapshot.checksums,
                    size_bytes=snapshot.size_bytes,
                    transfer_handle=snapshot.handle,
                    retention_policy=job.retention_policy,
                    metadata={"skipped": list(snapshot.skipped)} if snapshot.skipped else None,
                    job_id=job.id,
                )
                self._verify(entry)
                heartbeat.check()
                lease = heartbeat.lease

            outcome = Outcome.PARTIAL if snapshot.skipped else Outcome.SUCCESS
            detail = None
            if snapshot.skipped:
                run_metadata["skipped"] = list(snapshot.skipped)
                detail = f"skipped {len(snapshot.skipped)} unreadable unit(s): {', '.join(snapshot.skipped[:10])}"
            entry, run = self._store.complete_backup(
                run.id,
                entry.id,
                lease,
                outcome=outcome,
                bytes_moved=snapshot.size_bytes,
                error_detail=detail,
                metadata=run_metadata,
            )
        except LeaseExpiredError as exc:
            # Someone else may own the job now: leave its status alone.
            log_event("backup_aborted", logging.WARNING, job_id=job.id, run_id=run.id, error=exc)
            self._finish(run, Outcome.ABORTED, exc, release_job=False)
            raise
        except (TransferError, IntegrityError, BrokenChainError, ConflictError) as exc:
            log_event("backup_failed", logging.ERROR, job_id=job.id, run_id=run.id, error=exc)
            self._finish(run, Outcome.FAILED, exc, release_job=True)
            self._locks.release(lease)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Backup failed")
            self._finish(run, Outcome.FAILED, exc, release_job=True)
            self._locks.release(lease)
            raise

        self._locks.release(lease)
        log_event(
            "backup_completed",
            job_id=job.id,
            run_id=run.id,
            entry_id=entry.id,
            backup_type=entry.backup_type.value,
            outcome=run.outcome.value,
            bytes=run.bytes_moved,
        )
        return run

    def _plan(self, job: Job) -> tuple[BackupType, ChainEntry | None, dict | None]:
        latest = self._store.latest_valid_entry(job.volume_name)
        if latest is None:
            return BackupType.FULL, None, None
        try:
            path = resolve_path(self._store.list_entries(job.volume_name), latest.id)
        except BrokenChainError as exc:
            log_event("backup_chain_broken", logging.WARNING, volume=job.volume_name, error=exc)
            return BackupType.FULL, None, None
        policy = RetentionPolicy.from_dict(job.retention_policy)
        if policy.full_every and len(path) >= policy.full_every:
            return BackupType.FULL, None, None
        return BackupType.INCREMENTAL, latest, materialize(path)

    def _snapshot(self, volume: str, base: dict | None, heartbeat: Heartbeat) -> Snapshot:
        for attempt in range(1, self._transfer_attempts + 1):
            try:
                return self._transfer.snapshot(volume, base=base)
            except TransferError as exc:
                if attempt == self._transfer_attempts:
                    raise
                log_event("snapshot_retry", logging.WARNING, volume=volume, attempt=attempt, error=exc)
                heartbeat.check()

    def _verify(self, entry: ChainEntry) -> None:
        """Re-read the stored payload and compare it with the recorded map."""
        expected = {unit: digest for unit, digest in entry.checksum_map.items() if digest is not None}
        seen = set()
        problem = None
        for unit, data in self._transfer.read(entry.transfer_handle):
            if data is None:
                continue
            if expected.get(unit) != sha256_hex(data):
                problem = f"unit {unit} does not match its recorded checksum"
                break
            seen.add(unit)
        else:
            missing = sorted(set(expected) - seen)
            if missing:
                problem = f"{len(missing)} unit(s) missing from stored payload, first {missing[0]}"
        if problem:
            self._store.mark_corrupt(entry.id, problem)
            raise IntegrityError(f"entry {entry.id}: {problem}")

    def _finish(self, run: RunRecord, outcome: Outcome, exc: Exception, release_job: bool) -> None:
        try:
            self._store.complete_run(
                run.id,
                outcome,
                error_detail=f"{type(exc).__name__}: {exc}",
                release_job=release_job,
            )
        except ConflictError:
            log_event("backup_run_already_closed", logging.WARNING, run_id=run.id)
