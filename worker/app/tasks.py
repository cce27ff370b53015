from datetime import timedelta

from celery.utils.log import get_task_logger

from .backup import BackupWorker
from .celery_app import celery_app
from .config import settings
from .db import SessionLocal
from .entities import Lease, Outcome, RunKind
from .locks import LockManager
from .restore import RestoreWorker
from .retention import RetentionSweeper
from .store import MetadataStore
from .transfer import build_transfer

logger = get_task_logger(__name__)


def _store() -> MetadataStore:
    return MetadataStore(SessionLocal)


def _summary(run) -> dict:
    return {
        "run_id": run.id,
        "outcome": run.outcome.value if run.outcome else None,
        "bytes_moved": run.bytes_moved,
        "chain_entry_id": run.chain_entry_id,
        "target_entry_id": run.target_entry_id,
    }


@celery_app.task(name="app.tasks.run_backup")
def run_backup(job_id: int, lease: dict):
    store = _store()
    locks = LockManager(store)
    lease = Lease.from_dict(lease)
    job = store.get_job(job_id)
    try:
        transfer = build_transfer(settings, store.get_environment(job.environment_id).config)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Backup setup failed")
        locks.release(lease)
        run = store.start_run(RunKind.BACKUP, job_id=job_id)
        store.complete_run(run.id, Outcome.FAILED, error_detail=f"{type(exc).__name__}: {exc}", release_job=True)
        raise
    worker = BackupWorker(store, locks, transfer, transfer_attempts=settings.dockback_transfer_attempts)
    return _summary(worker.run(job_id, lease))


@celery_app.task(name="app.tasks.run_restore")
def run_restore(entry_id: int | None, destination: str | None, resume_run_id: int | None = None):
    store = _store()
    if resume_run_id is not None:
        entry_id = store.get_run(resume_run_id).target_entry_id
    entry = store.get_entry(entry_id)
    config = {}
    if entry.job_id is not None:
        config = store.get_environment(store.get_job(entry.job_id).environment_id).config
    worker = RestoreWorker(store, build_transfer(settings, config))
    return _summary(worker.run(entry_id, destination, resume_run_id=resume_run_id))


@celery_app.task(name="app.tasks.sweep_retention")
def sweep_retention():
    store = _store()
    sweeper = RetentionSweeper(
        store,
        build_transfer(settings),
        stale_after=timedelta(seconds=settings.dockback_stale_run_seconds),
        owner_id=f"retention-{settings.dockback_worker_id}",
        gc_ttl=timedelta(seconds=settings.dockback_lease_ttl_seconds),
    )
    deleted = sweeper.sweep()
    logger.info("Retention sweep deleted %s chain entries", len(deleted))
    return {"deleted": deleted}


def dispatch_backup(job_id: int, lease: Lease) -> None:
    celery_app.send_task("app.tasks.run_backup", args=[job_id, lease.to_dict()])


def dispatch_restore(entry_id: int | None, destination: str | None, resume_run_id: int | None = None) -> str:
    result = celery_app.send_task("app.tasks.run_restore", args=[entry_id, destination, resume_run_id])
    return result.id


def dispatch_sweep() -> None:
    celery_app.send_task("app.tasks.sweep_retention")
