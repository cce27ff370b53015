
from fastapi import APIRouter, Depends

from worker.app.entities import Job
from worker.app.locks import LockManager
from worker.app.scheduler import Scheduler
from worker.app.store import MetadataStore

from ..config import settings
from ..deps import get_locks, get_scheduler, get_store
from ..schemas import JobIn, JobOut, LeaseOut, QueuedOut, RetentionPolicyIn, RunRecordOut

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _job_out(job: Job, locks: LockManager) -> JobOut:
    out = JobOut.model_validate(job)
    lease = locks.current(job.id)
    if lease is not None:
        out.lease = LeaseOut.model_validate(lease)
    return out


@router.get("/", response_model=list[JobOut])
def list_jobs(
    environment_id: int | None = None,
    include_deleted: bool = False,
    store: MetadataStore = Depends(get_store),
    locks: LockManager = Depends(get_locks),
):
    return [_job_out(job, locks) for job in store.list_jobs(environment_id, include_deleted=include_deleted)]


@router.post("/", response_model=JobOut, status_code=201)
def create_job(payload: JobIn, store: MetadataStore = Depends(get_store), locks: LockManager = Depends(get_locks)):
    job = store.create_job(
        payload.environment_id,
        payload.volume_name,
        payload.schedule,
        retention_policy=payload.retention_policy.as_policy() if payload.retention_policy else None,
        config=payload.config,
        enabled=payload.enabled,
    )
    return _job_out(job, locks)


@router.get("/{job_id}", response_model=JobOut)
def read_job(job_id: int, store: MetadataStore = Depends(get_store), locks: LockManager = Depends(get_locks)):
    return _job_out(store.get_job(job_id), locks)


@router.put("/{job_id}/retention", response_model=JobOut)
def update_retention_policy(
    job_id: int,
    payload: RetentionPolicyIn,
    store: MetadataStore = Depends(get_store),
    locks: LockManager = Depends(get_locks),
):
    return _job_out(store.update_retention_policy(job_id, payload.as_policy()), locks)


@router.post("/{job_id}/enable", response_model=JobOut)
def enable_job(job_id: int, store: MetadataStore = Depends(get_store), locks: LockManager = Depends(get_locks)):
    return _job_out(store.set_job_enabled(job_id, True), locks)


@router.post("/{job_id}/disable", response_model=JobOut)
def disable_job(job_id: int, store: MetadataStore = Depends(get_store), locks: LockManager = Depends(get_locks)):
    return _job_out(store.set_job_enabled(job_id, False), locks)


@router.post("/{job_id}/backup", response_model=QueuedOut, status_code=202)
def trigger_backup(job_id: int, scheduler: Scheduler = Depends(get_scheduler)):
    scheduler.enqueue_backup(job_id)
    return QueuedOut(job_id=job_id)


@router.delete("/{job_id}", response_model=JobOut)
def delete_job(job_id: int, store: MetadataStore = Depends(get_store), locks: LockManager = Depends(get_locks)):
    return _job_out(store.delete_job(job_id), locks)


@router.get("/{job_id}/runs", response_model=list[RunRecordOut])
def job_runs(job_id: int, limit: int | None = None, store: MetadataStore = Depends(get_store)):
    store.get_job(job_id)
    return store.list_runs(job_id=job_id, limit=limit or settings.dockback_history_limit)
