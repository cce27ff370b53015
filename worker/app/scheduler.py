import logging
from datetime import timedelta
from typing import Callable

from apscheduler.schedulers.blocking import BlockingScheduler

from .config import settings
from .entities import Job, Lease
from .errors import ConflictError
from .locks import LockManager
from .logs import log_event, logger, setup_logging
from .schedule import next_run_after
from .store import MetadataStore

Enqueue = Callable[[int, Lease], None]


class Scheduler:
    def __init__(
        self,
        store: MetadataStore,
        locks: LockManager,
        enqueue: Enqueue,
        owner_id: str,
        lease_ttl: int | timedelta,
        clock=None,
    ):
        self._store = store
        self._locks = locks
        self._enqueue = enqueue
        self._owner_id = owner_id
        self._lease_ttl = lease_ttl
        self.clock = clock or store.clock

    def tick(self, now=None) -> list[int]:
        """Enqueue every due job that can be leased; return their ids.

        The scan takes no global lock: several schedulers may tick at once
        and the per-job lease decides who enqueues.
        """
        now = now or self.clock()
        enqueued = []
        for job in self._store.due_jobs(now):
            next_run = next_run_after(job.schedule, now, anchor=job.created_at)
            try:
                lease = self._dispatch(job, next_run)
            except ConflictError as exc:
                log_event("job_skipped", job_id=job.id, reason=exc)
                continue
            except Exception:  # noqa: BLE001
                logger.exception("Enqueue failed for job %s", job.id)
                continue
            if lease is not None:
                enqueued.append(job.id)
        return enqueued

    def enqueue_backup(self, job_id: int) -> Lease:
        """Run a job now, outside its schedule. Its future slots do not move."""
        job = self._store.get_job(job_id)
        if not job.enabled:
            raise ConflictError(f"job {job_id} is disabled")
        lease = self._dispatch(job, next_run=None)
        if lease is None:
            raise ConflictError(f"job {job_id} or another job of its environment holds a live lease")
        return lease

    def _dispatch(self, job: Job, next_run) -> Lease | None:
        lease = self._locks.acquire(job.id, self._owner_id, self._lease_ttl)
        if lease is None:
            log_event("job_skipped_leased", job_id=job.id)
            return None
        aborted = self._store.abort_open_runs(job.id, "worker lost its lease before completing the run")
        if aborted:
            log_event("job_orphaned_runs_aborted", logging.WARNING, job_id=job.id, runs=aborted)
        try:
            self._store.mark_job_queued(job.id, next_run=next_run)
            self._enqueue(job.id, lease)
        except Exception:
            self._locks.release(lease)
            self._store.reset_job(job.id, next_run=job.next_run)
            raise
        log_event("job_enqueued", job_id=job.id, next_run=next_run)
        return lease


def run_forever():
    from .db import SessionLocal
    from .tasks import dispatch_backup, dispatch_sweep

    setup_logging()
    store = MetadataStore(SessionLocal)
    scheduler = Scheduler(
        store,
        LockManager(store),
        dispatch_backup,
        owner_id=settings.dockback_worker_id,
        lease_ttl=settings.dockback_lease_ttl_seconds,
    )
    background = BlockingScheduler(timezone="UTC")
    background.add_job(
        scheduler.tick,
        "interval",
        seconds=settings.dockback_scheduler_interval_seconds,
        id="dockback_tick",
        max_instances=1,
        coalesce=True,
    )
    background.add_job(
        dispatch_sweep,
        "interval",
        seconds=settings.dockback_retention_interval_seconds,
        id="dockback_retention",
        max_instances=1,
        coalesce=True,
    )
    log_event("scheduler_started", owner=settings.dockback_worker_id)
    background.start()


def main():
    run_forever()
