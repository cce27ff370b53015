import threading
from datetime import datetime

import pytest

from worker.app.entities import JobStatus, Outcome, RunKind
from worker.app.errors import ConflictError
from worker.app.scheduler import Scheduler


class Recorder:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def __call__(self, job_id, lease):
        if self.fail:
            raise RuntimeError("broker unavailable")
        self.calls.append((job_id, lease))


def make_scheduler(store, locks, enqueue, owner="scheduler-a"):
    return Scheduler(store, locks, enqueue, owner_id=owner, lease_ttl=300)


def test_tick_enqueues_due_job(store, locks, job, clock):
    enqueue = Recorder()
    scheduler = make_scheduler(store, locks, enqueue)
    assert scheduler.tick() == []

    clock.advance(hours=1)
    assert scheduler.tick() == [job.id]
    assert [call[0] for call in enqueue.calls] == [job.id]
    assert enqueue.calls[0][1].owner_id == "scheduler-a"
    job = store.get_job(job.id)
    assert job.status == JobStatus.QUEUED
    assert job.next_run == datetime(2024, 1, 1, 14, 0)


def test_missed_slots_coalesce_into_one_run(store, locks, job, clock):
    enqueue = Recorder()
    clock.advance(hours=3, minutes=30)
    assert make_scheduler(store, locks, enqueue).tick() == [job.id]
    assert len(enqueue.calls) == 1
    assert store.get_job(job.id).next_run == datetime(2024, 1, 1, 16, 0)


def test_leased_job_is_skipped(store, locks, job, clock):
    enqueue = Recorder()
    locks.acquire(job.id, "worker-a", 600)
    clock.advance(hours=1)
    assert make_scheduler(store, locks, enqueue).tick() == []
    assert enqueue.calls == []
    assert store.get_job(job.id).next_run == datetime(2024, 1, 1, 13, 0)


def test_concurrent_schedulers_enqueue_once(store, locks, job, clock):
    enqueue = Recorder()
    clock.advance(hours=1)
    schedulers = [make_scheduler(store, locks, enqueue, owner=f"scheduler-{n}") for n in range(4)]
    barrier = threading.Barrier(len(schedulers))

    def tick(scheduler):
        barrier.wait()
        scheduler.tick()

    threads = [threading.Thread(target=tick, args=(s,)) for s in schedulers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(enqueue.calls) == 1


def test_failed_enqueue_keeps_slot(store, locks, job, clock):
    clock.advance(hours=1)
    assert make_scheduler(store, locks, Recorder(fail=True)).tick() == []
    assert locks.current(job.id) is None
    job = store.get_job(job.id)
    assert job.status == JobStatus.IDLE
    assert job.next_run == datetime(2024, 1, 1, 13, 0)


def test_disabled_job_is_not_scheduled(store, locks, job, clock):
    store.set_job_enabled(job.id, False)
    clock.advance(hours=2)
    scheduler = make_scheduler(store, locks, Recorder())
    assert scheduler.tick() == []
    with pytest.raises(ConflictError):
        scheduler.enqueue_backup(job.id)


def test_manual_backup_keeps_schedule(store, locks, job):
    enqueue = Recorder()
    scheduler = make_scheduler(store, locks, enqueue)
    lease = scheduler.enqueue_backup(job.id)
    assert enqueue.calls == [(job.id, lease)]
    assert store.get_job(job.id).next_run == job.next_run
    with pytest.raises(ConflictError):
        scheduler.enqueue_backup(job.id)


def test_reclaimed_job_aborts_orphaned_run(store, locks, job, clock):
    locks.acquire(job.id, "dead-worker", 60)
    orphan = store.start_run(RunKind.BACKUP, job_id=job.id)
    clock.advance(hours=1)
    assert make_scheduler(store, locks, Recorder()).tick() == [job.id]
    orphan = store.get_run(orphan.id)
    assert orphan.outcome == Outcome.ABORTED
    assert orphan.completed_at == clock()


def test_tick_runs_one_job_per_environment(store, locks, environment, job, clock):
    sibling = store.create_job(environment.id, "data", "@every 1h")
    enqueue = Recorder()
    clock.advance(hours=1)

    assert make_scheduler(store, locks, enqueue).tick() == [job.id]
    sibling = store.get_job(sibling.id)
    assert sibling.status == JobStatus.IDLE
    assert sibling.next_run == datetime(2024, 1, 1, 13, 0)
    with pytest.raises(ConflictError):
        make_scheduler(store, locks, enqueue).enqueue_backup(sibling.id)
