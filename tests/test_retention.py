from datetime import timedelta

import pytest

from worker.app.chain import RetentionPolicy
from worker.app.entities import EntryStatus, JobStatus, Outcome, RunKind
from worker.app.errors import ConflictError
from worker.app.retention import RetentionSweeper
from worker.app.transfer import blob_key, sha256_hex


def _statuses(store):
    return [entry.status for entry in store.list_entries("data")]


def test_keep_last_one_across_chains(store, job, transfer, blobs, volume_dir, backup):
    store.update_retention_policy(job.id, {"min_count": 1})
    job = store.get_job(job.id)
    (volume_dir / "a.txt").write_bytes(b"v1")
    backup(job)
    (volume_dir / "a.txt").write_bytes(b"v2")
    backup(job)
    (volume_dir / "a.txt").write_bytes(b"v3")
    backup(job)

    sweeper = RetentionSweeper(store, transfer)
    assert sweeper.sweep() == []

    # A fresh full backup frees the old chain, deleted child first.
    store.update_retention_policy(job.id, {"min_count": 1, "full_every": 1})
    job = store.get_job(job.id)
    newest = store.get_entry(backup(job).chain_entry_id)
    old = [entry.id for entry in store.list_entries("data") if entry.id != newest.id]

    assert sweeper.sweep() == list(reversed(old))
    assert _statuses(store) == [EntryStatus.DELETED] * 3 + [EntryStatus.VALID]
    for entry_id in old:
        assert not blobs.exists(store.get_entry(entry_id).transfer_handle)
    assert blobs.exists(blob_key(sha256_hex(b"v3")))
    assert not blobs.exists(blob_key(sha256_hex(b"v1")))


def test_open_restore_protects_path(store, job, transfer, volume_dir, backup):
    (volume_dir / "a.txt").write_bytes(b"v1")
    first = backup(job)
    store.update_retention_policy(job.id, {"min_count": 1, "full_every": 1})
    backup(store.get_job(job.id))

    restore = store.start_run(RunKind.RESTORE, target_entry_id=first.chain_entry_id)
    sweeper = RetentionSweeper(store, transfer)
    assert sweeper.sweep() == []

    store.complete_run(restore.id, Outcome.SUCCESS)
    assert sweeper.sweep() == [first.chain_entry_id]


def test_failed_pending_entries_are_collected(store, locks, job, transfer, volume_dir, backup):
    (volume_dir / "a.txt").write_bytes(b"v1")
    full = backup(job)
    run = store.start_run(RunKind.BACKUP, job_id=job.id)
    pending = store.create_pending_entry(run.id, "data", "incremental", full.chain_entry_id, {"a.txt": "x"}, 1)

    sweeper = RetentionSweeper(store, transfer)
    assert sweeper.sweep() == []
    store.complete_run(run.id, Outcome.ABORTED)
    assert sweeper.sweep() == [pending.id]
    assert store.get_entry(full.chain_entry_id).status == EntryStatus.VALID


def test_entries_without_snapshot_use_given_policy(store, job, transfer, volume_dir, backup, clock):
    (volume_dir / "a.txt").write_bytes(b"v1")
    first = backup(job)
    clock.advance(days=2)
    store.update_retention_policy(job.id, {"full_every": 1})
    second = backup(store.get_job(job.id))

    sweeper = RetentionSweeper(store, transfer)
    assert sweeper.sweep() == []
    max_age = RetentionPolicy.from_dict({"max_age": "1D"})
    assert sweeper.sweep_volume("data", policy=max_age) == [first.chain_entry_id]
    assert store.get_entry(second.chain_entry_id).status == EntryStatus.VALID


def test_default_policy_without_job_policy(store, job, transfer, volume_dir, backup, clock):
    (volume_dir / "a.txt").write_bytes(b"v1")
    first = backup(job)
    clock.advance(hours=1)
    sweeper = RetentionSweeper(store, transfer, default_policy=RetentionPolicy.from_dict({"max_age": "1D"}))
    assert sweeper.sweep() == []
    clock.advance(days=1)
    assert sweeper.sweep() == [first.chain_entry_id]


def test_backup_is_refused_while_blobs_are_collected(
    store, locks, job, transfer, blobs, volume_dir, backup, clock, monkeypatch
):
    (volume_dir / "shared.txt").write_bytes(b"shared")
    old = backup(job)
    store.mark_corrupt(old.chain_entry_id, "bit rot")
    shared = blob_key(sha256_hex(b"shared"))
    original_keys = blobs.keys
    during = []

    def keys_with_backup(prefix=""):
        with pytest.raises(ConflictError):
            backup(store.get_job(job.id))
        during.append(locks.current(job.id))
        return original_keys(prefix)

    monkeypatch.setattr(blobs, "keys", keys_with_backup)
    assert RetentionSweeper(store, transfer).sweep() == [old.chain_entry_id]
    monkeypatch.setattr(blobs, "keys", original_keys)

    assert during == [None]
    assert not blobs.exists(shared)
    job = store.get_job(job.id)
    assert job.status == JobStatus.IDLE
    assert job.next_run == clock()
    assert not store.blob_collection_active()

    run = backup(job)
    assert store.get_entry(run.chain_entry_id).status == EntryStatus.VALID
    assert blobs.exists(shared)


def test_stale_restore_run_stops_pinning_entries(store, job, transfer, volume_dir, backup, clock):
    (volume_dir / "a.txt").write_bytes(b"v1")
    store.update_retention_policy(job.id, {"min_count": 1, "full_every": 1})
    job = store.get_job(job.id)
    first = backup(job)
    backup(job)
    restore = store.start_run(
        RunKind.RESTORE,
        target_entry_id=first.chain_entry_id,
        metadata={"destination": "/srv/restore", "position": 0},
    )

    sweeper = RetentionSweeper(store, transfer, stale_after=timedelta(hours=1))
    assert sweeper.sweep() == []
    clock.advance(minutes=50)
    store.touch_run(restore.id)
    clock.advance(minutes=50)
    assert sweeper.sweep() == []

    clock.advance(minutes=20)
    assert sweeper.sweep() == [first.chain_entry_id]
    assert store.get_run(restore.id).outcome == Outcome.ABORTED
    assert store.open_runs() == []


def test_deferred_collection_runs_on_quiet_sweep(store, job, transfer, blobs, volume_dir, backup):
    (volume_dir / "a.txt").write_bytes(b"v1")
    backup(job)
    orphan = blob_key(sha256_hex(b"orphan"))
    blobs.put(orphan, b"orphan")
    run = store.start_run(RunKind.BACKUP, job_id=job.id)

    sweeper = RetentionSweeper(store, transfer)
    assert sweeper.sweep() == []
    assert sweeper.collect_garbage() is None
    assert blobs.exists(orphan)

    store.complete_run(run.id, Outcome.ABORTED)
    assert sweeper.sweep() == []
    assert not blobs.exists(orphan)
    assert blobs.exists(blob_key(sha256_hex(b"v1")))
