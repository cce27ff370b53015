from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from worker.app.chain import (
    RetentionPolicy,
    ancestors,
    causal_order,
    compute_deletable,
    materialize,
    resolve_path,
)
from worker.app.entities import BackupType, ChainEntry, EntryStatus
from worker.app.errors import BrokenChainError, NotFoundError

T0 = datetime(2024, 1, 1)


def make_entry(entry_id, parent=None, hours=0, status=EntryStatus.VALID, checksums=None, volume="data", policy=None):
    return ChainEntry(
        id=entry_id,
        volume_name=volume,
        backup_type=BackupType.INCREMENTAL if parent else BackupType.FULL,
        parent_id=parent,
        created_at=T0 + timedelta(hours=hours),
        status=status,
        checksum_map=checksums or {},
        retention_policy=policy,
    )


def delete(entries, entry_id):
    return [replace(e, status=EntryStatus.DELETED) if e.id == entry_id else e for e in entries]


def test_entry_shape_is_checked():
    with pytest.raises(ValueError):
        ChainEntry(1, "data", BackupType.FULL, 7, T0, EntryStatus.VALID)
    with pytest.raises(ValueError):
        ChainEntry(2, "data", BackupType.INCREMENTAL, None, T0, EntryStatus.VALID)


def test_resolve_path_walks_back_to_full():
    entries = [make_entry(1), make_entry(2, 1, 1), make_entry(3, 2, 2)]
    assert [e.id for e in resolve_path(entries, 3)] == [1, 2, 3]
    assert [e.id for e in resolve_path(entries, 1)] == [1]


def test_resolve_path_stops_at_nearest_full():
    entries = [make_entry(1), make_entry(2, 1, 1), make_entry(3, hours=2), make_entry(4, 3, 3)]
    assert [e.id for e in resolve_path(entries, 4)] == [3, 4]


@pytest.mark.parametrize("status", [EntryStatus.DELETED, EntryStatus.CORRUPT, EntryStatus.PENDING])
def test_resolve_path_rejects_invalid_link(status):
    entries = [make_entry(1, status=status), make_entry(2, 1, 1), make_entry(3, 2, 2)]
    with pytest.raises(BrokenChainError):
        resolve_path(entries, 3)


def test_resolve_path_missing_parent():
    with pytest.raises(BrokenChainError):
        resolve_path([make_entry(2, 99, 1)], 2)


def test_resolve_path_unknown_target():
    with pytest.raises(NotFoundError):
        resolve_path([make_entry(1)], 5)


def test_resolve_path_detects_cycle():
    entries = [make_entry(1, 2), make_entry(2, 1, 1)]
    with pytest.raises(BrokenChainError):
        resolve_path(entries, 2)


def test_resolve_path_rejects_other_volume():
    entries = [make_entry(1, volume="other"), make_entry(2, 1, 1)]
    with pytest.raises(BrokenChainError):
        resolve_path(entries, 2)


def test_materialize_applies_tombstones_and_full_resets():
    full = make_entry(1, checksums={"a": "x", "b": "y"})
    first = make_entry(2, 1, 1, checksums={"b": "z", "c": "w"})
    second = make_entry(3, 2, 2, checksums={"a": None})
    assert materialize([full, first, second]) == {"b": "z", "c": "w"}

    newer_full = make_entry(4, hours=3, checksums={"d": "q"})
    assert materialize([full, first, newer_full]) == {"d": "q"}


def test_causal_order_puts_parents_first():
    # Child timestamped before its parent, e.g. after clock skew.
    entries = [make_entry(2, 1, 0), make_entry(1, hours=1), make_entry(3, 2, 2)]
    assert [e.id for e in causal_order(entries)] == [1, 2, 3]


def test_ancestors_stop_at_deleted():
    entries = [make_entry(1, status=EntryStatus.DELETED), make_entry(2, 1, 1), make_entry(3, 2, 2)]
    assert ancestors(entries, 3) == [3, 2]


def test_retention_policy_from_dict():
    policy = RetentionPolicy.from_dict({"max_age": "168h", "min_count": 3, "full_every": 5})
    assert policy.max_age == timedelta(days=7)
    assert policy.to_dict() == {"max_age": "1W", "min_count": 3, "full_every": 5}
    assert RetentionPolicy.from_dict(None) == RetentionPolicy()
    with pytest.raises(ValueError):
        RetentionPolicy.from_dict({"min_count": -1})
    with pytest.raises(ValueError):
        RetentionPolicy.from_dict({"full_every": 0})
    with pytest.raises(ValueError):
        RetentionPolicy.from_dict({"max_age": "7 months"})


def test_empty_policy_keeps_everything():
    entries = [make_entry(1), make_entry(2, 1, 1), make_entry(3, hours=2)]
    assert compute_deletable(entries, RetentionPolicy(), T0 + timedelta(days=365)) == []


def test_keep_last_one_holds_whole_chain():
    entries = [make_entry(1), make_entry(2, 1, 1), make_entry(3, 2, 2)]
    assert compute_deletable(entries, RetentionPolicy(min_count=1), T0 + timedelta(hours=3)) == []


def test_new_full_releases_old_chain_leaf_first():
    policy = RetentionPolicy(min_count=1)
    now = T0 + timedelta(hours=4)
    entries = [make_entry(1), make_entry(2, 1, 1), make_entry(3, 2, 2), make_entry(4, hours=3)]

    order = []
    while True:
        deletable = compute_deletable(entries, policy, now)
        if not deletable:
            break
        order.extend(deletable)
        for entry_id in deletable:
            entries = delete(entries, entry_id)
    assert order == [3, 2, 1]


def test_in_use_entries_and_ancestors_are_kept():
    entries = [make_entry(1), make_entry(2, 1, 1), make_entry(3, hours=2)]
    now = T0 + timedelta(hours=3)
    assert compute_deletable(entries, RetentionPolicy(min_count=1), now) == [2]
    assert compute_deletable(entries, RetentionPolicy(min_count=1), now, in_use=[2]) == []


def test_max_age_with_min_count_floor():
    entries = [make_entry(1), make_entry(2, hours=29)]
    now = T0 + timedelta(hours=30)
    assert compute_deletable(entries, RetentionPolicy(max_age=timedelta(days=1)), now) == [1]
    assert compute_deletable(entries, RetentionPolicy(max_age=timedelta(days=1), min_count=2), now) == []


def test_entry_snapshot_policy_wins():
    entries = [make_entry(1, policy={"min_count": 5}), make_entry(2, hours=1)]
    now = T0 + timedelta(hours=2)
    assert compute_deletable(entries, RetentionPolicy(min_count=1), now) == []
    entries = [make_entry(1), make_entry(2, hours=1)]
    assert compute_deletable(entries, RetentionPolicy(min_count=1), now) == [1]


def test_corrupt_and_idle_pending_entries_are_collected():
    entries = [
        make_entry(1),
        make_entry(2, 1, 1, status=EntryStatus.CORRUPT),
        make_entry(3, 1, 2, status=EntryStatus.PENDING),
    ]
    now = T0 + timedelta(hours=3)
    assert compute_deletable(entries, RetentionPolicy(), now) == [3, 2]
    assert compute_deletable(entries, RetentionPolicy(), now, in_use=[3]) == [2]


def test_custom_predicate():
    entries = [make_entry(1), make_entry(2, hours=1)]

    def only_first(entry, rank, now):
        return entry.id == 1

    assert compute_deletable(entries, None, T0, predicate=only_first) == [1]


def test_compute_deletable_is_idempotent():
    entries = [make_entry(1), make_entry(2, 1, 1), make_entry(3, hours=2), make_entry(4, 3, 3)]
    policy = RetentionPolicy(min_count=2)
    now = T0 + timedelta(hours=5)
    first = compute_deletable(entries, policy, now)
    assert first == [2]
    assert compute_deletable(entries, policy, now) == first
