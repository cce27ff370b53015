"""Chain resolution and retention over an arena of chain entries.

Entries reference their parent by id only. Everything here is pure: callers
load the entries of one volume from the store and pass them in.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Mapping

from .entities import ChainEntry, EntryStatus
from .errors import BrokenChainError, NotFoundError
from .schedule import format_duration, parse_duration

# (entry, rank among valid entries newest-first, now) -> expired?
ExpiryPredicate = Callable[[ChainEntry, int, datetime], bool]

Entries = Iterable[ChainEntry] | Mapping[int, ChainEntry]


@dataclass(frozen=True)
class RetentionPolicy:
    max_age: timedelta | None = None
    min_count: int | None = None
    full_every: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping | None) -> "RetentionPolicy":
        if not data:
            return cls()
        min_count = data.get("min_count")
        full_every = data.get("full_every")
        policy = cls(
            max_age=parse_duration(data.get("max_age")),
            min_count=int(min_count) if min_count is not None else None,
            full_every=int(full_every) if full_every is not None else None,
        )
        if policy.min_count is not None and policy.min_count < 0:
            raise ValueError("min_count must be >= 0")
        if policy.full_every is not None and policy.full_every < 1:
            raise ValueError("full_every must be >= 1")
        return policy

    def to_dict(self) -> dict:
        return {
            "max_age": format_duration(self.max_age) if self.max_age is not None else None,
            "min_count": self.min_count,
            "full_every": self.full_every,
        }

    def expired(self, entry: ChainEntry, rank: int, now: datetime) -> bool:
        if self.max_age is None and self.min_count is None:
            return False
        if self.min_count is not None and rank < self.min_count:
            return False
        if self.max_age is not None and now - entry.created_at <= self.max_age:
            return False
        return True


def _index(entries: Entries) -> dict[int, ChainEntry]:
    if isinstance(entries, Mapping):
        return dict(entries)
    return {entry.id: entry for entry in entries}


def resolve_path(entries: Entries, target_id: int) -> list[ChainEntry]:
    """Entries from the nearest ancestor full backup to ``target_id``, inclusive."""
    by_id = _index(entries)
    target = by_id.get(target_id)
    if target is None:
        raise NotFoundError(f"chain entry {target_id} not found")

    path = []
    seen = set()
    current = target
    while True:
        if current.id in seen:
            raise BrokenChainError(f"cycle in chain at entry {current.id}")
        seen.add(current.id)
        if current.status != EntryStatus.VALID:
            raise BrokenChainError(f"entry {current.id} is {current.status.value}")
        if current.volume_name != target.volume_name:
            raise BrokenChainError(f"entry {current.id} belongs to volume {current.volume_name}")
        path.append(current)
        if current.is_full:
            break
        parent = by_id.get(current.parent_id)
        if parent is None:
            raise BrokenChainError(f"parent {current.parent_id} of entry {current.id} is missing")
        current = parent
    path.reverse()
    return path


def ancestors(entries: Entries, entry_id: int) -> list[int]:
    """Ids of ``entry_id`` and its ancestors still present, child first."""
    by_id = _index(entries)
    chain = []
    current = by_id.get(entry_id)
    while current is not None and current.id not in chain:
        if current.status == EntryStatus.DELETED:
            break
        chain.append(current.id)
        current = by_id.get(current.parent_id) if current.parent_id is not None else None
    return chain


def causal_order(entries: Entries) -> list[ChainEntry]:
    """Order entries so every parent precedes its children."""
    by_id = _index(entries)
    emitted = set()
    ordered = []
    for entry in sorted(by_id.values(), key=lambda e: (e.created_at, e.id)):
        stack = []
        stacked = set()
        current = entry
        while current is not None and current.id not in emitted and current.id not in stacked:
            stack.append(current)
            stacked.add(current.id)
            current = by_id.get(current.parent_id) if current.parent_id is not None else None
        for item in reversed(stack):
            emitted.add(item.id)
            ordered.append(item)
    return ordered


def materialize(path: Iterable[ChainEntry]) -> dict[str, str]:
    """Per-unit checksum state after replaying ``path`` in order."""
    state: dict[str, str] = {}
    for entry in path:
        if entry.is_full:
            state = {}
        for unit, digest in entry.checksum_map.items():
            if digest is None:
                state.pop(unit, None)
            else:
                state[unit] = digest
    return state


def compute_deletable(
    entries: Entries,
    policy: RetentionPolicy | None,
    now: datetime,
    in_use: Iterable[int] = (),
    predicate: ExpiryPredicate | None = None,
) -> list[int]:
    """Ids of entries that may be deleted right now, newest leaf first.

    An entry is a candidate when its retention has expired (judged by the
    policy snapshot it was created under, falling back to ``policy``), or it
    is corrupt, or it is pending and not in use by an open run. Candidates
    that are ancestors of a retained or in-use entry are kept. Only
    candidates without a remaining child are returned: a parent shows up in
    a later call, once its children are actually gone.
    """
    by_id = _index(entries)
    policy = policy or RetentionPolicy()
    live = {entry_id: entry for entry_id, entry in by_id.items() if entry.status != EntryStatus.DELETED}
    newest_first = sorted(live.values(), key=lambda e: (e.created_at, e.id), reverse=True)

    def is_expired(entry: ChainEntry, rank: int) -> bool:
        if predicate is not None:
            return predicate(entry, rank, now)
        if entry.retention_policy is not None:
            return RetentionPolicy.from_dict(entry.retention_policy).expired(entry, rank, now)
        return policy.expired(entry, rank, now)

    valid = [entry for entry in newest_first if entry.status == EntryStatus.VALID]
    anchors = {entry.id for rank, entry in enumerate(valid) if not is_expired(entry, rank)}
    anchors.update(entry_id for entry_id in in_use if entry_id in live)

    required = set()
    for entry_id in anchors:
        required.update(ancestors(live, entry_id))

    has_child = {entry.parent_id for entry in live.values() if entry.parent_id is not None}
    return [
        entry.id
        for entry in newest_first
        if entry.id not in required and entry.id not in has_child
    ]
