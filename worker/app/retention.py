import logging
from datetime import timedelta

from .chain import RetentionPolicy, compute_deletable
from .errors import ConflictError, TransferError
from .logs import log_event
from .store import MetadataStore
from .transfer import ContentTransfer


class RetentionSweeper:
    def __init__(
        self,
        store: MetadataStore,
        transfer: ContentTransfer,
        default_policy: RetentionPolicy | None = None,
        stale_after: timedelta = timedelta(hours=6),
        owner_id: str = "retention",
        gc_ttl: timedelta = timedelta(minutes=5),
    ):
        self._store = store
        self._transfer = transfer
        self._default_policy = default_policy or RetentionPolicy()
        self._stale_after = stale_after
        self._owner_id = owner_id
        self._gc_ttl = gc_ttl

    def sweep(self, now=None) -> list[int]:
        stale = self._store.abort_stale_runs(self._stale_after)
        if stale:
            log_event("retention_stale_runs_aborted", logging.WARNING, runs=stale)
        now = now or self._store.clock()
        deleted = []
        for volume in self._store.list_volumes():
            deleted.extend(self.sweep_volume(volume, now))
        self.collect_garbage()
        return deleted

    def sweep_volume(self, volume: str, now=None, policy: RetentionPolicy | None = None) -> list[int]:
        """Delete everything deletable on ``volume``, re-evaluating after each round.

        Each candidate is rechecked inside ``mark_deleted`` right before it is
        tombstoned; a candidate that gained a child or an open run since the
        scan is skipped.
        """
        now = now or self._store.clock()
        policy = policy or self._policy_for(volume)
        deleted = []
        while True:
            candidates = compute_deletable(
                self._store.list_entries(volume),
                policy,
                now,
                in_use=self._store.in_use_entry_ids(volume),
            )
            progressed = False
            for entry_id in candidates:
                try:
                    entry = self._store.mark_deleted(entry_id)
                except ConflictError as exc:
                    log_event("retention_skip", volume=volume, entry_id=entry_id, reason=exc)
                    continue
                progressed = True
                deleted.append(entry_id)
                log_event("retention_deleted", volume=volume, entry_id=entry_id)
                if entry.transfer_handle:
                    try:
                        self._transfer.purge(entry.transfer_handle)
                    except TransferError as exc:
                        log_event("retention_purge_error", logging.WARNING, entry_id=entry_id, error=exc)
            if not progressed:
                return deleted

    def collect_garbage(self) -> int | None:
        """Remove blobs no live entry references; ``None`` when deferred.

        Runs under the blob collection lock, renewed before every delete.
        """
        token = self._store.begin_blob_collection(self._owner_id, self._gc_ttl)
        if token is None:
            log_event("retention_gc_deferred", reason="backup running or collection in progress")
            return None
        try:
            # No backup can start while the lock is live, so this set only shrinks.
            live = self._store.referenced_digests()
            removed = self._transfer.collect_garbage(
                live, before_delete=lambda: self._store.renew_blob_collection(token, self._gc_ttl)
            )
        except (ConflictError, TransferError) as exc:
            log_event("retention_gc_error", logging.WARNING, error=exc)
            return None
        finally:
            self._store.end_blob_collection(token)
        log_event("retention_gc", removed=removed)
        return removed

    def _policy_for(self, volume: str) -> RetentionPolicy:
        # Entries created before snapshots were recorded fall back to the
        # current policy of the job writing the volume.
        for job in self._store.list_jobs():
            if job.volume_name == volume and job.retention_policy is not None:
                return RetentionPolicy.from_dict(job.retention_policy)
        return self._default_policy
