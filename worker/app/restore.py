import logging
from typing import Iterator

from .chain import resolve_path
from .entities import ChainEntry, Outcome, RunKind, RunRecord
from .errors import BrokenChainError, ConflictError, IntegrityError, TransferError
from .logs import log_event, logger
from .store import MetadataStore
from .transfer import ContentTransfer, sha256_hex


class RestoreWorker:
    def __init__(self, store: MetadataStore, transfer: ContentTransfer, heartbeat_interval: float = 60):
        self._store = store
        self._transfer = transfer
        self._heartbeat_interval = heartbeat_interval

    def run(
        self,
        entry_id: int | None,
        destination: str | None,
        start: int = 0,
        resume_run_id: int | None = None,
    ) -> RunRecord:
        """Materialize ``entry_id`` at ``destination``.

        ``start`` skips the first entries of the path; ``resume_run_id``
        picks target, destination and position up from an earlier run that
        did not succeed.
        """
        previous = None
        if resume_run_id is not None:
            previous = self._store.get_run(resume_run_id)
            if previous.kind != RunKind.RESTORE:
                raise ValueError(f"run {resume_run_id} is not a restore run")
            if previous.outcome == Outcome.SUCCESS:
                raise ConflictError(f"restore run {resume_run_id} already succeeded")
            metadata = previous.metadata or {}
            entry_id = previous.target_entry_id
            destination = metadata["destination"]
            start = int(metadata.get("position", 0))

        entry = self._store.get_entry(entry_id)
        progress = {"destination": destination, "position": start, "resumed_from": resume_run_id}
        run = self._store.start_run(RunKind.RESTORE, job_id=entry.job_id, target_entry_id=entry.id, metadata=progress)
        if previous is not None and previous.is_open:
            self._close_superseded(previous, run)
        log_event("restore_started", run_id=run.id, entry_id=entry.id, destination=destination, start=start)

        bytes_moved = 0
        try:
            path = resolve_path(self._store.list_entries(entry.volume_name), entry.id)
            if not 0 <= start <= len(path):
                raise ValueError(f"start position {start} outside path of length {len(path)}")
            progress["path"] = [item.id for item in path]
            for position in range(start, len(path)):
                item = path[position]
                ack = self._transfer.write(destination, self._verified_units(item, run.id), item.checksum_map)
                bytes_moved += ack.get("bytes", 0)
                progress["position"] = position + 1
                self._store.update_run_metadata(run.id, dict(progress))
        except (BrokenChainError, IntegrityError, TransferError) as exc:
            log_event("restore_failed", logging.ERROR, run_id=run.id, entry_id=entry.id, error=exc)
            self._store.complete_run(
                run.id, Outcome.FAILED, bytes_moved, f"{type(exc).__name__}: {exc}", metadata=progress
            )
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Restore failed")
            self._store.complete_run(
                run.id, Outcome.FAILED, bytes_moved, f"{type(exc).__name__}: {exc}", metadata=progress
            )
            raise

        run = self._store.complete_run(run.id, Outcome.SUCCESS, bytes_moved, metadata=progress)
        log_event("restore_completed", run_id=run.id, entry_id=entry.id, entries=len(path), bytes=bytes_moved)
        return run

    def _verified_units(self, entry: ChainEntry, run_id: int) -> Iterator[tuple[str, bytes | None]]:
        """Yield units of ``entry`` only after checking them against its map.

        The run is touched every ``heartbeat_interval`` seconds so long
        entries are not mistaken for a dead worker.
        """
        expected = entry.checksum_map
        seen = set()
        last_touch = self._store.clock()
        for unit, data in self._transfer.read(entry.transfer_handle):
            now = self._store.clock()
            if (now - last_touch).total_seconds() >= self._heartbeat_interval:
                self._store.touch_run(run_id)
                last_touch = now
            if unit not in expected:
                raise IntegrityError(f"entry {entry.id}: unit {unit} is not in the checksum map")
            digest = expected[unit]
            if data is None or digest is None:
                if data is not None or digest is not None:
                    raise IntegrityError(f"entry {entry.id}: unit {unit} removal does not match the checksum map")
            elif sha256_hex(data) != digest:
                raise IntegrityError(f"entry {entry.id}: unit {unit} does not match its recorded checksum")
            seen.add(unit)
            yield unit, data
        missing = sorted(set(expected) - seen)
        if missing:
            raise IntegrityError(f"entry {entry.id}: {len(missing)} unit(s) missing, first {missing[0]}")

    def _close_superseded(self, previous: RunRecord, run: RunRecord) -> None:
        try:
            self._store.complete_run(previous.id, Outcome.ABORTED, error_detail=f"superseded by restore run {run.id}")
        except ConflictError:
            log_event("restore_run_already_closed", run_id=previous.id)
