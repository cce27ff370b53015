import logging
import threading
import uuid
from datetime import timedelta

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.exc import SQLAlchemyError

from .entities import Lease
from .errors import LeaseExpiredError
from .logs import log_event
from .models import environments, job_leases, jobs


def _ttl_seconds(ttl: int | float | timedelta) -> int:
    seconds = ttl.total_seconds() if isinstance(ttl, timedelta) else ttl
    if seconds <= 0:
        raise ValueError("lease ttl must be positive")
    return int(seconds)


class LockManager:
    def __init__(self, store, clock=None):
        self._store = store
        self.clock = clock or store.clock

    def acquire(self, job_id: int, owner_id: str, ttl: int | float | timedelta) -> Lease | None:
        """Take the lease on ``job_id``.

        ``None`` if someone else holds a live one on this job or on another
        job of the same environment.
        """
        ttl_seconds = _ttl_seconds(ttl)
        now = self.clock()
        lease = Lease(
            job_id=job_id,
            owner_id=owner_id,
            token=uuid.uuid4().hex,
            expires_at=now + timedelta(seconds=ttl_seconds),
            ttl_seconds=ttl_seconds,
        )
        values = {
            "owner_id": owner_id,
            "token": lease.token,
            "ttl_seconds": ttl_seconds,
            "acquired_at": now,
            "expires_at": lease.expires_at,
        }
        with self._store.session() as session:
            job = self._store._get_job(session, job_id)
            # One live lease per environment; the environment row serializes
            # acquires of its jobs.
            session.execute(
                select(environments.c.id).where(environments.c.id == job.environment_id).with_for_update()
            )
            busy = session.execute(
                select(job_leases.c.job_id)
                .join(jobs, jobs.c.id == job_leases.c.job_id)
                .where(
                    jobs.c.environment_id == job.environment_id,
                    job_leases.c.job_id != job_id,
                    job_leases.c.expires_at > now,
                )
                .limit(1)
            ).first()
            if busy is not None:
                log_event("lease_busy_environment", job_id=job_id, owner=owner_id, holder_job_id=busy.job_id)
                return None
            result = session.execute(
                update(job_leases)
                .where(job_leases.c.job_id == job_id, job_leases.c.expires_at <= now)
                .values(**values)
            )
            reclaimed = result.rowcount > 0
            if not reclaimed:
                try:
                    session.execute(insert(job_leases).values(job_id=job_id, **values))
                except DBIntegrityError:
                    session.rollback()
                    log_event("lease_busy", job_id=job_id, owner=owner_id)
                    return None
            session.commit()
        log_event("lease_acquired", job_id=job_id, owner=owner_id, reclaimed=reclaimed)
        return lease

    def renew(self, lease: Lease) -> Lease:
        now = self.clock()
        expires_at = now + lease.ttl
        with self._store.session() as session:
            result = session.execute(
                update(job_leases)
                .where(
                    job_leases.c.job_id == lease.job_id,
                    job_leases.c.token == lease.token,
                    job_leases.c.expires_at > now,
                )
                .values(expires_at=expires_at)
            )
            if result.rowcount == 0:
                raise LeaseExpiredError(f"lease on job {lease.job_id} held by {lease.owner_id} expired")
            session.commit()
        return Lease(
            job_id=lease.job_id,
            owner_id=lease.owner_id,
            token=lease.token,
            expires_at=expires_at,
            ttl_seconds=lease.ttl_seconds,
        )

    def release(self, lease: Lease) -> bool:
        with self._store.session() as session:
            result = session.execute(
                delete(job_leases).where(job_leases.c.job_id == lease.job_id, job_leases.c.token == lease.token)
            )
            released = result.rowcount > 0
            session.commit()
        log_event("lease_released", job_id=lease.job_id, owner=lease.owner_id, held=released)
        return released

    def check(self, lease: Lease) -> None:
        current = self.current(lease.job_id)
        if current is None or current.token != lease.token:
            raise LeaseExpiredError(f"lease on job {lease.job_id} held by {lease.owner_id} expired")

    def current(self, job_id: int) -> Lease | None:
        now = self.clock()
        with self._store.session() as session:
            row = session.execute(
                select(job_leases).where(job_leases.c.job_id == job_id, job_leases.c.expires_at > now)
            ).first()
        if row is None:
            return None
        data = row._mapping
        return Lease(
            job_id=data["job_id"],
            owner_id=data["owner_id"],
            token=data["token"],
            expires_at=data["expires_at"],
            ttl_seconds=data["ttl_seconds"],
        )


class Heartbeat:
    """Renew a lease from a background thread while a long transfer runs.

    Renewal happens every ``ttl/3`` unless ``interval`` is given. Losing the
    lease stops the heartbeat; ``check()`` then raises ``LeaseExpiredError``.
    """

    def __init__(self, locks: LockManager, lease: Lease, interval: float | None = None):
        self._locks = locks
        self.lease = lease
        self.interval = interval if interval is not None else lease.ttl_seconds / 3
        self.lost: LeaseExpiredError | None = None
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._beat, name=f"heartbeat-job-{lease.job_id}", daemon=True)

    def __enter__(self):
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self._stop.set()
        self._thread.join()
        return False

    def _beat(self):
        while not self._stop.wait(self.interval):
            try:
                self.lease = self._locks.renew(self.lease)
            except LeaseExpiredError as exc:
                self.lost = exc
                log_event("heartbeat_lease_lost", logging.WARNING, job_id=self.lease.job_id)
                return
            except SQLAlchemyError as exc:
                log_event("heartbeat_error", logging.WARNING, job_id=self.lease.job_id, error=exc)

    def check(self) -> None:
        if self.lost is not None:
            raise LeaseExpiredError(str(self.lost))
