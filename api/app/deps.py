from worker.app.config import settings as worker_settings
from worker.app.db import SessionLocal
from worker.app.locks import LockManager
from worker.app.scheduler import Scheduler
from worker.app.store import MetadataStore
from worker.app.tasks import dispatch_backup, dispatch_restore


def get_store() -> MetadataStore:
    return MetadataStore(SessionLocal)


def get_locks() -> LockManager:
    return LockManager(get_store())


def get_scheduler() -> Scheduler:
    store = get_store()
    return Scheduler(
        store,
        LockManager(store),
        dispatch_backup,
        owner_id=f"api-{worker_settings.dockback_worker_id}",
        lease_ttl=worker_settings.dockback_lease_ttl_seconds,
    )


def get_restore_dispatcher():
    return dispatch_restore
