import os
from datetime import datetime, timedelta

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_dockback.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

import pytest

from worker.app.backup import BackupWorker
from worker.app.db import make_engine, make_session_factory
from worker.app.locks import LockManager
from worker.app.models import metadata
from worker.app.store import MetadataStore
from worker.app.transfer import LocalBlobStore, LocalTransfer


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return Clock(datetime(2024, 1, 1, 12, 0, 0))


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'dockback.db'}")
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine, clock):
    return MetadataStore(make_session_factory(engine), clock=clock)


@pytest.fixture
def locks(store):
    return LockManager(store)


@pytest.fixture
def volume_dir(tmp_path):
    path = tmp_path / "volumes" / "data"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def transfer(blobs, volume_dir):
    def no_docker(volume):
        raise AssertionError(f"unexpected docker lookup for {volume}")

    return LocalTransfer(blobs, volume_paths={"data": str(volume_dir)}, resolve_volume=no_docker)


@pytest.fixture
def environment(store, volume_dir):
    return store.create_environment("prod", {"volumes": {"data": str(volume_dir)}})


@pytest.fixture
def job(store, environment):
    return store.create_job(environment.id, "data", "@every 1h")


@pytest.fixture
def backup(store, locks, transfer):
    def run(job, **kwargs):
        lease = locks.acquire(job.id, "worker-a", 300)
        return BackupWorker(store, locks, transfer, heartbeat_interval=60, **kwargs).run(job.id, lease)

    return run
