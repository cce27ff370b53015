"""Content transfer: moving and hashing backup payload bytes.

The orchestration code only talks to the ``ContentTransfer`` protocol.
``LocalTransfer`` is the shipped implementation: every file of a volume is
one unit, stored content-addressed (sha256) in a ``BlobStore`` next to a
JSON manifest per snapshot. Blobs that already exist are not uploaded
again, so an interrupted snapshot resumes cheaply, and writes at the
destination are idempotent per unit.
"""
import hashlib
import json
import logging
import os
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Callable, Iterable, Iterator, Mapping, NamedTuple, Protocol

import boto3
import docker
from botocore.exceptions import BotoCoreError, ClientError

from .errors import TransferError
from .logs import log_event

CHUNK_SIZE = 1024 * 1024


class Snapshot(NamedTuple):
    checksums: dict
    size_bytes: int
    handle: str
    skipped: tuple = ()


class ContentTransfer(Protocol):
    def snapshot(self, volume: str, base: Mapping[str, str] | None = None) -> Snapshot: ...

    def read(self, handle: str) -> Iterator[tuple[str, bytes | None]]: ...

    def write(self, destination: str, units: Iterable[tuple[str, bytes | None]], checksums: Mapping) -> dict: ...

    def purge(self, handle: str) -> None: ...

    def collect_garbage(self, live_digests: set, before_delete: Callable[[], None] | None = None) -> int: ...


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def file_checksum(path) -> str:
    sha = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            sha.update(chunk)
    return sha.hexdigest()


def blob_key(digest: str) -> str:
    return f"blobs/{digest[:2]}/{digest}"


class LocalBlobStore:
    def __init__(self, root):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / key

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=path.parent, delete=False) as handle:
                handle.write(data)
            os.replace(handle.name, path)
        except OSError as exc:
            raise TransferError(f"cannot store {key}: {exc}") from exc

    def put_file(self, key: str, source) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=path.parent, delete=False) as handle:
                with open(source, "rb") as src:
                    shutil.copyfileobj(src, handle, CHUNK_SIZE)
            os.replace(handle.name, path)
        except OSError as exc:
            raise TransferError(f"cannot store {key}: {exc}") from exc

    def get(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except OSError as exc:
            raise TransferError(f"cannot read {key}: {exc}") from exc

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise TransferError(f"cannot delete {key}: {exc}") from exc

    def keys(self, prefix: str = "") -> Iterator[str]:
        base = self._path(prefix)
        if not base.exists():
            return
        for path in sorted(base.rglob("*")):
            if path.is_file():
                yield path.relative_to(self.root).as_posix()


class S3BlobStore:
    def __init__(self, bucket: str, endpoint: str | None = None, prefix: str = "", client=None):
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._client = client or boto3.client("s3", endpoint_url=endpoint)

    def _key(self, key: str) -> str:
        return f"{self.prefix}/{key}" if self.prefix else key

    def put(self, key: str, data: bytes) -> None:
        try:
            self._client.put_object(Bucket=self.bucket, Key=self._key(key), Body=data)
        except (BotoCoreError, ClientError) as exc:
            raise TransferError(f"cannot upload {key}: {exc}") from exc

    def put_file(self, key: str, source) -> None:
        try:
            self._client.upload_file(str(source), self.bucket, self._key(key))
        except (BotoCoreError, ClientError) as exc:
            raise TransferError(f"cannot upload {key}: {exc}") from exc

    def get(self, key: str) -> bytes:
        try:
            return self._client.get_object(Bucket=self.bucket, Key=self._key(key))["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            raise TransferError(f"cannot download {key}: {exc}") from exc

    def exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=self._key(key))
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise TransferError(f"cannot stat {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise TransferError(f"cannot stat {key}: {exc}") from exc
        return True

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=self._key(key))
        except (BotoCoreError, ClientError) as exc:
            raise TransferError(f"cannot delete {key}: {exc}") from exc

    def keys(self, prefix: str = "") -> Iterator[str]:
        strip = len(self.prefix) + 1 if self.prefix else 0
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self._key(prefix)):
                for item in page.get("Contents", []):
                    yield item["Key"][strip:]
        except (BotoCoreError, ClientError) as exc:
            raise TransferError(f"cannot list {prefix}: {exc}") from exc


def docker_volume_mountpoint(volume_name: str) -> str:
    client = docker.DockerClient(base_url="unix://var/run/docker.sock")
    try:
        return client.volumes.get(volume_name).attrs["Mountpoint"]
    except docker.errors.DockerException as exc:
        raise TransferError(f"cannot resolve docker volume {volume_name}: {exc}") from exc


class LocalTransfer:
    def __init__(
        self,
        blobs,
        volume_paths: Mapping[str, str] | None = None,
        resolve_volume: Callable[[str], str] = docker_volume_mountpoint,
    ):
        self._blobs = blobs
        self._volume_paths = dict(volume_paths or {})
        self._resolve_volume = resolve_volume

    def volume_path(self, volume: str) -> Path:
        if volume in self._volume_paths:
            return Path(self._volume_paths[volume])
        return Path(self._resolve_volume(volume))

    def snapshot(self, volume: str, base: Mapping[str, str] | None = None) -> Snapshot:
        """Store the current state of ``volume``.

        With ``base`` (the materialized checksums of the parent chain) only
        changed units are stored, and units gone since then map to ``None``.
        """
        root = self.volume_path(volume)
        if not root.is_dir():
            raise TransferError(f"volume {volume} path {root} is not a directory")
        checksums = {}
        seen = set()
        skipped = []
        size_bytes = 0
        for path in sorted(root.rglob("*")):
            if path.is_symlink() or not path.is_file():
                continue
            unit = path.relative_to(root).as_posix()
            try:
                digest = file_checksum(path)
                seen.add(unit)
                if base is not None and base.get(unit) == digest:
                    continue
                key = blob_key(digest)
                if not self._blobs.exists(key):
                    self._blobs.put_file(key, path)
                size_bytes += path.stat().st_size
            except OSError as exc:
                log_event("snapshot_unit_skipped", logging.WARNING, volume=volume, unit=unit, error=exc)
                skipped.append(unit)
                continue
            checksums[unit] = digest
        for unit in base or {}:
            if unit not in seen and unit not in skipped:
                checksums[unit] = None

        handle = f"manifests/{uuid.uuid4().hex}.json"
        manifest = {"volume": volume, "incremental": base is not None, "units": checksums}
        self._blobs.put(handle, json.dumps(manifest, sort_keys=True).encode("utf-8"))
        log_event("snapshot_stored", volume=volume, handle=handle, units=len(checksums), bytes=size_bytes)
        return Snapshot(checksums=checksums, size_bytes=size_bytes, handle=handle, skipped=tuple(skipped))

    def read(self, handle: str) -> Iterator[tuple[str, bytes | None]]:
        try:
            manifest = json.loads(self._blobs.get(handle))
        except ValueError as exc:
            raise TransferError(f"manifest {handle} is unreadable: {exc}") from exc
        for unit, digest in manifest["units"].items():
            yield unit, self._blobs.get(blob_key(digest)) if digest else None

    def write(self, destination: str, units: Iterable[tuple[str, bytes | None]], checksums: Mapping) -> dict:
        root = Path(destination).resolve()
        written = 0
        removed = 0
        size_bytes = 0
        try:
            root.mkdir(parents=True, exist_ok=True)
            for unit, data in units:
                target = (root / unit).resolve()
                if root not in target.parents:
                    raise TransferError(f"unit {unit!r} escapes destination {root}")
                if data is None:
                    target.unlink(missing_ok=True)
                    removed += 1
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with tempfile.NamedTemporaryFile(dir=target.parent, delete=False) as handle:
                    handle.write(data)
                os.replace(handle.name, target)
                written += 1
                size_bytes += len(data)
        except OSError as exc:
            raise TransferError(f"cannot write to {root}: {exc}") from exc
        return {"destination": str(root), "written": written, "removed": removed, "bytes": size_bytes}

    def purge(self, handle: str) -> None:
        self._blobs.delete(handle)

    def collect_garbage(self, live_digests: set, before_delete: Callable[[], None] | None = None) -> int:
        """Delete blobs whose digest is not in ``live_digests``.

        ``before_delete`` runs right before each delete and stops the
        collection by raising.
        """
        removed = 0
        for key in list(self._blobs.keys("blobs/")):
            if key.rsplit("/", 1)[-1] in live_digests:
                continue
            if before_delete is not None:
                before_delete()
            self._blobs.delete(key)
            removed += 1
        return removed


def build_blob_store(settings):
    if settings.dockback_storage == "s3":
        if not settings.dockback_s3_bucket:
            raise ValueError("dockback_s3_bucket is required for s3 storage")
        return S3BlobStore(settings.dockback_s3_bucket, endpoint=settings.dockback_s3_endpoint)
    return LocalBlobStore(settings.dockback_data_dir)


def build_transfer(settings, environment_config: Mapping | None = None) -> LocalTransfer:
    volume_paths = (environment_config or {}).get("volumes") or {}
    return LocalTransfer(build_blob_store(settings), volume_paths=volume_paths)
