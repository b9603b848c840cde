"""Object store adapters for cached audio and voice samples.

Two backends share one async interface:

- ``LocalObjectStore`` keeps objects on the filesystem (development, tests).
- ``GCSObjectStore`` keeps objects in a Google Cloud Storage bucket.

``put`` never overwrites: it returns ``False`` when the key already exists,
which gives callers an atomic insert-if-absent primitive.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from google.api_core.exceptions import NotFound, PreconditionFailed
from google.cloud import storage
from google.oauth2 import service_account

from ..config import Settings

logger = logging.getLogger(__name__)

_METADATA_SUFFIX = ".meta.json"


@dataclass(frozen=True)
class StoredObject:
    """Binary payload plus the headers it was stored with."""

    data: bytes
    content_type: str
    metadata: dict[str, str] = field(default_factory=dict)


def _sidecar_for(path: Path) -> Path:
    return path.with_name(path.name + _METADATA_SUFFIX)


class ObjectStore(Protocol):
    async def exists(self, key: str) -> bool: ...

    async def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> bool: ...

    async def get(self, key: str) -> StoredObject | None: ...


class LocalObjectStore:
    """Filesystem-backed object store.

    Objects are written to a temporary file and claimed with ``os.link``,
    which fails if the key already exists. The winning writer then moves the
    metadata sidecar into place, and an object only counts as published once
    its sidecar exists. Readers therefore never observe a partial object.
    """

    def __init__(self, base_dir: Path):
        self._base_dir = Path(base_dir)

    def _path_for(self, key: str) -> Path:
        path = (self._base_dir / key).resolve()
        if not path.is_relative_to(self._base_dir.resolve()):
            raise ValueError(f"Object key {key!r} escapes the store directory")
        return path

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._exists_sync, key)

    def _exists_sync(self, key: str) -> bool:
        path = self._path_for(key)
        return path.exists() and _sidecar_for(path).exists()

    async def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> bool:
        return await asyncio.to_thread(
            self._put_sync, key, data, content_type, dict(metadata or {})
        )

    def _put_sync(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, str],
    ) -> bool:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        sidecar = _sidecar_for(path)

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            # Only the writer that wins the link publishes its headers
            sidecar_tmp = Path(tmp_name + _METADATA_SUFFIX)
            sidecar_tmp.write_text(
                json.dumps({"content_type": content_type, "metadata": metadata}),
                encoding="utf-8",
            )
            try:
                os.link(tmp_name, path)
            except FileExistsError:
                sidecar_tmp.unlink(missing_ok=True)
                return False
            os.replace(sidecar_tmp, sidecar)
            return True
        finally:
            Path(tmp_name).unlink(missing_ok=True)

    async def get(self, key: str) -> StoredObject | None:
        return await asyncio.to_thread(self._get_sync, key)

    def _get_sync(self, key: str) -> StoredObject | None:
        path = self._path_for(key)
        try:
            headers = json.loads(_sidecar_for(path).read_text(encoding="utf-8"))
            data = path.read_bytes()
        except FileNotFoundError:
            # Missing, or claimed but not yet published
            return None

        content_type = headers.get("content_type", "application/octet-stream")
        metadata = dict(headers.get("metadata") or {})
        return StoredObject(data=data, content_type=content_type, metadata=metadata)


def _load_credentials(credentials_path: Path | None) -> service_account.Credentials | None:
    if credentials_path is None:
        return None

    try:
        resolved_path = Path(credentials_path).expanduser().resolve()
        if not resolved_path.exists():
            return None
        return service_account.Credentials.from_service_account_file(str(resolved_path))
    except (FileNotFoundError, OSError) as e:
        logger.debug("Could not load GCS credentials from %s: %s", credentials_path, e)
        return None


class GCSObjectStore:
    """Google Cloud Storage backed object store."""

    def __init__(self, bucket: storage.Bucket):
        self._bucket = bucket

    @classmethod
    def from_settings(cls, settings: Settings) -> "GCSObjectStore":
        credentials = _load_credentials(settings.google_application_credentials)
        if credentials is None:
            logger.info("No service account file found; using default GCS credentials")
        client = storage.Client(
            project=settings.gcp_project_id,
            credentials=credentials,
        )
        return cls(client.bucket(settings.gcs_bucket_name))

    async def exists(self, key: str) -> bool:
        blob = self._bucket.blob(key)
        return await asyncio.to_thread(blob.exists)

    async def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> bool:
        blob = self._bucket.blob(key)
        if metadata:
            blob.metadata = dict(metadata)
        try:
            # Atomic create: prevent overwriting an existing object
            await asyncio.to_thread(
                blob.upload_from_string,
                data,
                content_type=content_type,
                if_generation_match=0,
            )
        except PreconditionFailed:
            return False
        return True

    async def get(self, key: str) -> StoredObject | None:
        return await asyncio.to_thread(self._get_sync, key)

    def _get_sync(self, key: str) -> StoredObject | None:
        blob = self._bucket.get_blob(key)
        if blob is None:
            return None
        try:
            data = blob.download_as_bytes()
        except NotFound:
            return None
        return StoredObject(
            data=data,
            content_type=blob.content_type or "application/octet-stream",
            metadata=dict(blob.metadata or {}),
        )


def build_object_store(settings: Settings) -> ObjectStore:
    """Return the object store selected by ``OBJECT_STORE_BACKEND``."""

    if settings.object_store_backend == "gcs":
        return GCSObjectStore.from_settings(settings)
    return LocalObjectStore(settings.object_store_dir)


__all__ = [
    "GCSObjectStore",
    "LocalObjectStore",
    "ObjectStore",
    "StoredObject",
    "build_object_store",
]
