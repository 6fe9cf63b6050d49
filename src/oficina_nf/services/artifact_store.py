from __future__ import annotations

import base64
import io
import logging
import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from minio import Minio

from oficina_nf.config import STORAGE_PREFIX, StorageSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredArtifact:
    backend: str
    location: str


class ArtifactStore(Protocol):
    backend: str

    def save(self, content: bytes | str, name: str) -> StoredArtifact: ...


def _to_bytes(content: bytes | str) -> bytes:
    """Raw bytes pass through; text is taken as base64."""
    if isinstance(content, bytes | bytearray):
        return bytes(content)
    if isinstance(content, str):
        return base64.b64decode(content)
    raise TypeError(f"Unsupported artifact content type: {type(content).__name__}")


def _object_key(name: str) -> str:
    if not name or "/" in name or "\\" in name or name in (".", ".."):
        raise ValueError(f"Invalid artifact name: {name!r}")
    return f"{STORAGE_PREFIX}/{name}"


class LocalArtifactStore:
    """Documents under ``<root>/storage/``; locations are root-relative keys."""

    backend = "local"

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    @property
    def directory(self) -> Path:
        return self.root / STORAGE_PREFIX

    def save(self, content: bytes | str, name: str) -> StoredArtifact:
        key = _object_key(name)
        data = _to_bytes(content)
        path = self.root / key
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)
        logger.debug("Stored %s (%d bytes)", key, len(data))
        return StoredArtifact(backend=self.backend, location=key)

    def path_for(self, location: str) -> Path:
        return self.root / location

    def list_files(self) -> list[str]:
        """Locations of every stored document, sorted (used by backups)."""
        if not self.directory.is_dir():
            return []
        return sorted(
            f"{STORAGE_PREFIX}/{p.name}"
            for p in self.directory.iterdir()
            if p.is_file() and not p.name.startswith(".")
        )


class S3ArtifactStore:
    """Documents in an S3-compatible bucket under the ``storage/`` prefix."""

    backend = "s3"

    def __init__(self, client: Minio, bucket: str) -> None:
        self.client = client
        self.bucket = bucket

    def save(self, content: bytes | str, name: str) -> StoredArtifact:
        key = _object_key(name)
        data = _to_bytes(content)
        content_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
        self.client.put_object(
            self.bucket,
            key,
            io.BytesIO(data),
            length=len(data),
            content_type=content_type,
        )
        logger.debug("Uploaded s3://%s/%s (%d bytes)", self.bucket, key, len(data))
        return StoredArtifact(backend=self.backend, location=key)


def build_artifact_store(settings: StorageSettings) -> LocalArtifactStore | S3ArtifactStore:
    """Pick the storage backend from configuration; callers never choose."""
    if settings.provider == "s3":
        if not settings.bucket:
            raise ValueError("S3_BUCKET is required when STORAGE_PROVIDER=s3")
        client = Minio(
            settings.endpoint,
            access_key=settings.access_key,
            secret_key=settings.secret_key,
            region=settings.region,
            secure=settings.secure,
        )
        return S3ArtifactStore(client, settings.bucket)
    return LocalArtifactStore(settings.root)
