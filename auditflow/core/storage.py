"""Organization-scoped file storage for uploads and generated exports."""

from __future__ import annotations

import mimetypes
import re
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Protocol
from uuid import uuid4

import boto3
import structlog
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from .config import Settings
from .exceptions import SourceMissing, StorageError, StorageScopeError

LOGGER = structlog.get_logger(__name__)

UPLOAD_AREA = "imports"
EXPORT_AREA = "exports"

_MISSING_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


@dataclass(frozen=True, slots=True)
class StoredFile:
    """Reference to a persisted object."""

    key: str
    size: int
    content_type: str


class FileStorage(Protocol):
    """Minimal protocol for storage backends."""

    def put(self, key: str, data: bytes, *, content_type: str | None = None) -> StoredFile:
        """Persist bytes and return a reference."""

    def open(self, key: str) -> BinaryIO:
        """Return a readable binary stream for ``key``."""

    def read(self, key: str) -> bytes:
        """Return the full contents of ``key``."""

    def delete(self, key: str) -> bool:
        """Remove ``key``; return ``False`` when it did not exist."""

    def exists(self, key: str) -> bool:
        """Return ``True`` when ``key`` is stored."""


def sanitize_filename(filename: str) -> str:
    """Return a flat, path-safe file name."""

    safe_name = re.sub(r"[\\/]+", "_", filename or "").strip()
    safe_name = re.sub(r"[^A-Za-z0-9._-]+", "_", safe_name)
    safe_name = re.sub(r"_+", "_", safe_name).strip("._")
    return safe_name or "file"


def organization_prefix(organization_id: int) -> str:
    return f"org-{int(organization_id)}"


def organization_key(organization_id: int, area: str, filename: str) -> str:
    """Return a unique object key under the organization's prefix."""

    safe_name = sanitize_filename(filename)
    return f"{organization_prefix(organization_id)}/{area}/{uuid4().hex}-{safe_name}"


def ensure_scoped(organization_id: int, key: str) -> str:
    """Return ``key`` if it lives under the organization's prefix."""

    candidate = PurePosixPath(str(key or "").lstrip("/"))
    parts = candidate.parts
    if not parts or parts[0] != organization_prefix(organization_id) or ".." in parts:
        raise StorageScopeError(
            "Storage key is outside the organization scope",
            {"organization_id": organization_id, "key": key},
        )
    return str(candidate)


def determine_content_type(filename: str, content_type: str | None = None) -> str:
    """Infer a best-effort content type for stored objects."""

    return content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"


class LocalFileStorage:
    """Filesystem storage rooted at a single directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageScopeError("Storage key escapes the storage root", {"key": key})
        return path

    def put(self, key: str, data: bytes, *, content_type: str | None = None) -> StoredFile:
        destination = self._path(key)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(data)
        except OSError as exc:
            LOGGER.error("local_store_failed", key=key, error=str(exc))
            raise StorageError("Could not write file", {"key": key, "error": str(exc)}) from exc
        LOGGER.info("stored_local", key=key, path=str(destination))
        return StoredFile(
            key=key, size=len(data), content_type=determine_content_type(key, content_type)
        )

    def open(self, key: str) -> BinaryIO:
        path = self._path(key)
        if not path.is_file():
            raise SourceMissing("Stored file not found", {"key": key})
        try:
            return path.open("rb")
        except OSError as exc:
            raise StorageError("Could not open file", {"key": key, "error": str(exc)}) from exc

    def read(self, key: str) -> bytes:
        with self.open(key) as handle:
            return handle.read()

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as exc:
            LOGGER.error("local_delete_failed", key=key, error=str(exc))
            raise StorageError("Could not delete file", {"key": key, "error": str(exc)}) from exc
        return True

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()


class S3FileStorage:
    """S3-backed storage using a single bucket."""

    def __init__(self, bucket: str, client: BaseClient) -> None:
        self.bucket = bucket
        self.client = client

    def put(self, key: str, data: bytes, *, content_type: str | None = None) -> StoredFile:
        resolved_content_type = determine_content_type(key, content_type)
        try:
            self.client.upload_fileobj(
                Fileobj=BytesIO(data),
                Bucket=self.bucket,
                Key=key,
                ExtraArgs={"ContentType": resolved_content_type},
            )
        except (BotoCoreError, NoCredentialsError, ClientError) as exc:
            LOGGER.error("s3_upload_failed", key=key, error=str(exc))
            raise StorageError("S3 upload failed", {"key": key, "error": str(exc)}) from exc
        LOGGER.info("uploaded_s3", bucket=self.bucket, key=key)
        return StoredFile(key=key, size=len(data), content_type=resolved_content_type)

    def open(self, key: str) -> BinaryIO:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in _MISSING_CODES:
                raise SourceMissing("Stored file not found", {"key": key}) from exc
            raise StorageError("S3 download failed", {"key": key, "error": str(exc)}) from exc
        except BotoCoreError as exc:
            raise StorageError("S3 download failed", {"key": key, "error": str(exc)}) from exc
        return response["Body"]

    def read(self, key: str) -> bytes:
        return self.open(key).read()

    def delete(self, key: str) -> bool:
        if not self.exists(key):
            return False
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError("S3 delete failed", {"key": key, "error": str(exc)}) from exc
        return True

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in _MISSING_CODES:
                return False
            raise StorageError("S3 lookup failed", {"key": key, "error": str(exc)}) from exc
        except BotoCoreError as exc:
            raise StorageError("S3 lookup failed", {"key": key, "error": str(exc)}) from exc
        return True


def _s3_client(settings: Settings) -> BaseClient:
    client_kwargs: dict[str, object] = {
        "config": Config(signature_version="s3v4", s3={"addressing_style": "virtual"}),
        "region_name": settings.aws_region,
    }
    if settings.aws_access_key_id and settings.aws_secret_access_key:
        client_kwargs["aws_access_key_id"] = settings.aws_access_key_id
        client_kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
    return boto3.client("s3", **client_kwargs)


def build_storage(settings: Settings) -> FileStorage:
    """Return local storage when the bucket is ``local``, S3 otherwise."""

    if settings.aws_s3_bucket.lower() == "local":
        return LocalFileStorage(settings.local_storage_path)
    return S3FileStorage(settings.aws_s3_bucket, _s3_client(settings))


__all__ = [
    "EXPORT_AREA",
    "FileStorage",
    "LocalFileStorage",
    "S3FileStorage",
    "StoredFile",
    "UPLOAD_AREA",
    "build_storage",
    "determine_content_type",
    "ensure_scoped",
    "organization_key",
    "organization_prefix",
    "sanitize_filename",
]
