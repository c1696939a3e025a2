"""Blob storage backends for job input files."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Protocol

import boto3
import structlog
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import StorageError

LOGGER = structlog.get_logger(__name__)


class Storage(Protocol):
    """Minimal protocol for storage backends."""

    def get(self, key: str) -> bytes:
        """Return the bytes stored under ``key``."""

    def put(self, key: str, data: bytes, mime_type: str) -> str:
        """Persist bytes and return the object key."""

    def delete(self, key: str) -> None:
        """Remove the object stored under ``key``."""


def safe_filename(filename: str) -> str:
    safe_name = re.sub(r"[\\/]+", "_", filename).strip()
    safe_name = re.sub(r"_+", "_", safe_name)
    if not safe_name.strip("."):
        return "file"
    return safe_name


def job_file_key(organization_id: str, job_id: str, filename: str) -> str:
    """Return the deterministic storage key for a job's input file."""

    return f"{organization_id}/jobs/{job_id}/{safe_filename(filename)}"


class LocalStorage:
    """Filesystem storage used when the bucket is configured as ``local``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError("Storage key escapes the storage root", key=key)
        return path

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to read {key}: {exc}", key=key) from exc

    def put(self, key: str, data: bytes, mime_type: str) -> str:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Failed to write {key}: {exc}", key=key) from exc
        LOGGER.info("stored_local", key=key, path=str(path), size=len(data), mime_type=mime_type)
        return key

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete {key}: {exc}", key=key) from exc


class S3Storage:
    """S3 (or S3-compatible) storage."""

    def __init__(self, bucket: str, client: BaseClient) -> None:
        self.bucket = bucket
        self.client = client

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            LOGGER.error("s3_get_failed", bucket=self.bucket, key=key, error=str(exc))
            raise StorageError(f"Failed to read {key}: {exc}", key=key) from exc

    def put(self, key: str, data: bytes, mime_type: str) -> str:
        try:
            self.client.put_object(
                Bucket=self.bucket, Key=key, Body=data, ContentType=mime_type
            )
        except (BotoCoreError, ClientError) as exc:
            LOGGER.error("s3_upload_failed", bucket=self.bucket, key=key, error=str(exc))
            raise StorageError(f"Failed to write {key}: {exc}", key=key) from exc
        LOGGER.info("uploaded_s3", bucket=self.bucket, key=key, size=len(data))
        return key

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            LOGGER.error("s3_delete_failed", bucket=self.bucket, key=key, error=str(exc))
            raise StorageError(f"Failed to delete {key}: {exc}", key=key) from exc


def _s3_client(settings: Settings) -> BaseClient:
    client_kwargs: dict[str, object] = {
        "config": Config(
            signature_version="s3v4",
            connect_timeout=settings.storage_timeout_seconds,
            read_timeout=settings.storage_timeout_seconds,
            retries={"max_attempts": 3, "mode": "standard"},
        ),
        "region_name": settings.aws_region,
    }
    if settings.s3_endpoint_url:
        client_kwargs["endpoint_url"] = settings.s3_endpoint_url
    if settings.aws_access_key_id and settings.aws_secret_access_key:
        client_kwargs["aws_access_key_id"] = settings.aws_access_key_id
        client_kwargs["aws_secret_access_key"] = settings.aws_secret_access_key

    return boto3.client("s3", **client_kwargs)


def build_storage(settings: Settings) -> Storage:
    if settings.storage_is_local:
        return LocalStorage(settings.local_storage_path)
    return S3Storage(settings.aws_s3_bucket, _s3_client(settings))


__all__ = [
    "LocalStorage",
    "S3Storage",
    "Storage",
    "build_storage",
    "job_file_key",
    "safe_filename",
]
