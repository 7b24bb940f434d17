"""
Content stores for the raw bytes behind each version.

The database only ever holds an opaque ``content_reference``; the bytes live
in one of the stores below:

- ``LocalContentStore``: files under a root directory on local disk
- ``S3ContentStore``: objects in an S3 bucket under a key prefix

The backend is chosen by ``storage.backend`` in the configuration.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from omegaconf import DictConfig

from .errors import NotFoundError, StorageError
from .utils import ensure_directory

logger = logging.getLogger(__name__)


class ContentStore(Protocol):
    def save(self, raw: bytes, owner_id: str, version_id: str, extension: str) -> str:
        """Durably write ``raw`` and return its content reference."""
        ...

    def read(self, reference: str) -> bytes:
        """Return the bytes behind ``reference`` or raise ``NotFoundError``."""
        ...

    def delete(self, reference: str) -> None:
        """Remove the bytes behind ``reference``; missing content is not an error."""
        ...


def content_name(owner_id: str, version_id: str, extension: str) -> str:
    return f"{owner_id}_{version_id}{extension}"


class LocalContentStore:
    """Stores content as flat files named ``{owner_id}_{version_id}{ext}``."""

    def __init__(self, root: Path) -> None:
        self.root = ensure_directory(Path(root))
        logger.info("File storage root path is set to: %s", self.root)

    def _path_for(self, reference: str) -> Path:
        path = (self.root / reference).resolve()
        if path.parent != self.root.resolve():
            raise NotFoundError(f"Invalid content reference: {reference}")
        return path

    def save(self, raw: bytes, owner_id: str, version_id: str, extension: str) -> str:
        if not raw:
            raise StorageError("Refusing to store empty content")
        reference = content_name(owner_id, version_id, extension)
        path = self._path_for(reference)
        try:
            path.write_bytes(raw)
        except OSError as exc:
            raise StorageError(f"Failed to write content {reference}: {exc}") from exc
        logger.info("Saved content to %s (%d bytes)", path, len(raw))
        return reference

    def read(self, reference: str) -> bytes:
        path = self._path_for(reference)
        if not path.is_file():
            raise NotFoundError(f"Content not found: {reference}")
        return path.read_bytes()

    def delete(self, reference: str) -> None:
        if not reference:
            return
        path = self._path_for(reference)
        if not path.exists():
            logger.warning("Attempted to delete content that does not exist: %s", path)
            return
        try:
            path.unlink()
            logger.info("Deleted content: %s", path)
        except OSError:
            logger.exception("Error occurred while deleting content: %s", path)


class S3ContentStore:
    """
    Stores content as S3 objects under ``prefix``.

    The boto3 client is created lazily and picks up credentials from the
    environment in the usual way.
    """

    def __init__(self, bucket: str, prefix: str = "", client=None) -> None:
        if not bucket:
            raise StorageError("S3 bucket name is not configured")
        self.bucket = bucket
        self.prefix = prefix
        self._client = client

    def _get_client(self):
        if self._client is None:
            try:
                self._client = boto3.client("s3")
            except BotoCoreError as exc:
                raise StorageError(f"Failed to create S3 client: {exc}") from exc
        return self._client

    def _key(self, reference: str) -> str:
        return f"{self.prefix}{reference}"

    def save(self, raw: bytes, owner_id: str, version_id: str, extension: str) -> str:
        if not raw:
            raise StorageError("Refusing to store empty content")
        reference = content_name(owner_id, version_id, extension)
        key = self._key(reference)
        try:
            self._get_client().put_object(Bucket=self.bucket, Key=key, Body=raw)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"S3 upload failed for {key}: {exc}") from exc
        logger.info("Uploaded content to s3://%s/%s", self.bucket, key)
        return reference

    def read(self, reference: str) -> bytes:
        key = self._key(reference)
        try:
            response = self._get_client().get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in {"NoSuchKey", "404"}:
                raise NotFoundError(f"Content not found: {reference}") from exc
            raise StorageError(f"S3 download failed for {key}: {exc}") from exc
        return response["Body"].read()

    def delete(self, reference: str) -> None:
        if not reference:
            return
        key = self._key(reference)
        try:
            self._get_client().delete_object(Bucket=self.bucket, Key=key)
            logger.info("Deleted content s3://%s/%s", self.bucket, key)
        except (ClientError, BotoCoreError):
            logger.exception("Error occurred while deleting s3://%s/%s", self.bucket, key)


def build_content_store(settings: DictConfig, client=None) -> ContentStore:
    """Create the content store named by ``storage.backend``."""
    backend = settings.storage.backend
    if backend == "local":
        return LocalContentStore(Path(settings.storage.local_path))
    if backend == "s3":
        return S3ContentStore(settings.storage.s3_bucket, settings.storage.s3_prefix, client=client)
    raise ValueError(f"Unknown storage backend: {backend!r}")
