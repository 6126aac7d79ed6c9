"""Object storage access for the export pipeline.

Two interchangeable services share one async interface:
- ``LocalStorageService`` mirrors the ``gs://bucket/key`` namespace on the
  local filesystem for development and tests.
- ``GCSStorageService`` talks to Google Cloud Storage.

Both raise ``AssetNotFoundError`` for missing objects and
``StorageUnavailableError`` for transient failures, which callers retry.
"""

import asyncio
import logging
import os
import re
import shutil
from datetime import timedelta
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import unquote, urlparse

from storyreel.config import Settings, get_settings
from storyreel.exceptions import AssetNotFoundError, StorageUnavailableError, UploadError

logger = logging.getLogger(__name__)

GCS_URI_PATTERN = re.compile(r"^gs://([^/]+)/(.+)$")
GCS_SIGNED_URL_HOSTS = {"storage.googleapis.com", "storage.cloud.google.com"}


def parse_gcs_uri(uri: str) -> tuple[str, str]:
    """Split ``gs://bucket/path`` into (bucket, path)."""
    match = GCS_URI_PATTERN.match(uri)
    if not match:
        raise ValueError(f"Invalid GCS URI format: {uri}")
    return match.group(1), match.group(2)


def is_gcs_signed_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and parsed.netloc in GCS_SIGNED_URL_HOSTS


def signed_url_to_gcs_uri(signed_url: str) -> str:
    """Transform a GCS signed URL (https://storage.googleapis.com/<bucket>/<path>?...) into gs://<bucket>/<path>."""
    parsed = urlparse(signed_url)
    parts = parsed.path.split("/")
    if len(parts) < 3 or not parts[1] or not parts[2]:
        raise ValueError(f"Error parsing signed URL {signed_url}: expected /<bucket>/<path>")
    bucket = parts[1]
    path = unquote("/".join(parts[2:]))
    return f"gs://{bucket}/{path}"


class StorageService(Protocol):
    """Interface the asset resolver and render executor depend on."""

    async def download_file(self, uri: str, local_path: str) -> str: ...

    async def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str: ...

    async def get_signed_url(self, uri: str, expiration_minutes: int | None = None) -> str: ...

    async def delete_file(self, uri: str) -> bool: ...


class LocalStorageService:
    """Local file storage for development without GCS."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.base_path = Path(self.settings.local_storage_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def get_file_path(self, uri: str) -> Path:
        """Get the on-disk path backing a gs:// URI."""
        bucket, key = parse_gcs_uri(uri)
        return self.base_path / bucket / key

    def get_uri(self, storage_key: str) -> str:
        return f"gs://{self.settings.gcs_bucket_name}/{storage_key}"

    async def download_file(self, uri: str, local_path: str) -> str:
        """Copy the stored object to local path."""
        source = self.get_file_path(uri)
        if not source.is_file():
            raise AssetNotFoundError(uri)
        await asyncio.to_thread(shutil.copyfile, source, local_path)
        return local_path

    async def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        """Upload from local path."""
        uri = self.get_uri(storage_key)
        destination = self.get_file_path(uri)
        destination.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copyfile, local_path, destination)
        return uri

    async def get_signed_url(self, uri: str, expiration_minutes: int | None = None) -> str:
        """Get download URL."""
        return self.get_file_path(uri).as_uri()

    async def delete_file(self, uri: str) -> bool:
        """Delete file."""
        path = self.get_file_path(uri)
        if path.exists():
            path.unlink()
            return True
        return False


class GCSStorageService:
    """Google Cloud Storage service for production."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        from google.api_core import exceptions as gcs_exceptions
        from google.cloud import storage

        self.settings = settings or get_settings()
        self._storage = storage
        self._errors = gcs_exceptions
        self._client: storage.Client | None = None
        self._transient_errors: tuple[type[BaseException], ...] = (
            gcs_exceptions.TooManyRequests,
            gcs_exceptions.InternalServerError,
            gcs_exceptions.BadGateway,
            gcs_exceptions.ServiceUnavailable,
            gcs_exceptions.GatewayTimeout,
            gcs_exceptions.DeadlineExceeded,
            ConnectionError,
            TimeoutError,
        )

    @property
    def client(self):
        if self._client is None:
            if self.settings.gcs_project_id:
                self._client = self._storage.Client(project=self.settings.gcs_project_id)
            else:
                self._client = self._storage.Client()
        return self._client

    def _blob(self, uri: str):
        bucket_name, key = parse_gcs_uri(uri)
        return self.client.bucket(bucket_name).blob(key)

    def get_uri(self, storage_key: str) -> str:
        return f"gs://{self.settings.gcs_bucket_name}/{storage_key}"

    async def download_file(self, uri: str, local_path: str) -> str:
        """Download a file from GCS to local path."""
        blob = self._blob(uri)
        try:
            await asyncio.to_thread(blob.download_to_filename, local_path)
        except self._errors.NotFound as e:
            _remove_partial(local_path)
            raise AssetNotFoundError(uri) from e
        except self._transient_errors as e:
            _remove_partial(local_path)
            raise StorageUnavailableError(f"GCS download of {uri} failed: {e}") from e
        return local_path

    async def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        """Upload a local file to GCS and return its gs:// URI."""
        uri = self.get_uri(storage_key)
        blob = self._blob(uri)
        try:
            if content_type:
                await asyncio.to_thread(blob.upload_from_filename, local_path, content_type=content_type)
            else:
                await asyncio.to_thread(blob.upload_from_filename, local_path)
        except self._transient_errors as e:
            raise StorageUnavailableError(f"GCS upload to {uri} failed: {e}") from e
        except self._errors.GoogleAPICallError as e:
            raise UploadError(f"GCS upload to {uri} failed: {e}") from e
        return uri

    async def get_signed_url(self, uri: str, expiration_minutes: int | None = None) -> str:
        """Generate a V4 signed download URL."""
        minutes = expiration_minutes or self.settings.signed_url_expiration_minutes
        blob = self._blob(uri)
        return await asyncio.to_thread(
            blob.generate_signed_url,
            version="v4",
            expiration=timedelta(minutes=minutes),
            method="GET",
        )

    async def delete_file(self, uri: str) -> bool:
        """Delete a file from GCS. Returns False if it did not exist."""
        blob = self._blob(uri)
        try:
            await asyncio.to_thread(blob.delete)
        except self._errors.NotFound:
            return False
        return True


def _remove_partial(local_path: str) -> None:
    try:
        os.remove(local_path)
    except FileNotFoundError:
        pass


def create_storage_service(settings: Optional[Settings] = None) -> StorageService:
    """Use LocalStorageService or GCSStorageService based on config."""
    settings = settings or get_settings()
    if settings.use_local_storage:
        return LocalStorageService(settings)
    return GCSStorageService(settings)
