"""Asset resolution for one export invocation.

Maps every clip's ``sourceUri`` to a local file plus media metadata:
- ``gs://bucket/key`` and GCS signed URLs are fetched through the storage
  service, retried on transient failures
- other ``http(s)://`` URLs are streamed with httpx
- ``file://``, absolute paths and ``local://<asset-id>`` under the local
  storage root are used in place

Each URI is fetched at most once per resolver, even when requested
concurrently. Fetched bytes live in a temporary directory that is removed
when the resolver is closed, whatever the outcome.
"""

import asyncio
import hashlib
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Awaitable, Callable, Iterable, Optional
from urllib.parse import unquote, urlparse

import httpx

from storyreel.config import Settings, get_settings
from storyreel.exceptions import (
    AssetFetchError,
    AssetNotFoundError,
    StorageUnavailableError,
    StoryreelError,
)
from storyreel.services.storage_service import (
    StorageService,
    create_storage_service,
    is_gcs_signed_url,
    parse_gcs_uri,
    signed_url_to_gcs_uri,
)
from storyreel.utils.media_info import MediaInfo, guess_mime_type, probe_media
from storyreel.utils.retry import RetryExhaustedError, RetryPolicy, with_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedAsset:
    """A locally accessible copy of one referenced media object."""

    uri: str
    local_path: str
    mime_type: str = "application/octet-stream"
    duration_s: float | None = None
    width: int | None = None
    height: int | None = None
    has_video: bool = False
    has_audio: bool = False
    is_image: bool = False
    # False for the local fast path (no copy was made)
    fetched: bool = True

    @classmethod
    def from_media_info(cls, uri: str, local_path: str, info: MediaInfo, fetched: bool) -> "ResolvedAsset":
        return cls(
            uri=uri,
            local_path=local_path,
            mime_type=info.mime_type,
            duration_s=info.duration_s,
            width=info.width,
            height=info.height,
            has_video=info.has_video,
            has_audio=info.has_audio,
            is_image=info.is_image,
            fetched=fetched,
        )


class AssetResolver:
    """Per-invocation resolver with an in-memory, URI-keyed cache."""

    def __init__(
        self,
        store: Optional[StorageService] = None,
        *,
        settings: Optional[Settings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_concurrency: Optional[int] = None,
        probe: Callable[[str], MediaInfo] = probe_media,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self._store = store
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.max_concurrency = max_concurrency or self.settings.asset_fetch_concurrency
        self._probe = probe
        self._http_client = http_client
        self._sleep = sleep

        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._tasks: dict[str, asyncio.Task[ResolvedAsset]] = {}
        self.work_dir: str | None = None

    @property
    def store(self) -> StorageService:
        if self._store is None:
            self._store = create_storage_service(self.settings)
        return self._store

    async def __aenter__(self) -> "AssetResolver":
        self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def open(self) -> None:
        """Create the temporary directory that holds fetched bytes."""
        if self.work_dir is None:
            self.work_dir = tempfile.mkdtemp(prefix=f"{self.settings.temp_dir_prefix}assets_")

    async def close(self) -> None:
        """Cancel outstanding fetches and remove every fetched file."""
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        # Retrieve exceptions so failed tasks are not reported as never awaited
        for task in self._tasks.values():
            if task.done() and not task.cancelled():
                task.exception()
        self._tasks.clear()

        if self.work_dir:
            shutil.rmtree(self.work_dir, ignore_errors=True)
            logger.info(f"[RESOLVE] Released asset workspace {self.work_dir}")
            self.work_dir = None

    async def resolve(self, uri: str) -> ResolvedAsset:
        """Resolve one URI, reusing an earlier or in-flight resolution."""
        if self.work_dir is None:
            raise RuntimeError("AssetResolver must be opened before resolving")

        task = self._tasks.get(uri)
        if task is None:
            task = asyncio.create_task(self._resolve_uncached(uri))
            self._tasks[uri] = task
        else:
            logger.debug(f"[RESOLVE] Cache hit: {uri}")
        return await asyncio.shield(task)

    async def resolve_all(self, uris: Iterable[str]) -> dict[str, ResolvedAsset]:
        """Resolve distinct URIs concurrently (bounded by max_concurrency)."""
        unique = list(dict.fromkeys(uris))
        logger.info(f"[RESOLVE] Resolving {len(unique)} assets (concurrency={self.max_concurrency})")
        resolved = await asyncio.gather(*(self.resolve(uri) for uri in unique))
        return dict(zip(unique, resolved))

    async def _resolve_uncached(self, uri: str) -> ResolvedAsset:
        local_path = self._local_path_for(uri)
        if local_path is not None:
            if not os.path.isfile(local_path):
                raise AssetNotFoundError(uri)
            info = await self._probe_safely(local_path)
            return ResolvedAsset.from_media_info(uri, local_path, info, fetched=False)

        parsed = urlparse(uri)
        destination = self._workspace_path(uri)

        if parsed.scheme == "gs" or is_gcs_signed_url(uri):
            gcs_uri = self._gcs_uri_for(uri)
            await self._fetch_with_retry(uri, lambda: self.store.download_file(gcs_uri, destination))
        elif parsed.scheme in ("http", "https"):
            await self._fetch_with_retry(uri, lambda: self._download_http(uri, destination))
        else:
            raise AssetNotFoundError(uri)

        info = await self._probe_safely(destination)
        logger.info(
            f"[RESOLVE] Fetched {uri} -> {os.path.basename(destination)} "
            f"({info.mime_type}, duration={info.duration_s})"
        )
        return ResolvedAsset.from_media_info(uri, destination, info, fetched=True)

    async def _fetch_with_retry(self, uri: str, download: Callable[[], Awaitable[str]]) -> None:
        async def attempt() -> str:
            async with self._semaphore:
                return await download()

        def on_retry(attempt_number: int, error: BaseException, delay: float) -> None:
            logger.warning(
                f"[RESOLVE] Fetch attempt {attempt_number} for {uri} failed: {error}. "
                f"Retrying in {delay:.2f}s"
            )

        try:
            await with_retry(
                attempt,
                policy=self.retry_policy,
                retry_on=(StorageUnavailableError,),
                on_retry=on_retry,
                sleep=self._sleep,
            )
        except RetryExhaustedError as e:
            raise AssetFetchError(uri, e.attempts, str(e.last_error)) from e

    async def _download_http(self, url: str, local_path: str) -> str:
        client = self._http_client or httpx.AsyncClient(
            timeout=self.settings.asset_fetch_timeout_s,
            follow_redirects=True,
        )
        try:
            async with client.stream("GET", url) as response:
                if response.status_code in (404, 410):
                    raise AssetNotFoundError(url)
                if response.status_code == 429 or response.status_code >= 500:
                    raise StorageUnavailableError(f"HTTP {response.status_code} fetching {url}")
                if response.status_code >= 400:
                    raise AssetFetchError(url, 1, f"HTTP {response.status_code}")
                with open(local_path, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
        except httpx.TransportError as e:
            raise StorageUnavailableError(f"Network error fetching {url}: {e}") from e
        except StoryreelError:
            if os.path.exists(local_path):
                os.remove(local_path)
            raise
        finally:
            if self._http_client is None:
                await client.aclose()
        return local_path

    async def _probe_safely(self, local_path: str) -> MediaInfo:
        try:
            return await asyncio.to_thread(self._probe, local_path)
        except RuntimeError as e:
            logger.warning(f"[RESOLVE] Could not read media info for {local_path}: {e}")
            return MediaInfo(mime_type=guess_mime_type(local_path))

    def _local_path_for(self, uri: str) -> str | None:
        """Path for references that need no fetch, or None.

        Local references must stay inside ``local_storage_path``.
        """
        parsed = urlparse(uri)
        if parsed.scheme == "file":
            candidate = Path(unquote(parsed.path))
        elif parsed.scheme == "local":
            asset_id = (parsed.netloc + parsed.path).lstrip("/")
            candidate = Path(self.settings.local_storage_path) / asset_id
        elif not parsed.scheme and os.path.isabs(uri):
            candidate = Path(uri)
        else:
            return None

        root = Path(self.settings.local_storage_path).resolve()
        if not candidate.resolve().is_relative_to(root):
            logger.warning(f"[RESOLVE] Rejected local reference outside {root}: {uri}")
            raise AssetNotFoundError(uri)
        return str(candidate)

    def _gcs_uri_for(self, uri: str) -> str:
        try:
            gcs_uri = uri if urlparse(uri).scheme == "gs" else signed_url_to_gcs_uri(uri)
            parse_gcs_uri(gcs_uri)
        except ValueError as e:
            logger.warning(f"[RESOLVE] Malformed storage reference {uri}: {e}")
            raise AssetNotFoundError(uri) from e
        return gcs_uri

    def _workspace_path(self, uri: str) -> str:
        assert self.work_dir is not None
        digest = hashlib.sha1(uri.encode("utf-8")).hexdigest()[:16]
        suffix = PurePosixPath(urlparse(uri).path).suffix.lower()
        return os.path.join(self.work_dir, f"{digest}{suffix}")
