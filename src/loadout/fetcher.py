from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable

from .archive import is_zip, read_metadata
from .cache import ArtifactCache, DiskCache
from .config import DEFAULT_CONCURRENCY
from .errors import CacheError, FetchCancelledError, FetchError, LoadoutError, MetadataError
from .lockfile import Artifact
from .metadata import Metadata
from .sources import ProgressCallback, SourceDispatcher, verify_integrity

logger = logging.getLogger(__name__)

# (index, artifact, bytes_so_far, total)
FetchProgress = Callable[[int, Artifact, int, int], None]


@dataclass(frozen=True)
class DownloadResult:
    artifact: Artifact
    index: int
    data: bytes | None = None
    metadata: Metadata | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.data is not None


def _load_metadata(data: bytes) -> Metadata:
    try:
        meta = read_metadata(data)
    except MetadataError as e:
        raise MetadataError(f"failed to read metadata.toml from zip: {e}") from e
    try:
        meta.validate()
    except MetadataError as e:
        raise MetadataError(f"metadata validation failed: {e}") from e
    return meta


class ArtifactFetcher:
    """Cache-aware artifact download, singly or with a pool of worker threads."""

    def __init__(
        self,
        sources: SourceDispatcher,
        cache: DiskCache,
        *,
        memory: ArtifactCache | None = None,
    ) -> None:
        self.sources = sources
        self.cache = cache
        self.memory = memory if memory is not None else ArtifactCache()

    def _cached(self, artifact: Artifact) -> tuple[bytes, Metadata] | None:
        data = self.memory.get(artifact.key)
        from_disk = data is None
        if data is None:
            data = self.cache.load_asset(artifact.name, artifact.version)
        if data is None:
            return None
        try:
            meta = _load_metadata(data)
        except LoadoutError as e:
            # Any failure reading a cached archive means the entry is corrupt.
            if from_disk:
                path = self.cache.asset_path(artifact.name, artifact.version)
                logger.warning("removing corrupt cache entry %s: %s", path, e)
                path.unlink(missing_ok=True)
            else:
                logger.debug("ignoring cached %s: %s", artifact.key, e)
            return None
        self.memory.put(artifact.key, data)
        return data, meta

    def _accept(self, artifact: Artifact, data: bytes) -> tuple[bytes, Metadata]:
        if not is_zip(data):
            raise FetchError("downloaded file is not a valid zip archive")
        meta = _load_metadata(data)
        try:
            self.cache.save_asset(artifact.name, artifact.version, data)
        except (CacheError, OSError) as e:
            logger.warning("could not cache %s: %s", artifact.key, e)
        self.memory.put(artifact.key, data)
        return data, meta

    def fetch_one(self, artifact: Artifact) -> tuple[bytes, Metadata]:
        hit = self._cached(artifact)
        if hit is not None:
            return hit
        logger.info("fetching %s from %s source", artifact.key, artifact.source_type)
        return self._accept(artifact, self.sources.fetch(artifact))

    def fetch_one_with_progress(
        self,
        artifact: Artifact,
        callback: ProgressCallback | None = None,
    ) -> tuple[bytes, Metadata]:
        hit = self._cached(artifact)
        if hit is not None:
            if callback is not None:
                callback(len(hit[0]), len(hit[0]))
            return hit

        logger.info("fetching %s from %s source", artifact.key, artifact.source_type)
        if artifact.source_http is not None:
            data = self.sources.http.download_with_progress(artifact.source_http.url, callback)
            verify_integrity(data, artifact.source_http)
        else:
            data = self.sources.fetch(artifact)
            if callback is not None:
                callback(len(data), len(data))
        return self._accept(artifact, data)

    def fetch_many(
        self,
        artifacts: list[Artifact],
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        cancel_event: threading.Event | None = None,
        progress: FetchProgress | None = None,
    ) -> list[DownloadResult]:
        """
        Fetch ``artifacts`` on ``concurrency`` worker threads.

        The returned list is aligned with the input: ``results[i]`` belongs to
        ``artifacts[i]`` whatever order the downloads finish in. A failure is recorded
        on its own result and never stops the other downloads. Once ``cancel_event`` is
        set, items not yet started are reported as ``FetchCancelledError``.
        """
        if concurrency <= 0:
            concurrency = DEFAULT_CONCURRENCY
        results: list[DownloadResult | None] = [None] * len(artifacts)
        if not artifacts:
            return []

        tasks: queue.Queue[tuple[int, Artifact]] = queue.Queue()
        for i, a in enumerate(artifacts):
            tasks.put((i, a))

        def work() -> None:
            while True:
                try:
                    index, artifact = tasks.get_nowait()
                except queue.Empty:
                    return
                if cancel_event is not None and cancel_event.is_set():
                    results[index] = DownloadResult(artifact, index, error=FetchCancelledError())
                    continue

                callback: ProgressCallback | None = None
                if progress is not None:
                    callback = lambda cur, total, i=index, a=artifact: progress(i, a, cur, total)  # noqa: E731
                try:
                    data, meta = self.fetch_one_with_progress(artifact, callback)
                except (LoadoutError, OSError) as e:
                    logger.debug("fetch failed for %s: %s", artifact.key, e)
                    results[index] = DownloadResult(artifact, index, error=e)
                except Exception as e:
                    # The worker must survive so later items are still fetched.
                    logger.warning("unexpected error fetching %s", artifact.key, exc_info=True)
                    err = FetchError(f"{artifact.key}: {e}")
                    err.__cause__ = e
                    results[index] = DownloadResult(artifact, index, error=err)
                else:
                    results[index] = DownloadResult(artifact, index, data=data, metadata=meta)

        workers = [
            threading.Thread(target=work, name=f"loadout-fetch-{n}", daemon=True)
            for n in range(min(concurrency, len(artifacts)))
        ]
        for t in workers:
            t.start()
        for t in workers:
            t.join()

        return [r if r is not None else DownloadResult(artifacts[i], i, error=FetchCancelledError()) for i, r in enumerate(results)]
