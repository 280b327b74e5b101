from __future__ import annotations

import hashlib
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Protocol

import httpx
from filelock import FileLock, Timeout

from .archive import create_zip, is_zip
from .cache import DiskCache
from .client import USER_AGENT, origin_of
from .config import DEFAULT_LOCK_TIMEOUT_S
from .errors import FetchError, IntegrityError, LockTimeoutError
from .git import GitClient, is_commit_sha
from .lockfile import Artifact, HTTPSource
from .metadata import METADATA_FILENAME

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32 * 1024

ProgressCallback = Callable[[int, int], None]


class SourceHandler(Protocol):
    def fetch(self, artifact: Artifact) -> bytes:
        ...


def verify_integrity(data: bytes, source: HTTPSource) -> None:
    """Check declared size and every declared hash, then zip-ness."""
    if source.size and source.size > 0 and len(data) != source.size:
        raise IntegrityError(f"size mismatch: expected {source.size} bytes, got {len(data)} bytes")
    if not source.hashes:
        raise IntegrityError("no hashes provided for verification")
    for algo, expected in sorted(source.hashes.items()):
        if algo not in ("sha256", "sha512"):
            raise IntegrityError(f"unsupported hash algorithm: {algo}")
        actual = hashlib.new(algo, data).hexdigest()
        if actual.lower() != expected.strip().lower():
            raise IntegrityError(f"{algo} mismatch: expected {expected}, got {actual}")
    if not is_zip(data):
        raise IntegrityError("downloaded file is not a valid zip archive")


class HTTPSourceHandler:
    def __init__(
        self,
        http: httpx.Client | None = None,
        *,
        token: str | None = None,
        auth_origin: str | None = None,
        timeout_s: float = 300.0,
    ) -> None:
        self._http = http or httpx.Client(timeout=timeout_s, follow_redirects=True)
        self.token = token
        self.auth_origin = origin_of(auth_origin) if auth_origin else None

    def close(self) -> None:
        self._http.close()

    def _headers(self, url: str) -> dict[str, str]:
        headers = {"User-Agent": USER_AGENT}
        # The token is only sent back to the registry that issued it.
        if self.token and self.auth_origin and origin_of(url) == self.auth_origin:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def get(self, url: str) -> bytes:
        try:
            resp = self._http.get(url, headers=self._headers(url))
        except httpx.HTTPError as e:
            raise FetchError(f"failed to download {url}: {e}") from e
        if resp.status_code != 200:
            raise FetchError(f"HTTP {resp.status_code}: failed to download {url}")
        return resp.content

    def fetch(self, artifact: Artifact) -> bytes:
        source = artifact.source_http
        if source is None:
            raise FetchError(f"{artifact.key} does not have source-http")
        data = self.get(source.url)
        verify_integrity(data, source)
        return data

    def download_with_progress(self, url: str, callback: ProgressCallback | None = None) -> bytes:
        """Stream ``url`` in fixed-size chunks, reporting ``(bytes_so_far, total)``; total is -1 if unknown."""
        chunks: list[bytes] = []
        current = 0
        try:
            with self._http.stream("GET", url, headers=self._headers(url)) as resp:
                if resp.status_code != 200:
                    raise FetchError(f"HTTP {resp.status_code}: failed to download {url}")
                length = resp.headers.get("content-length")
                total = int(length) if length and length.isdigit() else -1
                for chunk in resp.iter_bytes(CHUNK_SIZE):
                    if not chunk:
                        continue
                    chunks.append(chunk)
                    current += len(chunk)
                    if callback is not None:
                        callback(current, total)
        except httpx.HTTPError as e:
            raise FetchError(f"failed to download {url}: {e}") from e
        return b"".join(chunks)


class PathSourceHandler:
    def __init__(self, lock_file_dir: Path | None = None) -> None:
        self.lock_file_dir = lock_file_dir

    def resolve(self, raw: str) -> Path:
        if raw.startswith("~"):
            return Path(raw).expanduser()
        p = Path(raw)
        if p.is_absolute():
            return p
        if self.lock_file_dir is None:
            raise FetchError(f"relative path {raw!r} requires the lock file directory to be known")
        return self.lock_file_dir / p

    def fetch(self, artifact: Artifact) -> bytes:
        source = artifact.source_path
        if source is None:
            raise FetchError(f"{artifact.key} does not have source-path")
        path = self.resolve(source.path)
        if not path.exists():
            raise FetchError(f"path not found: {path}")
        if path.is_dir():
            return create_zip(path)
        data = path.read_bytes()
        if not is_zip(data):
            raise IntegrityError(f"file is not a valid zip archive: {path}")
        return data


class GitSourceHandler:
    def __init__(
        self,
        git: GitClient,
        cache: DiskCache,
        *,
        lock_timeout_s: float = DEFAULT_LOCK_TIMEOUT_S,
    ) -> None:
        self.git = git
        self.cache = cache
        self.lock_timeout_s = lock_timeout_s

    @contextmanager
    def _locked(self, url: str) -> Iterator[Path]:
        repo = self.cache.git_repo_path(url)
        lock_path = self.cache.git_lock_path(url)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(lock_path), timeout=self.lock_timeout_s)
        try:
            lock.acquire()
        except Timeout as e:
            raise LockTimeoutError(
                f"could not acquire lock {lock_path} for {url} within {self.lock_timeout_s:g}s"
            ) from e
        try:
            yield repo
        finally:
            lock.release()

    def _clone_or_update(self, url: str, repo: Path) -> None:
        if (repo / ".git").is_dir():
            logger.debug("updating cached clone of %s", url)
            self.git.fetch(repo)
        else:
            logger.debug("cloning %s into %s", url, repo)
            self.git.clone(url, repo)

    def fetch(self, artifact: Artifact) -> bytes:
        source = artifact.source_git
        if source is None:
            raise FetchError(f"{artifact.key} does not have source-git")

        with self._locked(source.url) as repo:
            self._clone_or_update(source.url, repo)
            self.git.checkout(repo, source.ref)

            search = repo / source.subdirectory if source.subdirectory else repo
            if not search.is_dir():
                raise FetchError(f"subdirectory not found: {source.subdirectory}")

            zips = sorted(p for p in search.iterdir() if p.is_file() and p.name.lower().endswith(".zip"))
            if zips:
                chosen = zips[0]
                if len(zips) > 1:
                    chosen = next((p for p in zips if p.name.startswith(artifact.name)), zips[0])
                data = chosen.read_bytes()
                if not is_zip(data):
                    raise IntegrityError(f"file is not a valid zip archive: {chosen.name}")
                return data

            if (search / METADATA_FILENAME).is_file():
                return create_zip(search)

        raise FetchError(f"no zip files or exploded artifact directory found in {source.subdirectory or '.'}")

    def resolve_ref(self, url: str, ref: str) -> str:
        """Resolve a branch, tag or short id to a full commit id using the local clone."""
        if is_commit_sha(ref):
            return ref.lower()
        with self._locked(url) as repo:
            self._clone_or_update(url, repo)
            sha = self.git.rev_parse(repo, ref)
        if not is_commit_sha(sha):
            raise FetchError(f"invalid commit SHA for {ref}: {sha!r}")
        return sha.lower()


class SourceDispatcher:
    """Routes an artifact to the handler for its declared source."""

    def __init__(
        self,
        *,
        http: HTTPSourceHandler,
        path: PathSourceHandler,
        git: GitSourceHandler | None = None,
    ) -> None:
        self.http = http
        self.path = path
        self.git = git

    def handler_for(self, artifact: Artifact) -> SourceHandler:
        kind = artifact.source_type
        if kind == "http":
            return self.http
        if kind == "path":
            return self.path
        if kind == "git":
            if self.git is None:
                raise FetchError(f"{artifact.key}: git sources are not configured")
            return self.git
        raise FetchError(f"{artifact.key}: no source specified")

    def fetch(self, artifact: Artifact) -> bytes:
        return self.handler_for(artifact).fetch(artifact)
