from __future__ import annotations

import hashlib
import json
import logging
import shutil
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator

from .archive import is_zip
from .errors import CacheError

logger = logging.getLogger(__name__)

ETAG_MAX_AGE = timedelta(days=7)

ASSETS_DIR = "assets"
GIT_REPOS_DIR = "git-repos"
LOCKFILES_DIR = "lockfiles"
TRACKER_DIR = "installed-state"


def url_hash(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]


def _safe_name(name: str) -> str:
    # Only the last path component is used so a crafted name cannot escape the cache.
    base = Path(name.replace("\\", "/")).name
    if base in ("", ".", ".."):
        raise CacheError(f"invalid artifact name for cache: {name!r}")
    return base


@dataclass(frozen=True)
class ETagEntry:
    url: str
    etag: str
    date: datetime


class DiskCache:
    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()

    @property
    def assets_dir(self) -> Path:
        return self.root / ASSETS_DIR

    @property
    def git_repos_dir(self) -> Path:
        return self.root / GIT_REPOS_DIR

    @property
    def lockfiles_dir(self) -> Path:
        return self.root / LOCKFILES_DIR

    @property
    def tracker_dir(self) -> Path:
        return self.root / TRACKER_DIR

    def ensure_dirs(self) -> None:
        for d in (self.root, self.assets_dir, self.git_repos_dir, self.lockfiles_dir, self.tracker_dir):
            try:
                d.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise CacheError(f"failed to create cache directory {d}: {e}") from e

    # -- artifact archives ------------------------------------------------

    def asset_path(self, name: str, version: str) -> Path:
        return self.assets_dir / _safe_name(name) / f"{_safe_name(version)}.zip"

    def load_asset(self, name: str, version: str) -> bytes | None:
        """
        Return cached archive bytes, or None on a miss.

        A cached entry that is not a readable zip is deleted and reported as a miss.
        """
        path = self.asset_path(name, version)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("cannot read cached archive %s: %s", path, e)
            return None

        if not is_zip(data):
            logger.warning("removing corrupt cache entry %s", path)
            path.unlink(missing_ok=True)
            return None
        logger.debug("cache hit %s@%s", name, version)
        return data

    def save_asset(self, name: str, version: str, data: bytes) -> Path:
        if not is_zip(data):
            raise CacheError(f"refusing to cache {name}@{version}: not a valid zip file")
        path = self.asset_path(name, version)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)
        return path

    def clear_assets(self) -> None:
        if self.assets_dir.exists():
            shutil.rmtree(self.assets_dir)

    # -- git clones -------------------------------------------------------

    def git_repo_path(self, url: str) -> Path:
        return self.git_repos_dir / url_hash(url)

    def git_lock_path(self, url: str) -> Path:
        # Kept next to the clone, never inside it, so git never sees it.
        return self.git_repos_dir / f"{url_hash(url)}.lock"

    # -- remote lock file + etag -----------------------------------------

    def lock_file_path(self, url: str) -> Path:
        return self.lockfiles_dir / f"{url_hash(url)}.lock"

    def etag_path(self, url: str) -> Path:
        return self.lockfiles_dir / f"{url_hash(url)}.etag.json"

    def load_etag(self, url: str, *, now: datetime | None = None) -> str | None:
        path = self.etag_path(url)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            entry = ETagEntry(url=raw["url"], etag=raw["etag"], date=datetime.fromisoformat(raw["date"]))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("ignoring unreadable etag cache %s: %s", path, e)
            return None

        current = now or datetime.now(timezone.utc)
        date = entry.date if entry.date.tzinfo else entry.date.replace(tzinfo=timezone.utc)
        if current - date > ETAG_MAX_AGE:
            return None
        return entry.etag or None

    def save_etag(self, url: str, etag: str, *, now: datetime | None = None) -> None:
        path = self.etag_path(url)
        path.parent.mkdir(parents=True, exist_ok=True)
        date = now or datetime.now(timezone.utc)
        payload = {"url": url, "etag": etag, "date": date.isoformat()}
        path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")

    def save_lock_file(self, url: str, data: bytes) -> None:
        path = self.lock_file_path(url)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def load_lock_file(self, url: str) -> bytes | None:
        path = self.lock_file_path(url)
        if not path.exists():
            return None
        return path.read_bytes()

    def invalidate_lock_file(self, url: str) -> None:
        for path in (self.lock_file_path(url), self.etag_path(url)):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise CacheError(f"failed to remove {path}: {e}") from e

    # -- install trackers -------------------------------------------------

    def tracker_path(self, scope_key: str) -> Path:
        return self.tracker_dir / f"{scope_key}.json"


class RWLock:
    """Many concurrent readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class ArtifactCache:
    """In-process ``name@version -> archive bytes`` map shared by fetch workers."""

    def __init__(self) -> None:
        self._lock = RWLock()
        self._items: dict[str, bytes] = {}

    def get(self, key: str) -> bytes | None:
        with self._lock.read():
            return self._items.get(key)

    def put(self, key: str, data: bytes) -> None:
        with self._lock.write():
            self._items[key] = data

    def clear(self) -> None:
        with self._lock.write():
            self._items.clear()

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._items)
