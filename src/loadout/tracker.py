from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .cache import DiskCache, url_hash
from .config import DEFAULT_GLOBAL_TARGET
from .errors import CacheError
from .lockfile import GLOBAL_GROUP, SCOPE_PATH, SCOPE_REPO, Artifact
from .scope import match_repo_urls, normalize_repo_path, path_within

logger = logging.getLogger(__name__)

TRACKER_FORMAT_VERSION = "1.0"
GLOBAL_SCOPE_KEY = "global"

RepoMatcher = Callable[[str, str], bool]


@dataclass(frozen=True)
class TrackerKey:
    name: str
    repository: str = ""
    path: str = ""

    @classmethod
    def for_scope(cls, name: str, scope_type: str, repo_url: str = "", repo_path: str = "") -> TrackerKey:
        repository = repo_url if scope_type in (SCOPE_REPO, SCOPE_PATH) else ""
        path = repo_path if scope_type == SCOPE_PATH else ""
        return cls(name=name, repository=repository, path=path)


@dataclass
class InstalledArtifact:
    name: str
    version: str
    type: str = ""
    repository: str = ""  # empty for global installs
    path: str = ""  # path within the repository for path-scoped installs
    install_path: str = ""
    clients: list[str] = field(default_factory=list)

    @property
    def key(self) -> TrackerKey:
        return TrackerKey(name=self.name, repository=self.repository, path=self.path)

    @property
    def is_global(self) -> bool:
        return not self.repository

    def scope_description(self) -> str:
        if not self.repository:
            return GLOBAL_GROUP
        if self.path:
            return f"{self.repository}:{self.path}"
        return self.repository

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "version": self.version}
        if self.type:
            out["type"] = self.type
        if self.repository:
            out["repository"] = self.repository
        if self.path:
            out["path"] = self.path
        if self.install_path:
            out["installPath"] = self.install_path
        out["clients"] = list(self.clients)
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> InstalledArtifact:
        return cls(
            name=str(raw.get("name") or ""),
            version=str(raw.get("version") or ""),
            type=str(raw.get("type") or ""),
            repository=str(raw.get("repository") or ""),
            path=str(raw.get("path") or ""),
            install_path=str(raw.get("installPath") or ""),
            clients=[str(c) for c in raw.get("clients") or []],
        )


def scope_key_for(target_base: str | Path, global_base: str | Path = DEFAULT_GLOBAL_TARGET) -> str:
    """``"global"`` for the canonical global target, else a hash of the target path."""
    target = Path(target_base).expanduser()
    if target == Path(global_base).expanduser():
        return GLOBAL_SCOPE_KEY
    return url_hash(str(target))


class InstallTracker:
    """Persistent record of what was installed into one target directory."""

    def __init__(
        self,
        path: Path,
        *,
        version: str = TRACKER_FORMAT_VERSION,
        lock_file_version: str = "",
        installed_at: datetime | None = None,
        artifacts: list[InstalledArtifact] | None = None,
    ) -> None:
        self.path = path
        self.version = version
        self.lock_file_version = lock_file_version
        self.installed_at = installed_at
        self.artifacts: list[InstalledArtifact] = artifacts if artifacts is not None else []

    @classmethod
    def load(
        cls,
        target_base: str | Path,
        cache: DiskCache,
        *,
        global_base: str | Path = DEFAULT_GLOBAL_TARGET,
    ) -> InstallTracker:
        return cls.load_path(cache.tracker_path(scope_key_for(target_base, global_base)))

    @classmethod
    def load_path(cls, path: Path) -> InstallTracker:
        if not path.exists():
            return cls(path)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CacheError(f"failed to read tracker {path}: {e}") from e
        if not isinstance(raw, dict):
            raise CacheError(f"failed to parse tracker {path}: expected an object")

        installed_at = None
        if raw.get("installedAt"):
            try:
                installed_at = datetime.fromisoformat(str(raw["installedAt"]))
            except ValueError:
                logger.warning("ignoring unreadable installedAt in %s", path)
        items = raw.get("artifacts") or []
        return cls(
            path,
            version=str(raw.get("version") or TRACKER_FORMAT_VERSION),
            lock_file_version=str(raw.get("lockFileVersion") or ""),
            installed_at=installed_at,
            artifacts=[InstalledArtifact.from_dict(a) for a in items if isinstance(a, dict)],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "lockFileVersion": self.lock_file_version,
            "installedAt": self.installed_at.isoformat() if self.installed_at else None,
            "artifacts": [a.to_dict() for a in self.artifacts],
        }

    def save(self) -> Path:
        self.version = TRACKER_FORMAT_VERSION
        self.installed_at = datetime.now(timezone.utc)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self.to_dict(), indent=2) + "\n", encoding="utf-8")
        tmp.replace(self.path)
        return self.path

    def delete(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise CacheError(f"failed to delete tracker {self.path}: {e}") from e

    # -- lookups ----------------------------------------------------------

    def find_artifact(self, key: TrackerKey) -> InstalledArtifact | None:
        for a in self.artifacts:
            if a.key == key:
                return a
        return None

    def find_artifact_with_matcher(
        self,
        name: str,
        repo_url: str,
        path: str,
        match_repo: RepoMatcher = match_repo_urls,
    ) -> InstalledArtifact | None:
        for a in self.artifacts:
            if a.name != name or a.path != path:
                continue
            if not a.repository and not repo_url:
                return a
            if a.repository and repo_url and match_repo(a.repository, repo_url):
                return a
        return None

    def find_by_scope(self, repository: str, path: str) -> list[InstalledArtifact]:
        return [a for a in self.artifacts if a.repository == repository and a.path == path]

    def find_global(self) -> list[InstalledArtifact]:
        return self.find_by_scope("", "")

    def find_for_scope(
        self,
        repo_url: str,
        repo_path: str = "",
        match_repo: RepoMatcher = match_repo_urls,
    ) -> list[InstalledArtifact]:
        """Entries visible from a location: global ones, the repo's, and enclosing paths'."""
        out: list[InstalledArtifact] = []
        for a in self.artifacts:
            if a.is_global:
                out.append(a)
                continue
            if not repo_url or not match_repo(a.repository, repo_url):
                continue
            if not a.path:
                out.append(a)
            elif repo_path and path_within(normalize_repo_path(repo_path), normalize_repo_path(a.path)):
                out.append(a)
        return out

    def group_by_scope(self) -> dict[str, list[InstalledArtifact]]:
        out: dict[str, list[InstalledArtifact]] = {}
        for a in self.artifacts:
            out.setdefault(a.scope_description(), []).append(a)
        return out

    def needs_install(self, key: TrackerKey, version: str, clients: Iterable[str]) -> bool:
        existing = self.find_artifact(key)
        if existing is None or existing.version != version:
            return True
        return not set(clients) <= set(existing.clients)

    # -- mutation ---------------------------------------------------------

    def upsert_artifact(self, artifact: InstalledArtifact) -> None:
        for i, a in enumerate(self.artifacts):
            if a.key == artifact.key:
                self.artifacts[i] = artifact
                return
        self.artifacts.append(artifact)

    def remove_artifact(self, key: TrackerKey) -> bool:
        for i, a in enumerate(self.artifacts):
            if a.key == key:
                del self.artifacts[i]
                return True
        return False

    def remove_by_scope(self, repository: str, path: str) -> int:
        kept = [a for a in self.artifacts if not (a.repository == repository and a.path == path)]
        removed = len(self.artifacts) - len(kept)
        self.artifacts = kept
        return removed


@dataclass(frozen=True)
class TrackerFile:
    path: Path
    scope_key: str


def list_tracker_files(cache: DiskCache) -> list[TrackerFile]:
    if not cache.tracker_dir.is_dir():
        return []
    return [
        TrackerFile(path=p, scope_key=p.stem)
        for p in sorted(cache.tracker_dir.iterdir())
        if p.is_file() and p.suffix == ".json"
    ]


# --- reconciliation against the filesystem ---------------------------------


class ScanInstalled(Protocol):
    def scan_installed(self, target_base: Path) -> list[InstalledArtifact]:
        ...


@dataclass(frozen=True)
class VersionMismatch:
    tracked: InstalledArtifact
    found: InstalledArtifact

    @property
    def name(self) -> str:
        return self.tracked.name

    @property
    def tracker_version(self) -> str:
        return self.tracked.version

    @property
    def filesystem_version(self) -> str:
        return self.found.version

    @property
    def install_path(self) -> str:
        return self.found.install_path


@dataclass
class ValidationResult:
    tracker_only: list[InstalledArtifact] = field(default_factory=list)
    filesystem_only: list[InstalledArtifact] = field(default_factory=list)
    version_mismatch: list[VersionMismatch] = field(default_factory=list)
    consistent: list[InstalledArtifact] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not (self.tracker_only or self.filesystem_only or self.version_mismatch)


def validate_installed_state(
    tracked: Iterable[InstalledArtifact],
    scanners: Iterable[ScanInstalled],
    target_base: str | Path,
) -> ValidationResult:
    """
    Compare tracker entries with what scanners observe under ``target_base``.

    Each tracker entry is matched to the scanned artifact with the same name and
    lands in exactly one bucket, so same-name entries from different scopes are all
    kept. Scanned artifacts no entry names are ``filesystem_only``.
    """
    base = Path(target_base)
    on_disk: dict[str, InstalledArtifact] = {}
    for scanner in scanners:
        for found in scanner.scan_installed(base):
            on_disk.setdefault(found.name, found)

    result = ValidationResult()
    tracked_names: set[str] = set()
    for entry in tracked:
        tracked_names.add(entry.name)
        found = on_disk.get(entry.name)
        if found is None:
            result.tracker_only.append(entry)
        elif found.version != entry.version:
            result.version_mismatch.append(VersionMismatch(tracked=entry, found=found))
        else:
            result.consistent.append(entry)

    result.filesystem_only.extend(f for name, f in on_disk.items() if name not in tracked_names)
    return result


def reconcile_state(result: ValidationResult, prefer_tracker: bool) -> list[InstalledArtifact]:
    """
    Decide which entries a repaired tracker keeps.

    ``prefer_tracker`` keeps the recorded state; otherwise the filesystem wins.
    """
    out = list(result.consistent)
    if prefer_tracker:
        out.extend(result.tracker_only)
        out.extend(m.tracked for m in result.version_mismatch)
    else:
        out.extend(result.filesystem_only)
        out.extend(
            replace(m.tracked, version=m.found.version, install_path=m.found.install_path)
            for m in result.version_mismatch
        )
    return out


# --- install/remove deltas --------------------------------------------------


def find_removed_artifacts(previous: Iterable[InstalledArtifact], current: Iterable[Artifact]) -> list[InstalledArtifact]:
    wanted = {a.name for a in current}
    return [p for p in previous if p.name not in wanted]


def find_changed_or_new_artifacts(previous: Iterable[InstalledArtifact], current: Iterable[Artifact]) -> list[Artifact]:
    installed = {p.name: p.version for p in previous}
    return [a for a in current if installed.get(a.name) != a.version]


def find_artifacts_to_install_for_clients(
    previous: Iterable[InstalledArtifact],
    current: Iterable[Artifact],
    client_ids: Iterable[str],
) -> list[Artifact]:
    """New, re-versioned, or not yet installed for every one of ``client_ids``."""
    installed = {p.name: p for p in previous}
    wanted = set(client_ids)
    out: list[Artifact] = []
    for a in current:
        prev = installed.get(a.name)
        if prev is None or prev.version != a.version or not wanted <= set(prev.clients):
            out.append(a)
    return out
