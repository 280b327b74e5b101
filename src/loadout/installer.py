from __future__ import annotations

import logging
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol

from .archive import list_zip_files, safe_extract
from .errors import FetchCancelledError, InstallError, LoadoutError, MetadataError
from .fetcher import ArtifactFetcher
from .lockfile import Artifact, LockFile
from .metadata import METADATA_FILENAME, Metadata, parse_metadata, validate_metadata_files
from .resolver import DependencyResolver
from .scope import CurrentScope, ScopeMatcher
from .tracker import (
    InstalledArtifact,
    InstallTracker,
    TrackerKey,
    find_artifacts_to_install_for_clients,
    find_removed_artifacts,
)

logger = logging.getLogger(__name__)

TYPE_DIRS = {
    "skill": "skills",
    "agent": "agents",
    "command": "commands",
    "rule": "rules",
    "hook": "hooks",
    "mcp": "mcp",
    "mcp-remote": "mcp",
}


class Installer(Protocol):
    def install(self, archive: bytes, target_base: Path) -> None:
        ...

    def remove(self, target_base: Path) -> None:
        ...

    def verify_installed(self, target_base: Path) -> tuple[bool, str]:
        ...


# Metadata is None when only the tracker record is known, e.g. on removal.
InstallerFactory = Callable[[Artifact, Metadata | None], Installer]


class ExtractingInstaller:
    """
    Unpacks an archive into ``<target>/<type dir>/<name>``.

    Client-specific layouts plug in through ``InstallerFactory``; this one is the
    plain default used by the command line.
    """

    def __init__(self, name: str, version: str, type: str, metadata: Metadata | None = None) -> None:
        self.name = name
        self.version = version
        self.type = type
        self.metadata = metadata

    @classmethod
    def for_artifact(cls, artifact: Artifact, metadata: Metadata | None = None) -> ExtractingInstaller:
        return cls(artifact.name, artifact.version, metadata.type if metadata else artifact.type, metadata)

    def location(self, target_base: Path) -> Path:
        return Path(target_base) / TYPE_DIRS.get(self.type, "other") / self.name

    def install(self, archive: bytes, target_base: Path) -> None:
        if self.metadata is not None:
            validate_metadata_files(self.metadata, list_zip_files(archive))
        dest = self.location(target_base)
        staging = dest.with_name(f".{dest.name}.tmp")
        if staging.exists():
            shutil.rmtree(staging)
        safe_extract(archive, staging)
        if dest.exists():
            shutil.rmtree(dest)
        staging.replace(dest)

    def remove(self, target_base: Path) -> None:
        dest = self.location(target_base)
        if dest.exists():
            shutil.rmtree(dest)

    def verify_installed(self, target_base: Path) -> tuple[bool, str]:
        meta_path = self.location(target_base) / METADATA_FILENAME
        if not meta_path.is_file():
            return False, f"{METADATA_FILENAME} not found at {meta_path.parent}"
        try:
            meta = parse_metadata(meta_path.read_bytes())
        except MetadataError as e:
            return False, str(e)
        if meta.version != self.version:
            return False, f"installed version {meta.version} does not match {self.version}"
        return True, "installed"


class DirectoryScanner:
    """Lists artifacts under a target by their unpacked ``metadata.toml``."""

    def scan_installed(self, target_base: Path) -> list[InstalledArtifact]:
        out: list[InstalledArtifact] = []
        for type_dir in sorted(set(TYPE_DIRS.values())):
            root = Path(target_base) / type_dir
            if not root.is_dir():
                continue
            for child in sorted(root.iterdir()):
                meta_path = child / METADATA_FILENAME
                if not meta_path.is_file():
                    continue
                try:
                    meta = parse_metadata(meta_path.read_bytes())
                except MetadataError as e:
                    logger.warning("skipping %s: %s", child, e)
                    continue
                out.append(
                    InstalledArtifact(
                        name=meta.name,
                        version=meta.version,
                        type=meta.type,
                        install_path=str(child),
                    )
                )
        return out


@dataclass(frozen=True)
class InstallItem:
    artifact: Artifact
    data: bytes
    metadata: Metadata | None = None


@dataclass
class InstallResult:
    installed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    errors: list[Exception] = field(default_factory=list)


@dataclass
class SyncReport:
    installed: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    errors: list[Exception] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class InstallationOrchestrator:
    def __init__(self, factory: InstallerFactory, target_base: str | Path) -> None:
        self.factory = factory
        self.target_base = Path(target_base).expanduser()

    def install_all(self, items: list[InstallItem], *, cancel_event: threading.Event | None = None) -> InstallResult:
        """
        Install ``items`` in the order given; one failure does not stop the rest.

        If ``cancel_event`` is set, stops before the next item and raises
        ``FetchCancelledError`` carrying what was done so far.
        """
        result = InstallResult()
        for item in items:
            if cancel_event is not None and cancel_event.is_set():
                raise FetchCancelledError("installation cancelled", partial=result)
            name = item.artifact.name
            try:
                self.factory(item.artifact, item.metadata).install(item.data, self.target_base)
            except (LoadoutError, OSError) as e:
                logger.debug("install failed for %s: %s", item.artifact.key, e)
                result.failed.append(name)
                result.errors.append(InstallError(f"{name}: {e}"))
                continue
            logger.info("installed %s", item.artifact.key)
            result.installed.append(name)
        return result

    def _remove_each(
        self, installed: list[InstalledArtifact]
    ) -> tuple[list[InstalledArtifact], list[tuple[str, Exception]]]:
        removed: list[InstalledArtifact] = []
        errors: list[tuple[str, Exception]] = []
        for entry in installed:
            artifact = Artifact(name=entry.name, version=entry.version, type=entry.type)
            try:
                self.factory(artifact, None).remove(self.target_base)
            except (LoadoutError, OSError) as e:
                errors.append((entry.name, InstallError(f"{entry.name}: {e}")))
                continue
            logger.info("removed %s@%s", entry.name, entry.version)
            removed.append(entry)
        return removed, errors

    def remove_artifacts(self, installed: list[InstalledArtifact]) -> None:
        _, failures = self._remove_each(installed)
        if failures:
            errors = [e for _, e in failures]
            raise InstallError(f"cleanup errors: {'; '.join(str(e) for e in errors)}", errors=errors)

    def verify_all(self, artifacts: list[Artifact]) -> dict[str, tuple[bool, str]]:
        out: dict[str, tuple[bool, str]] = {}
        for a in artifacts:
            try:
                out[a.name] = self.factory(a, None).verify_installed(self.target_base)
            except (LoadoutError, OSError) as e:
                out[a.name] = (False, str(e))
        return out

    def sync(
        self,
        lock_file: LockFile,
        tracker: InstallTracker,
        fetcher: ArtifactFetcher,
        *,
        clients: list[str],
        current: CurrentScope | None = None,
        concurrency: int = 10,
        cancel_event: threading.Event | None = None,
    ) -> SyncReport:
        """
        Bring the target in line with ``lock_file``, touching only what changed.

        Artifacts that are new, re-versioned or missing a client are fetched and
        installed; tracked artifacts no longer in the lock file are removed. The
        tracker is saved even when some items fail.
        """
        scope = current or CurrentScope.global_scope()
        matcher = ScopeMatcher(scope)
        wanted = [
            a
            for a in lock_file.artifacts
            if matcher.matches_artifact(a) and (not clients or any(a.matches_client(c) for c in clients))
        ]
        ordered = DependencyResolver(lock_file).resolve(wanted)

        report = SyncReport()
        pending = find_artifacts_to_install_for_clients(tracker.artifacts, ordered, clients)
        pending_names = {a.name for a in pending}
        report.unchanged = [a.name for a in ordered if a.name not in pending_names]

        items: list[InstallItem] = []
        for res in fetcher.fetch_many(pending, concurrency=concurrency, cancel_event=cancel_event):
            if res.ok and res.data is not None:
                items.append(InstallItem(res.artifact, res.data, res.metadata))
            else:
                report.failed.append(res.artifact.name)
                report.errors.append(res.error or InstallError(f"{res.artifact.name}: fetch failed"))

        if cancel_event is not None and cancel_event.is_set():
            tracker.save()
            raise FetchCancelledError("installation cancelled", partial=InstallResult())

        by_name = {a.name: a for a in pending}
        try:
            result = self.install_all(items, cancel_event=cancel_event)
        except FetchCancelledError as e:
            partial = e.partial if isinstance(e.partial, InstallResult) else InstallResult()
            self._record(tracker, [by_name[n] for n in partial.installed], clients, scope)
            tracker.save()
            raise
        self._record(tracker, [by_name[n] for n in result.installed], clients, scope)
        report.installed = list(result.installed)
        report.failed.extend(result.failed)
        report.errors.extend(result.errors)

        # Only artifacts gone from the lock file itself are removed, whatever the filters.
        stale = find_removed_artifacts(tracker.artifacts, lock_file.artifacts)
        removed, failures = self._remove_each(stale)
        for entry in removed:
            tracker.remove_artifact(entry.key)
        report.removed = [entry.name for entry in removed]
        for name, err in failures:
            report.failed.append(name)
            report.errors.append(err)

        tracker.lock_file_version = lock_file.version
        tracker.save()
        return report

    def _record(
        self,
        tracker: InstallTracker,
        artifacts: list[Artifact],
        clients: list[str],
        scope: CurrentScope,
    ) -> None:
        for a in artifacts:
            key = TrackerKey.for_scope(a.name, a.scope_type, scope.repo_url, scope.repo_path)
            previous = tracker.find_artifact(key)
            merged = sorted(set(clients) | set(previous.clients if previous else []))
            tracker.upsert_artifact(
                InstalledArtifact(
                    name=a.name,
                    version=a.version,
                    type=a.type,
                    repository=key.repository,
                    path=key.path,
                    install_path=str(self.target_base),
                    clients=merged,
                )
            )
