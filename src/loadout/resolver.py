from __future__ import annotations

import hashlib
import logging
from collections import deque
from dataclasses import dataclass, field, replace
from pathlib import Path

from ._version import __version__
from .archive import create_zip, is_zip, read_metadata
from .client import Registry
from .errors import (
    CircularDependencyError,
    DependencyNotFoundError,
    FetchError,
    LoadoutError,
    MetadataError,
    NoVersionsAvailableError,
)
from .git import GitClient
from .lockfile import LOCK_VERSION, Artifact, Dependency, GitSource, HTTPSource, LockFile, PathSource
from .metadata import Metadata
from .requirements import GIT, HTTP, PATH, REGISTRY, Requirement, parse_requirement_line
from .sources import HTTPSourceHandler, SourceDispatcher
from .versions import filter_by_multiple, parse_specifiers, select_best

logger = logging.getLogger(__name__)

DEFAULT_TYPE = "skill"
GIT_VERSION_PREFIX = "0.0.0+git"
LOCAL_VERSION = "0.0.0+local"
HTTP_VERSION = "0.0.0+http"


# --- install ordering -----------------------------------------------------


@dataclass
class _Node:
    artifact: Artifact
    dependents: list[int] = field(default_factory=list)
    in_degree: int = 0


class DependencyResolver:
    """
    Orders a subset of a lock file so that every dependency precedes its dependents.

    Dependencies missing from the requested subset are pulled in from the whole lock
    file, transitively.
    """

    def __init__(self, lock_file: LockFile) -> None:
        self.catalog: dict[str, Artifact] = {a.name: a for a in lock_file.artifacts}

    def resolve(self, artifacts: list[Artifact]) -> list[Artifact]:
        nodes: list[_Node] = []
        index: dict[str, int] = {}

        def add(a: Artifact) -> int:
            if a.name not in index:
                index[a.name] = len(nodes)
                nodes.append(_Node(a))
            return index[a.name]

        for a in artifacts:
            add(a)

        # Worklist over node indexes; nodes appended while walking are visited too.
        i = 0
        while i < len(nodes):
            current = nodes[i].artifact
            for dep in current.dependencies:
                if dep.name not in index:
                    found = self.catalog.get(dep.name)
                    if found is None:
                        raise DependencyNotFoundError(dep.name, current.name)
                    add(found)
                dep_idx = index[dep.name]
                if i not in nodes[dep_idx].dependents:
                    nodes[dep_idx].dependents.append(i)
                    nodes[i].in_degree += 1
            i += 1

        degrees = [n.in_degree for n in nodes]
        ready = deque(idx for idx, d in enumerate(degrees) if d == 0)
        ordered: list[Artifact] = []
        while ready:
            idx = ready.popleft()
            ordered.append(nodes[idx].artifact)
            for nxt in nodes[idx].dependents:
                degrees[nxt] -= 1
                if degrees[nxt] == 0:
                    ready.append(nxt)

        if len(ordered) != len(nodes):
            stuck = sorted(nodes[idx].artifact.name for idx, d in enumerate(degrees) if d > 0)
            raise CircularDependencyError(f"circular dependency detected among: {', '.join(stuck)}")
        return ordered


def validate_dependencies(lock_file: LockFile) -> None:
    """Depth-first cycle check over the whole lock file."""
    graph: dict[str, list[str]] = {a.name: [d.name for d in a.dependencies] for a in lock_file.artifacts}

    for start in graph:
        visited: set[str] = set()
        on_stack: set[str] = {start}
        stack: list[tuple[str, int]] = [(start, 0)]
        visited.add(start)
        while stack:
            node, pos = stack[-1]
            edges = graph.get(node, [])
            if pos >= len(edges):
                stack.pop()
                on_stack.discard(node)
                continue
            stack[-1] = (node, pos + 1)
            nxt = edges[pos]
            if nxt in on_stack:
                raise CircularDependencyError(f"circular dependency detected involving {start}")
            if nxt not in visited:
                visited.add(nxt)
                on_stack.add(nxt)
                stack.append((nxt, 0))


# --- requirement resolution -----------------------------------------------


def lock_file_version(artifacts: list[Artifact]) -> str:
    h = hashlib.sha256()
    for a in sorted(artifacts, key=lambda a: a.name):
        h.update(f"{a.name}@{a.version}\n".encode("utf-8"))
    return h.hexdigest()[:32]


def _metadata_or_none(data: bytes, where: str) -> Metadata | None:
    try:
        return read_metadata(data)
    except MetadataError as e:
        logger.debug("no usable metadata in %s: %s", where, e)
        return None


def _dependency_requirements(meta: Metadata | None) -> list[Requirement]:
    if meta is None:
        return []
    out: list[Requirement] = []
    for raw in meta.artifact.dependencies:
        try:
            out.append(parse_requirement_line(raw))
        except LoadoutError as e:
            raise MetadataError(f"invalid dependency {raw!r}: {e}") from e
    return out


class Resolver:
    """
    Turns requirement lines into a pinned lock file.

    Registry requirements are resolved to the best matching published version, git
    refs to full commit ids, HTTP downloads are hashed, and local paths are recorded
    as written. Dependencies declared in metadata are resolved breadth-first.
    """

    def __init__(
        self,
        registry: Registry,
        *,
        git: GitClient | None = None,
        http: HTTPSourceHandler | None = None,
        sources: SourceDispatcher | None = None,
    ) -> None:
        self.registry = registry
        self.git = git or GitClient()
        self.http = http or HTTPSourceHandler()
        self.sources = sources

    def resolve(self, requirements: list[Requirement]) -> LockFile:
        resolved: dict[str, Artifact] = {}
        dep_names: dict[str, list[str]] = {}
        queue: deque[tuple[Requirement, str | None]] = deque((r, None) for r in requirements)

        while queue:
            req, parent = queue.popleft()
            known = req.name if req.kind in (REGISTRY, GIT) else ""
            if known and known in resolved:
                self._link(dep_names, parent, known)
                continue

            try:
                artifact, deps = self._resolve_one(req)
            except LoadoutError as e:
                raise LoadoutError(f"failed to resolve {req}: {e}") from e

            if artifact.name in resolved:
                # Path/HTTP requirements learn their name only after fetching.
                self._link(dep_names, parent, artifact.name)
                continue
            resolved[artifact.name] = artifact
            dep_names.setdefault(artifact.name, [])
            self._link(dep_names, parent, artifact.name)
            logger.debug("resolved %s -> %s", req, artifact.key)
            queue.extend((d, artifact.name) for d in deps)

        artifacts: list[Artifact] = []
        for name, artifact in resolved.items():
            deps = tuple(Dependency(name=d, version=resolved[d].version) for d in dep_names.get(name, []))
            artifacts.append(replace(artifact, dependencies=deps) if deps else artifact)

        return LockFile(
            lock_version=LOCK_VERSION,
            version=lock_file_version(artifacts),
            created_by=f"loadout/{__version__}",
            artifacts=artifacts,
        )

    @staticmethod
    def _link(dep_names: dict[str, list[str]], parent: str | None, child: str) -> None:
        if parent is None or parent == child:
            return
        children = dep_names.setdefault(parent, [])
        if child not in children:
            children.append(child)

    def _resolve_one(self, req: Requirement) -> tuple[Artifact, list[Requirement]]:
        if req.kind == REGISTRY:
            return self._resolve_registry(req)
        if req.kind == GIT:
            return self._resolve_git(req)
        if req.kind == PATH:
            return self._resolve_path(req)
        if req.kind == HTTP:
            return self._resolve_http(req)
        raise LoadoutError(f"unknown requirement type: {req.kind}")

    def _resolve_registry(self, req: Requirement) -> tuple[Artifact, list[Requirement]]:
        versions = self.registry.get_version_list(req.name)
        matched = filter_by_multiple(versions, parse_specifiers(req.specifier))
        if not matched:
            raise NoVersionsAvailableError(f"no matching versions found for {req.name}{req.specifier}")
        chosen = select_best(matched)
        meta = self.registry.get_metadata(req.name, chosen)

        url = self.registry.artifact_url(req.name, chosen)
        data = self.registry.download(url)
        artifact = Artifact(
            name=req.name,
            version=chosen,
            type=meta.type or DEFAULT_TYPE,
            source_http=HTTPSource(
                url=url,
                hashes={"sha256": hashlib.sha256(data).hexdigest()},
                size=len(data),
            ),
        )
        return artifact, _dependency_requirements(meta)

    def _resolve_git(self, req: Requirement) -> tuple[Artifact, list[Requirement]]:
        sha = self.git.ls_remote(req.url, req.ref)
        artifact = Artifact(
            name=req.name,
            version=GIT_VERSION_PREFIX + sha[:7],
            type=DEFAULT_TYPE,
            source_git=GitSource(url=req.url, ref=sha, subdirectory=req.subdirectory or None),
        )
        if self.sources is None:
            return artifact, []

        meta = _metadata_or_none(self.sources.fetch(artifact), str(req))
        if meta is None:
            return artifact, []
        return replace(artifact, type=meta.type or DEFAULT_TYPE), _dependency_requirements(meta)

    def _resolve_path(self, req: Requirement) -> tuple[Artifact, list[Requirement]]:
        path = Path(req.path).expanduser()
        if not path.exists():
            raise FetchError(f"path not found: {path}")

        if path.is_dir():
            data = create_zip(path)
            fallback = path.resolve().name
        else:
            data = path.read_bytes()
            fallback = path.name.removesuffix(".zip")
        meta = _metadata_or_none(data, req.path) if is_zip(data) else None

        artifact = Artifact(
            name=meta.name if meta and meta.name else fallback,
            version=meta.version if meta and meta.version else LOCAL_VERSION,
            type=meta.type if meta and meta.type else DEFAULT_TYPE,
            # Recorded as written so lock files stay portable.
            source_path=PathSource(path=req.path),
        )
        return artifact, _dependency_requirements(meta)

    def _resolve_http(self, req: Requirement) -> tuple[Artifact, list[Requirement]]:
        data = self.http.get(req.url)
        meta = _metadata_or_none(data, req.url) if is_zip(data) else None
        fallback = req.url.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0].removesuffix(".zip")

        artifact = Artifact(
            name=meta.name if meta and meta.name else fallback,
            version=meta.version if meta and meta.version else HTTP_VERSION,
            type=meta.type if meta and meta.type else DEFAULT_TYPE,
            source_http=HTTPSource(
                url=req.url,
                hashes={"sha256": hashlib.sha256(data).hexdigest()},
                size=len(data),
            ),
        )
        return artifact, _dependency_requirements(meta)
