from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import tomli
import tomli_w

from .errors import InvalidVersionError, LockFileValidationError
from .versions import parse_version

LOCK_VERSION = "1.0"

ARTIFACT_TYPES = ("skill", "agent", "command", "rule", "mcp", "mcp-remote", "hook")
HASH_ALGORITHMS = ("sha256", "sha512")

DEFAULT_INSTRUCTION_HEADING = "## Shared Instructions"
DEFAULT_INSTRUCTION_END_MARKER = "---"

SCOPE_GLOBAL = "global"
SCOPE_REPO = "repo"
SCOPE_PATH = "path"

GLOBAL_GROUP = "Global"

_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_COMMIT_RE = re.compile(r"^[0-9a-f]{40}$")


@dataclass(frozen=True)
class Dependency:
    name: str
    version: str | None = None


@dataclass(frozen=True)
class HTTPSource:
    url: str
    hashes: dict[str, str] = field(default_factory=dict)
    size: int | None = None
    uploaded_at: datetime | None = None


@dataclass(frozen=True)
class PathSource:
    path: str


@dataclass(frozen=True)
class GitSource:
    url: str
    ref: str
    subdirectory: str | None = None


@dataclass(frozen=True)
class Scope:
    repo: str
    paths: tuple[str, ...] = ()

    @property
    def scope_type(self) -> str:
        return SCOPE_PATH if self.paths else SCOPE_REPO


@dataclass(frozen=True)
class Artifact:
    name: str
    version: str
    type: str
    clients: tuple[str, ...] = ()
    dependencies: tuple[Dependency, ...] = ()
    source_http: HTTPSource | None = None
    source_path: PathSource | None = None
    source_git: GitSource | None = None
    scopes: tuple[Scope, ...] = ()

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"

    @property
    def source_type(self) -> str:
        if self.source_http is not None:
            return "http"
        if self.source_path is not None:
            return "path"
        if self.source_git is not None:
            return "git"
        return "unknown"

    @property
    def is_global(self) -> bool:
        return not self.scopes

    @property
    def scope_type(self) -> str:
        if not self.scopes:
            return SCOPE_GLOBAL
        return self.scopes[0].scope_type

    def matches_client(self, client_id: str) -> bool:
        if not self.clients:
            return True
        return client_id in self.clients

    def __str__(self) -> str:
        return f"{self.name}@{self.version} ({self.type})"


@dataclass(frozen=True)
class InstructionConfig:
    heading: str = DEFAULT_INSTRUCTION_HEADING
    end_marker: str = DEFAULT_INSTRUCTION_END_MARKER


@dataclass(frozen=True)
class InstallConfig:
    instruction: InstructionConfig | None = None


@dataclass
class LockFile:
    lock_version: str = LOCK_VERSION
    version: str = ""
    created_by: str = ""
    install: InstallConfig | None = None
    artifacts: list[Artifact] = field(default_factory=list)

    def instruction_config(self) -> InstructionConfig:
        cfg = InstructionConfig()
        if self.install is None or self.install.instruction is None:
            return cfg
        raw = self.install.instruction
        return InstructionConfig(
            heading=raw.heading or cfg.heading,
            end_marker=raw.end_marker or cfg.end_marker,
        )

    def find(self, name: str) -> Artifact | None:
        for a in self.artifacts:
            if a.name == name:
                return a
        return None

    def add_or_update(self, artifact: Artifact) -> None:
        kept = [a for a in self.artifacts if not (a.name == artifact.name and a.version == artifact.version)]
        kept.append(artifact)
        self.artifacts = kept

    def remove(self, name: str, version: str) -> bool:
        kept = [a for a in self.artifacts if not (a.name == name and a.version == version)]
        removed = len(kept) != len(self.artifacts)
        self.artifacts = kept
        return removed

    def group_by_scope(self) -> dict[str, list[Artifact]]:
        """
        Group artifacts by where they install.

        Keys are "Global", a repository URL, or "<repo>:<path>". An artifact with several
        scopes appears under each of them.
        """
        out: dict[str, list[Artifact]] = {}
        for a in self.artifacts:
            if a.is_global:
                out.setdefault(GLOBAL_GROUP, []).append(a)
                continue
            for scope in a.scopes:
                if not scope.paths:
                    out.setdefault(scope.repo, []).append(a)
                    continue
                for p in scope.paths:
                    out.setdefault(f"{scope.repo}:{p}", []).append(a)
        return out

    def validate(self) -> None:
        validate_lock_file(self)


def validate_artifact(a: Artifact) -> None:
    if not a.name:
        raise LockFileValidationError("name is required")
    if not _NAME_RE.match(a.name):
        raise LockFileValidationError("name must contain only alphanumeric characters, dashes, and underscores")
    if not a.version:
        raise LockFileValidationError("version is required")
    try:
        parse_version(a.version)
    except InvalidVersionError as e:
        raise LockFileValidationError(f"invalid semantic version {a.version!r}: {e}") from e
    if a.type not in ARTIFACT_TYPES:
        raise LockFileValidationError(f"invalid artifact type: {a.type!r} (must be one of: {', '.join(ARTIFACT_TYPES)})")

    count = sum(1 for s in (a.source_http, a.source_path, a.source_git) if s is not None)
    if count == 0:
        raise LockFileValidationError("exactly one source must be specified (http, path, or git)")
    if count > 1:
        raise LockFileValidationError("only one source type can be specified")

    if a.source_http is not None:
        src = a.source_http
        if not src.url:
            raise LockFileValidationError("source-http: url is required")
        if not src.hashes:
            raise LockFileValidationError("source-http: hashes are required for HTTP sources")
        for algo in src.hashes:
            if algo not in HASH_ALGORITHMS:
                raise LockFileValidationError(
                    f"source-http: unsupported hash algorithm: {algo} (must be sha256 or sha512)"
                )
    if a.source_path is not None and not a.source_path.path:
        raise LockFileValidationError("source-path: path is required")
    if a.source_git is not None:
        src_git = a.source_git
        if not src_git.url:
            raise LockFileValidationError("source-git: url is required")
        if not src_git.ref:
            raise LockFileValidationError("source-git: ref is required")
        if not _COMMIT_RE.match(src_git.ref):
            raise LockFileValidationError(
                f"source-git: ref must be a full 40-character commit SHA (got {src_git.ref!r})"
            )

    for i, scope in enumerate(a.scopes):
        if not scope.repo:
            raise LockFileValidationError(f"scopes[{i}]: repo is required")


def validate_lock_file(lf: LockFile) -> None:
    """Check structure; the first problem found raises LockFileValidationError."""
    if not lf.lock_version:
        raise LockFileValidationError("lock-version is required")
    if not lf.version:
        raise LockFileValidationError("version is required")
    if not lf.created_by:
        raise LockFileValidationError("created-by is required")

    seen: set[str] = set()
    for i, a in enumerate(lf.artifacts):
        try:
            validate_artifact(a)
        except LockFileValidationError as e:
            raise LockFileValidationError(f"artifact {i} ({a.name}): {e}") from e
        if a.key in seen:
            raise LockFileValidationError(f"artifact {i} ({a.name}): duplicate artifact {a.key}")
        seen.add(a.key)

    by_name = {a.name: a for a in lf.artifacts}
    for i, a in enumerate(lf.artifacts):
        for dep in a.dependencies:
            prefix = f"artifact {i} ({a.name}): dependency {dep.name}"
            if not dep.name:
                raise LockFileValidationError(f"artifact {i} ({a.name}): dependency name is required")
            target = by_name.get(dep.name)
            if target is None:
                raise LockFileValidationError(f"{prefix}: dependency not found in lock file")
            if dep.version and dep.version != target.version:
                raise LockFileValidationError(
                    f"{prefix}: dependency version {dep.version!r} does not match artifact version {target.version!r}"
                )
            if dep.name == a.name:
                raise LockFileValidationError(f"{prefix}: artifact cannot depend on itself")


# --- decoding -------------------------------------------------------------


def _as_str(value: Any, *, where: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise LockFileValidationError(f"{where} must be a string")
    return value


def _as_str_list(value: Any, *, where: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or any(not isinstance(v, str) for v in value):
        raise LockFileValidationError(f"{where} must be a list of strings")
    return tuple(value)


def _as_table(value: Any, *, where: str) -> dict[str, Any] | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise LockFileValidationError(f"{where} must be a table")
    return value


def _decode_dependency(raw: Any, *, where: str) -> Dependency:
    if isinstance(raw, str):
        return Dependency(name=raw)
    table = _as_table(raw, where=where) or {}
    version = _as_str(table.get("version"), where=f"{where}.version")
    return Dependency(name=_as_str(table.get("name"), where=f"{where}.name"), version=version or None)


def _decode_scopes(raw: dict[str, Any], *, where: str) -> tuple[Scope, ...]:
    items = raw.get("scopes")
    if not items:
        # Older lock files called these "repositories".
        items = raw.get("repositories")
    if items is None:
        return ()
    if not isinstance(items, list):
        raise LockFileValidationError(f"{where}.scopes must be an array of tables")
    scopes: list[Scope] = []
    for j, item in enumerate(items):
        table = _as_table(item, where=f"{where}.scopes[{j}]") or {}
        scopes.append(
            Scope(
                repo=_as_str(table.get("repo"), where=f"{where}.scopes[{j}].repo"),
                paths=_as_str_list(table.get("paths"), where=f"{where}.scopes[{j}].paths"),
            )
        )
    return tuple(scopes)


def _decode_artifact(raw: Any, *, index: int) -> Artifact:
    where = f"assets[{index}]"
    table = _as_table(raw, where=where) or {}

    http = _as_table(table.get("source-http"), where=f"{where}.source-http")
    path = _as_table(table.get("source-path"), where=f"{where}.source-path")
    git = _as_table(table.get("source-git"), where=f"{where}.source-git")

    source_http: HTTPSource | None = None
    if http is not None:
        hashes = http.get("hashes") or {}
        if not isinstance(hashes, dict):
            raise LockFileValidationError(f"{where}.source-http.hashes must be a table")
        size = http.get("size")
        if size is not None and (not isinstance(size, int) or isinstance(size, bool)):
            raise LockFileValidationError(f"{where}.source-http.size must be an integer")
        uploaded_at = http.get("uploaded-at")
        if uploaded_at is not None and not isinstance(uploaded_at, datetime):
            raise LockFileValidationError(f"{where}.source-http.uploaded-at must be a datetime")
        source_http = HTTPSource(
            url=_as_str(http.get("url"), where=f"{where}.source-http.url"),
            hashes={str(k): str(v) for k, v in hashes.items()},
            size=size,
            uploaded_at=uploaded_at,
        )

    deps_raw = table.get("dependencies") or []
    if not isinstance(deps_raw, list):
        raise LockFileValidationError(f"{where}.dependencies must be an array")

    return Artifact(
        name=_as_str(table.get("name"), where=f"{where}.name"),
        version=_as_str(table.get("version"), where=f"{where}.version"),
        type=_as_str(table.get("type"), where=f"{where}.type"),
        clients=_as_str_list(table.get("clients"), where=f"{where}.clients"),
        dependencies=tuple(
            _decode_dependency(d, where=f"{where}.dependencies[{j}]") for j, d in enumerate(deps_raw)
        ),
        source_http=source_http,
        source_path=(
            PathSource(path=_as_str(path.get("path"), where=f"{where}.source-path.path")) if path is not None else None
        ),
        source_git=(
            GitSource(
                url=_as_str(git.get("url"), where=f"{where}.source-git.url"),
                ref=_as_str(git.get("ref"), where=f"{where}.source-git.ref"),
                subdirectory=_as_str(git.get("subdirectory"), where=f"{where}.source-git.subdirectory") or None,
            )
            if git is not None
            else None
        ),
        scopes=_decode_scopes(table, where=where),
    )


def _artifact_tables(doc: dict[str, Any]) -> list[Any]:
    items = doc.get("assets")
    if not items:
        # Older lock files used [[artifacts]] for the same tables.
        items = doc.get("artifacts")
    if items is None:
        return []
    if not isinstance(items, list):
        raise LockFileValidationError("assets must be an array of tables")
    return items


def decode_lock_file(doc: dict[str, Any]) -> LockFile:
    install: InstallConfig | None = None
    install_raw = _as_table(doc.get("install"), where="install")
    if install_raw is not None:
        instr = _as_table(install_raw.get("instruction"), where="install.instruction")
        install = InstallConfig(
            instruction=(
                InstructionConfig(
                    heading=_as_str(instr.get("heading"), where="install.instruction.heading"),
                    end_marker=_as_str(instr.get("end-marker"), where="install.instruction.end-marker"),
                )
                if instr is not None
                else None
            )
        )

    return LockFile(
        lock_version=_as_str(doc.get("lock-version"), where="lock-version"),
        version=_as_str(doc.get("version"), where="version"),
        created_by=_as_str(doc.get("created-by"), where="created-by"),
        install=install,
        artifacts=[_decode_artifact(raw, index=i) for i, raw in enumerate(_artifact_tables(doc))],
    )


def parse_lock_file(data: str | bytes) -> LockFile:
    text = data.decode("utf-8") if isinstance(data, bytes) else data
    try:
        doc = tomli.loads(text)
    except tomli.TOMLDecodeError as e:
        raise LockFileValidationError(f"failed to parse lock file: {e}") from e
    return decode_lock_file(doc)


def load_lock_file(path: str | Path) -> LockFile:
    p = Path(path).expanduser()
    try:
        data = p.read_bytes()
    except OSError as e:
        raise LockFileValidationError(f"failed to read lock file {p}: {e}") from e
    return parse_lock_file(data)


# --- encoding -------------------------------------------------------------


def _encode_artifact(a: Artifact) -> dict[str, Any]:
    out: dict[str, Any] = {"name": a.name, "version": a.version, "type": a.type}
    if a.clients:
        out["clients"] = list(a.clients)
    if a.dependencies:
        deps: list[dict[str, Any]] = []
        for d in a.dependencies:
            item: dict[str, Any] = {"name": d.name}
            if d.version:
                item["version"] = d.version
            deps.append(item)
        out["dependencies"] = deps
    if a.source_http is not None:
        http: dict[str, Any] = {"url": a.source_http.url, "hashes": dict(sorted(a.source_http.hashes.items()))}
        if a.source_http.size:
            http["size"] = a.source_http.size
        if a.source_http.uploaded_at is not None:
            http["uploaded-at"] = a.source_http.uploaded_at
        out["source-http"] = http
    if a.source_path is not None:
        out["source-path"] = {"path": a.source_path.path}
    if a.source_git is not None:
        git: dict[str, Any] = {"url": a.source_git.url, "ref": a.source_git.ref}
        if a.source_git.subdirectory:
            git["subdirectory"] = a.source_git.subdirectory
        out["source-git"] = git
    if a.scopes:
        scopes: list[dict[str, Any]] = []
        for s in a.scopes:
            item = {"repo": s.repo}
            if s.paths:
                item["paths"] = list(s.paths)
            scopes.append(item)
        out["scopes"] = scopes
    return out


def encode_lock_file(lf: LockFile) -> dict[str, Any]:
    doc: dict[str, Any] = {
        "lock-version": lf.lock_version,
        "version": lf.version,
        "created-by": lf.created_by,
    }
    if lf.install is not None and lf.install.instruction is not None:
        instr: dict[str, Any] = {}
        if lf.install.instruction.heading:
            instr["heading"] = lf.install.instruction.heading
        if lf.install.instruction.end_marker:
            instr["end-marker"] = lf.install.instruction.end_marker
        doc["install"] = {"instruction": instr}
    doc["assets"] = [_encode_artifact(a) for a in lf.artifacts]
    return doc


def dumps_lock_file(lf: LockFile) -> str:
    return tomli_w.dumps(encode_lock_file(lf))


def write_lock_file(lf: LockFile, path: str | Path) -> Path:
    p = Path(path).expanduser()
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(p.suffix + ".tmp")
    tmp.write_text(dumps_lock_file(lf), encoding="utf-8")
    tmp.replace(p)
    return p
