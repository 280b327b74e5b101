from __future__ import annotations

import posixpath
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

from .lockfile import SCOPE_GLOBAL, SCOPE_PATH, SCOPE_REPO, Artifact, Scope

# SSH remotes are only folded onto their https form for these hosts. A self-hosted
# "git@alias:org/repo" may point anywhere, so it is compared verbatim.
KNOWN_GIT_HOSTS = ("github.com", "gitlab.com", "bitbucket.org", "codeberg.org")

INSTALL_DIR_NAME = ".claude"


@dataclass(frozen=True)
class CurrentScope:
    type: str = SCOPE_GLOBAL
    repo_url: str = ""
    repo_path: str = ""

    @classmethod
    def global_scope(cls) -> CurrentScope:
        return cls(type=SCOPE_GLOBAL)

    @classmethod
    def for_repo(cls, repo_url: str, repo_path: str = "") -> CurrentScope:
        if repo_path and normalize_repo_path(repo_path) not in ("", "."):
            return cls(type=SCOPE_PATH, repo_url=repo_url, repo_path=repo_path)
        return cls(type=SCOPE_REPO, repo_url=repo_url)


def _host_of(url: str) -> str:
    if url.startswith("git@"):
        return url[len("git@") :].split(":", 1)[0]
    try:
        return urlsplit(url).hostname or ""
    except ValueError:
        return ""


def normalize_repo_url(url: str) -> str:
    cleaned = url.strip().lower()
    if cleaned.endswith(".git"):
        cleaned = cleaned[: -len(".git")]

    host = _host_of(cleaned)
    if cleaned.startswith("git@") and any(known in host for known in KNOWN_GIT_HOSTS):
        return cleaned[len("git@") :].replace(":", "/", 1)

    try:
        parts = urlsplit(cleaned)
    except ValueError:
        return cleaned
    if not parts.netloc:
        return cleaned
    return (parts.netloc + parts.path).lstrip("/")


def match_repo_urls(a: str, b: str) -> bool:
    return normalize_repo_url(a) == normalize_repo_url(b)


def normalize_repo_path(path: str) -> str:
    cleaned = posixpath.normpath(path.replace("\\", "/"))
    cleaned = cleaned.lstrip("/")
    if cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned


def path_within(current: str, declared: str) -> bool:
    if current == declared:
        return True
    return current.startswith(declared.rstrip("/") + "/")


class ScopeMatcher:
    def __init__(self, current: CurrentScope) -> None:
        self.current = current

    def matches_artifact(self, artifact: Artifact) -> bool:
        if artifact.is_global:
            return True
        return any(self.matches_scope(s) for s in artifact.scopes)

    def matches_scope(self, scope: Scope) -> bool:
        if self.current.type == SCOPE_GLOBAL:
            return False
        if not self._matches_repo_url(scope.repo):
            return False
        if not scope.paths:
            return True
        # At the repository root every path-scoped entry for this repo is in reach.
        if self.current.type == SCOPE_REPO:
            return True
        return any(self.matches_path(p) for p in scope.paths)

    def matches_path(self, declared: str) -> bool:
        if not self.current.repo_path or not declared:
            return False
        return path_within(normalize_repo_path(self.current.repo_path), normalize_repo_path(declared))

    def _matches_repo_url(self, repo: str) -> bool:
        if not self.current.repo_url or not repo:
            return False
        return match_repo_urls(self.current.repo_url, repo)


def install_locations(
    artifact: Artifact,
    current: CurrentScope,
    *,
    repo_root: str | Path,
    global_base: str | Path,
) -> list[Path]:
    if artifact.is_global:
        return [Path(global_base)]

    matcher = ScopeMatcher(current)
    root = Path(repo_root)
    out: list[Path] = []
    for scope in artifact.scopes:
        if not matcher.matches_scope(scope):
            continue
        if not scope.paths:
            out.append(root / INSTALL_DIR_NAME)
            continue
        for p in scope.paths:
            if current.type == SCOPE_REPO or matcher.matches_path(p):
                out.append(root / normalize_repo_path(p) / INSTALL_DIR_NAME)
    return out
