from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

from .errors import GitError

logger = logging.getLogger(__name__)

_SHA_RE = re.compile(r"^[0-9a-fA-F]{40}$")


@dataclass(frozen=True)
class GitConfig:
    ssh_key: str | None = None  # key file path or inline PEM text
    executable: str = "git"

    @property
    def has_inline_key(self) -> bool:
        return bool(self.ssh_key and self.ssh_key.strip().startswith("-----BEGIN"))


@dataclass(frozen=True)
class GitContext:
    root: Path
    remote_url: str  # empty when the repository has no origin
    relative_path: str  # "." at the repository root


def is_commit_sha(ref: str) -> bool:
    return bool(_SHA_RE.match(ref))


class GitClient:
    """Thin wrapper over the ``git`` executable."""

    def __init__(self, config: GitConfig | None = None) -> None:
        self.config = config or GitConfig()

    def _env(self, key_file: str | None) -> dict[str, str]:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        if key_file:
            env["GIT_SSH_COMMAND"] = f"ssh -i {shlex.quote(key_file)} -o IdentitiesOnly=yes -o StrictHostKeyChecking=accept-new"
        return env

    def _run(self, args: list[str], *, cwd: Path | None = None) -> str:
        cmd = [self.config.executable, *args]
        start = time.monotonic()
        tmp_key: str | None = None
        key_file: str | None = None
        if self.config.ssh_key:
            if self.config.has_inline_key:
                fd, tmp_key = tempfile.mkstemp(prefix="loadout-key-")
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(self.config.ssh_key.strip() + "\n")
                os.chmod(tmp_key, 0o600)
                key_file = tmp_key
            else:
                key_file = str(Path(self.config.ssh_key).expanduser())
        try:
            result = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd is not None else None,
                env=self._env(key_file),
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise GitError(f"failed to run {self.config.executable}: {e}") from e
        finally:
            if tmp_key is not None:
                os.unlink(tmp_key)

        logger.debug("git %s finished in %.2fs (rc=%s)", args[0], time.monotonic() - start, result.returncode)
        if result.returncode != 0:
            output = (result.stdout + result.stderr).strip()
            raise GitError(f"git {args[0]} failed (exit {result.returncode})\nOutput: {output}")
        return result.stdout

    def clone(self, url: str, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        self._run(["clone", "--quiet", url, str(dest)])

    def fetch(self, repo: Path) -> None:
        self._run(["fetch", "--quiet", "--all"], cwd=repo)

    def checkout(self, repo: Path, ref: str) -> None:
        self._run(["checkout", "--quiet", ref], cwd=repo)

    def rev_parse(self, repo: Path, ref: str) -> str:
        return self._run(["rev-parse", ref], cwd=repo).strip()

    def ls_remote(self, url: str, ref: str) -> str:
        """Resolve ``ref`` on ``url`` to a commit id; full ids are returned unchanged."""
        if is_commit_sha(ref):
            return ref.lower()
        out = self._run(["ls-remote", url, ref]).strip()
        first = out.splitlines()[0] if out else ""
        if not first:
            raise GitError(f"ref not found: {ref} in {url}")
        sha = first.split()[0]
        if not is_commit_sha(sha):
            raise GitError(f"invalid git ls-remote output for {ref}: {first!r}")
        return sha.lower()

    def remote_url(self, repo: Path) -> str:
        return self._run(["remote", "get-url", "origin"], cwd=repo).strip()

    def repo_root(self, path: Path) -> Path:
        return Path(self._run(["rev-parse", "--show-toplevel"], cwd=path).strip())

    def detect_context(self, path: Path) -> GitContext | None:
        """Locate the repository containing ``path``; None when it is not inside one."""
        if not path.is_dir():
            return None
        try:
            root = self.repo_root(path)
        except GitError as e:
            logger.debug("%s is not inside a git repository: %s", path, e)
            return None
        try:
            remote = self.remote_url(root)
        except GitError:
            remote = ""
        rel = Path(os.path.relpath(path.resolve(), root.resolve())).as_posix()
        return GitContext(root=root, remote_url=remote, relative_path=rel)
