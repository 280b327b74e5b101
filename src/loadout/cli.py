from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import textwrap
from dataclasses import asdict
from pathlib import Path
from typing import Any

from ._version import __version__
from .cache import DiskCache
from .client import RegistryClient, fetch_lock_file
from .config import Config, config_path, load_config, redact_token, resolve_cache_dir, save_config
from .errors import LoadoutError, RegistryHTTPError
from .fetcher import ArtifactFetcher
from .git import GitClient, GitConfig, GitContext
from .installer import DirectoryScanner, ExtractingInstaller, InstallationOrchestrator
from .lockfile import LockFile, load_lock_file, parse_lock_file, write_lock_file
from .requirements import load_requirements
from .resolver import DependencyResolver, Resolver, validate_dependencies
from .scope import CurrentScope
from .sources import GitSourceHandler, HTTPSourceHandler, PathSourceHandler, SourceDispatcher
from .tracker import InstallTracker, list_tracker_files, reconcile_state, validate_installed_state

DEFAULT_CLIENT = "claude-code"


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _configure_logging(verbose: bool) -> None:
    level_name = "DEBUG" if verbose else (os.getenv("LOADOUT_LOG_LEVEL") or "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    registry_url = getattr(args, "registry_url", None) or os.getenv("LOADOUT_REGISTRY_URL") or base.registry_url
    token = getattr(args, "token", None) or os.getenv("LOADOUT_TOKEN") or base.token
    ssh_key = os.getenv("LOADOUT_SSH_KEY") or base.ssh_key
    timeout_s = getattr(args, "timeout_s", None) or os.getenv("LOADOUT_TIMEOUT_S") or base.timeout_s
    try:
        timeout_s_f = float(timeout_s)
    except (TypeError, ValueError):
        timeout_s_f = base.timeout_s

    return Config(
        registry_url=registry_url,
        token=token,
        timeout_s=timeout_s_f,
        cache_dir=base.cache_dir,
        ssh_key=ssh_key,
        concurrency=base.concurrency,
        lock_timeout_s=base.lock_timeout_s,
        global_target=base.global_target,
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="loadout",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Resolve, fetch and install configuration artifacts from a lock file.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              LOADOUT_REGISTRY_URL, LOADOUT_TOKEN, LOADOUT_TIMEOUT_S, LOADOUT_SSH_KEY,
              LOADOUT_CACHE_DIR, LOADOUT_CONFIG_PATH, LOADOUT_LOG_LEVEL
            """
        ),
    )
    p.add_argument("--registry-url", help="Registry base URL (overrides config/env)")
    p.add_argument("--token", help="Registry token (overrides config/env)")
    p.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    p.add_argument("--version", action="version", version=f"loadout {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (token redacted)")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--registry-url", dest="set_registry_url")
    cfg_set.add_argument("--token", dest="set_token")
    cfg_set.add_argument("--timeout-s", dest="set_timeout_s", type=float)
    cfg_set.add_argument("--cache-dir")
    cfg_set.add_argument("--ssh-key", help="Private key path or PEM text for git over ssh")
    cfg_set.add_argument("--concurrency", type=int)
    cfg_set.add_argument("--global-target")

    # cache
    cache = sub.add_parser("cache", help="Inspect or clear the download cache")
    cache_sub = cache.add_subparsers(dest="subcmd", required=True)
    cache_sub.add_parser("path", help="Print cache directory")
    cache_sub.add_parser("clear", help="Delete cached artifact archives")

    lock = sub.add_parser("lock", help="Resolve a requirements file into a lock file")
    lock.add_argument("requirements", help="Requirements file")
    lock.add_argument("-o", "--output", default="loadout.lock", help="Lock file to write (default: loadout.lock)")

    validate = sub.add_parser("validate", help="Check a lock file's structure and dependency graph")
    validate.add_argument("lockfile")

    fetch = sub.add_parser("fetch", help="Download every artifact of a lock file into the cache")
    fetch.add_argument("lockfile")
    fetch.add_argument("--concurrency", type=int, help="Parallel downloads (default from config)")
    fetch.add_argument("--json", action="store_true", help="Output JSON")

    def _add_target(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--target", help="Install directory (default: global target from config)")
        parser.add_argument("--repo-url", help="Install for this repository instead of globally")
        parser.add_argument("--repo-path", default="", help="Path within the repository")
        parser.add_argument(
            "--global", dest="global_scope", action="store_true", help="Ignore the git repository around the target"
        )
        parser.add_argument("--json", action="store_true", help="Output JSON")

    install = sub.add_parser("install", aliases=["sync"], help="Install a lock file, applying only what changed")
    install.add_argument("lockfile", nargs="?", help="Lock file (omit with --remote)")
    install.add_argument("--remote", action="store_true", help="Use the registry's lock file")
    install.add_argument(
        "--client",
        action="append",
        dest="clients",
        help=f"Client id to install for (repeatable, default: {DEFAULT_CLIENT})",
    )
    install.add_argument("--concurrency", type=int, help="Parallel downloads (default from config)")
    _add_target(install)

    verify = sub.add_parser("verify", help="Check installed artifacts against a lock file")
    verify.add_argument("lockfile")
    _add_target(verify)

    status = sub.add_parser("status", help="Show what is installed, grouped by scope")
    _add_target(status)
    status.add_argument("--all", action="store_true", help="List every tracker in the cache")
    status.add_argument("--repair", action="store_true", help="Rewrite the tracker from what is on disk")

    return p


def _cache_from_cfg(cfg: Config) -> DiskCache:
    cache = DiskCache(resolve_cache_dir(cfg))
    cache.ensure_dirs()
    return cache


def _sources_from_cfg(cfg: Config, cache: DiskCache, *, lock_file_dir: Path | None) -> SourceDispatcher:
    return SourceDispatcher(
        http=HTTPSourceHandler(token=cfg.token, auth_origin=cfg.registry_url, timeout_s=max(cfg.timeout_s, 60.0)),
        path=PathSourceHandler(lock_file_dir),
        git=GitSourceHandler(GitClient(GitConfig(ssh_key=cfg.ssh_key)), cache, lock_timeout_s=cfg.lock_timeout_s),
    )


def _git_context(args: argparse.Namespace) -> GitContext | None:
    if args.repo_url or args.global_scope:
        return None
    start = Path(args.target).expanduser() if args.target else Path.cwd()
    ctx = GitClient().detect_context(start)
    if ctx is None or not ctx.remote_url:
        return None
    return ctx


def _current_scope(args: argparse.Namespace, ctx: GitContext | None = None) -> CurrentScope:
    if args.repo_url:
        return CurrentScope.for_repo(args.repo_url, args.repo_path)
    if ctx is not None:
        return CurrentScope.for_repo(ctx.remote_url, ctx.relative_path)
    return CurrentScope.global_scope()


def _target(args: argparse.Namespace, cfg: Config, scope: CurrentScope, ctx: GitContext | None = None) -> Path:
    if args.target:
        return Path(args.target).expanduser()
    if ctx is not None:
        return ctx.root / ".claude"
    if scope.repo_url:
        return Path.cwd() / ".claude"
    return Path(cfg.global_target).expanduser()


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        d = asdict(cfg)
        d["token"] = redact_token(cfg.token)
        if cfg.ssh_key and GitConfig(ssh_key=cfg.ssh_key).has_inline_key:
            d["ssh_key"] = "<inline key>"
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        new_cfg = Config(
            registry_url=args.set_registry_url or cfg.registry_url,
            token=args.set_token if args.set_token is not None else cfg.token,
            timeout_s=args.set_timeout_s if args.set_timeout_s is not None else cfg.timeout_s,
            cache_dir=args.cache_dir if args.cache_dir is not None else cfg.cache_dir,
            ssh_key=args.ssh_key if args.ssh_key is not None else cfg.ssh_key,
            concurrency=args.concurrency if args.concurrency is not None else cfg.concurrency,
            lock_timeout_s=cfg.lock_timeout_s,
            global_target=args.global_target or cfg.global_target,
        )
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_cache(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    cache = DiskCache(resolve_cache_dir(cfg))
    if args.subcmd == "path":
        print(str(cache.root))
        return 0
    if args.subcmd == "clear":
        cache.clear_assets()
        print(f"Cleared: {cache.assets_dir}")
        return 0
    raise AssertionError("unreachable")


def cmd_lock(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    requirements = load_requirements(args.requirements)
    cache = _cache_from_cfg(cfg)
    sources = _sources_from_cfg(cfg, cache, lock_file_dir=Path(args.output).expanduser().resolve().parent)
    with RegistryClient(base_url=cfg.registry_url, token=cfg.token, timeout_s=cfg.timeout_s) as registry:
        resolver = Resolver(registry, git=sources.git.git if sources.git else None, http=sources.http, sources=sources)
        lf = resolver.resolve(requirements)
    validate_dependencies(lf)
    lf.validate()
    path = write_lock_file(lf, args.output)
    print(f"Wrote: {path} ({len(lf.artifacts)} artifacts, version {lf.version})")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    lf = load_lock_file(args.lockfile)
    lf.validate()
    validate_dependencies(lf)
    DependencyResolver(lf).resolve(list(lf.artifacts))
    print(f"OK: {args.lockfile} ({len(lf.artifacts)} artifacts)")
    return 0


def cmd_fetch(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    lf = load_lock_file(args.lockfile)
    lf.validate()
    cache = _cache_from_cfg(cfg)
    sources = _sources_from_cfg(cfg, cache, lock_file_dir=Path(args.lockfile).expanduser().resolve().parent)
    fetcher = ArtifactFetcher(sources, cache)
    results = fetcher.fetch_many(list(lf.artifacts), concurrency=args.concurrency or cfg.concurrency)

    payload = [
        {
            "name": r.artifact.name,
            "version": r.artifact.version,
            "ok": r.ok,
            "size": len(r.data) if r.data else 0,
            "error": str(r.error) if r.error else None,
        }
        for r in results
    ]
    if args.json:
        print(json.dumps(payload, indent=2, sort_keys=True))
    else:
        rows = [["NAME", "VERSION", "STATUS"]]
        for item in payload:
            rows.append([item["name"], item["version"], "ok" if item["ok"] else f"error: {item['error']}"])
        _print_table(rows)
    return 0 if all(r.ok for r in results) else 1


def _load_install_lock_file(args: argparse.Namespace, cfg: Config, cache: DiskCache) -> tuple[LockFile, Path | None]:
    if args.remote:
        with RegistryClient(base_url=cfg.registry_url, token=cfg.token, timeout_s=cfg.timeout_s) as registry:
            return parse_lock_file(fetch_lock_file(registry, cache)), None
    if not args.lockfile:
        raise LoadoutError("a lock file path is required unless --remote is given")
    path = Path(args.lockfile).expanduser().resolve()
    return load_lock_file(path), path.parent


def cmd_install(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    cache = _cache_from_cfg(cfg)
    lf, lock_dir = _load_install_lock_file(args, cfg, cache)
    lf.validate()

    ctx = _git_context(args)
    scope = _current_scope(args, ctx)
    target = _target(args, cfg, scope, ctx)
    tracker = InstallTracker.load(target, cache, global_base=cfg.global_target)
    fetcher = ArtifactFetcher(_sources_from_cfg(cfg, cache, lock_file_dir=lock_dir), cache)
    orchestrator = InstallationOrchestrator(ExtractingInstaller.for_artifact, target)
    report = orchestrator.sync(
        lf,
        tracker,
        fetcher,
        clients=args.clients or [DEFAULT_CLIENT],
        current=scope,
        concurrency=args.concurrency or cfg.concurrency,
    )

    payload: dict[str, Any] = {
        "target": str(target),
        "installed": list(report.installed),
        "removed": list(report.removed),
        "unchanged": list(report.unchanged),
        "failed": list(report.failed),
        "errors": [str(e) for e in report.errors],
    }
    if args.json:
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0 if report.ok else 1

    print(f"target: {target}")
    _print_table(
        [
            ["ACTION", "COUNT"],
            ["installed", str(len(report.installed))],
            ["removed", str(len(report.removed))],
            ["unchanged", str(len(report.unchanged))],
            ["failed", str(len(report.failed))],
        ]
    )
    for name in report.installed:
        print(f"installed: {name}")
    for name in report.removed:
        print(f"removed: {name}")
    for err in report.errors:
        print(f"error: {err}", file=sys.stderr)
    return 0 if report.ok else 1


def cmd_verify(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    lf = load_lock_file(args.lockfile)
    ctx = _git_context(args)
    scope = _current_scope(args, ctx)
    target = _target(args, cfg, scope, ctx)
    orchestrator = InstallationOrchestrator(ExtractingInstaller.for_artifact, target)
    checks = orchestrator.verify_all(list(lf.artifacts))

    if args.json:
        print(json.dumps({k: {"ok": ok, "message": msg} for k, (ok, msg) in checks.items()}, indent=2, sort_keys=True))
    else:
        rows = [["NAME", "OK", "MESSAGE"]]
        for name, (ok, msg) in checks.items():
            rows.append([name, "yes" if ok else "no", msg])
        _print_table(rows)
    return 0 if all(ok for ok, _ in checks.values()) else 1


def cmd_status(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    cache = DiskCache(resolve_cache_dir(cfg))

    if args.all:
        files = list_tracker_files(cache)
        if args.json:
            print(json.dumps([{"scope_key": f.scope_key, "path": str(f.path)} for f in files], indent=2))
            return 0
        _print_table([["SCOPE KEY", "PATH"]] + [[f.scope_key, str(f.path)] for f in files])
        return 0

    ctx = _git_context(args)
    target = _target(args, cfg, _current_scope(args, ctx), ctx)
    tracker = InstallTracker.load(target, cache, global_base=cfg.global_target)
    result = validate_installed_state(tracker.artifacts, [DirectoryScanner()], target)
    if args.repair and not result.is_consistent:
        tracker.artifacts = reconcile_state(result, prefer_tracker=False)
        tracker.save()

    groups = tracker.group_by_scope()
    if args.json:
        payload = {
            "target": str(target),
            "lockFileVersion": tracker.lock_file_version,
            "scopes": {k: [a.to_dict() for a in v] for k, v in groups.items()},
            "drift": {
                "tracker_only": [a.name for a in result.tracker_only],
                "filesystem_only": [a.name for a in result.filesystem_only],
                "version_mismatch": [m.name for m in result.version_mismatch],
            },
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    print(f"target: {target}")
    for scope_name in sorted(groups):
        print(f"{scope_name}:")
        rows = [["NAME", "VERSION", "TYPE", "CLIENTS"]]
        for a in groups[scope_name]:
            rows.append([a.name, a.version, a.type, ",".join(a.clients)])
        _print_table(rows)
    for a in result.tracker_only:
        print(f"missing on disk: {a.name}")
    for a in result.filesystem_only:
        print(f"untracked: {a.name}")
    for m in result.version_mismatch:
        print(f"version drift: {m.name} (tracked {m.tracker_version}, found {m.filesystem_version})")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd == "cache":
            return cmd_cache(args)
        if args.cmd == "lock":
            return cmd_lock(args)
        if args.cmd == "validate":
            return cmd_validate(args)
        if args.cmd == "fetch":
            return cmd_fetch(args)
        if args.cmd in ("install", "sync"):
            return cmd_install(args)
        if args.cmd == "verify":
            return cmd_verify(args)
        if args.cmd == "status":
            return cmd_status(args)
        raise AssertionError("unreachable")
    except RegistryHTTPError as e:
        print(f"error: registry returned {e}", file=sys.stderr)
        return 1
    except LoadoutError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
