from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from platformdirs import user_cache_path, user_config_path

APP_NAME = "loadout"

DEFAULT_REGISTRY_URL = "https://registry.loadout.dev"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_CONCURRENCY = 10
DEFAULT_LOCK_TIMEOUT_S = 300.0
DEFAULT_GLOBAL_TARGET = "~/.claude"


@dataclass(frozen=True)
class Config:
    registry_url: str = DEFAULT_REGISTRY_URL
    token: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    cache_dir: str | None = None
    ssh_key: str | None = None  # path to a private key, or the PEM text itself
    concurrency: int = DEFAULT_CONCURRENCY
    lock_timeout_s: float = DEFAULT_LOCK_TIMEOUT_S
    global_target: str = DEFAULT_GLOBAL_TARGET


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("LOADOUT_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path(APP_NAME) / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Tokens and inline keys live here.
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def resolve_cache_dir(cfg: Config | None = None) -> Path:
    if env := os.getenv("LOADOUT_CACHE_DIR"):
        return Path(env).expanduser()
    if cfg is not None and cfg.cache_dir:
        return Path(cfg.cache_dir).expanduser()
    return user_cache_path(APP_NAME)


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]
