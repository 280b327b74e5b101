from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

import tomli

from .errors import InvalidVersionError, MetadataError
from .lockfile import ARTIFACT_TYPES
from .versions import parse_version

METADATA_FILENAME = "metadata.toml"
DEFAULT_RULE_PROMPT_FILE = "RULE.md"

HOOK_EVENTS = (
    "session-start",
    "session-end",
    "pre-tool-use",
    "post-tool-use",
    "post-tool-use-failure",
    "user-prompt-submit",
    "stop",
    "subagent-start",
    "subagent-stop",
    "pre-compact",
)
MCP_TRANSPORTS = ("stdio", "sse", "http")

_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


@dataclass(frozen=True)
class ArtifactInfo:
    name: str
    version: str
    type: str
    description: str = ""
    license: str = ""
    authors: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()
    homepage: str = ""
    repository: str = ""
    documentation: str = ""
    readme: str = ""
    dependencies: tuple[str, ...] = ()


@dataclass(frozen=True)
class PromptConfig:
    prompt_file: str = ""
    triggers: tuple[str, ...] = ()
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class HookConfig:
    event: str = ""
    script_file: str = ""
    command: str = ""
    is_async: bool = False
    fail_on_error: bool = False
    timeout: int = 0


@dataclass(frozen=True)
class MCPConfig:
    transport: str = "stdio"
    command: str = ""
    args: tuple[str, ...] = ()
    url: str = ""
    env: dict[str, str] = field(default_factory=dict)
    timeout: int = 0


@dataclass(frozen=True)
class Metadata:
    artifact: ArtifactInfo
    skill: PromptConfig | None = None
    command: PromptConfig | None = None
    agent: PromptConfig | None = None
    rule: PromptConfig | None = None
    hook: HookConfig | None = None
    mcp: MCPConfig | None = None
    custom: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.artifact.name

    @property
    def version(self) -> str:
        return self.artifact.version

    @property
    def type(self) -> str:
        return self.artifact.type

    def validate(self) -> None:
        validate_metadata(self)


def _strs(value: Any, where: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or any(not isinstance(v, str) for v in value):
        raise MetadataError(f"{where} must be a list of strings")
    return tuple(value)


def _str(value: Any, where: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise MetadataError(f"{where} must be a string")
    return value


def _int(value: Any, where: str) -> int:
    if value is None:
        return 0
    if not isinstance(value, int) or isinstance(value, bool):
        raise MetadataError(f"{where} must be an integer")
    return value


def _table(doc: dict[str, Any], key: str) -> dict[str, Any] | None:
    value = doc.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise MetadataError(f"[{key}] must be a table")
    return value


def _prompt(raw: dict[str, Any] | None, section: str) -> PromptConfig | None:
    if raw is None:
        return None
    return PromptConfig(
        prompt_file=_str(raw.get("prompt-file"), f"{section}.prompt-file"),
        triggers=_strs(raw.get("triggers"), f"{section}.triggers"),
        aliases=_strs(raw.get("aliases"), f"{section}.aliases"),
    )


def parse_metadata(data: str | bytes) -> Metadata:
    text = data.decode("utf-8") if isinstance(data, bytes) else data
    try:
        doc = tomli.loads(text)
    except tomli.TOMLDecodeError as e:
        raise MetadataError(f"failed to parse metadata: {e}") from e

    # Descriptors written before the rename use [artifact]; newer ones use [asset].
    info = _table(doc, "asset")
    if info is None:
        info = _table(doc, "artifact")
    if info is None:
        raise MetadataError("metadata is missing the [asset] section")

    hook_raw = _table(doc, "hook")
    mcp_raw = _table(doc, "mcp")
    custom = _table(doc, "custom") or {}

    env_raw = (mcp_raw or {}).get("env") or {}
    if not isinstance(env_raw, dict):
        raise MetadataError("mcp.env must be a table")

    return Metadata(
        artifact=ArtifactInfo(
            name=_str(info.get("name"), "asset.name"),
            version=_str(info.get("version"), "asset.version"),
            type=_str(info.get("type"), "asset.type"),
            description=_str(info.get("description"), "asset.description"),
            license=_str(info.get("license"), "asset.license"),
            authors=_strs(info.get("authors"), "asset.authors"),
            keywords=_strs(info.get("keywords"), "asset.keywords"),
            homepage=_str(info.get("homepage"), "asset.homepage"),
            repository=_str(info.get("repository"), "asset.repository"),
            documentation=_str(info.get("documentation"), "asset.documentation"),
            readme=_str(info.get("readme"), "asset.readme"),
            dependencies=_strs(info.get("dependencies"), "asset.dependencies"),
        ),
        skill=_prompt(_table(doc, "skill"), "skill"),
        command=_prompt(_table(doc, "command"), "command"),
        agent=_prompt(_table(doc, "agent"), "agent"),
        rule=_prompt(_table(doc, "rule"), "rule"),
        hook=(
            HookConfig(
                event=_str(hook_raw.get("event"), "hook.event"),
                script_file=_str(hook_raw.get("script-file"), "hook.script-file"),
                command=_str(hook_raw.get("command"), "hook.command"),
                is_async=bool(hook_raw.get("async", False)),
                fail_on_error=bool(hook_raw.get("fail-on-error", False)),
                timeout=_int(hook_raw.get("timeout"), "hook.timeout"),
            )
            if hook_raw is not None
            else None
        ),
        mcp=(
            MCPConfig(
                transport=_str(mcp_raw.get("transport"), "mcp.transport") or "stdio",
                command=_str(mcp_raw.get("command"), "mcp.command"),
                args=_strs(mcp_raw.get("args"), "mcp.args"),
                url=_str(mcp_raw.get("url"), "mcp.url"),
                env={str(k): str(v) for k, v in env_raw.items()},
                timeout=_int(mcp_raw.get("timeout"), "mcp.timeout"),
            )
            if mcp_raw is not None
            else None
        ),
        custom=dict(custom),
    )


def _validate_info(info: ArtifactInfo) -> None:
    if not info.name:
        raise MetadataError("asset: name is required")
    if not _NAME_RE.match(info.name):
        raise MetadataError("asset: name must contain only alphanumeric characters, dashes, and underscores")
    if not info.version:
        raise MetadataError("asset: version is required")
    try:
        parse_version(info.version)
    except InvalidVersionError as e:
        raise MetadataError(f"asset: invalid semantic version {info.version!r}") from e
    if info.type not in ARTIFACT_TYPES:
        raise MetadataError(f"asset: invalid asset type: {info.type!r} (must be one of: {', '.join(ARTIFACT_TYPES)})")


def _validate_hook(hook: HookConfig) -> None:
    if not hook.event:
        raise MetadataError("hook: event is required")
    if hook.event not in HOOK_EVENTS:
        raise MetadataError(f"hook: invalid hook event: {hook.event} (must be one of: {', '.join(HOOK_EVENTS)})")
    if not hook.script_file and not hook.command:
        raise MetadataError("hook: either script-file or command is required")
    if hook.script_file and hook.command:
        raise MetadataError("hook: script-file and command are mutually exclusive")
    if hook.timeout < 0:
        raise MetadataError("hook: timeout must be non-negative")


def _validate_mcp(mcp: MCPConfig) -> None:
    if mcp.transport == "stdio":
        if not mcp.command:
            raise MetadataError("mcp: command is required for stdio transport")
        if not mcp.args:
            raise MetadataError("mcp: args is required for stdio transport (must be a non-empty array)")
    elif mcp.transport in ("sse", "http"):
        if not mcp.url:
            raise MetadataError(f"mcp: url is required for {mcp.transport} transport")
        if mcp.command:
            raise MetadataError(f"mcp: command is not allowed for {mcp.transport} transport")
        if mcp.args:
            raise MetadataError(f"mcp: args is not allowed for {mcp.transport} transport")
    else:
        raise MetadataError(f"mcp: invalid transport {mcp.transport!r} (must be one of: {', '.join(MCP_TRANSPORTS)})")
    if mcp.timeout < 0:
        raise MetadataError("mcp: timeout must be non-negative")


def validate_metadata(meta: Metadata) -> None:
    _validate_info(meta.artifact)
    kind = meta.artifact.type
    if kind in ("skill", "command", "agent"):
        section: PromptConfig | None = getattr(meta, kind)
        if section is None:
            raise MetadataError(f"[{kind}] section is required for {kind} assets")
        if not section.prompt_file:
            raise MetadataError(f"{kind}: prompt-file is required")
    elif kind == "hook":
        if meta.hook is None:
            raise MetadataError("[hook] section is required for hook assets")
        _validate_hook(meta.hook)
    elif kind == "mcp":
        if meta.mcp is None:
            raise MetadataError("[mcp] section is required for mcp assets")
        _validate_mcp(meta.mcp)
    elif kind == "mcp-remote" and meta.mcp is not None:
        _validate_mcp(meta.mcp)


def validate_metadata_files(meta: Metadata, files: list[str]) -> None:
    """Validate ``meta`` and check that the files it points at are in the archive listing."""
    validate_metadata(meta)
    kind = meta.artifact.type
    expected: str | None = None
    if kind in ("skill", "command", "agent"):
        section: PromptConfig = getattr(meta, kind)
        expected = section.prompt_file
    elif kind == "hook" and meta.hook is not None and meta.hook.script_file:
        expected = meta.hook.script_file
    elif kind == "rule":
        expected = (meta.rule.prompt_file if meta.rule else "") or DEFAULT_RULE_PROMPT_FILE
    if expected is not None and expected not in files:
        raise MetadataError(f"file not found in archive: {expected}")
