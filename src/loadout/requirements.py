from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .errors import RequirementParseError
from .versions import OPERATORS

REGISTRY = "registry"
GIT = "git"
PATH = "path"
HTTP = "http"

_PATH_PREFIXES = ("./", "../", "~/", "/")


@dataclass(frozen=True)
class Requirement:
    kind: str
    raw: str = ""
    name: str = ""
    # Full constraint text including the leading operator, e.g. ">=1.0,<2.0".
    specifier: str = ""
    url: str = ""
    ref: str = ""
    subdirectory: str = ""
    path: str = ""

    def __str__(self) -> str:
        if self.kind == REGISTRY:
            return f"{self.name}{self.specifier}"
        if self.kind == GIT:
            out = f"git+{self.url}@{self.ref}#name={self.name}"
            if self.subdirectory:
                out += f"&path={self.subdirectory}"
            return out
        if self.kind == PATH:
            return self.path
        if self.kind == HTTP:
            return self.url
        return self.raw


def _parse_git(line: str) -> Requirement:
    body = line[len("git+") :]
    if "#" not in body:
        if "@" not in body:
            raise RequirementParseError(f"git requirement missing @ref: {body}")
        raise RequirementParseError(f"git requirement missing #name parameter: {body}")
    location, params = body.split("#", 1)
    # The ref is after the last "@" so that ssh remotes like git@host:org/repo keep their user part.
    if "@" not in location:
        raise RequirementParseError(f"git requirement missing @ref: {body}")
    url, ref = location.rsplit("@", 1)
    if not url or not ref:
        raise RequirementParseError(f"git requirement missing @ref: {body}")

    name = ""
    subdirectory = ""
    for param in params.split("&"):
        if "=" not in param:
            raise RequirementParseError(f"invalid git parameter: {param}")
        key, value = param.split("=", 1)
        if key == "name":
            name = value
        elif key == "path":
            subdirectory = value
        else:
            raise RequirementParseError(f"unknown git parameter: {key}")
    if not name:
        raise RequirementParseError("git requirement missing name parameter")
    return Requirement(kind=GIT, raw=line, name=name, url=url, ref=ref, subdirectory=subdirectory)


def _parse_registry(line: str) -> Requirement:
    cut = -1
    for op in OPERATORS:
        idx = line.find(op)
        if idx != -1 and (cut == -1 or idx < cut):
            cut = idx
    if cut == -1:
        name = line.strip()
        specifier = ""
    else:
        name = line[:cut].strip()
        specifier = "".join(line[cut:].split())
    if not name:
        raise RequirementParseError(f"requirement is missing a name: {line}")
    return Requirement(kind=REGISTRY, raw=line, name=name, specifier=specifier)


def parse_requirement_line(line: str) -> Requirement:
    """
    Parse one requirement.

    Forms:
      git+URL@REF#name=NAME[&path=SUBDIR]
      http(s)://...
      ./x, ../x, ~/x, /x
      NAME[OP VERSION[,OP VERSION...]]
    """
    text = line.strip()
    if not text:
        raise RequirementParseError("empty requirement")
    if text.startswith("git+"):
        return _parse_git(text)
    if text.startswith(("https://", "http://")):
        return Requirement(kind=HTTP, raw=text, url=text)
    if text.startswith(_PATH_PREFIXES):
        return Requirement(kind=PATH, raw=text, path=text)
    return _parse_registry(text)


def parse_requirements(text: str) -> list[Requirement]:
    out: list[Requirement] = []
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        try:
            out.append(parse_requirement_line(line))
        except RequirementParseError as e:
            raise RequirementParseError(f"line {lineno}: {e}") from e
    return out


def load_requirements(path: str | Path) -> list[Requirement]:
    p = Path(path).expanduser()
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise RequirementParseError(f"failed to read requirements file {p}: {e}") from e
    return parse_requirements(text)
