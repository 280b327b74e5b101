from __future__ import annotations

import re
from dataclasses import dataclass
from functools import cmp_to_key, total_ordering

from .errors import InvalidVersionError, NoValidVersionsError, NoVersionsAvailableError

# Longest operators first so that "~=" is not read as "~" and ">=" is not read as ">".
OPERATORS = ("~=", "==", ">=", "<=", "!=", ">", "<")

_NUMERIC_RE = re.compile(r"^[0-9]+$")


@total_ordering
@dataclass(frozen=True)
class Version:
    major: int
    minor: int = 0
    patch: int = 0
    pre: str = ""
    build: str = ""

    def __str__(self) -> str:
        s = f"{self.major}.{self.minor}.{self.patch}"
        if self.pre:
            s += "-" + self.pre
        if self.build:
            s += "+" + self.build
        return s

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return compare_versions(self, other) == 0

    def __lt__(self, other: Version) -> bool:
        return compare_versions(self, other) < 0

    def __hash__(self) -> int:
        return hash((self.major, self.minor, self.patch, self.pre))


def parse_version(value: str) -> Version:
    """
    Parse ``MAJOR[.MINOR[.PATCH]][-PRE][+BUILD]``.

    Missing minor/patch default to 0. Anything else (including a leading ``v``)
    raises InvalidVersionError.
    """
    if not isinstance(value, str):
        raise InvalidVersionError(f"invalid version: {value!r}")
    raw = value.strip()
    if not raw:
        raise InvalidVersionError("invalid version: empty string")

    build = ""
    if "+" in raw:
        raw, build = raw.split("+", 1)
    pre = ""
    if "-" in raw:
        raw, pre = raw.split("-", 1)

    parts = raw.split(".")
    if len(parts) > 3:
        raise InvalidVersionError(f"invalid version format: {value}")
    labels = ("major", "minor", "patch")
    nums: list[int] = []
    for label, part in zip(labels, parts):
        if not _NUMERIC_RE.match(part):
            raise InvalidVersionError(f"invalid {label} version: {part!r} in {value!r}")
        nums.append(int(part))
    while len(nums) < 3:
        nums.append(0)
    return Version(major=nums[0], minor=nums[1], patch=nums[2], pre=pre, build=build)


def is_valid_version(value: str) -> bool:
    try:
        parse_version(value)
    except InvalidVersionError:
        return False
    return True


def compare_versions(a: Version | str, b: Version | str) -> int:
    va = a if isinstance(a, Version) else parse_version(a)
    vb = b if isinstance(b, Version) else parse_version(b)

    ta = (va.major, va.minor, va.patch)
    tb = (vb.major, vb.minor, vb.patch)
    if ta < tb:
        return -1
    if ta > tb:
        return 1

    # A release sorts after any of its pre-releases; build metadata never counts.
    if va.pre and not vb.pre:
        return -1
    if not va.pre and vb.pre:
        return 1
    if va.pre < vb.pre:
        return -1
    if va.pre > vb.pre:
        return 1
    return 0


@dataclass(frozen=True)
class Specifier:
    operator: str
    version: Version

    @classmethod
    def parse(cls, text: str) -> Specifier:
        spec = text.strip()
        for op in OPERATORS:
            if spec.startswith(op):
                return cls(operator=op, version=parse_version(spec[len(op) :].strip()))
        return cls(operator="==", version=parse_version(spec))

    def __str__(self) -> str:
        return f"{self.operator}{self.version}"

    def matches(self, version: Version | str) -> bool:
        v = version if isinstance(version, Version) else parse_version(version)
        cmp = compare_versions(v, self.version)
        op = self.operator
        if op == "==":
            return cmp == 0
        if op == "!=":
            return cmp != 0
        if op == ">":
            return cmp > 0
        if op == ">=":
            return cmp >= 0
        if op == "<":
            return cmp < 0
        if op == "<=":
            return cmp <= 0
        if op == "~=":
            if cmp < 0:
                return False
            return v.major == self.version.major and v.minor == self.version.minor
        return False

    def filter(self, versions: list[str]) -> list[str]:
        matched: list[str] = []
        for raw in versions:
            try:
                v = parse_version(raw)
            except InvalidVersionError:
                continue
            if self.matches(v):
                matched.append(raw)
        return matched


def parse_specifiers(text: str) -> list[Specifier]:
    if not text or not text.strip():
        return []
    return [Specifier.parse(part) for part in text.split(",")]


def filter_by_multiple(versions: list[str], specifiers: list[Specifier]) -> list[str]:
    if not specifiers:
        return list(versions)
    result = list(versions)
    for spec in specifiers:
        result = spec.filter(result)
    return result


def select_best(versions: list[str]) -> str:
    if not versions:
        raise NoVersionsAvailableError("no versions available")

    best: tuple[Version, str] | None = None
    for raw in versions:
        try:
            v = parse_version(raw)
        except InvalidVersionError:
            continue
        if best is None or compare_versions(v, best[0]) > 0:
            best = (v, raw)

    if best is None:
        raise NoValidVersionsError(f"no valid versions found among {len(versions)} candidate(s)")
    return best[1]


def sort_versions(versions: list[str]) -> list[str]:
    valid: list[tuple[Version, str]] = []
    invalid: list[str] = []
    for raw in versions:
        try:
            valid.append((parse_version(raw), raw))
        except InvalidVersionError:
            invalid.append(raw)
    valid.sort(key=cmp_to_key(lambda a, b: compare_versions(a[0], b[0])))
    return [raw for _, raw in valid] + invalid

