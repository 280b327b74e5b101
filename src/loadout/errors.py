from __future__ import annotations

from dataclasses import dataclass


class LoadoutError(RuntimeError):
    pass


class InvalidVersionError(LoadoutError):
    pass


class NoVersionsAvailableError(LoadoutError):
    pass


class NoValidVersionsError(LoadoutError):
    pass


class LockFileValidationError(LoadoutError):
    pass


class RequirementParseError(LoadoutError):
    pass


class MetadataError(LoadoutError):
    pass


class DependencyNotFoundError(LoadoutError):
    def __init__(self, name: str, required_by: str) -> None:
        super().__init__(f"dependency not found: {name} (required by {required_by})")
        self.name = name
        self.required_by = required_by


class CircularDependencyError(LoadoutError):
    pass


class FetchError(LoadoutError):
    pass


class IntegrityError(FetchError):
    pass


@dataclass(frozen=True)
class RegistryHTTPError(FetchError):
    status_code: int
    body: str

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code}: {self.body}"


class CacheError(LoadoutError):
    pass


class GitError(LoadoutError):
    pass


class LockTimeoutError(LoadoutError):
    pass


class FetchCancelledError(LoadoutError):
    def __init__(self, message: str = "operation cancelled", *, partial: object | None = None) -> None:
        super().__init__(message)
        self.partial = partial


class InstallError(LoadoutError):
    def __init__(self, message: str, *, errors: list[Exception] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])
