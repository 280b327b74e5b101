from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import quote, urlsplit, urlunsplit

import httpx

from ._version import __version__
from .cache import DiskCache
from .config import DEFAULT_REGISTRY_URL, DEFAULT_TIMEOUT_S
from .errors import FetchError, MetadataError, RegistryHTTPError
from .metadata import Metadata, parse_metadata
from .versions import sort_versions

logger = logging.getLogger(__name__)

USER_AGENT = f"loadout/{__version__}"
LOCK_FILE_PATH = "/api/skills/loadout.lock"


def origin_of(url: str) -> str | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return urlunsplit((parts.scheme, parts.netloc, "", "", "")).rstrip("/")


@dataclass(frozen=True)
class LockFileResponse:
    content: bytes | None
    etag: str
    not_modified: bool


class Registry(Protocol):
    def get_version_list(self, name: str) -> list[str]:
        ...

    def get_metadata(self, name: str, version: str) -> Metadata:
        ...

    def artifact_url(self, name: str, version: str) -> str:
        ...

    def download(self, url: str) -> bytes:
        ...


class RegistryClient:
    """
    HTTP client for an artifact registry.

    Endpoints (relative to ``base_url``):
        GET /api/skills/loadout.lock                              -> lock file (ETag aware)
        GET /api/skills/assets/<name>/list.txt                    -> newline separated versions
        GET /api/skills/assets/<name>/<version>/metadata.toml     -> descriptor
        GET /api/skills/assets/<name>/<version>/<name>-<version>.zip
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_REGISTRY_URL,
        token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s
        self._http = http or httpx.Client(timeout=timeout_s, follow_redirects=True)
        self._versions_cache: dict[str, list[str]] = {}

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "RegistryClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def lock_file_url(self) -> str:
        return f"{self.base_url}{LOCK_FILE_PATH}"

    def _auth_for_url(self, url: str) -> bool:
        if not self.token:
            return False
        if url.startswith("/"):
            return True
        url_origin = origin_of(url)
        base_origin = origin_of(self.base_url)
        return bool(url_origin and base_origin and url_origin == base_origin)

    def request(
        self,
        *,
        method: str,
        path: str,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        if path.startswith(("http://", "https://")):
            url = path
        else:
            if not path.startswith("/"):
                path = "/" + path
            url = f"{self.base_url}{path}"

        req_headers = {"User-Agent": USER_AGENT}
        if headers:
            req_headers.update(headers)
        if self._auth_for_url(url):
            req_headers["Authorization"] = f"Bearer {self.token}"

        try:
            resp = self._http.request(method.upper(), url, headers=req_headers)
        except httpx.HTTPError as e:
            raise FetchError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise RegistryHTTPError(resp.status_code, resp.text)
        return resp

    def get_lock_file(self, cached_etag: str | None = None) -> LockFileResponse:
        headers: dict[str, str] = {}
        if cached_etag:
            headers["If-None-Match"] = cached_etag
        resp = self.request(method="GET", path=LOCK_FILE_PATH, headers=headers)
        if resp.status_code == 304:
            return LockFileResponse(content=None, etag=cached_etag or "", not_modified=True)
        return LockFileResponse(content=resp.content, etag=resp.headers.get("etag", ""), not_modified=False)

    def get_version_list(self, name: str) -> list[str]:
        if name in self._versions_cache:
            return list(self._versions_cache[name])
        resp = self.request(method="GET", path=f"/api/skills/assets/{quote(name, safe='')}/list.txt")
        versions = _parse_version_list(resp.text)
        ordered = sort_versions(versions)
        self._versions_cache[name] = ordered
        return list(ordered)

    def get_metadata(self, name: str, version: str) -> Metadata:
        path = f"/api/skills/assets/{quote(name, safe='')}/{quote(version, safe='')}/metadata.toml"
        resp = self.request(method="GET", path=path)
        try:
            return parse_metadata(resp.content)
        except MetadataError as e:
            raise MetadataError(f"{name}@{version}: {e}") from e

    def artifact_url(self, name: str, version: str) -> str:
        n = quote(name, safe="")
        v = quote(version, safe="")
        return f"{self.base_url}/api/skills/assets/{n}/{v}/{n}-{v}.zip"

    def download(self, url: str) -> bytes:
        return self.request(method="GET", path=url).content


def _parse_version_list(body: str) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for line in body.splitlines():
        v = line.strip()
        if not v or v.startswith("#") or v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


def fetch_lock_file(client: RegistryClient, cache: DiskCache) -> bytes:
    """
    Fetch the registry lock file, revalidating with the cached ETag.

    A 304 answer returns the cached copy. If the cached copy went missing the ETag is
    dropped and the request is repeated unconditionally.
    """
    url = client.lock_file_url
    etag = cache.load_etag(url)
    cached = cache.load_lock_file(url) if etag else None
    if etag and cached is None:
        etag = None

    resp = client.get_lock_file(etag)
    if resp.not_modified:
        if cached is not None:
            logger.debug("lock file not modified (etag %s)", etag)
            return cached
        cache.invalidate_lock_file(url)
        resp = client.get_lock_file(None)

    data = resp.content or b""
    cache.save_lock_file(url, data)
    if resp.etag:
        cache.save_etag(url, resp.etag)
    return data
