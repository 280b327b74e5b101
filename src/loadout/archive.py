from __future__ import annotations

import io
import os
import shutil
import zipfile
import zlib
from pathlib import Path

from .errors import IntegrityError, LoadoutError, MetadataError
from .metadata import METADATA_FILENAME, Metadata, parse_metadata

ZIP_MAGIC = b"PK\x03\x04"

# Directory/file names to skip anywhere in the tree when packing a directory.
DEFAULT_EXCLUDE_NAMES = {
    ".git",
    ".hg",
    ".svn",
    ".DS_Store",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    ".venv",
    "node_modules",
}


def is_zip(data: bytes) -> bool:
    """Structural check: zip magic plus a readable central directory."""
    if len(data) < 4 or data[:4] != ZIP_MAGIC:
        return False
    try:
        with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
            zf.infolist()
    except (zipfile.BadZipFile, OSError, ValueError):
        return False
    return True


def list_zip_files(data: bytes) -> list[str]:
    if not is_zip(data):
        raise IntegrityError("invalid zip file: missing magic bytes")
    with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
        return [info.filename for info in zf.infolist()]


def read_zip_file(data: bytes, name: str) -> bytes:
    if not is_zip(data):
        raise IntegrityError("invalid zip file: missing magic bytes")
    with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
        try:
            return zf.read(name)
        except KeyError as e:
            raise MetadataError(f"{name} not found in zip") from e
        except (zipfile.BadZipFile, zlib.error, OSError) as e:
            raise IntegrityError(f"corrupt zip member {name}: {e}") from e


def read_metadata(data: bytes) -> Metadata:
    return parse_metadata(read_zip_file(data, METADATA_FILENAME))


def _should_exclude(path: Path, root: Path) -> bool:
    try:
        rel = path.relative_to(root)
    except ValueError:
        return True
    return any(p in DEFAULT_EXCLUDE_NAMES for p in rel.parts)


def create_zip(root: Path) -> bytes:
    """Pack the contents of ``root`` (not the directory itself) into a zip."""
    root = root.expanduser().resolve()
    if not root.is_dir():
        raise LoadoutError(f"Not a directory: {root}")

    files: list[Path] = []
    for p in root.rglob("*"):
        if _should_exclude(p, root):
            continue
        if p.is_symlink():
            continue
        if p.is_file():
            files.append(p)
    files.sort(key=lambda p: str(p.relative_to(root)))

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for p in files:
            arcname = str(p.relative_to(root)).replace(os.sep, "/")
            zf.write(p, arcname=arcname)
    return buf.getvalue()


def safe_extract(data: bytes, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    base = dest.resolve()
    with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
        for info in zf.infolist():
            name = info.filename
            if not name:
                continue
            if name.startswith("/"):
                raise IntegrityError(f"Archive contains an absolute path entry: {name!r}")
            target = (dest / name).resolve()
            if not str(target).startswith(str(base) + os.sep) and target != base:
                raise IntegrityError(f"Archive contains an invalid path entry: {name!r}")

            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                with zf.open(info, "r") as src, target.open("wb") as out:
                    shutil.copyfileobj(src, out)
            except (zipfile.BadZipFile, zlib.error) as e:
                raise IntegrityError(f"corrupt zip member {name}: {e}") from e
