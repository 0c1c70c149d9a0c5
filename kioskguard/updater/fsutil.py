from __future__ import annotations

import hashlib
import json
import os
import shutil
import tempfile
import zipfile
import zlib
from typing import Any, Iterable

from kioskguard.errors import ExtractError


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def read_json(path: str) -> dict:
    """Missing or unreadable files read as {}."""
    try:
        if not os.path.exists(path):
            return {}
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, ValueError):
        return {}


def write_json_atomic(path: str, obj: Any) -> None:
    """Write to a temp file in the same directory, then os.replace over `path`."""
    d = os.path.dirname(path) or "."
    ensure_dir(d)
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=d)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(obj, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def sha256_file(path: str, *, chunk_size: int = 1024 * 1024) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def copy_dir(src: str, dst: str) -> None:
    shutil.copytree(src, dst, dirs_exist_ok=True)


def dir_size(path: str) -> int:
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.path.getsize(os.path.join(root, name))
            except OSError:
                continue
    return total


def remove_dir(path: str) -> None:
    if os.path.isdir(path):
        shutil.rmtree(path)


def clear_dir(path: str, *, keep: Iterable[str] = ()) -> None:
    """Remove every entry of `path` except the names in `keep`. Creates `path` if missing."""
    ensure_dir(path)
    keep_set = set(keep)
    for name in os.listdir(path):
        if name in keep_set:
            continue
        p = os.path.join(path, name)
        if os.path.isdir(p) and not os.path.islink(p):
            shutil.rmtree(p)
        else:
            os.unlink(p)


def extract_zip(archive: str, dest: str) -> int:
    """
    Extract `archive` into `dest`, refusing members that would land outside it.
    Returns the number of extracted members.
    """
    ensure_dir(dest)
    root = os.path.realpath(dest)
    try:
        with zipfile.ZipFile(archive) as zf:
            members = zf.infolist()
            for m in members:
                target = os.path.realpath(os.path.join(root, m.filename))
                if target != root and not target.startswith(root + os.sep):
                    raise ExtractError(f"Unsafe path in archive: {m.filename}")
            zf.extractall(root)
    except (zipfile.BadZipFile, zlib.error, EOFError, ValueError) as e:
        raise ExtractError(f"Invalid archive: {e}") from e
    except (RuntimeError, NotImplementedError) as e:
        # encrypted members or unsupported compression
        raise ExtractError(f"Unsupported archive: {e}") from e
    return len(members)
