from __future__ import annotations

import fcntl
import hashlib
import os
import re
import tempfile
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterator

Clock = Callable[[], datetime]

_LOCK_SUFFIX = ".lock"


def utc_now() -> datetime:
    return datetime.now(UTC)


@contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.  The lock file is created in the same directory as *path*
    so ``os.replace`` stays on the same filesystem.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically via temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def read_text_or_none(path: Path, label: str) -> str | None:
    """Return the file text, or ``None`` when the file is absent or blank.

    Raises:
        ValueError: If the file contains non-UTF-8 data.
    """
    if not path.is_file():
        return None
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    return text if text.strip() else None


def sanitize_key(key: str) -> str:
    """Map an arbitrary resource key to a filesystem-safe, collision-free file stem.

    Raises:
        ValueError: If the key is empty.
    """
    value = key.strip()
    if not value:
        raise ValueError("key must be non-empty")
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-.")[:64]
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]
    return f"{slug}-{digest}" if slug else digest


def dedupe_ids(ids: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for raw in ids:
        value = raw.strip() if isinstance(raw, str) else ""
        if not value or value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered
