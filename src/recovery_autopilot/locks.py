from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator

from .utils import Clock, atomic_write_text, locked_file, read_text_or_none, sanitize_key, utc_now

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 60


class ResourceLock:
    """Advisory, TTL-bounded mutex keyed by finding identity.

    Each key maps to a small JSON file holding ``expires_at``; checks and
    writes happen under an ``fcntl`` lock so callers sharing the state
    directory are serialized.  The lock fails open: if the backing store
    cannot be read or written, acquisition reports success and a warning is
    logged, favoring availability over strict exclusion.
    """

    def __init__(self, root: Path, *, clock: Clock = utc_now) -> None:
        self.root = root
        self.clock = clock

    def _path(self, key: str) -> Path:
        return self.root / f"{sanitize_key(key)}.json"

    def _live_expiry(self, path: Path, now: datetime) -> datetime | None:
        try:
            text = read_text_or_none(path, "lock")
            if text is None:
                return None
            expires_at = datetime.fromisoformat(json.loads(text)["expires_at"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring unreadable lock file %s", path)
            return None
        return expires_at if expires_at > now else None

    def acquire(self, key: str, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS) -> bool:
        """Take the lock for *key* unless a live one exists.

        Returns:
            True if the lock was taken (or the backing store is unavailable),
            False if another holder's lock has not yet expired.
        """
        path = self._path(key)
        try:
            with locked_file(path):
                now = self.clock()
                live = self._live_expiry(path, now)
                if live is not None:
                    logger.info("Lock %s held until %s", key, live.isoformat())
                    return False
                expires_at = now + timedelta(seconds=ttl_seconds)
                atomic_write_text(path, json.dumps({"key": key, "expires_at": expires_at.isoformat()}))
        except OSError as exc:
            logger.warning("Lock store unavailable for %s, failing open: %s", key, exc)
            return True
        return True

    def release(self, key: str) -> None:
        path = self._path(key)
        try:
            with locked_file(path):
                path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Unable to release lock %s: %s", key, exc)

    def is_locked(self, key: str) -> bool:
        path = self._path(key)
        try:
            with locked_file(path):
                return self._live_expiry(path, self.clock()) is not None
        except OSError:
            return False

    @contextmanager
    def hold(self, key: str, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS) -> Iterator[bool]:
        """Context manager yielding whether the lock was obtained; releases it on exit."""
        acquired = self.acquire(key, ttl_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)
