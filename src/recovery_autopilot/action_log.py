from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from .canonical import to_canonical_json
from .models import ActionKind, LogEntry, RunStatus
from .utils import atomic_write_text, locked_file, sanitize_key

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 200
SEND_ACTIONS = frozenset({ActionKind.SEND_SMS, ActionKind.SEND_EMAIL})


class ActionLog:
    """Append-only, size-bounded history of auto-pilot steps per finding key.

    One JSONL file per key, one canonical JSON entry per line.  Only the most
    recent ``max_entries`` lines are kept.  The log is local and advisory:
    write failures are logged and do not interrupt the caller.
    """

    def __init__(self, root: Path, *, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.root = root
        self.max_entries = max_entries

    def _path(self, key: str) -> Path:
        return self.root / f"{sanitize_key(key)}.jsonl"

    @staticmethod
    def _read_lines(path: Path) -> list[str]:
        # Undecodable bytes become U+FFFD so the line fails parsing and is skipped.
        if not path.is_file():
            return []
        text = path.read_text(encoding="utf-8", errors="replace")
        return [line for line in text.splitlines() if line.strip()]

    def append(self, key: str, entry: LogEntry) -> None:
        path = self._path(key)
        line = to_canonical_json(entry)
        try:
            with locked_file(path):
                lines = self._read_lines(path)
                if len(lines) + 1 > self.max_entries:
                    kept = (lines + [line])[-self.max_entries:]
                    atomic_write_text(path, "\n".join(kept) + "\n")
                else:
                    with path.open("a", encoding="utf-8") as handle:
                        handle.write(line + "\n")
        except OSError as exc:
            logger.warning("Unable to append action log entry for %s: %s", key, exc)

    def entries(self, key: str) -> list[LogEntry]:
        """Return the retained entries for *key*, oldest first. Corrupt lines are skipped."""
        path = self._path(key)
        try:
            with locked_file(path):
                lines = self._read_lines(path)
        except OSError as exc:
            logger.warning("Unable to read action log for %s: %s", key, exc)
            return []
        parsed: list[LogEntry] = []
        for line in lines:
            try:
                parsed.append(LogEntry.model_validate_json(line))
            except ValidationError:
                logger.warning("Skipping corrupt action log line in %s", path)
        return parsed

    def last_matching(self, key: str, predicate: Callable[[LogEntry], bool]) -> LogEntry | None:
        for entry in reversed(self.entries(key)):
            if predicate(entry):
                return entry
        return None

    def last_successful_send(self, key: str, finding_type: str) -> LogEntry | None:
        """Most recent successful SMS or email send for *key* and *finding_type*."""
        return self.last_matching(
            key,
            lambda entry: entry.action in SEND_ACTIONS
            and entry.status == RunStatus.SUCCESS
            and entry.finding_type == finding_type,
        )
