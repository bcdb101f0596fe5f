from __future__ import annotations

import logging
from collections.abc import Iterable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator

from pydantic import ValidationError

from .errors import InvalidTransitionError, NotFoundError, UndoExpiredError
from .models import (
    DequeueResult,
    EnqueueResult,
    ExecuteResult,
    Finding,
    FindingCollection,
    LeverSelection,
    LeverStrategy,
    QueueListing,
    UndoResult,
    UndoState,
)
from .undo_window import DEFAULT_UNDO_WINDOW_SECONDS, classify_finding, elapsed_since
from .utils import Clock, atomic_write_text, dedupe_ids, locked_file, read_text_or_none, utc_now

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
DEFAULT_LEVER_MAX_LIMIT = 50


def _transition(finding: Finding, **updates: Any) -> Finding:
    """Return a re-validated copy of *finding* so lifecycle invariants are checked on every write."""
    return Finding.model_validate({**finding.model_dump(), **updates})


def _created_key(finding: Finding) -> datetime:
    return finding.created_at or _EPOCH


# ---------------------------------------------------------------------------
# FindingStore
# ---------------------------------------------------------------------------

class FindingStore:
    """Filesystem store for findings and their lifecycle transitions.

    All findings live in a single JSON document.  Every mutation runs its
    read-modify-write under an exclusive ``fcntl`` lock and replaces the
    document atomically, so a batch operation evaluates its predicate and
    applies its update in one step: callers only ever see the rows that
    this call actually changed, even when several processes share the
    directory.
    """

    def __init__(
        self,
        root: Path,
        *,
        clock: Clock = utc_now,
        undo_window_seconds: int = DEFAULT_UNDO_WINDOW_SECONDS,
        lever_max_limit: int = DEFAULT_LEVER_MAX_LIMIT,
    ) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.clock = clock
        self.undo_window_seconds = undo_window_seconds
        self.lever_max_limit = lever_max_limit

    @property
    def findings_path(self) -> Path:
        """Path to the findings JSON document."""
        return self.root / "findings.json"

    # ------------------------------------------------------------------
    # Document I/O
    # ------------------------------------------------------------------

    def _read_collection(self) -> FindingCollection:
        text = read_text_or_none(self.findings_path, "findings store")
        if text is None:
            return FindingCollection()
        try:
            return FindingCollection.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"findings store at {self.findings_path} failed validation: {exc}") from exc

    def _load(self) -> FindingCollection:
        with locked_file(self.findings_path):
            return self._read_collection()

    @contextmanager
    def _transaction(self) -> Iterator[FindingCollection]:
        """Yield the collection under lock; persist it if the block exits cleanly."""
        with locked_file(self.findings_path):
            collection = self._read_collection()
            yield collection
            collection.updated_at = self.clock()
            atomic_write_text(self.findings_path, collection.model_dump_json(indent=2))

    # ------------------------------------------------------------------
    # Ingestion and reads
    # ------------------------------------------------------------------

    def put_findings(self, findings: Iterable[Finding]) -> int:
        """Insert or replace findings (used by the detection process and imports).

        Returns:
            Number of findings written.
        """
        count = 0
        with self._transaction() as collection:
            for finding in findings:
                if finding.created_at is None:
                    finding = _transition(finding, created_at=self.clock())
                collection.findings[finding.id] = finding
                count += 1
        logger.info("Stored %d finding(s) in %s", count, self.findings_path)
        return count

    def get(self, finding_id: str) -> Finding:
        finding = self._load().findings.get(finding_id)
        if finding is None:
            raise NotFoundError(finding_id)
        return finding

    def list_findings(
        self,
        *,
        handled: bool | None = None,
        queued: bool | None = None,
        finding_type: str | None = None,
    ) -> list[Finding]:
        rows = [
            finding
            for finding in self._load().findings.values()
            if (handled is None or finding.handled == handled)
            and (queued is None or finding.autopilot_queued == queued)
            and (finding_type is None or finding.type == finding_type)
        ]
        rows.sort(key=lambda finding: (_created_key(finding), finding.id))
        return rows

    # ------------------------------------------------------------------
    # Single-finding transitions
    # ------------------------------------------------------------------

    def mark_handled(self, finding_id: str) -> Finding:
        """Close a finding: set ``handled``/``handled_at`` and drop it from the queue.

        Raises:
            NotFoundError: If the finding does not exist.
            InvalidTransitionError: If the finding is already handled.
        """
        with self._transaction() as collection:
            finding = collection.findings.get(finding_id)
            if finding is None:
                raise NotFoundError(finding_id)
            if finding.handled:
                raise InvalidTransitionError(finding_id, "already handled")
            updated = _transition(
                finding,
                handled=True,
                handled_at=self.clock(),
                autopilot_queued=False,
                autopilot_queued_at=None,
            )
            collection.findings[finding_id] = updated
        logger.info("Finding %s marked handled", finding_id)
        return updated

    def unhandle(self, finding_id: str) -> Finding:
        """Reopen a handled finding through the undo surface.

        Raises:
            NotFoundError: If the finding does not exist.
            InvalidTransitionError: If the finding is not handled.
            UndoExpiredError: If the undo window has closed.
        """
        return self._reopen(finding_id, enforce_window=True)

    def reset_handled(self, finding_id: str) -> Finding:
        """Reopen a handled finding without consulting the undo window.

        Only for administrative resets; user-facing undo goes through
        :meth:`unhandle` so the window shown in pending listings is the one
        enforced.
        """
        return self._reopen(finding_id, enforce_window=False)

    def _reopen(self, finding_id: str, *, enforce_window: bool) -> Finding:
        with self._transaction() as collection:
            finding = collection.findings.get(finding_id)
            if finding is None:
                raise NotFoundError(finding_id)
            if not finding.handled or finding.handled_at is None:
                raise InvalidTransitionError(finding_id, "not handled")
            now = self.clock()
            if enforce_window and classify_finding(finding, now, window_seconds=self.undo_window_seconds) != UndoState.PENDING:
                raise UndoExpiredError(
                    finding_id,
                    elapsed_since(finding.handled_at, now).total_seconds(),
                    self.undo_window_seconds,
                )
            updated = _transition(finding, handled=False, handled_at=None)
            collection.findings[finding_id] = updated
        logger.info("Finding %s reopened (window enforced=%s)", finding_id, enforce_window)
        return updated

    # ------------------------------------------------------------------
    # Batch transitions (conditional updates)
    # ------------------------------------------------------------------

    def enqueue(self, ids: list[str]) -> EnqueueResult:
        """Queue unhandled findings for automated handling. Handled or unknown ids are skipped."""
        changed: list[Finding] = []
        with self._transaction() as collection:
            now = self.clock()
            for finding_id in dedupe_ids(ids):
                finding = collection.findings.get(finding_id)
                if finding is None or finding.handled:
                    continue
                updated = _transition(finding, autopilot_queued=True, autopilot_queued_at=now)
                collection.findings[finding_id] = updated
                changed.append(updated)
        logger.info("Enqueued %d of %d requested finding(s)", len(changed), len(ids))
        return EnqueueResult(
            queued_count=len(changed),
            queued_value_cents=sum(finding.value_cents for finding in changed),
            ids=[finding.id for finding in changed],
        )

    def dequeue(self, ids: list[str]) -> DequeueResult:
        """Remove unhandled, queued findings from the queue; others are skipped."""
        changed: list[str] = []
        with self._transaction() as collection:
            for finding_id in dedupe_ids(ids):
                finding = collection.findings.get(finding_id)
                if finding is None or finding.handled or not finding.autopilot_queued:
                    continue
                collection.findings[finding_id] = _transition(
                    finding, autopilot_queued=False, autopilot_queued_at=None
                )
                changed.append(finding_id)
        logger.info("Dequeued %d of %d requested finding(s)", len(changed), len(ids))
        return DequeueResult(updated_count=len(changed), ids=changed)

    def execute_batch(self, ids: list[str]) -> ExecuteResult:
        """Mark handled every requested finding that is currently queued and unhandled."""
        changed: list[Finding] = []
        with self._transaction() as collection:
            now = self.clock()
            for finding_id in dedupe_ids(ids):
                finding = collection.findings.get(finding_id)
                if finding is None or finding.handled or not finding.autopilot_queued:
                    continue
                updated = _transition(
                    finding,
                    handled=True,
                    handled_at=now,
                    autopilot_queued=False,
                    autopilot_queued_at=None,
                )
                collection.findings[finding_id] = updated
                changed.append(updated)
        logger.info("Executed %d of %d requested finding(s)", len(changed), len(ids))
        return ExecuteResult(
            handled_count=len(changed),
            total_value_cents=sum(finding.value_cents for finding in changed),
            ids=[finding.id for finding in changed],
        )

    def undo(self, ids: list[str], *, requeue: bool = False) -> UndoResult:
        """Reopen handled findings that are still inside the undo window.

        Args:
            ids: Candidate finding ids.
            requeue: Put restored findings back in the autopilot queue.
        """
        restored: list[str] = []
        with self._transaction() as collection:
            now = self.clock()
            for finding_id in dedupe_ids(ids):
                finding = collection.findings.get(finding_id)
                if finding is None:
                    continue
                if classify_finding(finding, now, window_seconds=self.undo_window_seconds) != UndoState.PENDING:
                    continue
                updates: dict[str, Any] = {"handled": False, "handled_at": None}
                if requeue:
                    updates.update(autopilot_queued=True, autopilot_queued_at=now)
                collection.findings[finding_id] = _transition(finding, **updates)
                restored.append(finding_id)
        logger.info("Undo restored %d of %d requested finding(s)", len(restored), len(ids))
        return UndoResult(restored_count=len(restored), ids=restored)

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def _handled_by_state(self, state: UndoState) -> list[Finding]:
        now = self.clock()
        rows = [
            finding
            for finding in self._load().findings.values()
            if classify_finding(finding, now, window_seconds=self.undo_window_seconds) == state
        ]
        rows.sort(key=lambda finding: finding.handled_at or _EPOCH, reverse=True)
        return rows

    def list_pending(self, *, limit: int | None = None) -> list[Finding]:
        """Handled findings still inside the undo window, most recently handled first."""
        rows = self._handled_by_state(UndoState.PENDING)
        return rows if limit is None else rows[:limit]

    def list_confirmed(self, *, limit: int | None = None) -> list[Finding]:
        rows = self._handled_by_state(UndoState.CONFIRMED)
        return rows if limit is None else rows[:limit]

    def list_queue(self, *, limit: int | None = None) -> QueueListing:
        rows = self.list_findings(handled=False, queued=True)
        rows.sort(
            key=lambda finding: (
                -finding.value_cents,
                finding.autopilot_queued_at or _EPOCH,
                _created_key(finding),
            )
        )
        if limit is not None:
            rows = rows[:limit]
        return QueueListing(
            count=len(rows),
            total_value_cents=sum(finding.value_cents for finding in rows),
            items=rows,
        )

    def select_lever(self, limit: int, strategy: LeverStrategy = LeverStrategy.COUNT) -> LeverSelection:
        """Pick the dominant finding type among unhandled, unqueued findings.

        Args:
            limit: Maximum number of candidates, clamped to ``[1, lever_max_limit]``.
            strategy: ``COUNT`` ranks groups by size then value, ``VALUE`` by
                summed value then size.

        Returns:
            The winning type and its highest-value members.
        """
        capped = max(1, min(int(limit), self.lever_max_limit))
        pool = self.list_findings(handled=False, queued=False)
        if not pool:
            return LeverSelection(type=None, strategy=strategy)

        groups: dict[str, list[Finding]] = {}
        for finding in pool:
            groups.setdefault(finding.type, []).append(finding)

        def rank(item: tuple[str, list[Finding]]) -> tuple[int, int]:
            members = item[1]
            count = len(members)
            total = sum(finding.value_cents for finding in members)
            return (total, count) if strategy == LeverStrategy.VALUE else (count, total)

        # Stable sort keeps first-seen order among exact ties.
        target_type, members = sorted(groups.items(), key=rank, reverse=True)[0]
        members.sort(key=lambda finding: (-finding.value_cents, _created_key(finding)))
        chosen = members[:capped]
        logger.debug("Lever %s selected by %s with %d candidate(s)", target_type, strategy.value, len(chosen))
        return LeverSelection(
            type=target_type,
            strategy=strategy,
            candidate_ids=[finding.id for finding in chosen],
            candidate_value_cents=sum(finding.value_cents for finding in chosen),
        )
