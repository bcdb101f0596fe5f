"""Undo window policy shared by pending listings and the undo operations.

A handled finding is PENDING (reversible) while strictly less than the window
has elapsed since ``handled_at``; at exactly the window boundary and after it
the finding is CONFIRMED. Listing and enforcement must call the same function
with the same window or the UI would offer undos the store then rejects.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from .models import Finding, UndoState

DEFAULT_UNDO_WINDOW_SECONDS = 300


def elapsed_since(handled_at: datetime, now: datetime) -> timedelta:
    return now - handled_at


def classify(handled_at: datetime, now: datetime, *, window_seconds: int = DEFAULT_UNDO_WINDOW_SECONDS) -> UndoState:
    if elapsed_since(handled_at, now) < timedelta(seconds=window_seconds):
        return UndoState.PENDING
    return UndoState.CONFIRMED


def classify_finding(
    finding: Finding,
    now: datetime,
    *,
    window_seconds: int = DEFAULT_UNDO_WINDOW_SECONDS,
) -> UndoState | None:
    """Return the undo state of a handled finding, or ``None`` if it is not handled."""
    if not finding.handled or finding.handled_at is None:
        return None
    return classify(finding.handled_at, now, window_seconds=window_seconds)


def is_pending(finding: Finding, now: datetime, *, window_seconds: int = DEFAULT_UNDO_WINDOW_SECONDS) -> bool:
    return classify_finding(finding, now, window_seconds=window_seconds) == UndoState.PENDING
