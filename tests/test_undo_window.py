from __future__ import annotations

from datetime import timedelta

from conftest import T0, make_finding
from recovery_autopilot.models import UndoState
from recovery_autopilot.undo_window import classify, classify_finding, is_pending


def test_classify_boundary_is_exclusive() -> None:
    assert classify(T0, T0) == UndoState.PENDING
    assert classify(T0, T0 + timedelta(minutes=4, seconds=59)) == UndoState.PENDING
    assert classify(T0, T0 + timedelta(minutes=5)) == UndoState.CONFIRMED
    assert classify(T0, T0 + timedelta(minutes=5, seconds=1)) == UndoState.CONFIRMED


def test_classify_respects_custom_window() -> None:
    assert classify(T0, T0 + timedelta(seconds=30), window_seconds=60) == UndoState.PENDING
    assert classify(T0, T0 + timedelta(seconds=60), window_seconds=60) == UndoState.CONFIRMED


def test_classify_finding_ignores_unhandled() -> None:
    open_finding = make_finding("a")
    handled = make_finding("b", handled=True, handled_at=T0)

    assert classify_finding(open_finding, T0) is None
    assert is_pending(open_finding, T0) is False
    assert is_pending(handled, T0 + timedelta(minutes=1)) is True
    assert is_pending(handled, T0 + timedelta(minutes=10)) is False
