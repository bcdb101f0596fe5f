from __future__ import annotations


class RecoveryError(Exception):
    """Base class for lifecycle and adapter errors raised by this package."""


class NotFoundError(RecoveryError):
    def __init__(self, finding_id: str) -> None:
        super().__init__(f"finding not found: {finding_id}")
        self.finding_id = finding_id


class InvalidTransitionError(RecoveryError):
    def __init__(self, finding_id: str, message: str) -> None:
        super().__init__(f"finding {finding_id}: {message}")
        self.finding_id = finding_id


class UndoExpiredError(RecoveryError):
    """Raised when a handled finding is past its undo window."""

    def __init__(self, finding_id: str, elapsed_seconds: float, window_seconds: int) -> None:
        super().__init__(
            f"undo window expired for finding {finding_id}: "
            f"{elapsed_seconds:.0f}s elapsed, window is {window_seconds}s"
        )
        self.finding_id = finding_id
        self.elapsed_seconds = elapsed_seconds
        self.window_seconds = window_seconds


class AdapterError(RecoveryError):
    """Raised by action adapters when the downstream call fails."""
