from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .action_log import ActionLog
from .adapters import ActionAdapters, build_adapters
from .locks import ResourceLock
from .models import (
    AutoPilotContext,
    AutoPilotRunResult,
    Contact,
    DequeueResult,
    EnqueueResult,
    ExecuteResult,
    Finding,
    LeverSelection,
    LeverStrategy,
    QueueListing,
    UndoResult,
)
from .orchestrator import AutoPilotOrchestrator
from .settings import RuntimeSettings
from .state_store import FindingStore
from .utils import Clock, utc_now

logger = logging.getLogger(__name__)


def _require_ids(ids: list[str], operation: str) -> list[str]:
    cleaned = [finding_id.strip() for finding_id in ids if finding_id and finding_id.strip()]
    if not cleaned:
        raise ValueError(f"{operation} requires at least one finding id")
    return cleaned


class RecoveryService:
    """Entry points over the finding lifecycle and the auto-pilot orchestrator."""

    def __init__(
        self,
        *,
        store: FindingStore,
        orchestrator: AutoPilotOrchestrator,
        settings: RuntimeSettings | None = None,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.settings = settings or RuntimeSettings()

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        *,
        repo_root: Path | None = None,
        adapters: ActionAdapters | None = None,
        clock: Clock = utc_now,
    ) -> "RecoveryService":
        """Wire the store, lock, action log and adapters under the configured state root."""
        root = settings.state_store_path(repo_root or Path.cwd())
        store = FindingStore(
            root,
            clock=clock,
            undo_window_seconds=settings.undo_window_seconds,
            lever_max_limit=settings.lever_max_limit,
        )
        orchestrator = AutoPilotOrchestrator(
            adapters=adapters if adapters is not None else build_adapters(settings, store),
            lock=ResourceLock(root / "locks", clock=clock),
            log=ActionLog(root / "action_log", max_entries=settings.log_max_entries),
            clock=clock,
            lock_ttl_seconds=settings.lock_ttl_seconds,
            close_after_fallback=settings.close_after_fallback,
        )
        return cls(store=store, orchestrator=orchestrator, settings=settings)

    # ------------------------------------------------------------------
    # Lever and queue
    # ------------------------------------------------------------------

    def select_lever(self, limit: int | None = None, strategy: LeverStrategy = LeverStrategy.COUNT) -> LeverSelection:
        return self.store.select_lever(self.settings.clamp_lever_limit(limit), strategy)

    def launch_autopilot(
        self,
        limit: int | None = None,
        strategy: LeverStrategy = LeverStrategy.COUNT,
    ) -> EnqueueResult:
        """Select the lever and queue its candidates in one call.

        Candidates handled or queued by someone else between selection and
        enqueue are skipped, so the counts reflect only what this call queued.
        """
        lever = self.select_lever(limit, strategy)
        if lever.type is None or not lever.candidate_ids:
            logger.info("No lever available to launch")
            return EnqueueResult(queued_count=0, queued_value_cents=0, ids=[], target_type=None)
        result = self.store.enqueue(lever.candidate_ids)
        return result.model_copy(update={"target_type": lever.type})

    def enqueue(self, ids: list[str]) -> EnqueueResult:
        return self.store.enqueue(_require_ids(ids, "enqueue"))

    def dequeue(self, ids: list[str]) -> DequeueResult:
        return self.store.dequeue(_require_ids(ids, "dequeue"))

    def execute(self, ids: list[str]) -> ExecuteResult:
        return self.store.execute_batch(_require_ids(ids, "execute"))

    def list_queue(self) -> QueueListing:
        return self.store.list_queue(limit=self.settings.queue_list_limit)

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def undo(self, ids: list[str], *, requeue: bool = False) -> UndoResult:
        return self.store.undo(_require_ids(ids, "undo"), requeue=requeue)

    def undo_one(self, finding_id: str) -> Finding:
        return self.store.unhandle(finding_id)

    def reopen(self, finding_id: str) -> Finding:
        """Administrative reopen; ignores the undo window."""
        logger.warning("Administrative reopen of finding %s", finding_id)
        return self.store.reset_handled(finding_id)

    def list_pending(self) -> list[Finding]:
        return self.store.list_pending(limit=self.settings.pending_list_limit)

    # ------------------------------------------------------------------
    # Auto-pilot
    # ------------------------------------------------------------------

    def build_context(self, finding_id: str, contact: Contact | None = None, **extras: Any) -> AutoPilotContext:
        """Project a stored finding into an auto-pilot context.

        ``extras`` supplies data the store does not hold (``opportunity_id``,
        ``payment_link``, activity timestamps) and overrides derived fields.
        The invoice amount defaults to the finding value in dollars.

        Raises:
            NotFoundError: If the finding does not exist.
        """
        finding = self.store.get(finding_id)
        values: dict[str, Any] = {
            "opportunity_id": finding.id,
            "finding_id": finding.id,
            "finding_type": finding.type,
            "severity": finding.severity,
            "treated": finding.handled,
            "contact": contact or Contact(),
            "invoice_amount": finding.value_cents / 100 if finding.value_cents else None,
            "title": finding.title or None,
        }
        values.update(extras)
        return AutoPilotContext.model_validate(values)

    def run_orchestrator(self, context: AutoPilotContext) -> AutoPilotRunResult:
        result = self.orchestrator.run(context)
        reason = result.block_reason or result.fallback_reason
        logger.info(
            "Auto-pilot run for %s: ok=%s blocked=%s reason=%s",
            context.lock_key,
            result.ok,
            result.blocked,
            reason.value if reason else "-",
        )
        return result
