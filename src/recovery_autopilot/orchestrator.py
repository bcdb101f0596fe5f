from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Iterable, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .action_log import ActionLog
from .adapters import ActionAdapters
from .decision import DEFAULT_RULES, DecisionRule, decide
from .locks import DEFAULT_LOCK_TTL_SECONDS, ResourceLock
from .models import (
    ActionKind,
    AutoPilotContext,
    AutoPilotRunResult,
    BlockReason,
    Channel,
    Decision,
    LogEntry,
    RenderedMessage,
    RunStatus,
    RunSummary,
)
from .templates import render_template
from .utils import Clock, utc_now

logger = logging.getLogger(__name__)

TITLE_BLOCKED = "⚠️ Auto-Pilot bloqué"
TITLE_DONE = "✅ Auto-Pilot terminé"
TITLE_FALLBACK = "✅ Auto-Pilot terminé (fallback)"
TITLE_NO_ACTION = "✅ Auto-Pilot (aucune action auto)"
TITLE_ERROR = "⚠️ Auto-Pilot interrompu"


class AutoPilotState(TypedDict, total=False):
    context: AutoPilotContext
    decision: Decision
    rendered: RenderedMessage | None
    fallback_reason: BlockReason
    steps: list[LogEntry]
    result: AutoPilotRunResult


def _summary(context: AutoPilotContext, title: str, lines: Iterable[str]) -> RunSummary:
    return RunSummary(title=title, lines=[f"• {context.display_label}", *lines][:4])


def _blocked(context: AutoPilotContext, reason: BlockReason, reason_title: str, lines: list[str]) -> AutoPilotRunResult:
    return AutoPilotRunResult(
        ok=False,
        blocked=True,
        block_reason=reason,
        steps=[],
        summary=_summary(context, TITLE_BLOCKED, [f"• {reason_title}", *lines]),
    )


def _treated_line(treated_ok: bool | None) -> str:
    if treated_ok is None:
        return "• Laissé ouvert pour suivi manuel."
    return "• Marqué comme traité." if treated_ok else "• ⚠️ Traité non confirmé (backend)."


class AutoPilotOrchestrator:
    """Per-finding auto-pilot run: lock -> guards -> decide -> cooldown -> render -> execute -> close out.

    The graph routes with ``Command`` from each node; every terminal node
    writes ``result``.  The resource lock is taken before the graph runs and
    released in a ``finally`` block whatever exit the run takes.
    """

    def __init__(
        self,
        *,
        adapters: ActionAdapters,
        lock: ResourceLock,
        log: ActionLog,
        clock: Clock = utc_now,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        close_after_fallback: bool = True,
        rules: tuple[DecisionRule, ...] = DEFAULT_RULES,
    ) -> None:
        self.adapters = adapters
        self.lock = lock
        self.log = log
        self.clock = clock
        self.lock_ttl_seconds = lock_ttl_seconds
        self.close_after_fallback = close_after_fallback
        self.rules = rules
        # Entries appended by the run in progress, per lock key.
        self._appended: dict[str, list[LogEntry]] = {}
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(AutoPilotState)
        graph.add_node("guards", self._guards)
        graph.add_node("decide", self._decide)
        graph.add_node("cooldown", self._cooldown)
        graph.add_node("render", self._render)
        graph.add_node("execute", self._execute)
        graph.add_node("fallback", self._fallback)
        graph.add_node("close_out", self._close_out_node)

        graph.add_edge(START, "guards")
        graph.add_edge("fallback", END)
        graph.add_edge("close_out", END)
        return graph

    # ------------------------------------------------------------------
    # Log helpers
    # ------------------------------------------------------------------

    def _record(
        self,
        state: AutoPilotState,
        steps: list[LogEntry],
        *,
        action: ActionKind,
        channel: Channel,
        status: RunStatus,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> list[LogEntry]:
        context = state["context"]
        entry = LogEntry(
            ts=self.clock(),
            opportunity_id=context.opportunity_id,
            finding_id=context.finding_id,
            finding_type=context.finding_type,
            action=action,
            channel=channel,
            status=status,
            reason=reason,
            details=details or {},
        )
        self.log.append(context.lock_key, entry)
        self._appended.setdefault(context.lock_key, []).append(entry)
        return [*steps, entry]

    def _try_create_task(
        self,
        state: AutoPilotState,
        steps: list[LogEntry],
        *,
        title: str,
        description: str,
        reason: str,
    ) -> tuple[bool, list[LogEntry]]:
        """Best-effort task creation; a failure is logged, never raised."""
        context = state["context"]
        try:
            self.adapters.create_task(title, description, context=context)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Fallback task for %s failed: %s", context.lock_key, exc)
            steps = self._record(
                state,
                steps,
                action=ActionKind.CREATE_TASK,
                channel=Channel.TASK,
                status=RunStatus.FAILED,
                reason=reason,
                details={"error": str(exc) or type(exc).__name__},
            )
            return False, steps
        steps = self._record(
            state,
            steps,
            action=ActionKind.CREATE_TASK,
            channel=Channel.TASK,
            status=RunStatus.SUCCESS,
            reason=reason,
        )
        return True, steps

    def _mark_treated(self, state: AutoPilotState, steps: list[LogEntry]) -> tuple[bool, list[LogEntry]]:
        """Advisory close-out: failure is recorded but does not fail the run."""
        context = state["context"]
        try:
            self.adapters.mark_treated(context.lock_key)
        except Exception as exc:  # noqa: BLE001
            logger.warning("mark_treated failed for %s: %s", context.lock_key, exc)
            steps = self._record(
                state,
                steps,
                action=ActionKind.MARK_TREATED,
                channel=Channel.NONE,
                status=RunStatus.FAILED,
                reason=str(exc) or "UNKNOWN",
            )
            return False, steps
        steps = self._record(state, steps, action=ActionKind.MARK_TREATED, channel=Channel.NONE, status=RunStatus.SUCCESS)
        return True, steps

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _guards(self, state: AutoPilotState) -> Command[str]:
        context = state["context"]
        if context.treated:
            result = _blocked(
                context,
                BlockReason.ALREADY_TREATED,
                "Déjà marqué comme traité.",
                ["→ Va dans l’historique si tu veux annuler (Undo)."],
            )
        elif context.contact.opt_out:
            result = _blocked(
                context,
                BlockReason.OPTOUT,
                "Contact non joignable (opt-out / DNC).",
                ["→ Auto-Pilot n’enverra rien automatiquement.", "→ Crée plutôt une tâche manuelle si nécessaire."],
            )
        elif not context.contact.has_any:
            result = _blocked(
                context,
                BlockReason.MISSING_CONTACT,
                "Aucune info de contact (email / téléphone).",
                [
                    "→ Ajoute un email ou un numéro pour activer l’envoi automatique.",
                    "→ Sinon, utilise “Copier le message” et fais l’action manuellement.",
                ],
            )
        else:
            return Command(goto="decide")
        logger.info("Auto-pilot blocked for %s: %s", context.lock_key, result.block_reason.value)
        return Command(goto=END, update={"result": result})

    def _decide(self, state: AutoPilotState) -> Command[str]:
        context = state["context"]
        decision = decide(context, self.rules)
        if decision.kind != ActionKind.STOP:
            return Command(goto="cooldown", update={"decision": decision})

        reason = BlockReason.MISSING_CONTACT if decision.rule == "missing_contact" else BlockReason.LOW_CONFIDENCE
        steps = self._record(
            state,
            state.get("steps", []),
            action=ActionKind.STOP,
            channel=Channel.NONE,
            status=RunStatus.BLOCKED,
            reason=reason.value,
            details={"label": decision.summary_label, "rule": decision.rule},
        )
        result = AutoPilotRunResult(
            ok=True,
            steps=steps,
            summary=_summary(
                context,
                TITLE_NO_ACTION,
                [
                    f"• {decision.summary_label} pour envoyer automatiquement.",
                    "→ Utilise “Copier le message” ou crée une tâche manuelle.",
                ],
            ),
        )
        logger.info("Auto-pilot took no action for %s (%s)", context.lock_key, decision.rule)
        return Command(goto=END, update={"decision": decision, "steps": steps, "result": result})

    def _cooldown(self, state: AutoPilotState) -> Command[str]:
        decision = state["decision"]
        if not decision.cooldown_hours:
            return Command(goto="render")
        context = state["context"]
        last = self.log.last_successful_send(context.lock_key, context.finding_type)
        if last is not None and self.clock() - last.ts < timedelta(hours=decision.cooldown_hours):
            logger.info(
                "Cooldown active for %s: last send at %s, cooldown %dh",
                context.lock_key,
                last.ts.isoformat(),
                decision.cooldown_hours,
            )
            return Command(goto="fallback", update={"fallback_reason": BlockReason.COOLDOWN_ACTIVE})
        return Command(goto="render")

    def _render(self, state: AutoPilotState) -> Command[str]:
        decision = state["decision"]
        if not decision.template_key:
            return Command(goto="execute", update={"rendered": None})
        rendered = render_template(decision.template_key, state["context"], decision.required_fields)
        if rendered is None:
            return Command(goto="fallback", update={"fallback_reason": BlockReason.MISSING_TEMPLATE})
        return Command(goto="execute", update={"rendered": rendered})

    def _execute(self, state: AutoPilotState) -> Command[str]:
        context = state["context"]
        decision = state["decision"]
        rendered = state.get("rendered")
        body = rendered.body if rendered is not None else ""
        subject = rendered.subject if rendered is not None else None
        steps = state.get("steps", [])
        try:
            if decision.kind == ActionKind.SEND_SMS:
                if not context.contact.has_phone:
                    raise ValueError("MISSING_CONTACT")
                self.adapters.send_message(Channel.SMS, context.contact.phone, body, subject)
            elif decision.kind == ActionKind.SEND_EMAIL:
                if not context.contact.has_email:
                    raise ValueError("MISSING_CONTACT")
                self.adapters.send_message(Channel.EMAIL, context.contact.email, body, subject or "Message")
            elif decision.kind == ActionKind.CREATE_TASK:
                self.adapters.create_task(
                    f"Suivi requis — {decision.summary_label}",
                    f"Auto-Pilot a choisi une tâche.\nFinding: {context.finding_type}\nSévérité: {context.severity}",
                    context=context,
                )
            else:
                raise ValueError(f"unsupported action {decision.kind.value}")
        except Exception as exc:  # noqa: BLE001
            error = str(exc) or type(exc).__name__
            logger.warning("Auto-pilot %s failed for %s: %s", decision.kind.value, context.lock_key, error)
            steps = self._record(
                state,
                steps,
                action=decision.kind,
                channel=decision.channel,
                status=RunStatus.FAILED,
                reason=error,
            )
            _, steps = self._try_create_task(
                state,
                steps,
                title="Action requise – Auto-Pilot a échoué",
                description=f"Raison: {error}\nSuggestion: {decision.summary_label}",
                reason="ACTION_FAILED",
            )
            result = AutoPilotRunResult(
                ok=False,
                steps=steps,
                summary=_summary(
                    context,
                    TITLE_BLOCKED,
                    [
                        "• Action automatique a échoué.",
                        f"→ Suggestion: {decision.summary_label}",
                        "→ Une tâche a été créée (si disponible).",
                    ],
                ),
            )
            return Command(goto=END, update={"steps": steps, "result": result})

        steps = self._record(
            state,
            steps,
            action=decision.kind,
            channel=decision.channel,
            status=RunStatus.SUCCESS,
            details={"label": decision.summary_label, "rule": decision.rule},
        )
        return Command(goto="close_out", update={"steps": steps})

    def _fallback(self, state: AutoPilotState) -> dict[str, Any]:
        context = state["context"]
        decision = state["decision"]
        reason = state["fallback_reason"]
        if reason == BlockReason.COOLDOWN_ACTIVE:
            title = "Action requise – Auto-Pilot bloqué"
            description = f"Raison: cooldown actif ({decision.cooldown_hours}h)\nSuggestion: {decision.summary_label}"
            reason_line = f"• Envoi bloqué (cooldown {decision.cooldown_hours}h)."
        else:
            title = "Action requise – Template manquant"
            description = (
                f"Raison: template/vars manquants\nSuggestion: {decision.summary_label}\n"
                f"Template: {decision.template_key}"
            )
            reason_line = "• Message automatique indisponible (template/variables manquantes)."

        task_ok, steps = self._try_create_task(
            state,
            state.get("steps", []),
            title=title,
            description=description,
            reason=reason.value,
        )
        treated_ok: bool | None = None
        if self.close_after_fallback:
            treated_ok, steps = self._mark_treated(state, steps)
        else:
            steps = self._record(
                state,
                steps,
                action=ActionKind.MARK_TREATED,
                channel=Channel.NONE,
                status=RunStatus.SKIPPED,
                reason="CLOSE_AFTER_FALLBACK_DISABLED",
            )

        result = AutoPilotRunResult(
            ok=True,
            fallback_reason=reason,
            steps=steps,
            summary=_summary(
                context,
                TITLE_FALLBACK,
                [
                    reason_line,
                    "• Tâche créée automatiquement." if task_ok else "• ⚠️ Tâche non créée (backend).",
                    _treated_line(treated_ok),
                ],
            ),
        )
        logger.info("Auto-pilot fallback for %s (%s)", context.lock_key, reason.value)
        return {"steps": steps, "result": result}

    def _close_out_node(self, state: AutoPilotState) -> dict[str, Any]:
        context = state["context"]
        decision = state["decision"]
        treated_ok, steps = self._mark_treated(state, state.get("steps", []))
        result = AutoPilotRunResult(
            ok=True,
            steps=steps,
            summary=_summary(context, TITLE_DONE, [f"• Action: {decision.summary_label}", _treated_line(treated_ok)]),
        )
        logger.info("Auto-pilot completed %s for %s", decision.kind.value, context.lock_key)
        return {"steps": steps, "result": result}

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, context: AutoPilotContext) -> AutoPilotRunResult:
        """Run the full pipeline for one finding. Never raises; every exit is a structured result."""
        key = context.lock_key
        acquired = False
        try:
            if not self.lock.acquire(key, self.lock_ttl_seconds):
                return _blocked(
                    context,
                    BlockReason.ALREADY_RUNNING,
                    "Déjà en cours d’exécution.",
                    ["→ Réessaie dans quelques secondes."],
                )
            acquired = True
            self._appended[key] = []
            final_state = self.graph.invoke({"context": context, "steps": []})
            return final_state["result"]
        except Exception as exc:  # noqa: BLE001
            logger.exception("Auto-pilot run failed for %s: %s", key, exc)
            return AutoPilotRunResult(
                ok=False,
                block_reason=BlockReason.UNKNOWN,
                steps=list(self._appended.get(key, [])),
                summary=_summary(context, TITLE_ERROR, [f"• Erreur interne: {exc}"]),
            )
        finally:
            if acquired:
                self._appended.pop(key, None)
                self.lock.release(key)
