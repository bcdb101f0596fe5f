"""Decision engine: maps an auto-pilot context to one action.

Responsibilities:
  - Evaluate an ordered table of rules, first match wins.
  - Pick the delivery channel from the contact data available.
Must not:
  - Perform I/O or read the action log; cooldowns are enforced by the orchestrator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable

from .models import ActionKind, AutoPilotContext, Channel, Decision, FindingType

logger = logging.getLogger(__name__)

Predicate = Callable[[AutoPilotContext], bool]
Builder = Callable[[AutoPilotContext], Decision]

SMS_FIRST: tuple[Channel, ...] = (Channel.SMS, Channel.EMAIL)
EMAIL_FIRST: tuple[Channel, ...] = (Channel.EMAIL, Channel.SMS)

_KIND_BY_CHANNEL = {
    Channel.SMS: ActionKind.SEND_SMS,
    Channel.EMAIL: ActionKind.SEND_EMAIL,
    Channel.TASK: ActionKind.CREATE_TASK,
}

LABEL_MISSING_CONTACT = "Contact manquant"
LABEL_LOW_CONFIDENCE = "Confiance insuffisante"


@dataclass(frozen=True)
class DecisionRule:
    name: str
    predicate: Predicate
    build: Builder


def preferred_channel(context: AutoPilotContext, order: tuple[Channel, ...] = SMS_FIRST) -> Channel:
    for channel in order:
        if channel == Channel.SMS and context.contact.has_phone:
            return channel
        if channel == Channel.EMAIL and context.contact.has_email:
            return channel
    return Channel.TASK


def _type_at_least(finding_type: FindingType, min_severity: int) -> Predicate:
    return lambda ctx: ctx.finding_type == finding_type.value and ctx.severity >= min_severity


def _outreach(
    name: str,
    *,
    order: tuple[Channel, ...],
    cooldown_hours: int,
    label: str,
    template_key: str,
    required_fields: tuple[str, ...] = (),
) -> Builder:
    def build(ctx: AutoPilotContext) -> Decision:
        channel = preferred_channel(ctx, order)
        return Decision(
            kind=_KIND_BY_CHANNEL[channel],
            channel=channel,
            cooldown_hours=cooldown_hours,
            summary_label=label,
            template_key=template_key,
            required_fields=required_fields,
            rule=name,
        )

    return build


def _stop(name: str, label: str) -> Builder:
    return lambda _ctx: Decision(kind=ActionKind.STOP, channel=Channel.NONE, summary_label=label, rule=name)


DEFAULT_RULES: tuple[DecisionRule, ...] = (
    # The orchestrator guards contact first; the engine re-checks so it is safe on its own.
    DecisionRule(
        "missing_contact",
        lambda ctx: not ctx.contact.has_any,
        _stop("missing_contact", LABEL_MISSING_CONTACT),
    ),
    DecisionRule(
        "payment_pending",
        _type_at_least(FindingType.PAYMENT_PENDING, 4),
        _outreach(
            "payment_pending",
            order=SMS_FIRST,
            cooldown_hours=48,
            label="Rappel paiement",
            template_key="PAYMENT_REMINDER",
            required_fields=("invoice_amount", "payment_link"),
        ),
    ),
    DecisionRule(
        "payment_failed",
        _type_at_least(FindingType.PAYMENT_FAILED, 4),
        _outreach(
            "payment_failed",
            order=SMS_FIRST,
            cooldown_hours=72,
            label="Échec paiement — relance",
            template_key="PAYMENT_FAILED",
            required_fields=("payment_link",),
        ),
    ),
    DecisionRule(
        "activation_missing",
        _type_at_least(FindingType.ACTIVATION_MISSING, 3),
        _outreach(
            "activation_missing",
            order=EMAIL_FIRST,
            cooldown_hours=72,
            label="Activation manquante",
            template_key="ACTIVATION_NUDGE",
        ),
    ),
    DecisionRule(
        "no_reply",
        _type_at_least(FindingType.NO_REPLY, 3),
        _outreach(
            "no_reply",
            order=SMS_FIRST,
            cooldown_hours=24 * 5,
            label="Relance lead froid",
            template_key="COLD_LEAD_NUDGE",
        ),
    ),
    DecisionRule(
        "inactive_client",
        _type_at_least(FindingType.INACTIVE_CLIENT, 3),
        _outreach(
            "inactive_client",
            order=EMAIL_FIRST,
            cooldown_hours=24 * 7,
            label="Relance client inactif",
            template_key="INACTIVE_CLIENT_NUDGE",
        ),
    ),
    DecisionRule(
        "follow_up_required",
        _type_at_least(FindingType.FOLLOW_UP_REQUIRED, 2),
        lambda _ctx: Decision(
            kind=ActionKind.CREATE_TASK,
            channel=Channel.TASK,
            summary_label="Créer une tâche de suivi",
            rule="follow_up_required",
        ),
    ),
)

LOW_CONFIDENCE_RULE = DecisionRule("low_confidence", lambda _ctx: True, _stop("low_confidence", LABEL_LOW_CONFIDENCE))


def first_match(rules: Iterable[DecisionRule], context: AutoPilotContext) -> DecisionRule | None:
    for rule in rules:
        if rule.predicate(context):
            return rule
    return None


def decide(context: AutoPilotContext, rules: Iterable[DecisionRule] = DEFAULT_RULES) -> Decision:
    """Return the decision of the first matching rule, or the low-confidence stop."""
    rule = first_match(rules, context) or LOW_CONFIDENCE_RULE
    decision = rule.build(context)
    logger.debug(
        "Rule %s matched %s (severity=%d): %s via %s",
        rule.name,
        context.finding_type,
        context.severity,
        decision.kind.value,
        decision.channel.value,
    )
    return decision
