from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from .models import AutoPilotContext, RenderedMessage


@dataclass(frozen=True)
class MessageTemplate:
    key: str
    subject: str
    body: str
    required_fields: tuple[str, ...] = ()


TEMPLATES: dict[str, MessageTemplate] = {
    template.key: template
    for template in (
        MessageTemplate(
            key="PAYMENT_REMINDER",
            subject="Rappel de paiement",
            body=(
                "Petit rappel 🙂 Il reste un paiement de {amount} à compléter.\n"
                "Lien sécurisé : {payment_link}\n\n"
                "Si tu as déjà payé, ignore ce message. Merci!"
            ),
            required_fields=("invoice_amount", "payment_link"),
        ),
        MessageTemplate(
            key="PAYMENT_FAILED",
            subject="Paiement à compléter",
            body=(
                "On dirait que le paiement n’a pas passé.\n"
                "Tu peux réessayer ici : {payment_link}\n\n"
                "Besoin d’aide? Réponds à ce message."
            ),
            required_fields=("payment_link",),
        ),
        MessageTemplate(
            key="ACTIVATION_NUDGE",
            subject="Activation requise",
            body=(
                "Dernière étape : il manque l’activation pour que tout fonctionne.\n"
                "Réponds à ce message et je te guide en 2 minutes."
            ),
        ),
        MessageTemplate(
            key="COLD_LEAD_NUDGE",
            subject="On avance?",
            body=(
                "Salut! Veux-tu que je te propose une option simple pour avancer cette semaine?\n"
                "Réponds “oui” et je t’envoie ça."
            ),
        ),
        MessageTemplate(
            key="INACTIVE_CLIENT_NUDGE",
            subject="Petit check-in",
            body=(
                "Petit message rapide 🙂 On fait un check-in pour voir si tu veux qu’on relance l’élan.\n"
                "Je peux te proposer 2 options faciles."
            ),
        ),
    )
}


_NBSP = "\u00a0"


def format_cad(amount: float | None) -> str:
    """Format a dollar amount the fr-CA way, e.g. ``5 000,00 $`` with no-break spaces."""
    if not amount:
        return ""
    whole, cents = f"{abs(amount):,.2f}".split(".")
    sign = "-" if amount < 0 else ""
    return f"{sign}{whole.replace(',', _NBSP)},{cents}{_NBSP}$"


def missing_fields(context: AutoPilotContext, fields: Iterable[str]) -> list[str]:
    # Zero amounts and blank links count as missing.
    return [name for name in fields if not getattr(context, name, None)]


def render_template(
    key: str,
    context: AutoPilotContext,
    required_fields: Iterable[str] = (),
) -> RenderedMessage | None:
    """Render the message for *key*, or return ``None`` when it cannot be rendered.

    ``None`` covers unknown keys and any falsy required field (the template's
    own plus *required_fields*).  The caller treats it as a fallback trigger,
    so this function never raises for missing data.
    """
    template = TEMPLATES.get(key)
    if template is None:
        return None
    if missing_fields(context, (*template.required_fields, *required_fields)):
        return None
    values: dict[str, Any] = {
        "amount": format_cad(context.invoice_amount),
        "payment_link": context.payment_link or "",
        "title": context.display_label,
    }
    return RenderedMessage(subject=template.subject, body=template.body.format(**values))
