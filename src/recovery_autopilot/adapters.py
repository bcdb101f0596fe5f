from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Any, Protocol

from .errors import AdapterError
from .models import AutoPilotContext, Channel
from .settings import RuntimeSettings
from .state_store import FindingStore

logger = logging.getLogger(__name__)


class ActionAdapters(Protocol):
    """Side-effecting collaborators the orchestrator drives. Any of them may raise."""

    def send_message(self, channel: Channel, to: str, body: str, subject: str | None = None) -> None:
        ...

    def create_task(self, title: str, description: str, *, context: AutoPilotContext | None = None) -> None:
        ...

    def mark_treated(self, finding_id: str) -> None:
        ...


def _http_post_json(url: str, payload: dict[str, Any], *, timeout: int) -> dict[str, Any]:
    """Send a JSON POST request and return the parsed JSON response (empty dict for empty bodies).

    Raises:
        AdapterError: If the request fails or the response is not valid JSON.
    """
    request = urllib.request.Request(
        url,
        method="POST",
        headers={"Content-Type": "application/json"},
        data=json.dumps(payload).encode("utf-8"),
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            data = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        body = ""
        try:
            body = exc.read().decode("utf-8", errors="replace")[:500]
        except OSError:
            pass
        logger.error("HTTP %d from %s: %s", exc.code, url, body)
        raise AdapterError(f"HTTP {exc.code} from {url}: {body or exc.reason}") from exc
    except urllib.error.URLError as exc:
        logger.error("URL error reaching %s: %s", url, exc.reason)
        raise AdapterError(f"Failed to reach {url}: {exc.reason}") from exc
    if not data.strip():
        return {}
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError as exc:
        raise AdapterError(f"Invalid JSON response from {url}") from exc
    if isinstance(parsed, dict) and parsed.get("ok") is False:
        raise AdapterError(f"{url} rejected the request: {parsed.get('error') or parsed.get('message') or 'UNKNOWN'}")
    return parsed if isinstance(parsed, dict) else {"data": parsed}


class HttpActionAdapters:
    """Adapters posting JSON to the messaging/task backend under ``base_url``."""

    def __init__(self, base_url: str, *, timeout: int = 30) -> None:
        if not base_url.strip():
            raise ValueError("base_url must be non-empty")
        self.base_url = base_url.strip().rstrip("/")
        self.timeout = timeout

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        return _http_post_json(f"{self.base_url}/{path}", payload, timeout=self.timeout)

    def send_message(self, channel: Channel, to: str, body: str, subject: str | None = None) -> None:
        if channel == Channel.SMS:
            self._post("send-sms", {"to": to, "message": body})
        elif channel == Channel.EMAIL:
            self._post("send-email", {"to": to, "subject": subject or "Message", "body": body})
        else:
            raise AdapterError(f"channel {channel.value} cannot carry a message")

    def create_task(self, title: str, description: str, *, context: AutoPilotContext | None = None) -> None:
        payload: dict[str, Any] = {"title": title, "description": description}
        if context is not None:
            payload.update(opportunityId=context.opportunity_id, findingId=context.finding_id)
        self._post("create-task", payload)

    def mark_treated(self, finding_id: str) -> None:
        self._post("mark-treated", {"findingId": finding_id})


class LoggingActionAdapters:
    """Dry-run adapters: every call is logged and nothing leaves the process."""

    def send_message(self, channel: Channel, to: str, body: str, subject: str | None = None) -> None:
        logger.info("[dry-run] send %s to %s subject=%r (%d chars)", channel.value, to, subject, len(body))

    def create_task(self, title: str, description: str, *, context: AutoPilotContext | None = None) -> None:
        logger.info("[dry-run] create task %r for %s", title, context.lock_key if context else "-")

    def mark_treated(self, finding_id: str) -> None:
        logger.info("[dry-run] mark treated %s", finding_id)


class StoreBackedAdapters:
    """Delegates messaging and tasks, and closes findings in the local store."""

    def __init__(self, delegate: ActionAdapters, store: FindingStore) -> None:
        self.delegate = delegate
        self.store = store

    def send_message(self, channel: Channel, to: str, body: str, subject: str | None = None) -> None:
        self.delegate.send_message(channel, to, body, subject)

    def create_task(self, title: str, description: str, *, context: AutoPilotContext | None = None) -> None:
        self.delegate.create_task(title, description, context=context)

    def mark_treated(self, finding_id: str) -> None:
        self.store.mark_handled(finding_id)


def build_adapters(settings: RuntimeSettings, store: FindingStore | None = None) -> ActionAdapters:
    """HTTP adapters when a base URL is configured, dry-run otherwise; closes via *store* if given."""
    delegate: ActionAdapters
    if settings.adapter_base_url:
        delegate = HttpActionAdapters(settings.adapter_base_url, timeout=settings.adapter_timeout_seconds)
    else:
        delegate = LoggingActionAdapters()
    if store is None:
        return delegate
    return StoreBackedAdapters(delegate, store)
