from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from recovery_autopilot.action_log import ActionLog
from recovery_autopilot.locks import ResourceLock
from recovery_autopilot.models import AutoPilotContext, Channel, Contact, Finding
from recovery_autopilot.orchestrator import AutoPilotOrchestrator
from recovery_autopilot.state_store import FindingStore


T0 = datetime(2025, 3, 3, 14, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingAdapters:
    """Action adapters that record calls; ``fail_on`` names operations that raise."""

    def __init__(self, *, fail_on: set[str] | None = None) -> None:
        self.calls: list[tuple[str, dict[str, object]]] = []
        self.fail_on = fail_on or set()

    def _record(self, name: str, **kwargs: object) -> None:
        self.calls.append((name, kwargs))
        if name in self.fail_on:
            raise RuntimeError(f"{name} unavailable")

    def send_message(self, channel: Channel, to: str, body: str, subject: str | None = None) -> None:
        self._record("send_message", channel=channel, to=to, body=body, subject=subject)

    def create_task(self, title: str, description: str, *, context: AutoPilotContext | None = None) -> None:
        self._record("create_task", title=title, description=description)

    def mark_treated(self, finding_id: str) -> None:
        self._record("mark_treated", finding_id=finding_id)

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


def make_finding(finding_id: str, finding_type: str = "PAYMENT_PENDING", **overrides: object) -> Finding:
    values: dict[str, object] = {
        "id": finding_id,
        "type": finding_type,
        "severity": 4,
        "value_cents": 10_000,
        "title": f"Finding {finding_id}",
        "created_at": T0 - timedelta(days=1),
    }
    values.update(overrides)
    return Finding.model_validate(values)


def make_context(**overrides: object) -> AutoPilotContext:
    values: dict[str, object] = {
        "opportunity_id": "opp-1",
        "finding_id": "f-1",
        "finding_type": "PAYMENT_PENDING",
        "severity": 4,
        "contact": Contact(phone="+15145550100", email="client@example.com"),
        "invoice_amount": 5000.0,
        "payment_link": "https://pay.example.com/inv-1",
        "title": "Facture #1",
    }
    values.update(overrides)
    return AutoPilotContext.model_validate(values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> FindingStore:
    return FindingStore(tmp_path / "state", clock=clock)


@pytest.fixture
def adapters() -> RecordingAdapters:
    return RecordingAdapters()


@pytest.fixture
def action_log(tmp_path: Path) -> ActionLog:
    return ActionLog(tmp_path / "state" / "action_log")


@pytest.fixture
def lock(tmp_path: Path, clock: FakeClock) -> ResourceLock:
    return ResourceLock(tmp_path / "state" / "locks", clock=clock)


@pytest.fixture
def orchestrator(
    adapters: RecordingAdapters,
    lock: ResourceLock,
    action_log: ActionLog,
    clock: FakeClock,
) -> AutoPilotOrchestrator:
    return AutoPilotOrchestrator(adapters=adapters, lock=lock, log=action_log, clock=clock)
