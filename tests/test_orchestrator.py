from __future__ import annotations

import pytest
from pydantic import ValidationError

from conftest import FakeClock, RecordingAdapters, make_context
from recovery_autopilot.action_log import ActionLog
from recovery_autopilot.decision import DEFAULT_RULES, DecisionRule
from recovery_autopilot.locks import ResourceLock
from recovery_autopilot.models import ActionKind, BlockReason, Channel, Contact, LogEntry, RunStatus
from recovery_autopilot.orchestrator import AutoPilotOrchestrator


def _actions(result) -> list[tuple[ActionKind, RunStatus]]:  # noqa: ANN001
    return [(step.action, step.status) for step in result.steps]


def test_payment_pending_sends_sms_and_closes(
    orchestrator: AutoPilotOrchestrator,
    adapters: RecordingAdapters,
    lock: ResourceLock,
    action_log: ActionLog,
) -> None:
    result = orchestrator.run(make_context())

    assert result.ok is True
    assert result.blocked is False
    assert _actions(result) == [
        (ActionKind.SEND_SMS, RunStatus.SUCCESS),
        (ActionKind.MARK_TREATED, RunStatus.SUCCESS),
    ]
    assert adapters.names() == ["send_message", "mark_treated"]
    sent = adapters.calls[0][1]
    assert sent["channel"] == Channel.SMS
    assert sent["to"] == "+15145550100"
    assert "https://pay.example.com/inv-1" in str(sent["body"])
    assert adapters.calls[1][1] == {"finding_id": "f-1"}
    assert result.summary.title == "✅ Auto-Pilot terminé"
    assert result.summary.lines[0] == "• Facture #1"
    assert len(action_log.entries("f-1")) == 2
    assert lock.is_locked("f-1") is False


def test_missing_contact_blocks_without_steps(
    orchestrator: AutoPilotOrchestrator,
    adapters: RecordingAdapters,
    action_log: ActionLog,
) -> None:
    result = orchestrator.run(make_context(contact=Contact()))

    assert result.ok is False
    assert result.blocked is True
    assert result.block_reason == BlockReason.MISSING_CONTACT
    assert result.steps == []
    assert adapters.calls == []
    assert action_log.entries("f-1") == []
    assert len(result.summary.lines) <= 4


def test_treated_and_opted_out_contexts_are_blocked(
    orchestrator: AutoPilotOrchestrator,
    adapters: RecordingAdapters,
) -> None:
    treated = orchestrator.run(make_context(treated=True))
    opted_out = orchestrator.run(make_context(contact=Contact(phone="+15145550100", opt_out=True)))

    assert treated.block_reason == BlockReason.ALREADY_TREATED
    assert opted_out.block_reason == BlockReason.OPTOUT
    assert adapters.calls == []


def test_concurrent_run_is_refused(
    orchestrator: AutoPilotOrchestrator,
    adapters: RecordingAdapters,
    lock: ResourceLock,
) -> None:
    assert lock.acquire("f-1") is True

    result = orchestrator.run(make_context())

    assert result.blocked is True
    assert result.block_reason == BlockReason.ALREADY_RUNNING
    assert result.steps == []
    assert adapters.calls == []
    # The refused run must not release the holder's lock.
    assert lock.is_locked("f-1") is True


def test_cooldown_falls_back_to_task_and_still_closes(
    orchestrator: AutoPilotOrchestrator,
    adapters: RecordingAdapters,
    clock: FakeClock,
) -> None:
    assert orchestrator.run(make_context()).ok is True
    adapters.calls.clear()
    clock.advance(hours=1)

    result = orchestrator.run(make_context())

    assert result.ok is True
    assert result.fallback_reason == BlockReason.COOLDOWN_ACTIVE
    assert adapters.names() == ["create_task", "mark_treated"]
    assert "cooldown actif (48h)" in str(adapters.calls[0][1]["description"])
    assert _actions(result) == [
        (ActionKind.CREATE_TASK, RunStatus.SUCCESS),
        (ActionKind.MARK_TREATED, RunStatus.SUCCESS),
    ]


def test_cooldown_expires(
    orchestrator: AutoPilotOrchestrator,
    adapters: RecordingAdapters,
    clock: FakeClock,
) -> None:
    orchestrator.run(make_context())
    adapters.calls.clear()
    clock.advance(hours=48)

    result = orchestrator.run(make_context())

    assert result.fallback_reason is None
    assert adapters.names() == ["send_message", "mark_treated"]


def test_missing_template_variables_fall_back(
    orchestrator: AutoPilotOrchestrator,
    adapters: RecordingAdapters,
) -> None:
    result = orchestrator.run(make_context(payment_link=None))

    assert result.ok is True
    assert result.fallback_reason == BlockReason.MISSING_TEMPLATE
    assert "send_message" not in adapters.names()
    assert adapters.names() == ["create_task", "mark_treated"]
    assert "PAYMENT_REMINDER" in str(adapters.calls[0][1]["description"])


def test_fallback_can_leave_finding_open(
    adapters: RecordingAdapters,
    lock: ResourceLock,
    action_log: ActionLog,
    clock: FakeClock,
) -> None:
    orchestrator = AutoPilotOrchestrator(
        adapters=adapters,
        lock=lock,
        log=action_log,
        clock=clock,
        close_after_fallback=False,
    )

    result = orchestrator.run(make_context(payment_link=None))

    assert adapters.names() == ["create_task"]
    assert _actions(result)[-1] == (ActionKind.MARK_TREATED, RunStatus.SKIPPED)


def test_send_failure_is_compensated_and_not_closed(action_log: ActionLog, lock: ResourceLock, clock: FakeClock) -> None:
    adapters = RecordingAdapters(fail_on={"send_message"})
    orchestrator = AutoPilotOrchestrator(adapters=adapters, lock=lock, log=action_log, clock=clock)

    result = orchestrator.run(make_context())

    assert result.ok is False
    assert result.blocked is False
    assert adapters.names() == ["send_message", "create_task"]
    assert _actions(result) == [
        (ActionKind.SEND_SMS, RunStatus.FAILED),
        (ActionKind.CREATE_TASK, RunStatus.SUCCESS),
    ]
    assert result.steps[0].reason == "send_message unavailable"
    assert lock.is_locked("f-1") is False


def test_close_out_failure_keeps_run_successful(action_log: ActionLog, lock: ResourceLock, clock: FakeClock) -> None:
    adapters = RecordingAdapters(fail_on={"mark_treated"})
    orchestrator = AutoPilotOrchestrator(adapters=adapters, lock=lock, log=action_log, clock=clock)

    result = orchestrator.run(make_context())

    assert result.ok is True
    assert _actions(result) == [
        (ActionKind.SEND_SMS, RunStatus.SUCCESS),
        (ActionKind.MARK_TREATED, RunStatus.FAILED),
    ]
    assert any("non confirmé" in line for line in result.summary.lines)


def test_low_confidence_stops_with_one_blocked_entry(
    orchestrator: AutoPilotOrchestrator,
    adapters: RecordingAdapters,
    action_log: ActionLog,
) -> None:
    result = orchestrator.run(make_context(severity=1))

    assert result.ok is True
    assert adapters.calls == []
    assert _actions(result) == [(ActionKind.STOP, RunStatus.BLOCKED)]
    assert result.steps[0].reason == BlockReason.LOW_CONFIDENCE.value
    assert len(action_log.entries("f-1")) == 1


def test_follow_up_creates_task_then_closes(
    orchestrator: AutoPilotOrchestrator,
    adapters: RecordingAdapters,
) -> None:
    result = orchestrator.run(make_context(finding_type="FOLLOW_UP_REQUIRED", severity=2))

    assert result.ok is True
    assert adapters.names() == ["create_task", "mark_treated"]
    assert _actions(result)[0] == (ActionKind.CREATE_TASK, RunStatus.SUCCESS)


def test_opportunity_id_is_used_when_finding_id_missing(
    orchestrator: AutoPilotOrchestrator,
    adapters: RecordingAdapters,
    action_log: ActionLog,
) -> None:
    orchestrator.run(make_context(finding_id=None))

    assert adapters.calls[-1] == ("mark_treated", {"finding_id": "opp-1"})
    assert len(action_log.entries("opp-1")) == 2


def test_unexpected_error_is_reported_and_lock_released(
    adapters: RecordingAdapters,
    lock: ResourceLock,
    action_log: ActionLog,
    clock: FakeClock,
) -> None:
    def _explode(_ctx):  # noqa: ANN001,ANN202
        raise RuntimeError("rule table broken")

    rules = (DecisionRule("broken", lambda _ctx: True, _explode), *DEFAULT_RULES)
    orchestrator = AutoPilotOrchestrator(adapters=adapters, lock=lock, log=action_log, clock=clock, rules=rules)

    result = orchestrator.run(make_context())

    assert result.ok is False
    assert result.block_reason == BlockReason.UNKNOWN
    assert lock.is_locked("f-1") is False


def test_blank_finding_id_falls_back_to_opportunity_key(
    orchestrator: AutoPilotOrchestrator,
    adapters: RecordingAdapters,
    action_log: ActionLog,
) -> None:
    context = make_context(finding_id="   ")

    result = orchestrator.run(context)

    assert context.finding_id is None
    assert result.ok is True
    assert adapters.calls[-1] == ("mark_treated", {"finding_id": "opp-1"})
    assert len(action_log.entries("opp-1")) == 2


def test_blank_opportunity_id_is_rejected() -> None:
    with pytest.raises(ValidationError):
        make_context(opportunity_id="   ")


def test_lock_error_becomes_structured_result(
    orchestrator: AutoPilotOrchestrator,
    adapters: RecordingAdapters,
    lock: ResourceLock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _broken_acquire(key: str, ttl_seconds: int = 60) -> bool:
        raise ValueError("key must be non-empty")

    monkeypatch.setattr(lock, "acquire", _broken_acquire)

    result = orchestrator.run(make_context())

    assert result.ok is False
    assert result.block_reason == BlockReason.UNKNOWN
    assert adapters.calls == []


def test_unexpected_error_keeps_steps_already_logged(
    orchestrator: AutoPilotOrchestrator,
    adapters: RecordingAdapters,
    action_log: ActionLog,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    original_append = action_log.append
    appended: list[LogEntry] = []

    def _append_once(key: str, entry: LogEntry) -> None:
        if appended:
            raise RuntimeError("log backend gone")
        appended.append(entry)
        original_append(key, entry)

    monkeypatch.setattr(action_log, "append", _append_once)

    result = orchestrator.run(make_context())

    assert result.ok is False
    assert result.block_reason == BlockReason.UNKNOWN
    assert _actions(result) == [(ActionKind.SEND_SMS, RunStatus.SUCCESS)]
    assert adapters.names() == ["send_message", "mark_treated"]


def test_undecodable_log_still_enforces_cooldown(
    orchestrator: AutoPilotOrchestrator,
    adapters: RecordingAdapters,
    action_log: ActionLog,
    clock: FakeClock,
) -> None:
    path = action_log._path("f-1")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\xff\xfe garbage\n")

    first = orchestrator.run(make_context())
    clock.advance(hours=1)
    second = orchestrator.run(make_context())

    assert first.ok is True
    assert second.ok is True
    assert second.fallback_reason == BlockReason.COOLDOWN_ACTIVE
    assert adapters.names().count("send_message") == 1
