from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FakeClock, make_finding
from recovery_autopilot.errors import NotFoundError, UndoExpiredError
from recovery_autopilot.models import BlockReason, Contact, LeverStrategy
from recovery_autopilot.service import RecoveryService
from recovery_autopilot.settings import RuntimeSettings


@pytest.fixture
def service(tmp_path: Path, clock: FakeClock) -> RecoveryService:
    settings = RuntimeSettings(state_store_root=str(tmp_path / "state"), pending_list_limit=2)
    return RecoveryService.from_settings(settings, clock=clock)


def _seed(service: RecoveryService) -> None:
    service.store.put_findings(
        [
            make_finding("a1", "NO_REPLY", value_cents=100),
            make_finding("a2", "NO_REPLY", value_cents=200),
            make_finding("a3", "NO_REPLY", value_cents=300),
            make_finding("b1", "PAYMENT_PENDING", value_cents=90_000),
        ]
    )


def test_from_settings_lays_out_state_directory(service: RecoveryService, tmp_path: Path) -> None:
    assert service.store.root == tmp_path / "state"
    assert service.orchestrator.lock.root == tmp_path / "state" / "locks"
    assert service.orchestrator.log.root == tmp_path / "state" / "action_log"


def test_launch_autopilot_queues_lever_candidates(service: RecoveryService) -> None:
    _seed(service)

    result = service.launch_autopilot(limit=10)

    assert result.target_type == "NO_REPLY"
    assert result.queued_count == 3
    assert result.queued_value_cents == 600
    assert service.list_queue().count == 3
    # Queued findings leave the lever pool.
    assert service.select_lever(10).type == "PAYMENT_PENDING"


def test_launch_autopilot_by_value(service: RecoveryService) -> None:
    _seed(service)

    result = service.launch_autopilot(limit=10, strategy=LeverStrategy.VALUE)

    assert result.target_type == "PAYMENT_PENDING"
    assert result.ids == ["b1"]


def test_launch_autopilot_with_nothing_to_do(service: RecoveryService) -> None:
    result = service.launch_autopilot()

    assert result.queued_count == 0
    assert result.target_type is None


def test_batch_operations_reject_empty_ids(service: RecoveryService) -> None:
    for operation in (service.enqueue, service.dequeue, service.execute, service.undo):
        with pytest.raises(ValueError):
            operation([])
    with pytest.raises(ValueError):
        service.enqueue(["  "])


def test_execute_then_undo_within_window(service: RecoveryService, clock: FakeClock) -> None:
    _seed(service)
    service.enqueue(["a1", "a2", "a3"])

    executed = service.execute(["a1", "a2", "a3"])
    clock.advance(minutes=1)

    assert executed.handled_count == 3
    assert [finding.id for finding in service.list_pending()] == ["a1", "a2"]
    assert service.undo(["a1"]).restored_count == 1
    assert service.store.get("a1").handled is False


def test_undo_one_and_reopen(service: RecoveryService, clock: FakeClock) -> None:
    _seed(service)
    service.store.mark_handled("a1")
    service.store.mark_handled("a2")

    assert service.undo_one("a1").handled is False

    clock.advance(minutes=6)
    with pytest.raises(UndoExpiredError):
        service.undo_one("a2")
    assert service.reopen("a2").handled is False


def test_build_context_projects_finding_and_extras(service: RecoveryService) -> None:
    _seed(service)

    context = service.build_context(
        "b1",
        Contact(email="client@example.com"),
        opportunity_id="opp-9",
        payment_link="https://pay.example.com/x",
    )

    assert context.finding_id == "b1"
    assert context.opportunity_id == "opp-9"
    assert context.finding_type == "PAYMENT_PENDING"
    assert context.invoice_amount == 900.0
    assert context.treated is False
    with pytest.raises(NotFoundError):
        service.build_context("missing")


def test_run_orchestrator_closes_finding_in_store(service: RecoveryService) -> None:
    _seed(service)
    context = service.build_context(
        "b1",
        Contact(phone="+15145550100"),
        payment_link="https://pay.example.com/x",
    )

    first = service.run_orchestrator(context)
    second = service.run_orchestrator(service.build_context("b1", Contact(phone="+15145550100")))

    assert first.ok is True
    assert service.store.get("b1").handled is True
    assert second.block_reason == BlockReason.ALREADY_TREATED
