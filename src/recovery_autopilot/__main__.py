"""Entry point for `python -m recovery_autopilot` and the `recovery-autopilot` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, TypeAdapter, ValidationError

from recovery_autopilot import RecoveryService
from recovery_autopilot.errors import RecoveryError
from recovery_autopilot.models import Contact, Finding, LeverStrategy
from recovery_autopilot.settings import RuntimeSettings


_FINDINGS_ADAPTER = TypeAdapter(list[Finding])


def _add_ids(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("ids", nargs="+", help="Finding ids")


def _add_lever_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--limit", type=int, default=None, help="Maximum number of candidates")
    parser.add_argument(
        "--strategy",
        type=lambda value: value.upper(),
        default=LeverStrategy.COUNT.value,
        choices=[strategy.value for strategy in LeverStrategy],
        help="Rank finding types by count or by total value",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recovery findings and auto-pilot operations")
    parser.add_argument(
        "--state-root",
        type=Path,
        default=None,
        help="State directory (default: AUTOPILOT_STATE_STORE_ROOT relative to cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    import_cmd = commands.add_parser("import", help="Load findings from a JSON file")
    import_cmd.add_argument("path", type=Path, help="JSON list of findings, or an object with a 'findings' list")

    _add_lever_options(commands.add_parser("lever", help="Show the dominant finding type and its candidates"))
    _add_lever_options(commands.add_parser("launch", help="Queue the lever candidates for the auto-pilot"))

    _add_ids(commands.add_parser("enqueue", help="Queue findings for the auto-pilot"))
    _add_ids(commands.add_parser("dequeue", help="Remove findings from the auto-pilot queue"))
    _add_ids(commands.add_parser("execute", help="Mark queued findings handled"))

    undo_cmd = commands.add_parser("undo", help="Reopen findings still inside the undo window")
    _add_ids(undo_cmd)
    undo_cmd.add_argument("--requeue", action="store_true", help="Put restored findings back in the queue")

    reopen_cmd = commands.add_parser("reopen", help="Reopen a handled finding regardless of the undo window")
    reopen_cmd.add_argument("finding_id")

    commands.add_parser("pending", help="List handled findings that can still be undone")
    commands.add_parser("queue", help="List the auto-pilot queue")

    run_cmd = commands.add_parser("run", help="Run the auto-pilot for one finding")
    run_cmd.add_argument("finding_id")
    run_cmd.add_argument("--opportunity-id", default=None)
    run_cmd.add_argument("--phone", default=None)
    run_cmd.add_argument("--email", default=None)
    run_cmd.add_argument("--opt-out", action="store_true")
    run_cmd.add_argument("--payment-link", default=None)
    run_cmd.add_argument("--invoice-amount", type=float, default=None, help="Invoice amount in dollars")
    return parser.parse_args(argv)


def load_findings(path: Path) -> list[Finding]:
    if not path.is_file():
        raise FileNotFoundError(f"Findings file does not exist: {path}")
    payload = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("findings", [])
    try:
        return _FINDINGS_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid findings in {path}: {exc}") from exc


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    return value


def dispatch(service: RecoveryService, args: argparse.Namespace) -> tuple[Any, bool]:
    """Run one subcommand and return its JSON-ready output plus a success flag."""
    command = args.command
    if command == "import":
        count = service.store.put_findings(load_findings(args.path))
        return {"imported": count}, True
    if command == "lever":
        return service.select_lever(args.limit, LeverStrategy(args.strategy)), True
    if command == "launch":
        return service.launch_autopilot(args.limit, LeverStrategy(args.strategy)), True
    if command == "enqueue":
        return service.enqueue(args.ids), True
    if command == "dequeue":
        return service.dequeue(args.ids), True
    if command == "execute":
        return service.execute(args.ids), True
    if command == "undo":
        return service.undo(args.ids, requeue=args.requeue), True
    if command == "reopen":
        return service.reopen(args.finding_id), True
    if command == "pending":
        return service.list_pending(), True
    if command == "queue":
        return service.list_queue(), True
    if command == "run":
        extras: dict[str, Any] = {}
        if args.opportunity_id:
            extras["opportunity_id"] = args.opportunity_id
        if args.payment_link:
            extras["payment_link"] = args.payment_link
        if args.invoice_amount is not None:
            extras["invoice_amount"] = args.invoice_amount
        contact = Contact(phone=args.phone, email=args.email, opt_out=args.opt_out)
        result = service.run_orchestrator(service.build_context(args.finding_id, contact, **extras))
        return result, result.ok
    raise ValueError(f"Unknown command: {command}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    env_path = Path.cwd() / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    try:
        settings = RuntimeSettings.from_env()
        if args.state_root is not None:
            settings = replace(settings, state_store_root=str(args.state_root.resolve()))
        service = RecoveryService.from_settings(settings)
        output, success = dispatch(service, args)
    except (RecoveryError, OSError, ValueError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1

    print(json.dumps(_jsonable(output), indent=2, ensure_ascii=False, default=str))
    return 0 if success else 1


if __name__ == "__main__":
    raise SystemExit(main())
