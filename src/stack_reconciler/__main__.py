"""Entry point for `python -m stack_reconciler` and the `stack-reconciler` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path

from stack_reconciler import StackEngine, simulated_registry
from stack_reconciler.errors import ReconcilerError
from stack_reconciler.loader import load_stack_file
from stack_reconciler.models import ChangeSet
from stack_reconciler.settings import RuntimeSettings


COMMAND_CHOICES = ["plan", "apply", "rollback", "show"]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile a resource stack against its desired state")
    parser.add_argument("command", choices=COMMAND_CHOICES, help="Operation to run")
    parser.add_argument("--stack-file", type=Path, default=None, help="JSON stack file (required for plan/apply)")
    parser.add_argument("--stack", default=None, help="Stack name when no stack file names one")
    parser.add_argument("--env-file", type=Path, default=None, help="Optional .env file (default: beside the stack file)")
    parser.add_argument("--state-root", type=Path, default=None, help="Directory holding persisted stack state")
    parser.add_argument("--parallelism", type=int, default=None, help="Maximum concurrent provider operations")
    parser.add_argument(
        "--fail-fast",
        action="store_true",
        help="Stop scheduling new operations after the first failure",
    )
    parser.add_argument(
        "--allow-corrupt-state",
        action="store_true",
        help="Quarantine corrupt state and continue from the newest valid revision",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def _changeset_payload(changeset: ChangeSet) -> dict[str, object]:
    return {
        "changeset_id": changeset.changeset_id,
        "stack": changeset.stack,
        "base_serial": changeset.base_serial,
        "summary": changeset.summary(),
        "entries": [
            {
                "name": entry.name,
                "kind": entry.kind.value,
                "action": entry.action.value,
                "changed_fields": entry.changed_fields,
                "deposed": [item.resource_id for item in entry.deposed],
            }
            for entry in changeset.entries
        ],
    }


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # CLI flags take precedence over RECONCILER_* environment settings.
    if args.state_root is not None:
        os.environ["RECONCILER_STATE_ROOT"] = str(args.state_root.resolve())
    if args.parallelism is not None:
        os.environ["RECONCILER_PARALLELISM"] = str(args.parallelism)
    if args.fail_fast:
        os.environ["RECONCILER_FAIL_FAST"] = "true"

    try:
        settings = RuntimeSettings.from_env()
        stack_file = None
        if args.stack_file is not None:
            stack_file = load_stack_file(args.stack_file, dotenv_path=args.env_file)
        elif args.command in {"plan", "apply"}:
            raise ValueError(f"--stack-file is required for {args.command}")
    except (OSError, ValueError, ReconcilerError) as exc:
        logging.error("Unable to load stack input: %s", exc)
        return 1

    stack = args.stack or (stack_file.stack if stack_file is not None else None) or settings.stack_name
    engine = StackEngine(
        stack,
        simulated_registry(settle_polls=0, adopt_unknown=True),
        settings=settings,
        secrets=stack_file.secrets if stack_file is not None else None,
    )

    try:
        if args.command == "show":
            print(engine.show().model_dump_json(indent=2))
            return 0
        if args.command == "plan":
            changeset = engine.plan(stack_file.declarations, allow_corrupt=args.allow_corrupt_state)
            print(f"has_changes={changeset.has_changes}")
            print(json.dumps(_changeset_payload(changeset), indent=2))
            return 0
        if args.command == "apply":
            report = engine.apply(stack_file.declarations, allow_corrupt=args.allow_corrupt_state)
        else:
            report = engine.rollback()
    except ReconcilerError as exc:
        logging.error("Reconciliation of stack %s failed: %s", stack, exc)
        return 1

    print(f"reconcile_success={report.success}")
    print(report.model_dump_json(indent=2))
    return 0 if report.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
