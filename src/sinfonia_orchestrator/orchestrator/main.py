"""CLI entrypoint for the pipeline coordinator.

Every command prints a JSON document on stdout; logs go to stderr.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from sinfonia_orchestrator import __version__
from sinfonia_orchestrator.handoff.reader import EnvelopeParseError
from sinfonia_orchestrator.orchestrator.config import OrchestratorSettings
from sinfonia_orchestrator.orchestrator.logging import configure_logging
from sinfonia_orchestrator.orchestrator.workflow.coordinator import (
    Decision,
    PipelineConfigError,
    PipelineCoordinator,
    UnroutableStepError,
)
from sinfonia_orchestrator.orchestrator.workflow.failures import (
    EscalationAction,
    default_escalation,
)
from sinfonia_orchestrator.orchestrator.workflow.index_format import IndexStructureError
from sinfonia_orchestrator.orchestrator.workflow.resume import ResumeError
from sinfonia_orchestrator.orchestrator.workflow.state_machine import IllegalTransitionError
from sinfonia_orchestrator.orchestrator.workflow.store import IndexExistsError

logger = logging.getLogger(__name__)

_DOMAIN_ERRORS: tuple[type[Exception], ...] = (
    PipelineConfigError,
    UnroutableStepError,
    IndexExistsError,
    IllegalTransitionError,
    IndexStructureError,
    ResumeError,
    EnvelopeParseError,
    FileNotFoundError,
)


def _parse_steps(value: str) -> list[str]:
    return [p.strip() for p in value.split(",")]


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _add_session(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--session-id", required=True, help="Session id, e.g. s-20240101-120000")


def _add_dispatch_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--step-index", type=int, required=True, help="1-based step position")
    parser.add_argument("--step-name", required=True, help="Step name, e.g. 'dev-story'")
    parser.add_argument("--task", required=True, help="Task description for the worker")
    parser.add_argument("--context", default="", help="Context passed to the worker")
    parser.add_argument(
        "--constraint",
        dest="constraints",
        action="append",
        default=[],
        help="Constraint for the worker (repeatable)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sinfonia",
        description="Sequential, approval-gated multi-agent pipeline coordinator",
    )
    parser.add_argument(
        "--version", action="version", version=f"sinfonia-orchestrator {__version__}"
    )
    parser.add_argument(
        "--work-dir",
        type=Path,
        default=Path("."),
        help="Project directory holding the handoffs directory (default: current directory)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    init = subparsers.add_parser("init", help="Create a new pipeline session")
    init.add_argument(
        "--steps",
        required=True,
        help="Comma-separated step names, e.g. 'create-prd,create-spec,dev-story,code-review'",
    )
    init.add_argument("--goal", required=True, help="Goal of the pipeline")
    init.add_argument("--session-id", default=None, help="Explicit session id")

    dispatch = subparsers.add_parser("dispatch", help="Dispatch a step to its worker")
    _add_session(dispatch)
    _add_dispatch_args(dispatch)

    for name, help_text in (
        ("approve", "Approve a worker's return and advance the pipeline"),
        ("reject", "Reject a worker's return and request a revision"),
    ):
        gate = subparsers.add_parser(name, help=help_text)
        _add_session(gate)
        gate.add_argument(
            "--reference", required=True, help="Path of the return envelope being reviewed"
        )
        gate.add_argument("--reviewer", default="user", help="Who made the decision")
        gate.add_argument("--note", default=None, help="Optional decision note")
        if name == "approve":
            gate.add_argument(
                "--step-index",
                type=int,
                default=None,
                help="1-based step being approved (default: the current step)",
            )

    fail = subparsers.add_parser("fail", help="Escalate a failed step: retry, skip or abort")
    _add_session(fail)
    _add_dispatch_args(fail)
    fail.add_argument(
        "--action",
        choices=[a.value for a in EscalationAction],
        default=None,
        help="Escalation action (default: derived from --reference)",
    )
    fail.add_argument("--reference", default=None, help="Envelope expected from the worker")
    fail.add_argument("--notes", required=True, help="What went wrong")

    classify = subparsers.add_parser("classify", help="Classify a worker failure")
    classify.add_argument("--reference", default=None, help="Envelope expected from the worker")

    status = subparsers.add_parser("status", help="Show the workflow index of a session")
    _add_session(status)

    summary = subparsers.add_parser("summary", help="Print a compact resume summary")
    _add_session(summary)

    resume = subparsers.add_parser("resume", help="Re-anchor from a resume summary")
    resume.add_argument(
        "--summary-file",
        required=True,
        help="File holding the resume summary ('-' reads stdin)",
    )

    recover = subparsers.add_parser("recover", help="Reconcile a session after a crash")
    _add_session(recover)

    subparsers.add_parser("latest", help="Find the most recently active session")

    workflow = subparsers.add_parser("workflow", help="Show a workflow definition")
    workflow.add_argument("--name", required=True, help="Workflow directory name")

    start = subparsers.add_parser("start-workflow", help="Create a session for a workflow")
    start.add_argument("--name", required=True, help="Workflow directory name")
    start.add_argument("--goal", required=True, help="Goal of the session")
    start.add_argument("--worker", required=True, help="Persona assigned to every step")
    start.add_argument("--session-id", default=None, help="Explicit session id")

    next_step = subparsers.add_parser("next-step", help="Load the session's current step file")
    _add_session(next_step)
    next_step.add_argument("--name", required=True, help="Workflow directory name")

    complete = subparsers.add_parser("complete-step", help="Mark a workflow step completed")
    _add_session(complete)
    complete.add_argument("--step-index", type=int, required=True, help="1-based step position")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = OrchestratorSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)
    coordinator = PipelineCoordinator(args.work_dir, settings=settings)

    try:
        if args.command == "init":
            session = coordinator.init_pipeline(
                _parse_steps(args.steps), args.goal, session_id=args.session_id
            )
            _emit(
                {
                    "session_id": session.session_id,
                    "index_path": str(session.index_path),
                    "record": session.record.model_dump(mode="json"),
                }
            )
            return 0

        if args.command == "dispatch":
            result = coordinator.dispatch_step(
                args.session_id,
                args.step_index,
                args.step_name,
                args.task,
                args.context,
                args.constraints,
            )
            _emit(asdict(result))
            return 0

        if args.command in {"approve", "reject"}:
            decision = Decision.APPROVE if args.command == "approve" else Decision.REJECT
            outcome = coordinator.process_outcome(
                args.session_id,
                args.reference,
                decision,
                args.reviewer,
                args.note,
                step_index=getattr(args, "step_index", None),
            )
            _emit(
                {
                    "outcome": outcome.outcome.value,
                    "next_step_index": outcome.next_step_index,
                    "revision_path": outcome.revision_path,
                    "record": outcome.record.model_dump(mode="json"),
                }
            )
            return 0

        if args.command == "fail":
            if args.action is not None:
                action = EscalationAction(args.action)
            else:
                action = default_escalation(coordinator.detect_failure_type(args.reference))
            escalation = coordinator.handle_failure(
                args.session_id,
                args.step_index,
                args.step_name,
                action,
                args.task,
                args.context,
                args.notes,
                args.constraints,
            )
            _emit(
                {
                    "action": escalation.action.value,
                    "envelope_path": escalation.envelope_path,
                    "record": escalation.record.model_dump(mode="json"),
                }
            )
            return 0

        if args.command == "classify":
            failure = coordinator.detect_failure_type(args.reference)
            _emit(
                {
                    "failure_type": failure.value,
                    "default_action": default_escalation(failure).value,
                }
            )
            return 0

        if args.command == "status":
            record = coordinator.resume_pipeline(args.session_id)
            _emit(record.model_dump(mode="json"))
            return 0

        if args.command == "summary":
            print(coordinator.build_resume_summary(args.session_id))
            return 0

        if args.command == "resume":
            if args.summary_file == "-":
                text = sys.stdin.read()
            else:
                text = Path(args.summary_file).read_text(encoding="utf-8")
            report = coordinator.resume_from_injection(text)
            _emit(report.model_dump(mode="json"))
            return 0

        if args.command == "recover":
            report = coordinator.recover(args.session_id)
            _emit(report.model_dump(mode="json"))
            return 0

        if args.command == "latest":
            latest = coordinator.resume_latest_active()
            if latest is None:
                _emit({"status": "none", "message": "No active sessions found"})
                return 4
            _emit(latest.model_dump(mode="json"))
            return 0

        if args.command == "workflow":
            definition = coordinator.steps.load_workflow_def(args.name)
            if definition is None:
                _emit({"status": "none", "message": f"No step files for workflow {args.name!r}"})
                return 4
            _emit({**asdict(definition), "total_steps": definition.total_steps})
            return 0

        if args.command == "start-workflow":
            record = coordinator.steps.start_workflow(
                args.name, args.goal, worker=args.worker, session_id=args.session_id
            )
            _emit(record.model_dump(mode="json"))
            return 0

        if args.command == "next-step":
            step = coordinator.steps.resume_workflow(args.session_id, args.name)
            if step is None:
                _emit({"status": "none", "message": "No pending step"})
                return 4
            _emit(asdict(step))
            return 0

        if args.command == "complete-step":
            completed = coordinator.steps.complete_step(args.session_id, args.step_index)
            if completed is None:
                print("Could not update the workflow index", file=sys.stderr)
                return 3
            _emit(completed.model_dump(mode="json"))
            return 0

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except _DOMAIN_ERRORS as e:
        logger.warning(str(e), extra={"command": args.command})
        print(str(e), file=sys.stderr)
        return 3

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
