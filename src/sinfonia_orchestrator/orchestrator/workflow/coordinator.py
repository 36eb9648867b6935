"""Pipeline coordinator.

Drives a pipeline from creation to completion: one step is dispatched to its
worker, the worker's return is approved or rejected, and only then does the
pipeline move on.

Operations fall into two classes:

- authoritative: creating, reading and transitioning the workflow index.
  Advancing past a step writes the step row and its `approved`/`skipped`
  decision in the same update, so a repeated approval can always see that
  it was applied. Failures here surface to the caller from `init_pipeline`
  and routing, and are otherwise logged with the last readable record
  returned.
- advisory: envelope writes, validation, delegation notes and the remaining
  decision rows. These run through `_advisory`, which logs and swallows
  failures.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TypeVar

from sinfonia_orchestrator.handoff.layer import EnvelopeLayer, FileEnvelopeLayer
from sinfonia_orchestrator.handoff.models import HandoffPayload, HandoffStatus, HandoffType
from sinfonia_orchestrator.handoff.writer import create_session_id
from sinfonia_orchestrator.orchestrator.config import OrchestratorSettings

from .failures import EscalationAction, FailureType, detect_failure_type
from .index_format import IndexStructureError
from .models import (
    ArtifactEntry,
    CreateIndexParams,
    DecisionEntry,
    IndexPatch,
    PipelineRecord,
    StepSpec,
)
from .resume import (
    ResumeError,
    ResumeReport,
    ResumeStatus,
    recover_from_crash,
    resume_from_summary,
    resume_latest_active,
)
from .routing import RoutingTable
from .state_machine import IllegalTransitionError, PipelineStatus, StepStatus
from .step_engine import StepEngine
from .store import ConcurrentUpdateError, StepMark, WorkflowIndexStore
from .summary import build_resume_summary, parse_summary

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures of authoritative index updates that the coordinator absorbs.
_STORE_ERRORS: tuple[type[Exception], ...] = (
    IllegalTransitionError,
    IndexStructureError,
    ConcurrentUpdateError,
    IndexError,
    ValueError,
    OSError,
)


class PipelineConfigError(ValueError):
    pass


class UnroutableStepError(LookupError):
    pass


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class Outcome(str, Enum):
    ADVANCED = "advanced"
    HELD = "held"
    REVISION_SENT = "revision-sent"


@dataclass(frozen=True, slots=True)
class PipelineSession:
    session_id: str
    index_path: Path
    record: PipelineRecord


@dataclass(frozen=True, slots=True)
class DispatchResult:
    session_id: str
    step_index: int
    step_name: str
    worker: str
    envelope_path: Path | None
    delegation_message: str


@dataclass(frozen=True, slots=True)
class OutcomeResult:
    outcome: Outcome
    record: PipelineRecord
    next_step_index: int | None = None
    revision_path: Path | None = None


@dataclass(frozen=True, slots=True)
class EscalationResult:
    action: EscalationAction
    record: PipelineRecord
    envelope_path: Path | None = None


def parse_pipeline_config(step_names: Sequence[object]) -> list[str]:
    """Validate a pipeline definition and return the trimmed step names."""

    if isinstance(step_names, str) or not step_names:
        raise PipelineConfigError("Pipeline config must be a non-empty list of step names.")
    names: list[str] = []
    for name in step_names:
        if not isinstance(name, str) or not name.strip():
            raise PipelineConfigError(f"Invalid step name in pipeline config: {name!r}")
        names.append(name.strip())
    return names


def format_delegation_message(
    *,
    session_id: str,
    sequence: int,
    source: str,
    target: str,
    task: str,
    context: str,
    constraints: Sequence[str],
) -> str:
    return "\n".join(
        [
            f"Dispatch Envelope: {session_id}#{sequence:03d}",
            f"Source: @sinfonia-{source}",
            f"Target: @sinfonia-{target}",
            "",
            "Task",
            task,
            "",
            "Context",
            context,
            "",
            "Constraints",
            "\n".join(f"- {item}" for item in constraints),
        ]
    )


class PipelineCoordinator:
    """Sequential, approval-gated pipeline over one work directory."""

    def __init__(
        self,
        work_dir: Path,
        *,
        settings: OrchestratorSettings | None = None,
        routing: RoutingTable | None = None,
        store: WorkflowIndexStore | None = None,
        envelopes: EnvelopeLayer | None = None,
    ) -> None:
        self.settings = settings or OrchestratorSettings()
        self.work_dir = work_dir
        self.handoffs_root = self.settings.handoffs_root(work_dir)
        self.routing = routing or self.settings.routing_table()
        self.persona = self.settings.coordinator_persona
        self.store = store or WorkflowIndexStore(self.handoffs_root)
        self.envelopes: EnvelopeLayer = envelopes or FileEnvelopeLayer(
            self.handoffs_root,
            known_personas={*self.routing.routes.values(), self.persona},
        )
        self.steps = StepEngine(self.settings.workflows_root(work_dir), self.store)

    # -- helpers ---------------------------------------------------------------------

    def _advisory(self, what: str, fn: Callable[[], T], **context: object) -> T | None:
        try:
            return fn()
        except Exception:
            logger.warning(f"Bookkeeping failed: {what}", exc_info=True, extra=context)
            return None

    def _fallback(self, session_id: str) -> PipelineRecord:
        return self.store.read(self.store.index_path(session_id))

    def _record_decision(
        self, session_id: str, *, reference_id: str, decision: str, reviewer: str, note: str
    ) -> None:
        entry = DecisionEntry(
            timestamp=self.store.now(),
            reference_id=reference_id,
            decision=decision,
            reviewer=reviewer,
            note=note,
        )
        self._advisory(
            f"record {decision} decision",
            lambda: self.store.append_decision(session_id, entry),
            session_id=session_id,
        )

    def _advance(
        self, session_id: str, step_index: int, *, step: StepMark, decision: DecisionEntry
    ) -> PipelineRecord | None:
        """Move the step pointer past `step_index`, completing on the last step.

        The step row and the decision are written in the same update as the
        pointer. Returns None without writing when the record is complete or
        no longer points at `step_index`.
        """

        path = self.store.index_path(session_id)
        current = self.store.read(path)
        if current.status == PipelineStatus.COMPLETE or current.current_step_index != step_index:
            return None

        next_index = step_index + 1
        if next_index > current.total_steps:
            if current.status != PipelineStatus.IN_PROGRESS:
                self.store.update(path, IndexPatch(status=PipelineStatus.IN_PROGRESS))
            patch = IndexPatch(
                status=PipelineStatus.COMPLETE, current_step_index=current.total_steps
            )
        else:
            patch = IndexPatch(
                status=PipelineStatus.IN_PROGRESS,
                current_step_index=next_index,
                current_step=current.label_for(next_index),
            )
        return self.store.update(path, patch, step=step, decision=decision)

    def _approval_applied(
        self, record: PipelineRecord, reference_id: str, step_index: int
    ) -> bool:
        if record.status == PipelineStatus.COMPLETE or step_index < record.current_step_index:
            return True
        step = record.step_at(step_index)
        if step is not None and step.status == StepStatus.COMPLETED:
            return True
        approvals = [d for d in record.decisions if d.decision == "approved"]
        if reference_id and any(d.reference_id == reference_id for d in approvals):
            return True
        # A repeat with nothing written since the last approval.
        last = record.decisions[-1] if record.decisions else None
        return (
            last is not None
            and last.decision == "approved"
            and last.reference_id == reference_id
            and last.timestamp == record.updated_at
        )

    # -- pipeline definition -----------------------------------------------------------

    def resolve_worker(self, step_name: str) -> str | None:
        return self.routing.resolve(step_name)

    def init_pipeline(
        self, step_names: Sequence[str], goal: str, session_id: str | None = None
    ) -> PipelineSession:
        """Create the session directory and initial workflow index.

        Raises:
            PipelineConfigError: If the step list is empty or has blank names.
            IndexExistsError: If the session already has an index.
        """

        names = parse_pipeline_config(step_names)
        sid = session_id or create_session_id()
        self.store.session_dir(sid).mkdir(parents=True, exist_ok=True)

        steps = [
            StepSpec(label=f"{n}-{name}", assigned_worker=self.routing.worker_for(name))
            for n, name in enumerate(names, start=1)
        ]
        record = self.store.create(
            CreateIndexParams(
                session_id=sid,
                workflow_id=f"pipeline-{'-'.join(names)}",
                goal=goal,
                steps=steps,
            )
        )
        logger.info(
            "Pipeline initialized",
            extra={"session_id": sid, "steps": [s.label for s in steps]},
        )
        return PipelineSession(
            session_id=sid, index_path=self.store.index_path(sid), record=record
        )

    # -- dispatch ----------------------------------------------------------------------

    def dispatch_step(
        self,
        session_id: str,
        step_index: int,
        step_name: str,
        task: str,
        context: str,
        constraints: Sequence[str] = (),
    ) -> DispatchResult:
        """Hand step `step_index` (1-based) to its worker.

        Raises:
            UnroutableStepError: If the step name has no route.
        """

        worker = self.resolve_worker(step_name)
        if worker is None:
            raise UnroutableStepError(f"No persona mapping found for step: {step_name}")

        written = self._advisory(
            "write dispatch envelope",
            lambda: self.envelopes.write_envelope(
                session_id,
                HandoffPayload(
                    source_persona=self.persona,
                    target_persona=worker,
                    handoff_type=HandoffType.DISPATCH,
                    status=HandoffStatus.PENDING,
                    task=task,
                    context=context,
                    constraints=list(constraints),
                ),
            ),
            session_id=session_id,
            step=step_name,
        )

        message = format_delegation_message(
            session_id=session_id,
            sequence=written.sequence if written is not None else step_index,
            source=self.persona,
            target=worker,
            task=task,
            context=context,
            constraints=constraints,
        )

        self._advisory(
            "track delegation",
            lambda: self.store.mark_step(
                session_id, step_index, StepStatus.IN_PROGRESS, notes=f"delegated to {worker}"
            ),
            session_id=session_id,
            step=step_name,
        )
        if written is not None:
            artifact = ArtifactEntry(
                name=written.path.name,
                kind=HandoffType.DISPATCH.value,
                status=HandoffStatus.PENDING.value,
                updated_at=self.store.now(),
                notes=f"step {step_index} {step_name}",
            )
            self._advisory(
                "record dispatch artifact",
                lambda: self.store.append_artifact(session_id, artifact),
                session_id=session_id,
                step=step_name,
            )

        logger.info(
            "Step dispatched",
            extra={"session_id": session_id, "step_index": step_index, "worker": worker},
        )
        return DispatchResult(
            session_id=session_id,
            step_index=step_index,
            step_name=step_name,
            worker=worker,
            envelope_path=written.path if written is not None else None,
            delegation_message=message,
        )

    # -- approval gate -----------------------------------------------------------------

    def process_outcome(
        self,
        session_id: str,
        reference_id: str,
        decision: Decision | str,
        reviewer: str,
        note: str | None = None,
        step_index: int | None = None,
    ) -> OutcomeResult:
        """Apply a reviewer's decision on a worker's return.

        Approval targets `step_index` when given, otherwise the step the
        record points at. Repeating an approval never advances twice.
        """

        decision = Decision(decision)
        envelope = Path(reference_id) if reference_id else None

        if envelope is not None and envelope.exists():
            validation = self._advisory(
                "validate return envelope",
                lambda: self.envelopes.validate_envelope(envelope),
                session_id=session_id,
            )
            if validation is not None and validation.errors:
                logger.warning(
                    "Return envelope validation errors",
                    extra={
                        "session_id": session_id,
                        "envelope": reference_id,
                        "errors": [e.message for e in validation.errors],
                    },
                )
            self._advisory(
                "stamp approval",
                lambda: self.envelopes.apply_approval(
                    envelope, decision=decision.value, reviewer=reviewer
                ),
                session_id=session_id,
            )

        if decision == Decision.APPROVE:
            return self._approve(session_id, reference_id, reviewer, note, step_index)
        return self._reject(session_id, reference_id, envelope, reviewer, note)

    def _approve(
        self,
        session_id: str,
        reference_id: str,
        reviewer: str,
        note: str | None,
        step_index: int | None,
    ) -> OutcomeResult:
        try:
            current = self._fallback(session_id)
            target = current.current_step_index if step_index is None else step_index
            if self._approval_applied(current, reference_id, target):
                logger.info(
                    "Approval already applied",
                    extra={"session_id": session_id, "reference_id": reference_id},
                )
                return OutcomeResult(outcome=Outcome.ADVANCED, record=current)

            entry = DecisionEntry(
                timestamp=self.store.now(),
                reference_id=reference_id,
                decision="approved",
                reviewer=reviewer,
                note=note or "",
            )
            record = self._advance(
                session_id,
                target,
                step=StepMark(index=target, status=StepStatus.COMPLETED),
                decision=entry,
            )
        except _STORE_ERRORS:
            logger.warning(
                "Failed to advance workflow index", exc_info=True, extra={"session_id": session_id}
            )
            return OutcomeResult(outcome=Outcome.HELD, record=self._fallback(session_id))

        if record is None:
            logger.warning(
                "Approval does not match the current step",
                extra={"session_id": session_id, "step_index": target},
            )
            return OutcomeResult(outcome=Outcome.HELD, record=self._fallback(session_id))

        return OutcomeResult(
            outcome=Outcome.ADVANCED,
            record=record,
            next_step_index=record.current_step_index,
        )

    def _reject(
        self,
        session_id: str,
        reference_id: str,
        envelope: Path | None,
        reviewer: str,
        note: str | None,
    ) -> OutcomeResult:
        path = self.store.index_path(session_id)
        try:
            record = self.store.update(path, IndexPatch(status=PipelineStatus.BLOCKED))
        except _STORE_ERRORS:
            logger.warning(
                "Failed to block workflow index on rejection",
                exc_info=True,
                extra={"session_id": session_id},
            )
            return OutcomeResult(outcome=Outcome.HELD, record=self._fallback(session_id))

        self._advisory(
            "block step",
            lambda: self.store.mark_step(
                session_id, record.current_step_index, StepStatus.BLOCKED
            ),
            session_id=session_id,
        )
        self._record_decision(
            session_id,
            reference_id=reference_id,
            decision="rejected",
            reviewer=reviewer,
            note=note or "Rejected by reviewer",
        )

        revision = None
        if envelope is not None and envelope.exists():
            revision = self._advisory(
                "request revision",
                lambda: self.envelopes.request_revision(envelope, note=note),
                session_id=session_id,
            )

        return OutcomeResult(
            outcome=Outcome.REVISION_SENT if revision is not None else Outcome.HELD,
            record=self._fallback(session_id),
            revision_path=revision.path if revision is not None else None,
        )

    # -- failure handling --------------------------------------------------------------

    def detect_failure_type(self, reference_id: str | Path | None) -> FailureType:
        return detect_failure_type(self.envelopes, reference_id)

    def handle_failure(
        self,
        session_id: str,
        step_index: int,
        step_name: str,
        action: EscalationAction | str,
        task: str,
        context: str,
        failure_notes: str,
        constraints: Sequence[str] = (),
    ) -> EscalationResult:
        action = EscalationAction(action)
        path = self.store.index_path(session_id)
        reference = f"step-{step_index}-{step_name}"

        if action == EscalationAction.RETRY:
            augmented = f"{context}\n\n## Previous Attempt Failure Notes\n{failure_notes}"
            dispatched = self._advisory(
                "re-dispatch on retry",
                lambda: self.dispatch_step(
                    session_id, step_index, step_name, task, augmented, constraints
                ),
                session_id=session_id,
            )
            try:
                record = self.store.update(path, IndexPatch(status=PipelineStatus.IN_PROGRESS))
            except _STORE_ERRORS:
                logger.warning(
                    "Failed to update workflow index on retry",
                    exc_info=True,
                    extra={"session_id": session_id},
                )
                record = self._fallback(session_id)
            return EscalationResult(
                action=action,
                record=record,
                envelope_path=dispatched.envelope_path if dispatched is not None else None,
            )

        if action == EscalationAction.SKIP:
            entry = DecisionEntry(
                timestamp=self.store.now(),
                reference_id=reference,
                decision="skipped",
                reviewer=self.persona,
                note=f"Step skipped due to failure: {failure_notes}",
            )
            try:
                skipped = self._advance(
                    session_id,
                    step_index,
                    step=StepMark(
                        index=step_index,
                        status=StepStatus.FAILED,
                        notes=f"skipped: {failure_notes}",
                    ),
                    decision=entry,
                )
            except _STORE_ERRORS:
                logger.warning(
                    "Failed to advance workflow index on skip",
                    exc_info=True,
                    extra={"session_id": session_id},
                )
                return EscalationResult(action=action, record=self._fallback(session_id))

            if skipped is None:
                logger.info(
                    "Skipped step is no longer current",
                    extra={"session_id": session_id, "step_index": step_index},
                )
                return EscalationResult(action=action, record=self._fallback(session_id))
            return EscalationResult(action=action, record=skipped)

        try:
            self.store.update(path, IndexPatch(status=PipelineStatus.FAILED))
        except _STORE_ERRORS:
            logger.warning(
                "Failed to mark workflow failed on abort",
                exc_info=True,
                extra={"session_id": session_id},
            )
            return EscalationResult(action=action, record=self._fallback(session_id))

        self._advisory(
            "mark aborted step",
            lambda: self.store.mark_step(
                session_id, step_index, StepStatus.FAILED, notes=f"aborted: {failure_notes}"
            ),
            session_id=session_id,
        )
        self._record_decision(
            session_id,
            reference_id=reference,
            decision="aborted",
            reviewer=self.persona,
            note=f"Pipeline aborted due to failure: {failure_notes}",
        )
        logger.warning("Pipeline aborted", extra={"session_id": session_id, "step": step_name})
        return EscalationResult(action=action, record=self._fallback(session_id))

    # -- resume ------------------------------------------------------------------------

    def resume_pipeline(self, session_id: str) -> PipelineRecord:
        record = self._fallback(session_id)
        self._advisory(
            "touch session",
            lambda: self.store.touch_session(session_id),
            session_id=session_id,
        )
        return record

    def build_resume_summary(self, session_id: str) -> str:
        return build_resume_summary(
            self.store, session_id, word_limit=self.settings.summary_word_limit
        )

    def resume_from_injection(self, text: str) -> ResumeReport:
        """Re-anchor on a pipeline from a resume summary's text.

        Raises:
            ResumeError: If the summary is incomplete or its index is missing.
        """

        report = resume_from_summary(self.store, parse_summary(text))
        if report.status == ResumeStatus.MISSING:
            raise ResumeError(f"Cannot resume: workflow not found. {report.message}")
        return report

    def recover(self, session_id: str) -> ResumeReport:
        return recover_from_crash(
            self.store, self.envelopes, session_id, coordinator_persona=self.persona
        )

    def resume_latest_active(self) -> ResumeReport | None:
        return resume_latest_active(self.store)
