"""Restore pipeline position after an interruption.

Three scenarios:

- compaction: only a resume summary survived; validate it against the index.
- crash: the index may be missing, corrupt or behind; reconcile it with the
  envelopes found in the session directory.
- multi-session: pick the most recently active pipeline among several.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from sinfonia_orchestrator.handoff.layer import EnvelopeLayer
from sinfonia_orchestrator.handoff.reader import EnvelopeParseError
from sinfonia_orchestrator.handoff.writer import SESSION_ID_PATTERN

from .index_format import IndexStructureError
from .models import CreateIndexParams, IndexPatch, PipelineRecord, StepSpec
from .state_machine import ACTIVE_STATUSES, PipelineStatus
from .store import INDEX_FILENAME, WorkflowIndexStore
from .summary import ResumeSummary

logger = logging.getLogger(__name__)

RECOVERED_WORKFLOW_ID = "recovered-workflow"


class ResumeStatus(str, Enum):
    OK = "ok"
    RECOVERED = "recovered"
    MISSING = "missing"
    INCONSISTENT = "inconsistent"


class ResumeError(RuntimeError):
    pass


class ResumeReport(BaseModel):
    scenario: Literal["compaction", "crash", "multi-session"]
    status: ResumeStatus
    session_id: str
    index_path: Path
    workflow_id: str
    current_step: str
    current_step_index: int
    inconsistencies: list[str] = Field(default_factory=list)
    message: str = ""
    record: PipelineRecord | None = None


def _parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=UTC)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def resume_from_summary(store: WorkflowIndexStore, summary: ResumeSummary) -> ResumeReport:
    session_id = summary.session_id or "unknown"
    path = store.index_path(session_id)

    if not summary.complete:
        return ResumeReport(
            scenario="compaction",
            status=ResumeStatus.MISSING,
            session_id=session_id,
            index_path=path,
            workflow_id=summary.workflow_id or "unknown",
            current_step=summary.current_step or "unknown",
            current_step_index=0,
            inconsistencies=["Summary missing required continuity fields"],
            message="Cannot resume from incomplete resume summary",
        )

    try:
        record = store.read(path)
    except (FileNotFoundError, IndexStructureError) as e:
        logger.warning(
            "Workflow index unavailable for resume",
            extra={"session_id": session_id, "error": str(e)},
        )
        return ResumeReport(
            scenario="compaction",
            status=ResumeStatus.MISSING,
            session_id=session_id,
            index_path=path,
            workflow_id=summary.workflow_id or "unknown",
            current_step=summary.current_step or "unknown",
            current_step_index=0,
            inconsistencies=["Workflow index not found for summarized session"],
            message="Resume failed: workflow index missing",
        )

    inconsistencies: list[str] = []
    if record.workflow_id != summary.workflow_id:
        inconsistencies.append("Workflow id mismatch between summary and workflow index")
    if record.current_step != summary.current_step:
        inconsistencies.append("Current step mismatch between summary and workflow index")

    if inconsistencies:
        logger.warning(
            "Resume summary disagrees with workflow index",
            extra={"session_id": session_id, "inconsistencies": inconsistencies},
        )

    return ResumeReport(
        scenario="compaction",
        status=ResumeStatus.INCONSISTENT if inconsistencies else ResumeStatus.OK,
        session_id=session_id,
        index_path=path,
        workflow_id=record.workflow_id,
        current_step=record.current_step,
        current_step_index=record.current_step_index,
        inconsistencies=inconsistencies,
        message=(
            "Resume found inconsistencies; workflow index is authoritative"
            if inconsistencies
            else "Resume summary validated"
        ),
        record=record,
    )


def discover_envelope_sequences(
    store: WorkflowIndexStore, envelopes: EnvelopeLayer, session_id: str
) -> list[int]:
    """Return the sorted sequence numbers of every readable envelope."""

    sequences: list[int] = []
    for path in sorted(store.session_dir(session_id).glob("*.md")):
        if path.name == INDEX_FILENAME:
            continue
        try:
            sequence = envelopes.read_envelope(path).fields.get("sequence")
        except (EnvelopeParseError, OSError, UnicodeDecodeError) as e:
            logger.debug("Skipping unreadable envelope", extra={"path": str(path), "error": str(e)})
            continue
        if isinstance(sequence, int):
            sequences.append(sequence)
    return sorted(sequences)


def _quarantine(path: Path) -> Path:
    stamp = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%S%f")
    target = path.with_name(f"{path.name}.corrupt-{stamp}")
    path.replace(target)
    return target


def recover_from_crash(
    store: WorkflowIndexStore,
    envelopes: EnvelopeLayer,
    session_id: str,
    *,
    coordinator_persona: str = "maestro",
) -> ResumeReport:
    """Reconcile a session's index with its envelopes after a crash.

    Raises:
        ResumeError: If the session directory does not exist.
    """

    session_dir = store.session_dir(session_id)
    if not session_dir.is_dir():
        raise ResumeError(f"Session directory not found: {session_dir}")

    path = store.index_path(session_id)
    sequences = discover_envelope_sequences(store, envelopes, session_id)
    inconsistencies: list[str] = []
    recovered = False

    try:
        record = store.read(path)
    except (FileNotFoundError, IndexStructureError) as e:
        if path.exists():
            moved = _quarantine(path)
            logger.warning(
                "Corrupt workflow index preserved",
                extra={"session_id": session_id, "moved_to": str(moved), "error": str(e)},
            )
        steps = [
            StepSpec(label=f"handoff-{seq:03d}", assigned_worker=coordinator_persona)
            for seq in sequences
        ] or [StepSpec(label="recovered", assigned_worker=coordinator_persona)]
        record = store.create(
            CreateIndexParams(
                session_id=session_id,
                workflow_id=RECOVERED_WORKFLOW_ID,
                goal="Recovered from envelope history",
                steps=steps,
                context="Recovered from crash using envelopes",
            )
        )
        recovered = True
        inconsistencies.append("Workflow index missing/corrupt; rebuilt from envelopes")

    if sequences:
        highest = sequences[-1]
        if record.current_step_index > highest:
            inconsistencies.append("Workflow index step index exceeds envelope sequence")

        target = min(highest, record.total_steps)
        if record.current_step_index < target:
            patch = IndexPatch(current_step_index=target, current_step=record.label_for(target))
            if record.status == PipelineStatus.CREATED:
                patch.status = PipelineStatus.IN_PROGRESS
            record = store.update(path, patch)
            inconsistencies.append(
                "Workflow index lagged envelope sequence; advanced to latest envelope"
            )
            recovered = True

    if inconsistencies:
        status = ResumeStatus.RECOVERED if recovered else ResumeStatus.INCONSISTENT
        logger.warning(
            "Crash recovery reconciled workflow index",
            extra={"session_id": session_id, "inconsistencies": inconsistencies},
        )
    else:
        status = ResumeStatus.OK

    return ResumeReport(
        scenario="crash",
        status=status,
        session_id=session_id,
        index_path=path,
        workflow_id=record.workflow_id,
        current_step=record.current_step,
        current_step_index=record.current_step_index,
        inconsistencies=inconsistencies,
        message=(
            "Crash recovery completed with reconciliation notes"
            if inconsistencies
            else "Crash recovery found consistent workflow state"
        ),
        record=record,
    )


def resume_latest_active(store: WorkflowIndexStore) -> ResumeReport | None:
    """Return the active session with the most recent `updated_at`, if any."""

    candidates: list[tuple[datetime, PipelineRecord]] = []
    for session_id in store.list_session_ids():
        if not SESSION_ID_PATTERN.match(session_id):
            continue
        try:
            record = store.read(store.index_path(session_id))
        except (FileNotFoundError, IndexStructureError) as e:
            logger.debug(
                "Skipping unreadable session", extra={"session_id": session_id, "error": str(e)}
            )
            continue
        if record.status not in ACTIVE_STATUSES:
            continue
        candidates.append((_parse_timestamp(record.updated_at), record))

    if not candidates:
        return None

    updated_at, chosen = max(candidates, key=lambda item: item[0])
    return ResumeReport(
        scenario="multi-session",
        status=ResumeStatus.OK,
        session_id=chosen.session_id,
        index_path=store.index_path(chosen.session_id),
        workflow_id=chosen.workflow_id,
        current_step=chosen.current_step,
        current_step_index=chosen.current_step_index,
        message=f"Resumed latest active session from {updated_at.isoformat()}",
        record=chosen,
    )
