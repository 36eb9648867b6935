"""Unit tests for the approval-gated pipeline coordinator."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import Mock

import pytest

from sinfonia_orchestrator.handoff.layer import FileEnvelopeLayer
from sinfonia_orchestrator.handoff.models import HandoffPayload, HandoffStatus, HandoffType
from sinfonia_orchestrator.handoff.reader import read_envelope
from sinfonia_orchestrator.handoff.writer import write_envelope
from sinfonia_orchestrator.orchestrator.config import OrchestratorSettings
from sinfonia_orchestrator.orchestrator.workflow.coordinator import (
    Outcome,
    PipelineConfigError,
    PipelineCoordinator,
    UnroutableStepError,
)
from sinfonia_orchestrator.orchestrator.workflow.failures import EscalationAction
from sinfonia_orchestrator.orchestrator.workflow.state_machine import PipelineStatus, StepStatus
from sinfonia_orchestrator.orchestrator.workflow.store import (
    ConcurrentUpdateError,
    IndexExistsError,
    WorkflowIndexStore,
)

SESSION_ID = "s-20240101-120000"
STEPS = ["create-prd", "create-spec", "dev-story", "code-review"]


def _return_envelope(handoffs_root: Path, worker: str, *, blocked: bool = False) -> Path:
    written = write_envelope(
        handoffs_root,
        SESSION_ID,
        HandoffPayload(
            source_persona=worker,
            target_persona="maestro",
            handoff_type=HandoffType.RETURN,
            status=HandoffStatus.BLOCKED if blocked else HandoffStatus.COMPLETED,
            artifacts=["docs/output.md"],
            summary="Work finished",
            completion_assessment="Complete",
            blockers=[],
            recommendations=["Proceed"],
        ),
    )
    return written.path


def test_init_pipeline_creates_record(coordinator: PipelineCoordinator) -> None:
    session = coordinator.init_pipeline(STEPS, "Ship the login page", session_id=SESSION_ID)

    record = session.record
    assert session.session_id == SESSION_ID
    assert session.index_path.exists()
    assert record.workflow_id == "pipeline-create-prd-create-spec-dev-story-code-review"
    assert [s.label for s in record.steps] == [
        "1-create-prd",
        "2-create-spec",
        "3-dev-story",
        "4-code-review",
    ]
    assert [s.assigned_worker for s in record.steps] == ["libretto", "amadeus", "coda", "rondo"]
    assert record.status == PipelineStatus.CREATED
    assert record.current_step == "1-create-prd"
    assert record.total_steps == 4


def test_init_pipeline_generates_session_id(coordinator: PipelineCoordinator) -> None:
    session = coordinator.init_pipeline(["dev-story"], "Goal")

    assert session.session_id.startswith("s-")
    assert len(session.session_id) == len(SESSION_ID)


def test_init_pipeline_unknown_step_is_unassigned(coordinator: PipelineCoordinator) -> None:
    session = coordinator.init_pipeline(["deploy"], "Goal", session_id=SESSION_ID)

    assert session.record.steps[0].assigned_worker == "unassigned"


@pytest.mark.parametrize("steps", [[], ["dev-story", "  "], "dev-story", ["dev-story", 3]])
def test_init_pipeline_rejects_bad_config(
    coordinator: PipelineCoordinator, steps: object
) -> None:
    with pytest.raises(PipelineConfigError):
        coordinator.init_pipeline(steps, "Goal", session_id=SESSION_ID)  # type: ignore[arg-type]


def test_init_pipeline_refuses_existing_session(coordinator: PipelineCoordinator) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)

    with pytest.raises(IndexExistsError):
        coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)


def test_dispatch_writes_envelope_and_tracks_delegation(
    coordinator: PipelineCoordinator,
) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)

    result = coordinator.dispatch_step(
        SESSION_ID, 1, "create-prd", "Write the PRD", "Login page", ["Keep it short", "Use template"]
    )

    assert result.worker == "libretto"
    assert result.envelope_path is not None
    assert result.envelope_path.name == "001-maestro-to-libretto.md"
    assert coordinator.envelopes.validate_envelope(result.envelope_path).ok

    message = result.delegation_message
    assert message.startswith(f"Dispatch Envelope: {SESSION_ID}#001")
    assert "Source: @sinfonia-maestro" in message
    assert "Target: @sinfonia-libretto" in message
    assert "Write the PRD" in message
    assert "- Keep it short\n- Use template" in message

    record = coordinator.store.read_session(SESSION_ID)
    assert record.steps[0].status == StepStatus.IN_PROGRESS
    assert record.steps[0].notes == "delegated to libretto"
    assert [(a.name, a.kind) for a in record.artifacts] == [
        ("001-maestro-to-libretto.md", "dispatch")
    ]


def test_dispatch_unroutable_step(coordinator: PipelineCoordinator) -> None:
    coordinator.init_pipeline(["deploy"], "Goal", session_id=SESSION_ID)

    with pytest.raises(UnroutableStepError):
        coordinator.dispatch_step(SESSION_ID, 1, "deploy", "Deploy", "")


def test_dispatch_survives_bookkeeping_failure(
    coordinator: PipelineCoordinator, monkeypatch: pytest.MonkeyPatch
) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)
    failing = Mock(side_effect=OSError("disk full"))
    monkeypatch.setattr(coordinator.store, "mark_step", failing)

    result = coordinator.dispatch_step(SESSION_ID, 1, "create-prd", "Write the PRD", "ctx", ["c"])

    failing.assert_called_once()
    assert result.worker == "libretto"
    assert result.envelope_path is not None
    assert coordinator.store.read_session(SESSION_ID).steps[0].status == StepStatus.PENDING


def test_dispatch_survives_envelope_write_failure(
    work_dir: Path, settings: OrchestratorSettings, store: WorkflowIndexStore
) -> None:
    envelopes = Mock(spec=FileEnvelopeLayer)
    envelopes.write_envelope.side_effect = OSError("read-only filesystem")
    coordinator = PipelineCoordinator(
        work_dir, settings=settings, store=store, envelopes=envelopes
    )
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)

    result = coordinator.dispatch_step(SESSION_ID, 2, "create-spec", "Write spec", "ctx")

    assert result.envelope_path is None
    assert result.delegation_message.startswith(f"Dispatch Envelope: {SESSION_ID}#002")


def test_full_pipeline_approval_completes(
    coordinator: PipelineCoordinator, handoffs_root: Path
) -> None:
    coordinator.init_pipeline(STEPS, "Ship the login page", session_id=SESSION_ID)

    for index, name in enumerate(STEPS, start=1):
        dispatched = coordinator.dispatch_step(SESSION_ID, index, name, f"Do {name}", "ctx", ["c"])
        returned = _return_envelope(handoffs_root, dispatched.worker)

        result = coordinator.process_outcome(SESSION_ID, str(returned), "approve", "user")

        assert result.outcome == Outcome.ADVANCED
        if index < len(STEPS):
            assert result.record.status == PipelineStatus.IN_PROGRESS
            assert result.record.current_step_index == index + 1
            assert result.record.current_step == f"{index + 1}-{STEPS[index]}"

    record = coordinator.store.read_session(SESSION_ID)
    assert record.status == PipelineStatus.COMPLETE
    assert record.current_step_index == 4
    assert [d.decision for d in record.decisions] == ["approved"] * 4
    assert all(s.status == StepStatus.COMPLETED for s in record.steps)


def test_approval_stamps_envelope(coordinator: PipelineCoordinator, handoffs_root: Path) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)
    returned = _return_envelope(handoffs_root, "libretto")

    coordinator.process_outcome(SESSION_ID, str(returned), "approve", "alice")

    fields = read_envelope(returned).fields
    assert fields["approval"] == "approve"
    assert fields["approved_by"] == "alice"


def test_approval_is_idempotent(coordinator: PipelineCoordinator, handoffs_root: Path) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)
    returned = str(_return_envelope(handoffs_root, "libretto"))

    first = coordinator.process_outcome(SESSION_ID, returned, "approve", "user")
    second = coordinator.process_outcome(SESSION_ID, returned, "approve", "user")

    assert first.record.current_step_index == 2
    assert second.record.current_step_index == 2
    decisions = coordinator.store.read_session(SESSION_ID).decisions
    assert [d.decision for d in decisions] == ["approved"]


def test_approval_on_complete_pipeline_is_noop(coordinator: PipelineCoordinator) -> None:
    coordinator.init_pipeline(["dev-story"], "Goal", session_id=SESSION_ID)

    done = coordinator.process_outcome(SESSION_ID, "ref-1", "approve", "user")
    again = coordinator.process_outcome(SESSION_ID, "ref-2", "approve", "user")

    assert done.record.status == PipelineStatus.COMPLETE
    assert done.record.current_step_index == 1
    assert again.record == coordinator.store.read_session(SESSION_ID)
    assert len(again.record.decisions) == 1


def test_repeated_approval_without_reference_advances_once(
    coordinator: PipelineCoordinator,
) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)

    first = coordinator.process_outcome(SESSION_ID, "", "approve", "user")
    second = coordinator.process_outcome(SESSION_ID, "", "approve", "user")

    assert first.outcome == Outcome.ADVANCED
    assert second.outcome == Outcome.ADVANCED
    assert second.record.current_step_index == 2
    record = coordinator.store.read_session(SESSION_ID)
    assert record.current_step_index == 2
    assert [d.decision for d in record.decisions] == ["approved"]


def test_approval_without_reference_after_next_dispatch_advances(
    coordinator: PipelineCoordinator,
) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)
    coordinator.process_outcome(SESSION_ID, "", "approve", "user")
    coordinator.dispatch_step(SESSION_ID, 2, "create-spec", "Write spec", "ctx")

    result = coordinator.process_outcome(SESSION_ID, "", "approve", "user")

    assert result.record.current_step_index == 3
    assert result.record.current_step == "3-dev-story"


def test_repeated_approval_does_not_depend_on_decision_appends(
    coordinator: PipelineCoordinator, monkeypatch: pytest.MonkeyPatch
) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)
    monkeypatch.setattr(
        coordinator.store, "append_decision", Mock(side_effect=OSError("disk full"))
    )

    first = coordinator.process_outcome(SESSION_ID, "ret-001.md", "approve", "user")
    second = coordinator.process_outcome(SESSION_ID, "ret-001.md", "approve", "user")

    assert first.outcome == Outcome.ADVANCED
    assert second.record.current_step_index == 2
    record = coordinator.store.read_session(SESSION_ID)
    assert record.current_step_index == 2
    assert record.steps[0].status == StepStatus.COMPLETED
    assert [d.reference_id for d in record.decisions] == ["ret-001.md"]


def test_approval_of_passed_step_is_noop(coordinator: PipelineCoordinator) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)
    coordinator.process_outcome(SESSION_ID, "ref-1", "approve", "user", step_index=1)

    again = coordinator.process_outcome(SESSION_ID, "ref-2", "approve", "user", step_index=1)

    assert again.outcome == Outcome.ADVANCED
    assert again.record.current_step_index == 2
    assert len(coordinator.store.read_session(SESSION_ID).decisions) == 1


def test_approval_of_future_step_is_held(coordinator: PipelineCoordinator) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)

    result = coordinator.process_outcome(SESSION_ID, "ref-3", "approve", "user", step_index=3)

    assert result.outcome == Outcome.HELD
    assert result.record.current_step_index == 1
    assert result.record.decisions == []


def test_approval_store_failure_returns_last_record(
    coordinator: PipelineCoordinator, monkeypatch: pytest.MonkeyPatch
) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)
    monkeypatch.setattr(
        coordinator.store, "update", Mock(side_effect=ConcurrentUpdateError("changed"))
    )

    result = coordinator.process_outcome(SESSION_ID, "ref-1", "approve", "user")

    assert result.outcome == Outcome.HELD
    assert result.record.current_step_index == 1
    assert result.record.status == PipelineStatus.CREATED


def test_rejection_blocks_and_requests_revision(
    coordinator: PipelineCoordinator, handoffs_root: Path
) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)
    coordinator.dispatch_step(SESSION_ID, 1, "create-prd", "Write the PRD", "ctx", ["c"])
    returned = _return_envelope(handoffs_root, "libretto")

    result = coordinator.process_outcome(
        SESSION_ID, str(returned), "reject", "user", note="Missing acceptance criteria"
    )

    assert result.outcome == Outcome.REVISION_SENT
    assert result.record.status == PipelineStatus.BLOCKED
    assert result.record.current_step_index == 1
    rejected = [d for d in result.record.decisions if d.decision == "rejected"]
    assert len(rejected) == 1
    assert rejected[0].note == "Missing acceptance criteria"

    assert result.revision_path is not None
    revision = read_envelope(result.revision_path)
    assert revision.fields["handoff_type"] == "revision"
    assert revision.fields["source_persona"] == "maestro"
    assert revision.fields["target_persona"] == "libretto"
    assert revision.sections["Revision Required"] == "Missing acceptance criteria"


def test_rejection_without_envelope_is_held(coordinator: PipelineCoordinator) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)

    result = coordinator.process_outcome(SESSION_ID, "", "reject", "user")

    assert result.outcome == Outcome.HELD
    assert result.revision_path is None
    assert result.record.status == PipelineStatus.BLOCKED


def test_approval_after_rejection_advances(
    coordinator: PipelineCoordinator, handoffs_root: Path
) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)
    first = _return_envelope(handoffs_root, "libretto")
    coordinator.process_outcome(SESSION_ID, str(first), "reject", "user")
    second = _return_envelope(handoffs_root, "libretto")

    result = coordinator.process_outcome(SESSION_ID, str(second), "approve", "user")

    assert result.record.status == PipelineStatus.IN_PROGRESS
    assert result.record.current_step_index == 2
    assert [d.decision for d in result.record.decisions] == ["rejected", "approved"]


def test_retry_redispatches_with_failure_notes(coordinator: PipelineCoordinator) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)

    result = coordinator.handle_failure(
        SESSION_ID, 1, "create-prd", EscalationAction.RETRY, "Write the PRD", "ctx", "timed out"
    )

    assert result.action == EscalationAction.RETRY
    assert result.record.status == PipelineStatus.IN_PROGRESS
    assert result.envelope_path is not None
    raw = result.envelope_path.read_text(encoding="utf-8")
    assert "## Previous Attempt Failure Notes\ntimed out" in raw


def test_skip_advances_and_records_decision(coordinator: PipelineCoordinator) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)

    result = coordinator.handle_failure(
        SESSION_ID, 1, "create-prd", "skip", "Write the PRD", "ctx", "worker unavailable"
    )

    record = result.record
    assert record.status == PipelineStatus.IN_PROGRESS
    assert record.current_step_index == 2
    assert record.current_step == "2-create-spec"
    assert record.steps[0].status == StepStatus.FAILED
    assert [d.decision for d in record.decisions] == ["skipped"]
    assert record.decisions[0].reference_id == "step-1-create-prd"


def test_repeated_skip_advances_once(coordinator: PipelineCoordinator) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)

    for _ in range(2):
        result = coordinator.handle_failure(
            SESSION_ID, 1, "create-prd", "skip", "Write the PRD", "ctx", "worker unavailable"
        )

    assert result.record.current_step_index == 2
    assert [d.decision for d in result.record.decisions] == ["skipped"]


def test_abort_fails_pipeline_without_deleting(
    coordinator: PipelineCoordinator, handoffs_root: Path
) -> None:
    coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID)
    dispatched = coordinator.dispatch_step(SESSION_ID, 1, "create-prd", "Write", "ctx", ["c"])

    result = coordinator.handle_failure(
        SESSION_ID, 1, "create-prd", "abort", "Write", "ctx", "worker blocked"
    )

    assert result.record.status == PipelineStatus.FAILED
    assert [d.decision for d in result.record.decisions] == ["aborted"]
    assert dispatched.envelope_path is not None and dispatched.envelope_path.exists()
    assert coordinator.store.index_path(SESSION_ID).exists()


def test_detect_failure_type_delegates(
    coordinator: PipelineCoordinator, handoffs_root: Path
) -> None:
    blocked = _return_envelope(handoffs_root, "coda", blocked=True)

    assert coordinator.detect_failure_type(None).value == "missing-envelope"
    assert coordinator.detect_failure_type(str(blocked)).value == "blocked"


def test_resume_pipeline_touches_session(coordinator: PipelineCoordinator) -> None:
    created = coordinator.init_pipeline(STEPS, "Goal", session_id=SESSION_ID).record

    record = coordinator.resume_pipeline(SESSION_ID)

    assert record.current_step == "1-create-prd"
    refreshed = coordinator.store.read_session(SESSION_ID)
    assert refreshed.sessions[0].last_active_at > created.sessions[0].last_active_at
