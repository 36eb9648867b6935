"""Unit tests for handoff envelopes."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from sinfonia_orchestrator.handoff import (
    EnvelopeParseError,
    EnvelopeTooLongError,
    FileEnvelopeLayer,
    HandoffPayload,
    HandoffStatus,
    HandoffType,
    create_session_id,
    read_envelope,
    validate_envelope,
    write_envelope,
)
from sinfonia_orchestrator.handoff.approval import apply_approval

SESSION_ID = "s-20240101-120000"


def _dispatch(**overrides: object) -> HandoffPayload:
    values: dict[str, object] = {
        "source_persona": "maestro",
        "target_persona": "coda",
        "handoff_type": HandoffType.DISPATCH,
        "task": "Implement the login form",
        "context": "Story 1.2",
        "constraints": ["No new dependencies"],
    }
    values.update(overrides)
    return HandoffPayload(**values)


def test_create_session_id_format() -> None:
    moment = datetime(2024, 3, 5, 7, 8, 9, tzinfo=UTC)

    assert create_session_id(moment) == "s-20240305-070809"


def test_write_envelope_names_and_sequences(tmp_path: Path) -> None:
    first = write_envelope(tmp_path, SESSION_ID, _dispatch())
    second = write_envelope(tmp_path, SESSION_ID, _dispatch(target_persona="rondo"))

    assert first.path == tmp_path / SESSION_ID / "001-maestro-to-coda.md"
    assert second.path.name == "002-maestro-to-rondo.md"
    assert first.handoff_id == f"{SESSION_ID}-001"
    assert second.sequence == 2


def test_written_dispatch_validates(tmp_path: Path) -> None:
    written = write_envelope(tmp_path, SESSION_ID, _dispatch())

    result = validate_envelope(written.path, known_personas={"maestro", "coda"})

    assert result.ok, result.errors
    parsed = read_envelope(written.path)
    assert parsed.fields["sequence"] == 1
    assert parsed.sections["Constraints"] == "- No new dependencies"
    assert parsed.sections["Artifacts"] == "- none"


def test_envelope_body_word_limit(tmp_path: Path) -> None:
    with pytest.raises(EnvelopeTooLongError):
        write_envelope(tmp_path, SESSION_ID, _dispatch(context="word " * 600))

    assert not (tmp_path / SESSION_ID / "001-maestro-to-coda.md").exists()


def test_validator_reports_problems(tmp_path: Path) -> None:
    written = write_envelope(tmp_path, SESSION_ID, _dispatch(context=""))
    raw = written.path.read_text(encoding="utf-8")
    written.path.write_text(raw.replace("status: pending", "status: lost"), encoding="utf-8")

    result = validate_envelope(written.path, known_personas={"maestro"})

    rule_ids = {issue.rule_id for issue in result.errors}
    assert {"HV-09", "HV-13", "HV-22"} <= rule_ids
    assert not result.ok


def test_validator_missing_file_and_bad_frontmatter(tmp_path: Path) -> None:
    missing = validate_envelope(tmp_path / "nope.md")
    assert [i.rule_id for i in missing.errors] == ["HV-01"]

    broken = tmp_path / "broken.md"
    broken.write_text("no frontmatter here", encoding="utf-8")
    assert [i.rule_id for i in validate_envelope(broken).errors] == ["HV-02"]

    with pytest.raises(EnvelopeParseError):
        read_envelope(broken)


def test_apply_approval_stamps_frontmatter(tmp_path: Path) -> None:
    written = write_envelope(tmp_path, SESSION_ID, _dispatch())
    moment = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)

    apply_approval(written.path, decision="approve", reviewer="alice", now=moment)

    fields = read_envelope(written.path).fields
    assert fields["approved_by"] == "alice"
    assert fields["approved_at"] == "2024-01-02T03:04:05.000+00:00"
    assert fields["approval"] == "approve"
    assert validate_envelope(written.path).ok


def test_revision_request_swaps_personas(tmp_path: Path) -> None:
    layer = FileEnvelopeLayer(tmp_path)
    returned = layer.write_envelope(
        SESSION_ID,
        HandoffPayload(
            source_persona="coda",
            target_persona="maestro",
            handoff_type=HandoffType.RETURN,
            status=HandoffStatus.COMPLETED,
            summary="Done",
            completion_assessment="Complete",
        ),
    )

    revision = layer.request_revision(returned.path, note="Add tests")

    parsed = read_envelope(revision.path)
    assert revision.path.name == "002-maestro-to-coda.md"
    assert parsed.fields["handoff_type"] == "revision"
    assert parsed.sections["Feedback"] == "Add tests"
    assert parsed.sections["Artifacts"] == f"- {returned.handoff_id}"
