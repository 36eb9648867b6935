"""Structural validation of handoff envelopes.

Rule ids (HV-xx) are stable so callers and logs can refer to them.
"""

from __future__ import annotations

import re
from collections.abc import Collection
from datetime import datetime
from pathlib import Path

from .models import HandoffStatus, HandoffType, ValidationIssue, ValidationResult
from .reader import EnvelopeParseError, read_envelope, split_envelope
from .writer import MAX_BODY_WORDS, SESSION_ID_PATTERN, count_words

REQUIRED_FIELDS: tuple[str, ...] = (
    "handoff_id",
    "session_id",
    "sequence",
    "source_persona",
    "target_persona",
    "handoff_type",
    "status",
    "created_at",
    "word_count",
)

REQUIRED_SECTIONS: dict[str, tuple[str, ...]] = {
    HandoffType.DISPATCH.value: ("Artifacts", "Task", "Context", "Constraints"),
    HandoffType.RETURN.value: (
        "Artifacts",
        "Summary",
        "Completion Assessment",
        "Blockers",
        "Recommendations",
    ),
    HandoffType.REVISION.value: ("Artifacts", "Revision Required", "Feedback", "Next Steps"),
    HandoffType.DIRECT.value: ("Artifacts", "Message"),
}

_HANDOFF_ID = re.compile(r"^s-\d{8}-\d{6}-\d{3}$")
_PERSONA_ID = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def _is_iso_timestamp(value: str) -> bool:
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def validate_envelope(
    path: Path, *, known_personas: Collection[str] | None = None
) -> ValidationResult:
    """Validate an envelope file.

    Never raises for content problems; every problem becomes an ERROR or WARN
    issue in the result.
    """

    result = ValidationResult()

    def error(rule_id: str, message: str) -> None:
        result.errors.append(ValidationIssue(rule_id=rule_id, severity="ERROR", message=message))

    if not path.exists():
        error("HV-01", "Envelope file does not exist")
        return result

    try:
        parsed = read_envelope(path)
    except EnvelopeParseError as e:
        error("HV-02", str(e))
        return result

    fields = parsed.fields
    for name in REQUIRED_FIELDS:
        if name not in fields:
            error("HV-03", f"Missing required field: {name}")

    if not _HANDOFF_ID.match(str(fields.get("handoff_id", ""))):
        error("HV-04", "handoff_id must follow s-YYYYMMDD-HHMMSS-XXX format")

    if not SESSION_ID_PATTERN.match(str(fields.get("session_id", ""))):
        error("HV-05", "session_id must follow s-YYYYMMDD-HHMMSS format")

    sequence = fields.get("sequence")
    if not isinstance(sequence, int) or not 1 <= sequence <= 999:
        error("HV-06", "sequence must be a number between 1 and 999")

    source = str(fields.get("source_persona", ""))
    target = str(fields.get("target_persona", ""))
    if not _PERSONA_ID.match(source) or not _PERSONA_ID.match(target) or source == target:
        error("HV-07", "source/target persona format invalid or identical")

    handoff_type = str(fields.get("handoff_type", ""))
    if handoff_type not in REQUIRED_SECTIONS:
        error("HV-08", "handoff_type must be one of dispatch/return/revision/direct")

    if str(fields.get("status", "")) not in {s.value for s in HandoffStatus}:
        error("HV-09", "status must be pending/completed/blocked")

    if not _is_iso_timestamp(str(fields.get("created_at", ""))):
        error("HV-10", "created_at must be valid ISO timestamp")

    _, body = split_envelope(parsed.raw)
    word_count = fields.get("word_count")
    if (
        not isinstance(word_count, int)
        or word_count > MAX_BODY_WORDS
        or word_count != count_words(body)
    ):
        error("HV-11", f"word_count must match body and be <={MAX_BODY_WORDS}")

    required = REQUIRED_SECTIONS.get(handoff_type, ())
    for section in required:
        if section not in parsed.sections:
            error("HV-12", f"Missing section for {handoff_type}: {section}")
        elif not parsed.sections[section].strip():
            error("HV-13", f"Section is empty: {section}")

    unexpected = [name for name in parsed.sections if required and name not in required]
    if unexpected:
        result.warnings.append(
            ValidationIssue(
                rule_id="HV-14",
                severity="WARN",
                message=f"Unexpected sections present: {', '.join(unexpected)}",
            )
        )

    if handoff_type == HandoffType.DISPATCH.value:
        if known_personas is not None and target not in known_personas:
            error("HV-22", f"Dispatch target persona does not exist: {target}")

        lines = [
            line.strip() for line in parsed.sections.get("Constraints", "").split("\n") if line.strip()
        ]
        if not lines or any(not line.startswith("- ") for line in lines):
            error("HV-23", "Dispatch Constraints must be a bullet list")

    return result
