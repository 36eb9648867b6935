"""Handoff envelopes exchanged between the coordinator and its workers.

Envelopes are small markdown files (frontmatter + `##` sections) written into
the session directory next to the workflow index.
"""

from sinfonia_orchestrator.handoff.layer import EnvelopeLayer, FileEnvelopeLayer
from sinfonia_orchestrator.handoff.models import (
    HandoffPayload,
    HandoffStatus,
    HandoffType,
    ParsedEnvelope,
    ValidationIssue,
    ValidationResult,
    WrittenHandoff,
)
from sinfonia_orchestrator.handoff.reader import EnvelopeParseError, read_envelope
from sinfonia_orchestrator.handoff.validator import validate_envelope
from sinfonia_orchestrator.handoff.writer import (
    EnvelopeTooLongError,
    create_session_id,
    write_envelope,
)

__all__ = [
    "EnvelopeLayer",
    "EnvelopeParseError",
    "EnvelopeTooLongError",
    "FileEnvelopeLayer",
    "HandoffPayload",
    "HandoffStatus",
    "HandoffType",
    "ParsedEnvelope",
    "ValidationIssue",
    "ValidationResult",
    "WrittenHandoff",
    "create_session_id",
    "read_envelope",
    "validate_envelope",
    "write_envelope",
]
