"""Classify why a worker did not complete its step.

The classification only feeds a default escalation; the caller decides the
actual retry / skip / abort policy.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from sinfonia_orchestrator.handoff.layer import EnvelopeLayer
from sinfonia_orchestrator.handoff.reader import EnvelopeParseError

logger = logging.getLogger(__name__)


class FailureType(str, Enum):
    MISSING_ENVELOPE = "missing-envelope"
    BLOCKED = "blocked"
    PARTIAL_RETURN = "partial-return"


class EscalationAction(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"


DEFAULT_ESCALATION: dict[FailureType, EscalationAction] = {
    FailureType.MISSING_ENVELOPE: EscalationAction.RETRY,
    FailureType.PARTIAL_RETURN: EscalationAction.RETRY,
    FailureType.BLOCKED: EscalationAction.ABORT,
}


def detect_failure_type(envelopes: EnvelopeLayer, reference: str | Path | None) -> FailureType:
    if not reference:
        return FailureType.MISSING_ENVELOPE

    path = Path(reference)
    if not path.exists():
        return FailureType.MISSING_ENVELOPE

    try:
        parsed = envelopes.read_envelope(path)
    except (EnvelopeParseError, OSError, UnicodeDecodeError) as e:
        logger.debug("Envelope unreadable, treating as partial return", extra={"error": str(e)})
        return FailureType.PARTIAL_RETURN

    if parsed.status == "blocked":
        return FailureType.BLOCKED

    # Any non-blocked return that still needs handling is partial; validation
    # errors only add detail to the log.
    validation = envelopes.validate_envelope(path)
    logger.warning(
        "Partial return envelope",
        extra={"envelope": str(path), "errors": [e.message for e in validation.errors]},
    )
    return FailureType.PARTIAL_RETURN


def default_escalation(failure: FailureType) -> EscalationAction:
    return DEFAULT_ESCALATION[failure]
