from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from .models import HandoffPayload, HandoffStatus, HandoffType, WrittenHandoff
from .reader import EnvelopeParseError, split_envelope
from .writer import render_frontmatter, write_envelope

logger = logging.getLogger(__name__)


def apply_approval(
    path: Path, *, decision: str, reviewer: str, now: datetime | None = None
) -> None:
    """Stamp an approval decision onto the envelope's frontmatter."""

    raw = path.read_text(encoding="utf-8")
    fields, body = split_envelope(raw)
    fields["approval"] = decision
    fields["approved_by"] = reviewer
    fields["approved_at"] = (now or datetime.now(tz=UTC)).isoformat(timespec="milliseconds")
    path.write_text(f"{render_frontmatter(fields)}{body}", encoding="utf-8")
    logger.debug("Approval stamped", extra={"envelope": str(path), "decision": decision})


def write_revision_request(
    handoffs_root: Path, path: Path, *, note: str | None = None
) -> WrittenHandoff:
    """Send a revision envelope from the reviewer side back to the originator.

    Raises:
        EnvelopeParseError: If the envelope lacks session/source/target metadata.
    """

    fields, _ = split_envelope(path.read_text(encoding="utf-8"))
    session_id = str(fields.get("session_id", ""))
    source = str(fields.get("source_persona", ""))
    target = str(fields.get("target_persona", ""))
    handoff_id = str(fields.get("handoff_id", path.stem))
    if not session_id or not source or not target:
        raise EnvelopeParseError(
            "Cannot create revision handoff without source/target/session metadata"
        )

    payload = HandoffPayload(
        source_persona=target,
        target_persona=source,
        handoff_type=HandoffType.REVISION,
        status=HandoffStatus.PENDING,
        artifacts=[handoff_id],
        revision_required=note or "Revision required",
        feedback=note or "Please revise and resubmit",
        next_steps=["Address feedback", "Resubmit handoff"],
    )
    return write_envelope(handoffs_root, session_id, payload)
