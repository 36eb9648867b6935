"""Write handoff envelopes into a session directory.

File naming: `<NNN>-<source>-to-<target>.md`, where `NNN` is one more than the
highest sequence already present in the session directory.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from pathlib import Path

from .models import HandoffPayload, HandoffType, WrittenHandoff

MAX_BODY_WORDS = 500
SESSION_ID_PATTERN = re.compile(r"^s-\d{8}-\d{6}$")

_SEQUENCE_PREFIX = re.compile(r"^(\d{3})-")


class EnvelopeTooLongError(ValueError):
    pass


def create_session_id(now: datetime | None = None) -> str:
    moment = now or datetime.now(tz=UTC)
    return f"s-{moment.astimezone(UTC):%Y%m%d-%H%M%S}"


def count_words(text: str) -> int:
    return len(text.split())


def handoff_path_for(
    handoffs_root: Path, session_id: str, sequence: int, source: str, target: str
) -> Path:
    return handoffs_root / session_id / f"{sequence:03d}-{source}-to-{target}.md"


def next_sequence(session_dir: Path) -> int:
    session_dir.mkdir(parents=True, exist_ok=True)
    highest = 0
    for entry in session_dir.iterdir():
        match = _SEQUENCE_PREFIX.match(entry.name)
        if match:
            highest = max(highest, int(match.group(1)))
    return highest + 1


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items) if items else "- none"


def render_body(payload: HandoffPayload) -> str:
    if payload.handoff_type == HandoffType.DISPATCH:
        parts = [
            ("Artifacts", _bullets(payload.artifacts)),
            ("Task", payload.task),
            ("Context", payload.context),
            ("Constraints", _bullets(payload.constraints)),
        ]
    elif payload.handoff_type == HandoffType.RETURN:
        parts = [
            ("Artifacts", _bullets(payload.artifacts)),
            ("Summary", payload.summary),
            ("Completion Assessment", payload.completion_assessment),
            ("Blockers", _bullets(payload.blockers)),
            ("Recommendations", _bullets(payload.recommendations)),
        ]
    elif payload.handoff_type == HandoffType.REVISION:
        parts = [
            ("Artifacts", _bullets(payload.artifacts)),
            ("Revision Required", payload.revision_required),
            ("Feedback", payload.feedback),
            ("Next Steps", _bullets(payload.next_steps)),
        ]
    else:
        parts = [
            ("Artifacts", _bullets(payload.artifacts)),
            ("Message", payload.message),
        ]
    return "\n\n".join(f"## {title}\n{content}" for title, content in parts)


def render_frontmatter(fields: dict[str, object]) -> str:
    lines = ["---", *(f"{key}: {value}" for key, value in fields.items()), "---"]
    return "\n".join(lines) + "\n"


def write_envelope(
    handoffs_root: Path,
    session_id: str,
    payload: HandoffPayload,
    *,
    created_at: datetime | None = None,
) -> WrittenHandoff:
    """Write the next envelope for a session.

    Raises:
        EnvelopeTooLongError: If the rendered body exceeds 500 words.
    """

    body = render_body(payload)
    words = count_words(body)
    if words > MAX_BODY_WORDS:
        raise EnvelopeTooLongError(f"Handoff body must be <= {MAX_BODY_WORDS} words, got {words}")

    session_dir = handoffs_root / session_id
    sequence = next_sequence(session_dir)
    path = handoff_path_for(
        handoffs_root, session_id, sequence, payload.source_persona, payload.target_persona
    )
    handoff_id = f"{session_id}-{sequence:03d}"
    moment = created_at or datetime.now(tz=UTC)

    frontmatter = render_frontmatter(
        {
            "handoff_id": handoff_id,
            "session_id": session_id,
            "sequence": sequence,
            "source_persona": payload.source_persona,
            "target_persona": payload.target_persona,
            "handoff_type": payload.handoff_type.value,
            "status": payload.status.value,
            "created_at": moment.astimezone(UTC).isoformat(timespec="milliseconds"),
            "word_count": words,
        }
    )
    path.write_text(f"{frontmatter}{body}\n", encoding="utf-8")

    return WrittenHandoff(handoff_id=handoff_id, session_id=session_id, sequence=sequence, path=path)
