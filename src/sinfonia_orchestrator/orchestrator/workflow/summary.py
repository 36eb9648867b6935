"""Compact resume summaries.

A resume summary is a short bullet list that survives a context-truncation
event and lets the coordinator re-anchor itself. It is never authoritative:
the workflow index wins whenever both exist.
"""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel

from .index_format import IndexStructureError
from .models import PipelineRecord
from .store import WorkflowIndexStore

logger = logging.getLogger(__name__)

DEFAULT_WORD_LIMIT = 200

_BULLET = re.compile(r"^-\s+([^:]+):\s*(.*)$")


class ResumeSummary(BaseModel):
    session_id: str | None = None
    workflow_id: str | None = None
    current_step: str | None = None
    status: str | None = None

    @property
    def complete(self) -> bool:
        return bool(self.session_id and self.workflow_id and self.current_step)


def _count_words(text: str) -> int:
    return len(text.split())


def _truncate_words(text: str, limit: int) -> str:
    words = text.split()
    if len(words) <= limit:
        return " ".join(words)
    return " ".join(words[:limit]) + " ..."


def _list_or_none(items: list[str]) -> str:
    return "; ".join(items) if items else "none"


def _template(
    *,
    session_id: str,
    workflow_id: str,
    goal: str,
    current_step: str,
    status: str,
    decisions: list[str],
    artifacts: list[str],
    note: str | None = None,
) -> str:
    lines = [
        "## Resume Summary",
        f"- Session: {session_id}",
        f"- Workflow: {workflow_id}",
        f"- Goal: {goal}",
        f"- Current Step: {current_step}",
        f"- Status: {status}",
        f"- Key Decisions: {_list_or_none(decisions)}",
        f"- Recent Artifacts: {_list_or_none(artifacts)}",
    ]
    if note:
        lines.append(f"- Note: {note}")
    return "\n".join(lines)


def render_summary(record: PipelineRecord, *, word_limit: int = DEFAULT_WORD_LIMIT) -> str:
    """Render a record as a resume summary of at most `word_limit` words."""

    decisions = [f"{d.decision} by {d.reviewer}" for d in record.decisions[-3:]]
    artifacts = [f"{a.name}({a.status})" for a in record.artifacts[-3:]]

    # Progressively shorter renderings; the bullet structure is always kept.
    attempts = [(35, 3), (20, 2), (10, 0)]
    text = ""
    for goal_words, keep in attempts:
        text = _template(
            session_id=record.session_id,
            workflow_id=record.workflow_id,
            goal=_truncate_words(record.goal, goal_words),
            current_step=record.current_step,
            status=record.status.value,
            decisions=decisions[-keep:] if keep else [],
            artifacts=artifacts[-keep:] if keep else [],
        )
        if _count_words(text) <= word_limit:
            return text
    return text


def degraded_summary(reason: str, *, goal: str) -> str:
    return _template(
        session_id="unknown",
        workflow_id="unknown",
        goal=goal,
        current_step="unknown",
        status="blocked",
        decisions=[],
        artifacts=[],
        note=reason,
    )


def build_resume_summary(
    store: WorkflowIndexStore, session_id: str, *, word_limit: int = DEFAULT_WORD_LIMIT
) -> str:
    """Summarize a session's record. Never raises; degrades to a placeholder."""

    path = store.index_path(session_id)
    try:
        return render_summary(store.read(path), word_limit=word_limit)
    except FileNotFoundError:
        logger.warning("Workflow index missing for summary", extra={"session_id": session_id})
        return degraded_summary(
            "workflow file not found", goal="Unavailable (workflow file missing)"
        )
    except IndexStructureError as e:
        logger.warning(
            "Workflow index unparsable for summary",
            extra={"session_id": session_id, "error": str(e)},
        )
        return degraded_summary(str(e), goal="Unavailable (workflow index parse failed)")


def parse_summary(text: str) -> ResumeSummary:
    values: dict[str, str] = {}
    for line in text.splitlines():
        match = _BULLET.match(line.strip())
        if match:
            values[match.group(1).strip().lower()] = match.group(2).strip()

    return ResumeSummary(
        session_id=values.get("session") or None,
        workflow_id=values.get("workflow") or None,
        current_step=values.get("current step") or None,
        status=values.get("status") or None,
    )
