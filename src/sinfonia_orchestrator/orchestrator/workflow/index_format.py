"""Markdown serialization of the pipeline record.

Layout:

    ---
    workflow_id: pipeline-create-prd
    workflow_status: in-progress
    ...
    ---
    ## Goal
    ...
    ## Steps
    | Step | Persona | Status | Started At | Completed At | Notes |
    | --- | --- | --- | --- | --- | --- |
    ...
    ## Context
    ...

Table cells escape backslashes, pipes and line breaks. Free-text lines in the
goal and context sections that start with `#` or a backslash get one leading
backslash so they can never be mistaken for a section heading. Together this
makes `parse_record(render_record(r)) == r` for every record.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from .models import ArtifactEntry, DecisionEntry, PipelineRecord, SessionEntry, StepEntry


T = TypeVar("T", bound=BaseModel)


class IndexStructureError(ValueError):
    """Raised when a persisted workflow index cannot be parsed."""


HEADER_KEYS: tuple[str, ...] = (
    "workflow_id",
    "workflow_status",
    "current_step",
    "current_step_index",
    "total_steps",
    "session_id",
    "created_at",
    "updated_at",
)

SECTION_ORDER: tuple[str, ...] = ("Goal", "Steps", "Artifacts", "Decisions", "Sessions", "Context")

STEP_COLUMNS: tuple[str, ...] = (
    "Step",
    "Persona",
    "Status",
    "Started At",
    "Completed At",
    "Notes",
)
ARTIFACT_COLUMNS: tuple[str, ...] = ("Name", "Type", "Status", "Updated At", "Notes")
DECISION_COLUMNS: tuple[str, ...] = ("Timestamp", "Handoff ID", "Decision", "Reviewer", "Note")
SESSION_COLUMNS: tuple[str, ...] = ("Session ID", "Started At", "Last Active At", "Status")

_HEADER_LINE = re.compile(r"^([a-z_]+):\s?(.*)$")
_INTEGER = re.compile(r"^-?\d+$")


# ---------------------------------------------------------------------------
# Escaping
# ---------------------------------------------------------------------------


def _escape_cell(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace("|", "\\|")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )


def _unescape_cell(value: str) -> str:
    out: list[str] = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, "")
        if nxt == "n":
            out.append("\n")
        elif nxt == "r":
            out.append("\r")
        else:
            out.append(nxt)
    return "".join(out)


def _escape_block(text: str) -> str:
    lines = []
    for line in text.split("\n"):
        if line.startswith(("#", "\\")):
            line = "\\" + line
        lines.append(line)
    return "\n".join(lines)


def _unescape_block(lines: Sequence[str]) -> str:
    return "\n".join(line[1:] if line.startswith("\\") else line for line in lines)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _table(columns: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    lines = [
        "| " + " | ".join(columns) + " |",
        "| " + " | ".join("---" for _ in columns) + " |",
    ]
    for row in rows:
        lines.append("| " + " | ".join(_escape_cell(cell) for cell in row) + " |")
    return "\n".join(lines)


def render_header(record: PipelineRecord) -> str:
    values = {
        "workflow_id": record.workflow_id,
        "workflow_status": record.status.value,
        "current_step": record.current_step,
        "current_step_index": str(record.current_step_index),
        "total_steps": str(record.total_steps),
        "session_id": record.session_id,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }
    lines = ["---"]
    lines.extend(f"{key}: {_escape_cell(values[key])}" for key in HEADER_KEYS)
    lines.append("---")
    return "\n".join(lines) + "\n"


def render_record(record: PipelineRecord) -> str:
    """Serialize a record into its persisted markdown form."""

    steps = _table(
        STEP_COLUMNS,
        [
            (s.label, s.assigned_worker, s.status.value, s.started_at, s.completed_at, s.notes)
            for s in record.steps
        ],
    )
    artifacts = _table(
        ARTIFACT_COLUMNS,
        [(a.name, a.kind, a.status, a.updated_at, a.notes) for a in record.artifacts],
    )
    decisions = _table(
        DECISION_COLUMNS,
        [(d.timestamp, d.reference_id, d.decision, d.reviewer, d.note) for d in record.decisions],
    )
    sessions = _table(
        SESSION_COLUMNS,
        [(s.session_id, s.started_at, s.last_active_at, s.status) for s in record.sessions],
    )

    body = "\n".join(
        [
            "## Goal",
            _escape_block(record.goal),
            "",
            "## Steps",
            steps,
            "",
            "## Artifacts",
            artifacts,
            "",
            "## Decisions",
            decisions,
            "",
            "## Sessions",
            sessions,
            "",
            "## Context",
            _escape_block(record.context),
        ]
    )
    return render_header(record) + body + "\n"


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _split_header(content: str) -> tuple[dict[str, str], str]:
    if not content.startswith("---\n"):
        raise IndexStructureError("workflow frontmatter missing")
    closing = content.find("\n---\n", 3)
    if closing == -1:
        raise IndexStructureError("workflow frontmatter malformed")

    header: dict[str, str] = {}
    for line in content[4:closing].split("\n"):
        if not line.strip():
            continue
        match = _HEADER_LINE.match(line)
        if not match:
            raise IndexStructureError(f"workflow frontmatter line malformed: {line!r}")
        header[match.group(1)] = _unescape_cell(match.group(2))

    missing = [key for key in HEADER_KEYS if key not in header]
    if missing:
        raise IndexStructureError(f"workflow frontmatter missing keys: {', '.join(missing)}")
    return header, content[closing + 5 :]


def _split_sections(body: str) -> dict[str, list[str]]:
    lines = body.split("\n")
    positions: list[int] = []
    cursor = 0
    for title in SECTION_ORDER:
        marker = f"## {title}"
        try:
            idx = lines.index(marker, cursor)
        except ValueError as e:
            raise IndexStructureError(f"workflow section missing: {title}") from e
        positions.append(idx)
        cursor = idx + 1

    sections: dict[str, list[str]] = {}
    for n, title in enumerate(SECTION_ORDER):
        start = positions[n] + 1
        end = positions[n + 1] if n + 1 < len(positions) else len(lines)
        chunk = lines[start:end]
        # Every section is followed by exactly one separator line.
        if chunk and chunk[-1] == "":
            chunk = chunk[:-1]
        sections[title] = chunk
    return sections


def _split_row(line: str) -> list[str]:
    stripped = line.rstrip()
    if not (stripped.startswith("|") and stripped.endswith("|")):
        raise IndexStructureError(f"table row malformed: {line!r}")

    raw_cells: list[str] = []
    current: list[str] = []
    chars = iter(stripped[1:])
    closed = False
    for ch in chars:
        if ch == "\\":
            current.append(ch)
            current.append(next(chars, ""))
            continue
        if ch == "|":
            raw_cells.append("".join(current))
            current = []
            closed = True
            continue
        closed = False
        current.append(ch)
    if not closed:
        raise IndexStructureError(f"table row malformed: {line!r}")

    cells = []
    for raw in raw_cells:
        if raw.startswith(" "):
            raw = raw[1:]
        if raw.endswith(" "):
            raw = raw[:-1]
        cells.append(_unescape_cell(raw))
    return cells


def _parse_table(
    lines: Sequence[str],
    columns: Sequence[str],
    build: Callable[[list[str]], T],
    title: str,
) -> list[T]:
    rows = [line for line in lines if line.strip()]
    if len(rows) < 2:
        raise IndexStructureError(f"workflow section {title} has no table header")

    entries: list[T] = []
    for line in rows[2:]:
        cells = _split_row(line)
        if len(cells) != len(columns):
            raise IndexStructureError(
                f"workflow section {title} row has {len(cells)} cells, expected {len(columns)}"
            )
        entries.append(build(cells))
    return entries


def _int_field(header: dict[str, str], key: str) -> int:
    value = header[key].strip()
    if not _INTEGER.match(value):
        raise IndexStructureError(f"{key} must be an integer, got {value!r}")
    return int(value)


def parse_record(content: str) -> PipelineRecord:
    """Parse the persisted markdown form of a record.

    Raises:
        IndexStructureError: If any part of the document is unparsable.
    """

    header, body = _split_header(content)
    sections = _split_sections(body)

    try:
        steps = _parse_table(
            sections["Steps"],
            STEP_COLUMNS,
            lambda c: StepEntry(
                label=c[0],
                assigned_worker=c[1],
                status=c[2],
                started_at=c[3],
                completed_at=c[4],
                notes=c[5],
            ),
            "Steps",
        )
        artifacts = _parse_table(
            sections["Artifacts"],
            ARTIFACT_COLUMNS,
            lambda c: ArtifactEntry(
                name=c[0], kind=c[1], status=c[2], updated_at=c[3], notes=c[4]
            ),
            "Artifacts",
        )
        decisions = _parse_table(
            sections["Decisions"],
            DECISION_COLUMNS,
            lambda c: DecisionEntry(
                timestamp=c[0], reference_id=c[1], decision=c[2], reviewer=c[3], note=c[4]
            ),
            "Decisions",
        )
        sessions = _parse_table(
            sections["Sessions"],
            SESSION_COLUMNS,
            lambda c: SessionEntry(
                session_id=c[0], started_at=c[1], last_active_at=c[2], status=c[3]
            ),
            "Sessions",
        )
        record = PipelineRecord(
            workflow_id=header["workflow_id"],
            status=header["workflow_status"],
            current_step=header["current_step"],
            current_step_index=_int_field(header, "current_step_index"),
            total_steps=_int_field(header, "total_steps"),
            session_id=header["session_id"],
            created_at=header["created_at"],
            updated_at=header["updated_at"],
            goal=_unescape_block(sections["Goal"]),
            context=_unescape_block(sections["Context"]),
            steps=steps,
            artifacts=artifacts,
            decisions=decisions,
            sessions=sessions,
        )
    except ValidationError as e:
        raise IndexStructureError(f"workflow index has invalid values: {e}") from e

    if len(record.steps) != record.total_steps:
        raise IndexStructureError(
            f"total_steps is {record.total_steps} but {len(record.steps)} steps are listed"
        )
    return record
