from __future__ import annotations

import re
from pathlib import Path

from .models import ParsedEnvelope

_FIELD_LINE = re.compile(r"^([a-z_]+):\s*(.*)$", re.IGNORECASE)
_HEADING = re.compile(r"^##\s+(.+)$")
_INTEGER = re.compile(r"^-?\d+$")


class EnvelopeParseError(ValueError):
    pass


def _parse_scalar(raw: str) -> object:
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    if _INTEGER.match(value):
        return int(value)
    return value


def split_envelope(raw: str) -> tuple[dict[str, object], str]:
    """Split an envelope into its frontmatter fields and body."""

    if not raw.startswith("---\n"):
        raise EnvelopeParseError("frontmatter missing or malformed")
    closing = raw.find("\n---", 4)
    if closing == -1:
        raise EnvelopeParseError("frontmatter missing or malformed")

    fields: dict[str, object] = {}
    for line in raw[4:closing].split("\n"):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = _FIELD_LINE.match(line)
        if not match:
            raise EnvelopeParseError(f"frontmatter line malformed: {line!r}")
        fields[match.group(1)] = _parse_scalar(match.group(2))

    body = raw[closing + 4 :].lstrip()
    return fields, body


def read_envelope(path: Path) -> ParsedEnvelope:
    """Read an envelope file into fields and `##` sections.

    Raises:
        FileNotFoundError: If the envelope does not exist.
        EnvelopeParseError: If the frontmatter cannot be parsed.
    """

    raw = path.read_text(encoding="utf-8")
    fields, body = split_envelope(raw)

    sections: dict[str, list[str]] = {}
    current: str | None = None
    for line in body.split("\n"):
        heading = _HEADING.match(line)
        if heading:
            current = heading.group(1).strip()
            sections[current] = []
            continue
        if current is not None:
            sections[current].append(line)

    return ParsedEnvelope(
        fields=fields,
        sections={name: "\n".join(lines).strip() for name, lines in sections.items()},
        raw=raw,
    )
