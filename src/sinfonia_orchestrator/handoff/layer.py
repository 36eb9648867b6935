from __future__ import annotations

from collections.abc import Collection
from pathlib import Path
from typing import Protocol

from .approval import apply_approval, write_revision_request
from .models import HandoffPayload, ParsedEnvelope, ValidationResult, WrittenHandoff
from .reader import read_envelope
from .validator import validate_envelope
from .writer import write_envelope


class EnvelopeLayer(Protocol):
    """What the pipeline coordinator needs from the envelope exchange."""

    def write_envelope(self, session_id: str, payload: HandoffPayload) -> WrittenHandoff: ...

    def read_envelope(self, path: Path) -> ParsedEnvelope: ...

    def validate_envelope(self, path: Path) -> ValidationResult: ...

    def apply_approval(self, path: Path, *, decision: str, reviewer: str) -> None: ...

    def request_revision(self, path: Path, *, note: str | None = None) -> WrittenHandoff: ...


class FileEnvelopeLayer:
    """Envelope exchange backed by markdown files under the handoffs root."""

    def __init__(
        self, handoffs_root: Path, *, known_personas: Collection[str] | None = None
    ) -> None:
        self.handoffs_root = handoffs_root
        self.known_personas = known_personas

    def write_envelope(self, session_id: str, payload: HandoffPayload) -> WrittenHandoff:
        return write_envelope(self.handoffs_root, session_id, payload)

    def read_envelope(self, path: Path) -> ParsedEnvelope:
        return read_envelope(path)

    def validate_envelope(self, path: Path) -> ValidationResult:
        return validate_envelope(path, known_personas=self.known_personas)

    def apply_approval(self, path: Path, *, decision: str, reviewer: str) -> None:
        apply_approval(path, decision=decision, reviewer=reviewer)

    def request_revision(self, path: Path, *, note: str | None = None) -> WrittenHandoff:
        return write_revision_request(self.handoffs_root, path, note=note)
