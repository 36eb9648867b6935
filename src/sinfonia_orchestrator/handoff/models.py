from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


class HandoffType(str, Enum):
    DISPATCH = "dispatch"
    RETURN = "return"
    REVISION = "revision"
    DIRECT = "direct"


class HandoffStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class HandoffPayload(BaseModel):
    """Content of one envelope. Which sections are rendered depends on the type."""

    source_persona: str
    target_persona: str
    handoff_type: HandoffType
    status: HandoffStatus = HandoffStatus.PENDING

    artifacts: list[str] = Field(default_factory=list)

    # dispatch
    task: str = ""
    context: str = ""
    constraints: list[str] = Field(default_factory=list)

    # return
    summary: str = ""
    completion_assessment: str = ""
    blockers: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)

    # revision
    revision_required: str = ""
    feedback: str = ""
    next_steps: list[str] = Field(default_factory=list)

    # direct
    message: str = ""


@dataclass(frozen=True, slots=True)
class WrittenHandoff:
    handoff_id: str
    session_id: str
    sequence: int
    path: Path


@dataclass(frozen=True, slots=True)
class ParsedEnvelope:
    fields: dict[str, object]
    sections: dict[str, str]
    raw: str

    @property
    def status(self) -> str:
        return str(self.fields.get("status", ""))


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    rule_id: str
    severity: str
    message: str


@dataclass(slots=True)
class ValidationResult:
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors
