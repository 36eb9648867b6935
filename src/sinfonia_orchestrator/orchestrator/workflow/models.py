"""Pipeline record ("workflow index") data model.

The record is the single source of truth for one pipeline session. It is
persisted as `workflow.md` inside the session directory (see
`index_format`) and only ever mutated through `WorkflowIndexStore`.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from .state_machine import PipelineStatus, StepStatus


class StepEntry(BaseModel):
    label: str
    assigned_worker: str
    status: StepStatus = StepStatus.PENDING
    started_at: str = ""
    completed_at: str = ""
    notes: str = ""


class ArtifactEntry(BaseModel):
    name: str
    kind: str = ""
    status: str = ""
    updated_at: str = ""
    notes: str = ""


class DecisionEntry(BaseModel):
    timestamp: str
    reference_id: str
    decision: str
    reviewer: str
    note: str = ""


class SessionEntry(BaseModel):
    session_id: str
    started_at: str
    last_active_at: str
    status: str = "active"


class PipelineRecord(BaseModel):
    """Durable progress of one pipeline run."""

    workflow_id: str
    status: PipelineStatus = PipelineStatus.CREATED
    current_step: str = ""
    current_step_index: int = 1
    total_steps: int = 0
    session_id: str
    created_at: str
    updated_at: str

    goal: str = ""
    context: str = ""

    steps: list[StepEntry] = Field(default_factory=list)
    artifacts: list[ArtifactEntry] = Field(default_factory=list)
    decisions: list[DecisionEntry] = Field(default_factory=list)
    sessions: list[SessionEntry] = Field(default_factory=list)

    def step_at(self, index: int) -> StepEntry | None:
        """Return the step at a 1-based position, or None when out of range."""

        if 1 <= index <= len(self.steps):
            return self.steps[index - 1]
        return None

    def label_for(self, index: int) -> str:
        step = self.step_at(index)
        return step.label if step is not None else self.current_step


class StepSpec(BaseModel):
    label: str
    assigned_worker: str


class CreateIndexParams(BaseModel):
    session_id: str
    workflow_id: str
    goal: str
    steps: list[StepSpec]
    context: str = ""


class IndexPatch(BaseModel):
    """Fields `WorkflowIndexStore.update` is allowed to change."""

    status: PipelineStatus | None = None
    current_step: str | None = None
    current_step_index: int | None = None
