"""On-demand loading of workflow step files.

A workflow definition lives under `<workflows_root>/<name>/`:

    workflow.md                 optional; a `Description: ...` line names it
    steps/step-01-intake.md     one file per step, ordered by its number
    steps/step-02-draft.md

Only the requested step file is ever read. Progress lives in the session's
pipeline record: `complete_step` moves the pointer past a step exactly once,
so replaying it for a step that is no longer current changes nothing.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from sinfonia_orchestrator.handoff.writer import create_session_id

from .index_format import IndexStructureError
from .models import CreateIndexParams, IndexPatch, PipelineRecord, StepSpec
from .state_machine import IllegalTransitionError, PipelineStatus, StepStatus
from .store import ConcurrentUpdateError, StepMark, WorkflowIndexStore

logger = logging.getLogger(__name__)

DEFINITION_FILENAME = "workflow.md"
STEPS_DIRNAME = "steps"
STEP_FILE_PATTERN = re.compile(r"^step-(\d+)-(.+)\.md$")

_DESCRIPTION_LINE = re.compile(r"^Description:\s*(.+)$", re.MULTILINE)

_STORE_ERRORS: tuple[type[Exception], ...] = (
    IllegalTransitionError,
    IndexStructureError,
    ConcurrentUpdateError,
    IndexError,
    ValueError,
    OSError,
)


@dataclass(frozen=True, slots=True)
class WorkflowStepDef:
    index: int
    slug: str
    path: Path


@dataclass(frozen=True, slots=True)
class WorkflowDef:
    name: str
    description: str
    steps: tuple[WorkflowStepDef, ...]

    @property
    def total_steps(self) -> int:
        return len(self.steps)


@dataclass(frozen=True, slots=True)
class StepLoadResult:
    step_index: int
    slug: str
    path: Path
    content: str
    total_steps: int


def parse_step_filename(filename: str) -> tuple[int, str] | None:
    """Return `(index, slug)` for `step-NN-slug.md`, None for anything else."""

    match = STEP_FILE_PATTERN.match(filename)
    if not match:
        return None
    return int(match.group(1)), match.group(2)


class StepEngine:
    """Workflow definitions on disk, progress in the pipeline record."""

    def __init__(self, workflows_root: Path, store: WorkflowIndexStore) -> None:
        self.workflows_root = workflows_root
        self.store = store

    def workflow_dir(self, name: str) -> Path:
        return self.workflows_root / name

    def discover_steps(self, name: str) -> list[WorkflowStepDef]:
        steps_dir = self.workflow_dir(name) / STEPS_DIRNAME
        if not steps_dir.is_dir():
            return []

        steps: list[WorkflowStepDef] = []
        for entry in steps_dir.iterdir():
            parsed = parse_step_filename(entry.name)
            if parsed is None or not entry.is_file():
                continue
            index, slug = parsed
            steps.append(WorkflowStepDef(index=index, slug=slug, path=entry))
        return sorted(steps, key=lambda s: s.index)

    def describe(self, name: str) -> str:
        """Description line of the definition file, else its first prose line."""

        path = self.workflow_dir(name) / DEFINITION_FILENAME
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return name

        match = _DESCRIPTION_LINE.search(content)
        if match:
            return match.group(1).strip()
        for line in content.split("\n"):
            if line.strip() and not line.startswith("#"):
                return line.strip()
        return name

    def load_workflow_def(self, name: str) -> WorkflowDef | None:
        """Return the definition, or None when the workflow has no step files."""

        steps = self.discover_steps(name)
        if not steps:
            return None
        return WorkflowDef(name=name, description=self.describe(name), steps=tuple(steps))

    def load_step(self, name: str, step_index: int) -> StepLoadResult | None:
        """Read one step file by its 1-based number; None if there is no such step."""

        steps = self.discover_steps(name)
        step = next((s for s in steps if s.index == step_index), None)
        if step is None:
            return None

        try:
            content = step.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            logger.warning(
                "Failed to read step file",
                exc_info=True,
                extra={"workflow": name, "step_index": step_index},
            )
            return None
        return StepLoadResult(
            step_index=step.index,
            slug=step.slug,
            path=step.path,
            content=content,
            total_steps=len(steps),
        )

    def start_workflow(
        self,
        name: str,
        goal: str,
        *,
        worker: str,
        session_id: str | None = None,
    ) -> PipelineRecord:
        """Create a session record with one row per step file.

        Raises:
            FileNotFoundError: If the workflow has no step files.
            IndexExistsError: If the session already has a record.
        """

        definition = self.load_workflow_def(name)
        if definition is None:
            raise FileNotFoundError(f"No step files for workflow {name!r} in {self.workflows_root}")

        return self.store.create(
            CreateIndexParams(
                session_id=session_id or create_session_id(),
                workflow_id=f"workflow-{name}",
                goal=goal,
                context=definition.description,
                steps=[
                    StepSpec(label=f"{s.index}-{s.slug}", assigned_worker=worker)
                    for s in definition.steps
                ],
            )
        )

    def advance_step(self, session_id: str, name: str) -> StepLoadResult | None:
        """Load the step the session's record points at.

        Returns None when the workflow is complete, the record is missing or
        unreadable, or the pointer is outside the discovered steps.
        """

        try:
            record = self.store.read_session(session_id)
        except (FileNotFoundError, IndexStructureError):
            logger.info("No readable workflow index", extra={"session_id": session_id})
            return None

        if record.status == PipelineStatus.COMPLETE:
            return None

        steps = self.discover_steps(name)
        if not 1 <= record.current_step_index <= len(steps):
            return None
        return self.load_step(name, record.current_step_index)

    def resume_workflow(self, session_id: str, name: str) -> StepLoadResult | None:
        """Pick a workflow back up at its next pending step."""

        return self.advance_step(session_id, name)

    def complete_step(self, session_id: str, step_index: int) -> PipelineRecord | None:
        """Mark `step_index` completed and move the pointer past it.

        Completing a step that is not the current one returns the record
        unchanged. Index failures are logged and return None.
        """

        path = self.store.index_path(session_id)
        try:
            record = self.store.read(path)
            if record.status == PipelineStatus.COMPLETE or record.current_step_index != step_index:
                return record

            mark = StepMark(index=step_index, status=StepStatus.COMPLETED)
            if step_index >= record.total_steps:
                if record.status != PipelineStatus.IN_PROGRESS:
                    self.store.update(path, IndexPatch(status=PipelineStatus.IN_PROGRESS))
                # The pointer stays on the last step; the status says it is done.
                return self.store.update(
                    path, IndexPatch(status=PipelineStatus.COMPLETE), step=mark
                )

            next_index = step_index + 1
            return self.store.update(
                path,
                IndexPatch(
                    status=PipelineStatus.IN_PROGRESS,
                    current_step_index=next_index,
                    current_step=record.label_for(next_index),
                ),
                step=mark,
            )
        except _STORE_ERRORS:
            logger.warning(
                "Failed to complete step",
                exc_info=True,
                extra={"session_id": session_id, "step_index": step_index},
            )
            return None
