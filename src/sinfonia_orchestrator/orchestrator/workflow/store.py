"""Crash-safe persistence for pipeline records.

Every write goes through `write_atomically`: the full document is written to a
private temp file in the same directory, fsynced, then renamed over the
target. A reader therefore sees either the old record or the new one, never a
torn write. Two processes updating the same record concurrently are still
last-writer-wins unless the caller passes `expected_updated_at`.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .index_format import parse_record, render_record
from .models import (
    ArtifactEntry,
    CreateIndexParams,
    DecisionEntry,
    IndexPatch,
    PipelineRecord,
    SessionEntry,
    StepEntry,
)
from .state_machine import StepStatus, transition

logger = logging.getLogger(__name__)

INDEX_FILENAME = "workflow.md"
TEMP_PREFIX = f".{INDEX_FILENAME}."


class IndexExistsError(FileExistsError):
    """Raised when creating a record for a session that already has one."""


class ConcurrentUpdateError(RuntimeError):
    """Raised when the on-disk record changed since the caller's snapshot."""


@dataclass(frozen=True, slots=True)
class StepMark:
    """A step-row status change written together with a header patch."""

    index: int
    status: StepStatus
    notes: str | None = None


def utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds")


def write_atomically(path: Path, content: str) -> None:
    """Replace `path` with `content` so readers never observe a partial file.

    Each call writes through its own temp file, so concurrent writers cannot
    reach into the file another writer has already renamed into place.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def _marked_steps(
    steps: Sequence[StepEntry],
    step_index: int,
    status: StepStatus,
    now: str,
    *,
    notes: str | None = None,
) -> list[StepEntry]:
    if not 1 <= step_index <= len(steps):
        raise IndexError(f"No step {step_index} in workflow")
    step = steps[step_index - 1]
    changes: dict[str, object] = {"status": status}
    if status == StepStatus.IN_PROGRESS and not step.started_at:
        changes["started_at"] = now
    if status in {StepStatus.COMPLETED, StepStatus.FAILED}:
        changes["completed_at"] = now
    if notes is not None:
        changes["notes"] = notes
    marked = list(steps)
    marked[step_index - 1] = step.model_copy(update=changes)
    return marked


class WorkflowIndexStore:
    """Read, create and mutate pipeline records under a handoffs root.

    Layout: `<handoffs_root>/<session_id>/workflow.md`.
    """

    def __init__(self, handoffs_root: Path, *, clock: Callable[[], str] = utc_now_iso) -> None:
        self.handoffs_root = handoffs_root
        self._clock = clock

    def now(self) -> str:
        return self._clock()

    def session_dir(self, session_id: str) -> Path:
        return self.handoffs_root / session_id

    def index_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / INDEX_FILENAME

    def list_session_ids(self) -> list[str]:
        if not self.handoffs_root.exists():
            return []
        return sorted(p.name for p in self.handoffs_root.iterdir() if p.is_dir())

    # -- authoritative operations -------------------------------------------------

    def create(self, params: CreateIndexParams) -> PipelineRecord:
        """Create the initial record for a session.

        Raises:
            IndexExistsError: If the session already has a record.
        """

        path = self.index_path(params.session_id)
        if path.exists():
            raise IndexExistsError(f"Workflow index already exists: {path}")

        timestamp = self.now()
        record = PipelineRecord(
            workflow_id=params.workflow_id,
            current_step=params.steps[0].label if params.steps else "",
            current_step_index=1,
            total_steps=len(params.steps),
            session_id=params.session_id,
            created_at=timestamp,
            updated_at=timestamp,
            goal=params.goal,
            context=params.context,
            steps=[
                StepEntry(label=s.label, assigned_worker=s.assigned_worker) for s in params.steps
            ],
            sessions=[
                SessionEntry(
                    session_id=params.session_id,
                    started_at=timestamp,
                    last_active_at=timestamp,
                    status="active",
                )
            ],
        )
        self._persist(path, record)
        logger.info(
            "Workflow index created",
            extra={"session_id": params.session_id, "total_steps": record.total_steps},
        )
        return record

    def read(self, path: Path) -> PipelineRecord:
        """Parse the record at `path`.

        Raises:
            FileNotFoundError: If there is no record.
            IndexStructureError: If the record is unparsable.
        """

        with open(path, encoding="utf-8", newline="") as f:
            return parse_record(f.read())

    def read_session(self, session_id: str) -> PipelineRecord:
        return self.read(self.index_path(session_id))

    def update(
        self,
        path: Path,
        patch: IndexPatch,
        *,
        expected_updated_at: str | None = None,
        step: StepMark | None = None,
        decision: DecisionEntry | None = None,
    ) -> PipelineRecord:
        """Apply a header patch and persist the full record atomically.

        Only `status`, `current_step` and `current_step_index` are patchable.
        `step` and `decision` land in the same write as the patch, the
        decision stamped with the new `updated_at`; all other table rows are
        carried through unchanged.

        Raises:
            IllegalTransitionError: If `patch.status` is not reachable from
                the current status. Nothing is written.
            ConcurrentUpdateError: If `expected_updated_at` is given and does
                not match the stored record.
            ValueError: If `patch.current_step_index` is out of range.
            IndexError: If `step` names a row the record does not have.
        """

        current = self.read(path)
        if expected_updated_at is not None and current.updated_at != expected_updated_at:
            raise ConcurrentUpdateError(
                f"Workflow index changed since {expected_updated_at} "
                f"(now {current.updated_at}): {path}"
            )

        updates: dict[str, object] = {}
        if patch.status is not None:
            updates["status"] = transition(current=current.status, to=patch.status)
        if patch.current_step is not None:
            updates["current_step"] = patch.current_step
        if patch.current_step_index is not None:
            if not 1 <= patch.current_step_index <= max(current.total_steps, 1):
                raise ValueError(
                    f"current_step_index {patch.current_step_index} outside "
                    f"1..{current.total_steps}"
                )
            updates["current_step_index"] = patch.current_step_index
        now = self.now()
        if step is not None:
            updates["steps"] = _marked_steps(
                current.steps, step.index, step.status, now, notes=step.notes
            )
        if decision is not None:
            updates["decisions"] = [
                *current.decisions,
                decision.model_copy(update={"timestamp": now}),
            ]
        updates["updated_at"] = now

        updated = current.model_copy(update=updates)
        self._persist(path, updated)
        logger.debug(
            "Workflow index updated",
            extra={
                "session_id": updated.session_id,
                "status": updated.status.value,
                "current_step_index": updated.current_step_index,
            },
        )
        return updated

    # -- append-only log ------------------------------------------------------------

    def append_decision(self, session_id: str, decision: DecisionEntry) -> PipelineRecord:
        return self._mutate(
            session_id, lambda r: {"decisions": [*r.decisions, decision]}
        )

    def append_artifact(self, session_id: str, artifact: ArtifactEntry) -> PipelineRecord:
        return self._mutate(
            session_id, lambda r: {"artifacts": [*r.artifacts, artifact]}
        )

    # -- step / session bookkeeping --------------------------------------------------

    def mark_step(
        self,
        session_id: str,
        step_index: int,
        status: StepStatus,
        *,
        notes: str | None = None,
    ) -> PipelineRecord:
        """Set the status of one step row, stamping start/completion times."""

        def _updates(record: PipelineRecord) -> dict[str, object]:
            steps = _marked_steps(record.steps, step_index, status, self.now(), notes=notes)
            return {"steps": steps}

        return self._mutate(session_id, _updates)

    def touch_session(self, session_id: str, *, status: str | None = None) -> PipelineRecord:
        """Refresh `last_active_at` for the session row, adding one if missing."""

        def _updates(record: PipelineRecord) -> dict[str, object]:
            now = self.now()
            sessions = list(record.sessions)
            for idx, entry in enumerate(sessions):
                if entry.session_id == session_id:
                    changes: dict[str, object] = {"last_active_at": now}
                    if status is not None:
                        changes["status"] = status
                    sessions[idx] = entry.model_copy(update=changes)
                    break
            else:
                sessions.append(
                    SessionEntry(
                        session_id=session_id,
                        started_at=now,
                        last_active_at=now,
                        status=status or "active",
                    )
                )
            return {"sessions": sessions}

        return self._mutate(session_id, _updates)

    # -- internals -------------------------------------------------------------------

    def _mutate(
        self,
        session_id: str,
        changes: Callable[[PipelineRecord], dict[str, object]],
    ) -> PipelineRecord:
        path = self.index_path(session_id)
        current = self.read(path)
        updated = current.model_copy(update={**changes(current), "updated_at": self.now()})
        self._persist(path, updated)
        return updated

    def _persist(self, path: Path, record: PipelineRecord) -> None:
        write_atomically(path, render_record(record))
