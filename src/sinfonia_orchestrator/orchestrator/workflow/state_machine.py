from __future__ import annotations

from enum import Enum


class PipelineStatus(str, Enum):
    CREATED = "created"
    IN_PROGRESS = "in-progress"
    BLOCKED = "blocked"
    FAILED = "failed"
    COMPLETE = "complete"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


# Self-loops represent no-op status updates.
ALLOWED_TRANSITIONS: dict[PipelineStatus, frozenset[PipelineStatus]] = {
    PipelineStatus.CREATED: frozenset(
        {
            PipelineStatus.CREATED,
            PipelineStatus.IN_PROGRESS,
            PipelineStatus.BLOCKED,
            PipelineStatus.FAILED,
        }
    ),
    PipelineStatus.IN_PROGRESS: frozenset(
        {
            PipelineStatus.IN_PROGRESS,
            PipelineStatus.COMPLETE,
            PipelineStatus.BLOCKED,
            PipelineStatus.FAILED,
        }
    ),
    PipelineStatus.BLOCKED: frozenset(
        {PipelineStatus.BLOCKED, PipelineStatus.IN_PROGRESS, PipelineStatus.FAILED}
    ),
    PipelineStatus.FAILED: frozenset({PipelineStatus.FAILED, PipelineStatus.IN_PROGRESS}),
    PipelineStatus.COMPLETE: frozenset({PipelineStatus.COMPLETE}),
}

ACTIVE_STATUSES: frozenset[PipelineStatus] = frozenset(
    {PipelineStatus.CREATED, PipelineStatus.IN_PROGRESS, PipelineStatus.BLOCKED}
)


class IllegalTransitionError(ValueError):
    def __init__(self, current: PipelineStatus, to: PipelineStatus) -> None:
        self.current = current
        self.to = to
        super().__init__(f"Invalid workflow status transition: {current.value} -> {to.value}")


def can_transition(current: PipelineStatus, to: PipelineStatus) -> bool:
    return to in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(*, current: PipelineStatus, to: PipelineStatus) -> PipelineStatus:
    if not can_transition(current, to):
        raise IllegalTransitionError(current, to)
    return to
