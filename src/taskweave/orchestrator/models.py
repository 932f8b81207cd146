"""Domain models for runs, tasks, snapshots and operation reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.FAILED}),
    TaskStatus.IN_PROGRESS: TERMINAL_STATUSES,
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


class ExecutionMode(str, Enum):
    """How an execution pass orders its tasks."""

    PARALLEL = "parallel"
    SERIAL = "serial"


class RunErrorCode(str, Enum):
    """Run-level failure conditions reported back to the caller."""

    NO_ACTIVE_RUN = "no_active_run"
    ALREADY_RUNNING = "already_running"
    NO_TASKS = "no_tasks"
    INVALID_TASKS = "invalid_tasks"
    PLANNING_FAILED = "planning_failed"
    PERSISTENCE_FAILED = "persistence_failed"
    NO_CHECKPOINT = "no_checkpoint"


class InvalidTransitionError(ValueError):
    """Raised when a task status would move backwards or skip a state."""


@dataclass(slots=True, frozen=True)
class ModelPreference:
    """Opaque provider/model pair forwarded to workers."""

    provider_id: str
    model_id: str

    @classmethod
    def parse(cls, value: str | None) -> ModelPreference | None:
        """Parse ``provider/model``; the model part may itself contain slashes."""

        if not value:
            return None
        parts = value.strip().split("/")
        if len(parts) < 2 or not parts[0] or not all(parts[1:]):  # noqa: PLR2004
            return None
        return cls(provider_id=parts[0], model_id="/".join(parts[1:]))

    def __str__(self) -> str:
        return f"{self.provider_id}/{self.model_id}"


@dataclass(slots=True)
class Task:
    """One unit of work executed by a single worker."""

    task_id: str
    content: str
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[str] = field(default_factory=list)
    worker_handle: str | None = None
    error: str | None = None
    outputs: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.dependencies = normalize_dependencies(self.task_id, self.dependencies)

    def mark_in_progress(self, worker_handle: str) -> None:
        self._transition(TaskStatus.IN_PROGRESS)
        self.worker_handle = worker_handle

    def mark_completed(self) -> None:
        self._transition(TaskStatus.COMPLETED)

    def mark_failed(self, error: str) -> None:
        self._transition(TaskStatus.FAILED)
        self.error = error

    def _transition(self, target: TaskStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Task {self.task_id}: cannot move from {self.status.value} to {target.value}",
            )
        self.status = target


def normalize_dependencies(task_id: str, dependencies: list[str] | tuple[str, ...]) -> list[str]:
    """Drop blanks, duplicates and self references while keeping order."""

    seen: set[str] = set()
    normalized: list[str] = []
    for dependency in dependencies:
        dep = str(dependency).strip()
        if not dep or dep == task_id or dep in seen:
            continue
        seen.add(dep)
        normalized.append(dep)
    return normalized


@dataclass(slots=True)
class StatusCounts:
    """Per-status task counters."""

    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.in_progress + self.completed + self.failed


@dataclass(slots=True)
class Run:
    """One attempt to execute a task set."""

    run_id: str
    original_goal: str
    tasks: list[Task] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    model_preference: ModelPreference | None = None
    is_running: bool = False

    def pending_tasks(self) -> list[Task]:
        return [task for task in self.tasks if task.status == TaskStatus.PENDING]

    def counts(self) -> StatusCounts:
        counts = StatusCounts()
        for task in self.tasks:
            if task.status == TaskStatus.PENDING:
                counts.pending += 1
            elif task.status == TaskStatus.IN_PROGRESS:
                counts.in_progress += 1
            elif task.status == TaskStatus.COMPLETED:
                counts.completed += 1
            else:
                counts.failed += 1
        return counts


@dataclass(slots=True)
class Snapshot:
    """Durable, resumable projection of a run."""

    run: Run | None
    observed_todos: list[dict[str, Any]] = field(default_factory=list)
    saved_at: datetime = field(default_factory=utc_now)
    completed_count: int = 0


@dataclass(slots=True)
class TaskSpec:
    """Caller-supplied task definition for ``add_tasks``."""

    task_id: str
    content: str
    dependencies: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ActiveWorker:
    """Registry entry for a worker that is executing a task right now."""

    worker_handle: str
    task_id: str
    started_at: datetime


@dataclass(slots=True)
class TaskReport:
    """Read-only view of one task in a report."""

    task_id: str
    content: str
    status: TaskStatus
    dependencies: list[str]
    worker_handle: str | None
    error: str | None

    @classmethod
    def from_task(cls, task: Task) -> TaskReport:
        return cls(
            task_id=task.task_id,
            content=task.content,
            status=task.status,
            dependencies=list(task.dependencies),
            worker_handle=task.worker_handle,
            error=task.error,
        )


@dataclass(slots=True)
class RunView:
    """Read-only view of a run used by status and checkpoint reports."""

    run_id: str
    original_goal: str
    model_preference: ModelPreference | None
    created_at: datetime
    is_running: bool
    counts: StatusCounts
    tasks: list[TaskReport]

    @classmethod
    def from_run(cls, run: Run) -> RunView:
        return cls(
            run_id=run.run_id,
            original_goal=run.original_goal,
            model_preference=run.model_preference,
            created_at=run.created_at,
            is_running=run.is_running,
            counts=run.counts(),
            tasks=[TaskReport.from_task(task) for task in run.tasks],
        )


@dataclass(slots=True)
class StartReport:
    ok: bool
    message: str
    error_code: RunErrorCode | None = None
    run_id: str | None = None
    model_preference: ModelPreference | None = None
    model_source: str | None = None


@dataclass(slots=True)
class AddTasksReport:
    ok: bool
    message: str
    error_code: RunErrorCode | None = None
    added: int = 0
    inferred: bool = False
    tasks: list[TaskReport] = field(default_factory=list)
    layers: list[list[str]] = field(default_factory=list)
    parallel_task_count: int = 0
    bottleneck_count: int = 0


@dataclass(slots=True)
class ExecutionReport:
    """Outcome of one execution pass over a run."""

    ok: bool
    message: str
    error_code: RunErrorCode | None = None
    run_id: str | None = None
    mode: ExecutionMode | None = None
    layers: list[list[str]] = field(default_factory=list)
    fallback_layer_index: int | None = None
    executed: list[str] = field(default_factory=list)
    tasks: list[TaskReport] = field(default_factory=list)
    completed: int = 0
    failed: int = 0


@dataclass(slots=True)
class StatusReport:
    ok: bool
    message: str
    source: str = "none"
    run: RunView | None = None
    active_workers: list[ActiveWorker] = field(default_factory=list)
    remaining_layers: list[list[str]] = field(default_factory=list)
    saved_at: datetime | None = None
    completed_count: int | None = None


@dataclass(slots=True)
class CheckpointReport:
    ok: bool
    message: str
    error_code: RunErrorCode | None = None
    run: RunView | None = None
    saved_at: datetime | None = None
    completed_count: int = 0
    untracked_workers: list[ActiveWorker] = field(default_factory=list)
