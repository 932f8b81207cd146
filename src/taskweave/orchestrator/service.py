"""Run orchestrator: owns one run and drives it through layers or serially."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import datetime
from typing import Any
from uuid import uuid4

from taskweave.orchestrator.backend.base import WorkerBackend
from taskweave.orchestrator.checkpoint import (
    CheckpointError,
    CheckpointStore,
    decode_snapshot,
    encode_snapshot,
    restore_snapshot,
    take_snapshot,
)
from taskweave.orchestrator.inference import (
    DependencyInferenceStrategy,
    LexicalDependencyInferencer,
)
from taskweave.orchestrator.layering import LayerPlan, build_layer_plan
from taskweave.orchestrator.models import (
    TERMINAL_STATUSES,
    AddTasksReport,
    CheckpointReport,
    ExecutionMode,
    ExecutionReport,
    ModelPreference,
    Run,
    RunErrorCode,
    RunView,
    Snapshot,
    StartReport,
    StatusReport,
    Task,
    TaskReport,
    TaskSpec,
    utc_now,
)
from taskweave.orchestrator.planning import AgentPlanner, Planner, PlanningError, plan_to_tasks
from taskweave.orchestrator.runner import ActiveWorkerRegistry, TaskRunner

logger = logging.getLogger(__name__)

_IMPORTABLE_TODO_STATUSES = frozenset({"pending", "in_progress"})


class RunOrchestrator:
    """Holds the active run, its worker registry and the observed todo list.

    One instance per invocation context; nothing is shared between instances.
    Every public operation returns a report object instead of raising for
    run-level conditions (no run, already running, no tasks, checkpoint I/O).
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: WorkerBackend,
        checkpoint_store: CheckpointStore | None = None,
        planner: Planner | None = None,
        inferencer: DependencyInferenceStrategy | None = None,
        max_in_flight: int | None = None,
        default_model: ModelPreference | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.backend = backend
        self.checkpoint_store = checkpoint_store
        self.planner = planner or AgentPlanner(backend)
        self.inferencer = inferencer or LexicalDependencyInferencer()
        self.default_model = default_model
        self.clock = clock
        self.registry = ActiveWorkerRegistry(clock)
        self.runner = TaskRunner(backend=backend, registry=self.registry, max_in_flight=max_in_flight)
        self.run: Run | None = None
        self.last_run: Run | None = None
        self.observed_todos: list[dict[str, Any]] = []
        self._guard = threading.Lock()

    # -- run setup -------------------------------------------------------------

    def start(
        self,
        goal: str,
        model: str | None = None,
        *,
        caller_handle: str | None = None,
    ) -> StartReport:
        if self.run is not None and self.run.is_running:
            return StartReport(
                ok=False,
                error_code=RunErrorCode.ALREADY_RUNNING,
                message=f"Run {self.run.run_id} is executing; wait for it or save a checkpoint.",
            )
        if not goal.strip():
            return StartReport(
                ok=False,
                error_code=RunErrorCode.INVALID_TASKS,
                message="Goal must not be empty.",
            )

        preference, source = self._resolve_model(model, caller_handle)
        run = self._create_run(goal, preference)
        return StartReport(
            ok=True,
            message=f"Run {run.run_id} initialized; add tasks, then execute.",
            run_id=run.run_id,
            model_preference=preference,
            model_source=source,
        )

    def add_tasks(self, specs: Sequence[TaskSpec], *, infer: bool = True) -> AddTasksReport:
        run = self.run
        if run is None:
            return AddTasksReport(
                ok=False,
                error_code=RunErrorCode.NO_ACTIVE_RUN,
                message="No active run. Call start first.",
            )
        if run.is_running:
            return AddTasksReport(
                ok=False,
                error_code=RunErrorCode.ALREADY_RUNNING,
                message=f"Run {run.run_id} is executing; tasks cannot be added now.",
            )
        problems = _validate_specs(specs, existing={task.task_id for task in run.tasks})
        if problems:
            return AddTasksReport(
                ok=False,
                error_code=RunErrorCode.INVALID_TASKS,
                message="; ".join(problems),
            )

        specs = [replace(spec, task_id=spec.task_id.strip()) for spec in specs]
        dependencies = {spec.task_id: list(spec.dependencies) for spec in specs}
        inferred = bool(specs) and infer and all(not spec.dependencies for spec in specs)
        if inferred:
            dependencies = self.inferencer.infer(specs)
        for spec in specs:
            run.tasks.append(
                Task(
                    task_id=spec.task_id,
                    content=spec.content,
                    dependencies=dependencies.get(spec.task_id, []),
                    outputs=list(spec.outputs),
                ),
            )

        plan = self._pending_plan(run)
        return AddTasksReport(
            ok=True,
            message=f"Added {len(specs)} tasks. Total tasks: {len(run.tasks)}",
            added=len(specs),
            inferred=inferred,
            tasks=[TaskReport.from_task(task) for task in run.tasks],
            layers=plan.id_groups,
            parallel_task_count=plan.parallel_task_count,
            bottleneck_count=plan.bottleneck_count,
        )

    def observe_todos(self, todos: Sequence[dict[str, Any]]) -> None:
        """Remember the latest externally observed todo list."""

        self.observed_todos = [dict(todo) for todo in todos if isinstance(todo, dict)]

    # -- execution -------------------------------------------------------------

    def execute(self, mode: ExecutionMode = ExecutionMode.PARALLEL) -> ExecutionReport:
        """Execute the active run; a run that went through a pass is cleared afterwards."""

        run = self.run
        if run is None:
            return ExecutionReport(
                ok=False,
                error_code=RunErrorCode.NO_ACTIVE_RUN,
                message="No active run. Call start first.",
            )
        report = self.execute_run(run, mode)
        if report.executed:
            self.last_run = run
            if self.run is run:
                self.run = None
        return report

    def execute_run(self, run: Run, mode: ExecutionMode = ExecutionMode.PARALLEL) -> ExecutionReport:
        with self._guard:
            if run.is_running:
                return ExecutionReport(
                    ok=False,
                    error_code=RunErrorCode.ALREADY_RUNNING,
                    message=f"Run {run.run_id} is already running.",
                    run_id=run.run_id,
                )
            if not run.tasks:
                problems = self._import_observed_todos(run)
                if problems:
                    return ExecutionReport(
                        ok=False,
                        error_code=RunErrorCode.INVALID_TASKS,
                        message="; ".join(problems),
                        run_id=run.run_id,
                    )
            if not run.tasks:
                return ExecutionReport(
                    ok=False,
                    error_code=RunErrorCode.NO_TASKS,
                    message="No tasks in run. Add tasks first or provide a todo list.",
                    run_id=run.run_id,
                )
            pending = run.pending_tasks()
            if not pending:
                return _execution_report(
                    run,
                    mode=mode,
                    message="No pending tasks to run; all tasks already finished.",
                )
            run.is_running = True

        plan = LayerPlan()
        try:
            plan = build_layer_plan(pending, satisfied=_settled_ids(run))
            total = len(run.tasks)
            logger.info(
                "Run %s: executing %d pending tasks (%s)",
                run.run_id,
                len(pending),
                "serial" if mode == ExecutionMode.SERIAL else f"{len(plan.layers)} layers",
            )
            if mode == ExecutionMode.SERIAL:
                for position, task in enumerate(pending, start=1):
                    self.runner.run(task, run, position, total)
            else:
                started = 0
                for layer_no, layer in enumerate(plan.layers, start=1):
                    logger.info(
                        "Run %s: layer %d/%d with %d tasks",
                        run.run_id,
                        layer_no,
                        len(plan.layers),
                        len(layer),
                    )
                    self.runner.run_many(layer, run, started, total)
                    started += len(layer)
        finally:
            run.is_running = False

        report = _execution_report(
            run,
            mode=mode,
            message=f"Run {run.run_id} finished.",
            executed=[task.task_id for task in pending],
        )
        if mode == ExecutionMode.PARALLEL:
            report.layers = plan.id_groups
            report.fallback_layer_index = plan.fallback_layer_index
        logger.info(
            "Run %s: %d completed, %d failed of %d",
            run.run_id,
            report.completed,
            report.failed,
            len(run.tasks),
        )
        return report

    def auto(
        self,
        goal: str,
        model: str | None = None,
        mode: ExecutionMode = ExecutionMode.PARALLEL,
        *,
        caller_handle: str | None = None,
    ) -> ExecutionReport:
        """Plan ``goal``, start a run with the planned tasks and execute it."""

        if self.run is not None and self.run.is_running:
            return ExecutionReport(
                ok=False,
                error_code=RunErrorCode.ALREADY_RUNNING,
                message=f"Run {self.run.run_id} is already running.",
            )
        preference, _ = self._resolve_model(model, caller_handle)
        try:
            planned = self.planner.plan(goal, preference)
        except PlanningError as error:
            return ExecutionReport(
                ok=False,
                error_code=RunErrorCode.PLANNING_FAILED,
                message=f"Failed to break down goal: {error}",
            )

        self._create_run(goal, preference)
        added = self.add_tasks(plan_to_tasks(planned, self.inferencer), infer=False)
        if not added.ok:
            self.run = None
            return ExecutionReport(ok=False, error_code=added.error_code, message=added.message)
        return self.execute(mode)

    # -- status and checkpoints --------------------------------------------------

    def status(self) -> StatusReport:
        run = self.run
        if run is not None:
            return StatusReport(
                ok=True,
                message=f"Active run {run.run_id}",
                source="active",
                run=RunView.from_run(run),
                active_workers=self.registry.entries(),
                remaining_layers=self._pending_plan(run).id_groups,
            )
        if self.checkpoint_store is None:
            return StatusReport(ok=True, message="No active run.")

        try:
            data = self.checkpoint_store.read()
            snapshot = decode_snapshot(data) if data is not None else None
        except CheckpointError as error:
            logger.warning("Saved checkpoint is unreadable: %s", error)
            return StatusReport(ok=True, message=f"No active run; saved checkpoint unreadable: {error}")
        if snapshot is None or snapshot.run is None:
            return StatusReport(ok=True, message="No active run and no saved checkpoint found.")
        return StatusReport(
            ok=True,
            message="Saved checkpoint",
            source="checkpoint",
            run=RunView.from_run(snapshot.run),
            remaining_layers=self._pending_plan(snapshot.run).id_groups,
            saved_at=snapshot.saved_at,
            completed_count=snapshot.completed_count,
        )

    def snapshot(self) -> Snapshot:
        return take_snapshot(self.run, self.observed_todos, now=self.clock())

    def save_checkpoint(self, *, discard: bool = False) -> CheckpointReport:
        """Persist the current snapshot; ``discard`` also abandons the in-memory run.

        In-flight workers are never terminated; after a discard they are only
        reported as untracked.
        """

        report = self.write_snapshot(self.snapshot())
        if report.ok and discard:
            report.untracked_workers = self.registry.entries()
            self.run = None
        return report

    def write_snapshot(self, snapshot: Snapshot) -> CheckpointReport:
        if self.checkpoint_store is None:
            return CheckpointReport(
                ok=False,
                error_code=RunErrorCode.PERSISTENCE_FAILED,
                message="No checkpoint store configured.",
            )
        try:
            self.checkpoint_store.write(encode_snapshot(snapshot))
        except CheckpointError as error:
            logger.error("Checkpoint save failed: %s", error)
            return CheckpointReport(
                ok=False,
                error_code=RunErrorCode.PERSISTENCE_FAILED,
                message=str(error),
            )
        return CheckpointReport(
            ok=True,
            message="Checkpoint saved.",
            run=RunView.from_run(snapshot.run) if snapshot.run is not None else None,
            saved_at=snapshot.saved_at,
            completed_count=snapshot.completed_count,
        )

    def resume_checkpoint(self) -> CheckpointReport:
        if self.run is not None and self.run.is_running:
            return CheckpointReport(
                ok=False,
                error_code=RunErrorCode.ALREADY_RUNNING,
                message=f"Run {self.run.run_id} is executing; cannot resume over it.",
            )
        if self.checkpoint_store is None:
            return CheckpointReport(
                ok=False,
                error_code=RunErrorCode.PERSISTENCE_FAILED,
                message="No checkpoint store configured.",
            )
        try:
            data = self.checkpoint_store.read()
            if data is None:
                return CheckpointReport(
                    ok=False,
                    error_code=RunErrorCode.NO_CHECKPOINT,
                    message="No saved state found.",
                )
            snapshot = decode_snapshot(data)
        except CheckpointError as error:
            logger.error("Checkpoint resume failed: %s", error)
            return CheckpointReport(
                ok=False,
                error_code=RunErrorCode.PERSISTENCE_FAILED,
                message=str(error),
            )

        self.observed_todos = snapshot.observed_todos
        run = restore_snapshot(snapshot)
        if run is None:
            return CheckpointReport(
                ok=False,
                error_code=RunErrorCode.NO_CHECKPOINT,
                message="No run found in saved state.",
                saved_at=snapshot.saved_at,
            )
        run.is_running = False
        self.run = run
        return CheckpointReport(
            ok=True,
            message=f"Run {run.run_id} restored.",
            run=RunView.from_run(run),
            saved_at=snapshot.saved_at,
            completed_count=snapshot.completed_count,
        )

    # -- helpers -------------------------------------------------------------------

    def _create_run(self, goal: str, preference: ModelPreference | None) -> Run:
        self.run = Run(
            run_id=f"run_{uuid4().hex[:12]}",
            original_goal=goal,
            created_at=self.clock(),
            model_preference=preference,
        )
        self.observed_todos = []
        logger.info("Run %s created (model=%s)", self.run.run_id, preference or "backend default")
        return self.run

    def _resolve_model(
        self,
        model: str | None,
        caller_handle: str | None,
    ) -> tuple[ModelPreference | None, str]:
        if model:
            parsed = ModelPreference.parse(model)
            if parsed is not None:
                return parsed, "explicit"
            logger.warning("Ignoring malformed model %r; expected provider/model", model)
        elif caller_handle:
            described = self.backend.describe(caller_handle)
            if described is not None:
                return described, "caller"
        return self.default_model, "default"

    def _import_observed_todos(self, run: Run) -> list[str]:
        """Seed ``run`` from pending/in-progress todos; returns validation problems."""

        importable = [
            todo
            for todo in self.observed_todos
            if isinstance(todo.get("status"), str)
            and todo["status"] in _IMPORTABLE_TODO_STATUSES
            and isinstance(todo.get("content"), str)
            and todo["content"].strip()
        ]
        taken = {_todo_id(todo) for todo in importable} - {""}
        specs: list[TaskSpec] = []
        used: set[str] = set()
        for index, todo in enumerate(importable, start=1):
            task_id = _todo_id(todo)
            if not task_id:
                number = index
                while f"task_{number}" in taken or f"task_{number}" in used:
                    number += 1
                task_id = f"task_{number}"
            if task_id in used:
                logger.warning("Skipping observed todo with duplicate id %s", task_id)
                continue
            used.add(task_id)
            specs.append(TaskSpec(task_id=task_id, content=todo["content"]))
        if not specs:
            return []
        problems = _validate_specs(specs, existing=set())
        if problems:
            return problems
        inferred = self.inferencer.infer(specs)
        run.tasks.extend(
            Task(task_id=spec.task_id, content=spec.content, dependencies=inferred.get(spec.task_id, []))
            for spec in specs
        )
        logger.info("Run %s: imported %d tasks from the observed todo list", run.run_id, len(specs))
        return []

    @staticmethod
    def _pending_plan(run: Run) -> LayerPlan:
        pending = run.pending_tasks()
        if not pending:
            return LayerPlan()
        return build_layer_plan(pending, satisfied=_settled_ids(run))


def _settled_ids(run: Run) -> list[str]:
    return [task.task_id for task in run.tasks if task.status in TERMINAL_STATUSES]


def _todo_id(todo: dict[str, Any]) -> str:
    raw = todo.get("id")
    return raw.strip() if isinstance(raw, str) else ""


def _execution_report(
    run: Run,
    *,
    mode: ExecutionMode,
    message: str,
    executed: list[str] | None = None,
) -> ExecutionReport:
    counts = run.counts()
    return ExecutionReport(
        ok=True,
        message=message,
        run_id=run.run_id,
        mode=mode,
        executed=executed or [],
        tasks=[TaskReport.from_task(task) for task in run.tasks],
        completed=counts.completed,
        failed=counts.failed,
    )


def _validate_specs(specs: Sequence[TaskSpec], *, existing: set[str]) -> list[str]:
    problems: list[str] = []
    seen: set[str] = set()
    for index, spec in enumerate(specs, start=1):
        task_id = spec.task_id.strip() if isinstance(spec.task_id, str) else ""
        if not task_id:
            problems.append(f"task #{index} has an empty id")
            continue
        if not isinstance(spec.content, str) or not spec.content.strip():
            problems.append(f"task {task_id} has empty content")
        if task_id in existing or task_id in seen:
            problems.append(f"duplicate task id {task_id}")
        seen.add(task_id)
    return problems
