"""Controllers for run orchestration CLI commands.

Every CLI invocation is a fresh process, so mutating commands rehydrate the
run from the checkpoint slot first and persist it again afterwards.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskweave.config import Settings
from taskweave.orchestrator.backend import CliWorkerBackend
from taskweave.orchestrator.checkpoint import (
    CheckpointError,
    CheckpointStore,
    FileCheckpointStore,
    take_snapshot,
)
from taskweave.orchestrator.models import (
    CheckpointReport,
    ExecutionMode,
    ExecutionReport,
    Run,
    RunErrorCode,
    TaskSpec,
)
from taskweave.orchestrator.reporting import (
    render_add_tasks,
    render_checkpoint,
    render_execution,
    render_start,
    render_status,
)
from taskweave.orchestrator.service import RunOrchestrator
from taskweave.orchestrator.storage import SqliteCheckpointStore

logger = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Command could not be set up (configuration, input or checkpoint slot)."""


@dataclass(slots=True)
class StartCommand:
    """CLI input for run initialization."""

    goal: str
    model: str | None
    caller_handle: str | None = None


@dataclass(slots=True)
class AddTasksCommand:
    """CLI input for adding tasks to the saved run."""

    contents: tuple[str, ...] = ()
    tasks_file: Path | None = None
    tasks_json: str | None = None
    infer: bool | None = None


@dataclass(slots=True)
class ExecuteCommand:
    """CLI input for an execution pass."""

    mode: ExecutionMode | None = None
    max_in_flight: int | None = None


@dataclass(slots=True)
class AutoCommand:
    """CLI input for plan-then-execute."""

    goal: str
    model: str | None
    mode: ExecutionMode | None = None
    max_in_flight: int | None = None
    caller_handle: str | None = None


@dataclass(slots=True)
class ObserveTodosCommand:
    """CLI input for recording an external todo list."""

    todos_file: Path | None = None
    todos_json: str | None = None


@dataclass(slots=True)
class CheckpointCommand:
    """CLI input for quit/resume; the instructions are echoed around the report."""

    pre: str | None = None
    post: str | None = None


@dataclass(slots=True)
class CommandResult:
    """Rendered output plus overall success flag."""

    lines: list[str]
    success: bool = True


class RunCliController:
    """Coordinates run lifecycle CLI operations on top of :class:`RunOrchestrator`."""

    def start(self, command: StartCommand) -> CommandResult:
        with _orchestrator() as (orchestrator, _):
            report = orchestrator.start(
                command.goal,
                command.model,
                caller_handle=command.caller_handle,
            )
            lines = render_start(report)
            if not report.ok:
                return CommandResult(lines=lines, success=False)
            return _with_save(lines, orchestrator.save_checkpoint())

    def add_tasks(self, command: AddTasksCommand) -> CommandResult:
        with _orchestrator() as (orchestrator, settings):
            _resume_saved(orchestrator)
            existing = len(orchestrator.run.tasks) if orchestrator.run is not None else 0
            specs = _collect_task_specs(command, start_index=existing + 1)
            if not specs:
                raise CommandError("Provide task descriptions, --file or --json.")
            infer = settings.execution.infer_dependencies if command.infer is None else command.infer
            report = orchestrator.add_tasks(specs, infer=infer)
            lines = render_add_tasks(report)
            if not report.ok:
                return CommandResult(lines=lines, success=False)
            return _with_save(lines, orchestrator.save_checkpoint())

    def execute(self, command: ExecuteCommand) -> CommandResult:
        with _orchestrator(max_in_flight=command.max_in_flight) as (orchestrator, settings):
            _resume_saved(orchestrator)
            run = orchestrator.run
            report = orchestrator.execute(command.mode or settings.execution.mode)
            return _persist_execution(orchestrator, report, run)

    def auto(self, command: AutoCommand) -> CommandResult:
        with _orchestrator(max_in_flight=command.max_in_flight) as (orchestrator, settings):
            report = orchestrator.auto(
                command.goal,
                command.model,
                command.mode or settings.execution.mode,
                caller_handle=command.caller_handle,
            )
            return _persist_execution(orchestrator, report, orchestrator.last_run)

    def status(self) -> CommandResult:
        with _orchestrator() as (orchestrator, _):
            return CommandResult(lines=render_status(orchestrator.status()))

    def quit(self, command: CheckpointCommand) -> CommandResult:
        """Save the run one last time and stop tracking it."""

        with _orchestrator() as (orchestrator, _):
            _resume_saved(orchestrator)
            report = orchestrator.save_checkpoint(discard=True)
            lines = render_checkpoint(report)
            if report.ok:
                lines.extend(["", "Run 'taskweave resume' to continue later."])
            return CommandResult(lines=_with_instructions(lines, command, "quit"), success=report.ok)

    def resume(self, command: CheckpointCommand) -> CommandResult:
        with _orchestrator() as (orchestrator, _):
            report = orchestrator.resume_checkpoint()
            lines = render_checkpoint(report)
            if report.ok:
                lines.extend(["", "Run 'taskweave run' to execute the pending tasks."])
            return CommandResult(lines=_with_instructions(lines, command, "resume"), success=report.ok)

    def observe_todos(self, command: ObserveTodosCommand) -> CommandResult:
        todos = _load_json_array(command.todos_file, command.todos_json, label="todo list")
        with _orchestrator() as (orchestrator, _):
            _resume_saved(orchestrator)
            orchestrator.observe_todos(todos)
            lines = [f"Observed {len(orchestrator.observed_todos)} todo items."]
            return _with_save(lines, orchestrator.save_checkpoint())


@contextmanager
def _orchestrator(
    *,
    max_in_flight: int | None = None,
) -> Iterator[tuple[RunOrchestrator, Settings]]:
    try:
        settings = Settings.from_env()
        settings.validate()
    except ValueError as error:
        raise CommandError(f"Configuration error: {error}") from error

    store, close = _checkpoint_store(settings)
    backend = CliWorkerBackend(
        workdir_root=settings.worker.workdir_root,
        command_template=settings.worker.command_template,
        timeout_seconds=settings.worker.timeout_seconds,
        default_model=settings.default_model,
    )
    try:
        yield (
            RunOrchestrator(
                backend=backend,
                checkpoint_store=store,
                max_in_flight=max_in_flight or settings.max_in_flight,
                default_model=settings.default_model,
            ),
            settings,
        )
    finally:
        close()


def _checkpoint_store(settings: Settings) -> tuple[CheckpointStore, Callable[[], None]]:
    if settings.checkpoint.backend == "sqlite":
        store = SqliteCheckpointStore(
            settings.checkpoint.db_path,
            slot=settings.checkpoint.slot,
            busy_timeout_ms=settings.checkpoint.sqlite_busy_timeout_ms,
        )
        try:
            store.init_schema()
        except CheckpointError as error:
            store.close()
            raise CommandError(str(error)) from error
        return store, store.close
    return FileCheckpointStore(settings.checkpoint.state_path), lambda: None


def _resume_saved(orchestrator: RunOrchestrator) -> None:
    report = orchestrator.resume_checkpoint()
    if report.ok or report.error_code == RunErrorCode.NO_CHECKPOINT:
        return
    raise CommandError(report.message)


def _with_save(lines: list[str], saved: CheckpointReport) -> CommandResult:
    if saved.ok:
        return CommandResult(lines=lines)
    return CommandResult(lines=[*lines, f"Error: state not saved: {saved.message}"], success=False)


def _with_instructions(lines: list[str], command: CheckpointCommand, action: str) -> list[str]:
    if command.pre:
        lines = [f"Pre-{action} instruction: {command.pre}", "", *lines]
    if command.post:
        lines = [*lines, "", f"Post-{action} instruction: {command.post}"]
    return lines


def _persist_execution(
    orchestrator: RunOrchestrator,
    report: ExecutionReport,
    run: Run | None,
) -> CommandResult:
    lines = render_execution(report)
    if not report.ok:
        return CommandResult(lines=lines, success=False)
    if run is None:
        return CommandResult(lines=lines)
    saved = orchestrator.write_snapshot(take_snapshot(run, orchestrator.observed_todos))
    return _with_save(lines, saved)


def _collect_task_specs(command: AddTasksCommand, *, start_index: int) -> list[TaskSpec]:
    specs = [
        TaskSpec(task_id=f"task_{index}", content=content)
        for index, content in enumerate(command.contents, start=start_index)
    ]
    if command.tasks_file is not None or command.tasks_json is not None:
        raw_items = _load_json_array(command.tasks_file, command.tasks_json, label="task list")
        offset = start_index + len(specs)
        specs.extend(
            _task_spec_from_json(item, offset + position) for position, item in enumerate(raw_items)
        )
    return specs


def _task_spec_from_json(raw: dict[str, Any], index: int) -> TaskSpec:
    task_id = raw.get("id", raw.get("task_id", f"task_{index}"))
    content = raw.get("content")
    dependencies = raw.get("dependencies", [])
    outputs = raw.get("outputs", [])
    if not isinstance(task_id, str):
        raise CommandError(f"Task entry {index}: id must be a string.")
    if not isinstance(content, str):
        raise CommandError(f"Task entry {task_id}: content must be a string.")
    for name, value in (("dependencies", dependencies), ("outputs", outputs)):
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise CommandError(f"Task entry {task_id}: {name} must be an array of strings.")
    return TaskSpec(task_id=task_id, content=content, dependencies=dependencies, outputs=outputs)


def _load_json_array(path: Path | None, text: str | None, *, label: str) -> list[dict[str, Any]]:
    if path is not None:
        try:
            text = path.read_text("utf-8")
        except OSError as error:
            raise CommandError(f"Cannot read {label} from {path}: {error}") from error
    if text is None:
        raise CommandError(f"No {label} given; pass --file or --json.")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise CommandError(f"Invalid {label} JSON: {error}") from error
    if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
        raise CommandError(f"The {label} must be a JSON array of objects.")
    logger.debug("Loaded %d entries for the %s", len(payload), label)
    return payload
