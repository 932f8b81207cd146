"""CLI entrypoint for taskweave."""

import logging
import os
from pathlib import Path

import rich_click as click

from taskweave import __version__
from taskweave.orchestrator.controllers import (
    AddTasksCommand,
    AutoCommand,
    CheckpointCommand,
    CommandError,
    CommandResult,
    ExecuteCommand,
    ObserveTodosCommand,
    RunCliController,
    StartCommand,
)
from taskweave.orchestrator.models import ExecutionMode

click.rich_click.USE_MARKDOWN = True
RUN_CONTROLLER = RunCliController()

_MODE_CHOICE = click.Choice([mode.value for mode in ExecutionMode], case_sensitive=False)


@click.group()
@click.version_option(version=__version__, prog_name="taskweave")
@click.option(
    "--log-level",
    default=lambda: os.getenv("TASKWEAVE_LOG_LEVEL", "WARNING"),
    show_default="WARNING or TASKWEAVE_LOG_LEVEL",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity.",
)
def taskweave(log_level: str) -> None:
    """Break a goal into tasks and run them through isolated worker agents.

    State lives in a single checkpoint slot, so a run can be built up with
    `start` and `add-tasks`, executed with `run` and inspected with `status`
    across separate invocations.
    """

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskweave.command("start")
@click.argument("goal")
@click.option("--model", default=None, help="Model as provider/model, for example anthropic/opus.")
@click.option(
    "--caller-handle",
    default=None,
    envvar="TASKWEAVE_WORKER_HANDLE",
    help="Worker handle of the calling agent; its model is reused when --model is omitted.",
)
def start(goal: str, model: str | None, caller_handle: str | None) -> None:
    """Initialize a new run for GOAL, replacing any saved run."""

    _emit_result(
        lambda: RUN_CONTROLLER.start(
            StartCommand(goal=goal, model=model, caller_handle=caller_handle),
        ),
    )


@taskweave.command("add-tasks")
@click.argument("contents", nargs=-1)
@click.option(
    "--file",
    "tasks_file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="JSON array of {id, content, dependencies, outputs} objects.",
)
@click.option("--json", "tasks_json", default=None, help="Same JSON array, inline.")
@click.option(
    "--infer/--no-infer",
    default=None,
    help="Infer dependencies when none are given (default: TASKWEAVE_INFER_DEPENDENCIES).",
)
def add_tasks(
    contents: tuple[str, ...],
    tasks_file: Path | None,
    tasks_json: str | None,
    infer: bool | None,
) -> None:
    """Add tasks to the current run.

    Positional CONTENTS become tasks `task_N` numbered after the existing ones.
    """

    _emit_result(
        lambda: RUN_CONTROLLER.add_tasks(
            AddTasksCommand(
                contents=contents,
                tasks_file=tasks_file,
                tasks_json=tasks_json,
                infer=infer,
            ),
        ),
    )


@taskweave.command("run")
@click.option("--mode", type=_MODE_CHOICE, default=None, help="Execution mode.")
@click.option(
    "--max-in-flight",
    type=click.IntRange(min=1),
    default=None,
    help="Cap on concurrently running workers within a layer.",
)
def run(mode: str | None, max_in_flight: int | None) -> None:
    """Execute the pending tasks of the current run."""

    _emit_result(
        lambda: RUN_CONTROLLER.execute(
            ExecuteCommand(
                mode=ExecutionMode(mode.lower()) if mode else None,
                max_in_flight=max_in_flight,
            ),
        ),
    )


@taskweave.command("auto")
@click.argument("goal")
@click.option("--model", default=None, help="Model as provider/model.")
@click.option("--mode", type=_MODE_CHOICE, default=None, help="Execution mode.")
@click.option(
    "--max-in-flight",
    type=click.IntRange(min=1),
    default=None,
    help="Cap on concurrently running workers within a layer.",
)
@click.option(
    "--caller-handle",
    default=None,
    envvar="TASKWEAVE_WORKER_HANDLE",
    help="Worker handle of the calling agent.",
)
def auto(
    goal: str,
    model: str | None,
    mode: str | None,
    max_in_flight: int | None,
    caller_handle: str | None,
) -> None:
    """Plan GOAL with a worker agent, then execute the planned tasks."""

    _emit_result(
        lambda: RUN_CONTROLLER.auto(
            AutoCommand(
                goal=goal,
                model=model,
                mode=ExecutionMode(mode.lower()) if mode else None,
                max_in_flight=max_in_flight,
                caller_handle=caller_handle,
            ),
        ),
    )


@taskweave.command("status")
def status() -> None:
    """Show the saved run, its tasks and the remaining execution layers."""

    _emit_result(RUN_CONTROLLER.status)


@taskweave.command("quit")
@click.option("--pre", default=None, help="Instruction to note before the checkpoint is saved.")
@click.option("--post", default=None, help="Instruction to note after the checkpoint is saved.")
def quit_run(pre: str | None, post: str | None) -> None:
    """Save the current run and stop tracking it."""

    _emit_result(lambda: RUN_CONTROLLER.quit(CheckpointCommand(pre=pre, post=post)))


@taskweave.command("resume")
@click.option("--pre", default=None, help="Instruction to note before the run is restored.")
@click.option("--post", default=None, help="Instruction to note after the run is restored.")
def resume(pre: str | None, post: str | None) -> None:
    """Restore the saved run and show what is left to do."""

    _emit_result(lambda: RUN_CONTROLLER.resume(CheckpointCommand(pre=pre, post=post)))


@taskweave.command("observe-todos")
@click.option(
    "--file",
    "todos_file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="JSON array of {id, content, status} todo objects.",
)
@click.option("--json", "todos_json", default=None, help="Same JSON array, inline.")
def observe_todos(todos_file: Path | None, todos_json: str | None) -> None:
    """Record an external todo list; it seeds a run that has no tasks."""

    _emit_result(
        lambda: RUN_CONTROLLER.observe_todos(
            ObserveTodosCommand(todos_file=todos_file, todos_json=todos_json),
        ),
    )


def _emit_result(action) -> None:
    try:
        result: CommandResult = action()
    except CommandError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Command failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskweave()
