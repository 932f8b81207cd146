"""Plain-text rendering of orchestrator reports for the CLI."""

from __future__ import annotations

from taskweave.orchestrator.models import (
    ActiveWorker,
    AddTasksReport,
    CheckpointReport,
    ExecutionMode,
    ExecutionReport,
    RunView,
    StartReport,
    StatusReport,
    TaskReport,
    TaskStatus,
)

_PENDING_PREVIEW_LIMIT = 5


def render_start(report: StartReport) -> list[str]:
    if not report.ok:
        return [f"Error: {report.message}"]
    model = str(report.model_preference) if report.model_preference else "backend default"
    return [
        report.message,
        f"Run: {report.run_id}",
        f"Model: {model} ({report.model_source})",
    ]


def render_add_tasks(report: AddTasksReport) -> list[str]:
    if not report.ok:
        return [f"Error: {report.message}"]
    lines = [report.message]
    if report.inferred:
        lines.append("Dependencies inferred from task descriptions.")
    lines.extend(
        [
            "",
            "Execution plan:",
            f"  Total layers: {len(report.layers)}",
            f"  Tasks that can run in parallel: {report.parallel_task_count}",
            f"  Sequential bottlenecks: {report.bottleneck_count}",
            "",
            "Tasks:",
        ],
    )
    lines.extend(_task_line(index, task) for index, task in enumerate(report.tasks, start=1))
    lines.append("")
    lines.extend(_layer_lines(report.layers))
    return lines


def render_execution(report: ExecutionReport) -> list[str]:
    if not report.ok:
        return [f"Error: {report.message}"]
    lines = [report.message]
    if report.executed:
        if report.mode == ExecutionMode.SERIAL:
            lines.append("Execution mode: serial")
        else:
            lines.append(f"Execution mode: parallel ({len(report.layers)} layers)")
            lines.extend(_layer_lines(report.layers))
            if report.fallback_layer_index is not None:
                lines.append(
                    f"  Layer {report.fallback_layer_index + 1} is a fallback layer "
                    "(cyclic or unknown dependencies).",
                )
    lines.append("")
    lines.extend(_task_line(index, task) for index, task in enumerate(report.tasks, start=1))
    lines.extend(["", f"Completed: {report.completed}/{len(report.tasks)}"])
    if report.failed:
        lines.append(f"Failed: {report.failed}")
    return lines


def render_status(report: StatusReport) -> list[str]:
    if report.run is None:
        return [report.message]
    heading = "=== Saved checkpoint ===" if report.source == "checkpoint" else "=== Active run ==="
    lines = [heading]
    if report.saved_at is not None:
        lines.append(f"Saved: {report.saved_at.isoformat()}")
        lines.append(f"Completed before save: {report.completed_count}")
    lines.extend(_run_lines(report.run))
    if report.active_workers:
        lines.extend(["", f"Active workers ({len(report.active_workers)}):"])
        lines.extend(_worker_lines(report.active_workers, report.run))
    if report.remaining_layers:
        lines.extend(["", "Remaining execution layers:"])
        lines.extend(_layer_lines(report.remaining_layers)[1:])
    return lines


def render_checkpoint(report: CheckpointReport) -> list[str]:
    if not report.ok:
        return [f"Error: {report.message}"]
    lines = [report.message]
    if report.saved_at is not None:
        lines.append(f"Saved at: {report.saved_at.isoformat()}")
    if report.run is None:
        lines.append("No active run.")
        return lines
    lines.extend(_run_lines(report.run))
    pending = [task for task in report.run.tasks if task.status == TaskStatus.PENDING]
    if pending:
        lines.extend(["", "Next pending tasks:"])
        lines.extend(f"  - {task.task_id}: {task.content}" for task in pending[:_PENDING_PREVIEW_LIMIT])
        if len(pending) > _PENDING_PREVIEW_LIMIT:
            lines.append(f"  ... and {len(pending) - _PENDING_PREVIEW_LIMIT} more")
    if report.untracked_workers:
        lines.extend(["", "Workers left running (no longer tracked):"])
        lines.extend(_worker_lines(report.untracked_workers, report.run))
    return lines


def _run_lines(run: RunView) -> list[str]:
    counts = run.counts
    model = str(run.model_preference) if run.model_preference else "backend default"
    lines = [
        f"Run: {run.run_id}",
        f'Goal: "{run.original_goal}"',
        f"Model: {model}",
        f"Running: {'YES' if run.is_running else 'NO'}",
        (
            f"Progress: {counts.completed}/{counts.total} "
            f"({counts.pending} pending, {counts.in_progress} in progress, {counts.failed} failed)"
        ),
        "",
        "Tasks:",
    ]
    if not run.tasks:
        lines.append("  (no tasks added yet)")
    lines.extend(_task_line(index, task) for index, task in enumerate(run.tasks, start=1))
    return lines


def _task_line(index: int, task: TaskReport) -> str:
    line = f"  {index}. [{task.status.value}] {task.task_id}: {task.content}"
    if task.dependencies:
        line += f" [depends: {', '.join(task.dependencies)}]"
    if task.worker_handle:
        line += f" (worker: {task.worker_handle})"
    if task.error:
        line += f" - Error: {task.error}"
    return line


def _layer_lines(layers: list[list[str]]) -> list[str]:
    lines = ["Execution layers:"]
    for index, layer in enumerate(layers, start=1):
        suffix = " (PARALLEL)" if len(layer) > 1 else ""
        lines.append(f"  Layer {index}: {', '.join(layer)}{suffix}")
    return lines


def _worker_lines(workers: list[ActiveWorker], run: RunView) -> list[str]:
    contents = {task.task_id: task.content for task in run.tasks}
    return [
        f"  - {worker.worker_handle}: {contents.get(worker.task_id, worker.task_id)} "
        f"(started {worker.started_at.isoformat()})"
        for worker in workers
    ]
