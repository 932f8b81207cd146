"""Turn a free-text goal into a task list with dependencies."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from taskweave.orchestrator.backend.base import WorkerBackend
from taskweave.orchestrator.inference import DependencyInferenceStrategy
from taskweave.orchestrator.models import ModelPreference, TaskSpec

logger = logging.getLogger(__name__)

_STRUCTURED_LINE = re.compile(
    r"^\d+[.)]\s*(.+?)\s*\|\s*DEPENDS:\s*([\w,\s]+?)\s*\|\s*OUTPUTS:\s*(.+)$",
    re.IGNORECASE,
)
_NUMBERED_LINE = re.compile(r"^\d+[.)]\s*(.+)")
_MIN_UNSTRUCTURED_CHARS = 10


class PlanningError(RuntimeError):
    """The planner could not produce a usable task list."""


@dataclass(slots=True)
class PlannedTask:
    """One planner line; ``dependency_refs`` are the planner's own task numbers."""

    content: str
    dependency_refs: list[str] = field(default_factory=list)
    outputs: str | None = None


class Planner(Protocol):
    def plan(self, goal: str, model: ModelPreference | None = None) -> list[PlannedTask]:
        """Break ``goal`` down into ordered tasks."""


def build_planning_instruction(goal: str) -> str:
    return (
        "You are an expert task planner for software engineering projects. "
        "Break the request below into atomic tasks.\n"
        "\n"
        "## Request\n"
        f"{goal}\n"
        "\n"
        "## Rules\n"
        "- Every task must be completable in one focused session and have clear boundaries.\n"
        "- Mark tasks that do not need each other as independent; they run in parallel.\n"
        "- Tests depend on the code they test; integration depends on what it integrates.\n"
        "\n"
        "## Output format\n"
        "Output only a numbered list, one task per line:\n"
        "1. <task description> | DEPENDS: none | OUTPUTS: <what it creates>\n"
        "2. <task description> | DEPENDS: 1 | OUTPUTS: <what it creates>\n"
        "3. <task description> | DEPENDS: 1,2 | OUTPUTS: <what it creates>\n"
    )


def parse_plan(text: str) -> list[PlannedTask]:
    """Parse planner output; plain numbered lines are accepted as independent tasks."""

    planned: list[PlannedTask] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        structured = _STRUCTURED_LINE.match(line)
        if structured:
            refs_text = structured.group(2).strip().lower()
            refs = [
                ref.strip()
                for ref in refs_text.split(",")
                if ref.strip() and ref.strip() != "none"
            ]
            planned.append(
                PlannedTask(
                    content=structured.group(1).strip(),
                    dependency_refs=refs,
                    outputs=structured.group(3).strip(),
                ),
            )
            continue

        numbered = _NUMBERED_LINE.match(line)
        if not numbered:
            continue
        content = numbered.group(1).strip()
        if "DEPENDS:" in content or "OUTPUTS:" in content:
            continue
        if len(content) > _MIN_UNSTRUCTURED_CHARS:
            planned.append(PlannedTask(content=content))
    return planned


def plan_to_tasks(
    planned: Sequence[PlannedTask],
    inferencer: DependencyInferenceStrategy,
) -> list[TaskSpec]:
    """Number planned tasks ``task_1..task_n`` and translate their references.

    When no planned task carries a reference, dependencies are inferred from
    the task text instead.
    """

    specs = [
        TaskSpec(
            task_id=f"task_{index}",
            content=item.content,
            dependencies=[f"task_{ref}" for ref in item.dependency_refs],
            outputs=[item.outputs] if item.outputs else [],
        )
        for index, item in enumerate(planned, start=1)
    ]
    if specs and all(not spec.dependencies for spec in specs):
        inferred = inferencer.infer(specs)
        for spec in specs:
            spec.dependencies = inferred.get(spec.task_id, [])
    return specs


class AgentPlanner:
    """Asks a fresh worker for a numbered plan and parses its answer."""

    def __init__(self, backend: WorkerBackend) -> None:
        self.backend = backend

    def plan(self, goal: str, model: ModelPreference | None = None) -> list[PlannedTask]:
        try:
            worker_handle = self.backend.acquire()
        except Exception as error:
            raise PlanningError(f"Failed to create planning worker: {error}") from error
        if not worker_handle:
            raise PlanningError("Failed to create planning worker")

        try:
            outcome = self.backend.submit(worker_handle, build_planning_instruction(goal), model)
        except Exception as error:
            raise PlanningError(f"Planning worker failed: {error}") from error
        if not outcome.text.strip():
            raise PlanningError("No response from planning worker")

        planned = parse_plan(outcome.text)
        if not planned:
            raise PlanningError("Failed to extract tasks from the planning response")
        logger.info("Planner %s produced %d tasks", worker_handle, len(planned))
        return planned
