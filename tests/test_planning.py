from __future__ import annotations

import allure
import pytest

from taskweave.orchestrator.backend import WorkerOutcome
from taskweave.orchestrator.inference import LexicalDependencyInferencer
from taskweave.orchestrator.planning import (
    AgentPlanner,
    PlannedTask,
    PlanningError,
    build_planning_instruction,
    parse_plan,
    plan_to_tasks,
)

pytestmark = [
    allure.epic("Run Planning"),
    allure.feature("Goal Breakdown"),
]


def test_parse_structured_plan() -> None:
    text = """Here is the plan:
1. Create database schema | DEPENDS: none | OUTPUTS: schema.sql
2. Implement API handlers | DEPENDS: 1 | OUTPUTS: api.py
3) Write integration tests | depends: 1, 2 | outputs: tests/test_api.py
"""

    planned = parse_plan(text)

    assert planned == [
        PlannedTask(content="Create database schema", dependency_refs=[], outputs="schema.sql"),
        PlannedTask(content="Implement API handlers", dependency_refs=["1"], outputs="api.py"),
        PlannedTask(
            content="Write integration tests",
            dependency_refs=["1", "2"],
            outputs="tests/test_api.py",
        ),
    ]


def test_parse_plain_numbered_lines_as_fallback() -> None:
    text = "1. Set up the project skeleton\n2. Short\n- not numbered at all\n3. Add continuous integration"

    planned = parse_plan(text)

    assert [item.content for item in planned] == [
        "Set up the project skeleton",
        "Add continuous integration",
    ]
    assert all(item.dependency_refs == [] for item in planned)


def test_malformed_structured_line_is_skipped() -> None:
    assert parse_plan("1. Broken line | DEPENDS: | OUTPUTS:") == []


def test_plan_to_tasks_translates_references() -> None:
    planned = [
        PlannedTask(content="first thing"),
        PlannedTask(content="second thing", dependency_refs=["1"], outputs="out.txt"),
    ]

    specs = plan_to_tasks(planned, LexicalDependencyInferencer())

    assert [(spec.task_id, spec.dependencies, spec.outputs) for spec in specs] == [
        ("task_1", [], []),
        ("task_2", ["task_1"], ["out.txt"]),
    ]


def test_plan_to_tasks_infers_when_planner_gave_no_references() -> None:
    planned = [PlannedTask(content="create the cache"), PlannedTask(content="use the cache")]

    specs = plan_to_tasks(planned, LexicalDependencyInferencer())

    assert specs[1].dependencies == ["task_1"]


def test_instruction_carries_goal_in_request_section() -> None:
    instruction = build_planning_instruction("Ship a todo app")

    assert "## Request\nShip a todo app\n" in instruction
    assert "DEPENDS:" in instruction


class _ScriptedBackend:
    def __init__(self, text: str = "", *, fail: bool = False) -> None:
        self.text = text
        self.fail = fail

    def acquire(self) -> str:
        return "planner-1"

    def submit(self, worker_handle: str, instruction: str, model=None) -> WorkerOutcome:
        if self.fail:
            raise RuntimeError("agent crashed")
        return WorkerOutcome(worker_handle=worker_handle, text=self.text)

    def describe(self, worker_handle: str):
        return None


def test_agent_planner_parses_worker_answer() -> None:
    backend = _ScriptedBackend("1. Build the frontend | DEPENDS: none | OUTPUTS: ui/")

    planned = AgentPlanner(backend).plan("Make UI")

    assert planned == [PlannedTask(content="Build the frontend", outputs="ui/")]


@pytest.mark.parametrize(
    ("backend", "message"),
    [
        (_ScriptedBackend(fail=True), "agent crashed"),
        (_ScriptedBackend("   "), "No response"),
        (_ScriptedBackend("I cannot help with that."), "Failed to extract tasks"),
    ],
)
def test_agent_planner_failures_raise_planning_error(backend: _ScriptedBackend, message: str) -> None:
    with pytest.raises(PlanningError, match=message):
        AgentPlanner(backend).plan("Goal")
