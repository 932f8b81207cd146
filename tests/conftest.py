"""Shared test fixtures."""

from __future__ import annotations

import sys
import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from taskweave.orchestrator.backend import (
    WorkerAcquisitionError,
    WorkerExecutionError,
    WorkerOutcome,
)
from taskweave.orchestrator.models import ModelPreference

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m taskweave.orchestrator.backend.echo_agent --prompt-file {{prompt_file}}"
)


class FakeWorkerBackend:
    """In-process worker backend recording every submission."""

    def __init__(
        self,
        *,
        fail_on: tuple[str, ...] = (),
        acquire_fails: bool = False,
        barrier: threading.Barrier | None = None,
        models: dict[str, ModelPreference] | None = None,
        on_submit: Callable[[str, str], None] | None = None,
    ) -> None:
        self.fail_on = fail_on
        self.acquire_fails = acquire_fails
        self.barrier = barrier
        self.models = models or {}
        self.on_submit = on_submit
        self.submissions: list[tuple[str, str, ModelPreference | None]] = []
        self._lock = threading.Lock()
        self._counter = 0

    def acquire(self) -> str:
        if self.acquire_fails:
            raise WorkerAcquisitionError("no capacity")
        with self._lock:
            self._counter += 1
            return f"fake-{self._counter}"

    def submit(
        self,
        worker_handle: str,
        instruction: str,
        model: ModelPreference | None = None,
    ) -> WorkerOutcome:
        with self._lock:
            self.submissions.append((worker_handle, instruction, model))
        if self.on_submit is not None:
            self.on_submit(worker_handle, instruction)
        if self.barrier is not None:
            self.barrier.wait(timeout=5)
        for marker in self.fail_on:
            if marker in instruction:
                raise WorkerExecutionError(f"worker refused {marker}")
        return WorkerOutcome(worker_handle=worker_handle, text="TASK_COMPLETE")

    def describe(self, worker_handle: str) -> ModelPreference | None:
        return self.models.get(worker_handle)

    def submitted_tasks(self) -> list[str]:
        """First line of the task section of every instruction, in submission order."""

        with self._lock:
            instructions = [instruction for _, instruction, _ in self.submissions]
        return [_task_line(instruction) for instruction in instructions]


def _task_line(instruction: str) -> str:
    lines = instruction.splitlines()
    for index, line in enumerate(lines):
        if line.startswith("## Your task"):
            return lines[index + 1]
    return ""


@pytest.fixture()
def fake_backend() -> FakeWorkerBackend:
    return FakeWorkerBackend()


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch) -> Path:
    """Point every TASKWEAVE_* path at ``tmp_path`` and use the echo agent."""

    monkeypatch.setenv("TASKWEAVE_WORKER_COMMAND_TEMPLATE", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("TASKWEAVE_WORKDIR_ROOT", str(tmp_path / "workers"))
    monkeypatch.setenv("TASKWEAVE_STATE_PATH", str(tmp_path / "state.json"))
    monkeypatch.setenv("TASKWEAVE_DB_PATH", str(tmp_path / "checkpoints.db"))
    for name in (
        "TASKWEAVE_CHECKPOINT_BACKEND",
        "TASKWEAVE_DEFAULT_MODEL",
        "TASKWEAVE_EXECUTION_MODE",
        "TASKWEAVE_INFER_DEPENDENCIES",
        "TASKWEAVE_MAX_IN_FLIGHT",
        "TASKWEAVE_WORKER_HANDLE",
    ):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


@pytest.fixture()
def make_backend() -> type[FakeWorkerBackend]:
    return FakeWorkerBackend
