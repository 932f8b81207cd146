from __future__ import annotations

import json
import sys
from pathlib import Path

import allure
import pytest

from taskweave.orchestrator.backend import CliWorkerBackend, WorkerExecutionError
from taskweave.orchestrator.backend.cli_backend import _build_run_args
from taskweave.orchestrator.models import ModelPreference

pytestmark = [
    allure.epic("Worker Runtime"),
    allure.feature("Agent Command Rendering"),
]

_ECHO = f"{sys.executable} -m taskweave.orchestrator.backend.echo_agent --prompt-file {{prompt_file}}"


def test_build_run_args_quotes_placeholder_values(tmp_path: Path) -> None:
    run_args, command_head = _build_run_args(
        command_template="runner --model {model} --prompt {prompt} --dir {worker_dir}",
        model="anthropic/sonnet",
        prompt='hello "world"',
        prompt_file=tmp_path / "input" / "instruction.txt",
        worker_dir=tmp_path / "my worker",
    )

    assert command_head == "runner"
    assert run_args == [
        "runner",
        "--model",
        "anthropic/sonnet",
        "--prompt",
        'hello "world"',
        "--dir",
        str(tmp_path / "my worker"),
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("", "empty"),
        ("runner --model {model}", "must include"),
        ("runner {prompt} {unknown}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(tmp_path: Path, template: str, message: str) -> None:
    with pytest.raises(WorkerExecutionError, match=message):
        _build_run_args(
            command_template=template,
            model="",
            prompt="p",
            prompt_file=tmp_path / "p.txt",
            worker_dir=tmp_path,
        )


def test_acquire_creates_isolated_worker_directories(tmp_path: Path) -> None:
    backend = CliWorkerBackend(workdir_root=tmp_path, command_template=_ECHO)

    first = backend.acquire()
    second = backend.acquire()

    assert first != second
    for handle in (first, second):
        meta = json.loads((tmp_path / handle / "meta" / "worker.json").read_text("utf-8"))
        assert meta["worker_handle"] == handle
        assert (tmp_path / handle / "input").is_dir()
        assert (tmp_path / handle / "output").is_dir()


def test_submit_runs_echo_agent_and_records_model(tmp_path: Path) -> None:
    backend = CliWorkerBackend(workdir_root=tmp_path, command_template=_ECHO)
    handle = backend.acquire()

    outcome = backend.submit(
        handle,
        "# SINGLE TASK EXECUTION\n\n## Your task (Task 1/1)\nwrite docs\n",
        ModelPreference("anthropic", "haiku"),
    )

    assert outcome.exit_code == 0
    assert "TASK_COMPLETE" in outcome.text
    assert "echoed 'write docs'" in outcome.text
    assert backend.describe(handle) == ModelPreference("anthropic", "haiku")
    assert (tmp_path / handle / "output" / "stdout.txt").read_text("utf-8") == outcome.text


def test_submit_uses_default_model_when_none_given(tmp_path: Path) -> None:
    backend = CliWorkerBackend(
        workdir_root=tmp_path,
        command_template=_ECHO,
        default_model=ModelPreference("openai", "gpt-5"),
    )
    handle = backend.acquire()

    backend.submit(handle, "## Your task (Task 1/1)\nanything\n")

    assert backend.describe(handle) == ModelPreference("openai", "gpt-5")


def test_nonzero_exit_raises_with_stderr_tail(tmp_path: Path) -> None:
    backend = CliWorkerBackend(workdir_root=tmp_path, command_template=f"{_ECHO} --fail-on forbidden")
    handle = backend.acquire()

    with pytest.raises(WorkerExecutionError, match="exited with code 2") as error_info:
        backend.submit(handle, "## Your task (Task 1/1)\nforbidden work\n")

    assert "refusing instruction" in str(error_info.value)


def test_missing_command_is_not_transient(tmp_path: Path) -> None:
    backend = CliWorkerBackend(
        workdir_root=tmp_path,
        command_template="taskweave-no-such-agent-binary {prompt}",
    )
    handle = backend.acquire()

    with pytest.raises(WorkerExecutionError, match="not found") as error_info:
        backend.submit(handle, "hello")

    assert error_info.value.transient is False


def test_timeout_is_transient(tmp_path: Path) -> None:
    template = f'{sys.executable} -c "import time; time.sleep(30)" {{prompt_file}}'
    backend = CliWorkerBackend(workdir_root=tmp_path, command_template=template, timeout_seconds=1)
    handle = backend.acquire()

    with pytest.raises(WorkerExecutionError, match="timed out") as error_info:
        backend.submit(handle, "slow")

    assert error_info.value.transient is True


def test_unknown_handle_is_rejected(tmp_path: Path) -> None:
    backend = CliWorkerBackend(workdir_root=tmp_path, command_template=_ECHO)

    with pytest.raises(WorkerExecutionError, match="Unknown worker handle"):
        backend.submit("worker-missing", "hello")
    assert backend.describe("worker-missing") is None


def test_echo_agent_answers_planning_requests(tmp_path: Path) -> None:
    backend = CliWorkerBackend(workdir_root=tmp_path, command_template=_ECHO)
    handle = backend.acquire()

    outcome = backend.submit(handle, "## Request\nbuild api; write docs\n\n## Rules\n- be brief\n")

    assert outcome.text.splitlines() == [
        "1. build api | DEPENDS: none | OUTPUTS: build api",
        "2. write docs | DEPENDS: none | OUTPUTS: write docs",
    ]
