"""Subprocess-based worker backend for CLI agents.

Every acquired worker gets its own directory under ``workdir_root``::

    <handle>/meta/worker.json      handle, creation time, last model used
    <handle>/input/instruction.txt instruction of the current submission
    <handle>/output/stdout.txt     agent transcript
    <handle>/output/stderr.txt     agent diagnostics

The agent command is rendered from a template that may reference ``{model}``,
``{prompt}``, ``{prompt_file}`` and ``{worker_dir}``.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
from pathlib import Path
from uuid import uuid4

from taskweave.orchestrator.backend.base import (
    WorkerAcquisitionError,
    WorkerExecutionError,
    WorkerOutcome,
)
from taskweave.orchestrator.models import ModelPreference, utc_now

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 500


class CliWorkerBackend:
    """Runs each instruction through an agent CLI in a fresh worker directory."""

    def __init__(
        self,
        *,
        workdir_root: Path,
        command_template: str,
        timeout_seconds: int = 1800,
        default_model: ModelPreference | None = None,
    ) -> None:
        self.workdir_root = workdir_root.expanduser().resolve()
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds
        self.default_model = default_model

    def acquire(self) -> str:
        worker_handle = f"worker-{uuid4().hex[:12]}"
        worker_dir = self.workdir_root / worker_handle
        try:
            for sub_dir in ("meta", "input", "output"):
                (worker_dir / sub_dir).mkdir(parents=True, exist_ok=True)
            _write_worker_meta(
                worker_dir,
                {"worker_handle": worker_handle, "created_at": utc_now().isoformat(), "model": None},
            )
        except OSError as error:
            raise WorkerAcquisitionError(f"Cannot create worker directory: {error}") from error
        logger.debug("Acquired worker %s at %s", worker_handle, worker_dir)
        return worker_handle

    def submit(
        self,
        worker_handle: str,
        instruction: str,
        model: ModelPreference | None = None,
    ) -> WorkerOutcome:
        worker_dir = self.workdir_root / worker_handle
        if not (worker_dir / "meta" / "worker.json").is_file():
            raise WorkerExecutionError(f"Unknown worker handle: {worker_handle}")

        effective_model = model or self.default_model
        model_text = str(effective_model) if effective_model else ""
        prompt_file = worker_dir / "input" / "instruction.txt"
        prompt_file.write_text(instruction, "utf-8")
        meta = _read_worker_meta(worker_dir) or {"worker_handle": worker_handle}
        meta["model"] = model_text or None
        _write_worker_meta(worker_dir, meta)

        run_args, command_head = _build_run_args(
            command_template=self.command_template,
            model=model_text,
            prompt=instruction,
            prompt_file=prompt_file,
            worker_dir=worker_dir,
        )
        env = os.environ.copy()
        env["TASKWEAVE_WORKER_HANDLE"] = worker_handle
        env["TASKWEAVE_MODEL"] = model_text

        stdout_path = worker_dir / "output" / "stdout.txt"
        stderr_path = worker_dir / "output" / "stderr.txt"
        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = _run_subprocess(
                    run_args=run_args,
                    env=env,
                    cwd=worker_dir,
                    timeout_seconds=self.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                )
        except FileNotFoundError as error:
            raise WorkerExecutionError(
                f"Worker command not found: {command_head}",
                transient=False,
            ) from error
        except OSError as error:
            raise WorkerExecutionError(
                f"Worker command failed to start: {error}",
                transient=True,
            ) from error

        if timed_out:
            raise WorkerExecutionError(
                f"Worker {worker_handle} timed out after {self.timeout_seconds}s",
                transient=True,
            )
        if exit_code != 0:
            stderr_tail = stderr_path.read_text("utf-8", errors="replace")[-_STDERR_TAIL_CHARS:]
            raise WorkerExecutionError(
                f"Worker {worker_handle} exited with code {exit_code}: {stderr_tail.strip()}",
            )
        return WorkerOutcome(
            worker_handle=worker_handle,
            text=stdout_path.read_text("utf-8", errors="replace"),
            exit_code=exit_code,
        )

    def describe(self, worker_handle: str) -> ModelPreference | None:
        meta = _read_worker_meta(self.workdir_root / worker_handle)
        if meta is None:
            return None
        model = meta.get("model")
        return ModelPreference.parse(model) if isinstance(model, str) else None


def _read_worker_meta(worker_dir: Path) -> dict[str, object] | None:
    path = worker_dir / "meta" / "worker.json"
    if not path.is_file():
        return None
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def _write_worker_meta(worker_dir: Path, payload: dict[str, object]) -> None:
    path = worker_dir / "meta" / "worker.json"
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def _build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
    worker_dir: Path,
) -> tuple[list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise WorkerExecutionError("Worker command template is empty.")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise WorkerExecutionError(
            "Worker command template must include {prompt} or {prompt_file}.",
        )

    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            worker_dir=shlex.quote(str(worker_dir)),
        )
    except (KeyError, IndexError, ValueError) as error:
        raise WorkerExecutionError(
            f"Unsupported command template placeholder: {error}",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise WorkerExecutionError("Worker command template rendered empty command.")
    return argv, argv[0]


def _run_subprocess(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path,
    timeout_seconds: int,
    stdout_handle,
    stderr_handle,
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    try:
        return process.wait(timeout=timeout_seconds), False
    except subprocess.TimeoutExpired:
        _terminate_process(process)
        return 124, True


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
