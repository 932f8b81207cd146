"""Runtime configuration for workers, execution and checkpoints."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from taskweave.orchestrator.models import ExecutionMode, ModelPreference

DEFAULT_COMMAND_TEMPLATE = "claude -p --permission-mode dontAsk -- {prompt}"
CHECKPOINT_BACKENDS = ("file", "sqlite")


@dataclass(slots=True)
class WorkerSettings:
    """How worker agents are launched."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    workdir_root: Path = Path(".taskweave/workers")
    timeout_seconds: int = 1_800
    default_model: str | None = None


@dataclass(slots=True)
class ExecutionSettings:
    """Execution pass defaults."""

    mode: ExecutionMode = ExecutionMode.PARALLEL
    max_in_flight: int = 0
    infer_dependencies: bool = True


@dataclass(slots=True)
class CheckpointSettings:
    """Where the single checkpoint slot lives."""

    backend: str = "file"
    state_path: Path = Path(".taskweave/state.json")
    db_path: Path = Path(".taskweave/checkpoints.db")
    slot: str = "default"
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    worker: WorkerSettings = field(default_factory=WorkerSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    checkpoint: CheckpointSettings = field(default_factory=CheckpointSettings)
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``TASKWEAVE_*`` environment variables."""

        mode_raw = os.getenv("TASKWEAVE_EXECUTION_MODE", ExecutionMode.PARALLEL.value)
        try:
            mode = ExecutionMode(mode_raw.strip().lower())
        except ValueError as error:
            raise ValueError(
                f"Invalid TASKWEAVE_EXECUTION_MODE: {mode_raw!r}. Expected parallel or serial.",
            ) from error

        return cls(
            worker=WorkerSettings(
                command_template=os.getenv(
                    "TASKWEAVE_WORKER_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                workdir_root=Path(os.getenv("TASKWEAVE_WORKDIR_ROOT", ".taskweave/workers")),
                timeout_seconds=_env_int("TASKWEAVE_WORKER_TIMEOUT_SECONDS", 1_800),
                default_model=os.getenv("TASKWEAVE_DEFAULT_MODEL") or None,
            ),
            execution=ExecutionSettings(
                mode=mode,
                max_in_flight=_env_int("TASKWEAVE_MAX_IN_FLIGHT", 0),
                infer_dependencies=_env_bool("TASKWEAVE_INFER_DEPENDENCIES", default=True),
            ),
            checkpoint=CheckpointSettings(
                backend=os.getenv("TASKWEAVE_CHECKPOINT_BACKEND", "file").strip().lower(),
                state_path=Path(os.getenv("TASKWEAVE_STATE_PATH", ".taskweave/state.json")),
                db_path=Path(os.getenv("TASKWEAVE_DB_PATH", ".taskweave/checkpoints.db")),
                slot=os.getenv("TASKWEAVE_CHECKPOINT_SLOT", "default"),
                sqlite_busy_timeout_ms=_env_int("TASKWEAVE_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            ),
            log_level=os.getenv("TASKWEAVE_LOG_LEVEL", "WARNING").strip().upper(),
        )

    def validate(self) -> None:
        """Raise configuration error on values the orchestrator cannot use."""

        template = self.worker.command_template
        if "{prompt}" not in template and "{prompt_file}" not in template:
            raise ValueError(
                "TASKWEAVE_WORKER_COMMAND_TEMPLATE must include {prompt} or {prompt_file}.",
            )
        if self.worker.timeout_seconds <= 0:
            raise ValueError("TASKWEAVE_WORKER_TIMEOUT_SECONDS must be > 0.")
        if self.worker.default_model and ModelPreference.parse(self.worker.default_model) is None:
            raise ValueError(
                "TASKWEAVE_DEFAULT_MODEL must look like 'provider/model': "
                f"{self.worker.default_model!r}",
            )
        if self.execution.max_in_flight < 0:
            raise ValueError("TASKWEAVE_MAX_IN_FLIGHT must be >= 0 (0 means unbounded).")
        if self.checkpoint.backend not in CHECKPOINT_BACKENDS:
            raise ValueError(
                f"Invalid TASKWEAVE_CHECKPOINT_BACKEND: {self.checkpoint.backend!r}. "
                f"Expected one of: {', '.join(CHECKPOINT_BACKENDS)}.",
            )
        if not self.checkpoint.slot.strip():
            raise ValueError("TASKWEAVE_CHECKPOINT_SLOT must not be empty.")
        if self.checkpoint.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASKWEAVE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid TASKWEAVE_LOG_LEVEL: {self.log_level!r}")

    @property
    def default_model(self) -> ModelPreference | None:
        return ModelPreference.parse(self.worker.default_model)

    @property
    def max_in_flight(self) -> int | None:
        return self.execution.max_in_flight or None


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
