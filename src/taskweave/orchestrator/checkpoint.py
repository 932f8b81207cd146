"""Snapshot projection, JSON codec and the file checkpoint slot."""

from __future__ import annotations

import copy
import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from taskweave.orchestrator.models import (
    ModelPreference,
    Run,
    Snapshot,
    Task,
    TaskStatus,
    utc_now,
)

SNAPSHOT_FORMAT_VERSION = 1


class CheckpointError(RuntimeError):
    """Checkpoint slot could not be written, read or decoded."""


class CheckpointStore(Protocol):
    """A single named slot holding the latest encoded snapshot."""

    def write(self, payload: bytes) -> None:
        """Replace the slot content; raise :class:`CheckpointError` on failure."""

    def read(self) -> bytes | None:
        """Return the slot content, or ``None`` when nothing was saved yet."""


def take_snapshot(
    run: Run | None,
    observed_todos: list[dict[str, Any]],
    *,
    now: datetime | None = None,
) -> Snapshot:
    """Detached copy of ``run`` and the observed todos; counts are computed now."""

    run_copy = copy.deepcopy(run)
    return Snapshot(
        run=run_copy,
        observed_todos=copy.deepcopy(observed_todos),
        saved_at=now or utc_now(),
        completed_count=run_copy.counts().completed if run_copy is not None else 0,
    )


def restore_snapshot(snapshot: Snapshot) -> Run | None:
    """Embedded run as saved; statuses are not recomputed."""

    return snapshot.run


def encode_snapshot(snapshot: Snapshot) -> bytes:
    payload = {
        "format_version": SNAPSHOT_FORMAT_VERSION,
        "run": _run_to_dict(snapshot.run) if snapshot.run is not None else None,
        "observed_todos": snapshot.observed_todos,
        "saved_at": snapshot.saved_at.isoformat(),
        "completed_count": snapshot.completed_count,
    }
    return json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True).encode("utf-8")


def decode_snapshot(data: bytes) -> Snapshot:
    """Decode and validate a snapshot; any defect raises :class:`CheckpointError`."""

    try:
        raw = json.loads(data.decode("utf-8"))
        if not isinstance(raw, dict):
            raise TypeError("snapshot must be a JSON object")
        raw_run = raw.get("run")
        observed_todos = raw.get("observed_todos", [])
        if not isinstance(observed_todos, list) or not all(
            isinstance(item, dict) for item in observed_todos
        ):
            raise TypeError("snapshot.observed_todos must be an array of objects")
        completed_count = raw.get("completed_count", 0)
        if not isinstance(completed_count, int):
            raise TypeError("snapshot.completed_count must be an integer")
        return Snapshot(
            run=_run_from_dict(raw_run) if raw_run is not None else None,
            observed_todos=observed_todos,
            saved_at=_from_iso(_require_str(raw, "saved_at", "snapshot")),
            completed_count=completed_count,
        )
    except (UnicodeDecodeError, ValueError, TypeError, KeyError) as error:
        raise CheckpointError(f"Invalid checkpoint: {error}") from error


class FileCheckpointStore:
    """Checkpoint slot backed by one JSON file, replaced atomically."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def write(self, payload: bytes) -> None:
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(payload)
            os.replace(tmp_path, self.path)
        except OSError as error:
            raise CheckpointError(f"Failed to save state to {self.path}: {error}") from error

    def read(self) -> bytes | None:
        if not self.path.exists():
            return None
        try:
            return self.path.read_bytes()
        except OSError as error:
            raise CheckpointError(f"Failed to load state from {self.path}: {error}") from error


def _run_to_dict(run: Run) -> dict[str, Any]:
    model = run.model_preference
    return {
        "run_id": run.run_id,
        "original_goal": run.original_goal,
        "created_at": run.created_at.isoformat(),
        "model_preference": (
            {"provider_id": model.provider_id, "model_id": model.model_id} if model else None
        ),
        "is_running": run.is_running,
        "tasks": [
            {
                "task_id": task.task_id,
                "content": task.content,
                "status": task.status.value,
                "dependencies": list(task.dependencies),
                "worker_handle": task.worker_handle,
                "error": task.error,
                "outputs": list(task.outputs),
            }
            for task in run.tasks
        ],
    }


def _run_from_dict(raw: object) -> Run:
    if not isinstance(raw, dict):
        raise TypeError("snapshot.run must be an object")
    raw_tasks = raw.get("tasks", [])
    if not isinstance(raw_tasks, list):
        raise TypeError("run.tasks must be an array")
    raw_model = raw.get("model_preference")
    model: ModelPreference | None = None
    if raw_model is not None:
        if not isinstance(raw_model, dict):
            raise TypeError("run.model_preference must be an object")
        model = ModelPreference(
            provider_id=_require_str(raw_model, "provider_id", "run.model_preference"),
            model_id=_require_str(raw_model, "model_id", "run.model_preference"),
        )
    is_running = raw.get("is_running", False)
    if not isinstance(is_running, bool):
        raise TypeError("run.is_running must be a boolean")
    return Run(
        run_id=_require_str(raw, "run_id", "run"),
        original_goal=_require_str(raw, "original_goal", "run"),
        tasks=[_task_from_dict(item) for item in raw_tasks],
        created_at=_from_iso(_require_str(raw, "created_at", "run")),
        model_preference=model,
        is_running=is_running,
    )


def _task_from_dict(raw: object) -> Task:
    if not isinstance(raw, dict):
        raise TypeError("run.tasks entry must be an object")
    dependencies = raw.get("dependencies", [])
    outputs = raw.get("outputs", [])
    for name, value in (("dependencies", dependencies), ("outputs", outputs)):
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise TypeError(f"task.{name} must be an array of strings")
    optional: dict[str, str | None] = {}
    for name in ("worker_handle", "error"):
        value = raw.get(name)
        if value is not None and not isinstance(value, str):
            raise TypeError(f"task.{name} must be a string when provided")
        optional[name] = value
    return Task(
        task_id=_require_str(raw, "task_id", "task"),
        content=_require_str(raw, "content", "task"),
        status=TaskStatus(_require_str(raw, "status", "task")),
        dependencies=dependencies,
        outputs=outputs,
        **optional,
    )


def _require_str(raw: dict[str, Any], key: str, scope: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise TypeError(f"{scope}.{key} must be a string")
    return value


def _from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed
