from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from taskweave.orchestrator.checkpoint import (
    SNAPSHOT_FORMAT_VERSION,
    CheckpointError,
    FileCheckpointStore,
    decode_snapshot,
    encode_snapshot,
    restore_snapshot,
    take_snapshot,
)
from taskweave.orchestrator.models import ModelPreference, Run, Task, TaskStatus
from taskweave.orchestrator.storage import SqliteCheckpointStore

pytestmark = [
    allure.epic("Run Persistence"),
    allure.feature("Checkpoints"),
]

_SAVED_AT = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)


def _sample_run() -> Run:
    done = Task(task_id="a", content="create the schema", outputs=["schema.sql"])
    done.mark_in_progress("worker-a")
    done.mark_completed()
    broken = Task(task_id="b", content="use the schema", dependencies=["a"])
    broken.mark_in_progress("worker-b")
    broken.mark_failed("exit code 2")
    return Run(
        run_id="run_abc",
        original_goal="Persist things",
        tasks=[done, broken, Task(task_id="c", content="document", dependencies=["a", "b"])],
        created_at=datetime(2026, 3, 1, 9, 0, tzinfo=UTC),
        model_preference=ModelPreference("anthropic", "claude/sonnet"),
        is_running=False,
    )


def test_snapshot_round_trip_preserves_every_task_field() -> None:
    run = _sample_run()
    todos = [{"id": "t1", "content": "later", "status": "pending"}]

    decoded = decode_snapshot(encode_snapshot(take_snapshot(run, todos, now=_SAVED_AT)))

    assert restore_snapshot(decoded) == run
    assert decoded.observed_todos == todos
    assert decoded.saved_at == _SAVED_AT
    assert decoded.completed_count == 1


def test_snapshot_is_detached_from_the_live_run() -> None:
    run = _sample_run()
    snapshot = take_snapshot(run, [], now=_SAVED_AT)

    run.tasks[2].mark_in_progress("worker-c")

    assert snapshot.run is not None
    assert snapshot.run.tasks[2].status == TaskStatus.PENDING


def test_snapshot_without_run() -> None:
    decoded = decode_snapshot(encode_snapshot(take_snapshot(None, [], now=_SAVED_AT)))

    assert decoded.run is None
    assert decoded.completed_count == 0


def test_encoding_is_deterministic_json() -> None:
    payload = json.loads(encode_snapshot(take_snapshot(_sample_run(), [], now=_SAVED_AT)))

    assert payload["format_version"] == SNAPSHOT_FORMAT_VERSION
    assert payload["run"]["model_preference"] == {
        "provider_id": "anthropic",
        "model_id": "claude/sonnet",
    }
    assert payload["run"]["tasks"][1]["error"] == "exit code 2"


@pytest.mark.parametrize(
    "data",
    [
        b"\xff\xfe",
        b"[]",
        b'{"saved_at": 5}',
        b'{"saved_at": "2026-03-01T09:30:00+00:00", "run": {"run_id": "r"}}',
        b'{"saved_at": "2026-03-01T09:30:00+00:00", "observed_todos": "nope"}',
        (
            b'{"saved_at": "2026-03-01T09:30:00+00:00", "run": {"run_id": "r", '
            b'"original_goal": "g", "created_at": "2026-03-01T09:00:00+00:00", '
            b'"tasks": [{"task_id": "x", "content": "c", "status": "exploded"}]}}'
        ),
    ],
)
def test_decode_rejects_malformed_payloads(data: bytes) -> None:
    with pytest.raises(CheckpointError):
        decode_snapshot(data)


def test_file_store_replaces_content_atomically(tmp_path: Path) -> None:
    store = FileCheckpointStore(tmp_path / "nested" / "state.json")
    assert store.read() is None

    store.write(b"first")
    store.write(b"second")

    assert store.read() == b"second"
    assert not (tmp_path / "nested" / "state.json.tmp").exists()


def test_file_store_write_failure_raises_checkpoint_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", "utf-8")
    store = FileCheckpointStore(blocker / "state.json")

    with pytest.raises(CheckpointError):
        store.write(b"payload")


def test_sqlite_store_keeps_latest_payload_per_slot(tmp_path: Path) -> None:
    db_path = tmp_path / "checkpoints.db"
    primary = SqliteCheckpointStore(db_path)
    other = SqliteCheckpointStore(db_path, slot="other")
    primary.init_schema()
    other.init_schema()
    try:
        assert primary.read() is None
        primary.write(b"v1")
        primary.write(b"v2")
        other.write(b"x")

        assert primary.read() == b"v2"
        assert other.read() == b"x"
    finally:
        primary.close()
        other.close()


def test_sqlite_store_round_trips_a_snapshot(tmp_path: Path) -> None:
    store = SqliteCheckpointStore(tmp_path / "checkpoints.db")
    store.init_schema()
    try:
        store.write(encode_snapshot(take_snapshot(_sample_run(), [], now=_SAVED_AT)))
        data = store.read()
    finally:
        store.close()

    assert data is not None
    assert restore_snapshot(decode_snapshot(data)) == _sample_run()
