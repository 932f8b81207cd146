"""Single-task execution on a fresh worker, and concurrent execution of a layer."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime

from taskweave.orchestrator.backend.base import WorkerBackend
from taskweave.orchestrator.models import ActiveWorker, Run, Task, utc_now

logger = logging.getLogger(__name__)

WORKER_ACQUISITION_FAILED = "worker acquisition failed"


class ActiveWorkerRegistry:
    """Workers currently executing a task, keyed by worker handle."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, ActiveWorker] = {}

    def register(self, worker_handle: str, task_id: str) -> None:
        with self._lock:
            self._entries[worker_handle] = ActiveWorker(
                worker_handle=worker_handle,
                task_id=task_id,
                started_at=self._clock(),
            )

    def release(self, worker_handle: str) -> None:
        with self._lock:
            self._entries.pop(worker_handle, None)

    def entries(self) -> list[ActiveWorker]:
        with self._lock:
            return list(self._entries.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def build_worker_instruction(task: Task, run: Run, position: int, total: int) -> str:
    """Instruction scoped to one task; other tasks of the run are never mentioned."""

    return (
        "# SINGLE TASK EXECUTION\n"
        "\n"
        f"## Your task (Task {position}/{total})\n"
        f"{task.content}\n"
        "\n"
        "## Project context (read-only)\n"
        f'"{run.original_goal}"\n'
        "\n"
        "## Rules\n"
        "1. Complete only the task described above.\n"
        "2. Do not work on other parts of the project or prepare for future work.\n"
        "3. Do not refactor or change code outside the scope of your task.\n"
        "4. Stop as soon as your task is complete.\n"
        "\n"
        "## Completion\n"
        "When done, output exactly:\n"
        "TASK_COMPLETE\n"
        "Summary: <1-2 sentences about what was done>\n"
        "Files: <files created or modified>\n"
    )


class TaskRunner:
    """Drives tasks through a worker backend and records their outcome in place."""

    def __init__(
        self,
        *,
        backend: WorkerBackend,
        registry: ActiveWorkerRegistry,
        max_in_flight: int | None = None,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.max_in_flight = max_in_flight if max_in_flight and max_in_flight > 0 else None

    def run(self, task: Task, run: Run, position: int, total: int) -> None:
        """Execute ``task``; failures end up in ``task.status``/``task.error``, never raised."""

        try:
            worker_handle = self.backend.acquire()
        except Exception as error:  # noqa: BLE001
            logger.warning("Worker acquisition failed for task %s: %s", task.task_id, error)
            worker_handle = None
        if not worker_handle:
            task.mark_failed(WORKER_ACQUISITION_FAILED)
            return

        task.mark_in_progress(worker_handle)
        self.registry.register(worker_handle, task.task_id)
        logger.info("Task %s (%d/%d) started on %s", task.task_id, position, total, worker_handle)
        try:
            self.backend.submit(
                worker_handle,
                build_worker_instruction(task, run, position, total),
                run.model_preference,
            )
        except Exception as error:  # noqa: BLE001
            task.mark_failed(str(error) or type(error).__name__)
            logger.warning("Task %s failed on %s: %s", task.task_id, worker_handle, task.error)
        else:
            task.mark_completed()
            logger.info("Task %s completed on %s", task.task_id, worker_handle)
        finally:
            self.registry.release(worker_handle)

    def run_many(self, tasks: Sequence[Task], run: Run, base_index: int, total: int) -> None:
        """Run ``tasks`` concurrently and return once every one of them finished."""

        if not tasks:
            return
        max_workers = len(tasks)
        if self.max_in_flight is not None:
            max_workers = min(max_workers, self.max_in_flight)

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="taskweave") as pool:
            futures = [
                pool.submit(self.run, task, run, base_index + offset + 1, total)
                for offset, task in enumerate(tasks)
            ]
            wait(futures)
        for future in futures:
            future.result()
