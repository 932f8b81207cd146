"""Worker backend interface consumed by the task runner and planner."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from taskweave.orchestrator.models import ModelPreference


class WorkerAcquisitionError(RuntimeError):
    """The backend could not provide a fresh worker."""


class WorkerExecutionError(RuntimeError):
    """A worker failed while executing an instruction."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class WorkerOutcome:
    """Everything the worker reported once its instruction finished."""

    worker_handle: str
    text: str
    exit_code: int = 0


class WorkerBackend(Protocol):
    """Creates isolated workers and runs one instruction on each."""

    def acquire(self) -> str:
        """Create a fresh worker and return its handle."""

    def submit(
        self,
        worker_handle: str,
        instruction: str,
        model: ModelPreference | None = None,
    ) -> WorkerOutcome:
        """Run ``instruction`` and block until the worker finished."""

    def describe(self, worker_handle: str) -> ModelPreference | None:
        """Best-effort model lookup; ``None`` when unknown or on any failure."""
