"""Worker backend implementations."""

from taskweave.orchestrator.backend.base import (
    WorkerAcquisitionError,
    WorkerBackend,
    WorkerExecutionError,
    WorkerOutcome,
)
from taskweave.orchestrator.backend.cli_backend import CliWorkerBackend

__all__ = [
    "CliWorkerBackend",
    "WorkerAcquisitionError",
    "WorkerBackend",
    "WorkerExecutionError",
    "WorkerOutcome",
]
