"""Partition tasks into ordered layers of mutually independent work."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from taskweave.orchestrator.models import Task

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LayerPlan:
    """Ordered layers plus the index of the fallback layer, if one was needed."""

    layers: list[list[Task]] = field(default_factory=list)
    fallback_layer_index: int | None = None

    @property
    def id_groups(self) -> list[list[str]]:
        return [[task.task_id for task in layer] for layer in self.layers]

    @property
    def parallel_task_count(self) -> int:
        return sum(len(layer) for layer in self.layers if len(layer) > 1)

    @property
    def bottleneck_count(self) -> int:
        return sum(1 for layer in self.layers if len(layer) == 1)


def build_layer_plan(tasks: Sequence[Task], satisfied: Iterable[str] = ()) -> LayerPlan:
    """Lay ``tasks`` out so each task's dependencies sit in earlier layers.

    ``satisfied`` holds ids that count as already done (tasks that reached a
    terminal state in an earlier pass). A task still marked in progress, as
    after resuming a checkpoint saved mid-run, is not satisfied: its
    dependents end up in the fallback layer. When no remaining task is ready, the
    graph is cyclic or references unknown ids; every remaining task then goes
    into one final fallback layer instead of stalling. Order inside a layer is
    the input order.
    """

    plan = LayerPlan()
    done = set(satisfied)
    remaining = list(tasks)
    max_iterations = len(tasks) + 1
    iterations = 0

    while remaining and iterations < max_iterations:
        iterations += 1
        layer = [task for task in remaining if all(dep in done for dep in task.dependencies)]
        if not layer:
            layer = list(remaining)
            plan.fallback_layer_index = len(plan.layers)
            logger.warning(
                "Unresolvable dependencies among %d tasks (%s); running them as one layer",
                len(layer),
                ", ".join(task.task_id for task in layer),
            )

        layer_ids = {task.task_id for task in layer}
        done.update(layer_ids)
        remaining = [task for task in remaining if task.task_id not in layer_ids]
        plan.layers.append(layer)

    return plan


def build_execution_layers(tasks: Sequence[Task], satisfied: Iterable[str] = ()) -> list[list[str]]:
    """Layer ids only; see :func:`build_layer_plan`."""

    return build_layer_plan(tasks, satisfied).id_groups
