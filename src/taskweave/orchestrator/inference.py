"""Heuristic dependency inference from task descriptions.

Each task is scanned for phrases that suggest it *produces* something
("create the schema") and phrases that suggest it *consumes* something
("use the schema"). A task depends on every other task that produces a token
it consumes. This is a lossy text heuristic, not a parser: tasks with no
recognizable phrase come out independent.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Protocol

_PRODUCES_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(rf"\b{verb}\s+(?:the\s+)?(\w+)", re.IGNORECASE)
    for verb in ("create", "implement", "build", "setup", "initialize", "add", "write")
)
_CONSUMES_PATTERNS: tuple[re.Pattern[str], ...] = (
    *(
        re.compile(rf"\b{verb}\s+(?:the\s+)?(\w+)", re.IGNORECASE)
        for verb in ("use", "with", "using", "integrate", "test", "update")
    ),
    re.compile(r"\bconnect\s+(?:to\s+)?(?:the\s+)?(\w+)", re.IGNORECASE),
)


class DescribedTask(Protocol):
    task_id: str
    content: str


class DependencyInferenceStrategy(Protocol):
    """Derives dependency ids for tasks that were submitted without any."""

    def infer(self, tasks: Sequence[DescribedTask]) -> dict[str, list[str]]:
        """Return task id -> ordered, duplicate-free dependency ids."""


class LexicalDependencyInferencer:
    """Verb/object pattern matching over task content."""

    def infer(self, tasks: Sequence[DescribedTask]) -> dict[str, list[str]]:
        outputs = {task.task_id: extract_tokens(task.content, _PRODUCES_PATTERNS) for task in tasks}

        dependency_map: dict[str, list[str]] = {}
        for task in tasks:
            inputs = extract_tokens(task.content, _CONSUMES_PATTERNS)
            dependencies: list[str] = []
            if inputs:
                for other in tasks:
                    if other.task_id == task.task_id or other.task_id in dependencies:
                        continue
                    if inputs & outputs[other.task_id]:
                        dependencies.append(other.task_id)
            dependency_map[task.task_id] = dependencies
        return dependency_map


class ExplicitOnlyInferencer:
    """Strict mode: never invents edges."""

    def infer(self, tasks: Sequence[DescribedTask]) -> dict[str, list[str]]:
        return {task.task_id: [] for task in tasks}


def extract_tokens(content: object, patterns: Sequence[re.Pattern[str]]) -> set[str]:
    """Collect lowercased objects captured by ``patterns`` in ``content``."""

    if not isinstance(content, str) or not content:
        return set()
    tokens: set[str] = set()
    for pattern in patterns:
        for match in pattern.finditer(content):
            token = match.group(1)
            if token:
                tokens.add(token.lower())
    return tokens
