from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from shipwright.tasks.manifest import Task, TaskOrigin

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class DecompositionPolicy:
    chunk_size: int = 4
    max_target_files: int = 6
    max_acceptance_criteria: int = 6
    max_body_chars: int = 6000


def _splittable(task: Task) -> bool:
    return len(task.target_files) >= 2 or len(task.acceptance_criteria) >= 2


def needs_decomposition(task: Task, policy: DecompositionPolicy) -> bool:
    oversized = (
        len(task.target_files) > policy.max_target_files
        or len(task.acceptance_criteria) > policy.max_acceptance_criteria
        or len(task.body) > policy.max_body_chars
    )
    if oversized and not _splittable(task):
        logger.warning(
            "task %s exceeds size limits but has nothing to slice; running it whole", task.id
        )
        return False
    return oversized


def _partition(items: list[str], parts: int, chunk_size: int) -> list[list[str]]:
    if not items:
        return [[] for _ in range(parts)]
    if math.ceil(len(items) / chunk_size) == parts:
        size = chunk_size
    else:
        size = math.ceil(len(items) / parts)
    return [items[index * size : (index + 1) * size] for index in range(parts)]


def decompose(task: Task, chunk_size: int) -> list[Task]:
    """Split ``task`` into at least two sequential slices ``<id>-S1..Sn``.

    Target files and acceptance criteria are cut into ``chunk_size`` chunks;
    slice 1 inherits the parent's dependencies and each later slice depends on
    the one before it. Test expectations go to the final slice.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    parts = max(
        math.ceil(len(task.target_files) / chunk_size),
        math.ceil(len(task.acceptance_criteria) / chunk_size),
        2,
    )
    file_chunks = _partition(task.target_files, parts, chunk_size)
    criteria_chunks = _partition(task.acceptance_criteria, parts, chunk_size)

    slices: list[Task] = []
    for index in range(parts):
        number = index + 1
        is_last = number == parts
        slices.append(
            Task(
                id=f"{task.id}-S{number}",
                title=f"{task.title} (part {number}/{parts})",
                priority=task.priority,
                complexity=task.complexity,
                milestone=task.milestone,
                description=task.description,
                target_files=file_chunks[index],
                acceptance_criteria=criteria_chunks[index],
                test_expectations=list(task.test_expectations) if is_last else [],
                dependencies=task.dependencies if number == 1 else f"{task.id}-S{number - 1}",
                implementation_notes=task.implementation_notes,
                origin=TaskOrigin.DECOMPOSED,
                parent_id=task.id,
            )
        )
    logger.info("decomposed task %s into %d slices", task.id, parts)
    return slices


def decompose_oversized(tasks: list[Task], policy: DecompositionPolicy) -> tuple[list[Task], int]:
    """Return the expanded task list and the number of tasks that were split."""
    expanded: list[Task] = []
    events = 0
    for task in tasks:
        if needs_decomposition(task, policy):
            expanded.extend(decompose(task, policy.chunk_size))
            events += 1
        else:
            expanded.append(task)
    return expanded, events
