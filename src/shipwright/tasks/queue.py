from __future__ import annotations

import hashlib
import json
import logging
import re
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from shipwright.errors import (
    ManifestParseError,
    QueueConsistencyError,
    RunStateError,
    TraceabilityError,
)
from shipwright.state.store import EnvelopeFile
from shipwright.tasks.manifest import Task, TaskOrigin, task_from_manifest_entry
from shipwright.textcontract import extract_section, extract_task_refs, task_ref_pattern

logger = logging.getLogger(__name__)

QUEUE_FILE = "task_queue.json"
QUEUE_SCHEMA_VERSION = 1
TRACEABILITY_SECTIONS = ("Routing Coverage Matrix", "Navigation Reachability Task Matrix")
FOLLOWUP_FENCE = re.compile(r"```follow-up-tasks[ \t]*\n(.*?)```", re.DOTALL | re.IGNORECASE)
FOLLOWUP_TAG = re.compile(
    r"<follow_up_tasks>\s*(.*?)\s*</follow_up_tasks>", re.DOTALL | re.IGNORECASE
)


def source_digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class TaskQueue:
    """Ordered, id-unique list of tasks for the implementation phase."""

    def __init__(self, tasks: list[Task], *, source_sha256: str = "") -> None:
        self._tasks: list[Task] = []
        self.source_sha256 = source_sha256
        seen: set[str] = set()
        for task in tasks:
            if task.id in seen:
                raise QueueConsistencyError(f"Duplicate task id in queue: {task.id}")
            seen.add(task.id)
            self._tasks.append(task)

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks)

    def __getitem__(self, index: int) -> Task:
        return self._tasks[index]

    def ids(self) -> list[str]:
        return [task.id for task in self._tasks]

    def index_of(self, task_id: str) -> int:
        for index, task in enumerate(self._tasks):
            if task.id == task_id:
                return index
        raise QueueConsistencyError(f"Task {task_id} is not in the queue.", task_id=task_id)

    def _followup_id(self, trigger_id: str) -> str:
        taken = set(self.ids())
        number = 1
        while f"{trigger_id}-F{number}" in taken:
            number += 1
        return f"{trigger_id}-F{number}"

    def insert_dynamic_followups(
        self, after_task_id: str, new_tasks: list[Task], *, limit: int
    ) -> list[Task]:
        """Splice follow-ups directly after ``after_task_id``.

        At most ``limit`` tasks are accepted. Each gets a fresh ``<trigger>-F<n>``
        id and depends on the trigger (first) or on the previous follow-up.
        """
        position = self.index_of(after_task_id)
        if limit <= 0 or not new_tasks:
            return []
        if len(new_tasks) > limit:
            logger.warning(
                "task %s proposed %d follow-ups; keeping the first %d",
                after_task_id,
                len(new_tasks),
                limit,
            )
        inserted: list[Task] = []
        previous = after_task_id
        for proposed in new_tasks[:limit]:
            task_id = self._followup_id(after_task_id)
            followup = Task(
                id=task_id,
                title=proposed.title,
                priority=proposed.priority,
                complexity=proposed.complexity,
                milestone=proposed.milestone,
                description=proposed.description,
                target_files=list(proposed.target_files),
                acceptance_criteria=list(proposed.acceptance_criteria),
                test_expectations=list(proposed.test_expectations),
                dependencies=previous,
                implementation_notes=proposed.implementation_notes,
                origin=TaskOrigin.DYNAMIC,
                parent_id=after_task_id,
            )
            self._tasks.insert(position + 1 + len(inserted), followup)
            inserted.append(followup)
            previous = task_id
        logger.info(
            "inserted %d follow-up task(s) after %s: %s",
            len(inserted),
            after_task_id,
            ", ".join(task.id for task in inserted),
        )
        return inserted

    def resolves(self, ref: str) -> bool:
        return any(task_id == ref or task_id.startswith(f"{ref}-S") for task_id in self.ids())

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_sha256": self.source_sha256,
            "tasks": [task.to_dict() for task in self._tasks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskQueue:
        tasks = data.get("tasks")
        if not isinstance(tasks, list):
            raise RunStateError('Persisted task queue has no "tasks" list.')
        try:
            loaded = [Task.from_dict(item) for item in tasks]
        except (KeyError, TypeError, ValueError) as exc:
            raise RunStateError(f"Persisted task queue has a malformed task: {exc}") from exc
        return cls(
            loaded,
            source_sha256=str(data.get("source_sha256") or ""),
        )


def parse_followups(output: str) -> list[Task]:
    """Read follow-up task proposals from an implementation agent's output.

    Malformed proposals are logged and dropped; they never fail the task that
    produced them.
    """
    proposals: list[Task] = []
    blocks = [match.group(1) for match in FOLLOWUP_FENCE.finditer(output)]
    blocks.extend(match.group(1) for match in FOLLOWUP_TAG.finditer(output))
    for raw in blocks:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("ignoring follow-up block that is not valid JSON: %s", exc)
            continue
        entries = payload.get("tasks") if isinstance(payload, dict) else payload
        if not isinstance(entries, list):
            logger.warning("ignoring follow-up block without a task list")
            continue
        for index, entry in enumerate(entries):
            try:
                proposals.append(task_from_manifest_entry(entry, index))
            except ManifestParseError as exc:
                logger.warning("ignoring malformed follow-up task: %s", exc)
    return proposals


def check_traceability(queue: TaskQueue, artifact_text: str) -> list[str]:
    """Return every task id the coverage matrices reference.

    Raises ``TraceabilityError`` when a reference matches neither a queued task
    nor a decomposition slice of one.
    """
    pattern = task_ref_pattern(queue.ids())
    refs: list[str] = []
    for heading in TRACEABILITY_SECTIONS:
        section = extract_section(artifact_text, heading)
        for ref in extract_task_refs(section, pattern):
            if ref not in refs:
                refs.append(ref)
    unresolved = [ref for ref in refs if not queue.resolves(ref)]
    if unresolved:
        raise TraceabilityError(
            "Coverage matrix references tasks missing from the queue: "
            f"{', '.join(unresolved)}. Re-run phase 8 to re-plan.",
            unresolved=unresolved,
        )
    return refs


def ensure_resumable(queue: TaskQueue, last_completed_task: int) -> None:
    if last_completed_task > len(queue):
        raise QueueConsistencyError(
            f"Run checkpoint says {last_completed_task} tasks are complete but the queue "
            f"holds only {len(queue)}. Rebuild the queue (re-run phase 8) before resuming.",
            phase_id="9",
        )


class TaskQueueStore:
    """Persists the queue under ``<run_dir>/task_queue.json``."""

    def __init__(self, run_dir: Path) -> None:
        self.file = EnvelopeFile(run_dir / QUEUE_FILE, schema_version=QUEUE_SCHEMA_VERSION)

    def exists(self) -> bool:
        return self.file.exists()

    def load(self, *, source_text: str | None = None) -> TaskQueue:
        envelope = self.file.read()
        if envelope is None:
            raise RunStateError(f"Task queue not found: {self.file.path}")
        data = envelope["data"]
        if not isinstance(data, dict):
            raise RunStateError(f"Task queue in {self.file.path} is not an object.")
        queue = TaskQueue.from_dict(data)
        if source_text is not None and queue.source_sha256 != source_digest(source_text):
            logger.warning(
                "task breakdown changed since the queue was built; "
                "continuing with the persisted queue in %s",
                self.file.path,
            )
        return queue

    def save(self, queue: TaskQueue) -> int:
        return self.file.write(queue.to_dict())
