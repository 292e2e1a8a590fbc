from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from shipwright.errors import ManifestMissingError, ManifestParseError

logger = logging.getLogger(__name__)

TASK_MANIFEST_FENCE = re.compile(r"```task-manifest[ \t]*\n(.*?)```", re.DOTALL | re.IGNORECASE)
JSON_FENCE = re.compile(r"```json[ \t]*\n(.*?)```", re.DOTALL | re.IGNORECASE)
MANIFEST_TAG = re.compile(r"<task_manifest>\s*(.*?)\s*</task_manifest>", re.DOTALL | re.IGNORECASE)
TASK_HEADING = re.compile(r"^###\s+Task\b", re.IGNORECASE)


class TaskOrigin(str, Enum):
    MANIFEST = "manifest"
    DECOMPOSED = "decomposed"
    DYNAMIC = "dynamic"


@dataclass(slots=True)
class Task:
    id: str
    title: str
    body: str = ""
    priority: str = ""
    complexity: str = ""
    milestone: str = ""
    description: str = ""
    target_files: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    test_expectations: list[str] = field(default_factory=list)
    dependencies: str = ""
    implementation_notes: str = ""
    origin: TaskOrigin = TaskOrigin.MANIFEST
    parent_id: str | None = None

    def __post_init__(self) -> None:
        if not self.body:
            self.body = render_task_body(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "priority": self.priority,
            "complexity": self.complexity,
            "milestone": self.milestone,
            "description": self.description,
            "target_files": list(self.target_files),
            "acceptance_criteria": list(self.acceptance_criteria),
            "test_expectations": list(self.test_expectations),
            "dependencies": self.dependencies,
            "implementation_notes": self.implementation_notes,
            "origin": self.origin.value,
            "parent_id": self.parent_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            id=str(data["id"]),
            title=str(data["title"]),
            body=str(data.get("body") or ""),
            priority=str(data.get("priority") or ""),
            complexity=str(data.get("complexity") or ""),
            milestone=str(data.get("milestone") or ""),
            description=str(data.get("description") or ""),
            target_files=[str(item) for item in data.get("target_files") or []],
            acceptance_criteria=[str(item) for item in data.get("acceptance_criteria") or []],
            test_expectations=[str(item) for item in data.get("test_expectations") or []],
            dependencies=str(data.get("dependencies") or ""),
            implementation_notes=str(data.get("implementation_notes") or ""),
            origin=TaskOrigin(data.get("origin") or TaskOrigin.MANIFEST.value),
            parent_id=data.get("parent_id"),
        )


def render_task_body(task: Task) -> str:
    lines = [f"### Task {task.id}: {task.title}", ""]
    for label, value in (
        ("Priority", task.priority),
        ("Complexity", task.complexity),
        ("Milestone", task.milestone),
    ):
        if value:
            lines.append(f"**{label}**: {value}")
    if lines[-1] != "":
        lines.append("")

    def _block(label: str, text: str) -> None:
        if text.strip():
            lines.extend([f"**{label}**:", text.strip(), ""])

    def _items(label: str, items: list[str], bullet: str = "- ") -> None:
        if items:
            lines.append(f"**{label}**:")
            lines.extend(f"{bullet}{item}" for item in items)
            lines.append("")

    _block("Description", task.description)
    _items("Target Files", task.target_files)
    _items("Acceptance Criteria", task.acceptance_criteria, "- [ ] ")
    _items("Test Expectations", task.test_expectations)
    _block("Dependencies", task.dependencies)
    _block("Implementation Notes", task.implementation_notes)
    return "\n".join(lines).strip()


def _pick(entry: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in entry and entry[key] is not None:
            return entry[key]
    return None


def _string_list(value: Any, label: str, task_id: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ManifestParseError(f"Task {task_id}: '{label}' must be a list.")
    return [str(item).strip() for item in value if str(item).strip()]


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return ", ".join(str(item).strip() for item in value if str(item).strip())
    return str(value).strip()


def task_from_manifest_entry(entry: Any, index: int) -> Task:
    if not isinstance(entry, dict):
        raise ManifestParseError(f"Manifest entry {index + 1} is not an object.")
    title = _text(entry.get("title"))
    if not title:
        raise ManifestParseError(f"Manifest entry {index + 1} has no title.")
    task_id = _text(entry.get("id")) or str(index + 1)
    task = Task(
        id=task_id,
        title=title,
        priority=_text(entry.get("priority")),
        complexity=_text(entry.get("complexity")),
        milestone=_text(entry.get("milestone")),
        description=_text(entry.get("description")),
        target_files=_string_list(
            _pick(entry, "targetFiles", "target_files"), "targetFiles", task_id
        ),
        acceptance_criteria=_string_list(
            _pick(entry, "acceptanceCriteria", "acceptance_criteria"),
            "acceptanceCriteria",
            task_id,
        ),
        test_expectations=_string_list(
            _pick(entry, "testExpectations", "test_expectations"), "testExpectations", task_id
        ),
        dependencies=_text(entry.get("dependencies")),
        implementation_notes=_text(_pick(entry, "implementationNotes", "implementation_notes")),
    )
    markdown = _text(entry.get("markdown"))
    if markdown:
        task.body = (
            markdown if TASK_HEADING.match(markdown) else f"### Task {task_id}: {title}\n\n{markdown}"
        )
    return task


def _manifest_blocks(text: str) -> list[tuple[str, str]]:
    blocks = [("task-manifest", match.group(1)) for match in TASK_MANIFEST_FENCE.finditer(text)]
    blocks.extend(
        ("json", match.group(1))
        for match in JSON_FENCE.finditer(text)
        if '"tasks"' in match.group(1)
    )
    blocks.extend(("task_manifest", match.group(1)) for match in MANIFEST_TAG.finditer(text))
    return blocks


def has_manifest_block(text: str) -> bool:
    return bool(_manifest_blocks(text))


def parse_manifest(text: str) -> list[Task]:
    """Parse every manifest block in a planning artifact into ordered tasks."""
    blocks = _manifest_blocks(text)
    if not blocks:
        raise ManifestMissingError(
            "Task breakdown has no machine-readable manifest block "
            "(```task-manifest, ```json with \"tasks\", or <task_manifest>). "
            "Re-run phase 8.",
            phase_id="8",
        )
    tasks: list[Task] = []
    for kind, raw in blocks:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ManifestParseError(
                f"Manifest block ({kind}) is not valid JSON: {exc}", phase_id="8"
            ) from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("tasks"), list):
            raise ManifestParseError(
                f'Manifest block ({kind}) must be an object with a "tasks" list.', phase_id="8"
            )
        offset = len(tasks)
        tasks.extend(
            task_from_manifest_entry(entry, offset + index)
            for index, entry in enumerate(payload["tasks"])
        )
    if not tasks:
        raise ManifestParseError("Manifest blocks contain no tasks.", phase_id="8")
    seen: set[str] = set()
    duplicates: set[str] = set()
    for task in tasks:
        if task.id in seen:
            duplicates.add(task.id)
        seen.add(task.id)
    if duplicates:
        raise ManifestParseError(
            f"Manifest contains duplicate task ids: {', '.join(sorted(duplicates))}", phase_id="8"
        )
    logger.info("parsed %d tasks from %d manifest block(s)", len(tasks), len(blocks))
    return tasks
