from pathlib import Path

import pytest

from shipwright.errors import QueueConsistencyError, RunStateError, TraceabilityError
from shipwright.tasks.manifest import Task, TaskOrigin
from shipwright.tasks.queue import (
    TaskQueue,
    TaskQueueStore,
    check_traceability,
    ensure_resumable,
    parse_followups,
    source_digest,
)


def _queue(*ids: str) -> TaskQueue:
    return TaskQueue([Task(id=task_id, title=f"Task {task_id}") for task_id in ids])


def test_duplicate_ids_are_rejected() -> None:
    with pytest.raises(QueueConsistencyError, match="Duplicate"):
        _queue("T-1", "T-1")


def test_followups_are_spliced_after_the_trigger() -> None:
    queue = _queue("T-1", "T-2", "T-3")
    proposals = [Task(id="x", title="Fix nav"), Task(id="y", title="Add test")]

    inserted = queue.insert_dynamic_followups("T-2", proposals, limit=3)

    assert queue.ids() == ["T-1", "T-2", "T-2-F1", "T-2-F2", "T-3"]
    assert [task.dependencies for task in inserted] == ["T-2", "T-2-F1"]
    assert all(task.origin is TaskOrigin.DYNAMIC for task in inserted)
    assert all(task.parent_id == "T-2" for task in inserted)
    assert inserted[0].title == "Fix nav"


def test_followup_limit_and_fresh_ids() -> None:
    queue = _queue("T-1")
    queue.insert_dynamic_followups("T-1", [Task(id="a", title="first")], limit=1)

    inserted = queue.insert_dynamic_followups(
        "T-1", [Task(id="b", title="second"), Task(id="c", title="third")], limit=1
    )

    assert [task.id for task in inserted] == ["T-1-F2"]
    assert queue.ids() == ["T-1", "T-1-F2", "T-1-F1"]
    assert queue.insert_dynamic_followups("T-1", [Task(id="d", title="x")], limit=0) == []


def test_followups_for_unknown_trigger_fail() -> None:
    with pytest.raises(QueueConsistencyError):
        _queue("T-1").insert_dynamic_followups("T-9", [Task(id="a", title="x")], limit=1)


def test_parse_followups_reads_fence_and_tag() -> None:
    output = (
        "Done.\n\n```follow-up-tasks\n"
        '{"tasks": [{"title": "Wire settings page", "targetFiles": ["src/settings.ts"]}]}\n'
        "```\n"
        '<follow_up_tasks>[{"title": "Add empty state"}]</follow_up_tasks>\n'
    )

    proposals = parse_followups(output)

    assert [task.title for task in proposals] == ["Wire settings page", "Add empty state"]
    assert proposals[0].target_files == ["src/settings.ts"]


def test_malformed_followups_are_dropped() -> None:
    output = (
        "```follow-up-tasks\n{oops}\n```\n"
        '<follow_up_tasks>{"tasks": [{"id": "no-title"}, {"title": "Valid"}]}</follow_up_tasks>\n'
        '<follow_up_tasks>{"nothing": 1}</follow_up_tasks>\n'
    )

    assert [task.title for task in parse_followups(output)] == ["Valid"]
    assert parse_followups("no proposals here") == []


def test_traceability_accepts_slices_of_referenced_tasks() -> None:
    queue = _queue("T-1", "T-2-S1", "T-2-S2")
    artifact = (
        "## 5. Routing Coverage Matrix\n\n| Route | Task |\n|---|---|\n"
        "| /home | T-1 |\n| /settings | T-2 |\n\n## Notes\n\nT-99 is out of scope.\n"
    )

    assert check_traceability(queue, artifact) == ["T-1", "T-2"]


def test_traceability_reports_unresolved_references() -> None:
    queue = _queue("T-1", "T-2")
    artifact = (
        "## Navigation Reachability Task Matrix\n\n"
        "| Screen | Task |\n|---|---|\n| Settings | T-4 |\n| Home | T-1 |\n"
    )

    with pytest.raises(TraceabilityError) as exc_info:
        check_traceability(queue, artifact)

    assert exc_info.value.unresolved == ["T-4"]
    assert exc_info.value.phase_id == "9"


def test_numeric_ids_are_only_recognised_after_the_word_task() -> None:
    queue = _queue("1", "2")
    artifact = "## Routing Coverage Matrix\n\n- /home: Task 1\n- 3 screens total\n- /x: Task 7\n"

    with pytest.raises(TraceabilityError) as exc_info:
        check_traceability(queue, artifact)

    assert exc_info.value.unresolved == ["7"]


def test_ensure_resumable_rejects_checkpoint_past_the_queue() -> None:
    queue = _queue("T-1", "T-2")
    ensure_resumable(queue, 2)

    with pytest.raises(QueueConsistencyError, match="only 2"):
        ensure_resumable(queue, 3)


def test_store_roundtrip(tmp_path: Path) -> None:
    store = TaskQueueStore(tmp_path)
    queue = TaskQueue(
        [Task(id="T-1", title="one", target_files=["a.ts"])], source_sha256=source_digest("plan")
    )
    queue.insert_dynamic_followups("T-1", [Task(id="x", title="more")], limit=1)

    assert not store.exists()
    store.save(queue)
    loaded = store.load(source_text="plan")

    assert loaded.ids() == ["T-1", "T-1-F1"]
    assert loaded[1].origin is TaskOrigin.DYNAMIC
    assert loaded.source_sha256 == queue.source_sha256


def test_store_warns_when_breakdown_changed(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    store = TaskQueueStore(tmp_path)
    store.save(TaskQueue([Task(id="T-1", title="one")], source_sha256=source_digest("old")))

    loaded = store.load(source_text="new")

    assert loaded.ids() == ["T-1"]
    assert "task breakdown changed" in caplog.text


def test_store_load_missing_or_malformed(tmp_path: Path) -> None:
    store = TaskQueueStore(tmp_path)
    with pytest.raises(RunStateError, match="not found"):
        store.load()

    store.file.write({"tasks": "nope"})
    with pytest.raises(RunStateError, match="tasks"):
        store.load()
