import json
import subprocess
from pathlib import Path

import pytest

from shipwright.errors import RunStateError, VcsError
from shipwright.state import EnvelopeFile, GitWorkspace, RunState, RunStateStore
from shipwright.state.run_state import SCHEMA_VERSION, migrate_legacy


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _run_state(**overrides: object) -> RunState:
    values: dict[str, object] = {
        "run_id": "20260101T000000-abc123",
        "idea": "A habit tracker for teams",
        "template_repo": "acme/web-template",
    }
    values.update(overrides)
    return RunState(**values)  # type: ignore[arg-type]


def test_run_state_roundtrip(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path)
    run = _run_state(
        completed_phases=["0", "1", "2"],
        current_phase="2",
        last_completed_task=3,
        phase_costs_actual={"0": 0.25},
        completed_verification_stages=["10A"],
        quality_gate_attempts={"11": 1},
    )

    store.save(run)
    loaded = store.load()

    assert loaded == run
    envelope = json.loads((tmp_path / "state.json").read_text(encoding="utf-8"))
    assert envelope["schema_version"] == SCHEMA_VERSION
    assert envelope["revision"] == 1
    assert envelope["data"]["run_id"] == run.run_id


def test_every_save_increments_revision(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path)
    run = _run_state()

    store.save(run)
    run.mark_phase_complete("0")
    store.save(run)

    assert store.file.read()["revision"] == 2  # type: ignore[index]
    assert store.load().completed_phases == ["0"]


def test_mark_phase_complete_never_duplicates() -> None:
    run = _run_state()
    run.mark_phase_complete("0")
    run.mark_phase_complete("0")

    assert run.completed_phases == ["0"]
    assert run.current_phase == "0"


def test_legacy_bare_payload_is_migrated(tmp_path: Path) -> None:
    legacy = {
        "run_id": "legacy-run",
        "idea": "Old idea",
        "template_repo": "acme/web-template",
        "completed_phases": [0, 1, 3.5],
        "current_phase": 1,
        "total_cost_usd": 1.5,
        "phase_costs": {"0": 1.0, "1": 0.5},
        "phase10_completed_stages": ["10A"],
    }
    (tmp_path / "state.json").write_text(json.dumps(legacy), encoding="utf-8")

    run = RunStateStore(tmp_path).load()

    assert run.completed_phases == ["0", "1", "3.5"]
    assert run.current_phase == "1"
    assert run.total_actual_cost_usd == 1.5
    assert run.total_effective_cost_usd == 1.5
    assert run.phase_costs_actual == {"0": 1.0, "1": 0.5}
    assert run.phase_costs_effective == {"0": 1.0, "1": 0.5}
    assert run.completed_verification_stages == ["10A"]


def test_migrate_keeps_current_fields() -> None:
    migrated = migrate_legacy(
        {"total_actual_cost_usd": 2.0, "total_cost_usd": 9.0, "total_estimated_cost_usd": 1.0}
    )

    assert migrated["total_actual_cost_usd"] == 2.0
    assert migrated["total_effective_cost_usd"] == 3.0
    assert "total_cost_usd" not in migrated


def test_load_rejects_invalid_state(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path)
    store.save(_run_state(engine="gpt", template_repo="not-a-template"))

    with pytest.raises(RunStateError) as exc_info:
        store.load()

    message = str(exc_info.value)
    assert "engine" in message
    assert "template" in message


def test_load_missing_state_raises(tmp_path: Path) -> None:
    with pytest.raises(RunStateError, match="not found"):
        RunStateStore(tmp_path).load()


def test_corrupt_state_file_raises(tmp_path: Path) -> None:
    (tmp_path / "state.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(RunStateError, match="Corrupt"):
        RunStateStore(tmp_path).load()


def test_stale_lock_times_out(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    envelope = EnvelopeFile(tmp_path / "queue.json", schema_version=1)
    envelope.lock_file.write_text("999", encoding="utf-8")
    monkeypatch.setattr("shipwright.state.store.time.sleep", lambda _: None)

    with pytest.raises(RunStateError, match="lock"):
        with envelope._lock(timeout_seconds=0.0):
            pass


def test_write_leaves_no_temp_files(tmp_path: Path) -> None:
    envelope = EnvelopeFile(tmp_path / "queue.json", schema_version=1)
    envelope.write({"tasks": []})
    envelope.write({"tasks": [1]})

    assert sorted(path.name for path in tmp_path.iterdir()) == ["queue.json"]
    assert envelope.read()["data"] == {"tasks": [1]}  # type: ignore[index]


def test_git_workspace_commit_and_reset(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    vcs = GitWorkspace()
    base = vcs.head_revision(repo)

    assert vcs.commit(repo, "nothing") is False
    assert vcs.status(repo) == "clean"

    (repo / "feature.txt").write_text("feature\n", encoding="utf-8")
    assert vcs.has_uncommitted_changes(repo)
    assert vcs.dirty_paths(repo) == ["feature.txt"]
    assert vcs.commit(repo, "add feature") is True
    assert vcs.head_revision(repo) != base

    (repo / "scratch.txt").write_text("tmp\n", encoding="utf-8")
    vcs.reset_hard(repo, base)

    assert vcs.head_revision(repo) == base
    assert not (repo / "feature.txt").exists()
    assert not (repo / "scratch.txt").exists()
    assert not vcs.has_uncommitted_changes(repo)


def test_git_workspace_diff_summary(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    vcs = GitWorkspace()

    (repo / "seed.txt").write_text("seed\nmore\n", encoding="utf-8")

    assert "seed.txt" in vcs.diff_summary(repo)
    assert vcs.file_tree(repo) == ["seed.txt"]


def test_git_failure_raises_vcs_error(tmp_path: Path) -> None:
    with pytest.raises(VcsError):
        GitWorkspace().head_revision(tmp_path)
