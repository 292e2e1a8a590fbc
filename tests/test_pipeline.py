import asyncio
import json
from pathlib import Path

import pytest

from shipwright.artifacts import required_sections
from shipwright.backends.base import AgentBackend, AgentOptions, AgentResult
from shipwright.bootstrap import BootstrapRequest, BootstrapResult
from shipwright.config import PipelineConfig
from shipwright.errors import PrerequisiteError
from shipwright.phases import PHASES, get_phase
from shipwright.pipeline import Pipeline, RunLog, RunOutcome
from shipwright.prompts import NOT_AVAILABLE, PromptLibrary
from shipwright.state.run_state import RunState, RunStateStore
from shipwright.verification.runner import (
    TestCheckResult,
    VerificationStage,
    WorkspaceTestResult,
)

FILLER = "The team reviewed this section and agreed on the details listed here. " * 3
MANIFEST = {
    "tasks": [
        {"id": "T-1", "title": "Scaffold screens", "targetFiles": ["src/app.tsx"]},
        {"id": "T-2", "title": "Wire navigation", "targetFiles": ["src/nav.tsx"]},
    ]
}
VERDICT_LINES = {
    "11": "**Reachability Verdict**: PASS",
    "12": "**Overall verdict**: PASS",
}


def _document(phase_id: str) -> str:
    parts = [f"# Phase {phase_id} Document", ""]
    for section in required_sections(phase_id):
        parts.extend([f"## {section}", "", FILLER.strip(), ""])
    if phase_id == "8":
        parts.extend(["```task-manifest", json.dumps(MANIFEST), "```", ""])
    if phase_id in VERDICT_LINES:
        parts.extend([VERDICT_LINES[phase_id], ""])
    parts.append(FILLER.strip())
    return "\n".join(parts)


class FakeVcs:
    def __init__(self) -> None:
        self.dirty = False
        self.revision = 0
        self.commits: list[str] = []

    def commit(self, workspace: Path, message: str) -> bool:
        if not self.dirty:
            return False
        self.dirty = False
        self.revision += 1
        self.commits.append(message)
        return True

    def has_uncommitted_changes(self, workspace: Path) -> bool:
        return self.dirty

    def head_revision(self, workspace: Path) -> str:
        return f"rev{self.revision}"

    def reset_hard(self, workspace: Path, revision: str) -> None:
        self.dirty = False
        self.revision = int(revision.removeprefix("rev"))

    def diff_summary(self, workspace: Path, base: str | None = None) -> str:
        return ""

    def status(self, workspace: Path) -> str:
        return "modified" if self.dirty else "clean"


class PhaseBackend(AgentBackend):
    """Answers artifact phases with a valid document and edits the tree for tasks."""

    name = "phase"

    def __init__(self, vcs: FakeVcs) -> None:
        self.vcs = vcs
        self.labels: list[str] = []
        self.prompts: dict[str, str] = {}

    async def invoke(self, prompt: str, options: AgentOptions) -> AgentResult:
        self.labels.append(options.label)
        self.prompts[options.label] = prompt
        if options.permissions == "read-write":
            self.vcs.dirty = True
            return AgentResult(output="done", cost_usd=0.01)
        return AgentResult(output=_document(options.label), cost_usd=0.01)


class PassingRunner:
    def __init__(self) -> None:
        self.stages: list[str] = []

    def run(self, workspace: Path, stage: VerificationStage) -> WorkspaceTestResult:
        self.stages.append(stage.id)
        return WorkspaceTestResult(
            checks=[TestCheckResult(name="tests", command="pnpm test", success=True)]
        )


class FakeBootstrapper:
    def __init__(self) -> None:
        self.requests: list[BootstrapRequest] = []

    def bootstrap(self, request: BootstrapRequest) -> BootstrapResult:
        self.requests.append(request)
        request.workspace.mkdir(parents=True)
        (request.workspace / "package.json").write_text('{"name": "app"}', encoding="utf-8")
        return BootstrapResult(
            workspace=request.workspace,
            repo_url=f"https://github.com/{request.owner}/{request.repo_name}",
        )


def _pipeline(
    tmp_path: Path,
    *,
    config: PipelineConfig | None = None,
    dry_run: bool = False,
    approve=None,
) -> tuple[Pipeline, PhaseBackend, FakeBootstrapper, PassingRunner]:
    vcs = FakeVcs()
    backend = PhaseBackend(vcs)
    bootstrapper = FakeBootstrapper()
    runner = PassingRunner()
    pipeline = Pipeline(
        config or PipelineConfig.default(),
        run_dir=tmp_path / "runs" / "r1",
        backend=backend,
        vcs=vcs,
        runner=runner,
        bootstrapper=bootstrapper,
        prompts=PromptLibrary(tmp_path / "prompts"),
        workspace_root=tmp_path / "workspaces",
        approve=approve,
        dry_run=dry_run,
    )
    return pipeline, backend, bootstrapper, runner


def _run_state() -> RunState:
    return RunState(
        run_id="r1",
        idea="A habit tracker for teams",
        template_repo="acme/web-template",
        repo_owner="acme",
    )


def test_full_run_walks_every_phase(tmp_path: Path) -> None:
    pipeline, backend, bootstrapper, runner = _pipeline(tmp_path)
    run = _run_state()

    result = asyncio.run(pipeline.run(run))

    all_ids = [phase.id for phase in PHASES]
    assert result.status is RunOutcome.COMPLETED
    assert result.phases_run == all_ids
    assert run.completed_phases == all_ids
    assert bootstrapper.requests[0].repo_name == "a-habit-tracker-for-teams"
    assert run.repo_url == "https://github.com/acme/a-habit-tracker-for-teams"
    assert run.last_completed_task == 2
    assert run.completed_verification_stages == ["10A", "10B"]
    assert runner.stages == ["10A", "10B"]
    assert "9-task-T-1" in backend.labels
    assert "9-task-T-2" in backend.labels

    run_dir = tmp_path / "runs" / "r1"
    assert RunStateStore(run_dir).load().completed_phases == all_ids
    for phase in PHASES:
        if phase.artifact:
            assert (run_dir / "artifacts" / phase.artifact).exists(), phase.id
    report = (run_dir / "report.md").read_text(encoding="utf-8")
    assert report.startswith("# Pipeline Run Report")
    assert "- Tasks Completed: 2" in report
    assert "## Cost" in report
    milestones = (run_dir / "logs" / "pipeline.log").read_text(encoding="utf-8")
    assert "Phase 12 (Audit) completed" in milestones


def test_later_prompts_embed_earlier_artifacts(tmp_path: Path) -> None:
    pipeline, backend, _, _ = _pipeline(tmp_path)
    run = _run_state()

    asyncio.run(pipeline.run(run))

    assert '<artifact phase="0">' in backend.prompts["1"]
    assert "A habit tracker for teams" in backend.prompts["0"]
    assert "### Task T-2: Wire navigation" in backend.prompts["9-task-T-2"]


def test_missing_prerequisites_fail_and_persist(tmp_path: Path) -> None:
    pipeline, backend, _, _ = _pipeline(tmp_path)
    run = _run_state()

    with pytest.raises(PrerequisiteError) as exc_info:
        asyncio.run(pipeline.run(run, from_phase="6"))

    assert exc_info.value.missing == ["0", "4", "5"]
    assert backend.labels == []
    run_dir = tmp_path / "runs" / "r1"
    assert RunStateStore(run_dir).load().completed_phases == []
    assert "FAILED phase 6 (Feasibility Review)" in (run_dir / "logs" / "pipeline.log").read_text(
        encoding="utf-8"
    )


def test_declined_approval_pauses_the_run(tmp_path: Path) -> None:
    config = PipelineConfig.default()
    config.workflow.interactive = True
    config.workflow.approval_phases = ["2"]
    asked: list[str] = []

    def approve(phase, run) -> bool:
        asked.append(phase.id)
        return False

    pipeline, backend, _, _ = _pipeline(tmp_path, config=config, approve=approve)
    run = _run_state()

    result = asyncio.run(pipeline.run(run))

    assert result.status is RunOutcome.PAUSED
    assert asked == ["2"]
    assert backend.labels == ["0", "1"]
    assert RunStateStore(tmp_path / "runs" / "r1").load().completed_phases == ["0", "1"]


def test_resume_continues_from_first_incomplete_phase(tmp_path: Path) -> None:
    config = PipelineConfig.default()
    config.workflow.interactive = True
    config.workflow.approval_phases = ["2"]
    pipeline, _, _, _ = _pipeline(tmp_path, config=config, approve=lambda phase, run: False)
    run = _run_state()
    asyncio.run(pipeline.run(run))

    resumed, backend, _, _ = _pipeline(tmp_path)
    stored = RunStateStore(tmp_path / "runs" / "r1").load()
    result = asyncio.run(resumed.run(stored))

    assert result.status is RunOutcome.COMPLETED
    assert backend.labels[0] == "2"
    assert "0" not in backend.labels


def test_dry_run_calls_no_agent_and_persists_nothing(tmp_path: Path) -> None:
    pipeline, backend, bootstrapper, runner = _pipeline(tmp_path, dry_run=True)
    run = _run_state()

    result = asyncio.run(pipeline.run(run))

    assert result.status is RunOutcome.DRY_RUN
    assert result.phases_run == [phase.id for phase in PHASES]
    assert backend.labels == []
    assert bootstrapper.requests == []
    assert runner.stages == []
    assert run.completed_phases == []
    assert not (tmp_path / "runs" / "r1" / "state.json").exists()
    assert not (tmp_path / "runs" / "r1" / "report.md").exists()


def test_replacements_before_bootstrap(tmp_path: Path) -> None:
    pipeline, _, _, _ = _pipeline(tmp_path)
    run = _run_state()
    pipeline.write_artifact(get_phase("0"), "# Idea\n\nDetails.")

    replacements = pipeline.build_replacements(run, get_phase("2"))

    assert replacements["IDEA"] == "A habit tracker for teams"
    assert replacements["ARTIFACT_00"] == '<artifact phase="0">\n# Idea\n\nDetails.\n\n</artifact>'
    assert replacements["ARTIFACT_01"] == NOT_AVAILABLE
    assert "ARTIFACT_02" not in replacements
    assert replacements["GIT_DIFF"] == "(no changes yet)"
    assert replacements["TEST_RESULTS"] == "(no tests run yet)"


def test_existing_workspace_is_reused(tmp_path: Path) -> None:
    pipeline, _, bootstrapper, _ = _pipeline(tmp_path)
    run = _run_state()
    workspace = tmp_path / "workspaces" / "a-habit-tracker-for-teams"
    workspace.mkdir(parents=True)

    pipeline._run_bootstrap(run, get_phase("5"))

    assert bootstrapper.requests == []
    assert run.workspace_path == str(workspace.resolve())
    baseline = tmp_path / "runs" / "r1" / "artifacts" / "03b_repo_baseline.md"
    assert baseline.read_text(encoding="utf-8").startswith("# Repo Baseline Summary")


def test_run_log_events_are_json_lines(tmp_path: Path) -> None:
    log = RunLog(tmp_path)
    log.event({"event": "retry", "attempt": 1})
    log.event({"event": "heartbeat"})

    lines = log.events_path.read_text(encoding="utf-8").splitlines()

    assert [json.loads(line)["event"] for line in lines] == ["retry", "heartbeat"]
    assert "at" in json.loads(lines[0])
