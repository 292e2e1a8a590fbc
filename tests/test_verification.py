import asyncio
import subprocess
from pathlib import Path

import pytest

from shipwright.backends.base import AgentBackend, AgentOptions, AgentResult
from shipwright.config import VerificationConfig
from shipwright.costs import CostModel, CostTracker
from shipwright.errors import ConfigurationError, DirtyWorkspaceError, VerificationFailedError
from shipwright.state.git import GitWorkspace
from shipwright.state.run_state import RunState
from shipwright.verification.engine import (
    RESULTS_ARTIFACT,
    RepairBudget,
    VerificationEngine,
)
from shipwright.verification.failures import (
    FailureSignature,
    classify_failures,
    failure_delta,
    parse_output,
)
from shipwright.verification.runner import (
    CommandVerificationRunner,
    TestCheckResult,
    VerificationStage,
    WorkspaceTestResult,
)


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


class FakeVcs:
    def __init__(self) -> None:
        self.dirty = False
        self.revision = 0
        self.commits: list[str] = []
        self.resets: list[str] = []

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
        self.resets.append(revision)

    def diff_summary(self, workspace: Path, base: str | None = None) -> str:
        return ""

    def status(self, workspace: Path) -> str:
        return "modified" if self.dirty else "clean"


class ScriptedRunner:
    def __init__(self, results: dict[str, list[WorkspaceTestResult]]) -> None:
        self.results = {key: list(value) for key, value in results.items()}
        self.calls: list[str] = []

    def run(self, workspace: Path, stage: VerificationStage) -> WorkspaceTestResult:
        self.calls.append(stage.id)
        return self.results[stage.id].pop(0)


class EditingBackend(AgentBackend):
    name = "editing"

    def __init__(self, vcs: FakeVcs) -> None:
        self.vcs = vcs
        self.labels: list[str] = []
        self.prompts: list[str] = []

    async def invoke(self, prompt: str, options: AgentOptions) -> AgentResult:
        self.labels.append(options.label)
        self.prompts.append(prompt)
        self.vcs.dirty = True
        return AgentResult(output="fixed", cost_usd=0.1)


def _result(*failing_tests: str) -> WorkspaceTestResult:
    if not failing_tests:
        return WorkspaceTestResult(
            checks=[TestCheckResult(name="integration tests", command="pnpm test", success=True)]
        )
    output = "\n".join(
        f"FAILED tests/test_app.py::{name} - AssertionError" for name in failing_tests
    )
    return WorkspaceTestResult(
        checks=[
            TestCheckResult(
                name="integration tests", command="pnpm test", success=False, output=output
            )
        ]
    )


def _engine(
    tmp_path: Path,
    results: dict[str, list[WorkspaceTestResult]],
    config: VerificationConfig | None = None,
) -> tuple[VerificationEngine, RunState, FakeVcs, ScriptedRunner, EditingBackend]:
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    vcs = FakeVcs()
    runner = ScriptedRunner(results)
    backend = EditingBackend(vcs)
    run = RunState(
        run_id="r1", idea="idea", template_repo="acme/web-template", workspace_path=str(workspace)
    )
    engine = VerificationEngine(
        backend,
        vcs,
        runner,
        CostTracker(CostModel(), None),
        config or VerificationConfig(),
        run_dir=tmp_path / "run",
        artifacts_dir=tmp_path / "run" / "artifacts",
        persist=lambda state: None,
    )
    return engine, run, vcs, runner, backend


def test_parse_typescript_eslint_and_test_runner_output() -> None:
    output = "\n".join(
        [
            "src/a.ts(3,5): error TS2322: Type 'string' is not assignable.",
            "src/b.ts:10:2 - error TS2304: Cannot find name 'foo'.",
            "/repo/src/c.ts",
            "  3:10  error  'x' is defined but never used  @typescript-eslint/no-unused-vars",
            "FAIL src/app.test.ts",
            "  ● App › renders title",
            "  1) [chromium] › tests/home.spec.ts:12:5 › home › shows hero (1.2s)",
            "FAILED tests/test_api.py::test_login - AssertionError",
        ]
    )

    signatures = parse_output("checks", output)

    assert signatures == {
        FailureSignature("checks", "src/a.ts", "TS2322: Type 'string' is not assignable."),
        FailureSignature("checks", "src/b.ts", "TS2304: Cannot find name 'foo'."),
        FailureSignature(
            "checks",
            "/repo/src/c.ts",
            "@typescript-eslint/no-unused-vars: 'x' is defined but never used",
        ),
        FailureSignature("checks", "src/app.test.ts", "App › renders title"),
        FailureSignature("checks", "tests/home.spec.ts", "home › shows hero"),
        FailureSignature("checks", "tests/test_api.py", "test_login"),
    }


def test_volatile_detail_does_not_change_signatures() -> None:
    first = parse_output("e2e", "  1) tests/home.spec.ts:12:5 › shows hero (1.2s)")
    second = parse_output("e2e", "  2) \x1b[31mtests/home.spec.ts:14:9 › shows hero (3.4s)\x1b[0m")

    assert first == second


def test_unparseable_failure_still_counts() -> None:
    result = WorkspaceTestResult(
        checks=[
            TestCheckResult(name="build", command="pnpm build", success=False, output="boom"),
            TestCheckResult(name="lint", command="pnpm lint", success=True, output="FAILED x.py"),
        ]
    )

    assert classify_failures(result) == frozenset({FailureSignature("build", "", "build failed")})


def test_failure_delta_partitions_signatures() -> None:
    a, b, c = (FailureSignature("t", "f", name) for name in "abc")

    delta = failure_delta(frozenset({a, b}), frozenset({b, c}))

    assert delta.resolved == {a}
    assert delta.introduced == {c}
    assert delta.remaining == {b}
    assert "Newly introduced (1):" in delta.summary()


def test_repair_budget_extends_once_on_strict_decrease() -> None:
    budget = RepairBudget(2, 3)

    assert not budget.observe(1, 5, 3)
    assert not budget.observe(2, 3, 3)
    assert budget.observe(2, 3, 2)
    assert budget.cap == 3
    assert not budget.observe(3, 2, 1)
    assert not budget.allows(4)


def test_repair_budget_never_passes_hard_cap() -> None:
    budget = RepairBudget(3, 3)

    assert not budget.observe(3, 4, 1)
    assert budget.cap == 3


def test_all_stages_pass_without_repairs(tmp_path: Path) -> None:
    engine, run, vcs, runner, backend = _engine(tmp_path, {"10A": [_result()], "10B": [_result()]})

    outcomes = asyncio.run(engine.run(run))

    assert [outcome.passed for outcome in outcomes] == [True, True]
    assert run.completed_verification_stages == ["10A", "10B"]
    assert backend.labels == []
    results = (tmp_path / "run" / "artifacts" / RESULTS_ARTIFACT).read_text(encoding="utf-8")
    assert results.startswith("# Test & Verification Results")
    assert "## Stage 10A: Integration" in results
    assert "## Stage 10B: End-to-End" in results


def test_dirty_workspace_blocks_the_stage(tmp_path: Path) -> None:
    engine, run, vcs, runner, backend = _engine(tmp_path, {"10A": [_result()], "10B": [_result()]})
    vcs.dirty = True

    with pytest.raises(DirtyWorkspaceError):
        asyncio.run(engine.run(run))

    assert runner.calls == []
    assert vcs.commits == []
    assert vcs.dirty
    assert run.completed_verification_stages == []


def test_uncommitted_edit_is_never_committed_by_a_stage(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    _init_git_repo(workspace)
    (workspace / "unverified_fix.py").write_text("x = 1\n", encoding="utf-8")
    run = RunState(
        run_id="r1", idea="idea", template_repo="acme/web-template", workspace_path=str(workspace)
    )
    vcs = GitWorkspace()
    engine = VerificationEngine(
        EditingBackend(FakeVcs()),
        vcs,
        ScriptedRunner({"10A": [_result()], "10B": [_result()]}),
        CostTracker(CostModel(), None),
        VerificationConfig(),
        run_dir=tmp_path / "run",
        artifacts_dir=tmp_path / "run" / "artifacts",
        persist=lambda state: None,
    )

    with pytest.raises(DirtyWorkspaceError):
        asyncio.run(engine.run(run))

    log = subprocess.run(
        ["git", "log", "--format=%s"], cwd=workspace, check=True, text=True, capture_output=True
    )
    assert log.stdout.splitlines() == ["seed"]
    assert vcs.has_uncommitted_changes(workspace)


def test_repair_is_verified_then_committed(tmp_path: Path) -> None:
    engine, run, vcs, _, backend = _engine(
        tmp_path, {"10A": [_result("test_login"), _result()], "10B": [_result()]}
    )

    outcomes = asyncio.run(engine.run(run))

    assert backend.labels == ["10A-repair-1"]
    assert "integration tests" in backend.prompts[0]
    assert vcs.commits == ["Phase 10 - 10A repair attempt 1"]
    assert outcomes[0].attempts[0].committed
    assert outcomes[0].attempts[0].failures_after == 0
    assert run.phase_costs_actual == {"10": pytest.approx(0.1)}
    report = engine.stage_report_path(outcomes[0].stage).read_text(encoding="utf-8")
    assert "## Repair Attempt 1 Verification" in report


def test_regressing_repair_is_rolled_back_and_blocks(tmp_path: Path) -> None:
    engine, run, vcs, runner, _ = _engine(
        tmp_path,
        {"10A": [_result("test_login"), _result("test_signup")], "10B": [_result()]},
    )

    with pytest.raises(VerificationFailedError) as exc_info:
        asyncio.run(engine.run(run))

    assert exc_info.value.blocked
    assert exc_info.value.stage_id == "10A"
    assert vcs.resets == ["rev0"]
    assert vcs.commits == []
    assert not vcs.dirty
    assert run.completed_verification_stages == []
    assert runner.calls == ["10A", "10A"]


def test_converging_failures_earn_one_extra_attempt(tmp_path: Path) -> None:
    engine, run, _, _, backend = _engine(
        tmp_path,
        {
            "10A": [
                _result("a", "b", "c"),
                _result("a", "b"),
                _result("a"),
                _result(),
            ],
            "10B": [_result()],
        },
    )

    outcomes = asyncio.run(engine.run(run))

    assert backend.labels == ["10A-repair-1", "10A-repair-2", "10A-repair-3"]
    assert outcomes[0].attempt_cap == 3
    assert outcomes[0].passed


def test_flat_failures_stop_at_the_default_cap(tmp_path: Path) -> None:
    engine, run, _, runner, backend = _engine(
        tmp_path, {"10A": [_result("a"), _result("a"), _result("a")], "10B": [_result()]}
    )

    with pytest.raises(VerificationFailedError) as exc_info:
        asyncio.run(engine.run(run))

    assert not exc_info.value.blocked
    assert exc_info.value.checks == ["integration tests"]
    assert len(backend.labels) == 2
    assert runner.calls == ["10A", "10A", "10A"]


def test_completed_stage_is_skipped_on_resume(tmp_path: Path) -> None:
    engine, run, _, runner, _ = _engine(tmp_path, {"10B": [_result()]})
    run.completed_verification_stages = ["10A"]

    outcomes = asyncio.run(engine.run(run))

    assert outcomes[0].skipped
    assert runner.calls == ["10B"]


def test_verify_workspace_runs_every_stage_once(tmp_path: Path) -> None:
    engine, run, _, runner, _ = _engine(
        tmp_path, {"10A": [_result()], "10B": [_result("test_home")]}
    )

    combined = engine.verify_workspace(tmp_path / "workspace")

    assert [check.name for check in combined.checks] == [
        "10A integration tests",
        "10B integration tests",
    ]
    assert not combined.all_passed
    assert run.completed_verification_stages == []


def test_command_runner_records_failures_and_missing_binaries(tmp_path: Path) -> None:
    config = VerificationConfig(
        install_command="",
        typecheck_command="true",
        lint_command="false",
        build_command="",
        integration_command="shipwright-missing-binary --run",
    )
    runner = CommandVerificationRunner(config)
    stage = VerificationStage("10A", "Integration", "integration", 30.0)

    result = runner.run(tmp_path, stage)

    assert [check.name for check in result.checks] == ["typecheck", "lint", "integration tests"]
    assert [check.success for check in result.checks] == [True, False, False]
    assert "Command not found" in result.checks[2].output


def test_unparseable_command_is_a_configuration_error(tmp_path: Path) -> None:
    runner = CommandVerificationRunner(
        VerificationConfig(install_command="", typecheck_command="echo 'unterminated")
    )

    with pytest.raises(ConfigurationError):
        runner.run(tmp_path, VerificationStage("10A", "Integration", "integration", 30.0))
