from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from shipwright.backends.base import AgentBackend, AgentOptions
from shipwright.config import VerificationConfig
from shipwright.costs import CostTracker
from shipwright.errors import ConfigurationError, DirtyWorkspaceError, VerificationFailedError
from shipwright.prompts import NOT_AVAILABLE, build_test_repair_prompt
from shipwright.state.git import VersionControl
from shipwright.state.run_state import RunState
from shipwright.verification.failures import (
    FailureDelta,
    FailureSignature,
    classify_failures,
    failure_delta,
)
from shipwright.verification.runner import (
    TestCheckResult,
    VerificationRunner,
    VerificationStage,
    WorkspaceTestResult,
    default_stages,
)

logger = logging.getLogger(__name__)

PHASE_ID = "10"
RESULTS_ARTIFACT = "07b_test_results.md"
REPAIR_CONTEXT_ARTIFACTS = {
    "prd": "03_prd.md",
    "tech_spec": "05_tech_spec.md",
    "task_breakdown": "06_task_breakdown.md",
}


class RepairBudget:
    """Attempt ceiling for one stage.

    Starts at ``default``. When the last allowed attempt still fails but left
    strictly fewer distinct failures than the attempt before it, the ceiling
    grows by one, once, and never past ``hard_cap``. This is a convergence
    heuristic; an equal count does not extend.
    """

    def __init__(self, default: int, hard_cap: int) -> None:
        self.cap = default
        self.hard_cap = hard_cap
        self.extended = False

    def allows(self, attempt: int) -> bool:
        return attempt <= self.cap

    def observe(self, attempt: int, previous_count: int, current_count: int) -> bool:
        if (
            attempt == self.cap
            and not self.extended
            and current_count < previous_count
            and self.cap < self.hard_cap
        ):
            self.cap += 1
            self.extended = True
            logger.info(
                "failures fell from %d to %d; allowing one more repair attempt (cap %d)",
                previous_count,
                current_count,
                self.cap,
            )
            return True
        return False


@dataclass(slots=True)
class RepairAttempt:
    number: int
    pre_revision: str
    failures_before: int
    failures_after: int
    delta: FailureDelta
    committed: bool = False
    blocked: bool = False


@dataclass(slots=True)
class StageOutcome:
    stage: VerificationStage
    passed: bool
    skipped: bool = False
    blocked: bool = False
    attempt_cap: int = 0
    baseline: frozenset[FailureSignature] = frozenset()
    final: WorkspaceTestResult | None = None
    attempts: list[RepairAttempt] = field(default_factory=list)


def render_result_block(title: str, result: WorkspaceTestResult) -> str:
    failed = result.failed_checks
    lines = [
        f"## {title}",
        "",
        f"- Overall Result: {'PASS' if result.all_passed else 'FAIL'}",
        f"- Passed Checks: {len(result.checks) - len(failed)}/{len(result.checks)}",
    ]
    if failed:
        lines.append(f"- Failed Checks: {', '.join(check.name for check in failed)}")
    lines.extend(["", result.report()])
    return "\n".join(lines).strip()


def render_stage_report(
    stage: VerificationStage, blocks: Sequence[tuple[str, WorkspaceTestResult]]
) -> str:
    parts = [f"# Stage {stage.id}: {stage.name}", ""]
    for index, (title, result) in enumerate(blocks):
        parts.extend([render_result_block(title, result), ""])
        if index < len(blocks) - 1:
            parts.extend(["---", ""])
    return "\n".join(parts).strip() + "\n"


class VerificationEngine:
    """Runs verification stages in order and repairs failures with the agent.

    A repair is verified before it is committed. If the post-repair run shows a
    failure signature the attempt did not start with, the uncommitted repair is
    discarded by resetting to the attempt's starting revision and the stage
    stops as blocked.
    """

    def __init__(
        self,
        backend: AgentBackend,
        vcs: VersionControl,
        runner: VerificationRunner,
        costs: CostTracker,
        config: VerificationConfig,
        *,
        run_dir: Path,
        artifacts_dir: Path,
        persist: Callable[[RunState], None],
        stages: Sequence[VerificationStage] | None = None,
        timeout_seconds: float | None = None,
        max_turns: int = 20,
    ) -> None:
        self.backend = backend
        self.vcs = vcs
        self.runner = runner
        self.costs = costs
        self.config = config
        self.run_dir = run_dir
        self.artifacts_dir = artifacts_dir
        self._persist = persist
        self.stages = tuple(stages) if stages is not None else default_stages(config)
        self.timeout_seconds = timeout_seconds
        self.max_turns = max_turns

    @property
    def reports_dir(self) -> Path:
        return self.run_dir / "reports"

    def stage_report_path(self, stage: VerificationStage) -> Path:
        return self.reports_dir / f"verification-{stage.id}.md"

    def _workspace(self, run: RunState) -> Path:
        workspace = run.workspace
        if workspace is None or not workspace.exists():
            raise ConfigurationError(
                "Workspace not found for test verification.", phase_id=PHASE_ID
            )
        return workspace

    def _read_artifact(self, name: str) -> str:
        path = self.artifacts_dir / name
        if not path.exists():
            return NOT_AVAILABLE
        return path.read_text(encoding="utf-8")

    def _write_stage_report(
        self, stage: VerificationStage, blocks: Sequence[tuple[str, WorkspaceTestResult]]
    ) -> None:
        self.reports_dir.mkdir(parents=True, exist_ok=True)
        self.stage_report_path(stage).write_text(
            render_stage_report(stage, blocks), encoding="utf-8"
        )

    def write_results_artifact(self) -> Path:
        parts = ["# Test & Verification Results", ""]
        for stage in self.stages:
            path = self.stage_report_path(stage)
            if path.exists():
                # Demote one level so each stage nests under the document title.
                body = path.read_text(encoding="utf-8").strip()
                body = body.replace("# Stage", "## Stage", 1).replace("\n## ", "\n### ")
                parts.extend([body, ""])
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        target = self.artifacts_dir / RESULTS_ARTIFACT
        target.write_text("\n".join(parts).strip() + "\n", encoding="utf-8")
        return target

    async def run(self, run: RunState) -> list[StageOutcome]:
        outcomes: list[StageOutcome] = []
        for stage in self.stages:
            outcome = await self.run_stage(run, stage)
            outcomes.append(outcome)
            self.write_results_artifact()
            if not outcome.passed:
                failed = outcome.final.failed_checks if outcome.final else []
                names = [check.name for check in failed]
                state = "blocked by a regressing repair" if outcome.blocked else "still failing"
                raise VerificationFailedError(
                    f"Stage {stage.id} ({stage.name}) {state} after "
                    f"{len(outcome.attempts)} repair attempt(s). Checks failed: "
                    f"{', '.join(names) or 'unknown'}",
                    phase_id=PHASE_ID,
                    stage_id=stage.id,
                    checks=names,
                    blocked=outcome.blocked,
                )
        return outcomes

    async def run_stage(self, run: RunState, stage: VerificationStage) -> StageOutcome:
        if stage.id in run.completed_verification_stages:
            logger.info("stage %s already passed; skipping", stage.id)
            return StageOutcome(stage=stage, passed=True, skipped=True)

        workspace = self._workspace(run)
        if self.vcs.has_uncommitted_changes(workspace):
            raise DirtyWorkspaceError(
                f"Workspace {workspace} has uncommitted changes before stage {stage.id}. "
                "Commit or discard them, then resume.",
                phase_id=PHASE_ID,
            )
        logger.info("stage %s (%s): running checks", stage.id, stage.name)
        result = self.runner.run(workspace, stage)
        self.vcs.commit(workspace, f"Phase 10 - {stage.id} verification side effects")
        blocks: list[tuple[str, WorkspaceTestResult]] = [("Initial Verification", result)]
        self._write_stage_report(stage, blocks)

        baseline = classify_failures(result)
        budget = RepairBudget(
            self.config.default_repair_attempts, self.config.max_repair_attempts
        )
        outcome = StageOutcome(stage=stage, passed=False, baseline=baseline, final=result)
        previous = baseline
        last_delta: FailureDelta | None = None
        attempt = 0
        while not result.all_passed and budget.allows(attempt + 1):
            attempt += 1
            repair = await self._repair_attempt(
                run, stage, workspace, attempt, result, previous, last_delta
            )
            outcome.attempts.append(repair.record)
            blocks.append(
                (
                    f"Repair Attempt {attempt} Verification"
                    + (" (rolled back)" if repair.record.blocked else ""),
                    repair.result,
                )
            )
            self._write_stage_report(stage, blocks)
            if repair.record.blocked:
                outcome.blocked = True
                break
            budget.observe(attempt, len(previous), len(repair.failures))
            result, previous, last_delta = repair.result, repair.failures, repair.record.delta

        outcome.attempt_cap = budget.cap
        outcome.final = result
        outcome.passed = result.all_passed and not outcome.blocked
        if outcome.passed:
            run.completed_verification_stages.append(stage.id)
            self._persist(run)
            logger.info("stage %s passed", stage.id)
        return outcome

    async def _repair_attempt(
        self,
        run: RunState,
        stage: VerificationStage,
        workspace: Path,
        attempt: int,
        current: WorkspaceTestResult,
        before: frozenset[FailureSignature],
        last_delta: FailureDelta | None,
    ) -> _AttemptResult:
        self.costs.check_budget(run)
        if self.vcs.has_uncommitted_changes(workspace):
            raise DirtyWorkspaceError(
                f"Workspace {workspace} has uncommitted changes before repair attempt "
                f"{attempt} of stage {stage.id}.",
                phase_id=PHASE_ID,
            )
        pre_revision = self.vcs.head_revision(workspace)
        failing = [check.name for check in current.failed_checks]
        logger.warning(
            "stage %s failed (%s); repair attempt %d", stage.id, ", ".join(failing), attempt
        )
        prompt = build_test_repair_prompt(
            stage_name=f"{stage.id} {stage.name}",
            failing_checks=failing,
            test_results=render_result_block("Latest Verification", current),
            delta_summary=last_delta.summary() if last_delta else "",
            **{key: self._read_artifact(name) for key, name in REPAIR_CONTEXT_ARTIFACTS.items()},
        )
        try:
            response = await self.backend.invoke(
                prompt,
                AgentOptions(
                    cwd=workspace,
                    permissions="read-write",
                    timeout_seconds=self.timeout_seconds,
                    max_turns=self.max_turns,
                    label=f"{stage.id}-repair-{attempt}",
                ),
            )
        except Exception:
            self.vcs.reset_hard(workspace, pre_revision)
            raise
        self.costs.record(run, PHASE_ID, response)
        self._persist(run)

        after_result = self.runner.run(workspace, stage)
        after = classify_failures(after_result)
        delta = failure_delta(before, after)
        record = RepairAttempt(
            number=attempt,
            pre_revision=pre_revision,
            failures_before=len(before),
            failures_after=len(after),
            delta=delta,
        )
        if delta.introduced:
            logger.error(
                "repair attempt %d for stage %s introduced new failures:\n%s",
                attempt,
                stage.id,
                delta.summary(),
            )
            self.vcs.reset_hard(workspace, pre_revision)
            record.blocked = True
        else:
            record.committed = self.vcs.commit(
                workspace, f"Phase 10 - {stage.id} repair attempt {attempt}"
            )
            logger.info(
                "repair attempt %d for stage %s: %d -> %d failures",
                attempt,
                stage.id,
                len(before),
                len(after),
            )
        return _AttemptResult(record=record, result=after_result, failures=after)

    def verify_workspace(self, workspace: Path) -> WorkspaceTestResult:
        """Run every stage once without repairs or checkpoints."""
        combined = WorkspaceTestResult()
        for stage in self.stages:
            for check in self.runner.run(workspace, stage).checks:
                combined.checks.append(
                    TestCheckResult(
                        name=f"{stage.id} {check.name}",
                        command=check.command,
                        success=check.success,
                        output=check.output,
                        duration_seconds=check.duration_seconds,
                        timed_out=check.timed_out,
                    )
                )
        return combined


@dataclass(slots=True)
class _AttemptResult:
    record: RepairAttempt
    result: WorkspaceTestResult
    failures: frozenset[FailureSignature]
