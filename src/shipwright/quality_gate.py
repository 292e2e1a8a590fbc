from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from shipwright.backends.base import AgentBackend, AgentOptions
from shipwright.config import ArtifactsConfig
from shipwright.costs import CostTracker
from shipwright.errors import ConfigurationError, DirtyWorkspaceError, QualityGateError
from shipwright.phases import PhaseDefinition
from shipwright.prompts import build_quality_remediation_prompt
from shipwright.state.git import VersionControl
from shipwright.state.run_state import RunState
from shipwright.textcontract import Verdict, read_verdict
from shipwright.verification.engine import VerificationEngine, render_result_block
from shipwright.verification.failures import classify_failures, failure_delta

logger = logging.getLogger(__name__)

VERDICT_LABELS: dict[str, tuple[str, ...]] = {
    "11": ("Reachability Verdict", "Overall verdict"),
    "12": ("Overall verdict", "Ship readiness", "Overall Assessment"),
}
# Accepting phase 12 after remediation requires phase 11's gate to pass again.
GATE_DEPENDENCIES: dict[str, str] = {"12": "11"}

Reissue = Callable[[], Awaitable[str]]


def verdict_for(phase_id: str, content: str) -> Verdict:
    labels = VERDICT_LABELS.get(phase_id)
    if not labels:
        raise ConfigurationError(f"Phase {phase_id} has no quality gate.", phase_id=phase_id)
    return read_verdict(content, labels)


class QualityGate:
    """Enforces a passing verdict by remediating code, then re-issuing the artifact."""

    def __init__(
        self,
        backend: AgentBackend,
        vcs: VersionControl,
        verifier: VerificationEngine,
        costs: CostTracker,
        config: ArtifactsConfig,
        *,
        persist: Callable[[RunState], None],
        timeout_seconds: float | None = None,
        max_turns: int = 20,
    ) -> None:
        self.backend = backend
        self.vcs = vcs
        self.verifier = verifier
        self.costs = costs
        self.config = config
        self._persist = persist
        self.timeout_seconds = timeout_seconds
        self.max_turns = max_turns

    def _workspace(self, run: RunState, phase: PhaseDefinition) -> Path:
        workspace = run.workspace
        if workspace is None or not workspace.exists():
            raise ConfigurationError(
                f"Phase {phase.id} quality gate needs the workspace.", phase_id=phase.id
            )
        return workspace

    async def enforce(
        self,
        run: RunState,
        phase: PhaseDefinition,
        content: str,
        reissue: Reissue,
        *,
        rerun_dependency: Callable[[], Awaitable[None]] | None = None,
    ) -> str:
        """Return ``content`` (or a re-issued version) once its verdict passes.

        Raises ``QualityGateError`` when the verdict still fails, is ambiguous, or
        is missing after the configured number of remediation attempts.
        """
        remediated = False
        while True:
            verdict = verdict_for(phase.id, content)
            if verdict.passed:
                break
            attempts = run.quality_gate_attempts.get(phase.id, 0)
            if attempts >= self.config.max_quality_attempts:
                raise QualityGateError(
                    f"Phase {phase.id} ({phase.name}) verdict is {verdict.value} after "
                    f"{attempts} remediation attempt(s).",
                    phase_id=phase.id,
                    verdict=verdict.value,
                )
            run.quality_gate_attempts[phase.id] = attempts + 1
            self._persist(run)
            logger.warning(
                "phase %s verdict is %s; remediation %d/%d",
                phase.id,
                verdict.value,
                attempts + 1,
                self.config.max_quality_attempts,
            )
            if await self.remediate(run, phase, content, verdict, attempts + 1):
                remediated = True
            content = await reissue()

        if remediated and phase.id in GATE_DEPENDENCIES:
            await self._accept_dependent(run, phase, rerun_dependency)
        return content

    async def _accept_dependent(
        self,
        run: RunState,
        phase: PhaseDefinition,
        rerun_dependency: Callable[[], Awaitable[None]] | None,
    ) -> None:
        dependency = GATE_DEPENDENCIES[phase.id]
        if rerun_dependency is None:
            raise ConfigurationError(
                f"Phase {phase.id} needs phase {dependency} re-run after remediation.",
                phase_id=phase.id,
            )
        logger.info("re-running phase %s gate before accepting phase %s", dependency, phase.id)
        await rerun_dependency()
        result = self.verifier.verify_workspace(self._workspace(run, phase))
        if not result.all_passed:
            failed = ", ".join(check.name for check in result.failed_checks)
            raise QualityGateError(
                f"Phase {phase.id} remediation left workspace verification failing: {failed}",
                phase_id=phase.id,
                verdict=Verdict.FAIL.value,
            )

    async def remediate(
        self,
        run: RunState,
        phase: PhaseDefinition,
        content: str,
        verdict: Verdict,
        attempt: int,
    ) -> bool:
        """Let the agent fix code; keep the change only if verification did not regress."""
        workspace = self._workspace(run, phase)
        if self.vcs.has_uncommitted_changes(workspace):
            raise DirtyWorkspaceError(
                f"Workspace {workspace} has uncommitted changes before phase {phase.id} "
                "remediation.",
                phase_id=phase.id,
            )
        self.costs.check_budget(run)
        before_result = self.verifier.verify_workspace(workspace)
        self.vcs.commit(workspace, f"Phase {phase.id} - verification side effects")
        before = classify_failures(before_result)
        pre_revision = self.vcs.head_revision(workspace)

        prompt = build_quality_remediation_prompt(
            phase, content, verdict.value, render_result_block("Current Verification", before_result)
        )
        try:
            result = await self.backend.invoke(
                prompt,
                AgentOptions(
                    cwd=workspace,
                    permissions="read-write",
                    timeout_seconds=self.timeout_seconds,
                    max_turns=self.max_turns,
                    label=f"{phase.id}-remediation-{attempt}",
                ),
            )
        except Exception:
            self.vcs.reset_hard(workspace, pre_revision)
            raise
        self.costs.record(run, phase.id, result)
        self._persist(run)

        after = classify_failures(self.verifier.verify_workspace(workspace))
        delta = failure_delta(before, after)
        if delta.introduced:
            logger.error(
                "phase %s remediation %d regressed verification; rolling back:\n%s",
                phase.id,
                attempt,
                delta.summary(),
            )
            self.vcs.reset_hard(workspace, pre_revision)
            return False
        committed = self.vcs.commit(workspace, f"Phase {phase.id} - remediation attempt {attempt}")
        logger.info(
            "phase %s remediation %d %s", phase.id, attempt, "committed" if committed else "no-op"
        )
        return committed
