"""Top-level run engine.

Walks the fixed phase list, gates each phase on its prerequisites (and, in
interactive mode, on operator approval), dispatches it to the matching
component and persists the run after every transition.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from shipwright.backends.base import AgentBackend, AgentOptions
from shipwright.bootstrap import (
    BootstrapRequest,
    RepoBootstrapper,
    resolve_workspace,
    slugify,
    summarize_repo_baseline,
)
from shipwright.config import PipelineConfig
from shipwright.costs import CostModel, CostTracker, render_cost_table
from shipwright.errors import ConfigurationError, PipelineError
from shipwright.phases import (
    AUDIT_PHASE_ID,
    PHASES,
    REACHABILITY_PHASE_ID,
    TASK_BREAKDOWN_PHASE_ID,
    PhaseDefinition,
    PhaseKind,
    get_phase,
    phases_from,
    select_next_phase,
    validate_prerequisites,
)
from shipwright.producer import INITIAL_TURNS, ArtifactProducer, max_turns_for
from shipwright.prompts import (
    NOT_AVAILABLE,
    PromptLibrary,
    artifact_placeholder,
    estimate_tokens,
    wrap_artifact,
)
from shipwright.quality_gate import GATE_DEPENDENCIES, QualityGate
from shipwright.state.git import VersionControl
from shipwright.state.run_state import RunState, RunStateStore
from shipwright.state.store import utcnow_iso
from shipwright.tasks.executor import ImplementationPhase, plan_queue
from shipwright.tasks.manifest import Task
from shipwright.verification.engine import RESULTS_ARTIFACT, VerificationEngine
from shipwright.verification.runner import VerificationRunner

logger = logging.getLogger(__name__)

ApprovalCallback = Callable[[PhaseDefinition, RunState], bool]


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    DRY_RUN = "dry_run"


@dataclass(slots=True)
class PipelineResult:
    status: RunOutcome
    run: RunState
    phases_run: list[str] = field(default_factory=list)
    report_path: Path | None = None


class RunLog:
    """Append-only audit files under ``<run_dir>/logs``."""

    def __init__(self, run_dir: Path) -> None:
        self.logs_dir = run_dir / "logs"

    @property
    def events_path(self) -> Path:
        return self.logs_dir / "events.jsonl"

    @property
    def milestones_path(self) -> Path:
        return self.logs_dir / "pipeline.log"

    def event(self, payload: dict[str, Any]) -> None:
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        record = dict(payload)
        record["at"] = utcnow_iso()
        with self.events_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, ensure_ascii=False) + "\n")

    def milestone(self, message: str) -> None:
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        with self.milestones_path.open("a", encoding="utf-8") as handle:
            handle.write(f"[{utcnow_iso()}] {message}\n")


class Pipeline:
    def __init__(
        self,
        config: PipelineConfig,
        *,
        run_dir: Path,
        backend: AgentBackend,
        vcs: VersionControl,
        runner: VerificationRunner,
        bootstrapper: RepoBootstrapper,
        prompts: PromptLibrary,
        workspace_root: Path,
        approve: ApprovalCallback | None = None,
        dry_run: bool = False,
        run_log: RunLog | None = None,
        phases: Sequence[PhaseDefinition] = PHASES,
    ) -> None:
        self.config = config
        self.run_dir = run_dir
        self.artifacts_dir = run_dir / "artifacts"
        self.backend = backend
        self.vcs = vcs
        self.bootstrapper = bootstrapper
        self.prompts = prompts
        self.workspace_root = workspace_root
        self.approve = approve
        self.dry_run = dry_run
        self.run_log = run_log or RunLog(run_dir)
        self.phases = tuple(phases)
        self.store = RunStateStore(run_dir)

        self.costs = CostTracker(
            CostModel(config.budget.input_cost_per_mtok, config.budget.output_cost_per_mtok),
            config.budget.budget_usd or None,
            warn_ratio=config.budget.warn_ratio,
        )
        timeout = config.timeout_seconds
        self.producer = ArtifactProducer(
            backend, self.costs, config.artifacts, engine=config.agent.engine, persist=self.persist
        )
        self.implementation = ImplementationPhase(
            backend,
            vcs,
            self.costs,
            config.tasks,
            run_dir=run_dir,
            persist=self.persist,
            timeout_seconds=timeout,
            max_turns=config.agent.task_max_turns,
        )
        self.verification = VerificationEngine(
            backend,
            vcs,
            runner,
            self.costs,
            config.verification,
            run_dir=run_dir,
            artifacts_dir=self.artifacts_dir,
            persist=self.persist,
            timeout_seconds=timeout,
            max_turns=config.agent.repair_max_turns,
        )
        self.gate = QualityGate(
            backend,
            vcs,
            self.verification,
            self.costs,
            config.artifacts,
            persist=self.persist,
            timeout_seconds=timeout,
            max_turns=config.agent.repair_max_turns,
        )

    def persist(self, run: RunState) -> None:
        if self.dry_run:
            return
        self.store.save(run)

    def _planned_phases(self, run: RunState, from_phase: str | None) -> Iterator[PhaseDefinition]:
        if from_phase is not None:
            yield from phases_from(from_phase, self.phases)
            return
        if self.dry_run:
            # Nothing is marked complete in a dry run, so walk the list once.
            yield from (phase for phase in self.phases if not run.is_complete(phase.id))
            return
        while True:
            phase = select_next_phase(run, self.phases)
            if phase is None:
                return
            yield phase

    def _needs_approval(self, phase: PhaseDefinition) -> bool:
        return (
            not self.dry_run
            and self.config.workflow.interactive
            and phase.id in self.config.workflow.approval_phases
        )

    async def run(self, run: RunState, from_phase: str | None = None) -> PipelineResult:
        result = PipelineResult(status=RunOutcome.COMPLETED, run=run)
        planned: set[str] = set()
        for phase in self._planned_phases(run, from_phase):
            if self._needs_approval(phase):
                approved = self.approve(phase, run) if self.approve is not None else True
                if not approved:
                    self.persist(run)
                    self.run_log.milestone(f"Paused before phase {phase.id} ({phase.name})")
                    logger.info("paused before phase %s; resume with run id %s", phase.id, run.run_id)
                    result.status = RunOutcome.PAUSED
                    return result

            logger.info("phase %s (%s): starting", phase.id, phase.name)
            self.run_log.milestone(f"Phase {phase.id} ({phase.name}) started")
            try:
                if self.dry_run:
                    self._check_dry_run_prerequisites(run, phase, planned)
                else:
                    validate_prerequisites(
                        run, phase, artifacts_dir=self.artifacts_dir, phases=self.phases
                    )
                await self.run_phase(run, phase)
            except Exception as exc:
                task_id = exc.task_id if isinstance(exc, PipelineError) else None
                context = f"phase {phase.id} ({phase.name})"
                if task_id:
                    context += f", task {task_id}"
                logger.error("%s failed: %s", context, exc)
                self.run_log.milestone(f"FAILED {context}: {exc}")
                self.persist(run)
                raise

            result.phases_run.append(phase.id)
            if self.dry_run:
                planned.add(phase.id)
                continue
            run.mark_phase_complete(phase.id)
            self.persist(run)
            self.run_log.milestone(
                f"Phase {phase.id} ({phase.name}) completed | "
                f"run cost ${run.total_effective_cost_usd:.4f}"
            )

        if self.dry_run:
            result.status = RunOutcome.DRY_RUN
            return result
        result.report_path = self.write_report(run)
        self.run_log.milestone(f"Run {run.run_id} finished")
        return result

    def _check_dry_run_prerequisites(
        self, run: RunState, phase: PhaseDefinition, planned: set[str]
    ) -> None:
        missing = [
            req
            for req in phase.required_phases
            if not run.is_complete(req) and req not in planned
        ]
        if missing:
            logger.warning(
                "[dry-run] phase %s would need phases %s first", phase.id, ", ".join(missing)
            )

    async def run_phase(self, run: RunState, phase: PhaseDefinition) -> None:
        if phase.kind is PhaseKind.ARTIFACT:
            await self._run_artifact_phase(run, phase)
        elif phase.kind is PhaseKind.BOOTSTRAP:
            self._run_bootstrap(run, phase)
        elif phase.kind is PhaseKind.IMPLEMENTATION:
            await self._run_implementation(run, phase)
        elif phase.kind is PhaseKind.VERIFICATION:
            await self._run_verification(run, phase)
        else:
            raise ConfigurationError(f"Unknown phase kind: {phase.kind}", phase_id=phase.id)

    # Context assembly

    def read_artifact(self, phase: PhaseDefinition) -> str | None:
        if not phase.artifact:
            return None
        path = self.artifacts_dir / phase.artifact
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def write_artifact(self, phase: PhaseDefinition, content: str) -> Path:
        if not phase.artifact:
            raise ConfigurationError(f"Phase {phase.id} has no artifact file.", phase_id=phase.id)
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        path = self.artifacts_dir / phase.artifact
        path.write_text(content.rstrip() + "\n", encoding="utf-8")
        logger.info("phase %s artifact saved: %s", phase.id, path)
        return path

    def build_replacements(self, run: RunState, phase: PhaseDefinition) -> dict[str, str]:
        replacements = {
            "IDEA": run.idea,
            "TEMPLATE_CONTEXT": self.prompts.template_context(),
        }
        for earlier in self.phases:
            if earlier.id == phase.id:
                break
            if not earlier.artifact:
                continue
            content = self.read_artifact(earlier)
            replacements[artifact_placeholder(earlier.artifact)] = (
                wrap_artifact(earlier.id, content) if content is not None else NOT_AVAILABLE
            )

        workspace = run.workspace
        if workspace is not None and workspace.exists():
            replacements["GIT_DIFF"] = (
                self.vcs.diff_summary(workspace) or "(no uncommitted changes)"
            )
            results = self.artifacts_dir / RESULTS_ARTIFACT
            replacements["TEST_RESULTS"] = (
                results.read_text(encoding="utf-8")
                if results.exists()
                else "(tests not yet run for this workspace)"
            )
        else:
            replacements["GIT_DIFF"] = "(no changes yet)"
            replacements["TEST_RESULTS"] = "(no tests run yet)"
        return replacements

    def build_prompt(
        self, run: RunState, phase: PhaseDefinition, extra: dict[str, str] | None = None
    ) -> str:
        replacements = self.build_replacements(run, phase)
        if extra:
            replacements.update(extra)
        prompt = self.prompts.build(phase, replacements)
        tokens = estimate_tokens(prompt)
        if tokens > self.config.artifacts.context_warning_tokens:
            logger.warning(
                "phase %s prompt is ~%d tokens (threshold %d); the agent may lose context",
                phase.id,
                tokens,
                self.config.artifacts.context_warning_tokens,
            )
        return prompt

    # Artifact phases

    def _artifact_options(self, run: RunState, phase: PhaseDefinition) -> AgentOptions:
        cwd = run.workspace if phase.requires_workspace else self.run_dir
        if phase.requires_workspace and (cwd is None or not cwd.exists()):
            raise ConfigurationError(
                f"Phase {phase.id} ({phase.name}) needs the workspace. Run phase 5 first.",
                phase_id=phase.id,
            )
        return AgentOptions(
            cwd=cwd,
            permissions="read-only",
            timeout_seconds=self.config.timeout_seconds,
            max_turns=max_turns_for(phase, INITIAL_TURNS),
            web_search=phase.web_search,
            label=phase.id,
        )

    async def issue_artifact(self, run: RunState, phase: PhaseDefinition) -> str:
        prompt = self.build_prompt(run, phase)
        produced = await self.producer.produce(
            run, phase, prompt, self._artifact_options(run, phase)
        )
        self.write_artifact(phase, produced.content)
        return produced.content

    async def _run_artifact_phase(self, run: RunState, phase: PhaseDefinition) -> None:
        if self.dry_run:
            prompt = self.build_prompt(run, phase)
            logger.info(
                "[dry-run] phase %s prompt assembled: %d chars, ~%d tokens",
                phase.id,
                len(prompt),
                estimate_tokens(prompt),
            )
            logger.debug("[dry-run] phase %s prompt:\n%s", phase.id, prompt)
            return
        content = await self.issue_artifact(run, phase)
        if phase.quality_gate:
            await self.enforce_gate(run, phase, content)

    async def enforce_gate(self, run: RunState, phase: PhaseDefinition, content: str) -> str:
        async def reissue() -> str:
            return await self.issue_artifact(run, phase)

        async def rerun_dependency() -> None:
            dependency = get_phase(GATE_DEPENDENCIES[phase.id], self.phases)
            fresh = await self.issue_artifact(run, dependency)
            await self.enforce_gate(run, dependency, fresh)

        accepted = await self.gate.enforce(
            run,
            phase,
            content,
            reissue,
            rerun_dependency=rerun_dependency if phase.id in GATE_DEPENDENCIES else None,
        )
        self.write_artifact(phase, accepted)
        logger.info("phase %s quality gate passed", phase.id)
        return accepted

    # Specialized phases

    def _run_bootstrap(self, run: RunState, phase: PhaseDefinition) -> None:
        repo_name = run.repo_name or slugify(run.idea)
        if not repo_name:
            raise ConfigurationError(
                "Cannot derive a repo name from the idea; pass one explicitly.", phase_id=phase.id
            )
        owner = run.repo_owner or self.config.repo.owner
        workspace = run.workspace or resolve_workspace(self.workspace_root, repo_name)
        if self.dry_run:
            logger.info(
                "[dry-run] would create %s/%s from %s and clone it to %s",
                owner or "<owner>",
                repo_name,
                run.template_repo,
                workspace,
            )
            return
        if not owner:
            raise ConfigurationError(
                "GitHub owner is not set. Configure repo.owner or pass --owner.", phase_id=phase.id
            )

        if workspace.exists():
            logger.info("workspace %s already exists; reusing it", workspace)
        else:
            result = self.bootstrapper.bootstrap(
                BootstrapRequest(
                    repo_name=repo_name,
                    owner=owner,
                    template=run.template_repo,
                    workspace=workspace,
                    visibility=run.visibility,
                )
            )
            workspace = result.workspace
            run.repo_url = result.repo_url
        run.repo_name = repo_name
        run.repo_owner = owner
        run.workspace_path = str(workspace)
        self.persist(run)
        self.write_artifact(phase, summarize_repo_baseline(workspace))

    def _task_prompt(self, run: RunState, phase: PhaseDefinition) -> Callable[[Task], str]:
        def prompt_for(task: Task) -> str:
            return self.build_prompt(run, phase, {"TASK": task.body})

        return prompt_for

    async def _run_implementation(self, run: RunState, phase: PhaseDefinition) -> None:
        breakdown = self.read_artifact(get_phase(TASK_BREAKDOWN_PHASE_ID, self.phases))
        if breakdown is None and self.dry_run:
            logger.info("[dry-run] task queue would be planned from the phase 8 breakdown")
            return
        if breakdown is None:
            raise ConfigurationError(
                "Task breakdown artifact is missing. Re-run phase 8.", phase_id=phase.id
            )
        if self.dry_run:
            queue, events = plan_queue(breakdown, self.config.tasks)
            logger.info("[dry-run] %d task(s), %d decomposed:", len(queue), events)
            for index, task in enumerate(queue, start=1):
                logger.info("[dry-run]   %d. [%s] %s", index, task.id, task.title)
            return
        queue = self.implementation.load_queue(run, breakdown)
        await self.implementation.run(run, queue, self._task_prompt(run, phase))

    async def _run_verification(self, run: RunState, phase: PhaseDefinition) -> None:
        if self.dry_run:
            for stage in self.verification.stages:
                logger.info(
                    "[dry-run] stage %s (%s): suite %s, timeout %.0fs",
                    stage.id,
                    stage.name,
                    stage.suite,
                    stage.timeout_seconds,
                )
            return
        await self.verification.run(run)

    # Reporting

    def write_report(self, run: RunState) -> Path:
        lines = [
            "# Pipeline Run Report",
            "",
            f"- Run ID: {run.run_id}",
            f"- Idea: {run.idea}",
            f"- Engine: {run.engine}",
            f"- Repo: {run.repo_url or 'n/a'}",
            f"- Workspace: {run.workspace_path or 'n/a'}",
            f"- Completed Phases: {', '.join(run.completed_phases) or 'none'}",
            f"- Tasks Completed: {run.last_completed_task}",
            f"- Decomposition Events: {run.task_decomposition_events}",
            f"- Dynamic Tasks Added: {run.dynamic_tasks_added}",
            f"- Verification Stages Passed: "
            f"{', '.join(run.completed_verification_stages) or 'none'}",
            f"- Generated At: {utcnow_iso()}",
            "",
            "## Cost",
            "",
            render_cost_table(run),
            "",
            f"Tokens: {run.total_input_tokens} in / {run.total_output_tokens} out",
            "",
        ]
        gates = {
            phase_id: run.quality_gate_attempts.get(phase_id, 0)
            for phase_id in (REACHABILITY_PHASE_ID, AUDIT_PHASE_ID)
        }
        if any(gates.values()):
            lines.extend(["## Quality Gates", ""])
            lines.extend(
                f"- Phase {phase_id}: {attempts} remediation attempt(s)"
                for phase_id, attempts in gates.items()
            )
            lines.append("")
        path = self.run_dir / "report.md"
        path.write_text("\n".join(lines), encoding="utf-8")
        logger.info("run report saved: %s", path)
        return path
