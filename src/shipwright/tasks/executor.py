from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from shipwright.backends.base import AgentBackend, AgentOptions, AgentResult
from shipwright.config import TasksConfig
from shipwright.costs import CostTracker
from shipwright.errors import ConfigurationError, DirtyWorkspaceError, NoChangesError
from shipwright.state.git import VersionControl
from shipwright.state.run_state import RunState
from shipwright.state.store import utcnow_iso
from shipwright.tasks.decompose import DecompositionPolicy, decompose_oversized
from shipwright.tasks.manifest import Task, parse_manifest
from shipwright.tasks.queue import (
    TaskQueue,
    TaskQueueStore,
    check_traceability,
    ensure_resumable,
    parse_followups,
    source_digest,
)

logger = logging.getLogger(__name__)

PHASE_ID = "9"


def policy_from_config(config: TasksConfig) -> DecompositionPolicy:
    return DecompositionPolicy(
        chunk_size=config.chunk_size,
        max_target_files=config.max_target_files,
        max_acceptance_criteria=config.max_acceptance_criteria,
        max_body_chars=config.max_body_chars,
    )


def plan_queue(breakdown_text: str, config: TasksConfig) -> tuple[TaskQueue, int]:
    """Parse the manifest and split oversized tasks; returns the queue and split count."""
    tasks, events = decompose_oversized(parse_manifest(breakdown_text), policy_from_config(config))
    return TaskQueue(tasks, source_sha256=source_digest(breakdown_text)), events


@dataclass(slots=True)
class TaskOutcome:
    task: Task
    position: int
    committed: bool
    result: AgentResult
    followups: list[Task] = field(default_factory=list)


class ImplementationPhase:
    """Runs the task queue one task at a time against the workspace.

    Every task starts on a clean tree and ends in a commit; a failed task resets
    the workspace to the commit it started from before the error propagates.
    """

    def __init__(
        self,
        backend: AgentBackend,
        vcs: VersionControl,
        costs: CostTracker,
        config: TasksConfig,
        *,
        run_dir: Path,
        persist: Callable[[RunState], None],
        timeout_seconds: float | None = None,
        max_turns: int = 20,
    ) -> None:
        self.backend = backend
        self.vcs = vcs
        self.costs = costs
        self.config = config
        self.run_dir = run_dir
        self.queue_store = TaskQueueStore(run_dir)
        self._persist = persist
        self.timeout_seconds = timeout_seconds
        self.max_turns = max_turns

    def load_queue(self, run: RunState, breakdown_text: str) -> TaskQueue:
        if self.queue_store.exists():
            queue = self.queue_store.load(source_text=breakdown_text)
            logger.info("loaded persisted task queue (%d tasks)", len(queue))
        else:
            queue, events = plan_queue(breakdown_text, self.config)
            run.task_decomposition_events += events
            self.queue_store.save(queue)
            self._persist(run)
            logger.info("built task queue: %d tasks, %d decomposed", len(queue), events)
        check_traceability(queue, breakdown_text)
        ensure_resumable(queue, run.last_completed_task)
        return queue

    def _workspace(self, run: RunState) -> Path:
        workspace = run.workspace
        if workspace is None or not workspace.exists():
            raise ConfigurationError(
                "Workspace not found. Run repo bootstrap (phase 5) first.", phase_id=PHASE_ID
            )
        return workspace

    async def run(
        self, run: RunState, queue: TaskQueue, prompt_for: Callable[[Task], str]
    ) -> list[TaskOutcome]:
        workspace = self._workspace(run)
        position = run.last_completed_task
        if position > 0:
            logger.info(
                "resuming implementation at task %d/%d (%d already complete)",
                position + 1,
                len(queue),
                position,
            )
        outcomes: list[TaskOutcome] = []
        # The queue can grow while we walk it.
        while position < len(queue):
            outcomes.append(await self.execute(run, queue, position, prompt_for, workspace))
            position += 1
        logger.info("implementation finished: %d task(s) this session", len(outcomes))
        return outcomes

    async def execute(
        self,
        run: RunState,
        queue: TaskQueue,
        position: int,
        prompt_for: Callable[[Task], str],
        workspace: Path,
    ) -> TaskOutcome:
        task = queue[position]
        total = len(queue)
        if self.vcs.has_uncommitted_changes(workspace):
            raise DirtyWorkspaceError(
                f"Workspace {workspace} has uncommitted changes before task {task.id}. "
                "Commit or discard them, then resume.",
                phase_id=PHASE_ID,
                task_id=task.id,
            )
        self.costs.check_budget(run)
        head_before = self.vcs.head_revision(workspace)
        logger.info("task %d/%d [%s]: %s", position + 1, total, task.id, task.title)

        try:
            result = await self.backend.invoke(
                prompt_for(task),
                AgentOptions(
                    cwd=workspace,
                    permissions="read-write",
                    timeout_seconds=self.timeout_seconds,
                    max_turns=self.max_turns,
                    label=f"{PHASE_ID}-task-{task.id}",
                ),
            )
            self.costs.record(run, PHASE_ID, result)
            self._persist(run)
            changed = (
                self.vcs.has_uncommitted_changes(workspace)
                or self.vcs.head_revision(workspace) != head_before
            )
            if not changed:
                raise NoChangesError(
                    f"Task {task.id} ({task.title}) completed without changing the workspace.",
                    phase_id=PHASE_ID,
                    task_id=task.id,
                )
            committed = self.vcs.commit(
                workspace, f"Phase 9 - Task {position + 1}/{total} [{task.id}]: {task.title}"
            )
        except Exception:
            logger.error(
                "task %s failed; resetting workspace to %s", task.id, head_before[:10]
            )
            self.vcs.reset_hard(workspace, head_before)
            raise

        outcome = TaskOutcome(task=task, position=position, committed=committed, result=result)
        # Follow-ups reach disk before the checkpoint moves past their trigger.
        outcome.followups = self._insert_followups(run, queue, task, result.output)
        run.last_completed_task = position + 1
        self._persist(run)
        self._write_report(outcome, total)
        return outcome

    def _insert_followups(
        self, run: RunState, queue: TaskQueue, task: Task, output: str
    ) -> list[Task]:
        proposals = parse_followups(output)
        if not proposals:
            return []
        remaining = self.config.max_dynamic_tasks - run.dynamic_tasks_added
        limit = min(self.config.followups_per_task, remaining)
        if limit <= 0:
            logger.warning(
                "task %s proposed %d follow-up(s) but the run already added %d dynamic tasks",
                task.id,
                len(proposals),
                run.dynamic_tasks_added,
            )
            return []
        inserted = queue.insert_dynamic_followups(task.id, proposals, limit=limit)
        self.queue_store.save(queue)
        run.dynamic_tasks_added += len(inserted)
        return inserted

    def _write_report(self, outcome: TaskOutcome, total: int) -> Path:
        reports_dir = self.run_dir / "reports"
        reports_dir.mkdir(parents=True, exist_ok=True)
        slug = re.sub(r"[^A-Za-z0-9._-]+", "-", outcome.task.id)
        path = reports_dir / f"task-{outcome.position + 1:02d}-{slug}.md"
        result = outcome.result
        lines = [
            f"# Task {outcome.task.id}: {outcome.task.title}",
            "",
            f"- Position: {outcome.position + 1}/{total}",
            f"- Origin: {outcome.task.origin.value}",
            f"- Committed: {'yes' if outcome.committed else 'no (agent committed itself)'}",
            f"- Turns: {result.num_turns}",
            f"- Cost: ${result.cost_usd or 0.0:.4f} reported, "
            f"{result.input_tokens} in / {result.output_tokens} out tokens",
            f"- Generated At: {utcnow_iso()}",
            "",
        ]
        if outcome.followups:
            lines.append("## Follow-up Tasks")
            lines.extend(f"- {item.id}: {item.title}" for item in outcome.followups)
            lines.append("")
        lines.extend(["## Agent Output", result.output.strip(), ""])
        path.write_text("\n".join(lines), encoding="utf-8")
        return path
