from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path

import click

from shipwright import __version__
from shipwright.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    ResilientBackend,
    RetryPolicy,
)
from shipwright.backends.resilient import BackendEventHook
from shipwright.bootstrap import GhRepoBootstrapper, detect_owner, slugify
from shipwright.config import PipelineConfig, apply_env_overrides, load_config, save_config
from shipwright.errors import PipelineError
from shipwright.phases import PhaseDefinition, get_phase
from shipwright.pipeline import Pipeline, PipelineResult, RunLog, RunOutcome
from shipwright.prompts import PromptLibrary
from shipwright.state.git import GitWorkspace
from shipwright.state.run_state import RunState, RunStateStore, new_run_id
from shipwright.validators import validate_budget, validate_repo_name, validate_timeout_minutes
from shipwright.verification.runner import CommandVerificationRunner

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "shipwright.toml"
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def _resolve_path(root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = root / path
    return path.resolve()


def _load(config_value: str) -> tuple[Path, PipelineConfig]:
    root = Path.cwd().resolve()
    try:
        config = load_config(_resolve_path(root, config_value))
        apply_env_overrides(config, os.environ)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    return root, config


def build_backend(
    engine: str, config: PipelineConfig, event_hook: BackendEventHook | None = None
) -> AgentBackend:
    backend: AgentBackend
    if engine == "codex":
        backend = CodexBackend(
            config.agent.codex_binary,
            heartbeat_seconds=config.agent.heartbeat_seconds,
            event_hook=event_hook,
        )
    else:
        backend = ClaudeCodeBackend(
            config.agent.claude_binary,
            output_format=config.agent.claude_output_format,  # type: ignore[arg-type]
            heartbeat_seconds=config.agent.heartbeat_seconds,
            event_hook=event_hook,
        )
    policy = RetryPolicy(
        max_retries=config.agent.max_retries,
        delays_seconds=tuple(config.agent.retry_delays_seconds),
    )
    return ResilientBackend(backend, policy, event_hook=event_hook)


def _confirm_phase(phase: PhaseDefinition, run: RunState) -> bool:
    return click.confirm(
        f"Run phase {phase.id} ({phase.name}) for {run.run_id}?", default=True
    )


def build_pipeline(
    root: Path, config: PipelineConfig, run: RunState, *, dry_run: bool = False
) -> Pipeline:
    run_dir = _resolve_path(root, config.workflow.runs_dir) / run.run_id
    run_log = RunLog(run_dir)
    config.agent.engine = run.engine  # type: ignore[assignment]
    return Pipeline(
        config,
        run_dir=run_dir,
        backend=build_backend(run.engine, config, run_log.event),
        vcs=GitWorkspace(),
        runner=CommandVerificationRunner(config.verification),
        bootstrapper=GhRepoBootstrapper(),
        prompts=PromptLibrary(_resolve_path(root, config.workflow.prompts_dir)),
        workspace_root=_resolve_path(root, config.repo.workspace_root),
        approve=_confirm_phase,
        dry_run=dry_run,
        run_log=run_log,
    )


def _apply_run_options(
    config: PipelineConfig,
    *,
    budget: float | None,
    timeout: float | None,
    interactive: bool | None,
) -> None:
    if budget is not None:
        validate_budget(budget)
        config.budget.budget_usd = budget
    if timeout is not None:
        validate_timeout_minutes(timeout)
        config.agent.timeout_minutes = timeout
    if interactive is not None:
        config.workflow.interactive = interactive


def _execute(pipeline: Pipeline, run: RunState, from_phase: str | None) -> PipelineResult:
    if from_phase is not None:
        get_phase(from_phase)
    return asyncio.run(pipeline.run(run, from_phase=from_phase))


def _echo_result(result: PipelineResult) -> None:
    run = result.run
    if result.status is RunOutcome.PAUSED:
        click.echo(f"Run {run.run_id} paused. Resume with: shipwright resume {run.run_id}")
        return
    if result.status is RunOutcome.DRY_RUN:
        click.echo(f"Dry run planned phases: {', '.join(result.phases_run) or 'none'}")
        return
    click.echo(f"Run complete: {run.run_id}")
    click.echo(f"Phases: {', '.join(run.completed_phases)}")
    click.echo(f"Cost: ${run.total_effective_cost_usd:.4f}")
    if result.report_path:
        click.echo(f"Report: {result.report_path}")


@click.group()
@click.version_option(__version__, prog_name="shipwright")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Shipwright: turn a product idea into a working repository."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--engine", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--owner", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(engine: str | None, owner: str | None, config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_path(root, config_value)
    try:
        config = load_config(config_path)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    if engine:
        config.agent.engine = engine  # type: ignore[assignment]
    if owner:
        config.repo.owner = owner
    save_config(config_path, config)
    _resolve_path(root, config.workflow.prompts_dir).mkdir(parents=True, exist_ok=True)
    _resolve_path(root, config.workflow.runs_dir).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized shipwright in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Engine: {config.agent.engine}")


@cli.command("run")
@click.argument("idea")
@click.option("--engine", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--owner", default=None, help="GitHub owner; detected with gh when omitted.")
@click.option("--template", default=None, help="Template repository (owner/repo).")
@click.option("--visibility", type=click.Choice(["public", "private"]), default=None)
@click.option("--repo-name", default=None)
@click.option("--budget", type=float, default=None, help="Budget ceiling in USD.")
@click.option("--timeout", type=float, default=None, help="Per-call timeout in minutes.")
@click.option("--interactive/--no-interactive", default=None)
@click.option("--phase", "from_phase", default=None, help="Start from this phase id.")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def run_command(
    idea: str,
    engine: str | None,
    owner: str | None,
    template: str | None,
    visibility: str | None,
    repo_name: str | None,
    budget: float | None,
    timeout: float | None,
    interactive: bool | None,
    from_phase: str | None,
    dry_run: bool,
    config_value: str,
) -> None:
    root, config = _load(config_value)
    try:
        _apply_run_options(config, budget=budget, timeout=timeout, interactive=interactive)
        if repo_name:
            validate_repo_name(repo_name)
        if not owner and not config.repo.owner and not dry_run:
            owner = detect_owner()
        run = RunState(
            run_id=new_run_id(),
            idea=idea.strip(),
            engine=engine or config.agent.engine,
            repo_name=repo_name or slugify(idea) or None,
            repo_owner=owner or config.repo.owner,
            template_repo=template or config.repo.template,
            visibility=visibility or config.repo.visibility,
            default_branch=config.repo.default_branch,
        )
        run.validate()
        pipeline = build_pipeline(root, config, run, dry_run=dry_run)
        if not dry_run:
            pipeline.persist(run)
        click.echo(f"Run ID: {run.run_id}")
        result = _execute(pipeline, run, from_phase)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_result(result)


@cli.command("resume")
@click.argument("run_id")
@click.option("--phase", "from_phase", default=None, help="Restart from this phase id.")
@click.option("--budget", type=float, default=None, help="Budget ceiling in USD.")
@click.option("--timeout", type=float, default=None, help="Per-call timeout in minutes.")
@click.option("--interactive/--no-interactive", default=None)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def resume_command(
    run_id: str,
    from_phase: str | None,
    budget: float | None,
    timeout: float | None,
    interactive: bool | None,
    dry_run: bool,
    config_value: str,
) -> None:
    root, config = _load(config_value)
    try:
        _apply_run_options(config, budget=budget, timeout=timeout, interactive=interactive)
        run_dir = _resolve_path(root, config.workflow.runs_dir) / run_id
        run = RunStateStore(run_dir).load()
        pipeline = build_pipeline(root, config, run, dry_run=dry_run)
        click.echo(
            f"Resuming {run.run_id} (completed: {', '.join(run.completed_phases) or 'none'})"
        )
        result = _execute(pipeline, run, from_phase)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_result(result)


@cli.command("status")
@click.argument("run_id", required=False)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(run_id: str | None, verbose: bool, config_value: str) -> None:
    root, config = _load(config_value)
    runs_dir = _resolve_path(root, config.workflow.runs_dir)
    if run_id is None:
        run_ids = sorted(path.parent.name for path in runs_dir.glob("*/state.json"))
        if not run_ids:
            click.echo("No runs found.")
            return
        for item in run_ids:
            click.echo(item)
        return

    try:
        run = RunStateStore(runs_dir / run_id).load()
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    if verbose:
        payload = run.to_dict()
    else:
        payload = {
            "run_id": run.run_id,
            "idea": run.idea,
            "engine": run.engine,
            "completed_phases": run.completed_phases,
            "current_phase": run.current_phase,
            "workspace_path": run.workspace_path,
            "last_completed_task": run.last_completed_task,
            "completed_verification_stages": run.completed_verification_stages,
            "total_effective_cost_usd": round(run.total_effective_cost_usd, 4),
        }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
