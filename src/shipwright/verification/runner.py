from __future__ import annotations

import logging
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from shipwright.config import VerificationConfig
from shipwright.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TestCheckResult:
    __test__ = False

    name: str
    command: str
    success: bool
    output: str = ""
    duration_seconds: float = 0.0
    timed_out: bool = False


@dataclass(slots=True)
class WorkspaceTestResult:
    checks: list[TestCheckResult] = field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return all(check.success for check in self.checks)

    @property
    def failed_checks(self) -> list[TestCheckResult]:
        return [check for check in self.checks if not check.success]

    def report(self) -> str:
        lines: list[str] = []
        for check in self.checks:
            status = "PASS" if check.success else ("TIMEOUT" if check.timed_out else "FAIL")
            lines.append(f"#### {check.name}: {status}")
            lines.append("")
            lines.append(f"Command: `{check.command}` ({check.duration_seconds:.1f}s)")
            if not check.success and check.output.strip():
                lines.extend(["", "```", check.output.strip(), "```"])
            lines.append("")
        return "\n".join(lines).strip()


@dataclass(slots=True, frozen=True)
class VerificationStage:
    id: str
    name: str
    suite: str
    timeout_seconds: float


def default_stages(config: VerificationConfig) -> tuple[VerificationStage, ...]:
    return (
        VerificationStage("10A", "Integration", "integration", config.check_timeout_seconds),
        VerificationStage("10B", "End-to-End", "e2e", config.check_timeout_seconds),
    )


class VerificationRunner(Protocol):
    def run(self, workspace: Path, stage: VerificationStage) -> WorkspaceTestResult: ...


class CommandVerificationRunner:
    """Runs the configured install / typecheck / lint / build / suite commands."""

    def __init__(self, config: VerificationConfig) -> None:
        self.config = config

    def commands_for(self, stage: VerificationStage) -> list[tuple[str, str]]:
        suite_command = {
            "integration": self.config.integration_command,
            "e2e": self.config.e2e_command,
        }.get(stage.suite, "")
        commands = [
            ("install", self.config.install_command),
            ("typecheck", self.config.typecheck_command),
            ("lint", self.config.lint_command),
            ("build", self.config.build_command),
            (f"{stage.suite} tests", suite_command),
        ]
        return [(name, command) for name, command in commands if command.strip()]

    def _tail(self, text: str) -> str:
        limit = self.config.output_tail_chars
        return text[-limit:] if len(text) > limit else text

    def _run_check(
        self, workspace: Path, name: str, command: str, timeout_seconds: float
    ) -> TestCheckResult:
        try:
            argv = shlex.split(command)
        except ValueError as exc:
            raise ConfigurationError(f"Cannot parse {name} command {command!r}: {exc}") from exc
        started = time.monotonic()
        try:
            proc = subprocess.run(
                argv,
                cwd=workspace,
                text=True,
                capture_output=True,
                timeout=timeout_seconds or None,
            )
        except FileNotFoundError as exc:
            return TestCheckResult(
                name=name,
                command=command,
                success=False,
                output=f"Command not found: {exc.filename or command}",
                duration_seconds=time.monotonic() - started,
            )
        except subprocess.TimeoutExpired as exc:
            partial = exc.stdout or ""
            if isinstance(partial, bytes):
                partial = partial.decode("utf-8", errors="replace")
            return TestCheckResult(
                name=name,
                command=command,
                success=False,
                output=self._tail(f"{partial}\nTimed out after {timeout_seconds:.0f}s"),
                duration_seconds=time.monotonic() - started,
                timed_out=True,
            )
        output = "\n".join(part for part in (proc.stdout, proc.stderr) if part.strip())
        return TestCheckResult(
            name=name,
            command=command,
            success=proc.returncode == 0,
            output=self._tail(output),
            duration_seconds=time.monotonic() - started,
        )

    def run(self, workspace: Path, stage: VerificationStage) -> WorkspaceTestResult:
        result = WorkspaceTestResult()
        for name, command in self.commands_for(stage):
            logger.info("[%s] running %s: %s", stage.id, name, command)
            check = self._run_check(workspace, name, command, stage.timeout_seconds)
            if not check.success:
                logger.warning("[%s] %s failed", stage.id, name)
            result.checks.append(check)
        return result
