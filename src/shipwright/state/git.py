from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol

from shipwright.errors import VcsError

logger = logging.getLogger(__name__)


class VersionControl(Protocol):
    def commit(self, workspace: Path, message: str) -> bool: ...

    def has_uncommitted_changes(self, workspace: Path) -> bool: ...

    def head_revision(self, workspace: Path) -> str: ...

    def reset_hard(self, workspace: Path, revision: str) -> None: ...

    def diff_summary(self, workspace: Path) -> str: ...

    def status(self, workspace: Path) -> str: ...


def _status_line_path(status_line: str) -> str:
    candidate = status_line[3:].strip()
    if " -> " in candidate:
        candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
    return candidate


class GitWorkspace:
    """Git plumbing for the generated workspace."""

    def _run_git(
        self, workspace: Path, args: list[str], check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=workspace,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise VcsError(
                f"git {' '.join(args)} failed in {workspace}: "
                f"{proc.stderr.strip() or proc.stdout.strip()}"
            )
        return proc

    def dirty_paths(self, workspace: Path) -> list[str]:
        proc = self._run_git(workspace, ["status", "--porcelain"])
        return [
            _status_line_path(line) for line in proc.stdout.splitlines() if line.strip()
        ]

    def has_uncommitted_changes(self, workspace: Path) -> bool:
        return bool(self.dirty_paths(workspace))

    def commit(self, workspace: Path, message: str) -> bool:
        self._run_git(workspace, ["add", "-A"])
        if not self.has_uncommitted_changes(workspace):
            return False
        self._run_git(workspace, ["commit", "-m", message])
        logger.info("committed in %s: %s", workspace, message)
        return True

    def head_revision(self, workspace: Path) -> str:
        return self._run_git(workspace, ["rev-parse", "HEAD"]).stdout.strip()

    def reset_hard(self, workspace: Path, revision: str) -> None:
        self._run_git(workspace, ["reset", "--hard", revision])
        self._run_git(workspace, ["clean", "-fd"])
        logger.warning("workspace %s reset to %s", workspace, revision[:10])

    def diff_summary(self, workspace: Path, base: str | None = None) -> str:
        args = ["diff", "--stat"]
        if base:
            args.append(base)
        return self._run_git(workspace, args).stdout.strip()

    def status(self, workspace: Path) -> str:
        proc = self._run_git(workspace, ["status", "--short"])
        return proc.stdout.strip() or "clean"

    def file_tree(self, workspace: Path, limit: int = 400) -> list[str]:
        proc = self._run_git(workspace, ["ls-files"])
        return proc.stdout.splitlines()[:limit]
