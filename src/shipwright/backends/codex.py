from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from shipwright.backends.base import AgentOptions
from shipwright.backends.decoders import CodexStreamDecoder, StreamDecoder
from shipwright.backends.process import (
    DEFAULT_HEARTBEAT_SECONDS,
    BackendEventHook,
    SubprocessAgentBackend,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class CodexCapabilities:
    ask_for_approval: bool = False
    search: bool = False
    output_last_message: bool = False


def probe_capabilities(binary: str = "codex") -> CodexCapabilities:
    """Detect optional CLI flags from ``--help`` output.

    Detection failures fall back to the most conservative command shape.
    """
    try:
        top_level = subprocess.run(
            [binary, "--help"], text=True, capture_output=True, timeout=10
        )
        exec_help = subprocess.run(
            [binary, "exec", "--help"], text=True, capture_output=True, timeout=10
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("codex capability probe failed (%s); using conservative flags", exc)
        return CodexCapabilities()
    top_text = f"{top_level.stdout}\n{top_level.stderr}"
    exec_text = f"{exec_help.stdout}\n{exec_help.stderr}"
    return CodexCapabilities(
        ask_for_approval="--ask-for-approval" in top_text,
        search="--search" in top_text,
        output_last_message="--output-last-message" in exec_text,
    )


class CodexBackend(SubprocessAgentBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        *,
        capabilities: CodexCapabilities | None = None,
        heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        super().__init__(binary, heartbeat_seconds=heartbeat_seconds, event_hook=event_hook)
        self._capabilities = capabilities

    @property
    def capabilities(self) -> CodexCapabilities:
        if self._capabilities is None:
            self._capabilities = probe_capabilities(self.binary)
            self._emit(
                {
                    "event": "codex_capabilities",
                    "ask_for_approval": self._capabilities.ask_for_approval,
                    "search": self._capabilities.search,
                    "output_last_message": self._capabilities.output_last_message,
                }
            )
        return self._capabilities

    def wants_output_file(self) -> bool:
        return self.capabilities.output_last_message

    def build_command(self, options: AgentOptions, output_file: Path | None = None) -> list[str]:
        capabilities = self.capabilities
        # Global flags must precede the exec subcommand.
        command = [self.binary]
        if capabilities.ask_for_approval:
            command.extend(["-a", "never"])
        if options.web_search and capabilities.search:
            command.append("--search")
        command.extend(["exec", "--json"])
        if output_file is not None and capabilities.output_last_message:
            command.extend(["--output-last-message", str(output_file)])
        sandbox = "read-only" if options.permissions == "read-only" else "workspace-write"
        command.extend(["--sandbox", sandbox])
        return command

    def make_decoder(self) -> StreamDecoder:
        return CodexStreamDecoder()
