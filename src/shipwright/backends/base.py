from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from shipwright.errors import PipelineError

PermissionTier = Literal["read-only", "read-write"]


class AgentExecutionError(PipelineError):
    """Raised when an agent process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
        partial_output: str = "",
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable
        self.partial_output = partial_output


class AgentTimeoutError(AgentExecutionError):
    """Raised when agent execution exceeds the configured timeout."""


class AgentProcessError(AgentExecutionError):
    """Raised when the agent process lifecycle fails."""


@dataclass(slots=True)
class AgentOptions:
    cwd: Path | None = None
    permissions: PermissionTier = "read-only"
    timeout_seconds: float | None = None
    max_turns: int = 10
    web_search: bool = False
    label: str = "agent"


@dataclass(slots=True)
class AgentResult:
    output: str
    cost_usd: float | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    num_turns: int = 0
    stop_reason: str | None = None
    elapsed_seconds: float = 0.0
    result_subtype: str | None = None
    decoder: str = ""
    output_source: str = ""
    unparsed_records: list[str] = field(default_factory=list)

    @property
    def truncated(self) -> bool:
        return self.stop_reason == "max_tokens"


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    async def invoke(self, prompt: str, options: AgentOptions) -> AgentResult:
        """Run one agent invocation and return its decoded outcome."""
