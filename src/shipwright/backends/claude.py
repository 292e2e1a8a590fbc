from __future__ import annotations

from pathlib import Path
from typing import Literal

from shipwright.backends.base import AgentOptions
from shipwright.backends.decoders import ClaudeStreamDecoder, StreamDecoder
from shipwright.backends.process import (
    DEFAULT_HEARTBEAT_SECONDS,
    BackendEventHook,
    SubprocessAgentBackend,
)

ClaudeOutputFormat = Literal["stream-json", "json"]

READ_TOOLS = ("Read", "Glob", "Grep")
WRITE_TOOLS = ("Edit", "Write", "Bash")
WEB_TOOLS = ("WebSearch", "WebFetch")


def allowed_tools(options: AgentOptions) -> list[str]:
    tools = list(READ_TOOLS)
    if options.permissions == "read-write":
        tools.extend(WRITE_TOOLS)
    if options.web_search:
        tools.extend(WEB_TOOLS)
    return tools


class ClaudeCodeBackend(SubprocessAgentBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        *,
        output_format: ClaudeOutputFormat = "stream-json",
        heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        super().__init__(binary, heartbeat_seconds=heartbeat_seconds, event_hook=event_hook)
        self.output_format = output_format

    def build_command(self, options: AgentOptions, output_file: Path | None = None) -> list[str]:
        command = [self.binary, "-p", "--output-format", self.output_format]
        # json mode must keep stdout a single parseable object.
        if self.output_format == "stream-json":
            command.append("--verbose")
        if options.max_turns > 0:
            command.extend(["--max-turns", str(options.max_turns)])
        command.extend(["--allowedTools", ",".join(allowed_tools(options))])
        return command

    def make_decoder(self) -> StreamDecoder:
        return ClaudeStreamDecoder(self.output_format)
