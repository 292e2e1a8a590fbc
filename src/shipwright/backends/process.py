from __future__ import annotations

import asyncio
import logging
import os
import secrets
import shutil
import tempfile
import time
from abc import abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from shipwright.backends.base import (
    AgentBackend,
    AgentOptions,
    AgentProcessError,
    AgentResult,
    AgentTimeoutError,
)
from shipwright.backends.decoders import InvocationState, StreamDecoder

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]
STREAM_LIMIT = 64 * 1024 * 1024
DEFAULT_HEARTBEAT_SECONDS = 30.0


@contextmanager
def private_prompt_file(prompt: str) -> Iterator[Path]:
    """Write ``prompt`` to an owner-only file that is removed on every exit path."""
    directory = Path(tempfile.mkdtemp(prefix="shipwright-"))
    path = directory / f"prompt-{secrets.token_hex(16)}.md"
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(prompt)
        yield path
    finally:
        shutil.rmtree(directory, ignore_errors=True)


def format_size(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes}B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f}KB"
    return f"{num_bytes / (1024 * 1024):.1f}MB"


def format_elapsed(seconds: float) -> str:
    whole = int(seconds)
    return f"{whole // 60}m{whole % 60}s"


def format_heartbeat(state: InvocationState, max_turns: int, elapsed_seconds: float) -> str:
    turn = f"Turn {state.turn}/{max_turns}" if max_turns > 0 else f"Turn {state.turn}"
    tool = f" | {state.last_tool}" if state.last_tool else ""
    return (
        f"[agent {format_elapsed(elapsed_seconds)}] {turn}{tool} | "
        f"{format_size(state.text_bytes)} text output"
    )


class SubprocessAgentBackend(AgentBackend):
    """Runs an agent CLI with the prompt on stdin and decodes its JSON stream."""

    binary: str

    def __init__(
        self,
        binary: str,
        *,
        heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary
        self.heartbeat_seconds = heartbeat_seconds
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @abstractmethod
    def build_command(self, options: AgentOptions, output_file: Path | None = None) -> list[str]:
        """Return the argument vector for one invocation."""

    @abstractmethod
    def make_decoder(self) -> StreamDecoder:
        """Return a fresh decoder for one invocation."""

    def wants_output_file(self) -> bool:
        return False

    async def invoke(self, prompt: str, options: AgentOptions) -> AgentResult:
        started = time.monotonic()
        with private_prompt_file(prompt) as prompt_path:
            output_file = prompt_path.parent / "last-message.md" if self.wants_output_file() else None
            command = self.build_command(options, output_file)
            decoder = self.make_decoder()
            state = InvocationState()
            prompt_bytes = len(prompt.encode("utf-8"))
            logger.info(
                "[%s] %s | prompt %s (~%d tokens) | timeout %s",
                options.label,
                self.name,
                format_size(prompt_bytes),
                prompt_bytes // 4,
                format_elapsed(options.timeout_seconds) if options.timeout_seconds else "none",
            )
            self._emit(
                {
                    "event": "agent_start",
                    "backend": self.name,
                    "label": options.label,
                    "command": command,
                    "permissions": options.permissions,
                }
            )
            with prompt_path.open("rb") as stdin_handle:
                try:
                    process = await asyncio.create_subprocess_exec(
                        *command,
                        cwd=str(options.cwd) if options.cwd else None,
                        stdin=stdin_handle,
                        stdout=asyncio.subprocess.PIPE,
                        stderr=asyncio.subprocess.PIPE,
                        limit=STREAM_LIMIT,
                    )
                except FileNotFoundError as exc:
                    raise AgentProcessError(
                        f"{self.name} binary not found: {self.binary}",
                        backend=self.name,
                        retriable=False,
                    ) from exc

                if process.stdout is None:
                    raise AgentProcessError(
                        f"{self.name} process did not expose stdout.",
                        backend=self.name,
                        retriable=False,
                    )

                raw_chunks: list[str] = []
                heartbeat = asyncio.create_task(self._heartbeat(state, options, started))
                stderr_task = asyncio.create_task(self._drain_stderr(process))
                return_code: int | None = None
                try:
                    return_code = await asyncio.wait_for(
                        self._communicate(process, decoder, state, raw_chunks),
                        timeout=options.timeout_seconds or None,
                    )
                except TimeoutError as exc:
                    partial, _ = decoder.finalize(state, "".join(raw_chunks))
                    elapsed = time.monotonic() - started
                    self._emit(
                        {
                            "event": "agent_timeout",
                            "backend": self.name,
                            "label": options.label,
                            "partial_bytes": len(partial.encode("utf-8")),
                        }
                    )
                    raise AgentTimeoutError(
                        f"{self.name} timed out after {format_elapsed(elapsed)}. "
                        f"Partial output: {format_size(len(partial.encode('utf-8')))}.",
                        backend=self.name,
                        retriable=True,
                        partial_output=partial,
                    ) from exc
                finally:
                    heartbeat.cancel()
                    if return_code is None:
                        _kill(process)
                        stderr_task.cancel()
                        await process.wait()
                stderr_output = await stderr_task

            output, source = decoder.finalize(state, "".join(raw_chunks))
            if output_file is not None and output_file.exists():
                file_output = output_file.read_text(encoding="utf-8").strip()
                if file_output:
                    output, source = file_output, "last_message_file"

        elapsed = time.monotonic() - started
        if return_code != 0:
            if not output.strip():
                self._emit(
                    {"event": "agent_exit", "backend": self.name, "exit_code": return_code}
                )
                raise AgentProcessError(
                    f"{self.name} exited with code {return_code} after "
                    f"{format_elapsed(elapsed)} with no output: {stderr_output[-400:]}",
                    backend=self.name,
                    exit_code=return_code,
                )
            logger.warning(
                "[%s] %s exited with code %s but produced output; using it",
                options.label,
                self.name,
                return_code,
            )

        if state.unparsed:
            logger.debug("[%s] %d unparsed records", options.label, len(state.unparsed))
        logger.info(
            "[%s] completed in %s | turns %d | %s in / %s out tokens | output %s (%s)",
            options.label,
            format_elapsed(elapsed),
            state.turns,
            state.input_tokens,
            state.output_tokens,
            format_size(len(output.encode("utf-8"))),
            source,
        )
        self._emit({"event": "agent_exit", "backend": self.name, "exit_code": return_code})
        return AgentResult(
            output=output,
            cost_usd=state.cost_usd,
            input_tokens=state.input_tokens,
            output_tokens=state.output_tokens,
            num_turns=state.turns,
            stop_reason=state.stop_reason or None,
            elapsed_seconds=elapsed,
            result_subtype=state.result_subtype or None,
            decoder=decoder.name,
            output_source=source,
            unparsed_records=list(state.unparsed),
        )

    async def _communicate(
        self,
        process: Any,
        decoder: StreamDecoder,
        state: InvocationState,
        raw_chunks: list[str],
    ) -> int:
        await self._consume(process, decoder, state, raw_chunks)
        return await process.wait()

    @staticmethod
    async def _consume(
        process: Any,
        decoder: StreamDecoder,
        state: InvocationState,
        raw_chunks: list[str],
    ) -> None:
        async for raw_line in process.stdout:
            decoded = raw_line.decode("utf-8", errors="replace")
            raw_chunks.append(decoded)
            line = decoded.strip()
            if not line:
                continue
            for record in decoder.decode_line(line):
                state.apply(record)

    @staticmethod
    async def _drain_stderr(process: Any) -> str:
        if process.stderr is None:
            return ""
        return (await process.stderr.read()).decode("utf-8", errors="replace").strip()

    async def _heartbeat(
        self, state: InvocationState, options: AgentOptions, started: float
    ) -> None:
        if self.heartbeat_seconds <= 0:
            return
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            line = format_heartbeat(state, options.max_turns, time.monotonic() - started)
            logger.info("%s", line)
            self._emit(
                {
                    "event": "agent_heartbeat",
                    "label": options.label,
                    "turn": state.turn,
                    "last_tool": state.last_tool,
                    "text_bytes": state.text_bytes,
                }
            )


def _kill(process: Any) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        logger.debug("process already exited before kill")
