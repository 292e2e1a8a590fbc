from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from shipwright.backends.base import (
    AgentBackend,
    AgentExecutionError,
    AgentOptions,
    AgentResult,
    AgentTimeoutError,
)

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]
SleepFn = Callable[[float], Awaitable[None]]
T = TypeVar("T")

TRANSIENT_MARKERS = ("timed out", "etimedout", "econnreset", "rate limit", "429", "503")


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 3
    delays_seconds: tuple[float, ...] = (30.0, 60.0, 120.0)

    def delay_for(self, retry_number: int) -> float:
        if not self.delays_seconds:
            return 0.0
        index = min(max(retry_number - 1, 0), len(self.delays_seconds) - 1)
        return self.delays_seconds[index]


def is_transient(exc: BaseException) -> bool:
    """Timeouts, connection resets, rate limits and 429/503 responses are transient."""
    if isinstance(exc, AgentTimeoutError):
        return True
    if isinstance(exc, AgentExecutionError) and not exc.retriable:
        return False
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


async def invoke_with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    classify: Callable[[BaseException], bool] = is_transient,
    sleep: SleepFn = asyncio.sleep,
    event_hook: BackendEventHook | None = None,
    label: str = "agent",
) -> T:
    def _emit(payload: dict[str, Any]) -> None:
        if event_hook is not None:
            event_hook(payload)

    attempt = 0
    while True:
        try:
            return await call()
        except Exception as exc:
            transient = classify(exc)
            _emit(
                {
                    "event": "backend_attempt_failed",
                    "label": label,
                    "attempt": attempt,
                    "error": str(exc)[:400],
                    "retriable": transient,
                }
            )
            if not transient:
                raise
            if attempt >= policy.max_retries:
                logger.error("[%s] giving up after %d attempts: %s", label, attempt + 1, exc)
                raise AgentExecutionError(
                    f"All {attempt + 1} attempts failed for {label}: {exc}",
                    backend=getattr(exc, "backend", None),
                    retriable=False,
                    partial_output=getattr(exc, "partial_output", ""),
                ) from exc
            attempt += 1
            delay = policy.delay_for(attempt)
            logger.warning(
                "[%s] transient failure (%s); retry %d/%d in %.0fs",
                label,
                exc,
                attempt,
                policy.max_retries,
                delay,
            )
            _emit(
                {
                    "event": "backend_retry",
                    "label": label,
                    "attempt": attempt,
                    "delay_seconds": delay,
                }
            )
            await sleep(delay)


class ResilientBackend(AgentBackend):
    """Wraps a backend with bounded retries of transient failures."""

    def __init__(
        self,
        backend: AgentBackend,
        retry_policy: RetryPolicy | None = None,
        *,
        event_hook: BackendEventHook | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.backend = backend
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_hook = event_hook
        self._sleep = sleep

    @property
    def name(self) -> str:  # type: ignore[override]
        return self.backend.name

    async def invoke(self, prompt: str, options: AgentOptions) -> AgentResult:
        return await invoke_with_retry(
            lambda: self.backend.invoke(prompt, options),
            policy=self.retry_policy,
            sleep=self._sleep,
            event_hook=self.event_hook,
            label=options.label,
        )
