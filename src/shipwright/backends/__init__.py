from shipwright.backends.base import (
    AgentBackend,
    AgentExecutionError,
    AgentOptions,
    AgentProcessError,
    AgentResult,
    AgentTimeoutError,
)
from shipwright.backends.claude import ClaudeCodeBackend
from shipwright.backends.codex import CodexBackend, CodexCapabilities
from shipwright.backends.resilient import (
    ResilientBackend,
    RetryPolicy,
    invoke_with_retry,
    is_transient,
)

__all__ = [
    "AgentBackend",
    "AgentExecutionError",
    "AgentOptions",
    "AgentProcessError",
    "AgentResult",
    "AgentTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CodexCapabilities",
    "ResilientBackend",
    "RetryPolicy",
    "invoke_with_retry",
    "is_transient",
]
