from phaseflow.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from phaseflow.backends.claude import ClaudeCodeBackend
from phaseflow.backends.codex import CodexBackend
from phaseflow.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "ResilientBackend",
    "RetryPolicy",
]
