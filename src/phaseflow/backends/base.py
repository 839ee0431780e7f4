from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when an agent backend cannot produce a response."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a single backend attempt exceeds its time budget."""


class BackendProcessError(BackendExecutionError):
    """Raised when the backend process cannot be started or read."""


class AgentBackend(ABC):
    name: str = "backend"

    @abstractmethod
    def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Run an agent in the worktree and stream its textual output."""

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> str:
        chunks: list[str] = []
        async for chunk in self.execute(system_prompt, user_prompt, context):
            chunks.append(chunk)
        return "".join(chunks).strip()
