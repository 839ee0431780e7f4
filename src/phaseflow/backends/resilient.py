from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from phaseflow.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0

    def delay(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


class ResilientBackend(AgentBackend):
    """Primary/fallback backend pair with per-attempt timeout and retry."""

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _candidates(self) -> list[tuple[str, AgentBackend]]:
        candidates = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            candidates.append((self.fallback_name, self.fallback_backend))
        return candidates

    async def _attempt(
        self,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        async def _consume() -> list[str]:
            return [chunk async for chunk in backend.execute(system_prompt, user_prompt, context)]

        try:
            return await asyncio.wait_for(_consume(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                backend=backend.name,
                retriable=True,
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        errors: list[str] = []
        chunks: list[str] | None = None
        for backend_name, backend in self._candidates():
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.delay(attempt)
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    chunks = await self._attempt(backend, system_prompt, user_prompt, context)
                except BackendExecutionError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                if backend_name != self.primary_name:
                    self._emit(
                        {"event": "backend_fallback_success", "backend": backend_name, "attempt": attempt}
                    )
                break
            if chunks is not None:
                break

        if chunks is None:
            raise BackendExecutionError(
                f"All backend attempts failed. {'; '.join(errors[-6:])}",
                retriable=False,
            )
        for chunk in chunks:
            yield chunk
