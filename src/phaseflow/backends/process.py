from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from phaseflow.backends.base import AgentBackend, BackendExecutionError, BackendProcessError

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


def render_user_prompt(user_prompt: str, context: dict[str, Any]) -> str:
    visible = {key: value for key, value in context.items() if not key.startswith("_")}
    if not visible:
        return user_prompt
    return f"{user_prompt}\n\nContext JSON:\n{json.dumps(visible, ensure_ascii=False, indent=2)}"


def extract_text(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    for key in ("delta", "result"):
        value = event.get(key)
        if isinstance(value, str):
            return value
    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return extract_text(message)
    return ""


class SubprocessBackend(AgentBackend):
    """Streams JSON-lines output of an agent CLI running inside the worktree.

    Cancelling the consumer (for example through ``asyncio.wait_for``) kills
    the child process before the cancellation propagates.
    """

    name = "subprocess"

    def __init__(
        self,
        binary: str,
        working_directory: Path | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook({"backend": self.name, **payload})

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        raise NotImplementedError

    def build_env(self, system_prompt: str) -> dict[str, str]:
        return os.environ.copy()

    def _cwd(self, context: dict[str, Any]) -> str | None:
        override = context.get("_working_directory")
        if isinstance(override, str) and override.strip():
            return override
        return str(self.working_directory) if self.working_directory else None

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def _spawn(self, command: list[str], cwd: str | None, env: dict[str, str]):
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        process.kill()
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except TimeoutError:
            logger.warning("Agent process %s did not exit after kill", process.pid)

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context)
        self._emit({"event": "agent_process_start", "command": command[:3], "model": context.get("model")})
        process = await self._spawn(command, self._cwd(context), self.build_env(system_prompt))
        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )

        try:
            buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{buffer}{line}" if buffer else line
                try:
                    event = json.loads(candidate)
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        buffer = candidate
                        continue
                    buffer = ""
                    yield line
                    continue
                buffer = ""
                text = extract_text(event) if isinstance(event, dict) else ""
                if text:
                    yield text
            if buffer:
                yield buffer

            return_code = await process.wait()
        except BaseException:
            await self._terminate(process)
            raise

        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        self._emit({"event": "agent_process_exit", "exit_code": return_code})
        if return_code != 0:
            raise BackendExecutionError(
                f"{self.name} backend failed with exit code {return_code}: {stderr_output[:400]}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
