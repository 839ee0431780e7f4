from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from phaseflow.backends.process import EventHook, SubprocessBackend, render_user_prompt


class ClaudeCodeBackend(SubprocessBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        super().__init__(binary, working_directory, event_hook)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        command = [
            self.binary,
            "-p",
            render_user_prompt(user_prompt, context),
            "--output-format",
            "stream-json",
            "--verbose",
            "--append-system-prompt",
            system_prompt,
        ]
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["--model", model.strip()])
        return command

    def build_env(self, system_prompt: str) -> dict[str, str]:
        env = os.environ.copy()
        env.setdefault("CLAUDE_CODE_ENTRYPOINT", "phaseflow")
        return env
