from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from phaseflow.backends.process import EventHook, SubprocessBackend, render_user_prompt


class CodexBackend(SubprocessBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
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
            "exec",
            "--json",
            "--full-auto",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["-m", model.strip()])
        command.append(render_user_prompt(user_prompt, context))
        return command
