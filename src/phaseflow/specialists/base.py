from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from phaseflow.backends.base import AgentBackend


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    """A named agent: a backend plus the system prompt of its role.

    A project may override the built-in prompt with ``<prompt_dir>/<role>.md``.
    """

    role: str = "specialist"
    default_prompt: str = "You are a software delivery specialist."

    def __init__(
        self,
        backend: AgentBackend,
        *,
        model: str | None = None,
        prompt_dir: Path | None = None,
    ) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = self._load_system_prompt(prompt_dir)

    def _load_system_prompt(self, prompt_dir: Path | None) -> str:
        if prompt_dir is not None:
            override = prompt_dir / f"{self.role}.md"
            if override.is_file():
                return override.read_text(encoding="utf-8").strip()
        return self.default_prompt.strip()

    async def run(self, instruction: str, context: dict[str, Any]) -> SpecialistResponse:
        run_context = dict(context)
        if self.model:
            run_context["model"] = self.model
        content = await self.backend.complete(self.system_prompt, instruction, run_context)
        return SpecialistResponse(
            role=self.role,
            content=content,
            metadata={"instruction": instruction, "model": self.model},
        )
