import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from phaseflow.backends.base import AgentBackend
from phaseflow.specialists import AuditorAgent, ExecutorAgent, PlannerAgent


class FakeBackend(AgentBackend):
    def __init__(self) -> None:
        self.execute_calls = 0
        self.last_system_prompt: str | None = None
        self.last_context: dict[str, Any] | None = None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        self.last_system_prompt = system_prompt
        self.last_context = context
        self.execute_calls += 1
        yield f"planned: {user_prompt}  "


def test_planner_specialist_runs() -> None:
    backend = FakeBackend()
    planner = PlannerAgent(backend, model="claude-opus-4-1")

    response = asyncio.run(planner.run("Plan the filter", {"feature": "add-priority-filter"}))

    assert response.role == "plan"
    assert response.content == "planned: Plan the filter"
    assert backend.execute_calls == 1
    assert backend.last_context == {"feature": "add-priority-filter", "model": "claude-opus-4-1"}
    assert response.metadata["model"] == "claude-opus-4-1"


def test_specialist_without_model_leaves_context_untouched() -> None:
    backend = FakeBackend()
    context = {"feature": "x"}

    asyncio.run(ExecutorAgent(backend).run("Implement", context))

    assert backend.last_context == {"feature": "x"}
    assert context == {"feature": "x"}
    assert backend.last_system_prompt is not None
    assert '{"status": "failure"' in backend.last_system_prompt


def test_prompt_override_from_project_directory(tmp_path: Path) -> None:
    prompt_dir = tmp_path / "prompts"
    prompt_dir.mkdir()
    (prompt_dir / "audit.md").write_text("Audit with the OWASP top ten.\n", encoding="utf-8")
    backend = FakeBackend()

    auditor = AuditorAgent(backend, prompt_dir=prompt_dir)
    executor = ExecutorAgent(backend, prompt_dir=prompt_dir)

    assert auditor.system_prompt == "Audit with the OWASP top ten."
    assert executor.system_prompt.startswith("You are the Execute specialist.")
