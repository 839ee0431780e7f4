from __future__ import annotations

from phaseflow.specialists.base import SpecialistAgent


class ExecutorAgent(SpecialistAgent):
    role = "execute"
    default_prompt = """
You are the Execute specialist.
Apply the plan to the working tree, touching only the files this phase allows.
Never edit locked test files. Do not commit; the orchestrator commits.
When you cannot complete the task, print {"status": "failure", "reason": "..."} on its own line.
""".strip()
