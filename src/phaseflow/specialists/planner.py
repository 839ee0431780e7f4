from __future__ import annotations

from phaseflow.specialists.base import SpecialistAgent


class PlannerAgent(SpecialistAgent):
    role = "plan"
    default_prompt = """
You are the Plan specialist.
Turn the exploration notes into a short numbered list of concrete edits.
Do not modify any file. Stay inside the scope of the current phase.
""".strip()
