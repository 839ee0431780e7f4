from __future__ import annotations

from phaseflow.specialists.base import SpecialistAgent


class ExplorerAgent(SpecialistAgent):
    role = "explore"
    default_prompt = """
You are the Explore specialist.
Read the repository and the phase inputs. Do not modify any file.
Report the files, conventions and constraints the next step must respect.
""".strip()
