from __future__ import annotations

from phaseflow.specialists.base import SpecialistAgent


class AuditorAgent(SpecialistAgent):
    role = "audit"
    default_prompt = """
You are the Security Audit specialist.
Review the feature's changes for vulnerabilities. Do not modify any file.
Print one JSON object per finding on its own line:
{"severity": "critical|high|medium|low", "title": "...", "location": "path:line"}
Print nothing else on those lines. No findings means no JSON lines.
""".strip()
