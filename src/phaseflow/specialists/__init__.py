from phaseflow.specialists.auditor import AuditorAgent
from phaseflow.specialists.base import SpecialistAgent, SpecialistResponse
from phaseflow.specialists.executor import ExecutorAgent
from phaseflow.specialists.explorer import ExplorerAgent
from phaseflow.specialists.planner import PlannerAgent

__all__ = [
    "AuditorAgent",
    "ExecutorAgent",
    "ExplorerAgent",
    "PlannerAgent",
    "SpecialistAgent",
    "SpecialistResponse",
]
