from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from phaseflow.coordination import CoordinationLayer
from phaseflow.models import Run, ValidationResult
from phaseflow.state.artifacts import ArtifactStore
from phaseflow.state.vcs import VCS
from phaseflow.validation import TestScope, ValidationEngine, ValidationSpec

if TYPE_CHECKING:
    from phaseflow.pipelines import PhaseSpec

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ArtifactExists:
    path: str
    kind: str | None = None

    def describe(self) -> str:
        suffix = f" ({self.kind})" if self.kind else ""
        return f"artifact '{self.path}' exists{suffix}"


@dataclass(slots=True, frozen=True)
class VCSMarkerExists:
    pattern: str

    def describe(self) -> str:
        return f"a commit matching /{self.pattern}/"


@dataclass(slots=True, frozen=True)
class ValidationState:
    expect: Literal["fail", "pass"]
    scope: tuple[str, ...] = ()

    def describe(self) -> str:
        where = ", ".join(self.scope) if self.scope else "the full suite"
        return f"tests in {where} currently {'fail' if self.expect == 'fail' else 'pass'}"


@dataclass(slots=True, frozen=True)
class CoordinationReady:
    worktree: str
    phase: str | None = None
    waiting_on: str = ""

    def describe(self) -> str:
        target = f" ({self.waiting_on})" if self.waiting_on else ""
        return f"coordination ready for {self.worktree}/{self.phase or '*'}{target}"


Requirement = ArtifactExists | VCSMarkerExists | ValidationState | CoordinationReady


def requirement_to_dict(requirement: Requirement) -> dict[str, Any]:
    return {
        "type": type(requirement).__name__,
        "requirement": requirement.describe(),
    }


def expand(requirement: Requirement, run: Run) -> Requirement:
    """Substitute ``{feature}`` in paths and patterns with the run's feature."""
    if isinstance(requirement, ArtifactExists):
        return ArtifactExists(requirement.path.format(feature=run.feature), requirement.kind)
    if isinstance(requirement, VCSMarkerExists):
        return VCSMarkerExists(requirement.pattern.replace("{feature}", re.escape(run.feature)))
    return requirement


class PrerequisiteGate:
    """Evaluates a phase's declarative requirements against current state.

    Evaluation never writes: the same state always yields the same answer.
    """

    def __init__(
        self,
        store: ArtifactStore,
        vcs: VCS,
        validation: ValidationEngine,
        coordination: CoordinationLayer | None = None,
    ) -> None:
        self.store = store
        self.vcs = vcs
        self.validation = validation
        self.coordination = coordination
        self._checks: dict[type, Callable[[Any, Run], bool]] = {
            ArtifactExists: self._artifact_exists,
            VCSMarkerExists: self._marker_exists,
            ValidationState: self._validation_state,
        }

    def _artifact_exists(self, requirement: ArtifactExists, run: Run) -> bool:
        if not self.store.exists(requirement.path):
            return False
        if requirement.kind is None:
            return True
        record = self.store.record(requirement.path)
        return record is not None and record.kind == requirement.kind

    def _marker_exists(self, requirement: VCSMarkerExists, run: Run) -> bool:
        return self.vcs.has_commit_matching(requirement.pattern)

    def _validation_state(self, requirement: ValidationState, run: Run) -> bool:
        result: ValidationResult = self.validation.run(TestScope(paths=requirement.scope))
        verdict = self.validation.evaluate(result, ValidationSpec(expect=requirement.expect))
        return verdict.ok

    def requirements_for(self, phase: PhaseSpec, run: Run) -> list[Requirement]:
        requirements: list[Requirement] = [expand(item, run) for item in phase.gate]
        if self.coordination is not None:
            for edge in self.coordination.pending(run.worktree, phase.name):
                requirements.append(
                    CoordinationReady(
                        worktree=run.worktree,
                        phase=phase.name,
                        waiting_on=f"{edge.producer} {edge.kind}",
                    )
                )
        return requirements

    def evaluate(self, phase: PhaseSpec, run: Run) -> tuple[bool, list[Requirement]]:
        missing: list[Requirement] = []
        for requirement in self.requirements_for(phase, run):
            if isinstance(requirement, CoordinationReady):
                missing.append(requirement)
                continue
            check = self._checks[type(requirement)]
            if not check(requirement, run):
                missing.append(requirement)
        if missing:
            logger.info(
                "Gate for %s/%s unmet: %s",
                run.feature,
                phase.name,
                "; ".join(item.describe() for item in missing),
            )
        return not missing, missing
