from __future__ import annotations

from dataclasses import dataclass, field

from phaseflow.config import PhaseflowConfig
from phaseflow.gate import ArtifactExists, Requirement, ValidationState, VCSMarkerExists
from phaseflow.models import StepKind
from phaseflow.recorder import CODE, DOC, REPORT, SCHEMA, TEST
from phaseflow.validation import CoveragePolicy, ValidationSpec


@dataclass(slots=True, frozen=True)
class StepSpec:
    kind: StepKind
    agent: str
    instruction: str
    optional: bool = False


@dataclass(slots=True, frozen=True)
class PhaseSpec:
    name: str
    steps: tuple[StepSpec, ...]
    commit_prefix: str
    authorized: frozenset[str]
    gate: tuple[Requirement, ...] = ()
    validation: ValidationSpec | None = None
    lock_categories: frozenset[str] = frozenset()
    publishes: tuple[str, ...] = ()
    forbid_new_functionality: bool = False
    retry_budget: int = 3
    audit: bool = False
    document: str | None = None
    source: str | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("A phase needs a name.")
        if self.retry_budget < 1:
            raise ValueError(f"Phase '{self.name}' needs a retry budget of at least 1.")
        required = [StepKind.EXECUTE]
        if self.audit:
            required.append(StepKind.EXPLORE)
        missing = [str(kind) for kind in required if self.step(kind) is None]
        if missing:
            raise ValueError(f"Phase '{self.name}' is missing its {', '.join(missing)} step.")
        if self.document is None and self.validation is None:
            raise ValueError(f"Phase '{self.name}' needs a validation spec.")

    @property
    def title(self) -> str:
        return self.name.upper()

    @property
    def validation_spec(self) -> ValidationSpec:
        if self.validation is None:
            raise ValueError(f"Phase '{self.name}' has no validation spec.")
        return self.validation

    def commit_message(self, feature: str) -> str:
        return self.commit_prefix.format(feature=feature)

    def step(self, kind: StepKind) -> StepSpec | None:
        for step in self.steps:
            if step.kind == kind:
                return step
        return None

    def required_step(self, kind: StepKind) -> StepSpec:
        step = self.step(kind)
        if step is None:
            raise ValueError(f"Phase '{self.name}' has no {kind} step.")
        return step


@dataclass(slots=True, frozen=True)
class PipelineDefinition:
    name: str
    phases: tuple[PhaseSpec, ...] = field(default_factory=tuple)

    def phase(self, name: str) -> PhaseSpec:
        for phase in self.phases:
            if phase.name == name.lower():
                return phase
        raise KeyError(f"Pipeline '{self.name}' has no phase '{name}'.")

    def index(self, name: str) -> int:
        return [phase.name for phase in self.phases].index(name.lower())


def _prep_steps(config: PhaseflowConfig, goal: str) -> list[StepSpec]:
    steps: list[StepSpec] = []
    if not config.workflow.skip_explore:
        steps.append(
            StepSpec(StepKind.EXPLORE, "explore", f"Explore the repository for: {goal}", optional=True)
        )
    if not config.workflow.skip_plan:
        steps.append(
            StepSpec(StepKind.PLAN, "plan", f"Plan the smallest set of edits for: {goal}", optional=True)
        )
    return steps


def tdd_pipeline(config: PhaseflowConfig) -> PipelineDefinition:
    workflow = config.workflow
    budget = workflow.retry_budget

    red = PhaseSpec(
        name="red",
        steps=(
            *_prep_steps(config, "failing tests that specify feature '{feature}'"),
            StepSpec(
                StepKind.EXECUTE,
                "execute",
                "Write failing tests that specify the behaviour of feature '{feature}'. "
                "Only add or edit test files. Do not implement the feature.",
            ),
        ),
        commit_prefix="test({feature}): RED failing tests",
        authorized=frozenset({TEST}),
        validation=ValidationSpec(expect="fail"),
        lock_categories=frozenset({TEST}),
        retry_budget=budget,
    )
    green = PhaseSpec(
        name="green",
        gate=(
            ArtifactExists("red/summary.md", kind="summary"),
            VCSMarkerExists(r"^test\({feature}\): RED"),
            ValidationState(expect="fail"),
        ),
        steps=(
            *_prep_steps(config, "the minimal implementation that makes the RED tests of '{feature}' pass"),
            StepSpec(
                StepKind.EXECUTE,
                "execute",
                "Implement the minimal code that makes the failing tests of feature '{feature}' pass. "
                "Do not modify any test file.",
            ),
        ),
        commit_prefix="feat({feature}): GREEN implementation",
        authorized=frozenset({CODE, SCHEMA}),
        validation=ValidationSpec(
            expect="pass",
            coverage=CoveragePolicy(
                mode="target",
                statements=workflow.coverage_statements_target,
                branches=workflow.coverage_branches_target,
            ),
        ),
        publishes=("schema",),
        retry_budget=budget,
    )
    refactor = PhaseSpec(
        name="refactor",
        gate=(
            ArtifactExists("green/summary.md", kind="summary"),
            VCSMarkerExists(r"^feat\({feature}\): GREEN"),
            ValidationState(expect="pass"),
        ),
        steps=(
            *_prep_steps(config, "behaviour-preserving refactoring of feature '{feature}'"),
            StepSpec(
                StepKind.EXECUTE,
                "execute",
                "Refactor the implementation of feature '{feature}' without changing behaviour. "
                "Do not add tests, do not edit tests, do not add public functions or classes.",
            ),
        ),
        commit_prefix="refactor({feature}): REFACTOR",
        authorized=frozenset({CODE}),
        validation=ValidationSpec(
            expect="pass",
            coverage=CoveragePolicy(mode="baseline", tolerance=workflow.refactor_coverage_tolerance),
            require_stable_test_count=True,
        ),
        forbid_new_functionality=True,
        retry_budget=budget,
    )
    security = PhaseSpec(
        name="security",
        gate=(
            ArtifactExists("refactor/summary.md", kind="summary"),
            ValidationState(expect="pass"),
        ),
        steps=(
            StepSpec(
                StepKind.EXPLORE,
                "audit",
                "Audit the changes of feature '{feature}' for security vulnerabilities.",
            ),
            StepSpec(
                StepKind.EXECUTE,
                "execute",
                "Remediate the critical security findings of feature '{feature}' listed below. "
                "Add one regression test per fix.",
            ),
        ),
        commit_prefix="security({feature}): SECURITY audit",
        authorized=frozenset({CODE, TEST, REPORT}),
        validation=ValidationSpec(
            expect="pass",
            coverage=CoveragePolicy(mode="baseline", tolerance=workflow.security_coverage_tolerance),
            require_test_growth=True,
        ),
        publishes=("code",),
        retry_budget=budget,
        audit=True,
    )
    return PipelineDefinition(name="tdd", phases=(red, green, refactor, security))


def planning_pipeline(config: PhaseflowConfig) -> PipelineDefinition:
    budget = config.workflow.retry_budget
    documents = (
        ("prd", "product requirements document", "brief.md"),
        ("spec", "technical specification", "prd/prd.md"),
        ("plan", "implementation plan", "spec/spec.md"),
        ("breakdown", "story breakdown", "plan/plan.md"),
    )
    phases: list[PhaseSpec] = []
    previous: str | None = None
    for name, label, source in documents:
        gate: list[Requirement] = [ArtifactExists(source)]
        if previous is not None:
            gate.append(VCSMarkerExists(rf"^docs\({{feature}}\): {previous.upper()}\b"))
        phases.append(
            PhaseSpec(
                name=name,
                gate=tuple(gate),
                steps=(
                    StepSpec(
                        StepKind.EXECUTE,
                        "plan",
                        f"Write the {label} for feature '{{feature}}' based on the input document "
                        "below. Reply with the document in Markdown only.",
                    ),
                ),
                commit_prefix=f"docs({{feature}}): {name.upper()} {label}",
                authorized=frozenset({DOC}),
                lock_categories=frozenset({DOC}),
                retry_budget=budget,
                document=f"{name}.md",
                source=source,
            )
        )
        previous = name
    return PipelineDefinition(name="planning", phases=tuple(phases))


PIPELINES = {
    "tdd": tdd_pipeline,
    "planning": planning_pipeline,
}


def get_pipeline(name: str, config: PhaseflowConfig) -> PipelineDefinition:
    try:
        factory = PIPELINES[name]
    except KeyError as exc:
        raise KeyError(f"Unknown pipeline '{name}'; choose from {sorted(PIPELINES)}.") from exc
    return factory(config)
