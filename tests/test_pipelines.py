import pytest

from phaseflow.config import PhaseflowConfig
from phaseflow.models import StepKind
from phaseflow.pipelines import PhaseSpec, StepSpec, get_pipeline
from phaseflow.recorder import CODE
from phaseflow.validation import ValidationSpec

EXECUTE = StepSpec(StepKind.EXECUTE, "execute", "Implement '{feature}'.")
EXPLORE = StepSpec(StepKind.EXPLORE, "audit", "Audit '{feature}'.")


def _phase(**overrides) -> PhaseSpec:
    fields = {
        "name": "green",
        "steps": (EXECUTE,),
        "commit_prefix": "feat({feature}): GREEN",
        "authorized": frozenset({CODE}),
        "validation": ValidationSpec(expect="pass"),
    }
    fields.update(overrides)
    return PhaseSpec(**fields)


def test_build_phase_requires_a_validation_spec() -> None:
    with pytest.raises(ValueError, match="needs a validation spec"):
        _phase(validation=None)


def test_phase_requires_an_execute_step() -> None:
    with pytest.raises(ValueError, match="missing its execute step"):
        _phase(steps=())


def test_audit_phase_requires_an_explore_step() -> None:
    with pytest.raises(ValueError, match="missing its explore step"):
        _phase(name="security", audit=True)

    assert _phase(name="security", audit=True, steps=(EXPLORE, EXECUTE)).audit


def test_retry_budget_must_allow_one_attempt() -> None:
    with pytest.raises(ValueError, match="retry budget"):
        _phase(retry_budget=0)


def test_document_phase_needs_no_validation_spec() -> None:
    phase = _phase(name="prd", validation=None, document="prd.md", source="brief.md")

    with pytest.raises(ValueError, match="has no validation spec"):
        phase.validation_spec
    assert phase.required_step(StepKind.EXECUTE) is EXECUTE
    with pytest.raises(ValueError, match="has no plan step"):
        phase.required_step(StepKind.PLAN)


@pytest.mark.parametrize("name", ["tdd", "planning"])
def test_builtin_pipelines_construct(name: str) -> None:
    config = PhaseflowConfig.default()
    config.workflow.retry_budget = 2

    pipeline = get_pipeline(name, config)

    assert all(phase.retry_budget == 2 for phase in pipeline.phases)
    assert pipeline.index(pipeline.phases[-1].name) == 3


def test_unknown_pipeline_is_rejected() -> None:
    with pytest.raises(KeyError, match="Unknown pipeline"):
        get_pipeline("waterfall", PhaseflowConfig.default())
