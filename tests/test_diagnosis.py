import re

from phaseflow.diagnosis import (
    Diagnosis,
    RegexFailureClassifier,
    build_followup_prompt,
    diagnose,
)
from phaseflow.models import FailureKind, ValidationResult


def _failed(output: str, failed_cases: int = 1) -> ValidationResult:
    return ValidationResult(passed=False, total_cases=3, failed_cases=failed_cases, exit_code=1, output_tail=output)


def test_classifier_categories() -> None:
    classifier = RegexFailureClassifier()

    assert classifier.classify(_failed("ERESOLVE unable to resolve dependency tree"), []) == FailureKind.DEPENDENCY
    assert classifier.classify(_failed("ModuleNotFoundError: No module named 'tasks'"), []) == FailureKind.IMPORT
    assert classifier.classify(_failed('relation "tasks" does not exist'), []) == FailureKind.SCHEMA
    assert classifier.classify(_failed("TypeError: filter() got an unexpected keyword"), []) == FailureKind.TYPE
    assert classifier.classify(_failed("AssertionError: assert 2 == 3"), []) == FailureKind.LOGIC


def test_schema_is_not_inferred_from_file_names() -> None:
    classifier = RegexFailureClassifier()

    kind = classifier.classify(_failed("FAILED tests/test_schema.py::test_priority - assert 1 == 2"), [])

    assert kind == FailureKind.LOGIC


def test_unknown_and_coverage_fallbacks() -> None:
    classifier = RegexFailureClassifier()
    coverage_only = ValidationResult(passed=True, total_cases=3, output_tail="3 passed")

    assert classifier.classify(_failed("segfault", failed_cases=0), []) == FailureKind.UNKNOWN
    assert classifier.classify(coverage_only, ["Statements coverage 70.0% is below target 80.0%."]) == FailureKind.LOGIC


def test_custom_patterns_take_precedence() -> None:
    classifier = RegexFailureClassifier([(FailureKind.SCHEMA, re.compile("drizzle"))])

    assert classifier.classify(_failed("drizzle push failed"), []) == FailureKind.SCHEMA


def test_followup_prompt_is_targeted() -> None:
    result = _failed("E   AssertionError: expected 2 tasks, got 3\nFAILED tests/test_filter.py")
    diagnosis = diagnose(RegexFailureClassifier(), result, ["1 of 3 test(s) failing (exit code 1)."], attempt=1)

    prompt = build_followup_prompt("Implement the filter.", diagnosis, budget=3)

    assert isinstance(diagnosis, Diagnosis)
    assert diagnosis.to_dict()["kind"] == "logic"
    assert prompt.startswith("Implement the filter.")
    assert "Attempt 1 of 3 failed validation (logic failure)." in prompt
    assert "Do not edit the tests." in prompt
    assert "- 1 of 3 test(s) failing (exit code 1)." in prompt
    assert "expected 2 tasks, got 3" in prompt
