from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from phaseflow.models import FailureKind, ValidationResult

FAILURE_PATTERNS: list[tuple[FailureKind, re.Pattern[str]]] = [
    (
        FailureKind.DEPENDENCY,
        re.compile(
            r"(Cannot find package|peer dep|ERESOLVE|No matching distribution|"
            r"could not resolve dependenc|version conflict)",
            re.IGNORECASE,
        ),
    ),
    (
        FailureKind.IMPORT,
        re.compile(
            r"(ModuleNotFoundError|ImportError|Cannot find module|Module not found|"
            r"is not exported|has no exported member)",
            re.IGNORECASE,
        ),
    ),
    (
        FailureKind.SCHEMA,
        re.compile(
            r"(migration (?:failed|pending)|schema (?:validation|mismatch|error)|"
            r"relation \"[^\"]+\" does not exist|no such table|unknown column|PrismaClient|P20\d\d)",
            re.IGNORECASE,
        ),
    ),
    (
        FailureKind.TYPE,
        re.compile(
            r"(TypeError|error TS\d+|is not assignable to|mypy|"
            r"has no attribute|is not a function|incompatible type)",
            re.IGNORECASE,
        ),
    ),
    (
        FailureKind.LOGIC,
        re.compile(
            r"(AssertionError|assert |Expected|expect\(|toBe|toEqual|!=|FAILED)",
        ),
    ),
]

GUIDANCE = {
    FailureKind.LOGIC: "Fix the implementation so the failing assertions hold. Do not edit the tests.",
    FailureKind.TYPE: "Fix the type errors reported below: signatures, return types and attribute names.",
    FailureKind.SCHEMA: "Align the data schema and migrations with what the tests expect.",
    FailureKind.IMPORT: "Create or export the missing module or symbol at the path the tests import.",
    FailureKind.DEPENDENCY: "Resolve the dependency problem without upgrading unrelated packages.",
    FailureKind.UNKNOWN: "Read the test output below and address its first error.",
}


@dataclass(slots=True)
class Diagnosis:
    kind: FailureKind
    attempt: int
    reasons: list[str] = field(default_factory=list)
    excerpt: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": str(self.kind),
            "attempt": self.attempt,
            "reasons": list(self.reasons),
            "excerpt": self.excerpt,
        }


class FailureClassifier(ABC):
    @abstractmethod
    def classify(self, result: ValidationResult, reasons: list[str]) -> FailureKind:
        """Return the failure category of a failed validation."""


class RegexFailureClassifier(FailureClassifier):
    """Matches the test output against ordered patterns; the first hit wins."""

    def __init__(self, patterns: list[tuple[FailureKind, re.Pattern[str]]] | None = None) -> None:
        self.patterns = patterns if patterns is not None else FAILURE_PATTERNS

    def classify(self, result: ValidationResult, reasons: list[str]) -> FailureKind:
        text = result.output_tail
        for kind, pattern in self.patterns:
            if pattern.search(text):
                return kind
        if result.failed_cases > 0:
            return FailureKind.LOGIC
        if any("coverage" in reason.lower() for reason in reasons):
            return FailureKind.LOGIC
        return FailureKind.UNKNOWN


def _excerpt(output: str, limit: int = 1200) -> str:
    lines = [line for line in output.splitlines() if line.strip()]
    text = "\n".join(lines[-40:])
    return text[-limit:]


def diagnose(
    classifier: FailureClassifier,
    result: ValidationResult,
    reasons: list[str],
    attempt: int,
) -> Diagnosis:
    return Diagnosis(
        kind=classifier.classify(result, reasons),
        attempt=attempt,
        reasons=list(reasons),
        excerpt=_excerpt(result.output_tail),
    )


def build_followup_prompt(base_instruction: str, diagnosis: Diagnosis, budget: int) -> str:
    parts = [
        base_instruction,
        "",
        f"Attempt {diagnosis.attempt} of {budget} failed validation ({diagnosis.kind} failure).",
        GUIDANCE[diagnosis.kind],
    ]
    if diagnosis.reasons:
        parts.append("Validation reported:")
        parts.extend(f"- {reason}" for reason in diagnosis.reasons)
    if diagnosis.excerpt:
        parts.extend(["Test output excerpt:", diagnosis.excerpt])
    return "\n".join(parts)
