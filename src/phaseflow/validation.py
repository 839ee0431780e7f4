from __future__ import annotations

import logging
import re
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from phaseflow.models import ValidationResult
from phaseflow.parsing import extract_json_objects, tail

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
PYTEST_SUMMARY_PATTERN = re.compile(r"(\d+) (passed|failed|errors?)\b")
JEST_TESTS_LINE = re.compile(r"^\s*Tests:?\s+(.*)$", re.MULTILINE)
COUNT_PATTERN = re.compile(r"(\d+) (passed|failed|skipped|todo|total)\b")
VITEST_TOTAL_PATTERN = re.compile(r"\((\d+)\)")
ISTANBUL_LINE_PATTERN = re.compile(r"^\s*(Statements|Branches)\s*:\s*([\d.]+)%", re.MULTILINE)
ISTANBUL_TABLE_PATTERN = re.compile(r"^\s*All files\s*\|\s*([\d.]+)\s*\|\s*([\d.]+)", re.MULTILINE)
COVERAGE_PY_TOTAL = re.compile(r"^TOTAL((?:\s+\d+)+)\s+(\d+(?:\.\d+)?)%\s*$", re.MULTILINE)

CoverageMode = Literal["none", "target", "baseline"]


@dataclass(slots=True, frozen=True)
class TestScope:
    __test__ = False

    paths: tuple[str, ...] = ()

    @property
    def is_full(self) -> bool:
        return not self.paths

    @classmethod
    def full(cls) -> TestScope:
        return cls()

    @classmethod
    def of(cls, paths: list[str]) -> TestScope:
        return cls(paths=tuple(sorted(set(paths))))


class TestRunner(ABC):
    __test__ = False

    @abstractmethod
    def run_tests(self, scope: TestScope) -> ValidationResult:
        """Run the tests in ``scope`` (the full suite when empty)."""


def _percent(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        return max(0.0, min(100.0, float(value)))
    except ValueError:
        return None


def _counts_from_json(payload: dict) -> tuple[int, int] | None:
    total = payload.get("total", payload.get("tests", payload.get("numTotalTests")))
    failed = payload.get("failed", payload.get("numFailedTests"))
    if total is None and failed is None:
        return None
    try:
        failed_count = int(failed or 0)
        total_count = int(total) if total is not None else failed_count + int(payload.get("passed", 0))
    except (TypeError, ValueError):
        return None
    return total_count, failed_count


def _coverage_from_json(payload: dict) -> tuple[float | None, float | None]:
    coverage = payload.get("coverage")
    if isinstance(coverage, dict):
        return _percent(coverage.get("statements")), _percent(coverage.get("branches"))
    statements = payload.get("coverage_statements", coverage)
    return _percent(statements), _percent(payload.get("coverage_branches"))


def _counts_from_text(output: str) -> tuple[int, int] | None:
    for line in reversed(JEST_TESTS_LINE.findall(output)):
        counts = {label: int(number) for number, label in COUNT_PATTERN.findall(line)}
        if not counts:
            continue
        failed = counts.get("failed", 0)
        total = counts.get("total")
        if total is None:
            match = VITEST_TOTAL_PATTERN.search(line)
            total = int(match.group(1)) if match else failed + counts.get("passed", 0)
        return total, failed

    for line in reversed(output.splitlines()):
        found = PYTEST_SUMMARY_PATTERN.findall(line)
        if not found:
            continue
        counts: dict[str, int] = {}
        for number, label in found:
            key = "failed" if label.startswith("error") else label
            counts[key] = counts.get(key, 0) + int(number)
        failed = counts.get("failed", 0)
        return failed + counts.get("passed", 0), failed
    return None


def _coverage_from_text(output: str) -> tuple[float | None, float | None]:
    found = {label.lower(): float(value) for label, value in ISTANBUL_LINE_PATTERN.findall(output)}
    if found:
        return _percent(found.get("statements")), _percent(found.get("branches"))

    table = ISTANBUL_TABLE_PATTERN.search(output)
    if table:
        return _percent(table.group(1)), _percent(table.group(2))

    total = COVERAGE_PY_TOTAL.search(output)
    if total:
        numbers = [int(item) for item in total.group(1).split()]
        cover = _percent(total.group(2))
        # Stmts Miss Branch BrPart Cover
        if len(numbers) == 4 and numbers[0]:
            statements = 100.0 * (numbers[0] - numbers[1]) / numbers[0]
            branches = 100.0 * (numbers[2] - numbers[3]) / numbers[2] if numbers[2] else None
            return round(statements, 2), None if branches is None else round(branches, 2)
        return cover, None
    return None, None


def parse_test_output(output: str, exit_code: int, scope: TestScope) -> ValidationResult:
    counts: tuple[int, int] | None = None
    statements: float | None = None
    branches: float | None = None
    for payload in extract_json_objects(output):
        counts = _counts_from_json(payload) or counts
        json_statements, json_branches = _coverage_from_json(payload)
        statements = json_statements if json_statements is not None else statements
        branches = json_branches if json_branches is not None else branches

    if counts is None:
        counts = _counts_from_text(output)
    if statements is None and branches is None:
        statements, branches = _coverage_from_text(output)

    total, failed = counts if counts is not None else (0, 0)
    if exit_code != 0 and failed == 0 and counts is None:
        logger.debug("Test command exited %s without a recognisable summary", exit_code)
    return ValidationResult(
        passed=exit_code == 0 and failed == 0,
        total_cases=total,
        failed_cases=failed,
        coverage_statements=statements,
        coverage_branches=branches,
        scope=list(scope.paths),
        exit_code=exit_code,
        output_tail=tail(output),
    )


class CommandTestRunner(TestRunner):
    """Runs the project's test command and parses its summary output."""

    def __init__(
        self,
        root: Path,
        command: str,
        *,
        scoped_command: str = "{command} {scope}",
        timeout_seconds: float = 900.0,
    ) -> None:
        self.root = root
        self.command = command
        self.scoped_command = scoped_command
        self.timeout_seconds = timeout_seconds

    def render_command(self, scope: TestScope) -> str:
        if scope.is_full:
            return self.command.strip()
        rendered_scope = " ".join(shlex.quote(path) for path in scope.paths)
        return self.scoped_command.format(command=self.command.strip(), scope=rendered_scope).strip()

    def run_tests(self, scope: TestScope) -> ValidationResult:
        command_text = self.render_command(scope)
        if not command_text:
            return ValidationResult(passed=False, exit_code=1, output_tail="Test command is empty.")

        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        command_payload: str | list[str] = command_text
        if not used_shell:
            try:
                command_payload = shlex.split(command_text)
            except ValueError:
                used_shell = True

        logger.info("Running tests: %s", command_text)
        try:
            proc = subprocess.run(
                command_payload,
                cwd=self.root,
                shell=used_shell,
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            output = f"{exc.stdout or ''}\n{exc.stderr or ''}"
            return ValidationResult(
                passed=False,
                scope=list(scope.paths),
                exit_code=124,
                output_tail=tail(f"{output}\nTest command timed out after {self.timeout_seconds}s"),
            )
        except FileNotFoundError as exc:
            return ValidationResult(
                passed=False, scope=list(scope.paths), exit_code=127, output_tail=str(exc)
            )
        return parse_test_output(f"{proc.stdout}\n{proc.stderr}", proc.returncode, scope)


@dataclass(slots=True, frozen=True)
class CoveragePolicy:
    mode: CoverageMode = "none"
    statements: float | None = None
    branches: float | None = None
    tolerance: float = 0.0


@dataclass(slots=True, frozen=True)
class ValidationSpec:
    expect: Literal["pass", "fail"] = "pass"
    coverage: CoveragePolicy = field(default_factory=CoveragePolicy)
    require_stable_test_count: bool = False
    require_test_growth: bool = False


@dataclass(slots=True)
class Verdict:
    ok: bool
    result: ValidationResult
    reasons: list[str] = field(default_factory=list)


def _delta(current: float | None, baseline: float | None) -> float | None:
    if current is None or baseline is None:
        return None
    return round(current - baseline, 4)


class ValidationEngine:
    def __init__(self, runner: TestRunner) -> None:
        self.runner = runner

    def run(
        self,
        scope: TestScope | None = None,
        *,
        baseline: ValidationResult | None = None,
    ) -> ValidationResult:
        result = self.runner.run_tests(scope or TestScope.full())
        if baseline is not None:
            deltas = {
                "total_cases": float(result.total_cases - baseline.total_cases),
                "coverage_statements": _delta(result.coverage_statements, baseline.coverage_statements),
                "coverage_branches": _delta(result.coverage_branches, baseline.coverage_branches),
            }
            result.delta_from_baseline = {key: value for key, value in deltas.items() if value is not None}
        return result

    def evaluate(
        self,
        result: ValidationResult,
        spec: ValidationSpec,
        baseline: ValidationResult | None = None,
    ) -> Verdict:
        reasons: list[str] = []
        if spec.expect == "fail":
            if result.passed:
                reasons.append("Tests passed but this phase expects them to fail.")
            elif result.total_cases == 0 and result.exit_code == 0:
                reasons.append("No failing tests were reported.")
            return Verdict(ok=not reasons, result=result, reasons=reasons)

        if not result.passed:
            reasons.append(
                f"{result.failed_cases} of {result.total_cases} test(s) failing "
                f"(exit code {result.exit_code})."
            )
        reasons.extend(self._coverage_reasons(result, spec.coverage, baseline))
        if baseline is not None:
            if spec.require_stable_test_count and result.total_cases != baseline.total_cases:
                reasons.append(
                    f"Test count changed from {baseline.total_cases} to {result.total_cases}."
                )
            if spec.require_test_growth and result.total_cases <= baseline.total_cases:
                reasons.append(
                    f"Expected new regression tests; test count stayed at {result.total_cases}."
                )
        return Verdict(ok=not reasons, result=result, reasons=reasons)

    @staticmethod
    def _coverage_reasons(
        result: ValidationResult,
        policy: CoveragePolicy,
        baseline: ValidationResult | None,
    ) -> list[str]:
        if policy.mode == "none":
            return []
        reasons: list[str] = []
        metrics = (
            ("statements", result.coverage_statements, policy.statements,
             baseline.coverage_statements if baseline else None),
            ("branches", result.coverage_branches, policy.branches,
             baseline.coverage_branches if baseline else None),
        )
        for label, actual, target, reference in metrics:
            if policy.mode == "target":
                if target is None or target <= 0:
                    continue
                if actual is None:
                    reasons.append(f"{label.capitalize()} coverage was not reported.")
                elif actual < target:
                    reasons.append(f"{label.capitalize()} coverage {actual:.1f}% is below target {target:.1f}%.")
                continue
            if reference is None:
                continue
            if actual is None:
                reasons.append(f"{label.capitalize()} coverage was not reported.")
            elif actual < reference - policy.tolerance:
                reasons.append(
                    f"{label.capitalize()} coverage dropped from {reference:.1f}% to {actual:.1f}%."
                )
        return reasons

    def check(
        self,
        spec: ValidationSpec,
        *,
        scope: TestScope | None = None,
        baseline: ValidationResult | None = None,
    ) -> Verdict:
        """Validate incrementally first, then confirm on the full suite before passing."""
        if scope is not None and not scope.is_full:
            incremental = self.evaluate(self.run(scope), ValidationSpec(expect=spec.expect))
            if spec.expect == "fail" or not incremental.ok:
                return incremental
        return self.evaluate(self.run(TestScope.full(), baseline=baseline), spec, baseline)
