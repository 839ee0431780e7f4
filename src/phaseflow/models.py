from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class PhaseStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    BLOCKED = "blocked"


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    BLOCKED = "blocked"
    ARCHIVED = "archived"


class StepKind(StrEnum):
    EXPLORE = "explore"
    PLAN = "plan"
    EXECUTE = "execute"
    VALIDATE = "validate"


class FailureKind(StrEnum):
    LOGIC = "logic"
    TYPE = "type"
    SCHEMA = "schema"
    IMPORT = "import"
    DEPENDENCY = "dependency"
    UNKNOWN = "unknown"


class Severity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def blocking(self) -> bool:
        return self in {Severity.CRITICAL, Severity.HIGH}


EXIT_CODES = {
    RunStatus.COMPLETE: 0,
    RunStatus.FAILED: 1,
    RunStatus.BLOCKED: 2,
}


@dataclass(slots=True)
class ArtifactRecord:
    path: str
    phase: str | None
    kind: str
    immutable: bool
    content_hash: str
    written_at: str = field(default_factory=utcnow_iso)
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ArtifactRecord:
        return cls(
            path=str(payload["path"]),
            phase=payload.get("phase"),
            kind=str(payload.get("kind", "file")),
            immutable=bool(payload.get("immutable", False)),
            content_hash=str(payload.get("content_hash", "")),
            written_at=str(payload.get("written_at") or utcnow_iso()),
            source=payload.get("source"),
        )


@dataclass(slots=True)
class ValidationResult:
    passed: bool
    total_cases: int = 0
    failed_cases: int = 0
    coverage_statements: float | None = None
    coverage_branches: float | None = None
    delta_from_baseline: dict[str, float] = field(default_factory=dict)
    scope: list[str] = field(default_factory=list)
    exit_code: int = 0
    output_tail: str = ""

    def summary(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "total_cases": self.total_cases,
            "failed_cases": self.failed_cases,
            "coverage_statements": self.coverage_statements,
            "coverage_branches": self.coverage_branches,
            "delta_from_baseline": dict(self.delta_from_baseline),
            "scope": list(self.scope) or ["<full>"],
        }


@dataclass(slots=True)
class SecurityFinding:
    finding_id: str
    severity: Severity
    title: str
    location: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.finding_id,
            "severity": str(self.severity),
            "title": self.title,
            "location": self.location,
        }


@dataclass(slots=True)
class StepRecord:
    kind: StepKind
    agent: str
    attempt: int
    status: str
    files: list[str] = field(default_factory=list)
    log_tail: str = ""
    started_at: str = field(default_factory=utcnow_iso)
    ended_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": str(self.kind),
            "agent": self.agent,
            "attempt": self.attempt,
            "status": self.status,
            "files": list(self.files),
            "log_tail": self.log_tail,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> StepRecord:
        return cls(
            kind=StepKind(payload.get("kind", "execute")),
            agent=str(payload.get("agent", "")),
            attempt=int(payload.get("attempt", 0)),
            status=str(payload.get("status", "")),
            files=list(payload.get("files", [])),
            log_tail=str(payload.get("log_tail", "")),
            started_at=str(payload.get("started_at") or utcnow_iso()),
            ended_at=payload.get("ended_at"),
        )


@dataclass(slots=True)
class PhaseRecord:
    name: str
    status: PhaseStatus = PhaseStatus.PENDING
    retry_count: int = 0
    started_at: str | None = None
    ended_at: str | None = None
    steps: list[StepRecord] = field(default_factory=list)
    validations: list[dict[str, Any]] = field(default_factory=list)
    diagnostics: list[dict[str, Any]] = field(default_factory=list)
    findings: list[dict[str, Any]] = field(default_factory=list)
    blocked_reason: str | None = None
    unmet: list[dict[str, Any]] = field(default_factory=list)
    commit_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": str(self.status),
            "retry_count": self.retry_count,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "steps": [step.to_dict() for step in self.steps],
            "validations": list(self.validations),
            "diagnostics": list(self.diagnostics),
            "findings": list(self.findings),
            "blocked_reason": self.blocked_reason,
            "unmet": list(self.unmet),
            "commit_id": self.commit_id,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PhaseRecord:
        return cls(
            name=str(payload["name"]),
            status=PhaseStatus(payload.get("status", "pending")),
            retry_count=int(payload.get("retry_count", 0)),
            started_at=payload.get("started_at"),
            ended_at=payload.get("ended_at"),
            steps=[StepRecord.from_dict(item) for item in payload.get("steps", [])],
            validations=list(payload.get("validations", [])),
            diagnostics=list(payload.get("diagnostics", [])),
            findings=list(payload.get("findings", [])),
            blocked_reason=payload.get("blocked_reason"),
            unmet=list(payload.get("unmet", [])),
            commit_id=payload.get("commit_id"),
        )


@dataclass(slots=True)
class Run:
    run_id: str
    feature: str
    pipeline: str
    worktree: str
    root: str
    status: RunStatus = RunStatus.PENDING
    current_phase: str | None = None
    phases: list[PhaseRecord] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    ended_at: str | None = None
    halt: dict[str, Any] | None = None

    def phase(self, name: str) -> PhaseRecord:
        for record in self.phases:
            if record.name == name:
                return record
        record = PhaseRecord(name=name)
        self.phases.append(record)
        return record

    def touch(self) -> None:
        self.updated_at = utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "feature": self.feature,
            "pipeline": self.pipeline,
            "worktree": self.worktree,
            "root": self.root,
            "status": str(self.status),
            "current_phase": self.current_phase,
            "phases": [record.to_dict() for record in self.phases],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "ended_at": self.ended_at,
            "halt": self.halt,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Run:
        return cls(
            run_id=str(payload["run_id"]),
            feature=str(payload["feature"]),
            pipeline=str(payload.get("pipeline", "")),
            worktree=str(payload.get("worktree", payload["feature"])),
            root=str(payload.get("root", "")),
            status=RunStatus(payload.get("status", "pending")),
            current_phase=payload.get("current_phase"),
            phases=[PhaseRecord.from_dict(item) for item in payload.get("phases", [])],
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
            ended_at=payload.get("ended_at"),
            halt=payload.get("halt"),
        )


@dataclass(slots=True)
class RunResult:
    run_id: str
    feature: str
    status: RunStatus
    phase: str | None = None
    reason: str = ""
    unmet: list[dict[str, Any]] = field(default_factory=list)
    diff: str = ""

    @property
    def exit_code(self) -> int:
        return EXIT_CODES.get(self.status, 1)

    def describe(self) -> list[str]:
        lines = [f"Run ID: {self.run_id}", f"Feature: {self.feature}", f"Status: {self.status}"]
        if self.phase:
            lines.append(f"Phase: {self.phase}")
        if self.reason:
            lines.append(f"Reason: {self.reason}")
        for item in self.unmet:
            lines.append(f"Unmet: {item.get('requirement', item)}")
        if self.diff:
            lines.append("Diff:")
            lines.append(self.diff.rstrip())
        return lines
