from __future__ import annotations

from typing import Any


class PhaseflowError(RuntimeError):
    """Base class for orchestration errors surfaced to the operator."""

    code = "phaseflow_error"
    fatal = False

    def __init__(
        self,
        message: str,
        *,
        run_id: str | None = None,
        phase: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.run_id = run_id
        self.phase = phase
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "fatal": self.fatal,
        }
        if self.run_id:
            payload["run_id"] = self.run_id
        if self.phase:
            payload["phase"] = self.phase
        if self.details:
            payload["details"] = self.details
        return payload


class GateUnmet(PhaseflowError):
    """A phase gate has unmet requirements. The operator can satisfy them and re-run."""

    code = "gate_unmet"

    def __init__(self, message: str, *, missing: list[dict[str, Any]], **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.missing = missing
        self.details.setdefault("missing", missing)


class ValidationFailed(PhaseflowError):
    """Validation did not meet the phase expectations."""

    code = "validation_failed"

    def __init__(
        self,
        message: str,
        *,
        exhausted: bool = False,
        trail: list[dict[str, Any]] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.exhausted = exhausted
        self.trail = list(trail or [])
        if self.trail:
            self.details.setdefault("trail", self.trail)

    @property
    def fatal(self) -> bool:  # type: ignore[override]
        return self.exhausted


class ImmutableViolation(PhaseflowError):
    """An immutable artifact was about to change, or already diverged."""

    code = "immutable_violation"
    fatal = True

    def __init__(self, message: str, *, path: str, diff: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.path = path
        self.diff = diff
        self.details.setdefault("path", path)
        if diff:
            self.details.setdefault("diff", diff)


class UnauthorizedCommit(ImmutableViolation):
    """A phase tried to commit files outside its authorized change set."""

    code = "unauthorized_commit"

    def __init__(self, message: str, *, paths: list[str], **kwargs: Any) -> None:
        super().__init__(message, path=paths[0] if paths else "", **kwargs)
        self.paths = paths
        self.details["paths"] = paths


class NewFunctionalityViolation(PhaseflowError):
    """A refactoring change added tests or externally visible operations."""

    code = "new_functionality"

    def __init__(
        self,
        message: str,
        *,
        added_operations: list[str] | None = None,
        test_delta: int = 0,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.added_operations = list(added_operations or [])
        self.test_delta = test_delta
        self.details.setdefault("added_operations", self.added_operations)
        self.details.setdefault("test_delta", test_delta)


class CoordinationUnready(PhaseflowError):
    """A producer worktree has not published what this worktree depends on."""

    code = "coordination_unready"

    def __init__(self, message: str, *, pending: list[dict[str, Any]], **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.pending = pending
        self.details.setdefault("pending", pending)


class AgentTimeout(PhaseflowError):
    """An agent invocation exceeded its time budget."""

    code = "agent_timeout"

    def __init__(self, message: str, *, agent: str, timeout_seconds: float, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.agent = agent
        self.timeout_seconds = timeout_seconds
        self.details.setdefault("agent", agent)
        self.details.setdefault("timeout_seconds", timeout_seconds)


class CriticalSecurityFinding(PhaseflowError):
    """Blocking security findings remain without remediation or accepted risk."""

    code = "security_blocked"

    def __init__(self, message: str, *, findings: list[dict[str, Any]], **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.findings = findings
        self.details.setdefault("findings", findings)


class StateError(PhaseflowError):
    """Raised when shared-state or VCS operations fail."""

    code = "state_error"
