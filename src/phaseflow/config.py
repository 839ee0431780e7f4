from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["codex", "claude"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    test_command: str = "uv run --extra dev pytest -q"
    scoped_test_command: str = "{command} {scope}"
    test_timeout_seconds: float = 900.0
    test_patterns: list[str] = field(
        default_factory=lambda: ["tests/**", "test/**", "**/*_test.*", "**/*.test.*", "**/*.spec.*"]
    )
    schema_patterns: list[str] = field(
        default_factory=lambda: ["**/schema.prisma", "**/migrations/**", "migrations/**", "*.sql"]
    )
    report_patterns: list[str] = field(default_factory=lambda: ["reports/**"])
    doc_patterns: list[str] = field(default_factory=lambda: ["docs/**", "*.md"])


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class AgentsConfig:
    explore_model: str = "claude-haiku-4-5"
    plan_model: str = "claude-opus-4-1"
    execute_model: str = "claude-sonnet-4-5"
    audit_model: str = "claude-sonnet-4-5"


@dataclass(slots=True)
class WorkflowConfig:
    retry_budget: int = 3
    agent_timeout_seconds: float = 900.0
    coverage_statements_target: float = 80.0
    coverage_branches_target: float = 75.0
    refactor_coverage_tolerance: float = 0.0
    security_coverage_tolerance: float = 0.0
    skip_explore: bool = False
    skip_plan: bool = False
    coordination_wait_seconds: float = 0.0
    coordination_poll_seconds: float = 5.0


@dataclass(slots=True)
class GuardrailsConfig:
    forbidden_paths: list[str] = field(
        default_factory=lambda: [".env", ".env.*", "**/.env", "**/.env.*", "secrets/*"]
    )
    allowed_forbidden_exceptions: list[str] = field(
        default_factory=lambda: ["*.example", "**/*.example"]
    )
    surface_patterns: list[str] = field(
        default_factory=lambda: [
            r"^\s*(?:async\s+)?def\s+([A-Za-z][A-Za-z0-9_]*)\s*\(",
            r"^\s*class\s+([A-Za-z][A-Za-z0-9_]*)\b",
            r"^\s*export\s+(?:default\s+)?(?:async\s+)?function\s*\*?\s*([A-Za-z_$][\w$]*)",
            r"^\s*export\s+(?:const|let|var|class|interface|type|enum)\s+([A-Za-z_$][\w$]*)",
        ]
    )


@dataclass(slots=True)
class StateConfig:
    runs_dir: str = "runs"
    archive_dir: str = "runs/_archive"
    state_dir: str = ".phaseflow"
    coordination_dir: str = ""
    worktree: str = ""


@dataclass(slots=True)
class PhaseflowConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    guardrails: GuardrailsConfig = field(default_factory=GuardrailsConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> PhaseflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PhaseflowConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            guardrails=GuardrailsConfig(**data.get("guardrails", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "test_command": self.project.test_command,
                "scoped_test_command": self.project.scoped_test_command,
                "test_timeout_seconds": self.project.test_timeout_seconds,
                "test_patterns": list(self.project.test_patterns),
                "schema_patterns": list(self.project.schema_patterns),
                "report_patterns": list(self.project.report_patterns),
                "doc_patterns": list(self.project.doc_patterns),
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "explore_model": self.agents.explore_model,
                "plan_model": self.agents.plan_model,
                "execute_model": self.agents.execute_model,
                "audit_model": self.agents.audit_model,
            },
            "workflow": {
                "retry_budget": self.workflow.retry_budget,
                "agent_timeout_seconds": self.workflow.agent_timeout_seconds,
                "coverage_statements_target": self.workflow.coverage_statements_target,
                "coverage_branches_target": self.workflow.coverage_branches_target,
                "refactor_coverage_tolerance": self.workflow.refactor_coverage_tolerance,
                "security_coverage_tolerance": self.workflow.security_coverage_tolerance,
                "skip_explore": self.workflow.skip_explore,
                "skip_plan": self.workflow.skip_plan,
                "coordination_wait_seconds": self.workflow.coordination_wait_seconds,
                "coordination_poll_seconds": self.workflow.coordination_poll_seconds,
            },
            "guardrails": {
                "forbidden_paths": list(self.guardrails.forbidden_paths),
                "allowed_forbidden_exceptions": list(
                    self.guardrails.allowed_forbidden_exceptions
                ),
                "surface_patterns": list(self.guardrails.surface_patterns),
            },
            "state": {
                "runs_dir": self.state.runs_dir,
                "archive_dir": self.state.archive_dir,
                "state_dir": self.state.state_dir,
                "coordination_dir": self.state.coordination_dir,
                "worktree": self.state.worktree,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PhaseflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "backend", "agents", "workflow", "guardrails", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PhaseflowConfig:
    if not path.exists():
        return PhaseflowConfig.default()
    return PhaseflowConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: PhaseflowConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
