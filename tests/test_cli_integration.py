import json
import subprocess
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from click.testing import CliRunner

from phaseflow.backends.base import AgentBackend
from phaseflow.cli import cli
from phaseflow.config import load_config
from phaseflow.models import Severity, ValidationResult
from phaseflow.security import finding_id
from phaseflow.state import JsonLedger
from phaseflow.validation import TestRunner, TestScope

FEATURE = "add-priority-filter"


class FakeBackend(AgentBackend):
    def __init__(self, audit_reply: str = "No findings.") -> None:
        self.audit_reply = audit_reply

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        root = Path(context["_working_directory"])
        phase, step = context.get("phase"), context.get("step")
        if step != "execute":
            yield self.audit_reply if phase == "security" else "ok"
            return
        if phase == "red":
            (root / "tests").mkdir(exist_ok=True)
            (root / "tests" / "priority_test.txt").write_text("filter_by_priority\n", encoding="utf-8")
        elif phase == "green":
            (root / "src").mkdir(exist_ok=True)
            (root / "src" / "app.py").write_text(
                "def filter_by_priority(tasks, level):\n    return [t for t in tasks if t.priority >= level]\n",
                encoding="utf-8",
            )
        yield "done"


class TokenRunner(TestRunner):
    def __init__(self, root: Path) -> None:
        self.root = root

    def run_tests(self, scope: TestScope) -> ValidationResult:
        _ = scope
        source_file = self.root / "src" / "app.py"
        source = source_file.read_text(encoding="utf-8") if source_file.is_file() else ""
        cases = [
            line.strip()
            for test_file in sorted((self.root / "tests").glob("*_test.txt"))
            for line in test_file.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]
        failed = [case for case in cases if case not in source]
        return ValidationResult(
            passed=not failed,
            total_cases=len(cases),
            failed_cases=len(failed),
            coverage_statements=90.0,
            coverage_branches=80.0,
            exit_code=1 if failed else 0,
            output_tail="\n".join(f"AssertionError: {case}" for case in failed),
        )


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def _prepare(tmp_path: Path, monkeypatch, backend: FakeBackend) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    monkeypatch.setattr("phaseflow.cli._build_backend", lambda config, repo_root, ledger: backend)
    monkeypatch.setattr("phaseflow.cli._build_test_runner", lambda config, repo_root: TokenRunner(repo_root))
    return repo


def test_cli_tdd_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    repo = _prepare(tmp_path, monkeypatch, FakeBackend())
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init", "--backend", "codex", "--test-command", "pytest -q"])
    assert init_result.exit_code == 0
    assert "Backend: codex" in init_result.output
    config = load_config(repo / "phaseflow.toml")
    assert config.backend.primary == "codex"
    assert config.project.test_command == "pytest -q"

    run_result = runner.invoke(cli, ["run", "tdd", FEATURE])
    assert run_result.exit_code == 0, run_result.output
    assert "Run ID:" in run_result.output
    assert "Status: complete" in run_result.output

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    assert FEATURE in status_result.output
    assert "complete" in status_result.output

    detail_result = runner.invoke(cli, ["status", FEATURE])
    assert detail_result.exit_code == 0
    manifest = json.loads(detail_result.output)
    assert manifest["status"] == "complete"
    assert [phase["name"] for phase in manifest["phases"]] == ["red", "green", "refactor", "security"]

    backlog_result = runner.invoke(cli, ["backlog"])
    assert backlog_result.exit_code == 0
    assert "Backlog is empty." in backlog_result.output

    close_result = runner.invoke(cli, ["close", FEATURE])
    assert close_result.exit_code == 0
    assert "Archived add-priority-filter (complete)" in close_result.output
    archived = repo / "runs" / "_archive" / FEATURE / manifest["run_id"] / "run-manifest.json"
    assert json.loads(archived.read_text(encoding="utf-8"))["status"] == "archived"
    assert not (repo / "runs" / FEATURE).exists()

    after_close = runner.invoke(cli, ["status"])
    assert "No runs recorded." in after_close.output

    metrics = JsonLedger(repo / ".phaseflow").get_metrics()
    assert metrics["counters"]["run_archived"] == 1
    assert metrics["counters"]["run_complete"] == 1


def test_cli_high_finding_blocks_until_accepted(tmp_path: Path, monkeypatch) -> None:
    backend = FakeBackend(
        "[HIGH] Missing rate limit (src/app.py)\n[MEDIUM] Verbose errors (src/app.py)"
    )
    _prepare(tmp_path, monkeypatch, backend)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    blocked = runner.invoke(cli, ["run", "tdd", FEATURE])
    assert blocked.exit_code == 2
    assert "Status: blocked" in blocked.output
    assert "Phase: security" in blocked.output

    backlog_result = runner.invoke(cli, ["backlog", "--feature", FEATURE])
    assert "medium" in backlog_result.output
    assert "Verbose errors" in backlog_result.output

    identifier = finding_id(Severity.HIGH, "Missing rate limit", "src/app.py")
    missing_reason = runner.invoke(cli, ["accept-risk", FEATURE, identifier, "--justification", " "])
    assert missing_reason.exit_code != 0
    assert "must not be empty" in missing_reason.output

    accepted = runner.invoke(
        cli, ["accept-risk", FEATURE, identifier, "--justification", "Internal only.", "--by", "lead"]
    )
    assert accepted.exit_code == 0
    assert f"Accepted risk {identifier}" in accepted.output

    again = runner.invoke(cli, ["accept-risk", FEATURE, identifier, "--justification", "Again."])
    assert again.exit_code != 0
    assert "already accepted" in again.output

    resumed = runner.invoke(cli, ["run", "tdd", FEATURE])
    assert resumed.exit_code == 0, resumed.output
    assert "Status: complete" in resumed.output


def test_cli_rejects_invalid_feature_names(tmp_path: Path, monkeypatch) -> None:
    _prepare(tmp_path, monkeypatch, FakeBackend())
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    result = runner.invoke(cli, ["run", "tdd", "../escape"])

    assert result.exit_code == 1
    assert "Invalid feature name" in result.output


def test_cli_dirty_worktree_exits_blocked(tmp_path: Path, monkeypatch) -> None:
    repo = _prepare(tmp_path, monkeypatch, FakeBackend())
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    (repo / "scratch.txt").write_text("wip\n", encoding="utf-8")

    result = runner.invoke(cli, ["run", "tdd", FEATURE])

    assert result.exit_code == 2
    assert "Unmet: uncommitted: scratch.txt" in result.output


def test_cli_coordination_commands(tmp_path: Path, monkeypatch) -> None:
    _prepare(tmp_path, monkeypatch, FakeBackend())
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    declared = runner.invoke(cli, ["coord", "declare", "api", "web", "--kind", "schema", "--phase", "green"])
    assert declared.exit_code == 0
    assert "Declared: api->web:schema:green" in declared.output
    duplicate = runner.invoke(cli, ["coord", "declare", "api", "web", "--kind", "schema", "--phase", "green"])
    assert "Already declared" in duplicate.output

    bad_kind = runner.invoke(cli, ["coord", "declare", "api", "web", "--kind", "docs"])
    assert bad_kind.exit_code == 2

    waiting = runner.invoke(cli, ["coord", "ready", "web", "--phase", "green"])
    assert waiting.exit_code == 2
    assert "waiting: api schema" in waiting.output
    other_phase = runner.invoke(cli, ["coord", "ready", "web", "--phase", "red"])
    assert other_phase.exit_code == 0

    listing = runner.invoke(cli, ["coord", "list"])
    assert "api->web:schema:green pending" in listing.output

    published = runner.invoke(cli, ["coord", "publish", "api", "schema", "--ref", "abc123"])
    assert published.exit_code == 0

    ready = runner.invoke(cli, ["coord", "ready", "web", "--phase", "green"])
    assert ready.exit_code == 0
    assert "web is ready" in ready.output
    assert "published" in runner.invoke(cli, ["coord", "list"]).output


def test_cli_edge_declared_after_publication_stays_pending(tmp_path: Path, monkeypatch) -> None:
    _prepare(tmp_path, monkeypatch, FakeBackend())
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    assert runner.invoke(cli, ["coord", "publish", "api", "schema", "--ref", "old"]).exit_code == 0
    assert runner.invoke(cli, ["coord", "declare", "api", "web", "--kind", "schema"]).exit_code == 0

    assert runner.invoke(cli, ["coord", "ready", "web"]).exit_code == 2
    assert "api->web:schema:* pending" in runner.invoke(cli, ["coord", "list"]).output
