from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from phaseflow.backends import ClaudeCodeBackend, CodexBackend, ResilientBackend, RetryPolicy
from phaseflow.config import BackendName, PhaseflowConfig, load_config, save_config
from phaseflow.controller import PhaseController, coordination_directory
from phaseflow.coordination import CoordinationEdge, CoordinationLayer
from phaseflow.errors import ImmutableViolation, PhaseflowError
from phaseflow.models import RunStatus
from phaseflow.pipelines import PIPELINES, get_pipeline
from phaseflow.recorder import PathClassifier, RunRecorder
from phaseflow.security import accept_risk, backlog_items
from phaseflow.state import ArtifactStore, GitVCS, JsonLedger
from phaseflow.validation import TestRunner

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "phaseflow.toml"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: PhaseflowConfig
    ledger: JsonLedger


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        ledger=JsonLedger(repo_root / config.state.state_dir),
    )


def _build_single_backend(backend_name: BackendName, repo_root: Path) -> CodexBackend | ClaudeCodeBackend:
    hook = lambda event: logger.debug("agent event: %s", event)  # noqa: E731
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root, event_hook=hook)
    return ClaudeCodeBackend(working_directory=repo_root, event_hook=hook)


def _record_backend_event(ledger: JsonLedger, event: dict[str, Any]) -> None:
    logger.info("backend event: %s", event)
    ledger.record_event(event)


def _build_backend(config: PhaseflowConfig, repo_root: Path, ledger: JsonLedger) -> ResilientBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=config.backend.primary,
        primary_backend=_build_single_backend(config.backend.primary, repo_root),
        fallback_name=config.backend.fallback,
        fallback_backend=_build_single_backend(config.backend.fallback, repo_root),
        retry_policy=policy,
        event_hook=lambda event: _record_backend_event(ledger, event),
    )


def _build_test_runner(config: PhaseflowConfig, repo_root: Path) -> TestRunner | None:
    """Hook for alternative runners; None selects the configured test command."""
    return None


def _store(runtime: Runtime, feature: str) -> ArtifactStore:
    try:
        return ArtifactStore(runtime.repo_root / runtime.config.state.runs_dir, feature)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


def _coordination(runtime: Runtime) -> CoordinationLayer:
    try:
        vcs = GitVCS(runtime.repo_root)
    except PhaseflowError as exc:
        raise click.ClickException(exc.message) from exc
    return CoordinationLayer.at(coordination_directory(vcs, runtime.config))


@click.group()
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log progress to stderr.")
def cli(verbose: bool) -> None:
    """Phased delivery workflows: RED/GREEN/REFACTOR/SECURITY and PRD/SPEC/PLAN/BREAKDOWN."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--test-command", default=None, help="Shell command that runs the test suite.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(backend: str | None, test_command: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    if test_command:
        config.project.test_command = test_command
    save_config(config_path, config)

    JsonLedger(repo_root / config.state.state_dir)
    (repo_root / config.state.runs_dir).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized phaseflow in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"Test command: {config.project.test_command}")


@cli.command("run")
@click.argument("pipeline_name", type=click.Choice(sorted(PIPELINES)))
@click.argument("feature")
@click.option("--brief", "brief_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--worktree", default=None, help="Worktree name used for coordination.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context,
    pipeline_name: str,
    feature: str,
    brief_path: Path | None,
    worktree: str | None,
    config_value: str,
) -> None:
    """Run FEATURE through a pipeline. Exits 0 when complete, 1 when failed, 2 when blocked."""
    runtime = _load_runtime(config_value)
    backend = _build_backend(runtime.config, runtime.repo_root, runtime.ledger)
    try:
        controller = PhaseController.from_config(
            runtime.repo_root,
            runtime.config,
            backend,
            runner=_build_test_runner(runtime.config, runtime.repo_root),
            worktree=worktree,
        )
        brief = brief_path.read_text(encoding="utf-8") if brief_path else None
        result = asyncio.run(
            controller.run_pipeline(feature, get_pipeline(pipeline_name, runtime.config), brief=brief)
        )
    except (ValueError, KeyError) as exc:
        raise click.ClickException(str(exc)) from exc
    except PhaseflowError as exc:
        raise click.ClickException(exc.message) from exc

    for line in result.describe():
        click.echo(line)
    ctx.exit(result.exit_code)


@cli.command("status")
@click.argument("feature", required=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(feature: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    runs_root = runtime.repo_root / runtime.config.state.runs_dir
    if feature:
        store = _store(runtime, feature)
        if not store.exists("run-manifest.json"):
            raise click.ClickException(f"No run recorded for '{feature}'.")
        click.echo(store.read("run-manifest.json").rstrip())
        return

    archive = (runtime.repo_root / runtime.config.state.archive_dir).resolve()
    rows = []
    for manifest in sorted(runs_root.glob("*/run-manifest.json")):
        if manifest.parent.resolve() == archive:
            continue
        payload = json.loads(manifest.read_text(encoding="utf-8"))
        rows.append(
            {
                "feature": payload.get("feature"),
                "run_id": payload.get("run_id"),
                "pipeline": payload.get("pipeline"),
                "status": payload.get("status"),
                "phase": payload.get("current_phase"),
            }
        )
    if not rows:
        click.echo("No runs recorded.")
        return
    for row in rows:
        click.echo(
            f"{row['feature']:<24} {row['pipeline']:<9} {row['status']:<9} "
            f"{row['phase'] or '-':<10} {row['run_id']}"
        )


@cli.command("close")
@click.argument("feature")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def close_command(feature: str, config_value: str) -> None:
    """Close a sprint: archive the run of FEATURE to cold storage."""
    runtime = _load_runtime(config_value)
    store = _store(runtime, feature)
    try:
        vcs = GitVCS(runtime.repo_root)
        recorder = RunRecorder(vcs, store, PathClassifier(runtime.config))
        run = recorder.load_manifest()
        if run is None:
            raise click.ClickException(f"No run recorded for '{feature}'.")
        if run.status == RunStatus.RUNNING:
            raise click.ClickException(f"Run {run.run_id} is still running.")
        previous = run.status
        run.status = RunStatus.ARCHIVED
        recorder.write_manifest(run)
        destination = recorder.archive(runtime.repo_root / runtime.config.state.archive_dir, run.run_id)
    except PhaseflowError as exc:
        raise click.ClickException(exc.message) from exc
    runtime.ledger.record_event({"event": "run_archived", "run_id": run.run_id, "feature": feature})
    click.echo(f"Archived {feature} ({previous}) to {destination}")


@cli.command("accept-risk")
@click.argument("feature")
@click.argument("finding_id")
@click.option("--justification", required=True, help="Why the risk is acceptable.")
@click.option("--by", "accepted_by", default="operator", show_default=True)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def accept_risk_command(
    feature: str,
    finding_id: str,
    justification: str,
    accepted_by: str,
    config_value: str,
) -> None:
    """Record an accepted-risk justification for a High security finding."""
    runtime = _load_runtime(config_value)
    store = _store(runtime, feature)
    try:
        accept_risk(store, finding_id, justification, accepted_by=accepted_by)
    except ImmutableViolation as exc:
        raise click.ClickException(f"Risk for {finding_id} was already accepted.") from exc
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Accepted risk {finding_id} for {feature}")


@cli.group("coord")
def coord_group() -> None:
    """Declare and inspect cross-worktree ordering."""


@coord_group.command("declare")
@click.argument("producer")
@click.argument("consumer")
@click.option("--kind", type=click.Choice(["schema", "code"]), required=True)
@click.option("--phase", default=None, help="Consumer phase gated by the edge (default: all).")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def coord_declare_command(
    producer: str,
    consumer: str,
    kind: str,
    phase: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    try:
        edge = CoordinationEdge(producer=producer, consumer=consumer, kind=kind, phase=phase)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    created = _coordination(runtime).declare(edge)
    click.echo(f"{'Declared' if created else 'Already declared'}: {edge.key}")


@coord_group.command("publish")
@click.argument("producer")
@click.argument("kind", type=click.Choice(["schema", "code"]))
@click.option("--ref", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def coord_publish_command(producer: str, kind: str, ref: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    _coordination(runtime).mark_published(producer, kind, ref)
    click.echo(f"Published {kind} from {producer}")


@coord_group.command("ready")
@click.argument("consumer")
@click.option("--phase", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
@click.pass_context
def coord_ready_command(ctx: click.Context, consumer: str, phase: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    pending = _coordination(runtime).pending(consumer, phase)
    if not pending:
        click.echo(f"{consumer} is ready")
        return
    for edge in pending:
        click.echo(f"waiting: {edge.producer} {edge.kind}")
    ctx.exit(2)


@coord_group.command("list")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def coord_list_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    layer = _coordination(runtime)
    edges = layer.edges()
    if not edges:
        click.echo("No coordination edges declared.")
        return
    for edge in edges:
        state = "published" if layer.is_satisfied(edge) else "pending"
        click.echo(f"{edge.key} {state}")


@cli.command("backlog")
@click.option("--feature", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def backlog_command(feature: str | None, config_value: str) -> None:
    """List Medium/Low security findings deferred to the backlog."""
    runtime = _load_runtime(config_value)
    items = [item for item in backlog_items(runtime.ledger) if feature in (None, item.get("feature"))]
    if not items:
        click.echo("Backlog is empty.")
        return
    for item in items:
        click.echo(
            f"{item.get('id')} {item.get('severity'):<6} {item.get('feature')}: "
            f"{item.get('title')} {item.get('location') or ''}".rstrip()
        )
