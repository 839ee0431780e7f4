from __future__ import annotations

import fnmatch
import json
import logging
from pathlib import Path
from typing import Any

from phaseflow.config import PhaseflowConfig
from phaseflow.errors import StateError, UnauthorizedCommit
from phaseflow.models import PhaseRecord, Run, RunResult, utcnow_iso
from phaseflow.state.artifacts import ArtifactStore, manifest_artifacts
from phaseflow.state.vcs import VCS

logger = logging.getLogger(__name__)

MANIFEST_FILE = "run-manifest.json"
HALT_REPORT_FILE = "halt-report.md"

TEST = "test"
SCHEMA = "schema"
CODE = "code"
REPORT = "report"
DOC = "doc"
ARTIFACT = "artifact"
SECRET = "secret"


def _matches_any(path: str, patterns: list[str]) -> bool:
    normalized = path.replace("\\", "/")
    name = normalized.rsplit("/", maxsplit=1)[-1]
    return any(
        fnmatch.fnmatch(normalized, pattern) or ("/" not in pattern and fnmatch.fnmatch(name, pattern))
        for pattern in patterns
    )


def is_test_path(path: str) -> bool:
    normalized = path.replace("\\", "/").lower()
    name = normalized.rsplit("/", maxsplit=1)[-1]
    segments = set(normalized.split("/")[:-1])
    if {"tests", "test", "__tests__", "spec", "specs"} & segments:
        return True
    if name.startswith("test_") or name.endswith("_test.py"):
        return True
    stem_markers = (".test.", ".spec.", "_test.", "_spec.")
    return any(marker in name for marker in stem_markers)


def is_documentation_path(path: str) -> bool:
    normalized = path.replace("\\", "/").lower()
    name = normalized.rsplit("/", maxsplit=1)[-1]
    if name.startswith("readme") or "changelog" in name:
        return True
    if {"docs", "doc", "documentation"} & set(normalized.split("/")[:-1]):
        return True
    return name.endswith((".md", ".rst", ".adoc"))


class PathClassifier:
    """Sorts project paths into the change categories phases are authorized for."""

    def __init__(self, config: PhaseflowConfig) -> None:
        self.config = config
        internal = [config.state.runs_dir, config.state.state_dir, config.state.archive_dir]
        self.internal_prefixes = tuple(
            prefix.strip("/") + "/" for prefix in internal if prefix.strip("/")
        )

    def is_internal(self, path: str) -> bool:
        normalized = path.replace("\\", "/")
        return normalized.startswith(self.internal_prefixes) or normalized == "phaseflow.toml"

    def is_secret(self, path: str) -> bool:
        guardrails = self.config.guardrails
        if _matches_any(path, list(guardrails.allowed_forbidden_exceptions)):
            return False
        return _matches_any(path, list(guardrails.forbidden_paths))

    def category(self, path: str) -> str:
        project = self.config.project
        if self.is_secret(path):
            return SECRET
        if self.is_internal(path):
            return ARTIFACT
        if is_test_path(path) or _matches_any(path, list(project.test_patterns)):
            return TEST
        if _matches_any(path, list(project.schema_patterns)):
            return SCHEMA
        if _matches_any(path, list(project.report_patterns)):
            return REPORT
        if _matches_any(path, list(project.doc_patterns)) or is_documentation_path(path):
            return DOC
        return CODE

    def is_source(self, path: str) -> bool:
        return self.category(path) == CODE


class RunRecorder:
    """Commits phase output and writes the run's audit trail.

    A commit is refused when any path falls outside the phase's authorized
    categories; secret files are refused in every phase.
    """

    def __init__(self, vcs: VCS, store: ArtifactStore, classifier: PathClassifier) -> None:
        self.vcs = vcs
        self.store = store
        self.classifier = classifier

    def authorize(self, run: Run, phase: str, authorized: frozenset[str], paths: list[str]) -> None:
        rejected: list[str] = []
        secrets: list[str] = []
        for path in paths:
            category = self.classifier.category(path)
            if category == SECRET:
                secrets.append(path)
            elif category != ARTIFACT and category not in authorized:
                rejected.append(f"{path} ({category})")
        if secrets:
            raise UnauthorizedCommit(
                f"Refusing to commit secret files: {', '.join(secrets)}",
                paths=secrets,
                run_id=run.run_id,
                phase=phase,
            )
        if rejected:
            raise UnauthorizedCommit(
                f"Phase {phase.upper()} may only commit {', '.join(sorted(authorized)) or 'nothing'}; "
                f"rejected: {', '.join(rejected)}",
                paths=[item.split(" (", maxsplit=1)[0] for item in rejected],
                run_id=run.run_id,
                phase=phase,
            )

    def _artifact_paths(self, phase: str) -> list[str]:
        try:
            relative_base = self.store.base.resolve().relative_to(self.vcs.root)
        except ValueError:
            return []
        paths = [f"{relative_base.as_posix()}/{path}" for path in self.store.list(phase)]
        index = self.store.index_path
        if index.exists():
            paths.append(index.resolve().relative_to(self.vcs.root).as_posix())
        return paths

    def commit(
        self,
        run: Run,
        phase: str,
        message: str,
        paths: list[str],
        *,
        authorized: frozenset[str],
    ) -> str | None:
        """Commit ``paths`` plus the phase's run artifacts; returns None when there is nothing to commit."""
        self.authorize(run, phase, authorized, paths)
        files = sorted(set(paths) | set(self._artifact_paths(phase)))
        if not files:
            logger.info("Nothing to commit for %s/%s", run.feature, phase)
            return None
        try:
            return self.vcs.commit_files(files, message)
        except StateError as exc:
            raise StateError(
                f"Commit for phase {phase.upper()} failed: {exc}", run_id=run.run_id, phase=phase
            ) from exc

    def write_summary(self, run: Run, record: PhaseRecord, extra: list[str] | None = None) -> str:
        lines = [
            f"# {record.name.upper()} summary: {run.feature}",
            "",
            f"- Run ID: {run.run_id}",
            f"- Status: {record.status}",
            f"- Attempts: {record.retry_count}",
            f"- Started: {record.started_at or '-'}",
            f"- Ended: {record.ended_at or '-'}",
        ]
        if record.validations:
            last = record.validations[-1]
            lines.append(
                f"- Tests: {last.get('total_cases', 0)} total, {last.get('failed_cases', 0)} failing"
            )
            if last.get("coverage_statements") is not None:
                lines.append(
                    f"- Coverage: {last.get('coverage_statements')}% statements, "
                    f"{last.get('coverage_branches')}% branches"
                )
        files = sorted({path for step in record.steps for path in step.files})
        if files:
            lines.extend(["", "## Files", ""])
            lines.extend(f"- {path}" for path in files)
        if record.diagnostics:
            lines.extend(["", "## Diagnostics", ""])
            lines.extend(
                f"- attempt {item.get('attempt')}: {item.get('kind')}" for item in record.diagnostics
            )
        if extra:
            lines.extend(["", *extra])
        path = f"{record.name}/summary.md"
        self.store.write(path, "\n".join(lines) + "\n", phase=record.name, kind="summary")
        return path

    def write_manifest(self, run: Run) -> None:
        run.touch()
        payload: dict[str, Any] = run.to_dict()
        payload["artifacts"] = manifest_artifacts(self.store)
        payload["written_at"] = utcnow_iso()
        self.store.write(
            MANIFEST_FILE,
            json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True) + "\n",
            kind="manifest",
        )

    def load_manifest(self) -> Run | None:
        if not self.store.exists(MANIFEST_FILE):
            return None
        try:
            payload = json.loads(self.store.read(MANIFEST_FILE))
        except json.JSONDecodeError as exc:
            raise StateError(f"Run manifest is corrupt: {self.store.base / MANIFEST_FILE}") from exc
        return Run.from_dict(payload)

    def write_halt_report(self, run: Run, result: RunResult) -> None:
        lines = [
            "# Run halted",
            "",
            f"- Run ID: {run.run_id}",
            f"- Feature: {run.feature}",
            f"- Status: {result.status}",
            f"- Phase: {(result.phase or '-').upper()}",
            f"- Reason: {result.reason}",
        ]
        if result.unmet:
            lines.extend(["", "## Unmet requirements", ""])
            lines.extend(f"- {item.get('requirement', item)}" for item in result.unmet)
        if result.diff:
            lines.extend(["", "## Diff", "", "```diff", result.diff.rstrip(), "```"])
        if result.phase:
            record = run.phase(result.phase)
            if record.diagnostics:
                lines.extend(["", "## Diagnostic trail", ""])
                for item in record.diagnostics:
                    lines.append(f"### Attempt {item.get('attempt')} ({item.get('kind')})")
                    lines.extend(f"- {reason}" for reason in item.get("reasons", []))
                    if item.get("excerpt"):
                        lines.extend(["", "```", str(item["excerpt"]), "```"])
        self.store.write(HALT_REPORT_FILE, "\n".join(lines) + "\n", kind="halt-report")
        logger.warning("Run %s halted in %s: %s", run.run_id, result.phase, result.reason)

    def archive(self, archive_root: Path, label: str | None = None) -> Path:
        return self.store.archive(archive_root, label)
