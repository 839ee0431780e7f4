from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from phaseflow.backends.base import AgentBackend
from phaseflow.config import PhaseflowConfig
from phaseflow.coordination import CoordinationLayer
from phaseflow.diagnosis import FailureClassifier, RegexFailureClassifier, build_followup_prompt, diagnose
from phaseflow.errors import (
    AgentTimeout,
    CoordinationUnready,
    CriticalSecurityFinding,
    GateUnmet,
    ImmutableViolation,
    NewFunctionalityViolation,
    PhaseflowError,
    ValidationFailed,
)
from phaseflow.gate import CoordinationReady, PrerequisiteGate, requirement_to_dict
from phaseflow.invoker import InvocationResult, Prompt, TaskInvoker
from phaseflow.models import (
    PhaseRecord,
    PhaseStatus,
    Run,
    RunResult,
    RunStatus,
    SecurityFinding,
    Severity,
    StepKind,
    StepRecord,
    ValidationResult,
    utcnow_iso,
)
from phaseflow.parsing import tail
from phaseflow.pipelines import PhaseSpec, PipelineDefinition, StepSpec
from phaseflow.recorder import TEST, PathClassifier, RunRecorder
from phaseflow.security import (
    Triage,
    append_backlog,
    is_risk_accepted,
    parse_findings,
    render_report,
)
from phaseflow.specialists import AuditorAgent, ExecutorAgent, ExplorerAgent, PlannerAgent
from phaseflow.state.artifacts import ArtifactStore, Savepoint
from phaseflow.state.ledger import JsonLedger
from phaseflow.state.vcs import VCS, GitVCS, WorktreeSnapshot
from phaseflow.surface import SurfaceScanner, added_operations
from phaseflow.validation import CommandTestRunner, TestRunner, TestScope, ValidationEngine, Verdict

logger = logging.getLogger(__name__)

FEATURE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
RESUMABLE = {RunStatus.PENDING, RunStatus.RUNNING, RunStatus.BLOCKED}


@dataclass(slots=True)
class RunContext:
    run: Run
    store: ArtifactStore
    recorder: RunRecorder


class PhaseController:
    """Drives one worktree's runs through a pipeline of gated, validated phases.

    A phase ends ``passed``, ``blocked`` (recoverable: gate unmet, coordination
    pending, timeout, new functionality in REFACTOR, open security findings) or
    ``failed`` (retry budget exhausted or a locked artifact changed). A run
    stops at the first phase that does not pass.
    """

    def __init__(
        self,
        config: PhaseflowConfig,
        vcs: VCS,
        invoker: TaskInvoker,
        validation: ValidationEngine,
        *,
        ledger: JsonLedger,
        coordination: CoordinationLayer | None = None,
        classifier: FailureClassifier | None = None,
        worktree: str | None = None,
    ) -> None:
        self.config = config
        self.vcs = vcs
        self.invoker = invoker
        self.validation = validation
        self.ledger = ledger
        self.coordination = coordination
        self.classifier = classifier or RegexFailureClassifier()
        self.paths = PathClassifier(config)
        self.surface = SurfaceScanner(list(config.guardrails.surface_patterns), self.paths.is_source)
        self.worktree = worktree or config.state.worktree or vcs.worktree_name()
        self.runs_root = vcs.root / config.state.runs_dir
        self.archive_root = vcs.root / config.state.archive_dir
        self.exclude = self.internal_prefixes(config)
        self.invoker.exclude = self.exclude

    @staticmethod
    def internal_prefixes(config: PhaseflowConfig) -> tuple[str, ...]:
        prefixes = [config.state.runs_dir, config.state.state_dir, config.state.archive_dir]
        return tuple(item.strip("/") + "/" for item in prefixes if item.strip("/")) + ("phaseflow.toml",)

    @classmethod
    def from_config(
        cls,
        root: Path,
        config: PhaseflowConfig,
        backend: AgentBackend,
        *,
        runner: TestRunner | None = None,
        worktree: str | None = None,
    ) -> PhaseController:
        vcs = GitVCS(root)
        agents = config.agents
        prompt_dir = root / config.state.state_dir / "prompts"
        specialists = {
            "explore": ExplorerAgent(backend, model=agents.explore_model, prompt_dir=prompt_dir),
            "plan": PlannerAgent(backend, model=agents.plan_model, prompt_dir=prompt_dir),
            "execute": ExecutorAgent(backend, model=agents.execute_model, prompt_dir=prompt_dir),
            "audit": AuditorAgent(backend, model=agents.audit_model, prompt_dir=prompt_dir),
        }
        invoker = TaskInvoker(
            specialists, vcs, timeout_seconds=config.workflow.agent_timeout_seconds
        )
        test_runner = runner or CommandTestRunner(
            vcs.root,
            config.project.test_command,
            scoped_command=config.project.scoped_test_command,
            timeout_seconds=config.project.test_timeout_seconds,
        )
        return cls(
            config,
            vcs,
            invoker,
            ValidationEngine(test_runner),
            ledger=JsonLedger(vcs.root / config.state.state_dir),
            coordination=CoordinationLayer.at(coordination_directory(vcs, config)),
            worktree=worktree,
        )

    def _is_internal(self, path: str) -> bool:
        return path.startswith(self.exclude)

    def _project_changes(self) -> list[str]:
        return [path for path in self.vcs.changed_paths() if not self._is_internal(path)]

    def _event(self, event: str, run: Run, **fields: Any) -> None:
        self.ledger.record_event(
            {"event": event, "run_id": run.run_id, "feature": run.feature, **fields}
        )

    def _open_run(self, feature: str, pipeline: PipelineDefinition) -> RunContext:
        store = ArtifactStore(self.runs_root, feature)
        recorder = RunRecorder(self.vcs, store, self.paths)
        previous = recorder.load_manifest()
        if previous is not None and previous.pipeline == pipeline.name and previous.status in RESUMABLE:
            previous.phases = [
                record if record.status == PhaseStatus.PASSED else PhaseRecord(name=record.name)
                for record in previous.phases
            ]
            previous.halt = None
            previous.ended_at = None
            logger.info("Resuming run %s for %s", previous.run_id, feature)
            return RunContext(run=previous, store=store, recorder=recorder)

        if previous is not None:
            destination = recorder.archive(self.archive_root, previous.run_id)
            logger.info("Archived previous %s run of %s to %s", previous.status, feature, destination)
            store = ArtifactStore(self.runs_root, feature)
            recorder = RunRecorder(self.vcs, store, self.paths)

        run = Run(
            run_id=uuid4().hex[:12],
            feature=feature,
            pipeline=pipeline.name,
            worktree=self.worktree,
            root=str(self.vcs.root),
        )
        for phase in pipeline.phases:
            run.phase(phase.name)
        return RunContext(run=run, store=store, recorder=recorder)

    async def run_pipeline(
        self,
        feature: str,
        pipeline: PipelineDefinition,
        *,
        brief: str | None = None,
    ) -> RunResult:
        if not FEATURE_PATTERN.match(feature):
            raise ValueError(
                f"Invalid feature name '{feature}': use letters, digits, '.', '_' or '-'."
            )
        ctx = self._open_run(feature, pipeline)
        run = ctx.run
        run.status = RunStatus.RUNNING

        dirty = await asyncio.to_thread(self._project_changes)
        if dirty:
            error = GateUnmet(
                "Refusing to run with a dirty worktree. Commit or stash changes first.",
                missing=[{"type": "CleanWorktree", "requirement": f"uncommitted: {path}"} for path in dirty],
                run_id=run.run_id,
            )
            return self._halt(ctx, None, error)

        if brief is not None and not ctx.store.exists("brief.md"):
            ctx.store.write("brief.md", brief, immutable=True, kind="brief")
        ctx.recorder.write_manifest(run)
        self._event("run_started", run, pipeline=pipeline.name)

        current: PhaseSpec | None = None
        try:
            for phase in pipeline.phases:
                current = phase
                record = run.phase(phase.name)
                if record.status == PhaseStatus.PASSED:
                    continue
                await self._run_phase(ctx, phase, record)
        except PhaseflowError as exc:
            return self._halt(ctx, current, exc)
        except asyncio.CancelledError:
            cancelled = PhaseflowError("Run was cancelled.", run_id=run.run_id)
            self._halt(ctx, current, cancelled)
            raise

        run.status = RunStatus.COMPLETE
        run.current_phase = None
        run.ended_at = utcnow_iso()
        ctx.recorder.write_manifest(run)
        self._event("run_complete", run)
        logger.info("Run %s for %s complete", run.run_id, feature)
        return RunResult(run_id=run.run_id, feature=feature, status=RunStatus.COMPLETE)

    def _halt(self, ctx: RunContext, phase: PhaseSpec | None, error: PhaseflowError) -> RunResult:
        run = ctx.run
        error.run_id = error.run_id or run.run_id
        status = RunStatus.FAILED if error.fatal else RunStatus.BLOCKED
        unmet = list(error.details.get("missing") or [])
        if isinstance(error, CoordinationUnready):
            unmet = list(error.pending)
        diff = error.diff if isinstance(error, ImmutableViolation) else ""
        if phase is not None:
            error.phase = error.phase or phase.name
            record = run.phase(phase.name)
            record.status = PhaseStatus.FAILED if error.fatal else PhaseStatus.BLOCKED
            record.blocked_reason = error.message
            record.unmet = unmet
            record.ended_at = utcnow_iso()
        run.status = status
        run.halt = error.to_dict()
        run.ended_at = utcnow_iso()
        result = RunResult(
            run_id=run.run_id,
            feature=run.feature,
            status=status,
            phase=phase.name if phase is not None else None,
            reason=error.message,
            unmet=unmet,
            diff=diff,
        )
        ctx.recorder.write_halt_report(run, result)
        ctx.recorder.write_manifest(run)
        self._event(f"run_{status}", run, phase=result.phase, error=error.code)
        return result

    async def _run_phase(self, ctx: RunContext, phase: PhaseSpec, record: PhaseRecord) -> None:
        run = ctx.run
        run.current_phase = phase.name
        await self._verify_locked(ctx, phase)
        await self._await_coordination(run, phase)

        gate = PrerequisiteGate(ctx.store, self.vcs, self.validation, self.coordination)
        ok, missing = await asyncio.to_thread(gate.evaluate, phase, run)
        if not ok:
            unmet = [requirement_to_dict(item) for item in missing]
            if all(isinstance(item, CoordinationReady) for item in missing):
                raise CoordinationUnready(
                    f"{phase.title} is waiting on other worktrees.", pending=unmet, phase=phase.name
                )
            raise GateUnmet(
                f"{phase.title} prerequisites are not met.", missing=unmet, phase=phase.name
            )

        record.status = PhaseStatus.RUNNING
        record.started_at = utcnow_iso()
        record.retry_count = 0
        ctx.recorder.write_manifest(run)
        logger.info("Phase %s of %s started", phase.title, run.feature)

        if phase.audit:
            await self._security_phase(ctx, phase, record)
        elif phase.document:
            await self._document_phase(ctx, phase, record)
        else:
            await self._build_phase(ctx, phase, record)

    async def _verify_locked(self, ctx: RunContext, phase: PhaseSpec) -> None:
        try:
            await asyncio.to_thread(ctx.store.verify_locked, self.vcs.root)
        except ImmutableViolation as exc:
            exc.run_id = ctx.run.run_id
            exc.phase = phase.name
            raise

    async def _await_coordination(self, run: Run, phase: PhaseSpec) -> None:
        wait = self.config.workflow.coordination_wait_seconds
        if self.coordination is None or wait <= 0:
            return
        await self.coordination.wait_until_ready(
            run.worktree,
            phase.name,
            timeout_seconds=wait,
            poll_seconds=self.config.workflow.coordination_poll_seconds,
        )

    def _context(self, run: Run, phase: PhaseSpec, step: StepSpec, attempt: int, **extra: Any) -> dict[str, Any]:
        return {
            "feature": run.feature,
            "run_id": run.run_id,
            "phase": phase.name,
            "step": str(step.kind),
            "attempt": attempt,
            **extra,
        }

    async def _invoke(
        self,
        ctx: RunContext,
        phase: PhaseSpec,
        record: PhaseRecord,
        step: StepSpec,
        attempt: int,
        prompt: Prompt,
    ) -> InvocationResult:
        """Invoke one agent step; a timeout is retried once before the phase blocks."""
        timeout_round = 0
        while True:
            timeout_round += 1
            step_record = StepRecord(kind=step.kind, agent=step.agent, attempt=attempt, status="running")
            record.steps.append(step_record)
            try:
                result = await self.invoker.invoke(step.agent, prompt, store=ctx.store)
            except AgentTimeout as exc:
                step_record.status = "timeout"
                step_record.ended_at = utcnow_iso()
                self._event("agent_timeout", ctx.run, phase=phase.name, agent=step.agent)
                if timeout_round >= 2:
                    exc.run_id = ctx.run.run_id
                    exc.phase = phase.name
                    raise
                logger.warning("Agent %s timed out in %s; retrying once", step.agent, phase.title)
                continue
            except asyncio.CancelledError:
                step_record.status = "cancelled"
                step_record.ended_at = utcnow_iso()
                raise
            step_record.status = result.status
            step_record.files = result.paths
            step_record.log_tail = tail(result.log, 500)
            step_record.ended_at = utcnow_iso()
            return result

    async def _prepare(self, ctx: RunContext, phase: PhaseSpec, record: PhaseRecord) -> dict[str, str]:
        notes: dict[str, str] = {}
        for step in phase.steps:
            if step.kind not in (StepKind.EXPLORE, StepKind.PLAN):
                continue
            prompt = Prompt(
                step.instruction.format(feature=ctx.run.feature),
                self._context(ctx.run, phase, step, 0, notes=dict(notes)),
            )
            try:
                result = await self._invoke(ctx, phase, record, step, 0, prompt)
            except AgentTimeout:
                if not step.optional:
                    raise
                logger.warning("Optional %s step of %s timed out; continuing", step.kind, phase.title)
                continue
            if result.succeeded:
                notes[str(step.kind)] = result.log
            elif not step.optional:
                raise ValidationFailed(
                    f"{phase.title} {step.kind} step failed: {tail(result.log, 300)}",
                    phase=phase.name,
                )
            else:
                logger.warning("Optional %s step of %s failed; continuing", step.kind, phase.title)
        return notes

    def _retry_or_fail(
        self,
        phase: PhaseSpec,
        record: PhaseRecord,
        result_reasons: list[str],
        verdict: Verdict | None,
        attempt: int,
        base_instruction: str,
    ) -> str:
        validation_result = verdict.result if verdict is not None else ValidationResult(passed=False)
        diagnosis = diagnose(self.classifier, validation_result, result_reasons, attempt)
        record.diagnostics.append(diagnosis.to_dict())
        record.retry_count = attempt
        logger.info("%s attempt %d failed (%s)", phase.title, attempt, diagnosis.kind)
        if attempt >= phase.retry_budget:
            raise ValidationFailed(
                f"{phase.title} failed validation after {attempt} attempt(s): "
                + "; ".join(result_reasons),
                exhausted=True,
                trail=list(record.diagnostics),
                phase=phase.name,
            )
        return build_followup_prompt(base_instruction, diagnosis, phase.retry_budget)

    async def _build_phase(self, ctx: RunContext, phase: PhaseSpec, record: PhaseRecord) -> None:
        run = ctx.run
        spec = phase.validation_spec
        needs_baseline = spec.coverage.mode == "baseline" or spec.require_stable_test_count
        baseline = await asyncio.to_thread(self.validation.run) if needs_baseline else None
        notes = await self._prepare(ctx, phase, record)
        step = phase.required_step(StepKind.EXECUTE)
        base_instruction = step.instruction.format(feature=run.feature)
        instruction = base_instruction
        # Restore point for REFACTOR: the worktree and store before its first attempt.
        phase_snapshot = await asyncio.to_thread(WorktreeSnapshot.capture, self.vcs, exclude=self.exclude)
        phase_savepoint = ctx.store.savepoint()

        try:
            for attempt in range(1, phase.retry_budget + 1):
                result = await self._invoke(
                    ctx, phase, record, step, attempt,
                    Prompt(instruction, self._context(run, phase, step, attempt, notes=notes)),
                )
                if phase.forbid_new_functionality:
                    self._enforce_no_new_functionality(
                        ctx, phase, record, phase_snapshot, phase_savepoint, result, attempt
                    )
                await self._verify_locked(ctx, phase)

                if not result.succeeded:
                    reasons = [f"Agent reported failure: {tail(result.log, 300)}"]
                    instruction = self._retry_or_fail(phase, record, reasons, None, attempt, base_instruction)
                    continue

                tests_touched = [path for path in result.paths if self.paths.category(path) == TEST]
                scope = TestScope.of(tests_touched) if tests_touched else None
                verdict = await asyncio.to_thread(self.validation.check, spec, scope=scope, baseline=baseline)
                record.validations.append(verdict.result.summary())
                if phase.forbid_new_functionality and baseline is not None:
                    grown = verdict.result.total_cases - baseline.total_cases
                    if grown > 0:
                        self._revert(ctx, phase_snapshot, phase_savepoint)
                        record.retry_count = attempt - 1
                        raise NewFunctionalityViolation(
                            f"{phase.title} added {grown} test case(s); change reverted.",
                            test_delta=grown,
                            phase=phase.name,
                        )
                if verdict.ok:
                    record.retry_count = attempt
                    break
                instruction = self._retry_or_fail(
                    phase, record, verdict.reasons, verdict, attempt, base_instruction
                )
        except ValidationFailed as exc:
            if phase.forbid_new_functionality and exc.exhausted:
                self._revert(ctx, phase_snapshot, phase_savepoint)
            raise

        await self._complete_phase(ctx, phase, record, await asyncio.to_thread(self._project_changes))

    def _revert(self, ctx: RunContext, snapshot: WorktreeSnapshot, savepoint: Savepoint) -> list[str]:
        reverted = snapshot.restore(self.vcs, exclude=self.exclude)
        ctx.store.rollback(savepoint)
        logger.warning("Reverted %s in %s", reverted, ctx.run.feature)
        return reverted

    def _enforce_no_new_functionality(
        self,
        ctx: RunContext,
        phase: PhaseSpec,
        record: PhaseRecord,
        snapshot: WorktreeSnapshot,
        savepoint: Savepoint,
        result: InvocationResult,
        attempt: int,
    ) -> None:
        produced = result.paths
        test_changes = [path for path in produced if self.paths.category(path) == TEST]
        before_sources: dict[str, str | None] = {}
        for path in produced:
            if not self.paths.is_source(path):
                continue
            if path in snapshot.contents:
                previous = snapshot.contents[path]
                before_sources[path] = previous.decode("utf-8", errors="replace") if previous is not None else None
            else:
                before_sources[path] = self.vcs.file_at("HEAD", path)
        added = added_operations(
            self.surface.scan_text(before_sources), self.surface.scan(self.vcs.root, produced)
        )
        if not test_changes and not added:
            return
        self._revert(ctx, snapshot, savepoint)
        record.retry_count = attempt - 1
        details = []
        if added:
            details.append(f"new operations {', '.join(added)}")
        if test_changes:
            details.append(f"test changes {', '.join(test_changes)}")
        raise NewFunctionalityViolation(
            f"{phase.title} must not add functionality ({'; '.join(details)}); change reverted.",
            added_operations=added,
            test_delta=len(test_changes),
            phase=phase.name,
        )

    async def _document_phase(self, ctx: RunContext, phase: PhaseSpec, record: PhaseRecord) -> None:
        run = ctx.run
        target = f"{phase.name}/{phase.document}"
        step = phase.required_step(StepKind.EXECUTE)
        if not ctx.store.exists(target):
            source_text = ctx.store.read(phase.source) if phase.source else ""
            base_instruction = step.instruction.format(feature=run.feature)
            instruction = base_instruction
            for attempt in range(1, phase.retry_budget + 1):
                result = await self._invoke(
                    ctx, phase, record, step, attempt,
                    Prompt(
                        instruction,
                        self._context(run, phase, step, attempt, input_document=source_text),
                    ),
                )
                await self._verify_locked(ctx, phase)
                if result.succeeded and result.log.strip():
                    ctx.store.write(
                        target, result.log.strip() + "\n", immutable=True, phase=phase.name, kind="document"
                    )
                    record.retry_count = attempt
                    break
                reason = "Agent returned an empty document." if result.succeeded else (
                    f"Agent reported failure: {tail(result.log, 300)}"
                )
                instruction = self._retry_or_fail(phase, record, [reason], None, attempt, base_instruction)
        await self._complete_phase(ctx, phase, record, await asyncio.to_thread(self._project_changes))

    async def _audit(
        self,
        ctx: RunContext,
        phase: PhaseSpec,
        record: PhaseRecord,
        attempt: int,
    ) -> list[SecurityFinding]:
        step = phase.required_step(StepKind.EXPLORE)
        result = await self._invoke(
            ctx, phase, record, step, attempt,
            Prompt(step.instruction.format(feature=ctx.run.feature), self._context(ctx.run, phase, step, attempt)),
        )
        if not result.succeeded:
            raise ValidationFailed(
                f"Security audit could not complete: {tail(result.log, 300)}", phase=phase.name
            )
        findings = parse_findings(result.log)
        logger.info(
            "Audit of %s found %d finding(s): %s",
            ctx.run.feature,
            len(findings),
            ", ".join(f"{item.severity}:{item.finding_id}" for item in findings) or "none",
        )
        return findings

    async def _security_phase(self, ctx: RunContext, phase: PhaseSpec, record: PhaseRecord) -> None:
        run = ctx.run
        findings = await self._audit(ctx, phase, record, 0)
        seen: dict[str, SecurityFinding] = {item.finding_id: item for item in findings}
        triage = Triage.of(findings)
        if triage.critical:
            findings = await self._remediate(ctx, phase, record, triage.critical)
            seen.update({item.finding_id: item for item in findings})
            triage = Triage.of(findings)
        record.findings = [item.to_dict() for item in seen.values()]

        backlog = [item for item in seen.values() if not item.severity.blocking]
        if backlog:
            added = await asyncio.to_thread(append_backlog, self.ledger, run.feature, backlog)
            logger.info("Recorded %d new backlog finding(s) for %s", added, run.feature)

        open_high = [item for item in triage.high if not is_risk_accepted(ctx.store, item.finding_id)]
        if open_high:
            await self._commit_remediation(ctx, phase, record)
            raise CriticalSecurityFinding(
                f"{len(open_high)} High finding(s) need remediation or an accepted-risk record "
                f"(phaseflow accept-risk {run.feature} <id>).",
                findings=[item.to_dict() for item in open_high],
                phase=phase.name,
            )

        accepted = {item.finding_id for item in triage.high}
        ctx.store.write(
            "security/report.md",
            render_report(run.feature, sorted(seen.values(), key=lambda item: item.finding_id), accepted),
            phase=phase.name,
            kind="report",
        )
        await self._complete_phase(ctx, phase, record, await asyncio.to_thread(self._project_changes))

    async def _remediate(
        self,
        ctx: RunContext,
        phase: PhaseSpec,
        record: PhaseRecord,
        critical: list[SecurityFinding],
    ) -> list[SecurityFinding]:
        """Fix Critical findings; each accepted fix must grow the test suite."""
        run = ctx.run
        spec = phase.validation_spec
        baseline = await asyncio.to_thread(self.validation.run)
        step = phase.required_step(StepKind.EXECUTE)
        listing = "\n".join(
            f"- [{item.finding_id}] {item.title} ({item.location or 'unknown location'})" for item in critical
        )
        base_instruction = f"{step.instruction.format(feature=run.feature)}\n{listing}"
        instruction = base_instruction
        open_critical = critical

        attempt = 0
        while True:
            attempt += 1
            result = await self._invoke(
                ctx, phase, record, step, attempt,
                Prompt(
                    instruction,
                    self._context(run, phase, step, attempt, findings=[item.to_dict() for item in open_critical]),
                ),
            )
            await self._verify_locked(ctx, phase)
            verdict: Verdict | None = None
            if not result.succeeded:
                reasons = [f"Agent reported failure: {tail(result.log, 300)}"]
            else:
                tests_touched = [path for path in result.paths if self.paths.category(path) == TEST]
                scope = TestScope.of(tests_touched) if tests_touched else None
                verdict = await asyncio.to_thread(self.validation.check, spec, scope=scope, baseline=baseline)
                record.validations.append(verdict.result.summary())
                reasons = list(verdict.reasons)
                if verdict.ok:
                    findings = await self._audit(ctx, phase, record, attempt)
                    open_critical = [item for item in findings if item.severity == Severity.CRITICAL]
                    if not open_critical:
                        record.retry_count = attempt
                        return findings
                    reasons = [f"Critical finding still open: {item.title}" for item in open_critical]
                    if attempt >= phase.retry_budget:
                        record.retry_count = attempt
                        raise CriticalSecurityFinding(
                            f"{len(open_critical)} Critical finding(s) remain after {attempt} remediation attempt(s).",
                            findings=[item.to_dict() for item in open_critical],
                            phase=phase.name,
                        )
            instruction = self._retry_or_fail(phase, record, reasons, verdict, attempt, base_instruction)

    async def _commit_remediation(self, ctx: RunContext, phase: PhaseSpec, record: PhaseRecord) -> None:
        """Keep validated Critical fixes when the phase blocks, so a resumed run starts clean."""
        changed = await asyncio.to_thread(self._project_changes)
        if not changed:
            return
        record.commit_id = await asyncio.to_thread(
            ctx.recorder.commit,
            ctx.run,
            phase.name,
            f"{phase.commit_message(ctx.run.feature)} (critical remediation)",
            changed,
            authorized=phase.authorized,
        )
        logger.info("Committed critical remediation of %s before blocking", ctx.run.feature)

    async def _complete_phase(
        self,
        ctx: RunContext,
        phase: PhaseSpec,
        record: PhaseRecord,
        changed: list[str],
    ) -> None:
        run = ctx.run
        ctx.recorder.authorize(run, phase.name, phase.authorized, changed)
        for path in changed:
            if self.paths.category(path) not in phase.lock_categories:
                continue
            if not (self.vcs.root / path).is_file():
                continue
            existing = ctx.store.record(f"{phase.name}/locked/{path}")
            if existing is None:
                ctx.store.lock_project_file(self.vcs.root, path, phase=phase.name)

        record.status = PhaseStatus.PASSED
        record.ended_at = utcnow_iso()
        ctx.recorder.write_summary(run, record)
        record.commit_id = await asyncio.to_thread(
            ctx.recorder.commit,
            run,
            phase.name,
            phase.commit_message(run.feature),
            changed,
            authorized=phase.authorized,
        )
        if self.coordination is not None:
            for kind in phase.publishes:
                await asyncio.to_thread(
                    self.coordination.mark_published, run.worktree, kind, record.commit_id
                )
        ctx.recorder.write_manifest(run)
        self._event("phase_passed", run, phase=phase.name, attempts=record.retry_count)
        logger.info("Phase %s of %s passed after %d attempt(s)", phase.title, run.feature, record.retry_count)


def coordination_directory(vcs: VCS, config: PhaseflowConfig) -> Path:
    if config.state.coordination_dir:
        configured = Path(config.state.coordination_dir)
        return configured if configured.is_absolute() else vcs.root / configured
    return vcs.common_dir() / "phaseflow"


async def run_parallel(jobs: list[tuple[PhaseController, str, PipelineDefinition]]) -> list[RunResult]:
    """Run several features concurrently; they interact only through coordination edges."""
    return list(
        await asyncio.gather(*(controller.run_pipeline(feature, pipeline) for controller, feature, pipeline in jobs))
    )
