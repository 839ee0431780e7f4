from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any

from phaseflow.backends.base import BackendExecutionError
from phaseflow.errors import AgentTimeout, StateError
from phaseflow.parsing import extract_json_objects
from phaseflow.specialists.base import SpecialistAgent
from phaseflow.state.artifacts import ArtifactStore, Savepoint
from phaseflow.state.vcs import VCS, WorktreeSnapshot

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ArtifactRef:
    path: str
    digest: str | None


@dataclass(slots=True)
class Prompt:
    instruction: str
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class InvocationResult:
    agent: str
    files: list[ArtifactRef]
    status: str
    log: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def paths(self) -> list[str]:
        return [ref.path for ref in self.files]


def _reported_status(content: str) -> str | None:
    status = None
    for payload in extract_json_objects(content):
        value = payload.get("status")
        if isinstance(value, str) and value.strip().lower() in {"success", "failure"}:
            status = value.strip().lower()
    return status


class TaskInvoker:
    """Runs named agents and reports which worktree files each call produced.

    A call that times out or is cancelled leaves no trace: its worktree
    changes are restored and artifact writes made meanwhile are rolled back.
    """

    def __init__(
        self,
        agents: dict[str, SpecialistAgent],
        vcs: VCS,
        *,
        timeout_seconds: float,
        exclude: tuple[str, ...] = (),
    ) -> None:
        self.agents = agents
        self.vcs = vcs
        self.timeout_seconds = timeout_seconds
        self.exclude = exclude

    def _revert(
        self,
        snapshot: WorktreeSnapshot,
        store: ArtifactStore | None,
        savepoint: Savepoint | None,
    ) -> None:
        reverted = snapshot.restore(self.vcs, exclude=self.exclude)
        if store is not None and savepoint is not None:
            reverted.extend(f"{store.namespace}/{path}" for path in store.rollback(savepoint))
        if reverted:
            logger.warning("Reverted changes from interrupted agent step: %s", reverted)

    async def invoke(
        self,
        agent_name: str,
        prompt: Prompt,
        *,
        store: ArtifactStore | None = None,
    ) -> InvocationResult:
        agent = self.agents.get(agent_name)
        if agent is None:
            raise StateError(f"Unknown agent: {agent_name}")

        snapshot = await asyncio.to_thread(WorktreeSnapshot.capture, self.vcs, exclude=self.exclude)
        savepoint = store.savepoint() if store is not None else None
        context = {"_working_directory": str(self.vcs.root), **prompt.context}
        logger.debug("Invoking agent %s", agent_name)

        try:
            response = await asyncio.wait_for(
                agent.run(prompt.instruction, context), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            self._revert(snapshot, store, savepoint)
            raise AgentTimeout(
                f"Agent '{agent_name}' timed out after {self.timeout_seconds:.1f}s",
                agent=agent_name,
                timeout_seconds=self.timeout_seconds,
            ) from exc
        except asyncio.CancelledError:
            self._revert(snapshot, store, savepoint)
            raise
        except BackendExecutionError as exc:
            status, log = "failure", str(exc)
        else:
            status = _reported_status(response.content) or "success"
            log = response.content

        changed = await asyncio.to_thread(snapshot.changes_since, self.vcs, exclude=self.exclude)
        files = []
        for path in changed:
            target = self.vcs.root / path
            digest = hashlib.sha256(target.read_bytes()).hexdigest() if target.is_file() else None
            files.append(ArtifactRef(path=path, digest=digest))
        return InvocationResult(agent=agent_name, files=files, status=status, log=log)
