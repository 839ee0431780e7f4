import asyncio
import subprocess
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from phaseflow.backends.base import AgentBackend, BackendExecutionError
from phaseflow.errors import AgentTimeout, StateError
from phaseflow.invoker import Prompt, TaskInvoker
from phaseflow.specialists import ExecutorAgent
from phaseflow.state import ArtifactStore, GitVCS


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


class WritingBackend(AgentBackend):
    """Writes files into the working directory it is handed, then reports."""

    def __init__(self, files: dict[str, str], reply: str = "done", delay: float = 0.0) -> None:
        self.files = files
        self.reply = reply
        self.delay = delay

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        root = Path(context["_working_directory"])
        for path, content in self.files.items():
            target = root / path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        if self.delay:
            await asyncio.sleep(self.delay)
        yield self.reply


class CrashingBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        raise BackendExecutionError("agent crashed", backend="fake")
        yield ""  # pragma: no cover


def _repo(tmp_path: Path) -> tuple[Path, GitVCS]:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    return repo, GitVCS(repo)


def test_invoke_reports_produced_files(tmp_path: Path) -> None:
    repo, vcs = _repo(tmp_path)
    backend = WritingBackend({"tests/filter_test.txt": "priority\n", "runs/x/notes.md": "n"})
    invoker = TaskInvoker({"execute": ExecutorAgent(backend)}, vcs, timeout_seconds=5.0, exclude=("runs/",))

    result = asyncio.run(invoker.invoke("execute", Prompt("Write failing tests")))

    assert result.succeeded
    assert result.paths == ["tests/filter_test.txt"]
    assert result.files[0].digest is not None
    assert result.log == "done"


def test_reported_failure_status(tmp_path: Path) -> None:
    _, vcs = _repo(tmp_path)
    backend = WritingBackend({}, reply='Could not do it.\n{"status": "failure", "reason": "ambiguous"}')
    invoker = TaskInvoker({"execute": ExecutorAgent(backend)}, vcs, timeout_seconds=5.0)

    result = asyncio.run(invoker.invoke("execute", Prompt("Implement")))

    assert result.status == "failure"
    assert not result.succeeded


def test_backend_error_becomes_failed_result(tmp_path: Path) -> None:
    _, vcs = _repo(tmp_path)
    invoker = TaskInvoker({"execute": ExecutorAgent(CrashingBackend())}, vcs, timeout_seconds=5.0)

    result = asyncio.run(invoker.invoke("execute", Prompt("Implement")))

    assert result.status == "failure"
    assert "agent crashed" in result.log


def test_unknown_agent(tmp_path: Path) -> None:
    _, vcs = _repo(tmp_path)
    invoker = TaskInvoker({}, vcs, timeout_seconds=5.0)

    with pytest.raises(StateError, match="Unknown agent"):
        asyncio.run(invoker.invoke("execute", Prompt("Implement")))


def test_timeout_reverts_worktree_and_artifacts(tmp_path: Path) -> None:
    repo, vcs = _repo(tmp_path)
    store = ArtifactStore(repo / "runs", "feature-a")
    store.write("notes.md", "before\n")

    class ArtifactWritingBackend(WritingBackend):
        async def execute(self, system_prompt: str, user_prompt: str, context: dict[str, Any]) -> AsyncIterator[str]:
            store.write("notes.md", "during\n")
            async for chunk in super().execute(system_prompt, user_prompt, context):
                yield chunk

    backend = ArtifactWritingBackend({"src/app.py": "half\n", "seed.txt": "edited\n"}, delay=5.0)
    invoker = TaskInvoker({"execute": ExecutorAgent(backend)}, vcs, timeout_seconds=0.05, exclude=("runs/",))

    with pytest.raises(AgentTimeout) as excinfo:
        asyncio.run(invoker.invoke("execute", Prompt("Implement"), store=store))

    assert excinfo.value.agent == "execute"
    assert not (repo / "src" / "app.py").exists()
    assert (repo / "seed.txt").read_text(encoding="utf-8") == "seed\n"
    assert store.read("notes.md") == "before\n"


def test_cancellation_reverts_and_propagates(tmp_path: Path) -> None:
    repo, vcs = _repo(tmp_path)
    backend = WritingBackend({"src/app.py": "half\n"}, delay=5.0)
    invoker = TaskInvoker({"execute": ExecutorAgent(backend)}, vcs, timeout_seconds=30.0)

    async def _scenario() -> None:
        task = asyncio.create_task(invoker.invoke("execute", Prompt("Implement")))
        await asyncio.sleep(0.1)
        task.cancel()
        await task

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(_scenario())
    assert not (repo / "src" / "app.py").exists()
