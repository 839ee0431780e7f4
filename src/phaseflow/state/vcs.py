from __future__ import annotations

import hashlib
import logging
import re
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from phaseflow.errors import StateError

logger = logging.getLogger(__name__)


class VCS(ABC):
    """Version-control operations the orchestrator depends on."""

    root: Path

    @abstractmethod
    def commit_files(self, paths: list[str], message: str) -> str:
        """Stage exactly ``paths`` and commit them; returns the commit id."""

    @abstractmethod
    def has_commit_matching(self, pattern: str) -> bool:
        """Return True when any commit subject on HEAD matches ``pattern``."""

    @abstractmethod
    def diff_since(self, ref: str) -> list[str]:
        """Paths changed between ``ref`` and the working tree."""

    @abstractmethod
    def changed_paths(self) -> list[str]:
        """Uncommitted paths (modified, deleted, untracked) in the working tree."""

    @abstractmethod
    def discard(self, paths: list[str]) -> None:
        """Drop working-tree changes to ``paths`` (restore tracked, delete untracked)."""

    @abstractmethod
    def head(self) -> str | None:
        """Current commit id, or None before the first commit."""

    @abstractmethod
    def file_at(self, ref: str, path: str) -> str | None:
        """Content of ``path`` at ``ref``, or None when it did not exist there."""

    def worktree_name(self) -> str:
        return self.root.name

    def common_dir(self) -> Path:
        return self.root


class GitVCS(VCS):
    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        if not self._is_git_repo():
            raise StateError(f"Not a git repository: {self.root}")

    def _is_git_repo(self) -> bool:
        proc = subprocess.run(
            ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
            cwd=self.root,
            text=True,
            capture_output=True,
        )
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise StateError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def head(self) -> str | None:
        proc = self._run_git(["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def current_branch(self) -> str:
        proc = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        return proc.stdout.strip() or "HEAD"

    def worktree_name(self) -> str:
        proc = self._run_git(["rev-parse", "--show-toplevel"], check=False)
        top = proc.stdout.strip()
        return Path(top).name if top else self.root.name

    def common_dir(self) -> Path:
        proc = self._run_git(["rev-parse", "--git-common-dir"], check=True)
        common = Path(proc.stdout.strip())
        if not common.is_absolute():
            common = self.root / common
        return common.resolve()

    @staticmethod
    def _status_line_path(status_line: str) -> str:
        candidate = status_line[3:].strip()
        if " -> " in candidate:
            candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
        if candidate.startswith('"') and candidate.endswith('"'):
            candidate = candidate[1:-1]
        return candidate

    def changed_paths(self) -> list[str]:
        proc = self._run_git(["status", "--porcelain", "--untracked-files=all"], check=True)
        paths = {
            self._status_line_path(line)
            for line in proc.stdout.splitlines()
            if line.strip()
        }
        return sorted(path for path in paths if path)

    def commit_files(self, paths: list[str], message: str) -> str:
        unique = sorted(set(paths))
        if not unique:
            raise StateError("Refusing to create an empty commit.")
        self._run_git(["add", "--all", "--", *unique], check=True)
        self._run_git(["commit", "-m", message, "--", *unique], check=True)
        commit_id = self._run_git(["rev-parse", "HEAD"], check=True).stdout.strip()
        logger.info("Committed %d file(s) as %s: %s", len(unique), commit_id[:10], message)
        return commit_id

    def has_commit_matching(self, pattern: str) -> bool:
        if self.head() is None:
            return False
        proc = self._run_git(["log", "--pretty=format:%s"], check=True)
        compiled = re.compile(pattern)
        return any(compiled.search(line) for line in proc.stdout.splitlines())

    def diff_since(self, ref: str) -> list[str]:
        proc = self._run_git(["diff", "--name-only", ref], check=True)
        tracked = {line.strip() for line in proc.stdout.splitlines() if line.strip()}
        untracked = self._run_git(
            ["ls-files", "--others", "--exclude-standard"], check=True
        ).stdout.splitlines()
        tracked.update(line.strip() for line in untracked if line.strip())
        return sorted(tracked)

    def _is_tracked(self, path: str) -> bool:
        if self.head() is None:
            return False
        proc = self._run_git(["cat-file", "-e", f"HEAD:{path}"], check=False)
        return proc.returncode == 0

    def discard(self, paths: list[str]) -> None:
        for path in sorted(set(paths)):
            if self._is_tracked(path):
                self._run_git(["checkout", "HEAD", "--", path], check=True)
                continue
            self._run_git(["rm", "--cached", "--quiet", "--ignore-unmatch", "--", path], check=False)
            target = self.root / path
            if target.is_file() or target.is_symlink():
                target.unlink()
        logger.debug("Discarded working-tree changes: %s", paths)

    def file_at(self, ref: str, path: str) -> str | None:
        proc = self._run_git(["show", f"{ref}:{path}"], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout


def _fingerprint(path: Path) -> str | None:
    if not path.is_file():
        return None
    return hashlib.sha256(path.read_bytes()).hexdigest()


@dataclass(slots=True)
class WorktreeSnapshot:
    """Contents of dirty paths at a point in time, used to undo a step's changes."""

    root: Path
    contents: dict[str, bytes | None] = field(default_factory=dict)
    fingerprints: dict[str, str | None] = field(default_factory=dict)

    @classmethod
    def capture(cls, vcs: VCS, *, exclude: tuple[str, ...] = ()) -> WorktreeSnapshot:
        snapshot = cls(root=vcs.root)
        for path in vcs.changed_paths():
            if path.startswith(exclude):
                continue
            target = vcs.root / path
            snapshot.contents[path] = target.read_bytes() if target.is_file() else None
            snapshot.fingerprints[path] = _fingerprint(target)
        return snapshot

    def changes_since(self, vcs: VCS, *, exclude: tuple[str, ...] = ()) -> list[str]:
        current = [path for path in vcs.changed_paths() if not path.startswith(exclude)]
        changed: list[str] = []
        for path in current:
            fingerprint = _fingerprint(self.root / path)
            if path not in self.fingerprints or self.fingerprints[path] != fingerprint:
                changed.append(path)
        for path in self.fingerprints:
            if path not in current and path not in changed:
                changed.append(path)
        return sorted(changed)

    def restore(self, vcs: VCS, *, exclude: tuple[str, ...] = ()) -> list[str]:
        changed = self.changes_since(vcs, exclude=exclude)
        fresh = [path for path in changed if path not in self.contents]
        if fresh:
            vcs.discard(fresh)
        for path in changed:
            if path not in self.contents:
                continue
            target = self.root / path
            previous = self.contents[path]
            if previous is None:
                if target.exists():
                    target.unlink()
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(previous)
        return changed
