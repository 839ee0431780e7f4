import subprocess
from pathlib import Path

import pytest

from phaseflow.errors import StateError
from phaseflow.state import GitVCS, WorktreeSnapshot


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    return repo


def test_non_repository_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(StateError, match="Not a git repository"):
        GitVCS(tmp_path)


def test_commit_files_commits_only_named_paths(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    vcs = GitVCS(repo)
    (repo / "a.txt").write_text("a\n", encoding="utf-8")
    (repo / "b.txt").write_text("b\n", encoding="utf-8")

    commit_id = vcs.commit_files(["a.txt"], "test(feature-a): RED failing tests")

    assert commit_id == vcs.head()
    assert vcs.changed_paths() == ["b.txt"]
    assert vcs.has_commit_matching(r"^test\(feature-a\): RED")
    assert not vcs.has_commit_matching(r"^feat\(feature-a\)")
    assert vcs.file_at("HEAD", "a.txt") == "a\n"
    assert vcs.file_at("HEAD", "b.txt") is None


def test_empty_commit_is_refused(tmp_path: Path) -> None:
    vcs = GitVCS(_repo(tmp_path))

    with pytest.raises(StateError, match="empty commit"):
        vcs.commit_files([], "nothing")


def test_diff_since_and_discard(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    vcs = GitVCS(repo)
    base = vcs.head()
    assert base is not None
    (repo / "seed.txt").write_text("changed\n", encoding="utf-8")
    (repo / "new.txt").write_text("new\n", encoding="utf-8")

    assert vcs.diff_since(base) == ["new.txt", "seed.txt"]

    vcs.discard(["seed.txt", "new.txt"])

    assert (repo / "seed.txt").read_text(encoding="utf-8") == "seed\n"
    assert not (repo / "new.txt").exists()
    assert vcs.changed_paths() == []


def test_worktree_name_and_common_dir(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    vcs = GitVCS(repo)

    assert vcs.worktree_name() == "repo"
    assert vcs.common_dir() == (repo / ".git").resolve()


def test_snapshot_restore_reverts_step_changes(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    vcs = GitVCS(repo)
    (repo / "draft.txt").write_text("draft\n", encoding="utf-8")
    snapshot = WorktreeSnapshot.capture(vcs)

    (repo / "draft.txt").write_text("agent edit\n", encoding="utf-8")
    (repo / "seed.txt").write_text("agent edit\n", encoding="utf-8")
    (repo / "src").mkdir()
    (repo / "src" / "app.py").write_text("def run():\n    pass\n", encoding="utf-8")

    assert snapshot.changes_since(vcs) == ["draft.txt", "seed.txt", "src/app.py"]

    restored = snapshot.restore(vcs)

    assert restored == ["draft.txt", "seed.txt", "src/app.py"]
    assert (repo / "draft.txt").read_text(encoding="utf-8") == "draft\n"
    assert (repo / "seed.txt").read_text(encoding="utf-8") == "seed\n"
    assert not (repo / "src" / "app.py").exists()


def test_snapshot_ignores_excluded_prefixes(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    vcs = GitVCS(repo)
    snapshot = WorktreeSnapshot.capture(vcs, exclude=("runs/",))

    (repo / "runs").mkdir()
    (repo / "runs" / "manifest.json").write_text("{}", encoding="utf-8")

    assert snapshot.changes_since(vcs, exclude=("runs/",)) == []
    assert snapshot.restore(vcs, exclude=("runs/",)) == []
    assert (repo / "runs" / "manifest.json").exists()
