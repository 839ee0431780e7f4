from pathlib import Path

from phaseflow.config import PhaseflowConfig
from phaseflow.recorder import PathClassifier
from phaseflow.surface import SurfaceScanner, added_operations


def _scanner() -> SurfaceScanner:
    config = PhaseflowConfig.default()
    return SurfaceScanner(list(config.guardrails.surface_patterns), PathClassifier(config).is_source)


def test_public_names_in_python_and_typescript() -> None:
    scanner = _scanner()
    text = "\n".join(
        [
            "def filter_tasks(tasks, priority):",
            "    def inner():",
            "        pass",
            "async def load():",
            "def _private_helper():",
            "class TaskFilter:",
            "export function byPriority(tasks) {}",
            "export const DEFAULT_PRIORITY = 3;",
            "export default async function main() {}",
        ]
    )

    assert scanner.names_in(text) == {
        "filter_tasks",
        "inner",
        "load",
        "TaskFilter",
        "byPriority",
        "DEFAULT_PRIORITY",
        "main",
    }


def test_scan_skips_tests_and_documents(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "tests").mkdir()
    (tmp_path / "src" / "app.py").write_text("def run():\n    pass\n", encoding="utf-8")
    (tmp_path / "tests" / "test_app.py").write_text("def test_run():\n    pass\n", encoding="utf-8")
    (tmp_path / "README.md").write_text("def not_code():\n", encoding="utf-8")

    entries = _scanner().scan(tmp_path, ["src/app.py", "tests/test_app.py", "README.md", "src/missing.py"])

    assert {str(entry) for entry in entries} == {"src/app.py:run"}


def test_added_operations_ignores_moves_and_renames_of_private_helpers() -> None:
    scanner = _scanner()
    before = scanner.scan_text({"src/app.py": "def filter_tasks():\n    pass\n", "src/new.py": None})
    moved = scanner.scan_text(
        {"src/app.py": "def _helper():\n    pass\n", "src/new.py": "def filter_tasks():\n    pass\n"}
    )
    grown = scanner.scan_text({"src/app.py": "def filter_tasks():\n    pass\ndef new_public_op():\n    pass\n"})

    assert added_operations(before, moved) == []
    assert added_operations(before, grown) == ["src/app.py:new_public_op"]
