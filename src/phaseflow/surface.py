from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path


@dataclass(slots=True, frozen=True)
class SurfaceEntry:
    path: str
    name: str

    def __str__(self) -> str:
        return f"{self.path}:{self.name}"


class SurfaceScanner:
    """Collects externally visible operation names from source files.

    A name is public when it matches one of the configured patterns and does
    not start with an underscore.
    """

    def __init__(self, patterns: list[str], is_source: Callable[[str], bool]) -> None:
        self.patterns = [re.compile(pattern, re.MULTILINE) for pattern in patterns]
        self.is_source = is_source

    def names_in(self, text: str) -> set[str]:
        names: set[str] = set()
        for pattern in self.patterns:
            for match in pattern.finditer(text):
                name = match.group(1)
                if name and not name.startswith("_"):
                    names.add(name)
        return names

    def scan(self, root: Path, paths: Iterable[str]) -> set[SurfaceEntry]:
        entries: set[SurfaceEntry] = set()
        for path in paths:
            if not self.is_source(path):
                continue
            target = root / path
            if not target.is_file():
                continue
            text = target.read_text(encoding="utf-8", errors="replace")
            entries.update(SurfaceEntry(path=path, name=name) for name in self.names_in(text))
        return entries

    def scan_text(self, sources: dict[str, str | None]) -> set[SurfaceEntry]:
        entries: set[SurfaceEntry] = set()
        for path, text in sources.items():
            if text is None or not self.is_source(path):
                continue
            entries.update(SurfaceEntry(path=path, name=name) for name in self.names_in(text))
        return entries


def added_operations(before: set[SurfaceEntry], after: set[SurfaceEntry]) -> list[str]:
    """Names visible after a change that no file exposed before it.

    Moving an operation between files is not an addition.
    """
    known = {entry.name for entry in before}
    return sorted(str(entry) for entry in after if entry.name not in known)
