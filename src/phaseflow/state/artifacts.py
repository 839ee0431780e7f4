from __future__ import annotations

import difflib
import hashlib
import json
import os
import shutil
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath

from phaseflow.errors import ImmutableViolation, StateError
from phaseflow.models import ArtifactRecord, utcnow_iso

INDEX_FILE = ".index.json"

_namespace_locks: dict[str, threading.RLock] = {}
_namespace_locks_guard = threading.Lock()


def _namespace_lock(base: Path) -> threading.RLock:
    key = str(base.resolve())
    with _namespace_locks_guard:
        lock = _namespace_locks.get(key)
        if lock is None:
            lock = threading.RLock()
            _namespace_locks[key] = lock
        return lock


def content_hash(content: str | bytes) -> str:
    data = content.encode("utf-8") if isinstance(content, str) else content
    return "sha256:" + hashlib.sha256(data).hexdigest()


def normalize_artifact_path(path: str) -> str:
    raw = str(path).replace("\\", "/").strip()
    if not raw:
        raise ValueError("Artifact path must not be empty.")
    candidate = PurePosixPath(raw)
    if candidate.is_absolute() or any(part == ".." for part in candidate.parts):
        raise ValueError(f"Artifact path escapes the run namespace: {path}")
    normalized = "/".join(part for part in candidate.parts if part not in {"", "."})
    if not normalized or normalized == INDEX_FILE:
        raise ValueError(f"Reserved artifact path: {path}")
    return normalized


@dataclass(slots=True)
class Savepoint:
    index: dict[str, dict]
    contents: dict[str, bytes] = field(default_factory=dict)


class ArtifactStore:
    """Path-addressed storage of phase outputs under ``<runs_dir>/<namespace>``.

    Paths marked immutable are write-once: a later write raises
    ``ImmutableViolation`` and the stored bytes stay untouched.
    """

    def __init__(self, runs_root: Path, namespace: str) -> None:
        safe_namespace = normalize_artifact_path(namespace)
        if "/" in safe_namespace:
            raise ValueError(f"Namespace must be a single path segment: {namespace}")
        self.runs_root = runs_root
        self.namespace = safe_namespace
        self.base = runs_root / safe_namespace
        self._lock = _namespace_lock(self.base)

    @property
    def index_path(self) -> Path:
        return self.base / INDEX_FILE

    def _load_index(self) -> dict[str, dict]:
        if not self.index_path.exists():
            return {}
        try:
            payload = json.loads(self.index_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateError(f"Artifact index is corrupt: {self.index_path}") from exc
        artifacts = payload.get("artifacts", {}) if isinstance(payload, dict) else {}
        return artifacts if isinstance(artifacts, dict) else {}

    def _save_index(self, index: dict[str, dict]) -> None:
        self._atomic_write(
            self.index_path,
            json.dumps({"artifacts": index}, ensure_ascii=False, indent=2, sort_keys=True),
        )

    @staticmethod
    def _atomic_write(target: Path, content: str | bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode("utf-8") if isinstance(content, str) else content
        fd, tmp_name = tempfile.mkstemp(prefix=".artifact-", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def _resolve(self, path: str) -> tuple[str, Path]:
        normalized = normalize_artifact_path(path)
        return normalized, self.base / normalized

    def write(
        self,
        path: str,
        content: str | bytes,
        *,
        immutable: bool = False,
        phase: str | None = None,
        kind: str = "file",
        source: str | None = None,
    ) -> ArtifactRecord:
        normalized, target = self._resolve(path)
        with self._lock:
            index = self._load_index()
            existing = index.get(normalized)
            if isinstance(existing, dict) and existing.get("immutable"):
                raise ImmutableViolation(
                    f"Artifact '{normalized}' is immutable and cannot be overwritten.",
                    path=normalized,
                    phase=phase,
                )
            record = ArtifactRecord(
                path=normalized,
                phase=phase,
                kind=kind,
                immutable=immutable,
                content_hash=content_hash(content),
                source=source,
            )
            self._atomic_write(target, content)
            index[normalized] = record.to_dict()
            self._save_index(index)
            return record

    def read(self, path: str) -> str:
        normalized, target = self._resolve(path)
        if not target.is_file():
            raise FileNotFoundError(f"Artifact not found: {normalized}")
        return target.read_text(encoding="utf-8")

    def exists(self, path: str) -> bool:
        _, target = self._resolve(path)
        return target.is_file()

    def record(self, path: str) -> ArtifactRecord | None:
        normalized = normalize_artifact_path(path)
        payload = self._load_index().get(normalized)
        if not isinstance(payload, dict):
            return None
        return ArtifactRecord.from_dict(payload)

    def records(self) -> list[ArtifactRecord]:
        return [
            ArtifactRecord.from_dict(payload)
            for _, payload in sorted(self._load_index().items())
            if isinstance(payload, dict)
        ]

    def list(self, prefix: str = "") -> list[str]:
        if not self.base.exists():
            return []
        normalized_prefix = prefix.replace("\\", "/").strip("/")
        paths: list[str] = []
        for candidate in self.base.rglob("*"):
            if not candidate.is_file():
                continue
            rel = candidate.relative_to(self.base).as_posix()
            if rel == INDEX_FILE or candidate.name.startswith(".artifact-"):
                continue
            if normalized_prefix and not (
                rel == normalized_prefix or rel.startswith(normalized_prefix + "/")
            ):
                continue
            paths.append(rel)
        return sorted(paths)

    def lock_project_file(self, project_root: Path, rel_path: str, *, phase: str) -> ArtifactRecord:
        source = normalize_artifact_path(rel_path)
        source_file = project_root / source
        if not source_file.is_file():
            raise StateError(f"Cannot lock missing project file: {source}")
        return self.write(
            f"{phase}/locked/{source}",
            source_file.read_bytes(),
            immutable=True,
            phase=phase,
            kind="locked",
            source=source,
        )

    def locked_sources(self) -> list[ArtifactRecord]:
        return [record for record in self.records() if record.immutable and record.source]

    def verify_locked(self, project_root: Path) -> None:
        """Raise ``ImmutableViolation`` when a locked project file diverged from its snapshot."""
        for record in self.locked_sources():
            source = record.source or ""
            current_file = project_root / source
            current = current_file.read_bytes() if current_file.is_file() else None
            if current is not None and content_hash(current) == record.content_hash:
                continue
            stored = self.read(record.path)
            current_text = "" if current is None else current.decode("utf-8", errors="replace")
            diff = "".join(
                difflib.unified_diff(
                    stored.splitlines(keepends=True),
                    current_text.splitlines(keepends=True),
                    fromfile=f"locked/{source}",
                    tofile=source if current is not None else "/dev/null",
                )
            )
            raise ImmutableViolation(
                f"Locked artifact '{source}' (from {record.phase}) was modified.",
                path=source,
                diff=diff,
                phase=record.phase,
            )

    def savepoint(self) -> Savepoint:
        with self._lock:
            index = self._load_index()
            contents: dict[str, bytes] = {}
            for rel in index:
                target = self.base / rel
                if target.is_file() and not index[rel].get("immutable"):
                    contents[rel] = target.read_bytes()
            return Savepoint(index=index, contents=contents)

    def rollback(self, savepoint: Savepoint) -> list[str]:
        """Undo every mutable write made after ``savepoint``; returns the paths touched."""
        touched: list[str] = []
        with self._lock:
            index = self._load_index()
            for rel, payload in list(index.items()):
                if rel in savepoint.index:
                    if payload == savepoint.index[rel]:
                        continue
                    if payload.get("immutable") and savepoint.index[rel].get("immutable"):
                        continue
                    if rel in savepoint.contents:
                        self._atomic_write(self.base / rel, savepoint.contents[rel])
                    index[rel] = savepoint.index[rel]
                    touched.append(rel)
                    continue
                target = self.base / rel
                if target.exists():
                    target.unlink()
                del index[rel]
                touched.append(rel)
            self._save_index(index)
        return sorted(touched)

    def archive(self, archive_root: Path, label: str | None = None) -> Path:
        with self._lock:
            if not self.base.exists():
                raise StateError(f"Nothing to archive for '{self.namespace}'.")
            stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
            destination = archive_root / self.namespace / (label or stamp)
            if destination.exists():
                destination = destination.with_name(f"{destination.name}-{stamp}")
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(self.base), str(destination))
            return destination


def manifest_artifacts(store: ArtifactStore) -> dict[str, dict]:
    return {
        record.path: {
            "hash": record.content_hash,
            "immutable": record.immutable,
            "phase": record.phase,
            "kind": record.kind,
            "written_at": record.written_at or utcnow_iso(),
        }
        for record in store.records()
    }
