from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from phaseflow.errors import StateError
from phaseflow.models import utcnow_iso


class JsonLedger:
    """Revisioned JSON documents on disk, guarded by an exclusive lock file.

    Every document is wrapped in an envelope carrying ``schema_version``,
    ``revision`` and ``updated_at``; legacy bare payloads are upgraded on read.
    """

    SCHEMA_VERSION = 1

    def __init__(self, directory: Path, *, namespaces: set[str] | None = None) -> None:
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.directory / ".lock"
        self.namespaces = set(namespaces) if namespaces else None

    def _validate_namespace(self, namespace: str) -> None:
        if self.namespaces is not None and namespace not in self.namespaces:
            raise StateError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.directory / f"{namespace}.json"

    @contextmanager
    def _lock(self, timeout_seconds: float = 5.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def _write_raw(self, namespace: str, payload: Any) -> None:
        path = self._file(namespace)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(
            json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True),
            encoding="utf-8",
        )
        os.replace(tmp_path, path)

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        data = default if raw_payload is None else raw_payload
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": utcnow_iso(),
            "data": data,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateError(f"Concurrent state update detected for namespace '{namespace}'.")
            self._write_raw(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(8):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except StateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateError(str(last_error) if last_error else "State update failed.")

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def record_event(self, event: dict[str, Any], *, limit: int = 200) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            events = metrics.get("events", [])
            if not isinstance(events, list):
                events = []
            entry = dict(event)
            entry.setdefault("at", utcnow_iso())
            events.append(entry)
            metrics["events"] = events[-limit:]
            name = str(event.get("event", ""))
            if name:
                counters = metrics.get("counters", {})
                if not isinstance(counters, dict):
                    counters = {}
                counters[name] = int(counters.get(name, 0)) + 1
                metrics["counters"] = counters
            return metrics

        self.update_json("metrics", _updater, default={})
