from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from phaseflow.models import utcnow_iso
from phaseflow.state.ledger import JsonLedger

logger = logging.getLogger(__name__)

EDGE_KINDS = {"schema", "code"}
NAMESPACE = "coordination"

_edge_locks: dict[str, threading.Lock] = {}
_edge_locks_guard = threading.Lock()


def _edge_lock(key: str) -> threading.Lock:
    with _edge_locks_guard:
        return _edge_locks.setdefault(key, threading.Lock())


@dataclass(slots=True, frozen=True)
class CoordinationEdge:
    """``consumer`` may not enter ``phase`` until ``producer`` publishes ``kind``.

    ``phase=None`` gates every phase of the consumer.
    """

    producer: str
    consumer: str
    kind: str
    phase: str | None = None

    def __post_init__(self) -> None:
        if self.kind not in EDGE_KINDS:
            raise ValueError(f"Unknown coordination kind '{self.kind}'; expected one of {sorted(EDGE_KINDS)}.")
        if self.producer == self.consumer:
            raise ValueError("A worktree cannot depend on itself.")

    @property
    def key(self) -> str:
        return f"{self.producer}->{self.consumer}:{self.kind}:{self.phase or '*'}"

    def applies_to(self, consumer: str, phase: str | None) -> bool:
        if self.consumer != consumer:
            return False
        return self.phase is None or phase is None or self.phase.lower() == phase.lower()

    def to_dict(self) -> dict[str, Any]:
        return {
            "producer": self.producer,
            "consumer": self.consumer,
            "kind": self.kind,
            "phase": self.phase,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CoordinationEdge:
        return cls(
            producer=str(payload["producer"]),
            consumer=str(payload["consumer"]),
            kind=str(payload["kind"]),
            phase=payload.get("phase"),
        )


def _empty() -> dict[str, Any]:
    return {"edges": [], "published": {}, "sequence": 0}


def _next_sequence(data: dict[str, Any]) -> int:
    sequence = int(data.get("sequence") or 0) + 1
    data["sequence"] = sequence
    return sequence


def _satisfies(publication: Any, item: dict[str, Any]) -> bool:
    """A publication only counts for edges declared before it."""
    if not isinstance(publication, dict):
        return False
    return int(publication.get("sequence") or 0) > int(item.get("declared_seq") or 0)


class CoordinationLayer:
    """Cross-worktree ordering backed by a ledger all worktrees can reach."""

    def __init__(self, ledger: JsonLedger) -> None:
        self.ledger = ledger

    @classmethod
    def at(cls, directory: Path) -> CoordinationLayer:
        return cls(JsonLedger(directory, namespaces={NAMESPACE}))

    def _snapshot(self) -> dict[str, Any]:
        payload = self.ledger.get_json(NAMESPACE, default=_empty())
        if not isinstance(payload, dict):
            return _empty()
        payload.setdefault("edges", [])
        payload.setdefault("published", {})
        return payload

    def edges(self) -> list[CoordinationEdge]:
        return [
            CoordinationEdge.from_dict(item)
            for item in self._snapshot()["edges"]
            if isinstance(item, dict)
        ]

    def declare(self, edge: CoordinationEdge) -> bool:
        """Register ``edge``; returns False when it was already declared."""
        created = False

        def _updater(payload: Any) -> dict[str, Any]:
            nonlocal created
            data = payload if isinstance(payload, dict) else _empty()
            edges = [item for item in data.get("edges", []) if isinstance(item, dict)]
            created = all(CoordinationEdge.from_dict(item).key != edge.key for item in edges)
            if created:
                edges.append({**edge.to_dict(), "declared_seq": _next_sequence(data)})
            data["edges"] = edges
            data.setdefault("published", {})
            return data

        with _edge_lock(edge.key):
            self.ledger.update_json(NAMESPACE, _updater, default=_empty())
        if created:
            logger.info("Declared coordination edge %s", edge.key)
        return created

    def mark_published(self, producer: str, kind: str, ref: str | None = None) -> None:
        if kind not in EDGE_KINDS:
            raise ValueError(f"Unknown coordination kind '{kind}'.")

        def _updater(payload: Any) -> dict[str, Any]:
            data = payload if isinstance(payload, dict) else _empty()
            published = data.get("published", {})
            if not isinstance(published, dict):
                published = {}
            kinds = published.get(producer, {})
            if not isinstance(kinds, dict):
                kinds = {}
            kinds[kind] = {"ref": ref, "published_at": utcnow_iso(), "sequence": _next_sequence(data)}
            published[producer] = kinds
            data["published"] = published
            data.setdefault("edges", [])
            return data

        with _edge_lock(f"{producer}:{kind}"):
            self.ledger.update_json(NAMESPACE, _updater, default=_empty())
        logger.info("Worktree %s published %s (%s)", producer, kind, ref or "no ref")

    def is_published(self, producer: str, kind: str) -> bool:
        published = self._snapshot().get("published", {})
        return isinstance(published, dict) and kind in (published.get(producer) or {})

    def pending(self, consumer: str, phase: str | None = None) -> list[CoordinationEdge]:
        snapshot = self._snapshot()
        published = snapshot.get("published", {})
        unmet: list[CoordinationEdge] = []
        for item in snapshot["edges"]:
            if not isinstance(item, dict):
                continue
            edge = CoordinationEdge.from_dict(item)
            if not edge.applies_to(consumer, phase):
                continue
            if not _satisfies((published.get(edge.producer) or {}).get(edge.kind), item):
                unmet.append(edge)
        return unmet

    def is_satisfied(self, edge: CoordinationEdge) -> bool:
        snapshot = self._snapshot()
        published = snapshot.get("published", {})
        for item in snapshot["edges"]:
            if isinstance(item, dict) and CoordinationEdge.from_dict(item).key == edge.key:
                return _satisfies((published.get(edge.producer) or {}).get(edge.kind), item)
        return False

    def is_ready(self, consumer: str, phase: str | None = None) -> bool:
        return not self.pending(consumer, phase)

    async def wait_until_ready(
        self,
        consumer: str,
        phase: str | None = None,
        *,
        timeout_seconds: float,
        poll_seconds: float = 5.0,
    ) -> list[CoordinationEdge]:
        """Poll until ready or the timeout elapses; returns what is still pending."""
        deadline = time.monotonic() + max(0.0, timeout_seconds)
        while True:
            pending = await asyncio.to_thread(self.pending, consumer, phase)
            if not pending or time.monotonic() >= deadline:
                return pending
            logger.debug("Waiting on %d coordination edge(s) for %s", len(pending), consumer)
            await asyncio.sleep(min(poll_seconds, max(0.0, deadline - time.monotonic())))
