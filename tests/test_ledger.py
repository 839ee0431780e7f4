import json
import threading
from pathlib import Path

import pytest

from phaseflow.errors import StateError
from phaseflow.state import JsonLedger


def test_ledger_roundtrip(tmp_path: Path) -> None:
    ledger = JsonLedger(tmp_path / "state")
    payload = {"feature": "add-priority-filter", "phase": "green"}
    ledger.set_json("context", payload)

    assert ledger.get_json("context") == payload


def test_ledger_upgrades_bare_payload(tmp_path: Path) -> None:
    ledger = JsonLedger(tmp_path)
    (tmp_path / "context.json").write_text(json.dumps({"legacy": True}), encoding="utf-8")

    assert ledger.get_json("context") == {"legacy": True}

    ledger.set_json("context", {"legacy": False})
    on_disk = json.loads((tmp_path / "context.json").read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == JsonLedger.SCHEMA_VERSION
    assert on_disk["data"] == {"legacy": False}


def test_update_json_increments_revision(tmp_path: Path) -> None:
    ledger = JsonLedger(tmp_path)
    ledger.set_json("metrics", {"count": 1})
    first_revision = ledger.get_envelope("metrics")["revision"]

    ledger.update_json("metrics", lambda payload: {"count": payload["count"] + 1}, default={"count": 0})

    assert ledger.get_json("metrics")["count"] == 2
    assert ledger.get_envelope("metrics")["revision"] > first_revision


def test_stale_revision_is_rejected(tmp_path: Path) -> None:
    ledger = JsonLedger(tmp_path)
    ledger.set_json("context", {"a": 1})
    revision = ledger.get_envelope("context")["revision"]
    ledger.set_json("context", {"a": 2})

    with pytest.raises(StateError, match="Concurrent state update"):
        ledger.set_json("context", {"a": 3}, expected_revision=revision)
    assert ledger.get_json("context") == {"a": 2}


def test_concurrent_updates_are_not_lost(tmp_path: Path) -> None:
    ledger = JsonLedger(tmp_path)

    def _bump() -> None:
        for _ in range(3):
            ledger.update_json("counter", lambda payload: {"n": payload.get("n", 0) + 1}, default={"n": 0})

    threads = [threading.Thread(target=_bump) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert ledger.get_json("counter") == {"n": 9}


def test_restricted_namespaces(tmp_path: Path) -> None:
    ledger = JsonLedger(tmp_path, namespaces={"coordination"})

    with pytest.raises(StateError, match="Unsupported namespace"):
        ledger.get_json("metrics")


def test_record_event_counts_and_trims(tmp_path: Path) -> None:
    ledger = JsonLedger(tmp_path)
    for index in range(4):
        ledger.record_event({"event": "backend_retry", "attempt": index}, limit=3)

    metrics = ledger.get_metrics()
    assert metrics["counters"]["backend_retry"] == 4
    assert [event["attempt"] for event in metrics["events"]] == [1, 2, 3]
    assert all("at" in event for event in metrics["events"])
