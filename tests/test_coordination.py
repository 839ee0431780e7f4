import asyncio
import threading
from pathlib import Path

import pytest

from phaseflow.coordination import CoordinationEdge, CoordinationLayer


def test_edge_validation() -> None:
    with pytest.raises(ValueError, match="Unknown coordination kind"):
        CoordinationEdge(producer="api", consumer="web", kind="docs")
    with pytest.raises(ValueError, match="cannot depend on itself"):
        CoordinationEdge(producer="api", consumer="api", kind="schema")


def test_consumer_waits_until_producer_publishes(tmp_path: Path) -> None:
    layer = CoordinationLayer.at(tmp_path / "coord")
    edge = CoordinationEdge(producer="api", consumer="web", kind="schema", phase="green")

    assert layer.declare(edge) is True
    assert layer.declare(edge) is False
    assert layer.pending("web", "green") == [edge]
    assert layer.is_ready("web", "red")
    assert layer.is_ready("api", "green")

    layer.mark_published("api", "schema", "abc123")

    assert layer.is_ready("web", "green")
    assert layer.is_published("api", "schema")
    assert not layer.is_published("api", "code")


def test_publication_is_visible_to_other_layer_instances(tmp_path: Path) -> None:
    producer_view = CoordinationLayer.at(tmp_path / "coord")
    consumer_view = CoordinationLayer.at(tmp_path / "coord")
    consumer_view.declare(CoordinationEdge(producer="api", consumer="web", kind="code"))

    producer_view.mark_published("api", "code")

    assert consumer_view.is_ready("web", "security")


def test_earlier_publication_does_not_satisfy_a_new_edge(tmp_path: Path) -> None:
    layer = CoordinationLayer.at(tmp_path / "coord")
    layer.mark_published("api", "schema", "last-sprint")
    edge = CoordinationEdge(producer="api", consumer="web", kind="schema", phase="green")

    layer.declare(edge)

    assert layer.is_published("api", "schema")
    assert layer.pending("web", "green") == [edge]
    assert not layer.is_satisfied(edge)

    layer.mark_published("api", "schema", "this-sprint")

    assert layer.is_ready("web", "green")
    assert layer.is_satisfied(edge)


def test_unknown_kind_cannot_be_published(tmp_path: Path) -> None:
    layer = CoordinationLayer.at(tmp_path / "coord")

    with pytest.raises(ValueError):
        layer.mark_published("api", "binary")


def test_concurrent_declarations_are_all_recorded(tmp_path: Path) -> None:
    layer = CoordinationLayer.at(tmp_path / "coord")
    consumers = ["web", "mobile", "cli"]

    threads = [
        threading.Thread(
            target=layer.declare,
            args=(CoordinationEdge(producer="api", consumer=consumer, kind="schema"),),
        )
        for consumer in consumers
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(edge.consumer for edge in layer.edges()) == sorted(consumers)


def test_wait_until_ready_returns_once_published(tmp_path: Path) -> None:
    layer = CoordinationLayer.at(tmp_path / "coord")
    layer.declare(CoordinationEdge(producer="api", consumer="web", kind="schema"))

    async def _scenario() -> list[CoordinationEdge]:
        async def _publish_later() -> None:
            await asyncio.sleep(0.05)
            await asyncio.to_thread(layer.mark_published, "api", "schema")

        publisher = asyncio.create_task(_publish_later())
        pending = await layer.wait_until_ready("web", "green", timeout_seconds=5.0, poll_seconds=0.01)
        await publisher
        return pending

    assert asyncio.run(_scenario()) == []


def test_wait_until_ready_times_out_with_pending_edges(tmp_path: Path) -> None:
    layer = CoordinationLayer.at(tmp_path / "coord")
    edge = CoordinationEdge(producer="api", consumer="web", kind="code")
    layer.declare(edge)

    pending = asyncio.run(layer.wait_until_ready("web", timeout_seconds=0.05, poll_seconds=0.01))

    assert pending == [edge]
