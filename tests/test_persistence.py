"""Tests for the persistence strategies."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from autoplay.persistence import InMemoryPersistence, JsonPersistence
from autoplay.schemas import (
    Artifact,
    BaselineMetrics,
    BaselineRecord,
    BotContext,
    Checkpoint,
)

from bundles import make_result, make_scenario


@pytest_asyncio.fixture(params=["memory", "json"])
async def store(request, tmp_path):
    if request.param == "memory":
        persistence = InMemoryPersistence()
    else:
        persistence = JsonPersistence(tmp_path / "runs")
    await persistence.initialize()
    yield persistence
    await persistence.close()


@pytest.mark.asyncio
async def test_run_result_round_trip(store):
    result = make_result("run/with/slashes")
    await store.save_run_result(result)

    loaded = await store.get_run_result("run/with/slashes")
    assert loaded is not None
    assert loaded.run_id == result.run_id
    assert loaded.scenario == result.scenario
    assert loaded.coverage == result.coverage
    assert loaded.passed is True

    assert await store.get_run_result("missing") is None
    assert [r.run_id for r in await store.list_run_results()] == ["run/with/slashes"]


@pytest.mark.asyncio
async def test_artifacts_accumulate(store):
    await store.save_artifacts("run-1", [Artifact(kind="json", path="a/report.json", bytes=10)])
    await store.save_artifacts("run-1", [Artifact(kind="svg", path="a/coverage.svg", bytes=20)])
    artifacts = await store.get_artifacts("run-1")
    assert [a.kind for a in artifacts] == ["json", "svg"]
    assert await store.get_artifacts("other") == []


@pytest.mark.asyncio
async def test_checkpoint_save_load_delete(store):
    checkpoint = Checkpoint(
        run_id="run-1",
        scenario=make_scenario(),
        mode="explorer",
        turn=10,
        bundle={"current_node": "hall", "visited": ["gate", "hall"]},
        context=BotContext(current_node="hall", turn_number=10),
    )
    await store.save_checkpoint(checkpoint)

    loaded = await store.load_checkpoint("run-1")
    assert loaded.turn == 10
    assert loaded.bundle["visited"] == ["gate", "hall"]
    assert loaded.context.current_node == "hall"

    await store.delete_checkpoint("run-1")
    assert await store.load_checkpoint("run-1") is None
    # Deleting twice is harmless
    await store.delete_checkpoint("run-1")


@pytest.mark.asyncio
async def test_baseline_upsert_keeps_created_at(store):
    key = "world.keep/adventure.tutorial/v1.0.0/en_US/control"
    created = datetime(2026, 1, 1, tzinfo=timezone.utc)
    await store.upsert_baseline(
        BaselineRecord(key=key, metrics=BaselineMetrics(coverage={"overall": 0.5}), created_at=created, updated_at=created)
    )
    await store.upsert_baseline(
        BaselineRecord(key=key, metrics=BaselineMetrics(coverage={"overall": 0.7}))
    )

    record = await store.get_baseline(key)
    assert record.metrics.coverage["overall"] == 0.7
    assert record.created_at == created
    assert [r.key for r in await store.list_baselines()] == [key]

    assert await store.delete_baseline(key) is True
    assert await store.delete_baseline(key) is False
    assert await store.get_baseline(key) is None


@pytest.mark.asyncio
async def test_in_memory_store_returns_copies():
    store = InMemoryPersistence()
    await store.save_run_result(make_result("run-1"))
    loaded = await store.get_run_result("run-1")
    loaded.turns_completed = 999
    assert (await store.get_run_result("run-1")).turns_completed == 10


@pytest.mark.asyncio
async def test_json_store_layout(tmp_path):
    store = JsonPersistence(tmp_path)
    await store.initialize()
    await store.save_run_result(make_result("run-1"))
    assert (tmp_path / "runs" / "run-1" / "result.json").exists()

    await store.upsert_baseline(BaselineRecord(key="w/a/v/l/c", metrics=BaselineMetrics()))
    assert (tmp_path / "baselines" / "w%2Fa%2Fv%2Fl%2Fc.json").exists()


@pytest.mark.asyncio
async def test_postgres_retries_transient_errors():
    pytest.importorskip("asyncpg")
    from autoplay.persistence import PostgresPersistence

    store = PostgresPersistence("postgresql://example/autoplay", max_attempts=3)
    store.pool = AsyncMock()
    store.pool.execute.side_effect = [ConnectionResetError("reset"), "DELETE 1"]

    assert await store.delete_baseline("w/a/v/l/c") is True
    assert store.pool.execute.await_count == 2


@pytest.mark.asyncio
async def test_postgres_gives_up_after_max_attempts():
    pytest.importorskip("asyncpg")
    from autoplay.persistence import PostgresPersistence

    store = PostgresPersistence("postgresql://example/autoplay", max_attempts=2)
    store.pool = AsyncMock()
    store.pool.execute.side_effect = ConnectionResetError("reset")

    with pytest.raises(ConnectionResetError):
        await store.delete_checkpoint("run-1")
    assert store.pool.execute.await_count == 2


@pytest.mark.asyncio
async def test_postgres_requires_initialize():
    pytest.importorskip("asyncpg")
    from autoplay.persistence import PostgresPersistence

    store = PostgresPersistence("postgresql://example/autoplay")
    with pytest.raises(AssertionError, match="Persistence not initialized"):
        await store.get_baseline("missing")
