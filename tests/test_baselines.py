"""Tests for baseline aggregation and regression comparison."""

from datetime import datetime, timezone

import pytest

from autoplay.baselines import (
    BaselineManager,
    aggregate_metrics,
    baseline_key,
    compute_deltas,
    find_critical_regressions,
    find_tolerance_exceeded,
    relative_delta,
)
from autoplay.persistence import InMemoryPersistence
from autoplay.schemas import BaselineMetrics, BaselineRecord

from bundles import make_result

KEY = "world.keep/adventure.tutorial/v1.0.0/en_US/control"


def metrics(coverage=0.6, latency=100.0, turns_per_second=10.0, soft_locks=0.0, risk=0.0):
    return BaselineMetrics(
        coverage={"quest_graph": coverage, "overall": coverage},
        performance={"avg_turn_latency_ms": latency, "turns_per_second": turns_per_second},
        oracles={"soft_locks": soft_locks},
        behavior={"risk_taking_rate": risk},
    )


def test_baseline_key_defaults_variation_to_control():
    assert baseline_key("w", "a", "v1", "en_US") == "w/a/v1/en_US/control"
    assert baseline_key("w", "a", "v1", "en_US", "treatment") == "w/a/v1/en_US/treatment"


def test_relative_delta_against_zero_is_current_value():
    assert relative_delta(150.0, 100.0) == 0.5
    assert relative_delta(3.0, 0.0) == 3.0


def test_aggregate_uses_passed_runs_for_averages():
    results = [
        make_result("r1", coverage=0.6, latency_ms=100.0),
        make_result("r2", coverage=0.8, latency_ms=300.0),
        make_result(
            "r3",
            mode="risk_taker",
            passed=False,
            coverage=0.0,
            latency_ms=9000.0,
            oracles={"soft_lock": True},
        ),
    ]
    aggregated = aggregate_metrics(results)

    assert aggregated.coverage["overall"] == pytest.approx(0.7)
    assert aggregated.coverage["dialogue"] == pytest.approx(0.7)
    assert aggregated.performance["avg_turn_latency_ms"] == pytest.approx(200.0)
    assert aggregated.oracles["soft_locks"] == 1.0
    assert aggregated.oracles["safety_violations"] == 0.0
    assert aggregated.behavior["risk_taking_rate"] == pytest.approx(1 / 3)
    assert aggregated.behavior["exploration_efficiency"] == aggregated.coverage["overall"]


def test_aggregate_sums_cumulative_validator_retries():
    results = [
        make_result("r1", oracles={"details": {"cumulative_validator_retries": 4}}),
        make_result("r2", oracles={"details": {"cumulative_validator_retries": 7}}),
    ]
    assert aggregate_metrics(results).oracles["validator_retries"] == 11.0


def test_aggregate_with_no_passed_runs_is_all_zero_averages():
    aggregated = aggregate_metrics([make_result("r1", passed=False)])
    assert aggregated.coverage["overall"] == 0.0
    assert aggregated.performance["max_tokens_per_turn"] == 0.0


def test_deltas_per_family():
    deltas = compute_deltas(metrics(coverage=0.5, latency=120.0), metrics(coverage=0.6, latency=100.0))
    assert deltas["coverage"]["overall"] == pytest.approx(-0.1)
    assert deltas["performance"]["avg_turn_latency_ms"] == pytest.approx(0.2)
    assert deltas["oracles"]["soft_locks"] == 0.0


def test_performance_tolerance_is_direction_aware():
    slower = compute_deltas(metrics(latency=115.0), metrics(latency=100.0))
    assert "performance.avg_turn_latency_ms" in find_tolerance_exceeded(slower)

    faster = compute_deltas(metrics(latency=50.0), metrics(latency=100.0))
    assert find_tolerance_exceeded(faster) == []

    fewer_turns = compute_deltas(metrics(turns_per_second=8.0), metrics(turns_per_second=10.0))
    assert find_tolerance_exceeded(fewer_turns) == ["performance.turns_per_second"]

    more_turns = compute_deltas(metrics(turns_per_second=12.0), metrics(turns_per_second=10.0))
    assert find_tolerance_exceeded(more_turns) == []


def test_behavior_shift_counts_in_both_directions():
    up = compute_deltas(metrics(risk=0.6), metrics(risk=0.5))
    down = compute_deltas(metrics(risk=0.4), metrics(risk=0.5))
    assert find_tolerance_exceeded(up) == ["behavior.risk_taking_rate"]
    assert find_tolerance_exceeded(down) == ["behavior.risk_taking_rate"]


def test_any_new_oracle_failure_is_critical():
    deltas = compute_deltas(metrics(soft_locks=1.0), metrics(soft_locks=0.0))
    assert "oracles.soft_locks" in find_tolerance_exceeded(deltas)
    assert find_critical_regressions(deltas) == ["new oracle failures: soft_locks"]


def test_fields_absent_from_baseline_are_not_compared():
    baseline = BaselineMetrics(coverage={"overall": 0.7})
    current = BaselineMetrics(coverage={"overall": 0.7}, performance={"avg_turn_latency_ms": 40.0})
    deltas = compute_deltas(current, baseline)
    assert deltas["performance"] == {}
    assert find_tolerance_exceeded(deltas) == []
    assert find_critical_regressions(deltas) == []


def test_zero_against_zero_is_no_change():
    deltas = compute_deltas(metrics(risk=0.0), metrics(risk=0.0))
    assert deltas["behavior"]["risk_taking_rate"] == 0.0


@pytest.mark.asyncio
async def test_new_metric_passes_and_is_listed_as_untracked():
    manager = BaselineManager(InMemoryPersistence())
    await manager.save_baseline(KEY, BaselineMetrics(coverage={"overall": 0.7}))
    current = BaselineMetrics(coverage={"overall": 0.7}, performance={"avg_turn_latency_ms": 40.0})

    comparison = await manager.compare_with_baseline(KEY, current)
    assert comparison.verdict == "pass"
    assert comparison.critical_regressions == []
    assert comparison.untracked_metrics == ["performance.avg_turn_latency_ms"]


@pytest.mark.asyncio
async def test_missing_baseline_passes_but_is_flagged():
    manager = BaselineManager(InMemoryPersistence())
    comparison = await manager.compare_with_baseline(KEY, metrics())
    assert comparison.verdict == "pass"
    assert comparison.baseline_found is False
    assert comparison.baseline_metrics is None


@pytest.mark.asyncio
async def test_large_coverage_drop_fails_with_critical_regression():
    manager = BaselineManager(InMemoryPersistence())
    await manager.save_baseline(KEY, metrics(coverage=0.7))

    comparison = await manager.compare_with_baseline(KEY, metrics(coverage=0.4))
    assert comparison.verdict == "fail"
    assert comparison.baseline_found is True
    assert "coverage.overall" in comparison.tolerance_exceeded
    assert comparison.critical_regressions[0].startswith("coverage.overall dropped")
    assert "FAIL" in comparison.summary


@pytest.mark.asyncio
async def test_identical_metrics_pass():
    manager = BaselineManager(InMemoryPersistence())
    await manager.save_baseline(KEY, metrics())
    comparison = await manager.compare_with_baseline(KEY, metrics())
    assert comparison.verdict == "pass"
    assert comparison.tolerance_exceeded == []
    assert comparison.critical_regressions == []


@pytest.mark.asyncio
async def test_coverage_gain_is_significant_not_a_failure():
    manager = BaselineManager(InMemoryPersistence())
    await manager.save_baseline(KEY, metrics(coverage=0.4))
    comparison = await manager.compare_with_baseline(KEY, metrics(coverage=0.6))
    assert comparison.verdict == "pass"
    assert any(change.startswith("coverage.overall improved") for change in comparison.significant_changes)


@pytest.mark.asyncio
async def test_compare_never_writes():
    store = InMemoryPersistence()
    manager = BaselineManager(store)
    await manager.compare_with_baseline(KEY, metrics())
    assert await manager.list_baselines() == []


@pytest.mark.asyncio
async def test_save_keeps_created_at_and_delete():
    store = InMemoryPersistence()
    created = datetime(2026, 1, 1, tzinfo=timezone.utc)
    await store.upsert_baseline(
        BaselineRecord(key=KEY, metrics=metrics(), created_at=created, updated_at=created)
    )
    manager = BaselineManager(store)

    record = await manager.save_baseline(KEY, metrics(coverage=0.9))
    assert record.created_at == created
    assert record.updated_at > created
    assert (await manager.load_baseline(KEY)).coverage["overall"] == 0.9

    assert await manager.delete_baseline(KEY) is True
    assert await manager.load_baseline(KEY) is None
