"""Tests for the nightly batch: analysis, thresholds, artifacts and the CLI."""

import json
import math

import pytest

from autoplay import nightly
from autoplay.baselines import BaselineManager, baseline_key
from autoplay.config import Config
from autoplay.content_engine import GraphContentEngine
from autoplay.nightly import (
    BatchSummary,
    BatchThresholds,
    analyze_results,
    check_batch_success,
    failure_analysis,
    main,
    parse_args,
    run_nightly,
    update_baselines,
    write_batch_artifacts,
)
from autoplay.persistence import InMemoryPersistence
from autoplay.schemas import MatrixConfig

from bundles import keep_bundle, make_result

LENIENT = BatchThresholds(
    min_coverage=0.0, max_failure_rate=1.0, max_latency_p95=math.inf, min_successful_runs=0.0
)


def test_analyze_results_counts_and_p95():
    results = [
        make_result("r1", coverage=0.6, latency_ms=100.0),
        make_result("r2", coverage=0.8, latency_ms=200.0),
        make_result("r3", passed=False, status="failed", coverage=0.1, latency_ms=0.0001),
    ]
    results[2].performance.avg_turn_latency_ms = 0.0
    summary = analyze_results(results)

    assert summary.total_runs == 3
    assert summary.passed_runs == 2
    assert summary.failed_runs == 1
    assert summary.failure_rate == pytest.approx(1 / 3)
    assert summary.coverage_avg == pytest.approx(0.5)
    # Zero latencies are ignored; floor(2 * 0.95) = 1 -> 200
    assert summary.latency_p95 == 200.0


def test_empty_batch_never_passes():
    assert analyze_results([]) == BatchSummary()
    assert check_batch_success(BatchSummary(), LENIENT) is False


def test_batch_thresholds():
    healthy = BatchSummary(total_runs=10, passed_runs=10, coverage_avg=0.7, latency_p95=500.0)
    assert check_batch_success(healthy) is True

    failing = BatchSummary(
        total_runs=10, passed_runs=8, failed_runs=2, failure_rate=0.2, coverage_avg=0.7
    )
    assert check_batch_success(failing) is False

    shallow = BatchSummary(total_runs=10, passed_runs=10, coverage_avg=0.3)
    assert check_batch_success(shallow) is False

    slow = BatchSummary(total_runs=10, passed_runs=10, coverage_avg=0.7, latency_p95=20000.0)
    assert check_batch_success(slow) is False


def test_failure_analysis_groups_oracles():
    results = [
        make_result("ok"),
        make_result("locked", passed=False, oracles={"soft_lock": True}),
        make_result("unsafe", passed=False, oracles={"soft_lock": True, "safety_violation": True}),
    ]
    analysis = failure_analysis(results)
    assert analysis["total_failures"] == 2
    assert analysis["failure_types"] == {"safety_violation": 1, "soft_lock": 2}
    assert [entry["run_id"] for entry in analysis["failed_scenarios"]] == ["locked", "unsafe"]
    assert analysis["failed_scenarios"][1]["oracles"] == ["soft_lock", "safety_violation"]


@pytest.mark.asyncio
async def test_write_batch_artifacts(tmp_path):
    results = [make_result("r1"), make_result("r2", mode="risk_taker", passed=False)]
    paths = await write_batch_artifacts(tmp_path, results, analyze_results(results))

    names = sorted(path.rsplit("/", 1)[-1] for path in paths)
    assert names == [
        "coverage-heatmap.svg",
        "dashboard.html",
        "failures.json",
        "performance.json",
        "summary.json",
    ]
    batch_dirs = list(tmp_path.glob("nightly-*"))
    assert len(batch_dirs) == 1
    summary = json.loads((batch_dirs[0] / "summary.json").read_text(encoding="utf-8"))
    assert summary["total_runs"] == 2
    assert {entry["name"] for entry in summary["mode_breakdown"]} == {"explorer", "risk_taker"}
    assert "<svg" in (batch_dirs[0] / "coverage-heatmap.svg").read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_update_baselines_groups_by_key():
    store = InMemoryPersistence()
    manager = BaselineManager(store)
    results = [
        make_result("r1", world="w1"),
        make_result("r2", world="w1", mode="risk_taker"),
        make_result("r3", world="w2", variation=None),
    ]
    assert await update_baselines(results, manager, version="v2") == 2

    keys = {record.key for record in await manager.list_baselines()}
    assert keys == {
        "w1/adventure.tutorial/v2/en_US/control",
        "w2/adventure.tutorial/v2/en_US/control",
    }
    w1 = await manager.load_baseline("w1/adventure.tutorial/v2/en_US/control")
    assert w1.behavior["risk_taking_rate"] == 0.5


@pytest.mark.asyncio
async def test_run_nightly_end_to_end(tmp_path):
    store = InMemoryPersistence()
    matrix = MatrixConfig(worlds=["w1", "w2"], adventures=["a"], max_turns=6)

    report = await run_nightly(
        GraphContentEngine(keep_bundle()),
        matrix,
        persistence=store,
        bot_modes=["explorer", "safety_max"],
        parallel_shards=2,
        max_concurrent=2,
        artifact_dir=tmp_path,
        thresholds=LENIENT,
    )

    assert report.success is True
    assert report.summary.total_runs == 4
    assert len(report.results) == 4
    assert report.summary.artifacts_generated == 5
    assert report.summary.baselines_updated == 2
    assert len(await store.list_run_results()) == 4
    assert await store.get_baseline(baseline_key("w1", "a", Config.CORE_VERSION, "en_US", "control"))


@pytest.mark.asyncio
async def test_run_nightly_can_skip_baselines(tmp_path):
    store = InMemoryPersistence()
    report = await run_nightly(
        GraphContentEngine(keep_bundle()),
        MatrixConfig(worlds=["w"], adventures=["a"], max_turns=3),
        persistence=store,
        bot_modes=["explorer"],
        artifact_dir=tmp_path,
        refresh_baselines=False,
    )
    assert report.summary.baselines_updated == 0
    assert await store.list_baselines() == []


def test_parse_args_splits_lists():
    args = parse_args(
        ["--bundle", "b.json", "--worlds", "w1, w2", "--adventures", "a", "--toggles", "party"]
    )
    assert args.worlds == ["w1", "w2"]
    assert args.toggles == ["party"]
    assert args.store == "memory"
    assert args.no_baselines is False


@pytest.fixture
def bundle_file(tmp_path):
    path = tmp_path / "bundle.json"
    path.write_text(json.dumps(keep_bundle()), encoding="utf-8")
    return path


def cli_args(bundle_file, tmp_path, *extra):
    return [
        "--bundle", str(bundle_file),
        "--worlds", "w",
        "--adventures", "a",
        "--modes", "explorer",
        "--seeds", "1",
        "--max-turns", "3",
        "--artifact-dir", str(tmp_path / "artifacts"),
        *extra,
    ]


def test_main_exit_code_follows_batch_verdict(monkeypatch, bundle_file, tmp_path):
    monkeypatch.setattr(nightly, "check_batch_success", lambda summary, thresholds: True)
    assert main(cli_args(bundle_file, tmp_path)) == 0
    assert list((tmp_path / "artifacts").glob("nightly-*"))

    monkeypatch.setattr(nightly, "check_batch_success", lambda summary, thresholds: False)
    assert main(cli_args(bundle_file, tmp_path)) == 1


def test_main_with_json_store(monkeypatch, bundle_file, tmp_path):
    monkeypatch.setattr(nightly, "check_batch_success", lambda summary, thresholds: True)
    store_path = tmp_path / "store"
    assert main(cli_args(bundle_file, tmp_path, "--store", "json", "--store-path", str(store_path))) == 0
    assert list((store_path / "baselines").glob("*.json"))


def test_main_reports_bad_input(bundle_file, tmp_path, capsys):
    assert main(cli_args(tmp_path / "missing.json", tmp_path)) == 1
    assert main(cli_args(bundle_file, tmp_path, "--modes", "speedrunner")) == 1
    out = capsys.readouterr().out
    assert out.count("[!] Nightly matrix failed") == 2
