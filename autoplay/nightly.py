"""Nightly broad-matrix batch.

Expands a wide scenario matrix, runs it through the fuzz runner, writes
batch-level artifacts, refreshes baselines and decides pass/fail against fixed
batch thresholds.

Example usage (quest graph from a JSON bundle, 2 seeds per scenario):

    autoplay-nightly --bundle examples/nightly/bundle.json \
        --worlds world.forest_glade --adventures adventure.tutorial --seeds 2

Exit code 0 means the batch passed every threshold, 1 means it did not.
"""

from __future__ import annotations

import argparse
import asyncio
import html
import json
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .artifacts import coverage_color, render_json_report
from .baselines import BaselineManager, aggregate_metrics, baseline_key
from .config import Config
from .content_engine import ContentEngine, GraphContentEngine
from .errors import AutoplayError
from .logging_utils import log_error, log_info, log_oracle, log_success
from .matrix import generate_matrix
from .oracles import percentile_95
from .persistence import (
    InMemoryPersistence,
    JsonPersistence,
    PersistenceStrategy,
    PostgresPersistence,
)
from .policies import ALL_MODES
from .runner import FuzzRunner
from .schemas import MatrixConfig, RunConfig, RunResult


@dataclass(frozen=True)
class BatchThresholds:
    min_coverage: float = 0.5
    max_failure_rate: float = 0.1
    max_latency_p95: float = 15000.0
    min_successful_runs: float = 0.8


@dataclass
class BatchSummary:
    total_runs: int = 0
    passed_runs: int = 0
    failed_runs: int = 0
    coverage_avg: float = 0.0
    latency_p95: float = 0.0
    failure_rate: float = 0.0
    artifacts_generated: int = 0
    baselines_updated: int = 0


@dataclass
class NightlyReport:
    success: bool
    summary: BatchSummary
    results: List[RunResult] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)


DEFAULT_THRESHOLDS = BatchThresholds()


def _scenario_label(result: RunResult) -> str:
    return f"{result.scenario.world}/{result.scenario.adventure}"


def analyze_results(results: Sequence[RunResult]) -> BatchSummary:
    total = len(results)
    passed = sum(1 for result in results if result.passed)
    latencies = [
        result.performance.avg_turn_latency_ms
        for result in results
        if result.performance.avg_turn_latency_ms > 0
    ]
    return BatchSummary(
        total_runs=total,
        passed_runs=passed,
        failed_runs=total - passed,
        coverage_avg=sum(r.coverage.overall for r in results) / total if total else 0.0,
        latency_p95=percentile_95(latencies),
        failure_rate=(total - passed) / total if total else 0.0,
    )


def check_batch_success(
    summary: BatchSummary, thresholds: BatchThresholds = DEFAULT_THRESHOLDS
) -> bool:
    """True when the batch clears every threshold. An empty batch never passes."""

    if summary.total_runs == 0:
        return False
    if summary.failure_rate > thresholds.max_failure_rate:
        return False
    if summary.coverage_avg < thresholds.min_coverage:
        return False
    if summary.latency_p95 > thresholds.max_latency_p95:
        return False
    return summary.passed_runs / summary.total_runs >= thresholds.min_successful_runs


def failure_analysis(results: Sequence[RunResult]) -> Dict[str, Any]:
    failures = [result for result in results if not result.passed]
    failure_types: Counter = Counter()
    for result in failures:
        failure_types.update(result.oracles.failures())
    return {
        "total_failures": len(failures),
        "failure_rate": len(failures) / len(results) if results else 0.0,
        "failure_types": dict(sorted(failure_types.items())),
        "failed_scenarios": [
            {
                "run_id": result.run_id,
                "scenario": _scenario_label(result),
                "mode": result.mode,
                "status": result.status,
                "turns_completed": result.turns_completed,
                "oracles": result.oracles.failures(),
                "error": result.error,
            }
            for result in failures
        ],
    }


def _breakdown(results: Sequence[RunResult], key) -> List[Dict[str, Any]]:
    groups: Dict[str, List[RunResult]] = {}
    for result in results:
        groups.setdefault(key(result), []).append(result)
    return [
        {
            "name": name,
            "total_runs": len(runs),
            "passed_runs": sum(1 for r in runs if r.passed),
            "coverage_avg": sum(r.coverage.overall for r in runs) / len(runs),
        }
        for name, runs in groups.items()
    ]


def summary_report(results: Sequence[RunResult], summary: BatchSummary) -> Dict[str, Any]:
    return {
        **asdict(summary),
        "scenario_breakdown": _breakdown(results, _scenario_label),
        "mode_breakdown": _breakdown(results, lambda r: r.mode),
    }


def _distribution(values: List[float]) -> Dict[str, float]:
    ordered = sorted(v for v in values if v > 0)
    if not ordered:
        return {"min": 0.0, "max": 0.0, "p50": 0.0, "p95": 0.0, "p99": 0.0, "avg": 0.0}

    def at(fraction: float) -> float:
        return ordered[min(int(len(ordered) * fraction), len(ordered) - 1)]

    return {
        "min": ordered[0],
        "max": ordered[-1],
        "p50": at(0.5),
        "p95": at(0.95),
        "p99": at(0.99),
        "avg": sum(ordered) / len(ordered),
    }


def performance_report(results: Sequence[RunResult]) -> Dict[str, Any]:
    return {
        "latency": _distribution([r.performance.avg_turn_latency_ms for r in results]),
        "tokens": _distribution([r.performance.avg_tokens_per_turn for r in results]),
    }


def render_coverage_heatmap(results: Sequence[RunResult]) -> str:
    """Scenario x bot-mode grid of overall coverage."""

    cells: Dict[str, Dict[str, float]] = {}
    for result in results:
        cells.setdefault(_scenario_label(result), {})[result.mode] = result.coverage.overall

    parts = [
        f'<svg width="800" height="{len(cells) * 40 + 100}" xmlns="http://www.w3.org/2000/svg">',
        '<text x="10" y="20" font-family="Arial" font-size="14" font-weight="bold">Coverage Heatmap</text>',
    ]
    for col, mode in enumerate(ALL_MODES):
        parts.append(
            f'<text x="{150 + col * 100}" y="40" font-family="Arial" font-size="10" '
            f'text-anchor="middle">{mode.replace("_", " ")}</text>'
        )
    for row, (scenario, modes) in enumerate(cells.items()):
        y = 60 + row * 30
        parts.append(
            f'<text x="10" y="{y + 15}" font-family="Arial" font-size="10">{html.escape(scenario)}</text>'
        )
        for col, mode in enumerate(ALL_MODES):
            x = 150 + col * 100
            value = modes.get(mode, 0.0)
            parts.append(
                f'<rect x="{x - 40}" y="{y - 10}" width="80" height="20" '
                f'fill="{coverage_color(value * 100)}" stroke="#000" stroke-width="1"/>'
            )
            parts.append(
                f'<text x="{x}" y="{y + 5}" font-family="Arial" font-size="8" '
                f'text-anchor="middle" fill="white">{value * 100:.0f}%</text>'
            )
    parts.append("</svg>")
    return "\n".join(parts)


def render_dashboard(report: Dict[str, Any]) -> str:
    def rows(entries: List[Dict[str, Any]]) -> str:
        return "".join(
            f"<tr><td>{html.escape(entry['name'])}</td><td>{entry['total_runs']}</td>"
            f"<td class=\"{'pass' if entry['passed_runs'] == entry['total_runs'] else 'fail'}\">"
            f"{entry['passed_runs']}/{entry['total_runs']}</td>"
            f"<td>{entry['coverage_avg'] * 100:.1f}%</td></tr>"
            for entry in entries
        )

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Nightly Autoplay Matrix Report</title>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 20px; }}
        .pass {{ color: #27ae60; }}
        .fail {{ color: #e74c3c; }}
        th, td {{ padding: 8px; text-align: left; border-bottom: 1px solid #ddd; }}
    </style>
</head>
<body>
    <h1>Nightly Autoplay Matrix Report</h1>
    <p>Runs: {report['total_runs']} | Passed: {report['passed_runs']} | Failed: {report['failed_runs']}
       | Failure rate: {report['failure_rate'] * 100:.1f}% | Avg coverage: {report['coverage_avg'] * 100:.1f}%</p>
    <h2>Scenarios</h2>
    <table><tr><th>Scenario</th><th>Runs</th><th>Passed</th><th>Coverage</th></tr>{rows(report['scenario_breakdown'])}</table>
    <h2>Bot Modes</h2>
    <table><tr><th>Mode</th><th>Runs</th><th>Passed</th><th>Coverage</th></tr>{rows(report['mode_breakdown'])}</table>
</body>
</html>
"""


async def write_batch_artifacts(
    output_dir: Path | str, results: Sequence[RunResult], summary: BatchSummary
) -> List[str]:
    """Write the batch artifacts under ``{output_dir}/nightly-{timestamp}/``.

    Artifact failures are logged and never fail the batch.
    """

    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")
    batch_dir = Path(output_dir) / f"nightly-{stamp}"
    report = summary_report(results, summary)
    outputs = [
        ("summary.json", render_json_report(report)),
        ("coverage-heatmap.svg", render_coverage_heatmap(results)),
        ("performance.json", render_json_report(performance_report(results))),
        ("failures.json", render_json_report(failure_analysis(results))),
        ("dashboard.html", render_dashboard(report)),
    ]

    written: List[str] = []
    try:
        await asyncio.to_thread(batch_dir.mkdir, parents=True, exist_ok=True)
        for name, text in outputs:
            path = batch_dir / name
            await asyncio.to_thread(path.write_text, text, "utf-8")
            written.append(str(path))
    except OSError as exc:
        log_error(f"Failed to write nightly artifacts: {exc}")
    else:
        log_info(f"Artifacts saved to {batch_dir}")
    return written


async def update_baselines(
    results: Sequence[RunResult],
    manager: BaselineManager,
    *,
    version: Optional[str] = None,
) -> int:
    """Aggregate results per baseline key and upsert each group. Returns the count saved."""

    version = version or Config.CORE_VERSION
    groups: Dict[str, List[RunResult]] = {}
    for result in results:
        scenario = result.scenario
        key = baseline_key(
            scenario.world, scenario.adventure, version, scenario.locale, scenario.variation
        )
        groups.setdefault(key, []).append(result)

    updated = 0
    for key, runs in groups.items():
        await manager.save_baseline(key, aggregate_metrics(runs))
        updated += 1
    return updated


async def run_nightly(
    content_engine: ContentEngine,
    matrix: MatrixConfig,
    *,
    persistence: Optional[PersistenceStrategy] = None,
    bot_modes: Optional[Sequence[str]] = None,
    parallel_shards: Optional[int] = None,
    max_concurrent: Optional[int] = None,
    artifact_dir: Optional[Path | str] = None,
    thresholds: BatchThresholds = DEFAULT_THRESHOLDS,
    refresh_baselines: bool = True,
    verbose: Optional[bool] = None,
) -> NightlyReport:
    persistence = persistence or InMemoryPersistence()
    artifact_dir = Path(artifact_dir) if artifact_dir is not None else Config.ARTIFACT_DIR

    scenarios = generate_matrix(matrix)
    log_info(f"Generated {len(scenarios)} nightly scenarios")

    run_config = RunConfig(
        scenarios=scenarios,
        bot_modes=list(bot_modes or ALL_MODES),
        parallel_shards=parallel_shards or Config.PARALLEL_SHARDS,
        max_concurrent=max_concurrent or Config.MAX_CONCURRENT,
        max_tokens=Config.MAX_TOKENS,
    )
    runner = FuzzRunner(
        content_engine, persistence, artifact_dir=artifact_dir, verbose=verbose
    )

    await persistence.initialize()
    await content_engine.initialize()
    try:
        results = await runner.run_matrix(run_config)
        summary = analyze_results(results)
        artifacts = await write_batch_artifacts(artifact_dir, results, summary)
        summary.artifacts_generated = len(artifacts)
        if refresh_baselines:
            summary.baselines_updated = await update_baselines(
                results, BaselineManager(persistence)
            )
    finally:
        await content_engine.close()
        await persistence.close()

    success = check_batch_success(summary, thresholds)
    log_info(
        f"Runs {summary.total_runs}, passed {summary.passed_runs}, "
        f"failure rate {summary.failure_rate:.1%}, coverage {summary.coverage_avg:.1%}, "
        f"P95 latency {summary.latency_p95:.0f}ms"
    )
    if success:
        log_success("Nightly matrix PASSED")
    else:
        log_oracle("Nightly matrix FAILED")
    return NightlyReport(success=success, summary=summary, results=results, artifacts=artifacts)


def _csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Nightly autoplay matrix")
    parser.add_argument("--bundle", required=True, help="JSON file with the quest-graph bundle template")
    parser.add_argument("--worlds", type=_csv, required=True, help="Comma-separated world ids")
    parser.add_argument("--adventures", type=_csv, required=True, help="Comma-separated adventure ids")
    parser.add_argument("--locales", type=_csv, default=["en_US"], help="Comma-separated locales")
    parser.add_argument("--experiments", type=_csv, default=["control"])
    parser.add_argument("--variations", type=_csv, default=["control"])
    parser.add_argument(
        "--toggles",
        type=_csv,
        default=[],
        help="Comma-separated module toggles; each is tried on and off",
    )
    parser.add_argument("--modes", type=_csv, default=list(ALL_MODES), help="Comma-separated bot modes")
    parser.add_argument("--seeds", type=int, default=Config.NIGHTLY_SEEDS, help="Seeds per scenario")
    parser.add_argument("--max-turns", type=int, default=Config.MAX_TURNS)
    parser.add_argument("--timeout-ms", type=int, default=Config.TIMEOUT_MS)
    parser.add_argument("--shards", type=int, default=Config.PARALLEL_SHARDS)
    parser.add_argument("--max-concurrent", type=int, default=Config.MAX_CONCURRENT)
    parser.add_argument(
        "--store",
        choices=["memory", "json", "postgres"],
        default="memory",
        help="Where run results and baselines are kept",
    )
    parser.add_argument("--store-path", default="autoplay_runs", help="Directory for --store json")
    parser.add_argument("--artifact-dir", default=str(Config.ARTIFACT_DIR))
    parser.add_argument("--no-baselines", action="store_true", help="Skip the baseline refresh")
    parser.add_argument("--verbose", action="store_true", help="Log every turn")
    return parser.parse_args(argv)


def build_persistence(args: argparse.Namespace) -> PersistenceStrategy:
    if args.store == "json":
        return JsonPersistence(args.store_path)
    if args.store == "postgres":
        return PostgresPersistence(Config.DATABASE_URL)
    return InMemoryPersistence()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        Config.validate()
        template = json.loads(Path(args.bundle).read_text(encoding="utf-8"))
        matrix = MatrixConfig(
            worlds=args.worlds,
            adventures=args.adventures,
            locales=args.locales,
            experiments=args.experiments,
            variations=args.variations,
            module_toggles={name: [True, False] for name in args.toggles},
            seeds_per_scenario=args.seeds,
            max_turns=args.max_turns,
            timeout_ms=args.timeout_ms,
        )
        report = asyncio.run(
            run_nightly(
                GraphContentEngine(template),
                matrix,
                persistence=build_persistence(args),
                bot_modes=args.modes,
                parallel_shards=args.shards,
                max_concurrent=args.max_concurrent,
                artifact_dir=args.artifact_dir,
                refresh_baselines=not args.no_baselines,
                verbose=args.verbose or None,
            )
        )
    except (AutoplayError, ValueError, OSError) as exc:
        log_error(f"Nightly matrix failed: {exc}")
        return 1
    return 0 if report.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
