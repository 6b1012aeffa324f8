"""
Baseline storage and regression comparison.

A baseline is an aggregated metrics snapshot keyed by
``world/adventure/version/locale/variation``. Saving is an explicit upsert;
comparison never writes.

Deltas per metric family:
- coverage: absolute difference (current - baseline), percentages in [0, 1]
- performance: relative change against the baseline value
- oracles: absolute difference in failure counts
- behavior: relative change against the baseline value

A relative delta against a zero baseline is the current value itself. Fields
the stored baseline does not contain are left out of the deltas and listed in
``untracked_metrics`` instead.

Each family has a fixed tolerance. Regressions beyond it are listed in
``tolerance_exceeded``; direction matters for coverage and performance (only
coverage drops, latency/token increases and throughput drops count), while any
behavior shift in either direction counts. Independently, a large drop in
overall coverage, a large average-latency degradation, or any new oracle
failure is a critical regression. Either list being non-empty fails the
comparison.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional

from .logging_utils import log_info, log_oracle
from .oracles import percentile_95
from .persistence import PersistenceStrategy
from .schemas import (
    COVERAGE_DIMENSIONS,
    BaselineComparison,
    BaselineMetrics,
    BaselineRecord,
    RunResult,
    utc_now,
)

# Tolerances per metric family
COVERAGE_TOLERANCE = 0.05
PERFORMANCE_TOLERANCE = 0.10
ORACLE_TOLERANCE = 0.0
BEHAVIOR_TOLERANCE = 0.15

# Critical regressions fail regardless of other fields
CRITICAL_COVERAGE_DROP = 0.2
CRITICAL_LATENCY_DEGRADATION = 0.2

# Thresholds for reporting improvements in ``significant_changes``
SIGNIFICANT_COVERAGE_GAIN = 0.1
SIGNIFICANT_PERFORMANCE_GAIN = 0.1
SIGNIFICANT_BEHAVIOR_CHANGE = 0.2

# Performance metrics where a higher value is better
HIGHER_IS_BETTER = frozenset({"turns_per_second"})

METRIC_FAMILIES = ("coverage", "performance", "oracles", "behavior")
RELATIVE_FAMILIES = frozenset({"performance", "behavior"})

ORACLE_COUNT_FIELDS = {
    "soft_locks": "soft_lock",
    "budget_violations": "budget_violation",
    "validator_retries": "validator_retries",
    "fallback_engagements": "fallback_engagements",
    "safety_violations": "safety_violation",
    "performance_violations": "performance_violation",
    "integrity_violations": "integrity_violation",
}


def baseline_key(
    world: str,
    adventure: str,
    version: str,
    locale: str,
    variation: Optional[str] = None,
) -> str:
    return f"{world}/{adventure}/{version}/{locale}/{variation or 'control'}"


def _mean(values: Iterable[float]) -> float:
    items = list(values)
    return sum(items) / max(len(items), 1)


def aggregate_metrics(results: List[RunResult]) -> BaselineMetrics:
    """Aggregate run results into baseline metrics.

    Coverage, performance and behavior averages use passed runs only; oracle
    counts and the risk-taking rate use every run.
    """

    passed = [result for result in results if result.passed]

    coverage = {
        name: _mean(getattr(result.coverage, name) for result in passed)
        for name in COVERAGE_DIMENSIONS
    }
    coverage["overall"] = _mean(result.coverage.overall for result in passed)

    performance = {
        "avg_turn_latency_ms": _mean(r.performance.avg_turn_latency_ms for r in passed),
        "p95_turn_latency_ms": percentile_95([r.performance.avg_turn_latency_ms for r in passed]),
        "avg_tokens_per_turn": _mean(r.performance.avg_tokens_per_turn for r in passed),
        "max_tokens_per_turn": float(max((r.performance.max_tokens_per_turn for r in passed), default=0)),
        "turns_per_second": _mean(r.performance.turns_per_second for r in passed),
    }

    oracles: Dict[str, float] = {
        name: float(sum(1 for r in results if getattr(r.oracles, flag)))
        for name, flag in ORACLE_COUNT_FIELDS.items()
    }
    # Retries are summed as counts rather than counted as flagged runs
    oracles["validator_retries"] = float(
        sum(r.oracles.details.cumulative_validator_retries for r in results)
    )

    behavior = {
        "avg_turns_to_completion": _mean(r.turns_completed for r in passed),
        "exploration_efficiency": coverage["overall"],
        "dialogue_engagement_rate": coverage["dialogue"],
        "economic_activity_rate": coverage["economy"],
        "risk_taking_rate": sum(1 for r in results if r.mode == "risk_taker") / max(len(results), 1),
    }

    return BaselineMetrics(
        coverage=coverage, performance=performance, oracles=oracles, behavior=behavior
    )


def _absolute_delta(current: float, baseline: float) -> float:
    return current - baseline


def relative_delta(current: float, baseline: float) -> float:
    if baseline == 0:
        return current
    return (current - baseline) / baseline


def compute_deltas(current: BaselineMetrics, baseline: BaselineMetrics) -> Dict[str, Dict[str, float]]:
    """Per-field deltas for fields present in both the current and baseline metrics.

    A field the baseline never recorded has nothing to regress from and is
    left out; ``untracked_metrics`` lists those.
    """

    deltas: Dict[str, Dict[str, float]] = {}
    for family in METRIC_FAMILIES:
        now = getattr(current, family)
        before = getattr(baseline, family)
        delta = relative_delta if family in RELATIVE_FAMILIES else _absolute_delta
        deltas[family] = {key: delta(value, before[key]) for key, value in now.items() if key in before}
    return deltas


def untracked_metrics(current: BaselineMetrics, baseline: BaselineMetrics) -> List[str]:
    return [
        f"{family}.{key}"
        for family in METRIC_FAMILIES
        for key in getattr(current, family)
        if key not in getattr(baseline, family)
    ]


def find_tolerance_exceeded(deltas: Mapping[str, Mapping[str, float]]) -> List[str]:
    exceeded: List[str] = []
    for key, delta in deltas.get("coverage", {}).items():
        if -delta > COVERAGE_TOLERANCE:
            exceeded.append(f"coverage.{key}")
    for key, delta in deltas.get("performance", {}).items():
        regression = -delta if key in HIGHER_IS_BETTER else delta
        if regression > PERFORMANCE_TOLERANCE:
            exceeded.append(f"performance.{key}")
    for key, delta in deltas.get("oracles", {}).items():
        if delta > ORACLE_TOLERANCE:
            exceeded.append(f"oracles.{key}")
    for key, delta in deltas.get("behavior", {}).items():
        if abs(delta) > BEHAVIOR_TOLERANCE:
            exceeded.append(f"behavior.{key}")
    return exceeded


def find_critical_regressions(deltas: Mapping[str, Mapping[str, float]]) -> List[str]:
    critical: List[str] = []
    coverage_drop = -deltas.get("coverage", {}).get("overall", 0.0)
    if coverage_drop > CRITICAL_COVERAGE_DROP:
        critical.append(f"coverage.overall dropped by {coverage_drop:.3f}")

    latency = deltas.get("performance", {}).get("avg_turn_latency_ms", 0.0)
    if latency > CRITICAL_LATENCY_DEGRADATION:
        critical.append(f"performance.avg_turn_latency_ms degraded by {latency:.1%}")

    new_failures = [key for key, delta in deltas.get("oracles", {}).items() if delta > 0]
    if new_failures:
        critical.append(f"new oracle failures: {', '.join(new_failures)}")
    return critical


def find_significant_changes(deltas: Mapping[str, Mapping[str, float]]) -> List[str]:
    significant: List[str] = []
    for key, delta in deltas.get("coverage", {}).items():
        if delta > SIGNIFICANT_COVERAGE_GAIN:
            significant.append(f"coverage.{key} improved by {delta:.3f}")

    performance = deltas.get("performance", {})
    if performance.get("avg_turn_latency_ms", 0.0) < -SIGNIFICANT_PERFORMANCE_GAIN:
        significant.append(
            f"performance.avg_turn_latency_ms improved by {abs(performance['avg_turn_latency_ms']):.1%}"
        )
    if performance.get("turns_per_second", 0.0) > SIGNIFICANT_PERFORMANCE_GAIN:
        significant.append(
            f"performance.turns_per_second improved by {performance['turns_per_second']:.1%}"
        )

    for key, delta in deltas.get("behavior", {}).items():
        if abs(delta) > SIGNIFICANT_BEHAVIOR_CHANGE:
            significant.append(f"behavior.{key} changed by {delta:.1%}")
    return significant


def summarize(
    deltas: Mapping[str, Mapping[str, float]],
    verdict: str,
    tolerance_exceeded: List[str],
    critical: List[str],
) -> str:
    parts = [f"Verdict: {verdict.upper()}"]
    coverage_delta = deltas.get("coverage", {}).get("overall", 0.0)
    if abs(coverage_delta) > 0.01:
        direction = "improved" if coverage_delta > 0 else "degraded"
        parts.append(f"Overall coverage {direction} by {abs(coverage_delta):.3f}")
    latency_delta = deltas.get("performance", {}).get("avg_turn_latency_ms", 0.0)
    if abs(latency_delta) > 0.01:
        direction = "slower" if latency_delta > 0 else "faster"
        parts.append(f"Average turn latency {abs(latency_delta):.1%} {direction}")
    if critical:
        parts.append(f"Critical: {'; '.join(critical)}")
    if tolerance_exceeded:
        parts.append(f"Tolerance exceeded: {', '.join(tolerance_exceeded)}")
    return ". ".join(parts)


class BaselineManager:
    """Saves, loads and compares baselines through a persistence strategy."""

    def __init__(self, persistence: PersistenceStrategy) -> None:
        self.persistence = persistence

    async def save_baseline(self, key: str, metrics: BaselineMetrics) -> BaselineRecord:
        existing = await self.persistence.get_baseline(key)
        now = utc_now()
        record = BaselineRecord(
            key=key,
            metrics=metrics.model_copy(deep=True),
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        await self.persistence.upsert_baseline(record)
        log_info(f"Saved baseline {key}")
        return record

    async def load_baseline(self, key: str) -> Optional[BaselineMetrics]:
        record = await self.persistence.get_baseline(key)
        return record.metrics if record else None

    async def compare_with_baseline(self, key: str, current: BaselineMetrics) -> BaselineComparison:
        """Compare ``current`` against the stored baseline.

        With no stored baseline the comparison passes trivially and reports
        ``baseline_found=False`` so callers can tell it apart from a real pass.
        """

        baseline = await self.load_baseline(key)
        if baseline is None:
            return BaselineComparison(
                key=key,
                baseline_found=False,
                current_metrics=current,
                verdict="pass",
                summary="Verdict: PASS. No baseline stored for this key",
            )

        deltas = compute_deltas(current, baseline)
        exceeded = find_tolerance_exceeded(deltas)
        critical = find_critical_regressions(deltas)
        verdict = "fail" if exceeded or critical else "pass"
        if verdict == "fail":
            log_oracle(f"Baseline regression for {key}: {', '.join(critical + exceeded)}")

        return BaselineComparison(
            key=key,
            baseline_found=True,
            current_metrics=current,
            baseline_metrics=baseline,
            deltas=deltas,
            verdict=verdict,
            tolerance_exceeded=exceeded,
            critical_regressions=critical,
            significant_changes=find_significant_changes(deltas),
            untracked_metrics=untracked_metrics(current, baseline),
            summary=summarize(deltas, verdict, exceeded, critical),
        )

    async def list_baselines(self) -> List[BaselineRecord]:
        return await self.persistence.list_baselines()

    async def delete_baseline(self, key: str) -> bool:
        return await self.persistence.delete_baseline(key)
