"""
Oracle detection: seven independent failure checks evaluated every turn.

The detector is stateless per call except for its append-only history, which
feeds the two cross-turn checks (cumulative validator retries and P95 turn
latency) and the stagnation counter. Each check reads only its own fields, so
any combination of flags can be raised by the same turn and an unrelated field
never flips a flag. Missing data is never an error: an absent signal counts as
"no violation".

Checks:
- soft_lock: stagnant turns reach the threshold, or BFS from the current node
  finds nothing reachable
- budget_violation: cumulative tokens exceed a fraction of the budget, or one
  turn alone burns more than the repair-loop threshold
- validator_retries: per-turn retries over threshold, or cumulative over double
- fallback_engagements: per-turn fallbacks over threshold, or a time-advance
  rule violation
- safety_violation: content flag matches a keyword (case-insensitive
  substring), consent violation, or age-rating violation
- performance_violation: turn latency, rolling P95 latency or assembler time
  over threshold
- integrity_violation: schema violation, replay divergence, invalid
  transition or data corruption
"""

from __future__ import annotations

import math
from collections import deque
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from .schemas import (
    CRITICAL_ORACLES,
    BotContext,
    FailureSummary,
    OracleDetails,
    OracleHistoryEntry,
    OracleResult,
    TurnResult,
)


class OracleConfig(BaseModel):
    """Thresholds for every oracle check."""

    soft_lock_threshold: int = Field(10, gt=0)
    budget_violation_threshold: float = Field(0.95, gt=0)
    repair_loop_token_threshold: int = Field(1000, gt=0)
    validator_retry_threshold: int = Field(5, ge=0)
    fallback_threshold: int = Field(3, ge=0)
    performance_latency_threshold: float = Field(5000.0, gt=0)
    performance_p95_threshold: float = Field(10000.0, gt=0)
    assembler_time_threshold: float = Field(3000.0, gt=0)
    safety_keywords: List[str] = Field(
        default_factory=lambda: ["explicit", "adult", "violence", "gore", "nsfw"]
    )
    integrity_checks: bool = True


INTEGRITY_FLAGS: Tuple[Tuple[str, str], ...] = (
    ("acts_schema_violation", "Acts schema violation detected"),
    ("state_divergence", "State divergence detected"),
    ("invalid_transition", "Invalid state transition detected"),
    ("data_corruption", "Data corruption detected"),
)


def percentile_95(values: List[float]) -> float:
    """Nearest-rank style P95: sorted value at index floor(n * 0.95)."""

    if not values:
        return 0.0
    ordered = sorted(values)
    index = min(math.floor(len(ordered) * 0.95), len(ordered) - 1)
    return ordered[index]


def reachable_nodes(quest_graph: Mapping[str, Any], start: str) -> Optional[List[str]]:
    """BFS over ``quest_graph["edges"]`` (``{"from", "to"}`` records).

    Returns nodes reachable from ``start`` excluding ``start`` itself, or
    ``None`` when the graph declares no edge list at all.
    """

    edges = quest_graph.get("edges")
    if not isinstance(edges, list):
        return None

    adjacency: Dict[str, List[str]] = {}
    for edge in edges:
        if isinstance(edge, Mapping) and edge.get("from") is not None and edge.get("to") is not None:
            adjacency.setdefault(str(edge["from"]), []).append(str(edge["to"]))

    visited = {start}
    found: List[str] = []
    queue = deque([start])
    while queue:
        node = queue.popleft()
        for neighbor in adjacency.get(node, []):
            if neighbor not in visited:
                visited.add(neighbor)
                found.append(neighbor)
                queue.append(neighbor)
    return found


def _is_terminal(quest_graph: Mapping[str, Any], node_id: str) -> bool:
    for node in quest_graph.get("nodes") or []:
        if isinstance(node, Mapping) and node.get("id") == node_id:
            return bool(node.get("terminal"))
    return False


class OracleDetector:
    """Evaluates oracle checks for one run and keeps the run's oracle history."""

    def __init__(self, config: Optional[OracleConfig] = None) -> None:
        self.config = config or OracleConfig()
        self.results = OracleResult()
        self.history: List[OracleHistoryEntry] = []

    def check_oracles(
        self,
        bundle: Mapping[str, Any],
        context: BotContext,
        turn_result: TurnResult,
        turn_number: int,
    ) -> OracleResult:
        details = OracleDetails()
        result = OracleResult(
            soft_lock=self._check_soft_lock(bundle, context, turn_result, details),
            budget_violation=self._check_budget(context, turn_result, details),
            validator_retries=self._check_validator_retries(turn_result, details),
            fallback_engagements=self._check_fallbacks(turn_result, details),
            safety_violation=self._check_safety(turn_result, details),
            performance_violation=self._check_performance(turn_result, details),
            integrity_violation=self._check_integrity(turn_result, details),
            details=details,
        )

        self.results = result
        self.history.append(OracleHistoryEntry(turn=turn_number, result=result))
        return result

    # ------------------------------------------------------------------
    # Individual checks
    # ------------------------------------------------------------------

    def _check_soft_lock(
        self,
        bundle: Mapping[str, Any],
        context: BotContext,
        turn_result: TurnResult,
        details: OracleDetails,
    ) -> bool:
        reasons: List[str] = []

        progressed = bool(turn_result.new_nodes) or turn_result.objective_progress > 0
        if progressed:
            stagnant = 0
        elif self.history:
            stagnant = self.history[-1].result.details.stagnant_turns + 1
        else:
            stagnant = 1
        details.stagnant_turns = stagnant
        if stagnant >= self.config.soft_lock_threshold:
            reasons.append(f"No objective progress for {stagnant} turns")

        quest_graph = bundle.get("quest_graph") if isinstance(bundle, Mapping) else None
        if context.current_node and isinstance(quest_graph, Mapping):
            reachable = reachable_nodes(quest_graph, context.current_node)
            if reachable is not None:
                details.reachable_unvisited = len(reachable)
                if not reachable and not _is_terminal(quest_graph, context.current_node):
                    reasons.append(f"No valid paths from {context.current_node} in quest graph")

        if reasons:
            details.reasons["soft_lock"] = reasons
        return bool(reasons)

    def _check_budget(
        self, context: BotContext, turn_result: TurnResult, details: OracleDetails
    ) -> bool:
        reasons: List[str] = []
        budget = context.budget_usage
        used = budget.tokens_in + budget.tokens_out + turn_result.token_usage
        details.tokens_used = int(used)
        details.token_budget = budget.max_tokens

        fraction = used / budget.max_tokens
        if fraction > self.config.budget_violation_threshold:
            reasons.append(
                f"Token usage {used:.0f}/{budget.max_tokens} exceeds "
                f"{self.config.budget_violation_threshold:.0%} of budget"
            )
        if turn_result.token_usage > self.config.repair_loop_token_threshold:
            reasons.append(f"Repair loop: {turn_result.token_usage} tokens in a single turn")

        if reasons:
            details.reasons["budget_violation"] = reasons
        return bool(reasons)

    def _check_validator_retries(self, turn_result: TurnResult, details: OracleDetails) -> bool:
        reasons: List[str] = []
        threshold = self.config.validator_retry_threshold
        retries = turn_result.validator_retries
        cumulative = retries + sum(entry.result.details.validator_retries for entry in self.history)
        details.validator_retries = retries
        details.cumulative_validator_retries = cumulative

        if retries > threshold:
            reasons.append(f"{retries} validator retries this turn (threshold {threshold})")
        if cumulative > threshold * 2:
            reasons.append(f"{cumulative} validator retries across the run (threshold {threshold * 2})")

        if reasons:
            details.reasons["validator_retries"] = reasons
        return bool(reasons)

    def _check_fallbacks(self, turn_result: TurnResult, details: OracleDetails) -> bool:
        reasons: List[str] = []
        count = turn_result.fallback_engagements
        details.fallback_engagements = count

        if count > self.config.fallback_threshold:
            reasons.append(f"{count} fallback engagements (threshold {self.config.fallback_threshold})")
        if turn_result.time_advance_violation:
            reasons.append("TIME_ADVANCE rule violation")

        if reasons:
            details.reasons["fallback_engagements"] = reasons
        return bool(reasons)

    def _check_safety(self, turn_result: TurnResult, details: OracleDetails) -> bool:
        reasons: List[str] = []
        keywords = [keyword.lower() for keyword in self.config.safety_keywords]
        matched = [
            flag
            for flag in turn_result.content_flags
            if isinstance(flag, str) and any(keyword in flag.lower() for keyword in keywords)
        ]
        details.safety_flags = matched

        if matched:
            reasons.append(f"Explicit content flags: {', '.join(matched)}")
        if turn_result.consent_violation:
            reasons.append("Consent violation")
        if turn_result.age_rating_violation:
            reasons.append("Age rating violation")

        if reasons:
            details.reasons["safety_violation"] = reasons
        return bool(reasons)

    def _check_performance(self, turn_result: TurnResult, details: OracleDetails) -> bool:
        reasons: List[str] = []
        latency = turn_result.latency_ms
        details.turn_latency_ms = latency
        details.assembler_time_ms = turn_result.assembler_time

        latencies = [
            entry.result.details.turn_latency_ms
            for entry in self.history
            if entry.result.details.turn_latency_ms > 0
        ]
        if latency > 0:
            latencies.append(latency)
        p95 = percentile_95(latencies)
        details.p95_latency_ms = p95

        if latency > self.config.performance_latency_threshold:
            reasons.append(f"Turn latency {latency:.0f}ms over {self.config.performance_latency_threshold:.0f}ms")
        if p95 > self.config.performance_p95_threshold:
            reasons.append(f"P95 latency {p95:.0f}ms over {self.config.performance_p95_threshold:.0f}ms")
        if turn_result.assembler_time > self.config.assembler_time_threshold:
            reasons.append(
                f"Assembler time {turn_result.assembler_time:.0f}ms over "
                f"{self.config.assembler_time_threshold:.0f}ms"
            )

        if reasons:
            details.reasons["performance_violation"] = reasons
        return bool(reasons)

    def _check_integrity(self, turn_result: TurnResult, details: OracleDetails) -> bool:
        if not self.config.integrity_checks:
            return False

        flagged = [name for name, _ in INTEGRITY_FLAGS if getattr(turn_result, name)]
        details.integrity_flags = flagged
        if flagged:
            details.reasons["integrity_violation"] = [
                message for name, message in INTEGRITY_FLAGS if name in flagged
            ]
        return bool(flagged)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_results(self) -> OracleResult:
        return self.results.model_copy(deep=True)

    def get_history(self) -> List[OracleHistoryEntry]:
        return list(self.history)

    def get_failure_summary(self) -> FailureSummary:
        failures = self.results.failures()
        return FailureSummary(
            total_failures=len(failures),
            failure_types=failures,
            critical_failures=[name for name in failures if name in CRITICAL_ORACLES],
        )

    def update_config(self, **overrides: Any) -> OracleConfig:
        """Replace selected thresholds; unknown names raise ``ValueError``."""

        unknown = set(overrides) - set(OracleConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown oracle settings: {', '.join(sorted(unknown))}")
        self.config = OracleConfig.model_validate({**self.config.model_dump(), **overrides})
        return self.config

    def reset(self) -> None:
        self.results = OracleResult()
        self.history = []
