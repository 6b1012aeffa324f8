"""
Coverage tracking across six independent dimensions.

Each ``update_coverage`` call:
1. Lazily derives dimension totals from the first bundle it sees
2. Adds this turn's observations to each dimension's sets/counters
3. Recomputes every percentage as ``min(covered / total, 1.0)`` (total 0 -> 1.0)
4. Appends an immutable snapshot (deep copy) to the history

Totals are never altered after initialization. Observed sets only grow, so each
dimension's raw counts are non-decreasing across snapshots.

Mechanics, economy and world-sim have categories with no bundle-declared total
(skill variety, craft outcomes, weather states...). Those use the estimated
denominators in ``CoverageEstimates``. They are calibration values, not measured
truths, so every tracker can be given its own.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from .memory import dialogue_key
from .schemas import (
    COVERAGE_DIMENSIONS,
    BotContext,
    BotDecision,
    CoverageMetrics,
    CoverageReport,
    CoverageSnapshot,
    TurnResult,
)


@dataclass(frozen=True)
class CoverageEstimates:
    """Assumed category sizes for counts the bundle does not declare."""

    skill_variety: int = 20
    difficulty_bands: int = 5
    conditions: int = 10
    resource_curves: int = 8
    craft_outcomes: int = 10
    vendor_interactions: int = 5
    weather_states: int = 5

    @property
    def mechanics_total(self) -> int:
        return self.skill_variety + self.difficulty_bands + self.conditions + self.resource_curves


DEFAULT_ESTIMATES = CoverageEstimates()


def set_coverage(covered: int, total: int) -> float:
    if total <= 0:
        return 1.0
    return min(covered / total, 1.0)


def _declared_count(bundle: Mapping[str, Any], section: str, key: str) -> int:
    block = bundle.get(section)
    if not isinstance(block, Mapping):
        return 0
    items = block.get(key)
    return len(items) if isinstance(items, (list, tuple, dict)) else 0


class CoverageTracker:
    """Accumulates coverage for one run."""

    def __init__(self, estimates: Optional[CoverageEstimates] = None) -> None:
        self.estimates = estimates or DEFAULT_ESTIMATES
        self.metrics = CoverageMetrics()
        self.snapshots: List[CoverageSnapshot] = []
        self.initialized = False

    def update_coverage(
        self,
        bundle: Mapping[str, Any],
        context: BotContext,
        decision: BotDecision,
        turn_result: TurnResult,
    ) -> CoverageSnapshot:
        if not self.initialized:
            self._initialize_from_bundle(bundle)
            self.initialized = True

        self._update_quest_graph(context, decision, turn_result)
        self._update_dialogue(context, decision, turn_result)
        self._update_mechanics(turn_result)
        self._update_economy(turn_result)
        self._update_world_sim(turn_result)
        self._update_mods(turn_result)

        self._recalculate_percentages()
        return self._append_snapshot(context.turn_number)

    def _initialize_from_bundle(self, bundle: Mapping[str, Any]) -> None:
        metrics = self.metrics
        metrics.quest_graph.total_nodes = _declared_count(bundle, "quest_graph", "nodes")
        metrics.quest_graph.total_edges = _declared_count(bundle, "quest_graph", "edges")
        metrics.dialogue.total_candidates = _declared_count(bundle, "dialogue", "candidates")
        metrics.economy.total_loot_tiers = _declared_count(bundle, "economy", "loot_tiers")
        metrics.world_sim.total_event_types = _declared_count(bundle, "world_sim", "event_types")
        metrics.mods.total_hooks = _declared_count(bundle, "mods", "hooks")

    # ------------------------------------------------------------------
    # Per-dimension updates (independent of each other)
    # ------------------------------------------------------------------

    def _update_quest_graph(
        self, context: BotContext, decision: BotDecision, turn_result: TurnResult
    ) -> None:
        quest = self.metrics.quest_graph
        if context.current_node:
            quest.nodes_visited.add(context.current_node)
        if decision.choice_id:
            quest.edges_traversed.add(decision.choice_id)
        quest.nodes_visited.update(turn_result.new_nodes)

    def _update_dialogue(
        self, context: BotContext, decision: BotDecision, turn_result: TurnResult
    ) -> None:
        dialogue = self.metrics.dialogue
        for candidate in context.dialogue_candidates:
            if candidate.get("id"):
                dialogue.candidates_surfaced.add(str(candidate["id"]))
        if decision.player_text:
            dialogue.candidates_selected.add(
                decision.dialogue_id or dialogue_key(decision.player_text)
            )
        dialogue.arc_steps_progressed.update(turn_result.dialogue_progress)

    def _update_mechanics(self, turn_result: TurnResult) -> None:
        mechanics = self.metrics.mechanics
        for check in turn_result.skill_checks:
            skill = check.get("skill")
            if skill:
                attempts = mechanics.skill_checks_attempted
                attempts[str(skill)] = attempts.get(str(skill), 0) + 1
            if check.get("difficulty") is not None:
                mechanics.difficulty_bands_seen.add(str(check["difficulty"]))
        mechanics.condition_variety.update(turn_result.conditions)
        mechanics.resource_curves_exercised.update(turn_result.resource_changes)

    def _update_economy(self, turn_result: TurnResult) -> None:
        economy = self.metrics.economy
        for loot in turn_result.loot_gained:
            if loot.get("tier"):
                economy.loot_tiers_touched.add(str(loot["tier"]))
        economy.craft_outcomes.update(turn_result.craft_attempts)
        economy.vendor_interactions.update(turn_result.vendor_interactions)

    def _update_world_sim(self, turn_result: TurnResult) -> None:
        world_sim = self.metrics.world_sim
        for event in turn_result.world_events:
            if event.get("type"):
                world_sim.event_types_triggered.add(str(event["type"]))
        world_sim.weather_states_traversed.update(turn_result.weather_changes)

    def _update_mods(self, turn_result: TurnResult) -> None:
        mods = self.metrics.mods
        for hook in turn_result.mod_hooks:
            namespace = hook.get("namespace")
            if namespace:
                mods.hook_invocations[str(namespace)] = mods.hook_invocations.get(str(namespace), 0) + 1
        mods.violations_detected.update(turn_result.mod_violations)
        mods.quarantines_triggered.update(turn_result.mod_quarantines)

    # ------------------------------------------------------------------
    # Percentages and snapshots
    # ------------------------------------------------------------------

    def _recalculate_percentages(self) -> None:
        metrics = self.metrics
        estimates = self.estimates

        quest = metrics.quest_graph
        quest.coverage_percentage = set_coverage(
            len(quest.nodes_visited) + len(quest.edges_traversed),
            quest.total_nodes + quest.total_edges,
        )

        dialogue = metrics.dialogue
        dialogue.coverage_percentage = set_coverage(
            len(dialogue.candidates_selected), dialogue.total_candidates
        )

        mechanics = metrics.mechanics
        mechanics.coverage_percentage = set_coverage(
            len(mechanics.skill_checks_attempted)
            + len(mechanics.difficulty_bands_seen)
            + len(mechanics.condition_variety)
            + len(mechanics.resource_curves_exercised),
            estimates.mechanics_total,
        )

        economy = metrics.economy
        economy.coverage_percentage = set_coverage(
            len(economy.loot_tiers_touched)
            + len(economy.craft_outcomes)
            + len(economy.vendor_interactions),
            economy.total_loot_tiers + estimates.craft_outcomes + estimates.vendor_interactions,
        )

        world_sim = metrics.world_sim
        world_sim.coverage_percentage = set_coverage(
            len(world_sim.event_types_triggered) + len(world_sim.weather_states_traversed),
            world_sim.total_event_types + estimates.weather_states,
        )

        mods = metrics.mods
        mods.coverage_percentage = set_coverage(len(mods.hook_invocations), mods.total_hooks)

    def _append_snapshot(self, turn_number: int) -> CoverageSnapshot:
        snapshot = CoverageSnapshot(
            turn_number=turn_number,
            metrics=self.metrics.model_copy(deep=True),
            overall_coverage=self.metrics.overall(),
        )
        self.snapshots.append(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_coverage(self) -> CoverageReport:
        return CoverageReport(**self.metrics.percentages(), overall=self.metrics.overall())

    def get_detailed_coverage(self) -> CoverageMetrics:
        return self.metrics.model_copy(deep=True)

    def get_snapshots(self) -> List[CoverageSnapshot]:
        return list(self.snapshots)

    def latest_snapshot(self) -> Optional[CoverageSnapshot]:
        return self.snapshots[-1] if self.snapshots else None

    def get_coverage_trend(self) -> List[Dict[str, float]]:
        """Per-snapshot percentages, oldest first."""

        trend = []
        for snapshot in self.snapshots:
            point: Dict[str, float] = {"turn": float(snapshot.turn_number)}
            for name in COVERAGE_DIMENSIONS:
                point[name] = getattr(snapshot.metrics, name).coverage_percentage
            point["overall"] = snapshot.overall_coverage
            trend.append(point)
        return trend

    def reset(self) -> None:
        """Forget everything, including totals; the next bundle re-derives them."""

        self.metrics = CoverageMetrics()
        self.snapshots = []
        self.initialized = False
