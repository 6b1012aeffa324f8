"""Tests for the six-dimension coverage tracker."""

import json

from autoplay.coverage import CoverageEstimates, CoverageTracker, set_coverage
from autoplay.schemas import BotContext, BotDecision, TurnResult

from bundles import keep_bundle


def test_set_coverage_bounds():
    assert set_coverage(0, 0) == 1.0
    assert set_coverage(3, 0) == 1.0
    assert set_coverage(1, 4) == 0.25
    assert set_coverage(9, 4) == 1.0


def test_totals_come_from_first_bundle():
    tracker = CoverageTracker()
    tracker.update_coverage(keep_bundle(), BotContext(current_node="gate"), BotDecision(), TurnResult())
    detailed = tracker.get_detailed_coverage()
    assert detailed.quest_graph.total_nodes == 5
    assert detailed.quest_graph.total_edges == 7
    assert detailed.dialogue.total_candidates == 3
    assert detailed.economy.total_loot_tiers == 2
    assert detailed.world_sim.total_event_types == 1
    assert detailed.mods.total_hooks == 1

    # A later bundle with a different shape never changes totals
    tracker.update_coverage({"quest_graph": {"nodes": []}}, BotContext(), BotDecision(), TurnResult())
    assert tracker.get_detailed_coverage().quest_graph.total_nodes == 5


def test_quest_graph_counts_nodes_and_edges():
    tracker = CoverageTracker()
    snapshot = tracker.update_coverage(
        keep_bundle(),
        BotContext(current_node="gate"),
        BotDecision(choice_id="enter"),
        TurnResult(new_nodes=["hall"]),
    )
    # gate + hall + edge "enter" out of 5 nodes + 7 edges
    assert snapshot.metrics.quest_graph.coverage_percentage == 3 / 12


def test_dimensions_are_independent():
    tracker = CoverageTracker()
    tracker.update_coverage(
        keep_bundle(),
        BotContext(),
        BotDecision(),
        TurnResult(loot_gained=[{"tier": "rare"}], mod_hooks=[{"namespace": "core.on_enter"}]),
    )
    report = tracker.get_coverage()
    assert report.mods == 1.0
    assert report.economy == 1 / (2 + 10 + 5)
    assert report.quest_graph == 0.0
    assert report.dialogue == 0.0
    assert report.world_sim == 0.0


def test_missing_sections_count_as_fully_covered():
    tracker = CoverageTracker()
    tracker.update_coverage({}, BotContext(), BotDecision(), TurnResult())
    report = tracker.get_coverage()
    assert report.quest_graph == 1.0
    assert report.dialogue == 1.0
    assert report.mods == 1.0
    assert 0.0 <= report.overall <= 1.0


def test_estimates_are_configurable():
    estimates = CoverageEstimates(skill_variety=1, difficulty_bands=1, conditions=1, resource_curves=1)
    tracker = CoverageTracker(estimates)
    tracker.update_coverage(
        {},
        BotContext(),
        BotDecision(),
        TurnResult(skill_checks=[{"skill": "stealth", "difficulty": "easy"}]),
    )
    assert tracker.get_coverage().mechanics == 2 / 4


def test_dialogue_selection_uses_candidate_id():
    tracker = CoverageTracker()
    context = BotContext(dialogue_candidates=[{"id": "greet"}, {"id": "haggle"}])
    tracker.update_coverage(
        keep_bundle(), context, BotDecision(player_text="hi", dialogue_id="greet"), TurnResult()
    )
    detailed = tracker.get_detailed_coverage()
    assert detailed.dialogue.candidates_surfaced == {"greet", "haggle"}
    assert detailed.dialogue.candidates_selected == {"greet"}
    assert tracker.get_coverage().dialogue == 1 / 3


def test_counts_are_monotonic_and_percentages_bounded():
    tracker = CoverageTracker()
    bundle = keep_bundle()
    turns = [
        ("gate", "enter", TurnResult(new_nodes=["hall"])),
        ("hall", "shop", TurnResult(new_nodes=["market"], loot_gained=[{"tier": "common"}])),
        ("market", "back_m", TurnResult()),
        ("hall", "stroll", TurnResult(new_nodes=["garden"], weather_changes=["rain", "fog"])),
    ]
    for index, (node, choice, result) in enumerate(turns):
        tracker.update_coverage(bundle, BotContext(current_node=node, turn_number=index), BotDecision(choice_id=choice), result)

    snapshots = tracker.get_snapshots()
    assert len(snapshots) == 4
    for earlier, later in zip(snapshots, snapshots[1:]):
        assert earlier.metrics.quest_graph.nodes_visited <= later.metrics.quest_graph.nodes_visited
        assert earlier.metrics.quest_graph.edges_traversed <= later.metrics.quest_graph.edges_traversed
        assert earlier.overall_coverage <= later.overall_coverage
    for snapshot in snapshots:
        for value in snapshot.metrics.percentages().values():
            assert 0.0 <= value <= 1.0


def test_snapshots_are_isolated_from_later_updates():
    tracker = CoverageTracker()
    first = tracker.update_coverage(keep_bundle(), BotContext(current_node="gate"), BotDecision(), TurnResult())
    tracker.update_coverage(keep_bundle(), BotContext(current_node="hall"), BotDecision(), TurnResult())
    assert first.metrics.quest_graph.nodes_visited == {"gate"}


def test_trend_and_reset():
    tracker = CoverageTracker()
    tracker.update_coverage(keep_bundle(), BotContext(current_node="gate", turn_number=0), BotDecision(), TurnResult())
    trend = tracker.get_coverage_trend()
    assert trend[0]["turn"] == 0.0
    assert set(trend[0]) >= {"quest_graph", "mods", "overall"}

    tracker.reset()
    assert tracker.get_snapshots() == []
    assert tracker.latest_snapshot() is None
    assert tracker.initialized is False


def test_json_dump_sorts_sets():
    tracker = CoverageTracker()
    tracker.update_coverage(
        keep_bundle(),
        BotContext(current_node="gate"),
        BotDecision(),
        TurnResult(new_nodes=["vault", "hall"]),
    )
    dumped = json.loads(tracker.get_detailed_coverage().model_dump_json())
    assert dumped["quest_graph"]["nodes_visited"] == ["gate", "hall", "vault"]
