"""Quest-graph bundles and scenarios shared by the tests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from autoplay.schemas import CoverageReport, OracleResult, PerformanceStats, RunResult, Scenario


def loop_bundle() -> dict:
    """Two rooms joined both ways; after the first move nothing new is ever found."""

    return {
        "current_node": "gate",
        "objectives": [{"id": "enter", "description": "enter the hall", "target": "hall"}],
        "quest_graph": {
            "nodes": [{"id": "gate"}, {"id": "hall"}],
            "edges": [
                {"id": "go_in", "from": "gate", "to": "hall", "text": "Enter the hall"},
                {"id": "go_out", "from": "hall", "to": "gate", "text": "Step outside"},
            ],
        },
    }


def keep_bundle() -> dict:
    """Branching keep with dialogue, economy, world-sim and mod declarations."""

    return {
        "current_node": "gate",
        "objectives": [
            {"id": "relic", "description": "find the relic", "target": "vault"},
        ],
        "quest_graph": {
            "nodes": [
                {"id": "gate"},
                {"id": "hall"},
                {"id": "market", "effects": {"loot_gained": [{"tier": "common"}], "vendor_interactions": ["smith"]}},
                {"id": "garden", "effects": {"weather_changes": ["rain"]}},
                {"id": "vault", "terminal": True, "effects": {"loot_gained": [{"tier": "rare"}]}},
            ],
            "edges": [
                {"id": "enter", "from": "gate", "to": "hall", "text": "Enter the keep"},
                {"id": "shop", "from": "hall", "to": "market", "text": "Visit the vendor shop"},
                {"id": "stroll", "from": "hall", "to": "garden", "text": "Take a careful stroll"},
                {"id": "dare", "from": "hall", "to": "vault", "text": "Dare the relic vault",
                 "effects": {"skill_checks": [{"skill": "lockpicking", "difficulty": "hard"}]}},
                {"id": "back_m", "from": "market", "to": "hall", "text": "Return to the hall"},
                {"id": "back_g", "from": "garden", "to": "hall", "text": "Return to the hall"},
                {"id": "leave", "from": "vault", "to": "hall", "text": "Leave the vault"},
            ],
        },
        "dialogue": {
            "candidates": [
                {"id": "greet", "text": "A gentle hello", "score": 0.9},
                {"id": "haggle", "text": "Can we trade?", "score": 0.7},
                {"id": "flirt", "text": "Care for a date?", "score": 0.5},
            ]
        },
        "economy": {"loot_tiers": ["common", "rare"]},
        "world_sim": {"event_types": ["storm"]},
        "mods": {"hooks": ["core.on_enter"]},
    }


def make_scenario(world: str = "world.keep", seed: str = "seed-1", **overrides) -> Scenario:
    fields = {
        "world": world,
        "adventure": "adventure.tutorial",
        "rng_seed": seed,
        "max_turns": 20,
        "timeout_ms": 60000,
    }
    fields.update(overrides)
    return Scenario(**fields)


def make_result(
    run_id: str = "run-1",
    *,
    world: str = "world.keep",
    mode: str = "explorer",
    passed: bool = True,
    status: str = "completed",
    coverage: float = 0.6,
    latency_ms: float = 100.0,
    turns: int = 10,
    locale: str = "en_US",
    variation: Optional[str] = "control",
    oracles: Optional[dict] = None,
) -> RunResult:
    """Finalized run result with every coverage dimension set to ``coverage``."""

    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return RunResult(
        run_id=run_id,
        scenario=make_scenario(world, locale=locale, variation=variation),
        mode=mode,
        status=status,
        turns_completed=turns,
        coverage=CoverageReport(
            quest_graph=coverage,
            dialogue=coverage,
            mechanics=coverage,
            economy=coverage,
            world_sim=coverage,
            mods=coverage,
            overall=coverage,
        ),
        oracles=OracleResult(**(oracles or {})),
        performance=PerformanceStats(
            duration_ms=latency_ms * turns,
            turns_per_second=1000.0 / latency_ms,
            avg_turn_latency_ms=latency_ms,
            p95_turn_latency_ms=latency_ms,
            avg_tokens_per_turn=50.0,
            max_tokens_per_turn=80,
        ),
        started_at=now,
        finished_at=now,
        duration_ms=latency_ms * turns,
        passed=passed,
    )
