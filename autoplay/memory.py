"""Per-run bot memory.

One ``BotMemory`` belongs to exactly one bot engine. Policies read it; only the
engine writes to it, after each decision and after each turn result.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Dict, Set

from .rng import hash_string
from .schemas import BudgetUsage

# Coarse output-token estimate; not a tokenizer
AVG_CHARS_PER_TOKEN = 4


@dataclass
class BotMemory:
    """Mutable working state for one run."""

    visited_nodes: Set[str] = field(default_factory=set)
    dialogue_candidates_seen: Set[str] = field(default_factory=set)
    skill_checks_attempted: Dict[str, int] = field(default_factory=dict)
    loot_tiers_touched: Set[str] = field(default_factory=set)
    world_events_triggered: Set[str] = field(default_factory=set)
    mod_hooks_invoked: Dict[str, int] = field(default_factory=dict)
    turn_count: int = 0
    last_objective_progress: float = 0.0
    stuck_turns: int = 0
    budget_usage: BudgetUsage = field(default_factory=BudgetUsage)

    def snapshot(self) -> "BotMemory":
        """Deep copy for callers that must not observe later updates."""

        return copy.deepcopy(self)

    def estimated_tokens(self, text: str) -> float:
        return len(text) / AVG_CHARS_PER_TOKEN


def dialogue_key(text: str) -> str:
    """Stable identifier for a free-text utterance with no candidate id."""

    return f"dialogue_{hash_string(text)}"
