"""Bot decision policies.

Six strategies, each selected by a ``BotMode``. A policy owns its own
``DeterministicRNG`` (never shared with the engine's bookkeeping), reads the
bundle, memory and context, and returns one ``BotDecision``. Policies never
mutate memory.

Decision priority is keyword driven. When a policy finds nothing specialized it
falls back to coverage seeking: a uniform pick among choices not yet in
``visited_nodes``, then a uniform pick among all choices. A turn with no
choices yields a decision that neither selects nor speaks.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Protocol, Sequence

from .memory import BotMemory
from .rng import DeterministicRNG
from .schemas import BotContext, BotDecision


class BotMode(str, Enum):
    OBJECTIVE_SEEKER = "objective_seeker"
    EXPLORER = "explorer"
    ECONOMY_GRINDER = "economy_grinder"
    ROMANCE_TESTER = "romance_tester"
    RISK_TAKER = "risk_taker"
    SAFETY_MAX = "safety_max"


ALL_MODES: List[str] = [mode.value for mode in BotMode]

ECONOMY_KEYWORDS = ("trade", "buy", "sell", "craft", "loot", "gold", "coin", "vendor", "shop")
ROMANCE_KEYWORDS = ("romance", "flirt", "love", "kiss", "hug", "date", "relationship")
RISK_KEYWORDS = ("danger", "risk", "challenge", "dare", "bold", "aggressive")
SKILL_CHECK_KEYWORDS = ("check", "roll", "test", "attempt", "try")
SAFE_KEYWORDS = ("safe", "careful", "cautious", "conservative", "gentle")

# How often the risk taker goes for a skill check when one is on offer
SKILL_CHECK_PROBABILITY = 0.7
# Dialogue selection picks among this many best-scored unseen candidates
TOP_DIALOGUE_CANDIDATES = 3


class BotPolicy(Protocol):
    """Protocol for decision strategies."""

    name: ClassVar[str]

    def decide(self, bundle: Mapping[str, Any], memory: BotMemory, context: BotContext) -> BotDecision:
        ...


def choice_info(bundle: Mapping[str, Any], choice_id: str) -> Mapping[str, Any]:
    """Return the bundle entry for ``choice_id``.

    ``bundle["choices"]`` may be a mapping of id -> entry or a list of entries
    carrying an ``id`` key. Unknown shapes yield an empty mapping.
    """

    choices = bundle.get("choices") if isinstance(bundle, Mapping) else None
    if isinstance(choices, Mapping):
        entry = choices.get(choice_id)
        return entry if isinstance(entry, Mapping) else {}
    if isinstance(choices, list):
        for entry in choices:
            if isinstance(entry, Mapping) and entry.get("id") == choice_id:
                return entry
    return {}


def choice_text(bundle: Mapping[str, Any], choice_id: str) -> str:
    text = choice_info(bundle, choice_id).get("text")
    return text.lower() if isinstance(text, str) else ""


def candidate_text(candidate: Mapping[str, Any]) -> str:
    text = candidate.get("text")
    return text.lower() if isinstance(text, str) else ""


def mentions_any(text: str, keywords: Sequence[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def is_safe_text(text: str) -> bool:
    return mentions_any(text, SAFE_KEYWORDS) and not mentions_any(text, RISK_KEYWORDS)


class BasePolicy:
    """Shared helpers for the concrete policies."""

    name: ClassVar[str] = "base"

    def __init__(self, seed: str) -> None:
        self.rng = DeterministicRNG(seed)

    def decide(self, bundle: Mapping[str, Any], memory: BotMemory, context: BotContext) -> BotDecision:
        raise NotImplementedError(f"{type(self).__name__} must implement decide()")

    def select_choice_by_coverage(self, choices: Sequence[str], memory: BotMemory) -> Optional[str]:
        unexplored = [choice for choice in choices if choice not in memory.visited_nodes]
        if unexplored:
            return self.rng.choose(unexplored)
        return self.rng.choose(list(choices))

    def select_dialogue_candidate(
        self, candidates: Sequence[Dict[str, Any]], memory: BotMemory
    ) -> Optional[Dict[str, Any]]:
        """Prefer unseen candidates, choosing among the best-scored few."""

        unseen = [
            candidate
            for candidate in candidates
            if candidate.get("id") not in memory.dialogue_candidates_seen
        ]
        if unseen:
            ranked = sorted(unseen, key=lambda candidate: candidate.get("score") or 0, reverse=True)
            return self.rng.choose(ranked[:TOP_DIALOGUE_CANDIDATES])
        return self.rng.choose(list(candidates))

    def pick(self, choices: Sequence[str], reasoning: str, confidence: float) -> BotDecision:
        return BotDecision(
            choice_id=self.rng.choose(list(choices)), reasoning=reasoning, confidence=confidence
        )

    def speak(self, candidate: Dict[str, Any], reasoning: str, confidence: float) -> BotDecision:
        candidate_id = candidate.get("id")
        return BotDecision(
            player_text=str(candidate.get("text") or ""),
            dialogue_id=str(candidate_id) if candidate_id is not None else None,
            reasoning=reasoning,
            confidence=confidence,
        )

    def fallback(
        self, memory: BotMemory, context: BotContext, reasoning: str, confidence: float
    ) -> BotDecision:
        return BotDecision(
            choice_id=self.select_choice_by_coverage(context.available_choices, memory),
            reasoning=reasoning,
            confidence=confidence,
        )

    def dialogue_matching(
        self,
        context: BotContext,
        memory: BotMemory,
        predicate,
    ) -> Optional[Dict[str, Any]]:
        matching = [
            candidate
            for candidate in context.dialogue_candidates
            if isinstance(candidate, Mapping) and predicate(candidate_text(candidate))
        ]
        if not matching:
            return None
        return self.select_dialogue_candidate(matching, memory)


class ObjectiveSeekerPolicy(BasePolicy):
    """Pushes the first incomplete objective forward."""

    name = BotMode.OBJECTIVE_SEEKER.value

    def decide(self, bundle: Mapping[str, Any], memory: BotMemory, context: BotContext) -> BotDecision:
        objective = self._current_objective(bundle)
        if objective is not None:
            keywords = [
                word for word in str(objective.get("description") or "").lower().split() if word
            ]
            advancing = [
                choice
                for choice in context.available_choices
                if keywords and mentions_any(choice_text(bundle, choice), keywords)
            ]
            if advancing:
                return self.pick(advancing, "Advancing current objective", 0.9)

        return self.fallback(memory, context, "Exploring for objective opportunities", 0.6)

    @staticmethod
    def _current_objective(bundle: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        objectives = bundle.get("objectives") or []
        for objective in objectives:
            if isinstance(objective, Mapping) and not objective.get("completed"):
                return objective
        return None


class ExplorerPolicy(BasePolicy):
    """Maximizes quest-graph coverage."""

    name = BotMode.EXPLORER.value

    def decide(self, bundle: Mapping[str, Any], memory: BotMemory, context: BotContext) -> BotDecision:
        choices = context.available_choices
        unexplored = [choice for choice in choices if choice not in memory.visited_nodes]
        if unexplored:
            return self.pick(unexplored, "Exploring unexplored content", 0.8)

        # Every choice taken before; look for one whose target is still new
        new_paths = [
            choice
            for choice in choices
            if choice_info(bundle, choice).get("target")
            and choice_info(bundle, choice)["target"] not in memory.visited_nodes
        ]
        if new_paths:
            return self.pick(new_paths, "Seeking new exploration paths", 0.7)

        return self.pick(choices, "Random exploration", 0.4)


class EconomyGrinderPolicy(BasePolicy):
    """Chases trade, crafting and loot."""

    name = BotMode.ECONOMY_GRINDER.value

    def decide(self, bundle: Mapping[str, Any], memory: BotMemory, context: BotContext) -> BotDecision:
        economic = [
            choice
            for choice in context.available_choices
            if mentions_any(choice_text(bundle, choice), ECONOMY_KEYWORDS)
        ]
        if economic:
            return self.pick(economic, "Pursuing economic opportunities", 0.8)

        candidate = self.dialogue_matching(
            context, memory, lambda text: mentions_any(text, ECONOMY_KEYWORDS)
        )
        if candidate is not None:
            return self.speak(candidate, "Engaging in economic dialogue", 0.7)

        return self.fallback(memory, context, "Exploring for economic opportunities", 0.5)


class RomanceTesterPolicy(BasePolicy):
    """Exercises relationship content."""

    name = BotMode.ROMANCE_TESTER.value

    def decide(self, bundle: Mapping[str, Any], memory: BotMemory, context: BotContext) -> BotDecision:
        romantic = [
            choice
            for choice in context.available_choices
            if mentions_any(choice_text(bundle, choice), ROMANCE_KEYWORDS)
        ]
        if romantic:
            return self.pick(romantic, "Pursuing romance opportunities", 0.8)

        candidate = self.dialogue_matching(
            context, memory, lambda text: mentions_any(text, ROMANCE_KEYWORDS)
        )
        if candidate is not None:
            return self.speak(candidate, "Engaging in romance dialogue", 0.7)

        return self.fallback(memory, context, "Exploring for romance opportunities", 0.5)


class RiskTakerPolicy(BasePolicy):
    """Prefers dangerous options and skill checks."""

    name = BotMode.RISK_TAKER.value

    def decide(self, bundle: Mapping[str, Any], memory: BotMemory, context: BotContext) -> BotDecision:
        risky = [
            choice
            for choice in context.available_choices
            if mentions_any(choice_text(bundle, choice), RISK_KEYWORDS)
        ]
        if risky:
            return self.pick(risky, "Taking calculated risks", 0.8)

        skill_checks = [
            choice
            for choice in context.available_choices
            if mentions_any(choice_text(bundle, choice), SKILL_CHECK_KEYWORDS)
        ]
        if skill_checks and self.rng.next_boolean(SKILL_CHECK_PROBABILITY):
            return self.pick(skill_checks, "Attempting skill check", 0.7)

        return self.fallback(memory, context, "Exploring for risk opportunities", 0.5)


class SafetyMaxPolicy(BasePolicy):
    """Avoids risk; anything mentioning a risk keyword is never treated as safe."""

    name = BotMode.SAFETY_MAX.value

    def decide(self, bundle: Mapping[str, Any], memory: BotMemory, context: BotContext) -> BotDecision:
        safe = [
            choice
            for choice in context.available_choices
            if is_safe_text(choice_text(bundle, choice))
        ]
        if safe:
            return self.pick(safe, "Choosing safe option", 0.9)

        candidate = self.dialogue_matching(context, memory, is_safe_text)
        if candidate is not None:
            return self.speak(candidate, "Engaging in safe dialogue", 0.8)

        return self.fallback(memory, context, "Exploring safely", 0.6)


POLICY_TYPES: Dict[str, type] = {
    BotMode.OBJECTIVE_SEEKER.value: ObjectiveSeekerPolicy,
    BotMode.EXPLORER.value: ExplorerPolicy,
    BotMode.ECONOMY_GRINDER.value: EconomyGrinderPolicy,
    BotMode.ROMANCE_TESTER.value: RomanceTesterPolicy,
    BotMode.RISK_TAKER.value: RiskTakerPolicy,
    BotMode.SAFETY_MAX.value: SafetyMaxPolicy,
}


def build_policies(seed: str) -> Dict[str, BotPolicy]:
    """One policy per mode, all seeded identically."""

    return {mode: policy_type(seed) for mode, policy_type in POLICY_TYPES.items()}
