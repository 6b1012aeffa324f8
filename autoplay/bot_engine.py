"""Bot engine: policy dispatch plus per-run memory bookkeeping.

The engine is a two-state machine. It starts ``idle`` with empty memory and
switches to ``running`` on the first decision. All six policies are built
eagerly from the same seed so a replay reconstructs identical policy state even
though a run only ever consults one mode.
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Mapping, Union

from .errors import UnknownModeError
from .memory import BotMemory, dialogue_key
from .policies import ALL_MODES, BotMode, BotPolicy, build_policies
from .schemas import BotContext, BotDecision, BudgetUsage, TurnResult

EngineState = Literal["idle", "running"]


class BotEngine:
    """Owns one policy per mode and the memory of a single run."""

    def __init__(
        self,
        run_id: str,
        start_turn: int,
        mode: Union[BotMode, str],
        seed: str,
        *,
        max_tokens: int = 1000,
    ) -> None:
        mode_name = mode.value if isinstance(mode, BotMode) else str(mode)
        self.policies: Dict[str, BotPolicy] = build_policies(seed)
        if mode_name not in self.policies:
            raise UnknownModeError(mode_name, known=ALL_MODES)

        self.run_id = run_id
        self.start_turn = start_turn
        self.mode = mode_name
        self.seed = seed
        self.max_tokens = max_tokens
        self.state: EngineState = "idle"
        self.memory = self._initial_memory()

    def _initial_memory(self) -> BotMemory:
        return BotMemory(
            turn_count=self.start_turn,
            budget_usage=BudgetUsage(max_tokens=self.max_tokens),
        )

    def decide(
        self,
        bundle: Mapping[str, Any],
        context: BotContext,
        mode: Union[BotMode, str, None] = None,
    ) -> BotDecision:
        """Ask the policy for ``mode`` (default: the engine's mode) and record the decision."""

        mode_name = self.mode if mode is None else (mode.value if isinstance(mode, BotMode) else str(mode))
        policy = self.policies.get(mode_name)
        if policy is None:
            raise UnknownModeError(mode_name, known=ALL_MODES)

        decision = policy.decide(bundle, self.memory, context)
        self.state = "running"
        self._record_decision(decision)
        return decision

    def _record_decision(self, decision: BotDecision) -> None:
        memory = self.memory
        memory.turn_count += 1

        if decision.choice_id:
            memory.visited_nodes.add(decision.choice_id)

        if decision.player_text:
            memory.dialogue_candidates_seen.add(
                decision.dialogue_id or dialogue_key(decision.player_text)
            )
            memory.budget_usage.tokens_out += memory.estimated_tokens(decision.player_text)

    def record_turn_result(self, turn_result: TurnResult) -> None:
        """Fold content-engine feedback into memory after a turn executes."""

        memory = self.memory
        for check in turn_result.skill_checks:
            skill = check.get("skill")
            if skill:
                memory.skill_checks_attempted[skill] = memory.skill_checks_attempted.get(skill, 0) + 1

        for loot in turn_result.loot_gained:
            if loot.get("tier"):
                memory.loot_tiers_touched.add(str(loot["tier"]))

        for event in turn_result.world_events:
            if event.get("type"):
                memory.world_events_triggered.add(str(event["type"]))

        for hook in turn_result.mod_hooks:
            namespace = hook.get("namespace")
            if namespace:
                memory.mod_hooks_invoked[namespace] = memory.mod_hooks_invoked.get(namespace, 0) + 1

        memory.visited_nodes.update(turn_result.new_nodes)

        progressed = turn_result.objective_progress > 0 or bool(turn_result.new_nodes)
        if progressed:
            memory.stuck_turns = 0
        else:
            memory.stuck_turns += 1
        if turn_result.objective_progress > 0:
            memory.last_objective_progress = turn_result.objective_progress

        memory.budget_usage.tokens_in += turn_result.token_usage

    def get_memory(self) -> BotMemory:
        return self.memory.snapshot()

    def reset_memory(self) -> None:
        """Clear memory back to its initial state and return to ``idle``."""

        self.memory = self._initial_memory()
        self.state = "idle"
