"""
ContentEngine interface for the narrative engine the harness drives.

The harness never generates content or applies game rules itself. A content
engine loads the per-turn bundle for a scenario and executes one bot decision,
returning a ``TurnResult`` (or a plain mapping that validates into one). Fields
an engine does not know about may simply be omitted.

Key responsibilities of an implementation:
- ``load_bundle``: produce the opening bundle for a scenario
- ``execute_turn``: apply a decision and report progress, mechanics, economy,
  world-sim, mod, budget, safety, performance and integrity signals
- Keep per-run state inside the bundle, never on the engine, so one engine
  instance can serve concurrent shards

``GraphContentEngine`` is a deterministic implementation that walks a declared
quest graph. It is used by the examples and tests and as a reference for
adapters around real engines.

Bundle layout understood by the harness:
    {
      "current_node": "gate",
      "choices": {"enter": {"text": "Enter the keep", "target": "hall"}},
      "objectives": [{"id": "find_relic", "description": "find relic", "completed": false}],
      "quest_graph": {"nodes": [{"id": "gate"}, ...], "edges": [{"id": "enter", "from": "gate", "to": "hall"}]},
      "dialogue": {"candidates": [{"id": "greet", "text": "Hello", "score": 0.9}]},
      "economy": {"loot_tiers": ["common", "rare"]},
      "world_sim": {"event_types": ["storm"]},
      "mods": {"hooks": ["core.on_enter"]}
    }
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import ContentEngineError
from .schemas import BotContext, BotDecision, Scenario, TurnResult


class ContentEngine(ABC):
    """Abstract collaborator that produces bundles and executes turns."""

    async def initialize(self) -> None:
        """Acquire connections or caches before the first run (optional)."""

        return None

    async def close(self) -> None:
        """Release resources after the batch (optional)."""

        return None

    @abstractmethod
    async def load_bundle(self, scenario: Scenario) -> Dict[str, Any]:
        """Return the opening bundle for ``scenario``."""

        pass

    @abstractmethod
    async def execute_turn(
        self,
        bundle: Mapping[str, Any],
        context: BotContext,
        decision: BotDecision,
    ) -> Union[TurnResult, Mapping[str, Any]]:
        """Apply ``decision`` and return the turn result.

        Implementations should put the next bundle in ``updated_bundle`` (or
        ``updatedBundle``) when the state changes.
        """

        pass


class GraphContentEngine(ContentEngine):
    """Deterministic engine that walks the bundle's quest graph.

    Edges are the choices: selecting edge ``e`` moves from ``e["from"]`` to
    ``e["to"]``. Entering a node for the first time reports it in ``new_nodes``;
    entering a node listed as an objective target completes that objective and
    reports ``objective_progress``. Any ``effects`` mapping on the edge or the
    target node is merged into the turn result, which is how fixtures inject
    skill checks, loot, events, hook calls or failure flags.

    Speaking a dialogue candidate records it in ``dialogue_progress`` and stays
    on the current node.
    """

    def __init__(
        self,
        template: Mapping[str, Any],
        *,
        token_usage: int = 0,
        latency_ms: float = 0.0,
    ) -> None:
        if "quest_graph" not in template:
            raise ContentEngineError("GraphContentEngine template needs a quest_graph")
        self.template = copy.deepcopy(dict(template))
        self.token_usage = token_usage
        self.latency_ms = latency_ms

    async def load_bundle(self, scenario: Scenario) -> Dict[str, Any]:
        bundle = copy.deepcopy(self.template)
        start = bundle.get("current_node") or self._first_node(bundle)
        if start is None:
            raise ContentEngineError(
                f"Quest graph for {scenario.world}/{scenario.adventure} has no nodes"
            )
        bundle["scenario"] = scenario.model_dump(mode="json")
        bundle["visited"] = [start]
        return self._at_node(bundle, start)

    async def execute_turn(
        self,
        bundle: Mapping[str, Any],
        context: BotContext,
        decision: BotDecision,
    ) -> TurnResult:
        next_bundle = copy.deepcopy(dict(bundle))
        current = next_bundle.get("current_node")
        payload: Dict[str, Any] = {
            "token_usage": self.token_usage,
            "latency_ms": self.latency_ms,
        }

        if decision.choice_id is not None:
            edge = self._edge(next_bundle, current, decision.choice_id)
            if edge is None:
                payload["invalid_transition"] = True
            else:
                target = str(edge["to"])
                visited: List[str] = next_bundle.setdefault("visited", [])
                if target not in visited:
                    visited.append(target)
                    payload["new_nodes"] = [target]
                    payload["objective_progress"] = self._complete_objectives(next_bundle, target)
                self._merge_effects(payload, edge.get("effects"))
                self._merge_effects(payload, self._node(next_bundle, target).get("effects"))
                next_bundle = self._at_node(next_bundle, target)
        elif decision.player_text is not None and decision.dialogue_id:
            payload["dialogue_progress"] = [decision.dialogue_id]

        payload["current_node"] = next_bundle.get("current_node")
        payload["available_choices"] = list(next_bundle.get("choices", {}))
        payload["dialogue_candidates"] = list(
            (next_bundle.get("dialogue") or {}).get("candidates") or []
        )
        payload["updated_bundle"] = next_bundle
        return TurnResult.model_validate(payload)

    # ------------------------------------------------------------------
    # Graph helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _first_node(bundle: Mapping[str, Any]) -> Optional[str]:
        nodes = bundle["quest_graph"].get("nodes") or []
        return str(nodes[0]["id"]) if nodes else None

    @staticmethod
    def _node(bundle: Mapping[str, Any], node_id: str) -> Mapping[str, Any]:
        for node in bundle["quest_graph"].get("nodes") or []:
            if node.get("id") == node_id:
                return node
        return {}

    @staticmethod
    def _edge(bundle: Mapping[str, Any], current: Optional[str], edge_id: str) -> Optional[Mapping[str, Any]]:
        for edge in bundle["quest_graph"].get("edges") or []:
            if edge.get("id") == edge_id and edge.get("from") == current:
                return edge
        return None

    def _at_node(self, bundle: Dict[str, Any], node_id: str) -> Dict[str, Any]:
        bundle["current_node"] = node_id
        bundle["choices"] = {
            str(edge["id"]): {"text": edge.get("text", ""), "target": edge["to"]}
            for edge in bundle["quest_graph"].get("edges") or []
            if edge.get("from") == node_id
        }
        return bundle

    @staticmethod
    def _complete_objectives(bundle: Dict[str, Any], node_id: str) -> float:
        progress = 0.0
        for objective in bundle.get("objectives") or []:
            if not objective.get("completed") and objective.get("target") == node_id:
                objective["completed"] = True
                progress += 1.0
        return progress

    @staticmethod
    def _merge_effects(payload: Dict[str, Any], effects: Optional[Mapping[str, Any]]) -> None:
        if not effects:
            return
        for key, value in effects.items():
            existing = payload.get(key)
            if isinstance(existing, list) and isinstance(value, list):
                payload[key] = existing + list(value)
            elif isinstance(existing, (int, float)) and not isinstance(existing, bool) and isinstance(value, (int, float)):
                payload[key] = existing + value
            else:
                payload[key] = copy.deepcopy(value)
