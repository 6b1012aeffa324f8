"""Scenario matrix expansion.

``generate_matrix`` is a pure function: the same configuration always yields the
same scenarios in the same order, with seeds derived from position rather than
drawn at random.
"""

from __future__ import annotations

from itertools import product
from typing import Dict, List, Mapping, Sequence

from .schemas import MatrixConfig, Scenario


def toggle_combinations(module_toggles: Mapping[str, Sequence[bool]]) -> List[Dict[str, bool]]:
    """Full Cartesian product of every toggle's option list.

    Enumeration follows the mapping's key order, with later toggles varying
    fastest. No toggles yields a single empty combination; a toggle with an
    empty option list yields none.
    """

    names = list(module_toggles)
    return [
        dict(zip(names, values))
        for values in product(*(list(module_toggles[name]) for name in names))
    ]


def scenario_seed(
    world: str, adventure: str, locale: str, experiment: str, variation: str, seed_index: int
) -> str:
    return f"{world}:{adventure}:{locale}:{experiment}:{variation}:{seed_index}"


def generate_matrix(config: MatrixConfig) -> List[Scenario]:
    """Expand worlds x adventures x locales x experiments x variations x toggles x seeds."""

    combinations = toggle_combinations(config.module_toggles)
    scenarios: List[Scenario] = []
    for world, adventure, locale, experiment, variation in product(
        config.worlds, config.adventures, config.locales, config.experiments, config.variations
    ):
        for toggles in combinations:
            for seed_index in range(config.seeds_per_scenario):
                scenarios.append(
                    Scenario(
                        world=world,
                        adventure=adventure,
                        locale=locale,
                        experiment=experiment,
                        variation=variation,
                        module_toggles=dict(toggles),
                        rng_seed=scenario_seed(world, adventure, locale, experiment, variation, seed_index),
                        max_turns=config.max_turns,
                        timeout_ms=config.timeout_ms,
                    )
                )
    return scenarios
