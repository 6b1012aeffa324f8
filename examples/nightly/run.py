"""Forest glade walkthrough: every bot mode against one quest graph, then a baseline check.

Runs each bot mode once against ``bundle.json`` with the in-process graph
engine, prints a per-mode table, then compares the aggregate with the stored
baseline (the first invocation records it):

    uv run python examples/nightly/run.py --turns 30 --store-path /tmp/glade

For the full nightly matrix use the ``autoplay-nightly`` command instead.
"""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

from autoplay import (
    ALL_MODES,
    BaselineManager,
    FuzzRunner,
    GraphContentEngine,
    JsonPersistence,
    RunConfig,
    Scenario,
    aggregate_metrics,
    baseline_key,
)
from autoplay.config import Config

BUNDLE_PATH = Path(__file__).with_name("bundle.json")


async def main(turns: int, seed: str, store_path: str, artifact_dir: str) -> None:
    template = json.loads(BUNDLE_PATH.read_text(encoding="utf-8"))
    scenario = Scenario(
        world="world.forest_glade",
        adventure="adventure.tutorial",
        rng_seed=seed,
        max_turns=turns,
    )

    store = JsonPersistence(store_path)
    await store.initialize()
    runner = FuzzRunner(GraphContentEngine(template, token_usage=12), store, artifact_dir=artifact_dir)
    config = RunConfig(scenarios=[scenario], bot_modes=ALL_MODES, parallel_shards=1, max_concurrent=1)
    results = await runner.run_matrix(config)

    print()
    print(f"{'mode':<18}{'status':<11}{'turns':>6}{'coverage':>10}  oracles")
    for result in results:
        print(
            f"{result.mode:<18}{result.status:<11}{result.turns_completed:>6}"
            f"{result.coverage.overall:>9.1%}  {', '.join(result.oracles.failures()) or '-'}"
        )

    manager = BaselineManager(store)
    key = baseline_key(scenario.world, scenario.adventure, Config.CORE_VERSION, scenario.locale)
    current = aggregate_metrics(results)
    comparison = await manager.compare_with_baseline(key, current)
    print()
    if comparison.baseline_found:
        print(comparison.summary)
    else:
        await manager.save_baseline(key, current)
        print(f"Recorded first baseline for {key}")
    await store.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Forest glade autoplay walkthrough")
    parser.add_argument("--turns", type=int, default=30, help="Turn cap per run")
    parser.add_argument("--seed", default="glade-1", help="Scenario seed")
    parser.add_argument("--store-path", default="autoplay_runs", help="JSON store directory")
    parser.add_argument("--artifact-dir", default=str(Config.ARTIFACT_DIR))
    args = parser.parse_args()
    asyncio.run(main(args.turns, args.seed, args.store_path, args.artifact_dir))
