"""
Fuzz runner: fans a scenario list out across shards and drives each
(scenario, bot mode) pair through the turn loop.

Fully decoupled from storage and content: the content engine and the optional
persistence strategy are injected by the caller.

Batch flow:
1. Validate the run configuration (unknown modes and malformed scenarios fail
   fast, before any run starts)
2. Partition scenarios round-robin into shards
3. Run shards as concurrent asyncio tasks, at most ``max_concurrent`` at once;
   inside a shard every (scenario, mode) pair runs to completion before the next
4. Merge per-shard result lists in shard order after all shards finish

Per-run turn loop:
1. Stop if cancelled or the wall-clock budget is spent
2. Bot engine decision
3. Content-engine turn (awaited under a hard deadline)
4. Coverage update, then oracle check
5. Memory and context update
6. Checkpoint every ``checkpoint_interval`` turns
7. Stop early on soft lock or budget violation

Every run owns fresh BotEngine / CoverageTracker / OracleDetector instances, so
shards share no mutable state. Collaborator exceptions become ``failed`` run
results and never abort sibling runs. Persistence is best-effort (logged and
swallowed) unless ``strict_persistence`` is set.
"""

import asyncio
import contextlib
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar
from uuid import uuid4

from .artifacts import render_html_summary, write_artifacts
from .bot_engine import BotEngine
from .config import Config
from .content_engine import ContentEngine
from .coverage import CoverageEstimates, CoverageTracker
from .errors import (
    ConfigurationError,
    MalformedScenarioError,
    PersistenceError,
    TurnTimeoutError,
    UnknownModeError,
)
from .logging_utils import (
    log_deterministic,
    log_error,
    log_info,
    log_oracle,
    log_success,
    verbose_enabled,
)
from .oracles import OracleConfig, OracleDetector, percentile_95
from .persistence import PersistenceStrategy
from .policies import ALL_MODES, POLICY_TYPES
from .schemas import (
    Artifact,
    BotContext,
    BudgetUsage,
    Checkpoint,
    OracleResult,
    PerformanceStats,
    RunConfig,
    RunResult,
    Scenario,
    TurnResult,
    utc_now,
)

T = TypeVar("T")

# Average turn latency at or above this fails a run
PASS_LATENCY_THRESHOLD_MS = 5000.0


def create_shards(scenarios: Sequence[Scenario], shard_count: int) -> List[List[Scenario]]:
    """Round-robin partition: shard ``i`` holds indices ``== i (mod shard_count)``."""

    if shard_count <= 0:
        raise ConfigurationError(f"shard_count must be positive (got {shard_count})")
    shards: List[List[Scenario]] = [[] for _ in range(shard_count)]
    for index, scenario in enumerate(scenarios):
        shards[index % shard_count].append(scenario)
    return shards


def validate_run_config(config: RunConfig) -> None:
    """Raise a ConfigurationError for anything that would make every run fail."""

    if not config.bot_modes:
        raise ConfigurationError("RunConfig.bot_modes must name at least one bot mode")
    for mode in config.bot_modes:
        if mode not in POLICY_TYPES:
            raise UnknownModeError(mode, known=ALL_MODES)

    for index, scenario in enumerate(config.scenarios):
        problems = [
            f"{field} is empty"
            for field in ("world", "adventure", "locale", "rng_seed")
            if not str(getattr(scenario, field)).strip()
        ]
        if problems:
            raise MalformedScenarioError(index=index, problems=problems)


def make_run_id(scenario: Scenario, mode: str) -> str:
    # Resuming by id only works when the caller keeps the id
    return f"run_{scenario.world}_{scenario.adventure}_{mode}_{time.time_ns() // 1000}_{uuid4().hex[:8]}"


def choice_ids(bundle: Mapping[str, Any]) -> List[str]:
    choices = bundle.get("choices")
    if isinstance(choices, Mapping):
        return [str(choice_id) for choice_id in choices]
    if isinstance(choices, list):
        return [str(entry["id"]) for entry in choices if isinstance(entry, Mapping) and "id" in entry]
    return []


def dialogue_candidates(bundle: Mapping[str, Any]) -> List[Dict[str, Any]]:
    dialogue = bundle.get("dialogue")
    if not isinstance(dialogue, Mapping):
        return []
    return [dict(c) for c in dialogue.get("candidates") or [] if isinstance(c, Mapping)]


def initial_context(
    bundle: Mapping[str, Any], scenario: Scenario, run_id: str, max_tokens: int
) -> BotContext:
    return BotContext(
        current_node=bundle.get("current_node"),
        available_choices=choice_ids(bundle),
        dialogue_candidates=dialogue_candidates(bundle),
        party_state=dict(bundle.get("party") or {}),
        world_state=dict(bundle.get("world_state") or {}),
        economy_state=dict(bundle.get("economy_state") or {}),
        mod_state=dict(bundle.get("mod_state") or {}),
        turn_number=0,
        session_id=run_id,
        seed=scenario.rng_seed,
        budget_usage=BudgetUsage(max_tokens=max_tokens),
    )


def next_context(
    previous: BotContext,
    bundle: Mapping[str, Any],
    turn_result: TurnResult,
    budget_usage: BudgetUsage,
    turn_number: int,
) -> BotContext:
    """Context for the next turn: turn-result state wins over bundle state."""

    current_node = turn_result.current_node or bundle.get("current_node") or previous.current_node
    choices = (
        turn_result.available_choices
        if turn_result.available_choices is not None
        else choice_ids(bundle)
    )
    candidates = (
        turn_result.dialogue_candidates
        if turn_result.dialogue_candidates is not None
        else dialogue_candidates(bundle)
    )
    return previous.model_copy(
        update={
            "current_node": current_node,
            "available_choices": list(choices),
            "dialogue_candidates": [dict(c) for c in candidates],
            "party_state": dict(bundle.get("party") or previous.party_state),
            "world_state": dict(bundle.get("world_state") or previous.world_state),
            "economy_state": dict(bundle.get("economy_state") or previous.economy_state),
            "mod_state": dict(bundle.get("mod_state") or previous.mod_state),
            "turn_number": turn_number,
            "budget_usage": budget_usage.model_copy(),
        },
        deep=True,
    )


def evaluate_pass(oracles: OracleResult, performance: PerformanceStats) -> bool:
    return (
        not oracles.soft_lock
        and not oracles.budget_violation
        and not oracles.safety_violation
        and performance.avg_turn_latency_ms < PASS_LATENCY_THRESHOLD_MS
    )


class _WallClockExpired(Exception):
    """Internal signal: the run's wall-clock budget ran out mid-call."""


class FuzzRunner:
    """Runs scenario x mode batches against an injected content engine."""

    def __init__(
        self,
        content_engine: ContentEngine,
        persistence: Optional[PersistenceStrategy] = None,
        *,
        oracle_config: Optional[OracleConfig] = None,
        coverage_estimates: Optional[CoverageEstimates] = None,
        turn_timeout_ms: Optional[int] = None,
        strict_persistence: Optional[bool] = None,
        artifact_dir: Optional[Path | str] = None,
        checkpoint_interval: Optional[int] = None,
        verbose: Optional[bool] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.content_engine = content_engine
        self.persistence = persistence
        self.oracle_config = oracle_config or OracleConfig()
        self.coverage_estimates = coverage_estimates
        timeout = Config.TURN_TIMEOUT_MS if turn_timeout_ms is None else turn_timeout_ms
        self.turn_timeout_ms = timeout or None
        self.strict_persistence = (
            Config.STRICT_PERSISTENCE if strict_persistence is None else strict_persistence
        )
        self.artifact_dir = Path(artifact_dir) if artifact_dir is not None else Config.ARTIFACT_DIR
        self.checkpoint_interval = checkpoint_interval or Config.CHECKPOINT_INTERVAL
        self.verbose = verbose_enabled() if verbose is None else verbose
        self.clock = clock
        self._cancelled = False

    def cancel(self) -> None:
        """Cooperatively stop: runs end with status ``cancelled`` at the next turn boundary."""

        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    # ------------------------------------------------------------------
    # Batch level
    # ------------------------------------------------------------------

    async def run_matrix(self, config: RunConfig) -> List[RunResult]:
        validate_run_config(config)
        self._cancelled = False

        shards = create_shards(config.scenarios, config.parallel_shards)
        semaphore = asyncio.Semaphore(config.max_concurrent)
        total_runs = len(config.scenarios) * len(config.bot_modes)
        log_info(
            f"Running {total_runs} runs ({len(config.scenarios)} scenarios x "
            f"{len(config.bot_modes)} modes) across {len(shards)} shards, "
            f"max {config.max_concurrent} concurrent"
        )

        async def _worker(shard_index: int, shard: List[Scenario]) -> List[RunResult]:
            async with semaphore:
                return await self.run_shard(shard, config, shard_index=shard_index)

        tasks = [
            asyncio.create_task(_worker(index, shard))
            for index, shard in enumerate(shards)
            if shard
        ]
        try:
            shard_results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        results = [result for shard in shard_results for result in shard]
        passed = sum(1 for result in results if result.passed)
        log_success(f"Batch finished: {passed}/{len(results)} runs passed")
        return results

    async def run_shard(
        self, shard: Sequence[Scenario], config: RunConfig, *, shard_index: int = 0
    ) -> List[RunResult]:
        """Run every (scenario, mode) pair of one shard sequentially."""

        results: List[RunResult] = []
        for scenario in shard:
            for mode in config.bot_modes:
                result = await self.run_single_scenario(scenario, mode, config)
                results.append(result)
        if self.verbose:
            log_deterministic(f"Shard {shard_index} finished {len(results)} runs")
        return results

    # ------------------------------------------------------------------
    # Single run
    # ------------------------------------------------------------------

    async def run_single_scenario(
        self,
        scenario: Scenario,
        mode: str,
        config: Optional[RunConfig] = None,
        *,
        run_id: Optional[str] = None,
    ) -> RunResult:
        if mode not in POLICY_TYPES:
            raise UnknownModeError(mode, known=ALL_MODES)
        config = config or RunConfig(scenarios=[scenario], bot_modes=[mode])
        run_id = run_id or make_run_id(scenario, mode)

        started_at = utc_now()
        start = self.clock()
        coverage = CoverageTracker(self.coverage_estimates)
        oracles = OracleDetector(self.oracle_config.model_copy(deep=True))
        latencies: List[float] = []
        token_counts: List[int] = []
        status = "completed"
        error: Optional[str] = None
        turn = 0
        start_turn = 0

        if self.verbose:
            log_info(f"[{run_id}] starting {scenario.world}/{scenario.adventure} as {mode}")

        try:
            checkpoint = None
            if config.resume_from_checkpoint:
                checkpoint = await self._load_checkpoint(run_id, scenario, mode)

            if checkpoint is not None:
                bundle: Dict[str, Any] = dict(checkpoint.bundle)
                context = checkpoint.context
                turn = start_turn = checkpoint.turn
                log_info(f"[{run_id}] resuming from checkpoint at turn {turn}")
            else:
                bundle = dict(
                    await self._with_deadline(
                        self.content_engine.load_bundle(scenario), start, scenario, turn
                    )
                )
                context = initial_context(bundle, scenario, run_id, config.max_tokens)

            engine = BotEngine(run_id, turn, mode, scenario.rng_seed, max_tokens=config.max_tokens)
            engine.memory.budget_usage = context.budget_usage.model_copy()

            while turn < scenario.max_turns:
                if self._cancelled:
                    status = "cancelled"
                    break
                if self._elapsed_ms(start) >= scenario.timeout_ms:
                    status = "timeout"
                    break

                context.turn_number = turn
                decision = engine.decide(bundle, context)

                call_started = self.clock()
                raw = await self._with_deadline(
                    self.content_engine.execute_turn(bundle, context, decision),
                    start,
                    scenario,
                    turn,
                )
                measured_ms = (self.clock() - call_started) * 1000
                turn_result = raw if isinstance(raw, TurnResult) else TurnResult.model_validate(raw)
                if turn_result.latency_ms <= 0:
                    turn_result.latency_ms = measured_ms
                latencies.append(turn_result.latency_ms)
                token_counts.append(turn_result.token_usage)

                coverage.update_coverage(bundle, context, decision, turn_result)
                oracle_result = oracles.check_oracles(bundle, context, turn_result, turn)
                engine.record_turn_result(turn_result)
                turn += 1

                if self.verbose:
                    action = decision.choice_id or decision.player_text or "no-op"
                    log_deterministic(f"[{run_id}] turn {turn}: {action} ({decision.reasoning})")
                    for name in oracle_result.failures():
                        log_oracle(f"[{run_id}] turn {turn}: {name}")

                if turn_result.updated_bundle is not None:
                    bundle = dict(turn_result.updated_bundle)
                context = next_context(
                    context, bundle, turn_result, engine.memory.budget_usage, turn
                )

                if turn % self.checkpoint_interval == 0:
                    await self._save_checkpoint(
                        Checkpoint(
                            run_id=run_id,
                            scenario=scenario,
                            mode=mode,
                            turn=turn,
                            bundle=bundle,
                            context=context,
                            coverage=coverage.get_coverage(),
                            oracles=oracle_result,
                        )
                    )

                if oracle_result.soft_lock or oracle_result.budget_violation:
                    reason = "soft lock" if oracle_result.soft_lock else "budget violation"
                    log_oracle(f"[{run_id}] stopping after turn {turn}: {reason}")
                    break
        except _WallClockExpired:
            status = "timeout"
        except (ConfigurationError, PersistenceError):
            raise
        except Exception as exc:  # collaborator failure: isolate to this run
            status = "failed"
            error = f"{type(exc).__name__}: {exc}"
            log_error(f"[{run_id}] failed at turn {turn}: {error}")

        duration_ms = self._elapsed_ms(start)
        finished_at = utc_now()
        performance = self._performance(duration_ms, turn - start_turn, latencies, token_counts)
        final_coverage = coverage.get_coverage()
        final_oracles = oracles.get_results()
        passed = status == "completed" and evaluate_pass(final_oracles, performance)

        artifacts: List[Artifact] = []
        if config.artifact_output:
            artifacts = await self._write_artifacts(
                run_id=run_id,
                scenario=scenario,
                mode=mode,
                status=status,
                turns_completed=turn,
                coverage=coverage,
                oracles=final_oracles,
                performance=performance,
                passed=passed,
                error=error,
            )

        result = RunResult(
            run_id=run_id,
            scenario=scenario,
            mode=mode,
            status=status,
            turns_completed=turn,
            coverage=final_coverage,
            final_snapshot=coverage.latest_snapshot(),
            oracles=final_oracles,
            performance=performance,
            artifacts=artifacts,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=duration_ms,
            passed=passed,
            error=error,
        )

        await self._persist("save_run_result", run_id, lambda: self.persistence.save_run_result(result))
        if artifacts:
            await self._persist(
                "save_artifacts", run_id, lambda: self.persistence.save_artifacts(run_id, artifacts)
            )
        if status == "completed":
            await self._persist(
                "delete_checkpoint", run_id, lambda: self.persistence.delete_checkpoint(run_id)
            )

        self._log_outcome(result)
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _elapsed_ms(self, start: float) -> float:
        return (self.clock() - start) * 1000

    async def _with_deadline(
        self, awaitable: Awaitable[T], start: float, scenario: Scenario, turn: int
    ) -> T:
        """Await a collaborator call under min(remaining wall clock, per-turn deadline)."""

        remaining_ms = scenario.timeout_ms - self._elapsed_ms(start)
        if remaining_ms <= 0:
            # Close the coroutine we will not run
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise _WallClockExpired()

        limit_ms = remaining_ms
        wall_clock_bound = True
        if self.turn_timeout_ms is not None and self.turn_timeout_ms < remaining_ms:
            limit_ms = self.turn_timeout_ms
            wall_clock_bound = False

        # A TimeoutError raised by the engine itself is a collaborator failure,
        # so only an unfinished call counts as a missed deadline
        task = asyncio.ensure_future(awaitable)
        try:
            done, _ = await asyncio.wait({task}, timeout=limit_ms / 1000)
        except BaseException:
            task.cancel()
            raise
        if task in done:
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        if wall_clock_bound:
            raise _WallClockExpired()
        raise TurnTimeoutError(turn=turn, timeout_seconds=limit_ms / 1000)

    @staticmethod
    def _performance(
        duration_ms: float, turns: int, latencies: List[float], token_counts: List[int]
    ) -> PerformanceStats:
        if turns <= 0:
            return PerformanceStats(duration_ms=duration_ms)
        seconds = duration_ms / 1000
        return PerformanceStats(
            duration_ms=duration_ms,
            turns_per_second=turns / seconds if seconds > 0 else 0.0,
            avg_turn_latency_ms=duration_ms / turns,
            p95_turn_latency_ms=percentile_95(latencies),
            avg_tokens_per_turn=sum(token_counts) / len(token_counts) if token_counts else 0.0,
            max_tokens_per_turn=max(token_counts, default=0),
        )

    async def _write_artifacts(
        self,
        *,
        run_id: str,
        scenario: Scenario,
        mode: str,
        status: str,
        turns_completed: int,
        coverage: CoverageTracker,
        oracles: OracleResult,
        performance: PerformanceStats,
        passed: bool,
        error: Optional[str],
    ) -> List[Artifact]:
        report = {
            "run_id": run_id,
            "scenario": scenario.model_dump(mode="json"),
            "mode": mode,
            "status": status,
            "turns_completed": turns_completed,
            "coverage": coverage.get_coverage().model_dump(mode="json"),
            "coverage_trend": coverage.get_coverage_trend(),
            "oracles": oracles.model_dump(mode="json"),
            "performance": performance.model_dump(mode="json"),
            "pass": passed,
            "error": error,
        }
        summary = render_html_summary(
            run_id=run_id,
            world=scenario.world,
            adventure=scenario.adventure,
            mode=mode,
            status=status,
            turns_completed=turns_completed,
            coverage=coverage.get_coverage(),
            oracles=oracles,
            passed=passed,
        )
        try:
            return await write_artifacts(
                self.artifact_dir,
                run_id,
                report=report,
                html_summary=summary,
                coverage=coverage.get_coverage(),
            )
        except OSError as exc:
            if self.strict_persistence:
                raise PersistenceError(operation="write_artifacts", run_id=run_id, cause=exc) from exc
            log_error(f"[{run_id}] could not write artifacts: {exc}")
            return []

    async def _persist(
        self, operation: str, run_id: str, call: Callable[[], Awaitable[Any]]
    ) -> None:
        if self.persistence is None:
            return
        try:
            await call()
        except Exception as exc:
            if self.strict_persistence:
                raise PersistenceError(operation=operation, run_id=run_id, cause=exc) from exc
            log_error(f"[{run_id}] persistence {operation} failed: {exc}")

    async def _save_checkpoint(self, checkpoint: Checkpoint) -> None:
        await self._persist(
            "save_checkpoint",
            checkpoint.run_id,
            lambda: self.persistence.save_checkpoint(checkpoint),
        )

    async def _load_checkpoint(
        self, run_id: str, scenario: Scenario, mode: str
    ) -> Optional[Checkpoint]:
        if self.persistence is None:
            return None
        try:
            checkpoint = await self.persistence.load_checkpoint(run_id)
        except Exception as exc:
            if self.strict_persistence:
                raise PersistenceError(operation="load_checkpoint", run_id=run_id, cause=exc) from exc
            log_error(f"[{run_id}] could not load checkpoint: {exc}")
            return None
        if checkpoint is None:
            return None
        if checkpoint.scenario.run_identity != scenario.run_identity or checkpoint.mode != mode:
            log_error(f"[{run_id}] ignoring checkpoint recorded for a different scenario or mode")
            return None
        return checkpoint

    def _log_outcome(self, result: RunResult) -> None:
        line = (
            f"[{result.run_id}] {result.status} after {result.turns_completed} turns, "
            f"coverage {result.coverage.overall:.1%}"
        )
        failures = result.oracles.failures()
        if failures:
            line += f", oracles: {', '.join(failures)}"
        if result.passed:
            log_success(line)
        elif result.status == "failed":
            log_error(line)
        else:
            log_oracle(line)
