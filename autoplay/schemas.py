"""
Pydantic schemas for the autoplay harness.

All records that cross a component boundary are defined here.

Design Philosophy:
- Scenarios are immutable; every run is identified by the scenario tuple plus seed
- Turn results from the content engine are tolerant: every field is optional and
  missing/None values collapse to zero, False or empty
- Coverage records keep the raw observed sets next to the derived percentage so a
  snapshot can be audited after the fact
- Pydantic validation keeps persisted run records, checkpoints and baselines
  consistent across the in-memory, JSON and Postgres stores
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Set, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    field_validator,
    model_validator,
)


def utc_now() -> datetime:
    """Timezone-aware timestamp used for every record created by the harness."""
    return datetime.now(timezone.utc)


# Sets serialize sorted so reports and checkpoints are byte-stable across processes
# (str hashing is randomized per interpreter, so raw set order is not).
SortedSet = Annotated[
    Set[str],
    PlainSerializer(lambda value: sorted(value), return_type=List[str], when_used="json"),
]


# ============================================================================
# Scenario
# ============================================================================


class Scenario(BaseModel):
    """One concrete configuration to simulate.

    Scenarios are produced by the matrix generator through full cross-product
    expansion and are never mutated afterwards. ``identity`` groups scenarios that
    describe the same content slice; ``run_identity`` adds the seed and is what a
    replay must match.
    """

    model_config = ConfigDict(frozen=True)

    world: str = Field(..., description="World identifier")
    adventure: str = Field(..., description="Adventure identifier")
    locale: str = Field("en_US", description="Locale the content engine renders in")
    experiment: Optional[str] = Field(None, description="Experiment id, if any")
    variation: Optional[str] = Field(None, description="Experiment variation id, if any")
    module_toggles: Dict[str, bool] = Field(
        default_factory=dict, description="Feature-toggle name -> enabled"
    )
    rng_seed: str = Field(..., description="Deterministic seed string for this scenario")
    max_turns: int = Field(80, gt=0, description="Turn cap for one run")
    timeout_ms: int = Field(900000, gt=0, description="Wall-clock budget for one run")

    @property
    def identity(self) -> Tuple[str, str, str, Optional[str], Optional[str]]:
        return (self.world, self.adventure, self.locale, self.experiment, self.variation)

    @property
    def run_identity(self) -> Tuple[str, str, str, Optional[str], Optional[str], str]:
        return self.identity + (self.rng_seed,)


# ============================================================================
# Bot decisions and context
# ============================================================================


class BotDecision(BaseModel):
    """One bot decision: a choice selection, a free-text utterance, or neither."""

    choice_id: Optional[str] = None
    player_text: Optional[str] = None
    # Id of the surfaced dialogue candidate the utterance was taken from
    dialogue_id: Optional[str] = None
    reasoning: str = ""
    confidence: float = Field(0.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _single_action(self) -> "BotDecision":
        if self.choice_id is not None and self.player_text is not None:
            raise ValueError("A decision selects a choice or speaks, not both")
        return self

    @property
    def is_empty(self) -> bool:
        return self.choice_id is None and self.player_text is None


class BudgetUsage(BaseModel):
    """Token budget bookkeeping carried in the bot context."""

    tokens_in: float = 0.0
    tokens_out: float = 0.0
    max_tokens: int = Field(1000, gt=0)

    @property
    def total(self) -> float:
        return self.tokens_in + self.tokens_out


class BotContext(BaseModel):
    """Simulation state handed to the bot engine every turn."""

    current_node: Optional[str] = None
    available_choices: List[str] = Field(default_factory=list)
    dialogue_candidates: List[Dict[str, Any]] = Field(default_factory=list)
    party_state: Dict[str, Any] = Field(default_factory=dict)
    world_state: Dict[str, Any] = Field(default_factory=dict)
    economy_state: Dict[str, Any] = Field(default_factory=dict)
    mod_state: Dict[str, Any] = Field(default_factory=dict)
    turn_number: int = 0
    session_id: str = ""
    seed: str = ""
    budget_usage: BudgetUsage = Field(default_factory=BudgetUsage)


# ============================================================================
# Content engine turn result
# ============================================================================


class TurnResult(BaseModel):
    """Result of one content-engine turn.

    Every field is optional. Engines may omit anything; absent or ``None`` values
    are treated as zero, False or empty so the harness never fails on a partial
    payload. Unknown fields are preserved for reports.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    # Progress
    new_nodes: List[str] = Field(default_factory=list)
    objective_progress: float = 0.0
    dialogue_progress: List[str] = Field(default_factory=list)

    # Mechanics
    skill_checks: List[Dict[str, Any]] = Field(default_factory=list)
    conditions: List[str] = Field(default_factory=list)
    resource_changes: List[str] = Field(default_factory=list)

    # Economy
    loot_gained: List[Dict[str, Any]] = Field(default_factory=list)
    craft_attempts: List[str] = Field(default_factory=list)
    vendor_interactions: List[str] = Field(default_factory=list)

    # World simulation
    world_events: List[Dict[str, Any]] = Field(default_factory=list)
    weather_changes: List[str] = Field(default_factory=list)

    # Mods / extension hooks
    mod_hooks: List[Dict[str, Any]] = Field(default_factory=list)
    mod_violations: List[str] = Field(default_factory=list)
    mod_quarantines: List[str] = Field(default_factory=list)

    # Budget and repair signals
    token_usage: int = 0
    validator_retries: int = 0
    fallback_engagements: int = 0
    time_advance_violation: bool = False

    # Safety
    content_flags: List[str] = Field(default_factory=list)
    consent_violation: bool = False
    age_rating_violation: bool = False

    # Performance
    latency_ms: float = 0.0
    assembler_time: float = 0.0

    # Integrity
    acts_schema_violation: bool = False
    state_divergence: bool = False
    invalid_transition: bool = False
    data_corruption: bool = False

    # Next-turn state
    current_node: Optional[str] = None
    available_choices: Optional[List[str]] = None
    dialogue_candidates: Optional[List[Dict[str, Any]]] = None
    updated_bundle: Optional[Dict[str, Any]] = Field(None, alias="updatedBundle")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


# ============================================================================
# Coverage
# ============================================================================


class QuestGraphCoverage(BaseModel):
    nodes_visited: SortedSet = Field(default_factory=set)
    edges_traversed: SortedSet = Field(default_factory=set)
    total_nodes: int = 0
    total_edges: int = 0
    coverage_percentage: float = 0.0


class DialogueCoverage(BaseModel):
    candidates_surfaced: SortedSet = Field(default_factory=set)
    candidates_selected: SortedSet = Field(default_factory=set)
    arc_steps_progressed: SortedSet = Field(default_factory=set)
    total_candidates: int = 0
    coverage_percentage: float = 0.0


class MechanicsCoverage(BaseModel):
    skill_checks_attempted: Dict[str, int] = Field(default_factory=dict)
    difficulty_bands_seen: SortedSet = Field(default_factory=set)
    condition_variety: SortedSet = Field(default_factory=set)
    resource_curves_exercised: SortedSet = Field(default_factory=set)
    coverage_percentage: float = 0.0


class EconomyCoverage(BaseModel):
    loot_tiers_touched: SortedSet = Field(default_factory=set)
    craft_outcomes: SortedSet = Field(default_factory=set)
    vendor_interactions: SortedSet = Field(default_factory=set)
    total_loot_tiers: int = 0
    coverage_percentage: float = 0.0


class WorldSimCoverage(BaseModel):
    event_types_triggered: SortedSet = Field(default_factory=set)
    weather_states_traversed: SortedSet = Field(default_factory=set)
    total_event_types: int = 0
    coverage_percentage: float = 0.0


class ModsCoverage(BaseModel):
    hook_invocations: Dict[str, int] = Field(default_factory=dict)
    violations_detected: SortedSet = Field(default_factory=set)
    quarantines_triggered: SortedSet = Field(default_factory=set)
    total_hooks: int = 0
    coverage_percentage: float = 0.0


COVERAGE_DIMENSIONS = ("quest_graph", "dialogue", "mechanics", "economy", "world_sim", "mods")


class CoverageMetrics(BaseModel):
    """Six independent coverage dimensions."""

    quest_graph: QuestGraphCoverage = Field(default_factory=QuestGraphCoverage)
    dialogue: DialogueCoverage = Field(default_factory=DialogueCoverage)
    mechanics: MechanicsCoverage = Field(default_factory=MechanicsCoverage)
    economy: EconomyCoverage = Field(default_factory=EconomyCoverage)
    world_sim: WorldSimCoverage = Field(default_factory=WorldSimCoverage)
    mods: ModsCoverage = Field(default_factory=ModsCoverage)

    def percentages(self) -> Dict[str, float]:
        return {name: getattr(self, name).coverage_percentage for name in COVERAGE_DIMENSIONS}

    def overall(self) -> float:
        values = self.percentages().values()
        return sum(values) / len(COVERAGE_DIMENSIONS)


class CoverageSnapshot(BaseModel):
    """Immutable point-in-time copy of the coverage metrics."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    turn_number: int
    metrics: CoverageMetrics
    overall_coverage: float


class CoverageReport(BaseModel):
    """Flat per-dimension percentages plus the unweighted overall mean."""

    quest_graph: float = 0.0
    dialogue: float = 0.0
    mechanics: float = 0.0
    economy: float = 0.0
    world_sim: float = 0.0
    mods: float = 0.0
    overall: float = 0.0


# ============================================================================
# Oracles
# ============================================================================

ORACLE_NAMES: Tuple[str, ...] = (
    "soft_lock",
    "budget_violation",
    "validator_retries",
    "fallback_engagements",
    "safety_violation",
    "performance_violation",
    "integrity_violation",
)

CRITICAL_ORACLES: Tuple[str, ...] = (
    "soft_lock",
    "budget_violation",
    "safety_violation",
    "integrity_violation",
)


class OracleDetails(BaseModel):
    """Per-turn signals behind each oracle flag.

    ``stagnant_turns``, ``validator_retries`` and ``turn_latency_ms`` are the
    per-turn values the detector reads back from history for its cumulative and
    percentile checks.
    """

    stagnant_turns: int = 0
    reachable_unvisited: Optional[int] = None
    tokens_used: int = 0
    token_budget: int = 0
    validator_retries: int = 0
    cumulative_validator_retries: int = 0
    fallback_engagements: int = 0
    safety_flags: List[str] = Field(default_factory=list)
    turn_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    assembler_time_ms: float = 0.0
    integrity_flags: List[str] = Field(default_factory=list)
    reasons: Dict[str, List[str]] = Field(default_factory=dict)


class OracleResult(BaseModel):
    soft_lock: bool = False
    budget_violation: bool = False
    validator_retries: bool = False
    fallback_engagements: bool = False
    safety_violation: bool = False
    performance_violation: bool = False
    integrity_violation: bool = False
    details: OracleDetails = Field(default_factory=OracleDetails)

    def failures(self) -> List[str]:
        return [name for name in ORACLE_NAMES if getattr(self, name)]


class OracleHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    turn: int
    timestamp: datetime = Field(default_factory=utc_now)
    result: OracleResult


class FailureSummary(BaseModel):
    total_failures: int = 0
    failure_types: List[str] = Field(default_factory=list)
    critical_failures: List[str] = Field(default_factory=list)


# ============================================================================
# Runs
# ============================================================================

RunStatus = Literal["completed", "failed", "timeout", "cancelled"]
ArtifactKind = Literal["json", "html", "svg"]


class PerformanceStats(BaseModel):
    duration_ms: float = 0.0
    turns_per_second: float = 0.0
    avg_turn_latency_ms: float = 0.0
    p95_turn_latency_ms: float = 0.0
    avg_tokens_per_turn: float = 0.0
    max_tokens_per_turn: int = 0


class Artifact(BaseModel):
    kind: ArtifactKind
    path: str
    bytes: int = Field(0, ge=0)


class RunResult(BaseModel):
    """Outcome of one (scenario, bot mode) run. Finalized once, never mutated."""

    run_id: str
    scenario: Scenario
    mode: str
    status: RunStatus
    turns_completed: int = 0
    coverage: CoverageReport = Field(default_factory=CoverageReport)
    final_snapshot: Optional[CoverageSnapshot] = None
    oracles: OracleResult = Field(default_factory=OracleResult)
    performance: PerformanceStats = Field(default_factory=PerformanceStats)
    artifacts: List[Artifact] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime
    duration_ms: float = 0.0
    passed: bool = False
    error: Optional[str] = None


class Checkpoint(BaseModel):
    """Resume point written every checkpoint interval."""

    run_id: str
    scenario: Scenario
    mode: str
    turn: int = Field(..., ge=0)
    bundle: Dict[str, Any] = Field(default_factory=dict)
    context: BotContext
    coverage: CoverageReport = Field(default_factory=CoverageReport)
    oracles: OracleResult = Field(default_factory=OracleResult)
    saved_at: datetime = Field(default_factory=utc_now)


# ============================================================================
# Batch configuration
# ============================================================================


class MatrixConfig(BaseModel):
    """Inputs to the scenario matrix generator."""

    worlds: List[str]
    adventures: List[str]
    locales: List[str] = Field(default_factory=lambda: ["en_US"])
    experiments: List[str] = Field(default_factory=lambda: ["control"])
    variations: List[str] = Field(default_factory=lambda: ["control"])
    # Toggle name -> option list, e.g. {"dialogue": [True, False]}
    module_toggles: Dict[str, List[bool]] = Field(default_factory=dict)
    seeds_per_scenario: int = Field(1, ge=0)
    max_turns: int = Field(80, gt=0)
    timeout_ms: int = Field(900000, gt=0)

    @field_validator("experiments", "variations", mode="before")
    @classmethod
    def _default_control(cls, value: Any) -> Any:
        # An explicitly empty list still means "the control arm"
        if value is None or value == []:
            return ["control"]
        return value


class RunConfig(BaseModel):
    """Inputs to one fuzz-runner batch."""

    scenarios: List[Scenario]
    bot_modes: List[str] = Field(
        default_factory=lambda: [
            "objective_seeker",
            "explorer",
            "economy_grinder",
            "romance_tester",
            "risk_taker",
            "safety_max",
        ]
    )
    parallel_shards: int = Field(6, ge=1)
    max_concurrent: int = Field(3, ge=1)
    artifact_output: bool = True
    resume_from_checkpoint: bool = True
    max_tokens: int = Field(1000, gt=0)


# ============================================================================
# Baselines
# ============================================================================


class BaselineMetrics(BaseModel):
    """Aggregated metrics for one baseline key, grouped by metric family."""

    coverage: Dict[str, float] = Field(default_factory=dict)
    performance: Dict[str, float] = Field(default_factory=dict)
    oracles: Dict[str, float] = Field(default_factory=dict)
    behavior: Dict[str, float] = Field(default_factory=dict)


class BaselineRecord(BaseModel):
    key: str
    metrics: BaselineMetrics
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class BaselineComparison(BaseModel):
    key: str
    baseline_found: bool = True
    current_metrics: BaselineMetrics
    baseline_metrics: Optional[BaselineMetrics] = None
    deltas: Dict[str, Dict[str, float]] = Field(default_factory=dict)
    verdict: Literal["pass", "fail"] = "pass"
    tolerance_exceeded: List[str] = Field(default_factory=list)
    critical_regressions: List[str] = Field(default_factory=list)
    significant_changes: List[str] = Field(default_factory=list)
    untracked_metrics: List[str] = Field(default_factory=list)
    summary: str = ""
