"""
Autoplay - autonomous playtesting and fuzz harness for narrative game engines.

Deterministic bots play scenario matrices against an injected content engine
while coverage trackers and failure oracles watch every turn.

The content engine and the persistence strategy are injected by the caller.
Run artifacts go to a configurable directory.
"""

__version__ = "0.1.0"

# Batch execution
from .runner import FuzzRunner, create_shards, evaluate_pass
from .matrix import generate_matrix, toggle_combinations

# Bots
from .rng import DeterministicRNG, hash_string
from .policies import (
    ALL_MODES,
    BotMode,
    BotPolicy,
    ObjectiveSeekerPolicy,
    ExplorerPolicy,
    EconomyGrinderPolicy,
    RomanceTesterPolicy,
    RiskTakerPolicy,
    SafetyMaxPolicy,
    build_policies,
)
from .bot_engine import BotEngine
from .memory import BotMemory

# Observation
from .coverage import CoverageEstimates, CoverageTracker
from .oracles import OracleConfig, OracleDetector

# Collaborators
from .content_engine import ContentEngine, GraphContentEngine
from .persistence import (
    PersistenceStrategy,
    InMemoryPersistence,
    PostgresPersistence,
    JsonPersistence,
)

# Baselines
from .baselines import BaselineManager, aggregate_metrics, baseline_key

# Errors
from .errors import (
    AutoplayError,
    ConfigurationError,
    UnknownModeError,
    MalformedScenarioError,
    ContentEngineError,
    TurnTimeoutError,
    PersistenceError,
)

# Core schemas
from .schemas import (
    Scenario,
    BotDecision,
    BotContext,
    BudgetUsage,
    TurnResult,
    CoverageReport,
    CoverageSnapshot,
    OracleResult,
    RunResult,
    Checkpoint,
    MatrixConfig,
    RunConfig,
    BaselineMetrics,
    BaselineComparison,
)

__all__ = [
    # Batch execution
    "FuzzRunner",
    "create_shards",
    "evaluate_pass",
    "generate_matrix",
    "toggle_combinations",
    # Bots
    "DeterministicRNG",
    "hash_string",
    "ALL_MODES",
    "BotMode",
    "BotPolicy",
    "ObjectiveSeekerPolicy",
    "ExplorerPolicy",
    "EconomyGrinderPolicy",
    "RomanceTesterPolicy",
    "RiskTakerPolicy",
    "SafetyMaxPolicy",
    "build_policies",
    "BotEngine",
    "BotMemory",
    # Observation
    "CoverageEstimates",
    "CoverageTracker",
    "OracleConfig",
    "OracleDetector",
    # Collaborators
    "ContentEngine",
    "GraphContentEngine",
    "PersistenceStrategy",
    "InMemoryPersistence",
    "PostgresPersistence",
    "JsonPersistence",
    # Baselines
    "BaselineManager",
    "aggregate_metrics",
    "baseline_key",
    # Errors
    "AutoplayError",
    "ConfigurationError",
    "UnknownModeError",
    "MalformedScenarioError",
    "ContentEngineError",
    "TurnTimeoutError",
    "PersistenceError",
    # Schemas
    "Scenario",
    "BotDecision",
    "BotContext",
    "BudgetUsage",
    "TurnResult",
    "CoverageReport",
    "CoverageSnapshot",
    "OracleResult",
    "RunResult",
    "Checkpoint",
    "MatrixConfig",
    "RunConfig",
    "BaselineMetrics",
    "BaselineComparison",
]
