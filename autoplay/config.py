"""
Autoplay Configuration

Loads harness configuration from environment variables with sensible defaults.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


class Config:
    """Harness configuration loaded from environment variables."""

    # Scenario limits
    MAX_TURNS: int = int(os.getenv("AUTOPLAY_MAX_TURNS", "80"))
    TIMEOUT_MS: int = int(os.getenv("AUTOPLAY_TIMEOUT_MS", "900000"))
    # Optional hard deadline for a single content-engine call (0 disables)
    TURN_TIMEOUT_MS: int = int(os.getenv("AUTOPLAY_TURN_TIMEOUT_MS", "0"))

    # Batch execution
    PARALLEL_SHARDS: int = int(os.getenv("AUTOPLAY_PARALLEL_SHARDS", "6"))
    MAX_CONCURRENT: int = int(os.getenv("AUTOPLAY_MAX_CONCURRENT", "3"))
    NIGHTLY_SEEDS: int = int(os.getenv("AUTOPLAY_NIGHTLY_SEEDS", "12"))
    CHECKPOINT_INTERVAL: int = int(os.getenv("AUTOPLAY_CHECKPOINT_INTERVAL", "10"))

    # Token budget per run
    MAX_TOKENS: int = int(os.getenv("AUTOPLAY_MAX_TOKENS", "1000"))

    # Baselines
    CORE_VERSION: str = os.getenv("AUTOPLAY_CORE_VERSION", "v1.0.0")

    # Persistence
    DATABASE_URL: str = os.getenv("DATABASE_URL", "postgresql://localhost/autoplay")
    # When true, persistence failures abort the batch instead of being logged
    STRICT_PERSISTENCE: bool = os.getenv("AUTOPLAY_STRICT_PERSISTENCE", "false").lower() in (
        "1",
        "true",
        "yes",
    )

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Project Paths
    PROJECT_ROOT: Path = Path(__file__).parent.parent
    ARTIFACT_DIR: Path = Path(os.getenv("AUTOPLAY_ARTIFACT_DIR", "artifacts"))

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and raise errors for impossible values."""
        positive = {
            "AUTOPLAY_MAX_TURNS": cls.MAX_TURNS,
            "AUTOPLAY_TIMEOUT_MS": cls.TIMEOUT_MS,
            "AUTOPLAY_PARALLEL_SHARDS": cls.PARALLEL_SHARDS,
            "AUTOPLAY_MAX_CONCURRENT": cls.MAX_CONCURRENT,
            "AUTOPLAY_NIGHTLY_SEEDS": cls.NIGHTLY_SEEDS,
            "AUTOPLAY_CHECKPOINT_INTERVAL": cls.CHECKPOINT_INTERVAL,
            "AUTOPLAY_MAX_TOKENS": cls.MAX_TOKENS,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be a positive integer (got {value})")

        if cls.TURN_TIMEOUT_MS < 0:
            raise ValueError(
                "AUTOPLAY_TURN_TIMEOUT_MS must be zero (disabled) or a positive number of milliseconds"
            )

    @classmethod
    def display(cls) -> str:
        """Return a formatted string showing current configuration."""
        lines = [
            "Autoplay Configuration:",
            f"  Max Turns: {cls.MAX_TURNS}",
            f"  Timeout: {cls.TIMEOUT_MS}ms",
            f"  Turn Deadline: {cls.TURN_TIMEOUT_MS or 'disabled'}",
            f"  Shards: {cls.PARALLEL_SHARDS} (max concurrent {cls.MAX_CONCURRENT})",
            f"  Nightly Seeds: {cls.NIGHTLY_SEEDS}",
            f"  Checkpoint Interval: {cls.CHECKPOINT_INTERVAL} turns",
            f"  Max Tokens: {cls.MAX_TOKENS}",
            f"  Core Version: {cls.CORE_VERSION}",
            f"  Database: {cls.DATABASE_URL}",
            f"  Artifacts: {cls.ARTIFACT_DIR}",
        ]
        return "\n".join(lines)
