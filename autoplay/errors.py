"""Exception taxonomy for the autoplay harness.

Configuration errors are raised before any run starts. Collaborator errors
(content engine, store) are caught per (scenario, mode) pair by the runner and
turned into ``failed`` run results. Oracle conditions are never exceptions.
"""

from typing import Optional, Sequence


class AutoplayError(Exception):
    """Base class for every error raised by the harness."""


class ConfigurationError(AutoplayError, ValueError):
    """Raised for invalid batch configuration; surfaces before any run starts."""


class UnknownModeError(ConfigurationError):
    """Raised when a bot mode has no registered policy."""

    def __init__(self, mode: str, *, known: Optional[Sequence[str]] = None) -> None:
        self.mode = mode
        self.known = list(known or [])
        message = f"Unknown bot mode: {mode!r}."
        if self.known:
            message += f" Registered modes: {', '.join(self.known)}."
        super().__init__(message)


class MalformedScenarioError(ConfigurationError):
    """Raised when a scenario is missing identity fields or has impossible limits."""

    def __init__(self, *, index: int, problems: Sequence[str]) -> None:
        self.index = index
        self.problems = list(problems)
        message_lines = [f"Scenario #{index} is malformed:"]
        message_lines.extend(f"  - {problem}" for problem in self.problems)
        message_lines.extend(
            [
                "\nRemediation tips:",
                "  - Build scenarios with generate_matrix() instead of by hand",
                "  - Check that world, adventure and locale are non-empty",
            ]
        )
        super().__init__("\n".join(message_lines))


class ContentEngineError(AutoplayError):
    """Raised by content engines for failures while loading or executing a turn."""


class TurnTimeoutError(ContentEngineError):
    """Raised when a content-engine call exceeds its deadline."""

    def __init__(self, *, turn: int, timeout_seconds: float) -> None:
        self.turn = turn
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Content engine did not answer turn {turn} within {timeout_seconds:.3f}s."
        )


class PersistenceError(AutoplayError):
    """Raised when a store write fails and strict persistence is enabled."""

    def __init__(self, *, operation: str, run_id: Optional[str], cause: BaseException) -> None:
        self.operation = operation
        self.run_id = run_id
        self.cause = cause
        message_lines = [
            f"Persistence operation {operation!r} failed"
            + (f" for run {run_id}." if run_id else "."),
            f"  Cause: {cause}",
            "\nRemediation tips:",
            "  - Verify DATABASE_URL and that the autoplay tables exist",
            "  - Unset AUTOPLAY_STRICT_PERSISTENCE to log and continue instead",
        ]
        super().__init__("\n".join(message_lines))
