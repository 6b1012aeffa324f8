"""
PersistenceStrategy interface for pluggable storage backends.

This module provides the abstract PersistenceStrategy interface and three concrete
implementations for storing harness output. Persistence is OPTIONAL - a batch can
run entirely in-memory with no database or file system dependencies.

Three included implementations:
1. InMemoryPersistence - Dict-based storage, data lost on exit (tests, local runs)
2. JsonPersistence - File-based storage, human-readable JSON (CI artifacts)
3. PostgresPersistence - Database storage, shared across nightly runs (production)

Key responsibilities:
- Store finalized run results and the metadata of the artifacts they produced
- Store and load checkpoints so an interrupted run can resume
- Upsert, read, list and delete baseline records by key

Retry policy belongs here, not in the runner: PostgresPersistence retries
transient connection failures itself. From the runner's point of view every write
is best-effort unless strict persistence is enabled.

Usage pattern:
    persistence = InMemoryPersistence()  # or JsonPersistence(), PostgresPersistence()
    await persistence.initialize()
    await persistence.save_run_result(result)
    await persistence.close()
"""

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Type
from urllib.parse import quote

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Config
from .schemas import Artifact, BaselineRecord, Checkpoint, RunResult, utc_now

try:  # Optional dependency (only needed for PostgresPersistence)
    import asyncpg
except ImportError:  # pragma: no cover - asyncpg may not be installed for json/memory usage
    asyncpg = None


class PersistenceStrategy(ABC):
    """Abstract base class for harness persistence."""

    @abstractmethod
    async def initialize(self) -> None:
        """Open connections / create directories before first use."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release resources."""
        pass

    # Run results -------------------------------------------------------

    @abstractmethod
    async def save_run_result(self, result: RunResult) -> None:
        """Insert (or replace) a finalized run result."""
        pass

    @abstractmethod
    async def get_run_result(self, run_id: str) -> Optional[RunResult]:
        pass

    @abstractmethod
    async def list_run_results(self) -> List[RunResult]:
        """All stored run results, oldest first."""
        pass

    @abstractmethod
    async def save_artifacts(self, run_id: str, artifacts: List[Artifact]) -> None:
        """Record metadata (kind, path, size) for artifacts written by a run."""
        pass

    @abstractmethod
    async def get_artifacts(self, run_id: str) -> List[Artifact]:
        pass

    # Checkpoints -------------------------------------------------------

    @abstractmethod
    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Keep the latest checkpoint per run id."""
        pass

    @abstractmethod
    async def load_checkpoint(self, run_id: str) -> Optional[Checkpoint]:
        pass

    @abstractmethod
    async def delete_checkpoint(self, run_id: str) -> None:
        pass

    # Baselines ---------------------------------------------------------

    @abstractmethod
    async def upsert_baseline(self, record: BaselineRecord) -> None:
        """Insert or replace the baseline stored under ``record.key``."""
        pass

    @abstractmethod
    async def get_baseline(self, key: str) -> Optional[BaselineRecord]:
        pass

    @abstractmethod
    async def list_baselines(self) -> List[BaselineRecord]:
        pass

    @abstractmethod
    async def delete_baseline(self, key: str) -> bool:
        """Delete a baseline; returns False when the key did not exist."""
        pass


class InMemoryPersistence(PersistenceStrategy):
    """Dict-based storage for tests and single-process batches.

    Records are copied on the way in and out so callers never share mutable
    state with the store.
    """

    def __init__(self):
        self.runs: Dict[str, RunResult] = {}
        self.artifacts: Dict[str, List[Artifact]] = {}
        self.checkpoints: Dict[str, Checkpoint] = {}
        self.baselines: Dict[str, BaselineRecord] = {}

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def save_run_result(self, result: RunResult) -> None:
        self.runs[result.run_id] = result.model_copy(deep=True)

    async def get_run_result(self, run_id: str) -> Optional[RunResult]:
        result = self.runs.get(run_id)
        return result.model_copy(deep=True) if result else None

    async def list_run_results(self) -> List[RunResult]:
        ordered = sorted(self.runs.values(), key=lambda run: run.started_at)
        return [run.model_copy(deep=True) for run in ordered]

    async def save_artifacts(self, run_id: str, artifacts: List[Artifact]) -> None:
        self.artifacts.setdefault(run_id, []).extend(a.model_copy() for a in artifacts)

    async def get_artifacts(self, run_id: str) -> List[Artifact]:
        return [a.model_copy() for a in self.artifacts.get(run_id, [])]

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        self.checkpoints[checkpoint.run_id] = checkpoint.model_copy(deep=True)

    async def load_checkpoint(self, run_id: str) -> Optional[Checkpoint]:
        checkpoint = self.checkpoints.get(run_id)
        return checkpoint.model_copy(deep=True) if checkpoint else None

    async def delete_checkpoint(self, run_id: str) -> None:
        self.checkpoints.pop(run_id, None)

    async def upsert_baseline(self, record: BaselineRecord) -> None:
        existing = self.baselines.get(record.key)
        stored = record.model_copy(deep=True)
        if existing is not None:
            stored.created_at = existing.created_at
        self.baselines[record.key] = stored

    async def get_baseline(self, key: str) -> Optional[BaselineRecord]:
        record = self.baselines.get(key)
        return record.model_copy(deep=True) if record else None

    async def list_baselines(self) -> List[BaselineRecord]:
        return [self.baselines[key].model_copy(deep=True) for key in sorted(self.baselines)]

    async def delete_baseline(self, key: str) -> bool:
        return self.baselines.pop(key, None) is not None


def _transient_errors() -> Tuple[Type[BaseException], ...]:
    errors: List[Type[BaseException]] = [OSError, asyncio.TimeoutError]
    if asyncpg is not None:
        errors.extend(
            [
                asyncpg.exceptions.PostgresConnectionError,
                asyncpg.exceptions.ConnectionDoesNotExistError,
                asyncpg.exceptions.TooManyConnectionsError,
            ]
        )
    return tuple(errors)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS autoplay_runs (
    run_id TEXT PRIMARY KEY,
    world TEXT NOT NULL,
    adventure TEXT NOT NULL,
    mode TEXT NOT NULL,
    status TEXT NOT NULL,
    passed BOOLEAN NOT NULL,
    started_at TIMESTAMPTZ NOT NULL,
    result JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS autoplay_artifacts (
    id BIGSERIAL PRIMARY KEY,
    run_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    path TEXT NOT NULL,
    bytes BIGINT NOT NULL
);
CREATE TABLE IF NOT EXISTS autoplay_checkpoints (
    run_id TEXT PRIMARY KEY,
    turn INTEGER NOT NULL,
    checkpoint JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS autoplay_baselines (
    key TEXT PRIMARY KEY,
    metrics JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
"""


class PostgresPersistence(PersistenceStrategy):
    """PostgreSQL-backed persistence shared by nightly batches.

    Database schema (see ``SCHEMA_SQL``; created on initialize when
    ``create_schema`` is true):
    - autoplay_runs: one row per (scenario, mode) run, full result as JSONB
    - autoplay_artifacts: artifact metadata rows per run
    - autoplay_checkpoints: latest checkpoint per run id
    - autoplay_baselines: aggregated metrics keyed by baseline key

    Transient connection failures are retried with exponential backoff
    (tenacity) before the error reaches the caller.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        *,
        create_schema: bool = True,
        max_attempts: int = 3,
    ):
        if asyncpg is None:  # pragma: no cover - handled during runtime when dependency missing
            raise ImportError(
                "asyncpg is required for PostgresPersistence. Install with `pip install autoplay-harness[postgres]`."
            )

        self.database_url = database_url or Config.DATABASE_URL
        self.create_schema = create_schema
        self.max_attempts = max_attempts
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        if self.pool is None:
            self.pool = await asyncpg.create_pool(self.database_url)
            if self.create_schema:
                await self._execute(SCHEMA_SQL)

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(_transient_errors()),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.2, max=2.0),
            reraise=True,
        )

    async def _execute(self, query: str, *args) -> str:
        assert self.pool is not None, "Persistence not initialized"
        async for attempt in self._retrying():
            with attempt:
                return await self.pool.execute(query, *args)
        raise RuntimeError("Retry loop exited unexpectedly")  # pragma: no cover

    async def _fetch(self, query: str, *args) -> List["asyncpg.Record"]:
        assert self.pool is not None, "Persistence not initialized"
        async for attempt in self._retrying():
            with attempt:
                return await self.pool.fetch(query, *args)
        raise RuntimeError("Retry loop exited unexpectedly")  # pragma: no cover

    async def _fetchrow(self, query: str, *args) -> Optional["asyncpg.Record"]:
        rows = await self._fetch(query, *args)
        return rows[0] if rows else None

    async def save_run_result(self, result: RunResult) -> None:
        await self._execute(
            """
            INSERT INTO autoplay_runs (run_id, world, adventure, mode, status, passed, started_at, result)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb)
            ON CONFLICT (run_id) DO UPDATE
            SET status = EXCLUDED.status,
                passed = EXCLUDED.passed,
                result = EXCLUDED.result
            """,
            result.run_id,
            result.scenario.world,
            result.scenario.adventure,
            result.mode,
            result.status,
            result.passed,
            result.started_at,
            result.model_dump_json(),
        )

    async def get_run_result(self, run_id: str) -> Optional[RunResult]:
        row = await self._fetchrow("SELECT result FROM autoplay_runs WHERE run_id = $1", run_id)
        if row is None:
            return None
        return RunResult.model_validate_json(row["result"])

    async def list_run_results(self) -> List[RunResult]:
        rows = await self._fetch("SELECT result FROM autoplay_runs ORDER BY started_at")
        return [RunResult.model_validate_json(row["result"]) for row in rows]

    async def save_artifacts(self, run_id: str, artifacts: List[Artifact]) -> None:
        for artifact in artifacts:
            await self._execute(
                "INSERT INTO autoplay_artifacts (run_id, kind, path, bytes) VALUES ($1, $2, $3, $4)",
                run_id,
                artifact.kind,
                artifact.path,
                artifact.bytes,
            )

    async def get_artifacts(self, run_id: str) -> List[Artifact]:
        rows = await self._fetch(
            "SELECT kind, path, bytes FROM autoplay_artifacts WHERE run_id = $1 ORDER BY id",
            run_id,
        )
        return [Artifact(kind=row["kind"], path=row["path"], bytes=row["bytes"]) for row in rows]

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        await self._execute(
            """
            INSERT INTO autoplay_checkpoints (run_id, turn, checkpoint)
            VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (run_id) DO UPDATE SET turn = EXCLUDED.turn, checkpoint = EXCLUDED.checkpoint
            """,
            checkpoint.run_id,
            checkpoint.turn,
            checkpoint.model_dump_json(),
        )

    async def load_checkpoint(self, run_id: str) -> Optional[Checkpoint]:
        row = await self._fetchrow(
            "SELECT checkpoint FROM autoplay_checkpoints WHERE run_id = $1", run_id
        )
        if row is None:
            return None
        return Checkpoint.model_validate_json(row["checkpoint"])

    async def delete_checkpoint(self, run_id: str) -> None:
        await self._execute("DELETE FROM autoplay_checkpoints WHERE run_id = $1", run_id)

    async def upsert_baseline(self, record: BaselineRecord) -> None:
        await self._execute(
            """
            INSERT INTO autoplay_baselines (key, metrics, created_at, updated_at)
            VALUES ($1, $2::jsonb, $3, $4)
            ON CONFLICT (key) DO UPDATE SET metrics = EXCLUDED.metrics, updated_at = EXCLUDED.updated_at
            """,
            record.key,
            record.metrics.model_dump_json(),
            record.created_at,
            record.updated_at,
        )

    async def get_baseline(self, key: str) -> Optional[BaselineRecord]:
        row = await self._fetchrow(
            "SELECT key, metrics, created_at, updated_at FROM autoplay_baselines WHERE key = $1",
            key,
        )
        return self._baseline_from_row(row) if row is not None else None

    async def list_baselines(self) -> List[BaselineRecord]:
        rows = await self._fetch(
            "SELECT key, metrics, created_at, updated_at FROM autoplay_baselines ORDER BY key"
        )
        return [self._baseline_from_row(row) for row in rows]

    async def delete_baseline(self, key: str) -> bool:
        status = await self._execute("DELETE FROM autoplay_baselines WHERE key = $1", key)
        # asyncpg returns the command tag, e.g. "DELETE 1"
        return status.split()[-1] != "0"

    @staticmethod
    def _baseline_from_row(row) -> BaselineRecord:
        return BaselineRecord.model_validate(
            {
                "key": row["key"],
                "metrics": json.loads(row["metrics"]),
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
            }
        )


class JsonPersistence(PersistenceStrategy):
    """File-based persistence using JSON for human-readable storage.

    Directory structure:
    ```
    {base_path}/
      runs/
        {run_id}/
          result.json       # RunResult
          artifacts.json    # List[Artifact]
          checkpoint.json   # latest Checkpoint
      baselines/
        {quoted key}.json   # BaselineRecord (key is URL-quoted, '/' included)
    ```

    All file I/O runs in the thread pool (asyncio.to_thread) so writes never
    block the event loop driving other shards.
    """

    def __init__(self, base_path: Path | str = "autoplay_runs"):
        self.base_path = Path(base_path)

    async def initialize(self) -> None:
        await asyncio.to_thread((self.base_path / "runs").mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread((self.base_path / "baselines").mkdir, parents=True, exist_ok=True)

    async def close(self) -> None:
        # Nothing to clean up for JSON persistence
        return None

    async def save_run_result(self, result: RunResult) -> None:
        await self._write(self._run_dir(result.run_id) / "result.json", result.model_dump_json(indent=2))

    async def get_run_result(self, run_id: str) -> Optional[RunResult]:
        text = await self._read(self._run_dir(run_id) / "result.json")
        return RunResult.model_validate_json(text) if text is not None else None

    async def list_run_results(self) -> List[RunResult]:
        def _read_all() -> List[str]:
            runs_dir = self.base_path / "runs"
            if not runs_dir.exists():
                return []
            return [
                path.read_text("utf-8")
                for path in sorted(runs_dir.glob("*/result.json"))
            ]

        texts = await asyncio.to_thread(_read_all)
        results = [RunResult.model_validate_json(text) for text in texts]
        return sorted(results, key=lambda run: run.started_at)

    async def save_artifacts(self, run_id: str, artifacts: List[Artifact]) -> None:
        existing = await self.get_artifacts(run_id)
        payload = [a.model_dump(mode="json") for a in existing + list(artifacts)]
        await self._write(self._run_dir(run_id) / "artifacts.json", json.dumps(payload, indent=2))

    async def get_artifacts(self, run_id: str) -> List[Artifact]:
        text = await self._read(self._run_dir(run_id) / "artifacts.json")
        if text is None:
            return []
        return [Artifact.model_validate(item) for item in json.loads(text)]

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        await self._write(
            self._run_dir(checkpoint.run_id) / "checkpoint.json",
            checkpoint.model_dump_json(indent=2),
        )

    async def load_checkpoint(self, run_id: str) -> Optional[Checkpoint]:
        text = await self._read(self._run_dir(run_id) / "checkpoint.json")
        return Checkpoint.model_validate_json(text) if text is not None else None

    async def delete_checkpoint(self, run_id: str) -> None:
        path = self._run_dir(run_id) / "checkpoint.json"
        if path.exists():
            await asyncio.to_thread(path.unlink)

    async def upsert_baseline(self, record: BaselineRecord) -> None:
        existing = await self.get_baseline(record.key)
        stored = record.model_copy(deep=True)
        if existing is not None:
            stored.created_at = existing.created_at
        stored.updated_at = utc_now()
        await self._write(self._baseline_path(record.key), stored.model_dump_json(indent=2))

    async def get_baseline(self, key: str) -> Optional[BaselineRecord]:
        text = await self._read(self._baseline_path(key))
        return BaselineRecord.model_validate_json(text) if text is not None else None

    async def list_baselines(self) -> List[BaselineRecord]:
        def _read_all() -> List[str]:
            directory = self.base_path / "baselines"
            if not directory.exists():
                return []
            return [path.read_text("utf-8") for path in directory.glob("*.json")]

        texts = await asyncio.to_thread(_read_all)
        records = [BaselineRecord.model_validate_json(text) for text in texts]
        return sorted(records, key=lambda record: record.key)

    async def delete_baseline(self, key: str) -> bool:
        path = self._baseline_path(key)
        if not path.exists():
            return False
        await asyncio.to_thread(path.unlink)
        return True

    def _run_dir(self, run_id: str) -> Path:
        return self.base_path / "runs" / quote(run_id, safe="")

    def _baseline_path(self, key: str) -> Path:
        return self.base_path / "baselines" / f"{quote(key, safe='')}.json"

    @staticmethod
    async def _write(path: Path, text: str) -> None:
        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_text, text, "utf-8")

    @staticmethod
    async def _read(path: Path) -> Optional[str]:
        if not path.exists():
            return None
        return await asyncio.to_thread(path.read_text, "utf-8")
