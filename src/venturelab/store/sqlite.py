"""
SQLite-backed storage for pipeline runs.

This module implements the RunStore class which provides:
- Async SQLite operations for resources, runs and hypotheses
- Partial updates keyed by model field names
- Stale-run lookup for the recovery sweep
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite
from pydantic import BaseModel

from ..pipeline.models import (
    ExistingFilter,
    ExistingHypothesis,
    Hypothesis,
    Resource,
    Run,
    utcnow,
)

logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS resources (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL,
        kind TEXT NOT NULL,
        name TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL,
        job_name TEXT NOT NULL DEFAULT '',
        target_spec_id INTEGER,
        technical_assets_id INTEGER,
        hypothesis_count INTEGER NOT NULL DEFAULT 5,
        status TEXT NOT NULL DEFAULT 'pending',
        current_step INTEGER NOT NULL DEFAULT 0,
        research_output TEXT,
        progress_info JSON NOT NULL DEFAULT '{}',
        error_message TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP,
        FOREIGN KEY (target_spec_id) REFERENCES resources(id),
        FOREIGN KEY (technical_assets_id) REFERENCES resources(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hypotheses (
        uuid TEXT PRIMARY KEY,
        run_id INTEGER NOT NULL,
        project_id INTEGER NOT NULL,
        hypothesis_number INTEGER NOT NULL,
        index_in_run INTEGER NOT NULL,
        display_title TEXT NOT NULL,
        summary TEXT NOT NULL DEFAULT '',
        research_detail TEXT,
        technical_evaluation TEXT,
        competitive_evaluation TEXT,
        integration_output TEXT,
        processing_status TEXT NOT NULL DEFAULT 'pending',
        error_message TEXT,
        full_data JSON NOT NULL DEFAULT '{}',
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_runs_status_updated ON runs(status, updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_runs_project ON runs(project_id)",
    "CREATE INDEX IF NOT EXISTS idx_hypotheses_run ON hypotheses(run_id, index_in_run)",
]

RUN_COLUMNS = (
    "project_id",
    "job_name",
    "target_spec_id",
    "technical_assets_id",
    "hypothesis_count",
    "status",
    "current_step",
    "research_output",
    "progress_info",
    "error_message",
    "created_at",
    "updated_at",
    "completed_at",
)

HYPOTHESIS_COLUMNS = (
    "uuid",
    "run_id",
    "project_id",
    "hypothesis_number",
    "index_in_run",
    "display_title",
    "summary",
    "research_detail",
    "technical_evaluation",
    "competitive_evaluation",
    "integration_output",
    "processing_status",
    "error_message",
    "full_data",
    "created_at",
    "updated_at",
)

JSON_COLUMNS = frozenset({"progress_info", "full_data"})


def _to_db(column: str, value: Any) -> Any:
    """Serialize a model field value for storage."""
    if column in JSON_COLUMNS:
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json", exclude_none=True)
        return json.dumps(value or {}, ensure_ascii=False, default=str)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _from_row(row: aiosqlite.Row) -> dict[str, Any]:
    data = dict(row)
    for column in JSON_COLUMNS & data.keys():
        data[column] = json.loads(data[column]) if data[column] else {}
    return data


class RunStore:
    """SQLite store implementing the PipelineStore protocol."""

    def __init__(self, db_path: str | Path):
        """
        Initialize run store.

        Args:
            db_path: Path to SQLite database (use ':memory:' for in-memory)
        """
        self.db_path = str(db_path)
        self._initialized = False
        self._conn: aiosqlite.Connection | None = None  # Persistent connection for :memory:
        self._is_memory = self.db_path == ":memory:"

    async def initialize(self) -> None:
        """Create the schema. Safe to call repeatedly."""
        if self._initialized:
            return

        if self._is_memory:
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            db = self._conn
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(self.db_path)

        try:
            await db.execute("PRAGMA foreign_keys = ON")
            for statement in SCHEMA_STATEMENTS:
                await db.execute(statement.strip())
            await db.commit()
            self._initialized = True
            logger.info(f"Initialized run store at {self.db_path}")
        finally:
            if not self._is_memory:
                await db.close()

    @asynccontextmanager
    async def _get_db(self) -> AsyncIterator[aiosqlite.Connection]:
        if not self._initialized:
            await self.initialize()
        if self._is_memory:
            yield self._conn  # type: ignore[misc]
        else:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA foreign_keys = ON")
                yield db

    async def _update(self, table: str, key: str, key_value: Any, allowed: tuple[str, ...], updates: dict[str, Any]) -> None:
        unknown = set(updates) - set(allowed)
        if unknown:
            raise ValueError(f"Unknown {table} fields: {sorted(unknown)}")
        if not updates:
            return
        assignments = ", ".join(f"{column} = ?" for column in updates)
        values = [_to_db(column, value) for column, value in updates.items()]
        async with self._get_db() as db:
            await db.execute(f"UPDATE {table} SET {assignments} WHERE {key} = ?", (*values, key_value))
            await db.commit()

    # --- Resources ---

    async def create_resource(self, resource: Resource) -> Resource:
        async with self._get_db() as db:
            cursor = await db.execute(
                "INSERT INTO resources (project_id, kind, name, content, created_at) VALUES (?, ?, ?, ?, ?)",
                (resource.project_id, resource.kind, resource.name, resource.content, utcnow().isoformat()),
            )
            await db.commit()
            resource_id = cursor.lastrowid
        return resource.model_copy(update={"id": resource_id})

    async def get_resource(self, resource_id: int) -> Resource | None:
        async with self._get_db() as db:
            cursor = await db.execute(
                "SELECT id, project_id, kind, name, content FROM resources WHERE id = ?",
                (resource_id,),
            )
            row = await cursor.fetchone()
        return Resource(**dict(row)) if row else None

    # --- Runs ---

    async def create_run(self, run: Run) -> Run:
        """Insert a run and return it with its assigned id."""
        columns = ", ".join(RUN_COLUMNS)
        placeholders = ", ".join("?" for _ in RUN_COLUMNS)
        values = [_to_db(column, getattr(run, column)) for column in RUN_COLUMNS]
        async with self._get_db() as db:
            cursor = await db.execute(f"INSERT INTO runs ({columns}) VALUES ({placeholders})", values)
            await db.commit()
            run_id = cursor.lastrowid
        logger.info(f"Created run {run_id} ({run.job_name or 'unnamed'})")
        return run.model_copy(update={"id": run_id})

    async def get_run(self, run_id: int) -> Run | None:
        async with self._get_db() as db:
            cursor = await db.execute("SELECT * FROM runs WHERE id = ?", (run_id,))
            row = await cursor.fetchone()
        return Run(**_from_row(row)) if row else None

    async def update_run_status(self, run_id: int, **updates: Any) -> None:
        """Apply a partial update to a run."""
        await self._update("runs", "id", run_id, RUN_COLUMNS, updates)

    async def list_runs(
        self,
        project_id: int | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[Run]:
        clauses = []
        params: list[Any] = []
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._get_db() as db:
            cursor = await db.execute(
                f"SELECT * FROM runs {where} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            )
            rows = await cursor.fetchall()
        return [Run(**_from_row(row)) for row in rows]

    async def find_stale_runs(
        self,
        stale_after_seconds: int,
        limit: int = 10,
        now: datetime | None = None,
    ) -> list[Run]:
        """
        Find runs that should be progressing but have not been touched recently.

        Args:
            stale_after_seconds: Age of updated_at after which a run counts as stale
            limit: Maximum runs returned
            now: Reference time (default: current UTC time)

        Returns:
            Pending or running runs, oldest update first
        """
        cutoff = (now or utcnow()) - timedelta(seconds=stale_after_seconds)
        async with self._get_db() as db:
            cursor = await db.execute(
                """
                SELECT * FROM runs
                WHERE status IN ('pending', 'running') AND updated_at < ?
                ORDER BY updated_at ASC
                LIMIT ?
                """,
                (cutoff.isoformat(), limit),
            )
            rows = await cursor.fetchall()
        return [Run(**_from_row(row)) for row in rows]

    # --- Hypotheses ---

    async def create_hypothesis(self, hypothesis: Hypothesis) -> Hypothesis:
        columns = ", ".join(HYPOTHESIS_COLUMNS)
        placeholders = ", ".join("?" for _ in HYPOTHESIS_COLUMNS)
        values = [_to_db(column, getattr(hypothesis, column)) for column in HYPOTHESIS_COLUMNS]
        async with self._get_db() as db:
            await db.execute(f"INSERT INTO hypotheses ({columns}) VALUES ({placeholders})", values)
            await db.commit()
        return hypothesis

    async def get_hypothesis(self, uuid: str) -> Hypothesis | None:
        async with self._get_db() as db:
            cursor = await db.execute("SELECT * FROM hypotheses WHERE uuid = ?", (uuid,))
            row = await cursor.fetchone()
        return Hypothesis(**_from_row(row)) if row else None

    async def update_hypothesis(self, uuid: str, **updates: Any) -> None:
        """Apply a partial update to a hypothesis; updated_at is refreshed automatically."""
        updates.setdefault("updated_at", utcnow())
        await self._update("hypotheses", "uuid", uuid, HYPOTHESIS_COLUMNS, updates)

    async def get_hypotheses_for_run(self, run_id: int) -> list[Hypothesis]:
        async with self._get_db() as db:
            cursor = await db.execute(
                "SELECT * FROM hypotheses WHERE run_id = ? ORDER BY index_in_run",
                (run_id,),
            )
            rows = await cursor.fetchall()
        return [Hypothesis(**_from_row(row)) for row in rows]

    async def get_existing_hypotheses(
        self, project_id: int, existing_filter: ExistingFilter
    ) -> list[ExistingHypothesis]:
        """
        Hypotheses from completed runs of a project that used the filtered inputs.

        Returns an empty list when the filter names no resources.
        """
        clauses = ["r.project_id = ?", "r.status = 'completed'"]
        params: list[Any] = [project_id]
        named_any = False
        for column, ids in (
            ("target_spec_id", existing_filter.target_spec_ids),
            ("technical_assets_id", existing_filter.technical_assets_ids),
        ):
            if ids:
                named_any = True
                clauses.append(f"r.{column} IN ({', '.join('?' for _ in ids)})")
                params.extend(ids)
        if not named_any:
            return []

        async with self._get_db() as db:
            cursor = await db.execute(
                f"""
                SELECT h.display_title, h.summary FROM hypotheses h
                JOIN runs r ON r.id = h.run_id
                WHERE {' AND '.join(clauses)}
                ORDER BY h.run_id, h.index_in_run
                """,
                params,
            )
            rows = await cursor.fetchall()
        return [ExistingHypothesis(title=row["display_title"] or "", summary=row["summary"] or "") for row in rows]

    async def close(self) -> None:
        """Close the persistent connection, if any."""
        if self._conn:
            await self._conn.close()
            self._conn = None
        self._initialized = False
