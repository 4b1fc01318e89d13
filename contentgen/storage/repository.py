"""
Repository pattern for data access.

Handles Generation and Agent persistence. Every sqlite3 failure is
translated into PersistenceError so callers handle one error type.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

import structlog

from .db import DEFAULT_DB_PATH, get_connection
from .models import Agent, Generation, GenerationStatus, predecessors_of
from ..core.errors import InvalidStatusTransition, PersistenceError

logger = structlog.get_logger(__name__)


_GENERATION_COLUMNS = (
    "id", "user_id", "agent_id", "prompt", "context", "parameters", "model",
    "provider", "status", "output", "metadata", "sources", "input_tokens",
    "output_tokens", "total_tokens", "cost", "duration", "error",
    "retry_count", "max_retries", "tags", "created_at", "updated_at",
    "completed_at",
)

_AGENT_COLUMNS = (
    "id", "user_id", "name", "type", "model", "system_prompt", "temperature",
    "max_tokens", "output_format", "constraints", "description", "is_default",
    "usage_count", "created_at",
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the generation and agent tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    with _connect(db_path) as conn:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS agent (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                type TEXT NOT NULL,
                model TEXT NOT NULL,
                system_prompt TEXT NOT NULL,
                temperature REAL NOT NULL DEFAULT 0.7,
                max_tokens INTEGER NOT NULL DEFAULT 1000,
                output_format TEXT NOT NULL DEFAULT 'text',
                constraints TEXT NOT NULL DEFAULT '[]',
                description TEXT,
                is_default INTEGER NOT NULL DEFAULT 0,
                usage_count INTEGER NOT NULL DEFAULT 0 CHECK (usage_count >= 0),
                created_at TEXT NOT NULL
            )
        """)
        # At most one default agent per (user, type)
        conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS agent_single_default
            ON agent (user_id, type) WHERE is_default = 1
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS generation (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                agent_id TEXT REFERENCES agent (id) ON DELETE SET NULL,
                prompt TEXT NOT NULL,
                context TEXT,
                parameters TEXT NOT NULL DEFAULT '{}',
                model TEXT NOT NULL,
                provider TEXT NOT NULL,
                status TEXT NOT NULL,
                output TEXT,
                metadata TEXT NOT NULL DEFAULT '{}',
                sources TEXT NOT NULL DEFAULT '[]',
                input_tokens INTEGER,
                output_tokens INTEGER,
                total_tokens INTEGER,
                cost REAL,
                duration INTEGER,
                error TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL DEFAULT 3,
                tags TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS generation_user_created
            ON generation (user_id, created_at)
        """)
        conn.commit()
    logger.info("storage.schema_initialized", db_path=db_path)


@contextmanager
def _connect(db_path: str) -> Iterator[sqlite3.Connection]:
    try:
        conn = get_connection(db_path)
    except sqlite3.Error as e:
        raise PersistenceError(f"Cannot open database {db_path}: {e}") from e
    try:
        yield conn
    except sqlite3.Error as e:
        conn.rollback()
        raise PersistenceError(str(e)) from e
    finally:
        conn.close()


def _dump_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _load_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


class GenerationRepository:
    """Persistence for Generation records.

    Status updates are guarded in SQL: a row is only rewritten when its
    stored status may legally move to the new one, so a terminal record can
    never be overwritten even by a concurrent writer.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def create(self, generation: Generation) -> Generation:
        """Insert a new Generation record."""
        row = self._to_row(generation)
        placeholders = ", ".join("?" for _ in _GENERATION_COLUMNS)
        with _connect(self.db_path) as conn:
            conn.execute(
                f"INSERT INTO generation ({', '.join(_GENERATION_COLUMNS)}) VALUES ({placeholders})",
                [row[column] for column in _GENERATION_COLUMNS],
            )
            conn.commit()
        return generation

    def save_transition(self, generation: Generation) -> Generation:
        """Persist a record that has just moved to a new status.

        Raises:
            InvalidStatusTransition: If the stored status cannot move to the
                record's status (e.g. it is already terminal)
            PersistenceError: If the datastore is unreachable
        """
        row = self._to_row(generation)
        mutable = [c for c in _GENERATION_COLUMNS if c not in ("id", "user_id", "created_at")]
        allowed = sorted(status.value for status in predecessors_of(generation.status))
        assignments = ", ".join(f"{column} = ?" for column in mutable)
        status_marks = ", ".join("?" for _ in allowed)

        with _connect(self.db_path) as conn:
            cursor = conn.execute(
                f"UPDATE generation SET {assignments} "
                f"WHERE id = ? AND status IN ({status_marks})",
                [row[column] for column in mutable] + [generation.id] + allowed,
            )
            conn.commit()
            if cursor.rowcount == 0:
                current = conn.execute(
                    "SELECT status FROM generation WHERE id = ?", (generation.id,)
                ).fetchone()
                if current is None:
                    raise PersistenceError(f"Generation not found: {generation.id}")
                raise InvalidStatusTransition(
                    generation.id, current["status"], generation.status.value
                )
        return generation

    def get(self, generation_id: str) -> Optional[Generation]:
        with _connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM generation WHERE id = ?", (generation_id,)
            ).fetchone()
        return self._from_row(row) if row else None

    def list_for_user(
        self,
        user_id: str,
        status: Optional[GenerationStatus] = None,
        model: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Generation]:
        """List a user's generations, newest first.

        Args:
            user_id: Owner of the generations
            status: Optional filter for a lifecycle status
            model: Optional filter for a model identifier
            limit: Maximum number of records to return
            offset: Number of records to skip

        Returns:
            List of generations ordered by creation time (newest first)
        """
        where, params = self._user_filter(user_id, status, model)
        with _connect(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM generation WHERE {where} "
                "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
        return [self._from_row(row) for row in rows]

    def count_for_user(
        self,
        user_id: str,
        status: Optional[GenerationStatus] = None,
        model: Optional[str] = None,
    ) -> int:
        where, params = self._user_filter(user_id, status, model)
        with _connect(self.db_path) as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM generation WHERE {where}", params
            ).fetchone()
        return row[0]

    def aggregate_for_user(self, user_id: str) -> Dict[str, object]:
        """Aggregate a user's generation history in a single query.

        Returns:
            Raw aggregate values; sums are zero and the model is None when
            the user has no generations
        """
        with _connect(self.db_path) as conn:
            row = conn.execute("""
                SELECT
                    COUNT(*) AS total_generations,
                    SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS successful,
                    SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                    SUM(total_tokens) AS total_tokens,
                    SUM(cost) AS total_cost,
                    AVG(duration) AS average_duration,
                    (SELECT model FROM generation
                     WHERE user_id = :user_id
                     ORDER BY created_at DESC, rowid DESC LIMIT 1) AS latest_model
                FROM generation
                WHERE user_id = :user_id
            """, {"user_id": user_id}).fetchone()

        return {
            "total_generations": row["total_generations"] or 0,
            "successful_generations": row["successful"] or 0,
            "failed_generations": row["failed"] or 0,
            "total_tokens": row["total_tokens"] or 0,
            "total_cost": float(row["total_cost"] or 0),
            "average_duration": float(row["average_duration"] or 0),
            "latest_model": row["latest_model"],
        }

    @staticmethod
    def _user_filter(user_id, status, model):
        conditions = ["user_id = ?"]
        params: List[object] = [user_id]
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if model:
            conditions.append("model = ?")
            params.append(model)
        return " AND ".join(conditions), params

    @staticmethod
    def _to_row(generation: Generation) -> Dict[str, object]:
        return {
            "id": generation.id,
            "user_id": generation.user_id,
            "agent_id": generation.agent_id,
            "prompt": generation.prompt,
            "context": generation.context,
            "parameters": json.dumps(generation.parameters),
            "model": generation.model,
            "provider": generation.provider,
            "status": generation.status.value,
            "output": generation.output,
            "metadata": json.dumps(generation.metadata),
            "sources": json.dumps(generation.sources),
            "input_tokens": generation.input_tokens,
            "output_tokens": generation.output_tokens,
            "total_tokens": generation.total_tokens,
            "cost": generation.cost,
            "duration": generation.duration,
            "error": generation.error,
            "retry_count": generation.retry_count,
            "max_retries": generation.max_retries,
            "tags": json.dumps(generation.tags),
            "created_at": _dump_time(generation.created_at),
            "updated_at": _dump_time(generation.updated_at),
            "completed_at": _dump_time(generation.completed_at),
        }

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Generation:
        return Generation(
            id=row["id"],
            user_id=row["user_id"],
            agent_id=row["agent_id"],
            prompt=row["prompt"],
            context=row["context"],
            parameters=json.loads(row["parameters"]),
            model=row["model"],
            provider=row["provider"],
            status=GenerationStatus(row["status"]),
            output=row["output"],
            metadata=json.loads(row["metadata"]),
            sources=json.loads(row["sources"]),
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            total_tokens=row["total_tokens"],
            cost=row["cost"],
            duration=row["duration"],
            error=row["error"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            tags=json.loads(row["tags"]),
            created_at=_load_time(row["created_at"]),
            updated_at=_load_time(row["updated_at"]),
            completed_at=_load_time(row["completed_at"]),
        )


class AgentRepository:
    """Persistence for Agent presets."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def create(self, agent: Agent) -> Agent:
        """Insert an agent, clearing any other default of the same user and type.

        Both writes share one immediate transaction so concurrent creators
        cannot leave two defaults behind.
        """
        row = self._to_row(agent)
        placeholders = ", ".join("?" for _ in _AGENT_COLUMNS)
        with _connect(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            if agent.is_default:
                self._clear_defaults(conn, agent.user_id, agent.type)
            conn.execute(
                f"INSERT INTO agent ({', '.join(_AGENT_COLUMNS)}) VALUES ({placeholders})",
                [row[column] for column in _AGENT_COLUMNS],
            )
            conn.commit()
        return agent

    def get(self, agent_id: str) -> Optional[Agent]:
        with _connect(self.db_path) as conn:
            row = conn.execute("SELECT * FROM agent WHERE id = ?", (agent_id,)).fetchone()
        return self._from_row(row) if row else None

    def list_for_user(self, user_id: str, agent_type: Optional[str] = None) -> List[Agent]:
        query = "SELECT * FROM agent WHERE user_id = ?"
        params: List[object] = [user_id]
        if agent_type:
            query += " AND type = ?"
            params.append(agent_type)
        query += " ORDER BY created_at DESC"
        with _connect(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._from_row(row) for row in rows]

    def set_default(self, agent_id: str, user_id: str) -> Agent:
        """Make an agent its owner's default for the agent's type.

        Raises:
            PersistenceError: If the agent does not exist for this user
        """
        with _connect(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT type FROM agent WHERE id = ? AND user_id = ?", (agent_id, user_id)
            ).fetchone()
            if row is None:
                conn.rollback()
                raise PersistenceError(f"Agent not found: {agent_id}")
            self._clear_defaults(conn, user_id, row["type"])
            conn.execute("UPDATE agent SET is_default = 1 WHERE id = ?", (agent_id,))
            conn.commit()
        return self.get(agent_id)

    def increment_usage(self, agent_id: str, amount: int = 1) -> None:
        """Atomically add ``amount`` to an agent's usage counter.

        The increment happens inside the datastore, never as a
        read-modify-write in Python, so concurrent callers cannot lose
        updates.
        """
        with _connect(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE agent SET usage_count = usage_count + ? WHERE id = ?",
                (amount, agent_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise PersistenceError(f"Agent not found: {agent_id}")

    @staticmethod
    def _clear_defaults(conn: sqlite3.Connection, user_id: str, agent_type: str) -> None:
        conn.execute(
            "UPDATE agent SET is_default = 0 WHERE user_id = ? AND type = ? AND is_default = 1",
            (user_id, agent_type),
        )

    @staticmethod
    def _to_row(agent: Agent) -> Dict[str, object]:
        return {
            "id": agent.id,
            "user_id": agent.user_id,
            "name": agent.name,
            "type": agent.type,
            "model": agent.model,
            "system_prompt": agent.system_prompt,
            "temperature": agent.temperature,
            "max_tokens": agent.max_tokens,
            "output_format": agent.output_format,
            "constraints": json.dumps(agent.constraints),
            "description": agent.description,
            "is_default": int(agent.is_default),
            "usage_count": agent.usage_count,
            "created_at": _dump_time(agent.created_at),
        }

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Agent:
        return Agent(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            type=row["type"],
            model=row["model"],
            system_prompt=row["system_prompt"],
            temperature=row["temperature"],
            max_tokens=row["max_tokens"],
            output_format=row["output_format"],
            constraints=json.loads(row["constraints"]),
            description=row["description"],
            is_default=bool(row["is_default"]),
            usage_count=row["usage_count"],
            created_at=_load_time(row["created_at"]),
        )
