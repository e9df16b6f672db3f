"""Persistence layer for debates, utterances and interventions.

Rows are stored in PostgreSQL with JSONB for the free-form columns.
The in-memory implementation backs tests and local runs without a database.
"""

import json
import logging
from typing import Protocol, Dict, Any, Optional, List

import asyncpg

from .state import DebateSession, Intervention, Utterance

logger = logging.getLogger(__name__)


class DebateStorage(Protocol):
    """Storage interface used by the orchestrator and the supervisor.

    Writes are single-row atomic; nothing here spans multiple rows in
    one transaction.
    """

    async def create_session(self, session: DebateSession) -> DebateSession:
        """Insert a new debate session row."""
        ...

    async def get_session(self, debate_id: str) -> DebateSession:
        """Load a debate session.

        Raises:
            ValueError: If the session does not exist
        """
        ...

    async def update_session(self, debate_id: str, **fields: Any) -> DebateSession:
        """Update columns of a session row and return the new row."""
        ...

    async def create_utterance(self, utterance: Utterance) -> Utterance:
        """Append an utterance; the returned record carries its id."""
        ...

    async def list_utterances(self, debate_id: str) -> List[Utterance]:
        """All utterances of a debate ordered by timestamp."""
        ...

    async def create_intervention(self, intervention: Intervention) -> Intervention:
        ...

    async def update_intervention_response(
        self, intervention_id: int, response: str, response_timestamp_ms: int
    ) -> Intervention:
        ...

    async def list_interventions(self, debate_id: str) -> List[Intervention]:
        ...

    async def save_transcript(self, debate_id: str, transcript: Dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        """Release connections held by the backend."""
        ...


def _load_json(value: Any, default: Any = None) -> Any:
    """asyncpg may hand JSONB back as a string or as parsed data."""
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresDebateStorage:
    """PostgreSQL implementation of DebateStorage.

    Expected table schema (created on first use):
    CREATE TABLE debates (id TEXT PRIMARY KEY, proposition TEXT, ...);
    CREATE TABLE debate_utterances (id BIGSERIAL PRIMARY KEY, debate_id TEXT, ...);
    CREATE TABLE debate_interventions (id BIGSERIAL PRIMARY KEY, debate_id TEXT, ...);
    """

    _SESSION_COLUMNS = (
        "proposition",
        "proposition_context",
        "current_phase",
        "status",
        "current_speaker",
        "started_at",
        "completed_at",
        "total_elapsed_ms",
        "paused_phase",
        "error",
        "flow_mode",
        "awaiting_continue",
        "transcript",
    )
    _JSON_COLUMNS = ("proposition_context", "transcript")

    def __init__(self, conn_string: str):
        """Initialize with PostgreSQL connection string.

        Args:
            conn_string: asyncpg connection string
        """
        self.conn_string = conn_string
        self._pool: Optional[asyncpg.Pool] = None

    async def _get_pool(self) -> asyncpg.Pool:
        """Get or create database connection pool."""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(self.conn_string, min_size=1, max_size=5)
            await self._ensure_tables()
        return self._pool

    async def _ensure_tables(self) -> None:
        """Create debate tables if they don't exist."""
        async with self._pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS debates (
                    id TEXT PRIMARY KEY,
                    proposition TEXT NOT NULL,
                    proposition_context JSONB,
                    current_phase TEXT NOT NULL DEFAULT 'INITIALIZING',
                    status TEXT NOT NULL DEFAULT 'initializing',
                    current_speaker TEXT NOT NULL DEFAULT 'moderator',
                    started_at TEXT,
                    completed_at TEXT,
                    total_elapsed_ms BIGINT NOT NULL DEFAULT 0,
                    paused_phase TEXT,
                    error TEXT,
                    flow_mode TEXT NOT NULL DEFAULT 'auto',
                    awaiting_continue BOOLEAN NOT NULL DEFAULT FALSE,
                    transcript JSONB,
                    created_at TIMESTAMP DEFAULT NOW(),
                    updated_at TIMESTAMP DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS debate_utterances (
                    id BIGSERIAL PRIMARY KEY,
                    debate_id TEXT NOT NULL REFERENCES debates(id) ON DELETE CASCADE,
                    timestamp_ms BIGINT NOT NULL,
                    phase TEXT NOT NULL,
                    speaker TEXT NOT NULL,  -- 'pro', 'con', 'moderator'
                    content TEXT NOT NULL,
                    metadata JSONB DEFAULT '{}',
                    created_at TIMESTAMP DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_debate_utterances_debate
                ON debate_utterances(debate_id, timestamp_ms);
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS debate_interventions (
                    id BIGSERIAL PRIMARY KEY,
                    debate_id TEXT NOT NULL REFERENCES debates(id) ON DELETE CASCADE,
                    timestamp_ms BIGINT NOT NULL,
                    type TEXT NOT NULL,
                    content TEXT NOT NULL,
                    directed_to TEXT,
                    response TEXT,
                    response_timestamp_ms BIGINT,
                    created_at TIMESTAMP DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_debate_interventions_debate
                ON debate_interventions(debate_id, timestamp_ms);
            """)
            logger.debug("Ensured debate tables exist")

    def _session_from_row(self, row: Any) -> DebateSession:
        session: DebateSession = {"id": row["id"]}
        for column in self._SESSION_COLUMNS:
            value = row[column]
            session[column] = _load_json(value) if column in self._JSON_COLUMNS else value
        return session

    @staticmethod
    def _utterance_from_row(row: Any) -> Utterance:
        return {
            "id": row["id"],
            "debate_id": row["debate_id"],
            "timestamp_ms": row["timestamp_ms"],
            "phase": row["phase"],
            "speaker": row["speaker"],
            "content": row["content"],
            "metadata": _load_json(row["metadata"], {}),
        }

    @staticmethod
    def _intervention_from_row(row: Any) -> Intervention:
        return {
            "id": row["id"],
            "debate_id": row["debate_id"],
            "timestamp_ms": row["timestamp_ms"],
            "type": row["type"],
            "content": row["content"],
            "directed_to": row["directed_to"],
            "response": row["response"],
            "response_timestamp_ms": row["response_timestamp_ms"],
        }

    async def create_session(self, session: DebateSession) -> DebateSession:
        pool = await self._get_pool()
        columns = [c for c in self._SESSION_COLUMNS if c in session]
        values = [
            json.dumps(session[c]) if c in self._JSON_COLUMNS and session[c] is not None else session[c]
            for c in columns
        ]
        placeholders = ", ".join(f"${i}" for i in range(2, len(columns) + 2))
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"INSERT INTO debates (id, {', '.join(columns)}) VALUES ($1, {placeholders}) RETURNING *",
                session["id"],
                *values,
            )
        logger.info(f"Created debate session {session['id']}")
        return self._session_from_row(row)

    async def get_session(self, debate_id: str) -> DebateSession:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM debates WHERE id = $1", debate_id)
        if not row:
            raise ValueError(f"No debate session found for {debate_id}")
        return self._session_from_row(row)

    async def update_session(self, debate_id: str, **fields: Any) -> DebateSession:
        unknown = set(fields) - set(self._SESSION_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")
        if not fields:
            return await self.get_session(debate_id)

        pool = await self._get_pool()
        columns = list(fields)
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=2))
        values = [
            json.dumps(fields[c]) if c in self._JSON_COLUMNS and fields[c] is not None else fields[c]
            for c in columns
        ]
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"UPDATE debates SET {assignments}, updated_at = NOW() WHERE id = $1 RETURNING *",
                debate_id,
                *values,
            )
        if not row:
            raise ValueError(f"No debate session found for {debate_id}")
        logger.debug(f"Updated debate {debate_id}: {columns}")
        return self._session_from_row(row)

    async def create_utterance(self, utterance: Utterance) -> Utterance:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO debate_utterances (debate_id, timestamp_ms, phase, speaker, content, metadata)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING *
                """,
                utterance["debate_id"],
                utterance["timestamp_ms"],
                utterance["phase"],
                utterance["speaker"],
                utterance["content"],
                json.dumps(utterance.get("metadata") or {}),
            )
        return self._utterance_from_row(row)

    async def list_utterances(self, debate_id: str) -> List[Utterance]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM debate_utterances WHERE debate_id = $1 ORDER BY timestamp_ms, id",
                debate_id,
            )
        return [self._utterance_from_row(row) for row in rows]

    async def create_intervention(self, intervention: Intervention) -> Intervention:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO debate_interventions (debate_id, timestamp_ms, type, content, directed_to)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                """,
                intervention["debate_id"],
                intervention["timestamp_ms"],
                intervention["type"],
                intervention["content"],
                intervention.get("directed_to"),
            )
        return self._intervention_from_row(row)

    async def update_intervention_response(
        self, intervention_id: int, response: str, response_timestamp_ms: int
    ) -> Intervention:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE debate_interventions
                SET response = $2, response_timestamp_ms = $3
                WHERE id = $1 AND response IS NULL
                RETURNING *
                """,
                intervention_id,
                response,
                response_timestamp_ms,
            )
        if not row:
            raise ValueError(f"No unanswered intervention found for id {intervention_id}")
        return self._intervention_from_row(row)

    async def list_interventions(self, debate_id: str) -> List[Intervention]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM debate_interventions WHERE debate_id = $1 ORDER BY timestamp_ms, id",
                debate_id,
            )
        return [self._intervention_from_row(row) for row in rows]

    async def save_transcript(self, debate_id: str, transcript: Dict[str, Any]) -> None:
        await self.update_session(debate_id, transcript=transcript)
        logger.info(f"Saved transcript for debate {debate_id}")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


class InMemoryDebateStorage:
    """In-memory implementation for testing.

    Simple dict-based storage - not for production.
    """

    def __init__(self):
        """Initialize empty storage."""
        self.sessions: Dict[str, DebateSession] = {}
        self.utterances: Dict[str, List[Utterance]] = {}
        self.interventions: Dict[int, Intervention] = {}
        self._next_utterance_id = 1
        self._next_intervention_id = 1

    async def create_session(self, session: DebateSession) -> DebateSession:
        if session["id"] in self.sessions:
            raise ValueError(f"Debate session {session['id']} already exists")
        self.sessions[session["id"]] = dict(session)
        self.utterances[session["id"]] = []
        return dict(self.sessions[session["id"]])

    async def get_session(self, debate_id: str) -> DebateSession:
        if debate_id not in self.sessions:
            raise ValueError(f"No debate session found for {debate_id}")
        return dict(self.sessions[debate_id])

    async def update_session(self, debate_id: str, **fields: Any) -> DebateSession:
        if debate_id not in self.sessions:
            raise ValueError(f"No debate session found for {debate_id}")
        unknown = set(fields) - set(PostgresDebateStorage._SESSION_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")
        self.sessions[debate_id].update(fields)
        return dict(self.sessions[debate_id])

    async def create_utterance(self, utterance: Utterance) -> Utterance:
        stored: Utterance = {**utterance, "id": self._next_utterance_id}
        self._next_utterance_id += 1
        self.utterances.setdefault(utterance["debate_id"], []).append(stored)
        return dict(stored)

    async def list_utterances(self, debate_id: str) -> List[Utterance]:
        rows = self.utterances.get(debate_id, [])
        return [dict(u) for u in sorted(rows, key=lambda u: (u["timestamp_ms"], u["id"]))]

    async def create_intervention(self, intervention: Intervention) -> Intervention:
        stored: Intervention = {
            "response": None,
            "response_timestamp_ms": None,
            "directed_to": None,
            **intervention,
            "id": self._next_intervention_id,
        }
        self._next_intervention_id += 1
        self.interventions[stored["id"]] = stored
        return dict(stored)

    async def update_intervention_response(
        self, intervention_id: int, response: str, response_timestamp_ms: int
    ) -> Intervention:
        stored = self.interventions.get(intervention_id)
        if stored is None or stored.get("response") is not None:
            raise ValueError(f"No unanswered intervention found for id {intervention_id}")
        stored["response"] = response
        stored["response_timestamp_ms"] = response_timestamp_ms
        return dict(stored)

    async def list_interventions(self, debate_id: str) -> List[Intervention]:
        rows = [i for i in self.interventions.values() if i["debate_id"] == debate_id]
        return [dict(i) for i in sorted(rows, key=lambda i: (i["timestamp_ms"], i["id"]))]

    async def save_transcript(self, debate_id: str, transcript: Dict[str, Any]) -> None:
        await self.update_session(debate_id, transcript=transcript)

    async def close(self) -> None:
        pass
