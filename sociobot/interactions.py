"""Interaction log with SQLite persistence."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import aiosqlite

logger = logging.getLogger(__name__)

EVENT_KINDS = ("message_received", "agent_response", "delivery", "reaction")


class InteractionLog:
    """Diagnostic record of what the bot saw, decided and sent."""

    def __init__(self, db_path: str = "interactions.db"):
        # Handle in-memory database path specially
        if db_path == ":memory:":
            self.db_path: str | Path = ":memory:"
        else:
            self.db_path = Path(db_path).expanduser()
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                CREATE TABLE IF NOT EXISTS interactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    agent TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    channel_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    details TEXT NOT NULL,
                    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """
            ) as _:
                pass
            async with db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_agent_channel
                ON interactions (agent, channel_id, timestamp)
            """
            ) as _:
                pass
            await db.commit()
            logger.debug(f"Initialized interaction log database: {self.db_path}")

    async def record(
        self,
        agent: str,
        kind: str,
        channel_id: int | str,
        message_id: int | str,
        **details: Any,
    ) -> None:
        """Append one event. Storage errors are logged, never raised."""
        if kind not in EVENT_KINDS:
            raise ValueError(f"Unknown interaction kind: {kind}")
        try:
            async with (
                self._lock,
                aiosqlite.connect(self.db_path) as db,
                db.execute(
                    """
                    INSERT INTO interactions (agent, kind, channel_id, message_id, details)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (agent, kind, str(channel_id), str(message_id), json.dumps(details)),
                ) as _,
            ):
                await db.commit()
        except aiosqlite.Error as e:
            logger.warning(f"Could not record {kind} for message {message_id}: {e}")
            return
        logger.debug(f"Recorded {kind}: {agent} {channel_id}/{message_id}")

    async def recent(
        self, agent: str, channel_id: int | str | None = None, limit: int = 20
    ) -> list[dict[str, Any]]:
        """Most recent events for an agent, oldest first."""
        query = """
                SELECT kind, channel_id, message_id, details, timestamp FROM interactions
                WHERE agent = ?
            """
        params: list[Any] = [agent]
        if channel_id is not None:
            query += " AND channel_id = ?"
            params.append(str(channel_id))
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        async with (
            self._lock,
            aiosqlite.connect(self.db_path) as db,
            db.execute(query, params) as cursor,
        ):
            rows = await cursor.fetchall()

        rows_list = list(rows)
        rows_list.reverse()
        return [
            {
                "kind": row[0],
                "channel_id": row[1],
                "message_id": row[2],
                "details": json.loads(row[3]),
                "timestamp": row[4],
            }
            for row in rows_list
        ]
