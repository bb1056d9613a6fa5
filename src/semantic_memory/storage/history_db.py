# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Memory change history database manager.

Manages an SQLite database recording every applied ADD/UPDATE/DELETE.
Async operations using aiosqlite; each call opens its own connection.
"""

import json
import logging
import os

import aiosqlite

from ..models.history import HistoryRecord

logger = logging.getLogger(__name__)


class HistoryDB:
    """Async SQLite store for memory change history."""

    def __init__(self, db_path: str):
        """
        Initialize history database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize database schema if not exists."""
        if self._initialized:
            return

        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS memory_history (
                    id TEXT PRIMARY KEY,
                    memory_id TEXT NOT NULL,
                    event TEXT NOT NULL,
                    timestamp REAL NOT NULL,
                    owner_id TEXT,
                    old_content TEXT,
                    new_content TEXT,
                    version INTEGER,
                    metadata TEXT
                )
            """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_history_memory_id ON memory_history(memory_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_history_timestamp ON memory_history(timestamp)")
            await db.commit()

        self._initialized = True
        logger.info(f"Memory history database initialized at {self.db_path}")

    async def add_record(self, record: HistoryRecord) -> None:
        if not self._initialized:
            await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO memory_history
                (id, memory_id, event, timestamp, owner_id, old_content, new_content, version, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    record.id,
                    record.memory_id,
                    record.event,
                    record.timestamp,
                    record.owner_id,
                    record.old_content,
                    record.new_content,
                    record.version,
                    json.dumps(record.metadata) if record.metadata else None,
                ),
            )
            await db.commit()

    async def get_history(self, memory_id: str) -> list[HistoryRecord]:
        """
        Get all records for a memory, oldest first.

        Args:
            memory_id: Memory whose history to return
        """
        if not self._initialized:
            await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                SELECT id, memory_id, event, timestamp, owner_id, old_content, new_content, version, metadata
                FROM memory_history
                WHERE memory_id = ?
                ORDER BY timestamp ASC, rowid ASC
            """,
                (memory_id,),
            )

            records = []
            for row in await cursor.fetchall():
                records.append(
                    HistoryRecord(
                        id=row[0],
                        memory_id=row[1],
                        event=row[2],
                        timestamp=row[3],
                        owner_id=row[4],
                        old_content=row[5],
                        new_content=row[6],
                        version=row[7],
                        metadata=json.loads(row[8]) if row[8] else {},
                    )
                )
            return records

    async def reset(self) -> None:
        """Delete every history record."""
        if not self._initialized:
            await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM memory_history")
            await db.commit()
        logger.info("Memory history cleared")

    async def close(self) -> None:
        """Close database connections."""
        # aiosqlite connections are per-call, so nothing to close
        pass
