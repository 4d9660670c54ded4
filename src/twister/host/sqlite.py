"""SQLite-backed store for local hosts.

Keeps source state (sync cursors, webhook secrets, watch registrations)
across process restarts so that a local `plot sync` can resume an
interrupted run. Uses aiosqlite for async SQLite access.

Example:
    store = SqliteStore(".twister/store.db")
    await store.initialize()

    github = store.scoped("github")
    await github.set("sync_state_acme/api", {"page": 2})

    await store.close()
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import aiosqlite

from twister.host.base import Store
from twister.logging import get_logger

logger = get_logger(__name__)


class SqliteStore(Store):
    """Store backed by a single `kv_store` table.

    The table schema:
        - namespace: TEXT (source name)
        - key: TEXT
        - value: TEXT (JSON)
        - PRIMARY KEY (namespace, key)

    One connection is opened by `initialize()`; `scoped()` returns views on
    other namespaces that share it.
    """

    def __init__(
        self,
        db_path: str,
        namespace: str = "default",
        *,
        connection: aiosqlite.Connection | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: Path to the SQLite file, or ":memory:".
            namespace: Key namespace for this view.
            connection: Shared connection (used by scoped views).
        """
        self._db_path = db_path
        self._namespace = namespace
        self._conn = connection
        self._owns_connection = connection is None

    @property
    def namespace(self) -> str:
        return self._namespace

    async def initialize(self) -> None:
        """Open the database and create the table if needed."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)

        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                namespace TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (namespace, key)
            )
        """)
        await self._conn.commit()

        logger.info("Store initialized", extra={"db_path": self._db_path})

    async def close(self) -> None:
        """Close the connection if this store opened it."""
        if self._conn is not None and self._owns_connection:
            await self._conn.close()
        self._conn = None

    def scoped(self, namespace: str) -> SqliteStore:
        """Return a view on another namespace sharing this connection."""
        return SqliteStore(self._db_path, namespace, connection=self._require_connection())

    def _require_connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Store not initialized. Call initialize() first.")
        return self._conn

    async def get(self, key: str) -> Any | None:
        conn = self._require_connection()
        async with conn.execute(
            "SELECT value FROM kv_store WHERE namespace = ? AND key = ?",
            (self._namespace, key),
        ) as cursor:
            row = await cursor.fetchone()

        if row is None:
            return None
        return json.loads(row[0])

    async def set(self, key: str, value: Any) -> None:
        conn = self._require_connection()
        await conn.execute(
            "INSERT OR REPLACE INTO kv_store (namespace, key, value) VALUES (?, ?, ?)",
            (self._namespace, key, json.dumps(value)),
        )
        await conn.commit()

    async def clear(self, key: str) -> None:
        conn = self._require_connection()
        await conn.execute(
            "DELETE FROM kv_store WHERE namespace = ? AND key = ?",
            (self._namespace, key),
        )
        await conn.commit()

    async def list(self, prefix: str = "") -> list[str]:
        conn = self._require_connection()
        # substr comparison avoids LIKE wildcards in keys such as "owner/repo_name"
        async with conn.execute(
            "SELECT key FROM kv_store WHERE namespace = ? AND substr(key, 1, ?) = ? "
            "ORDER BY key",
            (self._namespace, len(prefix), prefix),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def clear_all(self) -> None:
        conn = self._require_connection()
        cursor = await conn.execute(
            "DELETE FROM kv_store WHERE namespace = ?",
            (self._namespace,),
        )
        await conn.commit()
        logger.info(
            "Cleared store namespace",
            extra={"namespace": self._namespace, "deleted": cursor.rowcount},
        )
