"""SQLite database module for lurk-economy.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory), so every multi-statement operation
is its own transaction and SQLite serializes the writers.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime
from typing import Any, Iterable

from .utils import format_timestamp, now_utc


class EconomyDatabase:
    """SQLite-backed ledger store for users, channels, shop and dedup journal."""

    def __init__(self, db_path: str, logger: logging.Logger) -> None:
        self._db_path = db_path
        self._logger = logger

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    twitch_id TEXT NOT NULL UNIQUE,
                    display_name TEXT NOT NULL,
                    points INTEGER NOT NULL DEFAULT 0 CHECK (points >= 0),
                    xp INTEGER NOT NULL DEFAULT 0 CHECK (xp >= 0),
                    level INTEGER NOT NULL DEFAULT 1,
                    last_presence_check_at TEXT NOT NULL,
                    last_modified_at TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS channels (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    twitch_id TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS point_ledger (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    points INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    reason TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_point_ledger_user ON point_ledger(user_id)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS shop_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE COLLATE NOCASE,
                    cost INTEGER NOT NULL CHECK (cost > 0),
                    description TEXT,
                    is_enabled BOOLEAN NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS redemptions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    item_id INTEGER NOT NULL REFERENCES shop_items(id),
                    cost INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_redemptions_user ON redemptions(user_id)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS processed_commands (
                    id TEXT PRIMARY KEY,
                    command TEXT NOT NULL,
                    user_id TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_processed_commands_created_at "
                "ON processed_commands(created_at)"
            )

            conn.commit()
            self._logger.info("Database tables created/verified")
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  Users
    # ══════════════════════════════════════════════════════════

    async def get_user(self, twitch_id: str) -> dict | None:
        """Return user row as dict, or None if not tracked yet."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM users WHERE twitch_id = ?", (twitch_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_users(self, twitch_ids: Iterable[str]) -> dict[str, dict]:
        """Return {twitch_id: row} for every tracked id in the batch."""
        ids = list(twitch_ids)
        if not ids:
            return {}
        loop = asyncio.get_running_loop()

        def _sync() -> dict[str, dict]:
            conn = self._get_connection()
            try:
                placeholders = ",".join("?" for _ in ids)
                rows = conn.execute(
                    f"SELECT * FROM users WHERE twitch_id IN ({placeholders})", ids,
                ).fetchall()
                return {row["twitch_id"]: dict(row) for row in rows}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def create_user(
        self, twitch_id: str, display_name: str, now: datetime | None = None,
    ) -> bool:
        """Insert a fresh user (0 points, 0 xp, level 1). Returns False if it already existed."""
        loop = asyncio.get_running_loop()
        ts = format_timestamp(now or now_utc())

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO users (twitch_id, display_name, points, xp, level, "
                    "last_presence_check_at, last_modified_at, created_at) "
                    "VALUES (?, ?, 0, 0, 1, ?, ?, ?)",
                    (twitch_id, display_name, ts, ts, ts),
                )
                conn.commit()
                return cursor.rowcount == 1
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def apply_presence(
        self,
        twitch_id: str,
        expected_check_at: str,
        display_name: str,
        points: int,
        xp: int,
        level: int,
        new_check_at: str,
        now: datetime | None = None,
        reason: str | None = None,
    ) -> bool:
        """Apply one presence evaluation as an optimistic compare-and-swap.

        The row is only written if ``last_presence_check_at`` still equals
        ``expected_check_at``; a concurrent pass that already consumed the gap
        makes this a no-op and returns False. A positive ``points`` award
        appends one EARN ledger row in the same transaction.
        """
        loop = asyncio.get_running_loop()
        ts = format_timestamp(now or now_utc())

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE users SET points = points + ?, xp = xp + ?, level = ?, display_name = ?, "
                    "last_presence_check_at = ?, last_modified_at = ? "
                    "WHERE twitch_id = ? AND last_presence_check_at = ?",
                    (points, xp, level, display_name, new_check_at, ts, twitch_id, expected_check_at),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return False
                if points > 0:
                    conn.execute(
                        "INSERT INTO point_ledger (user_id, points, type, reason, created_at) "
                        "SELECT id, ?, 'EARN', ?, ? FROM users WHERE twitch_id = ?",
                        (points, reason, ts, twitch_id),
                    )
                conn.commit()
                return True
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def rename_user(
        self, twitch_id: str, display_name: str, now: datetime | None = None,
    ) -> None:
        """Record a new display name without touching the presence anchor."""
        loop = asyncio.get_running_loop()
        ts = format_timestamp(now or now_utc())

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "UPDATE users SET display_name = ?, last_modified_at = ? "
                    "WHERE twitch_id = ? AND display_name != ?",
                    (display_name, ts, twitch_id, display_name),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def spend(
        self,
        twitch_id: str,
        cost: int,
        reason: str,
        item_id: int | None = None,
    ) -> int | None:
        """Atomically debit points, log a SPEND ledger row and (optionally) a redemption.

        Returns the new balance, or None on insufficient funds / unknown user.
        """
        loop = asyncio.get_running_loop()
        ts = format_timestamp(now_utc())

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE users SET points = points - ?, last_modified_at = ? "
                    "WHERE twitch_id = ? AND points >= ?",
                    (cost, ts, twitch_id, cost),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return None
                row = conn.execute(
                    "SELECT id, points FROM users WHERE twitch_id = ?", (twitch_id,),
                ).fetchone()
                conn.execute(
                    "INSERT INTO point_ledger (user_id, points, type, reason, created_at) "
                    "VALUES (?, ?, 'SPEND', ?, ?)",
                    (row["id"], -cost, reason, ts),
                )
                if item_id is not None:
                    conn.execute(
                        "INSERT INTO redemptions (user_id, item_id, cost, created_at) "
                        "VALUES (?, ?, ?, ?)",
                        (row["id"], item_id, cost, ts),
                    )
                conn.commit()
                return row["points"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Channels
    # ══════════════════════════════════════════════════════════

    async def upsert_channel(
        self, twitch_id: str, name: str, now: datetime | None = None,
    ) -> None:
        """Ensure the channel row exists and carries the current name."""
        loop = asyncio.get_running_loop()
        ts = format_timestamp(now or now_utc())

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO channels (twitch_id, name, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?) "
                    "ON CONFLICT(twitch_id) DO UPDATE "
                    "SET name = excluded.name, updated_at = excluded.updated_at",
                    (twitch_id, name, ts, ts),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def get_channel(self, twitch_id: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM channels WHERE twitch_id = ?", (twitch_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Dedup Journal
    # ══════════════════════════════════════════════════════════

    async def record_processed_command(
        self, message_id: str, command: str, user_id: str | None,
    ) -> bool:
        """Insert-if-absent on the journal primary key.

        Returns False when the id was already recorded. Any other database
        error propagates to the caller.
        """
        loop = asyncio.get_running_loop()
        ts = format_timestamp(now_utc())

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO processed_commands (id, command, user_id, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    (message_id, command, user_id, ts),
                )
                conn.commit()
                return True
            except sqlite3.IntegrityError:
                return False
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def prune_processed_commands(self, older_than: datetime) -> int:
        """Delete journal rows created before ``older_than``. Returns rows removed."""
        loop = asyncio.get_running_loop()
        cutoff = format_timestamp(older_than)

        def _sync() -> int:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "DELETE FROM processed_commands WHERE created_at < ?", (cutoff,),
                )
                conn.commit()
                return cursor.rowcount
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Shop
    # ══════════════════════════════════════════════════════════

    async def list_shop_items(self, enabled_only: bool = True) -> list[dict]:
        """Return shop items ordered by ascending cost."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                query = "SELECT * FROM shop_items"
                if enabled_only:
                    query += " WHERE is_enabled = 1"
                query += " ORDER BY cost ASC, name ASC"
                return [dict(r) for r in conn.execute(query).fetchall()]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def find_shop_item(self, name: str) -> dict | None:
        """Case-insensitive exact-name lookup among enabled items."""
        wanted = name.strip().casefold()
        for item in await self.list_shop_items(enabled_only=True):
            if item["name"].casefold() == wanted:
                return item
        return None

    async def add_shop_item(
        self, name: str, cost: int, description: str = "", enabled: bool = True,
    ) -> int:
        """Insert a shop item and return its id."""
        loop = asyncio.get_running_loop()
        ts = format_timestamp(now_utc())

        def _sync() -> int:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "INSERT INTO shop_items (name, cost, description, is_enabled, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (name, cost, description, 1 if enabled else 0, ts),
                )
                conn.commit()
                return cursor.lastrowid
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def set_shop_item_enabled(self, name: str, enabled: bool) -> bool:
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE shop_items SET is_enabled = ? WHERE name = ?",
                    (1 if enabled else 0, name),
                )
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def seed_shop_items(self, items: list[dict[str, Any]]) -> int:
        """Insert ``items`` only if the shop table has never held a row.

        Returns the number of rows inserted (0 when the shop was already set up).
        """
        loop = asyncio.get_running_loop()
        ts = format_timestamp(now_utc())

        def _sync() -> int:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                count = conn.execute("SELECT COUNT(*) FROM shop_items").fetchone()[0]
                if count:
                    conn.rollback()
                    return 0
                conn.executemany(
                    "INSERT OR IGNORE INTO shop_items (name, cost, description, is_enabled, created_at) "
                    "VALUES (?, ?, ?, 1, ?)",
                    [(i["name"], i["cost"], i.get("description", ""), ts) for i in items],
                )
                conn.commit()
                return len(items)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  History
    # ══════════════════════════════════════════════════════════

    async def get_ledger_entries(self, twitch_id: str, limit: int = 50) -> list[dict]:
        """Most recent ledger rows for a user, newest first."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT l.* FROM point_ledger l JOIN users u ON u.id = l.user_id "
                    "WHERE u.twitch_id = ? ORDER BY l.id DESC LIMIT ?",
                    (twitch_id, limit),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_redemptions(self, twitch_id: str) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT r.*, s.name AS item_name FROM redemptions r "
                    "JOIN users u ON u.id = r.user_id "
                    "JOIN shop_items s ON s.id = r.item_id "
                    "WHERE u.twitch_id = ? ORDER BY r.id ASC",
                    (twitch_id,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Aggregates & Leaderboards
    # ══════════════════════════════════════════════════════════

    async def get_top_users(self, order_by: str = "points", limit: int = 5) -> list[dict]:
        """Top users by ``points`` or ``xp``, descending."""
        if order_by not in ("points", "xp"):
            raise ValueError(f"Cannot rank users by {order_by!r}")
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT twitch_id, display_name, points, level, xp FROM users "
                    f"ORDER BY {order_by} DESC, id ASC LIMIT ?",
                    (limit,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_user_count(self) -> int:
        return await self._scalar("SELECT COUNT(*) FROM users")

    async def get_channel_count(self) -> int:
        return await self._scalar("SELECT COUNT(*) FROM channels")

    async def get_total_points(self) -> int:
        """Total points in circulation."""
        return await self._scalar("SELECT COALESCE(SUM(points), 0) FROM users")

    async def _scalar(self, query: str) -> int:
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute(query).fetchone()
                return int(row[0]) if row else 0
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)
