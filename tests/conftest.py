"""Shared test fixtures for lurk-economy."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from lurk_economy.command_processor import CommandProcessor, CommandRateLimiter, Sender
from lurk_economy.config import EconomyConfig
from lurk_economy.database import EconomyDatabase
from lurk_economy.lurk_reconciler import LurkReconciler
from lurk_economy.spending_engine import SpendingEngine
from lurk_economy.utils import format_timestamp


# ── Minimal config dict matching EconomyConfig schema ────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "database": {"path": ":memory:"},
        "twitch": {
            "client_id": "test-client-id",
            "access_token": "test-token",
            "channel": "TestStreamer",
            "channel_id": "1000",
            "bot_id": "999",
            "bot_username": "TestBot",
        },
        "ignored_users": ["IgnoredBot"],
        "presence": {
            "min_gap_seconds": 60,
            "max_gap_seconds": 600,
            "points_per_minute": 1,
            "xp_per_minute": 3,
            "batch_size": 100,
            "poll_interval_seconds": 0,
        },
        "dedup": {"window_seconds": 60, "prune_probability": 0.0},
        "commands": {"rate_limit_per_minute": 20},
        "paid_message": {"enabled": True, "cost": 100, "max_length": 300},
        "music": {"enabled": True, "queue_cost": 50, "check_cost": 10},
        "http": {"enabled": False, "ingest_token": "secret-token"},
    }
    base.update(overrides)
    return base


@pytest.fixture
def sample_config_dict() -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> EconomyConfig:
    """Return a parsed EconomyConfig."""
    return EconomyConfig(**sample_config_dict)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_economy.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[EconomyDatabase, None]:
    """Provide an initialized database with temp file."""
    db = EconomyDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


@pytest.fixture
def mock_publisher() -> MagicMock:
    """Return a mock ChatPublisher that accepts every line."""
    publisher = MagicMock()
    publisher.publish = AsyncMock(return_value=True)
    return publisher


@pytest.fixture
def spending_engine(database: EconomyDatabase) -> SpendingEngine:
    return SpendingEngine(database, logging.getLogger("test.spending"))


@pytest.fixture
def processor(
    sample_config: EconomyConfig,
    database: EconomyDatabase,
    mock_publisher: MagicMock,
    spending_engine: SpendingEngine,
) -> CommandProcessor:
    """CommandProcessor wired to the temp database and mock publisher."""
    return CommandProcessor(
        sample_config,
        database,
        mock_publisher,
        logging.getLogger("test.commands"),
        spending_engine=spending_engine,
    )


@pytest.fixture
def reconciler(sample_config: EconomyConfig, database: EconomyDatabase) -> LurkReconciler:
    return LurkReconciler(sample_config, database, None, logging.getLogger("test.lurk"))


@pytest.fixture
def rate_limiter() -> CommandRateLimiter:
    """CommandRateLimiter with max 10 per minute."""
    return CommandRateLimiter(max_per_minute=10)


# ── Helpers ──────────────────────────────────────────────────

def viewer(name: str = "Alice", user_id: str = "u-alice", **flags) -> Sender:
    return Sender(name=name, id=user_id, **flags)


def moderator(name: str = "Mod", user_id: str = "u-mod") -> Sender:
    return Sender(name=name, id=user_id, is_moderator=True)


async def seed_user(
    db: EconomyDatabase,
    user_id: str = "u-alice",
    name: str = "Alice",
    points: int = 0,
    xp: int = 0,
    level: int = 1,
    check_at: datetime | None = None,
) -> None:
    """Create a user and force balance/xp/anchor to the given values."""
    await db.create_user(user_id, name, now=check_at)
    loop = asyncio.get_running_loop()

    def _set() -> None:
        conn = db._get_connection()
        try:
            conn.execute(
                "UPDATE users SET points = ?, xp = ?, level = ? WHERE twitch_id = ?",
                (points, xp, level, user_id),
            )
            if check_at is not None:
                conn.execute(
                    "UPDATE users SET last_presence_check_at = ? WHERE twitch_id = ?",
                    (format_timestamp(check_at), user_id),
                )
            conn.commit()
        finally:
            conn.close()

    await loop.run_in_executor(None, _set)


def published_lines(publisher: MagicMock) -> list[str]:
    return [c.args[0] for c in publisher.publish.call_args_list]
