"""Tests for LurkReconciler — presence gaps → points and XP."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from lurk_economy.config import EconomyConfig, PresenceConfig
from lurk_economy.database import EconomyDatabase
from lurk_economy.lurk_reconciler import (
    ChatterView,
    LiveChatters,
    LurkReconciler,
    Participant,
    RosterResult,
    evaluate_presence,
)
from lurk_economy.utils import format_timestamp

from conftest import make_config_dict, seed_user

T0 = datetime(2026, 3, 1, 20, 0, 0, tzinfo=timezone.utc)
CHANNEL_ID = "1000"
CHANNEL = "teststreamer"

ALICE = Participant(user_id="u-alice", user_name="Alice", user_login="alice")
BOB = Participant(user_id="u-bob", user_name="Bob", user_login="bob")


async def _pass(reconciler: LurkReconciler, participants, seconds: float) -> list[ChatterView]:
    return await reconciler.reconcile(
        CHANNEL_ID, CHANNEL, participants, now=T0 + timedelta(seconds=seconds),
    )


# ═══════════════════════════════════════════════════════════════
#  evaluate_presence
# ═══════════════════════════════════════════════════════════════


class TestEvaluatePresence:
    cfg = PresenceConfig()

    def test_below_min_gap(self):
        decision = evaluate_presence(30, self.cfg)
        assert not decision.changes_anything

    def test_min_gap_inclusive(self):
        decision = evaluate_presence(60, self.cfg)
        assert (decision.points, decision.xp, decision.advance_anchor) == (1, 3, True)

    def test_max_gap_inclusive(self):
        decision = evaluate_presence(600, self.cfg)
        assert (decision.minutes, decision.points, decision.xp) == (10, 10, 30)

    def test_above_max_gap(self):
        decision = evaluate_presence(601, self.cfg)
        assert decision.points == 0
        assert decision.advance_anchor is True

    def test_partial_minutes_floor(self):
        assert evaluate_presence(179, self.cfg).minutes == 2

    def test_unusable_anchor_resets(self):
        decision = evaluate_presence(None, self.cfg)
        assert decision.points == 0
        assert decision.advance_anchor is True

    def test_custom_rates(self):
        cfg = PresenceConfig(points_per_minute=5, xp_per_minute=10)
        decision = evaluate_presence(120, cfg)
        assert (decision.points, decision.xp) == (10, 20)


# ═══════════════════════════════════════════════════════════════
#  reconcile()
# ═══════════════════════════════════════════════════════════════


class TestReconcile:
    async def test_new_participant_created_without_award(
        self, reconciler: LurkReconciler, database: EconomyDatabase,
    ):
        views = await _pass(reconciler, [ALICE], 0)
        assert views == [ChatterView("u-alice", "Alice", points=0, level=1, xp=0)]
        user = await database.get_user("u-alice")
        assert (user["points"], user["xp"], user["level"]) == (0, 0, 1)
        assert user["last_presence_check_at"] == format_timestamp(T0)
        assert await database.get_ledger_entries("u-alice") == []

    async def test_61_seconds_awards_one_minute(
        self, reconciler: LurkReconciler, database: EconomyDatabase,
    ):
        await seed_user(database, "u-alice", "Alice", check_at=T0)
        views = await _pass(reconciler, [ALICE], 61)

        assert views[0].points == 1
        assert views[0].xp == 3
        user = await database.get_user("u-alice")
        assert (user["points"], user["xp"]) == (1, 3)
        assert user["last_presence_check_at"] == format_timestamp(T0 + timedelta(seconds=61))
        ledger = await database.get_ledger_entries("u-alice")
        assert [(e["type"], e["points"]) for e in ledger] == [("EARN", 1)]
        assert reconciler.points_awarded_total == 1

    async def test_30_seconds_keeps_anchor(
        self, reconciler: LurkReconciler, database: EconomyDatabase,
    ):
        await seed_user(database, "u-alice", "Alice", points=5, xp=15, check_at=T0)
        views = await _pass(reconciler, [ALICE], 30)

        assert (views[0].points, views[0].xp) == (5, 15)
        user = await database.get_user("u-alice")
        assert (user["points"], user["xp"]) == (5, 15)
        assert user["last_presence_check_at"] == format_timestamp(T0)

    async def test_short_gaps_accumulate(
        self, reconciler: LurkReconciler, database: EconomyDatabase,
    ):
        """Two passes 40s apart pay once the total gap reaches a minute."""
        await seed_user(database, "u-alice", "Alice", check_at=T0)
        await _pass(reconciler, [ALICE], 40)
        await _pass(reconciler, [ALICE], 80)
        user = await database.get_user("u-alice")
        assert user["points"] == 1

    async def test_700_seconds_resets_anchor_without_award(
        self, reconciler: LurkReconciler, database: EconomyDatabase,
    ):
        await seed_user(database, "u-alice", "Alice", points=5, check_at=T0)
        await _pass(reconciler, [ALICE], 700)

        user = await database.get_user("u-alice")
        assert user["points"] == 5
        assert user["xp"] == 0
        assert user["last_presence_check_at"] == format_timestamp(T0 + timedelta(seconds=700))
        assert await database.get_ledger_entries("u-alice") == []

    async def test_level_recomputed(
        self, reconciler: LurkReconciler, database: EconomyDatabase,
    ):
        await seed_user(database, "u-alice", "Alice", xp=98, check_at=T0)
        views = await _pass(reconciler, [ALICE], 61)
        assert views[0].xp == 101
        assert views[0].level == 2
        assert (await database.get_user("u-alice"))["level"] == 2

    async def test_name_change_only(
        self, reconciler: LurkReconciler, database: EconomyDatabase,
    ):
        await seed_user(database, "u-alice", "OldAlice", check_at=T0)
        views = await _pass(reconciler, [ALICE], 10)
        assert views[0].user_name == "Alice"
        user = await database.get_user("u-alice")
        assert user["display_name"] == "Alice"
        assert user["last_presence_check_at"] == format_timestamp(T0)

    async def test_concurrent_passes_do_not_double_count(
        self, reconciler: LurkReconciler, database: EconomyDatabase,
    ):
        await seed_user(database, "u-alice", "Alice", check_at=T0)
        now = T0 + timedelta(seconds=120)
        await asyncio.gather(
            reconciler.reconcile(CHANNEL_ID, CHANNEL, [ALICE], now=now),
            reconciler.reconcile(CHANNEL_ID, CHANNEL, [ALICE], now=now),
        )
        user = await database.get_user("u-alice")
        assert user["points"] == 2
        assert user["xp"] == 6
        assert len(await database.get_ledger_entries("u-alice")) == 1
        assert reconciler.points_awarded_total == 2

    async def test_channel_upserted(
        self, reconciler: LurkReconciler, database: EconomyDatabase,
    ):
        await _pass(reconciler, [], 0)
        channel = await database.get_channel(CHANNEL_ID)
        assert channel["name"] == CHANNEL

    async def test_ignored_users_not_tracked(
        self, reconciler: LurkReconciler, database: EconomyDatabase,
    ):
        ignored = Participant("u-ign", "IgnoredBot", "ignoredbot")
        bot = Participant("999", "TestBot", "testbot")
        views = await _pass(reconciler, [ignored, bot, ALICE], 0)
        assert len(views) == 3
        assert await database.get_user("u-ign") is None
        assert await database.get_user("999") is None
        assert await database.get_user("u-alice") is not None

    async def test_batches(self, database: EconomyDatabase):
        config = EconomyConfig(**make_config_dict(presence={"batch_size": 2}))
        reconciler = LurkReconciler(config, database, None, logging.getLogger("test"))
        participants = [Participant(f"u{i}", f"User{i}") for i in range(5)]
        views = await _pass(reconciler, participants, 0)
        assert [v.user_id for v in views] == [f"u{i}" for i in range(5)]
        assert await database.get_user_count() == 5


# ═══════════════════════════════════════════════════════════════
#  fetch_live_chatters()
# ═══════════════════════════════════════════════════════════════


def _mock_roster(result: RosterResult, channel_id: str | None = CHANNEL_ID) -> MagicMock:
    roster = MagicMock()
    roster.get_broadcaster_id = AsyncMock(return_value=channel_id)
    roster.get_participants = AsyncMock(return_value=result)
    return roster


class TestFetchLiveChatters:
    async def test_not_configured(self, database: EconomyDatabase):
        config = EconomyConfig(**make_config_dict(twitch={}))
        roster = _mock_roster(RosterResult(total=0))
        reconciler = LurkReconciler(config, database, roster, logging.getLogger("test"))
        live = await reconciler.fetch_live_chatters()
        assert live.count == 0
        assert live.error
        roster.get_participants.assert_not_called()

    async def test_no_roster_source(self, reconciler: LurkReconciler):
        live = await reconciler.fetch_live_chatters()
        assert live.error
        assert live.chatters == []

    async def test_channel_not_found(self, sample_config: EconomyConfig, database: EconomyDatabase):
        roster = _mock_roster(RosterResult(total=0), channel_id=None)
        reconciler = LurkReconciler(sample_config, database, roster, logging.getLogger("test"))
        live = await reconciler.fetch_live_chatters()
        assert "Channel not found" in live.error

    async def test_roster_error(self, sample_config: EconomyConfig, database: EconomyDatabase):
        roster = _mock_roster(RosterResult(total=0, error="Helix chatters API error 401"))
        reconciler = LurkReconciler(sample_config, database, roster, logging.getLogger("test"))
        live = await reconciler.fetch_live_chatters()
        assert live == LiveChatters(count=0, chatters=[], error="Helix chatters API error 401")
        assert await database.get_user_count() == 0

    async def test_enriched_view(self, sample_config: EconomyConfig, database: EconomyDatabase):
        await seed_user(database, "u-bob", "Bob", points=40, xp=120, level=2)
        roster = _mock_roster(RosterResult(total=2, participants=[ALICE, BOB]))
        reconciler = LurkReconciler(sample_config, database, roster, logging.getLogger("test"))

        live = await reconciler.fetch_live_chatters()
        data = live.to_dict()
        assert data["count"] == 2
        assert "error" not in data
        assert data["chatters"][0] == {
            "user_id": "u-alice", "user_name": "Alice", "points": 0, "level": 1, "xp": 0,
        }
        assert data["chatters"][1]["points"] == 40
        assert data["chatters"][1]["level"] == 2

    async def test_database_failure_degrades(self, sample_config: EconomyConfig):
        db = MagicMock()
        db.upsert_channel = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))
        roster = _mock_roster(RosterResult(total=2, participants=[ALICE, BOB]))
        reconciler = LurkReconciler(sample_config, db, roster, logging.getLogger("test"))

        live = await reconciler.fetch_live_chatters()
        assert live.error is None
        assert live.count == 2
        assert [(c.user_name, c.points, c.xp) for c in live.chatters] == [
            ("Alice", 0, 0), ("Bob", 0, 0),
        ]

    async def test_one_failed_chatter_keeps_the_others(
        self, sample_config: EconomyConfig, database: EconomyDatabase,
    ):
        await seed_user(database, "u-alice", "Alice", points=10, check_at=T0)
        await seed_user(database, "u-bob", "Bob", points=40, xp=120, level=2, check_at=T0)
        real_apply = database.apply_presence

        async def flaky_apply(twitch_id, *args, **kwargs):
            if twitch_id == "u-bob":
                raise sqlite3.OperationalError("disk I/O error")
            return await real_apply(twitch_id, *args, **kwargs)

        database.apply_presence = flaky_apply
        roster = _mock_roster(RosterResult(total=2, participants=[ALICE, BOB]))
        reconciler = LurkReconciler(sample_config, database, roster, logging.getLogger("test"))

        live = await reconciler.fetch_live_chatters(now=T0 + timedelta(seconds=61))
        assert live.error is None
        assert [(c.user_name, c.points, c.level) for c in live.chatters] == [
            ("Alice", 11, 1), ("Bob", 40, 2),
        ]

    async def test_reread_failure_falls_back_to_zero(self, sample_config: EconomyConfig):
        db = MagicMock()
        db.upsert_channel = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))
        db.get_users = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))
        roster = _mock_roster(RosterResult(total=1, participants=[ALICE]))
        reconciler = LurkReconciler(sample_config, db, roster, logging.getLogger("test"))

        live = await reconciler.fetch_live_chatters()
        assert [(c.points, c.level, c.xp) for c in live.chatters] == [(0, 1, 0)]
