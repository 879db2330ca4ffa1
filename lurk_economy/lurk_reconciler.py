"""Lurk reconciler — turns roster snapshots into points and XP.

Each pass compares the participants currently in chat against their stored
presence anchor. Time spent present between two passes is paid out in whole
minutes, but only when the gap looks like continuous presence: too short and
the anchor is kept so the time keeps accumulating, too long and the anchor is
reset without a payout.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from .leveling import level_of
from .utils import format_timestamp, normalize_login, now_utc, parse_timestamp

if TYPE_CHECKING:
    from .config import EconomyConfig, PresenceConfig
    from .database import EconomyDatabase
    from .twitch_api import HelixClient


@dataclass(frozen=True)
class Participant:
    """One chatter as reported by the roster source."""

    user_id: str
    user_name: str
    user_login: str = ""


@dataclass(frozen=True)
class RosterResult:
    total: int
    participants: list[Participant] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class ChatterView:
    user_id: str
    user_name: str
    points: int
    level: int
    xp: int

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "user_name": self.user_name,
            "points": self.points,
            "level": self.level,
            "xp": self.xp,
        }


@dataclass(frozen=True)
class LiveChatters:
    count: int
    chatters: list[ChatterView] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        data: dict = {
            "count": self.count,
            "chatters": [c.to_dict() for c in self.chatters],
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class PresenceDecision:
    minutes: int = 0
    points: int = 0
    xp: int = 0
    advance_anchor: bool = False

    @property
    def changes_anything(self) -> bool:
        return bool(self.points or self.xp or self.advance_anchor)


def evaluate_presence(gap_seconds: float | None, config: PresenceConfig) -> PresenceDecision:
    """Decide the award for one participant given seconds since their anchor.

    ``None`` means the anchor is unusable; the anchor is reset with no award.
    """
    if gap_seconds is None:
        return PresenceDecision(advance_anchor=True)
    if gap_seconds < config.min_gap_seconds:
        return PresenceDecision()
    if gap_seconds > config.max_gap_seconds:
        # Looks like the viewer left and came back
        return PresenceDecision(advance_anchor=True)

    minutes = int(gap_seconds // 60)
    return PresenceDecision(
        minutes=minutes,
        points=minutes * config.points_per_minute,
        xp=minutes * config.xp_per_minute,
        advance_anchor=True,
    )


class LurkReconciler:
    """Reconciles the live chatter roster against the user ledger."""

    def __init__(
        self,
        config: EconomyConfig,
        database: EconomyDatabase,
        roster: HelixClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._presence: PresenceConfig = config.presence
        self._db = database
        self._roster = roster
        self._logger = logger or logging.getLogger("economy.lurk")
        self._ignored_users: set[str] = {normalize_login(u) for u in config.ignored_users}
        if config.twitch.bot_username:
            self._ignored_users.add(normalize_login(config.twitch.bot_username))

        # Metrics counters (exposed to the HTTP server)
        self.points_awarded_total: int = 0
        self.passes_total: int = 0

    # ══════════════════════════════════════════════════════════
    #  Public API
    # ══════════════════════════════════════════════════════════

    async def fetch_live_chatters(self, now: datetime | None = None) -> LiveChatters:
        """Read the roster, run one accrual pass and return the enriched view.

        Never raises: missing configuration and roster failures come back in
        ``error``; a database failure degrades to the stored balances, or
        zeros where even those cannot be read.
        """
        if self._roster is None or not self._config.twitch.is_configured:
            self._logger.warning("Cannot fetch chatters: Twitch credentials or channel not configured")
            return LiveChatters(count=0, error="Twitch credentials or channel not configured")

        channel_name = self._config.twitch.target_channel
        channel_id = await self._roster.get_broadcaster_id()
        if not channel_id:
            return LiveChatters(count=0, error=f"Channel not found: {channel_name}")

        roster = await self._roster.get_participants(channel_id)
        if roster.error:
            return LiveChatters(count=0, error=roster.error)

        try:
            chatters = await self.reconcile(channel_id, channel_name, roster.participants, now)
        except Exception:
            self._logger.exception(
                "Failed to track chatters in %s; accrual skipped this pass", channel_name,
            )
            chatters = await self._stored_views(roster.participants)
        return LiveChatters(count=roster.total, chatters=chatters)

    async def reconcile(
        self,
        channel_id: str,
        channel_name: str,
        participants: list[Participant],
        now: datetime | None = None,
    ) -> list[ChatterView]:
        """Apply one accrual pass to ``participants`` and return their post-pass state."""
        now = now or now_utc()
        await self._db.upsert_channel(channel_id, channel_name, now)

        views: list[ChatterView] = []
        size = self._presence.batch_size
        for start in range(0, len(participants), size):
            chunk = participants[start:start + size]
            stored = await self._db.get_users(p.user_id for p in chunk)
            results = await asyncio.gather(
                *(self._reconcile_one(p, stored.get(p.user_id), now) for p in chunk),
                return_exceptions=True,
            )
            for participant, result in zip(chunk, results):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    self._logger.error(
                        "Failed to reconcile %s; reporting stored balance",
                        participant.user_name, exc_info=result,
                    )
                    result = (await self._stored_views([participant]))[0]
                views.append(result)

        self.passes_total += 1
        self._logger.debug(
            "Reconciled %d participants in %s", len(participants), channel_name,
        )
        return views

    # ══════════════════════════════════════════════════════════
    #  Per-participant
    # ══════════════════════════════════════════════════════════

    async def _reconcile_one(
        self, participant: Participant, row: dict | None, now: datetime,
    ) -> ChatterView:
        if self._is_ignored(participant):
            if row is None:
                return ChatterView(participant.user_id, participant.user_name, 0, 1, 0)
            return self._view(participant, row)

        if row is None:
            await self._db.create_user(participant.user_id, participant.user_name, now)
            return ChatterView(participant.user_id, participant.user_name, points=0, level=1, xp=0)

        anchor = parse_timestamp(row["last_presence_check_at"])
        gap = (now - anchor).total_seconds() if anchor else None
        decision = evaluate_presence(gap, self._presence)
        renamed = row["display_name"] != participant.user_name

        if not decision.changes_anything:
            if renamed:
                await self._db.rename_user(participant.user_id, participant.user_name, now)
            return self._view(participant, row)

        new_xp = row["xp"] + decision.xp
        level = level_of(
            new_xp, self._config.leveling.base_xp, self._config.leveling.growth_rate,
        ).level

        applied = await self._db.apply_presence(
            participant.user_id,
            expected_check_at=row["last_presence_check_at"],
            display_name=participant.user_name,
            points=decision.points,
            xp=decision.xp,
            level=level,
            new_check_at=format_timestamp(now),
            now=now,
            reason=f"Lurked {decision.minutes} min" if decision.minutes else None,
        )
        if not applied:
            # A concurrent pass already consumed this gap
            self._logger.debug("Presence for %s already reconciled", participant.user_name)
            fresh = await self._db.get_user(participant.user_id)
            return self._view(participant, fresh or row)

        self.points_awarded_total += decision.points
        if decision.points:
            self._logger.debug(
                "Awarded %d points / %d xp to %s for %d min",
                decision.points, decision.xp, participant.user_name, decision.minutes,
            )
        return ChatterView(
            participant.user_id,
            participant.user_name,
            points=row["points"] + decision.points,
            level=level,
            xp=new_xp,
        )

    def _is_ignored(self, participant: Participant) -> bool:
        login = participant.user_login or participant.user_name
        return normalize_login(login) in self._ignored_users

    async def _stored_views(self, participants: list[Participant]) -> list[ChatterView]:
        """Views from whatever is stored now; rows that cannot be read show as zero."""
        stored: dict[str, dict] = {}
        size = self._presence.batch_size
        try:
            for start in range(0, len(participants), size):
                chunk = participants[start:start + size]
                stored.update(await self._db.get_users(p.user_id for p in chunk))
        except Exception:
            self._logger.exception("Could not re-read chatters after a failed pass")
        return [
            self._view(p, stored[p.user_id]) if p.user_id in stored
            else ChatterView(p.user_id, p.user_name, points=0, level=1, xp=0)
            for p in participants
        ]

    @staticmethod
    def _view(participant: Participant, row: dict) -> ChatterView:
        return ChatterView(
            participant.user_id,
            participant.user_name,
            points=row["points"],
            level=row["level"],
            xp=row["xp"],
        )
