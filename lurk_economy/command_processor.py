"""Chat command processor — economy transactions driven by chat lines.

Every inbound command goes through the same pipeline: deduplicate on the
delivery id, rate limit, dispatch through the keyword map, then publish the
handler's reply lines and overlay signals through the chat publisher.
"""

from __future__ import annotations

import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Union

from .leveling import level_of
from .signals import (
    OverlaySignal,
    PaidMessage,
    SignalKind,
    instant_play,
    player_control,
    queue_add,
    queue_check,
)
from .spending_engine import SpendingEngine, SpendResult
from .utils import extract_youtube_id, normalize_login, now_utc

if TYPE_CHECKING:
    from .config import EconomyConfig
    from .database import EconomyDatabase
    from .twitch_api import ChatPublisher


# ══════════════════════════════════════════════════════════
#  Inbound / Outbound Types
# ══════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Sender:
    name: str
    id: str
    is_moderator: bool = False
    is_broadcaster: bool = False
    login: str = ""

    @property
    def is_privileged(self) -> bool:
        return self.is_moderator or self.is_broadcaster

    @property
    def account(self) -> str:
        """Normalized login used for identity checks; display names can be localized."""
        return normalize_login(self.login or self.name)


@dataclass(frozen=True)
class CommandDelivery:
    """One command invocation as handed over by a transport."""

    command: str
    args: list[str]
    sender: Sender
    delivery_id: str | None = None

    @classmethod
    def from_text(
        cls,
        text: str,
        sender: Sender,
        delivery_id: str | None = None,
        prefix: str = "!",
    ) -> CommandDelivery | None:
        """Split a chat line into keyword + args; None if it is not a command."""
        text = text.strip()
        if not text.startswith(prefix) or len(text) <= len(prefix):
            return None
        parts = text.split()
        return cls(command=parts[0], args=parts[1:], sender=sender, delivery_id=delivery_id)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CommandDelivery:
        """Build from the JSON payload accepted by the ingestion endpoint.

        Raises KeyError / ValueError / TypeError for malformed payloads.
        """
        raw_sender = data["sender"]
        if not isinstance(raw_sender, dict):
            raise TypeError("sender must be an object")
        sender = Sender(
            name=str(raw_sender["name"]),
            id=str(raw_sender["id"]),
            is_moderator=bool(raw_sender.get("is_moderator", raw_sender.get("isMod", False))),
            is_broadcaster=bool(
                raw_sender.get("is_broadcaster", raw_sender.get("isBroadcaster", False)),
            ),
            login=str(raw_sender.get("login") or ""),
        )
        command = str(data["command"]).strip()
        if not command:
            raise ValueError("command must not be empty")
        args = data.get("args") or []
        if isinstance(args, str):
            args = args.split()
        if not isinstance(args, list):
            raise TypeError("args must be a list of strings")
        delivery_id = data.get("delivery_id", data.get("message_id"))
        return cls(
            command=command,
            args=[str(a) for a in args],
            sender=sender,
            delivery_id=str(delivery_id) if delivery_id else None,
        )


Output = Union[str, OverlaySignal, PaidMessage]


@dataclass
class CommandResponse:
    """Ordered reply lines and overlay signals produced by one handler."""

    outputs: list[Output] = field(default_factory=list)

    def reply(self, text: str) -> CommandResponse:
        self.outputs.append(text)
        return self

    def signal(self, signal: OverlaySignal | PaidMessage) -> CommandResponse:
        self.outputs.append(signal)
        return self

    @property
    def replies(self) -> list[str]:
        return [o for o in self.outputs if isinstance(o, str)]

    @property
    def signals(self) -> list[OverlaySignal | PaidMessage]:
        return [o for o in self.outputs if not isinstance(o, str)]

    def render(self) -> list[str]:
        return [o if isinstance(o, str) else o.render() for o in self.outputs]


# ══════════════════════════════════════════════════════════
#  Rate Limiter
# ══════════════════════════════════════════════════════════

class CommandRateLimiter:
    """Per-sender sliding window.

    Senders whose newest hit has left the window are swept out while checks
    arrive, at most once per window, so the map stays bounded by the number
    of recently active senders.
    """

    def __init__(self, max_per_minute: int = 20, window_seconds: float = 60.0) -> None:
        self._max = max_per_minute
        self._window = window_seconds
        self._hits: dict[str, deque[float]] = {}
        self._next_sweep = 0.0

    def __len__(self) -> int:
        return len(self._hits)

    def check(self, sender_id: str, now: float | None = None) -> bool:
        """Record one command; False when the sender is over the limit."""
        if now is None:
            now = time.monotonic()
        cutoff = now - self._window
        if now >= self._next_sweep:
            self._sweep(cutoff)
            self._next_sweep = now + self._window

        hits = self._hits.setdefault(sender_id, deque())
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if len(hits) >= self._max:
            return False
        hits.append(now)
        return True

    def _sweep(self, cutoff: float) -> None:
        idle = [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for sender_id in idle:
            del self._hits[sender_id]


# ══════════════════════════════════════════════════════════
#  Processor
# ══════════════════════════════════════════════════════════

Handler = Callable[[Sender, list[str]], Awaitable[CommandResponse]]

_PLAYER_CONTROLS: dict[str, tuple[SignalKind, str]] = {
    "skip": (SignalKind.SKIP, "skipped ⏭️"),
    "stop": (SignalKind.STOP, "music stopped ⏹️"),
    "pause": (SignalKind.PAUSE, "music paused ⏸️"),
    "resume": (SignalKind.RESUME, "music resumed ▶️"),
}


class CommandProcessor:
    """Dedup, rate limit, dispatch and publish chat commands."""

    def __init__(
        self,
        config: EconomyConfig,
        database: EconomyDatabase,
        publisher: ChatPublisher | None,
        logger: logging.Logger | None = None,
        spending_engine: SpendingEngine | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._publisher = publisher
        self._logger = logger or logging.getLogger("economy.commands")
        self._spending = spending_engine or SpendingEngine(database, self._logger)

        self._prefix = config.bot.command_prefix
        self._ignored_users: set[str] = {normalize_login(u) for u in config.ignored_users}
        self._bot_login = normalize_login(config.twitch.bot_username)
        self._bot_id = config.twitch.bot_id

        self._rate_limiter = CommandRateLimiter(
            max_per_minute=config.commands.rate_limit_per_minute,
        )

        # Metrics counters (exposed to the HTTP server)
        self.commands_processed: int = 0
        self.duplicates_dropped: int = 0

        # Command dispatch map
        self._command_map: dict[str, Handler] = {
            "commands": self._cmd_help,
            "comandos": self._cmd_help,
            "help": self._cmd_help,
            "points": self._cmd_points,
            "pontos": self._cmd_points,
            "balance": self._cmd_points,
            "level": self._cmd_level,
            "xp": self._cmd_level,
            "nivel": self._cmd_level,
            "top": self._cmd_top,
            "leaderboard": self._cmd_top,
            "shop": self._cmd_shop,
            "loja": self._cmd_shop,
            "buy": self._cmd_buy,
            "comprar": self._cmd_buy,
        }
        if config.paid_message.enabled:
            self._command_map["msg"] = self._cmd_msg
        if config.music.enabled:
            for keyword in ("music", "queue", "sr"):
                self._command_map[keyword] = self._cmd_music
            self._command_map["play"] = self._cmd_play
            for keyword in _PLAYER_CONTROLS:
                self._command_map[keyword] = self._player_control(keyword)
            for keyword in ("checkqueue", "fila", "songs"):
                self._command_map[keyword] = self._cmd_check_queue

    @property
    def spending_engine(self) -> SpendingEngine:
        return self._spending

    # ══════════════════════════════════════════════════════════
    #  Entry Points
    # ══════════════════════════════════════════════════════════

    async def handle_chat_line(
        self, text: str, sender: Sender, delivery_id: str | None = None,
    ) -> CommandResponse | None:
        """Process one chat line; lines without the command prefix are ignored."""
        delivery = CommandDelivery.from_text(text, sender, delivery_id, prefix=self._prefix)
        if delivery is None:
            return None
        return await self.handle(delivery)

    async def handle(self, delivery: CommandDelivery) -> CommandResponse | None:
        """Run one command delivery through the pipeline.

        Returns the published response, or None when the command was dropped
        (duplicate, ignored sender, unknown keyword, rate limited, handler error).
        """
        sender = delivery.sender
        login = sender.account
        if (
            login in self._ignored_users
            or (self._bot_login and login == self._bot_login)
            or (self._bot_id and sender.id == self._bot_id)
        ):
            return None

        keyword = self._normalize_keyword(delivery.command)

        if delivery.delivery_id and not await self._claim_delivery(delivery.delivery_id, keyword, sender):
            return None

        handler = self._command_map.get(keyword)
        if handler is None:
            return None

        if not sender.is_privileged and not self._rate_limiter.check(sender.id):
            self._logger.debug("Rate limited %s for !%s", sender.name, keyword)
            return None

        try:
            response = await handler(sender, delivery.args)
        except Exception:
            self._logger.exception(
                "Command handler error for %s/%s", sender.name, keyword,
            )
            return None

        self.commands_processed += 1
        await self._ensure_user(sender)
        await self._publish(response)
        return response

    # ══════════════════════════════════════════════════════════
    #  Pipeline Steps
    # ══════════════════════════════════════════════════════════

    def _normalize_keyword(self, command: str) -> str:
        keyword = command.strip().lower()
        if self._prefix and keyword.startswith(self._prefix):
            keyword = keyword[len(self._prefix):]
        return keyword

    async def _claim_delivery(self, delivery_id: str, keyword: str, sender: Sender) -> bool:
        """Record the delivery id; False means stop (duplicate or journal failure)."""
        try:
            fresh = await self._db.record_processed_command(delivery_id, keyword, sender.id)
        except Exception:
            self._logger.exception("Error checking deduplication for %s", delivery_id)
            return False

        if not fresh:
            self.duplicates_dropped += 1
            self._logger.info("Duplicate message detected: %s", delivery_id)
            return False

        if random.random() < self._config.dedup.prune_probability:
            cutoff = now_utc() - timedelta(seconds=self._config.dedup.window_seconds)
            try:
                removed = await self._db.prune_processed_commands(cutoff)
                self._logger.debug("Pruned %d processed commands", removed)
            except Exception:
                self._logger.exception("Failed to clean up processed commands")
        return True

    async def _ensure_user(self, sender: Sender) -> None:
        try:
            if await self._db.create_user(sender.id, sender.name):
                self._logger.info("Started tracking %s after first command", sender.name)
        except Exception:
            self._logger.exception("Failed to create user record for %s", sender.name)

    async def _publish(self, response: CommandResponse) -> None:
        if self._publisher is None:
            return
        for line in response.render():
            try:
                sent = await self._publisher.publish(line)
            except Exception:
                self._logger.exception("Failed to publish chat line")
                continue
            if not sent:
                self._logger.warning("Chat line was not delivered: %s", line[:80])

    # ══════════════════════════════════════════════════════════
    #  Commands
    # ══════════════════════════════════════════════════════════

    async def _cmd_help(self, sender: Sender, args: list[str]) -> CommandResponse:
        p = self._prefix
        commands = [f"{p}points", f"{p}level", f"{p}top", f"{p}shop", f"{p}buy <item>"]
        if self._config.paid_message.enabled:
            commands.append(f"{p}msg <text> ({self._config.paid_message.cost} pts)")
        if self._config.music.enabled:
            commands.append(f"{p}music <link> ({self._config.music.queue_cost} pts)")
            commands.append(f"{p}checkqueue ({self._config.music.check_cost} pts)")
        msg = f"@{sender.name}, commands: {', '.join(commands)}."
        if sender.is_privileged and self._config.music.enabled:
            msg += f" Mods: {p}play <link>, {p}skip, {p}stop, {p}pause, {p}resume."
        return CommandResponse().reply(msg)

    async def _cmd_points(self, sender: Sender, args: list[str]) -> CommandResponse:
        user = await self._db.get_user(sender.id)
        if not user:
            return CommandResponse().reply(self._not_tracked(sender))
        return CommandResponse().reply(
            f"@{sender.name}, you have {user['points']} points (Lvl {user['level']}).",
        )

    async def _cmd_level(self, sender: Sender, args: list[str]) -> CommandResponse:
        user = await self._db.get_user(sender.id)
        if not user:
            return CommandResponse().reply(self._not_tracked(sender))
        info = level_of(
            user["xp"], self._config.leveling.base_xp, self._config.leveling.growth_rate,
        )
        return CommandResponse().reply(
            f"@{sender.name}, you are level {info.level} "
            f"({info.xp_into_level}/{info.xp_to_next} XP, {info.progress_percent}%).",
        )

    async def _cmd_top(self, sender: Sender, args: list[str]) -> CommandResponse:
        top = await self._db.get_top_users("points", self._config.leaderboard.size)
        if not top:
            return CommandResponse().reply(f"@{sender.name}, the leaderboard is empty so far.")
        ranking = " | ".join(
            f"{i}. {u['display_name']} ({u['points']} pts)" for i, u in enumerate(top, 1)
        )
        return CommandResponse().reply(f"🏆 Top {len(top)}: {ranking}")

    async def _cmd_shop(self, sender: Sender, args: list[str]) -> CommandResponse:
        if self._config.shop.seed_defaults:
            seeded = await self._db.seed_shop_items(
                [item.model_dump() for item in self._config.shop.default_items],
            )
            if seeded:
                self._logger.info("Seeded shop with %d default items", seeded)

        items = await self._db.list_shop_items(enabled_only=True)
        listing = ", ".join(f"{i['name']} ({i['cost']} pts)" for i in items)
        p = self._prefix

        if self._config.paid_message.enabled:
            msg = (
                f"@{sender.name}, use {p}msg <message> ({self._config.paid_message.cost} pts) "
                f"to send a highlighted message!"
            )
            if items:
                msg += f" Other items: {listing}. Use {p}buy <item_name>."
        elif items:
            msg = f"@{sender.name}, items: {listing}. Use {p}buy <item_name>."
        else:
            msg = f"@{sender.name}, the shop is empty right now."
        return CommandResponse().reply(msg)

    async def _cmd_buy(self, sender: Sender, args: list[str]) -> CommandResponse:
        query = " ".join(args).strip()
        if not query:
            return CommandResponse().reply(f"@{sender.name}, usage: {self._prefix}buy <item_name>")

        item = await self._db.find_shop_item(query)
        if not item:
            return CommandResponse().reply(
                f'@{sender.name}, item "{query}" not found. Check {self._prefix}shop.',
            )

        outcome = await self._spending.charge(
            sender.id, item["cost"], f"Bought {item['name']}", item_id=item["id"],
        )
        if outcome.result is SpendResult.UNKNOWN_USER:
            return CommandResponse().reply(self._not_tracked(sender))
        if not outcome.ok:
            return CommandResponse().reply(
                f"@{sender.name}, you don't have enough points! "
                f"Need {item['cost']}, have {outcome.balance}.",
            )
        return CommandResponse().reply(
            f"@{sender.name} redeemed {item['name']} for {item['cost']} points!",
        )

    async def _cmd_msg(self, sender: Sender, args: list[str]) -> CommandResponse:
        cfg = self._config.paid_message
        text = " ".join(args).strip()
        if not text:
            return CommandResponse().reply(
                f"@{sender.name}, usage: {self._prefix}msg <your_message> (Cost: {cfg.cost} pts)",
            )
        if len(text) > cfg.max_length:
            return CommandResponse().reply(
                f"@{sender.name}, your message is too long (max {cfg.max_length} characters).",
            )

        outcome = await self._spending.charge(sender.id, cfg.cost, f"Used !msg: {text}")
        if outcome.result is SpendResult.UNKNOWN_USER:
            return CommandResponse().reply(self._not_tracked(sender))
        if not outcome.ok:
            return CommandResponse().reply(
                f"@{sender.name}, you need {cfg.cost} points to use {self._prefix}msg. "
                f"You have {outcome.balance}.",
            )
        return CommandResponse().signal(PaidMessage(cost=cfg.cost, name=sender.name, text=text))

    async def _cmd_music(self, sender: Sender, args: list[str]) -> CommandResponse:
        if not args:
            return CommandResponse().reply(
                f"@{sender.name}, use {self._prefix}music <youtube_link>",
            )
        video_id = extract_youtube_id(args[0])
        if not video_id:
            return CommandResponse().reply(
                f"@{sender.name}, invalid link! Make sure it is a YouTube link.",
            )

        cost = self._music_cost(sender, self._config.music.queue_cost)
        outcome = await self._spending.charge(sender.id, cost, f"Queued song {video_id}")
        if outcome.result is SpendResult.UNKNOWN_USER:
            return CommandResponse().reply(self._not_tracked(sender))
        if not outcome.ok:
            return CommandResponse().reply(
                f"@{sender.name}, you need {cost} points to queue music. You have {outcome.balance}.",
            )

        title = " ".join(args[1:])
        return (
            CommandResponse()
            .reply(f"@{sender.name}, song added to the queue! 🎵")
            .signal(queue_add(video_id, sender.name, title))
        )

    async def _cmd_play(self, sender: Sender, args: list[str]) -> CommandResponse:
        if not sender.is_privileged:
            return CommandResponse().reply(
                f"@{sender.name}, only moderators can use {self._prefix}play.",
            )
        video_id = extract_youtube_id(args[0]) if args else None
        if not video_id:
            return CommandResponse().reply(
                f"@{sender.name}, use {self._prefix}play <youtube_link>",
            )
        return (
            CommandResponse()
            .reply(f"@{sender.name}, playing now! ▶️")
            .signal(instant_play(video_id, sender.name))
        )

    def _player_control(self, keyword: str) -> Handler:
        kind, done = _PLAYER_CONTROLS[keyword]

        async def _cmd(sender: Sender, args: list[str]) -> CommandResponse:
            if self._config.music.controls_require_moderator and not sender.is_privileged:
                return CommandResponse().reply(
                    f"@{sender.name}, only moderators can control the music.",
                )
            return (
                CommandResponse()
                .reply(f"@{sender.name}, {done}")
                .signal(player_control(kind, sender.name))
            )

        return _cmd

    async def _cmd_check_queue(self, sender: Sender, args: list[str]) -> CommandResponse:
        cost = self._music_cost(sender, self._config.music.check_cost)
        outcome = await self._spending.charge(sender.id, cost, "Checked music queue")
        if outcome.result is SpendResult.UNKNOWN_USER:
            return CommandResponse().reply(self._not_tracked(sender))
        if not outcome.ok:
            return CommandResponse().reply(
                f"@{sender.name}, you need {cost} points to check the queue. "
                f"You have {outcome.balance}.",
            )
        return (
            CommandResponse()
            .reply(f"@{sender.name}, showing the queue on stream! 📜")
            .signal(queue_check(sender.name))
        )

    # ══════════════════════════════════════════════════════════
    #  Helpers
    # ══════════════════════════════════════════════════════════

    def _music_cost(self, sender: Sender, cost: int) -> int:
        if sender.is_privileged and self._config.music.privileged_free:
            return 0
        return cost

    @staticmethod
    def _not_tracked(sender: Sender) -> str:
        return f"@{sender.name}, you are not in the database yet. Stay awhile and listen!"
