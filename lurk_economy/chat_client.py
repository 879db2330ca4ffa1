"""Twitch chat client — EventSub chat messages through twitchio.

The bot account subscribes to ``channel.chat.message`` for the target
channel; every message is converted to a ``ChatMessage`` and handed to a
callback. Replies do not go through here: they are published via Helix.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from twitchio import eventsub
from twitchio.ext import commands

from .command_processor import Sender
from .utils import normalize_login

if TYPE_CHECKING:
    from .config import TwitchConfig


@dataclass(frozen=True)
class ChatMessage:
    channel: str
    login: str
    display_name: str
    user_id: str
    text: str
    message_id: str | None = None
    is_moderator: bool = False
    is_broadcaster: bool = False

    @classmethod
    def from_twitchio(cls, message: Any) -> ChatMessage:
        """Read a twitchio chat message; roles come from the chatter's badges."""
        chatter = message.chatter
        login = normalize_login(getattr(chatter, "name", None) or "")
        broadcaster = getattr(message, "broadcaster", None)
        message_id = getattr(message, "id", None)
        return cls(
            channel=normalize_login(getattr(broadcaster, "name", None) or ""),
            login=login,
            display_name=getattr(chatter, "display_name", None) or login,
            user_id=str(getattr(chatter, "id", None) or ""),
            text=message.text or "",
            message_id=str(message_id) if message_id else None,
            is_moderator=bool(getattr(chatter, "moderator", False)),
            is_broadcaster=bool(getattr(chatter, "broadcaster", False)),
        )

    def to_sender(self) -> Sender:
        return Sender(
            name=self.display_name or self.login,
            id=self.user_id,
            is_moderator=self.is_moderator,
            is_broadcaster=self.is_broadcaster,
            login=self.login,
        )


class EconomyChatBot(commands.Bot):
    """Listen-only twitchio bot for one channel."""

    def __init__(
        self,
        *,
        config: TwitchConfig,
        broadcaster_id: str,
        on_message: Callable[[Any], Awaitable[None]],
        prefix: str = "!",
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(
            client_id=config.client_id,
            client_secret=config.client_secret,
            bot_id=str(config.bot_id),
            prefix=prefix,
            fetch_client_user=False,
        )
        self._chat_config = config
        self._broadcaster_id = broadcaster_id
        self._forward = on_message
        self._chat_logger = logger or logging.getLogger("economy.chat")

    async def load_tokens(self, path: str | None = None) -> None:
        await self.add_token(self._chat_config.access_token, self._chat_config.refresh_token)

    async def save_tokens(self, path: str | None = None) -> None:
        # Tokens come from config; nothing is written back
        return None

    async def event_ready(self) -> None:
        payload = eventsub.ChatMessageSubscription(
            broadcaster_user_id=self._broadcaster_id,
            user_id=str(self._chat_config.bot_id),
        )
        await self.subscribe_websocket(payload=payload, as_bot=True)
        self._chat_logger.info("Subscribed to chat messages for broadcaster %s", self._broadcaster_id)

    async def event_message(self, message: Any) -> None:
        await self._forward(message)


class TwitchChatClient:
    """Owns the twitchio bot task and forwards chat messages."""

    def __init__(
        self,
        config: TwitchConfig,
        on_message: Callable[[ChatMessage], Awaitable[None]],
        logger: logging.Logger | None = None,
        prefix: str = "!",
        bot_factory: Callable[..., Any] | None = None,
    ) -> None:
        self._config = config
        self._on_message = on_message
        self._logger = logger or logging.getLogger("economy.chat")
        self._prefix = prefix
        self._bot_factory = bot_factory or EconomyChatBot
        self._bot: Any = None
        self._task: asyncio.Task | None = None

        # Metrics counter
        self.messages_received: int = 0

    async def start(self, broadcaster_id: str) -> None:
        self._bot = self._bot_factory(
            config=self._config,
            broadcaster_id=broadcaster_id,
            on_message=self.handle_event,
            prefix=self._prefix,
            logger=self._logger,
        )
        self._task = asyncio.create_task(self._bot.start(with_adapter=False))
        self._task.add_done_callback(self._on_bot_exit)
        self._logger.info("Chat client starting for #%s", normalize_login(self._config.target_channel))

    async def stop(self) -> None:
        if self._bot is not None:
            try:
                await self._bot.close()
            except Exception:
                self._logger.exception("Error while closing chat bot")
            self._bot = None
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            self._task = None

    async def handle_event(self, message: Any) -> None:
        """Convert one twitchio message and forward it; the bot's own lines are skipped."""
        chat = ChatMessage.from_twitchio(message)
        if not chat.user_id or chat.user_id == str(self._config.bot_id):
            return
        self.messages_received += 1
        try:
            await self._on_message(chat)
        except Exception:
            self._logger.exception("Error handling chat message from %s", chat.login)

    def _on_bot_exit(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("Chat bot stopped: %s: %s", type(exc).__name__, exc)
