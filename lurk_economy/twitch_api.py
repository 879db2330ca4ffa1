"""Twitch Helix API client — async HTTP wrapper with caching.

Provides the roster read (Get Chatters, paginated) and the chat publish
capability (Send Chat Message). Tests mock the HTTP layer and never call
the real Twitch API.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

import aiohttp

from .lurk_reconciler import Participant, RosterResult

if TYPE_CHECKING:
    from .config import TwitchConfig


class HelixClient:
    """Async client for the Twitch Helix API."""

    def __init__(self, config: TwitchConfig, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("economy.helix")
        self._session: aiohttp.ClientSession | None = None
        self._cache: dict[str, tuple[float, Any]] = {}  # {key: (expiry_ts, data)}
        self._cache_ttl = 3600  # logins rarely change owners

    async def start(self) -> None:
        """Create the HTTP session."""
        self._session = aiohttp.ClientSession(
            base_url=self._config.helix_base_url,
            headers={
                "Client-ID": self._config.client_id,
                "Authorization": f"Bearer {self._config.access_token}",
            },
            timeout=aiohttp.ClientTimeout(total=10.0),
        )

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    # ══════════════════════════════════════════════════════════
    #  Users
    # ══════════════════════════════════════════════════════════

    async def get_user_id(self, login: str) -> str | None:
        """Resolve a login to its user id. Returns None if unknown or on error."""
        login = login.strip().lower()
        cache_key = f"user:{login}"
        cached = self._get_cached(cache_key)
        if cached is not None:
            return cached

        if not self._session:
            return None

        try:
            async with self._session.get("/helix/users", params={"login": login}) as resp:
                resp.raise_for_status()
                data = await resp.json()
        except Exception as e:
            self._logger.error("Helix user lookup failed for '%s': %s", login, e)
            return None

        users = data.get("data") or []
        if not users:
            return None
        user_id = str(users[0]["id"])
        self._set_cached(cache_key, user_id)
        return user_id

    async def get_broadcaster_id(self) -> str | None:
        """Id of the configured channel; the bot's own id when it is the target."""
        if self._config.channel_id:
            return self._config.channel_id
        target = self._config.target_channel
        if not target:
            return None
        bot = self._config.bot_username
        if bot and target.lower() == bot.lower() and self._config.bot_id:
            return self._config.bot_id
        return await self.get_user_id(target)

    # ══════════════════════════════════════════════════════════
    #  Roster
    # ══════════════════════════════════════════════════════════

    async def get_participants(self, channel_id: str) -> RosterResult:
        """Fetch every page of Get Chatters for ``channel_id``.

        Never raises; failures come back as ``RosterResult.error`` with no
        participants.
        """
        if not self._session:
            return RosterResult(total=0, error="Helix session not started")

        participants: list[Participant] = []
        total = 0
        cursor: str | None = None
        try:
            while True:
                params = {
                    "broadcaster_id": channel_id,
                    "moderator_id": self._config.bot_id,
                    "first": str(self._config.chatters_page_size),
                }
                if cursor:
                    params["after"] = cursor
                async with self._session.get("/helix/chat/chatters", params=params) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        self._logger.error("Helix chatters API error %s: %s", resp.status, body)
                        return RosterResult(total=0, error=f"Helix chatters API error {resp.status}")
                    data = await resp.json()

                participants.extend(self._parse_chatter(c) for c in data.get("data") or [])
                total = int(data.get("total", len(participants)))
                cursor = (data.get("pagination") or {}).get("cursor")
                if not cursor:
                    break
        except Exception as e:
            self._logger.error("Failed to fetch chatters for %s: %s", channel_id, e)
            return RosterResult(total=0, error=f"Internal Error: {e}")

        return RosterResult(total=max(total, len(participants)), participants=participants)

    # ══════════════════════════════════════════════════════════
    #  Chat
    # ══════════════════════════════════════════════════════════

    async def send_chat_message(self, message: str) -> bool:
        """Post one chat line as the bot. Returns False on any failure."""
        if not self._session:
            return False
        broadcaster_id = await self.get_broadcaster_id()
        if not broadcaster_id:
            self._logger.warning("Cannot send chat message: channel not resolved")
            return False

        try:
            async with self._session.post(
                "/helix/chat/messages",
                json={
                    "broadcaster_id": broadcaster_id,
                    "sender_id": self._config.bot_id,
                    "message": message,
                },
            ) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    self._logger.error("Helix send message error %s: %s", resp.status, body)
                    return False
                data = await resp.json()
        except Exception as e:
            self._logger.error("Failed to send chat message: %s", e)
            return False

        entries = data.get("data") or []
        if entries and not entries[0].get("is_sent", True):
            reason = (entries[0].get("drop_reason") or {}).get("message", "unknown")
            self._logger.warning("Chat message dropped by Twitch: %s", reason)
            return False
        return True

    # ══════════════════════════════════════════════════════════
    #  Internal Helpers
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _parse_chatter(item: dict) -> Participant:
        return Participant(
            user_id=str(item.get("user_id", "")),
            user_name=item.get("user_name") or item.get("user_login", ""),
            user_login=item.get("user_login", ""),
        )

    def _get_cached(self, key: str) -> Any | None:
        """Return cached value if not expired, else None."""
        if key in self._cache:
            expiry, data = self._cache[key]
            if time.time() < expiry:
                return data
            del self._cache[key]
        return None

    def _set_cached(self, key: str, data: Any) -> None:
        self._cache[key] = (time.time() + self._cache_ttl, data)


class ChatPublisher:
    """The chat-publish capability: one logical line, split to fit the platform."""

    def __init__(
        self,
        helix: HelixClient,
        max_length: int = 500,
        logger: logging.Logger | None = None,
    ) -> None:
        self._helix = helix
        self._max_length = max_length
        self._logger = logger or logging.getLogger("economy.publish")

    async def publish(self, text: str) -> bool:
        """Send ``text``; True only if every chunk was accepted."""
        ok = True
        for chunk in split_message(text, self._max_length):
            if not await self._helix.send_chat_message(chunk):
                ok = False
        return ok


def split_message(message: str, limit: int = 500) -> list[str]:
    """Split a long chat line into chunks of at most ``limit`` characters.

    Splits at spaces; a single word longer than the limit is cut.
    """
    if len(message) <= limit:
        return [message]

    chunks: list[str] = []
    current: list[str] = []
    current_len = 0

    for word in message.split(" "):
        while len(word) > limit:
            if current:
                chunks.append(" ".join(current))
                current, current_len = [], 0
            chunks.append(word[:limit])
            word = word[limit:]
        # +1 accounts for the ' ' join character
        added_len = len(word) + (1 if current else 0)
        if current and current_len + added_len > limit:
            chunks.append(" ".join(current))
            current = [word]
            current_len = len(word)
        else:
            current.append(word)
            current_len += added_len

    if current:
        chunks.append(" ".join(current))

    return [c for c in chunks if c]
