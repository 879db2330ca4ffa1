"""Service orchestrator — EconomyApp.

config → DB init → Helix client → reconciler/processor → chat → HTTP → poll.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from .chat_client import ChatMessage, TwitchChatClient
from .command_processor import CommandProcessor
from .config import EconomyConfig, load_config
from .database import EconomyDatabase
from .http_server import EconomyHttpServer
from .lurk_reconciler import LurkReconciler
from .spending_engine import SpendingEngine
from .twitch_api import ChatPublisher, HelixClient


class EconomyApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str | None = None, config: EconomyConfig | None = None) -> None:
        self.config_path = Path(config_path) if config_path else None
        self.logger = logging.getLogger("economy")

        # Components (initialized in start())
        self.config: EconomyConfig | None = config
        self.db: EconomyDatabase | None = None
        self.helix: HelixClient | None = None
        self.publisher: ChatPublisher | None = None
        self.spending_engine: SpendingEngine | None = None
        self.reconciler: LurkReconciler | None = None
        self.processor: CommandProcessor | None = None
        self.chat_client: TwitchChatClient | None = None
        self.http_server: EconomyHttpServer | None = None

        # State
        self._running = False
        self._stopped = asyncio.Event()
        self._start_time: float | None = None
        self._poll_task: asyncio.Task | None = None

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    async def start(self) -> None:
        """Build every component, then serve until stop() is called."""
        if self.config is None:
            if self.config_path is None:
                raise ValueError("EconomyApp needs a config path or a config object")
            self.config = load_config(str(self.config_path))
        config = self.config
        self._start_time = time.time()

        self.db = EconomyDatabase(config.database.path, logging.getLogger("economy.db"))
        await self.db.initialize()

        self.helix = HelixClient(config.twitch, logging.getLogger("economy.helix"))
        await self.helix.start()
        if not config.twitch.is_configured:
            self.logger.warning(
                "Twitch credentials incomplete; roster reads and chat replies are disabled",
            )

        self.publisher = ChatPublisher(
            self.helix,
            max_length=config.bot.max_message_length,
            logger=logging.getLogger("economy.publish"),
        )
        self.spending_engine = SpendingEngine(self.db, logging.getLogger("economy.spending"))
        self.reconciler = LurkReconciler(
            config, self.db, self.helix, logging.getLogger("economy.lurk"),
        )
        self.processor = CommandProcessor(
            config,
            self.db,
            self.publisher,
            logging.getLogger("economy.commands"),
            spending_engine=self.spending_engine,
        )

        await self._start_chat()

        if config.http.enabled:
            self.http_server = EconomyHttpServer(
                config,
                self.db,
                self.reconciler,
                self.processor,
                logging.getLogger("economy.http"),
            )
            await self.http_server.start()

        if config.presence.poll_interval_seconds > 0:
            self._poll_task = asyncio.create_task(self._poll_loop())

        self._running = True
        self.logger.info("Economy service started for #%s", config.twitch.target_channel or "-")
        await self._stopped.wait()

    async def stop(self) -> None:
        """Graceful shutdown."""
        if not self._running:
            self._stopped.set()
            return
        self._running = False
        self.logger.info("Shutting down economy service")

        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        if self.chat_client:
            await self.chat_client.stop()
        if self.http_server:
            await self.http_server.stop()
        if self.helix:
            await self.helix.stop()

        self._stopped.set()

    # ══════════════════════════════════════════════════════════
    #  Event Handlers
    # ══════════════════════════════════════════════════════════

    async def _start_chat(self) -> None:
        twitch = self.config.twitch
        if not twitch.chat_configured:
            self.logger.warning(
                "Chat credentials incomplete (client_secret/refresh_token); chat commands are disabled",
            )
            return
        broadcaster_id = await self.helix.get_broadcaster_id()
        if not broadcaster_id:
            self.logger.warning(
                "Could not resolve broadcaster id for #%s; chat commands are disabled",
                twitch.target_channel,
            )
            return
        self.chat_client = TwitchChatClient(
            twitch,
            self._handle_chat_message,
            logging.getLogger("economy.chat"),
            prefix=self.config.bot.command_prefix,
        )
        await self.chat_client.start(broadcaster_id)

    async def _handle_chat_message(self, message: ChatMessage) -> None:
        await self.processor.handle_chat_line(
            message.text, message.to_sender(), delivery_id=message.message_id,
        )

    async def _poll_loop(self) -> None:
        """Periodic reconciliation pass; the core itself never schedules."""
        interval = self.config.presence.poll_interval_seconds
        while True:
            try:
                live = await self.reconciler.fetch_live_chatters()
                if live.error:
                    self.logger.warning("Chatter poll failed: %s", live.error)
                else:
                    self.logger.debug("Chatter poll: %d present", live.count)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception("Chatter poll error")
            await asyncio.sleep(interval)
