"""Configuration system for lurk-economy.

All Pydantic models are defined here with sensible defaults. The YAML file
is the settings collaborator: it is read once at startup and handed to each
component explicitly; nothing in the core mutates it.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════
#  Identity & Storage
# ═══════════════════════════════════════════════════════════════

class DatabaseConfig(BaseModel):
    path: str = "economy.db"


class TwitchConfig(BaseModel):
    """Channel/bot identity and secrets for the Helix API and chat."""
    client_id: str = ""
    client_secret: str = ""
    access_token: str = ""
    refresh_token: str = Field(default="", description="Bot user refresh token; required for the chat subscription")
    channel: str = Field(default="", description="Channel login; falls back to the bot's own channel")
    channel_id: str = Field(default="", description="Broadcaster user id; resolved from channel when empty")
    bot_id: str = ""
    bot_username: str = ""
    helix_base_url: str = "https://api.twitch.tv"
    chatters_page_size: int = Field(default=1000, ge=1, le=1000)

    @property
    def target_channel(self) -> str:
        return self.channel or self.bot_username

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.access_token and self.bot_id and self.target_channel)

    @property
    def chat_configured(self) -> bool:
        return bool(self.is_configured and self.client_secret and self.refresh_token)


class BotConfig(BaseModel):
    command_prefix: str = "!"
    max_message_length: int = 500


# ═══════════════════════════════════════════════════════════════
#  Lurk Accrual & Leveling
# ═══════════════════════════════════════════════════════════════

class PresenceConfig(BaseModel):
    min_gap_seconds: int = 60
    max_gap_seconds: int = 600
    points_per_minute: int = 1
    xp_per_minute: int = 3
    batch_size: int = Field(default=100, ge=1)
    poll_interval_seconds: int = Field(
        default=60, ge=0, description="Reconciliation poll from the app shell; 0 disables",
    )


class LevelingConfig(BaseModel):
    base_xp: int = Field(default=100, gt=0)
    growth_rate: float = Field(default=1.3, gt=1.0)


# ═══════════════════════════════════════════════════════════════
#  Commands
# ═══════════════════════════════════════════════════════════════

class DedupConfig(BaseModel):
    window_seconds: int = 60
    prune_probability: float = Field(default=0.01, ge=0.0, le=1.0)


class CommandsConfig(BaseModel):
    rate_limit_per_minute: int = 20


class PaidMessageConfig(BaseModel):
    enabled: bool = True
    cost: int = Field(default=100, gt=0)
    max_length: int = 300


class MusicConfig(BaseModel):
    enabled: bool = True
    queue_cost: int = Field(default=50, ge=0)
    check_cost: int = Field(default=10, ge=0)
    privileged_free: bool = True
    controls_require_moderator: bool = True


class ShopItemSeed(BaseModel):
    name: str
    cost: int = Field(gt=0)
    description: str = ""


class ShopConfig(BaseModel):
    seed_defaults: bool = True
    default_items: list[ShopItemSeed] = Field(default_factory=lambda: [
        ShopItemSeed(name="Hydrate", cost=100, description="Remind streamer to drink water"),
        ShopItemSeed(name="Posture Check", cost=200, description="Sit up straight!"),
        ShopItemSeed(name="Shoutout", cost=500, description="Get a shoutout"),
        ShopItemSeed(name="VIP (24h)", cost=5000, description="VIP status for a day"),
    ])


class LeaderboardConfig(BaseModel):
    size: int = Field(default=5, ge=1, le=25)


# ═══════════════════════════════════════════════════════════════
#  HTTP surface
# ═══════════════════════════════════════════════════════════════

class HttpConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 28390
    ingest_token: str = Field(default="", description="Shared secret for /api/commands; empty disables it")


# ═══════════════════════════════════════════════════════════════
#  Top-Level Economy Config
# ═══════════════════════════════════════════════════════════════

class EconomyConfig(BaseModel):
    """Full economy config."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    twitch: TwitchConfig = Field(default_factory=TwitchConfig)
    bot: BotConfig = Field(default_factory=BotConfig)
    ignored_users: list[str] = Field(default_factory=list)

    presence: PresenceConfig = Field(default_factory=PresenceConfig)
    leveling: LevelingConfig = Field(default_factory=LevelingConfig)

    dedup: DedupConfig = Field(default_factory=DedupConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    paid_message: PaidMessageConfig = Field(default_factory=PaidMessageConfig)
    music: MusicConfig = Field(default_factory=MusicConfig)
    shop: ShopConfig = Field(default_factory=ShopConfig)
    leaderboard: LeaderboardConfig = Field(default_factory=LeaderboardConfig)

    http: HttpConfig = Field(default_factory=HttpConfig)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> EconomyConfig:
    """Load and validate YAML config file into EconomyConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return EconomyConfig(**raw)
