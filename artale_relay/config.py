"""
Configuration loading and validation.

Loads relay configuration from a YAML file with environment variable
resolution for secrets (the Discord token is never stored in config files).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator


class FeedConfig(BaseModel):
    url: str = "wss://api.artale-love.com/ws/broadcasts"
    # Gives the Discord client time to finish its handshake first
    initial_delay_seconds: float = 5.0
    ping_interval_seconds: float = 30.0
    reconnect_base_seconds: float = 5.0
    reconnect_max_seconds: float = 30.0
    max_reconnect_attempts: int = 10
    dedup_high_water: int = 1000
    dedup_low_water: int = 500

    @model_validator(mode="after")
    def _check_dedup_marks(self) -> "FeedConfig":
        if not 0 < self.dedup_low_water <= self.dedup_high_water:
            raise ValueError("dedup_low_water must be positive and <= dedup_high_water")
        return self


class DiscordConfig(BaseModel):
    token_env: str = "DISCORD_TOKEN"
    # Sync slash commands to a single guild instead of globally
    guild_id: Optional[int] = None

    @property
    def token(self) -> str | None:
        return os.environ.get(self.token_env)


class StoreConfig(BaseModel):
    db_path: str = "./data/subscriptions.db"


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9090


class RelayConfig(BaseModel):
    feed: FeedConfig = Field(default_factory=FeedConfig)
    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def load_config(path: str | Path) -> RelayConfig:
    """Load and validate relay configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    return RelayConfig.model_validate(raw)
