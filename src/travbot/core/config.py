"""Configuration management with Pydantic models and TOML loading."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Literal
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, ValidationError, field_validator

from travbot.core.exceptions import ConfigError


class ServerConfig(BaseModel):
    base_url: str = "https://ts1.x1.europe.travian.com"
    timeout: float = 30.0

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def host(self) -> str:
        return urlsplit(self.base_url).hostname or ""


class AccountConfig(BaseModel):
    username: str = ""
    password: str = ""


class PipelineConfig(BaseModel):
    delay_range_ms: tuple[int, int] = (500, 2000)
    max_retries: int = 3
    backoff_base: float = 1.0  # seconds, doubled per attempt
    max_consecutive_errors: int = 5


class SessionConfig(BaseModel):
    auth_cookie: str = "JWT"
    token_lifetime_hours: float = 20.0
    persist_interval: int = 300  # seconds between unforced cookie saves


class BuildingConfig(BaseModel):
    resource_floor: int = 100  # per resource, see DESIGN.md
    busy_margin: int = 5
    insufficient_recheck: int = 300


class TroopsConfig(BaseModel):
    default_interval_minutes: int = 5
    jitter: float = 0.2
    min_interval_seconds: int = 30


class FarmingConfig(BaseModel):
    default_interval_minutes: int = 30
    max_retries: int = 3
    retry_delay: float = 2.0


class RefreshConfig(BaseModel):
    enabled: bool = True
    mode: Literal["smart", "short", "long"] = "smart"
    short_range: tuple[int, int] = (60, 180)
    long_range: tuple[int, int] = (600, 1200)
    smart_margin: int = 10


class TelegramConfig(BaseModel):
    bot_token: str = ""
    chat_id: str = ""
    alert_cooldown: int = 300


class AppConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    account: AccountConfig = Field(default_factory=AccountConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    building: BuildingConfig = Field(default_factory=BuildingConfig)
    troops: TroopsConfig = Field(default_factory=TroopsConfig)
    farming: FarmingConfig = Field(default_factory=FarmingConfig)
    refresh: RefreshConfig = Field(default_factory=RefreshConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    selector_file: str = ""


def load_config(path: Path) -> AppConfig:
    """Load configuration from a TOML file, falling back to defaults."""
    if not path.exists():
        return AppConfig()
    with open(path, "rb") as f:
        data = tomllib.load(f)
    try:
        return AppConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"invalid config {path}: {e}") from e
