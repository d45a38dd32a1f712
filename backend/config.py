"""Configuration utilities for the chatflow HTTP service."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, HttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict

from chatflow.config import EngineConfig


class Settings(BaseSettings):
    """Application settings loaded from the environment."""

    environment: str = Field(
        default="development",
        description="Name of the current environment (development, staging, production).",
    )
    log_level: str = Field(default="INFO", description="Root logging level.")
    data_path: Path = Field(
        default=Path("data/sessions.json"),
        description="Filesystem location where cached sessions are stored as JSON.",
    )
    graph_path: Optional[Path] = Field(
        default=None,
        description="JSON file holding the list of raw steps for local mode.",
    )
    next_step_url: HttpUrl | None = Field(
        default=None,
        description="Backend endpoint serving steps. Enables remote mode when no graph is configured.",
    )

    bot_delay: int = Field(default=1000, ge=0, description="Bot 'thinking' time in milliseconds.")
    user_delay: int = Field(default=1000, ge=0)
    custom_delay: int = Field(default=1000, ge=0)
    bot_avatar: Optional[str] = None
    user_avatar: Optional[str] = None

    cache_enabled: bool = Field(default=True, description="Persist sessions that carry a cache key.")
    read_only: bool = False
    invalid_input_cooldown: int = Field(default=2000, ge=0)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    def engine_config(self, cache_name: Optional[str] = None) -> EngineConfig:
        return EngineConfig(
            bot_delay=self.bot_delay,
            user_delay=self.user_delay,
            custom_delay=self.custom_delay,
            bot_avatar=self.bot_avatar,
            user_avatar=self.user_avatar,
            cache=bool(self.cache_enabled and cache_name),
            cache_name=cache_name or EngineConfig().cache_name,
            next_step_url=str(self.next_step_url) if self.next_step_url else None,
            read_only=self.read_only,
            invalid_input_cooldown=self.invalid_input_cooldown,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def ensure_data_directory(path: Path) -> None:
    """Ensure the directory containing the data file exists."""

    path.parent.mkdir(parents=True, exist_ok=True)
