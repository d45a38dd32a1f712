"""Engine configuration passed explicitly to the transition engine."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class EngineConfig(BaseModel):
    """Per-engine settings; delays are in milliseconds."""

    model_config = ConfigDict(frozen=True)

    bot_delay: int = Field(default=1000, ge=0)
    user_delay: int = Field(default=1000, ge=0)
    custom_delay: int = Field(default=1000, ge=0)
    bot_avatar: Optional[str] = None
    user_avatar: Optional[str] = None

    cache: bool = False
    cache_name: str = "chatflow_cache"

    next_step_url: Optional[str] = Field(
        default=None,
        description="Backend endpoint serving steps; enables remote mode when set.",
    )
    read_only: bool = False
    invalid_input_cooldown: int = Field(default=2000, ge=0)

    @property
    def remote(self) -> bool:
        return bool(self.next_step_url)

    def bot_settings(self) -> Dict[str, Any]:
        return {"delay": self.bot_delay, "avatar": self.bot_avatar}

    def user_settings(self) -> Dict[str, Any]:
        return {
            "delay": self.user_delay,
            "avatar": self.user_avatar,
            "hide_input": False,
            "hide_extra_control": False,
        }

    def custom_settings(self) -> Dict[str, Any]:
        return {"delay": self.custom_delay}


__all__ = ["EngineConfig"]
