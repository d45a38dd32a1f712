"""Persistence of ``{currentStep, previousStep, transcript}`` keyed by a cache name."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger("chatflow.store")


class SessionState(BaseModel):
    """Serialised engine state; steps are kept as plain JSON dicts."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    current_step: Optional[Dict[str, Any]] = None
    previous_step: Optional[Dict[str, Any]] = None
    transcript: List[Dict[str, Any]] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SessionStore(Protocol):
    async def load(self, key: str) -> Optional[SessionState]:
        ...

    async def save(self, key: str, state: SessionState) -> None:
        ...


class MemorySessionStore:
    """Process-local store; copies state in and out."""

    def __init__(self) -> None:
        self._states: Dict[str, SessionState] = {}

    async def load(self, key: str) -> Optional[SessionState]:
        state = self._states.get(key)
        return state.model_copy(deep=True) if state is not None else None

    async def save(self, key: str, state: SessionState) -> None:
        self._states[key] = state.model_copy(deep=True)


class JsonSessionStore:
    """Tiny JSON-file store mapping cache names to session states."""

    def __init__(self, path: Path):
        self._path = path
        self._lock = Lock()

    def _read_all(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        data = json.loads(self._path.read_text("utf-8"))
        return data if isinstance(data, dict) else {}

    def _read(self, key: str) -> Optional[SessionState]:
        with self._lock:
            item = self._read_all().get(key)
        return SessionState.model_validate(item) if item is not None else None

    def _write(self, key: str, state: SessionState) -> None:
        with self._lock:
            try:
                data = self._read_all()
            except json.JSONDecodeError:
                logger.warning("Session file %s is corrupt; rewriting it", self._path)
                data = {}
            data[key] = state.model_dump(mode="json", by_alias=True)
            self._path.write_text(json.dumps(data, indent=2), "utf-8")

    async def load(self, key: str) -> Optional[SessionState]:
        try:
            return await asyncio.to_thread(self._read, key)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Could not load session %s; starting fresh: %s", key, exc)
            return None

    async def save(self, key: str, state: SessionState) -> None:
        await asyncio.to_thread(self._write, key, state)


__all__ = ["JsonSessionStore", "MemorySessionStore", "SessionState", "SessionStore"]
