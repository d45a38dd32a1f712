"""Where the next step comes from: an in-memory graph or a backend endpoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

import httpx

from .config import EngineConfig
from .steps import Step, StepGraph, assign_default_setting, parse_step
from .strategies import StrategyRegistry

logger = logging.getLogger("chatflow.sources")


class StepSourceError(RuntimeError):
    """The next step could not be obtained."""


class StepNotFound(StepSourceError):
    pass


class NoStepsFound(StepSourceError):
    pass


class StepSource(Protocol):
    remote: bool

    async def first_steps(self) -> List[Step]:
        ...

    async def next_steps(self, step_id: Optional[str], value: Any = None) -> List[Step]:
        ...


class LocalGraphSource:
    """Resolves triggers against a :class:`StepGraph`."""

    remote = False

    def __init__(self, graph: StepGraph):
        self.graph = graph

    async def first_steps(self) -> List[Step]:
        return [self.graph.first]

    async def next_steps(self, step_id: Optional[str], value: Any = None) -> List[Step]:
        return [self.resolve(step_id)]

    def resolve(self, step_id: Optional[str]) -> Step:
        step = self.graph.get(step_id) if step_id is not None else None
        if step is None:
            raise StepNotFound(f"No step with id={step_id}")
        if step.update is None:
            return step
        return self._apply_update(step)

    def _apply_update(self, update_step: Step) -> Step:
        target = self.graph[update_step.update]
        changes: Dict[str, Any] = {
            "id": update_step.update,
            "updated_by": update_step.id,
            "end": update_step.end,
        }
        if target.options is not None or update_step.update_options is not None:
            if update_step.update_options is not None:
                changes["options"] = list(update_step.update_options)
            else:
                changes["options"] = [
                    option.model_copy(update={"trigger": update_step.trigger}) for option in target.options
                ]
            changes["user"] = False
        else:
            if update_step.update_user:
                changes["user"] = update_step.update_user
            if update_step.validator is not None:
                changes["validator"] = update_step.validator
            if update_step.parser is not None:
                changes["parser"] = update_step.parser
            changes["trigger"] = update_step.trigger
        return target.model_copy(update=changes)


@asynccontextmanager
async def _client_context(client: Optional[httpx.AsyncClient], timeout: float = 10.0):
    if client is not None:
        yield client
        return

    managed_client = httpx.AsyncClient(timeout=timeout)
    try:
        yield managed_client
    finally:
        await managed_client.aclose()


class RemoteStepSource:
    """Fetches steps from ``url`` given the current step id and submitted value.

    The endpoint receives ``{sessionId, currentStepId, submittedValue, readOnly}``
    and answers with a JSON list of step descriptors (or ``{"steps": [...]}``).
    """

    remote = True

    def __init__(
        self,
        url: str,
        session_id: str,
        *,
        config: Optional[EngineConfig] = None,
        registry: Optional[StrategyRegistry] = None,
        step_parser: Optional[Callable[[Mapping[str, Any]], Mapping[str, Any]]] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.url = url
        self.session_id = session_id
        self.config = config or EngineConfig()
        self.registry = registry
        self.step_parser = step_parser
        self._client = client
        self._timeout = timeout

    async def first_steps(self) -> List[Step]:
        return await self.fetch(None)

    async def next_steps(self, step_id: Optional[str], value: Any = None) -> List[Step]:
        steps = await self.fetch(step_id, value)
        bookkeeping = [step.model_copy(update={"value_only": True}) for step in steps[:-1]]
        return bookkeeping + steps[-1:]

    async def fetch(self, step_id: Optional[str], value: Any = None) -> List[Step]:
        payload = {
            "sessionId": self.session_id,
            "currentStepId": step_id,
            "submittedValue": value,
            "readOnly": self.config.read_only,
        }
        try:
            async with _client_context(self._client, self._timeout) as http_client:
                response = await http_client.post(self.url, json=payload)
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Step request for %s failed: %s", step_id, exc)
            raise StepSourceError(f"Could not fetch steps for step id={step_id}") from exc

        raw_steps = body.get("steps", []) if isinstance(body, Mapping) else body
        if not isinstance(raw_steps, list):
            raise StepSourceError(f"Unexpected step payload for step id={step_id}")
        try:
            return [self._complete(raw) for raw in raw_steps]
        except (TypeError, ValueError) as exc:
            logger.warning("Malformed steps returned for %s: %s", step_id, exc)
            raise StepSourceError(f"Invalid steps returned for step id={step_id}") from exc

    def _complete(self, raw: Mapping[str, Any]) -> Step:
        if self.step_parser is not None:
            raw = self.step_parser(raw)
        return assign_default_setting(parse_step(raw, self.registry), self.config)


__all__ = [
    "LocalGraphSource",
    "NoStepsFound",
    "RemoteStepSource",
    "StepNotFound",
    "StepSource",
    "StepSourceError",
]
