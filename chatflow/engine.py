"""Transition engine: moves a conversation from step to step.

The engine owns ``current_step``, ``previous_step`` and the transcript. It is
driven by two kinds of events coming from the rendering layer:
:meth:`TransitionEngine.submit_user_message` for free text and
:meth:`TransitionEngine.choose` for option, choice and custom-widget actions.
Bot-authored steps are advanced through on their own until the conversation
needs the user again or ends.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union
from uuid import uuid4

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .config import EngineConfig
from .nested import is_nested, save_value_as_step
from .session_store import SessionState, SessionStore
from .sources import LocalGraphSource, NoStepsFound, RemoteStepSource, StepSource, StepSourceError
from .steps import (
    SchemaError,
    Step,
    StepGraph,
    StepKind,
    dump_step,
    parse_step,
    project_by_id,
    stamp_metadata,
)
from .strategies import Computed, StrategyRegistry, coerce_strategy, evaluate
from .validation import builtin_registry, check_input, parse_input

logger = logging.getLogger("chatflow.engine")

FAILURE_NOTICE = "Component is not working because of unexpected error."
CONTROL_KEYS = ("hideInput", "hide_input", "hideExtraControl", "hide_extra_control")


class ConversationFailed(RuntimeError):
    """Fatal: the conversation cannot start or continue."""


class InvalidSelection(ValueError):
    """A choose event that matches nothing the current step offers."""


class Selection(BaseModel):
    """What the rendering layer hands back when the user picks something."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    value: Any = None
    label: Optional[str] = None
    trigger: Union[str, Computed, None] = None
    hide_input: Optional[bool] = None
    hide_extra_control: Optional[bool] = None

    @field_validator("trigger", mode="before")
    @classmethod
    def _coerce_trigger(cls, value: Any) -> Any:
        return coerce_strategy(value, None, names_are_literal=True)


class EndResult(BaseModel):
    transcript: List[Dict[str, Any]]
    steps_by_id: Dict[str, Dict[str, Any]]
    values: List[Any]


class EngineSnapshot(BaseModel):
    """State exposed to the rendering layer after each transition."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    session_id: str
    current_step: Optional[Step] = None
    previous_step: Optional[Step] = None
    transcript: List[Step] = Field(default_factory=list)
    disabled: bool = True
    input_value: str = ""
    input_invalid: bool = False
    fetching: bool = False
    ended: bool = False
    failed: bool = False

    @property
    def rendered(self) -> List[Step]:
        return [step for step in self.transcript if step.kind is not StepKind.VALUE_ONLY]


Data = Union[Selection, Sequence[Selection], None]


def delay_floor(configured: float, elapsed: float, carried: float = 0.0) -> float:
    """Remaining artificial delay in milliseconds, never negative."""
    return max(configured - elapsed - carried, 0.0)


def _value_and_label(data: Data) -> Tuple[Any, Optional[str]]:
    if data is None:
        return None, None
    if isinstance(data, Selection):
        return data.value, data.label
    return [item.value for item in data], ", ".join(item.label or "" for item in data)


def _swap(transcript: List[Step], old: Step, new: Step) -> Step:
    if transcript and transcript[-1] is old:
        transcript[-1] = new
    return new


def _matches(candidate: BaseModel, wanted: Mapping[str, Any]) -> bool:
    dumped = candidate.model_dump(mode="json", by_alias=True)
    return all(key in dumped and dumped[key] == value for key, value in wanted.items())


class TransitionEngine:
    """State machine for one conversation session."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        graph: Optional[StepGraph] = None,
        source: Optional[StepSource] = None,
        store: Optional[SessionStore] = None,
        registry: Optional[StrategyRegistry] = None,
        step_parser: Optional[Callable[[Mapping[str, Any]], Mapping[str, Any]]] = None,
        on_end: Optional[Callable[[EndResult], Any]] = None,
        on_step: Optional[Callable[[EngineSnapshot], Any]] = None,
        session_id: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or EngineConfig()
        self.session_id = session_id or str(uuid4())
        self.graph = graph
        self.registry = graph.registry if graph is not None else (registry or builtin_registry())

        if source is None:
            if graph is not None:
                source = LocalGraphSource(graph)
            elif self.config.next_step_url:
                source = RemoteStepSource(
                    self.config.next_step_url,
                    self.session_id,
                    config=self.config,
                    registry=self.registry,
                    step_parser=step_parser,
                    client=http_client,
                )
            else:
                raise ValueError("A step graph or a next_step_url is required")
        self._source = source
        self._store = store
        self._on_end = on_end
        self._on_step = on_step
        self._sleep = sleep
        self._clock = clock

        self.current_step: Optional[Step] = None
        self.previous_step: Optional[Step] = None
        self.transcript: Tuple[Step, ...] = ()
        self.disabled = True
        self.input_value = ""
        self.input_invalid = False
        self.fetching = False
        self.ended = False
        self.failed = False
        self.result: Optional[EndResult] = None
        self.partial_delay = 0.0

        self._started = False
        self._busy = False
        self._tasks: Set[asyncio.Task] = set()
        self._last_background: Optional[asyncio.Task] = None

    @property
    def remote(self) -> bool:
        return self._source.remote

    # ── public events ────────────────────────────────────────────────────────

    async def start(self) -> EngineSnapshot:
        """Resume the cached session or load the first step, then run until input is needed."""

        if self._started:
            return self.snapshot()
        self._started = True
        self._busy = True
        try:
            try:
                if not await self._resume():
                    await self._begin()
            except (SchemaError, StepSourceError) as exc:
                self._fail()
                logger.exception("Conversation %s could not start", self.session_id)
                raise ConversationFailed(FAILURE_NOTICE) from exc
            await self._advance()
        finally:
            self._busy = False
        return self.snapshot()

    async def submit_user_message(self, raw: str) -> EngineSnapshot:
        """Free-text answer to the current prompt; ignored while input is disabled."""

        self._ensure_usable()
        current = self.current_step
        if self.disabled or self._busy or current is None:
            logger.debug("Ignoring submit for session %s: input disabled", self.session_id)
            return self.snapshot()

        check = check_input(current.validator, raw)
        if not check.valid:
            self._reject_input(raw, check.feedback or "")
            return self.snapshot()
        try:
            value = parse_input(current.parser, raw)
        except (TypeError, ValueError) as exc:
            self._reject_input(raw, str(exc))
            return self.snapshot()

        self._busy = True
        try:
            await self._accept_input(current, raw, value)
            await self._advance(answered=True)
        finally:
            self._busy = False
        return self.snapshot()

    async def choose(self, selection: Any) -> EngineSnapshot:
        """Option pick, multi-choice pick or custom-widget action."""

        self._ensure_usable()
        current = self.current_step
        if self._busy or self.ended or current is None or self.config.read_only:
            logger.debug("Ignoring choose for session %s", self.session_id)
            return self.snapshot()

        data = self._match_selection(current, selection)
        self._busy = True
        try:
            await self.trigger_next_step(data)
            await self._advance()
        except StepSourceError:
            logger.exception("Could not record the selection for step %s", current.id)
            self.fetching = False
        finally:
            self._busy = False
        return self.snapshot()

    async def advance(self) -> EngineSnapshot:
        """Retry moving on after a failed fetch."""

        self._ensure_usable()
        if not self._busy:
            self._busy = True
            try:
                await self._advance()
            finally:
                self._busy = False
        return self.snapshot()

    async def drain(self) -> None:
        """Wait for outstanding background work (persistence, observers, cooldowns)."""

        pending = [task for task in self._tasks if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def snapshot(self) -> EngineSnapshot:
        return EngineSnapshot(
            session_id=self.session_id,
            current_step=self.current_step,
            previous_step=self.previous_step,
            transcript=list(self.transcript),
            disabled=self.disabled,
            input_value=self.input_value,
            input_invalid=self.input_invalid,
            fetching=self.fetching,
            ended=self.ended,
            failed=self.failed,
        )

    def session_state(self) -> SessionState:
        return SessionState(
            current_step=dump_step(self.current_step) if self.current_step is not None else None,
            previous_step=dump_step(self.previous_step) if self.previous_step is not None else None,
            transcript=[dump_step(step) for step in self.transcript],
        )

    # ── the transition ───────────────────────────────────────────────────────

    async def trigger_next_step(self, data: Data = None) -> EngineSnapshot:
        """Run one transition from the current step.

        Nothing is committed until the transition completes, so a failed fetch
        leaves the previous state in place.
        """

        current = self.current_step
        if current is None or self.ended:
            return self.snapshot()

        previous = self.previous_step
        transcript = list(self.transcript)
        single = data if isinstance(data, Selection) else None
        selections = [] if data is None else ([data] if single is not None else list(data))
        value, _label = _value_and_label(data)

        if not self.remote and value is not None:
            if is_nested(current.id):
                before_last = bool(transcript) and transcript[-1] is current
                transcript = save_value_as_step(transcript, current.id, value, before_last=before_last)
            else:
                current = _swap(transcript, current, current.model_copy(update={"value": value}))

        if single is not None:
            overrides = {}
            if single.hide_input:
                overrides["hide_input"] = single.hide_input
            if single.hide_extra_control:
                overrides["hide_extra_control"] = single.hide_extra_control
            if overrides:
                current = _swap(transcript, current, current.model_copy(update=overrides))

        if self.remote and value is not None:
            submitted = await self._submit_value(current.id, value)
            current = _swap(transcript, current, current.model_copy(update={"trigger": submitted.trigger}))
        elif single is not None and single.trigger is not None:
            trigger = self._resolve_trigger(single.trigger, value, transcript)
            current = _swap(transcript, current, current.model_copy(update={"trigger": trigger}))

        finished = False
        if current.options is not None and single is not None:
            current = self._answer_option(current, single, transcript)
        elif current.choices is not None and selections:
            answered = current.model_copy(
                update={
                    **self.config.user_settings(),
                    "user": True,
                    "message": ", ".join(item.label or "" for item in selections),
                    "value": value,
                    "choices": None,
                    "metadata": stamp_metadata(current.metadata),
                }
            )
            if transcript:
                transcript.pop()
            transcript.append(answered)
            current = answered
        elif current.end:
            finished = True
        elif current.trigger is not None:
            next_step, extras = await self._fetch_next(current, transcript)
            if current.replace and transcript:
                transcript.pop()
            transcript.extend(extras)
            previous, current = current, next_step
            if next_step.waiting_for_input:
                self.disabled = False
            else:
                transcript.append(next_step)

        self._commit(current, previous, transcript)
        if finished:
            await self._handle_end()
        self._after_transition()
        return self.snapshot()

    def _answer_option(self, current: Step, option: Selection, transcript: List[Step]) -> Step:
        if current.trigger is not None:
            trigger = current.trigger
        else:
            trigger = self._resolve_trigger(option.trigger, current.value, transcript)

        option_value = option.value
        same_id = [step for step in transcript if step.id == current.id]
        earlier = same_id[-2] if len(same_id) > 1 else None
        if earlier is not None and isinstance(earlier.value, dict) and isinstance(option_value, dict):
            option_value = {**earlier.value, **option_value}

        answered = current.model_copy(
            update={
                **self.config.user_settings(),
                "user": True,
                "message": option.label,
                "trigger": trigger,
                "end": not trigger,
                "value": option_value,
                "options": None,
                "metadata": stamp_metadata(current.metadata),
            }
        )
        if transcript:
            transcript.pop()
        transcript.append(answered)
        return answered

    async def _fetch_next(self, current: Step, transcript: List[Step]) -> Tuple[Step, List[Step]]:
        trigger = self._resolve_trigger(current.trigger, current.value, transcript)
        self.fetching = True
        started = self._clock()
        try:
            steps = await self._source.next_steps(trigger)
            if not steps:
                raise NoStepsFound(f"No steps returned for step id={trigger}")
            extras = list(steps[:-1])
            next_step, derived = self._arrive(steps[-1], transcript + extras, current)
            await self._wait_delay_floor(next_step, started)
        finally:
            self.fetching = False
        return next_step, extras + derived

    async def _submit_value(self, step_id: Optional[str], value: Any) -> Step:
        self.fetching = True
        started = self._clock()
        try:
            steps = await self._source.next_steps(step_id, value)
        finally:
            self.fetching = False
            self.partial_delay = (self._clock() - started) * 1000
        if not steps:
            raise NoStepsFound(f"No steps returned after saving step id={step_id}")
        return steps[0]

    async def _wait_delay_floor(self, step: Step, started: float) -> None:
        if step.message is not None or step.as_message or step.component is not None:
            configured = step.delay or 0
        else:
            configured = 0
        elapsed = (self._clock() - started) * 1000
        wait = delay_floor(configured, elapsed, self.partial_delay)
        self.partial_delay = 0.0
        if wait > 0:
            await self._sleep(wait / 1000)

    def _resolve_trigger(self, trigger: Any, value: Any, transcript: Sequence[Step]) -> Any:
        return evaluate(trigger, {"value": value, "steps": project_by_id(transcript)})

    def _arrive(
        self, step: Step, history: Sequence[Step], current: Optional[Step]
    ) -> Tuple[Step, List[Step]]:
        """Evaluate the computed message and derived values of a step becoming current."""

        if isinstance(step.message, Computed):
            previous_value = history[-1].value if history else None
            text = step.message({"previousValue": previous_value, "steps": project_by_id(history)})
            step = step.model_copy(update={"message": str(text)})

        derived: List[Step] = []
        if step.derive and not self.remote:
            values = {item.id: copy.deepcopy(item.value) for item in history if item.value is not None}
            if current is not None and current.value is not None:
                values[current.id] = copy.deepcopy(current.value)
            context = {"values": values, "steps": project_by_id(history)}
            for target, strategy in step.derive.items():
                derived.append(Step(id=target, value=strategy(context), value_only=True))
        return step, derived

    # ── free text ────────────────────────────────────────────────────────────

    async def _accept_input(self, current: Step, raw: str, value: Any) -> None:
        transcript = list(self.transcript)
        if not self.remote and is_nested(current.id):
            transcript = save_value_as_step(transcript, current.id, value, before_last=False)

        defaults = {
            key: setting for key, setting in self.config.user_settings().items() if getattr(current, key) is None
        }
        answered = current.model_copy(
            update={**defaults, "message": raw, "value": value, "metadata": stamp_metadata(current.metadata)}
        )
        self.disabled = True
        self.input_value = ""

        if self.remote and value is not None:
            try:
                submitted = await self._submit_value(current.id, value)
            except StepSourceError:
                logger.exception("Could not update step with id: %s and value %r", current.id, value)
            else:
                answered = answered.model_copy(update={"trigger": submitted.trigger})

        transcript.append(answered)
        self._commit(answered, self.previous_step, transcript)

    def _reject_input(self, raw: str, feedback: str) -> None:
        self.input_value = feedback
        self.input_invalid = True
        self.disabled = True
        self._track(asyncio.create_task(self._restore_input(raw)))

    async def _restore_input(self, raw: str) -> None:
        await self._sleep(self.config.invalid_input_cooldown / 1000)
        self.input_value = raw
        self.input_invalid = False
        self.disabled = False

    # ── selections ───────────────────────────────────────────────────────────

    def _match_selection(self, current: Step, selection: Any) -> Data:
        kind = current.kind
        if kind is StepKind.OPTIONS:
            if isinstance(selection, (list, tuple)):
                raise InvalidSelection("Options take a single selection")
            return self._pick(current.options or [], selection, current.id)
        if kind is StepKind.CHOICES:
            items = selection if isinstance(selection, (list, tuple)) else [selection]
            if not items:
                raise InvalidSelection("Select at least one choice")
            return [self._pick(current.choices or [], item, current.id) for item in items]
        if kind is StepKind.CUSTOM:
            if isinstance(selection, (list, tuple)):
                return [self._as_selection(item) for item in selection]
            return self._as_selection(selection) if selection is not None else None
        raise InvalidSelection(f"Step {current.id} offers nothing to choose")

    @staticmethod
    def _as_selection(item: Any) -> Selection:
        if isinstance(item, Selection):
            return item
        if isinstance(item, BaseModel):
            return Selection(
                value=getattr(item, "value", None),
                label=getattr(item, "label", None),
                trigger=getattr(item, "trigger", None),
            )
        if isinstance(item, Mapping):
            return Selection.model_validate(item)
        return Selection(value=item, label=str(item))

    @staticmethod
    def _pick(candidates: Sequence[BaseModel], selection: Any, step_id: Optional[str]) -> Selection:
        if isinstance(selection, BaseModel) and not isinstance(selection, Selection):
            found = [candidate for candidate in candidates if candidate == selection]
            controls: Dict[str, Any] = {}
        else:
            if isinstance(selection, Selection):
                wanted = selection.model_dump(mode="json", by_alias=True, exclude_none=True)
            elif isinstance(selection, Mapping):
                wanted = dict(selection)
            else:
                raise InvalidSelection(f"Unsupported selection for step {step_id}: {selection!r}")
            controls = {key: wanted.pop(key) for key in CONTROL_KEYS if key in wanted}
            if not wanted:
                raise InvalidSelection(f"Empty selection for step {step_id}")
            found = [candidate for candidate in candidates if _matches(candidate, wanted)]
        if not found:
            raise InvalidSelection(f"Selection does not match any entry of step {step_id}")

        chosen = found[0]
        return Selection(
            value=chosen.value,
            label=chosen.label,
            trigger=getattr(chosen, "trigger", None),
            hide_input=controls.get("hideInput", controls.get("hide_input")),
            hide_extra_control=controls.get("hideExtraControl", controls.get("hide_extra_control")),
        )

    # ── lifecycle helpers ────────────────────────────────────────────────────

    async def _begin(self) -> None:
        self.fetching = True
        started = self._clock()
        try:
            steps = await self._source.first_steps()
            if not steps:
                raise NoStepsFound("Could not find any steps")
            transcript = list(steps)
            current, derived = self._arrive(transcript[-1], transcript[:-1], None)
            await self._wait_delay_floor(current, started)
        finally:
            self.fetching = False

        previous = transcript[-2] if len(transcript) > 1 else None
        transcript = transcript[:-1] + derived + [current]
        if current.waiting_for_input:
            transcript.pop()
            self.disabled = False
        self._commit(current, previous, transcript)

    async def _resume(self) -> bool:
        if not (self.config.cache and self._store is not None):
            return False
        state = await self._store.load(self.config.cache_name)
        if state is None or state.current_step is None:
            return False
        try:
            current, previous, transcript = self._rehydrate(state)
        except SchemaError as exc:
            logger.warning("Discarding cached session %s: %s", self.config.cache_name, exc)
            return False

        self._commit(current, previous, transcript)
        if current.waiting_for_input:
            self.disabled = False
        elif current.end and not current.awaits_action:
            self.ended = True
        logger.info("Resumed session %s at step %s", self.config.cache_name, current.id)
        return True

    def _rehydrate(self, state: SessionState) -> Tuple[Step, Optional[Step], List[Step]]:
        def load(raw: Mapping[str, Any]) -> Step:
            step = parse_step(raw, self.registry)
            if self.graph is not None and not step.value_only and step.id is not None and step.id not in self.graph:
                raise SchemaError(f"Cached step id={step.id} is not part of the step graph")
            return step

        transcript = [load(raw) for raw in state.transcript]
        current = load(state.current_step)
        previous = load(state.previous_step) if state.previous_step is not None else None
        if transcript and transcript[-1] == current:
            current = transcript[-1]
        return current, previous, transcript

    async def _advance(self, answered: bool = False) -> None:
        """Run transitions until the user is needed again.

        ``answered`` lets a just-submitted step move on even when its parser produced no value.
        """

        while self._can_advance(answered):
            answered = False
            before = self.current_step
            try:
                await self.trigger_next_step()
            except StepSourceError:
                logger.exception("Could not move past step %s", before.id if before else None)
                self.fetching = False
                self.disabled = False
                return
            if self.current_step is before and not self.ended:
                return

    def _can_advance(self, answered: bool = False) -> bool:
        step = self.current_step
        return (
            step is not None
            and not self.ended
            and not self.failed
            and (answered or not step.awaits_action)
            and (step.end or step.trigger is not None)
        )

    async def _handle_end(self) -> None:
        if self.ended:
            return
        self.ended = True
        self.disabled = True
        transcript = self.transcript
        self.result = EndResult(
            transcript=[
                {"id": step.id, "message": step.message, "value": step.value, "metadata": step.metadata}
                for step in transcript
            ],
            steps_by_id=project_by_id(transcript),
            values=[step.value for step in transcript if step.value is not None],
        )
        logger.info("Conversation %s ended after %d steps", self.session_id, len(transcript))
        if self._on_end is None:
            return
        try:
            outcome = self._on_end(self.result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("End handler failed for session %s", self.session_id)

    def _commit(self, current: Optional[Step], previous: Optional[Step], transcript: Sequence[Step]) -> None:
        self.current_step = current
        self.previous_step = previous
        self.transcript = tuple(transcript)

    def _after_transition(self) -> None:
        if self.config.cache and self._store is not None:
            self._schedule(self._store.save, self.config.cache_name, self.session_state(), description="session save")
        if self._on_step is not None:
            self._schedule(self._notify_step, self.snapshot(), description="step observer")

    async def _notify_step(self, snapshot: EngineSnapshot) -> None:
        outcome = self._on_step(snapshot)
        if inspect.isawaitable(outcome):
            await outcome

    def _schedule(self, coro_func: Callable[..., Awaitable[Any]], *args: Any, description: str) -> None:
        """Fire-and-forget, but after every previously scheduled job (last write wins)."""

        previous = self._last_background

        async def runner() -> None:
            if previous is not None and not previous.done() and previous.get_loop() is asyncio.get_running_loop():
                await asyncio.wait([previous])
            try:
                await coro_func(*args)
            except Exception:
                logger.exception("Background task '%s' failed", description)

        task = asyncio.create_task(runner())
        self._last_background = task
        self._track(task)

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _ensure_usable(self) -> None:
        if self.failed:
            raise ConversationFailed(FAILURE_NOTICE)
        if not self._started:
            raise RuntimeError("start() must be awaited before sending events")

    def _fail(self) -> None:
        self.failed = True
        self.disabled = True


__all__ = [
    "ConversationFailed",
    "EndResult",
    "EngineSnapshot",
    "FAILURE_NOTICE",
    "InvalidSelection",
    "Selection",
    "TransitionEngine",
    "delay_floor",
]
