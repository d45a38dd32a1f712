"""Step schema, per-kind defaults and step graph construction."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .config import EngineConfig
from .strategies import Computed, StrategyRegistry, coerce_strategy

VALUE_STEP_CLASS = ".ValueStep"


class SchemaError(ValueError):
    """Raised when a step or a step graph is malformed."""


class StepKind(str, Enum):
    MESSAGE = "message"
    PROMPT = "prompt"
    OPTIONS = "options"
    CHOICES = "choices"
    CUSTOM = "custom"
    VALUE_ONLY = "value_only"
    UPDATE = "update"
    DERIVED = "derived"


def _registry(info: ValidationInfo) -> Optional[StrategyRegistry]:
    context = info.context or {}
    return context.get("registry")


class Option(BaseModel):
    """One entry of an options menu."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    value: Any = None
    label: str = ""
    trigger: Union[str, Computed, None] = None

    @field_validator("trigger", mode="before")
    @classmethod
    def _coerce_trigger(cls, value: Any, info: ValidationInfo) -> Any:
        return coerce_strategy(value, _registry(info), names_are_literal=True)


class Choice(BaseModel):
    """One entry of a multi-select list."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    value: Any = None
    label: str = ""


class Step(BaseModel):
    """A single node of the conversation.

    Steps are immutable; every transition produces new values via ``model_copy``.
    Keys the engine does not know about are kept for the rendering layer.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="allow",
    )

    id: Optional[str] = None
    message: Union[str, Computed, None] = None
    options: Optional[List[Option]] = None
    choices: Optional[List[Choice]] = None
    component: Optional[str] = None
    as_message: bool = False
    wait_action: bool = False

    trigger: Union[str, Computed, None] = None
    value: Any = None
    validator: Optional[Computed] = None
    parser: Optional[Computed] = None
    user: bool = False
    end: bool = False
    replace: bool = False

    update: Optional[str] = None
    update_options: Optional[List[Option]] = None
    update_user: Optional[bool] = None
    updated_by: Optional[str] = None
    derive: Optional[Dict[str, Computed]] = None
    value_only: bool = False

    metadata: Dict[str, Any] = Field(default_factory=dict)

    delay: Optional[int] = None
    avatar: Optional[str] = None
    hide_input: Optional[bool] = None
    hide_extra_control: Optional[bool] = None

    @model_validator(mode="before")
    @classmethod
    def _value_step_marker(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and "@class" in data:
            data = dict(data)
            if data.pop("@class") == VALUE_STEP_CLASS:
                data["valueOnly"] = True
        return data

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("trigger", "message", mode="before")
    @classmethod
    def _coerce_literal_or_computed(cls, value: Any, info: ValidationInfo) -> Any:
        return coerce_strategy(value, _registry(info), names_are_literal=True)

    @field_validator("validator", "parser", mode="before")
    @classmethod
    def _coerce_named(cls, value: Any, info: ValidationInfo) -> Any:
        return coerce_strategy(value, _registry(info), names_are_literal=False)

    @field_validator("derive", mode="before")
    @classmethod
    def _coerce_derive(cls, value: Any, info: ValidationInfo) -> Any:
        if not isinstance(value, Mapping):
            return value
        registry = _registry(info)
        return {
            str(target): coerce_strategy(strategy, registry, names_are_literal=False)
            for target, strategy in value.items()
        }

    @model_validator(mode="after")
    def _check_content(self) -> "Step":
        governing = [name for name in ("options", "choices", "component") if getattr(self, name) is not None]
        if len(governing) > 1:
            raise ValueError(f"step {self.id!r} mixes {' and '.join(governing)}")
        if self.message is not None and (self.options is not None or self.choices is not None):
            raise ValueError(f"step {self.id!r} has a message and a menu")
        if self.message is not None and self.component is not None and not self.as_message:
            raise ValueError(f"step {self.id!r} has both message and component without asMessage")
        return self

    @property
    def kind(self) -> StepKind:
        if self.value_only:
            return StepKind.VALUE_ONLY
        if self.options is not None:
            return StepKind.OPTIONS
        if self.choices is not None:
            return StepKind.CHOICES
        if self.component is not None and not self.as_message:
            return StepKind.CUSTOM
        if self.user:
            return StepKind.PROMPT
        if self.message is not None or self.as_message:
            return StepKind.MESSAGE
        if self.update is not None:
            return StepKind.UPDATE
        if self.derive:
            return StepKind.DERIVED
        return StepKind.VALUE_ONLY

    @property
    def waiting_for_input(self) -> bool:
        return self.user and self.value is None

    @property
    def awaits_action(self) -> bool:
        """True when the conversation cannot move on without the end user."""
        kind = self.kind
        if kind in (StepKind.OPTIONS, StepKind.CHOICES):
            return True
        if kind is StepKind.CUSTOM:
            return self.wait_action
        return self.waiting_for_input


def parse_step(raw: Union[Step, Mapping[str, Any]], registry: Optional[StrategyRegistry] = None) -> Step:
    """Validate one raw step definition."""

    if isinstance(raw, Step):
        return raw
    try:
        return Step.model_validate(raw, context={"registry": registry})
    except ValidationError as exc:
        step_id = raw.get("id") if isinstance(raw, Mapping) else None
        raise SchemaError(f"Invalid step id={step_id}: {exc}") from exc


def dump_step(step: Step) -> Dict[str, Any]:
    return step.model_dump(mode="json", by_alias=True)


def assign_default_setting(step: Step, config: EngineConfig) -> Step:
    """Fill delay/avatar/visibility from the per-kind defaults; explicit fields win."""

    if step.user:
        settings = config.user_settings()
    elif step.message is not None or step.as_message:
        settings = config.bot_settings()
    elif step.component is not None:
        settings = config.custom_settings()
    else:
        return step

    updates = {key: value for key, value in settings.items() if getattr(step, key) is None}
    return step.model_copy(update=updates) if updates else step


def stamp_metadata(metadata: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    return {**(metadata or {}), "timestamp": datetime.now(timezone.utc).isoformat()}


def project_by_id(steps: Iterable[Step]) -> Dict[str, Dict[str, Any]]:
    """Id-keyed view of ``steps``; later entries override earlier ones."""

    projection: Dict[str, Dict[str, Any]] = {}
    for step in steps:
        projection[step.id] = {
            "id": step.id,
            "message": step.message,
            "value": step.value,
            "metadata": step.metadata,
        }
    return projection


def _referenced_ids(step: Step) -> Iterator[str]:
    if isinstance(step.trigger, str):
        yield step.trigger
    for option in (step.options or []) + (step.update_options or []):
        if isinstance(option.trigger, str):
            yield option.trigger
    if step.update is not None:
        yield step.update


def check_invalid_ids(steps: Mapping[str, Step]) -> None:
    """Every literal trigger and update target must name a step of the graph."""

    for step_id, step in steps.items():
        for target in _referenced_ids(step):
            if target not in steps:
                raise SchemaError(f"The id '{target}' triggered by step '{step_id}' does not exist")


class StepGraph(Mapping[str, Step]):
    """Read-only id -> step mapping built once per session."""

    def __init__(self, steps: Mapping[str, Step], registry: StrategyRegistry):
        if not steps:
            raise SchemaError("No steps supplied")
        self._steps = MappingProxyType(dict(steps))
        self.registry = registry

    def __getitem__(self, step_id: str) -> Step:
        return self._steps[step_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    @property
    def first(self) -> Step:
        return next(iter(self._steps.values()))


def build_graph(
    raw_steps: Sequence[Union[Step, Mapping[str, Any]]],
    config: Optional[EngineConfig] = None,
    *,
    registry: Optional[StrategyRegistry] = None,
    step_parser: Optional[Callable[[Mapping[str, Any]], Mapping[str, Any]]] = None,
) -> StepGraph:
    """Parse, default and cross-check a list of raw steps.

    Raises :class:`SchemaError` on an empty list, duplicate ids or dangling references.
    """

    config = config or EngineConfig()
    registry = registry.copy() if registry is not None else StrategyRegistry()
    if not raw_steps:
        raise SchemaError("No steps supplied")

    steps: Dict[str, Step] = {}
    for raw in raw_steps:
        if step_parser is not None and not isinstance(raw, Step):
            raw = step_parser(raw)
        step = parse_step(raw, registry)
        if step.id is None:
            raise SchemaError("Every step of a graph needs an id")
        if step.id in steps:
            raise SchemaError(f"There are duplicate steps: id={step.id}")
        steps[step.id] = assign_default_setting(step, config)

    check_invalid_ids(steps)
    return StepGraph(steps, registry)


__all__ = [
    "Choice",
    "Option",
    "SchemaError",
    "Step",
    "StepGraph",
    "StepKind",
    "assign_default_setting",
    "build_graph",
    "check_invalid_ids",
    "dump_step",
    "parse_step",
    "project_by_id",
    "stamp_metadata",
]
