"""Named strategies plugged into steps (computed triggers, messages, validators, parsers)."""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterator, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


class Computed(BaseModel):
    """A strategy reference: the registered name plus the callable behind it.

    Only the name is serialised, as ``{"computed": name}``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(alias="computed")
    func: Callable[..., Any] = Field(exclude=True, repr=False)

    def __call__(self, *args: Any) -> Any:
        return self.func(*args)


class StrategyRegistry(Mapping[str, Callable[..., Any]]):
    """Mapping of strategy name to callable, filled at graph-construction time."""

    def __init__(self, strategies: Optional[Mapping[str, Callable[..., Any]]] = None):
        self._strategies: Dict[str, Callable[..., Any]] = dict(strategies or {})

    def __getitem__(self, name: str) -> Callable[..., Any]:
        return self._strategies[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._strategies)

    def __len__(self) -> int:
        return len(self._strategies)

    def register(self, name: Optional[str] = None):
        """Decorator registering a function under ``name`` (default: its ``__name__``)."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self._strategies[name or func.__name__] = func
            return func

        return decorator

    def copy(self) -> "StrategyRegistry":
        return StrategyRegistry(self._strategies)

    def resolve(self, name: str) -> Computed:
        if name not in self._strategies:
            raise KeyError(f"Unknown strategy: {name}")
        return Computed(name=name, func=self._strategies[name])

    def adopt(self, func: Callable[..., Any]) -> Computed:
        """Register a bare callable and return its reference.

        Distinct callables sharing a ``__name__`` (lambdas) get ``name#2``, ``name#3``...
        """

        for name, known in self._strategies.items():
            if known is func:
                return Computed(name=name, func=func)

        base = getattr(func, "__name__", None) or type(func).__name__
        name = base
        counter = 1
        while name in self._strategies:
            counter += 1
            name = f"{base}#{counter}"
        self._strategies[name] = func
        return Computed(name=name, func=func)


def coerce_strategy(value: Any, registry: Optional[StrategyRegistry], *, names_are_literal: bool) -> Any:
    """Turn a raw strategy (name, mapping or callable) into a :class:`Computed`.

    Strings are literal values (trigger ids, message text) unless
    ``names_are_literal`` is false, in which case they name a registered strategy.
    """

    if value is None or isinstance(value, Computed):
        return value
    if isinstance(value, Mapping) and "computed" in value:
        return _lookup(str(value["computed"]), registry)
    if isinstance(value, str):
        return value if names_are_literal else _lookup(value, registry)
    if callable(value):
        if registry is None:
            return Computed(name=getattr(value, "__name__", "strategy"), func=value)
        return registry.adopt(value)
    return value


def _lookup(name: str, registry: Optional[StrategyRegistry]) -> Computed:
    if registry is None or name not in registry:
        raise ValueError(f"Unknown strategy: {name}")
    return registry.resolve(name)


def evaluate(strategy: Any, context: Any) -> Any:
    """Literal values pass through; computed strategies are invoked with ``context``."""

    if isinstance(strategy, Computed):
        return strategy(context)
    return strategy


__all__ = ["Computed", "StrategyRegistry", "coerce_strategy", "evaluate"]
