"""Validation and parsing of raw user text before it becomes a step value."""

from __future__ import annotations

import re
from typing import Any, Callable, NamedTuple, Optional

from .strategies import StrategyRegistry

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class InputCheck(NamedTuple):
    valid: bool
    feedback: Optional[str] = None


def check_input(validator: Optional[Callable[[str], Any]], raw: str) -> InputCheck:
    """Anything other than ``True`` rejects the input; its string form is the feedback."""

    if validator is None:
        return InputCheck(True)
    result = validator(raw)
    if result is True:
        return InputCheck(True)
    return InputCheck(False, str(result))


def parse_input(parser: Optional[Callable[[str], Any]], raw: str) -> Any:
    return parser(raw) if parser is not None else raw


def required(raw: str) -> Any:
    return True if raw and raw.strip() else "This field is required"


def numeric(raw: str) -> Any:
    try:
        float(raw)
    except (TypeError, ValueError):
        return "Value must be a number"
    return True


def email(raw: str) -> Any:
    return True if EMAIL_RE.match((raw or "").strip()) else "Value must be an email address"


def integer(raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError:
        raise ValueError("Value must be a whole number") from None


def number(raw: str) -> float:
    try:
        return float(raw.strip())
    except ValueError:
        raise ValueError("Value must be a number") from None


def builtin_registry() -> StrategyRegistry:
    """Registry pre-filled with the stock validators and parsers."""

    registry = StrategyRegistry()
    registry.register("required")(required)
    registry.register("numeric")(numeric)
    registry.register("email")(email)
    registry.register("integer")(integer)
    registry.register("number")(number)
    registry.register("strip")(str.strip)
    registry.register("lower")(lambda raw: raw.strip().lower())
    return registry


__all__ = [
    "InputCheck",
    "builtin_registry",
    "check_input",
    "email",
    "integer",
    "number",
    "numeric",
    "parse_input",
    "required",
]
