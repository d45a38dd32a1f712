"""Pydantic schemas used by the API."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from chatflow.engine import EngineSnapshot, TransitionEngine
from chatflow.steps import dump_step


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class SessionCreate(_CamelModel):
    cache_key: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Cache slot to resume from and persist to. Distinct conversations need distinct keys.",
    )


class SubmitRequest(_CamelModel):
    text: str = Field(..., description="Raw text typed by the user.")


class ChooseRequest(_CamelModel):
    selection: Union[Dict[str, Any], List[Dict[str, Any]]] = Field(
        ...,
        description="The picked option, or the list of picked choices.",
    )


class SessionRead(_CamelModel):
    session_id: str
    current_step: Optional[Dict[str, Any]] = None
    previous_step: Optional[Dict[str, Any]] = None
    transcript: List[Dict[str, Any]]
    rendered: List[Dict[str, Any]]
    disabled: bool
    input_value: str
    input_invalid: bool
    ended: bool
    values: Optional[List[Any]] = None

    @classmethod
    def from_engine(cls, engine: TransitionEngine, snapshot: Optional[EngineSnapshot] = None) -> "SessionRead":
        snapshot = snapshot or engine.snapshot()
        return cls(
            session_id=snapshot.session_id,
            current_step=dump_step(snapshot.current_step) if snapshot.current_step else None,
            previous_step=dump_step(snapshot.previous_step) if snapshot.previous_step else None,
            transcript=[dump_step(step) for step in snapshot.transcript],
            rendered=[dump_step(step) for step in snapshot.rendered],
            disabled=snapshot.disabled,
            input_value=snapshot.input_value,
            input_invalid=snapshot.input_invalid,
            ended=snapshot.ended,
            values=engine.result.values if engine.result is not None else None,
        )
