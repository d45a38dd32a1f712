import logging
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from chatflow.config import EngineConfig
from chatflow.engine import (
    ConversationFailed,
    InvalidSelection,
    TransitionEngine,
    delay_floor,
)
from chatflow.sources import LocalGraphSource
from chatflow.steps import StepKind, build_graph
from chatflow.validation import builtin_registry

ZERO = EngineConfig(bot_delay=0, user_delay=0, custom_delay=0)


class FakeClock:
    """Monotonic clock whose sleeps only move time forward."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class SlowSource(LocalGraphSource):
    def __init__(self, graph, clock, latency):
        super().__init__(graph)
        self.clock = clock
        self.latency = latency

    async def next_steps(self, step_id, value=None):
        self.clock.now += self.latency
        return await super().next_steps(step_id, value)


def make_engine(steps, config=ZERO, **kwargs):
    graph = build_graph(steps, config, registry=builtin_registry())
    clock = kwargs.pop("clock", None) or FakeClock()
    return TransitionEngine(config, graph=graph, sleep=clock.sleep, clock=clock, **kwargs)


SIMPLE = [
    {"id": "A", "message": "hi", "trigger": "B"},
    {"id": "B", "user": True, "trigger": "C"},
    {"id": "C", "message": "bye", "end": True},
]


@pytest.mark.asyncio
async def test_message_prompt_end_scenario():
    ended = []
    engine = make_engine(SIMPLE, on_end=ended.append)

    snapshot = await engine.start()
    assert snapshot.current_step.id == "B"
    assert snapshot.previous_step.id == "A"
    assert [step.id for step in snapshot.transcript] == ["A"]
    assert snapshot.disabled is False

    snapshot = await engine.submit_user_message("Ada")
    assert [step.id for step in snapshot.transcript] == ["A", "B", "C"]
    answered = snapshot.transcript[1]
    assert answered.message == "Ada"
    assert answered.value == "Ada"
    assert "timestamp" in answered.metadata
    assert snapshot.ended
    assert len(ended) == 1
    assert ended[0].values == ["Ada"]
    assert ended[0].steps_by_id["B"]["value"] == "Ada"


@pytest.mark.asyncio
async def test_end_handler_runs_once():
    ended = []
    engine = make_engine(SIMPLE, on_end=ended.append)
    await engine.start()
    await engine.submit_user_message("Ada")

    await engine.trigger_next_step()
    await engine.advance()
    await engine.submit_user_message("again")
    assert len(ended) == 1


@pytest.mark.asyncio
async def test_parser_output_becomes_the_value():
    engine = make_engine(
        [
            {"id": "age", "user": True, "parser": "integer", "trigger": "done"},
            {"id": "done", "message": "thanks", "end": True},
        ]
    )
    await engine.start()
    snapshot = await engine.submit_user_message(" 42 ")
    assert snapshot.transcript[0].value == 42
    assert snapshot.transcript[0].message == " 42 "


@pytest.mark.asyncio
async def test_invalid_input_shows_feedback_then_restores():
    clock = FakeClock()
    engine = make_engine(
        [
            {"id": "age", "user": True, "validator": "numeric", "trigger": "done"},
            {"id": "done", "message": "thanks", "end": True},
        ],
        clock=clock,
    )
    await engine.start()

    snapshot = await engine.submit_user_message("abc")
    assert snapshot.input_value == "Value must be a number"
    assert snapshot.input_invalid
    assert snapshot.disabled
    assert snapshot.transcript == []

    ignored = await engine.submit_user_message("12")
    assert ignored.transcript == []

    await engine.drain()
    assert clock.sleeps == [2.0]
    assert engine.input_value == "abc"
    assert engine.disabled is False
    assert engine.input_invalid is False

    snapshot = await engine.submit_user_message("12")
    assert snapshot.ended


@pytest.mark.asyncio
async def test_options_accumulate_object_values():
    ended = []
    engine = make_engine(
        [
            {"id": "start", "message": "pick", "trigger": "menu"},
            {
                "id": "menu",
                "options": [
                    {"value": {"x": 1}, "label": "X", "trigger": "again"},
                    {"value": {"y": 2}, "label": "Y", "trigger": "done"},
                ],
            },
            {"id": "again", "message": "once more", "trigger": "menu"},
            {"id": "done", "message": "ok", "end": True},
        ],
        on_end=ended.append,
    )
    snapshot = await engine.start()
    assert snapshot.current_step.kind is StepKind.OPTIONS
    assert snapshot.disabled is True

    snapshot = await engine.choose({"label": "X"})
    assert [step.id for step in snapshot.transcript] == ["start", "menu", "again", "menu"]
    picked = snapshot.transcript[1]
    assert picked.user is True
    assert picked.message == "X"
    assert picked.options is None

    snapshot = await engine.choose({"label": "Y"})
    assert snapshot.transcript[3].value == {"x": 1, "y": 2}
    assert snapshot.ended
    assert ended[0].values == [{"x": 1}, {"x": 1, "y": 2}]


@pytest.mark.asyncio
async def test_option_without_trigger_ends_conversation():
    ended = []
    engine = make_engine(
        [{"id": "menu", "options": [{"value": "stop", "label": "Stop"}]}],
        on_end=ended.append,
    )
    await engine.start()
    snapshot = await engine.choose({"value": "stop"})
    assert snapshot.transcript[-1].end is True
    assert snapshot.ended
    assert ended[0].values == ["stop"]


@pytest.mark.asyncio
async def test_choices_join_labels():
    engine = make_engine(
        [
            {
                "id": "toppings",
                "choices": [
                    {"value": "ham", "label": "Ham"},
                    {"value": "olive", "label": "Olive"},
                    {"value": "egg", "label": "Egg"},
                ],
                "trigger": "bye",
            },
            {"id": "bye", "message": "bye", "end": True},
        ]
    )
    await engine.start()
    snapshot = await engine.choose([{"value": "ham"}, {"value": "egg"}])

    answered = snapshot.transcript[0]
    assert answered.message == "Ham, Egg"
    assert answered.value == ["ham", "egg"]
    assert answered.user is True
    assert snapshot.ended


@pytest.mark.asyncio
async def test_unknown_selection_is_rejected():
    engine = make_engine([{"id": "menu", "options": [{"value": 1, "label": "One"}]}])
    await engine.start()
    with pytest.raises(InvalidSelection):
        await engine.choose({"value": 2})

    engine = make_engine(SIMPLE)
    await engine.start()
    with pytest.raises(InvalidSelection):
        await engine.choose({"value": 1})


@pytest.mark.asyncio
async def test_computed_trigger_sees_value_and_steps():
    seen = {}

    def route(context):
        seen.update(context)
        return "adult" if int(context["value"]) >= 18 else "minor"

    engine = make_engine(
        [
            {"id": "age", "user": True, "trigger": route},
            {"id": "adult", "message": "welcome", "end": True},
            {"id": "minor", "message": "sorry", "end": True},
        ]
    )
    await engine.start()
    snapshot = await engine.submit_user_message("30")
    assert snapshot.transcript[-1].id == "adult"
    assert seen["steps"]["age"]["value"] == "30"


@pytest.mark.asyncio
async def test_computed_message_uses_previous_value():
    engine = make_engine(
        [
            {"id": "name", "user": True, "trigger": "greet"},
            {"id": "greet", "message": lambda ctx: f"Hi {ctx['previousValue']}!", "end": True},
        ]
    )
    await engine.start()
    snapshot = await engine.submit_user_message("Ada")
    assert snapshot.transcript[-1].message == "Hi Ada!"


@pytest.mark.asyncio
async def test_nested_answers_merge_into_parent():
    engine = make_engine(
        [
            {
                "id": "profile",
                "options": [{"value": {"name": None, "age": None}, "label": "Start", "trigger": "profile.name"}],
            },
            {"id": "profile.name", "user": True, "trigger": "profile.age"},
            {"id": "profile.age", "user": True, "parser": "integer", "trigger": "done"},
            {"id": "done", "message": "saved", "end": True},
        ]
    )
    await engine.start()
    await engine.choose({"label": "Start"})
    await engine.submit_user_message("Ada")
    snapshot = await engine.submit_user_message("36")

    assert snapshot.ended
    assert engine.result.steps_by_id["profile"]["value"] == {"name": "Ada", "age": 36}
    assert [step.id for step in snapshot.rendered] == ["profile", "profile.name", "profile.age", "done"]
    value_steps = [step for step in snapshot.transcript if step.value_only]
    assert [step.value for step in value_steps] == [{"name": "Ada", "age": None}, {"name": "Ada", "age": 36}]


@pytest.mark.asyncio
async def test_nested_answer_without_parent_is_dropped(caplog):
    engine = make_engine(
        [
            {"id": "card.number", "user": True, "trigger": "done"},
            {"id": "done", "message": "ok", "end": True},
        ]
    )
    await engine.start()
    with caplog.at_level(logging.WARNING, logger="chatflow.nested"):
        snapshot = await engine.submit_user_message("4111")
    assert snapshot.ended
    assert not any(step.value_only for step in snapshot.transcript)
    assert "Could not find parent step" in caplog.text


@pytest.mark.asyncio
async def test_derived_values_are_recorded():
    engine = make_engine(
        [
            {"id": "age", "user": True, "parser": "integer", "trigger": "calc"},
            {"id": "calc", "derive": {"decade": lambda ctx: ctx["values"]["age"] // 10}, "trigger": "bye"},
            {"id": "bye", "message": "bye", "end": True},
        ]
    )
    await engine.start()
    snapshot = await engine.submit_user_message("42")
    assert [step.id for step in snapshot.transcript] == ["age", "decade", "calc", "bye"]
    assert snapshot.transcript[1].value == 4
    assert engine.result.values == [42, 4]


@pytest.mark.asyncio
async def test_replace_drops_the_previous_entry():
    engine = make_engine(
        [
            {"id": "typing", "message": "...", "trigger": "answer", "replace": True},
            {"id": "answer", "message": "42", "end": True},
        ]
    )
    snapshot = await engine.start()
    assert [step.id for step in snapshot.transcript] == ["answer"]
    assert snapshot.ended


@pytest.mark.asyncio
async def test_custom_step_waits_for_action():
    engine = make_engine(
        [
            {"id": "map", "component": "map-picker", "waitAction": True},
            {"id": "done", "message": "ok", "end": True},
        ]
    )
    snapshot = await engine.start()
    assert snapshot.current_step.id == "map"
    snapshot = await engine.choose({"value": {"lat": 1.5}, "trigger": "done"})
    assert snapshot.transcript[0].value == {"lat": 1.5}
    assert snapshot.ended


@pytest.mark.asyncio
async def test_hide_input_override_is_carried():
    engine = make_engine(
        [
            {"id": "map", "component": "map-picker", "waitAction": True},
            {"id": "done", "message": "ok", "end": True},
        ]
    )
    await engine.start()
    snapshot = await engine.choose({"value": 1, "trigger": "done", "hideInput": True})
    assert snapshot.transcript[0].hide_input is True


def test_delay_floor_never_negative():
    assert delay_floor(1000, 300) == 700
    assert delay_floor(1000, 300, 200) == 500
    assert delay_floor(1000, 1500) == 0
    assert delay_floor(100, 50, 80) == 0


@pytest.mark.asyncio
async def test_delay_floor_subtracts_fetch_time():
    clock = FakeClock()
    config = EngineConfig(bot_delay=1000, user_delay=1000, custom_delay=1000)
    graph = build_graph(
        [
            {"id": "A", "message": "hi", "trigger": "B"},
            {"id": "B", "message": "there", "trigger": "C"},
            {"id": "C", "user": True, "trigger": "A"},
        ],
        config,
    )
    engine = TransitionEngine(
        config,
        graph=graph,
        source=SlowSource(graph, clock, latency=0.3),
        sleep=clock.sleep,
        clock=clock,
    )
    await engine.start()
    assert clock.sleeps == [pytest.approx(1.0), pytest.approx(0.7)]
    assert engine.partial_delay == 0


@pytest.mark.asyncio
async def test_failed_fetch_keeps_state_and_enables_input(caplog):
    engine = make_engine([{"id": "A", "message": "hi", "trigger": lambda ctx: "nowhere"}])
    with caplog.at_level(logging.ERROR, logger="chatflow.engine"):
        snapshot = await engine.start()
    assert snapshot.current_step.id == "A"
    assert [step.id for step in snapshot.transcript] == ["A"]
    assert snapshot.disabled is False
    assert not snapshot.failed
    assert "Could not move past step A" in caplog.text


@pytest.mark.asyncio
async def test_events_before_start_are_refused():
    engine = make_engine(SIMPLE)
    with pytest.raises(RuntimeError):
        await engine.submit_user_message("x")


@pytest.mark.asyncio
async def test_failed_engine_refuses_interaction():
    class EmptySource(LocalGraphSource):
        async def first_steps(self):
            return []

    graph = build_graph(SIMPLE, ZERO)
    engine = TransitionEngine(ZERO, graph=graph, source=EmptySource(graph))
    with pytest.raises(ConversationFailed):
        await engine.start()
    assert engine.failed
    with pytest.raises(ConversationFailed):
        await engine.submit_user_message("x")


@pytest.mark.asyncio
async def test_step_observer_receives_snapshots():
    seen = []

    async def observer(snapshot):
        seen.append(snapshot.current_step.id)

    engine = make_engine(SIMPLE, on_step=observer)
    await engine.start()
    await engine.submit_user_message("Ada")
    await engine.drain()
    assert seen == ["B", "C", "C"]


@pytest.mark.asyncio
async def test_parser_failure_is_reported_like_a_validator():
    clock = FakeClock()
    engine = make_engine(
        [
            {"id": "age", "user": True, "parser": "integer", "trigger": "done"},
            {"id": "done", "message": "ok", "end": True},
        ],
        clock=clock,
    )
    await engine.start()

    snapshot = await engine.submit_user_message("abc")
    assert snapshot.input_invalid is True
    assert snapshot.input_value == "Value must be a whole number"
    assert snapshot.transcript == []

    await engine.drain()
    assert engine.input_value == "abc"
    assert engine.disabled is False

    snapshot = await engine.submit_user_message("41")
    assert snapshot.ended
    assert engine.result.values == [41]
