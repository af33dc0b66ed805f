import asyncio
import json

import pytest
from conftest import ScriptedModel, call
from pydantic import BaseModel

from braid.dispatcher import ToolDispatcher, serialize_result
from braid.engine import Engine
from braid.errors import ToolNotFoundError
from braid.session import Message, Session
from braid.sources import ModelOutput
from braid.templates import Leaf, sequence, user
from braid.tools import ToolRegistry


class EchoInput(BaseModel):
    text: str


def _registry() -> ToolRegistry:
    registry = ToolRegistry()

    @registry.register(name="slow", description="Slow echo")
    async def slow(args: dict) -> str:
        await asyncio.sleep(0.01)
        return f"slow:{args['text']}"

    @registry.register(name="fast", description="Fast echo")
    def fast(args: dict) -> str:
        return f"fast:{args['text']}"

    @registry.register(name="broken", description="Always fails")
    def broken(args: dict) -> str:
        raise RuntimeError("boom")

    @registry.register(name="typed", description="Typed echo", argument_schema=EchoInput)
    def typed(params: EchoInput) -> dict:
        return {"echo": params.text}

    return registry


def _asked(*calls) -> Session:
    return Session.create(messages=[Message.user("go"), Message.assistant(tool_calls=calls)])


@pytest.mark.asyncio
async def test_results_follow_call_order() -> None:
    session = _asked(call("c1", "slow", text="a"), call("c2", "fast", text="b"))

    result = await ToolDispatcher(_registry()).dispatch(session)

    results = result.get_messages_by_type("tool_result")
    assert [(m.tool_call_id, m.content) for m in results] == [("c1", "slow:a"), ("c2", "fast:b")]
    assert all(m.attrs["tool"] in {"slow", "fast"} for m in results)


@pytest.mark.asyncio
async def test_tool_failure_becomes_an_error_result() -> None:
    session = _asked(call("c1", "broken"), call("c2", "fast", text="still runs"))

    result = await ToolDispatcher(_registry()).dispatch(session)

    failed, ok = result.get_messages_by_type("tool_result")
    assert failed.is_error
    assert failed.content == "error: boom"
    assert not ok.is_error
    assert ok.content == "fast:still runs"
    assert result.tool_usage.errors == 1
    assert result.tool_usage.total == 2


@pytest.mark.asyncio
async def test_invalid_arguments_become_an_error_result() -> None:
    result = await ToolDispatcher(_registry()).dispatch(_asked(call("c1", "typed", wrong=1)))

    message = result.get_last_message()
    assert message is not None
    assert message.is_error
    assert message.content.startswith("error: ")


@pytest.mark.asyncio
async def test_unknown_tool_is_fatal_and_keeps_partial_session() -> None:
    model = ScriptedModel([ModelOutput(tool_calls=(call("c1", "fast", text="x"), call("c2", "missing")))])
    template = sequence(user("go"), Leaf("assistant", model))

    with pytest.raises(ToolNotFoundError, match="tool not found: missing") as exc_info:
        await Engine(tools=_registry()).execute(template)

    partial = exc_info.value.session
    assert partial is not None
    assert [m.role for m in partial.messages] == ["user", "assistant", "tool_result"]
    assert partial.messages[-1].content == "fast:x"
    assert [c.id for c in partial.pending_tool_calls()] == ["c2"]


@pytest.mark.asyncio
async def test_usage_accumulates_across_turns() -> None:
    dispatcher = ToolDispatcher(_registry())
    session = await dispatcher.dispatch(_asked(call("c1", "fast", text="1")))
    followup = Message.assistant(tool_calls=[call("c2", "fast", text="2"), call("c3", "slow", text="3")])
    session = session.add_message(followup)

    session = await dispatcher.dispatch(session)

    assert session.tool_usage.count("fast") == 2
    assert session.tool_usage.count("slow") == 1
    assert session.tool_usage.errors == 0


@pytest.mark.asyncio
async def test_goal_tool_is_available_without_registration() -> None:
    dispatcher = ToolDispatcher()
    session = _asked(call("g1", "check_goal", is_satisfied=True, reasoning="done"))

    result = await dispatcher.dispatch(session)

    assert json.loads(result.messages[-1].content) == {"is_satisfied": True, "reasoning": "done"}
    assert dispatcher.resolve("check_goal") is not None
    assert dispatcher.resolve("other") is None


@pytest.mark.asyncio
async def test_dispatch_ignores_sessions_without_pending_calls() -> None:
    session = Session.create(messages=[Message.user("hi"), Message.assistant("hello")])
    assert await ToolDispatcher().dispatch(session) is session


def test_serialize_result() -> None:
    assert serialize_result(None) == ""
    assert serialize_result("text") == "text"
    assert serialize_result(8) == "8"
    assert serialize_result({"a": [1, 2]}) == '{"a": [1, 2]}'
    assert serialize_result(EchoInput(text="x")) == '{"text":"x"}'
    assert serialize_result({1, 2}).startswith("{")
