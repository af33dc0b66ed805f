import asyncio
from typing import Literal

import pytest
from conftest import CountingSource, ScriptedModel, call
from pydantic import BaseModel

from braid.engine import Engine
from braid.errors import SourceError, ValidationExhaustedError
from braid.session import Message, Session
from braid.sources import ModelOutput, StringSource
from braid.templates import (
    Leaf,
    Scope,
    assistant,
    sequence,
    set_var,
    subroutine,
    system,
    transform,
    user,
    when,
)
from braid.tools import ToolRegistry
from braid.validators import KeywordValidator


class CalculateInput(BaseModel):
    op: Literal["add", "sub", "mul"]
    a: int
    b: int


def calculate_registry() -> ToolRegistry:
    registry = ToolRegistry()

    @registry.register(name="calculate", description="Basic arithmetic", argument_schema=CalculateInput)
    def calculate(params: CalculateInput) -> int:
        if params.op == "add":
            return params.a + params.b
        if params.op == "sub":
            return params.a - params.b
        return params.a * params.b

    return registry


def _remember_last(session: Session) -> Session:
    last = session.get_last_message()
    return session.with_var("last", last.content if last else None).with_metadata("seen", True)



@pytest.mark.asyncio
async def test_sequence_appends_one_message_per_leaf_in_order() -> None:
    template = sequence(
        system("You are terse."),
        user("Hello {{ name }}"),
        assistant("Hi there"),
        user("Bye"),
    )

    result = await Engine().execute(template, Session.create(vars={"name": "Ada"}))

    assert [(m.role, m.content) for m in result.messages] == [
        ("system", "You are terse."),
        ("user", "Hello Ada"),
        ("assistant", "Hi there"),
        ("user", "Bye"),
    ]


@pytest.mark.asyncio
async def test_conditional_only_runs_the_chosen_branch() -> None:
    then_source = CountingSource("then")
    else_source = CountingSource("else")
    template = when(
        lambda session: session.get_var("flag") is True,
        Leaf("user", then_source),
        Leaf("user", else_source),
    )
    engine = Engine()

    taken = await engine.execute(template, Session.create(vars={"flag": True}))
    assert [m.content for m in taken.messages] == ["then"]
    assert (then_source.calls, else_source.calls) == (1, 0)

    skipped = await engine.execute(template, Session.create(vars={"flag": False}))
    assert [m.content for m in skipped.messages] == ["else"]
    assert (then_source.calls, else_source.calls) == (1, 1)


@pytest.mark.asyncio
async def test_conditional_without_else_branch_is_a_noop() -> None:
    session = Session.create(messages=[Message.user("keep")])
    result = await Engine().execute(when(lambda _: False, user("never")), session)
    assert result == session


@pytest.mark.asyncio
async def test_assistant_tool_calls_are_resolved_right_after_the_leaf() -> None:
    model = ScriptedModel([ModelOutput(tool_calls=(call("c1", "calculate", op="add", a=5, b=3),))])
    template = sequence(user("5+3"), Leaf("assistant", model))

    result = await Engine(tools=calculate_registry()).execute(template)

    assert [m.role for m in result.messages] == ["user", "assistant", "tool_result"]
    tool_result = result.messages[-1]
    assert tool_result.tool_call_id == "c1"
    assert tool_result.content == "8"
    assert not tool_result.is_error
    assert result.tool_usage.count("calculate") == 1


@pytest.mark.asyncio
async def test_validation_exhausted_without_appending_a_message() -> None:
    source = CountingSource(["nope", "still nope"])
    template = Leaf("user", source, validator=KeywordValidator(("yes",)), max_attempts=2)
    session = Session.create(messages=[Message.system("sys")])

    with pytest.raises(ValidationExhaustedError) as exc_info:
        await Engine().execute(template, session)

    assert source.calls == 2
    assert exc_info.value.attempts == 2
    assert exc_info.value.errors == ["Content must include one of: yes"]
    assert exc_info.value.session == session


@pytest.mark.asyncio
async def test_validation_retries_until_content_passes() -> None:
    source = CountingSource(["nope", "yes please"])
    template = Leaf("user", source, validator=KeywordValidator(("yes",)), max_attempts=3)

    result = await Engine().execute(template)

    assert source.calls == 2
    assert [m.content for m in result.messages] == ["yes please"]


@pytest.mark.asyncio
async def test_source_failures_are_wrapped() -> None:
    def explode(session: Session) -> str:
        raise RuntimeError("backend down")

    with pytest.raises(SourceError, match="backend down") as exc_info:
        await Engine().execute(Leaf("user", StringSource(explode)))

    assert isinstance(exc_info.value.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_shared_subroutine_keeps_vars_and_messages() -> None:
    inner = sequence(user("inner"), transform(_remember_last))
    session = Session.create(vars={"outer": 1})

    result = await Engine().execute(subroutine(inner, scope=Scope.SHARED), session)

    assert [m.content for m in result.messages] == ["inner"]
    assert result.get_var("outer") == 1
    assert result.get_var("last") == "inner"
    assert result.get_metadata("seen") is True


@pytest.mark.asyncio
async def test_isolated_subroutine_discards_vars_and_metadata() -> None:
    session = Session.create(vars={"last": "before"})
    inner = sequence(user("inner"), transform(_remember_last))

    isolated = await Engine().execute(subroutine(inner, scope="isolated"), session)

    assert [m.content for m in isolated.messages] == ["inner"]
    assert isolated.get_var("last") == "before"
    assert isolated.get_metadata("seen") is None


@pytest.mark.asyncio
async def test_subroutine_can_drop_inner_messages() -> None:
    session = Session.create(messages=[Message.user("outer")])
    inner = sequence(user("inner"), transform(_remember_last))
    engine = Engine()

    shared = await engine.execute(subroutine(inner, retain_messages=False), session)
    assert [m.content for m in shared.messages] == ["outer"]
    assert shared.get_var("last") == "inner"

    isolated = await engine.execute(subroutine(inner, scope="isolated", retain_messages=False), session)
    assert isolated == session


@pytest.mark.asyncio
async def test_transform_updates_vars_without_adding_messages() -> None:
    async def bump(session: Session) -> Session:
        return session.with_var("count", session.get_var("count", 0) + 1)

    template = sequence(set_var("count", 1), transform(bump, bump), user("count is {{ count }}"))

    result = await Engine().execute(template)

    assert result.get_var("count") == 3
    assert [m.content for m in result.messages] == ["count is 3"]


@pytest.mark.asyncio
async def test_transform_must_return_a_session() -> None:
    with pytest.raises(TypeError, match="must return a Session"):
        await Engine().execute(transform(lambda session: None))  # type: ignore[arg-type,return-value]


@pytest.mark.asyncio
async def test_one_template_runs_concurrently_on_independent_sessions() -> None:
    template = sequence(user("Hello {{ name }}"), assistant("Hi {{ name }}"))
    engine = Engine()

    results = await asyncio.gather(
        *(engine.execute(template, Session.create(vars={"name": name})) for name in ("a", "b", "c"))
    )

    assert [r.messages[-1].content for r in results] == ["Hi a", "Hi b", "Hi c"]
