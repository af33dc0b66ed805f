import pytest
from conftest import CountingSource, ScriptedModel, call, goal_report

from braid.attempts import find_self_report
from braid.engine import Engine
from braid.errors import LoopAttemptsExhaustedError
from braid.session import Message, Session
from braid.sources import ModelOutput
from braid.templates import Leaf, loop, sequence, transform, user
from braid.tools import ToolRegistry
from braid.validators import KeywordValidator


def _assistant_turns(session: Session) -> int:
    return len(session.get_messages_by_type("assistant"))


@pytest.mark.asyncio
async def test_loop_stops_at_the_attempt_ceiling() -> None:
    model = ScriptedModel(["still working"])

    result = await Engine().execute(loop(Leaf("assistant", model), max_attempts=5))

    assert model.calls == 5
    assert _assistant_turns(result) == 5


@pytest.mark.asyncio
async def test_loop_raise_policy_reports_every_attempt() -> None:
    model = ScriptedModel(["still working"])
    template = loop(Leaf("assistant", model), max_attempts=3, on_exhausted="raise")

    with pytest.raises(LoopAttemptsExhaustedError) as exc_info:
        await Engine().execute(template)

    error = exc_info.value
    assert error.max_attempts == 3
    assert [record.index for record in error.records] == [0, 1, 2]
    assert not any(record.satisfied for record in error.records)
    assert error.session is not None
    assert _assistant_turns(error.session) == 3


@pytest.mark.asyncio
async def test_self_report_ends_loop_without_host_check() -> None:
    model = ScriptedModel([goal_report("g1", False), goal_report("g2", True, "done")])

    result = await Engine().execute(loop(Leaf("assistant", model), max_attempts=10))

    assert model.calls == 2
    assert [m.tool_call_id for m in result.get_messages_by_type("tool_result")] == ["g1", "g2"]
    assert result.tool_usage.count("check_goal") == 2


@pytest.mark.asyncio
async def test_host_check_overrides_model_self_report() -> None:
    model = ScriptedModel([goal_report("g1", True), goal_report("g2", True), goal_report("g3", True)])
    template = loop(
        Leaf("assistant", model),
        max_attempts=10,
        is_satisfied=lambda session: _assistant_turns(session) >= 3,
    )

    result = await Engine().execute(template)

    assert model.calls == 3
    assert _assistant_turns(result) == 3


@pytest.mark.asyncio
async def test_host_check_can_end_loop_although_model_disagrees() -> None:
    model = ScriptedModel([goal_report("g1", False)])

    async def satisfied(session: Session) -> bool:
        return True

    result = await Engine().execute(loop(Leaf("assistant", model), max_attempts=4, is_satisfied=satisfied))

    assert model.calls == 1
    assert _assistant_turns(result) == 1


@pytest.mark.asyncio
async def test_loop_until_a_tool_was_used() -> None:
    registry = ToolRegistry()
    registry.register(name="search", description="Search")(lambda args: "found")
    model = ScriptedModel(
        [
            ModelOutput(content="let me think"),
            ModelOutput(tool_calls=(call("s1", "search", query="braid"),)),
            ModelOutput(content="unreachable"),
        ]
    )
    template = sequence(
        user("find braid"),
        loop(Leaf("assistant", model), max_attempts=5, is_satisfied=lambda s: s.tool_usage.total > 0),
    )

    result = await Engine(tools=registry).execute(template)

    assert model.calls == 2
    assert [m.role for m in result.messages] == ["user", "assistant", "assistant", "tool_result"]
    assert result.messages[-1].content == "found"


@pytest.mark.asyncio
async def test_invalid_attempts_count_toward_the_ceiling_and_are_discarded() -> None:
    source = CountingSource("nope")
    body = Leaf("assistant", source, validator=KeywordValidator(("yes",)), max_attempts=1)
    session = Session.create(messages=[Message.user("say yes")])

    result = await Engine().execute(loop(body, max_attempts=3), session)

    assert source.calls == 3
    assert result == session

    with pytest.raises(LoopAttemptsExhaustedError) as exc_info:
        await Engine().execute(loop(body, max_attempts=2, on_exhausted="raise"), session)
    assert all(record.validation_error is not None for record in exc_info.value.records)
    assert all(record.session is None for record in exc_info.value.records)


@pytest.mark.asyncio
async def test_loop_keeps_progress_of_valid_attempts_after_an_invalid_one() -> None:
    source = CountingSource(["first yes", "nope", "second yes"])
    body = Leaf("assistant", source, validator=KeywordValidator(("yes",)))

    result = await Engine().execute(loop(body, max_attempts=3))

    assert [m.content for m in result.messages] == ["first yes", "second yes"]


def test_find_self_report_uses_the_latest_call() -> None:
    messages = [
        Message.assistant(tool_calls=[call("g1", "check_goal", is_satisfied=True)]),
        Message.assistant(tool_calls=[call("g2", "check_goal", is_satisfied="yes", reasoning="unsure")]),
    ]

    report = find_self_report(messages, "check_goal")

    assert report is not None
    assert report.is_satisfied is False
    assert report.reasoning == "unsure"
    assert find_self_report(messages, "other_goal") is None


def _count_tool_use(session: Session) -> Session:
    return session.with_var("toolsUsed", session.get_var("toolsUsed", 0) + 1)


@pytest.mark.asyncio
async def test_loop_until_a_var_written_by_the_body_reaches_a_threshold() -> None:
    model = ScriptedModel(["used a tool"])
    template = loop(
        sequence(Leaf("assistant", model), transform(_count_tool_use)),
        max_attempts=3,
        is_satisfied=lambda s: s.get_var("toolsUsed", 0) >= 2,
    )

    result = await Engine().execute(template)

    assert model.calls == 2
    assert result.get_var("toolsUsed") == 2
    assert _assistant_turns(result) == 2


@pytest.mark.asyncio
async def test_custom_goal_tool_resolves_without_registration() -> None:
    model = ScriptedModel([ModelOutput(tool_calls=(call("f1", "finish", is_satisfied=True),))])

    result = await Engine().execute(loop(Leaf("assistant", model), max_attempts=3, goal_tool="finish"))

    assert model.calls == 1
    tool_result = result.messages[-1]
    assert tool_result.role == "tool_result"
    assert tool_result.tool_call_id == "f1"
    assert not tool_result.is_error
    assert result.tool_usage.count("finish") == 1
