"""Resolve the tool calls of an assistant turn and thread the results into the session."""

from __future__ import annotations

import json
from typing import Any

from loguru import logger
from pydantic import BaseModel

from braid.errors import ToolExecutionError, ToolNotFoundError
from braid.session import TOOL_USAGE_KEY, Message, Session, ToolCall
from braid.tools import ToolDefinition, ToolRegistry, goal_check_tool


def serialize_result(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    if isinstance(result, BaseModel):
        return result.model_dump_json()
    try:
        return json.dumps(result, ensure_ascii=False)
    except TypeError:
        return str(result)


class ToolDispatcher:
    """Runs pending tool calls in call order.

    Tool failures become ``is_error`` tool_result messages so the model can react
    on its next turn. An unknown tool name is fatal.
    """

    def __init__(self, registry: ToolRegistry | None = None, *, goal_tool: str = "check_goal") -> None:
        self._registry = registry if registry is not None else ToolRegistry()
        self._goal_tools = {goal_tool: goal_check_tool(name=goal_tool)}

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def goal_tools(self) -> list[str]:
        return list(self._goal_tools)

    def with_goal_tool(self, name: str) -> ToolDispatcher:
        """Return a dispatcher that also resolves ``name`` as a reserved goal tool."""
        if name in self._goal_tools:
            return self
        clone = ToolDispatcher(self._registry)
        clone._goal_tools = {**self._goal_tools, name: goal_check_tool(name=name)}
        return clone

    def resolve(self, name: str) -> ToolDefinition | None:
        definition = self._registry.get(name)
        if definition is None:
            return self._goal_tools.get(name)
        return definition

    async def dispatch(self, session: Session) -> Session:
        """Resolve every call of the last assistant message that has no result yet."""
        last = session.get_last_message()
        if last is None or last.role != "assistant" or not last.tool_calls:
            return session

        pending = {call.id for call in session.pending_tool_calls()}
        for call in last.tool_calls:
            if call.id not in pending:
                continue
            session = await self._run_call(session, call)
        return session

    async def _run_call(self, session: Session, call: ToolCall) -> Session:
        definition = self.resolve(call.name)
        if definition is None:
            logger.error("tool.not_found name={} call_id={}", call.name, call.id)
            raise ToolNotFoundError(call.name, session=session)

        try:
            result = await self._execute(definition, call)
        except ToolExecutionError as exc:
            message = Message.tool_result(call.id, f"error: {exc.cause!s}", is_error=True, tool=call.name)
            return self._record(session.add_message(message), call.name, failed=True)

        message = Message.tool_result(call.id, serialize_result(result), tool=call.name)
        return self._record(session.add_message(message), call.name, failed=False)

    async def _execute(self, definition: ToolDefinition, call: ToolCall) -> Any:
        registry = self._registry if self._registry.has(definition.name) else ToolRegistry([definition])
        try:
            return await registry.execute(definition.name, call_id=call.id, kwargs=dict(call.arguments))
        except Exception as exc:
            raise ToolExecutionError(definition.name, call.id, exc) from exc

    @staticmethod
    def _record(session: Session, name: str, *, failed: bool) -> Session:
        return session.with_metadata(TOOL_USAGE_KEY, session.tool_usage.record(name, failed=failed))
