from __future__ import annotations

from collections.abc import Callable
from typing import Any

from braid.session import Session, ToolCall
from braid.sources import ModelOutput, ModelSource, Source
from braid.tools import ToolRegistry

Script = ModelOutput | str | Callable[[Session], ModelOutput]


class ScriptedModel(ModelSource):
    """Model source replaying canned outputs; the last one repeats once the script runs out."""

    def __init__(self, outputs: list[Script], *, tools: ToolRegistry | None = None) -> None:
        super().__init__(tools=tools)
        self._outputs = list(outputs)
        self.seen_tools: list[ToolRegistry | None] = []
        self.seen_sessions: list[Session] = []

    @property
    def calls(self) -> int:
        return len(self.seen_sessions)

    async def complete(self, session: Session, tools: ToolRegistry | None) -> ModelOutput:
        index = min(len(self.seen_sessions), len(self._outputs) - 1)
        self.seen_tools.append(tools)
        self.seen_sessions.append(session)
        output = self._outputs[index]
        if callable(output):
            return output(session)
        if isinstance(output, str):
            return ModelOutput(content=output)
        return output


class CountingSource(Source):
    def __init__(self, content: str | list[str]) -> None:
        self._content = [content] if isinstance(content, str) else list(content)
        self.calls = 0

    async def get_content(self, session: Session) -> str:
        index = min(self.calls, len(self._content) - 1)
        self.calls += 1
        return self._content[index]


def call(call_id: str, name: str, **arguments: Any) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments)


def goal_report(call_id: str, satisfied: bool, reasoning: str = "") -> ModelOutput:
    return ModelOutput(
        content="checking",
        tool_calls=(call(call_id, "check_goal", is_satisfied=satisfied, reasoning=reasoning),),
    )
