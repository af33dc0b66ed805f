"""Immutable conversation session."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Literal

from braid.errors import SessionStructureError

Role = Literal["system", "user", "assistant", "tool_result"]
ROLES: frozenset[str] = frozenset({"system", "user", "assistant", "tool_result"})
TOOL_USAGE_KEY = "tool_usage"

_EMPTY: Mapping[str, Any] = MappingProxyType({})


def _freeze(value: Mapping[str, Any] | None) -> Mapping[str, Any]:
    if not value:
        return _EMPTY
    return MappingProxyType(dict(value))


@dataclass(frozen=True)
class ToolCall:
    """One tool invocation requested by an assistant message."""

    id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "arguments", _freeze(self.arguments))


@dataclass(frozen=True)
class Message:
    role: Role
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    structured_content: Mapping[str, Any] | None = None
    tool_call_id: str | None = None
    is_error: bool = False
    attrs: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role}")
        if self.content is None:
            object.__setattr__(self, "content", "")
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))
        object.__setattr__(self, "attrs", _freeze(self.attrs))
        if self.structured_content is not None:
            object.__setattr__(self, "structured_content", _freeze(self.structured_content))

        if self.tool_calls and self.role != "assistant":
            raise ValueError("tool_calls are only allowed on assistant messages")
        if self.structured_content is not None and self.role != "assistant":
            raise ValueError("structured_content is only allowed on assistant messages")
        if self.role == "tool_result":
            if not self.tool_call_id:
                raise ValueError("tool_result messages require tool_call_id")
        elif self.tool_call_id is not None or self.is_error:
            raise ValueError("tool_call_id and is_error are only allowed on tool_result messages")

    @classmethod
    def system(cls, content: str, **attrs: Any) -> Message:
        return cls(role="system", content=content, attrs=attrs)

    @classmethod
    def user(cls, content: str, **attrs: Any) -> Message:
        return cls(role="user", content=content, attrs=attrs)

    @classmethod
    def assistant(
        cls,
        content: str = "",
        *,
        tool_calls: Iterable[ToolCall] = (),
        structured_content: Mapping[str, Any] | None = None,
        **attrs: Any,
    ) -> Message:
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls),
            structured_content=structured_content,
            attrs=attrs,
        )

    @classmethod
    def tool_result(cls, tool_call_id: str, content: str, *, is_error: bool = False, **attrs: Any) -> Message:
        return cls(role="tool_result", content=content, tool_call_id=tool_call_id, is_error=is_error, attrs=attrs)


@dataclass(frozen=True)
class ToolUsage:
    """Tool usage accumulator kept in session metadata."""

    counts: Mapping[str, int] = field(default_factory=dict)
    errors: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "counts", _freeze(self.counts))

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def count(self, name: str) -> int:
        return self.counts.get(name, 0)

    def record(self, name: str, *, failed: bool = False) -> ToolUsage:
        counts = dict(self.counts)
        counts[name] = counts.get(name, 0) + 1
        return ToolUsage(counts=counts, errors=self.errors + int(failed))


@dataclass(frozen=True)
class Session:
    """Transcript plus variable store.

    Every method that changes something returns a new ``Session``; existing
    instances are never modified, so branches and retries can share them.
    """

    messages: tuple[Message, ...] = ()
    vars: Mapping[str, Any] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "messages", tuple(self.messages))
        object.__setattr__(self, "vars", _freeze(self.vars))
        object.__setattr__(self, "metadata", _freeze(self.metadata))

    @classmethod
    def create(
        cls,
        *,
        messages: Iterable[Message] = (),
        vars: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Session:
        session = cls(vars=vars or {}, metadata=metadata or {})
        for message in messages:
            session = session.add_message(message)
        return session

    def add_message(self, message: Message) -> Session:
        if message.role == "tool_result":
            pending = {call.id for call in self.pending_tool_calls()}
            if message.tool_call_id not in pending:
                raise SessionStructureError(
                    f"tool_result references unknown or already resolved call: {message.tool_call_id}",
                    session=self,
                )
        return replace(self, messages=(*self.messages, message))

    def with_var(self, key: str, value: Any) -> Session:
        return replace(self, vars={**self.vars, key: value})

    def with_vars(self, values: Mapping[str, Any]) -> Session:
        return replace(self, vars={**self.vars, **values})

    def get_var(self, key: str, default: Any = None) -> Any:
        return self.vars.get(key, default)

    def with_metadata(self, key: str, value: Any) -> Session:
        return replace(self, metadata={**self.metadata, key: value})

    def get_metadata(self, key: str, default: Any = None) -> Any:
        return self.metadata.get(key, default)

    @property
    def tool_usage(self) -> ToolUsage:
        return self.metadata.get(TOOL_USAGE_KEY) or ToolUsage()

    def get_last_message(self) -> Message | None:
        if not self.messages:
            return None
        return self.messages[-1]

    def get_messages_by_type(self, role: Role) -> list[Message]:
        return [message for message in self.messages if message.role == role]

    def pending_tool_calls(self) -> list[ToolCall]:
        """Return calls of earlier assistant messages that have no tool_result yet."""
        pending: dict[str, ToolCall] = {}
        for message in self.messages:
            if message.role == "assistant":
                for call in message.tool_calls:
                    pending[call.id] = call
            elif message.role == "tool_result" and message.tool_call_id is not None:
                pending.pop(message.tool_call_id, None)
        return list(pending.values())

    def check_structure(self) -> None:
        """Check role ordering rules that providers commonly enforce."""
        system_messages = self.get_messages_by_type("system")
        if len(system_messages) > 1:
            raise SessionStructureError("Only one system message is allowed", session=self)
        if system_messages and self.messages[0].role != "system":
            raise SessionStructureError("System message must be at the beginning", session=self)
