"""Content sources bound to leaf templates."""

from __future__ import annotations

import asyncio
import copy
import inspect
import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Self

from loguru import logger
from pydantic import BaseModel, ValidationError
from republic import LLM

from braid.interpolation import interpolate
from braid.session import Message, Session, ToolCall

if TYPE_CHECKING:
    from braid.config import Settings
    from braid.mcp import RemoteClient
    from braid.tools import ToolRegistry

TextFactory = Callable[[Session], "str | Awaitable[str]"]


@dataclass(frozen=True)
class ModelOutput:
    """Structured result of a model source."""

    content: str = ""
    structured_content: Mapping[str, Any] | None = None
    tool_calls: tuple[ToolCall, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))


class Source(ABC):
    """Produces content for a leaf. Must not modify the session it is given."""

    @abstractmethod
    async def get_content(self, session: Session) -> str | ModelOutput: ...


class StringSource(Source):
    """Literal text (rendered against session vars) or a callable of the session."""

    def __init__(self, content: str | TextFactory, *, interpolate_vars: bool = True) -> None:
        self._content = content
        self._interpolate = interpolate_vars

    async def get_content(self, session: Session) -> str:
        if callable(self._content):
            value = self._content(session)
            if inspect.isawaitable(value):
                value = await value
            return str(value)
        if self._interpolate:
            return interpolate(self._content, session)
        return self._content

    def __repr__(self) -> str:
        return f"StringSource({self._content!r})"


class ModelSource(Source):
    """Base for generative model sources.

    ``tools`` are advertised to the model; executing the calls it emits is the
    dispatcher's job, not the source's.
    """

    def __init__(self, *, tools: ToolRegistry | None = None) -> None:
        self._tools = tools

    @property
    def tools(self) -> ToolRegistry | None:
        return self._tools

    def with_tools(self, tools: ToolRegistry | None) -> Self:
        """Return a copy advertising ``tools`` instead."""
        clone = copy.copy(self)
        clone._tools = tools
        return clone

    async def get_content(self, session: Session) -> ModelOutput:
        return await self.complete(session, self._tools)

    @abstractmethod
    async def complete(self, session: Session, tools: ToolRegistry | None) -> ModelOutput: ...


class LLMSource(ModelSource):
    """Model source backed by a republic ``LLM`` client."""

    def __init__(
        self,
        settings: Settings,
        *,
        tools: ToolRegistry | None = None,
        output_model: type[BaseModel] | None = None,
        llm: Any = None,
    ) -> None:
        super().__init__(tools=tools)
        self._settings = settings
        self._output_model = output_model
        self._llm = llm or LLM(
            model=settings.require_model(),
            api_key=settings.api_key,
            api_base=settings.api_base,
        )

    async def complete(self, session: Session, tools: ToolRegistry | None) -> ModelOutput:
        request: dict[str, Any] = {
            "messages": to_provider_messages(session),
            "max_tokens": self._settings.max_tokens,
        }
        if tools is not None and len(tools):
            request["tools"] = tools.model_tools()

        async with asyncio.timeout(self._settings.model_timeout_seconds):
            response = await asyncio.to_thread(self._llm.chat.raw, **request)

        text = _extract_text(response)
        return ModelOutput(
            content=text,
            structured_content=self._parse_structured(text),
            tool_calls=tuple(_extract_tool_calls(response)),
        )

    def _parse_structured(self, text: str) -> dict[str, Any] | None:
        if self._output_model is None or not text.strip():
            return None
        try:
            return self._output_model.model_validate_json(text).model_dump()
        except ValidationError:
            logger.warning("llm.source.structured_parse_failed model={}", self._output_model.__name__)
            return None


class RemoteToolSource(Source):
    """Calls a tool on a remote (MCP) server."""

    def __init__(
        self,
        client: RemoteClient,
        tool: str,
        arguments: Mapping[str, Any] | None = None,
        *,
        extract_text: bool = True,
    ) -> None:
        self._client = client
        self._tool = tool
        self._arguments = dict(arguments or {})
        self._extract_text = extract_text

    async def get_content(self, session: Session) -> str:
        result = await self._client.call_tool(self._tool, self._arguments)
        if self._extract_text:
            return text_of_content(result.get("content", []))
        return json.dumps(result, indent=2, ensure_ascii=False)


class RemoteResourceSource(Source):
    """Reads a resource from a remote (MCP) server."""

    def __init__(self, client: RemoteClient, uri: str, *, extract_text: bool = True) -> None:
        self._client = client
        self._uri = uri
        self._extract_text = extract_text

    async def get_content(self, session: Session) -> str:
        result = await self._client.read_resource(self._uri)
        if self._extract_text:
            return "\n".join(item.get("text") or "" for item in result.get("contents", []))
        return json.dumps(result, indent=2, ensure_ascii=False)


class RemotePromptSource(Source):
    """Fetches a prompt from a remote (MCP) server."""

    def __init__(
        self,
        client: RemoteClient,
        name: str,
        arguments: Mapping[str, Any] | None = None,
        *,
        format: Literal["text", "messages"] = "text",
    ) -> None:
        self._client = client
        self._name = name
        self._arguments = dict(arguments or {})
        self._format = format

    async def get_content(self, session: Session) -> str:
        result = await self._client.get_prompt(self._name, self._arguments)
        messages = result.get("messages", [])
        if self._format == "messages":
            return "\n\n".join(f"{item.get('role')}: {json.dumps(item.get('content'))}" for item in messages)
        return "\n\n".join(_prompt_message_text(item.get("content")) for item in messages)


def text_of_content(content: list[Mapping[str, Any]]) -> str:
    """Join the text parts of a remote content list."""
    return "\n".join(item.get("text") or "" for item in content if item.get("type") == "text")


def _prompt_message_text(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, Mapping):
        if content.get("type") == "text":
            return str(content.get("text") or "")
        return json.dumps(content, ensure_ascii=False)
    if isinstance(content, list):
        return text_of_content([item for item in content if isinstance(item, Mapping)])
    return ""


def to_provider_messages(session: Session) -> list[dict[str, Any]]:
    """Render the transcript in the common chat-completions message format."""
    return [_provider_message(message) for message in session.messages]


def _provider_message(message: Message) -> dict[str, Any]:
    if message.role == "tool_result":
        return {"role": "tool", "tool_call_id": message.tool_call_id, "content": message.content}
    payload: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.tool_calls:
        payload["content"] = message.content or None
        payload["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(dict(call.arguments), ensure_ascii=False)},
            }
            for call in message.tool_calls
        ]
    return payload


def _extract_text(response: Any) -> str:
    if isinstance(response, str):
        return response
    choices = getattr(response, "choices", None)
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    if message is None:
        return ""
    return getattr(message, "content", "") or ""


def _extract_tool_calls(response: Any) -> list[ToolCall]:
    choices = getattr(response, "choices", None)
    if not choices:
        return []
    message = getattr(choices[0], "message", None)
    if message is None:
        return []
    calls: list[ToolCall] = []
    for idx, tool_call in enumerate(getattr(message, "tool_calls", None) or []):
        function = getattr(tool_call, "function", None)
        if function is None:
            continue
        call_id = getattr(tool_call, "id", None) or f"call_{idx}"
        calls.append(
            ToolCall(
                id=call_id,
                name=getattr(function, "name", "") or "",
                arguments=_parse_arguments(getattr(function, "arguments", None)),
            )
        )
    return calls


def _parse_arguments(arguments: object) -> dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if not isinstance(arguments, str) or not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        logger.warning("llm.source.bad_tool_arguments raw={!r}", arguments[:80])
        return {}
    return parsed if isinstance(parsed, dict) else {}
