"""Tool definitions and the name -> tool registry."""

from __future__ import annotations

import inspect
import json
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from loguru import logger
from pydantic import BaseModel, Field
from republic import Tool

from braid.session import Session

if TYPE_CHECKING:
    from braid.sources import Source

SchemaConverter = Callable[[Mapping[str, Any]], type[BaseModel]]
ArgumentSchema = type[BaseModel] | Mapping[str, Any]
HandlerT = TypeVar("HandlerT", bound=Callable[..., Any])

EMPTY_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}
_CLOSERS = {'"': '"', "{": "}", "[": "]"}


def _preview(value: Any, width: int = 30) -> str:
    """JSON preview of a tool argument, clipped to ``width`` with its bracket kept closed."""
    try:
        text = json.dumps(value, ensure_ascii=False)
    except TypeError:
        text = repr(value)
    if len(text) <= width:
        return text
    clipped = text[: max(width - 3, 0)] + "..."
    closer = _CLOSERS.get(text[0])
    return clipped + closer if closer else clipped


def _is_model(schema: object) -> bool:
    return inspect.isclass(schema) and issubclass(schema, BaseModel)


@dataclass(frozen=True)
class ToolDefinition:
    """A named operation a model may ask to run.

    ``handler`` receives one argument: a validated instance of
    ``argument_schema`` when it is a pydantic model, otherwise the (optionally
    converted) arguments mapping. It may be sync or async and may raise.
    """

    name: str
    description: str
    handler: Callable[[Any], Any]
    argument_schema: ArgumentSchema | None = None
    source: str = "local"

    def json_schema(self) -> dict[str, Any]:
        if self.argument_schema is None:
            return dict(EMPTY_SCHEMA)
        if _is_model(self.argument_schema):
            return self.argument_schema.model_json_schema()  # type: ignore[union-attr]
        return dict(self.argument_schema)  # type: ignore[arg-type]

    def coerce(self, arguments: Mapping[str, Any], converter: SchemaConverter | None = None) -> Any:
        """Validate ``arguments`` against the declared schema.

        Raw JSON-Schema mappings are only enforced when a converter is supplied.
        """
        if self.argument_schema is None:
            return dict(arguments)
        if _is_model(self.argument_schema):
            return self.argument_schema.model_validate(dict(arguments))  # type: ignore[union-attr]
        if converter is not None:
            return converter(self.argument_schema).model_validate(dict(arguments))  # type: ignore[arg-type]
        return dict(arguments)

    async def execute(self, args: Any) -> Any:
        result = self.handler(args)
        if inspect.isawaitable(result):
            result = await result
        return result


class ToolRegistry:
    """Registry for tools a model may call, keyed by unique name."""

    def __init__(
        self,
        tools: Iterable[ToolDefinition] = (),
        *,
        schema_converter: SchemaConverter | None = None,
    ) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._schema_converter = schema_converter
        for definition in tools:
            self.add(definition)

    @property
    def schema_converter(self) -> SchemaConverter | None:
        return self._schema_converter

    def add(self, definition: ToolDefinition) -> ToolDefinition:
        if definition.name in self._tools:
            raise ValueError(f"Duplicate tool name: {definition.name}")
        self._tools[definition.name] = definition
        return definition

    def register(
        self,
        *,
        name: str,
        description: str = "",
        argument_schema: ArgumentSchema | None = None,
    ) -> Callable[[HandlerT], HandlerT]:
        def decorator(func: HandlerT) -> HandlerT:
            self.add(
                ToolDefinition(
                    name=name,
                    description=description or (inspect.getdoc(func) or ""),
                    handler=func,
                    argument_schema=argument_schema,
                )
            )
            return func

        return decorator

    def has(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def merged(self, *definitions: ToolDefinition) -> ToolRegistry:
        """Return a new registry with extra tools; existing names are replaced."""
        tools = dict(self._tools)
        for definition in definitions:
            tools[definition.name] = definition
        return ToolRegistry(tools.values(), schema_converter=self._schema_converter)

    def function_schemas(self) -> list[dict[str, Any]]:
        """Describe the tools in the common function-calling format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": definition.name,
                    "description": definition.description,
                    "parameters": definition.json_schema(),
                },
            }
            for definition in self._tools.values()
        ]

    def model_tools(self) -> list[Tool]:
        """Build provider-facing tool declarations. Execution stays with the dispatcher."""
        return [
            Tool(
                name=definition.name,
                description=definition.description,
                parameters=definition.json_schema(),
                handler=None,
            )
            for definition in self._tools.values()
        ]

    def log_tool_call(self, name: str, call_id: str, kwargs: Mapping[str, Any]) -> None:
        rendered = ", ".join(f"{key}={_preview(value)}" for key, value in kwargs.items())
        logger.info("tool.call.start name={} call_id={} {{ {} }}", name, call_id, rendered)

    async def execute(self, name: str, *, call_id: str, kwargs: Mapping[str, Any]) -> Any:
        """Coerce arguments and run one tool. Raises ``KeyError`` for unknown names."""
        definition = self._tools.get(name)
        if definition is None:
            raise KeyError(name)

        self.log_tool_call(name, call_id, kwargs)
        start = time.monotonic()
        try:
            args = definition.coerce(kwargs, self._schema_converter)
            return await definition.execute(args)
        except Exception:
            logger.exception("tool.call.error name={} call_id={}", name, call_id)
            raise
        finally:
            duration = time.monotonic() - start
            logger.info("tool.call.end name={} duration={:.3f}ms", name, duration * 1000)


class GoalCheckInput(BaseModel):
    reasoning: str = Field(default="", description="Why the goal is or is not satisfied yet")
    is_satisfied: bool = Field(..., description="True when the goal has been achieved")


class AskUserInput(BaseModel):
    prompt: str = Field(..., description="The question to show the user")


def goal_check_tool(goal: str = "", *, name: str = "check_goal") -> ToolDefinition:
    """Reserved tool the model calls to report whether it believes the goal is met.

    The tool only echoes the report; the loop controller reads the call itself.
    """

    def _handler(params: GoalCheckInput) -> dict[str, Any]:
        return {"is_satisfied": params.is_satisfied, "reasoning": params.reasoning}

    target = f': "{goal}"' if goal else ""
    return ToolDefinition(
        name=name,
        description=(
            f"Check whether you have satisfied the goal{target}. "
            "Call this after gathering information to report your progress."
        ),
        handler=_handler,
        argument_schema=GoalCheckInput,
        source="builtin",
    )


def ask_user_tool(source: Source, *, name: str = "ask_user") -> ToolDefinition:
    """Tool that asks the user a question through ``source``.

    The source sees a fresh session whose ``prompt`` var holds the question.
    """

    async def _handler(params: AskUserInput) -> dict[str, Any]:
        output = await source.get_content(Session.create(vars={"prompt": params.prompt}))
        answer = output if isinstance(output, str) else output.content
        return {"user_response": answer}

    return ToolDefinition(
        name=name,
        description="Ask the user for input. Use this whenever the task needs information from the user.",
        handler=_handler,
        argument_schema=AskUserInput,
        source="builtin",
    )
