"""Template interpreter."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import replace

from loguru import logger

from braid.attempts import AttemptController
from braid.config import Settings
from braid.dispatcher import ToolDispatcher
from braid.errors import BraidError, SourceError, ValidationExhaustedError
from braid.logging_utils import current_run, run_scope
from braid.session import Message, Session
from braid.sources import ModelOutput, Source
from braid.templates import (
    Conditional,
    Leaf,
    Loop,
    Parallel,
    Scope,
    Sequence,
    Subroutine,
    Template,
    Transform,
)
from braid.tools import ToolRegistry
from braid.validators import run_validator


class Engine:
    """Walks a template tree, threading one session lineage through it.

    The engine keeps no per-execution state, so ``execute`` may run concurrently
    for independent sessions.
    """

    def __init__(self, settings: Settings | None = None, *, tools: ToolRegistry | None = None) -> None:
        self._settings = settings or Settings.model_construct()
        self._dispatcher = ToolDispatcher(tools, goal_tool=self._settings.goal_tool_name)

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def tools(self) -> ToolRegistry:
        return self._dispatcher.registry

    async def execute(self, node: Template, session: Session | None = None) -> Session:
        session = session if session is not None else Session()
        if current_run() != "-":
            return await self._execute(node, session, self._dispatcher)
        with run_scope() as run_id:
            logger.info("engine.execute.start run_id={} node={}", run_id, type(node).__name__)
            result = await self._execute(node, session, self._dispatcher)
            logger.info("engine.execute.finish run_id={} messages={}", run_id, len(result.messages))
            return result

    async def _execute(self, node: Template, session: Session, dispatcher: ToolDispatcher) -> Session:
        if isinstance(node, Leaf):
            return await self._execute_leaf(node, session, dispatcher)
        if isinstance(node, Sequence):
            return await self._execute_sequence(node, session, dispatcher)
        if isinstance(node, Conditional):
            return await self._execute_conditional(node, session, dispatcher)
        if isinstance(node, Loop):
            return await self._execute_loop(node, session, dispatcher)
        if isinstance(node, Subroutine):
            return await self._execute_subroutine(node, session, dispatcher)
        if isinstance(node, Transform):
            return await self._execute_transform(node, session)
        if isinstance(node, Parallel):
            return await self._execute_parallel(node, session)
        raise TypeError(f"Unsupported template node: {type(node).__name__}")

    async def _execute_leaf(self, node: Leaf, session: Session, dispatcher: ToolDispatcher) -> Session:
        budget = node.max_attempts or self._settings.default_validation_attempts
        errors: list[str] = []
        for attempt in range(1, budget + 1):
            output = await self._get_content(node.source, session, role=node.role)
            message = _to_message(node.role, output)
            if node.validator is not None:
                result = await run_validator(node.validator, message.content)
                if not result.valid:
                    errors = list(result.errors)
                    logger.info(
                        "engine.leaf.invalid role={} attempt={} budget={} errors={}",
                        node.role,
                        attempt,
                        budget,
                        errors,
                    )
                    continue

            logger.debug(
                "engine.leaf role={} chars={} tool_calls={}", node.role, len(message.content), len(message.tool_calls)
            )
            session = session.add_message(message)
            if message.tool_calls:
                session = await dispatcher.dispatch(session)
            return session

        raise ValidationExhaustedError(
            f"Validation failed after {budget} attempts: {'; '.join(errors)}",
            attempts=budget,
            errors=errors,
            session=session,
        )

    async def _get_content(self, source: Source, session: Session, *, role: str) -> str | ModelOutput:
        try:
            return await source.get_content(session)
        except BraidError:
            raise
        except Exception as exc:
            logger.exception("engine.source.error role={} source={}", role, type(source).__name__)
            raise SourceError(f"{type(source).__name__} failed: {exc!s}", session=session) from exc

    async def _execute_sequence(self, node: Sequence, session: Session, dispatcher: ToolDispatcher) -> Session:
        for child in node.children:
            session = await self._execute(child, session, dispatcher)
        return session

    async def _execute_conditional(self, node: Conditional, session: Session, dispatcher: ToolDispatcher) -> Session:
        chosen = node.then_branch if node.predicate(session) else node.else_branch
        if chosen is None:
            return session
        return await self._execute(chosen, session, dispatcher)

    async def _execute_loop(self, node: Loop, session: Session, dispatcher: ToolDispatcher) -> Session:
        if node.goal_tool:
            dispatcher = dispatcher.with_goal_tool(node.goal_tool)
        controller = AttemptController(node, goal_tool=self._settings.goal_tool_name)
        return await controller.run(session, lambda current: self._execute(node.body, current, dispatcher))

    async def _execute_subroutine(self, node: Subroutine, session: Session, dispatcher: ToolDispatcher) -> Session:
        inner = await self._execute(node.template, session, dispatcher)
        if node.scope is Scope.SHARED and node.retain_messages:
            return inner

        messages = session.messages
        if node.retain_messages:
            messages = inner.messages
        if node.scope is Scope.SHARED:
            return replace(inner, messages=messages)
        return replace(session, messages=messages)

    async def _execute_transform(self, node: Transform, session: Session) -> Session:
        result = node.fn(session)
        if inspect.isawaitable(result):
            result = await result
        if not isinstance(result, Session):
            raise TypeError(f"Transform must return a Session, got {type(result).__name__}")
        return result

    async def _execute_parallel(self, node: Parallel, session: Session) -> Session:
        runs = [branch.source for branch in node.branches for _ in range(branch.repetitions)]
        if not runs:
            return session

        results = list(await asyncio.gather(*(self._run_branch(source, session) for source in runs)))
        logger.info("engine.parallel runs={} strategy={}", len(results), node.strategy)
        if callable(node.strategy):
            return node.strategy(results)
        if node.strategy == "best":
            return max(results, key=node.score)  # type: ignore[arg-type]

        merged = session
        for result in results:
            for message in result.messages[len(session.messages) :]:
                merged = merged.add_message(message)
        return merged

    async def _run_branch(self, source: Source, session: Session) -> Session:
        try:
            output = await source.get_content(session)
        except Exception:
            logger.exception("engine.parallel.error source={}", type(source).__name__)
            return session
        if isinstance(output, str):
            return session.add_message(Message.assistant(output))
        return session.add_message(Message.assistant(output.content, structured_content=output.structured_content))


def _to_message(role: str, output: str | ModelOutput) -> Message:
    if isinstance(output, str):
        return Message(role=role, content=output)  # type: ignore[arg-type]
    if role != "assistant":
        return Message(role=role, content=output.content)  # type: ignore[arg-type]
    return Message.assistant(
        output.content,
        tool_calls=output.tool_calls,
        structured_content=output.structured_content,
    )
