"""Template node model.

Templates are immutable trees. They describe what to run and hold no
per-execution state, so one tree can be executed many times, concurrently,
against different sessions. ``braid.engine.Engine`` interprets them.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal, TypeAlias

from braid.session import Session
from braid.sources import Source, StringSource
from braid.validators import Validator

LeafRole = Literal["system", "user", "assistant"]
Predicate = Callable[[Session], bool]
SatisfactionCheck = Callable[[Session], "bool | Awaitable[bool]"]
TransformFn = Callable[[Session], "Session | Awaitable[Session]"]
ScoreFn = Callable[[Session], float]
AggregateFn = Callable[[list[Session]], Session]
OnExhausted = Literal["return", "raise"]
ParallelStrategy = Literal["keep_all", "best"]


class Scope(str, Enum):
    SHARED = "shared"
    ISOLATED = "isolated"


@dataclass(frozen=True)
class Leaf:
    role: LeafRole
    source: Source
    validator: Validator | None = None
    max_attempts: int | None = None

    def __post_init__(self) -> None:
        if self.role not in ("system", "user", "assistant"):
            raise ValueError(f"Leaf role must be system, user or assistant, got {self.role!r}")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")


@dataclass(frozen=True)
class Sequence:
    children: tuple[Template, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "children", tuple(self.children))


@dataclass(frozen=True)
class Conditional:
    predicate: Predicate
    then_branch: Template
    else_branch: Template | None = None


@dataclass(frozen=True)
class Loop:
    """Bounded retry of ``body``.

    ``is_satisfied`` is the host check and takes precedence over any model
    self-report made through ``goal_tool``; when ``goal_tool`` is ``None`` the
    engine's configured reserved tool name is used. Either name resolves inside
    the body without being registered.
    """

    body: Template
    max_attempts: int
    is_satisfied: SatisfactionCheck | None = None
    goal_tool: str | None = None
    on_exhausted: OnExhausted = "return"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.on_exhausted not in ("return", "raise"):
            raise ValueError(f"Unknown on_exhausted policy: {self.on_exhausted!r}")


@dataclass(frozen=True)
class Subroutine:
    template: Template
    scope: Scope = Scope.SHARED
    retain_messages: bool = True


@dataclass(frozen=True)
class Transform:
    """Rewrites the session (vars, metadata) without asking any source."""

    fn: TransformFn


@dataclass(frozen=True)
class ParallelBranch:
    source: Source
    repetitions: int = 1

    def __post_init__(self) -> None:
        if self.repetitions < 1:
            raise ValueError("repetitions must be at least 1")


@dataclass(frozen=True)
class Parallel:
    """Runs every branch concurrently against the same session and aggregates.

    Each run contributes one assistant message. ``keep_all`` appends them all in
    branch order, ``best`` keeps the run with the highest ``score``, and a
    callable receives every resulting session and returns the one to keep.
    A run whose source fails is logged and contributes nothing.
    """

    branches: tuple[ParallelBranch, ...] = ()
    strategy: ParallelStrategy | AggregateFn = "keep_all"
    score: ScoreFn | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "branches", tuple(self.branches))
        if self.strategy == "best" and self.score is None:
            raise ValueError("The 'best' strategy needs a score function")
        if not callable(self.strategy) and self.strategy not in ("keep_all", "best"):
            raise ValueError(f"Unknown parallel strategy: {self.strategy!r}")


Template: TypeAlias = Leaf | Sequence | Conditional | Loop | Subroutine | Transform | Parallel


def _as_source(content: str | Source) -> Source:
    return StringSource(content) if isinstance(content, str) else content


def system(content: str | Source) -> Leaf:
    return Leaf("system", _as_source(content))


def user(content: str | Source, *, validator: Validator | None = None, max_attempts: int | None = None) -> Leaf:
    return Leaf("user", _as_source(content), validator=validator, max_attempts=max_attempts)


def assistant(
    content: str | Source,
    *,
    validator: Validator | None = None,
    max_attempts: int | None = None,
) -> Leaf:
    return Leaf("assistant", _as_source(content), validator=validator, max_attempts=max_attempts)


def sequence(*children: Template) -> Sequence:
    return Sequence(children)


def when(predicate: Predicate, then_branch: Template, else_branch: Template | None = None) -> Conditional:
    return Conditional(predicate, then_branch, else_branch)


def loop(
    body: Template,
    *,
    max_attempts: int,
    is_satisfied: SatisfactionCheck | None = None,
    goal_tool: str | None = None,
    on_exhausted: OnExhausted = "return",
) -> Loop:
    return Loop(body, max_attempts, is_satisfied=is_satisfied, goal_tool=goal_tool, on_exhausted=on_exhausted)


def subroutine(template: Template, *, scope: Scope | str = Scope.SHARED, retain_messages: bool = True) -> Subroutine:
    return Subroutine(template, Scope(scope), retain_messages=retain_messages)


def transform(*fns: TransformFn) -> Transform:
    """Apply ``fns`` left to right, each receiving the previous result."""
    if len(fns) == 1:
        return Transform(fns[0])

    async def chained(session: Session) -> Session:
        for fn in fns:
            result = fn(session)
            session = await result if inspect.isawaitable(result) else result
        return session

    return Transform(chained)


def set_var(key: str, value: Any) -> Transform:
    return Transform(lambda session: session.with_var(key, value))


def parallel(
    *sources: Source | tuple[Source, int],
    strategy: ParallelStrategy | AggregateFn = "keep_all",
    score: ScoreFn | None = None,
) -> Parallel:
    branches = tuple(
        ParallelBranch(*item) if isinstance(item, tuple) else ParallelBranch(item) for item in sources
    )
    return Parallel(branches, strategy=strategy, score=score)
