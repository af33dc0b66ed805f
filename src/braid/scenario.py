"""Goal-oriented scenarios compiled onto templates.

A scenario is a system prompt plus an ordered list of steps. Each step becomes
a shared subroutine that states the task and then loops over an assistant
turn until the goal is met or the step runs out of attempts::

    scenario = (
        Scenario("You are a research assistant.", model=llm)
        .interact("Ask the user what they want to research")
        .process("Search for relevant information and compile findings")
    )
    session = await scenario.execute()
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace

from braid.config import Settings
from braid.engine import Engine
from braid.session import Session
from braid.sources import ModelSource, Source, StringSource
from braid.templates import (
    Leaf,
    Loop,
    OnExhausted,
    SatisfactionCheck,
    Scope,
    Sequence,
    Subroutine,
    Template,
)
from braid.tools import ToolRegistry, ask_user_tool, goal_check_tool

ASK_USER_TOOL = "ask_user"
INTERACTIVE_NOTE = "This is an INTERACTIVE step: use the ask_user tool to get input from the user first."


@dataclass(frozen=True)
class StepOptions:
    max_attempts: int | None = None
    is_satisfied: SatisfactionCheck | None = None
    interactive: bool = False
    on_exhausted: OnExhausted = "return"
    collect_fields: tuple[str, ...] = ()

    @classmethod
    def quick(cls, max_attempts: int = 3) -> StepOptions:
        return cls(max_attempts=max_attempts)

    @classmethod
    def process(cls, max_attempts: int = 10) -> StepOptions:
        return cls(max_attempts=max_attempts)

    @classmethod
    def ask_user(cls, max_attempts: int = 10) -> StepOptions:
        return cls(max_attempts=max_attempts, interactive=True)

    @classmethod
    def until_condition(cls, check: SatisfactionCheck, max_attempts: int = 20) -> StepOptions:
        return cls(max_attempts=max_attempts, is_satisfied=check)

    @classmethod
    def collect_info(cls, fields: Iterable[str], max_attempts: int = 15) -> StepOptions:
        return cls(max_attempts=max_attempts, interactive=True, collect_fields=tuple(fields))


@dataclass(frozen=True)
class Step:
    goal: str
    options: StepOptions = field(default_factory=StepOptions)


def _asked_user(session: Session) -> bool:
    last = next((message for message in reversed(session.messages) if message.role == "assistant"), None)
    return last is not None and any(call.name == ASK_USER_TOOL for call in last.tool_calls)


def _user_exchanges(session: Session, intro: str) -> list[str]:
    """Questions put to the user, and the answers, since the step intro."""
    start = 0
    for index, message in enumerate(session.messages):
        if message.content == intro:
            start = index + 1

    texts: list[str] = []
    for message in session.messages[start:]:
        if message.role == "user":
            texts.append(message.content)
        elif message.role == "assistant":
            for call in message.tool_calls:
                if call.name == ASK_USER_TOOL:
                    texts.append(str(call.arguments.get("prompt", "")))
        elif message.role == "tool_result" and message.attrs.get("tool") == ASK_USER_TOOL:
            texts.append(message.content)
    return texts


def _collected(fields: tuple[str, ...], intro: str) -> SatisfactionCheck:
    def check(session: Session) -> bool:
        text = " ".join(_user_exchanges(session, intro)).casefold()
        return all(name.casefold() in text for name in fields)

    return check


@dataclass(frozen=True)
class Scenario:
    system_prompt: str
    model: ModelSource
    tools: ToolRegistry = field(default_factory=ToolRegistry)
    user_source: Source | None = None
    settings: Settings = field(default_factory=Settings.model_construct)
    steps: tuple[Step, ...] = ()

    def step(self, goal: str, options: StepOptions | None = None) -> Scenario:
        options = options or StepOptions()
        if options.interactive and self.user_source is None:
            raise ValueError("Interactive steps need a user_source")
        return replace(self, steps=(*self.steps, Step(goal, options)))

    def interact(self, goal: str, *, max_attempts: int = 10) -> Scenario:
        return self.step(goal, StepOptions.ask_user(max_attempts))

    def process(self, goal: str, *, max_attempts: int = 10) -> Scenario:
        return self.step(goal, StepOptions.process(max_attempts))

    def collect(self, fields: str | Iterable[str], *, max_attempts: int = 15) -> Scenario:
        names = (fields,) if isinstance(fields, str) else tuple(fields)
        goal = f"Collect the following information from the user: {', '.join(names)}"
        return self.step(goal, StepOptions.collect_info(names, max_attempts))

    def decide(
        self,
        decision: str,
        *,
        branches: Mapping[str, str] | None = None,
        max_attempts: int = 10,
    ) -> Scenario:
        goal = f"Make a decision: {decision}"
        if branches:
            goal += " Consider these options: " + ", ".join(f"{key}: {value}" for key, value in branches.items())
        return self.step(goal, StepOptions.process(max_attempts))

    def registry(self) -> ToolRegistry:
        """Every tool any step may call, as the dispatcher needs to resolve them."""
        extra = [goal_check_tool(name=self.settings.goal_tool_name)]
        if self.user_source is not None:
            extra.append(ask_user_tool(self.user_source, name=ASK_USER_TOOL))
        return self.tools.merged(*extra)

    def compile(self) -> Template:
        return Sequence(tuple(self._compile_step(index, step) for index, step in enumerate(self.steps)))

    def _compile_step(self, index: int, step: Step) -> Subroutine:
        options = step.options
        note = f" {INTERACTIVE_NOTE}" if options.interactive else ""
        if index == 0:
            text = (
                f"{self.system_prompt}\n\nCurrent Task: {step.goal}\n"
                f"You must accomplish this task. Use the available tools as needed.{note}"
            )
        else:
            text = (
                f"New Task: {step.goal}. You must accomplish this task using the available tools.{note}\n\n"
                "Context: You have access to the previous conversation history above."
            )
        intro = Leaf("system" if index == 0 else "user", StringSource(text, interpolate_vars=False))

        goal_tool = goal_check_tool(step.goal, name=self.settings.goal_tool_name)
        if options.interactive:
            ask_user = ask_user_tool(self.user_source, name=ASK_USER_TOOL)  # type: ignore[arg-type]
            step_tools = ToolRegistry([ask_user, goal_tool])
        else:
            step_tools = self.tools.merged(goal_tool)

        is_satisfied = options.is_satisfied
        if is_satisfied is None and options.collect_fields:
            is_satisfied = _collected(options.collect_fields, text)
        elif is_satisfied is None and options.interactive:
            is_satisfied = _asked_user

        turn = Leaf("assistant", self.model.with_tools(step_tools))
        body = Loop(
            turn,
            options.max_attempts or self.settings.default_loop_attempts,
            is_satisfied=is_satisfied,
            goal_tool=self.settings.goal_tool_name,
            on_exhausted=options.on_exhausted,
        )
        return Subroutine(Sequence((intro, body)), Scope.SHARED)

    async def execute(self, session: Session | None = None) -> Session:
        engine = Engine(self.settings, tools=self.registry())
        return await engine.execute(self.compile(), session)
