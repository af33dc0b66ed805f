"""Loop attempt controller and satisfaction policy."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from loguru import logger

from braid.errors import LoopAttemptsExhaustedError, ValidationExhaustedError
from braid.session import Message, Session
from braid.templates import Loop, SatisfactionCheck


@dataclass(frozen=True)
class SelfReport:
    """The model's own claim about the goal, made through the reserved tool."""

    is_satisfied: bool
    reasoning: str = ""


@dataclass(frozen=True)
class AttemptRecord:
    index: int
    session: Session | None
    validation_error: ValidationExhaustedError | None = None
    host_satisfied: bool | None = None
    self_report: SelfReport | None = None
    satisfied: bool = False


def find_self_report(messages: Iterable[Message], goal_tool: str) -> SelfReport | None:
    """Return the latest reserved-tool report among ``messages``."""
    report: SelfReport | None = None
    for message in messages:
        if message.role != "assistant":
            continue
        for call in message.tool_calls:
            if call.name != goal_tool:
                continue
            reasoning = call.arguments.get("reasoning")
            report = SelfReport(
                is_satisfied=call.arguments.get("is_satisfied") is True,
                reasoning=reasoning if isinstance(reasoning, str) else "",
            )
    return report


async def _check_host(check: SatisfactionCheck, session: Session) -> bool:
    outcome = check(session)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return bool(outcome)


class AttemptController:
    """Runs a loop body until satisfied or out of attempts.

    Policy:
    - every attempt consumes one unit of ``max_attempts``, including attempts
      whose body failed validation (those sessions are discarded);
    - a host ``is_satisfied`` check, when present, alone decides; the model
      self-report is then advisory and only recorded;
    - without a host check the latest self-report of the attempt decides;
    - the ceiling wins over both.
    """

    def __init__(self, node: Loop, *, goal_tool: str) -> None:
        self._node = node
        self._goal_tool = node.goal_tool or goal_tool

    async def run(self, session: Session, run_body: Callable[[Session], Awaitable[Session]]) -> Session:
        node = self._node
        current = session
        records: list[AttemptRecord] = []

        for index in range(node.max_attempts):
            logger.info("loop.attempt.start attempt={} max_attempts={}", index + 1, node.max_attempts)
            try:
                candidate = await run_body(current)
            except ValidationExhaustedError as exc:
                records.append(AttemptRecord(index=index, session=None, validation_error=exc))
                logger.warning("loop.attempt.invalid attempt={} errors={}", index + 1, exc.errors)
                continue

            record = await self._assess(index, current, candidate)
            records.append(record)
            current = candidate
            if record.satisfied:
                logger.info("loop.satisfied attempt={}", index + 1)
                return current

        logger.warning("loop.exhausted max_attempts={} policy={}", node.max_attempts, node.on_exhausted)
        if node.on_exhausted == "raise":
            raise LoopAttemptsExhaustedError(
                f"Loop not satisfied after {node.max_attempts} attempts",
                max_attempts=node.max_attempts,
                records=records,
                session=current,
            )
        return current

    async def _assess(self, index: int, before: Session, after: Session) -> AttemptRecord:
        report = find_self_report(after.messages[len(before.messages) :], self._goal_tool)
        if self._node.is_satisfied is not None:
            host = await _check_host(self._node.is_satisfied, after)
            if report is not None and report.is_satisfied != host:
                logger.info(
                    "loop.self_report.overridden attempt={} model={} host={}", index + 1, report.is_satisfied, host
                )
            return AttemptRecord(index=index, session=after, host_satisfied=host, self_report=report, satisfied=host)

        satisfied = report is not None and report.is_satisfied
        return AttemptRecord(index=index, session=after, self_report=report, satisfied=satisfied)
