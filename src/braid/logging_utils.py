"""Runtime logging helpers."""

from __future__ import annotations

import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from logging import Handler
from typing import Literal

import loguru
from loguru import logger
from rich import get_console
from rich.logging import RichHandler

LogProfile = Literal["default", "pretty"]

_PROFILE_FORMATS: dict[LogProfile, str] = {
    "pretty": "{extra[run]} | {message}",
    "default": "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<6} | {name}:{function}:{line} | {extra[run]} | {message}",
}
_CONFIGURED: tuple[LogProfile, str] | None = None
_current_run: ContextVar[str] = ContextVar("braid_run", default="-")


def current_run() -> str:
    """Return the id of the execution running in this context."""
    return _current_run.get()


@contextmanager
def run_scope(run_id: str | None = None) -> Iterator[str]:
    """Tag log records emitted inside the block with one execution id."""
    token = _current_run.set(run_id or uuid.uuid4().hex[:8])
    try:
        yield _current_run.get()
    finally:
        _current_run.reset(token)


def _build_pretty_handler() -> Handler:
    return RichHandler(
        console=get_console(),
        show_level=True,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )


def _inject_context(record: loguru.Record) -> None:
    record["extra"]["run"] = current_run()


def configure_logging(*, profile: LogProfile = "default", level: str = "INFO") -> None:
    """Configure process-level logging once per profile and level."""
    global _CONFIGURED
    level = level.upper()
    if _CONFIGURED == (profile, level):
        return

    logger.remove()
    if profile == "pretty":
        logger.add(
            _build_pretty_handler(),
            level=level,
            format=_PROFILE_FORMATS[profile],
            backtrace=False,
            diagnose=False,
        )
    else:
        logger.add(
            sys.stderr,
            level=level,
            format=_PROFILE_FORMATS[profile],
            backtrace=False,
            diagnose=False,
        )
    logger.configure(patcher=_inject_context)
    _CONFIGURED = (profile, level)
