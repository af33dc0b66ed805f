"""Render ``{{ var }}`` placeholders against session vars."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from functools import lru_cache
from typing import Any

from jinja2 import Environment, StrictUndefined, Template, TemplateError, Undefined
from loguru import logger

from braid.session import Session


def _bullet_list(items: Iterable[Any], bullet: str = "-") -> str:
    if isinstance(items, str) or not isinstance(items, Iterable):
        return ""
    return "\n".join(f"{bullet} {item}" for item in items)


def _numbered_list(items: Iterable[Any], start: int = 1) -> str:
    if isinstance(items, str) or not isinstance(items, Iterable):
        return ""
    return "\n".join(f"{index}. {item}" for index, item in enumerate(items, start=start))


def _build_environment(*, strict: bool) -> Environment:
    env = Environment(  # noqa: S701 - output goes to a model, not to HTML
        autoescape=False,
        keep_trailing_newline=True,
        undefined=StrictUndefined if strict else Undefined,
    )
    env.filters["bullet_list"] = _bullet_list
    env.filters["numbered_list"] = _numbered_list
    return env


_LENIENT = _build_environment(strict=False)
_STRICT = _build_environment(strict=True)


@lru_cache(maxsize=256)
def _compile(text: str, strict: bool) -> Template:
    return (_STRICT if strict else _LENIENT).from_string(text)


def has_placeholders(text: str) -> bool:
    return "{{" in text or "{%" in text


def interpolate(text: str, values: Session | Mapping[str, Any], *, strict: bool = False) -> str:
    """Render ``text`` with the vars of a session (or a plain mapping).

    Missing variables render as empty strings unless ``strict`` is set, in which
    case a ``jinja2.UndefinedError`` propagates.
    """
    if not has_placeholders(text):
        return text
    context = values.vars if isinstance(values, Session) else values
    try:
        return _compile(text, strict).render(**context)
    except TemplateError:
        logger.warning("interpolation.error template={!r}", text[:80])
        raise
