"""Content validators used by leaves to accept or reject generated text."""

from __future__ import annotations

import inspect
import json
import re
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ValidationError


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: tuple[str, ...] = ()

    @classmethod
    def ok(cls) -> ValidationResult:
        return cls(valid=True)

    @classmethod
    def fail(cls, *errors: str) -> ValidationResult:
        return cls(valid=False, errors=tuple(errors))


@runtime_checkable
class Validator(Protocol):
    def validate(self, content: str) -> ValidationResult | Awaitable[ValidationResult]: ...


async def run_validator(validator: Validator, content: str) -> ValidationResult:
    """Run a sync or async validator."""
    result = validator.validate(content)
    if inspect.isawaitable(result):
        result = await result
    return result


@dataclass(frozen=True)
class RegexMatchValidator:
    """Passes when the pattern matches somewhere in the content."""

    pattern: str
    flags: int = 0
    description: str | None = None

    def validate(self, content: str) -> ValidationResult:
        if re.search(self.pattern, content, self.flags):
            return ValidationResult.ok()
        return ValidationResult.fail(self.description or f"Content must match pattern: {self.pattern}")


@dataclass(frozen=True)
class RegexNoMatchValidator:
    """Passes when the pattern does not match anywhere in the content."""

    pattern: str
    flags: int = 0
    description: str | None = None

    def validate(self, content: str) -> ValidationResult:
        if re.search(self.pattern, content, self.flags) is None:
            return ValidationResult.ok()
        return ValidationResult.fail(self.description or f"Content must not match pattern: {self.pattern}")


@dataclass(frozen=True)
class KeywordValidator:
    keywords: tuple[str, ...]
    mode: str = "include"
    case_sensitive: bool = False

    def __post_init__(self) -> None:
        if self.mode not in {"include", "exclude"}:
            raise ValueError(f"Unknown keyword mode: {self.mode}")
        object.__setattr__(self, "keywords", tuple(self.keywords))

    def validate(self, content: str) -> ValidationResult:
        haystack = content if self.case_sensitive else content.casefold()

        def _present(keyword: str) -> bool:
            return (keyword if self.case_sensitive else keyword.casefold()) in haystack

        if self.mode == "include":
            if any(_present(keyword) for keyword in self.keywords):
                return ValidationResult.ok()
            return ValidationResult.fail(f"Content must include one of: {', '.join(self.keywords)}")

        found = [keyword for keyword in self.keywords if _present(keyword)]
        if found:
            return ValidationResult.fail(f"Content must not include: {', '.join(found)}")
        return ValidationResult.ok()


@dataclass(frozen=True)
class LengthValidator:
    min_length: int | None = None
    max_length: int | None = None

    def validate(self, content: str) -> ValidationResult:
        size = len(content)
        if self.min_length is not None and size < self.min_length:
            return ValidationResult.fail(f"Content is too short ({size} < {self.min_length})")
        if self.max_length is not None and size > self.max_length:
            return ValidationResult.fail(f"Content is too long ({size} > {self.max_length})")
        return ValidationResult.ok()


@dataclass(frozen=True)
class JsonValidator:
    """Passes when the content parses as JSON, optionally a JSON object."""

    require_object: bool = False

    def validate(self, content: str) -> ValidationResult:
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            return ValidationResult.fail(f"Invalid JSON: {exc.msg}")
        if self.require_object and not isinstance(payload, dict):
            return ValidationResult.fail("JSON content must be an object")
        return ValidationResult.ok()


@dataclass(frozen=True)
class SchemaValidator:
    """Passes when the content is JSON matching a pydantic model."""

    model: type[BaseModel]

    def validate(self, content: str) -> ValidationResult:
        try:
            self.model.model_validate_json(content)
        except ValidationError as exc:
            return ValidationResult.fail(*(_format_pydantic_error(error) for error in exc.errors()))
        return ValidationResult.ok()


def _format_pydantic_error(error: dict) -> str:
    location = ".".join(str(part) for part in error.get("loc", ())) or "<root>"
    return f"{location}: {error.get('msg', 'invalid')}"


CheckFn = Callable[[str], "bool | ValidationResult | Awaitable[bool | ValidationResult]"]


@dataclass(frozen=True)
class CallbackValidator:
    """Wraps a plain predicate. ``bool`` results use ``description`` as the error."""

    check: CheckFn
    description: str = "Content failed custom validation"

    async def validate(self, content: str) -> ValidationResult:
        outcome = self.check(content)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        if isinstance(outcome, ValidationResult):
            return outcome
        return ValidationResult.ok() if outcome else ValidationResult.fail(self.description)


@dataclass(frozen=True)
class AllValidator:
    validators: Sequence[Validator] = field(default_factory=tuple)

    async def validate(self, content: str) -> ValidationResult:
        errors: list[str] = []
        for validator in self.validators:
            result = await run_validator(validator, content)
            if not result.valid:
                errors.extend(result.errors)
        return ValidationResult(valid=not errors, errors=tuple(errors))


@dataclass(frozen=True)
class AnyValidator:
    validators: Sequence[Validator] = field(default_factory=tuple)

    async def validate(self, content: str) -> ValidationResult:
        errors: list[str] = []
        for validator in self.validators:
            result = await run_validator(validator, content)
            if result.valid:
                return result
            errors.extend(result.errors)
        return ValidationResult.fail(*errors)


def keywords(words: Iterable[str], *, mode: str = "include", case_sensitive: bool = False) -> KeywordValidator:
    return KeywordValidator(keywords=tuple(words), mode=mode, case_sensitive=case_sensitive)
