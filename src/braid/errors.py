"""Application-level exception types for braid."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from braid.attempts import AttemptRecord
    from braid.session import Session


class BraidError(Exception):
    """Base exception for braid.

    ``session`` holds the partial session reached before the failure, when one
    is available, so callers can inspect how far execution got.
    """

    def __init__(self, message: str, *, session: Session | None = None) -> None:
        super().__init__(message)
        self.session = session


class ConfigurationError(BraidError):
    """Raised when settings are missing or inconsistent."""


class SessionStructureError(BraidError):
    """Raised when a message would break the transcript invariants."""


class SourceError(BraidError):
    """Raised when an external content source fails."""


class ValidationExhaustedError(BraidError):
    """Raised when a leaf validator never passed within its local attempt budget."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        errors: Sequence[str] = (),
        session: Session | None = None,
    ) -> None:
        super().__init__(message, session=session)
        self.attempts = attempts
        self.errors = list(errors)


class LoopAttemptsExhaustedError(BraidError):
    """Raised when a loop hits its ceiling without being satisfied."""

    def __init__(
        self,
        message: str,
        *,
        max_attempts: int,
        records: Sequence[AttemptRecord] = (),
        session: Session | None = None,
    ) -> None:
        super().__init__(message, session=session)
        self.max_attempts = max_attempts
        self.records = list(records)


class ToolNotFoundError(BraidError):
    """Raised when a model requests a tool that is not registered."""

    def __init__(self, name: str, *, session: Session | None = None) -> None:
        super().__init__(f"tool not found: {name}", session=session)
        self.name = name


class ToolExecutionError(BraidError):
    """A tool failed while running. Absorbed into the transcript by the dispatcher."""

    def __init__(self, name: str, call_id: str, cause: BaseException) -> None:
        super().__init__(f"{name}: {cause!s}")
        self.name = name
        self.call_id = call_id
        self.cause: Any = cause


class NotConnectedError(BraidError):
    """Raised when a remote client is used before ``connect``."""


class RemoteToolError(BraidError):
    """Raised when a remote tool reports ``isError``."""
