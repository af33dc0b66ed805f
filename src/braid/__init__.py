"""Composable conversation templates over an immutable session."""

from braid.config import Settings, get_settings
from braid.engine import Engine
from braid.errors import (
    BraidError,
    ConfigurationError,
    LoopAttemptsExhaustedError,
    NotConnectedError,
    RemoteToolError,
    SessionStructureError,
    SourceError,
    ToolExecutionError,
    ToolNotFoundError,
    ValidationExhaustedError,
)
from braid.scenario import Scenario, StepOptions
from braid.session import Message, Session, ToolCall, ToolUsage
from braid.sources import LLMSource, ModelOutput, ModelSource, Source, StringSource
from braid.templates import (
    Conditional,
    Leaf,
    Loop,
    Parallel,
    ParallelBranch,
    Scope,
    Sequence,
    Subroutine,
    Template,
    Transform,
    assistant,
    loop,
    parallel,
    sequence,
    set_var,
    subroutine,
    system,
    transform,
    user,
    when,
)
from braid.tools import ToolDefinition, ToolRegistry

__all__ = [
    "BraidError",
    "Conditional",
    "ConfigurationError",
    "Engine",
    "LLMSource",
    "Leaf",
    "Loop",
    "LoopAttemptsExhaustedError",
    "Message",
    "ModelOutput",
    "ModelSource",
    "NotConnectedError",
    "Parallel",
    "ParallelBranch",
    "RemoteToolError",
    "Scenario",
    "Scope",
    "Sequence",
    "Session",
    "SessionStructureError",
    "Settings",
    "Source",
    "SourceError",
    "StepOptions",
    "StringSource",
    "Subroutine",
    "Template",
    "ToolCall",
    "ToolDefinition",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ToolRegistry",
    "ToolUsage",
    "Transform",
    "ValidationExhaustedError",
    "assistant",
    "get_settings",
    "loop",
    "parallel",
    "sequence",
    "set_var",
    "subroutine",
    "system",
    "transform",
    "user",
    "when",
]
__version__ = "0.1.0"
