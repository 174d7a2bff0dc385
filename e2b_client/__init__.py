"""E2B Python client: async sessions for remote code-execution sandboxes."""

from .client import E2B
from .code_interpreter import CodeInterpreter
from .commands import Commands
from .config import ConnectionConfig
from .errors import (
    ApiError,
    AuthenticationError,
    ConnectionError,
    E2BError,
    InvalidStateError,
    NotFoundError,
    RateLimitError,
    TimeoutError,
    UnsupportedTemplateError,
    ValidationError,
)
from .filesystem import Filesystem, WatchHandle
from .sandbox import Sandbox
from .stream import CommandStream
from .types import (
    CommandHandle,
    CommandResult,
    CommandStreamEvent,
    Context,
    EntryInfo,
    Execution,
    ExecutionError,
    FilesystemEvent,
    FilesystemEventType,
    LogLevel,
    ProcessInfo,
    Result,
    SandboxInfo,
    SandboxLog,
    SandboxMetrics,
    SandboxState,
    Template,
    UnrecognizedOutput,
    WriteEntry,
    WriteInfo,
    WriteOutcome,
)

__version__ = "0.1.0"

__all__ = [
    # Client
    "E2B",
    "ConnectionConfig",
    # Resources
    "Sandbox",
    "Commands",
    "CommandStream",
    "Filesystem",
    "WatchHandle",
    "CodeInterpreter",
    # Errors
    "E2BError",
    "ApiError",
    "NotFoundError",
    "AuthenticationError",
    "RateLimitError",
    "InvalidStateError",
    "TimeoutError",
    "ConnectionError",
    "ValidationError",
    "UnsupportedTemplateError",
    # Types
    "SandboxInfo",
    "SandboxState",
    "SandboxMetrics",
    "SandboxLog",
    "Template",
    "LogLevel",
    "CommandResult",
    "CommandHandle",
    "CommandStreamEvent",
    "ProcessInfo",
    "EntryInfo",
    "WriteEntry",
    "WriteInfo",
    "WriteOutcome",
    "FilesystemEvent",
    "FilesystemEventType",
    "Execution",
    "ExecutionError",
    "Result",
    "UnrecognizedOutput",
    "Context",
]
