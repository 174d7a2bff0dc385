"""Type definitions for the E2B Python client."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, TypedDict

_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC 3339 timestamp; None for missing or unparseable values."""
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # fromisoformat accepts at most microseconds
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

# ---------------------------------------------------------------------------
# Enums / Literal unions
# ---------------------------------------------------------------------------

SandboxState = Literal["creating", "running", "paused", "deleted"]

EntryType = Literal["file", "dir", "symlink", "unknown"]

ReadFormat = Literal["text", "bytes"]


class FilesystemEventType(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"
    RENAMED = "renamed"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SandboxInfo:
    """Snapshot of a sandbox as reported by the API."""

    sandbox_id: str
    template_id: str
    alias: str | None = None
    client_id: str | None = None
    state: SandboxState = "running"
    cpu_count: int = 0
    memory_mb: int = 0
    metadata: dict[str, str] = field(default_factory=dict)
    env_vars: dict[str, str] = field(default_factory=dict)
    started_at: datetime | None = None
    end_at: datetime | None = None
    envd_version: str | None = None
    envd_access_token: str | None = None
    domain: str | None = None


@dataclass(frozen=True)
class SandboxMetrics:
    """Point-in-time resource usage of a sandbox.

    Metrics are emitted at a low cadence, so a freshly created sandbox
    reports ``SandboxMetrics.empty()`` rather than an error.
    """

    cpu_count: int
    cpu_used_pct: float
    mem_used: int
    mem_total: int
    disk_used: int
    disk_total: int
    timestamp: datetime | None

    @classmethod
    def empty(cls) -> SandboxMetrics:
        return cls(
            cpu_count=0,
            cpu_used_pct=0.0,
            mem_used=0,
            mem_total=0,
            disk_used=0,
            disk_total=0,
            timestamp=None,
        )

    @property
    def is_empty(self) -> bool:
        return self == SandboxMetrics.empty()


@dataclass(frozen=True)
class SandboxLog:
    """A single sandbox log line."""

    timestamp: datetime | None
    level: LogLevel
    message: str
    source: str


@dataclass(frozen=True)
class Template:
    """A template sandboxes can be created from."""

    template_id: str
    name: str = ""
    description: str | None = None
    aliases: list[str] = field(default_factory=list)
    build_id: str | None = None
    public: bool = False
    cpu_count: int = 0
    memory_mb: int = 0
    disk_mb: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommandResult:
    """Result of a finished command."""

    stdout: str
    stderr: str
    exit_code: int
    error: str | None = None
    stdout_truncated: bool = False
    stderr_truncated: bool = False


@dataclass(frozen=True)
class CommandHandle:
    """Reference to a process running in a sandbox.

    Holds no connection; every operation on it goes back to the server
    by ``pid``.
    """

    pid: int
    sandbox_id: str
    created_at: datetime


@dataclass(frozen=True)
class ProcessInfo:
    """A process listed by ``Commands.list()``."""

    pid: int
    cmd: str
    args: list[str]
    envs: dict[str, str]
    cwd: str | None
    tag: str | None


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntryInfo:
    """Filesystem entry, a snapshot rather than a live handle."""

    name: str
    path: str
    type: EntryType
    size: int
    mode: int = 0
    permissions: str = ""
    owner: str = ""
    group: str = ""
    modified_time: datetime | None = None
    symlink_target: str | None = None

    @property
    def is_dir(self) -> bool:
        return self.type == "dir"


@dataclass(frozen=True)
class WriteEntry:
    """One file of a ``write_files`` batch."""

    path: str
    data: str | bytes


@dataclass(frozen=True)
class WriteInfo:
    """A written file as reported by the sandbox."""

    path: str
    name: str
    type: EntryType | None = None


@dataclass(frozen=True)
class WriteOutcome:
    """Per-entry result of ``write_files``: exactly one of info or error."""

    entry: WriteEntry
    info: WriteInfo | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class FilesystemEvent:
    """A change observed by ``watch_dir``."""

    type: FilesystemEventType
    name: str
    path: str


# ---------------------------------------------------------------------------
# Code interpreter
# ---------------------------------------------------------------------------

RESULT_FORMATS = (
    "text",
    "html",
    "markdown",
    "svg",
    "png",
    "jpeg",
    "pdf",
    "latex",
    "json",
    "javascript",
    "chart",
)


@dataclass(frozen=True)
class Result:
    """Rich display output of an execution (``result`` or ``display_data``)."""

    type: str
    formats: dict[str, Any]
    is_main_result: bool = False

    @property
    def text(self) -> str | None:
        return self.formats.get("text")

    @property
    def html(self) -> str | None:
        return self.formats.get("html")

    @property
    def markdown(self) -> str | None:
        return self.formats.get("markdown")

    @property
    def png(self) -> str | None:
        return self.formats.get("png")

    @property
    def json(self) -> Any:
        return self.formats.get("json")


@dataclass(frozen=True)
class ExecutionError:
    """Error raised by executed code, with its traceback."""

    name: str
    value: str
    traceback: str


@dataclass(frozen=True)
class UnrecognizedOutput:
    """An output message of a type this client does not know."""

    type: str
    raw: dict[str, Any]


@dataclass(frozen=True)
class Execution:
    """Aggregated output of one code execution."""

    stdout: str = ""
    stderr: str = ""
    results: list[Result] = field(default_factory=list)
    error: ExecutionError | None = None
    execution_count: int | None = None
    unrecognized: list[UnrecognizedOutput] = field(default_factory=list)

    @property
    def text(self) -> str | None:
        """Text of the main result, if any."""
        for result in self.results:
            if result.is_main_result:
                return result.text
        return None


@dataclass(frozen=True)
class Context:
    """A stateful code execution context (kernel)."""

    id: str
    language: str
    cwd: str


# ---------------------------------------------------------------------------
# Process stream event types (envd wire shapes)
# ---------------------------------------------------------------------------


class ProcessStart(TypedDict):
    pid: int


class ProcessData(TypedDict, total=False):
    stdout: str
    stderr: str
    pty: str


class ProcessEnd(TypedDict, total=False):
    exitCode: int
    exited: bool
    status: str
    error: str


class ProcessEvent(TypedDict, total=False):
    start: ProcessStart
    data: ProcessData
    end: ProcessEnd
    keepalive: dict[str, Any]


# ---------------------------------------------------------------------------
# Decoded command stream events
# ---------------------------------------------------------------------------


class CommandStreamStart(TypedDict):
    t: Literal["start"]
    pid: int


class CommandStreamStdout(TypedDict):
    t: Literal["stdout"]
    data: str


class CommandStreamStderr(TypedDict):
    t: Literal["stderr"]
    data: str


class CommandStreamExit(TypedDict):
    t: Literal["exit"]
    code: int
    error: str | None


CommandStreamEvent = (
    CommandStreamStart | CommandStreamStdout | CommandStreamStderr | CommandStreamExit
)
