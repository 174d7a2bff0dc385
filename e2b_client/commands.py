"""Commands: run and manage processes inside a sandbox."""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .errors import ApiError, ConnectionError, NotFoundError, TimeoutError, ValidationError
from .stream import CommandStream
from .types import CommandHandle, CommandResult, ProcessInfo

if TYPE_CHECKING:
    from .rpc import EnvdClient

logger = logging.getLogger(__name__)

PROCESS_SERVICE = "process.Process"
DEFAULT_SHELL = "/bin/bash"


def build_process_config(
    cmd: str | list[str],
    *,
    cwd: str | None = None,
    envs: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Translate a shell string or argv list into an envd ProcessConfig."""
    if isinstance(cmd, str):
        if not cmd.strip():
            raise ValidationError(message="Command must not be empty")
        executable, args = DEFAULT_SHELL, ["-l", "-c", cmd]
    else:
        if not cmd or not cmd[0]:
            raise ValidationError(message="Command must not be empty")
        executable, args = cmd[0], list(cmd[1:])

    config: dict[str, Any] = {"cmd": executable, "args": args, "envs": envs or {}}
    if cwd is not None:
        config["cwd"] = cwd
    return config


def _check_timeout(timeout: float | None) -> None:
    if timeout is not None and timeout <= 0:
        raise ValidationError(message=f"timeout must be positive, got {timeout}")


class Commands:
    """Process execution inside one sandbox.

    ``timeout`` arguments are client-side deadlines in seconds. When one
    elapses the call raises ``TimeoutError`` but the process is left to the
    server; call ``kill`` if it must stop.
    """

    def __init__(self, envd: EnvdClient, *, env_vars: dict[str, str] | None = None) -> None:
        self._envd = envd
        self._env_vars = dict(env_vars or {})

    @property
    def sandbox_id(self) -> str:
        return self._envd.sandbox_id

    async def run(
        self,
        cmd: str | list[str],
        *,
        cwd: str | None = None,
        envs: dict[str, str] | None = None,
        timeout: float | None = None,
        user: str | None = None,
        on_stdout: Callable[[str], None] | None = None,
        on_stderr: Callable[[str], None] | None = None,
        max_output_bytes: int | None = None,
    ) -> CommandResult:
        """Run a command and wait for it to exit.

        Args:
            cmd: Shell command string, or an argv list run without a shell.
            cwd: Working directory.
            envs: Environment variables, merged over the sandbox's.
            timeout: Client-side deadline in seconds. None means no deadline.
            user: Sandbox user to run as, "user" by default.
            on_stdout: Called with each stdout chunk as it arrives.
            on_stderr: Called with each stderr chunk as it arrives.
            max_output_bytes: Cap on captured stdout and stderr each.

        Returns:
            The CommandResult; a non-zero exit code is not an error.
        """
        _check_timeout(timeout)
        stream = self.stream(cmd, cwd=cwd, envs=envs, user=user)

        async def _collect() -> CommandResult:
            async with stream:
                return await stream.collect(
                    on_stdout=on_stdout,
                    on_stderr=on_stderr,
                    max_output_bytes=max_output_bytes,
                )

        return await _with_deadline(_collect(), timeout, f"Command {cmd!r}")

    def stream(
        self,
        cmd: str | list[str],
        *,
        cwd: str | None = None,
        envs: dict[str, str] | None = None,
        stdin: bool = False,
        user: str | None = None,
    ) -> CommandStream:
        """Start a command and stream its output event by event.

        Use with ``async with``; leaving the block closes the stream.
        """
        config = build_process_config(cmd, cwd=cwd, envs={**self._env_vars, **(envs or {})})
        logger.debug("Starting process in sandbox %s: %s", self.sandbox_id, config)
        return CommandStream(
            self.sandbox_id,
            self._envd.stream(
                PROCESS_SERVICE, "Start", {"process": config, "stdin": stdin}, user=user
            ),
        )

    async def run_background(
        self,
        cmd: str | list[str],
        *,
        cwd: str | None = None,
        envs: dict[str, str] | None = None,
        stdin: bool = False,
        timeout: float | None = None,
        user: str | None = None,
    ) -> CommandHandle:
        """Start a command and return as soon as the server reports its pid.

        A command the server refuses to start raises here, never later.
        ``timeout`` bounds only the wait for the start acknowledgement.
        """
        _check_timeout(timeout)
        stream = self.stream(cmd, cwd=cwd, envs=envs, stdin=stdin, user=user)

        async def _started() -> CommandHandle:
            async with stream:
                async for event in stream:
                    if event["t"] == "start":
                        logger.debug(
                            "Process %d started in sandbox %s", event["pid"], self.sandbox_id
                        )
                        return CommandHandle(
                            pid=event["pid"],
                            sandbox_id=self.sandbox_id,
                            created_at=datetime.now(timezone.utc),
                        )
                    if event["t"] == "exit":
                        raise ApiError(
                            status=500,
                            message=event["error"] or "Process ended before it was started",
                        )
            raise ConnectionError(message="Process stream ended before a pid was received")

        return await _with_deadline(_started(), timeout, f"Starting {cmd!r}")

    async def wait(
        self,
        handle: CommandHandle | int,
        *,
        timeout: float | None = None,
        on_stdout: Callable[[str], None] | None = None,
        on_stderr: Callable[[str], None] | None = None,
        max_output_bytes: int | None = None,
    ) -> CommandResult:
        """Reattach to a running process and wait for it to exit.

        Only output produced after reattaching is captured.
        """
        _check_timeout(timeout)
        pid = _pid_of(handle)
        stream = CommandStream(
            self.sandbox_id,
            self._envd.stream(PROCESS_SERVICE, "Connect", {"process": {"pid": pid}}),
        )

        async def _collect() -> CommandResult:
            async with stream:
                return await stream.collect(
                    on_stdout=on_stdout,
                    on_stderr=on_stderr,
                    max_output_bytes=max_output_bytes,
                )

        return await _with_deadline(_collect(), timeout, f"Waiting for process {pid}")

    async def connect(self, pid: int) -> CommandHandle:
        """Handle for a process already running in the sandbox."""
        for process in await self.list():
            if process.pid == pid:
                return CommandHandle(
                    pid=pid,
                    sandbox_id=self.sandbox_id,
                    created_at=datetime.now(timezone.utc),
                )
        raise NotFoundError(message=f"Process {pid} not found", resource=f"process {pid}")

    async def list(self) -> list[ProcessInfo]:
        """Processes currently running anywhere in the sandbox."""
        res = await self._envd.call(PROCESS_SERVICE, "List")
        return [
            ProcessInfo(
                pid=int(p["pid"]),
                cmd=p.get("config", {}).get("cmd", ""),
                args=list(p.get("config", {}).get("args", [])),
                envs=dict(p.get("config", {}).get("envs", {})),
                cwd=p.get("config", {}).get("cwd"),
                tag=p.get("tag"),
            )
            for p in res.get("processes", [])
        ]

    async def send_stdin(self, handle: CommandHandle | int, data: str | bytes) -> None:
        """Write to a process's stdin.

        Best effort: ``NotFoundError`` is raised both when the process has
        just exited and when the pid never existed.
        """
        payload = data.encode() if isinstance(data, str) else data
        await self._envd.call(
            PROCESS_SERVICE,
            "SendInput",
            {
                "process": {"pid": _pid_of(handle)},
                "input": {"stdin": base64.b64encode(payload).decode()},
            },
            retry=False,
        )

    async def send_signal(self, handle: CommandHandle | int, signal: str = "SIGTERM") -> None:
        """Send SIGTERM or SIGKILL to a process."""
        name = signal.upper().removeprefix("SIGNAL_")
        if name not in ("SIGTERM", "SIGKILL"):
            raise ValidationError(message=f"Unsupported signal: {signal}")
        await self._envd.call(
            PROCESS_SERVICE,
            "SendSignal",
            {"process": {"pid": _pid_of(handle)}, "signal": f"SIGNAL_{name}"},
        )

    async def kill(self, handle: CommandHandle | int) -> bool:
        """Kill a process with SIGKILL.

        Returns False, without raising, if the process was already gone.
        """
        try:
            await self.send_signal(handle, "SIGKILL")
        except NotFoundError:
            self._envd.ensure_alive()
            logger.debug("Process %d already gone", _pid_of(handle))
            return False
        return True


def _pid_of(handle: CommandHandle | int) -> int:
    return handle.pid if isinstance(handle, CommandHandle) else int(handle)


async def _with_deadline(coro: Any, timeout: float | None, what: str) -> Any:
    if timeout is None:
        return await coro
    try:
        return await asyncio.wait_for(coro, timeout)
    except asyncio.TimeoutError as exc:
        raise TimeoutError(
            message=f"{what} did not finish within {timeout}s", timeout=timeout
        ) from exc
