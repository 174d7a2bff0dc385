"""Code interpreter: language-dispatched code execution in a sandbox."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Any

from .errors import TimeoutError, ValidationError
from .types import (
    RESULT_FORMATS,
    Context,
    Execution,
    ExecutionError,
    Result,
    UnrecognizedOutput,
)

if TYPE_CHECKING:
    from .http import HttpClient
    from .rpc import EnvdClient

logger = logging.getLogger(__name__)

DEFAULT_CODE_TIMEOUT = 300.0


async def parse_execution(
    lines: AsyncIterator[str],
    *,
    on_stdout: Callable[[str], None] | None = None,
    on_stderr: Callable[[str], None] | None = None,
    on_result: Callable[[Result], None] | None = None,
) -> Execution:
    """Aggregate the newline-delimited JSON output of ``/execute``."""
    stdout: list[str] = []
    stderr: list[str] = []
    results: list[Result] = []
    unrecognized: list[UnrecognizedOutput] = []
    error: ExecutionError | None = None
    execution_count: int | None = None

    async for line in lines:
        if not line.strip():
            continue
        try:
            message = json.loads(line)
        except ValueError:
            logger.warning("Skipping malformed execution output line: %.200s", line)
            continue
        if not isinstance(message, dict):
            unrecognized.append(UnrecognizedOutput(type="", raw={"value": message}))
            continue

        msg_type = message.get("type")
        if msg_type in ("stdout", "stderr"):
            text = _output_text(message)
            (stdout if msg_type == "stdout" else stderr).append(text)
            callback = on_stdout if msg_type == "stdout" else on_stderr
            if callback:
                callback(text)
        elif msg_type in ("result", "display_data"):
            result = _parse_result(msg_type, message)
            results.append(result)
            if on_result:
                on_result(result)
        elif msg_type == "error":
            traceback = message.get("traceback", "")
            if isinstance(traceback, list):
                traceback = "\n".join(traceback)
            error = ExecutionError(
                name=message.get("name", "Unknown"),
                value=message.get("value", ""),
                traceback=traceback,
            )
        elif msg_type == "number_of_executions":
            execution_count = message.get("execution_count")
        elif msg_type == "end_of_execution":
            continue
        elif msg_type is None and ("stdout" in message or "stderr" in message):
            stdout.append(message.get("stdout", ""))
            stderr.append(message.get("stderr", ""))
        else:
            logger.debug("Unrecognized execution output type: %s", msg_type)
            unrecognized.append(UnrecognizedOutput(type=str(msg_type), raw=message))

    return Execution(
        stdout="".join(stdout),
        stderr="".join(stderr),
        results=results,
        error=error,
        execution_count=execution_count,
        unrecognized=unrecognized,
    )


def _output_text(message: dict[str, Any]) -> str:
    if "text" in message:
        return message["text"]
    for key in ("line", "data"):
        if key in message:
            return f"{message[key]}\n"
    return ""


def _parse_result(msg_type: str, message: dict[str, Any]) -> Result:
    formats = {k: message[k] for k in RESULT_FORMATS if message.get(k) is not None}
    mime_bundle = message.get("data")
    if isinstance(mime_bundle, dict):
        for mime, value in mime_bundle.items():
            formats.setdefault(mime, value)
        if "text/plain" in mime_bundle:
            formats.setdefault("text", mime_bundle["text/plain"])
    return Result(
        type=msg_type,
        formats=formats,
        is_main_result=bool(message.get("is_main_result", msg_type == "result")),
    )


class CodeInterpreter:
    """Client of the code interpreter service of one sandbox."""

    def __init__(self, http: HttpClient, envd: EnvdClient) -> None:
        self._http = http
        self._envd = envd

    async def close(self) -> None:
        await self._http.close()

    async def run_code(
        self,
        code: str,
        *,
        language: str | None = None,
        context: Context | None = None,
        envs: dict[str, str] | None = None,
        timeout: float | None = DEFAULT_CODE_TIMEOUT,
        on_stdout: Callable[[str], None] | None = None,
        on_stderr: Callable[[str], None] | None = None,
        on_result: Callable[[Result], None] | None = None,
    ) -> Execution:
        """Execute code and collect its output.

        Errors raised by the code are reported in ``Execution.error``, not
        raised. When ``timeout`` elapses ``TimeoutError`` is raised, while
        the execution may continue in the sandbox.
        """
        self._envd.ensure_alive()
        if language and context:
            raise ValidationError(message="Pass either language or context, not both")
        if timeout is not None and timeout <= 0:
            raise ValidationError(message=f"timeout must be positive, got {timeout}")

        body: dict[str, Any] = {"code": code}
        if language:
            body["language"] = language
        if context:
            body["context_id"] = context.id
        if envs:
            body["env_vars"] = envs

        async def _execute() -> Execution:
            async with self._http.stream("POST", "/execute", json_body=body) as response:
                return await parse_execution(
                    response.aiter_lines(),
                    on_stdout=on_stdout,
                    on_stderr=on_stderr,
                    on_result=on_result,
                )

        logger.debug(
            "Executing %d chars of %s code in sandbox %s",
            len(code),
            language or "default",
            self._envd.sandbox_id,
        )
        if timeout is None:
            return await _execute()
        try:
            return await asyncio.wait_for(_execute(), timeout)
        except asyncio.TimeoutError as exc:
            raise TimeoutError(
                message=f"Code execution did not finish within {timeout}s",
                timeout=timeout,
            ) from exc

    async def create_context(
        self, *, language: str | None = None, cwd: str | None = None
    ) -> Context:
        """Create a stateful execution context."""
        self._envd.ensure_alive()
        body = {k: v for k, v in {"language": language, "cwd": cwd}.items() if v}
        res = await self._http.request("POST", "/contexts", body=body, retry=False)
        return Context(id=res["id"], language=res.get("language", ""), cwd=res.get("cwd", ""))

    async def list_contexts(self) -> list[Context]:
        self._envd.ensure_alive()
        res = await self._http.request("GET", "/contexts") or []
        return [
            Context(id=c["id"], language=c.get("language", ""), cwd=c.get("cwd", ""))
            for c in res
        ]
