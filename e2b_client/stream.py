"""Connect envelope framing and CommandStream for streaming process output."""

from __future__ import annotations

import base64
import codecs
import json
import logging
import struct
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING, Any

from .errors import ApiError, ConnectionError
from .http import connect_error
from .types import CommandResult, CommandStreamEvent, ProcessEnd

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger(__name__)

FLAG_COMPRESSED = 0x01
FLAG_END_STREAM = 0x02
_HEADER = struct.Struct(">BI")


def encode_envelope(message: dict[str, Any]) -> bytes:
    """Wrap a JSON message in a Connect envelope (flags + big-endian length)."""
    payload = json.dumps(message).encode()
    return _HEADER.pack(0, len(payload)) + payload


async def parse_envelopes(
    response: httpx.Response,
) -> AsyncGenerator[dict[str, Any], None]:
    """Decode Connect envelopes from a streaming httpx Response.

    Raises the mapped error when the end-of-stream frame carries one.
    """
    buffer = b""
    async for chunk in response.aiter_bytes():
        buffer += chunk
        while len(buffer) >= _HEADER.size:
            flags, length = _HEADER.unpack_from(buffer)
            if len(buffer) < _HEADER.size + length:
                break
            payload = buffer[_HEADER.size : _HEADER.size + length]
            buffer = buffer[_HEADER.size + length :]

            if flags & FLAG_COMPRESSED:
                raise ApiError(status=500, message="Compressed stream frames are not supported")

            message = _decode_frame(payload)
            if flags & FLAG_END_STREAM:
                error = message.get("error")
                if error:
                    raise connect_error(
                        error.get("code", "unknown"), error.get("message", "Stream failed")
                    )
                return
            if message:
                yield message

    if buffer:
        raise ConnectionError(message="Stream ended in the middle of a frame")


def _decode_frame(payload: bytes) -> dict[str, Any]:
    if not payload:
        return {}
    try:
        message = json.loads(payload)
    except ValueError as exc:
        raise ApiError(status=500, message=f"Malformed stream frame: {exc}") from exc
    if not isinstance(message, dict):
        raise ApiError(status=500, message="Malformed stream frame: expected an object")
    return message


def exit_code_of(end: ProcessEnd) -> int:
    """Exit code of a finished process.

    Zero-valued fields are omitted on the wire, so a missing ``exitCode``
    on a process that exited means 0. Signal termination yields -1.
    """
    code = end.get("exitCode", end.get("exit_code"))
    if code is not None:
        return int(code)
    status = end.get("status", "")
    if "exit status" in status:
        try:
            return int(status.rsplit("exit status", 1)[1].strip())
        except ValueError:
            pass
    return 0 if end.get("exited", False) else -1


async def process_events(
    messages: AsyncIterator[dict[str, Any]],
) -> AsyncGenerator[CommandStreamEvent, None]:
    """Turn raw envd process messages into decoded stream events."""
    stdout_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    stderr_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    async for message in messages:
        event = message.get("event", message)
        if "start" in event:
            yield {"t": "start", "pid": int(event["start"]["pid"])}
        elif "data" in event:
            data = event["data"]
            if data.get("stdout"):
                text = stdout_decoder.decode(base64.b64decode(data["stdout"]))
                if text:
                    yield {"t": "stdout", "data": text}
            if data.get("stderr"):
                text = stderr_decoder.decode(base64.b64decode(data["stderr"]))
                if text:
                    yield {"t": "stderr", "data": text}
        elif "end" in event:
            tail = stdout_decoder.decode(b"", final=True)
            if tail:
                yield {"t": "stdout", "data": tail}
            tail = stderr_decoder.decode(b"", final=True)
            if tail:
                yield {"t": "stderr", "data": tail}
            end = event["end"]
            yield {"t": "exit", "code": exit_code_of(end), "error": end.get("error")}
            return
        elif "keepalive" not in event:
            logger.warning("Ignoring unknown process event: %s", sorted(event))


class CommandStream:
    """Streaming output of a process.

    Use as ``async with`` and iterate over events with ``async for``, or
    call ``collect()`` to wait for the full result. The underlying
    connection is released when the ``async with`` block exits.

    Single-use: the underlying stream is consumed on first iteration.
    """

    def __init__(
        self,
        sandbox_id: str,
        opener: AbstractAsyncContextManager[AsyncIterator[dict[str, Any]]],
    ) -> None:
        self.sandbox_id = sandbox_id
        self.pid: int | None = None
        self._opener = opener
        self._events: AsyncGenerator[CommandStreamEvent, None] | None = None

    async def __aenter__(self) -> CommandStream:
        messages = await self._opener.__aenter__()
        self._events = process_events(messages)
        return self

    async def __aexit__(self, *exc_info: Any) -> bool | None:
        if self._events is not None:
            await self._events.aclose()
        return await self._opener.__aexit__(*exc_info)

    def __aiter__(self) -> AsyncIterator[CommandStreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncGenerator[CommandStreamEvent, None]:
        if self._events is None:
            raise RuntimeError("CommandStream must be entered with 'async with'")
        async for event in self._events:
            if event["t"] == "start":
                self.pid = event["pid"]
            yield event

    async def collect(
        self,
        *,
        on_stdout: Callable[[str], None] | None = None,
        on_stderr: Callable[[str], None] | None = None,
        max_output_bytes: int | None = None,
    ) -> CommandResult:
        """Consume the entire stream and return the aggregated CommandResult."""
        stdout = _CappedBuffer(max_output_bytes)
        stderr = _CappedBuffer(max_output_bytes)
        exit_code: int | None = None
        error: str | None = None

        async for event in self:
            if event["t"] == "stdout":
                stdout.append(event["data"])
                if on_stdout:
                    on_stdout(event["data"])
            elif event["t"] == "stderr":
                stderr.append(event["data"])
                if on_stderr:
                    on_stderr(event["data"])
            elif event["t"] == "exit":
                exit_code = event["code"]
                error = event["error"]

        if exit_code is None:
            raise ConnectionError(
                message=f"Process stream in sandbox {self.sandbox_id} ended without an exit event"
            )

        return CommandResult(
            stdout=stdout.text,
            stderr=stderr.text,
            exit_code=exit_code,
            error=error,
            stdout_truncated=stdout.truncated,
            stderr_truncated=stderr.truncated,
        )


class _CappedBuffer:
    """Accumulates text up to a byte budget, remembering if it overflowed."""

    def __init__(self, max_bytes: int | None) -> None:
        self._max_bytes = max_bytes
        self._parts: list[str] = []
        self._size = 0
        self.truncated = False

    def append(self, text: str) -> None:
        if self._max_bytes is None:
            self._parts.append(text)
            return
        if self.truncated:
            return
        data = text.encode()
        room = self._max_bytes - self._size
        if len(data) > room:
            self._parts.append(data[:room].decode(errors="ignore"))
            self._size = self._max_bytes
            self.truncated = True
            return
        self._parts.append(text)
        self._size += len(data)

    @property
    def text(self) -> str:
        return "".join(self._parts)
