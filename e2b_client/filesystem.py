"""Filesystem: files and directories inside a sandbox."""

from __future__ import annotations

import asyncio
import logging
import posixpath
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from .errors import E2BError, InvalidStateError, NotFoundError, ValidationError
from .types import (
    EntryInfo,
    EntryType,
    FilesystemEvent,
    FilesystemEventType,
    ReadFormat,
    WriteEntry,
    WriteInfo,
    WriteOutcome,
    parse_timestamp,
)

if TYPE_CHECKING:
    from .rpc import EnvdClient

logger = logging.getLogger(__name__)

FILESYSTEM_SERVICE = "filesystem.Filesystem"
MAX_CONCURRENT_WRITES = 8

_ENTRY_TYPES: dict[str, EntryType] = {
    "FILE_TYPE_FILE": "file",
    "FILE_TYPE_DIRECTORY": "dir",
    "FILE_TYPE_SYMLINK": "symlink",
    "file": "file",
    "dir": "dir",
    "directory": "dir",
}

_EVENT_TYPES = {
    "EVENT_TYPE_CREATE": FilesystemEventType.CREATED,
    "EVENT_TYPE_WRITE": FilesystemEventType.MODIFIED,
    "EVENT_TYPE_REMOVE": FilesystemEventType.REMOVED,
    "EVENT_TYPE_RENAME": FilesystemEventType.RENAMED,
}


def validate_path(path: Any) -> str:
    if not isinstance(path, str) or not path.strip():
        raise ValidationError(message="Path must be a non-empty string")
    if "\x00" in path:
        raise ValidationError(message=f"Path contains a NUL byte: {path!r}")
    return path


def parse_entry(raw: dict[str, Any]) -> EntryInfo:
    return EntryInfo(
        name=raw.get("name", ""),
        path=raw.get("path", ""),
        type=_ENTRY_TYPES.get(raw.get("type", ""), "unknown"),
        size=int(raw.get("size", 0)),
        mode=int(raw.get("mode", 0)),
        permissions=raw.get("permissions", ""),
        owner=raw.get("owner", ""),
        group=raw.get("group", ""),
        modified_time=parse_timestamp(raw.get("modifiedTime")),
        symlink_target=raw.get("symlinkTarget"),
    )


class Filesystem:
    """Filesystem of one sandbox."""

    def __init__(self, envd: EnvdClient) -> None:
        self._envd = envd

    # -- Reading ---------------------------------------------------------------

    async def read(self, path: str, *, format: ReadFormat = "text") -> str | bytes:
        """Read a file.

        Text is decoded as UTF-8 with undecodable bytes replaced; use
        ``format="bytes"`` for binary files.
        """
        if format not in ("text", "bytes"):
            raise ValidationError(message=f"Unknown read format: {format!r}")
        data = await self._envd.read_file(validate_path(path))
        if format == "bytes":
            return data
        return data.decode("utf-8", errors="replace")

    async def read_text(self, path: str) -> str:
        return await self.read(path, format="text")  # type: ignore[return-value]

    async def read_bytes(self, path: str) -> bytes:
        return await self.read(path, format="bytes")  # type: ignore[return-value]

    # -- Writing ---------------------------------------------------------------

    async def write(self, path: str, data: str | bytes) -> WriteInfo:
        """Write a file, creating parent directories and overwriting it."""
        payload = data.encode() if isinstance(data, str) else data
        result = await self._envd.write_file(validate_path(path), payload)
        if not result:
            return WriteInfo(path=path, name=posixpath.basename(path))
        first = result[0]
        return WriteInfo(
            path=first.get("path", path),
            name=first.get("name", posixpath.basename(path)),
            type=_ENTRY_TYPES.get(first.get("type", ""), None),
        )

    async def write_files(self, entries: Iterable[WriteEntry]) -> list[WriteOutcome]:
        """Write several files independently.

        Every entry gets its own WriteOutcome, in input order. A failing
        entry does not stop the others, so check each outcome's ``error``.
        """
        self._envd.ensure_alive()
        semaphore = asyncio.Semaphore(MAX_CONCURRENT_WRITES)

        async def _write_one(entry: WriteEntry) -> WriteOutcome:
            try:
                async with semaphore:
                    info = await self.write(entry.path, entry.data)
            except E2BError as exc:
                logger.debug("Write of %r failed: %s", entry.path, exc)
                return WriteOutcome(entry=entry, error=exc)
            return WriteOutcome(entry=entry, info=info)

        return list(await asyncio.gather(*(_write_one(e) for e in entries)))

    # -- Metadata --------------------------------------------------------------

    async def list(self, path: str) -> list[EntryInfo]:
        """Entries of one directory, not recursive."""
        res = await self._envd.call(
            FILESYSTEM_SERVICE, "ListDir", {"path": validate_path(path), "depth": 1}
        )
        return [parse_entry(e) for e in res.get("entries", [])]

    async def get_info(self, path: str) -> EntryInfo:
        res = await self._envd.call(FILESYSTEM_SERVICE, "Stat", {"path": validate_path(path)})
        return parse_entry(res.get("entry", {}))

    async def exists(self, path: str) -> bool:
        """Whether a path exists. A missing path is False, not an error."""
        try:
            await self.get_info(path)
        except NotFoundError:
            self._envd.ensure_alive()
            return False
        return True

    # -- Mutations -------------------------------------------------------------

    async def make_dir(self, path: str) -> bool:
        """Create a directory and its parents. False if it already existed."""
        try:
            await self._envd.call(FILESYSTEM_SERVICE, "MakeDir", {"path": validate_path(path)})
        except InvalidStateError:
            return False
        return True

    async def rename(self, old_path: str, new_path: str) -> EntryInfo:
        """Move a file or directory. Fails with NotFoundError if old_path is missing."""
        res = await self._envd.call(
            FILESYSTEM_SERVICE,
            "Move",
            {"source": validate_path(old_path), "destination": validate_path(new_path)},
            retry=False,
        )
        return parse_entry(res.get("entry", {}))

    async def remove(self, path: str, *, recursive: bool = False) -> None:
        """Remove a file or directory.

        A non-empty directory requires ``recursive=True``, otherwise
        ``InvalidStateError`` is raised. The recursive delete is a single
        server-side operation; nothing is walked client-side.

        The emptiness check and the delete are separate requests, so an
        entry created in between is removed along with the directory.
        """
        validate_path(path)
        if not recursive:
            info = await self.get_info(path)
            if info.is_dir and await self.list(path):
                raise InvalidStateError(
                    message=f"{path} is not empty; pass recursive=True to remove it"
                )
        await self._envd.call(FILESYSTEM_SERVICE, "Remove", {"path": path})

    # -- Watching --------------------------------------------------------------

    async def watch_dir(self, path: str, *, recursive: bool = False) -> WatchHandle:
        """Subscribe to changes in a directory.

        Returns once the server has acknowledged the subscription. The
        handle must be closed, preferably with ``async with``.
        """
        handle = WatchHandle(self._envd, validate_path(path), recursive=recursive)
        await handle._start()
        return handle


_END = object()


class WatchHandle:
    """Open subscription to filesystem events of one directory.

    Iterate with ``async for``. Only one task may read from a handle. The
    stream ends when the handle is closed or the sandbox is deleted.
    """

    def __init__(self, envd: EnvdClient, path: str, *, recursive: bool = False) -> None:
        self.path = path
        self.recursive = recursive
        self._envd = envd
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._closed = False
        self._finished = False
        self._reading = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def _start(self) -> None:
        started: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._produce(started))
        try:
            await started
        except BaseException:
            await self.close()
            raise
        self._envd.track(self)
        logger.debug("Watching %s in sandbox %s", self.path, self._envd.sandbox_id)

    async def _produce(self, started: asyncio.Future[None]) -> None:
        body = {"path": self.path, "recursive": self.recursive}
        try:
            async with self._envd.stream(FILESYSTEM_SERVICE, "WatchDir", body) as messages:
                async for message in messages:
                    event = message.get("event", message)
                    if "start" in event:
                        if not started.done():
                            started.set_result(None)
                    elif "filesystem" in event:
                        parsed = self._parse_event(event["filesystem"])
                        if parsed is not None:
                            self._queue.put_nowait(parsed)
                    elif "keepalive" not in event:
                        logger.warning("Ignoring unknown watch event: %s", sorted(event))
        except Exception as exc:
            # Handed to the reader, re-raised from __anext__.
            if not started.done():
                started.set_exception(exc)
            elif not self._closed:
                self._queue.put_nowait(exc)
        finally:
            if not started.done():
                started.set_result(None)
            self._queue.put_nowait(_END)

    def _parse_event(self, raw: dict[str, Any]) -> FilesystemEvent | None:
        event_type = _EVENT_TYPES.get(raw.get("type", ""))
        if event_type is None:
            return None
        name = raw.get("name", "")
        return FilesystemEvent(
            type=event_type, name=name, path=posixpath.join(self.path, name)
        )

    def __aiter__(self) -> WatchHandle:
        return self

    async def __anext__(self) -> FilesystemEvent:
        if self._finished or (self._closed and self._queue.empty()):
            raise StopAsyncIteration
        if self._reading:
            raise RuntimeError("WatchHandle supports a single reader")
        self._reading = True
        try:
            item = await self._queue.get()
        finally:
            self._reading = False
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self._finished = True
            raise item
        return item

    async def close(self) -> None:
        """Stop watching and release the connection. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._envd.untrack(self)
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.wait([self._task])
        self._queue.put_nowait(_END)
        logger.debug("Stopped watching %s", self.path)

    async def __aenter__(self) -> WatchHandle:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()
