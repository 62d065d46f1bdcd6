import asyncio
import contextlib
import stat
from typing import Awaitable, Callable, Optional

import paramiko
from loguru import logger

from sftpblob.errors import BackendError
from sftpblob.handle import FileType, Handle
from sftpblob.storage.layout import DefaultLayout, join

ReadDir = Callable[[str], Awaitable[list[paramiko.SFTPAttributes]]]


class Listing:
    """One-shot async iterator over the names of one collection.

    A background task reads the remote directories and hands names over a
    queue of size one. Setting ``done`` (or calling ``cancel()``, or
    leaving an ``async with`` block) stops the task at its next hand-off.
    """

    def __init__(
        self,
        layout: DefaultLayout,
        file_type: FileType,
        read_dir: ReadDir,
        done: Optional[asyncio.Event] = None,
    ):
        self.layout = layout
        self.file_type = file_type
        self.done = done if done is not None else asyncio.Event()
        self.sent = 0
        self._read_dir = read_dir
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self.task = asyncio.create_task(self._produce())

    async def _produce(self) -> None:
        if self.file_type is FileType.DATA and self.layout.sharded:
            await self._produce_sharded()
        else:
            await self._produce_flat()

    async def _produce_sharded(self) -> None:
        basedir = self.layout.dirname(Handle(FileType.DATA))
        try:
            first = await self._read_dir(basedir)
        except BackendError as e:
            logger.debug(f"list {basedir}: {e}")
            return

        for entry in first:
            # names too short to shard are stored next to the shard dirs
            if entry.st_mode is not None and not stat.S_ISDIR(entry.st_mode):
                if not await self._send(entry.filename):
                    return
                continue

            try:
                entries = await self._read_dir(join(basedir, entry.filename))
            except BackendError as e:
                logger.warning(f"skipping unreadable shard {entry.filename}: {e}")
                continue
            for item in entries:
                if not await self._send(item.filename):
                    return

    async def _produce_flat(self) -> None:
        basedir = self.layout.dirname(Handle(self.file_type))
        try:
            entries = await self._read_dir(basedir)
        except BackendError as e:
            logger.debug(f"list {basedir}: {e}")
            return

        for entry in entries:
            if not await self._send(entry.filename):
                return

    async def _send(self, name: str) -> bool:
        if self.done.is_set():
            return False
        put = asyncio.ensure_future(self._queue.put(name))
        cancelled = asyncio.ensure_future(self.done.wait())
        await asyncio.wait({put, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        cancelled.cancel()
        if not put.done():
            put.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await put
            return False
        self.sent += 1
        return True

    def cancel(self) -> None:
        self.done.set()

    async def aclose(self) -> None:
        self.cancel()
        await self.task

    def __aiter__(self) -> "Listing":
        return self

    async def __anext__(self) -> str:
        while not self.done.is_set():
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self.task.done():
                # surface unexpected producer failures
                self.task.result()
                break

            getter = asyncio.ensure_future(self._queue.get())
            await asyncio.wait(
                {getter, self.task}, return_when=asyncio.FIRST_COMPLETED
            )
            if getter.done():
                return getter.result()
            getter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await getter

        raise StopAsyncIteration

    async def __aenter__(self) -> "Listing":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
