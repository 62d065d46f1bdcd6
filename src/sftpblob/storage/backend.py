import asyncio
from dataclasses import dataclass
from typing import BinaryIO, Optional, Protocol, Union, runtime_checkable

from sftpblob.handle import FileType, Handle

Source = Union[bytes, bytearray, memoryview, BinaryIO]


@dataclass
class FileInfo:
    size: int


@runtime_checkable
class BlobReader(Protocol):
    async def read(self, n: int = -1) -> bytes: ...

    async def close(self) -> None: ...


@runtime_checkable
class BlobBackend(Protocol):
    def location(self) -> str: ...

    async def save(self, h: Handle, rd: Source) -> None: ...

    async def load(self, h: Handle, length: int = 0, offset: int = 0) -> BlobReader: ...

    async def stat(self, h: Handle) -> FileInfo: ...

    async def test(self, h: Handle) -> bool: ...

    async def remove(self, h: Handle) -> None: ...

    def list(self, file_type: FileType, done: Optional[asyncio.Event] = None): ...

    async def close(self) -> None: ...
