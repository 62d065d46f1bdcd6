import asyncio
import posixpath
import secrets
import stat
from typing import Optional

import paramiko
from loguru import logger

from sftpblob.config import SFTPConfig
from sftpblob.errors import (
    BackendError,
    CollisionError,
    NotFoundError,
    ProtocolError,
    ValidationError,
    is_not_exist,
    wrap,
)
from sftpblob.handle import FileType, Handle
from sftpblob.storage.backend import FileInfo, Source
from sftpblob.storage.layout import CONFIG_FILE, DefaultLayout, join, parse_layout
from sftpblob.storage.lister import Listing
from sftpblob.storage.process import (
    CONNECTION_ERRORS,
    ClientFactory,
    SFTPSession,
    build_ssh_command,
    start_client,
)

DIR_MODE = 0o700
WRITE_BITS = 0o222
COPY_BUFSIZE = 64 * 1024
TEMPFILE_RANDOM_SUFFIX_LENGTH = 10


class RemoteReader:
    """Read side of a remote file, optionally capped at ``limit`` bytes.

    Must be closed by the caller.
    """

    def __init__(self, session: SFTPSession, f, limit: Optional[int] = None):
        self._session = session
        self._f = f
        self._remaining = limit

    async def read(self, n: int = -1) -> bytes:
        if self._remaining is not None:
            if self._remaining <= 0:
                return b""
            n = self._remaining if n < 0 else min(n, self._remaining)
        size = n if n >= 0 else None
        try:
            data = await self._session.call(self._f.read, size)
        except OSError as e:
            raise ProtocolError("Read", e) from e
        if self._remaining is not None:
            self._remaining -= len(data)
        return data

    async def close(self) -> None:
        if self._session.closed:
            return
        try:
            await self._session.call(self._f.close)
        except OSError as e:
            raise ProtocolError("Close", e) from e

    async def __aenter__(self) -> "RemoteReader":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class SFTPBackend:
    """Blob backend storing files in a directory reached over SFTP."""

    def __init__(self, session: SFTPSession, layout: DefaultLayout, cfg: SFTPConfig):
        self._session = session
        self.layout = layout
        self.config = cfg

    @property
    def client(self) -> paramiko.SFTPClient:
        return self._session.client

    @classmethod
    async def open(
        cls, cfg: SFTPConfig, client_factory: ClientFactory = None
    ) -> "SFTPBackend":
        logger.debug(f"open backend with config {cfg}")
        program, args = build_ssh_command(cfg)
        session = await asyncio.to_thread(start_client, program, args, client_factory)
        try:
            layout = await session.call(cls._check_repository, session.client, cfg)
        except BaseException:
            await asyncio.to_thread(_close_quietly, session)
            raise

        logger.debug(f"layout: {layout}")
        return cls(session, layout, cfg)

    @staticmethod
    def _check_repository(client: paramiko.SFTPClient, cfg: SFTPConfig) -> DefaultLayout:
        layout = parse_layout(cfg.layout, cfg.path, lambda p: _exists(client, p))
        for d in layout.paths():
            if not _exists(client, d):
                raise NotFoundError(f"{d} does not exist")
        return layout

    @classmethod
    async def create(
        cls, cfg: SFTPConfig, client_factory: ClientFactory = None
    ) -> "SFTPBackend":
        logger.debug(f"create backend with config {cfg}")
        program, args = build_ssh_command(cfg)
        session = await asyncio.to_thread(start_client, program, args, client_factory)
        try:
            layout = parse_layout(cfg.layout, cfg.path)
            backend = cls(session, layout, cfg)
            await session.call(backend._init_repository)
        except BaseException:
            await asyncio.to_thread(_close_quietly, session)
            raise

        await backend.close()
        return await cls.open(cfg, client_factory)

    def _init_repository(self) -> None:
        config = join(self.layout.root, CONFIG_FILE)
        if _exists(self.client, config):
            raise CollisionError(f"config file {config} already exists")

        for d in self.layout.paths():
            self._mkdir_all(d, DIR_MODE)
            logger.debug(f"mkdirAll {d}")

    def location(self) -> str:
        return self.config.path

    async def save(self, h: Handle, rd: Source) -> None:
        """Store rd under h. Fails with CollisionError if h already exists."""
        logger.debug(f"Save {h}")
        h.valid()
        self._session.client_error()
        await self._session.call(self._save, h, rd)

    def _save(self, h: Handle, rd: Source) -> None:
        filename = self.layout.filename(h)
        if h.type is FileType.DATA:
            self._mkdir_all(posixpath.dirname(filename), DIR_MODE)

        self._write_new(filename, rd)
        self._set_read_only(filename)

    def _write_new(self, filename: str, rd: Source) -> None:
        try:
            f = self.client.open(filename, "wx")
        except OSError as e:
            if _exists(self.client, filename):
                raise CollisionError(f"{filename} already exists") from e
            raise wrap("OpenFile", e) from e

        try:
            _copy(rd, f)
        except OSError as e:
            _close_file(f)
            raise ProtocolError("Write", e) from e
        except CONNECTION_ERRORS:
            _close_file(f)
            raise

        try:
            f.close()
        except OSError as e:
            raise ProtocolError("Close", e) from e

    async def save_staged(self, h: Handle, rd: Source) -> None:
        """Store rd in the temp directory first, then rename it into place."""
        logger.debug(f"SaveStaged {h}")
        h.valid()
        self._session.client_error()
        await self._session.call(self._save_staged, h, rd)

    def _save_staged(self, h: Handle, rd: Source) -> None:
        suffix = secrets.token_hex(TEMPFILE_RANDOM_SUFFIX_LENGTH // 2)
        tmpname = join(self.layout.temp_dir(), f"temp-{suffix}")
        try:
            self._write_new(tmpname, rd)
            self._rename_file(tmpname, h)
        except BackendError:
            _remove_quietly(self.client, tmpname)
            raise

    async def finalize(self, tmpname: str, h: Handle) -> None:
        """Move an already written temp file to its final name for h."""
        logger.debug(f"Finalize {tmpname} -> {h}")
        h.valid()
        self._session.client_error()
        await self._session.call(self._rename_file, tmpname, h)

    def _rename_file(self, oldname: str, h: Handle) -> None:
        filename = self.layout.filename(h)
        if h.type is FileType.DATA:
            self._mkdir_all(posixpath.dirname(filename), DIR_MODE)

        if _exists(self.client, filename):
            raise CollisionError(f"{filename} already exists")

        try:
            self.client.rename(oldname, filename)
        except OSError as e:
            raise wrap("Rename", e) from e

        self._set_read_only(filename)

    def _set_read_only(self, filename: str) -> None:
        try:
            attrs = self.client.lstat(filename)
        except OSError as e:
            raise wrap("Lstat", e) from e

        try:
            self.client.chmod(filename, stat.S_IMODE(attrs.st_mode) & ~WRITE_BITS)
        except OSError as e:
            raise ProtocolError("Chmod", e) from e

    async def ensure_dir(self, dirname: str, mode: int = DIR_MODE) -> None:
        self._session.client_error()
        await self._session.call(self._mkdir_all, dirname, mode)

    def _mkdir_all(self, dirname: str, mode: int) -> None:
        try:
            attrs = self.client.lstat(dirname)
        except OSError:
            pass
        else:
            if stat.S_ISDIR(attrs.st_mode):
                return
            raise ProtocolError(
                "mkdirAll", detail=f"{dirname}: entry exists but is not a directory"
            )

        err_parent: Optional[BackendError] = None
        parent = posixpath.dirname(dirname)
        if parent and parent != dirname:
            try:
                self._mkdir_all(parent, mode)
            except BackendError as e:
                err_parent = e

        err_mkdir: Optional[OSError] = None
        try:
            self.client.mkdir(dirname)
        except OSError as e:
            # a concurrent caller may have won, the lstat below decides
            err_mkdir = e

        try:
            attrs = self.client.lstat(dirname)
        except OSError as e:
            raise ProtocolError(
                "mkdirAll",
                e,
                detail=f"{dirname}: unable to create directories: {err_parent}, {err_mkdir}",
            ) from e

        if not stat.S_ISDIR(attrs.st_mode):
            raise ProtocolError(
                "mkdirAll", detail=f"{dirname}: entry exists but is not a directory"
            )

        try:
            self.client.chmod(dirname, mode)
        except OSError as e:
            raise ProtocolError("Chmod", e) from e

    async def load(self, h: Handle, length: int = 0, offset: int = 0) -> RemoteReader:
        """Return a reader for h starting at offset.

        With a positive length at most length bytes are returned. The
        reader must be closed after use.
        """
        logger.debug(f"Load {h}, length {length}, offset {offset}")
        h.valid()
        if offset < 0:
            raise ValidationError("offset is negative")

        f = await self._session.call(self._open_at, self.layout.filename(h), offset)
        return RemoteReader(self._session, f, length if length > 0 else None)

    def _open_at(self, filename: str, offset: int):
        try:
            f = self.client.open(filename, "r")
        except OSError as e:
            raise wrap("Open", e) from e

        if offset > 0:
            try:
                f.seek(offset)
            except OSError as e:
                _close_file(f)
                raise wrap("Seek", e) from e
        return f

    async def stat(self, h: Handle) -> FileInfo:
        logger.debug(f"Stat({h})")
        h.valid()
        self._session.client_error()
        try:
            attrs = await self._session.call(self.client.lstat, self.layout.filename(h))
        except OSError as e:
            raise wrap("Lstat", e) from e
        return FileInfo(size=attrs.st_size)

    async def test(self, h: Handle) -> bool:
        logger.debug(f"Test({h})")
        h.valid()
        self._session.client_error()
        try:
            await self._session.call(self.client.lstat, self.layout.filename(h))
        except OSError as e:
            if is_not_exist(e):
                return False
            raise ProtocolError("Lstat", e) from e
        return True

    async def remove(self, h: Handle) -> None:
        logger.debug(f"Remove({h})")
        h.valid()
        self._session.client_error()
        try:
            await self._session.call(self.client.remove, self.layout.filename(h))
        except OSError as e:
            raise wrap("Remove", e) from e

    async def _read_dir(self, dirname: str) -> list[paramiko.SFTPAttributes]:
        try:
            return await self._session.call(self.client.listdir_attr, dirname)
        except OSError as e:
            raise wrap("ReadDir", e) from e

    def list(self, file_type: FileType, done: Optional[asyncio.Event] = None) -> Listing:
        """Start listing the names stored for file_type.

        Must be called from a running event loop. Names are produced by a
        background task until the collection is exhausted or done is set.
        """
        logger.debug(f"list all {file_type.value}")
        return Listing(self.layout, file_type, self._read_dir, done)

    async def close(self) -> None:
        """Close the SFTP session and terminate the subprocess."""
        logger.debug(f"Close {self.config.path}")
        await asyncio.to_thread(self._session.close)

    async def __aenter__(self) -> "SFTPBackend":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _exists(client: paramiko.SFTPClient, path: str) -> bool:
    try:
        client.lstat(path)
    except OSError:
        return False
    return True


def _copy(rd: Source, f) -> None:
    if isinstance(rd, (bytes, bytearray, memoryview)):
        f.write(bytes(rd))
        return
    while True:
        chunk = rd.read(COPY_BUFSIZE)
        if not chunk:
            break
        f.write(chunk)


def _close_file(f) -> None:
    try:
        f.close()
    except (OSError, *CONNECTION_ERRORS) as e:
        logger.debug(f"close after failed write: {e}")


def _remove_quietly(client: paramiko.SFTPClient, path: str) -> None:
    try:
        client.remove(path)
    except OSError as e:
        logger.debug(f"unable to remove {path}: {e}")


def _close_quietly(session: SFTPSession) -> None:
    try:
        session.close()
    except BackendError as e:
        logger.debug(f"close after failed open: {e}")
