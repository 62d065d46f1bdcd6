import errno
import os
import shlex
import sys
from pathlib import Path

import paramiko
import pytest
import pytest_asyncio

from sftpblob.config import SFTPConfig
from sftpblob.storage.sftp import SFTPBackend

# Stands in for "ssh host -s sftp": stays alive until its stdin is closed.
STUB_SCRIPT = (
    "import sys; sys.stderr.write('stub ready\\n'); sys.stderr.flush(); "
    "sys.stdin.buffer.read()"
)


def stub_command(script: str = STUB_SCRIPT) -> str:
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(script)}"


def _sftp_error(e: OSError) -> OSError:
    # mirror how paramiko converts SFTP status codes
    if e.errno == errno.ENOENT:
        return IOError(errno.ENOENT, "No such file")
    if e.errno == errno.EACCES:
        return IOError(errno.EACCES, "Permission denied")
    return IOError("Failure")


class LocalSFTPClient:
    """Subset of paramiko.SFTPClient served from a local directory."""

    def __init__(self, root: Path, sock=None):
        self.root = root
        self.sock = sock
        self.closed = False
        self.calls: list[tuple[str, str]] = []

    def _local(self, path: str) -> Path:
        return self.root / path.lstrip("/")

    def open(self, path: str, mode: str = "r"):
        self.calls.append(("open", path))
        if "x" in mode:
            local_mode = "xb"
        elif "w" in mode:
            local_mode = "wb"
        else:
            local_mode = "rb"
        try:
            return open(self._local(path), local_mode)
        except OSError as e:
            raise _sftp_error(e) from None

    def lstat(self, path: str) -> paramiko.SFTPAttributes:
        self.calls.append(("lstat", path))
        try:
            st = os.lstat(self._local(path))
        except OSError as e:
            raise _sftp_error(e) from None
        return paramiko.SFTPAttributes.from_stat(st, os.path.basename(path))

    def chmod(self, path: str, mode: int) -> None:
        self.calls.append(("chmod", path))
        try:
            os.chmod(self._local(path), mode)
        except OSError as e:
            raise _sftp_error(e) from None

    def mkdir(self, path: str, mode: int = 0o777) -> None:
        self.calls.append(("mkdir", path))
        try:
            os.mkdir(self._local(path), mode)
        except OSError as e:
            raise _sftp_error(e) from None

    def rename(self, oldpath: str, newpath: str) -> None:
        self.calls.append(("rename", newpath))
        try:
            os.rename(self._local(oldpath), self._local(newpath))
        except OSError as e:
            raise _sftp_error(e) from None

    def remove(self, path: str) -> None:
        self.calls.append(("remove", path))
        try:
            os.remove(self._local(path))
        except OSError as e:
            raise _sftp_error(e) from None

    def listdir(self, path: str = ".") -> list[str]:
        self.calls.append(("listdir", path))
        try:
            return os.listdir(self._local(path))
        except OSError as e:
            raise _sftp_error(e) from None

    def listdir_attr(self, path: str = ".") -> list[paramiko.SFTPAttributes]:
        self.calls.append(("listdir_attr", path))
        local = self._local(path)
        try:
            names = os.listdir(local)
            return [
                paramiko.SFTPAttributes.from_stat(os.lstat(local / name), name)
                for name in names
            ]
        except OSError as e:
            raise _sftp_error(e) from None

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def remote_root(tmp_path):
    root = tmp_path / "remote"
    root.mkdir()
    return root


@pytest.fixture
def client_factory(remote_root):
    clients: list[LocalSFTPClient] = []

    def _factory(sock):
        client = LocalSFTPClient(remote_root, sock)
        clients.append(client)
        return client

    _factory.clients = clients
    return _factory


@pytest.fixture(name="stub_command")
def stub_command_fixture():
    return stub_command


@pytest.fixture
def sftp_config():
    return SFTPConfig(host="stub", path="/repo", command=stub_command())


@pytest.fixture
def repo_dir(remote_root):
    return remote_root / "repo"


@pytest_asyncio.fixture
async def backend(sftp_config, client_factory):
    backend = await SFTPBackend.create(sftp_config, client_factory)
    yield backend
    await backend.close()
