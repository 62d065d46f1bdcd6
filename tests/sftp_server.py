"""SFTP server speaking over stdin/stdout, serving a local directory.

Run as ``python sftp_server.py <root>`` in place of ``ssh host -s sftp``.
Any lstat of a path containing ``crash`` makes the server exit with
status 3 before it answers.
"""

import os
import sys

import paramiko

CRASH_MARKER = "crash"
CRASH_STATUS = 3


class _Transport:
    def get_log_channel(self) -> str:
        return "sftpblob.tests.server"

    def get_hexdump(self) -> bool:
        return False


class StdioChannel:
    def get_transport(self) -> _Transport:
        return _Transport()

    def get_name(self) -> str:
        return "stdio"

    def recv(self, n: int) -> bytes:
        return os.read(0, n)

    def send(self, data: bytes) -> int:
        return os.write(1, data)

    def close(self) -> None:
        pass


class LocalHandle(paramiko.SFTPHandle):
    def stat(self):
        try:
            return paramiko.SFTPAttributes.from_stat(os.fstat(self.readfile.fileno()))
        except OSError as e:
            return paramiko.SFTPServer.convert_errno(e.errno)


class LocalServer(paramiko.SFTPServerInterface):
    def __init__(self, server, root: str):
        super().__init__(server)
        self.root = root

    def _local(self, path: str) -> str:
        return os.path.join(self.root, path.lstrip("/"))

    def list_folder(self, path):
        local = self._local(path)
        try:
            return [
                paramiko.SFTPAttributes.from_stat(os.lstat(os.path.join(local, name)), name)
                for name in os.listdir(local)
            ]
        except OSError as e:
            return paramiko.SFTPServer.convert_errno(e.errno)

    def lstat(self, path):
        if CRASH_MARKER in path:
            os._exit(CRASH_STATUS)
        try:
            return paramiko.SFTPAttributes.from_stat(os.lstat(self._local(path)))
        except OSError as e:
            return paramiko.SFTPServer.convert_errno(e.errno)

    stat = lstat

    def open(self, path, flags, attr):
        try:
            fd = os.open(self._local(path), flags, 0o644)
        except OSError as e:
            return paramiko.SFTPServer.convert_errno(e.errno)

        if flags & os.O_WRONLY:
            mode = "wb"
        elif flags & os.O_RDWR:
            mode = "r+b"
        else:
            mode = "rb"
        f = os.fdopen(fd, mode)

        handle = LocalHandle(flags)
        handle.filename = self._local(path)
        handle.readfile = f
        handle.writefile = f
        return handle

    def remove(self, path):
        try:
            os.remove(self._local(path))
        except OSError as e:
            return paramiko.SFTPServer.convert_errno(e.errno)
        return paramiko.SFTP_OK

    def rename(self, oldpath, newpath):
        try:
            os.rename(self._local(oldpath), self._local(newpath))
        except OSError as e:
            return paramiko.SFTPServer.convert_errno(e.errno)
        return paramiko.SFTP_OK

    def mkdir(self, path, attr):
        try:
            os.mkdir(self._local(path))
        except OSError as e:
            return paramiko.SFTPServer.convert_errno(e.errno)
        return paramiko.SFTP_OK

    def chattr(self, path, attr):
        try:
            paramiko.SFTPServer.set_file_attr(self._local(path), attr)
        except OSError as e:
            return paramiko.SFTPServer.convert_errno(e.errno)
        return paramiko.SFTP_OK


def main(root: str) -> None:
    channel = StdioChannel()
    server = paramiko.SFTPServer(channel, "sftp", None, LocalServer, root)
    server.start_subsystem("sftp", None, channel)


if __name__ == "__main__":
    main(sys.argv[1])
