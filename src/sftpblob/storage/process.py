import asyncio
import concurrent.futures
import functools
import shlex
import subprocess
import threading
from typing import Any, Callable, Optional

import paramiko
from loguru import logger

from sftpblob.config import SFTPConfig
from sftpblob.errors import BackendConnectionError, BackendError, ValidationError

CLOSE_TIMEOUT = 2.0
SFTP_SUBSYSTEM = "sftp"

ClientFactory = Optional[Callable[[Any], paramiko.SFTPClient]]

# raised by paramiko once the pipe to the subprocess is gone or out of sync
CONNECTION_ERRORS = (paramiko.SSHException, paramiko.SFTPError, EOFError)


def build_ssh_command(cfg: SFTPConfig) -> tuple[str, list[str]]:
    if cfg.command:
        try:
            words = shlex.split(cfg.command)
        except ValueError as e:
            raise ValidationError(f"unable to parse command {cfg.command!r}: {e}") from e
        if not words:
            raise ValidationError("command is empty")
        return words[0], words[1:]

    host, _, port = cfg.host.partition(":")
    args = [host]
    if port:
        args.extend(["-p", port])
    if cfg.user:
        args.extend(["-l", cfg.user])
    args.extend(["-s", SFTP_SUBSYSTEM])
    return "ssh", args


class PipeChannel:
    """Socket-like wrapper letting paramiko speak SFTP over a child's stdio."""

    def __init__(self, process: subprocess.Popen):
        self._stdin = process.stdin
        self._stdout = process.stdout
        self._name = f"pid {process.pid}"

    def get_name(self) -> str:
        return self._name

    def send(self, data: bytes) -> int:
        return self._stdin.write(data)

    def recv(self, n: int) -> bytes:
        return self._stdout.read(n)

    def close(self) -> None:
        if not self._stdin.closed:
            self._stdin.close()


class SFTPSession:
    """An SFTP client running over a spawned subprocess.

    Two daemon threads are started with the process: one forwards stderr
    to the logger, the other waits for the process to exit and resolves
    ``result`` with the terminal error (None on a clean exit).

    Remote calls are issued through ``call()``, which runs them on a
    single worker thread so concurrent tasks never interleave packets on
    the pipe.
    """

    def __init__(self, program: str, process: subprocess.Popen):
        self.program = program
        self.process = process
        self.client: Optional[paramiko.SFTPClient] = None
        self.result: concurrent.futures.Future = concurrent.futures.Future()
        self._closed = False
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="sftp-session"
        )

        threading.Thread(
            target=self._forward_stderr, name=f"{program}-stderr", daemon=True
        ).start()
        threading.Thread(
            target=self._wait, name=f"{program}-wait", daemon=True
        ).start()

    def _forward_stderr(self) -> None:
        for line in iter(self.process.stderr.readline, b""):
            text = line.decode(errors="replace").rstrip()
            logger.info(f"subprocess {self.program}: {text}")
        self.process.stderr.close()

    def _wait(self) -> None:
        returncode = self.process.wait()
        logger.debug(f"{self.program} exited with status {returncode}")
        err = None
        if returncode != 0:
            err = BackendConnectionError(
                f"{self.program} exited with status {returncode}"
            )
        self.result.set_result(err)

    def handshake(self, client_factory: ClientFactory = None) -> None:
        if client_factory is None:
            client_factory = paramiko.SFTPClient
        try:
            self.client = client_factory(PipeChannel(self.process))
        except (*CONNECTION_ERRORS, OSError) as e:
            raise BackendConnectionError(
                f"unable to start the sftp session: {e}"
            ) from e

    @property
    def closed(self) -> bool:
        return self._closed

    def client_error(self) -> None:
        """Raise if the subprocess has already exited. Never blocks."""
        if not self.result.done():
            return
        err = self.result.result()
        logger.debug(f"client has exited with err {err}")
        if err is None:
            raise BackendConnectionError(f"{self.program} has exited")
        raise BackendConnectionError(str(err)) from err

    async def call(self, fn: Callable[..., Any], *args: Any) -> Any:
        if self._closed:
            raise BackendConnectionError("sftp session is closed")
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                self._executor, functools.partial(fn, *args)
            )
        except CONNECTION_ERRORS as e:
            raise BackendConnectionError(f"sftp session failed: {e}") from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self.client is not None:
            try:
                self.client.close()
            except (OSError, *CONNECTION_ERRORS) as e:
                logger.debug(f"closing sftp client returned error {e}")
        PipeChannel(self.process).close()
        self._executor.shutdown(wait=False)

        try:
            err = self.result.result(timeout=CLOSE_TIMEOUT)
        except concurrent.futures.TimeoutError:
            pass
        else:
            self._release_stdout()
            if err is not None:
                raise err
            return

        logger.warning(
            f"{self.program} did not exit within {CLOSE_TIMEOUT}s, killing it"
        )
        try:
            self.process.kill()
        except OSError as e:
            raise BackendConnectionError(f"unable to kill {self.program}: {e}") from e

        # drain the exit status so the wait thread finishes
        self.result.result()
        self._release_stdout()

    def _release_stdout(self) -> None:
        if self.process.stdout is not None and not self.process.stdout.closed:
            self.process.stdout.close()


def start_client(
    program: str,
    args: list[str],
    client_factory: ClientFactory = None,
) -> SFTPSession:
    """Spawn program and open an SFTP session over its stdin/stdout."""
    logger.debug(f"start client {program} {args}")
    try:
        process = subprocess.Popen(
            [program, *args],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
            # keep Ctrl-C aimed at the parent away from the child
            start_new_session=True,
        )
    except OSError as e:
        raise BackendConnectionError(f"unable to start {program}: {e}") from e

    session = SFTPSession(program, process)
    try:
        session.handshake(client_factory)
    except BackendConnectionError:
        try:
            session.close()
        except BackendError as close_err:
            logger.debug(f"cleanup after failed handshake: {close_err}")
        raise

    logger.info(f"sftp session started via {program} (pid {process.pid})")
    return session
