import errno
from typing import Optional


class BackendError(Exception):
    """Base class for every error raised by a blob backend."""


class ValidationError(BackendError):
    pass


class BackendConnectionError(BackendError):
    """The subprocess or SFTP session is unusable; the backend must be reopened."""


class NotFoundError(BackendError):
    pass


class CollisionError(BackendError):
    pass


class ProtocolError(BackendError):
    def __init__(self, op: str, cause: Optional[BaseException] = None, detail: str = ""):
        self.op = op
        self.cause = cause
        message = op
        if detail:
            message = f"{message}: {detail}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


_NO_SUCH_FILE = "No such file"


def is_not_exist(err: BaseException) -> bool:
    if isinstance(err, NotFoundError):
        return True
    if isinstance(err, FileNotFoundError):
        return True
    if isinstance(err, OSError) and err.errno == errno.ENOENT:
        return True
    # paramiko raises a bare IOError carrying the status text for some servers
    return isinstance(err, OSError) and _NO_SUCH_FILE in str(err)


def wrap(op: str, err: BaseException) -> BackendError:
    """Translate a remote error into the backend taxonomy."""
    if isinstance(err, BackendError):
        return err
    if is_not_exist(err):
        return NotFoundError(f"{op}: {err}")
    return ProtocolError(op, err)
