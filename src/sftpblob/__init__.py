from sftpblob.config import SFTPConfig
from sftpblob.errors import (
    BackendConnectionError,
    BackendError,
    CollisionError,
    NotFoundError,
    ProtocolError,
    ValidationError,
    is_not_exist,
)
from sftpblob.handle import FileType, Handle
from sftpblob.storage import SFTPBackend

__all__ = [
    "SFTPConfig",
    "BackendConnectionError",
    "BackendError",
    "CollisionError",
    "NotFoundError",
    "ProtocolError",
    "ValidationError",
    "is_not_exist",
    "FileType",
    "Handle",
    "SFTPBackend",
]
