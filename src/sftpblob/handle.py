from dataclasses import dataclass
from enum import Enum

from sftpblob.errors import ValidationError


class FileType(str, Enum):
    DATA = "data"
    SNAPSHOT = "snapshot"
    INDEX = "index"
    LOCK = "lock"
    KEY = "key"
    CONFIG = "config"


@dataclass(frozen=True)
class Handle:
    type: FileType
    name: str = ""

    def valid(self) -> None:
        if not isinstance(self.type, FileType):
            raise ValidationError(f"invalid type {self.type!r}")
        if self.type is FileType.CONFIG:
            return
        if not self.name:
            raise ValidationError("invalid name")

    def __str__(self) -> str:
        name = self.name
        if len(name) > 10:
            name = name[:10]
        return f"<{self.type.value}/{name}>"


def parse_file_type(value: str) -> FileType:
    try:
        return FileType(value.lower())
    except ValueError:
        names = ", ".join(t.value for t in FileType)
        raise ValidationError(f"unknown file type {value!r} (expected one of {names})") from None
