import os
import posixpath
from dataclasses import dataclass, replace
from typing import Optional

from sftpblob.errors import ValidationError

REPOSITORY_ENV = "SFTPBLOB_REPOSITORY"
COMMAND_ENV = "SFTPBLOB_COMMAND"
LAYOUT_ENV = "SFTPBLOB_LAYOUT"


@dataclass(frozen=True)
class SFTPConfig:
    host: str = ""
    user: str = ""
    path: str = ""
    layout: str = ""
    command: str = ""

    @classmethod
    def from_url(cls, url: str) -> "SFTPConfig":
        """Parse a repository location.

        Two forms are accepted:

            sftp://[user@]host[:port]/path    (path relative to the login dir,
                                               use a double slash for absolute)
            sftp:[user@]host:/path
        """
        if url.startswith("sftp://"):
            user, host, path = _parse_url_form(url[len("sftp://") :])
        elif url.startswith("sftp:"):
            user, host, path = _parse_scp_form(url[len("sftp:") :])
        else:
            raise ValidationError(f"invalid sftp location {url!r}: missing 'sftp:' prefix")

        if not host:
            raise ValidationError(f"invalid sftp location {url!r}: missing host")
        if not path:
            raise ValidationError(f"invalid sftp location {url!r}: missing path")

        return cls(host=host, user=user, path=posixpath.normpath(path))

    @classmethod
    def from_env(
        cls, url: Optional[str] = None, command: Optional[str] = None
    ) -> "SFTPConfig":
        url = url or os.environ.get(REPOSITORY_ENV)
        if not url:
            raise ValidationError(f"repository location required (--repo or {REPOSITORY_ENV})")
        cfg = cls.from_url(url)

        command = command or os.environ.get(COMMAND_ENV, "")
        layout = os.environ.get(LAYOUT_ENV, "")
        return replace(cfg, command=command, layout=layout)


def _split_user(hostpart: str) -> tuple[str, str]:
    if "@" in hostpart:
        user, _, host = hostpart.rpartition("@")
        return user, host
    return "", hostpart


def _parse_url_form(rest: str) -> tuple[str, str, str]:
    hostpart, sep, path = rest.partition("/")
    if not sep:
        return "", "", ""
    user, host = _split_user(hostpart)
    return user, host, path


def _parse_scp_form(rest: str) -> tuple[str, str, str]:
    hostpart, sep, path = rest.partition(":")
    if not sep:
        return "", "", ""
    user, host = _split_user(hostpart)
    return user, host, path
