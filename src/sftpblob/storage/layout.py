import posixpath
from typing import Callable, Optional, Protocol

from loguru import logger

from sftpblob.errors import ValidationError
from sftpblob.handle import FileType, Handle

DEFAULT_LAYOUT = "default"
TEMP_DIR = "temp"
CONFIG_FILE = "config"


def join(*parts: str) -> str:
    """Join and clean remote path components, always with forward slashes."""
    return posixpath.normpath(posixpath.join(*parts))


class Layout(Protocol):
    root: str

    def filename(self, h: Handle) -> str: ...

    def dirname(self, h: Handle) -> str: ...

    def paths(self) -> list[str]: ...


class DefaultLayout:
    """Plural directory names, data files sharded by the first two characters."""

    name = "default"
    type_dirs = {
        FileType.DATA: "data",
        FileType.SNAPSHOT: "snapshots",
        FileType.INDEX: "index",
        FileType.LOCK: "locks",
        FileType.KEY: "keys",
    }
    sharded = True

    def __init__(self, root: str):
        self.root = root

    def dirname(self, h: Handle) -> str:
        if h.type is FileType.CONFIG:
            return self.root
        n = self.type_dirs[h.type]
        if self.sharded and h.type is FileType.DATA and len(h.name) > 2:
            n = join(n, h.name[:2])
        return join(self.root, n)

    def filename(self, h: Handle) -> str:
        if h.type is FileType.CONFIG:
            return join(self.root, CONFIG_FILE)
        return join(self.dirname(h), h.name)

    def paths(self) -> list[str]:
        dirs = [self.root]
        dirs.extend(join(self.root, d) for d in self.type_dirs.values())
        dirs.append(join(self.root, TEMP_DIR))
        return dirs

    def temp_dir(self) -> str:
        return join(self.root, TEMP_DIR)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(root={self.root!r})"


class S3LegacyLayout(DefaultLayout):
    """Singular directory names and no data sharding."""

    name = "s3legacy"
    type_dirs = {
        FileType.DATA: "data",
        FileType.SNAPSHOT: "snapshot",
        FileType.INDEX: "index",
        FileType.LOCK: "lock",
        FileType.KEY: "key",
    }
    sharded = False


LAYOUTS: dict[str, type[DefaultLayout]] = {
    DefaultLayout.name: DefaultLayout,
    S3LegacyLayout.name: S3LegacyLayout,
}


def detect_layout(root: str, exists: Callable[[str], bool]) -> DefaultLayout:
    """Pick a layout by looking at which collection directories are present."""
    if exists(join(root, "snapshots")) or exists(join(root, "locks")):
        logger.debug(f"detected default layout at {root}")
        return DefaultLayout(root)
    if exists(join(root, "snapshot")) or exists(join(root, "lock")):
        logger.debug(f"detected s3legacy layout at {root}")
        return S3LegacyLayout(root)
    return DefaultLayout(root)


def parse_layout(
    name: Optional[str],
    root: str,
    exists: Optional[Callable[[str], bool]] = None,
) -> DefaultLayout:
    if not name:
        if exists is not None:
            return detect_layout(root, exists)
        name = DEFAULT_LAYOUT

    layout_cls = LAYOUTS.get(name)
    if layout_cls is None:
        raise ValidationError(f"unknown layout {name!r}")
    return layout_cls(root)
