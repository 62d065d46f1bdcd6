"""
sftpblob CLI - inspect and maintain an SFTP blob repository.

Provides subcommands:
- sftpblob init: Create the repository directory skeleton
- sftpblob ls: List the names stored for one file type
- sftpblob cat / put / stat / rm: Work with a single blob
- sftpblob version: Display version information
"""

import argparse
import asyncio
import sys
from dataclasses import replace
from typing import Optional

import aiofiles
from loguru import logger

from sftpblob.config import COMMAND_ENV, REPOSITORY_ENV, SFTPConfig
from sftpblob.errors import BackendError
from sftpblob.handle import FileType, Handle, parse_file_type
from sftpblob.storage.sftp import SFTPBackend

READ_CHUNK = 64 * 1024


def get_version() -> str:
    """Get the package version."""
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("sftpblob")
    except PackageNotFoundError:
        return "0.0.1"  # Fallback version


def _config_from_args(args) -> SFTPConfig:
    cfg = SFTPConfig.from_env(
        url=getattr(args, "repo", None), command=getattr(args, "command", None)
    )
    layout = getattr(args, "layout", None)
    if layout:
        cfg = replace(cfg, layout=layout)
    return cfg


def _handle(args) -> Handle:
    file_type = parse_file_type(args.type)
    return Handle(file_type, args.name if file_type is not FileType.CONFIG else "")


async def _init(args) -> None:
    cfg = _config_from_args(args)
    backend = await SFTPBackend.create(cfg)
    await backend.close()
    print(f"created repository skeleton at {cfg.host}:{backend.location()}")


async def _ls(args) -> None:
    file_type = parse_file_type(args.type)
    backend = await SFTPBackend.open(_config_from_args(args))
    try:
        async with backend.list(file_type) as listing:
            async for name in listing:
                print(name)
    finally:
        await backend.close()


async def _cat(args) -> None:
    backend = await SFTPBackend.open(_config_from_args(args))
    try:
        rd = await backend.load(_handle(args), args.length, args.offset)
        async with rd:
            if args.output:
                async with aiofiles.open(args.output, "wb") as f:
                    while chunk := await rd.read(READ_CHUNK):
                        await f.write(chunk)
            else:
                while chunk := await rd.read(READ_CHUNK):
                    sys.stdout.buffer.write(chunk)
                sys.stdout.buffer.flush()
    finally:
        await backend.close()


async def _put(args) -> None:
    async with aiofiles.open(args.file, "rb") as f:
        content = await f.read()

    backend = await SFTPBackend.open(_config_from_args(args))
    try:
        h = _handle(args)
        if args.staged:
            await backend.save_staged(h, content)
        else:
            await backend.save(h, content)
        logger.info(f"saved {len(content)} bytes as {h}")
    finally:
        await backend.close()


async def _stat(args) -> None:
    backend = await SFTPBackend.open(_config_from_args(args))
    try:
        info = await backend.stat(_handle(args))
        print(f"{args.type}/{args.name}: {info.size} bytes")
    finally:
        await backend.close()


async def _rm(args) -> None:
    backend = await SFTPBackend.open(_config_from_args(args))
    try:
        await backend.remove(_handle(args))
    finally:
        await backend.close()


def cmd_version(args):
    """Handle the 'version' subcommand."""
    print(f"sftpblob version {get_version()}")
    print(f"Python {sys.version}")


def _run(coro_fn):
    def handler(args):
        try:
            asyncio.run(coro_fn(args))
        except BackendError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

    return handler


def _add_repo_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-r",
        "--repo",
        type=str,
        default=None,
        help=f"Repository location, sftp:user@host:/path (default: ${REPOSITORY_ENV})",
    )
    parser.add_argument(
        "--command",
        type=str,
        default=None,
        help=f"Command used to start the sftp session (default: ${COMMAND_ENV} or ssh)",
    )
    parser.add_argument(
        "--layout",
        type=str,
        default=None,
        choices=["default", "s3legacy"],
        help="Repository layout (default: auto-detect)",
    )


def _add_handle_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("type", type=str, help="File type (data, snapshot, index, lock, key, config)")
    parser.add_argument("name", type=str, nargs="?", default="", help="Blob name")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sftpblob",
        description="sftpblob - blob repository over SFTP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(
        title="commands",
        description="Available commands",
        dest="command_name",
        required=True,
    )

    init_parser = subparsers.add_parser(
        "init",
        help="Create the repository directory skeleton",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sftpblob init -r sftp:backup@nas:/srv/repo
  sftpblob init -r sftp://backup@nas:2222//srv/repo
  sftpblob init -r sftp:nas:/srv/repo --command "ssh -i ~/.ssh/backup nas -s sftp"
        """,
    )
    _add_repo_args(init_parser)
    init_parser.set_defaults(func=_run(_init))

    ls_parser = subparsers.add_parser("ls", help="List stored names for a file type")
    _add_repo_args(ls_parser)
    ls_parser.add_argument("type", type=str, help="File type to list")
    ls_parser.set_defaults(func=_run(_ls))

    cat_parser = subparsers.add_parser("cat", help="Print the content of a blob")
    _add_repo_args(cat_parser)
    _add_handle_args(cat_parser)
    cat_parser.add_argument("--offset", type=int, default=0, help="Start reading at this byte")
    cat_parser.add_argument(
        "--length", type=int, default=0, help="Read at most this many bytes (default: all)"
    )
    cat_parser.add_argument("-o", "--output", type=str, default=None, help="Write to file instead of stdout")
    cat_parser.set_defaults(func=_run(_cat))

    put_parser = subparsers.add_parser("put", help="Store a local file as a blob")
    _add_repo_args(put_parser)
    put_parser.add_argument("type", type=str, help="File type (data, snapshot, index, lock, key, config)")
    put_parser.add_argument("file", type=str, help="Local file to upload")
    put_parser.add_argument("name", type=str, nargs="?", default="", help="Blob name")
    put_parser.add_argument(
        "--staged",
        action="store_true",
        help="Upload into the temp directory first, then rename into place",
    )
    put_parser.set_defaults(func=_run(_put))

    stat_parser = subparsers.add_parser("stat", help="Show the size of a blob")
    _add_repo_args(stat_parser)
    _add_handle_args(stat_parser)
    stat_parser.set_defaults(func=_run(_stat))

    rm_parser = subparsers.add_parser("rm", help="Remove a blob")
    _add_repo_args(rm_parser)
    _add_handle_args(rm_parser)
    rm_parser.set_defaults(func=_run(_rm))

    version_parser = subparsers.add_parser(
        "version",
        help="Display version information",
        description="Display sftpblob version and Python version",
    )
    version_parser.set_defaults(func=cmd_version)

    return parser


def main(argv: Optional[list[str]] = None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
