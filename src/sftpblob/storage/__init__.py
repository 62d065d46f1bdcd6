from sftpblob.storage.backend import BlobBackend, BlobReader, FileInfo
from sftpblob.storage.layout import DefaultLayout, S3LegacyLayout, parse_layout
from sftpblob.storage.lister import Listing
from sftpblob.storage.sftp import RemoteReader, SFTPBackend

__all__ = [
    "BlobBackend",
    "BlobReader",
    "FileInfo",
    "DefaultLayout",
    "S3LegacyLayout",
    "parse_layout",
    "Listing",
    "RemoteReader",
    "SFTPBackend",
]
