"""
fs/factory.py
Constructs the filesystem implementation for a FileSystemKind
"""

import uuid
from typing import Optional, Union

from osimage.fat.filesystem import FatFileSystem
from osimage.fs.interface import FileSystem, FileSystemAttributes, FileSystemKind
from osimage.mfs.filesystem import MfsFileSystem
from osimage.utils.logger import Logger


FILESYSTEM_CLASSES = {
    FileSystemKind.MFS: MfsFileSystem,
    FileSystemKind.FAT: FatFileSystem,
}


def create_filesystem(kind: Union[FileSystemKind, str], name: str,
                      type_guid: Optional[uuid.UUID] = None,
                      attributes: FileSystemAttributes = FileSystemAttributes.NONE,
                      logger: Optional[Logger] = None) -> FileSystem:
    """New, uninitialized filesystem of the given kind"""
    if isinstance(kind, str):
        kind = FileSystemKind.from_name(kind)
    return FILESYSTEM_CLASSES[kind](name, type_guid, attributes, logger)
