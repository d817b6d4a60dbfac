"""
fs/interface.py
Filesystem capability interface shared by every partition filesystem
"""

import uuid
from abc import ABC, abstractmethod
from enum import Enum, IntFlag
from typing import List, Optional

from osimage.utils.logger import Logger


# Type GUID of a partition created without one
NIL_GUID = uuid.UUID(int=0)


class FileSystemError(Exception):
    """Raised when a filesystem is used outside its lifecycle"""
    pass


class FileSystemKind(Enum):
    """Supported partition filesystems and their partition-table type bytes"""
    MFS = 0x61
    FAT = 0x0C

    @property
    def type_id(self) -> int:
        return self.value

    @classmethod
    def from_name(cls, name: str) -> "FileSystemKind":
        try:
            return cls[name.upper()]
        except KeyError:
            raise FileSystemError(f"Unknown filesystem type: {name}")


class FileFlags(IntFlag):
    """Caller-facing flags for files and directories"""
    NONE = 0x0
    DIRECTORY = 0x1
    SYSTEM = 0x2


class FileSystemAttributes(IntFlag):
    """Partition attributes from the build description"""
    NONE = 0x0
    BOOT = 0x1
    HIDDEN = 0x2
    READ_ONLY = 0x4
    NO_AUTO_MOUNT = 0x8

    @classmethod
    def from_names(cls, names: Optional[List[str]]) -> "FileSystemAttributes":
        """Combine attribute names such as 'boot' or 'hidden'; unknown names are ignored"""
        lookup = {
            'boot': cls.BOOT,
            'hidden': cls.HIDDEN,
            'readonly': cls.READ_ONLY,
            'noautomount': cls.NO_AUTO_MOUNT,
        }
        attributes = cls.NONE
        for name in names or []:
            attributes |= lookup.get(name.lower(), cls.NONE)
        return attributes


class FileSystem(ABC):
    """
    One partition's filesystem. Lifecycle: construct, initialize() with a
    device and sector range, format() (or open an existing one), any number
    of content operations, then close() exactly once.
    """

    kind: FileSystemKind

    def __init__(self, name: str, type_guid: Optional[uuid.UUID] = None,
                 attributes: FileSystemAttributes = FileSystemAttributes.NONE,
                 logger: Optional[Logger] = None):
        self._name = name
        self._type_guid = type_guid if type_guid is not None else NIL_GUID
        self.attributes = attributes
        self.logger = logger or Logger()
        self.disk = None
        self._sector = 0
        self._sector_count = 0
        self._vbr_image = None
        self._reserved_image = None
        self._closed = False

    # Descriptors consumed by the partition table writer
    @property
    def name(self) -> str:
        return self._name

    @property
    def type_guid(self) -> uuid.UUID:
        return self._type_guid

    @property
    def filesystem_type(self) -> int:
        return self.kind.type_id

    @property
    def is_bootable(self) -> bool:
        return bool(self.attributes & FileSystemAttributes.BOOT)

    @property
    def sector_start(self) -> int:
        return self._sector

    @property
    def sector_count(self) -> int:
        return self._sector_count

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    def initialize(self, disk, start_sector: int, sector_count: int,
                   vbr_image: Optional[str] = None, reserved_image: Optional[str] = None):
        """Bind the filesystem to a sector range of disk"""

    @abstractmethod
    def format(self) -> bool:
        """Write an empty filesystem over the partition"""

    @abstractmethod
    def list_directory(self, path: str) -> bool:
        """Log the contents of a directory"""

    @abstractmethod
    def create_file(self, path: str, flags: FileFlags = FileFlags.NONE,
                    data: Optional[bytes] = None) -> bool:
        """Create or overwrite a file, creating missing parent directories"""

    @abstractmethod
    def create_directory(self, path: str, flags: FileFlags = FileFlags.NONE) -> bool:
        """Create a directory and any missing parents"""

    def close(self):
        """Flush filesystem state to the device; later calls do nothing"""
        if self._closed:
            return
        self._closed = True
        self._flush()

    def _flush(self):
        """Hook run once by close()"""

    def info(self) -> dict:
        return {
            'name': self.name,
            'type': self.kind.name,
            'type_id': self.filesystem_type,
            'type_guid': str(self.type_guid),
            'bootable': self.is_bootable,
            'sector_start': self.sector_start,
            'sector_count': self.sector_count,
        }

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
