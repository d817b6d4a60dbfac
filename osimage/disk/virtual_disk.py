"""
disk/virtual_disk.py
Virtual Disk Management Module
Sector-addressed block devices backed by raw images, VMDK extents or
temporary staging files
"""

import os
import re
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from osimage.utils.logger import Logger


MEGABYTE = 1024 * 1024
CHUNK_SIZE = MEGABYTE


class DiskError(Exception):
    """Raised for invalid block device access"""
    pass


@dataclass(frozen=True)
class Geometry:
    """Fixed disk geometry shared by every structure written to the device"""
    bytes_per_sector: int = 512
    sectors_per_track: int = 63
    heads_per_cylinder: int = 255

    @property
    def cylinder_size(self) -> int:
        return self.sectors_per_track * self.heads_per_cylinder

    def cylinders(self, sector_count: int) -> int:
        return max(1, sector_count // self.cylinder_size)


class DiskKind(Enum):
    """Disk image container formats, selected by file extension"""
    IMG = ".img"
    VMDK = ".vmdk"


def sectors_from_megabytes(size_mb: int, bytes_per_sector: int = 512) -> int:
    """Number of sectors needed for size_mb megabytes"""
    return (size_mb * MEGABYTE) // bytes_per_sector


class VirtualDisk:
    """Raw disk image addressed in sectors"""

    kind = DiskKind.IMG

    def __init__(self, filename: Union[str, Path], sector_count: Optional[int] = None,
                 geometry: Optional[Geometry] = None, logger: Optional[Logger] = None):
        self.filename = str(filename)
        self.geometry = geometry or Geometry()
        self.logger = logger or Logger()
        self.file_handle = None
        self._sector_count = sector_count

    @property
    def bytes_per_sector(self) -> int:
        return self.geometry.bytes_per_sector

    @property
    def data_path(self) -> str:
        """File holding the sector data"""
        return self.filename

    @property
    def sector_count(self) -> int:
        """Total number of sectors on the device"""
        if self._sector_count is None:
            self._sector_count = self.get_size() // self.bytes_per_sector
        return self._sector_count

    @property
    def is_open(self) -> bool:
        return self.file_handle is not None

    def create(self) -> bool:
        """Create a new zero-filled disk image and open it"""
        if not self._sector_count:
            raise DiskError("Sector count must be specified for new disk creation")

        size_bytes = self._sector_count * self.bytes_per_sector
        self.logger.info(f"Creating {self.kind.name} disk {self.filename} "
                         f"({size_bytes // MEGABYTE} MB, {self._sector_count} sectors)")
        try:
            with open(self.data_path, 'wb') as f:
                remaining = size_bytes
                zero_chunk = b'\x00' * CHUNK_SIZE
                while remaining > 0:
                    write_size = min(CHUNK_SIZE, remaining)
                    f.write(zero_chunk if write_size == CHUNK_SIZE else b'\x00' * write_size)
                    remaining -= write_size
        except OSError as e:
            raise DiskError(f"Failed to create virtual disk: {str(e)}") from e

        self.open()
        return True

    def open(self, mode: str = 'r+b') -> bool:
        """Open the disk image for sector access"""
        if self.is_open:
            return True
        if not os.path.exists(self.data_path):
            raise DiskError(f"Disk image not found: {self.data_path}")
        try:
            self.file_handle = open(self.data_path, mode)
        except OSError as e:
            raise DiskError(f"Failed to open disk: {str(e)}") from e
        return True

    def close(self):
        """Close the disk image"""
        if self.file_handle:
            self.file_handle.flush()
            self.file_handle.close()
            self.file_handle = None

    def _ensure_open(self):
        if not self.is_open:
            self.open()

    def _check_range(self, start_sector: int, sector_count: int):
        if start_sector < 0 or sector_count < 0:
            raise DiskError(f"Invalid sector range {start_sector}+{sector_count}")
        if start_sector + sector_count > self.sector_count:
            raise DiskError(f"Sector range {start_sector}+{sector_count} exceeds "
                            f"device size of {self.sector_count} sectors")

    def read(self, start_sector: int, sector_count: int) -> bytes:
        """Read consecutive sectors"""
        self._ensure_open()
        self._check_range(start_sector, sector_count)

        self.file_handle.seek(start_sector * self.bytes_per_sector)
        data = self.file_handle.read(sector_count * self.bytes_per_sector)
        if len(data) != sector_count * self.bytes_per_sector:
            raise DiskError(f"Short read at sector {start_sector}: got {len(data)} bytes")
        return data

    def write(self, buffer: bytes, start_sector: int, flush: bool = True) -> bool:
        """Write a sector-aligned buffer starting at start_sector"""
        self._ensure_open()
        if len(buffer) % self.bytes_per_sector:
            raise DiskError(f"Write of {len(buffer)} bytes is not a multiple of "
                            f"the {self.bytes_per_sector} byte sector size")
        self._check_range(start_sector, len(buffer) // self.bytes_per_sector)

        self.file_handle.seek(start_sector * self.bytes_per_sector)
        self.file_handle.write(buffer)
        if flush:
            self.file_handle.flush()
        return True

    def read_sector(self, sector_number: int) -> bytes:
        """Read a single sector"""
        return self.read(sector_number, 1)

    def write_sector(self, sector_number: int, data: bytes) -> bool:
        """Write a single sector"""
        if len(data) != self.bytes_per_sector:
            raise DiskError(f"Sector data must be exactly {self.bytes_per_sector} bytes")
        return self.write(data, sector_number)

    def seek(self, byte_offset: int) -> int:
        """Position the raw stream at byte_offset"""
        self._ensure_open()
        return self.file_handle.seek(byte_offset)

    def get_stream(self):
        """Raw file object, positioned wherever the last seek left it"""
        self._ensure_open()
        return self.file_handle

    def get_size(self) -> int:
        """Get the size of the sector data in bytes"""
        if not os.path.exists(self.data_path):
            return 0
        return os.path.getsize(self.data_path)

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class VmdkDisk(VirtualDisk):
    """
    Monolithic-flat VMDK: a text descriptor (name.vmdk) next to a raw
    extent (name-flat.vmdk) that holds the sectors.
    """

    kind = DiskKind.VMDK
    EXTENT_PATTERN = re.compile(r'^RW\s+(\d+)\s+FLAT\s+"([^"]+)"\s+(\d+)', re.MULTILINE)

    def __init__(self, filename: Union[str, Path], sector_count: Optional[int] = None,
                 geometry: Optional[Geometry] = None, logger: Optional[Logger] = None):
        super().__init__(filename, sector_count, geometry, logger)
        path = Path(self.filename)
        self._extent_name = f"{path.stem}-flat{path.suffix}"
        if sector_count is None and path.exists():
            self._read_descriptor()

    @property
    def data_path(self) -> str:
        return str(Path(self.filename).with_name(self._extent_name))

    def _read_descriptor(self):
        text = Path(self.filename).read_text(encoding='ascii', errors='replace')
        match = self.EXTENT_PATTERN.search(text)
        if not match:
            raise DiskError(f"No flat extent found in VMDK descriptor {self.filename}")
        self._sector_count = int(match.group(1))
        self._extent_name = match.group(2)

    def build_descriptor(self) -> str:
        """Text descriptor for the flat extent"""
        cylinders = min(self.geometry.cylinders(self._sector_count), 16383)
        return "\n".join([
            "# Disk DescriptorFile",
            "version=1",
            "CID=fffffffe",
            "parentCID=ffffffff",
            'createType="monolithicFlat"',
            "",
            "# Extent description",
            f'RW {self._sector_count} FLAT "{self._extent_name}" 0',
            "",
            "# The Disk Data Base",
            "#DDB",
            "",
            'ddb.virtualHWVersion = "4"',
            f'ddb.geometry.cylinders = "{cylinders}"',
            f'ddb.geometry.heads = "{self.geometry.heads_per_cylinder}"',
            f'ddb.geometry.sectors = "{self.geometry.sectors_per_track}"',
            'ddb.adapterType = "ide"',
            ""
        ])

    def create(self) -> bool:
        """Create the flat extent and write the descriptor beside it"""
        super().create()
        try:
            Path(self.filename).write_text(self.build_descriptor(), encoding='ascii')
        except OSError as e:
            raise DiskError(f"Failed to write VMDK descriptor: {str(e)}") from e
        return True


class TemporaryDisk(VirtualDisk):
    """Anonymous staging device backed by a temporary file"""

    def __init__(self, sector_count: int, geometry: Optional[Geometry] = None,
                 logger: Optional[Logger] = None):
        super().__init__("<temporary>", sector_count, geometry, logger)

    def create(self) -> bool:
        self.file_handle = tempfile.TemporaryFile()
        self.file_handle.truncate(self._sector_count * self.bytes_per_sector)
        return True

    def open(self, mode: str = 'r+b') -> bool:
        if not self.is_open:
            raise DiskError("Temporary disk must be created before use")
        return True

    def get_size(self) -> int:
        return self._sector_count * self.bytes_per_sector


def detect_disk_kind(path: Union[str, Path]) -> DiskKind:
    """Pick the disk container format from the file extension"""
    suffix = Path(path).suffix.lower()
    for kind in DiskKind:
        if kind.value == suffix:
            return kind
    raise DiskError(f"Unsupported disk image type '{suffix}' for {path} (use .img or .vmdk)")


def open_disk(path: Union[str, Path], sector_count: Optional[int] = None,
              geometry: Optional[Geometry] = None, logger: Optional[Logger] = None,
              create: bool = False) -> VirtualDisk:
    """Construct (and create or open) the disk matching the path's extension"""
    kind = detect_disk_kind(path)
    disk_class = VmdkDisk if kind is DiskKind.VMDK else VirtualDisk
    disk = disk_class(path, sector_count, geometry, logger)
    if create:
        disk.create()
    else:
        disk.open()
    return disk
