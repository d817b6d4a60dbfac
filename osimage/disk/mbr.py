"""
disk/mbr.py
MBR Partition Table Module
Lays partitions out on a disk, formats their filesystems and writes the
partition table once every filesystem has been closed
"""

import struct
from dataclasses import dataclass
from typing import List, Optional

from osimage.disk.virtual_disk import Geometry
from osimage.fs.interface import FileSystem, FileSystemKind
from osimage.mfs.filesystem import MfsFileSystem
from osimage.utils.logger import Logger


MBR_SIGNATURE = b"\x55\xAA"
PARTITION_TABLE_OFFSET = 446
PARTITION_ENTRY = struct.Struct("<B3sB3sII")  # status, CHS first, type, CHS last, LBA, count
MAX_PARTITIONS = 4
FIRST_PARTITION_SECTOR = 2048

STATUS_BOOTABLE = 0x80
STATUS_INACTIVE = 0x00


class PartitionTableError(Exception):
    """Raised for an unreadable or full partition table"""
    pass


def lba_to_chs(lba: int, geometry: Geometry) -> bytes:
    """3-byte CHS address of lba, saturated for sectors past cylinder 1023"""
    cylinder = lba // geometry.cylinder_size
    if cylinder > 1023:
        return b"\xFE\xFF\xFF"
    head = (lba // geometry.sectors_per_track) % geometry.heads_per_cylinder
    sector = (lba % geometry.sectors_per_track) + 1
    return bytes([head, ((cylinder >> 2) & 0xC0) | (sector & 0x3F), cylinder & 0xFF])


@dataclass
class PartitionEntry:
    """One primary partition table entry"""
    type_id: int
    start_sector: int
    sector_count: int
    bootable: bool = False

    def to_bytes(self, geometry: Geometry) -> bytes:
        last_sector = self.start_sector + max(self.sector_count, 1) - 1
        return PARTITION_ENTRY.pack(
            STATUS_BOOTABLE if self.bootable else STATUS_INACTIVE,
            lba_to_chs(self.start_sector, geometry),
            self.type_id,
            lba_to_chs(last_sector, geometry),
            self.start_sector,
            self.sector_count,
        )

    @classmethod
    def from_bytes(cls, data: bytes, offset: int = 0) -> "PartitionEntry":
        status, _, type_id, _, start_sector, sector_count = PARTITION_ENTRY.unpack_from(data, offset)
        return cls(type_id, start_sector, sector_count, status == STATUS_BOOTABLE)


class MbrScheme:
    """Master boot record partitioning of a disk"""

    def __init__(self, disk, logger: Optional[Logger] = None):
        self.disk = disk
        self.logger = logger or Logger()
        self.entries: List[PartitionEntry] = []
        self.filesystems: List[FileSystem] = []
        self.next_sector = FIRST_PARTITION_SECTOR
        self._closed = False

    def create(self) -> bool:
        """Start an empty partition table on the disk"""
        if self.disk.sector_count <= FIRST_PARTITION_SECTOR:
            self.logger.error(f"Disk of {self.disk.sector_count} sectors is too small for an MBR layout")
            return False
        self.entries = []
        self.filesystems = []
        self.next_sector = FIRST_PARTITION_SECTOR
        self._write_table()
        return True

    def open(self) -> bool:
        """Read the partition table and mount the MFS partitions it lists"""
        sector = self.disk.read(0, 1)
        if sector[510:512] != MBR_SIGNATURE:
            self.logger.error("Disk has no MBR signature")
            return False

        self.entries = []
        self.filesystems = []
        for index in range(MAX_PARTITIONS):
            entry = PartitionEntry.from_bytes(sector, PARTITION_TABLE_OFFSET + index * PARTITION_ENTRY.size)
            if entry.type_id == 0 or entry.sector_count == 0:
                continue
            self.entries.append(entry)
            self.next_sector = max(self.next_sector, entry.start_sector + entry.sector_count)

            if entry.type_id == FileSystemKind.MFS.type_id:
                self.filesystems.append(MfsFileSystem.open(self.disk, entry.start_sector, logger=self.logger))
            else:
                self.logger.warning(f"Partition {index} has type 0x{entry.type_id:02X}, "
                                    f"which cannot be opened for editing")
        self.logger.info(f"Opened MBR with {len(self.entries)} partitions")
        return True

    def get_filesystems(self) -> List[FileSystem]:
        return list(self.filesystems)

    def get_free_sector_count(self) -> int:
        """Sectors left after the last partition"""
        if len(self.entries) >= MAX_PARTITIONS:
            return 0
        return max(self.disk.sector_count - self.next_sector, 0)

    def add_partition(self, filesystem: FileSystem, sector_count: int,
                      vbr_image: Optional[str] = None, reserved_image: Optional[str] = None) -> bool:
        """Place filesystem after the last partition, then format it"""
        free = self.get_free_sector_count()
        if free == 0:
            self.logger.error(f"No room for partition '{filesystem.name}'")
            return False
        if sector_count > free:
            self.logger.warning(f"Partition '{filesystem.name}' shrunk from {sector_count} to {free} sectors")
            sector_count = free

        start = self.next_sector
        self.logger.info(f"Adding {filesystem.kind.name} partition '{filesystem.name}' "
                         f"at sector {start} ({sector_count} sectors)")
        filesystem.initialize(self.disk, start, sector_count, vbr_image, reserved_image)
        if not filesystem.format():
            return False

        self.entries.append(PartitionEntry(filesystem.filesystem_type, start, sector_count,
                                           filesystem.is_bootable))
        self.filesystems.append(filesystem)
        self.next_sector = start + sector_count
        return True

    def _write_table(self):
        sector = bytearray(self.disk.read(0, 1))
        sector[PARTITION_TABLE_OFFSET:510] = b"\x00" * (510 - PARTITION_TABLE_OFFSET)
        for index, entry in enumerate(self.entries[:MAX_PARTITIONS]):
            offset = PARTITION_TABLE_OFFSET + index * PARTITION_ENTRY.size
            sector[offset:offset + PARTITION_ENTRY.size] = entry.to_bytes(self.disk.geometry)
        sector[510:512] = MBR_SIGNATURE
        self.disk.write(bytes(sector), 0, True)

    def close(self):
        """Close every filesystem, then write the partition table"""
        if self._closed:
            return
        self._closed = True
        try:
            for filesystem in self.filesystems:
                filesystem.close()
        finally:
            self._write_table()
            self.logger.debug(f"Wrote MBR with {len(self.entries)} partitions")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
