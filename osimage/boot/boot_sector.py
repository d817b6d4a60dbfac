"""
boot/boot_sector.py
MFS Volume Boot Record
The first sector of an MFS partition: geometry, sizing and the location of
the master record and its mirror
"""

import struct
from dataclasses import dataclass


VBR_MAGIC = b"MFS1"
VBR_VERSION = 1
MEDIA_TYPE_FIXED = 0x80

FLAG_BOOTABLE = 0x1
FLAG_ENCRYPTED = 0x2

# Fields from offset 3 (after the jump code) through offset 43
VBR_HEADER = struct.Struct("<4sBBBHHHQHHQQ")
VBR_HEADER_OFFSET = 3
VBR_FLAGS_OFFSET = 8


class BootSectorError(Exception):
    """Raised when a volume boot record cannot be decoded"""
    pass


@dataclass
class VolumeBootRecord:
    """MFS volume boot record fields"""
    bytes_per_sector: int
    sectors_per_track: int
    heads_per_cylinder: int
    sector_count: int
    reserved_sectors: int
    bucket_size: int
    master_record_sector: int
    mirror_record_sector: int
    bootable: bool = False
    version: int = VBR_VERSION
    media_type: int = MEDIA_TYPE_FIXED

    @property
    def flags(self) -> int:
        return FLAG_BOOTABLE if self.bootable else 0

    def build(self) -> bytes:
        """Build and return the boot sector, one sector long"""
        sector = bytearray(self.bytes_per_sector)
        VBR_HEADER.pack_into(
            sector, VBR_HEADER_OFFSET,
            VBR_MAGIC,
            self.version,
            self.flags,
            self.media_type,
            self.bytes_per_sector,
            self.sectors_per_track,
            self.heads_per_cylinder,
            self.sector_count,
            self.reserved_sectors,
            self.bucket_size,
            self.master_record_sector,
            self.mirror_record_sector
        )
        return bytes(sector)

    @classmethod
    def parse(cls, data: bytes) -> "VolumeBootRecord":
        if len(data) < VBR_HEADER_OFFSET + VBR_HEADER.size:
            raise BootSectorError(f"Boot sector too short: {len(data)} bytes")

        (magic, version, flags, media_type, bytes_per_sector, sectors_per_track,
         heads_per_cylinder, sector_count, reserved_sectors, bucket_size,
         master_sector, mirror_sector) = VBR_HEADER.unpack_from(data, VBR_HEADER_OFFSET)

        if magic != VBR_MAGIC:
            raise BootSectorError(f"Not an MFS boot sector (magic {magic!r})")

        return cls(
            bytes_per_sector=bytes_per_sector,
            sectors_per_track=sectors_per_track,
            heads_per_cylinder=heads_per_cylinder,
            sector_count=sector_count,
            reserved_sectors=reserved_sectors,
            bucket_size=bucket_size,
            master_record_sector=master_sector,
            mirror_record_sector=mirror_sector,
            bootable=bool(flags & FLAG_BOOTABLE),
            version=version,
            media_type=media_type,
        )

    @classmethod
    def from_disk(cls, disk, start_sector: int) -> "VolumeBootRecord":
        """Read and parse the boot sector of the partition at start_sector"""
        return cls.parse(disk.read(start_sector, 1))

    def info(self) -> str:
        """Return a human-readable summary of the boot record"""
        lines = [
            f"Version:            {self.version}",
            f"Bootable:           {'yes' if self.bootable else 'no'}",
            f"Bytes/Sector:       {self.bytes_per_sector}",
            f"Sectors/Track:      {self.sectors_per_track}",
            f"Heads/Cylinder:     {self.heads_per_cylinder}",
            f"Sector Count:       {self.sector_count}",
            f"Reserved Sectors:   {self.reserved_sectors}",
            f"Bucket Size:        {self.bucket_size} sectors",
            f"Master Record:      sector {self.master_record_sector}",
            f"Master Mirror:      sector {self.mirror_record_sector}",
        ]
        return "\n".join(lines)
