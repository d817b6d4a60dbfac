"""
boot/master_record.py
MFS Master Record
Per-partition metadata anchoring the bucket map and the root, journal and
bad-bucket regions. Stored twice and protected by an additive checksum.
"""

import struct
from dataclasses import dataclass
from enum import IntFlag
from typing import Optional
import uuid


MASTER_RECORD_MAGIC = b"MFS1"
MASTER_RECORD_SIZE = 512
NAME_SIZE = 64

CHECKSUM_OFFSET = 8
CHECKSUM_SIZE = 4

# magic, flags (16 bit), 2 bytes padding, checksum, name
_HEADER = struct.Struct("<4sH2xI64s")
# free bucket, root, bad-bucket list, journal, map sector offset, map size
_POINTERS = struct.Struct("<IIIIQQ")
_POINTERS_OFFSET = 76


class MasterRecordError(Exception):
    """Raised when a master record cannot be decoded"""
    pass


class PartitionFlags(IntFlag):
    """Partition role bits kept in the low 16 bits of the master record flags"""
    NONE = 0x0
    SYSTEM_DRIVE = 0x1
    DATA_DRIVE = 0x2
    USER_DRIVE = 0x4
    HIDDEN_DRIVE = 0x8


# Partition type GUIDs that map onto partition roles
SYSTEM_PARTITION_GUID = uuid.UUID("c4483a10-e3a0-4d3f-b7cc-c04a6e16612b")
DATA_PARTITION_GUID = uuid.UUID("80c6c62a-b0d6-4ff4-a69d-558ab6fd8b53")
USER_PARTITION_GUID = uuid.UUID("6e7d1e9f-9f6e-4d4b-a0c2-d6a7b5b3e9c5")
DATA_USER_PARTITION_GUID = uuid.UUID("8874f880-e7ad-4ee2-839e-6ffa54f19a72")


def partition_flags_for(type_guid: Optional[uuid.UUID], hidden: bool = False) -> PartitionFlags:
    """Derive the partition role flags from its type GUID and hidden attribute"""
    flags = PartitionFlags.NONE
    if type_guid == SYSTEM_PARTITION_GUID:
        flags |= PartitionFlags.SYSTEM_DRIVE
    if type_guid in (DATA_PARTITION_GUID, DATA_USER_PARTITION_GUID):
        flags |= PartitionFlags.DATA_DRIVE
    if type_guid in (USER_PARTITION_GUID, DATA_USER_PARTITION_GUID):
        flags |= PartitionFlags.USER_DRIVE
    if hidden:
        flags |= PartitionFlags.HIDDEN_DRIVE
    return flags


def calculate_checksum(data: bytes, skip_offset: int = CHECKSUM_OFFSET,
                       skip_length: int = CHECKSUM_SIZE) -> int:
    """Additive byte sum over data, leaving out the checksum field, as uint32"""
    total = sum(data[:skip_offset]) + sum(data[skip_offset + skip_length:])
    return total & 0xFFFFFFFF


def encode_name(name: str) -> bytes:
    """UTF-8 partition name cut to the 64-byte field on a character boundary"""
    encoded = name.encode('utf-8')
    if len(encoded) <= NAME_SIZE:
        return encoded
    return encoded[:NAME_SIZE].decode('utf-8', errors='ignore').encode('utf-8')


@dataclass
class MasterRecord:
    """In-memory form of the 512-byte master record"""
    name: str
    flags: PartitionFlags
    free_bucket: int
    root_bucket: int
    bad_bucket: int
    journal_bucket: int
    map_sector_offset: int
    map_size: int
    checksum: int = 0

    def to_bytes(self) -> bytes:
        """Serialize, computing and storing the checksum"""
        data = bytearray(MASTER_RECORD_SIZE)
        _HEADER.pack_into(data, 0, MASTER_RECORD_MAGIC, int(self.flags) & 0xFFFF, 0,
                          encode_name(self.name))
        _POINTERS.pack_into(data, _POINTERS_OFFSET,
                            self.free_bucket, self.root_bucket, self.bad_bucket,
                            self.journal_bucket, self.map_sector_offset, self.map_size)

        self.checksum = calculate_checksum(data)
        struct.pack_into("<I", data, CHECKSUM_OFFSET, self.checksum)
        return bytes(data)

    def to_sector(self, bytes_per_sector: int) -> bytes:
        """Record padded out to a full sector"""
        return self.to_bytes().ljust(bytes_per_sector, b"\x00")

    @classmethod
    def from_bytes(cls, data: bytes, verify: bool = True) -> "MasterRecord":
        """Decode a master record, optionally rejecting a checksum mismatch"""
        if len(data) < MASTER_RECORD_SIZE:
            raise MasterRecordError(f"Master record must be {MASTER_RECORD_SIZE} bytes, got {len(data)}")
        data = bytes(data[:MASTER_RECORD_SIZE])

        magic, flags, checksum, raw_name = _HEADER.unpack_from(data, 0)
        if magic != MASTER_RECORD_MAGIC:
            raise MasterRecordError(f"Invalid master record magic: {magic!r}")

        expected = calculate_checksum(data)
        if verify and checksum != expected:
            raise MasterRecordError(f"Master record checksum mismatch: stored {checksum:#010x}, "
                                    f"computed {expected:#010x}")

        free_bucket, root, bad, journal, map_offset, map_size = _POINTERS.unpack_from(data, _POINTERS_OFFSET)
        return cls(
            name=raw_name.split(b"\x00", 1)[0].decode('utf-8', errors='replace'),
            flags=PartitionFlags(flags),
            free_bucket=free_bucket,
            root_bucket=root,
            bad_bucket=bad,
            journal_bucket=journal,
            map_sector_offset=map_offset,
            map_size=map_size,
            checksum=checksum,
        )

    @staticmethod
    def verify(data: bytes) -> bool:
        """True when the stored checksum matches the record contents"""
        stored = struct.unpack_from("<I", data, CHECKSUM_OFFSET)[0]
        return stored == calculate_checksum(data[:MASTER_RECORD_SIZE])
