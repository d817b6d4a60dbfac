"""
mfs/records.py
MFS Directory Record codec
Encodes and decodes the fixed 1024-byte record slots stored in directory
bucket chains
"""

import struct
from dataclasses import dataclass
from enum import IntFlag

from osimage.mfs.bucket_map import END_OF_CHAIN


RECORD_SIZE = 1024
NAME_OFFSET = 68
MAX_NAME_LENGTH = RECORD_SIZE - NAME_OFFSET - 1

_FLAGS_AND_BUCKET = struct.Struct("<III")   # flags, bucket, bucket length
_SIZES = struct.Struct("<QQ")               # size, allocated size
_SIZES_OFFSET = 48


class RecordFlags(IntFlag):
    """Record flag bits as stored on disk"""
    NONE = 0x0
    IN_USE = 0x1
    LINK = 0x2
    DIRECTORY = 0x4
    SECURITY = 0x8
    SYSTEM = 0x10


@dataclass
class Record:
    """
    One directory entry. directory_bucket, directory_length and
    directory_index locate the slot the record was read from; they are
    not part of the slot itself.
    """
    name: str
    flags: RecordFlags = RecordFlags.NONE
    bucket: int = END_OF_CHAIN
    bucket_length: int = 0
    size: int = 0
    allocated_size: int = 0
    directory_bucket: int = END_OF_CHAIN
    directory_length: int = 0
    directory_index: int = 0

    @property
    def in_use(self) -> bool:
        return bool(self.flags & RecordFlags.IN_USE)

    @property
    def is_directory(self) -> bool:
        return bool(self.flags & RecordFlags.DIRECTORY)

    @property
    def is_system(self) -> bool:
        return bool(self.flags & RecordFlags.SYSTEM)

    @property
    def has_buckets(self) -> bool:
        return self.bucket != END_OF_CHAIN

    def encode_into(self, buffer: bytearray, offset: int = 0):
        """Write the record fields into buffer at offset, leaving other bytes alone"""
        name = self.name.encode('utf-8')
        if len(name) > MAX_NAME_LENGTH:
            raise ValueError(f"Record name is {len(name)} bytes, maximum is {MAX_NAME_LENGTH}")
        if b"\x00" in name:
            raise ValueError("Record name may not contain NUL characters")

        _FLAGS_AND_BUCKET.pack_into(buffer, offset, int(self.flags), self.bucket, self.bucket_length)
        _SIZES.pack_into(buffer, offset + _SIZES_OFFSET, self.size, self.allocated_size)
        name_start = offset + NAME_OFFSET
        buffer[name_start:name_start + len(name) + 1] = name + b"\x00"

    def to_bytes(self, slot: bytes = None) -> bytes:
        """Encode into a copy of slot (or a zeroed slot)"""
        buffer = bytearray(slot if slot is not None else RECORD_SIZE)
        if len(buffer) != RECORD_SIZE:
            raise ValueError(f"Record slot must be {RECORD_SIZE} bytes")
        self.encode_into(buffer)
        return bytes(buffer)

    @classmethod
    def from_bytes(cls, data: bytes, offset: int = 0, directory_bucket: int = END_OF_CHAIN,
                   directory_length: int = 0) -> "Record":
        """Decode the slot at offset; the slot index is derived from offset"""
        flags, bucket, bucket_length = _FLAGS_AND_BUCKET.unpack_from(data, offset)
        size, allocated_size = _SIZES.unpack_from(data, offset + _SIZES_OFFSET)

        name_start = offset + NAME_OFFSET
        name_end = data.find(b"\x00", name_start, offset + RECORD_SIZE)
        if name_end < 0:
            name_end = offset + RECORD_SIZE

        return cls(
            name=data[name_start:name_end].decode('utf-8', errors='replace'),
            flags=RecordFlags(flags),
            bucket=bucket,
            bucket_length=bucket_length,
            size=size,
            allocated_size=allocated_size,
            directory_bucket=directory_bucket,
            directory_length=directory_length,
            directory_index=offset // RECORD_SIZE,
        )
