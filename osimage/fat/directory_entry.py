"""
fat/directory_entry.py
FAT32 Directory Entry Module
32-byte short-name directory entries, 8.3 name generation and the VFAT
long-name entries that precede a short entry whose name does not fit 8.3
"""

import struct
import datetime
from typing import Collection, Dict, List, Optional, Tuple

ENTRY_SIZE = 32
DELETED_MARKER = 0xE5
END_MARKER = 0x00

LFN_LAST_ENTRY = 0x40
LFN_SEQUENCE_MASK = 0x1F
LFN_CHARS_PER_ENTRY = 13
MAX_LONG_NAME = 255
# Byte offsets of the 13 UTF-16 code units inside a long-name entry
_LFN_CHAR_OFFSETS = (1, 3, 5, 7, 9, 14, 16, 18, 20, 22, 24, 28, 30)

_INVALID_SHORT_CHARS = set('"*+,/:;<=>?[\\]| ')


def split_filename(filename: str) -> Tuple[str, str]:
    """Split filename into name and extension for 8.3 format"""
    if filename in ('.', '..'):
        return filename, ''
    cleaned = ''.join('_' if c in _INVALID_SHORT_CHARS or ord(c) > 0x7E else c for c in filename)
    if '.' in cleaned.lstrip('.'):
        name, ext = cleaned.rsplit('.', 1)
    else:
        name, ext = cleaned, ''
    name = name.replace('.', '') or '_'
    return name[:8].upper(), ext[:3].upper()


def make_short_name(filename: str, used: Collection[Tuple[str, str]] = ()) -> Tuple[str, str, bool]:
    """
    (name, extension, needs_long_name) for filename.

    Names that survive the 8.3 conversion unchanged (apart from case) are used
    as they are. Anything else gets a numeric ~N tail that is not in used, the
    set of (name, extension) pairs already present in the directory.
    """
    name, ext = split_filename(filename)
    if filename in ('.', '..'):
        return name, ext, False

    short = f"{name}.{ext}" if ext else name
    if short == filename.upper() and (name, ext) not in used:
        return name, ext, False

    for number in range(1, 1000000):
        tail = f"~{number}"
        candidate = name[:8 - len(tail)] + tail
        if (candidate, ext) not in used:
            return candidate, ext, True
    raise ValueError(f"No free short name left for {filename}")


def lfn_checksum(short_name: bytes) -> int:
    """Checksum of the 11-byte short name stored in each of its long-name entries"""
    total = 0
    for byte in short_name[:11]:
        total = (((total & 1) << 7) + (total >> 1) + byte) & 0xFF
    return total


def build_long_name_entries(long_name: str, short_name: bytes) -> List[bytes]:
    """Long-name entries for long_name in on-disk order, last fragment first"""
    encoded = long_name.encode('utf-16-le')
    units = list(struct.unpack(f"<{len(encoded) // 2}H", encoded))
    if not units or len(units) > MAX_LONG_NAME:
        raise ValueError(f"Long name must be 1 to {MAX_LONG_NAME} characters: {long_name!r}")

    # NUL terminated unless the name fills the last fragment, then 0xFFFF padded
    if len(units) % LFN_CHARS_PER_ENTRY:
        units.append(0x0000)
    count = (len(units) + LFN_CHARS_PER_ENTRY - 1) // LFN_CHARS_PER_ENTRY
    units += [0xFFFF] * (count * LFN_CHARS_PER_ENTRY - len(units))

    checksum = lfn_checksum(short_name)
    entries = []
    for sequence in range(count, 0, -1):
        entry = bytearray(ENTRY_SIZE)
        entry[0] = sequence | (LFN_LAST_ENTRY if sequence == count else 0)
        entry[11] = DirectoryEntry.ATTR_LONG_NAME
        entry[13] = checksum
        fragment = units[(sequence - 1) * LFN_CHARS_PER_ENTRY:sequence * LFN_CHARS_PER_ENTRY]
        for offset, unit in zip(_LFN_CHAR_OFFSETS, fragment):
            struct.pack_into("<H", entry, offset, unit)
        entries.append(bytes(entry))
    return entries


def parse_long_name_entry(data: bytes, offset: int = 0) -> Tuple[int, int, List[int]]:
    """(sequence byte, checksum, 13 UTF-16 code units) of one long-name entry"""
    units = [struct.unpack_from("<H", data, offset + position)[0] for position in _LFN_CHAR_OFFSETS]
    return data[offset], data[offset + 13], units


def join_long_name(fragments: Dict[int, List[int]]) -> Optional[str]:
    """Long name from fragments keyed by sequence number; None when one is missing"""
    if not fragments or sorted(fragments) != list(range(1, len(fragments) + 1)):
        return None
    units = [unit for sequence in sorted(fragments) for unit in fragments[sequence]]
    if 0x0000 in units:
        units = units[:units.index(0x0000)]
    return struct.pack(f"<{len(units)}H", *units).decode('utf-16-le', errors='replace')


def python_datetime_to_fat(dt: datetime.datetime) -> Tuple[int, int]:
    """Convert Python datetime to FAT32 date/time format"""
    # FAT date: bits 15-9 year (relative to 1980), bits 8-5 month, bits 4-0 day
    fat_date = ((max(dt.year, 1980) - 1980) << 9) | (dt.month << 5) | dt.day
    # FAT time: bits 15-11 hour, bits 10-5 minute, bits 4-0 second/2
    fat_time = (dt.hour << 11) | (dt.minute << 5) | (dt.second // 2)
    return fat_date, fat_time


class DirectoryEntry:
    """Represents a FAT32 directory entry"""

    # File attributes
    ATTR_READ_ONLY = 0x01
    ATTR_HIDDEN = 0x02
    ATTR_SYSTEM = 0x04
    ATTR_VOLUME_ID = 0x08
    ATTR_DIRECTORY = 0x10
    ATTR_ARCHIVE = 0x20
    ATTR_LONG_NAME = 0x0F

    _LAYOUT = struct.Struct("<8s3sBBBHHHHHHHI")

    def __init__(self, name: str = "", extension: str = "", attributes: int = 0,
                 first_cluster: int = 0, file_size: int = 0):
        self.name = name
        self.extension = extension
        self.attributes = attributes
        self.reserved = 0
        self.creation_time_tenths = 0
        self.creation_time = 0
        self.creation_date = 0
        self.last_access_date = 0
        self.first_cluster_high = 0
        self.write_time = 0
        self.write_date = 0
        self.first_cluster_low = 0
        self.file_size = file_size
        self.first_cluster = first_cluster
        # From the long-name entries in front of this one; not part of the 32 bytes
        self.long_name: Optional[str] = None

    @classmethod
    def for_name(cls, filename: str, attributes: int, first_cluster: int = 0, file_size: int = 0,
                 used: Collection[Tuple[str, str]] = ()) -> 'DirectoryEntry':
        """
        New entry for filename, stamped with the current time. used holds the
        short names already taken in the target directory.
        """
        name, ext, needs_long_name = make_short_name(filename, used)
        entry = cls(name, ext, attributes, first_cluster, file_size)
        if needs_long_name:
            entry.long_name = filename
        entry.touch()
        return entry

    @classmethod
    def volume_label(cls, label: bytes) -> 'DirectoryEntry':
        entry = cls(label[:8].decode('ascii'), label[8:11].decode('ascii'), cls.ATTR_VOLUME_ID)
        entry.touch()
        return entry

    @property
    def first_cluster(self) -> int:
        return (self.first_cluster_high << 16) | self.first_cluster_low

    @first_cluster.setter
    def first_cluster(self, value: int):
        self.first_cluster_high = (value >> 16) & 0xFFFF
        self.first_cluster_low = value & 0xFFFF

    @property
    def is_directory(self) -> bool:
        return bool(self.attributes & self.ATTR_DIRECTORY)

    @property
    def is_volume_label(self) -> bool:
        return bool(self.attributes & self.ATTR_VOLUME_ID)

    @property
    def is_dot_entry(self) -> bool:
        return self.name in ('.', '..')

    @property
    def full_name(self) -> str:
        name = self.name.strip()
        ext = self.extension.strip()
        return f"{name}.{ext}" if ext else name

    @property
    def display_name(self) -> str:
        return self.long_name or self.full_name

    def matches(self, filename: str) -> bool:
        """Case-insensitive match against the long name or the 8.3 alias"""
        target = filename.upper()
        if self.long_name is not None and target == self.long_name.upper():
            return True
        return target == self.full_name.upper()

    def touch(self, when: datetime.datetime = None):
        fat_date, fat_time = python_datetime_to_fat(when or datetime.datetime.now())
        self.creation_date = self.write_date = self.last_access_date = fat_date
        self.creation_time = self.write_time = fat_time

    def to_entries(self) -> List[bytes]:
        """Directory slots for this entry: long-name entries, if any, then the short entry"""
        short = self.to_bytes()
        if not self.long_name:
            return [short]
        return build_long_name_entries(self.long_name, short[:11]) + [short]

    def to_bytes(self) -> bytes:
        """Convert directory entry to 32-byte structure"""
        return self._LAYOUT.pack(
            self.name.encode('ascii', errors='replace')[:8].ljust(8, b' '),
            self.extension.encode('ascii', errors='replace')[:3].ljust(3, b' '),
            self.attributes,
            self.reserved,
            self.creation_time_tenths,
            self.creation_time,
            self.creation_date,
            self.last_access_date,
            self.first_cluster_high,
            self.write_time,
            self.write_date,
            self.first_cluster_low,
            self.file_size,
        )

    @classmethod
    def from_bytes(cls, data: bytes, offset: int = 0) -> 'DirectoryEntry':
        """Create DirectoryEntry from 32-byte directory entry data"""
        if len(data) - offset < ENTRY_SIZE:
            raise ValueError("Directory entry data must be at least 32 bytes")

        entry = cls()
        (
            name,
            extension,
            entry.attributes,
            entry.reserved,
            entry.creation_time_tenths,
            entry.creation_time,
            entry.creation_date,
            entry.last_access_date,
            entry.first_cluster_high,
            entry.write_time,
            entry.write_date,
            entry.first_cluster_low,
            entry.file_size,
        ) = cls._LAYOUT.unpack_from(data, offset)
        entry.name = name.decode('ascii', errors='replace').rstrip()
        entry.extension = extension.decode('ascii', errors='replace').rstrip()
        return entry
