"""
mfs/bucket_map.py
MFS Bucket Map Module
Persistent allocator over bucket-sized units: chain links, run lengths and
the next-free-bucket cursor
"""

import struct
from typing import Iterator, Optional, Tuple

from osimage.utils.logger import Logger


END_OF_CHAIN = 0xFFFFFFFF

MAP_ENTRY = struct.Struct("<II")   # link, length
MAP_ENTRY_SIZE = MAP_ENTRY.size

WRITE_CHUNK_SECTORS = 2048


class BucketMapError(Exception):
    """Raised for allocator failures such as running out of buckets"""
    pass


def determine_bucket_size(partition_size_bytes: int) -> int:
    """Sectors per bucket for a partition of the given size"""
    gigabyte = 1024 * 1024 * 1024
    if partition_size_bytes <= gigabyte:
        return 8
    if partition_size_bytes <= 64 * gigabyte:
        return 16
    if partition_size_bytes <= 256 * gigabyte:
        return 32
    return 64


class BucketMap:
    """
    Allocation table for the data region of an MFS partition.

    Every bucket has an 8-byte entry (link, length). For the first bucket
    of a run, length is the number of contiguous buckets in the run and
    link is the first bucket of the next run, or END_OF_CHAIN. Free space
    is kept as a chain of runs of the same shape, starting at
    next_free_bucket.

    The map occupies the sectors at the start of the region; bucket 0
    begins at the first bucket-aligned sector after it.
    """

    def __init__(self, disk, start_sector: int, sector_count: int, bucket_size: int,
                 logger: Optional[Logger] = None):
        self.disk = disk
        self.start_sector = start_sector
        self.sector_count = sector_count
        self.bucket_size = bucket_size
        self.bytes_per_sector = disk.bytes_per_sector
        self.logger = logger or Logger()

        self.map_start_sector = start_sector
        self.map_sectors = 0
        self.data_start_sector = start_sector
        self.bucket_count = 0
        self.next_free_bucket = END_OF_CHAIN

    def _compute_layout(self) -> bool:
        """Size the map and the data region that follows it"""
        estimate = self.sector_count // self.bucket_size
        if estimate == 0:
            return False

        # The map for the first estimate always covers the final bucket count
        map_bytes = estimate * MAP_ENTRY_SIZE
        self.map_sectors = (map_bytes + self.bytes_per_sector - 1) // self.bytes_per_sector
        map_span = ((self.map_sectors + self.bucket_size - 1) // self.bucket_size) * self.bucket_size

        self.bucket_count = (self.sector_count - map_span) // self.bucket_size
        self.map_start_sector = self.start_sector
        self.data_start_sector = self.start_sector + map_span
        return self.bucket_count > 0

    def create(self) -> bool:
        """Write an empty map with a single free run covering every bucket"""
        if not self._compute_layout():
            self.logger.error(f"Bucket map: region of {self.sector_count} sectors is too small "
                              f"for {self.bucket_size}-sector buckets")
            return False

        self.logger.debug(f"Bucket map: {self.bucket_count} buckets, map at sector "
                          f"{self.map_start_sector} ({self.map_sectors} sectors), data at "
                          f"sector {self.data_start_sector}")

        remaining = self.map_sectors
        sector = self.map_start_sector
        while remaining > 0:
            count = min(WRITE_CHUNK_SECTORS, remaining)
            self.disk.write(b"\x00" * (count * self.bytes_per_sector), sector, False)
            sector += count
            remaining -= count

        self._write_entry(0, END_OF_CHAIN, self.bucket_count)
        self.next_free_bucket = 0
        return True

    def open(self, map_sector: int, free_bucket_index: int):
        """Attach to a map already on disk; map_sector is absolute"""
        if not self._compute_layout():
            raise BucketMapError("Bucket map region is too small")
        if map_sector != self.map_start_sector:
            raise BucketMapError(f"Bucket map expected at sector {self.map_start_sector}, "
                                 f"master record says {map_sector}")
        self.next_free_bucket = free_bucket_index

    def get_size_of_map(self) -> int:
        """Byte footprint of the map entries"""
        return self.bucket_count * MAP_ENTRY_SIZE

    def bucket_to_sector(self, bucket: int) -> int:
        """Absolute sector of the first sector in bucket"""
        if not 0 <= bucket < self.bucket_count:
            raise BucketMapError(f"Bucket {bucket} outside map of {self.bucket_count} buckets")
        return self.data_start_sector + bucket * self.bucket_size

    def _entry_location(self, bucket: int) -> Tuple[int, int]:
        if not 0 <= bucket < self.bucket_count:
            raise BucketMapError(f"Bucket {bucket} outside map of {self.bucket_count} buckets")
        byte_offset = bucket * MAP_ENTRY_SIZE
        return (self.map_start_sector + byte_offset // self.bytes_per_sector,
                byte_offset % self.bytes_per_sector)

    def _read_entry(self, bucket: int) -> Tuple[int, int]:
        sector, offset = self._entry_location(bucket)
        data = self.disk.read(sector, 1)
        return MAP_ENTRY.unpack_from(data, offset)

    def _write_entry(self, bucket: int, link: int, length: int):
        sector, offset = self._entry_location(bucket)
        data = bytearray(self.disk.read(sector, 1))
        MAP_ENTRY.pack_into(data, offset, link, length)
        self.disk.write(bytes(data), sector, True)

    def get_bucket_length_and_link(self, bucket: int) -> Tuple[int, int]:
        """Return (run length, next run) for the run starting at bucket"""
        link, length = self._read_entry(bucket)
        return length, link

    def set_next_bucket(self, bucket: int, next_bucket: int):
        """Point the run starting at bucket to next_bucket"""
        _, length = self._read_entry(bucket)
        self._write_entry(bucket, next_bucket, length)

    def iter_runs(self, bucket: int) -> Iterator[Tuple[int, int]]:
        """Yield (bucket, length) for each run of the chain starting at bucket"""
        seen = 0
        while bucket != END_OF_CHAIN:
            length, link = self.get_bucket_length_and_link(bucket)
            yield bucket, length
            seen += 1
            if seen > self.bucket_count:
                raise BucketMapError(f"Bucket chain starting at {bucket} does not terminate")
            bucket = link

    def get_free_buckets(self) -> int:
        """Total number of buckets left on the free list"""
        return sum(length for _, length in self.iter_runs(self.next_free_bucket))

    def allocate_buckets(self, count: int) -> Tuple[int, int]:
        """
        Take count buckets off the free list.

        Returns (first bucket, length of the first run). The runs granted are
        linked into one chain terminated by END_OF_CHAIN whose lengths add up
        to count. Nothing is modified when fewer than count buckets remain.
        """
        if count <= 0:
            raise ValueError(f"Bucket count must be positive, got {count}")

        available = 0
        for _, length in self.iter_runs(self.next_free_bucket):
            available += length
            if available >= count:
                break
        if available < count:
            raise BucketMapError(f"Out of space: requested {count} buckets, {available} free")

        start = self.next_free_bucket
        first_length = None
        previous = None
        remaining = count
        current = self.next_free_bucket

        while remaining > 0:
            length, link = self.get_bucket_length_and_link(current)
            if length > remaining:
                # Split: the tail of the run stays on the free list
                tail = current + remaining
                self._write_entry(tail, link, length - remaining)
                self._write_entry(current, END_OF_CHAIN, remaining)
                granted, following = remaining, tail
            else:
                granted, following = length, link

            if previous is not None:
                self.set_next_bucket(previous, current)
            if first_length is None:
                first_length = granted

            previous = current
            remaining -= granted
            current = following

        self.set_next_bucket(previous, END_OF_CHAIN)
        self.next_free_bucket = current

        self.logger.debug(f"Allocated {count} buckets at {start} (first run {first_length}), "
                          f"next free bucket {self.next_free_bucket}")
        return start, first_length

    def get_statistics(self) -> dict:
        """Usage figures for reporting"""
        free = self.get_free_buckets() if self.next_free_bucket != END_OF_CHAIN else 0
        bucket_bytes = self.bucket_size * self.bytes_per_sector
        return {
            'bucket_count': self.bucket_count,
            'bucket_size_sectors': self.bucket_size,
            'free_buckets': free,
            'used_buckets': self.bucket_count - free,
            'free_space_bytes': free * bucket_bytes,
            'next_free_bucket': self.next_free_bucket,
            'map_start_sector': self.map_start_sector,
            'map_size_bytes': self.get_size_of_map(),
        }
