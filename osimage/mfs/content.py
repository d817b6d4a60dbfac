"""
mfs/content.py
MFS File Content Store
Grows a record's bucket chain and moves payload bytes in and out of it
"""

from typing import Optional

from osimage.mfs.bucket_map import BucketMap, END_OF_CHAIN
from osimage.mfs.records import Record
from osimage.utils.logger import Logger


class FileContentStore:
    """Bucket-chain storage for file payloads"""

    def __init__(self, disk, bucket_map: BucketMap, logger: Optional[Logger] = None):
        self.disk = disk
        self.bucket_map = bucket_map
        self.logger = logger or Logger()

    @property
    def bucket_bytes(self) -> int:
        return self.bucket_map.bucket_size * self.disk.bytes_per_sector

    def buckets_for(self, size: int) -> int:
        """Whole buckets needed to hold size bytes"""
        bytes_per_sector = self.disk.bytes_per_sector
        sectors = (size + bytes_per_sector - 1) // bytes_per_sector
        return (sectors + self.bucket_map.bucket_size - 1) // self.bucket_map.bucket_size

    def ensure_bucket_space(self, record: Record, required_size: int) -> bool:
        """
        Grow the record's chain until it can hold required_size bytes.
        Returns False when the record already has room; records never shrink.
        """
        if required_size <= record.allocated_size:
            return False

        bucket_count = self.buckets_for(required_size - record.allocated_size)
        bucket, first_length = self.bucket_map.allocate_buckets(bucket_count)

        if record.bucket == END_OF_CHAIN:
            record.bucket = bucket
            record.bucket_length = first_length
        else:
            tail = record.bucket
            for run_bucket, _ in self.bucket_map.iter_runs(record.bucket):
                tail = run_bucket
            self.bucket_map.set_next_bucket(tail, bucket)

        record.allocated_size += bucket_count * self.bucket_bytes
        self.logger.debug(f"Record {record.name}: +{bucket_count} buckets at {bucket}, "
                          f"allocated {record.allocated_size} bytes")
        return True

    def fill_bucket_chain(self, bucket: int, bucket_length: int, data: bytes) -> int:
        """
        Write data across the chain starting at bucket, one run at a time,
        zero-filling the unused tail of the last run. Returns the number of
        payload bytes written.
        """
        index = 0
        while index < len(data):
            if bucket == END_OF_CHAIN:
                self.logger.error(f"Bucket chain ended with {len(data) - index} bytes left to write")
                break

            window = self.bucket_bytes * bucket_length
            chunk = data[index:index + window]
            if len(chunk) < window:
                chunk = chunk + b"\x00" * (window - len(chunk))
            self.disk.write(chunk, self.bucket_map.bucket_to_sector(bucket), True)
            index += window

            _, bucket = self.bucket_map.get_bucket_length_and_link(bucket)
            if bucket != END_OF_CHAIN:
                bucket_length, _ = self.bucket_map.get_bucket_length_and_link(bucket)

        return min(index, len(data))

    def read_bucket_chain(self, bucket: int, bucket_length: int, size: Optional[int] = None) -> bytes:
        """Read the chain starting at bucket; size trims the result to the payload"""
        content = bytearray()
        while bucket != END_OF_CHAIN:
            if size is not None and len(content) >= size:
                break
            content += self.disk.read(self.bucket_map.bucket_to_sector(bucket),
                                      self.bucket_map.bucket_size * bucket_length)
            _, bucket = self.bucket_map.get_bucket_length_and_link(bucket)
            if bucket != END_OF_CHAIN:
                bucket_length, _ = self.bucket_map.get_bucket_length_and_link(bucket)

        if size is not None:
            return bytes(content[:size])
        return bytes(content)
