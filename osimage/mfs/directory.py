"""
mfs/directory.py
MFS Directory Engine
Path resolution and record creation inside bucket-chained directories
"""

from typing import Iterator, List, Optional, Tuple

from osimage.mfs.bucket_map import BucketMap, END_OF_CHAIN
from osimage.mfs.records import Record, RecordFlags, RECORD_SIZE
from osimage.utils.logger import Logger


# Buckets given to a new directory and added when a directory fills up
EXPAND_SIZE = 8

ROOT_RECORD_NAME = "<root>"


def safe_path(path: str) -> str:
    """Normalize separators and strip leading/trailing slashes"""
    return path.replace('\\', '/').strip('/')


def split_path(path: str) -> List[str]:
    """Path components, ignoring empty ones"""
    return [token for token in safe_path(path).split('/') if token]


class DirectoryEngine:
    """Finds, creates and rewrites records in MFS directories"""

    def __init__(self, disk, bucket_map: BucketMap, logger: Optional[Logger] = None):
        self.disk = disk
        self.bucket_map = bucket_map
        self.logger = logger or Logger()

    @property
    def bucket_bytes(self) -> int:
        return self.bucket_map.bucket_size * self.disk.bytes_per_sector

    def _read_run(self, bucket: int, length: int) -> bytes:
        return self.disk.read(self.bucket_map.bucket_to_sector(bucket),
                              self.bucket_map.bucket_size * length)

    def _wipe_run(self, bucket: int, length: int):
        self.disk.write(b"\x00" * (self.bucket_bytes * length),
                        self.bucket_map.bucket_to_sector(bucket), True)

    def _iter_segments(self, directory_bucket: int) -> Iterator[Tuple[int, int, bytes]]:
        """Yield (bucket, length, contents) for each run of a directory"""
        for bucket, length in self.bucket_map.iter_runs(directory_bucket):
            yield bucket, length, self._read_run(bucket, length)

    def iter_records(self, directory_bucket: int) -> Iterator[Record]:
        """Yield every in-use record of a directory, in slot order"""
        for bucket, length, contents in self._iter_segments(directory_bucket):
            for offset in range(0, len(contents), RECORD_SIZE):
                record = Record.from_bytes(contents, offset, bucket, length)
                if record.in_use:
                    yield record

    def list_records(self, directory_bucket: int) -> List[Record]:
        return list(self.iter_records(directory_bucket))

    def find_record(self, directory_bucket: int, name: str) -> Optional[Record]:
        """First in-use record called name, or None"""
        for record in self.iter_records(directory_bucket):
            if record.name == name:
                return record
        return None

    def update_record(self, record: Record):
        """Rewrite the record's slot inside its directory run"""
        self.logger.debug(f"Updating record {record.name} (bucket {record.directory_bucket}, "
                          f"slot {record.directory_index})")
        contents = bytearray(self._read_run(record.directory_bucket, record.directory_length))
        record.encode_into(contents, record.directory_index * RECORD_SIZE)
        self.disk.write(bytes(contents), self.bucket_map.bucket_to_sector(record.directory_bucket), True)

    def _initiate_directory(self, record: Record):
        """Give a new directory record its own wiped bucket chain"""
        bucket, length = self.bucket_map.allocate_buckets(EXPAND_SIZE)
        for run_bucket, run_length in self.bucket_map.iter_runs(bucket):
            self._wipe_run(run_bucket, run_length)
        record.bucket = bucket
        record.bucket_length = length

    def _expand_directory(self, last_bucket: int) -> int:
        """Link a wiped expansion block after last_bucket and return its first bucket"""
        bucket, _ = self.bucket_map.allocate_buckets(EXPAND_SIZE)
        self.bucket_map.set_next_bucket(last_bucket, bucket)
        for run_bucket, run_length in self.bucket_map.iter_runs(bucket):
            self._wipe_run(run_bucket, run_length)
        self.logger.debug(f"Expanded directory at bucket {last_bucket} with {EXPAND_SIZE} buckets at {bucket}")
        return bucket

    def create_record(self, directory_bucket: int, name: str, flags: RecordFlags) -> Record:
        """Claim the first free slot of a directory, growing it when full"""
        self.logger.debug(f"Creating record {name} in directory bucket {directory_bucket}")
        current = directory_bucket
        while True:
            length, link = self.bucket_map.get_bucket_length_and_link(current)
            contents = self._read_run(current, length)
            for offset in range(0, len(contents), RECORD_SIZE):
                record = Record.from_bytes(contents, offset, current, length)
                if record.in_use:
                    continue

                record.name = name
                record.flags = flags | RecordFlags.IN_USE
                record.bucket = END_OF_CHAIN
                record.bucket_length = 0
                record.size = 0
                record.allocated_size = 0
                if flags & RecordFlags.DIRECTORY:
                    self._initiate_directory(record)
                self.update_record(record)
                return record

            current = self._expand_directory(current) if link == END_OF_CHAIN else link

    def root_record(self, root_bucket: int) -> Record:
        """Synthetic record for the root directory, which has no slot"""
        length, _ = self.bucket_map.get_bucket_length_and_link(root_bucket)
        return Record(
            name=ROOT_RECORD_NAME,
            flags=RecordFlags.DIRECTORY | RecordFlags.SYSTEM,
            bucket=root_bucket,
            bucket_length=length,
        )

    def create_path(self, root_bucket: int, path: str, flags: RecordFlags) -> Optional[Record]:
        """
        Resolve path from the root, creating missing components. Intermediate
        components become directories; the last one gets flags. Returns None
        when a component in the middle of the path is not a directory.
        """
        tokens = split_path(path)
        if not tokens:
            return self.root_record(root_bucket)

        directory = root_bucket
        for index, token in enumerate(tokens):
            is_last = index == len(tokens) - 1
            record = self.find_record(directory, token)
            if record is None:
                record = self.create_record(directory, token, flags if is_last else RecordFlags.DIRECTORY)

            if is_last:
                return record
            if not record.is_directory:
                self.logger.error(f"Record {token} in path {safe_path(path)} is not a directory")
                return None
            directory = record.bucket
        return None

    def find_path(self, root_bucket: int, path: str) -> Optional[Record]:
        """Resolve an existing path; the empty path is the root directory"""
        tokens = split_path(path)
        if not tokens:
            return self.root_record(root_bucket)

        directory = root_bucket
        record = None
        for index, token in enumerate(tokens):
            record = self.find_record(directory, token)
            if record is None:
                self.logger.debug(f"No record {token} in path {safe_path(path)}")
                return None
            if index < len(tokens) - 1:
                if not record.is_directory:
                    self.logger.error(f"Record {token} in path {safe_path(path)} is not a directory")
                    return None
                directory = record.bucket
        return record
