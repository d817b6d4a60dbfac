"""
mfs/filesystem.py
MFS Filesystem
Formats an MFS partition and installs files and directories into it
"""

import os
import uuid
from typing import List, Optional

from osimage.boot.boot_sector import VolumeBootRecord
from osimage.boot.bootloader import (
    BootloaderError, MFS_PRESERVED_RANGE, install_bootloaders, stage2_sector_count
)
from osimage.boot.master_record import (
    MasterRecord, MasterRecordError, PartitionFlags, partition_flags_for
)
from osimage.disk.virtual_disk import DiskError
from osimage.fs.interface import FileFlags, FileSystem, FileSystemAttributes, FileSystemKind
from osimage.mfs.bucket_map import BucketMap, BucketMapError, determine_bucket_size
from osimage.mfs.content import FileContentStore
from osimage.mfs.directory import DirectoryEngine, EXPAND_SIZE, safe_path
from osimage.mfs.records import Record, RecordFlags
from osimage.utils.logger import Logger


ROOT_BUCKETS = EXPAND_SIZE
JOURNAL_BUCKETS = 8
BAD_BUCKET_LIST_BUCKETS = 1

_STORAGE_ERRORS = (DiskError, BucketMapError, BootloaderError, ValueError)


def record_flags_for(flags: FileFlags) -> RecordFlags:
    """Map caller file flags onto on-disk record flags"""
    record_flags = RecordFlags.NONE
    if flags & FileFlags.DIRECTORY:
        record_flags |= RecordFlags.DIRECTORY
    if flags & FileFlags.SYSTEM:
        record_flags |= RecordFlags.SYSTEM
    return record_flags


class MfsFileSystem(FileSystem):
    """MFS partition: bucket map, master record, VBR and the directory tree"""

    kind = FileSystemKind.MFS

    def __init__(self, name: str, type_guid: Optional[uuid.UUID] = None,
                 attributes: FileSystemAttributes = FileSystemAttributes.NONE,
                 logger: Optional[Logger] = None):
        super().__init__(name, type_guid, attributes, logger)
        self.partition_flags = partition_flags_for(
            self.type_guid, hidden=bool(attributes & FileSystemAttributes.HIDDEN))
        self.reserved_sectors = 0
        self.bucket_size = 0
        self.bucket_map = None
        self.directories = None
        self.content = None
        self.root_bucket = None
        self.master_record_sector = None
        self.mirror_record_sector = None

    def initialize(self, disk, start_sector: int, sector_count: int,
                   vbr_image: Optional[str] = None, reserved_image: Optional[str] = None):
        """Bind the partition and size the reserved area (VBR plus stage-2 image)"""
        self.disk = disk
        self._sector = start_sector
        self._sector_count = sector_count
        self._vbr_image = vbr_image
        self._reserved_image = reserved_image

        self.reserved_sectors = 1
        if self.is_bootable and reserved_image:
            self.reserved_sectors += stage2_sector_count(reserved_image, disk.bytes_per_sector)

    @classmethod
    def open(cls, disk, start_sector: int, type_guid: Optional[uuid.UUID] = None,
             logger: Optional[Logger] = None) -> "MfsFileSystem":
        """Mount an existing MFS partition from its VBR and master record"""
        vbr = VolumeBootRecord.from_disk(disk, start_sector)
        master = MasterRecord.from_bytes(disk.read(start_sector + vbr.master_record_sector, 1))

        attributes = FileSystemAttributes.NONE
        if vbr.bootable:
            attributes |= FileSystemAttributes.BOOT
        if master.flags & PartitionFlags.HIDDEN_DRIVE:
            attributes |= FileSystemAttributes.HIDDEN

        filesystem = cls(master.name, type_guid, attributes, logger)
        filesystem.disk = disk
        filesystem._sector = start_sector
        filesystem._sector_count = vbr.sector_count
        filesystem.partition_flags = master.flags
        filesystem.reserved_sectors = vbr.reserved_sectors
        filesystem.bucket_size = vbr.bucket_size

        bucket_map = BucketMap(disk, start_sector + vbr.reserved_sectors,
                               vbr.sector_count - vbr.reserved_sectors, vbr.bucket_size,
                               filesystem.logger.child("bucket_map"))
        bucket_map.open(start_sector + master.map_sector_offset, master.free_bucket)
        filesystem._attach(bucket_map, master.root_bucket,
                           start_sector + vbr.master_record_sector,
                           start_sector + vbr.mirror_record_sector)
        filesystem.logger.info(f"Opened MFS partition '{master.name}' at sector {start_sector}")
        return filesystem

    def _attach(self, bucket_map: BucketMap, root_bucket: int,
                master_record_sector: int, mirror_record_sector: int):
        self.bucket_map = bucket_map
        self.root_bucket = root_bucket
        self.master_record_sector = master_record_sector
        self.mirror_record_sector = mirror_record_sector
        self.directories = DirectoryEngine(self.disk, bucket_map, self.logger.child("directory"))
        self.content = FileContentStore(self.disk, bucket_map, self.logger.child("content"))

    def _wipe_chain(self, bucket: int):
        bucket_bytes = self.bucket_size * self.disk.bytes_per_sector
        for run_bucket, run_length in self.bucket_map.iter_runs(bucket):
            self.disk.write(b"\x00" * (bucket_bytes * run_length),
                            self.bucket_map.bucket_to_sector(run_bucket), True)

    def _write_master_records(self, record: MasterRecord):
        sector = record.to_sector(self.disk.bytes_per_sector)
        self.disk.write(sector, self.master_record_sector, True)
        self.disk.write(sector, self.mirror_record_sector, True)

    def format(self) -> bool:
        """Create the bucket map, system regions, master records and VBR"""
        if self.disk is None:
            self.logger.error("Format - filesystem has not been initialized with a disk")
            return False

        if self.is_bootable and not (self._vbr_image and os.path.isfile(self._vbr_image)):
            self.logger.error(f"Format - bootloader {self._vbr_image} is missing, cannot format partition")
            return False

        bytes_per_sector = self.disk.bytes_per_sector
        partition_bytes = self._sector_count * bytes_per_sector
        self.logger.info(f"Format - size of partition {partition_bytes} bytes")

        try:
            with self.logger.performance(f"format of MFS partition '{self.name}'"):
                self.bucket_size = determine_bucket_size(partition_bytes)
                master_offset = self.reserved_sectors

                # Round the reserved area up to whole buckets
                self.reserved_sectors = (((self.reserved_sectors + 1) // self.bucket_size) + 1) * self.bucket_size
                self.logger.info(f"Format - bucket size {self.bucket_size}, reserved sectors {self.reserved_sectors}")

                bucket_map = BucketMap(self.disk, self._sector + self.reserved_sectors,
                                       self._sector_count - self.reserved_sectors,
                                       self.bucket_size, self.logger.child("bucket_map"))
                if not bucket_map.create():
                    return False

                master_sector = self._sector + master_offset
                mirror_sector = bucket_map.map_start_sector - 1
                self.logger.debug(f"Format - master record at {master_sector}, mirror at {mirror_sector}")

                root_bucket, _ = bucket_map.allocate_buckets(ROOT_BUCKETS)
                journal_bucket, _ = bucket_map.allocate_buckets(JOURNAL_BUCKETS)
                bad_bucket, _ = bucket_map.allocate_buckets(BAD_BUCKET_LIST_BUCKETS)
                self.logger.debug(f"Format - free bucket pointer after setup: {bucket_map.next_free_bucket}")

                self._attach(bucket_map, root_bucket, master_sector, mirror_sector)
                for bucket in (bad_bucket, root_bucket, journal_bucket):
                    self._wipe_chain(bucket)

                self.logger.info("Format - installing master records")
                self._write_master_records(MasterRecord(
                    name=self.name,
                    flags=self.partition_flags,
                    free_bucket=bucket_map.next_free_bucket,
                    root_bucket=root_bucket,
                    bad_bucket=bad_bucket,
                    journal_bucket=journal_bucket,
                    map_sector_offset=bucket_map.map_start_sector - self._sector,
                    map_size=bucket_map.get_size_of_map(),
                ))

                self.logger.info("Format - installing VBR")
                vbr = VolumeBootRecord(
                    bytes_per_sector=bytes_per_sector,
                    sectors_per_track=self.disk.geometry.sectors_per_track,
                    heads_per_cylinder=self.disk.geometry.heads_per_cylinder,
                    sector_count=self._sector_count,
                    reserved_sectors=self.reserved_sectors,
                    bucket_size=self.bucket_size,
                    master_record_sector=master_sector - self._sector,
                    mirror_record_sector=mirror_sector - self._sector,
                    bootable=self.is_bootable,
                )
                self.disk.write(vbr.build(), self._sector, True)

                if self.is_bootable:
                    install_bootloaders(self.disk, self._sector, self._vbr_image, self._reserved_image,
                                        preserve=MFS_PRESERVED_RANGE, mark_bootable=True,
                                        logger=self.logger)
            return True

        except _STORAGE_ERRORS as e:
            self.logger.error(f"Failed to format partition '{self.name}': {str(e)}")
            return False

    def _ready(self, operation: str) -> bool:
        if self.directories is None:
            self.logger.error(f"Cannot {operation}: partition '{self.name}' is not formatted or opened")
            return False
        if self.closed:
            self.logger.error(f"Cannot {operation}: partition '{self.name}' is closed")
            return False
        return True

    def find_path(self, path: str) -> Optional[Record]:
        """Record at path, the synthetic root for '/', or None"""
        if not self._ready("find path"):
            return None
        return self.directories.find_path(self.root_bucket, path)

    def get_directory_entries(self, path: str = "/") -> Optional[List[Record]]:
        """Records of the directory at path, or None when it is not a directory"""
        record = self.find_path(path)
        if record is None:
            return None
        if not record.is_directory:
            self.logger.error(f"{path} is not a directory")
            return None
        return self.directories.list_records(record.bucket)

    def list_directory(self, path: str = "/") -> bool:
        """Log the entries of the directory at path"""
        try:
            entries = self.get_directory_entries(path)
        except _STORAGE_ERRORS as e:
            self.logger.error(f"Failed to list {path}: {str(e)}")
            return False
        if entries is None:
            return False

        for record in entries:
            kind = "directory" if record.is_directory else "file"
            self.logger.info(f"{record.name} ({kind})")
        return True

    def create_file(self, path: str, flags: FileFlags = FileFlags.NONE,
                    data: Optional[bytes] = None) -> bool:
        """Create the record at path (and its parents) and store data in it"""
        if not self._ready(f"create {path}"):
            return False

        try:
            record = self.directories.find_path(self.root_bucket, path)
            if record is None:
                kind = "directory" if flags & FileFlags.DIRECTORY else "file"
                self.logger.info(f"/{safe_path(path)} is a new {kind}")
                record = self.directories.create_path(self.root_bucket, path, record_flags_for(flags))
                if record is None:
                    self.logger.error(f"Failed to create /{safe_path(path)}")
                    return False
            elif record.is_directory != bool(flags & FileFlags.DIRECTORY):
                existing = "directory" if record.is_directory else "file"
                self.logger.error(f"/{safe_path(path)} already exists as a {existing}")
                return False

            if data is not None:
                if record.is_directory:
                    self.logger.error(f"/{safe_path(path)} is a directory, cannot write file contents")
                    return False
                self.content.ensure_bucket_space(record, len(data))
                self.content.fill_bucket_chain(record.bucket, record.bucket_length, data)
                record.size = len(data)
                self.directories.update_record(record)
            return True

        except _STORAGE_ERRORS as e:
            self.logger.error(f"Failed to create /{safe_path(path)}: {str(e)}")
            return False

    def create_directory(self, path: str, flags: FileFlags = FileFlags.NONE) -> bool:
        return self.create_file(path, flags | FileFlags.DIRECTORY, None)

    def read_file(self, path: str) -> Optional[bytes]:
        """Contents of the file at path, or None"""
        try:
            record = self.find_path(path)
            if record is None or record.is_directory:
                return None
            if record.size == 0 or not record.has_buckets:
                return b""
            return self.content.read_bucket_chain(record.bucket, record.bucket_length, record.size)
        except _STORAGE_ERRORS as e:
            self.logger.error(f"Failed to read /{safe_path(path)}: {str(e)}")
            return None

    def save_next_available_bucket(self):
        """Store the allocation cursor in both master record copies"""
        master = MasterRecord.from_bytes(self.disk.read(self.master_record_sector, 1))
        master.free_bucket = self.bucket_map.next_free_bucket
        self._write_master_records(master)
        self.logger.debug(f"Saved next free bucket {master.free_bucket}")

    def _flush(self):
        if self.bucket_map is None:
            return
        try:
            self.save_next_available_bucket()
        except (DiskError, MasterRecordError) as e:
            self.logger.error(f"Failed to save free bucket pointer for '{self.name}': {str(e)}")
            raise

    def info(self) -> dict:
        info = super().info()
        info['partition_flags'] = int(self.partition_flags)
        info['reserved_sectors'] = self.reserved_sectors
        if self.bucket_map is not None:
            info.update(self.bucket_map.get_statistics())
        return info
