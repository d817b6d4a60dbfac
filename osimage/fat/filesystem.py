"""
fat/filesystem.py
FAT32 Filesystem
Formats a FAT32 partition on a staging device, installs files into it and
copies the finished volume onto the disk when closed
"""

import os
import uuid
from typing import Iterator, List, Optional, Tuple

from osimage.boot.bootloader import (
    BootloaderError, FAT_PRESERVED_RANGE, install_bootloaders, stage2_sector_count
)
from osimage.disk.virtual_disk import DiskError, TemporaryDisk
from osimage.fat.boot_sector import FatBootSector
from osimage.fat.directory_entry import (
    DELETED_MARKER, END_MARKER, ENTRY_SIZE, LFN_LAST_ENTRY, LFN_SEQUENCE_MASK, DirectoryEntry,
    join_long_name, lfn_checksum, parse_long_name_entry
)
from osimage.fat.fat_manager import FATManager, FatFullError
from osimage.fs.interface import FileFlags, FileSystem, FileSystemAttributes, FileSystemKind
from osimage.mfs.directory import safe_path, split_path
from osimage.utils.logger import Logger


COPY_CHUNK_SECTORS = 2048

# FAT32 needs at least this many clusters to be recognized as FAT32
MIN_FAT32_CLUSTERS = 65525

_STORAGE_ERRORS = (DiskError, FatFullError, BootloaderError, ValueError)


class PathConflictError(Exception):
    """Raised when a path component exists with the wrong type"""
    pass


class FatFileSystem(FileSystem):
    """FAT32 partition staged in a temporary file until close()"""

    kind = FileSystemKind.FAT

    def __init__(self, name: str, type_guid: Optional[uuid.UUID] = None,
                 attributes: FileSystemAttributes = FileSystemAttributes.NONE,
                 logger: Optional[Logger] = None):
        super().__init__(name, type_guid, attributes, logger)
        self.stage2_sectors = 0
        self.boot_sector = None
        self.fat = None
        self.staging = None

    def initialize(self, disk, start_sector: int, sector_count: int,
                   vbr_image: Optional[str] = None, reserved_image: Optional[str] = None):
        """Bind the partition and reserve room for the stage-2 image"""
        self.disk = disk
        self._sector = start_sector
        self._sector_count = sector_count
        self._vbr_image = vbr_image
        self._reserved_image = reserved_image

        self.stage2_sectors = 0
        if self.is_bootable and reserved_image:
            self.stage2_sectors = stage2_sector_count(reserved_image, disk.bytes_per_sector)

    @property
    def cluster_bytes(self) -> int:
        return self.boot_sector.get_cluster_size_bytes()

    def format(self) -> bool:
        """Write boot sector, FSInfo, both FATs and an empty root to the staging device"""
        if self.disk is None:
            self.logger.error("Format - filesystem has not been initialized with a disk")
            return False

        if self.is_bootable and not (self._vbr_image and os.path.isfile(self._vbr_image)):
            self.logger.error(f"Format - bootloader {self._vbr_image} is missing, cannot format partition")
            return False

        try:
            with self.logger.performance(f"format of FAT partition '{self.name}'"):
                geometry = self.disk.geometry
                self.staging = TemporaryDisk(self._sector_count, geometry, self.logger)
                self.staging.create()

                self.boot_sector = FatBootSector(
                    total_sectors=self._sector_count,
                    bytes_per_sector=geometry.bytes_per_sector,
                    hidden_sectors=self._sector,
                    sectors_per_track=geometry.sectors_per_track,
                    num_heads=geometry.heads_per_cylinder,
                    volume_label=self.name,
                    stage2_sectors=self.stage2_sectors,
                )
                bs = self.boot_sector
                self.logger.info(f"Format - {bs.get_total_clusters()} clusters of {self.cluster_bytes} bytes, "
                                 f"reserved sectors {bs.reserved_sectors}")
                if bs.get_total_clusters() < MIN_FAT32_CLUSTERS:
                    self.logger.warning(f"Format - partition '{self.name}' has fewer clusters than "
                                        f"FAT32 requires ({MIN_FAT32_CLUSTERS})")

                boot_sector = bs.build()
                self.staging.write(boot_sector, 0)
                self.staging.write(boot_sector, bs.backup_boot_sector)

                self.fat = FATManager(self.staging, bs, self.logger.child("fat"))
                self._write_fsinfo()
                self.fat.save_to_disk()

                root = bytearray(self.cluster_bytes)
                root[0:ENTRY_SIZE] = DirectoryEntry.volume_label(bs.volume_label).to_bytes()
                self._write_cluster(bs.root_cluster, bytes(root))
            return True

        except _STORAGE_ERRORS as e:
            self.logger.error(f"Failed to format partition '{self.name}': {str(e)}")
            return False

    def _write_fsinfo(self):
        fsinfo = self.boot_sector.generate_fsinfo_sector(
            self.fat.get_free_clusters(), self.fat.next_free_cluster)
        self.staging.write(fsinfo, self.boot_sector.fsinfo_sector)

    def _ready(self, operation: str) -> bool:
        if self.fat is None:
            self.logger.error(f"Cannot {operation}: partition '{self.name}' is not formatted")
            return False
        if self.closed:
            self.logger.error(f"Cannot {operation}: partition '{self.name}' is closed")
            return False
        return True

    def _read_cluster(self, cluster: int) -> bytes:
        return self.staging.read(self.boot_sector.cluster_to_sector(cluster),
                                 self.boot_sector.sectors_per_cluster)

    def _write_cluster(self, cluster: int, data: bytes):
        """Write data to a cluster, padding to full cluster size."""
        self.staging.write(data.ljust(self.cluster_bytes, b'\x00'),
                           self.boot_sector.cluster_to_sector(cluster), False)

    def _iter_entries(self, dir_cluster: int) -> Iterator[Tuple[int, int, DirectoryEntry]]:
        """Yield (cluster, offset, entry) for every live short-name entry, long names attached"""
        fragments = {}
        checksum = None
        for cluster in self.fat.get_cluster_chain(dir_cluster):
            data = self._read_cluster(cluster)
            for offset in range(0, len(data), ENTRY_SIZE):
                if data[offset] == END_MARKER:
                    return
                if data[offset] == DELETED_MARKER:
                    fragments = {}
                    continue
                if data[offset + 11] == DirectoryEntry.ATTR_LONG_NAME:
                    sequence, entry_checksum, units = parse_long_name_entry(data, offset)
                    if sequence & LFN_LAST_ENTRY:
                        fragments, checksum = {}, entry_checksum
                    if entry_checksum == checksum:
                        fragments[sequence & LFN_SEQUENCE_MASK] = units
                    continue

                entry = DirectoryEntry.from_bytes(data, offset)
                if fragments and checksum == lfn_checksum(data[offset:offset + 11]):
                    entry.long_name = join_long_name(fragments)
                fragments = {}
                if entry.is_volume_label:
                    continue
                yield cluster, offset, entry

    def _find_entry(self, dir_cluster: int, filename: str) -> Optional[DirectoryEntry]:
        for _, _, entry in self._iter_entries(dir_cluster):
            if not entry.is_dot_entry and entry.matches(filename):
                return entry
        return None

    def _new_entry(self, dir_cluster: int, filename: str, attributes: int,
                   first_cluster: int = 0, file_size: int = 0) -> DirectoryEntry:
        """Entry for filename with a short name unique within the directory"""
        used = {(entry.name, entry.extension) for _, _, entry in self._iter_entries(dir_cluster)}
        return DirectoryEntry.for_name(filename, attributes, first_cluster, file_size, used)

    def _add_entry(self, dir_cluster: int, entry: DirectoryEntry):
        """Store entry in the first run of free slots long enough, growing the directory when needed"""
        slots = entry.to_entries()
        chain = self.fat.get_cluster_chain(dir_cluster)
        run = []
        for cluster in chain:
            data = self._read_cluster(cluster)
            for offset in range(0, len(data), ENTRY_SIZE):
                if data[offset] not in (END_MARKER, DELETED_MARKER):
                    run = []
                    continue
                run.append((cluster, offset))
                if len(run) == len(slots):
                    self._write_slots(run, slots)
                    return

        while len(run) < len(slots):
            cluster = self.fat.allocate_cluster_chain(1, after=chain[-1])[0]
            chain.append(cluster)
            self._write_cluster(cluster, b"")
            self.logger.debug(f"Expanded directory at cluster {dir_cluster} with cluster {cluster}")
            run += [(cluster, offset) for offset in range(0, self.cluster_bytes, ENTRY_SIZE)]
        self._write_slots(run[:len(slots)], slots)

    def _write_slots(self, locations: List[Tuple[int, int]], slots: List[bytes]):
        clusters = {}
        for (cluster, offset), slot in zip(locations, slots):
            if cluster not in clusters:
                clusters[cluster] = bytearray(self._read_cluster(cluster))
            clusters[cluster][offset:offset + ENTRY_SIZE] = slot
        for cluster, data in clusters.items():
            self._write_cluster(cluster, bytes(data))

    def _initialize_directory(self, dir_cluster: int, parent_cluster: int):
        """Initialize a new directory with . and .. entries"""
        data = bytearray(self.cluster_bytes)
        dot = DirectoryEntry('.', '', DirectoryEntry.ATTR_DIRECTORY, dir_cluster)
        dot.touch()
        # '..' of a top-level directory points at cluster 0
        parent = 0 if parent_cluster == self.boot_sector.root_cluster else parent_cluster
        dotdot = DirectoryEntry('..', '', DirectoryEntry.ATTR_DIRECTORY, parent)
        dotdot.touch()
        data[0:ENTRY_SIZE] = dot.to_bytes()
        data[ENTRY_SIZE:2 * ENTRY_SIZE] = dotdot.to_bytes()
        self._write_cluster(dir_cluster, bytes(data))

    @staticmethod
    def _attributes_for(flags: FileFlags) -> int:
        attributes = DirectoryEntry.ATTR_DIRECTORY if flags & FileFlags.DIRECTORY else DirectoryEntry.ATTR_ARCHIVE
        if flags & FileFlags.SYSTEM:
            attributes |= DirectoryEntry.ATTR_SYSTEM
        return attributes

    def _make_directory(self, parent_cluster: int, token: str, flags: FileFlags) -> int:
        cluster = self.fat.allocate_cluster_chain(1)[0]
        self._initialize_directory(cluster, parent_cluster)
        self._add_entry(parent_cluster, self._new_entry(
            parent_cluster, token, self._attributes_for(flags | FileFlags.DIRECTORY), cluster))
        self.logger.debug(f"Created directory {token} at cluster {cluster}")
        return cluster

    def _ensure_directory(self, tokens: List[str], flags: FileFlags = FileFlags.NONE) -> int:
        """Cluster of the directory at tokens, creating missing components"""
        cluster = self.boot_sector.root_cluster
        for token in tokens:
            entry = self._find_entry(cluster, token)
            if entry is None:
                cluster = self._make_directory(cluster, token, flags)
            elif entry.is_directory:
                cluster = entry.first_cluster
            else:
                raise PathConflictError(f"{token} exists and is not a directory")
        return cluster

    def _resolve(self, path: str) -> Optional[DirectoryEntry]:
        """Entry at path, a synthetic root entry for '/', or None"""
        tokens = split_path(path)
        root = DirectoryEntry('/', '', DirectoryEntry.ATTR_DIRECTORY, self.boot_sector.root_cluster)
        entry = root
        for token in tokens:
            if not entry.is_directory:
                return None
            entry = self._find_entry(entry.first_cluster or root.first_cluster, token)
            if entry is None:
                return None
        return entry

    def create_directory(self, path: str, flags: FileFlags = FileFlags.NONE) -> bool:
        """Create a directory and any missing parents"""
        if not self._ready(f"create {path}"):
            return False
        try:
            self._ensure_directory(split_path(path), flags)
            return True
        except (PathConflictError, *_STORAGE_ERRORS) as e:
            self.logger.error(f"Failed to create directory /{safe_path(path)}: {str(e)}")
            return False

    def create_file(self, path: str, flags: FileFlags = FileFlags.NONE,
                    data: Optional[bytes] = None) -> bool:
        """Create a new file (and its parents) holding data"""
        if flags & FileFlags.DIRECTORY:
            return self.create_directory(path, flags)
        if not self._ready(f"create {path}"):
            return False

        tokens = split_path(path)
        if not tokens:
            self.logger.error("Cannot create a file without a name")
            return False

        try:
            parent = self._ensure_directory(tokens[:-1])
            if self._find_entry(parent, tokens[-1]) is not None:
                self.logger.error(f"/{safe_path(path)} already exists")
                return False

            data = data or b""
            cluster_count = (len(data) + self.cluster_bytes - 1) // self.cluster_bytes
            chain = self.fat.allocate_cluster_chain(cluster_count)
            for index, cluster in enumerate(chain):
                self._write_cluster(cluster, data[index * self.cluster_bytes:(index + 1) * self.cluster_bytes])

            self._add_entry(parent, self._new_entry(
                parent, tokens[-1], self._attributes_for(flags), chain[0] if chain else 0, len(data)))
            self.logger.debug(f"Created /{safe_path(path)} ({len(data)} bytes, {cluster_count} clusters)")
            return True

        except (PathConflictError, *_STORAGE_ERRORS) as e:
            self.logger.error(f"Failed to create /{safe_path(path)}: {str(e)}")
            return False

    def get_directory_entries(self, path: str = "/") -> Optional[List[DirectoryEntry]]:
        """Entries of the directory at path without '.' and '..'"""
        if not self._ready(f"list {path}"):
            return None
        entry = self._resolve(path)
        if entry is None or not entry.is_directory:
            self.logger.error(f"{path} is not a directory")
            return None
        cluster = entry.first_cluster or self.boot_sector.root_cluster
        return [e for _, _, e in self._iter_entries(cluster) if not e.is_dot_entry]

    def list_directory(self, path: str = "/") -> bool:
        """Log the entries of the directory at path"""
        entries = self.get_directory_entries(path)
        if entries is None:
            return False
        for entry in entries:
            kind = "directory" if entry.is_directory else "file"
            self.logger.info(f"{entry.display_name} ({kind})")
        return True

    def read_file(self, path: str) -> Optional[bytes]:
        """Contents of the file at path, or None"""
        if not self._ready(f"read {path}"):
            return None
        entry = self._resolve(path)
        if entry is None or entry.is_directory:
            return None
        if entry.file_size == 0:
            return b""
        content = bytearray()
        for cluster in self.fat.get_cluster_chain(entry.first_cluster):
            content += self._read_cluster(cluster)
        return bytes(content[:entry.file_size])

    def _copy_to_disk(self):
        """Copy the staged volume onto the partition"""
        copied = 0
        while copied < self._sector_count:
            count = min(COPY_CHUNK_SECTORS, self._sector_count - copied)
            self.disk.write(self.staging.read(copied, count), self._sector + copied, False)
            copied += count
        self.disk.write(self.staging.read(0, 1), self._sector, True)

    def _flush(self):
        if self.staging is None:
            return
        try:
            self.fat.save_to_disk()
            self._write_fsinfo()
            self.logger.info(f"Writing FAT partition '{self.name}' to disk at sector {self._sector}")
            self._copy_to_disk()

            if self.is_bootable:
                install_bootloaders(self.disk, self._sector, self._vbr_image, self._reserved_image,
                                    preserve=FAT_PRESERVED_RANGE, mark_bootable=False,
                                    logger=self.logger)
        except (DiskError, BootloaderError) as e:
            self.logger.error(f"Failed to write partition '{self.name}': {str(e)}")
            raise
        finally:
            self.staging.close()

    def info(self) -> dict:
        info = super().info()
        if self.boot_sector is not None:
            info['reserved_sectors'] = self.boot_sector.reserved_sectors
            info['sectors_per_cluster'] = self.boot_sector.sectors_per_cluster
            info['sectors_per_fat'] = self.boot_sector.sectors_per_fat
        if self.fat is not None:
            info.update(self.fat.get_statistics())
        return info
