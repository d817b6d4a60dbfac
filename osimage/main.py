#!/usr/bin/env python3
"""
OS Disk Image Builder
Main entry point for creating bootable disk images and editing MFS partitions
"""

import argparse
import os
import posixpath
import sys
import uuid
from contextlib import contextmanager
from typing import List, Optional

from osimage.disk.mbr import MbrScheme, PartitionTableError
from osimage.disk.virtual_disk import DiskError, Geometry, open_disk, sectors_from_megabytes
from osimage.fs.factory import create_filesystem
from osimage.fs.interface import FileFlags, FileSystem, FileSystemAttributes, FileSystemError, FileSystemKind
from osimage.boot.boot_sector import BootSectorError, VolumeBootRecord
from osimage.boot.bootloader import BootloaderError
from osimage.boot.master_record import MasterRecordError
from osimage.fat.boot_sector import FatBootSector
from osimage.mfs.bucket_map import BucketMapError
from osimage.utils.config import Config, ConfigError
from osimage.utils.logger import Logger, setup_logging
from osimage.utils.project import ProjectConfiguration, ProjectError, ProjectPartition, ProjectSource


_BUILD_ERRORS = (DiskError, PartitionTableError, BootloaderError, BootSectorError, MasterRecordError,
                 BucketMapError, FileSystemError, ProjectError, OSError, ValueError)


class InstallError(Exception):
    """Raised when a host file or directory cannot be installed into a partition"""
    pass


def parse_source_mapping(mapping: str, source_type: str) -> ProjectSource:
    """SRC:TARGET command-line mapping to a ProjectSource"""
    if ':' not in mapping:
        raise ValueError(f"Expected SRC:TARGET, got '{mapping}'")
    source, target = mapping.rsplit(':', 1)
    return ProjectSource(source_type, source, target)


class ImageBuilder:
    """Builds disk images and edits the partitions inside them"""

    def __init__(self, config: Optional[Config] = None, logger: Optional[Logger] = None):
        self.config = config or Config()
        self.logger = logger or Logger()
        disk_section = self.config.get_section('disk')
        self.geometry = Geometry(
            bytes_per_sector=disk_section.get('bytes_per_sector', 512),
            sectors_per_track=disk_section.get('sectors_per_track', 63),
            heads_per_cylinder=disk_section.get('heads_per_cylinder', 255),
        )
        self.minimum_size_mb = disk_section.get('minimum_size_mb', 64)

    # Installation of host sources

    def install_file(self, filesystem: FileSystem, source_path: str, target: str):
        """Copy a host file into the partition, creating its parent directory"""
        self.logger.info(f"Installing file: {source_path}")
        if not os.path.isfile(source_path):
            raise InstallError(f"Source is not a file: {source_path}")

        with open(source_path, 'rb') as f:
            data = f.read()

        target = target.lstrip('/')
        parent = posixpath.dirname(target)
        if parent and not filesystem.create_directory(parent):
            raise InstallError(f"Failed to create directory: {parent}")
        if not filesystem.create_file(target, FileFlags.NONE, data):
            raise InstallError(f"Failed to write file: {target}")

    def install_directory(self, filesystem: FileSystem, source_path: str, target: str):
        """Copy a host directory tree into the partition under target"""
        self.logger.info(f"Installing directory: {source_path}")
        if not os.path.isdir(source_path):
            raise InstallError(f"Source is not a directory: {source_path}")

        target = target.strip('/')
        if target and not filesystem.create_directory(target):
            raise InstallError(f"Failed to create directory: {target}")

        # Directory structure first, then the files
        tree = sorted(os.walk(source_path))
        for root, directories, _ in tree:
            for directory in sorted(directories):
                relative = os.path.relpath(os.path.join(root, directory), source_path).replace(os.sep, '/')
                target_path = posixpath.join(target, relative)
                self.logger.debug(f"Creating: {target_path}")
                if not filesystem.create_directory(target_path):
                    raise InstallError(f"Failed to create directory: {target_path}")

        for root, _, files in tree:
            for name in sorted(files):
                host_path = os.path.join(root, name)
                relative = os.path.relpath(host_path, source_path).replace(os.sep, '/')
                target_path = posixpath.join(target, relative)
                self.logger.debug(f"Installing file: {target_path}")
                with open(host_path, 'rb') as f:
                    data = f.read()
                if not filesystem.create_file(target_path, FileFlags.NONE, data):
                    raise InstallError(f"Failed to install file: {host_path}")

    def install_source(self, filesystem: FileSystem, source: ProjectSource):
        if source.is_directory:
            self.install_directory(filesystem, source.path, source.target)
        else:
            self.install_file(filesystem, source.path, source.target)

    # Image creation

    def _new_filesystem(self, partition: ProjectPartition) -> FileSystem:
        attributes = FileSystemAttributes.from_names(partition.attributes)
        if attributes & FileSystemAttributes.BOOT and not partition.vbr_image:
            raise InstallError(f"No VBR image specified for boot partition '{partition.label}'")
        guid = uuid.UUID(partition.guid) if partition.guid else None
        return create_filesystem(FileSystemKind.from_name(partition.type), partition.label,
                                 guid, attributes, self.logger)

    def _create_image(self, filename: str, size_mb: int, partitions: List[ProjectPartition]) -> bool:
        if size_mb < self.minimum_size_mb:
            self.logger.error(f"Disk size must be at least {self.minimum_size_mb}MB, got {size_mb}MB")
            return False

        sector_count = sectors_from_megabytes(size_mb, self.geometry.bytes_per_sector)
        self.logger.info(f"Disk will be sized at {size_mb}MB ({sector_count} sectors)")

        disk = None
        try:
            with self.logger.performance(f"build of {filename}"):
                disk = open_disk(filename, sector_count, self.geometry, self.logger, create=True)
                with MbrScheme(disk, self.logger) as scheme:
                    if not scheme.create():
                        return False

                    for index, partition in enumerate(partitions):
                        filesystem = self._new_filesystem(partition)
                        free = scheme.get_free_sector_count()
                        if free == 0:
                            self.logger.error(f"No free sectors left for partition {partition.label}")
                            return False

                        sectors = free
                        if partition.size_mb is not None:
                            sectors = sectors_from_megabytes(partition.size_mb, self.geometry.bytes_per_sector)
                            # Only the last partition may be shrunk to fit
                            if free < sectors and index != len(partitions) - 1:
                                self.logger.error(f"Not enough free space for partition {partition.label}")
                                return False

                        if not scheme.add_partition(filesystem, sectors, partition.vbr_image,
                                                    partition.reserved_sectors_image):
                            self.logger.error(f"Failed to create partition {partition.label}")
                            return False

                        for source in partition.sources:
                            self.install_source(filesystem, source)
            return True

        except (InstallError, *_BUILD_ERRORS) as e:
            self.logger.error(f"Failed to build {filename}: {str(e)}")
            return False
        finally:
            if disk is not None:
                disk.close()

    def create_disk(self, filename: str, size_mb: int, filesystem: str = "mfs", label: str = "System",
                    guid: Optional[str] = None, bootable: bool = False, vbr_image: Optional[str] = None,
                    stage2_image: Optional[str] = None, sources: Optional[List[ProjectSource]] = None) -> bool:
        """Create a disk with a single partition spanning the free space"""
        partition = ProjectPartition(
            label=label,
            type=filesystem,
            guid=guid,
            attributes=['boot'] if bootable else [],
            vbr_image=vbr_image,
            reserved_sectors_image=stage2_image,
            sources=list(sources or []),
        )
        return self._create_image(filename, size_mb, [partition])

    def build_project(self, project_file: str, filename: str) -> bool:
        """Create a disk from a JSON project description"""
        try:
            project = ProjectConfiguration.parse(project_file)
        except ProjectError as e:
            self.logger.error(str(e))
            return False

        for partition in project.partitions:
            partition.vbr_image = project.resolve(partition.vbr_image)
            partition.reserved_sectors_image = project.resolve(partition.reserved_sectors_image)
            for source in partition.sources:
                source.path = project.resolve(source.path)

        self.logger.info(f"Building {filename} from {project_file} ({len(project.partitions)} partitions)")
        return self._create_image(filename, project.size_mb, project.partitions)

    # Editing existing images

    @contextmanager
    def open_partition(self, filename: str, index: int = 0, write: bool = False):
        """Yield the filesystem of partition index; writes are flushed when write is set"""
        disk = open_disk(filename, geometry=self.geometry, logger=self.logger)
        scheme = MbrScheme(disk, self.logger)
        try:
            if not scheme.open():
                raise PartitionTableError(f"{filename} has no readable partition table")
            filesystems = scheme.get_filesystems()
            if index < 0 or index >= len(filesystems):
                raise PartitionTableError(f"Partition {index} does not exist "
                                          f"({len(filesystems)} editable partitions)")
            self.logger.debug(f"Selected filesystem: {filesystems[index].name}")
            yield filesystems[index]
            if write:
                scheme.close()
        finally:
            disk.close()

    def list_files(self, filename: str, path: str = "/", partition: int = 0) -> bool:
        """List the entries of a directory"""
        try:
            with self.open_partition(filename, partition) as filesystem:
                entries = filesystem.get_directory_entries(path)
                if entries is None:
                    return False

                print(f"\nDirectory listing for {path}:")
                print("-" * 60)
                print(f"{'Name':<40} {'Type':<6} {'Size':<10}")
                print("-" * 60)
                for record in entries:
                    entry_type = "DIR" if record.is_directory else "FILE"
                    size = "" if record.is_directory else str(record.size)
                    print(f"{record.name:<40} {entry_type:<6} {size:<10}")
                return True

        except _BUILD_ERRORS as e:
            self.logger.error(f"Failed to list files: {str(e)}")
            return False

    def create_file(self, filename: str, target: str, source_path: str, partition: int = 0) -> bool:
        """Copy a host file into an existing image"""
        try:
            with self.open_partition(filename, partition, write=True) as filesystem:
                self.install_file(filesystem, source_path, target)
            return True
        except (InstallError, *_BUILD_ERRORS) as e:
            self.logger.error(f"Failed to create file {target}: {str(e)}")
            return False

    def create_directory(self, filename: str, path: str, partition: int = 0) -> bool:
        """Create a directory in an existing image"""
        try:
            with self.open_partition(filename, partition, write=True) as filesystem:
                return filesystem.create_directory(path)
        except _BUILD_ERRORS as e:
            self.logger.error(f"Failed to create directory {path}: {str(e)}")
            return False

    def read_file(self, filename: str, path: str, partition: int = 0) -> Optional[bytes]:
        """Contents of a file in an existing image"""
        try:
            with self.open_partition(filename, partition) as filesystem:
                content = filesystem.read_file(path)
                if content is None:
                    self.logger.error(f"File not found: {path}")
                return content
        except _BUILD_ERRORS as e:
            self.logger.error(f"Failed to read file {path}: {str(e)}")
            return None

    def info(self, filename: str) -> bool:
        """Print the partition layout of an image"""
        try:
            disk = open_disk(filename, geometry=self.geometry, logger=self.logger)
            try:
                scheme = MbrScheme(disk, self.logger)
                if not scheme.open():
                    return False

                print(f"\n{'=' * 60}")
                print(f"IMAGE: {filename}")
                print(f"{'=' * 60}")
                print(f"  Kind: {disk.kind.name}")
                print(f"  Sectors: {disk.sector_count:,} ({disk.get_size() / (1024 * 1024):.1f} MB)")
                for index, entry in enumerate(scheme.entries):
                    print(f"\nPartition {index}: type 0x{entry.type_id:02X}, start {entry.start_sector}, "
                          f"{entry.sector_count} sectors{' (bootable)' if entry.bootable else ''}")
                    boot_sector = disk.read(entry.start_sector, 1)
                    if entry.type_id == FileSystemKind.MFS.type_id:
                        print(VolumeBootRecord.parse(boot_sector).info())
                    elif entry.type_id == FileSystemKind.FAT.type_id:
                        print(FatBootSector.parse(boot_sector).info())
                for filesystem in scheme.get_filesystems():
                    print(f"\nFilesystem '{filesystem.name}':")
                    for key, value in filesystem.info().items():
                        print(f"  {key}: {value}")
                return True
            finally:
                disk.close()
        except _BUILD_ERRORS as e:
            self.logger.error(f"Failed to read image info: {str(e)}")
            return False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='osimage', description='OS Disk Image Builder')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    parser.add_argument('--config', help='JSON configuration file')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Create disk command
    create_parser = subparsers.add_parser('create-disk', help='Create a disk image with one partition')
    create_parser.add_argument('filename', help='Disk image filename (.img or .vmdk)')
    create_parser.add_argument('--size', type=int, help='Disk size in MB')
    create_parser.add_argument('--fs', choices=['mfs', 'fat'], help='Partition filesystem')
    create_parser.add_argument('--label', help='Partition label')
    create_parser.add_argument('--guid', help='Partition type GUID')
    create_parser.add_argument('--bootable', action='store_true', help='Install bootloaders')
    create_parser.add_argument('--vbr', help='Stage-1 bootloader image')
    create_parser.add_argument('--stage2', help='Stage-2 bootloader image for the reserved sectors')
    create_parser.add_argument('--file', action='append', default=[], metavar='SRC:TARGET',
                               help='Install a host file')
    create_parser.add_argument('--dir', action='append', default=[], metavar='SRC:TARGET',
                               help='Install a host directory tree')

    # Build from project command
    build_parser_ = subparsers.add_parser('build', help='Build a disk image from a JSON project')
    build_parser_.add_argument('project', help='Project file')
    build_parser_.add_argument('filename', help='Disk image filename (.img or .vmdk)')

    # List command
    list_parser = subparsers.add_parser('list', help='List files and directories')
    list_parser.add_argument('disk', help='Disk image filename')
    list_parser.add_argument('--path', default='/', help='Directory path to list')
    list_parser.add_argument('--partition', type=int, default=0, help='Partition index')

    # Create file command
    create_file_parser = subparsers.add_parser('create-file', help='Copy a host file into the image')
    create_file_parser.add_argument('disk', help='Disk image filename')
    create_file_parser.add_argument('path', help='File path in the partition')
    create_file_parser.add_argument('source', help='Host file to copy')
    create_file_parser.add_argument('--partition', type=int, default=0, help='Partition index')

    # Create directory command
    create_dir_parser = subparsers.add_parser('create-dir', help='Create a directory')
    create_dir_parser.add_argument('disk', help='Disk image filename')
    create_dir_parser.add_argument('path', help='Directory path to create')
    create_dir_parser.add_argument('--partition', type=int, default=0, help='Partition index')

    # Read file command
    read_file_parser = subparsers.add_parser('read-file', help='Read a file')
    read_file_parser.add_argument('disk', help='Disk image filename')
    read_file_parser.add_argument('path', help='File path in the partition')
    read_file_parser.add_argument('--output', help='Write the contents to this host file')
    read_file_parser.add_argument('--partition', type=int, default=0, help='Partition index')

    # Info command
    info_parser = subparsers.add_parser('info', help='Show the partition layout')
    info_parser.add_argument('disk', help='Disk image filename')

    # Config file command
    init_config_parser = subparsers.add_parser('init-config', help='Write a configuration file')
    init_config_parser.add_argument('output', help='Configuration file to write')
    init_config_parser.add_argument('--set', action='append', default=[], metavar='SECTION.KEY=VALUE',
                                    help='Override a setting (repeatable)')

    return parser


def _run(args, builder: ImageBuilder, config: Config) -> int:
    if args.command == 'create-disk':
        try:
            sources = [parse_source_mapping(m, 'file') for m in args.file]
            sources += [parse_source_mapping(m, 'dir') for m in args.dir]
        except ValueError as e:
            builder.logger.error(str(e))
            return 1
        if args.bootable and not args.vbr:
            builder.logger.error("--bootable requires --vbr")
            return 1
        success = builder.create_disk(
            args.filename,
            args.size or config.get('disk', 'default_size_mb', 128),
            args.fs or config.get('partition', 'filesystem', 'mfs'),
            args.label or config.get('partition', 'label', 'System'),
            args.guid, args.bootable, args.vbr, args.stage2, sources)
        return 0 if success else 1

    elif args.command == 'build':
        return 0 if builder.build_project(args.project, args.filename) else 1

    elif args.command == 'list':
        return 0 if builder.list_files(args.disk, args.path, args.partition) else 1

    elif args.command == 'create-file':
        return 0 if builder.create_file(args.disk, args.path, args.source, args.partition) else 1

    elif args.command == 'create-dir':
        return 0 if builder.create_directory(args.disk, args.path, args.partition) else 1

    elif args.command == 'read-file':
        content = builder.read_file(args.disk, args.path, args.partition)
        if content is None:
            return 1
        if args.output:
            with open(args.output, 'wb') as f:
                f.write(content)
        else:
            sys.stdout.buffer.write(content)
            sys.stdout.flush()
        return 0

    elif args.command == 'info':
        return 0 if builder.info(args.disk) else 1

    elif args.command == 'init-config':
        try:
            for assignment in args.set:
                config.apply_override(assignment)
            config.ensure_valid()
            config.save(args.output)
        except ConfigError as e:
            builder.logger.error(f"Failed to write configuration: {str(e)}")
            return 1
        builder.logger.info(f"Configuration written to {args.output}")
        return 0

    return 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI interface"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = Config(args.config)
    except ConfigError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    options = config.logging_options()
    if args.verbose:
        options['log_level'] = 'DEBUG'
    logger = setup_logging(options)
    try:
        if args.verbose:
            logger.log_system_info()
        return _run(args, ImageBuilder(config, logger), config)
    finally:
        logger.close()


if __name__ == "__main__":
    sys.exit(main())
