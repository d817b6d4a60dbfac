import struct

import pytest

from osimage.disk.mbr import (
    FIRST_PARTITION_SECTOR, MbrScheme, PARTITION_TABLE_OFFSET, PartitionEntry, lba_to_chs
)
from osimage.disk.virtual_disk import Geometry, VirtualDisk
from osimage.fat.filesystem import FatFileSystem
from osimage.fs.interface import FileSystemAttributes
from osimage.mfs.filesystem import MfsFileSystem


def table_entry(sector: bytes, index: int):
    offset = PARTITION_TABLE_OFFSET + index * 16
    status, type_id = sector[offset], sector[offset + 4]
    start, count = struct.unpack_from("<II", sector, offset + 8)
    return status, type_id, start, count


@pytest.fixture
def two_partitions(disk_64mb):
    scheme = MbrScheme(disk_64mb)
    assert scheme.create()

    system = MfsFileSystem("System")
    assert scheme.add_partition(system, 65536)
    system.create_file("/boot/kernel.bin", data=b"\xCC" * 3000)

    data = FatFileSystem("Data")
    assert scheme.add_partition(data, 10 ** 9)
    return scheme


def test_lba_to_chs():
    geometry = Geometry()
    assert lba_to_chs(0, geometry) == bytes([0, 1, 0])
    assert lba_to_chs(2048, geometry) == bytes([32, 33, 0])
    assert lba_to_chs(1024 * geometry.cylinder_size, geometry) == b"\xFE\xFF\xFF"


def test_partition_entry_codec():
    entry = PartitionEntry(0x61, 2048, 129024, bootable=True)
    data = entry.to_bytes(Geometry())
    assert len(data) == 16
    assert PartitionEntry.from_bytes(data) == entry


def test_partitions_are_contiguous(two_partitions, disk_64mb):
    two_partitions.close()
    sector = disk_64mb.read(0, 1)

    assert sector[510:512] == b"\x55\xAA"
    assert table_entry(sector, 0) == (0x00, 0x61, FIRST_PARTITION_SECTOR, 65536)
    assert table_entry(sector, 1) == (0x00, 0x0C, FIRST_PARTITION_SECTOR + 65536, 63488)
    assert table_entry(sector, 2) == (0, 0, 0, 0)


def test_last_partition_is_clamped(two_partitions):
    assert two_partitions.entries[1].sector_count == 63488
    assert two_partitions.get_free_sector_count() == 0
    assert not two_partitions.add_partition(MfsFileSystem("Extra"), 100)
    two_partitions.close()


def test_close_flushes_every_filesystem(two_partitions, disk_64mb):
    two_partitions.close()
    two_partitions.close()

    assert all(filesystem.closed for filesystem in two_partitions.filesystems)
    fat_start = FIRST_PARTITION_SECTOR + 65536
    assert disk_64mb.read(fat_start, 1)[82:90] == b"FAT32   "


def test_open_mounts_mfs_partitions(two_partitions, disk_64mb):
    two_partitions.close()

    scheme = MbrScheme(disk_64mb)
    assert scheme.open()
    assert len(scheme.entries) == 2
    filesystems = scheme.get_filesystems()
    assert [filesystem.name for filesystem in filesystems] == ["System"]
    assert filesystems[0].sector_start == FIRST_PARTITION_SECTOR
    assert filesystems[0].read_file("/boot/kernel.bin") == b"\xCC" * 3000
    assert scheme.get_free_sector_count() == 0


def test_bootable_partition_status(disk_64mb, boot_images):
    stage1, stage2 = boot_images
    with MbrScheme(disk_64mb) as scheme:
        assert scheme.create()
        system = MfsFileSystem("System", attributes=FileSystemAttributes.BOOT)
        assert scheme.add_partition(system, 131072, stage1, stage2)

    status, type_id, start, count = table_entry(disk_64mb.read(0, 1), 0)
    assert (status, type_id, start) == (0x80, 0x61, 2048)
    assert count == 131072 - 2048
    assert disk_64mb.read(2049, 2)[:1000] == open(stage2, 'rb').read()


def test_failed_format_adds_no_entry(disk_64mb, tmp_path):
    scheme = MbrScheme(disk_64mb)
    scheme.create()
    system = MfsFileSystem("System", attributes=FileSystemAttributes.BOOT)
    assert not scheme.add_partition(system, 65536, str(tmp_path / "missing.bin"))
    assert scheme.entries == []
    assert scheme.next_sector == FIRST_PARTITION_SECTOR


def test_disk_too_small(tmp_path):
    disk = VirtualDisk(tmp_path / "tiny.img", 2048)
    disk.create()
    assert not MbrScheme(disk).create()
    disk.close()


def test_open_blank_disk(disk):
    assert not MbrScheme(disk).open()
