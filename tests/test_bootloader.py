import pytest

from osimage.boot.boot_sector import VolumeBootRecord
from osimage.boot.bootloader import (
    BootloaderError, FAT_PRESERVED_RANGE, install_bootloaders, pad_to_sectors, stage2_sector_count
)
from osimage.boot.master_record import MasterRecord
from osimage.fs.interface import FileSystemAttributes
from osimage.mfs.filesystem import MfsFileSystem


@pytest.fixture
def bootable_mfs(disk, boot_images):
    stage1, stage2 = boot_images
    filesystem = MfsFileSystem("Boot", attributes=FileSystemAttributes.BOOT)
    filesystem.initialize(disk, 0, disk.sector_count, stage1, stage2)
    assert filesystem.format()
    yield filesystem
    filesystem.close()


def test_stage2_sector_count(tmp_path):
    image = tmp_path / "stage2.bin"
    image.write_bytes(b"\x01" * 1000)
    assert stage2_sector_count(str(image), 512) == 2
    assert stage2_sector_count(None, 512) == 0


def test_stage2_sector_count_missing_image(tmp_path):
    with pytest.raises(BootloaderError):
        stage2_sector_count(str(tmp_path / "nope.bin"), 512)


def test_pad_to_sectors():
    assert len(pad_to_sectors(b"\x01" * 1000, 512)) == 1024


def test_reserved_area_holds_stage2(bootable_mfs):
    assert bootable_mfs.master_record_sector == 3
    assert bootable_mfs.reserved_sectors == 8
    assert bootable_mfs.mirror_record_sector == 7


def test_stage1_overlay_keeps_vbr_fields(disk, bootable_mfs, boot_images):
    stage1 = open(boot_images[0], 'rb').read()
    sector = disk.read(0, 1)

    assert sector[0:3] == stage1[0:3]
    assert sector[44:] == stage1[44:]
    assert sector[510:512] == b"\x55\xAA"
    assert sector[8] == 1

    vbr = VolumeBootRecord.parse(sector)
    assert vbr.bootable
    assert vbr.reserved_sectors == 8
    assert vbr.master_record_sector == 3
    assert vbr.mirror_record_sector == 7


def test_stage2_written_after_boot_sector(disk, bootable_mfs, boot_images):
    stage2 = open(boot_images[1], 'rb').read()
    reserved = disk.read(1, 2)

    assert reserved[:1000] == stage2
    assert reserved[1000:] == b"\x00" * 24


def test_master_record_follows_stage2(disk, bootable_mfs):
    assert MasterRecord.verify(disk.read(3, 1))
    assert disk.read(3, 1) == disk.read(7, 1)


def test_bootable_format_needs_vbr_image(disk, tmp_path):
    filesystem = MfsFileSystem("Boot", attributes=FileSystemAttributes.BOOT)
    filesystem.initialize(disk, 0, disk.sector_count, str(tmp_path / "missing.bin"))
    assert not filesystem.format()


def test_oversized_stage1_is_rejected(disk, tmp_path):
    image = tmp_path / "big.bin"
    image.write_bytes(b"\x90" * 600)
    with pytest.raises(BootloaderError):
        install_bootloaders(disk, 0, str(image))


def test_oversized_stage1_fails_format(disk, tmp_path):
    image = tmp_path / "big.bin"
    image.write_bytes(b"\x90" * 600)
    filesystem = MfsFileSystem("Boot", attributes=FileSystemAttributes.BOOT)
    filesystem.initialize(disk, 0, disk.sector_count, str(image))
    assert not filesystem.format()


def test_fat_range_is_preserved_without_marking(disk, boot_images):
    disk.write(bytes(range(256)) * 2, 0)

    install_bootloaders(disk, 0, boot_images[0], preserve=FAT_PRESERVED_RANGE, mark_bootable=False)
    sector = disk.read(0, 1)

    assert sector[11:89] == bytes(range(11, 89))
    assert sector[8] == 0xAB
    assert sector[89:510] == b"\xAB" * (510 - 89)
