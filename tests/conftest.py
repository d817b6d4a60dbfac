import pytest

from osimage.disk.virtual_disk import VirtualDisk, sectors_from_megabytes
from osimage.mfs.filesystem import MfsFileSystem


def make_disk(path, size_mb):
    disk = VirtualDisk(path, sectors_from_megabytes(size_mb))
    disk.create()
    return disk


@pytest.fixture
def disk(tmp_path):
    """8 MB raw image"""
    disk = make_disk(tmp_path / "disk.img", 8)
    yield disk
    disk.close()


@pytest.fixture
def disk_64mb(tmp_path):
    disk = make_disk(tmp_path / "disk64.img", 64)
    yield disk
    disk.close()


@pytest.fixture
def mfs(disk):
    """Formatted MFS filesystem spanning the whole 8 MB disk"""
    filesystem = MfsFileSystem("Test")
    filesystem.initialize(disk, 0, disk.sector_count)
    assert filesystem.format()
    yield filesystem
    filesystem.close()


@pytest.fixture
def boot_images(tmp_path):
    """A one-sector stage-1 image and a 1000 byte stage-2 image"""
    stage1 = bytearray(b"\xAB" * 512)
    stage1[0:3] = b"\xEB\x3C\x90"
    stage1[510:512] = b"\x55\xAA"
    stage1_path = tmp_path / "stage1.bin"
    stage1_path.write_bytes(bytes(stage1))

    stage2_path = tmp_path / "stage2.bin"
    stage2_path.write_bytes(bytes(range(256)) * 3 + b"\xCD" * 232)
    return str(stage1_path), str(stage2_path)
