import pytest

from osimage.disk.virtual_disk import (
    DiskError, DiskKind, Geometry, TemporaryDisk, VirtualDisk, VmdkDisk,
    detect_disk_kind, open_disk, sectors_from_megabytes
)


def test_sectors_from_megabytes():
    assert sectors_from_megabytes(64) == 131072
    assert sectors_from_megabytes(1, 4096) == 256


def test_geometry():
    geometry = Geometry()
    assert geometry.cylinder_size == 16065
    assert geometry.cylinders(131072) == 8
    assert geometry.cylinders(100) == 1


@pytest.mark.parametrize("path, kind", [
    ("disk.img", DiskKind.IMG),
    ("DISK.IMG", DiskKind.IMG),
    ("build/os.vmdk", DiskKind.VMDK),
])
def test_detect_disk_kind(path, kind):
    assert detect_disk_kind(path) is kind


def test_unknown_extension():
    with pytest.raises(DiskError):
        detect_disk_kind("disk.iso")


def test_create_raw_image(tmp_path):
    path = tmp_path / "raw.img"
    disk = VirtualDisk(path, 2048)
    disk.create()
    with disk:
        assert disk.get_size() == 2048 * 512
        disk.write(b"\x5A" * 1024, 10)
        assert disk.read(10, 2) == b"\x5A" * 1024
        assert disk.read_sector(12) == b"\x00" * 512
    assert not disk.is_open

    reopened = VirtualDisk(path)
    assert reopened.sector_count == 2048
    assert reopened.read(11, 1) == b"\x5A" * 512
    reopened.close()


def test_create_requires_sector_count(tmp_path):
    with pytest.raises(DiskError):
        VirtualDisk(tmp_path / "x.img").create()


def test_open_missing_image(tmp_path):
    with pytest.raises(DiskError):
        VirtualDisk(tmp_path / "missing.img").open()


def test_misaligned_write(disk):
    with pytest.raises(DiskError):
        disk.write(b"\x00" * 100, 0)
    with pytest.raises(DiskError):
        disk.write_sector(0, b"\x00" * 511)


def test_out_of_range_access(disk):
    with pytest.raises(DiskError):
        disk.read(disk.sector_count, 1)
    with pytest.raises(DiskError):
        disk.write(b"\x00" * 1024, disk.sector_count - 1)
    with pytest.raises(DiskError):
        disk.read(-1, 1)


def test_stream_access(disk):
    disk.write_sector(3, b"\x11" * 512)
    assert disk.seek(3 * 512) == 1536
    assert disk.get_stream().read(4) == b"\x11" * 4


def test_vmdk_descriptor_and_extent(tmp_path):
    path = tmp_path / "os.vmdk"
    disk = open_disk(path, 2048, create=True)

    assert isinstance(disk, VmdkDisk)
    assert disk.data_path == str(tmp_path / "os-flat.vmdk")
    assert (tmp_path / "os-flat.vmdk").stat().st_size == 2048 * 512
    descriptor = path.read_text()
    assert 'createType="monolithicFlat"' in descriptor
    assert 'RW 2048 FLAT "os-flat.vmdk" 0' in descriptor

    disk.write(b"\x77" * 512, 100)
    disk.close()

    reopened = open_disk(path)
    assert reopened.sector_count == 2048
    assert reopened.read(100, 1) == b"\x77" * 512
    reopened.close()


def test_vmdk_without_extent_line(tmp_path):
    path = tmp_path / "broken.vmdk"
    path.write_text("# Disk DescriptorFile\n")
    with pytest.raises(DiskError):
        VmdkDisk(path)


def test_temporary_disk():
    disk = TemporaryDisk(64)
    with pytest.raises(DiskError):
        disk.open()
    disk.create()
    assert disk.sector_count == 64
    assert disk.get_size() == 64 * 512
    disk.write(b"\x01" * 512, 63)
    assert disk.read(63, 1) == b"\x01" * 512
    assert disk.read(0, 1) == b"\x00" * 512
    disk.close()
