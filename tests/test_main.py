import json

import pytest

from osimage.boot.master_record import MasterRecord
from osimage.disk.virtual_disk import VirtualDisk
from osimage.main import ImageBuilder, main, parse_source_mapping


@pytest.fixture
def kernel(tmp_path):
    path = tmp_path / "kernel.bin"
    path.write_bytes(bytes(range(256)) * 40)
    return path


@pytest.fixture
def image(tmp_path, kernel):
    path = tmp_path / "os.img"
    assert main(["create-disk", str(path), "--size", "64", "--file", f"{kernel}:/boot/kernel.bin"]) == 0
    return path


def test_parse_source_mapping():
    source = parse_source_mapping("build/out:/system", "dir")
    assert (source.type, source.path, source.target) == ("dir", "build/out", "/system")
    with pytest.raises(ValueError):
        parse_source_mapping("no-target", "file")


def test_create_disk_and_read_back(tmp_path, image, kernel):
    assert image.stat().st_size == 64 * 1024 * 1024

    output = tmp_path / "out.bin"
    assert main(["read-file", str(image), "/boot/kernel.bin", "--output", str(output)]) == 0
    assert output.read_bytes() == kernel.read_bytes()


def test_master_record_checksum_on_image(image):
    disk = VirtualDisk(image)
    disk.open()
    try:
        assert MasterRecord.verify(disk.read(2048 + 1, 1))
    finally:
        disk.close()


def test_list_and_info(image, capsys):
    assert main(["list", str(image), "--path", "/boot"]) == 0
    assert "kernel.bin" in capsys.readouterr().out

    assert main(["info", str(image)]) == 0
    out = capsys.readouterr().out
    assert "type 0x61" in out
    assert "start 2048" in out


def test_edit_existing_image(tmp_path, image):
    motd = tmp_path / "motd"
    motd.write_bytes(b"welcome\n")

    assert main(["create-dir", str(image), "/etc/conf.d"]) == 0
    assert main(["create-file", str(image), "/etc/motd", str(motd)]) == 0

    output = tmp_path / "motd.out"
    assert main(["read-file", str(image), "/etc/motd", "--output", str(output)]) == 0
    assert output.read_bytes() == b"welcome\n"
    assert main(["read-file", str(image), "/etc/missing"]) == 1


def test_directory_source(tmp_path):
    tree = tmp_path / "rootfs"
    (tree / "bin").mkdir(parents=True)
    (tree / "bin" / "sh").write_bytes(b"#!shell")
    (tree / "etc").mkdir()
    (tree / "etc" / "hosts").write_bytes(b"127.0.0.1 localhost\n")

    image = tmp_path / "tree.img"
    assert main(["create-disk", str(image), "--size", "64", "--dir", f"{tree}:/"]) == 0

    builder = ImageBuilder()
    assert builder.read_file(str(image), "/bin/sh") == b"#!shell"
    assert builder.read_file(str(image), "etc/hosts") == b"127.0.0.1 localhost\n"


def test_bootable_disk(tmp_path, boot_images):
    stage1, stage2 = boot_images
    image = tmp_path / "boot.img"
    assert main(["create-disk", str(image), "--size", "64", "--bootable",
                 "--vbr", stage1, "--stage2", stage2]) == 0

    data = image.read_bytes()
    partition = 2048 * 512
    assert data[446] == 0x80
    assert data[partition + 8] == 1
    assert data[partition + 512:partition + 1512] == open(stage2, 'rb').read()


def test_bootable_requires_vbr(tmp_path):
    assert main(["create-disk", str(tmp_path / "boot.img"), "--size", "64", "--bootable"]) == 1


def test_disk_below_minimum_size(tmp_path):
    image = tmp_path / "small.img"
    assert main(["create-disk", str(image), "--size", "32"]) == 1
    assert not image.exists()


def test_unsupported_image_type(tmp_path):
    assert main(["create-disk", str(tmp_path / "disk.iso"), "--size", "64"]) == 1


def test_vmdk_image(tmp_path, kernel):
    image = tmp_path / "os.vmdk"
    assert main(["create-disk", str(image), "--size", "64", "--file", f"{kernel}:/kernel.bin"]) == 0
    assert (tmp_path / "os-flat.vmdk").stat().st_size == 64 * 1024 * 1024
    assert ImageBuilder().read_file(str(image), "/kernel.bin") == kernel.read_bytes()


def test_fat_disk(tmp_path, kernel, capsys):
    image = tmp_path / "fat.img"
    assert main(["create-disk", str(image), "--size", "64", "--fs", "fat",
                 "--file", f"{kernel}:/boot/kernel.bin"]) == 0

    data = image.read_bytes()
    assert data[446 + 4] == 0x0C
    assert data[2048 * 512 + 82:2048 * 512 + 90] == b"FAT32   "

    assert main(["info", str(image)]) == 0
    assert "type 0x0C" in capsys.readouterr().out


def test_build_project(tmp_path, kernel):
    project = tmp_path / "project.json"
    project.write_text(json.dumps({
        "scheme": "mbr",
        "size": "64MB",
        "partitions": [
            {"label": "Boot", "type": "fat", "size": "32MB",
             "sources": [{"type": "file", "path": "kernel.bin", "target": "/kernel.bin"}]},
            {"label": "System", "type": "mfs",
             "sources": [{"type": "file", "path": "kernel.bin", "target": "/system/kernel.bin"}]}
        ]
    }))
    image = tmp_path / "project.img"
    assert main(["build", str(project), str(image)]) == 0

    data = image.read_bytes()
    assert data[446 + 4] == 0x0C
    assert data[446 + 16 + 4] == 0x61
    assert int.from_bytes(data[446 + 16 + 8:446 + 16 + 12], 'little') == 2048 + 65536

    # Only MFS partitions are editable, so index 0 is the System partition
    assert ImageBuilder().read_file(str(image), "/system/kernel.bin") == kernel.read_bytes()


def test_build_invalid_project(tmp_path):
    project = tmp_path / "project.json"
    project.write_text(json.dumps({"partitions": [{"label": "X", "type": "ext4"}]}))
    assert main(["build", str(project), str(tmp_path / "x.img")]) == 1


def test_config_minimum_size(tmp_path):
    config = tmp_path / "osimage.json"
    config.write_text(json.dumps({"disk": {"minimum_size_mb": 80}}))
    assert main(["--config", str(config), "create-disk", str(tmp_path / "x.img"), "--size", "64"]) == 1


def test_invalid_config(tmp_path):
    config = tmp_path / "osimage.json"
    config.write_text("{broken")
    assert main(["--config", str(config), "info", str(tmp_path / "x.img")]) == 1


def test_no_command(capsys):
    assert main([]) == 1


def test_verbose_reports_host(image, caplog):
    assert main(["-v", "info", str(image)]) == 0
    assert "System Information:" in caplog.text


def test_init_config(tmp_path):
    path = tmp_path / "conf" / "osimage.json"
    assert main(["init-config", str(path), "--set", "disk.default_size_mb=96",
                 "--set", "partition.label=Boot"]) == 0

    saved = json.loads(path.read_text())
    assert saved['config']['disk']['default_size_mb'] == 96
    assert saved['config']['partition']['label'] == "Boot"
    assert saved['config']['disk']['bytes_per_sector'] == 512


def test_init_config_rejects_bad_settings(tmp_path):
    path = tmp_path / "osimage.json"
    assert main(["init-config", str(path), "--set", "partition.filesystem=ntfs"]) == 1
    assert main(["init-config", str(path), "--set", "label"]) == 1
    assert not path.exists()
