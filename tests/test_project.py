import json

import pytest

from osimage.utils.project import ProjectConfiguration, ProjectError, parse_size_mb


@pytest.mark.parametrize("size, expected", [
    ("512MB", 512),
    ("2GB", 2048),
    ("1tb", 1024 * 1024),
    ("64", 64),
    (128, 128),
])
def test_parse_size_mb(size, expected):
    assert parse_size_mb(size) == expected


def test_parse_size_rejects_garbage():
    with pytest.raises(ProjectError):
        parse_size_mb("lots")


def test_parse_project(tmp_path):
    project_file = tmp_path / "project.json"
    project_file.write_text(json.dumps({
        "scheme": "MBR",
        "size": "1GB",
        "partitions": [
            {
                "label": "Boot",
                "type": "FAT",
                "size": "128MB",
                "attributes": ["boot"],
                "vbr-image": "boot/stage1.bin",
                "reserved-sectors-image": "boot/stage2.bin",
                "sources": [{"type": "file", "path": "build/kernel.bin", "target": "/kernel.bin"}]
            },
            {"label": "System", "type": "mfs"}
        ]
    }))

    project = ProjectConfiguration.parse(project_file)
    assert project.scheme == "mbr"
    assert project.size_mb == 1024
    assert [p.label for p in project.partitions] == ["Boot", "System"]

    boot, system = project.partitions
    assert boot.type == "fat"
    assert boot.size_mb == 128
    assert boot.vbr_image == "boot/stage1.bin"
    assert boot.reserved_sectors_image == "boot/stage2.bin"
    assert not boot.sources[0].is_directory
    assert system.size_mb is None
    assert system.sources == []

    assert project.resolve("build/kernel.bin") == str((tmp_path / "build" / "kernel.bin").resolve())
    assert project.resolve(None) is None


@pytest.mark.parametrize("data", [
    {},
    {"partitions": []},
    {"partitions": [{"label": "A", "type": "ntfs"}]},
    {"partitions": [{"label": "A", "type": "mfs", "attributes": ["fast"]}]},
    {"scheme": "gpt", "partitions": [{"label": "A", "type": "mfs"}]},
    {"partitions": [{"label": "A", "type": "mfs", "sources": [{"type": "file", "path": "x"}]}]},
    {"partitions": [{"label": "A", "type": "mfs"}] * 5},
    {"size": "big", "partitions": [{"label": "A", "type": "mfs"}]},
])
def test_invalid_projects(data):
    with pytest.raises(ProjectError):
        ProjectConfiguration.from_dict(data)


def test_unreadable_project(tmp_path):
    with pytest.raises(ProjectError):
        ProjectConfiguration.parse(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{")
    with pytest.raises(ProjectError):
        ProjectConfiguration.parse(broken)
