import uuid

import pytest

from osimage.boot.boot_sector import BootSectorError, VBR_HEADER, VolumeBootRecord
from osimage.boot.master_record import (
    DATA_USER_PARTITION_GUID, MASTER_RECORD_MAGIC, MasterRecord, MasterRecordError,
    PartitionFlags, SYSTEM_PARTITION_GUID, calculate_checksum, partition_flags_for
)


@pytest.fixture
def record():
    return MasterRecord(
        name="System",
        flags=PartitionFlags.SYSTEM_DRIVE,
        free_bucket=17,
        root_bucket=0,
        bad_bucket=16,
        journal_bucket=8,
        map_sector_offset=8,
        map_size=16351 * 8,
    )


def test_serialized_record_verifies(record):
    data = record.to_bytes()

    assert len(data) == 512
    assert data[0:4] == MASTER_RECORD_MAGIC
    assert MasterRecord.verify(data)
    assert int.from_bytes(data[8:12], 'little') == calculate_checksum(data)


def test_any_flipped_byte_breaks_checksum(record):
    data = bytearray(record.to_bytes())
    data[100] ^= 0xFF

    assert not MasterRecord.verify(bytes(data))
    with pytest.raises(MasterRecordError):
        MasterRecord.from_bytes(bytes(data))


def test_checksum_skips_its_own_field():
    data = bytearray(512)
    data[0] = 1
    data[8:12] = b"\xFF\xFF\xFF\xFF"
    data[511] = 2
    assert calculate_checksum(bytes(data)) == 3


def test_decode(record):
    decoded = MasterRecord.from_bytes(record.to_sector(512))

    assert decoded.name == "System"
    assert decoded.flags == PartitionFlags.SYSTEM_DRIVE
    assert decoded.free_bucket == 17
    assert (decoded.root_bucket, decoded.journal_bucket, decoded.bad_bucket) == (0, 8, 16)
    assert decoded.map_sector_offset == 8
    assert decoded.map_size == 16351 * 8


def test_bad_magic_rejected(record):
    data = bytearray(record.to_bytes())
    data[0:4] = b"XXXX"
    with pytest.raises(MasterRecordError):
        MasterRecord.from_bytes(bytes(data), verify=False)


def test_long_name_is_cut_to_field():
    record = MasterRecord("é" * 40, PartitionFlags.NONE, 0, 0, 0, 0, 0, 0)
    decoded = MasterRecord.from_bytes(record.to_bytes())
    assert decoded.name == "é" * 32


def test_partition_flags_from_guid():
    assert partition_flags_for(SYSTEM_PARTITION_GUID) == PartitionFlags.SYSTEM_DRIVE
    assert partition_flags_for(DATA_USER_PARTITION_GUID) == (PartitionFlags.DATA_DRIVE | PartitionFlags.USER_DRIVE)
    assert partition_flags_for(uuid.uuid4(), hidden=True) == PartitionFlags.HIDDEN_DRIVE


def test_vbr_header_covers_bytes_3_to_43():
    assert 3 + VBR_HEADER.size == 44


def test_vbr_build_and_parse():
    vbr = VolumeBootRecord(512, 63, 255, sector_count=131072, reserved_sectors=8, bucket_size=8,
                           master_record_sector=1, mirror_record_sector=7, bootable=True)
    data = vbr.build()

    assert len(data) == 512
    assert data[3:7] == b"MFS1"
    assert data[8] == 1
    # Boot code and the 0x55AA signature come from the stage-1 loader
    assert data[44:] == bytes(512 - 44)
    assert VolumeBootRecord.parse(data) == vbr


def test_vbr_parse_rejects_foreign_sector():
    with pytest.raises(BootSectorError):
        VolumeBootRecord.parse(bytes(512))
