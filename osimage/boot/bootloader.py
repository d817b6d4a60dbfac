"""
boot/bootloader.py
Bootloader installation into a partition's boot and reserved sectors
"""

import os
from typing import Optional, Tuple

from osimage.utils.logger import Logger


# Byte ranges of the boot sector that already hold filesystem metadata
MFS_PRESERVED_RANGE = (3, 44)
FAT_PRESERVED_RANGE = (11, 89)

BOOTABLE_FLAG_OFFSET = 8


class BootloaderError(Exception):
    """Raised when a bootloader image is missing or does not fit"""
    pass


def load_image(path: Optional[str], role: str = "bootloader") -> bytes:
    """Read a bootloader image from disk"""
    if not path or not os.path.isfile(path):
        raise BootloaderError(f"{role} image {path} is missing")
    with open(path, 'rb') as f:
        return f.read()


def stage2_sector_count(path: Optional[str], bytes_per_sector: int) -> int:
    """Sectors the stage-2 image occupies after the boot sector"""
    if not path:
        return 0
    if not os.path.isfile(path):
        raise BootloaderError(f"stage2 image {path} is missing")
    return os.path.getsize(path) // bytes_per_sector + 1


def pad_to_sectors(data: bytes, bytes_per_sector: int) -> bytes:
    """Zero-pad data to the reserved area it is written into"""
    size = (len(data) // bytes_per_sector + 1) * bytes_per_sector
    return data.ljust(size, b"\x00")


def install_bootloaders(disk, start_sector: int, stage1_path: str,
                        stage2_path: Optional[str] = None,
                        preserve: Tuple[int, int] = MFS_PRESERVED_RANGE,
                        mark_bootable: bool = True,
                        logger: Optional[Logger] = None) -> bool:
    """
    Overlay the stage-1 image onto the partition boot sector and write the
    stage-2 image into the reserved sectors that follow it.

    The bytes in `preserve` are copied from the boot sector already on disk
    so the metadata written by the formatter survives the overlay.
    """
    logger = logger or Logger()
    bytes_per_sector = disk.bytes_per_sector

    logger.info(f"Loading stage1 bootloader ({stage1_path})")
    stage1 = load_image(stage1_path, "stage1")
    if len(stage1) > bytes_per_sector:
        raise BootloaderError(f"stage1 image {stage1_path} is {len(stage1)} bytes, "
                              f"larger than one {bytes_per_sector} byte sector")

    bootsector = bytearray(stage1.ljust(bytes_per_sector, b"\x00"))
    existing = disk.read(start_sector, 1)
    begin, end = preserve
    bootsector[begin:end] = existing[begin:end]
    if mark_bootable:
        bootsector[BOOTABLE_FLAG_OFFSET] = 1

    logger.info("Writing stage1 bootloader")
    disk.write(bytes(bootsector), start_sector, True)

    if stage2_path:
        logger.info(f"Loading stage2 bootloader ({stage2_path})")
        stage2 = pad_to_sectors(load_image(stage2_path, "stage2"), bytes_per_sector)
        logger.info(f"Writing stage2 bootloader ({len(stage2) // bytes_per_sector} sectors)")
        disk.write(stage2, start_sector + 1, True)

    return True
