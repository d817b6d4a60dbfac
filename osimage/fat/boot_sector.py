"""
fat/boot_sector.py
FAT32 Boot Sector
BIOS Parameter Block layout, volume sizing and the FSInfo sector of a FAT
partition
"""

import datetime
import struct


# (attribute, struct code) in on-disk order; together they cover bytes 0-89
_BPB_FIELDS = (
    ("jump_boot", "3s"),
    ("oem_name", "8s"),
    ("bytes_per_sector", "H"),
    ("sectors_per_cluster", "B"),
    ("reserved_sectors", "H"),
    ("num_fats", "B"),
    ("root_entries", "H"),
    ("total_sectors_16", "H"),
    ("media_descriptor", "B"),
    ("sectors_per_fat_16", "H"),
    ("sectors_per_track", "H"),
    ("num_heads", "H"),
    ("hidden_sectors", "I"),
    ("total_sectors_32", "I"),
    # FAT32 extended BPB
    ("sectors_per_fat", "I"),
    ("ext_flags", "H"),
    ("fs_version", "H"),
    ("root_cluster", "I"),
    ("fsinfo_sector", "H"),
    ("backup_boot_sector", "H"),
    ("reserved_ext", "12s"),
    ("drive_number", "B"),
    ("reserved1", "B"),
    ("boot_signature", "B"),
    ("volume_id", "I"),
    ("volume_label", "11s"),
    ("fs_type", "8s"),
)
BPB = struct.Struct("<" + "".join(code for _, code in _BPB_FIELDS))
BOOT_CODE_SIZE = 510 - BPB.size
SIGNATURE = b"\x55\xAA"

FSINFO_LEAD_SIGNATURE = 0x41615252
FSINFO_STRUCT_SIGNATURE = 0x61417272
UNKNOWN_FREE_COUNT = 0xFFFFFFFF

MIN_RESERVED_SECTORS = 32
FAT_ENTRY_SIZE = 4

# Volume size limit in MB -> cluster size in bytes
_CLUSTER_SIZES = ((260, 512), (8 * 1024, 4096), (16 * 1024, 8192), (32 * 1024, 16384))
_LARGEST_CLUSTER = 32768


def choose_sectors_per_cluster(total_sectors: int, bytes_per_sector: int = 512) -> int:
    """Cluster size by volume size, following the usual FAT32 format table"""
    size_mb = total_sectors * bytes_per_sector // (1024 * 1024)
    cluster_bytes = next((size for limit, size in _CLUSTER_SIZES if size_mb <= limit), _LARGEST_CLUSTER)
    return max(1, cluster_bytes // bytes_per_sector)


def volume_label_bytes(label: str) -> bytes:
    """11-byte, space padded, upper-case volume label"""
    printable = ''.join(c for c in label.upper() if 0x20 <= ord(c) < 0x7F)
    return (printable.encode('ascii')[:11] or b"NO NAME").ljust(11, b" ")


class FatBootSector:
    """
    FAT32 boot sector of one partition.

    hidden_sectors is the partition's first sector on the disk. When a
    stage-2 loader occupies stage2_sectors sectors after the boot sector,
    FSInfo and the backup boot sector move behind it and the reserved area
    grows to hold both.
    """

    def __init__(self, total_sectors: int = 0, bytes_per_sector: int = 512, sectors_per_cluster: int = 0,
                 hidden_sectors: int = 0, sectors_per_track: int = 63, num_heads: int = 255,
                 volume_label: str = "NO NAME", stage2_sectors: int = 0, oem_name: bytes = b"OSIMAGE "):
        self.jump_boot = b"\xEB\x58\x90"
        self.oem_name = oem_name
        self.bytes_per_sector = bytes_per_sector
        self.sectors_per_cluster = sectors_per_cluster or choose_sectors_per_cluster(total_sectors, bytes_per_sector)
        self.num_fats = 2
        self.root_entries = 0
        self.total_sectors_16 = 0
        self.media_descriptor = 0xF8
        self.sectors_per_fat_16 = 0
        self.sectors_per_track = sectors_per_track
        self.num_heads = num_heads
        self.hidden_sectors = hidden_sectors
        self.total_sectors_32 = total_sectors

        self.fsinfo_sector = 1 + stage2_sectors
        self.backup_boot_sector = max(6, self.fsinfo_sector + 1)
        self.reserved_sectors = max(MIN_RESERVED_SECTORS, self.backup_boot_sector + 2)

        self.sectors_per_fat = self._calculate_sectors_per_fat()
        self.ext_flags = 0
        self.fs_version = 0
        self.root_cluster = 2
        self.reserved_ext = b"\x00" * 12
        self.drive_number = 0x80
        self.reserved1 = 0
        self.boot_signature = 0x29
        now = datetime.datetime.now()
        self.volume_id = ((now.year & 0xFFFF) << 16) | (now.microsecond & 0xFFFF)
        self.volume_label = volume_label_bytes(volume_label)
        self.fs_type = b"FAT32   "

        # JMP $ until a stage-1 loader is installed over it
        self.boot_code = b"\xEB\xFE".ljust(BOOT_CODE_SIZE, b"\x00")

    def _calculate_sectors_per_fat(self) -> int:
        """Smallest FAT size whose entries cover every cluster left beside the FATs"""
        if self.total_sectors_32 == 0:
            return 0

        sectors = 0
        while True:
            data_sectors = self.total_sectors_32 - self.reserved_sectors - (self.num_fats * sectors)
            clusters = max(data_sectors, 0) // self.sectors_per_cluster
            needed = ((clusters + 2) * FAT_ENTRY_SIZE + self.bytes_per_sector - 1) // self.bytes_per_sector
            if needed <= sectors:
                return max(sectors, 1)
            sectors = needed

    def get_total_clusters(self) -> int:
        if self.total_sectors_32 == 0:
            return 0
        return max((self.total_sectors_32 - self.get_data_start_sector()) // self.sectors_per_cluster, 0)

    def get_data_start_sector(self) -> int:
        """Partition-relative sector of cluster 2"""
        return self.reserved_sectors + self.num_fats * self.sectors_per_fat

    def get_fat_start_sector(self, fat_number: int = 0) -> int:
        if not 0 <= fat_number < self.num_fats:
            raise ValueError(f"FAT number {fat_number} exceeds available FATs ({self.num_fats})")
        return self.reserved_sectors + fat_number * self.sectors_per_fat

    def cluster_to_sector(self, cluster: int) -> int:
        if cluster < 2:
            raise ValueError("Valid cluster numbers start at 2")
        return self.get_data_start_sector() + (cluster - 2) * self.sectors_per_cluster

    def get_cluster_size_bytes(self) -> int:
        return self.sectors_per_cluster * self.bytes_per_sector

    def build(self) -> bytes:
        """Boot sector bytes, one sector long"""
        sector = bytearray(max(self.bytes_per_sector, 512))
        BPB.pack_into(sector, 0, *(getattr(self, name) for name, _ in _BPB_FIELDS))
        sector[BPB.size:510] = self.boot_code[:BOOT_CODE_SIZE].ljust(BOOT_CODE_SIZE, b"\x00")
        sector[510:512] = SIGNATURE
        return bytes(sector)

    @classmethod
    def parse(cls, data: bytes) -> "FatBootSector":
        if len(data) < 512:
            raise ValueError("Boot sector must be at least 512 bytes")
        if data[510:512] != SIGNATURE:
            raise ValueError("Invalid boot sector signature")

        boot_sector = cls.__new__(cls)
        for (name, _), value in zip(_BPB_FIELDS, BPB.unpack_from(data, 0)):
            setattr(boot_sector, name, value)
        boot_sector.boot_code = bytes(data[BPB.size:510])
        return boot_sector

    def generate_fsinfo_sector(self, free_count: int = UNKNOWN_FREE_COUNT,
                               next_free: int = UNKNOWN_FREE_COUNT) -> bytes:
        """FSInfo sector carrying the free cluster count and allocation hint"""
        fsinfo = bytearray(self.bytes_per_sector)
        struct.pack_into("<I", fsinfo, 0, FSINFO_LEAD_SIGNATURE)
        struct.pack_into("<III", fsinfo, 484, FSINFO_STRUCT_SIGNATURE, free_count, next_free)
        fsinfo[510:512] = SIGNATURE
        return bytes(fsinfo)

    def info(self) -> str:
        rows = (
            ("OEM Name", self.oem_name.decode(errors='replace').strip()),
            ("Bytes/Sector", self.bytes_per_sector),
            ("Sectors/Cluster", self.sectors_per_cluster),
            ("Reserved Sectors", self.reserved_sectors),
            ("Total Sectors", self.total_sectors_32),
            ("Sectors/FAT", self.sectors_per_fat),
            ("FSInfo Sector", self.fsinfo_sector),
            ("Backup Boot Sector", self.backup_boot_sector),
            ("Volume Label", self.volume_label.decode(errors='replace').strip()),
            ("Total Clusters", self.get_total_clusters()),
            ("Data Start Sector", self.get_data_start_sector()),
        )
        return "\n".join(f"{label + ':':<20}{value}" for label, value in rows)
