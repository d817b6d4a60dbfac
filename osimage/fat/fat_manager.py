"""
fat/fat_manager.py
FAT32 Table Management Module
Handles the in-memory FAT, cluster chain allocation and writing both FAT copies
"""

import struct
from typing import Dict, List, Optional

from osimage.fat.boot_sector import FatBootSector
from osimage.utils.logger import Logger


class FatFullError(Exception):
    """Raised when the volume has no room for a cluster chain"""
    pass


class FATManager:
    """FAT32 table management and cluster operations"""

    # FAT32 entry values
    FREE_CLUSTER = 0x00000000
    END_OF_CHAIN = 0x0FFFFFFF
    ENTRY_MASK = 0x0FFFFFFF

    def __init__(self, disk, boot_sector: FatBootSector, logger: Optional[Logger] = None):
        self.disk = disk
        self.boot_sector = boot_sector
        self.logger = logger or Logger()
        self.total_clusters = boot_sector.get_total_clusters()
        self.fat_table: List[int] = []
        self.next_free_cluster = 3  # cluster 2 is the root directory
        self._initialize_fat_table()

    def _initialize_fat_table(self):
        """Initialize FAT table with default values"""
        self.fat_table = [self.FREE_CLUSTER] * (self.total_clusters + 2)

        # Media descriptor and reserved entry
        self.fat_table[0] = 0x0FFFFF00 | self.boot_sector.media_descriptor
        self.fat_table[1] = self.END_OF_CHAIN

        # Root directory (cluster 2)
        self.fat_table[self.boot_sector.root_cluster] = self.END_OF_CHAIN
        self.next_free_cluster = self.boot_sector.root_cluster + 1

    def is_end_of_chain(self, entry_value: int) -> bool:
        """FAT32 marks end of chain with any value from 0x0FFFFFF8 up"""
        return (entry_value & self.ENTRY_MASK) >= 0x0FFFFFF8

    def get_next_cluster(self, cluster: int) -> Optional[int]:
        """Next cluster of the chain, or None at the end of the chain"""
        if cluster < 2 or cluster >= len(self.fat_table):
            return None

        entry = self.fat_table[cluster]
        if entry == self.FREE_CLUSTER or self.is_end_of_chain(entry):
            return None
        return entry

    def get_cluster_chain(self, start_cluster: int) -> List[int]:
        """Get the complete cluster chain starting from given cluster"""
        chain = []
        seen = set()
        cluster = start_cluster

        while cluster is not None and 2 <= cluster < len(self.fat_table):
            if cluster in seen:
                self.logger.warning(f"Circular cluster chain detected at cluster {cluster}")
                break
            seen.add(cluster)
            chain.append(cluster)
            cluster = self.get_next_cluster(cluster)

        return chain

    def _find_free_clusters(self, count: int) -> List[int]:
        free = []
        for cluster in range(self.next_free_cluster, len(self.fat_table)):
            if self.fat_table[cluster] == self.FREE_CLUSTER:
                free.append(cluster)
                if len(free) == count:
                    return free
        for cluster in range(2, self.next_free_cluster):
            if self.fat_table[cluster] == self.FREE_CLUSTER:
                free.append(cluster)
                if len(free) == count:
                    return free
        return free

    def allocate_cluster_chain(self, count: int, after: Optional[int] = None) -> List[int]:
        """
        Allocate and link count clusters. When after is given the new chain
        is appended to the chain ending at that cluster.
        """
        if count <= 0:
            return []

        chain = self._find_free_clusters(count)
        if len(chain) < count:
            raise FatFullError(f"Need {count} clusters but only {len(chain)} are free")

        for current, following in zip(chain, chain[1:]):
            self.fat_table[current] = following
        self.fat_table[chain[-1]] = self.END_OF_CHAIN

        if after is not None:
            self.fat_table[after] = chain[0]

        self.next_free_cluster = chain[-1] + 1
        self.logger.debug(f"Allocated {count} clusters starting at {chain[0]}")
        return chain

    def _fat_table_to_bytes(self) -> bytes:
        """Convert FAT table to byte representation"""
        fat_bytes = bytearray(self.boot_sector.sectors_per_fat * self.boot_sector.bytes_per_sector)
        limit = min(len(self.fat_table), len(fat_bytes) // 4)
        for i in range(limit):
            struct.pack_into('<I', fat_bytes, i * 4, self.fat_table[i] & self.ENTRY_MASK)
        return bytes(fat_bytes)

    def load_from_disk(self):
        """Read the primary FAT back into memory"""
        data = self.disk.read(self.boot_sector.get_fat_start_sector(0), self.boot_sector.sectors_per_fat)
        count = min(self.total_clusters + 2, len(data) // 4)
        self.fat_table = [entry & self.ENTRY_MASK for entry in struct.unpack_from(f'<{count}I', data)]
        self.next_free_cluster = 3
        free = self._find_free_clusters(1)
        self.next_free_cluster = free[0] if free else len(self.fat_table)

    def save_to_disk(self):
        """Write the in-memory FAT to every FAT copy"""
        fat_data = self._fat_table_to_bytes()
        for fat_number in range(self.boot_sector.num_fats):
            self.disk.write(fat_data, self.boot_sector.get_fat_start_sector(fat_number), True)
        self.logger.debug(f"Wrote {self.boot_sector.num_fats} FAT copies "
                          f"({self.boot_sector.sectors_per_fat} sectors each)")

    def get_free_clusters(self) -> int:
        """Count free clusters"""
        return sum(1 for entry in self.fat_table[2:] if entry == self.FREE_CLUSTER)

    def get_statistics(self) -> Dict:
        """Get FAT usage statistics"""
        free_clusters = self.get_free_clusters()
        used_clusters = self.total_clusters - free_clusters
        cluster_size = self.boot_sector.get_cluster_size_bytes()

        return {
            'total_clusters': self.total_clusters,
            'free_clusters': free_clusters,
            'used_clusters': used_clusters,
            'cluster_size': cluster_size,
            'free_space_bytes': free_clusters * cluster_size,
            'used_space_bytes': used_clusters * cluster_size,
            'next_free_cluster': self.next_free_cluster
        }
