"""
utils/project.py
Project description for multi-partition image builds
Loads a JSON project file and validates it with jsonschema
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import jsonschema


SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*(MB|GB|TB)?\s*$", re.IGNORECASE)
SIZE_MULTIPLIERS = {"MB": 1, "GB": 1024, "TB": 1024 * 1024}


class ProjectError(Exception):
    """Raised for unreadable or invalid project files"""
    pass


def parse_size_mb(size: Union[str, int]) -> int:
    """Megabytes in a size string such as '512MB', '2GB' or '1TB' (bare numbers are MB)"""
    if isinstance(size, int):
        return size
    match = SIZE_PATTERN.match(size)
    if not match:
        raise ProjectError(f"Invalid size '{size}', expected a number with an optional MB, GB or TB suffix")
    unit = (match.group(2) or "MB").upper()
    return int(match.group(1)) * SIZE_MULTIPLIERS[unit]


@dataclass
class ProjectSource:
    """A host file or directory installed into a partition"""
    type: str
    path: str
    target: str

    @property
    def is_directory(self) -> bool:
        return self.type == "dir"


@dataclass
class ProjectPartition:
    label: str
    type: str = "mfs"
    guid: Optional[str] = None
    size: Optional[str] = None
    attributes: List[str] = field(default_factory=list)
    vbr_image: Optional[str] = None
    reserved_sectors_image: Optional[str] = None
    sources: List[ProjectSource] = field(default_factory=list)

    @property
    def size_mb(self) -> Optional[int]:
        """Requested size, or None when the partition takes the remaining space"""
        return parse_size_mb(self.size) if self.size else None


@dataclass
class ProjectConfiguration:
    """Disk layout: partitioning scheme, disk size and partitions"""

    SCHEMA = {
        "type": "object",
        "properties": {
            "scheme": {"type": "string", "enum": ["mbr", "MBR"]},
            "size": {"type": ["string", "integer"]},
            "partitions": {
                "type": "array",
                "minItems": 1,
                "maxItems": 4,
                "items": {
                    "type": "object",
                    "properties": {
                        "label": {"type": "string", "minLength": 1, "maxLength": 64},
                        "type": {"type": "string", "enum": ["mfs", "fat", "MFS", "FAT"]},
                        "guid": {"type": "string"},
                        "size": {"type": ["string", "integer"]},
                        "attributes": {
                            "type": "array",
                            "items": {"type": "string", "enum": ["boot", "hidden", "readonly", "noautomount"]}
                        },
                        "vbr-image": {"type": "string"},
                        "reserved-sectors-image": {"type": "string"},
                        "sources": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "properties": {
                                    "type": {"type": "string", "enum": ["file", "dir"]},
                                    "path": {"type": "string", "minLength": 1},
                                    "target": {"type": "string"}
                                },
                                "required": ["type", "path", "target"]
                            }
                        }
                    },
                    "required": ["label", "type"]
                }
            }
        },
        "required": ["partitions"]
    }

    partitions: List[ProjectPartition]
    scheme: str = "mbr"
    size: str = "128MB"
    base_directory: Path = field(default_factory=Path.cwd)

    @property
    def size_mb(self) -> int:
        return parse_size_mb(self.size)

    def resolve(self, path: Optional[str]) -> Optional[str]:
        """Host paths in a project are relative to the project file"""
        if not path:
            return path
        return str((self.base_directory / path).resolve())

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_directory: Optional[Path] = None) -> "ProjectConfiguration":
        try:
            jsonschema.validate(instance=data, schema=cls.SCHEMA)
        except jsonschema.ValidationError as e:
            raise ProjectError(f"Invalid project: {e.message}") from e

        partitions = []
        for entry in data["partitions"]:
            partitions.append(ProjectPartition(
                label=entry["label"],
                type=entry["type"].lower(),
                guid=entry.get("guid"),
                size=str(entry["size"]) if "size" in entry else None,
                attributes=list(entry.get("attributes", [])),
                vbr_image=entry.get("vbr-image"),
                reserved_sectors_image=entry.get("reserved-sectors-image"),
                sources=[ProjectSource(s["type"], s["path"], s["target"]) for s in entry.get("sources", [])],
            ))

        project = cls(
            partitions=partitions,
            scheme=data.get("scheme", "mbr").lower(),
            size=str(data.get("size", "128MB")),
            base_directory=base_directory or Path.cwd(),
        )
        # Surface bad size strings at load time
        parse_size_mb(project.size)
        for partition in partitions:
            if partition.size:
                parse_size_mb(partition.size)
        return project

    @classmethod
    def parse(cls, path: Union[str, Path]) -> "ProjectConfiguration":
        """Load and validate a JSON project file"""
        path = Path(path)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ProjectError(f"Failed to read project {path}: {str(e)}") from e
        return cls.from_dict(data, path.resolve().parent)
