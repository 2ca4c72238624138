"""Data models for gadget volumes and their structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional


class Role(str, Enum):
    """Semantic role of a structure within a volume."""

    SYSTEM_DATA = "system-data"
    SYSTEM_SEED = "system-seed"
    SYSTEM_BOOT = "system-boot"
    SYSTEM_SAVE = "system-save"
    MBR = "mbr"
    NONE = ""


class Schema(str, Enum):
    """Partition table schema of a volume."""

    MBR = "mbr"
    GPT = "gpt"
    HYBRID = "hybrid"


# Labels used when a structure's role is only implied by its filesystem label
SYSTEM_BOOT_LABEL = "system-boot"
SEED_LABEL = "ubuntu-seed"
ROOTFS_NAME = "writable"

# Linux filesystem data: MBR id 83, GPT 0FC63DAF-...
ROOTFS_TYPE = "83,0FC63DAF-8483-4772-8E79-3D69D8477DE4"


@dataclass
class VolumeContent:
    """One content entry: a raw blob (image) or a source to target mapping."""

    image: Optional[str] = None
    offset: Optional[int] = None
    size: Optional[int] = None
    source: Optional[str] = None
    target: Optional[str] = None

    @property
    def is_blob(self) -> bool:
        return self.image is not None

    def to_dict(self) -> dict:
        return {
            "image": self.image,
            "offset": self.offset,
            "size": self.size,
            "source": self.source,
            "target": self.target,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VolumeContent":
        return cls(**data)


@dataclass
class OffsetWrite:
    """Location to patch with a structure's start sector.

    The location is ``offset`` bytes from the start of the structure named
    ``relative_to``, or from the start of the volume when it is unset.
    """

    offset: int
    relative_to: Optional[str] = None

    def to_dict(self) -> dict:
        return {"offset": self.offset, "relative_to": self.relative_to}

    @classmethod
    def from_dict(cls, data: dict) -> "OffsetWrite":
        return cls(**data)


@dataclass
class Structure:
    name: str
    type: str
    role: Role = Role.NONE
    offset: Optional[int] = None
    min_size: int = 0
    size: int = 0
    content: list[VolumeContent] = field(default_factory=list)
    filesystem: Optional[str] = None
    label: Optional[str] = None
    offset_write: Optional[OffsetWrite] = None
    yaml_index: int = 0
    start_offset: int = 0

    @property
    def display_name(self) -> str:
        return self.name or f"#{self.yaml_index}"

    @property
    def is_partition(self) -> bool:
        """Whether the structure gets a partition table entry."""
        return self.type not in ("bare", "mbr") and self.role != Role.MBR

    @property
    def has_filesystem(self) -> bool:
        return bool(self.filesystem) and self.filesystem != "none"

    @property
    def is_rootfs(self) -> bool:
        return self.role == Role.SYSTEM_DATA

    @property
    def is_system_boot(self) -> bool:
        return self.role == Role.SYSTEM_BOOT or (
            self.role == Role.NONE and self.label == SYSTEM_BOOT_LABEL
        )

    @property
    def effective_size(self) -> int:
        return max(self.size, self.min_size)

    @property
    def end(self) -> int:
        return self.start_offset + self.effective_size

    def partition_type(self, schema: Schema) -> str:
        """Type identifier to use for the given partition table schema.

        Hybrid identifiers are written as ``MBRID,GPT-GUID``.
        """
        if "," not in self.type:
            return self.type
        mbr_type, gpt_type = self.type.split(",", 1)
        if schema == Schema.MBR:
            return mbr_type
        return gpt_type

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "type": self.type,
            "role": self.role.value,
            "offset": self.offset,
            "min_size": self.min_size,
            "size": self.size,
            "content": [entry.to_dict() for entry in self.content],
            "filesystem": self.filesystem,
            "label": self.label,
            "offset_write": self.offset_write.to_dict() if self.offset_write else None,
            "yaml_index": self.yaml_index,
            "start_offset": self.start_offset,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Structure":
        data = dict(data)
        data["role"] = Role(data.get("role", ""))
        data["content"] = [VolumeContent.from_dict(c) for c in data.get("content", [])]
        if data.get("offset_write"):
            data["offset_write"] = OffsetWrite.from_dict(data["offset_write"])
        return cls(**data)


@dataclass
class Volume:
    name: str
    schema: Schema = Schema.GPT
    bootloader: Optional[str] = None
    structures: list[Structure] = field(default_factory=list)

    def structure(self, name: str) -> Optional[Structure]:
        for structure in self.structures:
            if structure.name == name:
                return structure
        return None

    @property
    def rootfs(self) -> Optional[Structure]:
        for structure in self.structures:
            if structure.is_rootfs:
                return structure
        return None

    @property
    def has_seed(self) -> bool:
        return any(s.role == Role.SYSTEM_SEED for s in self.structures)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "schema": self.schema.value,
            "bootloader": self.bootloader,
            "structures": [structure.to_dict() for structure in self.structures],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Volume":
        return cls(
            name=data["name"],
            schema=Schema(data.get("schema", Schema.GPT.value)),
            bootloader=data.get("bootloader"),
            structures=[Structure.from_dict(s) for s in data.get("structures", [])],
        )


@dataclass
class GadgetInfo:
    """All volumes of a gadget, in declaration order."""

    volumes: list[Volume] = field(default_factory=list)

    def __iter__(self) -> Iterator[Volume]:
        return iter(self.volumes)

    def __len__(self) -> int:
        return len(self.volumes)

    def volume(self, name: str) -> Optional[Volume]:
        for volume in self.volumes:
            if volume.name == name:
                return volume
        return None

    @property
    def volume_names(self) -> list[str]:
        return [volume.name for volume in self.volumes]

    def to_dict(self) -> dict:
        return {"volumes": [volume.to_dict() for volume in self.volumes]}

    @classmethod
    def from_dict(cls, data: dict) -> "GadgetInfo":
        return cls(volumes=[Volume.from_dict(v) for v in data.get("volumes", [])])
