"""Gadget description loading and validation.

The gadget description (``meta/gadget.yaml``) declares one or more volumes,
each with an ordered list of structures. Volumes are kept in declaration
order; ``--image-size`` entries given by index rely on it.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml

from gadget_imager.config import settings
from gadget_imager.domain.models import (
    ROOTFS_NAME,
    ROOTFS_TYPE,
    SEED_LABEL,
    SYSTEM_BOOT_LABEL,
    GadgetInfo,
    OffsetWrite,
    Role,
    Schema,
    Structure,
    Volume,
    VolumeContent,
)
from gadget_imager.logging import LoggerFactory
from gadget_imager.storage.exceptions import GadgetError, ImagerError


log = LoggerFactory.for_gadget()

_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([KMGT]?)(i?B)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "K": 1 << 10, "M": 1 << 20, "G": 1 << 30, "T": 1 << 40}

# The MBR region holds boot code only, the partition table starts at byte 446
MBR_CODE_SIZE = 446

ROOTFS_PREFIX = "rootfs:"


def parse_size(value: Any) -> int:
    """Parse a size such as ``440``, ``512K``, ``50M`` or ``4G`` into bytes."""
    if isinstance(value, bool):
        raise ValueError(f"invalid size {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"negative size {value}")
        return value
    match = _SIZE_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"invalid size {value!r}")
    number, unit, _ = match.groups()
    return int(number) * _SIZE_UNITS[unit.upper()]


def parse_offset_write(value: Any) -> OffsetWrite:
    """Parse ``name+N`` or a plain offset."""
    text = str(value)
    if "+" in text:
        name, offset = text.split("+", 1)
        if not name:
            raise ValueError(f"invalid offset-write {value!r}")
        return OffsetWrite(offset=parse_size(offset), relative_to=name)
    return OffsetWrite(offset=parse_size(text))


def load_gadget_yaml(path: Path) -> GadgetInfo:
    """Read and validate a gadget description file."""
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as error:
        raise GadgetError(str(path), f"cannot read file: {error}") from error
    return parse_gadget(raw, str(path))


def parse_gadget(raw: Any, origin: str = "<gadget>") -> GadgetInfo:
    """Build the volume model from the parsed document."""
    if not isinstance(raw, dict) or not isinstance(raw.get("volumes"), dict):
        raise GadgetError(origin, "no volumes declared")
    volumes_raw = raw["volumes"]
    if not volumes_raw:
        raise GadgetError(origin, "no volumes declared")

    gadget = GadgetInfo()
    # PyYAML keeps mapping order, which is the declaration order
    for name, body in volumes_raw.items():
        try:
            volume = _parse_volume(str(name), body or {})
        except (ValueError, TypeError, KeyError) as error:
            raise GadgetError(origin, f"volume {name}: {error}") from error
        gadget.volumes.append(volume)

    validate_gadget(gadget, origin)
    return gadget


def _parse_volume(name: str, body: dict) -> Volume:
    schema_value = body.get("schema") or Schema.GPT.value
    try:
        schema = Schema(schema_value)
    except ValueError:
        raise ValueError(f"unsupported schema {schema_value!r}") from None
    structures = [
        _parse_structure(index, entry or {})
        for index, entry in enumerate(body.get("structure") or [])
    ]
    return Volume(
        name=name,
        schema=schema,
        bootloader=body.get("bootloader"),
        structures=structures,
    )


def _parse_structure(index: int, entry: dict) -> Structure:
    role_value = entry.get("role") or ""
    try:
        role = Role(role_value)
    except ValueError:
        raise ValueError(f"structure #{index} has unsupported role {role_value!r}") from None

    structure_type = entry.get("type")
    if structure_type is None and role == Role.MBR:
        structure_type = "mbr"
    if structure_type is None:
        raise ValueError(f"structure #{index} has no type")
    structure_type = str(structure_type)
    if structure_type == "mbr":
        # legacy spelling of the MBR region
        role = Role.MBR

    size = parse_size(entry["size"]) if entry.get("size") is not None else 0
    min_size = parse_size(entry["min-size"]) if entry.get("min-size") is not None else size
    if not size:
        size = min_size
    if size < min_size:
        raise ValueError(f"structure #{index} size is smaller than its min-size")

    content = []
    for item in entry.get("content") or []:
        content.append(
            VolumeContent(
                image=item.get("image"),
                offset=parse_size(item["offset"]) if item.get("offset") is not None else None,
                size=parse_size(item["size"]) if item.get("size") is not None else None,
                source=item.get("source"),
                target=item.get("target"),
            )
        )

    name = entry.get("name") or ""

    offset_write = entry.get("offset-write")
    return Structure(
        name=str(name),
        type=structure_type,
        role=role,
        offset=parse_size(entry["offset"]) if entry.get("offset") is not None else None,
        min_size=min_size,
        size=size,
        content=content,
        filesystem=entry.get("filesystem"),
        label=entry.get("filesystem-label"),
        offset_write=parse_offset_write(offset_write) if offset_write is not None else None,
        yaml_index=index,
    )


def validate_gadget(gadget: GadgetInfo, origin: str = "<gadget>") -> None:
    """Check role, type, offset, size and content consistency."""
    if not gadget.volumes:
        raise GadgetError(origin, "no volumes declared")

    seed_volumes = [volume.name for volume in gadget if volume.has_seed]
    if len(seed_volumes) > 1:
        raise GadgetError(
            origin,
            f"system-seed declared in more than one volume: {', '.join(seed_volumes)}",
        )

    for volume in gadget:
        names: set[str] = set()
        for structure in volume.structures:
            where = f"volume {volume.name} structure {structure.display_name}"
            if structure.name:
                if structure.name in names:
                    raise GadgetError(origin, f"{where}: duplicate structure name")
                names.add(structure.name)

            if structure.role == Role.MBR:
                if structure.offset not in (None, 0):
                    raise GadgetError(origin, f"{where}: mbr structure must start at offset 0")
                if structure.size > MBR_CODE_SIZE:
                    raise GadgetError(
                        origin, f"{where}: mbr structure cannot exceed {MBR_CODE_SIZE} bytes"
                    )
                if structure.has_filesystem:
                    raise GadgetError(origin, f"{where}: mbr structure cannot have a filesystem")

            if structure.size == 0 and not structure.is_rootfs:
                raise GadgetError(origin, f"{where}: size is required")

            for content in structure.content:
                if structure.has_filesystem:
                    if content.is_blob or not content.source or not content.target:
                        raise GadgetError(
                            origin,
                            f"{where}: filesystem content needs source and target",
                        )
                elif not content.is_blob or content.source or content.target:
                    raise GadgetError(
                        origin, f"{where}: raw content needs an image and no source/target"
                    )
                if content.source and "../" in content.source:
                    raise GadgetError(
                        origin,
                        f'filesystem content source "{content.source}" contains "../". '
                        "This is disallowed for security purposes",
                    )

            if structure.offset_write and structure.offset_write.relative_to:
                if volume.structure(structure.offset_write.relative_to) is None:
                    raise GadgetError(
                        origin,
                        f"{where}: offset-write refers to unknown structure "
                        f"{structure.offset_write.relative_to}",
                    )


def post_process_gadget(
    gadget: GadgetInfo,
    *,
    unpack_dir: Path,
    rootfs_dir: Path,
) -> bool:
    """Apply build specific adjustments to a freshly loaded gadget.

    Returns whether the layout is seeded.
    """
    is_seeded = False
    rootfs_seen = False
    relative_rootfs = os.path.relpath(rootfs_dir, unpack_dir / "gadget")

    for volume in gadget:
        for index, structure in enumerate(volume.structures):
            if structure.role == Role.NONE and structure.label == SYSTEM_BOOT_LABEL:
                log.warning(
                    f"volumes:{volume.name}:structure:{index}:filesystem_label "
                    "used for defining partition roles; use role instead"
                )
            elif structure.role == Role.SYSTEM_DATA:
                rootfs_seen = True
            elif structure.role == Role.SYSTEM_SEED:
                is_seeded = True
                if not structure.label:
                    structure.label = SEED_LABEL

            if structure.role == Role.SYSTEM_BOOT or structure.label == SYSTEM_BOOT_LABEL:
                # rootfs:<path> lets boot partitions source files from the staged rootfs
                for content in structure.content:
                    if content.source and ROOTFS_PREFIX in content.source:
                        content.source = content.source.replace(
                            ROOTFS_PREFIX, relative_rootfs
                        )

    if not rootfs_seen and not is_seeded and len(gadget) == 1:
        volume = gadget.volumes[0]
        log.debug(f"Adding implicit rootfs structure to volume {volume.name}")
        volume.structures.append(
            Structure(
                name="",
                type=ROOTFS_TYPE,
                role=Role.SYSTEM_DATA,
                filesystem="ext4",
                label=ROOTFS_NAME,
                yaml_index=len(volume.structures),
            )
        )
    return is_seeded


def preserve_unpack(unpack_dir: Path, ops) -> Optional[Path]:
    """Mirror the unpack tree for debugging when requested. Never fatal."""
    destination = settings.preserve_unpack_dir()
    if destination is None:
        return None
    try:
        ops.makedirs(destination)
        ops.copy_into(unpack_dir, destination)
    except (OSError, ImagerError) as error:
        log.warning(f"Could not preserve unpack directory to {destination}: {error}")
        return None
    log.info(f"Preserved unpack directory in {destination}")
    return destination
