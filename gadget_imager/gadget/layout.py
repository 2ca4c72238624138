"""Partition layout computation.

Offsets are computed in declaration order. A structure without an explicit
offset follows the previous one, except the first structure that is not the
MBR region, which defaults to 1 MiB. Sizes are only ever raised.
"""

from __future__ import annotations

import math
from typing import Optional

from gadget_imager.config.settings import (
    DEFAULT_FIRST_STRUCTURE_OFFSET,
    ROOTFS_GROWTH_FACTOR,
    ROOTFS_PADDING,
)
from gadget_imager.domain.models import (
    SYSTEM_BOOT_LABEL,
    GadgetInfo,
    Role,
    Schema,
    Structure,
    Volume,
)
from gadget_imager.gadget.loader import parse_size
from gadget_imager.logging import LoggerFactory
from gadget_imager.storage.exceptions import ConfigurationError, LayoutError


log = LoggerFactory.for_gadget()

GPT_ENTRY_COUNT = 128
GPT_ENTRY_SIZE = 128
GPT_ENTRIES_BYTES = GPT_ENTRY_COUNT * GPT_ENTRY_SIZE


def align_up(value: int, alignment: int) -> int:
    return -(-value // alignment) * alignment


def compute_offsets(volume: Volume, sector_size: int = 512) -> int:
    """Place every structure of the volume and return the farthest offset.

    Running it again on an unmodified volume gives identical results.
    """
    farthest = 0
    previous_end = 0
    seen_non_mbr = False
    placed: list[Structure] = []

    for structure in volume.structures:
        if structure.offset is not None:
            start = structure.offset
        elif structure.role == Role.MBR:
            start = 0
        elif not seen_non_mbr:
            start = max(previous_end, DEFAULT_FIRST_STRUCTURE_OFFSET)
        else:
            start = previous_end
        if structure.offset is None and structure.is_partition:
            start = align_up(start, sector_size)
        if structure.role != Role.MBR:
            seen_non_mbr = True

        end = start + structure.size
        for other in placed:
            if structure.size and other.size and start < other.end and other.start_offset < end:
                raise LayoutError(
                    volume.name,
                    f"structure {structure.display_name} ({start}-{end}) overlaps "
                    f"structure {other.display_name} ({other.start_offset}-{other.end})",
                )
        structure.start_offset = start
        placed.append(structure)
        previous_end = end
        farthest = max(farthest, end)

    return farthest


def minimum_volume_size(volume: Volume) -> int:
    """Farthest structure end, assuming offsets are computed."""
    return max((structure.end for structure in volume.structures), default=0)


def calculate_rootfs_size(content_bytes: int, sector_size: int = 512) -> int:
    """Filesystem size needed for ``content_bytes`` of rootfs content."""
    size = math.ceil(content_bytes * ROOTFS_GROWTH_FACTOR) + ROOTFS_PADDING
    return align_up(size, sector_size)


def raise_structure_sizes(structure: Structure, size: int) -> None:
    """Raise size and min-size to at least ``size``."""
    if structure.min_size < size:
        structure.min_size = size
    if structure.size < size:
        structure.size = size


def resolve_rootfs_size(
    gadget: GadgetInfo,
    content_bytes: int,
    image_sizes: Optional[dict[str, int]] = None,
    sector_size: int = 512,
) -> int:
    """Size the rootfs structure(s) and return the resolved rootfs size.

    When an image size is requested for a volume whose last structure is the
    rootfs, the rootfs grows to fill the requested size. A request too small
    for the content is only a warning; the computed size is kept.
    """
    image_sizes = image_sizes or {}
    rootfs_size = calculate_rootfs_size(content_bytes, sector_size)
    resolved = rootfs_size

    for volume in gadget:
        for structure in volume.structures:
            if structure.is_rootfs or structure.size == 0:
                raise_structure_sizes(structure, rootfs_size)
        farthest = compute_offsets(volume, sector_size)

        requested = image_sizes.get(volume.name)
        rootfs = volume.rootfs
        if requested is None or rootfs is None:
            continue
        if requested < farthest:
            log.warning(
                f"Requested image size {requested} for volume {volume.name} is smaller "
                f"than the minimum required size {farthest}; using {farthest}"
            )
            continue
        if volume.structures[-1] is rootfs:
            available = (requested - rootfs.start_offset) // sector_size * sector_size
            if available > rootfs.size:
                log.debug(
                    f"Growing rootfs of volume {volume.name} from {rootfs.size} "
                    f"to {available} bytes to fill the requested image size"
                )
                raise_structure_sizes(rootfs, available)
                compute_offsets(volume, sector_size)
        resolved = max(resolved, rootfs.size)

    return resolved


def parse_image_sizes(value: Optional[str], volume_order: list[str]) -> dict[str, int]:
    """Parse ``--image-size``: ``SIZE`` or ``VOL:SIZE[,VOL:SIZE...]``.

    VOL is a volume name or its index in declaration order.
    """
    if not value:
        return {}
    try:
        if ":" not in value:
            size = parse_size(value)
            return {name: size for name in volume_order}

        sizes: dict[str, int] = {}
        for entry in value.split(","):
            parts = entry.split(":")
            if len(parts) != 2:
                raise ConfigurationError(
                    f"Argument to --image-size {entry} is not in the correct format"
                )
            volume, size_text = parts
            size = parse_size(size_text)
            if volume.isdigit():
                index = int(volume)
                if index >= len(volume_order):
                    raise ConfigurationError(f"Volume index {index} is out of range")
                sizes[volume_order[index]] = size
            elif volume in volume_order:
                sizes[volume] = size
            else:
                raise ConfigurationError(f"Volume {volume} does not exist in gadget.yaml")
        return sizes
    except ValueError as error:
        raise ConfigurationError(
            f"Failed to parse argument to --image-size: {error}"
        ) from error


def partition_table_overhead(schema: Schema, sector_size: int) -> int:
    """Bytes the partition table needs after the last structure."""
    if schema == Schema.MBR:
        return 0
    # backup entry array followed by the backup header
    return align_up(GPT_ENTRIES_BYTES, sector_size) + sector_size


def gpt_primary_end(sector_size: int) -> int:
    """End of the protective MBR, primary header and primary entry array."""
    return 2 * sector_size + align_up(GPT_ENTRIES_BYTES, sector_size)


def should_skip_structure(structure: Structure, is_seeded: bool) -> bool:
    """Seeded images leave boot, data and save partitions to first boot."""
    return is_seeded and (
        structure.role in (Role.SYSTEM_BOOT, Role.SYSTEM_DATA, Role.SYSTEM_SAVE)
        or structure.label == SYSTEM_BOOT_LABEL
    )


def resolve_offset_write_location(volume: Volume, structure: Structure) -> int:
    """Absolute byte location of the structure's offset-write patch."""
    offset_write = structure.offset_write
    if offset_write is None:
        raise LayoutError(volume.name, f"structure {structure.display_name} has no offset-write")
    base = 0
    if offset_write.relative_to:
        reference = volume.structure(offset_write.relative_to)
        if reference is None:
            raise LayoutError(
                volume.name,
                f"offset-write of {structure.display_name} refers to unknown structure "
                f"{offset_write.relative_to}",
            )
        base = reference.start_offset
    return base + offset_write.offset
