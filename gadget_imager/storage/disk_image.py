"""Final disk image assembly.

One raw image per volume: sized from the layout (or the requested size),
partitioned, stamped with an MBR disk signature where the schema has one,
filled with the prepared partition images and patched with offset-write
values.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from gadget_imager.domain.models import GadgetInfo, Schema, Volume
from gadget_imager.gadget.layout import (
    align_up,
    minimum_volume_size,
    partition_table_overhead,
    resolve_offset_write_location,
    should_skip_structure,
)
from gadget_imager.logging import LoggerFactory
from gadget_imager.storage.exceptions import (
    DataCopyError,
    DiskIdError,
    ImageCreationError,
    ImagerError,
    LayoutError,
    OffsetWriteError,
)
from gadget_imager.storage.partition_table import (
    generate_partition_table,
    write_partition_table,
)
from gadget_imager.storage.placement import part_image_path


log = LoggerFactory.for_disk()

MBR_DISK_SIGNATURE_OFFSET = 440
DISK_ID_SIZE = 4
DISK_ID_ATTEMPTS = 10
OFFSET_VALUE_SIZE = 4


class DiskIdAllocator:
    """Hands out random MBR disk signatures that never repeat in this process."""

    def __init__(self) -> None:
        self._issued: set[bytes] = set()

    def generate(self, ops, image_path: str = "") -> bytes:
        for _ in range(DISK_ID_ATTEMPTS):
            try:
                candidate = ops.random_bytes(DISK_ID_SIZE)
            except OSError:
                continue
            if len(candidate) != DISK_ID_SIZE or candidate in self._issued:
                continue
            self._issued.add(candidate)
            return candidate
        raise DiskIdError(
            image_path, "Failed to generate unique disk ID. Random generator failure?"
        )


disk_ids = DiskIdAllocator()


@dataclass
class DiskResult:
    images: dict[str, Path] = field(default_factory=dict)
    rootfs_volume_name: Optional[str] = None
    rootfs_partition_number: int = -1
    boot_partition_number: int = -1


def determine_output_directory(
    ops, output_dir: Optional[Path], workdir: Path, clean_workdir: bool
) -> Path:
    """Where images go: the given directory, else CWD or the explicit workdir."""
    if output_dir is None:
        return ops.cwd() if clean_workdir else Path(workdir)
    try:
        ops.makedirs(output_dir)
    except OSError as error:
        raise ImageCreationError(str(output_dir), f"Error creating OutputDir: {error}") from error
    return Path(output_dir)


def calculate_image_size(
    volume: Volume, requested: Optional[int], sector_size: int
) -> int:
    """Disk size for the volume: layout or request, whichever is larger, plus
    the space the partition table needs after the last structure."""
    farthest = minimum_volume_size(volume)
    size = farthest
    if requested is not None:
        if requested < farthest:
            log.warning(
                f"Ignoring image size smaller than minimum required size: "
                f"vol:{volume.name} {requested} < {farthest}"
            )
        else:
            size = requested
    return align_up(size, sector_size) + partition_table_overhead(volume.schema, sector_size)


def create_disk_image(ops, path: Path, size: int) -> None:
    try:
        ops.zero_fill(path, size)
    except (OSError, ImagerError) as error:
        raise ImageCreationError(str(path), str(error)) from error
    log.debug(f"Created {path} ({size} bytes)")


def write_disk_id(ops, path: Path, allocator: Optional[DiskIdAllocator] = None) -> bytes:
    allocator = allocator or disk_ids
    disk_id = allocator.generate(ops, str(path))
    try:
        ops.write_at(path, MBR_DISK_SIGNATURE_OFFSET, disk_id)
    except OSError as error:
        raise DiskIdError(str(path), f"Error writing MBR disk identifier: {error}") from error
    return disk_id


def copy_data_to_image(
    ops,
    volume: Volume,
    image: Path,
    *,
    volumes_dir: Path,
    sector_size: int,
    is_seeded: bool,
) -> None:
    """Block-copy every prepared partition image to its starting sector."""
    for index, structure in enumerate(volume.structures):
        if should_skip_structure(structure, is_seeded):
            continue
        part_img = part_image_path(volumes_dir, volume.name, index)
        if not ops.exists(part_img):
            continue
        seek = structure.start_offset // sector_size
        count = -(-structure.size // sector_size)
        log.debug(
            f"Copying {part_img.name} into {image.name} at sector {seek} ({count} sectors)"
        )
        try:
            ops.copy_blob(part_img, image, seek=seek, block_size=sector_size, count=count)
        except (OSError, ImagerError) as error:
            raise DataCopyError(
                str(image), f"structure {structure.display_name}: {error}"
            ) from error


def write_offset_values(
    ops, volume: Volume, image: Path, sector_size: int, image_size: int
) -> None:
    """Patch each offset-write location with its structure's start sector."""
    for structure in volume.structures:
        if structure.offset_write is None:
            continue
        try:
            location = resolve_offset_write_location(volume, structure)
        except LayoutError as error:
            raise OffsetWriteError(str(image), str(error)) from error
        value = structure.start_offset // sector_size
        if location + OFFSET_VALUE_SIZE > image_size:
            raise OffsetWriteError(
                str(image),
                f"write offset {location} for {structure.display_name} beyond end of file",
            )
        try:
            ops.write_at(image, location, struct.pack("<I", value))
        except (OSError, struct.error) as error:
            raise OffsetWriteError(
                str(image), f"Failed to write offset to disk at {location}: {error}"
            ) from error


def make_disk(
    ops,
    gadget: GadgetInfo,
    *,
    output_dir: Path,
    volumes_dir: Path,
    volume_names: dict[str, str],
    image_sizes: dict[str, int],
    sector_size: int,
    is_seeded: bool,
) -> DiskResult:
    """Assemble one disk image per volume, in declaration order."""
    result = DiskResult()
    for volume in gadget:
        image = Path(output_dir) / volume_names.get(volume.name, f"{volume.name}.img")
        image_size = calculate_image_size(volume, image_sizes.get(volume.name), sector_size)
        log.info(f"Creating disk image {image} for volume {volume.name}")

        create_disk_image(ops, image, image_size)

        table, rootfs_number, boot_number = generate_partition_table(
            volume, sector_size, image_size, is_seeded, ops
        )
        write_partition_table(table, image, ops)

        if volume.schema in (Schema.MBR, Schema.HYBRID):
            write_disk_id(ops, image)

        copy_data_to_image(
            ops,
            volume,
            image,
            volumes_dir=volumes_dir,
            sector_size=sector_size,
            is_seeded=is_seeded,
        )
        write_offset_values(ops, volume, image, sector_size, image_size)

        result.images[volume.name] = image
        if rootfs_number != -1:
            result.rootfs_volume_name = volume.name
            result.rootfs_partition_number = rootfs_number
            result.boot_partition_number = boot_number
    return result
