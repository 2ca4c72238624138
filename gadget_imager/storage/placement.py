"""Partition image preparation.

Each structure of a volume becomes ``volumes/<volume>/part<N>.img``. Structures
without a filesystem are zero-filled and receive their raw blobs; structures
with one are formatted, pre-populated from their content directory.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from gadget_imager.domain.models import Role, Structure, Volume, VolumeContent
from gadget_imager.gadget.layout import should_skip_structure
from gadget_imager.logging import LoggerFactory
from gadget_imager.storage import mkfs
from gadget_imager.storage.exceptions import (
    BlobCopyError,
    ContentCopyError,
    FormatError,
    ImagerError,
    ZeroFillError,
)


log = LoggerFactory.for_placement()


def part_name(index: int) -> str:
    return f"part{index}"


def part_image_path(volumes_dir: Path, volume_name: str, index: int) -> Path:
    return Path(volumes_dir) / volume_name / f"{part_name(index)}.img"


def content_root_for(
    structure: Structure, index: int, volume_name: str, volumes_dir: Path, rootfs_dir: Path
) -> Path:
    """Directory holding the files that go into a structure's filesystem."""
    if structure.role in (Role.SYSTEM_DATA, Role.SYSTEM_SEED):
        return Path(rootfs_dir)
    return Path(volumes_dir) / volume_name / part_name(index)


def copy_structure_no_fs(
    ops, structure: Structure, gadget_dir: Path, part_img: Path
) -> None:
    """Zero-fill the structure image, then place each raw blob."""
    try:
        ops.zero_fill(part_img, structure.size)
    except (OSError, ImagerError) as error:
        raise ZeroFillError(structure.display_name, str(part_img), str(error)) from error

    running_offset = 0
    for content in structure.content:
        if content.offset is not None:
            running_offset = content.offset
        running_offset += _copy_blob(ops, structure, content, gadget_dir, part_img, running_offset)


def _copy_blob(
    ops,
    structure: Structure,
    content: VolumeContent,
    gadget_dir: Path,
    part_img: Path,
    offset: int,
) -> int:
    blob = Path(gadget_dir) / content.image
    try:
        blob_size = content.size if content.size is not None else ops.file_size(blob)
        if offset + blob_size > structure.size:
            raise BlobCopyError(
                structure.display_name,
                str(part_img),
                f"{content.image} ({blob_size} bytes at offset {offset}) does not fit "
                f"in {structure.size} bytes",
            )
        log.debug(f"Copying {content.image} into {structure.display_name} at offset {offset}")
        ops.copy_blob(
            blob,
            part_img,
            seek=offset,
            count=content.size,
        )
    except BlobCopyError:
        raise
    except (OSError, ImagerError) as error:
        raise BlobCopyError(structure.display_name, str(part_img), str(error)) from error
    return blob_size


def prepare_disk_img(
    ops, structure: Structure, part_img: Path, rootfs_size: int = 0
) -> None:
    """Create the image a filesystem gets written into.

    The rootfs image is created at its final size directly; other images are
    zero-filled to the structure size.
    """
    try:
        if structure.is_rootfs:
            ops.create_sparse(part_img, max(structure.size, rootfs_size))
        else:
            ops.zero_fill(part_img, structure.size)
    except (OSError, ImagerError) as error:
        raise ZeroFillError(structure.display_name, str(part_img), str(error)) from error


def has_content(ops, structure: Structure, content_root: Path) -> bool:
    return bool(structure.content) or bool(ops.list_dir(content_root))


def make_fs(
    ops,
    structure: Structure,
    content_root: Path,
    part_img: Path,
    *,
    sector_size: int,
    series: Optional[str] = None,
    size: Optional[int] = None,
) -> None:
    """Format the image; with content in one pass when there is any."""
    with_content = has_content(ops, structure, content_root)
    try:
        mkfs.make_filesystem(
            ops,
            structure.filesystem,
            part_img,
            label=structure.label,
            size=size or structure.size,
            sector_size=sector_size,
            content_root=content_root if with_content else None,
            series=series,
        )
    except (OSError, ValueError, ImagerError) as error:
        action = "with content" if with_content else "without content"
        raise FormatError(
            structure.display_name, str(part_img), f"mkfs {action} failed: {error}"
        ) from error


def copy_structure_content(
    ops,
    structure: Structure,
    *,
    gadget_dir: Path,
    content_root: Path,
    part_img: Path,
    sector_size: int,
    rootfs_size: int = 0,
    series: Optional[str] = None,
) -> None:
    if not structure.has_filesystem:
        copy_structure_no_fs(ops, structure, gadget_dir, part_img)
        return
    prepare_disk_img(ops, structure, part_img, rootfs_size)
    size = max(structure.size, rootfs_size) if structure.is_rootfs else structure.size
    make_fs(
        ops,
        structure,
        content_root,
        part_img,
        sector_size=sector_size,
        series=series,
        size=size,
    )


def populate_filesystem_content(
    ops, structure: Structure, gadget_dir: Path, target_dir: Path
) -> None:
    """Copy the structure's ``source -> target`` mappings into ``target_dir``.

    A source ending in ``/`` copies the directory's entries; a target ending in
    ``/`` receives the source inside it; otherwise the source is copied to the
    exact target path.
    """
    ops.makedirs(target_dir)
    for content in structure.content:
        if content.source is None or content.target is None:
            continue
        source = Path(gadget_dir) / content.source.lstrip("/")
        target = Path(target_dir) / content.target.lstrip("/")
        if not ops.exists(source):
            raise ContentCopyError(
                structure.display_name,
                str(target_dir),
                f"content source {content.source} not found",
            )
        try:
            if content.source.endswith("/"):
                ops.makedirs(target)
                for entry in ops.list_dir(source):
                    ops.copy_into(source / entry, target)
            elif content.target.endswith("/") or not content.target.lstrip("/"):
                ops.makedirs(target)
                ops.copy_into(source, target)
            else:
                ops.copy_file(source, target)
        except OSError as error:
            raise ContentCopyError(structure.display_name, str(target_dir), str(error)) from error


def prepare_volume_partitions(
    ops,
    volume: Volume,
    *,
    gadget_dir: Path,
    volumes_dir: Path,
    rootfs_dir: Path,
    sector_size: int,
    rootfs_size: int,
    is_seeded: bool,
    series: Optional[str] = None,
) -> None:
    """Create ``part<N>.img`` for every structure the layout policy keeps."""
    ops.makedirs(Path(volumes_dir) / volume.name)
    for index, structure in enumerate(volume.structures):
        if should_skip_structure(structure, is_seeded):
            log.debug(f"Skipping structure {structure.display_name} of volume {volume.name}")
            continue
        if structure.role == Role.MBR and not structure.content:
            continue
        content_root = content_root_for(structure, index, volume.name, volumes_dir, rootfs_dir)
        part_img = part_image_path(volumes_dir, volume.name, index)
        log.info(f"Preparing {part_img.name} for structure {structure.display_name}")
        copy_structure_content(
            ops,
            structure,
            gadget_dir=gadget_dir,
            content_root=content_root,
            part_img=part_img,
            sector_size=sector_size,
            rootfs_size=rootfs_size,
            series=series,
        )
