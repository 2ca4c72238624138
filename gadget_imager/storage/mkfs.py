"""Filesystem creation for partition images."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from gadget_imager.config import settings
from gadget_imager.logging import LoggerFactory


log = LoggerFactory.for_placement()

MKE2FS_CONFIG_FILE = "mke2fs.conf"
MKE2FS_CONFIG_ENV = "MKE2FS_CONFIG"

EXT_FILESYSTEMS = ("ext4", "ext3", "ext2")
VFAT_FILESYSTEMS = ("vfat", "vfat-32", "vfat-16")


def is_supported(filesystem: str) -> bool:
    return filesystem in EXT_FILESYSTEMS or filesystem in VFAT_FILESYSTEMS


def select_mke2fs_config(series: Optional[str], ops) -> dict[str, str]:
    """Child environment selecting the series specific mke2fs configuration.

    The process environment is left alone so overlapping builds cannot see
    each other's choice.
    """
    if not series:
        return {}
    config = settings.mkfs_base_dir() / series / MKE2FS_CONFIG_FILE
    if not ops.exists(config):
        log.warning(
            f"No mkfs configuration found for this series: {series}. "
            "Will fallback on the default one."
        )
        return {}
    log.debug(f"Using mkfs configuration {config}")
    return {MKE2FS_CONFIG_ENV: str(config)}


def ext_argv(
    filesystem: str,
    image: Path,
    label: Optional[str],
    size: int,
    sector_size: int,
    content_root: Optional[Path] = None,
) -> list[str]:
    argv = [f"mkfs.{filesystem}", "-T", "default"]
    if filesystem == "ext4":
        argv += ["-O", "^metadata_csum"]
    if sector_size != 512:
        argv += ["-b", str(sector_size)]
    if label:
        argv += ["-L", label]
    if content_root is not None:
        argv += ["-d", str(content_root)]
    argv += [str(image), f"{size // 1024}K"]
    return argv


def vfat_argv(filesystem: str, image: Path, label: Optional[str], sector_size: int) -> list[str]:
    fat_bits = "16" if filesystem == "vfat-16" else "32"
    argv = ["mkfs.vfat", "-S", str(sector_size), "-s", "1", "-F", fat_bits]
    if label:
        argv += ["-n", label]
    argv.append(str(image))
    return argv


def make_filesystem(
    ops,
    filesystem: str,
    image: Path,
    *,
    label: Optional[str],
    size: int,
    sector_size: int,
    content_root: Optional[Path] = None,
    series: Optional[str] = None,
) -> None:
    """Format ``image``, pre-populated from ``content_root`` when given."""
    if filesystem in EXT_FILESYSTEMS:
        env = select_mke2fs_config(series, ops)
        ops.run(
            ext_argv(filesystem, image, label, size, sector_size, content_root),
            env=env or None,
        )
        return

    if filesystem in VFAT_FILESYSTEMS:
        ops.run(vfat_argv(filesystem, image, label, sector_size))
        if content_root is None:
            return
        for entry in ops.list_dir(content_root):
            ops.run(["mcopy", "-s", "-i", str(image), str(Path(content_root) / entry), "::"])
        return

    raise ValueError(f"unsupported filesystem {filesystem!r}")
