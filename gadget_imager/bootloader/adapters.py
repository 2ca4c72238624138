"""Bootloader specific content handling.

Some boot chains expect files at fixed locations: signed shims have their
search path baked in, and the lk bootloader reads its environment from the
gadget tree. The helpers here move that content into place before the
partition images are built.
"""

from __future__ import annotations

from pathlib import Path

from gadget_imager.domain.models import Volume
from gadget_imager.logging import LoggerFactory
from gadget_imager.storage.exceptions import BootloaderError


log = LoggerFactory.for_bootloader()

LK_BOOTLOADER = "lk"

# Vendor boot content shipped in the unpacked image, per bootloader
BOOT_CONTENT_DIRS = {
    "u-boot": Path("image") / "boot" / "uboot",
    "piboot": Path("image") / "boot" / "piboot",
    "grub": Path("image") / "boot" / "grub",
}

# Where the signed boot chain looks for relocated content, relative to the
# structure directory
BOOT_CONTENT_TARGETS = {
    "grub": Path("EFI") / "ubuntu",
}


def handle_lk_bootloader(volume: Volume, unpack_dir: Path, ops) -> bool:
    """Copy the lk boot files (disk-info blob included) into the gadget tree.

    Returns whether anything was done; volumes with another bootloader are
    left alone.
    """
    if volume.bootloader != LK_BOOTLOADER:
        return False

    boot_dir = Path(unpack_dir) / "image" / "boot" / "lk"
    gadget_dir = Path(unpack_dir) / "gadget"
    if not ops.is_dir(boot_dir):
        raise BootloaderError(
            LK_BOOTLOADER,
            f"got lk bootloader but bootloader directory {boot_dir} does not exist",
        )

    for entry in ops.list_dir(boot_dir):
        try:
            ops.copy_into(boot_dir / entry, gadget_dir)
        except OSError as error:
            raise BootloaderError(
                LK_BOOTLOADER, f"Error copying lk bootloader file {entry}: {error}"
            ) from error
    log.debug(f"Copied lk boot files from {boot_dir} into {gadget_dir}")
    return True


def relocate_boot_content(volume: Volume, unpack_dir: Path, target_dir: Path, ops) -> bool:
    """Move vendor boot content where the signed boot chain expects it.

    A missing vendor directory is fine, there is simply nothing to move.
    """
    bootloader = volume.bootloader or ""
    relative = BOOT_CONTENT_DIRS.get(bootloader)
    if relative is None:
        return False

    boot_dir = Path(unpack_dir) / relative
    if not ops.is_dir(boot_dir):
        log.debug(f"No {bootloader} boot content in {boot_dir}")
        return False

    destination = Path(target_dir) / BOOT_CONTENT_TARGETS.get(bootloader, Path())
    try:
        ops.makedirs(destination)
    except OSError as error:
        raise BootloaderError(
            bootloader, f"Error creating boot content directory {destination}: {error}"
        ) from error

    for entry in ops.list_dir(boot_dir):
        try:
            ops.move(boot_dir / entry, destination / entry)
        except OSError as error:
            raise BootloaderError(
                bootloader, f"Error moving {boot_dir / entry} to {destination}: {error}"
            ) from error
    log.info(f"Relocated {bootloader} boot content into {destination}")
    return True
