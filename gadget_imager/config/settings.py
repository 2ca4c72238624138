"""Build constants and environment overrides."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional


METADATA_FILE_NAME = "gadget-imager.json"
GADGET_YAML_PATH_IN_TREE = Path("meta") / "gadget.yaml"

MIB = 1024 * 1024
DEFAULT_SECTOR_SIZE = 512
SUPPORTED_SECTOR_SIZES = (512, 4096)

# Default offset of the first non-MBR structure in a volume
DEFAULT_FIRST_STRUCTURE_OFFSET = MIB

# Rootfs sizing: ceil(content * factor) + padding. Empirically tuned, do not change
# without checking images still boot and first-boot resizing still fits.
ROOTFS_GROWTH_FACTOR = 1.5
ROOTFS_PADDING = 8 * MIB

DEFAULT_MKFS_BASE = Path("/etc/gadget-imager/mkfs")

PRESERVE_UNPACK_ENV = "GADGET_IMAGER_PRESERVE_UNPACK"
MKFS_BASE_ENV = "GADGET_IMAGER_MKFS_BASE"


def preserve_unpack_dir() -> Optional[Path]:
    """Directory the unpack tree is mirrored to for debugging, if requested."""
    value = os.environ.get(PRESERVE_UNPACK_ENV)
    return Path(value) if value else None


def mkfs_base_dir() -> Path:
    """Root of the per-series mkfs configuration files."""
    value = os.environ.get(MKFS_BASE_ENV)
    return Path(value) if value else DEFAULT_MKFS_BASE
