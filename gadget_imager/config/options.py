"""Parsed command line options shared by every build variant."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from gadget_imager.config.settings import DEFAULT_SECTOR_SIZE


@dataclass
class CommonOptions:
    debug: bool = False
    verbose: bool = False
    quiet: bool = False
    output_dir: Optional[Path] = None
    image_size: Optional[str] = None
    disk_info: Optional[Path] = None
    sector_size: int = DEFAULT_SECTOR_SIZE
    dry_run: bool = False


@dataclass
class StateMachineOptions:
    workdir: Optional[Path] = None
    until: Optional[str] = None
    thru: Optional[str] = None
    resume: bool = False


@dataclass
class SnapOptions:
    model_assertion: Optional[Path] = None
    channel: Optional[str] = None
    snaps: list[str] = field(default_factory=list)
    prepare_command: str = "snap"


@dataclass
class PackOptions:
    artifact_type: str = "raw"
    gadget_dir: Optional[Path] = None
    rootfs_dir: Optional[Path] = None
