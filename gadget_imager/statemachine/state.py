"""Build state and the resume metadata persisted after every step."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from gadget_imager.config.settings import DEFAULT_SECTOR_SIZE, METADATA_FILE_NAME
from gadget_imager.domain.models import GadgetInfo
from gadget_imager.storage.exceptions import ResumeError


METADATA_VERSION = 1

_PATH_FIELDS = (
    "workdir",
    "gadget_yaml_path",
    "output_dir",
    "rootfs_source",
    "gadget_source",
)


@dataclass
class BuildState:
    """Everything steps hand to each other.

    Workspace directories are derived from ``workdir``; everything else is
    filled in by the steps as the build progresses.
    """

    workdir: Optional[Path] = None
    gadget_yaml_path: Optional[Path] = None
    gadget: Optional[GadgetInfo] = None
    is_seeded: bool = False
    rootfs_size: int = 0
    image_sizes: dict[str, int] = field(default_factory=dict)
    volume_order: list[str] = field(default_factory=list)
    sector_size: int = DEFAULT_SECTOR_SIZE
    volume_names: dict[str, str] = field(default_factory=dict)
    output_dir: Optional[Path] = None
    series: Optional[str] = None
    architecture: Optional[str] = None
    rootfs_source: Optional[Path] = None
    gadget_source: Optional[Path] = None
    rootfs_volume_name: Optional[str] = None
    rootfs_partition_number: int = -1
    boot_partition_number: int = -1
    steps_taken: int = 0
    current_step: str = ""

    @property
    def rootfs_dir(self) -> Path:
        return self.workdir / "root"

    @property
    def unpack_dir(self) -> Path:
        return self.workdir / "unpack"

    @property
    def gadget_dir(self) -> Path:
        return self.unpack_dir / "gadget"

    @property
    def volumes_dir(self) -> Path:
        return self.workdir / "volumes"

    @property
    def scratch_dir(self) -> Path:
        return self.workdir / "scratch"

    @property
    def chroot_dir(self) -> Path:
        return self.workdir / "chroot"

    def workspace_dirs(self) -> list[Path]:
        return [
            self.rootfs_dir,
            self.unpack_dir,
            self.volumes_dir,
            self.scratch_dir,
        ]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for name in _PATH_FIELDS:
            value = getattr(self, name)
            data[name] = str(value) if value is not None else None
        data["gadget"] = self.gadget.to_dict() if self.gadget is not None else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BuildState":
        data = dict(data)
        for name in _PATH_FIELDS:
            if data.get(name) is not None:
                data[name] = Path(data[name])
        if data.get("gadget") is not None:
            data["gadget"] = GadgetInfo.from_dict(data["gadget"])
        return cls(**data)


@dataclass
class ResumeMetadata:
    """Progress of a run: its step list, what completed, and the state."""

    variant: str
    step_names: list[str]
    completed: list[str] = field(default_factory=list)
    steps_taken: int = 0
    state: BuildState = field(default_factory=BuildState)
    version: int = METADATA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "variant": self.variant,
            "step_names": list(self.step_names),
            "completed": list(self.completed),
            "steps_taken": self.steps_taken,
            "state": self.state.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResumeMetadata":
        return cls(
            variant=data["variant"],
            step_names=list(data["step_names"]),
            completed=list(data.get("completed", [])),
            steps_taken=int(data["steps_taken"]),
            state=BuildState.from_dict(data["state"]),
            version=int(data.get("version", METADATA_VERSION)),
        )


def metadata_path(workdir: Path) -> Path:
    return Path(workdir) / METADATA_FILE_NAME


def write_metadata(ops, workdir: Path, metadata: ResumeMetadata) -> Path:
    """Persist metadata, replacing the previous file atomically."""
    path = metadata_path(workdir)
    ops.write_text(path, json.dumps(metadata.to_dict(), indent=2, sort_keys=True))
    return path


def read_metadata(ops, workdir: Path) -> ResumeMetadata:
    path = metadata_path(workdir)
    if not ops.exists(path):
        raise ResumeError(str(path), "no prior run found in this workdir")
    try:
        data = json.loads(ops.read_text(path))
    except (OSError, ValueError) as error:
        raise ResumeError(str(path), f"metadata cannot be read: {error}") from error
    try:
        metadata = ResumeMetadata.from_dict(data)
    except (KeyError, TypeError, ValueError) as error:
        raise ResumeError(str(path), f"metadata is incomplete: {error}") from error
    if metadata.version != METADATA_VERSION:
        raise ResumeError(
            str(path), f"unsupported metadata version {metadata.version}"
        )
    return metadata


def check_compatible(
    metadata: ResumeMetadata, variant: str, step_names: list[str], path: Path
) -> None:
    """The recorded run must have the same variant and step list."""
    if metadata.variant != variant:
        raise ResumeError(
            str(path), f"previous run was a {metadata.variant} build, not {variant}"
        )
    if metadata.step_names != list(step_names):
        raise ResumeError(str(path), "the step list of the previous run differs from this one")
    if metadata.steps_taken > len(step_names):
        raise ResumeError(
            str(path), f"{metadata.steps_taken} steps recorded but only {len(step_names)} exist"
        )
