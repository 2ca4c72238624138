"""Custom exceptions for image building operations.

This module defines a hierarchy of exceptions so that every failure names the
sub-operation that produced it, and the state machine can add the step name.

Exception Hierarchy:
    ImagerError (base)
        ├── ConfigurationError
        ├── ResumeError
        ├── GadgetError
        ├── LayoutError
        ├── PlacementError
        │   ├── ZeroFillError
        │   ├── BlobCopyError
        │   ├── FormatError
        │   └── ContentCopyError
        ├── BootloaderError
        ├── DiskImageError
        │   ├── ImageCreationError
        │   ├── PartitionTableError
        │   ├── DiskIdError
        │   ├── DataCopyError
        │   └── OffsetWriteError
        ├── CommandError
        ├── StepError
        └── TeardownError

Usage:
    from gadget_imager.storage.exceptions import LayoutError

    if start < previous_end:
        raise LayoutError(volume.name, f"structure {name} overlaps {other}")
"""

from __future__ import annotations

from typing import Optional, Sequence


class ImagerError(Exception):
    """Base exception for all image building operations."""


class ConfigurationError(ImagerError):
    """Conflicting or invalid options."""


class ResumeError(ImagerError):
    """Resume metadata is missing or does not match this run."""

    def __init__(self, metadata_path: str, reason: str):
        self.metadata_path = metadata_path
        self.reason = reason
        super().__init__(f"Cannot resume from {metadata_path}: {reason}")


class GadgetError(ImagerError):
    """The gadget description could not be loaded or is invalid."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid gadget description {path}: {reason}")


class LayoutError(ImagerError):
    """Structures of a volume cannot be laid out."""

    def __init__(self, volume: str, reason: str):
        self.volume = volume
        self.reason = reason
        super().__init__(f"Invalid layout for volume {volume}: {reason}")


class PlacementError(ImagerError):
    """Base exception for partition image preparation."""

    operation = "prepare"

    def __init__(self, structure: str, path: str, reason: str):
        self.structure = structure
        self.path = path
        self.reason = reason
        super().__init__(
            f"Error {self.operation} for structure {structure} ({path}): {reason}"
        )


class ZeroFillError(PlacementError):
    """Creating the zero-filled image of a structure failed."""

    operation = "zeroing partition"


class BlobCopyError(PlacementError):
    """Copying a raw content blob into a structure image failed."""

    operation = "copying image blob"


class FormatError(PlacementError):
    """Creating a filesystem for a structure failed."""

    operation = "running mkfs"


class ContentCopyError(PlacementError):
    """Copying filesystem content into a structure directory failed."""

    operation = "copying content"


class BootloaderError(ImagerError):
    """Bootloader specific content handling or installation failed."""

    def __init__(self, bootloader: str, reason: str):
        self.bootloader = bootloader
        self.reason = reason
        super().__init__(f"Error handling {bootloader} bootloader: {reason}")


class DiskImageError(ImagerError):
    """Base exception for disk image assembly."""

    operation = "assembling disk image"

    def __init__(self, image_path: str, reason: str):
        self.image_path = image_path
        self.reason = reason
        super().__init__(f"Error {self.operation} {image_path}: {reason}")


class ImageCreationError(DiskImageError):
    """Creating the raw disk file failed."""

    operation = "creating disk image"


class PartitionTableError(DiskImageError):
    """Writing the partition table failed."""

    operation = "writing partition table to"


class DiskIdError(DiskImageError):
    """Generating or writing the MBR disk signature failed."""

    operation = "writing disk ID to"


class DataCopyError(DiskImageError):
    """Copying partition images into the disk image failed."""

    operation = "copying partition data into"


class OffsetWriteError(DiskImageError):
    """Patching an offset-write reference failed."""

    operation = "writing offset values into"


class CommandError(ImagerError):
    """An external command exited unsuccessfully."""

    def __init__(
        self,
        argv: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
    ):
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = stderr.strip() or stdout.strip() or f"exit status {returncode}"
        super().__init__(f"Command failed ({' '.join(self.argv)}): {message}")


class StepError(ImagerError):
    """A step of the state machine failed."""

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"Step {step} failed: {cause}")


class TeardownError(ImagerError):
    """Releasing resources failed, possibly on top of a run failure."""

    def __init__(
        self, errors: Sequence[BaseException], cause: Optional[BaseException] = None
    ):
        self.errors = list(errors)
        self.cause = cause
        parts = [str(error) for error in self.errors]
        if cause is not None:
            parts.insert(0, str(cause))
        super().__init__("; ".join(parts) or "Teardown failed")
