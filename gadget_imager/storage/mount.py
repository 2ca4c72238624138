"""Mount, bind mount and loop device helpers for chroot work.

Mounts are described by ``MountPoint`` and turned into argument lists; nothing
here runs a command except through the injected system operations.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

from gadget_imager.logging import LoggerFactory
from gadget_imager.storage.exceptions import ConfigurationError
from gadget_imager.storage.release import ReleaseStack


log = LoggerFactory.for_system()

PROC_MOUNTS = "/proc/self/mounts"

# The kernel escapes space, tab, newline and backslash in mount paths as \ooo
_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


@dataclass
class MountPoint:
    source: str
    path: str
    fs_type: str = ""
    options: list[str] = field(default_factory=list)
    bind: bool = False

    def same_as(self, other: "MountPoint") -> bool:
        """Identity as seen by the kernel: source, path and type."""
        return (
            self.source == other.source
            and os.path.normpath(self.path) == os.path.normpath(other.path)
            and self.fs_type == other.fs_type
        )


def mount_argv(mount_point: MountPoint) -> list[str]:
    if mount_point.bind and mount_point.fs_type:
        raise ConfigurationError(
            "invalid mount arguments. Cannot use --bind and -t at the same time."
        )
    argv = ["mount"]
    if mount_point.fs_type:
        argv += ["-t", mount_point.fs_type]
    if mount_point.bind:
        argv.append("--bind")
    argv.append(mount_point.source)
    if mount_point.options:
        argv += ["-o", ",".join(mount_point.options)]
    argv.append(mount_point.path)
    return argv


def umount_argvs(path: str) -> list[list[str]]:
    return [
        ["mount", "--make-rprivate", path],
        ["umount", "--recursive", path],
    ]


def chroot_mount_points(root: Path) -> list[MountPoint]:
    """Pseudo filesystems a chroot needs for package and bootloader tools."""
    return [
        MountPoint("devtmpfs-build", str(root / "dev"), "devtmpfs"),
        MountPoint("devpts-build", str(root / "dev" / "pts"), "devpts", ["nodev", "nosuid"]),
        MountPoint("proc-build", str(root / "proc"), "proc"),
        MountPoint("none", str(root / "sys"), "sysfs"),
        MountPoint("/run", str(root / "run"), bind=True),
    ]


def mount(ops, releases: ReleaseStack, mount_point: MountPoint) -> MountPoint:
    """Mount and register the unmount before anything uses the mount."""
    ops.makedirs(mount_point.path)
    argv = mount_argv(mount_point)
    ops.run(argv)
    releases.push_commands(ops, "mount", mount_point.path, umount_argvs(mount_point.path))
    return mount_point


def unescape_mount_field(value: str) -> str:
    return _OCTAL_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), value)


def is_at_or_below(path: str, root: str) -> bool:
    """Whether ``path`` is ``root`` or inside it, compared by path components."""
    path = os.path.normpath(path)
    root = os.path.normpath(root)
    if path == root:
        return True
    return path.startswith(root.rstrip("/") + "/")


def parse_mounts(proc_mounts: str, prefix: str = "") -> list[MountPoint]:
    """Mounts at or below ``prefix``, innermost first so they unmount in order."""
    mounts: list[MountPoint] = []
    for line in proc_mounts.splitlines():
        fields = line.split()
        if len(fields) < 4:
            continue
        path = unescape_mount_field(fields[1])
        if prefix and not is_at_or_below(path, prefix):
            continue
        mounts.insert(
            0,
            MountPoint(
                source=unescape_mount_field(fields[0]),
                path=path,
                fs_type=fields[2],
                options=fields[3].split(","),
            ),
        )
    mounts.sort(key=lambda m: m.path.rstrip("/").count("/"), reverse=True)
    return mounts


def diff_mount_points(
    tracked: Iterable[MountPoint], current: Iterable[MountPoint]
) -> list[MountPoint]:
    """Mounts in ``current`` not matching any tracked mount."""
    tracked = list(tracked)
    return [m for m in current if not any(m.same_as(t) for t in tracked)]


def list_mounts(ops, prefix: str) -> list[MountPoint]:
    return parse_mounts(ops.read_text(PROC_MOUNTS), prefix)


def unmount_untracked(
    ops, root: str, tracked: Sequence[MountPoint] = ()
) -> list[Exception]:
    """Unmount mounts under ``root`` that appeared since setup.

    Returns the errors; every mount is attempted.
    """
    errors: list[Exception] = []
    try:
        added = diff_mount_points(tracked, list_mounts(ops, root))
    except OSError as error:
        return [error]
    for mount_point in added:
        log.warning(f"Unmounting untracked mount {mount_point.path}")
        for argv in umount_argvs(mount_point.path):
            try:
                ops.run(argv)
            except Exception as error:
                errors.append(error)
    return errors


def associate_loop_device(
    ops, releases: ReleaseStack, image: Path, sector_size: int
) -> str:
    """Attach an image to a free loop device with partition scanning."""
    result = ops.run(
        [
            "losetup",
            "--find",
            "--show",
            "--partscan",
            "--sector-size",
            str(sector_size),
            str(image),
        ]
    )
    loop_device = result.stdout.strip()
    releases.push_command(ops, "loop", loop_device, ["losetup", "--detach", loop_device])
    log.debug(f"Attached {image} to {loop_device}")
    return loop_device


def partition_device(loop_device: str, number: int) -> str:
    return f"{loop_device}p{number}"

