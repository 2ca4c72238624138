"""GRUB installation into a finished disk image.

The image is attached to a loop device, its rootfs and ESP are mounted and
a chroot is prepared with the pseudo filesystems grub-install and
update-grub need. Every acquisition registers its release first and the
releases run last-in first-out, whatever happened in between.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from gadget_imager.logging import LoggerFactory
from gadget_imager.storage.exceptions import BootloaderError, TeardownError
from gadget_imager.storage.mount import (
    MountPoint,
    associate_loop_device,
    chroot_mount_points,
    list_mounts,
    mount,
    partition_device,
    unmount_untracked,
)
from gadget_imager.storage.release import ReleaseStack


log = LoggerFactory.for_bootloader()

GRUB_BOOTLOADER = "grub"

GRUB_EFI_TARGETS = {
    "amd64": "x86_64-efi",
    "arm64": "arm64-efi",
    "armhf": "arm-efi",
}
GRUB_BIOS_TARGET = "i386-pc"

HOST_RESOLV_CONF = Path("/etc/resolv.conf")
OS_PROBER_HOOK = "/etc/grub.d/30_os-prober"


def grub_target_for(architecture: str) -> str:
    try:
        return GRUB_EFI_TARGETS[architecture]
    except KeyError:
        raise BootloaderError(
            GRUB_BOOTLOADER,
            f"no valid efi target for the provided architecture {architecture!r}",
        ) from None


def chroot_argv(root: Path, *argv: str) -> list[str]:
    return ["chroot", str(root), *argv]


def backup_resolv_conf(ops, releases: ReleaseStack, root: Path) -> None:
    """Give the chroot the host's resolver configuration for apt."""
    resolv_conf = Path(root) / "etc" / "resolv.conf"
    backup = resolv_conf.with_name("resolv.conf.tmp")
    had_resolv_conf = ops.exists(resolv_conf)

    def restore() -> None:
        if ops.exists(backup):
            ops.move(backup, resolv_conf)
        elif ops.exists(resolv_conf):
            ops.remove(resolv_conf)

    try:
        if had_resolv_conf:
            ops.move(resolv_conf, backup)
        releases.push("resolv.conf", str(resolv_conf), restore)
        ops.copy_file(HOST_RESOLV_CONF, resolv_conf)
    except OSError as error:
        raise BootloaderError(
            GRUB_BOOTLOADER, f"Error setting up /etc/resolv.conf in the chroot: {error}"
        ) from error


def divert_os_prober(ops, releases: ReleaseStack, root: Path) -> None:
    """Keep update-grub from probing the build host's disks."""
    divert = [
        "dpkg-divert",
        "--local",
        "--divert",
        f"{OS_PROBER_HOOK}.dpkg-divert",
        "--rename",
        OS_PROBER_HOOK,
    ]
    ops.run(chroot_argv(root, *divert))
    releases.push_command(
        ops,
        "divert",
        OS_PROBER_HOOK,
        chroot_argv(root, "dpkg-divert", "--remove", *divert[1:]),
    )


def _prepare_mounts(
    ops,
    releases: ReleaseStack,
    loop_device: str,
    mount_dir: Path,
    rootfs_partition: int,
    boot_partition: int,
) -> None:
    # udev can briefly remove the partition devices losetup just created
    ops.run(["udevadm", "settle"])
    rootfs_device = partition_device(loop_device, rootfs_partition)
    mount(ops, releases, MountPoint(rootfs_device, str(mount_dir)))
    if boot_partition > 0:
        mount(
            ops,
            releases,
            MountPoint(
                partition_device(loop_device, boot_partition),
                str(mount_dir / "boot" / "efi"),
            ),
        )
    backup_resolv_conf(ops, releases, mount_dir)
    for mount_point in chroot_mount_points(mount_dir):
        mount(ops, releases, mount_point)


def _install(
    ops, releases: ReleaseStack, loop_device: str, mount_dir: Path, architecture: str
) -> None:
    target = grub_target_for(architecture)
    ops.run(chroot_argv(mount_dir, "apt", "install", "-y", "udev"))
    ops.run(
        chroot_argv(
            mount_dir,
            "grub-install",
            loop_device,
            "--boot-directory=/boot",
            "--efi-directory=/boot/efi",
            f"--target={target}",
            "--uefi-secure-boot",
            "--no-nvram",
        )
    )
    if architecture == "amd64":
        ops.run(
            chroot_argv(mount_dir, "grub-install", loop_device, f"--target={GRUB_BIOS_TARGET}")
        )
    divert_os_prober(ops, releases, mount_dir)
    ops.run(chroot_argv(mount_dir, "update-grub"))


def setup_grub(
    ops,
    *,
    image: Path,
    sector_size: int,
    rootfs_partition: int,
    boot_partition: int,
    architecture: str,
    mount_dir: Path,
) -> None:
    """Install GRUB into ``image`` through a loop device and a chroot.

    Mounts that show up under ``mount_dir`` while the tools run (automounts,
    nested binds) are unmounted innermost first before the tracked releases.
    Release failures are joined with the installation error, if any.
    """
    # Fail on an unsupported architecture before touching the host
    grub_target_for(architecture)
    mount_dir = Path(mount_dir)
    releases = ReleaseStack()
    tracked: list[MountPoint] = []
    run_error: Optional[BaseException] = None

    log.info(f"Installing GRUB into {image}")
    try:
        ops.makedirs(mount_dir)
        loop_device = associate_loop_device(ops, releases, image, sector_size)
        releases.push_command(ops, "udev", loop_device, ["udevadm", "settle"])
        _prepare_mounts(
            ops, releases, loop_device, mount_dir, rootfs_partition, boot_partition
        )
        tracked = list_mounts(ops, str(mount_dir))
        _install(ops, releases, loop_device, mount_dir, architecture)
    except Exception as error:
        run_error = error

    errors: list[Exception] = []
    if tracked:
        errors += unmount_untracked(ops, str(mount_dir), tracked)
    errors += releases.release_all()

    if errors:
        raise TeardownError(errors, cause=run_error) from run_error
    if run_error is not None:
        raise run_error
    log.success(f"GRUB installed into {image}")


def update_bootloader(
    ops,
    *,
    bootloader: Optional[str],
    image: Optional[Path],
    sector_size: int,
    rootfs_partition: int,
    boot_partition: int,
    architecture: str,
    mount_dir: Path,
) -> None:
    """Run the bootloader installation the rootfs volume asks for."""
    if image is None or rootfs_partition < 0:
        raise BootloaderError(
            bootloader or "unknown",
            "could not determine partition number of the root filesystem",
        )
    if bootloader != GRUB_BOOTLOADER:
        log.warning(f"updating bootloader {bootloader} not yet supported")
        return
    setup_grub(
        ops,
        image=image,
        sector_size=sector_size,
        rootfs_partition=rootfs_partition,
        boot_partition=boot_partition,
        architecture=architecture,
        mount_dir=mount_dir,
    )
