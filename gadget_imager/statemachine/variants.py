"""Build variants: classic, snap and pack.

Each variant chooses an ordered step list from the catalog and fills the
build state fields the shared steps consume (gadget description path,
rootfs content, series and architecture).
"""

from __future__ import annotations

import glob
import hashlib
import os
from pathlib import Path
from typing import TYPE_CHECKING

from gadget_imager.config.image_definition import ImageDefinition
from gadget_imager.config.options import PackOptions, SnapOptions
from gadget_imager.config.settings import GADGET_YAML_PATH_IN_TREE
from gadget_imager.logging import LoggerFactory
from gadget_imager.statemachine.steps import step
from gadget_imager.storage.exceptions import ConfigurationError, GadgetError

if TYPE_CHECKING:
    from gadget_imager.statemachine.core import StateMachine


log = LoggerFactory.for_state_machine("variants")

HASH_CHUNK_SIZE = 1024 * 1024

# Host specific files a classic rootfs must not carry into the image
ROOTFS_CLEAN_GLOBS = (
    "etc/machine-id",
    "var/lib/dbus/machine-id",
    "etc/ssh/ssh_host_*_key",
    "etc/ssh/ssh_host_*_key.pub",
    "var/cache/debconf/*-old",
    "var/lib/dpkg/*-old",
)
ROOTFS_TRUNCATE_GLOBS = ("etc/udev/rules.d/*persistent-net.rules",)

SHARED_TAIL_STEPS = [
    "generate_disk_info",
    "calculate_rootfs_size",
    "populate_bootfs_contents",
    "populate_prepare_partitions",
    "determine_output_directory",
    "make_disk",
]


# -- classic -------------------------------------------------------------------


class ClassicVariant:
    """Image built from a prebuilt or locally built gadget and a rootfs."""

    name = "classic"

    def __init__(self, definition: ImageDefinition):
        self.definition = definition

    def step_names(self) -> list[str]:
        names = []
        if self.definition.gadget.gadget_type == "directory":
            names.append("build_gadget_tree")
        names += ["prepare_gadget_tree", "load_gadget_yaml", "set_artifact_names"]
        if self.definition.rootfs_tarball is not None:
            names.append("extract_rootfs_tar")
        else:
            names.append("copy_rootfs_dir")
        names += ["clean_rootfs", "populate_classic_rootfs_contents"]
        names += SHARED_TAIL_STEPS
        names += ["update_bootloader", "finish"]
        return names

    def setup(self, machine: "StateMachine") -> None:
        state = machine.state
        state.series = self.definition.series
        state.architecture = self.definition.architecture
        if self.definition.rootfs_directory is not None:
            state.rootfs_source = self.definition.resolve_url(self.definition.rootfs_directory)
        if not state.volume_names:
            state.volume_names = {
                image.volume or "": image.name for image in self.definition.images
            }


def _definition(machine: "StateMachine") -> ImageDefinition:
    return machine.variant.definition


def _copy_entries(ops, source: Path, destination: Path) -> None:
    ops.makedirs(destination)
    for entry in ops.list_dir(source):
        ops.copy_into(source / entry, destination)


@step("build_gadget_tree")
def build_gadget_tree(machine: "StateMachine") -> None:
    """Build a gadget from source with its Makefile."""
    definition = _definition(machine)
    state, ops = machine.state, machine.ops
    build_dir = state.scratch_dir / "gadget"
    source = definition.resolve_url(definition.gadget.url)
    if not ops.is_dir(source):
        raise GadgetError(str(source), "gadget source directory does not exist")
    _copy_entries(ops, source, build_dir)

    argv = ["make"]
    if definition.gadget.target:
        argv.append(definition.gadget.target)
    ops.run(
        argv,
        env={"ARCH": definition.architecture, "SERIES": definition.series},
        cwd=build_dir,
    )


@step("prepare_gadget_tree")
def prepare_gadget_tree(machine: "StateMachine") -> None:
    definition = _definition(machine)
    state, ops = machine.state, machine.ops
    if definition.gadget.gadget_type == "prebuilt":
        source = definition.resolve_url(definition.gadget.url)
    else:
        source = state.scratch_dir / "gadget" / "install"
    if not ops.is_dir(source):
        raise GadgetError(str(source), "gadget tree does not exist")
    _copy_entries(ops, source, state.gadget_dir)
    state.gadget_yaml_path = state.gadget_dir / GADGET_YAML_PATH_IN_TREE


def sha256_of(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


@step("extract_rootfs_tar")
def extract_rootfs_tar(machine: "StateMachine") -> None:
    definition = _definition(machine)
    state, ops = machine.state, machine.ops
    tarball = definition.resolve_url(definition.rootfs_tarball.url)
    if not ops.exists(tarball):
        raise ConfigurationError(f"rootfs tarball {tarball} does not exist")

    expected = definition.rootfs_tarball.sha256sum
    if expected:
        actual = sha256_of(tarball)
        if actual != expected.lower():
            raise ConfigurationError(
                f'Calculated SHA256 sum of rootfs tarball "{actual}" does not match '
                f'the expected value specified in the image definition: "{expected}"'
            )

    ops.makedirs(state.chroot_dir)
    # tar detects the compression itself
    ops.run(
        [
            "tar",
            "--extract",
            "--preserve-permissions",
            "--numeric-owner",
            "--file",
            str(tarball),
            "--directory",
            str(state.chroot_dir),
        ]
    )


@step("copy_rootfs_dir")
def copy_rootfs_dir(machine: "StateMachine") -> None:
    state, ops = machine.state, machine.ops
    source = state.rootfs_source
    if source is None or not ops.is_dir(source):
        raise ConfigurationError(f"rootfs directory {source} does not exist")
    _copy_entries(ops, source, state.chroot_dir)


def _matches(root: Path, patterns) -> list[Path]:
    found: list[Path] = []
    for pattern in patterns:
        found += sorted(Path(path) for path in glob.glob(os.path.join(str(root), pattern)))
    return found


@step("clean_rootfs")
def clean_rootfs(machine: "StateMachine") -> None:
    """Drop host identity and stale package manager files from the rootfs."""
    state, ops = machine.state, machine.ops
    for path in _matches(state.chroot_dir, ROOTFS_CLEAN_GLOBS):
        try:
            ops.remove(path)
        except FileNotFoundError:
            continue
        log.debug(f"Removed {path}")
    for path in _matches(state.chroot_dir, ROOTFS_TRUNCATE_GLOBS):
        ops.zero_fill(path, 0)


@step("populate_classic_rootfs_contents")
def populate_classic_rootfs_contents(machine: "StateMachine") -> None:
    state = machine.state
    _copy_entries(machine.ops, state.chroot_dir, state.rootfs_dir)


# -- snap ----------------------------------------------------------------------


class SnapVariant:
    """Image seeded by ``snap prepare-image`` from a model assertion."""

    name = "snap"

    def __init__(self, options: SnapOptions):
        self.options = options

    def step_names(self) -> list[str]:
        return [
            "prepare_image",
            "load_gadget_yaml",
            "set_artifact_names",
            "populate_snap_rootfs_contents",
            *SHARED_TAIL_STEPS,
            "finish",
        ]

    def setup(self, machine: "StateMachine") -> None:
        if self.options.model_assertion is None:
            raise ConfigurationError("a model assertion is required for snap builds")


@step("prepare_image")
def prepare_image(machine: "StateMachine") -> None:
    options: SnapOptions = machine.variant.options
    state = machine.state
    argv = [options.prepare_command, "prepare-image"]
    if options.channel:
        argv += ["--channel", options.channel]
    for snap in options.snaps:
        argv += ["--snap", snap]
    argv += [str(options.model_assertion), str(state.unpack_dir)]
    machine.ops.run(argv)
    state.gadget_yaml_path = state.gadget_dir / GADGET_YAML_PATH_IN_TREE


@step("populate_snap_rootfs_contents")
def populate_snap_rootfs_contents(machine: "StateMachine") -> None:
    """Move the prepared tree into the rootfs.

    Seeded images take the system-seed tree as is; others take the image
    tree under ``system-data`` with an empty ``boot``, since boot content is
    placed by the bootloader handling.
    """
    state, ops = machine.state, machine.ops
    if state.is_seeded:
        source = state.unpack_dir / "system-seed"
        destination = state.rootfs_dir
    else:
        source = state.unpack_dir / "image"
        destination = state.rootfs_dir / "system-data"
        ops.makedirs(destination / "boot")
    ops.makedirs(destination)
    for entry in ops.list_dir(source):
        if not state.is_seeded and entry == "boot":
            continue
        ops.move(source / entry, destination / entry)


# -- pack ----------------------------------------------------------------------


class PackVariant:
    """Image packed from an already prepared gadget tree and rootfs."""

    name = "pack"

    def __init__(self, options: PackOptions):
        self.options = options

    def step_names(self) -> list[str]:
        return [
            "prepare_pack",
            "populate_temporary_directories",
            "load_gadget_yaml",
            "set_artifact_names",
            *SHARED_TAIL_STEPS,
            "finish",
        ]

    def setup(self, machine: "StateMachine") -> None:
        if self.options.artifact_type != "raw":
            raise ConfigurationError(
                f"unsupported artifact type {self.options.artifact_type!r}, only raw is supported"
            )
        if self.options.gadget_dir is None or self.options.rootfs_dir is None:
            raise ConfigurationError("pack builds need both --gadget-dir and --rootfs-dir")
        machine.state.gadget_source = Path(self.options.gadget_dir)
        machine.state.rootfs_source = Path(self.options.rootfs_dir)


@step("prepare_pack")
def prepare_pack(machine: "StateMachine") -> None:
    state = machine.state
    state.gadget_yaml_path = state.gadget_source / GADGET_YAML_PATH_IN_TREE


@step("populate_temporary_directories")
def populate_temporary_directories(machine: "StateMachine") -> None:
    state, ops = machine.state, machine.ops
    for source in (state.rootfs_source, state.gadget_source):
        if not ops.is_dir(source):
            raise ConfigurationError(f"directory {source} does not exist")
    _copy_entries(ops, state.rootfs_source, state.rootfs_dir)
    _copy_entries(ops, state.gadget_source, state.gadget_dir)
