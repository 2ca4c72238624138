"""Step catalog and the steps shared by every build variant.

A step is a named function of the running state machine. Variants pick
their ordered step list from this catalog by name; variant specific steps
register themselves here too.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from gadget_imager.bootloader import adapters, grub
from gadget_imager.gadget import layout, loader
from gadget_imager.logging import LoggerFactory
from gadget_imager.storage import disk_image, placement
from gadget_imager.storage.exceptions import ConfigurationError, GadgetError

if TYPE_CHECKING:
    from gadget_imager.statemachine.core import StateMachine


log = LoggerFactory.for_state_machine("steps")

StepFunction = Callable[["StateMachine"], None]


@dataclass(frozen=True)
class Step:
    name: str
    function: StepFunction

    def __call__(self, machine: "StateMachine") -> None:
        self.function(machine)


CATALOG: dict[str, Step] = {}


def step(name: str) -> Callable[[StepFunction], StepFunction]:
    """Register a function in the catalog under ``name``."""

    def register(function: StepFunction) -> StepFunction:
        if name in CATALOG:
            raise ValueError(f"step {name} registered twice")
        CATALOG[name] = Step(name, function)
        return function

    return register


def lookup_step(name: str) -> Step:
    try:
        return CATALOG[name]
    except KeyError:
        raise ConfigurationError(f"Unknown step name {name!r}") from None


def _gadget(machine: "StateMachine"):
    if machine.state.gadget is None:
        raise GadgetError("<none>", "gadget description has not been loaded")
    return machine.state.gadget


@step("determine_output_directory")
def determine_output_directory(machine: "StateMachine") -> None:
    machine.state.output_dir = disk_image.determine_output_directory(
        machine.ops,
        machine.common.output_dir,
        machine.state.workdir,
        machine.clean_workdir,
    )


@step("load_gadget_yaml")
def load_gadget_yaml(machine: "StateMachine") -> None:
    """Load the gadget description the earlier steps located.

    A copy is kept in the workdir, volumes are laid out and ``--image-size``
    is resolved against the declaration order.
    """
    state, ops = machine.state, machine.ops
    source = state.gadget_yaml_path
    if source is None or not ops.exists(source):
        raise GadgetError(str(source), "gadget.yaml not found")

    copy = state.workdir / "gadget.yaml"
    try:
        ops.copy_file(source, copy)
    except OSError as error:
        raise GadgetError(str(source), f"Error copying gadget.yaml to {copy}: {error}") from error

    gadget = loader.load_gadget_yaml(copy)
    loader.preserve_unpack(state.unpack_dir, ops)
    state.is_seeded = loader.post_process_gadget(
        gadget, unpack_dir=state.unpack_dir, rootfs_dir=state.rootfs_dir
    )
    for volume in gadget:
        ops.makedirs(state.volumes_dir / volume.name)
        layout.compute_offsets(volume, state.sector_size)

    state.gadget = gadget
    state.volume_order = gadget.volume_names
    state.image_sizes = layout.parse_image_sizes(machine.common.image_size, state.volume_order)
    log.debug(f"Loaded {len(gadget)} volume(s): {', '.join(state.volume_order)}")


@step("set_artifact_names")
def set_artifact_names(machine: "StateMachine") -> None:
    """Name the image file of every volume.

    Names requested without a volume apply to the first declared volume;
    volumes without a requested name get ``<volume>.img``.
    """
    state = machine.state
    gadget = _gadget(machine)
    names = dict(state.volume_names)
    unassigned = names.pop("", None)
    if unassigned and state.volume_order and state.volume_order[0] not in names:
        names[state.volume_order[0]] = unassigned
    for volume_name in names:
        if gadget.volume(volume_name) is None:
            raise ConfigurationError(
                f"Image artifact refers to volume {volume_name} which is not in gadget.yaml"
            )
    for volume_name in state.volume_order:
        names.setdefault(volume_name, f"{volume_name}.img")
    state.volume_names = names


@step("generate_disk_info")
def generate_disk_info(machine: "StateMachine") -> None:
    disk_info = machine.common.disk_info
    if disk_info is None:
        return
    destination = machine.state.rootfs_dir / ".disk" / "info"
    try:
        machine.ops.copy_file(disk_info, destination)
    except OSError as error:
        raise ConfigurationError(f"Failed to copy disk-info file {disk_info}: {error}") from error


@step("calculate_rootfs_size")
def calculate_rootfs_size(machine: "StateMachine") -> None:
    state = machine.state
    content_bytes = machine.ops.disk_usage(state.rootfs_dir)
    state.rootfs_size = layout.resolve_rootfs_size(
        _gadget(machine), content_bytes, state.image_sizes, state.sector_size
    )
    log.info(f"Rootfs content {content_bytes} bytes, filesystem size {state.rootfs_size} bytes")


def _system_volume(gadget):
    system_volume = None
    for volume in gadget:
        if any(structure.is_system_boot for structure in volume.structures):
            system_volume = volume
    return system_volume


@step("populate_bootfs_contents")
def populate_bootfs_contents(machine: "StateMachine") -> None:
    """Stage the files of the system volume's filesystem structures."""
    state, ops = machine.state, machine.ops
    volume = _system_volume(_gadget(machine))
    if volume is None:
        log.debug("No system-boot structure declared, no boot content to stage")
        return

    for index, structure in enumerate(volume.structures):
        target_dir = placement.content_root_for(
            structure, index, volume.name, state.volumes_dir, state.rootfs_dir
        )
        if not state.is_seeded and structure.is_system_boot:
            adapters.relocate_boot_content(volume, state.unpack_dir, target_dir, ops)
        if structure.has_filesystem:
            placement.populate_filesystem_content(ops, structure, state.gadget_dir, target_dir)


@step("populate_prepare_partitions")
def populate_prepare_partitions(machine: "StateMachine") -> None:
    state, ops = machine.state, machine.ops
    for volume in _gadget(machine):
        adapters.handle_lk_bootloader(volume, state.unpack_dir, ops)
        placement.prepare_volume_partitions(
            ops,
            volume,
            gadget_dir=state.gadget_dir,
            volumes_dir=state.volumes_dir,
            rootfs_dir=state.rootfs_dir,
            sector_size=state.sector_size,
            rootfs_size=state.rootfs_size,
            is_seeded=state.is_seeded,
            series=state.series,
        )


@step("make_disk")
def make_disk(machine: "StateMachine") -> None:
    state = machine.state
    if state.output_dir is None:
        determine_output_directory(machine)
    result = disk_image.make_disk(
        machine.ops,
        _gadget(machine),
        output_dir=state.output_dir,
        volumes_dir=state.volumes_dir,
        volume_names=state.volume_names,
        image_sizes=state.image_sizes,
        sector_size=state.sector_size,
        is_seeded=state.is_seeded,
    )
    for volume_name, image in result.images.items():
        state.volume_names[volume_name] = Path(image).name
    state.rootfs_volume_name = result.rootfs_volume_name
    state.rootfs_partition_number = result.rootfs_partition_number
    state.boot_partition_number = result.boot_partition_number


@step("update_bootloader")
def update_bootloader(machine: "StateMachine") -> None:
    state = machine.state
    volume = None
    image = None
    if state.rootfs_volume_name is not None:
        volume = _gadget(machine).volume(state.rootfs_volume_name)
        image = state.output_dir / state.volume_names[state.rootfs_volume_name]
    grub.update_bootloader(
        machine.ops,
        bootloader=volume.bootloader if volume is not None else None,
        image=image,
        sector_size=state.sector_size,
        rootfs_partition=state.rootfs_partition_number,
        boot_partition=state.boot_partition_number,
        architecture=state.architecture or "",
        mount_dir=state.scratch_dir / "loopback",
    )


@step("finish")
def finish(machine: "StateMachine") -> None:
    state = machine.state
    for volume_name in state.volume_order:
        file_name = state.volume_names.get(volume_name)
        if file_name and state.output_dir is not None:
            log.success(f"Volume {volume_name} written to {state.output_dir / file_name}")
