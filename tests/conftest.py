"""
Pytest configuration and shared fixtures for gadget-imager tests.

This module provides a recording system operations fake and gadget
descriptions used across the test modules. External tools are never run:
commands are recorded and answered by the fake, while file and raw image
operations work on real files under ``tmp_path``.
"""

import random
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest
import yaml

from gadget_imager.storage import disk_image
from gadget_imager.storage.exceptions import CommandError
from gadget_imager.storage.mount import PROC_MOUNTS
from gadget_imager.storage.system_ops import CommandResult, SystemOps


class FakeSystemOps(SystemOps):
    """SystemOps that records commands instead of running them.

    Randomness is seeded, so two fakes with the same seed hand out the same
    GUIDs and disk IDs.
    """

    def __init__(self, seed: int = 0):
        rng = random.Random(seed)
        super().__init__(random_source=lambda n: bytes(rng.getrandbits(8) for _ in range(n)))
        self.commands: List[List[str]] = []
        self.environments: List[Optional[dict]] = []
        self.working_dirs: List[Optional[str]] = []
        self.failures: Dict[Tuple[str, ...], int] = {}
        self.outputs: Dict[str, str] = {}
        self.proc_mounts = ""
        self.du_bytes = 0
        self.loop_device = "/dev/loop7"

    def fail(self, *prefix: str, returncode: int = 1) -> None:
        """Make commands starting with ``prefix`` exit with ``returncode``."""
        self.failures[tuple(prefix)] = returncode

    def run(self, argv, *, env=None, cwd=None, input_text=None, check=True):
        command = [str(arg) for arg in argv]
        self.commands.append(command)
        self.environments.append(dict(env) if env else None)
        self.working_dirs.append(str(cwd) if cwd is not None else None)

        for prefix, returncode in self.failures.items():
            if tuple(command[: len(prefix)]) == prefix:
                if check:
                    raise CommandError(command, returncode, stderr="simulated failure")
                return CommandResult(command, returncode, "", "simulated failure")

        if command[0] == "du":
            stdout = f"{self.du_bytes}\t{command[-1]}\n"
        elif command[0] == "losetup" and "--find" in command:
            stdout = f"{self.loop_device}\n"
        else:
            stdout = self.outputs.get(command[0], "")
        return CommandResult(command, 0, stdout, "")

    def read_text(self, path):
        if str(path) == PROC_MOUNTS:
            return self.proc_mounts
        return super().read_text(path)

    def programs(self) -> List[str]:
        return [command[0] for command in self.commands]

    def commands_for(self, program: str) -> List[List[str]]:
        return [command for command in self.commands if command[0] == program]


# ==============================================================================
# System Operations Fixtures
# ==============================================================================


@pytest.fixture
def fake_ops() -> FakeSystemOps:
    """
    Fixture providing a recording system operations fake.

    Returns:
        FakeSystemOps with a fixed random seed.
    """
    return FakeSystemOps(seed=1234)


@pytest.fixture
def ops_factory():
    """
    Fixture providing the fake class itself, for tests needing several fakes.

    Returns:
        Callable taking a seed and returning a new FakeSystemOps.
    """
    return FakeSystemOps


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep host configuration out of the tests."""
    monkeypatch.delenv("GADGET_IMAGER_PRESERVE_UNPACK", raising=False)
    monkeypatch.setenv("GADGET_IMAGER_MKFS_BASE", str(tmp_path / "no-mkfs-config"))
    monkeypatch.setattr(disk_image, "disk_ids", disk_image.DiskIdAllocator())


# ==============================================================================
# Gadget Description Fixtures
# ==============================================================================


@pytest.fixture
def pc_gadget_yaml() -> dict:
    """
    Fixture providing a single GPT volume with a 50 MiB EFI partition.

    The rootfs structure is implicit and added when the gadget is loaded.

    Returns:
        Dict in gadget.yaml layout.
    """
    return {
        "volumes": {
            "pc": {
                "schema": "gpt",
                "bootloader": "grub",
                "structure": [
                    {
                        "name": "ubuntu-boot",
                        "type": "C12A7328-F81F-11D2-BA4B-00A0C93EC93B",
                        "role": "system-boot",
                        "filesystem": "vfat",
                        "filesystem-label": "system-boot",
                        "size": "50M",
                    }
                ],
            }
        }
    }


@pytest.fixture
def mbr_gadget_yaml() -> dict:
    """
    Fixture providing an MBR volume with a raw bootloader region.

    Returns:
        Dict in gadget.yaml layout.
    """
    return {
        "volumes": {
            "pi": {
                "schema": "mbr",
                "bootloader": "u-boot",
                "structure": [
                    {
                        "name": "mbr",
                        "type": "mbr",
                        "size": 440,
                        "content": [{"image": "pc-boot.img"}],
                    },
                    {
                        "name": "boot",
                        "type": "0C",
                        "role": "system-boot",
                        "filesystem": "vfat",
                        "filesystem-label": "system-boot",
                        "size": "32M",
                    },
                    {
                        "name": "writable",
                        "type": "83",
                        "role": "system-data",
                        "filesystem": "ext4",
                        "filesystem-label": "writable",
                        "size": "16M",
                    },
                ],
            }
        }
    }


def _write_gadget_tree(root: Path, gadget: dict) -> Path:
    meta = root / "meta"
    meta.mkdir(parents=True, exist_ok=True)
    (meta / "gadget.yaml").write_text(yaml.safe_dump(gadget, sort_keys=False))
    return root


@pytest.fixture
def write_gadget_tree():
    """
    Fixture providing a writer for gadget trees.

    Returns:
        Callable writing ``meta/gadget.yaml`` below a root and returning the root.
    """
    return _write_gadget_tree


@pytest.fixture
def pack_sources(tmp_path, pc_gadget_yaml) -> Tuple[Path, Path]:
    """
    Fixture providing a prepared gadget tree and rootfs directory.

    Returns:
        Tuple of (gadget_dir, rootfs_dir).
    """
    gadget_dir = _write_gadget_tree(tmp_path / "gadget", pc_gadget_yaml)
    rootfs_dir = tmp_path / "rootfs"
    (rootfs_dir / "etc").mkdir(parents=True)
    (rootfs_dir / "etc" / "hostname").write_text("ubuntu\n")
    return gadget_dir, rootfs_dir
