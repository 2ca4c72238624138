"""Tests for the bootloader package - lk, boot content relocation and GRUB."""

import pytest

from gadget_imager.bootloader import adapters, grub
from gadget_imager.domain.models import Volume
from gadget_imager.storage.exceptions import BootloaderError, CommandError, TeardownError


@pytest.fixture
def host_resolv_conf(tmp_path, monkeypatch):
    """Point the host resolver configuration at a temporary file."""
    path = tmp_path / "host-resolv.conf"
    path.write_text("nameserver 192.0.2.53\n")
    monkeypatch.setattr(grub, "HOST_RESOLV_CONF", path)
    return path


def install_grub(fake_ops, tmp_path, architecture="amd64", boot_partition=1):
    grub.setup_grub(
        fake_ops,
        image=tmp_path / "pc.img",
        sector_size=512,
        rootfs_partition=2,
        boot_partition=boot_partition,
        architecture=architecture,
        mount_dir=tmp_path / "mnt",
    )


class TestLkBootloader:
    """Tests for handle_lk_bootloader()."""

    def test_other_bootloaders_ignored(self, tmp_path, fake_ops):
        """Test nothing happens for non-lk volumes."""
        volume = Volume(name="pc", bootloader="grub")
        assert adapters.handle_lk_bootloader(volume, tmp_path, fake_ops) is False

    def test_missing_boot_directory(self, tmp_path, fake_ops):
        """Test an lk volume needs the unpacked lk directory."""
        volume = Volume(name="dragon", bootloader="lk")
        with pytest.raises(BootloaderError, match="bootloader directory .* does not exist"):
            adapters.handle_lk_bootloader(volume, tmp_path, fake_ops)

    def test_files_copied_into_gadget_tree(self, tmp_path, fake_ops):
        """Test lk boot files land in the gadget tree."""
        boot_dir = tmp_path / "image" / "boot" / "lk"
        boot_dir.mkdir(parents=True)
        (boot_dir / "snapbootsel.bin").write_bytes(b"\x01\x02")
        volume = Volume(name="dragon", bootloader="lk")

        assert adapters.handle_lk_bootloader(volume, tmp_path, fake_ops) is True
        assert (tmp_path / "gadget" / "snapbootsel.bin").read_bytes() == b"\x01\x02"


class TestRelocateBootContent:
    """Tests for relocate_boot_content()."""

    def test_grub_content_moved_under_efi(self, tmp_path, fake_ops):
        """Test grub content moves to EFI/ubuntu of the boot structure."""
        source = tmp_path / "unpack" / "image" / "boot" / "grub"
        source.mkdir(parents=True)
        (source / "grubenv").write_text("env")
        target = tmp_path / "volumes" / "pc" / "part1"

        moved = adapters.relocate_boot_content(
            Volume(name="pc", bootloader="grub"), tmp_path / "unpack", target, fake_ops
        )

        assert moved is True
        assert (target / "EFI" / "ubuntu" / "grubenv").read_text() == "env"
        assert not (source / "grubenv").exists()

    def test_uboot_content_moved_to_root(self, tmp_path, fake_ops):
        """Test u-boot content moves to the top of the boot structure."""
        source = tmp_path / "unpack" / "image" / "boot" / "uboot"
        source.mkdir(parents=True)
        (source / "boot.sel").write_text("sel")
        target = tmp_path / "part1"

        adapters.relocate_boot_content(
            Volume(name="pi", bootloader="u-boot"), tmp_path / "unpack", target, fake_ops
        )

        assert (target / "boot.sel").read_text() == "sel"

    def test_nothing_to_move(self, tmp_path, fake_ops):
        """Test a missing vendor directory or unknown bootloader is a no-op."""
        assert not adapters.relocate_boot_content(
            Volume(name="pc", bootloader="grub"), tmp_path, tmp_path / "t", fake_ops
        )
        assert not adapters.relocate_boot_content(
            Volume(name="pc", bootloader="lk"), tmp_path, tmp_path / "t", fake_ops
        )


class TestGrubTargets:
    """Tests for grub_target_for()."""

    @pytest.mark.parametrize(
        "architecture,target",
        [("amd64", "x86_64-efi"), ("arm64", "arm64-efi"), ("armhf", "arm-efi")],
    )
    def test_known_architectures(self, architecture, target):
        """Test the EFI target per architecture."""
        assert grub.grub_target_for(architecture) == target

    def test_unknown_architecture(self):
        """Test other architectures have no EFI target."""
        with pytest.raises(BootloaderError, match="no valid efi target"):
            grub.grub_target_for("riscv64")


class TestSetupGrub:
    """Tests for setup_grub()."""

    def test_install_sequence(self, tmp_path, fake_ops, host_resolv_conf):
        """Test the loop device, mounts and grub commands run in order."""
        install_grub(fake_ops, tmp_path)
        mnt = str(tmp_path / "mnt")
        commands = fake_ops.commands

        assert commands[0] == [
            "losetup", "--find", "--show", "--partscan", "--sector-size", "512",
            str(tmp_path / "pc.img"),
        ]
        assert commands[1] == ["udevadm", "settle"]
        assert commands[2] == ["mount", "/dev/loop7p2", mnt]
        assert commands[3] == ["mount", "/dev/loop7p1", f"{mnt}/boot/efi"]
        assert commands[4] == ["mount", "-t", "devtmpfs", "devtmpfs-build", f"{mnt}/dev"]
        assert commands[8] == ["mount", "--bind", "/run", f"{mnt}/run"]

        chroot = [c[2:] for c in commands if c[0] == "chroot"]
        assert chroot[0] == ["apt", "install", "-y", "udev"]
        assert chroot[1][:2] == ["grub-install", "/dev/loop7"]
        assert "--target=x86_64-efi" in chroot[1]
        assert "--no-nvram" in chroot[1]
        assert chroot[2] == ["grub-install", "/dev/loop7", "--target=i386-pc"]
        assert chroot[3][:2] == ["dpkg-divert", "--local"]
        assert chroot[4] == ["update-grub"]

    def test_releases_run_last_in_first_out(self, tmp_path, fake_ops, host_resolv_conf):
        """Test the undivert runs first and the loop device detaches last."""
        install_grub(fake_ops, tmp_path)
        mnt = tmp_path / "mnt"
        commands = fake_ops.commands
        update_grub = commands.index(["chroot", str(mnt), "update-grub"])
        releases = commands[update_grub + 1:]

        assert releases[0][2:4] == ["dpkg-divert", "--remove"]
        unmounted = [c[-1] for c in releases if c[0] == "umount"]
        assert unmounted == [
            str(mnt / "run"),
            str(mnt / "sys"),
            str(mnt / "proc"),
            str(mnt / "dev" / "pts"),
            str(mnt / "dev"),
            str(mnt / "boot" / "efi"),
            str(mnt),
        ]
        assert releases[-2] == ["udevadm", "settle"]
        assert releases[-1] == ["losetup", "--detach", "/dev/loop7"]

    def test_resolv_conf_restored(self, tmp_path, fake_ops, host_resolv_conf):
        """Test the chroot's resolv.conf is put back afterwards."""
        etc = tmp_path / "mnt" / "etc"
        etc.mkdir(parents=True)
        (etc / "resolv.conf").write_text("original\n")

        install_grub(fake_ops, tmp_path)

        assert (etc / "resolv.conf").read_text() == "original\n"
        assert not (etc / "resolv.conf.tmp").exists()

    def test_arm64_has_no_bios_target(self, tmp_path, fake_ops, host_resolv_conf):
        """Test only amd64 gets the BIOS grub install."""
        install_grub(fake_ops, tmp_path, architecture="arm64", boot_partition=-1)
        grub_installs = [c for c in fake_ops.commands if c[2:3] == ["grub-install"]]
        assert len(grub_installs) == 1
        assert "--target=arm64-efi" in grub_installs[0]
        assert not any(c[-1].endswith("boot/efi") for c in fake_ops.commands_for("mount"))

    def test_failure_still_releases(self, tmp_path, fake_ops, host_resolv_conf):
        """Test a failing grub-install is raised after every release ran."""
        fake_ops.fail("chroot", str(tmp_path / "mnt"), "grub-install")

        with pytest.raises(CommandError):
            install_grub(fake_ops, tmp_path)

        assert fake_ops.commands[-1] == ["losetup", "--detach", "/dev/loop7"]
        assert len(fake_ops.commands_for("umount")) == 7
        assert not any("--remove" in c for c in fake_ops.commands)

    def test_release_failure_joined_with_run_error(self, tmp_path, fake_ops, host_resolv_conf):
        """Test release errors and the run error are reported together."""
        fake_ops.fail("chroot", str(tmp_path / "mnt"), "update-grub")
        fake_ops.fail("losetup", "--detach")

        with pytest.raises(TeardownError) as excinfo:
            install_grub(fake_ops, tmp_path)

        assert isinstance(excinfo.value.cause, CommandError)
        assert len(excinfo.value.errors) == 1
        assert len(fake_ops.commands_for("umount")) == 7

    def test_untracked_mounts_unmounted_first(self, tmp_path, fake_ops, host_resolv_conf):
        """Test mounts that appear during installation are cleaned up."""
        mnt = tmp_path / "mnt"
        fake_ops.proc_mounts = f"/dev/loop7p2 {mnt} ext4 rw 0 0\n"
        automount = f"binfmt_misc {mnt}/proc/sys/fs/binfmt_misc binfmt_misc rw 0 0\n"
        original_run = fake_ops.run

        def run(argv, **kwargs):
            if list(argv)[-1:] == ["update-grub"]:
                fake_ops.proc_mounts += automount
            return original_run(argv, **kwargs)

        fake_ops.run = run
        install_grub(fake_ops, tmp_path)

        unmounted = [c[-1] for c in fake_ops.commands_for("umount")]
        assert unmounted[0] == f"{mnt}/proc/sys/fs/binfmt_misc"
        assert len(unmounted) == 8

    def test_unsupported_architecture_touches_nothing(self, tmp_path, fake_ops):
        """Test the architecture is checked before any command runs."""
        with pytest.raises(BootloaderError):
            install_grub(fake_ops, tmp_path, architecture="s390x")
        assert fake_ops.commands == []


class TestUpdateBootloader:
    """Tests for update_bootloader()."""

    def _update(self, fake_ops, tmp_path, **overrides):
        arguments = dict(
            bootloader="grub",
            image=tmp_path / "pc.img",
            sector_size=512,
            rootfs_partition=2,
            boot_partition=1,
            architecture="amd64",
            mount_dir=tmp_path / "mnt",
        )
        arguments.update(overrides)
        grub.update_bootloader(fake_ops, **arguments)

    def test_missing_rootfs_partition(self, tmp_path, fake_ops):
        """Test a build without a rootfs partition cannot be updated."""
        with pytest.raises(BootloaderError, match="could not determine partition number"):
            self._update(fake_ops, tmp_path, rootfs_partition=-1)
        with pytest.raises(BootloaderError, match="could not determine partition number"):
            self._update(fake_ops, tmp_path, image=None)

    def test_unsupported_bootloader_skipped(self, tmp_path, fake_ops):
        """Test other bootloaders are left alone."""
        self._update(fake_ops, tmp_path, bootloader="u-boot")
        assert fake_ops.commands == []

    def test_grub_installed(self, tmp_path, fake_ops, host_resolv_conf):
        """Test grub volumes get GRUB installed."""
        self._update(fake_ops, tmp_path)
        assert ["chroot", str(tmp_path / "mnt"), "update-grub"] in fake_ops.commands
