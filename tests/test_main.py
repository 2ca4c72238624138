"""Tests for the command line entry point."""

from pathlib import Path

import pytest
import yaml

from gadget_imager import main as main_module
from gadget_imager.statemachine.variants import ClassicVariant, PackVariant, SnapVariant
from gadget_imager.storage.exceptions import ConfigurationError, StepError


@pytest.fixture
def fake_machine(mocker):
    """Replace the state machine and keep logging setup out of the way."""
    mocker.patch.object(main_module, "setup_logging")
    mocker.patch.object(main_module, "add_file_sinks")
    return mocker.patch.object(main_module, "StateMachine")


class TestParser:
    """Tests for build_parser()."""

    def test_pack_arguments(self):
        """Test pack options and the shared flags."""
        args = main_module.build_parser().parse_args(
            [
                "pack",
                "--gadget-dir", "gadget",
                "--rootfs-dir", "rootfs",
                "-O", "out",
                "-i", "pc:4G",
                "--sector-size", "4096",
                "-w", "work",
                "--thru", "make_disk",
            ]
        )
        assert args.command == "pack"
        assert args.gadget_dir == Path("gadget")
        assert args.artifact_type == "raw"
        assert args.image_size == "pc:4G"
        assert args.sector_size == 4096
        assert args.workdir == Path("work")
        assert args.thru == "make_disk"
        assert not args.resume

    def test_snap_arguments(self):
        """Test repeated --snap flags are collected."""
        args = main_module.build_parser().parse_args(
            ["snap", "pc.model", "-c", "edge", "--snap", "pc=beta", "--snap", "htop"]
        )
        assert args.model_assertion == Path("pc.model")
        assert args.channel == "edge"
        assert args.snaps == ["pc=beta", "htop"]

    def test_subcommand_required(self):
        """Test a variant must be chosen."""
        with pytest.raises(SystemExit):
            main_module.build_parser().parse_args([])

    def test_pack_requires_directories(self):
        """Test pack needs both source directories."""
        with pytest.raises(SystemExit):
            main_module.build_parser().parse_args(["pack", "--gadget-dir", "gadget"])


class TestMain:
    """Tests for main()."""

    def test_success(self, fake_machine):
        """Test a successful build returns 0 with the options passed through."""
        code = main_module.main(
            ["pack", "--gadget-dir", "g", "--rootfs-dir", "r", "-w", "work", "--resume", "-d"]
        )

        assert code == 0
        common, options, variant = fake_machine.call_args.args
        assert common.debug
        assert options.workdir == Path("work")
        assert options.resume
        assert isinstance(variant, PackVariant)
        assert variant.options.gadget_dir == Path("g")
        fake_machine.return_value.setup.assert_called_once()
        fake_machine.return_value.run_with_teardown.assert_called_once()
        main_module.add_file_sinks.assert_called_once()
        assert main_module.add_file_sinks.call_args.args == (Path("work"),)
        assert main_module.add_file_sinks.call_args.kwargs["level"] == "TRACE"

    def test_build_failure(self, fake_machine):
        """Test a failing build returns 1."""
        fake_machine.return_value.run_with_teardown.side_effect = StepError(
            "make_disk", OSError("No space left on device")
        )
        assert main_module.main(["snap", "pc.model"]) == 1
        assert isinstance(fake_machine.call_args.args[2], SnapVariant)

    def test_invalid_definition(self, fake_machine, tmp_path):
        """Test an unreadable image definition returns 1 before building."""
        assert main_module.main(["classic", str(tmp_path / "missing.yaml")]) == 1
        fake_machine.assert_not_called()

    def test_classic_definition_loaded(self, fake_machine, tmp_path):
        """Test classic builds load the image definition."""
        path = tmp_path / "server.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "name": "server",
                    "architecture": "amd64",
                    "series": "noble",
                    "gadget": {"url": "gadget"},
                    "rootfs": {"directory": "rootfs"},
                }
            )
        )
        assert main_module.main(["classic", str(path)]) == 0
        variant = fake_machine.call_args.args[2]
        assert isinstance(variant, ClassicVariant)
        assert variant.definition.resolve_url("rootfs") == tmp_path / "rootfs"

    def test_dry_run_writes_no_logs(self, fake_machine, tmp_path):
        """Test a dry run does not create the workdir for log files."""
        main_module.main(
            [
                "pack", "--gadget-dir", "g", "--rootfs-dir", "r",
                "-w", str(tmp_path / "w"), "--dry-run",
            ]
        )
        main_module.add_file_sinks.assert_not_called()
        assert not (tmp_path / "w").exists()

    def test_configuration_error_reported(self, fake_machine):
        """Test setup errors from the machine are reported as failures."""
        fake_machine.return_value.setup.side_effect = ConfigurationError("bad --until")
        assert main_module.main(["pack", "--gadget-dir", "g", "--rootfs-dir", "r"]) == 1
        fake_machine.return_value.run_with_teardown.assert_not_called()
        main_module.add_file_sinks.assert_not_called()

    def test_conflicting_flags_leave_no_workdir(self, mocker, tmp_path):
        """Test a rejected flag combination creates neither the workdir nor log files."""
        mocker.patch.object(main_module, "setup_logging")
        workdir = tmp_path / "fresh-workdir"

        code = main_module.main(
            [
                "pack", "--gadget-dir", "g", "--rootfs-dir", "r",
                "-w", str(workdir), "--until", "make_disk", "--thru", "finish",
            ]
        )

        assert code == 1
        assert not workdir.exists()
