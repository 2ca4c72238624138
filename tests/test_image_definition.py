"""Tests for config/image_definition.py."""

from pathlib import Path

import pytest
import yaml

from gadget_imager.config.image_definition import ImageDefinition, load_image_definition
from gadget_imager.storage.exceptions import ConfigurationError


def definition_data(**overrides):
    data = {
        "name": "ubuntu-server-raspi",
        "architecture": "arm64",
        "series": "noble",
        "gadget": {"url": "gadget/", "type": "directory", "target": "server"},
        "rootfs": {"tarball": {"url": "rootfs.tar.gz", "sha256sum": "abc"}},
        "artifacts": {"img": [{"name": "raspi.img", "volume": "pi"}]},
    }
    data.update(overrides)
    return data


class TestFromDict:
    """Tests for ImageDefinition.from_dict()."""

    def test_tarball_definition(self):
        """Test every consumed field is read."""
        definition = ImageDefinition.from_dict(definition_data())
        assert definition.architecture == "arm64"
        assert definition.gadget.gadget_type == "directory"
        assert definition.gadget.target == "server"
        assert definition.rootfs_tarball.sha256sum == "abc"
        assert definition.rootfs_directory is None
        assert [(i.name, i.volume) for i in definition.images] == [("raspi.img", "pi")]

    def test_directory_definition(self):
        """Test a rootfs directory and the default gadget type."""
        definition = ImageDefinition.from_dict(
            definition_data(
                gadget={"url": "gadget/"}, rootfs={"directory": "rootfs/"}, artifacts=None
            )
        )
        assert definition.gadget.gadget_type == "prebuilt"
        assert definition.rootfs_directory == "rootfs/"
        assert definition.rootfs_tarball is None
        assert definition.images == []

    @pytest.mark.parametrize(
        "rootfs",
        [{}, {"directory": "rootfs/", "tarball": {"url": "rootfs.tar"}}],
    )
    def test_exactly_one_rootfs_source(self, rootfs):
        """Test neither or both rootfs sources are rejected."""
        with pytest.raises(ConfigurationError, match="exactly one of rootfs tarball"):
            ImageDefinition.from_dict(definition_data(rootfs=rootfs))

    def test_missing_field(self):
        """Test a missing required field is named."""
        data = definition_data()
        del data["series"]
        with pytest.raises(ConfigurationError, match="missing required field 'series'"):
            ImageDefinition.from_dict(data)

    def test_unsupported_gadget_type(self):
        """Test only prebuilt and directory gadgets are accepted."""
        with pytest.raises(ConfigurationError, match="Unsupported gadget type 'git'"):
            ImageDefinition.from_dict(definition_data(gadget={"url": "x", "type": "git"}))

    def test_dict_round_trip_keeps_path(self, tmp_path):
        """Test the definition survives being stored in resume metadata."""
        path = tmp_path / "raspi.yaml"
        definition = ImageDefinition.from_dict(definition_data(), path=path)
        assert ImageDefinition.from_dict(definition.to_dict()) == definition


class TestResolveUrl:
    """Tests for ImageDefinition.resolve_url()."""

    def test_relative_to_definition(self, tmp_path):
        """Test relative paths resolve next to the definition file."""
        definition = ImageDefinition.from_dict(definition_data(), path=tmp_path / "raspi.yaml")
        assert definition.resolve_url("rootfs.tar.gz") == tmp_path / "rootfs.tar.gz"

    def test_file_url_and_absolute_path(self, tmp_path):
        """Test file:// URLs and absolute paths are taken as they are."""
        definition = ImageDefinition.from_dict(definition_data(), path=tmp_path / "raspi.yaml")
        assert definition.resolve_url("file:///srv/rootfs.tar") == Path("/srv/rootfs.tar")
        assert definition.resolve_url("/srv/gadget") == Path("/srv/gadget")


class TestLoadImageDefinition:
    """Tests for load_image_definition()."""

    def test_load(self, tmp_path):
        """Test a definition file is read with its resolved path."""
        path = tmp_path / "raspi.yaml"
        path.write_text(yaml.safe_dump(definition_data()))
        definition = load_image_definition(path)
        assert definition.name == "ubuntu-server-raspi"
        assert definition.path == path.resolve()

    def test_not_a_mapping(self, tmp_path):
        """Test a YAML list is refused."""
        path = tmp_path / "raspi.yaml"
        path.write_text("- name: raspi\n")
        with pytest.raises(ConfigurationError, match="is not a mapping"):
            load_image_definition(path)

    def test_unreadable(self, tmp_path):
        """Test a missing file is a ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Error reading image definition"):
            load_image_definition(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        """Test a YAML syntax error is a ConfigurationError."""
        path = tmp_path / "raspi.yaml"
        path.write_text("name: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Error reading image definition"):
            load_image_definition(path)
