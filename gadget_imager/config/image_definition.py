"""Minimal classic image definition.

Only the fields the classic build steps consume are modelled here: where the
gadget tree comes from, where the rootfs comes from, the target architecture
and series, and the names of the produced image files. Anything else in the
file is ignored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from gadget_imager.storage.exceptions import ConfigurationError


GADGET_TYPES = ("prebuilt", "directory")


@dataclass
class GadgetSource:
    url: str
    gadget_type: str
    target: Optional[str] = None


@dataclass
class RootfsTarball:
    url: str
    sha256sum: Optional[str] = None


@dataclass
class ImageArtifact:
    name: str
    volume: Optional[str] = None


@dataclass
class ImageDefinition:
    name: str
    architecture: str
    series: str
    gadget: GadgetSource
    rootfs_tarball: Optional[RootfsTarball] = None
    rootfs_directory: Optional[str] = None
    images: list[ImageArtifact] = field(default_factory=list)
    path: Optional[Path] = None

    def resolve_url(self, url: str) -> Path:
        """Turn a file:// URL or bare path into a path, relative to the definition."""
        location = Path(url[len("file://"):] if url.startswith("file://") else url)
        if not location.is_absolute() and self.path is not None:
            location = self.path.parent / location
        return location

    def to_dict(self) -> dict:
        rootfs: dict = {}
        if self.rootfs_tarball is not None:
            rootfs["tarball"] = {
                "url": self.rootfs_tarball.url,
                "sha256sum": self.rootfs_tarball.sha256sum,
            }
        if self.rootfs_directory is not None:
            rootfs["directory"] = self.rootfs_directory
        return {
            "name": self.name,
            "architecture": self.architecture,
            "series": self.series,
            "gadget": {
                "url": self.gadget.url,
                "type": self.gadget.gadget_type,
                "target": self.gadget.target,
            },
            "rootfs": rootfs,
            "artifacts": {
                "img": [
                    {"name": image.name, "volume": image.volume}
                    for image in self.images
                ]
            },
            "path": str(self.path) if self.path else None,
        }

    @classmethod
    def from_dict(cls, data: dict, path: Optional[Path] = None) -> "ImageDefinition":
        if path is None and data.get("path"):
            path = Path(data["path"])
        try:
            gadget = data["gadget"]
            rootfs = data["rootfs"]
            tarball = rootfs.get("tarball")
            definition = cls(
                name=str(data["name"]),
                architecture=str(data["architecture"]),
                series=str(data["series"]),
                gadget=GadgetSource(
                    url=str(gadget["url"]),
                    gadget_type=str(gadget.get("type", "prebuilt")),
                    target=gadget.get("target"),
                ),
                rootfs_tarball=(
                    RootfsTarball(url=str(tarball["url"]), sha256sum=tarball.get("sha256sum"))
                    if tarball
                    else None
                ),
                rootfs_directory=rootfs.get("directory"),
                images=[
                    ImageArtifact(name=str(entry["name"]), volume=entry.get("volume"))
                    for entry in (data.get("artifacts") or {}).get("img") or []
                ],
                path=path,
            )
        except (KeyError, TypeError, AttributeError) as error:
            raise ConfigurationError(
                f"Image definition {path} is missing required field {error}"
            ) from error
        if definition.gadget.gadget_type not in GADGET_TYPES:
            raise ConfigurationError(
                f"Unsupported gadget type {definition.gadget.gadget_type!r}, "
                f"expected one of {', '.join(GADGET_TYPES)}"
            )
        if (definition.rootfs_tarball is None) == (definition.rootfs_directory is None):
            raise ConfigurationError(
                f"Image definition {path} must give exactly one of rootfs tarball "
                "or rootfs directory"
            )
        return definition


def load_image_definition(path: Path) -> ImageDefinition:
    """Read an image definition file."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as error:
        raise ConfigurationError(
            f"Error reading image definition {path}: {error}"
        ) from error
    if not isinstance(data, dict):
        raise ConfigurationError(f"Image definition {path} is not a mapping")
    return ImageDefinition.from_dict(data, path=path.resolve())
