"""gadget-imager: build bootable disk images from gadget volume descriptions."""

from gadget_imager.__version__ import __version__

__all__ = ["__version__"]
