"""Version information for gadget-imager."""

__version__ = "0.4.0"
