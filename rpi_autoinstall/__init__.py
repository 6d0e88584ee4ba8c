"""Unattended Ubuntu Raspberry Pi installation image builder."""

from .__version__ import __version__

__all__ = ["__version__"]
