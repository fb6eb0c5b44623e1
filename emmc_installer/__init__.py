"""Install a running Armbian system onto the eMMC of Amlogic TV boxes."""

from .__version__ import __version__


__all__ = ["__version__"]
