"""OSTree Disk Image - build-artifact assembly for bootable disk images.

This package turns a finished OSTree build into bare-metal, DASD and QEMU
disk images and publishes them alongside the build's metadata.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
