"""Shared type definitions for ostree_diskimage.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum

# Architectures the disk writer knows how to make bootable
SUPPORTED_ARCHES = ("x86_64", "aarch64", "ppc64le", "s390x")


class ImageFormat(str, Enum):
    """On-disk container format of an image file."""

    RAW = "raw"
    QCOW2 = "qcow2"


class ImageType(str, Enum):
    """Kind of disk image produced from a build."""

    METAL = "metal"
    DASD = "dasd"
    QEMU = "qemu"

    @property
    def image_format(self) -> ImageFormat:
        """Format of the image file for this type."""
        if self is ImageType.QEMU:
            return ImageFormat.QCOW2
        return ImageFormat.RAW

    @property
    def platform_id(self) -> str:
        """Ignition platform id; DASD boots like any other bare-metal disk."""
        if self is ImageType.DASD:
            return ImageType.METAL.value
        return self.value

    @property
    def size_is_estimated(self) -> bool:
        """Whether the disk size comes from the commit size estimate."""
        return self in (ImageType.METAL, ImageType.DASD)


class BootFilesystem(str, Enum):
    """Filesystem of the boot partition."""

    EXT4 = "ext4"
    EXT4VERITY = "ext4verity"


class RootFilesystem(str, Enum):
    """Filesystem (or layout) of the root partition."""

    XFS = "xfs"
    EXT4VERITY = "ext4verity"
    BTRFS = "btrfs"
    LUKS = "luks"


@dataclass
class ArtifactInfo:
    """Information about a finished disk image."""

    filename: str
    size_bytes: int
    sha256: str


__all__ = [
    "SUPPORTED_ARCHES",
    "ArtifactInfo",
    "BootFilesystem",
    "ImageFormat",
    "ImageType",
    "RootFilesystem",
]
