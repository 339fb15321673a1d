"""Boot parameter computation.

Builds the kernel command line and ignition platform id baked into a
disk image, and checks that the commit's kernel supports the features the
image configuration asks for.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ostree_diskimage.errors import (
    CommandError,
    UnsupportedArchitectureError,
    UnsupportedKernelConfigError,
)
from ostree_diskimage.imageconfig.schema import ImageConfig
from ostree_diskimage.ostree.repo import OstreeRepo
from ostree_diskimage.types import SUPPORTED_ARCHES, ImageType

logger = logging.getLogger(__name__)

MODULES_DIR = "/usr/lib/modules"
FS_VERITY_OPTION = "CONFIG_FS_VERITY"

# Serial console per architecture; s390x detects its console itself
CONSOLE_KARGS: dict[str, list[str]] = {
    "x86_64": ["console=tty0", "console=ttyS0,115200n8"],
    "aarch64": ["console=tty0", "console=ttyAMA0,115200n8"],
    "ppc64le": ["console=tty0", "console=hvc0,115200n8"],
    "s390x": [],
}

# Image types restricted to particular architectures
ARCH_RESTRICTIONS: dict[ImageType, tuple[str, ...]] = {
    ImageType.DASD: ("s390x",),
}


@dataclass(frozen=True)
class BootParams:
    """Boot parameters for the disk writer.

    Attributes:
        platform_id: Ignition platform id.
        kargs: Kernel arguments, in order.
    """

    platform_id: str
    kargs: list[str] = field(default_factory=list)

    @property
    def kargs_str(self) -> str:
        """Kernel arguments as a single command line string."""
        return " ".join(self.kargs)


def check_architecture(image_type: ImageType, arch: str) -> None:
    """Validate that an image type can be built for an architecture.

    Raises:
        UnsupportedArchitectureError: If the combination is unsupported.
    """
    if arch not in SUPPORTED_ARCHES:
        raise UnsupportedArchitectureError(arch)

    allowed = ARCH_RESTRICTIONS.get(image_type)
    if allowed is not None and arch not in allowed:
        raise UnsupportedArchitectureError(
            arch,
            f"{image_type.value} images can only be built for "
            f"{', '.join(allowed)}, not {arch}",
        )


def ignition_platform_id(image_type: ImageType) -> str:
    """Return the ignition platform id for an image type."""
    return image_type.platform_id


def console_kargs(arch: str) -> list[str]:
    """Return the console kernel arguments for an architecture.

    Raises:
        UnsupportedArchitectureError: If the architecture is unknown.
    """
    try:
        return list(CONSOLE_KARGS[arch])
    except KeyError:
        raise UnsupportedArchitectureError(arch) from None


def build_kernel_args(config: ImageConfig, arch: str, platform_id: str) -> list[str]:
    """Compose the kernel command line.

    Order: extra kargs from configuration, console kargs, platform id.
    """
    kargs = list(config.extra_kargs)
    kargs.extend(console_kargs(arch))
    kargs.append(f"ignition.platform.id={platform_id}")
    return kargs


def kernel_config_enabled(kernel_config: str, option: str) -> bool:
    """Return True if a kernel .config text has option built in."""
    wanted = f"{option}=y"
    return any(line.strip() == wanted for line in kernel_config.splitlines())


def check_verity_support(repo: OstreeRepo, commit: str) -> None:
    """Check the commit's kernel is built with fs-verity.

    The kernel config is read from the commit itself.

    Raises:
        UnsupportedKernelConfigError: If fs-verity is not enabled or the
            kernel config cannot be found.
    """
    try:
        kernel_dirs = repo.ls(commit, MODULES_DIR)
    except CommandError as e:
        logger.error("Cannot list %s in %s: %s", MODULES_DIR, commit[:12], e)
        raise UnsupportedKernelConfigError(FS_VERITY_OPTION, commit) from e
    if len(kernel_dirs) != 1:
        logger.error(
            "Expected one kernel in %s of %s, found %d",
            MODULES_DIR,
            commit[:12],
            len(kernel_dirs),
        )
        raise UnsupportedKernelConfigError(FS_VERITY_OPTION, commit)

    config_path = f"{MODULES_DIR}/{kernel_dirs[0]}/config"
    try:
        kernel_config = repo.cat(commit, config_path)
    except CommandError as e:
        logger.error("Cannot read %s from %s: %s", config_path, commit[:12], e)
        raise UnsupportedKernelConfigError(FS_VERITY_OPTION, commit) from e
    if not kernel_config_enabled(kernel_config, FS_VERITY_OPTION):
        raise UnsupportedKernelConfigError(FS_VERITY_OPTION, commit)

    logger.info("Kernel %s supports fs-verity", kernel_dirs[0])


def build_boot_params(
    image_type: ImageType,
    arch: str,
    config: ImageConfig,
    repo: OstreeRepo,
    commit: str,
) -> BootParams:
    """Compute boot parameters for an image.

    Args:
        image_type: Image type being built.
        arch: Build architecture.
        config: Image configuration.
        repo: Repository holding the commit.
        commit: Commit checksum.

    Returns:
        BootParams for the disk writer.

    Raises:
        UnsupportedArchitectureError: If arch is unsupported for the type.
        UnsupportedKernelConfigError: If a required kernel feature is missing.
    """
    check_architecture(image_type, arch)

    if config.boot_verity:
        check_verity_support(repo, commit)

    platform_id = ignition_platform_id(image_type)
    params = BootParams(
        platform_id=platform_id,
        kargs=build_kernel_args(config, arch, platform_id),
    )
    logger.info("Kernel arguments: %s", params.kargs_str)
    return params


__all__ = [
    "ARCH_RESTRICTIONS",
    "CONSOLE_KARGS",
    "FS_VERITY_OPTION",
    "MODULES_DIR",
    "BootParams",
    "build_boot_params",
    "build_kernel_args",
    "check_architecture",
    "check_verity_support",
    "console_kargs",
    "ignition_platform_id",
    "kernel_config_enabled",
]
