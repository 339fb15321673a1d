"""Disk size planning.

Bare-metal style images are sized from an estimate of the commit's
on-disk size, padded for filesystem overhead, plus room for the non-root
partitions; their root partition is left unsized so it fills the disk.
Virtualization images use the disk size from the image configuration and
pin the root partition to the raw estimate, leaving the rest of the disk
free.
"""

from __future__ import annotations

import json
import logging
import math
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ostree_diskimage.errors import STAGE_SIZING, CommandError
from ostree_diskimage.imageconfig.schema import ImageConfig
from ostree_diskimage.types import ImageType

logger = logging.getLogger(__name__)

DEFAULT_OVERHEAD_PERCENT = 35
NONROOT_PARTITION_MB = 513

# fs-verity needs filesystem blocks matching the page size
VERITY_BLOCK_SIZE = 4096

# Timeout for the estimator (seconds)
ESTIMATE_TIMEOUT = 600


class SizeEstimator(Protocol):
    """Estimates the disk space a commit needs once deployed."""

    def estimate(
        self,
        repo: Path,
        ref: str,
        *,
        blksize: int | None = None,
        add_percent: int = 0,
    ) -> int:
        """Return the estimated payload size in MiB.

        ``add_percent`` asks the estimator to pad its result. The pipeline
        passes 0 and applies the overhead itself in plan_disk_size().
        """
        ...


class CommandSizeEstimator:
    """Size estimator backed by an external estimation command.

    The command is invoked as
    ``<command> --repo REPO [--blksize N] [--add-percent N] REF`` and must
    print JSON containing ``{"estimate-mb": {"final": N}}``.
    """

    def __init__(self, command: str, timeout: int = ESTIMATE_TIMEOUT) -> None:
        self.command = command
        self.timeout = timeout

    def compose_command(
        self,
        repo: Path,
        ref: str,
        blksize: int | None = None,
        add_percent: int = 0,
    ) -> list[str]:
        """Compose the estimator command line."""
        cmd = [self.command, "--repo", str(repo)]
        if blksize is not None:
            cmd.append(f"--blksize={blksize}")
        if add_percent:
            cmd.append(f"--add-percent={add_percent}")
        cmd.append(ref)
        return cmd

    def estimate(
        self,
        repo: Path,
        ref: str,
        *,
        blksize: int | None = None,
        add_percent: int = 0,
    ) -> int:
        """Run the estimator and return its result in MiB.

        Raises:
            CommandError: If the command fails or prints unexpected output.
        """
        cmd = self.compose_command(repo, ref, blksize, add_percent)
        logger.info("Estimating commit size: %s", shlex.join(cmd))

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=True,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandError(
                f"Size estimation timed out after {self.timeout}s",
                stage=STAGE_SIZING,
                exit_code=-1,
            ) from e
        except subprocess.CalledProcessError as e:
            raise CommandError(
                f"Size estimation failed: {e.stderr}",
                stage=STAGE_SIZING,
                exit_code=e.returncode,
            ) from e
        except OSError as e:
            raise CommandError(
                f"Failed to run size estimator: {e}", stage=STAGE_SIZING
            ) from e

        try:
            return int(json.loads(result.stdout)["estimate-mb"]["final"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise CommandError(
                f"Unexpected size estimator output: {result.stdout[:200]!r}",
                stage=STAGE_SIZING,
            ) from e


@dataclass(frozen=True)
class DiskSize:
    """Planned disk geometry.

    Attributes:
        image_size: Total image size with unit suffix (e.g. '3213M', '10G').
        rootfs_size: Root partition size with unit suffix, or '0' to fill
            the remaining disk.
        estimate_mb: Raw commit size estimate the plan was derived from.
    """

    image_size: str
    rootfs_size: str
    estimate_mb: int


def blksize_for(config: ImageConfig) -> int | None:
    """Return the block size hint for the estimator, if one is needed."""
    if config.boot_verity:
        return VERITY_BLOCK_SIZE
    return None


def plan_disk_size(
    image_type: ImageType,
    estimate_mb: int,
    config: ImageConfig,
    overhead_percent: int = DEFAULT_OVERHEAD_PERCENT,
    nonroot_mb: int = NONROOT_PARTITION_MB,
) -> DiskSize:
    """Derive image and root partition sizes for an image type.

    Args:
        image_type: Image type being built.
        estimate_mb: Raw commit size estimate (MiB).
        config: Image configuration (for configured disk sizes).
        overhead_percent: Headroom added to the estimate for estimated sizes.
        nonroot_mb: Space reserved for non-root partitions (MiB).

    Returns:
        DiskSize plan.
    """
    if image_type.size_is_estimated:
        rootfs_mb = math.ceil(estimate_mb * (100 + overhead_percent) / 100)
        plan = DiskSize(
            image_size=f"{rootfs_mb + nonroot_mb}M",
            rootfs_size="0",
            estimate_mb=estimate_mb,
        )
    else:
        plan = DiskSize(
            image_size=f"{config.size}G",
            rootfs_size=f"{estimate_mb}M",
            estimate_mb=estimate_mb,
        )

    logger.info(
        "Planned %s disk: image size %s, rootfs size %s (estimate %d MiB)",
        image_type.value,
        plan.image_size,
        plan.rootfs_size,
        estimate_mb,
    )
    return plan


__all__ = [
    "DEFAULT_OVERHEAD_PERCENT",
    "ESTIMATE_TIMEOUT",
    "NONROOT_PARTITION_MB",
    "VERITY_BLOCK_SIZE",
    "CommandSizeEstimator",
    "DiskSize",
    "SizeEstimator",
    "blksize_for",
    "plan_disk_size",
]
