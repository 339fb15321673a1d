"""Disk assembly in an isolated, privileged sandbox.

This module handles:
- Allocating the image file at its temporary path
- Describing how the image file is attached inside the sandbox
- Composing the disk writer arguments
- Running the disk writer and capturing its output to a log file

Partitioning and device node creation need privileges the calling process
should not hold, so they only ever happen inside the sandbox. Nothing here
retries: a failed run leaves only the temporary image file behind.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from ostree_diskimage.errors import DiskAssemblyError
from ostree_diskimage.types import ImageFormat, ImageType, RootFilesystem

logger = logging.getLogger(__name__)

# Device the image file appears as inside the sandbox
TARGET_DISK = "/dev/vda"

# ECKD DASD geometry uses 4 KiB physical and logical blocks
DASD_BLOCK_SIZE = 4096

# Timeout for allocating the image file (seconds)
ALLOCATE_TIMEOUT = 300


@dataclass(frozen=True)
class AssemblyParams:
    """Everything the sandboxed disk writer needs.

    Attributes:
        image_type: Image type being built.
        image_path: Host path of the (temporary) image file.
        image_name: Final file name of the image.
        build_id: Build identifier.
        osname: OS name for the deployment.
        ref: Ref addressing the commit in repo_path.
        commit: Commit checksum.
        repo_path: Repository holding the commit.
        kargs: Kernel command line.
        grub_script: Bootloader script passed to the disk writer.
        rootfs_size: Root partition size ('0' fills the disk).
        rootfs: Root filesystem type.
        remote: Remote name recorded in the deployment origin.
        save_var_subdirs: /var subdirectories needing the selabel workaround.
        boot_verity: Whether the boot partition uses fs-verity.
        disk: Device path of the image inside the sandbox.
    """

    image_type: ImageType
    image_path: Path
    image_name: str
    build_id: str
    osname: str
    ref: str
    commit: str
    repo_path: Path
    kargs: str
    grub_script: str
    rootfs_size: str
    rootfs: RootFilesystem
    remote: str | None = None
    save_var_subdirs: list[str] = field(default_factory=list)
    boot_verity: bool = False
    disk: str = TARGET_DISK

    @property
    def image_format(self) -> ImageFormat:
        """Format of the image file."""
        return self.image_type.image_format


class SandboxExecutor(Protocol):
    """Runs the disk writer inside an isolated, privileged context."""

    def run(self, params: AssemblyParams) -> None:
        """Write a bootable disk to params.image_path.

        Raises:
            DiskAssemblyError: If the disk writer fails.
        """
        ...


def target_drive_args(
    image_type: ImageType,
    image_format: ImageFormat,
    image_path: Path,
) -> list[str]:
    """Describe how the image file is attached inside the sandbox.

    DASD images on raw files are attached with 4 KiB physical and logical
    blocks to emulate ECKD DASD geometry. Everything else is a plain
    virtio disk with default block sizes.
    """
    if image_type is ImageType.DASD and image_format is ImageFormat.RAW:
        return [
            "-drive",
            f"if=none,id=target,format={image_format.value},file={image_path},cache=unsafe",
            "-device",
            "virtio-blk-ccw,drive=target,"
            f"physical_block_size={DASD_BLOCK_SIZE},"
            f"logical_block_size={DASD_BLOCK_SIZE},scsi=off",
        ]
    return [
        "-drive",
        f"if=virtio,id=target,format={image_format.value},file={image_path},cache=unsafe",
    ]


def create_disk_args(params: AssemblyParams) -> list[str]:
    """Compose the disk writer arguments.

    Args:
        params: Assembly parameters.

    Returns:
        Argument list for the disk writer script.
    """
    args = [
        "--disk",
        params.disk,
        "--buildid",
        params.build_id,
        "--imgid",
        params.image_name,
        "--grub-script",
        params.grub_script,
        "--kargs",
        params.kargs,
        "--osname",
        params.osname,
        "--ostree-ref",
        params.ref,
        "--ostree-commit",
        params.commit,
        "--ostree-repo",
        str(params.repo_path),
        "--rootfs-size",
        params.rootfs_size,
        "--rootfs",
        params.rootfs.value,
    ]

    if params.remote:
        args.extend(["--ostree-remote", params.remote])

    if params.save_var_subdirs:
        args.extend(["--save-var-subdirs", ",".join(params.save_var_subdirs)])

    if params.boot_verity:
        args.append("--boot-verity")

    return args


def allocate_image(
    image_path: Path,
    image_format: ImageFormat,
    image_size: str,
    qemu_img_bin: str = "qemu-img",
) -> None:
    """Create an empty image file of the planned size.

    Raises:
        DiskAssemblyError: If the file cannot be created.
    """
    cmd = [qemu_img_bin, "create", "-f", image_format.value, str(image_path), image_size]
    logger.info("Allocating image: %s", shlex.join(cmd))

    try:
        subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=ALLOCATE_TIMEOUT,
            check=True,
        )
    except subprocess.CalledProcessError as e:
        raise DiskAssemblyError(
            f"Failed to allocate {image_path}: {e.stderr}",
            exit_code=e.returncode,
        ) from e
    except subprocess.TimeoutExpired as e:
        raise DiskAssemblyError(
            f"Allocating {image_path} timed out after {ALLOCATE_TIMEOUT}s",
            exit_code=-1,
        ) from e
    except OSError as e:
        raise DiskAssemblyError(f"Failed to run {qemu_img_bin}: {e}") from e


class CommandSandboxExecutor:
    """Runs the disk writer through a sandbox launcher command.

    The launcher receives the drive arguments, a ``--`` separator, and then
    the disk writer script with its arguments. Its exit status is the only
    signal of success.
    """

    def __init__(
        self,
        sandbox_command: list[str],
        disk_script: str,
        log_dir: Path,
    ) -> None:
        self.sandbox_command = list(sandbox_command)
        self.disk_script = disk_script
        self.log_dir = log_dir

    def compose_command(self, params: AssemblyParams) -> list[str]:
        """Compose the full sandbox command line."""
        return [
            *self.sandbox_command,
            *target_drive_args(params.image_type, params.image_format, params.image_path),
            "--",
            self.disk_script,
            *create_disk_args(params),
        ]

    def run(self, params: AssemblyParams) -> None:
        """Run the disk writer and wait for it to finish.

        Raises:
            DiskAssemblyError: If the launcher cannot be started or exits
                non-zero.
        """
        log_path = self.log_dir / f"{params.image_name}.log"
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DiskAssemblyError(
                f"Cannot create log directory {self.log_dir}: {e}"
            ) from e

        cmd = self.compose_command(params)
        cmd_str = shlex.join(cmd)
        logger.info("Assembling disk: %s", cmd_str)

        started_at = datetime.now(timezone.utc)
        try:
            with log_path.open("w") as log_file:
                log_file.write(f"# Command: {cmd_str}\n")
                log_file.write(f"# Started: {started_at.isoformat()}\n")
                log_file.write("# " + "=" * 70 + "\n\n")
                log_file.flush()

                result = subprocess.run(
                    cmd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    check=False,
                )
        except OSError as e:
            raise DiskAssemblyError(
                f"Failed to start sandbox: {e}", log_path=log_path
            ) from e

        finished_at = datetime.now(timezone.utc)
        try:
            with log_path.open("a") as log_file:
                log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
                log_file.write(f"# Exit code: {result.returncode}\n")
                duration = (finished_at - started_at).total_seconds()
                log_file.write(f"# Duration: {duration:.1f}s\n")
        except OSError as e:
            raise DiskAssemblyError(
                f"Cannot write assembly log {log_path}: {e}", log_path=log_path
            ) from e

        if result.returncode != 0:
            message = f"Disk assembly failed with exit code {result.returncode}"
            logger.error("%s. See log: %s", message, log_path)
            raise DiskAssemblyError(
                message, exit_code=result.returncode, log_path=log_path
            )

        logger.info("Disk assembly finished in %.1fs", duration)


__all__ = [
    "ALLOCATE_TIMEOUT",
    "DASD_BLOCK_SIZE",
    "TARGET_DISK",
    "AssemblyParams",
    "CommandSandboxExecutor",
    "SandboxExecutor",
    "allocate_image",
    "create_disk_args",
    "target_drive_args",
]
