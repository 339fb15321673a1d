"""Error definitions for the disk image pipeline.

Every error carries a stable code for programmatic handling and the name
of the pipeline stage that raised it, so the CLI can print a single
diagnostic naming the failing stage.
"""

from __future__ import annotations

from pathlib import Path

# Pipeline stage names used in diagnostics
STAGE_METADATA = "metadata"
STAGE_CONFIG = "config"
STAGE_COMMIT = "commit"
STAGE_SIZING = "sizing"
STAGE_BOOT = "boot-params"
STAGE_ASSEMBLY = "assembly"
STAGE_PUBLISH = "publish"


class DiskImageError(Exception):
    """Base error for all pipeline failures."""

    def __init__(
        self,
        message: str,
        code: str = "disk_image_error",
        stage: str = "pipeline",
    ) -> None:
        super().__init__(message)
        self.code = code
        self.stage = stage


class BuildNotFoundError(DiskImageError):
    """Raised when a build or its metadata cannot be located."""

    def __init__(self, build_id: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Build not found: {build_id}",
            code="build_not_found",
            stage=STAGE_METADATA,
        )
        self.build_id = build_id


class BuildLockTimeoutError(DiskImageError):
    """Raised when the per-build lock cannot be acquired in time."""

    def __init__(self, lock_name: str, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout}s waiting for build lock {lock_name}",
            code="lock_timeout",
            stage=STAGE_METADATA,
        )
        self.lock_name = lock_name


class BuildLockError(DiskImageError):
    """Raised when the per-build lock file cannot be created or opened."""

    def __init__(self, lock_name: str, message: str) -> None:
        super().__init__(message, code="lock_error", stage=STAGE_METADATA)
        self.lock_name = lock_name


class ConfigError(DiskImageError):
    """Raised when the image configuration is missing or malformed."""

    def __init__(self, key: str, message: str) -> None:
        super().__init__(
            f"Invalid image configuration key '{key}': {message}",
            code="config_error",
            stage=STAGE_CONFIG,
        )
        self.key = key


class ArchiveMissingError(DiskImageError):
    """Raised when the commit is not cached and no archive is available."""

    def __init__(self, archive_path: Path | None) -> None:
        super().__init__(
            f"OSTree commit archive not found: {archive_path}",
            code="archive_missing",
            stage=STAGE_COMMIT,
        )
        self.archive_path = archive_path


class UnsupportedArchitectureError(DiskImageError):
    """Raised for an architecture the image type cannot be built for."""

    def __init__(self, arch: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Unsupported architecture: {arch}",
            code="unsupported_architecture",
            stage=STAGE_BOOT,
        )
        self.arch = arch


class UnsupportedKernelConfigError(DiskImageError):
    """Raised when the commit's kernel lacks a required feature."""

    def __init__(self, option: str, commit: str) -> None:
        super().__init__(
            f"Kernel in commit {commit[:12]} is not built with {option}=y",
            code="unsupported_kernel_config",
            stage=STAGE_BOOT,
        )
        self.option = option
        self.commit = commit


class DiskAssemblyError(DiskImageError):
    """Raised when the sandboxed disk writer fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message, code="disk_assembly_failed", stage=STAGE_ASSEMBLY)
        self.exit_code = exit_code
        self.log_path = log_path


class PublishError(DiskImageError):
    """Raised when an artifact or metadata file cannot be moved into place."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="publish_error", stage=STAGE_PUBLISH)


class CommandError(DiskImageError):
    """Raised when an external helper tool fails."""

    def __init__(
        self,
        message: str,
        stage: str,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message, code="command_failed", stage=stage)
        self.exit_code = exit_code


__all__ = [
    "STAGE_ASSEMBLY",
    "STAGE_BOOT",
    "STAGE_COMMIT",
    "STAGE_CONFIG",
    "STAGE_METADATA",
    "STAGE_PUBLISH",
    "STAGE_SIZING",
    "ArchiveMissingError",
    "BuildLockError",
    "BuildLockTimeoutError",
    "BuildNotFoundError",
    "CommandError",
    "ConfigError",
    "DiskAssemblyError",
    "DiskImageError",
    "PublishError",
    "UnsupportedArchitectureError",
    "UnsupportedKernelConfigError",
]
