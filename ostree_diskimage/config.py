"""Configuration settings for ostree_diskimage.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the DISKIMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="DISKIMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    workdir: Path = Field(
        default_factory=Path.cwd,
        description="Working directory holding builds/, src/config/ and tmp/",
    )
    builds_dir: Path | None = Field(
        default=None,
        description="Builds directory (defaults to <workdir>/builds)",
    )
    config_dir: Path | None = Field(
        default=None,
        description="Image configuration directory (defaults to <workdir>/src/config)",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description="Scratch directory (defaults to <workdir>/tmp)",
    )
    primary_repo: Path | None = Field(
        default=None,
        description="Long-lived OSTree commit store (defaults to <tmp_dir>/repo)",
    )

    # Operational
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    lock_timeout: float | None = Field(
        default=300.0,
        ge=0,
        description="Seconds to wait for the per-build lock (None = block)",
    )

    # External tools
    ostree_bin: str = Field(default="ostree", description="ostree executable")
    qemu_img_bin: str = Field(default="qemu-img", description="qemu-img executable")
    estimator_command: str = Field(
        default="/usr/lib/coreos-assembler/estimate-commit-disk-size",
        description="Commit disk size estimator",
    )
    sandbox_command: list[str] = Field(
        default_factory=lambda: ["runvm"],
        description="Command that runs the privileged disk writer in a sandbox",
    )
    disk_script: str = Field(
        default="/usr/lib/coreos-assembler/create_disk.sh",
        description="Disk writer script executed inside the sandbox",
    )
    grub_script: str = Field(
        default="/usr/lib/coreos-assembler/grub.cfg",
        description="Bootloader script passed to the disk writer",
    )

    # Sizing
    size_overhead_percent: int = Field(
        default=35,
        ge=0,
        le=100,
        description="Headroom added to the commit size estimate for metal images",
    )
    nonroot_partition_mb: int = Field(
        default=513,
        ge=0,
        description="Size of the boot, EFI and BIOS partitions (MiB)",
    )

    def resolved_builds_dir(self) -> Path:
        """Return the effective builds directory."""
        return self.builds_dir or self.workdir / "builds"

    def resolved_config_dir(self) -> Path:
        """Return the effective image configuration directory."""
        return self.config_dir or self.workdir / "src" / "config"

    def resolved_tmp_dir(self) -> Path:
        """Return the effective scratch directory."""
        return self.tmp_dir or self.workdir / "tmp"

    def resolved_primary_repo(self) -> Path:
        """Return the effective primary commit store path."""
        return self.primary_repo or self.resolved_tmp_dir() / "repo"


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
