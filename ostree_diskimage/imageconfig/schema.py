"""Pydantic model for the per-image build configuration (image.yaml).

Keys use the hyphenated spelling of the configuration file; the model
exposes them under Python attribute names. Keys this pipeline does not
consume are ignored, but values of the keys it does consume are
validated strictly.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ostree_diskimage.types import BootFilesystem, RootFilesystem

# Spellings accepted for the deprecated luks_rootfs switch
_TRUE_STRINGS = {"yes", "true", "1", "on"}
_FALSE_STRINGS = {"no", "false", "0", "off", ""}

DEFAULT_DISK_SIZE_GB = 10


class ImageConfig(BaseModel):
    """Image build configuration.

    Attributes:
        bootfs: Filesystem of the boot partition.
        luks_rootfs: Deprecated switch selecting a LUKS root; takes
            precedence over rootfs when set.
        rootfs: Root filesystem type.
        size: Disk size in GiB for image types with a configured size.
        extra_kargs: Extra kernel arguments, in order.
        ostree_remote: Remote name recorded in the deployed origin.
        save_var_subdirs_for_selabel_workaround: /var subdirectories whose
            SELinux labels must be preserved by the disk writer.
    """

    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        frozen=True,
    )

    bootfs: BootFilesystem = Field(default=BootFilesystem.EXT4)
    luks_rootfs: bool | None = Field(default=None)
    rootfs: RootFilesystem = Field(default=RootFilesystem.XFS)
    size: int = Field(default=DEFAULT_DISK_SIZE_GB, ge=1, description="Disk size (GiB)")
    extra_kargs: list[str] = Field(default_factory=list, alias="extra-kargs")
    ostree_remote: str | None = Field(default=None, alias="ostree-remote")
    save_var_subdirs_for_selabel_workaround: list[str] | None = Field(
        default=None, alias="save-var-subdirs-for-selabel-workaround"
    )

    @field_validator("luks_rootfs", mode="before")
    @classmethod
    def validate_luks_rootfs(cls, v: object) -> object:
        """Accept the historical yes/no spelling."""
        if isinstance(v, str):
            lowered = v.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
            raise ValueError(f"expected yes or no, got '{v}'")
        return v

    @field_validator("extra_kargs", "save_var_subdirs_for_selabel_workaround")
    @classmethod
    def validate_string_list(cls, v: list[str] | None) -> list[str] | None:
        """Validate list entries are non-empty strings without whitespace."""
        if v is None:
            return v
        for item in v:
            if not item or not item.strip():
                raise ValueError("list items must be non-empty strings")
            if any(c.isspace() for c in item):
                raise ValueError(f"list items must not contain whitespace, got '{item}'")
        return v

    @property
    def effective_rootfs(self) -> RootFilesystem:
        """Root filesystem after applying the deprecated luks_rootfs switch."""
        if self.luks_rootfs:
            return RootFilesystem.LUKS
        return self.rootfs

    @property
    def boot_verity(self) -> bool:
        """Whether the boot partition uses fs-verity."""
        return self.bootfs is BootFilesystem.EXT4VERITY


__all__ = ["DEFAULT_DISK_SIZE_GB", "ImageConfig"]
