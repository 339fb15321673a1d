"""Pydantic models for build metadata (meta.json).

The metadata record is owned by upstream build stages; this pipeline only
reads it and adds one image entry. Unknown keys are preserved so a
rewritten record differs from the original only by the added entry.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Key under "images" naming the archived OSTree commit
OSTREE_ARCHIVE_KEY = "ostree"


class ImageEntry(BaseModel):
    """A published artifact recorded under meta.json "images".

    Attributes:
        path: File name of the artifact, relative to the build directory.
        sha256: SHA-256 hex digest of the artifact.
        size: Size of the artifact in bytes.
    """

    model_config = ConfigDict(extra="allow")

    path: str
    sha256: str
    size: int = Field(ge=0)


class BuildMeta(BaseModel):
    """The per-build metadata record.

    Attributes:
        name: OS name (e.g. 'fedora-coreos').
        buildid: Build identifier.
        ostree_version: Version string of the OSTree commit.
        ostree_commit: Commit checksum this build was made from.
        ref: OSTree ref the commit was composed on, if any.
        images: Mapping of image key to entry (or None when not built).
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str
    buildid: str
    ostree_version: str = Field(alias="ostree-version")
    ostree_commit: str = Field(alias="ostree-commit")
    ref: str | None = None
    images: dict[str, ImageEntry | None] = Field(default_factory=dict)

    def get_image(self, key: str) -> ImageEntry | None:
        """Return the entry for an image key, or None if absent."""
        return self.images.get(key)

    def has_image(self, key: str) -> bool:
        """Return True if an image key is populated."""
        return self.get_image(key) is not None

    def with_image(self, key: str, entry: ImageEntry) -> BuildMeta:
        """Return a copy of this record with an image entry added.

        The receiver is left untouched.
        """
        images = dict(self.images)
        images[key] = entry
        return self.model_copy(update={"images": images}, deep=True)

    def to_json_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary using the on-disk key names."""
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


__all__ = ["OSTREE_ARCHIVE_KEY", "BuildMeta", "ImageEntry"]
