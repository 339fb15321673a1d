"""Immutable per-invocation build context.

The context is assembled once, after the already-built gate and the
configuration load, and handed to every later stage. Stages read their
inputs from it instead of from settings or the environment.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ostree_diskimage.builds.meta import BuildMeta
from ostree_diskimage.config import Settings
from ostree_diskimage.imageconfig.schema import ImageConfig
from ostree_diskimage.types import ImageFormat, ImageType


@dataclass(frozen=True)
class BuildContext:
    """Inputs shared by all pipeline stages.

    Attributes:
        settings: Effective settings.
        build_id: Resolved build identifier.
        arch: Build architecture.
        image_type: Image type being built.
        build_dir: Directory of the build for arch.
        meta: Metadata record as loaded before the run.
        config: Image configuration.
        work_dir: Scratch directory exclusive to this invocation.
    """

    settings: Settings
    build_id: str
    arch: str
    image_type: ImageType
    build_dir: Path
    meta: BuildMeta
    config: ImageConfig
    work_dir: Path

    @property
    def image_format(self) -> ImageFormat:
        """Format of the image being built."""
        return self.image_type.image_format

    @property
    def image_name(self) -> str:
        """Final file name of the image."""
        return (
            f"{self.meta.name}-{self.meta.ostree_version}-{self.image_type.value}"
            f".{self.arch}.{self.image_format.value}"
        )

    @property
    def image_path(self) -> Path:
        """Final path of the image."""
        return self.build_dir / self.image_name

    @property
    def tmp_image_path(self) -> Path:
        """Temporary path the image is written to before publishing.

        It lives in the build directory so publishing is a same-filesystem
        rename.
        """
        return self.build_dir / f".{self.image_name}.tmp"

    @property
    def scratch_repo_dir(self) -> Path:
        """Location of the scratch commit store, if one is needed."""
        return self.work_dir / "repo"


__all__ = ["BuildContext"]
