"""Build directory handling.

This module handles:
- Locating builds and reading their metadata
- The per-build lock and the already-built gate
- Publishing finished artifacts into the build directory
- The end-to-end extend pipeline (see builds.service)
"""

from ostree_diskimage.builds.meta import BuildMeta, ImageEntry

__all__ = ["BuildMeta", "ImageEntry"]
