"""Per-image build configuration.

Access the schema via ostree_diskimage.imageconfig.schema and loaders via
ostree_diskimage.imageconfig.io.
"""

from ostree_diskimage.imageconfig.schema import ImageConfig

__all__ = ["ImageConfig"]
