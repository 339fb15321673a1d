"""Publishing finished images into a build directory.

This module handles:
- Computing checksums and sizes of finished images
- Merging the new image entry into a copy of the metadata record
- Atomically moving the image and the metadata into place

The image is renamed into place before the metadata, so the record never
names an artifact that is not yet visible. Both renames stay within the
build directory's filesystem.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from pathlib import Path

from ostree_diskimage.builds.meta import BuildMeta, ImageEntry
from ostree_diskimage.builds.store import META_FILENAME
from ostree_diskimage.errors import PublishError
from ostree_diskimage.types import ArtifactInfo, ImageType

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 1024 * 1024  # 1 MiB


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def artifact_info(file_path: Path, filename: str | None = None) -> ArtifactInfo:
    """Describe a finished image file.

    Args:
        file_path: Path of the (possibly temporary) image file.
        filename: Name the file will be published under; defaults to the
            file's own name.

    Returns:
        ArtifactInfo with size and checksum.
    """
    return ArtifactInfo(
        filename=filename or file_path.name,
        size_bytes=file_path.stat().st_size,
        sha256=compute_file_hash(file_path),
    )


def image_entry(info: ArtifactInfo) -> ImageEntry:
    """Build the metadata entry for a finished image."""
    return ImageEntry(path=info.filename, sha256=info.sha256, size=info.size_bytes)


def merge_image_entry(
    meta: BuildMeta,
    image_type: ImageType,
    entry: ImageEntry,
) -> BuildMeta:
    """Return a copy of the metadata record with the image recorded."""
    return meta.with_image(image_type.value, entry)


def write_meta_tmp(meta: BuildMeta, tmp_path: Path) -> Path:
    """Write a metadata record to a temporary file next to its final path.

    Args:
        meta: Metadata record.
        tmp_path: Temporary output path.

    Returns:
        Path to the written file.
    """
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(meta.to_json_dict(), f, indent=4, sort_keys=True)
        f.write("\n")
        f.flush()
        os.fsync(f.fileno())
    return tmp_path


def _atomic_move(src: Path, dest: Path, what: str) -> None:
    try:
        os.replace(src, dest)
    except OSError as e:
        raise PublishError(f"Failed to move {what} {src} to {dest}: {e}") from e
    logger.info("Finalized %s %s", what, dest)


def finalize_artifact(src: Path, dest: Path) -> None:
    """Atomically move a finished image to its permanent path.

    Raises:
        PublishError: If the rename fails.
    """
    _atomic_move(src, dest, "artifact")


def finalize_meta(src: Path, dest: Path) -> None:
    """Atomically replace a build's metadata file.

    Raises:
        PublishError: If the rename fails.
    """
    _atomic_move(src, dest, "metadata")


def publish(
    build_dir: Path,
    image_type: ImageType,
    tmp_image: Path,
    image_name: str,
    meta: BuildMeta,
) -> tuple[BuildMeta, ImageEntry]:
    """Publish a finished image and the updated metadata record.

    Args:
        build_dir: Build directory receiving the image.
        image_type: Image type being published.
        tmp_image: Temporary image path inside build_dir.
        image_name: Final file name of the image.
        meta: Metadata record as loaded before the build.

    Returns:
        Tuple of (updated metadata record, new image entry).

    Raises:
        PublishError: If any file cannot be written or moved.
    """
    try:
        info = artifact_info(tmp_image, filename=image_name)
    except OSError as e:
        raise PublishError(f"Cannot read finished image {tmp_image}: {e}") from e
    logger.info(
        "Image %s: %d bytes, sha256 %s", image_name, info.size_bytes, info.sha256[:16]
    )

    entry = image_entry(info)
    updated = merge_image_entry(meta, image_type, entry)

    meta_path = build_dir / META_FILENAME
    meta_tmp = build_dir / f".{META_FILENAME}.{image_type.value}.tmp"
    try:
        write_meta_tmp(updated, meta_tmp)
    except OSError as e:
        meta_tmp.unlink(missing_ok=True)
        raise PublishError(f"Cannot write metadata {meta_tmp}: {e}") from e

    try:
        finalize_artifact(tmp_image, build_dir / image_name)
        finalize_meta(meta_tmp, meta_path)
    finally:
        meta_tmp.unlink(missing_ok=True)

    return updated, entry


__all__ = [
    "HASH_CHUNK_SIZE",
    "artifact_info",
    "compute_file_hash",
    "finalize_artifact",
    "finalize_meta",
    "image_entry",
    "merge_image_entry",
    "publish",
    "write_meta_tmp",
]
