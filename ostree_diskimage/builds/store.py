"""Build metadata store access.

This module handles:
- Resolving "latest" and explicit build IDs to build directories
- Loading the per-build metadata record
- The already-built gate
- A per-build lock so concurrent runs cannot both publish
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from ostree_diskimage.builds.meta import BuildMeta, ImageEntry
from ostree_diskimage.errors import (
    BuildLockError,
    BuildLockTimeoutError,
    BuildNotFoundError,
)
from ostree_diskimage.types import ImageType

logger = logging.getLogger(__name__)

BUILDS_INDEX = "builds.json"
LATEST_LINK = "latest"
META_FILENAME = "meta.json"


@dataclass
class BuildSummary:
    """An entry of the builds index."""

    build_id: str
    arches: list[str] = field(default_factory=list)


class BuildStore:
    """Read access to a builds/ directory.

    Layout::

        builds/builds.json
        builds/<build_id>/<arch>/meta.json
    """

    def __init__(self, builds_dir: Path) -> None:
        self.builds_dir = Path(builds_dir)

    def list_builds(self) -> list[BuildSummary]:
        """List builds from the index, newest first.

        Returns:
            Build summaries, or an empty list if there is no index.
        """
        index_path = self.builds_dir / BUILDS_INDEX
        if not index_path.exists():
            return []

        try:
            with index_path.open(encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise BuildNotFoundError(
                "latest", f"Cannot read builds index {index_path}: {e}"
            ) from e

        builds = data.get("builds", []) if isinstance(data, dict) else None
        if not isinstance(builds, list):
            raise BuildNotFoundError(
                "latest", f"Malformed builds index {index_path}: expected a 'builds' list"
            )

        summaries: list[BuildSummary] = []
        for entry in builds:
            # Old indexes list bare build IDs
            if isinstance(entry, str):
                summaries.append(BuildSummary(build_id=entry))
            elif isinstance(entry, dict) and isinstance(entry.get("id"), str):
                summaries.append(
                    BuildSummary(
                        build_id=entry["id"],
                        arches=list(entry.get("arches") or []),
                    )
                )
            else:
                raise BuildNotFoundError(
                    "latest",
                    f"Malformed builds index {index_path}: bad entry {entry!r}",
                )
        return summaries

    def resolve_build_id(self, build: str | None) -> str:
        """Resolve a build reference to a concrete build ID.

        Args:
            build: A build ID, "latest", or None (same as "latest").

        Returns:
            The build ID.

        Raises:
            BuildNotFoundError: If no build matches.
        """
        if build and build != LATEST_LINK:
            return build

        builds = self.list_builds()
        if builds:
            return builds[0].build_id

        latest = self.builds_dir / LATEST_LINK
        if latest.is_symlink() or latest.is_dir():
            return latest.resolve().name

        raise BuildNotFoundError("latest", f"No builds found in {self.builds_dir}")

    def build_dir(self, build_id: str, arch: str) -> Path:
        """Return the directory holding a build's artifacts for an arch.

        Single-arch builds made before per-arch directories existed keep
        meta.json directly under builds/<build_id>.

        Raises:
            BuildNotFoundError: If the directory does not exist.
        """
        arch_dir = self.builds_dir / build_id / arch
        if (arch_dir / META_FILENAME).exists():
            return arch_dir

        legacy_dir = self.builds_dir / build_id
        if (legacy_dir / META_FILENAME).exists():
            return legacy_dir

        raise BuildNotFoundError(
            build_id, f"Build directory does not exist: {arch_dir}"
        )

    def load_meta(self, build_dir: Path) -> BuildMeta:
        """Load the metadata record of a build.

        Raises:
            BuildNotFoundError: If meta.json is missing or unreadable.
        """
        meta_path = build_dir / META_FILENAME
        try:
            with meta_path.open(encoding="utf-8") as f:
                data = json.load(f)
            return BuildMeta.model_validate(data)
        except FileNotFoundError as e:
            raise BuildNotFoundError(
                build_dir.name, f"Build metadata not found: {meta_path}"
            ) from e
        except (json.JSONDecodeError, ValidationError) as e:
            raise BuildNotFoundError(
                build_dir.name, f"Invalid build metadata {meta_path}: {e}"
            ) from e


def existing_image(meta: BuildMeta, image_type: ImageType) -> ImageEntry | None:
    """Return the recorded entry if the image type was already built."""
    return meta.get_image(image_type.value)


@contextmanager
def build_lock(
    lock_dir: Path,
    build_id: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Hold an exclusive lock on one build.

    Uses a file-based lock so a second invocation for the same build, of
    any image type, waits instead of racing past the already-built gate
    or overwriting meta.json with a stale copy.

    Args:
        lock_dir: Directory for lock files.
        build_id: Build being extended.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        BuildLockError: If the lock file cannot be created.
        BuildLockTimeoutError: If lock cannot be acquired within timeout.
    """
    lock_name = build_id.replace("/", "_")[:64]
    lock_file = lock_dir / f"buildextend_{lock_name}.lock"

    logger.debug("Acquiring build lock %s", lock_name)

    try:
        lock_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    except OSError as e:
        raise BuildLockError(
            lock_name, f"Cannot create build lock {lock_file}: {e}"
        ) from e

    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise BuildLockTimeoutError(lock_name, timeout) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Build lock acquired: %s", lock_name)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Build lock released: %s", lock_name)
        os.close(fd)


__all__ = [
    "BUILDS_INDEX",
    "LATEST_LINK",
    "META_FILENAME",
    "BuildStore",
    "BuildSummary",
    "build_lock",
    "existing_image",
]
