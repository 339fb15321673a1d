"""Commit resolution.

This module makes sure the exact commit recorded in a build's metadata is
addressable by ref in some local commit store:
- If the primary (cache) repository already maps the ref to the commit,
  it is used as-is.
- Otherwise the commit is extracted from the build's archived tarball into
  a freshly created scratch repository, and the ref is pointed at it there.

The commit checksum is authoritative; a ref created in the scratch store
only exists so downstream tooling can address the commit by name.
"""

from __future__ import annotations

import logging
import shutil
import tarfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ostree_diskimage.builds.meta import OSTREE_ARCHIVE_KEY, BuildMeta
from ostree_diskimage.errors import STAGE_COMMIT, ArchiveMissingError, CommandError
from ostree_diskimage.ostree.repo import OstreeRepo

logger = logging.getLogger(__name__)

TEMP_REF_PREFIX = "tmpref-"

RepoFactory = Callable[[Path], OstreeRepo]


@dataclass(frozen=True)
class ResolvedCommit:
    """A commit addressable by ref in a specific repository.

    Attributes:
        repo: Repository holding the commit.
        ref: Ref resolving to the commit in that repository.
        commit: Commit checksum.
        ref_is_temp: Whether the ref was synthesized for this run.
        is_scratch: Whether repo is a scratch repository created for this run.
    """

    repo: OstreeRepo
    ref: str
    commit: str
    ref_is_temp: bool
    is_scratch: bool


def effective_ref(meta: BuildMeta) -> tuple[str, bool]:
    """Return the ref to address the build's commit by.

    Returns:
        Tuple of (ref, ref_is_temp). Builds without a stable ref get a
        synthesized temporary ref.
    """
    if meta.ref:
        return meta.ref, False
    return f"{TEMP_REF_PREFIX}{meta.name}", True


def archive_path(build_dir: Path, meta: BuildMeta, arch: str) -> Path:
    """Return the path of the archived commit tarball for a build.

    Uses images.ostree.path when recorded, else the conventional name.
    """
    entry = meta.get_image(OSTREE_ARCHIVE_KEY)
    if entry is not None:
        return build_dir / entry.path
    return build_dir / f"{meta.name}-{meta.ostree_version}-ostree.{arch}.tar"


def extract_archive(archive: Path, dest_dir: Path) -> None:
    """Extract a commit tarball into a repository directory.

    Raises:
        CommandError: If the archive is corrupt or unsafe.
    """
    try:
        with tarfile.open(archive, "r:*") as tar:
            for member in tar.getmembers():
                # Security: prevent path traversal
                member_path = Path(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise CommandError(
                        f"Refusing to extract {member.name}: path traversal detected",
                        stage=STAGE_COMMIT,
                    )
            tar.extractall(dest_dir, filter="data")
    except (tarfile.TarError, OSError) as e:
        raise CommandError(
            f"Failed to extract commit archive {archive}: {e}", stage=STAGE_COMMIT
        ) from e


def resolve_commit(
    meta: BuildMeta,
    build_dir: Path,
    arch: str,
    primary_repo: OstreeRepo,
    scratch_dir: Path,
    repo_factory: RepoFactory = OstreeRepo,
) -> ResolvedCommit:
    """Make the build's commit addressable and return where it lives.

    Args:
        meta: Build metadata record.
        build_dir: Build directory (for the commit archive).
        arch: Build architecture.
        primary_repo: Long-lived cache repository.
        scratch_dir: Directory for a scratch repository; removed and
            recreated if needed.
        repo_factory: Creates an OstreeRepo for a path.

    Returns:
        ResolvedCommit describing the repository to use.

    Raises:
        ArchiveMissingError: If the cache misses and no archive exists.
        CommandError: If ostree or extraction fails.
    """
    commit = meta.ostree_commit
    ref, ref_is_temp = effective_ref(meta)

    rev_parsed = primary_repo.rev_parse(ref)
    if rev_parsed == commit:
        logger.info("Using commit %s from %s (ref %s)", commit[:12], primary_repo, ref)
        return ResolvedCommit(
            repo=primary_repo,
            ref=ref,
            commit=commit,
            ref_is_temp=ref_is_temp,
            is_scratch=False,
        )

    if rev_parsed is None:
        logger.info("Ref %s not found in %s", ref, primary_repo)
    else:
        logger.info(
            "Ref %s in %s is at %s, not %s",
            ref,
            primary_repo,
            rev_parsed[:12],
            commit[:12],
        )

    archive = archive_path(build_dir, meta, arch)
    if not archive.is_file():
        raise ArchiveMissingError(archive)

    if scratch_dir.exists():
        shutil.rmtree(scratch_dir)
    scratch = repo_factory(scratch_dir)
    scratch.init(mode="archive")

    logger.info("Extracting %s into scratch repository %s", archive.name, scratch_dir)
    extract_archive(archive, scratch_dir)

    if ref_is_temp or scratch.rev_parse(ref) != commit:
        scratch.create_ref(ref, commit)

    resolved = scratch.rev_parse(ref)
    if resolved != commit:
        raise CommandError(
            f"Ref {ref} resolves to {resolved} in scratch repository, "
            f"expected {commit}",
            stage=STAGE_COMMIT,
        )

    return ResolvedCommit(
        repo=scratch,
        ref=ref,
        commit=commit,
        ref_is_temp=ref_is_temp,
        is_scratch=True,
    )


__all__ = [
    "TEMP_REF_PREFIX",
    "RepoFactory",
    "ResolvedCommit",
    "archive_path",
    "effective_ref",
    "extract_archive",
    "resolve_commit",
]
