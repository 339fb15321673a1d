"""Build extension service.

This module provides the high-level API:
- extend_build(): add one disk image to an existing build

Stages run strictly in order and every failure aborts the run:
metadata -> already-built gate -> configuration -> commit resolution ->
size planning -> boot parameters -> disk assembly -> publish.
"""

from __future__ import annotations

import functools
import logging
import platform
import shutil
from dataclasses import dataclass
from pathlib import Path

from ostree_diskimage.builds.context import BuildContext
from ostree_diskimage.builds.meta import ImageEntry
from ostree_diskimage.builds.publish import publish
from ostree_diskimage.builds.store import BuildStore, build_lock, existing_image
from ostree_diskimage.config import Settings, get_settings
from ostree_diskimage.disk.assembler import (
    AssemblyParams,
    CommandSandboxExecutor,
    SandboxExecutor,
    allocate_image,
)
from ostree_diskimage.disk.bootparams import build_boot_params, check_architecture
from ostree_diskimage.disk.sizing import (
    CommandSizeEstimator,
    SizeEstimator,
    blksize_for,
    plan_disk_size,
)
from ostree_diskimage.errors import DiskAssemblyError
from ostree_diskimage.imageconfig.io import load_image_config
from ostree_diskimage.ostree.repo import OstreeRepo
from ostree_diskimage.ostree.resolver import RepoFactory, resolve_commit
from ostree_diskimage.types import ImageType

logger = logging.getLogger(__name__)


@dataclass
class ExtendResult:
    """Result of extending a build with a disk image.

    Attributes:
        build_id: Build that was extended.
        arch: Build architecture.
        image_type: Image type.
        image_path: Path of the published image.
        entry: Metadata entry for the image.
        already_built: True if the image existed and no work was done.
    """

    build_id: str
    arch: str
    image_type: ImageType
    image_path: Path
    entry: ImageEntry
    already_built: bool = False


def default_arch() -> str:
    """Return the architecture of the running host."""
    return platform.machine()


def _assemble_and_publish(
    ctx: BuildContext,
    estimator: SizeEstimator,
    executor: SandboxExecutor,
    repo_factory: RepoFactory,
) -> ExtendResult:
    settings = ctx.settings

    primary_repo = repo_factory(settings.resolved_primary_repo())
    resolved = resolve_commit(
        meta=ctx.meta,
        build_dir=ctx.build_dir,
        arch=ctx.arch,
        primary_repo=primary_repo,
        scratch_dir=ctx.scratch_repo_dir,
        repo_factory=repo_factory,
    )

    # Overhead is added by plan_disk_size, not by the estimator
    estimate_mb = estimator.estimate(
        resolved.repo.path,
        resolved.ref,
        blksize=blksize_for(ctx.config),
        add_percent=0,
    )
    disk = plan_disk_size(
        ctx.image_type,
        estimate_mb,
        ctx.config,
        overhead_percent=settings.size_overhead_percent,
        nonroot_mb=settings.nonroot_partition_mb,
    )

    boot = build_boot_params(
        ctx.image_type, ctx.arch, ctx.config, resolved.repo, resolved.commit
    )

    params = AssemblyParams(
        image_type=ctx.image_type,
        image_path=ctx.tmp_image_path,
        image_name=ctx.image_name,
        build_id=ctx.build_id,
        osname=ctx.meta.name,
        ref=resolved.ref,
        commit=resolved.commit,
        repo_path=resolved.repo.path,
        kargs=boot.kargs_str,
        grub_script=settings.grub_script,
        rootfs_size=disk.rootfs_size,
        rootfs=ctx.config.effective_rootfs,
        remote=ctx.config.ostree_remote,
        save_var_subdirs=list(ctx.config.save_var_subdirs_for_selabel_workaround or []),
        boot_verity=ctx.config.boot_verity,
    )

    tmp_image = ctx.tmp_image_path
    try:
        _remove_stale(tmp_image)
        allocate_image(
            tmp_image, ctx.image_format, disk.image_size, settings.qemu_img_bin
        )
        executor.run(params)
        _, entry = publish(
            ctx.build_dir, ctx.image_type, tmp_image, ctx.image_name, ctx.meta
        )
    finally:
        # Already renamed away on success
        tmp_image.unlink(missing_ok=True)

    logger.info("Built %s image %s", ctx.image_type.value, ctx.image_path)
    return ExtendResult(
        build_id=ctx.build_id,
        arch=ctx.arch,
        image_type=ctx.image_type,
        image_path=ctx.image_path,
        entry=entry,
    )


def _remove_stale(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        raise DiskAssemblyError(f"Cannot remove temporary image {path}: {e}") from e


def _prepare_work_dir(work_dir: Path) -> None:
    """Recreate an empty scratch directory."""
    try:
        if work_dir.exists():
            shutil.rmtree(work_dir)
        work_dir.mkdir(parents=True)
    except OSError as e:
        raise DiskAssemblyError(
            f"Cannot prepare work directory {work_dir}: {e}"
        ) from e


def extend_build(
    image_type: ImageType | str,
    build: str | None = None,
    arch: str | None = None,
    settings: Settings | None = None,
    estimator: SizeEstimator | None = None,
    executor: SandboxExecutor | None = None,
    repo_factory: RepoFactory | None = None,
) -> ExtendResult:
    """Build a disk image for a build and record it in the build's metadata.

    Running this again for the same build and image type is a no-op that
    reports the existing image.

    Args:
        image_type: Image type to build.
        build: Build ID, or None/"latest" for the most recent build.
        arch: Build architecture (defaults to the host's).
        settings: Application settings.
        estimator: Commit size estimator.
        executor: Sandboxed disk writer.
        repo_factory: Creates OstreeRepo instances for paths.

    Returns:
        ExtendResult describing the image.

    Raises:
        DiskImageError: Any stage failure (see ostree_diskimage.errors).
    """
    if settings is None:
        settings = get_settings()
    image_type = ImageType(image_type)
    arch = arch or default_arch()

    tmp_dir = settings.resolved_tmp_dir()
    if repo_factory is None:
        repo_factory = functools.partial(OstreeRepo, ostree_bin=settings.ostree_bin)
    if estimator is None:
        estimator = CommandSizeEstimator(settings.estimator_command)
    if executor is None:
        executor = CommandSandboxExecutor(
            settings.sandbox_command, settings.disk_script, log_dir=tmp_dir / "logs"
        )

    store = BuildStore(settings.resolved_builds_dir())
    build_id = store.resolve_build_id(build)
    build_dir = store.build_dir(build_id, arch)
    check_architecture(image_type, arch)

    with build_lock(tmp_dir / "locks", build_id, timeout=settings.lock_timeout):
        meta = store.load_meta(build_dir)
        entry = existing_image(meta, image_type)
        if entry is not None:
            logger.info(
                "%s image already exists in build %s: %s",
                image_type.value,
                build_id,
                entry.path,
            )
            return ExtendResult(
                build_id=build_id,
                arch=arch,
                image_type=image_type,
                image_path=build_dir / entry.path,
                entry=entry,
                already_built=True,
            )

        config = load_image_config(settings.resolved_config_dir())

        safe_id = build_id.replace("/", "_")
        work_dir = tmp_dir / f"buildextend-{safe_id}-{image_type.value}"
        _prepare_work_dir(work_dir)

        ctx = BuildContext(
            settings=settings,
            build_id=build_id,
            arch=arch,
            image_type=image_type,
            build_dir=build_dir,
            meta=meta,
            config=config,
            work_dir=work_dir,
        )
        logger.info(
            "Building %s image for build %s (%s)", image_type.value, build_id, arch
        )
        try:
            return _assemble_and_publish(ctx, estimator, executor, repo_factory)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)


__all__ = ["ExtendResult", "default_arch", "extend_build"]
