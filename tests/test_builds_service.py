"""Tests for builds/service.py module.

Runs the whole pipeline with a fake estimator, a fake sandbox and fake
repositories. Image allocation is patched to create an empty file.
"""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from ostree_diskimage.builds.meta import BuildMeta
from ostree_diskimage.builds.service import extend_build
from ostree_diskimage.config import Settings
from ostree_diskimage.disk.assembler import AssemblyParams
from ostree_diskimage.errors import (
    ArchiveMissingError,
    BuildLockTimeoutError,
    BuildNotFoundError,
    ConfigError,
    DiskAssemblyError,
    DiskImageError,
    UnsupportedArchitectureError,
    UnsupportedKernelConfigError,
)
from ostree_diskimage.ostree.resolver import archive_path
from ostree_diskimage.types import ImageType

DISK_BYTES = b"\xeb\x63\x90" + b"\0" * 509 + b"\x55\xaa"


class FakeEstimator:
    """Returns a fixed estimate and records calls."""

    def __init__(self, mb: int = 2000) -> None:
        self.mb = mb
        self.calls: list[tuple[Path, str, int | None]] = []
        self.add_percents: list[int] = []

    def estimate(
        self,
        repo: Path,
        ref: str,
        *,
        blksize: int | None = None,
        add_percent: int = 0,
    ) -> int:
        self.calls.append((repo, ref, blksize))
        self.add_percents.append(add_percent)
        return self.mb


class FakeExecutor:
    """Writes a fake disk to the image path, or fails."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.params: list[AssemblyParams] = []

    def run(self, params: AssemblyParams) -> None:
        self.params.append(params)
        # Scratch repository must still exist while the disk is written
        assert params.repo_path.exists()
        if self.fail:
            raise DiskAssemblyError("create_disk.sh failed", exit_code=1)
        params.image_path.write_bytes(DISK_BYTES)


class NestedExtendExecutor(FakeExecutor):
    """Starts a second image type on the same build while writing the disk."""

    def __init__(self, extend) -> None:
        super().__init__()
        self.extend = extend
        self.nested_error: Exception | None = None

    def run(self, params: AssemblyParams) -> None:
        try:
            self.extend()
        except DiskImageError as e:
            self.nested_error = e
        super().run(params)


def fake_allocate(
    image_path: Path, image_format, image_size: str, qemu_img_bin: str
) -> None:
    image_path.write_bytes(b"")


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings rooted in a temporary working directory."""
    config_dir = tmp_path / "src" / "config"
    config_dir.mkdir(parents=True)
    (config_dir / "image.yaml").write_text("bootfs: ext4\nrootfs: xfs\nsize: 16\n")
    return Settings(workdir=tmp_path, lock_timeout=1.0)


@pytest.fixture
def build_dir(settings, make_build, make_archive, meta_data):
    """Create a build whose commit is only available as an archive."""
    path = make_build()
    meta = BuildMeta.model_validate(meta_data)
    make_archive(archive_path(path, meta, "x86_64"), ref=meta.ref)
    return path


@pytest.fixture(autouse=True)
def no_qemu_img():
    """Replace qemu-img with an empty file."""
    with patch(
        "ostree_diskimage.builds.service.allocate_image", side_effect=fake_allocate
    ) as mock_allocate:
        yield mock_allocate


def read_meta(build_dir: Path) -> dict:
    return json.loads((build_dir / "meta.json").read_text())


class TestExtendBuild:
    """Tests for extend_build function."""

    def test_builds_metal(self, settings, build_dir, repo_factory, no_qemu_img) -> None:
        """Should build, publish and record a metal image."""
        executor = FakeExecutor()
        estimator = FakeEstimator(2000)

        result = extend_build(
            "metal",
            arch="x86_64",
            settings=settings,
            estimator=estimator,
            executor=executor,
            repo_factory=repo_factory,
        )

        name = "fedora-coreos-40.20240101.0-metal.x86_64.raw"
        assert not result.already_built
        assert result.image_path == build_dir / name
        assert result.image_path.read_bytes() == DISK_BYTES
        assert read_meta(build_dir)["images"]["metal"]["path"] == name
        assert read_meta(build_dir)["images"]["metal"]["size"] == len(DISK_BYTES)

        # Sized from the estimate, root partition fills the disk
        assert no_qemu_img.call_args[0][2] == "3213M"
        params = executor.params[0]
        assert params.rootfs_size == "0"
        assert params.kargs.endswith("ignition.platform.id=metal")
        assert params.ref == "fedora/x86_64/coreos/stable"

    def test_qemu_sizes(self, settings, build_dir, repo_factory, no_qemu_img) -> None:
        """qemu images use the configured size and the raw estimate."""
        executor = FakeExecutor()

        result = extend_build(
            ImageType.QEMU,
            arch="x86_64",
            settings=settings,
            estimator=FakeEstimator(2000),
            executor=executor,
            repo_factory=repo_factory,
        )

        assert result.image_path.name.endswith(".qcow2")
        assert no_qemu_img.call_args[0][2] == "16G"
        assert executor.params[0].rootfs_size == "2000M"

    def test_second_run_is_noop(self, settings, build_dir, repo_factory) -> None:
        """Rerunning for a built image should do no work."""
        extend_build(
            "metal",
            arch="x86_64",
            settings=settings,
            estimator=FakeEstimator(),
            executor=FakeExecutor(),
            repo_factory=repo_factory,
        )
        before = read_meta(build_dir)
        executor = FakeExecutor()

        result = extend_build(
            "metal",
            arch="x86_64",
            settings=settings,
            estimator=FakeEstimator(),
            executor=executor,
            repo_factory=repo_factory,
        )

        assert result.already_built
        assert executor.params == []
        assert read_meta(build_dir) == before

    def test_latest_build_selected(
        self, settings, make_build, repo_factory, commit
    ) -> None:
        """Without a build ID the newest build is extended."""
        make_build("40.1")
        newest = make_build("40.2")
        primary = repo_factory(settings.resolved_primary_repo())
        primary.init()
        primary.create_ref("fedora/x86_64/coreos/stable", commit)

        result = extend_build(
            "metal",
            arch="x86_64",
            settings=settings,
            estimator=FakeEstimator(),
            executor=FakeExecutor(),
            repo_factory=repo_factory,
        )

        assert result.build_id == "40.2"
        assert result.image_path.parent == newest

    def test_primary_repo_used_when_cached(
        self, settings, make_build, repo_factory, commit
    ) -> None:
        """A cached commit should be used without any archive."""
        make_build()
        primary = repo_factory(settings.resolved_primary_repo())
        primary.init()
        primary.create_ref("fedora/x86_64/coreos/stable", commit)
        estimator = FakeEstimator()
        executor = FakeExecutor()

        extend_build(
            "metal",
            arch="x86_64",
            settings=settings,
            estimator=estimator,
            executor=executor,
            repo_factory=repo_factory,
        )

        assert estimator.calls[0][0] == settings.resolved_primary_repo()
        assert executor.params[0].repo_path == settings.resolved_primary_repo()

    def test_scratch_repo_removed(self, settings, build_dir, repo_factory) -> None:
        """The scratch work directory should not outlive the run."""
        executor = FakeExecutor()
        extend_build(
            "metal",
            arch="x86_64",
            settings=settings,
            estimator=FakeEstimator(),
            executor=executor,
            repo_factory=repo_factory,
        )

        scratch = executor.params[0].repo_path
        assert scratch.is_relative_to(settings.resolved_tmp_dir())
        assert not scratch.exists()

    def test_verity_failure_leaves_build_untouched(
        self, settings, build_dir, repo_factory, kernels
    ) -> None:
        """A kernel without fs-verity aborts before anything is written."""
        (settings.resolved_config_dir() / "image.yaml").write_text(
            "bootfs: ext4verity\n"
        )
        kernels.clear()
        kernels["6.8.5"] = "# CONFIG_FS_VERITY is not set\n"
        before = sorted(p.name for p in build_dir.iterdir())
        meta_before = read_meta(build_dir)
        executor = FakeExecutor()

        with pytest.raises(UnsupportedKernelConfigError):
            extend_build(
                "metal",
                arch="x86_64",
                settings=settings,
                estimator=FakeEstimator(),
                executor=executor,
                repo_factory=repo_factory,
            )

        assert executor.params == []
        assert sorted(p.name for p in build_dir.iterdir()) == before
        assert read_meta(build_dir) == meta_before

    def test_verity_passes_blksize(self, settings, build_dir, repo_factory) -> None:
        """Verity boot filesystems ask the estimator for 4 KiB blocks."""
        (settings.resolved_config_dir() / "image.yaml").write_text(
            "bootfs: ext4verity\n"
        )
        estimator = FakeEstimator()
        executor = FakeExecutor()

        extend_build(
            "metal",
            arch="x86_64",
            settings=settings,
            estimator=estimator,
            executor=executor,
            repo_factory=repo_factory,
        )

        assert estimator.calls[0][2] == 4096
        assert executor.params[0].boot_verity

    def test_assembly_failure_leaves_build_untouched(
        self, settings, build_dir, repo_factory
    ) -> None:
        """A failing disk writer leaves no image and no metadata change."""
        before = sorted(p.name for p in build_dir.iterdir())
        meta_before = read_meta(build_dir)

        with pytest.raises(DiskAssemblyError):
            extend_build(
                "metal",
                arch="x86_64",
                settings=settings,
                estimator=FakeEstimator(),
                executor=FakeExecutor(fail=True),
                repo_factory=repo_factory,
            )

        assert sorted(p.name for p in build_dir.iterdir()) == before
        assert read_meta(build_dir) == meta_before

    def test_missing_archive(self, settings, make_build, repo_factory) -> None:
        """A cache miss without an archive should fail."""
        make_build()
        with pytest.raises(ArchiveMissingError):
            extend_build(
                "metal",
                arch="x86_64",
                settings=settings,
                estimator=FakeEstimator(),
                executor=FakeExecutor(),
                repo_factory=repo_factory,
            )

    def test_missing_config(self, settings, build_dir, repo_factory) -> None:
        """A missing image configuration should fail at the config stage."""
        (settings.resolved_config_dir() / "image.yaml").unlink()
        with pytest.raises(ConfigError):
            extend_build(
                "metal",
                arch="x86_64",
                settings=settings,
                estimator=FakeEstimator(),
                executor=FakeExecutor(),
                repo_factory=repo_factory,
            )

    def test_unknown_build(self, settings, build_dir, repo_factory) -> None:
        """An unknown build ID should fail at the metadata stage."""
        with pytest.raises(BuildNotFoundError):
            extend_build(
                "metal",
                build="does-not-exist",
                arch="x86_64",
                settings=settings,
                estimator=FakeEstimator(),
                executor=FakeExecutor(),
                repo_factory=repo_factory,
            )

    def test_dasd_requires_s390x(self, settings, build_dir, repo_factory) -> None:
        """DASD images are rejected for other architectures."""
        with pytest.raises(UnsupportedArchitectureError):
            extend_build(
                "dasd",
                arch="x86_64",
                settings=settings,
                estimator=FakeEstimator(),
                executor=FakeExecutor(),
                repo_factory=repo_factory,
            )

    def test_dasd_on_s390x(
        self, settings, make_build, make_archive, meta_data, repo_factory
    ) -> None:
        """DASD images build on s390x with the metal platform id."""
        meta_data["images"] = {}
        path = make_build(arch="s390x", meta=meta_data)
        meta = BuildMeta.model_validate(meta_data)
        make_archive(archive_path(path, meta, "s390x"))
        executor = FakeExecutor()

        result = extend_build(
            "dasd",
            arch="s390x",
            settings=settings,
            estimator=FakeEstimator(),
            executor=executor,
            repo_factory=repo_factory,
        )

        assert result.image_path.name == "fedora-coreos-40.20240101.0-dasd.s390x.raw"
        assert executor.params[0].kargs == "ignition.platform.id=metal"

    def test_estimator_not_asked_for_overhead(
        self, settings, build_dir, repo_factory
    ) -> None:
        """Overhead is applied by the planner, never by the estimator."""
        estimator = FakeEstimator(2000)

        extend_build(
            "metal",
            arch="x86_64",
            settings=settings,
            estimator=estimator,
            executor=FakeExecutor(),
            repo_factory=repo_factory,
        )

        assert estimator.add_percents == [0]

    def test_other_type_waits_for_build_lock(
        self, settings, build_dir, repo_factory
    ) -> None:
        """A concurrent run of another type cannot drop the first run's record."""

        def run_qemu(executor=None):
            return extend_build(
                "qemu",
                arch="x86_64",
                settings=settings,
                estimator=FakeEstimator(),
                executor=executor or FakeExecutor(),
                repo_factory=repo_factory,
            )

        executor = NestedExtendExecutor(run_qemu)

        extend_build(
            "metal",
            arch="x86_64",
            settings=settings,
            estimator=FakeEstimator(),
            executor=executor,
            repo_factory=repo_factory,
        )

        assert isinstance(executor.nested_error, BuildLockTimeoutError)
        assert not list(build_dir.glob("*.qcow2"))
        assert "metal" in read_meta(build_dir)["images"]

        # Once the lock is free the second type is added next to the first
        run_qemu()

        images = read_meta(build_dir)["images"]
        assert "metal" in images
        assert "qemu" in images

    def test_unusable_tmp_dir(self, settings, build_dir, repo_factory) -> None:
        """A scratch directory blocked by a file fails with a stage diagnostic."""
        settings.resolved_tmp_dir().write_text("not a directory")

        with pytest.raises(DiskImageError) as exc_info:
            extend_build(
                "metal",
                arch="x86_64",
                settings=settings,
                estimator=FakeEstimator(),
                executor=FakeExecutor(),
                repo_factory=repo_factory,
            )

        assert exc_info.value.stage == "metadata"

    def test_unusable_work_dir(self, settings, build_dir, repo_factory) -> None:
        """A work directory that cannot be recreated fails at the assembly stage."""
        tmp_dir = settings.resolved_tmp_dir()
        tmp_dir.mkdir()
        (tmp_dir / "buildextend-40.20240101.0-metal").write_text("stale")
        meta_before = read_meta(build_dir)

        with pytest.raises(DiskAssemblyError) as exc_info:
            extend_build(
                "metal",
                arch="x86_64",
                settings=settings,
                estimator=FakeEstimator(),
                executor=FakeExecutor(),
                repo_factory=repo_factory,
            )

        assert exc_info.value.stage == "assembly"
        assert read_meta(build_dir) == meta_before
