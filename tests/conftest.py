"""Shared fixtures for builds directory layouts."""

import json
import shutil
import tarfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

COMMIT = "a" * 64


def _meta_dict() -> dict[str, Any]:
    return {
        "name": "fedora-coreos",
        "buildid": "40.20240101.0",
        "ostree-version": "40.20240101.0",
        "ostree-commit": COMMIT,
        "ref": "fedora/x86_64/coreos/stable",
        "coreos-assembler.build-timestamp": "2024-01-01T00:00:00Z",
        "images": {
            "ostree": {
                "path": "fedora-coreos-40.20240101.0-ostree.x86_64.tar",
                "sha256": "b" * 64,
                "size": 1024,
            }
        },
    }


@pytest.fixture
def commit() -> str:
    """Commit checksum recorded in meta_data."""
    return COMMIT


@pytest.fixture
def meta_data() -> dict[str, Any]:
    """A minimal meta.json document."""
    return _meta_dict()


@pytest.fixture
def builds_dir(tmp_path: Path) -> Path:
    """Create an empty builds directory."""
    path = tmp_path / "builds"
    path.mkdir()
    return path


@pytest.fixture
def make_build(builds_dir: Path) -> Callable[..., Path]:
    """Factory creating builds/<id>/<arch>/meta.json and the builds index."""

    def _make_build(
        build_id: str = "40.20240101.0",
        arch: str = "x86_64",
        meta: dict[str, Any] | None = None,
        index: bool = True,
    ) -> Path:
        build_dir = builds_dir / build_id / arch
        build_dir.mkdir(parents=True)
        data = meta if meta is not None else {**_meta_dict(), "buildid": build_id}
        (build_dir / "meta.json").write_text(json.dumps(data, indent=4))

        if index:
            index_path = builds_dir / "builds.json"
            builds: list[dict[str, Any]] = []
            if index_path.exists():
                builds = json.loads(index_path.read_text())["builds"]
            builds.insert(0, {"id": build_id, "arches": [arch]})
            index_path.write_text(
                json.dumps({"schema-version": "1.0.0", "builds": builds})
            )
        return build_dir

    return _make_build


class FakeOstreeRepo:
    """In-memory stand-in for OstreeRepo backed by refs/heads files."""

    def __init__(self, path: Path, kernels: dict[str, str] | None = None) -> None:
        self.path = Path(path)
        self.kernels = kernels if kernels is not None else {}
        self.created_refs: list[tuple[str, str]] = []

    def exists(self) -> bool:
        return (self.path / "config").is_file()

    def init(self, mode: str = "archive") -> None:
        (self.path / "objects").mkdir(parents=True, exist_ok=True)
        (self.path / "config").write_text(f"[core]\nmode={mode}\n")

    def rev_parse(self, ref: str) -> str | None:
        ref_file = self.path / "refs" / "heads" / ref
        if not self.exists() or not ref_file.is_file():
            return None
        return ref_file.read_text().strip()

    def create_ref(self, ref: str, commit: str) -> None:
        ref_file = self.path / "refs" / "heads" / ref
        ref_file.parent.mkdir(parents=True, exist_ok=True)
        ref_file.write_text(commit + "\n")
        self.created_refs.append((ref, commit))

    def ls(self, commit: str, path: str) -> list[str]:
        return list(self.kernels)

    def cat(self, commit: str, path: str) -> str:
        return self.kernels[path.rstrip("/").split("/")[-2]]


@pytest.fixture
def kernels() -> dict[str, str]:
    """Kernel configs visible in every fake repository, by version."""
    return {"6.8.5-301.fc40.x86_64": "CONFIG_FS_VERITY=y\nCONFIG_EXT4_FS=y\n"}


@pytest.fixture
def repo_factory(kernels: dict[str, str]) -> Callable[[Path], FakeOstreeRepo]:
    """Factory creating fake repositories that share the kernels fixture."""
    repos: dict[Path, FakeOstreeRepo] = {}

    def _factory(path: Path) -> FakeOstreeRepo:
        repo = FakeOstreeRepo(path, kernels)
        repos[Path(path)] = repo
        return repo

    _factory.repos = repos  # type: ignore[attr-defined]
    return _factory


@pytest.fixture
def make_archive() -> Callable[..., Path]:
    """Factory writing an archive-mode commit tarball."""

    def _make_archive(
        path: Path,
        commit: str = COMMIT,
        ref: str | None = None,
    ) -> Path:
        staging = path.parent / f".{path.name}.staging"
        obj = staging / "objects" / commit[:2] / f"{commit[2:]}.commit"
        obj.parent.mkdir(parents=True)
        obj.write_bytes(b"commit")
        if ref is not None:
            ref_file = staging / "refs" / "heads" / ref
            ref_file.parent.mkdir(parents=True)
            ref_file.write_text(commit + "\n")

        with tarfile.open(path, "w") as tar:
            for child in sorted(staging.iterdir()):
                tar.add(child, arcname=child.name)
        shutil.rmtree(staging)
        return path

    return _make_archive
