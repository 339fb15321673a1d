"""Thin wrapper around the ostree command line for one repository.

Only the handful of operations the pipeline needs are exposed. Every
command is logged and any failure is raised as CommandError.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path

from ostree_diskimage.errors import STAGE_COMMIT, CommandError

logger = logging.getLogger(__name__)

# Timeout for metadata-only ostree operations (seconds)
OSTREE_TIMEOUT = 300


class OstreeRepo:
    """An OSTree repository on the local filesystem."""

    def __init__(self, path: Path, ostree_bin: str = "ostree") -> None:
        self.path = Path(path)
        self.ostree_bin = ostree_bin

    def __repr__(self) -> str:
        return f"OstreeRepo({str(self.path)!r})"

    def _run(
        self,
        args: list[str],
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        cmd = [self.ostree_bin, *args, f"--repo={self.path}"]
        logger.debug("Running: %s", shlex.join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=OSTREE_TIMEOUT,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandError(
                f"ostree {args[0]} timed out after {OSTREE_TIMEOUT}s",
                stage=STAGE_COMMIT,
                exit_code=-1,
            ) from e
        except OSError as e:
            raise CommandError(
                f"Failed to run {self.ostree_bin}: {e}", stage=STAGE_COMMIT
            ) from e

        if check and result.returncode != 0:
            raise CommandError(
                f"ostree {args[0]} failed: {result.stderr.strip()}",
                stage=STAGE_COMMIT,
                exit_code=result.returncode,
            )
        return result

    def exists(self) -> bool:
        """Return True if the path looks like an initialized repository."""
        return (self.path / "config").is_file() and (self.path / "objects").is_dir()

    def init(self, mode: str = "archive") -> None:
        """Initialize a new repository at the path."""
        self.path.mkdir(parents=True, exist_ok=True)
        self._run(["init", f"--mode={mode}"])

    def rev_parse(self, ref: str) -> str | None:
        """Resolve a ref (or checksum) to a commit checksum.

        Returns:
            The commit checksum, or None if the ref does not resolve.
        """
        if not self.exists():
            return None
        result = self._run(["rev-parse", ref], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def create_ref(self, ref: str, commit: str) -> None:
        """Point a ref at a commit, replacing any existing ref."""
        self._run(["refs", "--force", f"--create={ref}", commit])

    def ls(self, commit: str, path: str) -> list[str]:
        """List entry names of a directory inside a commit.

        ostree prints the directory itself before its children; only the
        children are returned.
        """
        result = self._run(["ls", "--nul-filenames-only", commit, path])
        prefix = path.rstrip("/") + "/"
        names: list[str] = []
        for entry in result.stdout.split("\0"):
            if entry.startswith(prefix) and len(entry) > len(prefix):
                names.append(entry[len(prefix) :].rstrip("/"))
        return names

    def cat(self, commit: str, path: str) -> str:
        """Return the text content of a file inside a commit."""
        return self._run(["cat", commit, path]).stdout


__all__ = ["OSTREE_TIMEOUT", "OstreeRepo"]
