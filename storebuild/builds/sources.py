"""Source imports and dependency snapshots.

This module handles:
- Realising source-import descriptions (copying a local file or directory
  into the output path)
- The snapshot fetcher interface for named, versioned source trees
- Optional content verification of fetched snapshots
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Protocol

from storebuild.builds.description import BuildDescription
from storebuild.builds.outputs import compute_tree_hash

logger = logging.getLogger(__name__)


class SourceChangedError(Exception):
    """Raised when a source no longer matches the digest it was described with."""

    def __init__(self, path: Path, expected: str, actual: str) -> None:
        super().__init__(
            f"Source {path} changed since it was described "
            f"(expected {expected[:16]}, found {actual[:16]})"
        )
        self.path = path
        self.expected = expected
        self.actual = actual
        self.code = "source_changed"


class SnapshotVerificationError(Exception):
    """Raised when a fetched snapshot does not match its expected digest."""

    def __init__(self, message: str, code: str = "snapshot_verification") -> None:
        super().__init__(message)
        self.code = code


class SnapshotFetcher(Protocol):
    """Provides a source tree for a repository locator and revision."""

    def fetch(self, locator: str, revision: str) -> Path:
        """Return a filesystem path holding the requested snapshot."""
        ...


class LocalDirectoryFetcher:
    """Fetcher serving snapshots from ``<root>/<locator>/<revision>``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def fetch(self, locator: str, revision: str) -> Path:
        path = (self.root / locator / revision).resolve()
        try:
            path.relative_to(self.root.resolve())
        except ValueError:
            raise SnapshotVerificationError(
                f"Snapshot {locator}@{revision} resolves outside {self.root}",
                code="path_traversal",
            ) from None
        if not path.exists():
            raise FileNotFoundError(f"Snapshot not found: {locator}@{revision}")
        return path


def import_snapshot(
    fetcher: SnapshotFetcher,
    name: str,
    locator: str,
    revision: str,
    expected_sha256: str | None = None,
    system: str | None = None,
) -> BuildDescription:
    """Fetch a snapshot and describe it as a source import.

    Args:
        fetcher: Snapshot provider.
        name: Name of the resulting description.
        locator: Repository locator.
        revision: Revision identifier.
        expected_sha256: Tree hash the snapshot must have, if known.
        system: Target platform; defaults to the current host.

    Returns:
        Source-import BuildDescription for the snapshot.

    Raises:
        SnapshotVerificationError: If the snapshot digest does not match.
    """
    path = fetcher.fetch(locator, revision)
    logger.info("Fetched %s@%s to %s", locator, revision, path)

    description = BuildDescription.from_source(name, path, system=system)
    actual = compute_tree_hash(path)
    if expected_sha256 is not None and actual != expected_sha256:
        raise SnapshotVerificationError(
            f"Snapshot {locator}@{revision} has digest {actual}, "
            f"expected {expected_sha256}"
        )
    return description


def realise_source(description: BuildDescription, out_path: Path) -> None:
    """Copy the content of a source import to its output path.

    Args:
        description: Source-import description.
        out_path: Output path to create.

    Raises:
        SourceChangedError: If the source content changed since it was described.
        ValueError: If the description is not a source import.
    """
    source = description.source
    if source is None:
        raise ValueError(f"{description.name} is not a source import")

    if source.path.is_dir():
        shutil.copytree(source.path, out_path, symlinks=True)
    else:
        shutil.copy2(source.path, out_path)

    # Check what was copied
    actual = compute_tree_hash(out_path)
    if actual != source.sha256:
        raise SourceChangedError(source.path, source.sha256, actual)
    logger.debug("Imported source %s to %s", source.path, out_path)


__all__ = [
    "LocalDirectoryFetcher",
    "SnapshotFetcher",
    "SnapshotVerificationError",
    "SourceChangedError",
    "import_snapshot",
    "realise_source",
]
