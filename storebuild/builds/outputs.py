"""Output discovery, hashing and manifest generation.

This module handles:
- Computing deterministic hashes of files and directory trees
- Discovering the files of a build output
- Generating and atomically writing entry manifests
- Marking stored outputs read-only
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import stat
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from storebuild.types import OutputInfo

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

# Manifest format version
MANIFEST_VERSION = "1"

# Relative path recorded when an output is a single file
SINGLE_FILE_PATH = "."


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


def _is_executable(path: Path) -> bool:
    return bool(stat.S_IMODE(path.lstat().st_mode) & stat.S_IXUSR)


def _tree_entries(root: Path) -> list[Path]:
    if root.is_symlink() or root.is_file():
        return [root]
    return sorted(root.rglob("*"))


def compute_tree_hash(path: Path) -> str:
    """Compute a deterministic hash of a file or directory tree.

    The hash is computed over, for every entry in sorted order:
    - The path relative to ``path``
    - The entry type (file, directory, symlink)
    - The executable bit for files
    - File contents or symlink targets

    Write permission is ignored so a tree hashes the same before and after
    being made read-only.

    Args:
        path: File or directory to hash.

    Returns:
        SHA-256 hex digest of the tree.
    """
    hasher = hashlib.sha256()

    if not path.exists() and not path.is_symlink():
        return hasher.hexdigest()

    for entry in _tree_entries(path):
        rel_path = SINGLE_FILE_PATH if entry == path else entry.relative_to(path).as_posix()

        # Hash: path\0kind\0content\0
        hasher.update(rel_path.encode("utf-8"))
        hasher.update(b"\0")
        if entry.is_symlink():
            hasher.update(b"l\0")
            hasher.update(os.readlink(entry).encode("utf-8"))
        elif entry.is_dir():
            hasher.update(b"d\0")
        else:
            hasher.update(b"x\0" if _is_executable(entry) else b"f\0")
            hasher.update(compute_file_hash(entry).encode("ascii"))
        hasher.update(b"\0")

    return hasher.hexdigest()


def discover_outputs(path: Path) -> list[OutputInfo]:
    """Discover the files of a build output.

    Args:
        path: Output file or directory.

    Returns:
        List of OutputInfo for every regular file, sorted by path.
    """
    if not path.exists():
        logger.warning("Build output does not exist: %s", path)
        return []

    outputs: list[OutputInfo] = []
    for entry in _tree_entries(path):
        if entry.is_symlink() or not entry.is_file():
            continue

        rel_path = SINGLE_FILE_PATH if entry == path else entry.relative_to(path).as_posix()
        outputs.append(
            OutputInfo(
                relative_path=rel_path,
                size_bytes=entry.stat().st_size,
                sha256=compute_file_hash(entry),
                executable=_is_executable(entry),
            )
        )
        logger.debug("Discovered output: %s (%d bytes)", rel_path, outputs[-1].size_bytes)

    logger.debug("Discovered %d output files in %s", len(outputs), path)
    return outputs


def missing_outputs(out_path: Path, declared: tuple[str, ...]) -> list[str]:
    """Return the declared outputs that do not exist under ``out_path``.

    The output path itself counts as missing when it does not exist.
    """
    if not out_path.exists():
        return ["$out"]
    return [name for name in declared if not (out_path / name).exists()]


def generate_manifest(
    address: str,
    name: str,
    tree_hash: str,
    outputs: list[OutputInfo],
    log_path: Path | None = None,
    exit_status: int = 0,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate the manifest recorded for a store entry.

    Args:
        address: Content address of the entry.
        name: Description name.
        tree_hash: Hash of the stored tree.
        outputs: Discovered output files.
        log_path: Path to the build log, if any.
        exit_status: Builder exit status.
        extra_metadata: Optional additional metadata.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    manifest: dict[str, Any] = {
        "version": MANIFEST_VERSION,
        "address": address,
        "name": name,
        "tree_hash": tree_hash,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "exit_status": exit_status,
        "log_path": str(log_path) if log_path else None,
        "outputs": [asdict(o) for o in outputs],
        "summary": {
            "total_files": len(outputs),
            "total_size_bytes": sum(o.size_bytes for o in outputs),
        },
    }
    if extra_metadata:
        manifest["metadata"] = extra_metadata
    return manifest


def write_manifest(manifest: dict[str, Any], output_path: Path) -> Path:
    """Write a manifest to a JSON file atomically.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = output_path.with_name(f".{output_path.name}.{os.getpid()}.tmp")

    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, output_path)

    logger.debug("Wrote manifest to %s", output_path)
    return output_path


def make_read_only(path: Path) -> None:
    """Remove write permission from every file under ``path``.

    Directories keep their permissions so entries can still be removed
    by an explicit garbage collection.
    """
    for entry in _tree_entries(path):
        if entry.is_symlink() or not entry.is_file():
            continue
        mode = stat.S_IMODE(entry.stat().st_mode)
        entry.chmod(mode & ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH))


__all__ = [
    "HASH_CHUNK_SIZE",
    "MANIFEST_VERSION",
    "SINGLE_FILE_PATH",
    "compute_file_hash",
    "compute_tree_hash",
    "discover_outputs",
    "generate_manifest",
    "make_read_only",
    "missing_outputs",
    "write_manifest",
]
