"""Content store.

This module handles:
- Mapping content addresses to entry paths on disk
- Atomically installing build outputs under their address
- Detecting non-determinism when an address is written twice
- Per-address locking (threads and processes)

Layout::

    <root>/<digest>               entry (file or directory)
    <root>/.meta/<digest>.json    entry manifest
    <root>/.logs/<digest>.log     build log
    <root>/.locks/<digest>.lock   per-address lock file
    <root>/.tmp/                  staging area for running builds
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import shutil
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from storebuild.builds.cache_key import address_digest, is_address, short_address
from storebuild.builds.outputs import (
    compute_tree_hash,
    discover_outputs,
    generate_manifest,
    make_read_only,
    write_manifest,
)

logger = logging.getLogger(__name__)


class StoreCorruption(Exception):
    """Raised when an address is written with content differing from its entry.

    This means a builder was not deterministic, or the store was tampered
    with; results stored under the address cannot be trusted.
    """

    def __init__(
        self,
        address: str,
        message: str | None = None,
        expected_hash: str | None = None,
        actual_hash: str | None = None,
        code: str = "store_corruption",
    ) -> None:
        super().__init__(
            message
            or f"Store entry {address} exists with different content "
            f"(stored {expected_hash}, new {actual_hash})"
        )
        self.address = address
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        self.code = code


class EntryNotFoundError(Exception):
    """Raised when an address has no store entry."""

    def __init__(self, address: str, code: str = "entry_not_found") -> None:
        super().__init__(f"Store entry not found: {address}")
        self.address = address
        self.code = code


@dataclass(frozen=True)
class StoreEntry:
    """The immutable stored result of a successful build.

    Attributes:
        address: Content address of the description that produced it.
        name: Description name.
        path: Path of the entry (a file or a directory).
        outputs: Relative paths of the files in the entry.
        tree_hash: Hash of the stored tree.
        log_path: Build log path, if one was kept.
        exit_status: Exit status of the builder.
        created_at: ISO timestamp of the first successful put.
    """

    address: str
    name: str
    path: Path
    outputs: tuple[str, ...]
    tree_hash: str
    log_path: Path | None
    exit_status: int
    created_at: str


class ContentStore:
    """Filesystem-backed store keyed by content address."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).absolute()
        self.meta_dir = self.root / ".meta"
        self.logs_dir = self.root / ".logs"
        self.locks_dir = self.root / ".locks"
        self.tmp_dir = self.root / ".tmp"
        for directory in (self.meta_dir, self.logs_dir, self.locks_dir, self.tmp_dir):
            directory.mkdir(parents=True, exist_ok=True)

        self._locks_guard = threading.Lock()
        self._address_locks: dict[str, threading.Lock] = {}
        self._held = threading.local()

    def __repr__(self) -> str:
        return f"<ContentStore(root='{self.root}')>"

    def path_for(self, address: str) -> Path:
        """Return the entry path for an address (present or not)."""
        return self.root / address_digest(address)

    def meta_path_for(self, address: str) -> Path:
        return self.meta_dir / f"{address_digest(address)}.json"

    def log_path_for(self, address: str) -> Path:
        """Return the build log path for an address."""
        return self.logs_dir / f"{address_digest(address)}.log"

    def has(self, address: str) -> bool:
        """Check whether an entry is present for an address."""
        return self.meta_path_for(address).exists() and (
            self.path_for(address).exists()
        )

    def get(self, address: str) -> StoreEntry:
        """Return the entry for an address.

        Raises:
            EntryNotFoundError: If no entry is present.
            StoreCorruption: If the entry metadata is unreadable.
        """
        entry = self._read_entry(address)
        if entry is None:
            raise EntryNotFoundError(address)
        return entry

    def get_or_none(self, address: str) -> StoreEntry | None:
        """Return the entry for an address, or None if absent."""
        return self._read_entry(address)

    def _read_entry(self, address: str) -> StoreEntry | None:
        meta_path = self.meta_path_for(address)
        entry_path = self.path_for(address)
        if not meta_path.exists() or not entry_path.exists():
            return None

        try:
            with meta_path.open(encoding="utf-8") as f:
                meta = json.load(f)
            return StoreEntry(
                address=meta["address"],
                name=meta["name"],
                path=entry_path,
                outputs=tuple(o["relative_path"] for o in meta["outputs"]),
                tree_hash=meta["tree_hash"],
                log_path=Path(meta["log_path"]) if meta.get("log_path") else None,
                exit_status=meta.get("exit_status", 0),
                created_at=meta["created_at"],
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StoreCorruption(
                address, message=f"Unreadable metadata for {address}: {e}"
            ) from e

    def new_staging_dir(self, address: str) -> Path:
        """Create a private staging directory for building an address.

        Holds the builder's working directory and inline script. Lives
        inside the store so staged outputs can be renamed into place.
        """
        prefix = f"{short_address(address)}-"
        return Path(tempfile.mkdtemp(prefix=prefix, dir=self.tmp_dir))

    def clear_incomplete(self, address: str) -> None:
        """Remove what is left of an entry that is not complete.

        An entry path without metadata is left behind by a build or put that
        did not finish; metadata without an entry path is stale. Callers must
        hold the lock for the address.
        """
        entry_path = self.path_for(address)
        meta_path = self.meta_path_for(address)
        entry_exists = entry_path.exists() or entry_path.is_symlink()
        if meta_path.exists():
            if entry_exists:
                return
            logger.warning("Removing stale metadata %s", meta_path)
            meta_path.unlink()
        elif entry_exists:
            logger.warning("Removing incomplete entry %s", entry_path)
            _remove_path(entry_path)

    @contextmanager
    def lock(self, address: str, timeout: float | None = None) -> Iterator[None]:
        """Acquire the lock for one address.

        Uses an in-process lock for worker threads and a file lock so that
        separate processes sharing the store are serialized too. The lock is
        re-entrant within one thread.

        Args:
            address: Address to lock.
            timeout: Lock acquisition timeout in seconds (None = blocking).

        Yields:
            None when the lock is acquired.

        Raises:
            TimeoutError: If the lock cannot be acquired within timeout.
        """
        digest = address_digest(address)
        held: set[str] | None = getattr(self._held, "digests", None)
        if held is None:
            held = self._held.digests = set()
        if digest in held:
            yield
            return

        with self._locks_guard:
            thread_lock = self._address_locks.setdefault(digest, threading.Lock())

        start = time.monotonic()
        if not thread_lock.acquire(timeout=-1 if timeout is None else timeout):
            raise TimeoutError(f"Timeout waiting for store lock on {digest[:12]}")

        try:
            lock_file = self.locks_dir / f"{digest}.lock"
            fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
            lock_acquired = False
            try:
                if timeout is not None:
                    while True:
                        try:
                            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                            lock_acquired = True
                            break
                        except BlockingIOError:
                            if time.monotonic() - start >= timeout:
                                raise TimeoutError(
                                    f"Timeout waiting for store lock on {digest[:12]}"
                                ) from None
                            time.sleep(0.1)
                else:
                    fcntl.flock(fd, fcntl.LOCK_EX)
                    lock_acquired = True

                logger.debug("Store lock acquired for %s", digest[:12])
                held.add(digest)
                try:
                    yield
                finally:
                    held.discard(digest)
            finally:
                if lock_acquired:
                    fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)
        finally:
            thread_lock.release()

    def put(
        self,
        address: str,
        name: str,
        staged: Path,
        log_path: Path | None = None,
        exit_status: int = 0,
    ) -> StoreEntry:
        """Install staged outputs as the entry for an address.

        The first writer wins. A later writer with identical content gets
        the existing entry back and its staged copy is discarded. When
        ``staged`` is the entry path itself the output is finalised in place.

        Args:
            address: Content address.
            name: Description name.
            staged: Staged output file or directory, inside the store or at
                the entry path.
            log_path: Build log to record.
            exit_status: Builder exit status.

        Returns:
            The stored entry.

        Raises:
            StoreCorruption: If an entry exists with different content.
            FileNotFoundError: If the staged output does not exist.
        """
        if not is_address(address):
            raise ValueError(f"Malformed content address: {address!r}")
        if not staged.exists() and not staged.is_symlink():
            raise FileNotFoundError(f"Staged output not found: {staged}")

        tree_hash = compute_tree_hash(staged)
        entry_path = self.path_for(address)
        in_place = staged.absolute() == entry_path

        with self.lock(address):
            existing = self._read_entry(address)
            if existing is not None:
                if existing.tree_hash != tree_hash:
                    logger.error(
                        "Non-deterministic output for %s (%s)", name, address
                    )
                    raise StoreCorruption(
                        address,
                        expected_hash=existing.tree_hash,
                        actual_hash=tree_hash,
                    )
                if not in_place:
                    logger.debug("Entry %s already present, discarding copy", address)
                    _remove_path(staged)
                return existing

            if not in_place:
                self.clear_incomplete(address)
                try:
                    os.replace(staged, entry_path)
                except OSError:
                    shutil.move(str(staged), str(entry_path))

            outputs = discover_outputs(entry_path)
            make_read_only(entry_path)

            manifest = generate_manifest(
                address=address,
                name=name,
                tree_hash=tree_hash,
                outputs=outputs,
                log_path=log_path,
                exit_status=exit_status,
            )
            write_manifest(manifest, self.meta_path_for(address))

        logger.info("Stored %s at %s", name, entry_path)
        return StoreEntry(
            address=address,
            name=name,
            path=entry_path,
            outputs=tuple(o.relative_path for o in outputs),
            tree_hash=tree_hash,
            log_path=log_path,
            exit_status=exit_status,
            created_at=manifest["created_at"],
        )

    def list_entries(self) -> list[StoreEntry]:
        """List all present entries, oldest first."""
        entries: list[StoreEntry] = []
        for meta_path in sorted(self.meta_dir.glob("*.json")):
            address = f"sha256:{meta_path.stem}"
            if not is_address(address):
                continue
            entry = self._read_entry(address)
            if entry is not None:
                entries.append(entry)
        return sorted(entries, key=lambda e: e.created_at)


def _remove_path(path: Path) -> None:
    """Remove a file or directory tree, including read-only files."""
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


__all__ = [
    "ContentStore",
    "EntryNotFoundError",
    "StoreCorruption",
    "StoreEntry",
]
