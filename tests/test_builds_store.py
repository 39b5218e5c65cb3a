"""Tests for builds/store.py module.

Tests entry installation, first-writer-wins semantics, corruption
detection and per-address locking.
"""

import json
import shutil
import stat
import threading

import pytest

from storebuild.builds.store import (
    ContentStore,
    EntryNotFoundError,
    StoreCorruption,
)

ADDRESS = "sha256:" + "1" * 64
OTHER = "sha256:" + "2" * 64


@pytest.fixture
def store(tmp_path) -> ContentStore:
    """Create an empty content store."""
    return ContentStore(tmp_path / "store")


def _stage(store: ContentStore, address: str, content: str = "hello\n"):
    staged = store.new_staging_dir(address) / "out"
    staged.mkdir()
    (staged / "app").write_text(content)
    return staged


class TestContentStoreLayout:
    """Tests for store paths."""

    def test_creates_directories(self, store):
        """Should create metadata, log, lock and staging directories."""
        for name in (".meta", ".logs", ".locks", ".tmp"):
            assert (store.root / name).is_dir()

    def test_paths_use_digest(self, store):
        """Entry and log paths are keyed by the digest."""
        assert store.path_for(ADDRESS) == store.root / ("1" * 64)
        assert store.log_path_for(ADDRESS).name == "1" * 64 + ".log"

    def test_rejects_malformed_address(self, store):
        """Malformed addresses cannot address a path."""
        with pytest.raises(ValueError):
            store.path_for("sha256:../../etc")

    def test_staging_inside_store(self, store):
        """Staging directories live under .tmp so renames stay on one filesystem."""
        staging = store.new_staging_dir(ADDRESS)
        assert staging.parent == store.tmp_dir
        assert staging.is_dir()


class TestContentStorePut:
    """Tests for ContentStore.put."""

    def test_put_and_get(self, store):
        """A put entry is retrievable and has its files."""
        entry = store.put(ADDRESS, "app", _stage(store, ADDRESS), exit_status=0)

        assert store.has(ADDRESS)
        assert entry.path == store.path_for(ADDRESS)
        assert (entry.path / "app").read_text() == "hello\n"
        assert entry.outputs == ("app",)
        assert store.get(ADDRESS) == entry

    def test_entry_is_read_only(self, store):
        """Stored files lose write permission."""
        entry = store.put(ADDRESS, "app", _stage(store, ADDRESS))
        mode = stat.S_IMODE((entry.path / "app").stat().st_mode)
        assert not mode & stat.S_IWUSR

    def test_metadata_written(self, store):
        """Metadata records name, tree hash and outputs."""
        entry = store.put(ADDRESS, "app", _stage(store, ADDRESS))
        meta = json.loads(store.meta_path_for(ADDRESS).read_text())
        assert meta["name"] == "app"
        assert meta["tree_hash"] == entry.tree_hash
        assert [o["relative_path"] for o in meta["outputs"]] == ["app"]

    def test_single_file_entry(self, store):
        """A file output becomes a file entry."""
        staged = store.new_staging_dir(ADDRESS) / "out"
        staged.write_text("data")
        entry = store.put(ADDRESS, "blob", staged)
        assert entry.path.is_file()
        assert entry.path.read_text() == "data"

    def test_identical_second_put_is_noop(self, store):
        """The first writer wins; identical content returns the existing entry."""
        first = store.put(ADDRESS, "app", _stage(store, ADDRESS))
        second_staged = _stage(store, ADDRESS)

        second = store.put(ADDRESS, "app", second_staged)

        assert second == first
        assert not second_staged.exists()

    def test_different_second_put_is_corruption(self, store):
        """Different content under the same address is fatal."""
        store.put(ADDRESS, "app", _stage(store, ADDRESS, "one\n"))

        with pytest.raises(StoreCorruption) as exc_info:
            store.put(ADDRESS, "app", _stage(store, ADDRESS, "two\n"))

        assert exc_info.value.code == "store_corruption"
        assert exc_info.value.address == ADDRESS
        assert (store.path_for(ADDRESS) / "app").read_text() == "one\n"

    def test_missing_staged(self, store, tmp_path):
        """Putting a missing path raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            store.put(ADDRESS, "app", tmp_path / "missing")

    def test_put_in_place(self, store):
        """Output written at the entry path is finalised where it is."""
        entry_path = store.path_for(ADDRESS)
        entry_path.mkdir()
        (entry_path / "app").write_text("hello\n")

        entry = store.put(ADDRESS, "app", entry_path)

        assert entry.path == entry_path
        assert (entry_path / "app").read_text() == "hello\n"
        assert store.has(ADDRESS)

    def test_put_in_place_existing_entry(self, store):
        """Putting a complete entry again returns it unchanged."""
        first = store.put(ADDRESS, "app", _stage(store, ADDRESS))

        again = store.put(ADDRESS, "app", store.path_for(ADDRESS))

        assert again.tree_hash == first.tree_hash
        assert store.path_for(ADDRESS).exists()

    def test_replaces_stray_entry(self, store):
        """An entry path without metadata is treated as absent."""
        stray = store.path_for(ADDRESS)
        stray.mkdir()
        (stray / "partial").write_text("x")
        assert not store.has(ADDRESS)

        entry = store.put(ADDRESS, "app", _stage(store, ADDRESS))

        assert entry.outputs == ("app",)
        assert not (stray / "partial").exists()

    def test_concurrent_puts(self, store):
        """Concurrent identical puts leave exactly one entry."""
        staged = [_stage(store, ADDRESS) for _ in range(4)]
        results = []
        errors = []

        def worker(path):
            try:
                results.append(store.put(ADDRESS, "app", path))
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(p,)) for p in staged]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len({r.tree_hash for r in results}) == 1
        assert len(store.list_entries()) == 1


class TestContentStoreGet:
    """Tests for ContentStore.get and listing."""

    def test_get_missing(self, store):
        """Absent entries raise EntryNotFoundError."""
        with pytest.raises(EntryNotFoundError) as exc_info:
            store.get(ADDRESS)
        assert exc_info.value.code == "entry_not_found"
        assert store.get_or_none(ADDRESS) is None

    def test_unreadable_metadata(self, store):
        """Broken metadata is reported as corruption."""
        store.put(ADDRESS, "app", _stage(store, ADDRESS))
        store.meta_path_for(ADDRESS).write_text("{not json")
        with pytest.raises(StoreCorruption):
            store.get(ADDRESS)

    def test_list_entries(self, store):
        """Should list every present entry."""
        store.put(ADDRESS, "app", _stage(store, ADDRESS))
        store.put(OTHER, "lib", _stage(store, OTHER, "lib\n"))

        entries = store.list_entries()

        assert {e.name for e in entries} == {"app", "lib"}


class TestContentStoreLock:
    """Tests for ContentStore.lock."""

    def test_creates_lock_file(self, store):
        """Should lock through a per-address lock file."""
        with store.lock(ADDRESS):
            assert (store.locks_dir / ("1" * 64 + ".lock")).exists()

    def test_timeout(self, store):
        """A held lock makes another acquisition time out."""
        held = threading.Event()
        release = threading.Event()

        def holder():
            with store.lock(ADDRESS):
                held.set()
                release.wait(5)

        t = threading.Thread(target=holder)
        t.start()
        held.wait(5)
        try:
            with pytest.raises(TimeoutError):
                with store.lock(ADDRESS, timeout=0.2):
                    pass
        finally:
            release.set()
            t.join()

    def test_different_addresses_do_not_block(self, store):
        """Lock granularity is per address."""
        with store.lock(ADDRESS):
            with store.lock(OTHER, timeout=0.2):
                pass

    def test_reentrant(self, store):
        """The same thread can take a held lock again."""
        with store.lock(ADDRESS):
            with store.lock(ADDRESS, timeout=0.2):
                pass
            assert store.put(ADDRESS, "app", _stage(store, ADDRESS)).name == "app"


class TestContentStoreClearIncomplete:
    """Tests for ContentStore.clear_incomplete."""

    def test_removes_entry_without_metadata(self, store):
        """An entry path without metadata is removed."""
        stray = store.path_for(ADDRESS)
        stray.mkdir()
        (stray / "partial").write_text("x")

        store.clear_incomplete(ADDRESS)

        assert not stray.exists()

    def test_removes_stale_metadata(self, store):
        """Metadata whose entry path is gone is removed."""
        store.put(ADDRESS, "app", _stage(store, ADDRESS))
        shutil.rmtree(store.path_for(ADDRESS))

        store.clear_incomplete(ADDRESS)

        assert not store.meta_path_for(ADDRESS).exists()

    def test_keeps_complete_entry(self, store):
        """Complete entries are left alone."""
        store.put(ADDRESS, "app", _stage(store, ADDRESS))

        store.clear_incomplete(ADDRESS)

        assert store.has(ADDRESS)
