"""Tests for builds/scheduler.py module.

Tests dependency ordering, cache hits, failure scoping and cancellation.
Builders are small Python programs run by the current interpreter.
"""

import shutil
import sys
import threading
import time
from pathlib import Path

import pytest

from storebuild.builds.description import BuildDescription, Catalog, InputRef, OutputRef
from storebuild.builds.graph import build_graph
from storebuild.builds.scheduler import BuildFailure, Scheduler
from storebuild.builds.store import ContentStore, StoreCorruption
from storebuild.types import NodeEvent, NodeStatus

# Writes $out as a file containing the given text plus the inputs' contents
WRITE_OUT = (
    "import os, sys\n"
    "parts = [sys.argv[1]]\n"
    "for path in sys.argv[2:]:\n"
    "    parts.append(open(path).read())\n"
    "open(os.environ['out'], 'w').write('|'.join(parts))\n"
)


def _py(name: str, code: str = WRITE_OUT, text: str | None = None, **inputs: str):
    return BuildDescription.create(
        name=name,
        builder=sys.executable,
        args=["-c", code, text or name, *[InputRef(b) for b in sorted(inputs)]],
        inputs=inputs,
        system="x86_64-linux",
    )


class EventLog:
    """Collects scheduler events with their node names."""

    def __init__(self, graph):
        self.graph = graph
        self.events: list[tuple[NodeEvent, str]] = []

    def __call__(self, event, address):
        self.events.append((event, self.graph.nodes[address].name))

    def index(self, event, name):
        return self.events.index((event, name))

    def names(self, event):
        return [n for e, n in self.events if e == event]


@pytest.fixture
def store(tmp_path) -> ContentStore:
    """Create an empty content store."""
    return ContentStore(tmp_path / "store")


def _run(store, root, catalog, **kwargs):
    graph = build_graph(root, catalog)
    log = EventLog(graph)
    report = Scheduler(store, on_event=log, terminate_grace=1.0, **kwargs).run(graph)
    return graph, log, report


class TestSchedulerOrdering:
    """Tests for dependency ordering."""

    def test_chain(self, store):
        """Each input completes before its dependent starts."""
        catalog = Catalog([_py("a"), _py("b", x="a"), _py("c", x="b")])

        graph, log, report = _run(store, "c", catalog, max_workers=4)

        assert report.success
        assert log.index(NodeEvent.SUCCEEDED, "a") < log.index(NodeEvent.STARTED, "b")
        assert log.index(NodeEvent.SUCCEEDED, "b") < log.index(NodeEvent.STARTED, "c")
        assert report.root_entry is not None
        assert report.root_entry.path.read_text() == "c|b|a"

    def test_diamond(self, store):
        """Shared inputs are built once and both branches see them."""
        catalog = Catalog(
            [_py("base"), _py("left", x="base"), _py("right", x="base"),
             _py("app", l="left", r="right")]
        )

        _, log, report = _run(store, "app", catalog, max_workers=2)

        assert report.success
        assert report.built == 4
        assert log.names(NodeEvent.STARTED).count("base") == 1
        for branch in ("left", "right"):
            assert log.index(NodeEvent.SUCCEEDED, "base") < log.index(
                NodeEvent.STARTED, branch
            )
            assert log.index(NodeEvent.SUCCEEDED, branch) < log.index(
                NodeEvent.STARTED, "app"
            )
        assert report.root_entry.path.read_text() == "app|left|base|right|base"

    def test_independent_nodes_run_concurrently(self, store, tmp_path):
        """Siblings without a dependency run at the same time."""
        marker_dir = tmp_path / "markers"
        marker_dir.mkdir()
        # Each builder waits until both have started
        code = (
            "import os, sys, time\n"
            f"d = {str(marker_dir)!r}\n"
            "open(os.path.join(d, sys.argv[1]), 'w').close()\n"
            "deadline = time.time() + 10\n"
            "while len(os.listdir(d)) < 2 and time.time() < deadline:\n"
            "    time.sleep(0.05)\n"
            "if len(os.listdir(d)) < 2:\n"
            "    sys.exit(1)\n"
            "open(os.environ['out'], 'w').write(sys.argv[1])\n"
        )
        catalog = Catalog([_py("one", code), _py("two", code), _py("both", x="one", y="two")])

        _, _, report = _run(store, "both", catalog, max_workers=2)

        assert report.success


class TestSchedulerCache:
    """Tests for cache hits."""

    def test_second_build_runs_nothing(self, store):
        """A repeated request is served entirely from the store."""
        catalog = Catalog([_py("a"), _py("b", x="a")])
        _, _, first = _run(store, "b", catalog)

        _, log, second = _run(store, "b", catalog)

        assert first.built == 2
        assert second.success
        assert second.built == 0
        assert second.cached == 2
        assert log.names(NodeEvent.STARTED) == []
        assert second.root_entry == first.root_entry

    def test_partial_cache(self, store):
        """Only nodes missing from the store are built."""
        _run(store, "a", Catalog([_py("a")]))
        catalog = Catalog([_py("a"), _py("b", x="a")])

        _, log, report = _run(store, "b", catalog)

        assert log.names(NodeEvent.CACHED) == ["a"]
        assert log.names(NodeEvent.STARTED) == ["b"]
        assert report.built == 1


class TestSchedulerFailures:
    """Tests for failure scoping."""

    def test_failure_skips_dependents_only(self, store):
        """A failed node fails its dependents; an independent sibling is stored."""
        fail = "import sys; sys.exit(1)"
        catalog = Catalog(
            [
                _py("bad", fail),
                _py("good"),
                _py("needs_bad", x="bad"),
                _py("top", x="needs_bad", y="good"),
            ]
        )

        graph, log, report = _run(store, "top", catalog)

        assert not report.success
        statuses = {r.name: r.status for r in report.results.values()}
        assert statuses == {
            "bad": NodeStatus.FAILED,
            "good": NodeStatus.SUCCEEDED,
            "needs_bad": NodeStatus.SKIPPED,
            "top": NodeStatus.SKIPPED,
        }
        assert "needs_bad" not in log.names(NodeEvent.STARTED)
        assert "top" not in log.names(NodeEvent.STARTED)

        good = next(r for r in report.results.values() if r.name == "good")
        assert store.has(good.address)

        bad = next(r for r in report.results.values() if r.name == "bad")
        assert isinstance(bad.failure, BuildFailure)
        assert bad.failure.exit_status == 1
        assert bad.failure.log_path is not None
        assert bad.failure.log_path.exists()
        assert not store.has(bad.address)

        skipped = next(r for r in report.results.values() if r.name == "top")
        assert skipped.failure.reason == "dependency_failed"
        assert skipped.failure.failed_dependency == bad.address

    def test_missing_out(self, store):
        """A builder that exits 0 without creating $out fails."""
        catalog = Catalog([_py("lazy", "pass")])
        _, _, report = _run(store, "lazy", catalog)

        result = report.results[next(iter(report.results))]
        assert result.status == NodeStatus.FAILED
        assert result.failure.reason == "missing_output"
        assert "$out" in str(result.failure)

    def test_missing_declared_output(self, store):
        """Declared outputs must exist after the build."""
        code = "import os; open(os.path.join(os.environ['out'], 'a'), 'w').close()"
        desc = BuildDescription.create(
            name="partial",
            builder=sys.executable,
            args=["-c", code],
            outputs=["a", "b"],
            system="x86_64-linux",
        )
        _, _, report = _run(store, desc, Catalog())

        failure = report.failures[0]
        assert failure.reason == "missing_output"
        assert "b" in str(failure)

    def test_declared_outputs_get_out_directory(self, store):
        """With declared outputs, $out exists as a directory before the builder runs."""
        code = "import os; open(os.path.join(os.environ['out'], 'app'), 'w').write('x')"
        desc = BuildDescription.create(
            name="app",
            builder=sys.executable,
            args=["-c", code],
            outputs=["app"],
            system="x86_64-linux",
        )
        _, _, report = _run(store, desc, Catalog())

        assert report.success
        assert (report.root_entry.path / "app").read_text() == "x"

    def test_builder_cannot_start(self, store, tmp_path):
        """A missing builder executable fails the node."""
        desc = BuildDescription.create(
            name="ghost", builder=str(tmp_path / "nope"), system="x86_64-linux"
        )
        _, _, report = _run(store, desc, Catalog())

        assert report.failures[0].reason == "builder_start_error"

    def test_timeout(self, store):
        """A builder exceeding the timeout fails with reason timeout."""
        catalog = Catalog([_py("slow", "import time; time.sleep(30)")])

        _, _, report = _run(store, "slow", catalog, timeout=0.5)

        assert report.failures[0].reason == "timeout"

    def test_unreadable_metadata_is_corruption(self, store):
        """A cached entry whose metadata is broken is fatal."""
        graph = build_graph("a", Catalog([_py("a")]))
        Scheduler(store).run(graph)
        store.meta_path_for(graph.root).write_text("{not json")

        with pytest.raises(StoreCorruption):
            Scheduler(store).run(graph)

    def test_failed_build_leaves_no_entry_path(self, store):
        """Partial output of a failed builder is removed."""
        code = "import os, sys; open(os.environ['out'], 'w').write('half'); sys.exit(1)"
        graph, _, report = _run(store, "half", Catalog([_py("half", code)]))

        assert report.results[graph.root].status == NodeStatus.FAILED
        assert not store.path_for(graph.root).exists()


class TestSchedulerOutputPath:
    """Tests for where builders write their output."""

    def test_out_is_final_entry_path(self, store):
        """Builders see the entry path itself as $out."""
        code = "import os; open(os.environ['out'], 'w').write(os.environ['out'])"
        graph, _, report = _run(store, "self", Catalog([_py("self", code)]))

        entry = report.root_entry
        assert entry.path == store.path_for(graph.root)
        recorded = entry.path.read_text()
        assert recorded == str(entry.path)
        assert Path(recorded).exists()

    def test_stray_entry_path_is_replaced(self, store):
        """Leftovers of an interrupted build do not block a rebuild."""
        graph = build_graph("a", Catalog([_py("a")]))
        stray = store.path_for(graph.root)
        stray.mkdir()
        (stray / "junk").write_text("x")

        report = Scheduler(store).run(graph)

        assert report.success
        assert report.root_entry.path.read_text() == "a"

    def test_schedulers_sharing_a_store(self, store):
        """Concurrent requests for one address build it once and agree."""
        code = (
            "import os, time\n"
            "time.sleep(0.3)\n"
            "open(os.environ['out'], 'w').write(str(time.time_ns()))\n"
        )
        graph = build_graph("clock", Catalog([_py("clock", code)]))
        reports = []
        errors = []

        def worker():
            try:
                reports.append(Scheduler(ContentStore(store.root)).run(graph))
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert all(r.success for r in reports)
        assert sorted(r.built for r in reports) == [0, 1]
        assert len({r.root_entry.tree_hash for r in reports}) == 1


class TestSchedulerCancellation:
    """Tests for cancellation."""

    def test_cancel_stops_running_and_pending(self, store):
        """Running builders are stopped and unstarted nodes are cancelled."""
        catalog = Catalog(
            [_py("slow", "import time; time.sleep(30)"), _py("after", x="slow")]
        )
        graph = build_graph("after", catalog)
        log = EventLog(graph)
        cancel = threading.Event()
        timer = threading.Timer(0.5, cancel.set)
        timer.start()
        started = time.monotonic()
        try:
            report = Scheduler(store, on_event=log, terminate_grace=1.0).run(
                graph, cancel_event=cancel
            )
        finally:
            timer.cancel()

        assert time.monotonic() - started < 20
        statuses = {r.name: r.status for r in report.results.values()}
        assert statuses == {"slow": NodeStatus.CANCELLED, "after": NodeStatus.CANCELLED}
        assert not report.success
        assert not store.has(graph.root)

    def test_cancel_before_start(self, store):
        """A pre-set cancel event starts nothing."""
        catalog = Catalog([_py("a")])
        graph = build_graph("a", catalog)
        cancel = threading.Event()
        cancel.set()

        report = Scheduler(store).run(graph, cancel_event=cancel)

        assert report.results[graph.root].status == NodeStatus.CANCELLED


class TestSchedulerValidation:
    """Tests for scheduler construction."""

    def test_rejects_zero_workers(self, store):
        """At least one worker is required."""
        with pytest.raises(ValueError):
            Scheduler(store, max_workers=0)


@pytest.mark.skipif(shutil.which("cc") is None, reason="no C compiler available")
class TestCompileExample:
    """The main.c / app compile example."""

    def test_compile_and_cache(self, store, tmp_path):
        """Compiling main.c stores app; a repeat request runs no process."""
        main_c = tmp_path / "main.c"
        main_c.write_text(
            '#include <stdio.h>\nint main(void) { puts("hello"); return 0; }\n'
        )
        catalog = Catalog(
            [
                BuildDescription.from_source("main.c", main_c, system="x86_64-linux"),
                BuildDescription.create(
                    name="app",
                    builder=shutil.which("cc"),
                    args=["-o", OutputRef("app"), "-x", "c", InputRef("src")],
                    inputs={"src": "main.c"},
                    # Store entries have no suffix, hence -x c; cc finds as and ld on PATH
                    env={"PATH": "/usr/bin:/bin"},
                    outputs=["app"],
                    system="x86_64-linux",
                ),
            ]
        )

        _, _, first = _run(store, "app", catalog)
        assert first.success, [str(f) for f in first.failures]
        assert (first.root_entry.path / "app").exists()

        _, log, second = _run(store, "app", catalog)
        assert log.names(NodeEvent.STARTED) == []
        assert second.root_entry.path == first.root_entry.path
