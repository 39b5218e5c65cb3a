"""Scheduler and executor for execution graphs.

This module handles:
- Walking an execution graph in dependency order
- Skipping nodes already present in the content store
- Running independent builders concurrently on a worker pool
- Scoping failures to the dependents of the failed node
- Cancellation and fatal store errors
"""

from __future__ import annotations

import logging
import shutil
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path

from storebuild.builds.cache_key import short_address
from storebuild.builds.environment import UnmaterializedReference, materialize
from storebuild.builds.graph import ExecutionGraph, GraphNode
from storebuild.builds.outputs import missing_outputs
from storebuild.builds.runner import BuilderStartError, run_builder
from storebuild.builds.sources import SourceChangedError, realise_source
from storebuild.builds.store import ContentStore, StoreCorruption, StoreEntry
from storebuild.types import NodeEvent, NodeStatus

logger = logging.getLogger(__name__)

EventHook = Callable[[NodeEvent, str], None]

# How often the scheduler checks for cancellation while waiting (seconds)
WAIT_INTERVAL = 0.2


class BuildFailure(Exception):
    """A node could not be built.

    Attributes:
        address: Address of the node.
        name: Description name.
        exit_status: Builder exit status, if the builder ran.
        log_path: Build log of the node, if one was written.
        reason: Short failure category.
        failed_dependency: Address of the failed input, for dependents.
    """

    def __init__(
        self,
        address: str,
        name: str,
        message: str,
        exit_status: int | None = None,
        log_path: Path | None = None,
        reason: str = "exit_status",
        failed_dependency: str | None = None,
        code: str = "build_failed",
    ) -> None:
        super().__init__(message)
        self.address = address
        self.name = name
        self.exit_status = exit_status
        self.log_path = log_path
        self.reason = reason
        self.failed_dependency = failed_dependency
        self.code = code


class _Cancelled(Exception):
    """Internal signal that a running builder was stopped."""


@dataclass
class NodeResult:
    """Outcome of one node in a build request."""

    address: str
    name: str
    status: NodeStatus
    entry: StoreEntry | None = None
    failure: BuildFailure | None = None


@dataclass
class BuildReport:
    """Aggregate outcome of a build request."""

    root: str
    results: dict[str, NodeResult] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        """Whether every node is present in the store."""
        return all(
            r.status in (NodeStatus.SUCCEEDED, NodeStatus.CACHED)
            for r in self.results.values()
        )

    @property
    def root_entry(self) -> StoreEntry | None:
        result = self.results.get(self.root)
        return result.entry if result else None

    @property
    def failures(self) -> list[BuildFailure]:
        return [r.failure for r in self.results.values() if r.failure is not None]

    def count(self, status: NodeStatus) -> int:
        return sum(1 for r in self.results.values() if r.status == status)

    @property
    def built(self) -> int:
        return self.count(NodeStatus.SUCCEEDED)

    @property
    def cached(self) -> int:
        return self.count(NodeStatus.CACHED)


class Scheduler:
    """Runs the builders of an execution graph.

    Args:
        store: Content store for inputs and results.
        max_workers: Maximum number of builders running at once.
        timeout: Per-builder timeout in seconds.
        terminate_grace: Seconds between SIGTERM and SIGKILL for stopped builders.
        on_event: Optional hook called with every node event.
    """

    def __init__(
        self,
        store: ContentStore,
        max_workers: int = 4,
        timeout: float | None = None,
        terminate_grace: float = 5.0,
        on_event: EventHook | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.store = store
        self.max_workers = max_workers
        self.timeout = timeout
        self.terminate_grace = terminate_grace
        self.on_event = on_event

    def _emit(self, event: NodeEvent, address: str) -> None:
        if self.on_event is not None:
            self.on_event(event, address)

    def run(
        self,
        graph: ExecutionGraph,
        cancel_event: threading.Event | None = None,
    ) -> BuildReport:
        """Build every node of the graph that is absent from the store.

        Args:
            graph: Execution graph to run.
            cancel_event: When set, running builders are terminated and no
                further nodes start.

        Returns:
            Report with one result per node.

        Raises:
            StoreCorruption: If a result contradicts an existing entry.
            UnmaterializedReference: If a node started before its inputs existed.
        """
        report = BuildReport(root=graph.root)
        stop = threading.Event()
        dependents = graph.dependents_map()
        remaining = {a: len(graph.dependencies(a)) for a in graph.nodes}
        ready = deque(a for a in graph.topological_order() if remaining[a] == 0)
        running: dict[Future[tuple[StoreEntry, bool]], str] = {}
        fatal: BaseException | None = None

        def release(address: str) -> None:
            for dependent in sorted(dependents[address]):
                remaining[dependent] -= 1
                if remaining[dependent] == 0 and dependent not in report.results:
                    ready.append(dependent)

        def fail_dependents(address: str) -> None:
            for dependent in sorted(graph.transitive_dependents(address)):
                if dependent in report.results:
                    continue
                node = graph.nodes[dependent]
                report.results[dependent] = NodeResult(
                    address=dependent,
                    name=node.name,
                    status=NodeStatus.SKIPPED,
                    failure=BuildFailure(
                        dependent,
                        node.name,
                        f"{node.name}: dependency {graph.nodes[address].name} failed",
                        reason="dependency_failed",
                        failed_dependency=address,
                    ),
                )
                self._emit(NodeEvent.SKIPPED, dependent)

        logger.info("Building %s (%d node(s))", graph.nodes[graph.root].name, len(graph))

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="storebuild"
        ) as pool:
            try:
                while ready or running:
                    if cancel_event is not None and cancel_event.is_set() and not stop.is_set():
                        logger.warning("Build cancelled, stopping running builders")
                        stop.set()

                    while ready and not stop.is_set():
                        address = ready.popleft()
                        node = graph.nodes[address]
                        if self.store.has(address):
                            logger.debug("Cache hit for %s", node.name)
                            report.results[address] = NodeResult(
                                address=address,
                                name=node.name,
                                status=NodeStatus.CACHED,
                                entry=self.store.get(address),
                            )
                            self._emit(NodeEvent.CACHED, address)
                            release(address)
                            continue

                        self._emit(NodeEvent.STARTED, address)
                        running[pool.submit(self._execute, node, stop)] = address

                    if not running:
                        break

                    done, _ = wait(running, timeout=WAIT_INTERVAL, return_when=FIRST_COMPLETED)
                    for future in done:
                        address = running.pop(future)
                        node = graph.nodes[address]
                        try:
                            entry, built = future.result()
                        except _Cancelled:
                            report.results[address] = NodeResult(
                                address=address, name=node.name, status=NodeStatus.CANCELLED
                            )
                            self._emit(NodeEvent.CANCELLED, address)
                        except BuildFailure as failure:
                            logger.error("%s", failure)
                            report.results[address] = NodeResult(
                                address=address,
                                name=node.name,
                                status=NodeStatus.FAILED,
                                failure=failure,
                            )
                            self._emit(NodeEvent.FAILED, address)
                            fail_dependents(address)
                        except (StoreCorruption, UnmaterializedReference) as e:
                            logger.critical("%s", e)
                            report.results[address] = NodeResult(
                                address=address, name=node.name, status=NodeStatus.FAILED
                            )
                            self._emit(NodeEvent.FAILED, address)
                            if fatal is None:
                                fatal = e
                            stop.set()
                        else:
                            status = NodeStatus.SUCCEEDED if built else NodeStatus.CACHED
                            report.results[address] = NodeResult(
                                address=address, name=node.name, status=status, entry=entry
                            )
                            self._emit(
                                NodeEvent.SUCCEEDED if built else NodeEvent.CACHED, address
                            )
                            release(address)
            except BaseException:
                # Interrupted: stop builders before the pool joins its workers
                stop.set()
                raise

        if fatal is not None:
            raise fatal

        for address in graph.topological_order():
            if address not in report.results:
                node = graph.nodes[address]
                report.results[address] = NodeResult(
                    address=address, name=node.name, status=NodeStatus.CANCELLED
                )
                self._emit(NodeEvent.CANCELLED, address)

        logger.info(
            "Finished %s: %d built, %d cached, %d failed, %d skipped",
            graph.nodes[graph.root].name,
            report.built,
            report.cached,
            report.count(NodeStatus.FAILED),
            report.count(NodeStatus.SKIPPED),
        )
        return report

    def _execute(self, node: GraphNode, stop: threading.Event) -> tuple[StoreEntry, bool]:
        """Build one node directly into its store entry path.

        Returns:
            The stored entry, and whether this call built it. An entry
            finished by another writer while waiting for the lock is reused.
        """
        address = node.address
        description = node.description

        with self.store.lock(address):
            if self.store.has(address):
                logger.info("%s was built by another writer", description.name)
                return self.store.get(address), False

            self.store.clear_incomplete(address)
            log_path = self.store.log_path_for(address)
            out_path = self.store.path_for(address)
            staging = self.store.new_staging_dir(address)
            workdir = staging / "build"

            logger.info("Building %s (%s)", description.name, short_address(address))
            try:
                workdir.mkdir()
                if description.is_source:
                    exit_status = self._realise_source(node, out_path, log_path)
                else:
                    exit_status = self._run_builder(node, workdir, out_path, log_path, stop)

                missing = missing_outputs(out_path, description.outputs)
                if missing:
                    raise BuildFailure(
                        address,
                        description.name,
                        f"{description.name}: builder did not produce {', '.join(missing)}",
                        exit_status=exit_status,
                        log_path=log_path,
                        reason="missing_output",
                    )

                entry = self.store.put(
                    address,
                    description.name,
                    out_path,
                    log_path=log_path,
                    exit_status=exit_status,
                )
            except BaseException:
                self._discard_partial(address)
                raise
            finally:
                shutil.rmtree(staging, ignore_errors=True)
        return entry, True

    def _discard_partial(self, address: str) -> None:
        try:
            self.store.clear_incomplete(address)
        except OSError as e:
            logger.warning("Could not remove partial output for %s: %s", address, e)

    def _realise_source(self, node: GraphNode, out_path: Path, log_path: Path) -> int:
        description = node.description
        try:
            realise_source(description, out_path)
        except (SourceChangedError, OSError) as e:
            log_path.write_text(f"# Source import failed: {e}\n")
            raise BuildFailure(
                node.address,
                description.name,
                f"{description.name}: {e}",
                log_path=log_path,
                reason=getattr(e, "code", "source_error"),
            ) from e
        source_path = description.source.path if description.source else ""
        log_path.write_text(f"# Imported source {source_path}\n")
        return 0

    def _run_builder(
        self,
        node: GraphNode,
        workdir: Path,
        out_path: Path,
        log_path: Path,
        stop: threading.Event,
    ) -> int:
        description = node.description

        script_path: Path | None = None
        if description.script is not None:
            script_path = workdir.parent / "builder.sh"
            script_path.write_text(description.script, encoding="utf-8")

        # Declared outputs live under $out, so it must be a directory
        if description.outputs:
            out_path.mkdir()

        launch = materialize(node, self.store, workdir, out_path, script_path)

        try:
            result = run_builder(
                launch,
                log_path,
                timeout=self.timeout,
                cancel_event=stop,
                terminate_grace=self.terminate_grace,
            )
        except BuilderStartError as e:
            raise BuildFailure(
                node.address,
                description.name,
                f"{description.name}: {e}",
                log_path=log_path,
                reason=e.code,
            ) from e

        if result.cancelled:
            raise _Cancelled(node.address)
        if result.timed_out:
            raise BuildFailure(
                node.address,
                description.name,
                f"{description.name}: builder timed out after {self.timeout}s",
                exit_status=result.exit_code,
                log_path=log_path,
                reason="timeout",
            )
        if result.exit_code != 0:
            raise BuildFailure(
                node.address,
                description.name,
                f"{description.name}: builder failed with exit code {result.exit_code}",
                exit_status=result.exit_code,
                log_path=log_path,
            )
        return result.exit_code


__all__ = [
    "BuildFailure",
    "BuildReport",
    "EventHook",
    "NodeResult",
    "Scheduler",
]
