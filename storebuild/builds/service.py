"""Build service module.

This module provides the high-level build API:
- run_build_request(): Main entry point - resolve, schedule and record
- Build record persistence through scheduler events
- Graph inspection without execution
- Build record queries
"""

from __future__ import annotations

import logging
import threading
import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from storebuild.builds.cache_key import short_address
from storebuild.builds.description import BuildDescription, Catalog
from storebuild.builds.graph import ExecutionGraph, build_graph
from storebuild.builds.models import BuildRecord
from storebuild.builds.scheduler import BuildReport, EventHook, Scheduler
from storebuild.builds.store import ContentStore
from storebuild.config import get_settings
from storebuild.db import get_session
from storebuild.types import NodeEvent, NodeStatus

if TYPE_CHECKING:
    from storebuild.config import Settings

logger = logging.getLogger(__name__)


class BuildNotFoundError(Exception):
    """Raised when a build record is not found."""

    def __init__(self, build_id: int, code: str = "build_not_found") -> None:
        super().__init__(f"Build record not found: {build_id}")
        self.build_id = build_id
        self.code = code


_TERMINAL_EVENTS = {
    NodeEvent.SUCCEEDED: NodeStatus.SUCCEEDED,
    NodeEvent.FAILED: NodeStatus.FAILED,
    NodeEvent.CACHED: NodeStatus.CACHED,
    NodeEvent.SKIPPED: NodeStatus.SKIPPED,
    NodeEvent.CANCELLED: NodeStatus.CANCELLED,
}


class BuildRecorder:
    """Persists scheduler events as BuildRecord rows.

    Args:
        session_factory: Factory for database sessions.
        graph: Graph being built.
        request_id: Identifier of the request; generated if not given.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        graph: ExecutionGraph,
        request_id: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.graph = graph
        self.request_id = request_id or uuid.uuid4().hex
        self._record_ids: dict[str, int] = {}
        self._lock = threading.Lock()

    def on_event(self, event: NodeEvent, address: str) -> None:
        """Record a scheduler event."""
        with self._lock, get_session(self.session_factory) as session:
            record_id = self._record_ids.get(address)
            record = session.get(BuildRecord, record_id) if record_id else None
            if record is None:
                node = self.graph.nodes[address]
                record = BuildRecord(
                    request_id=self.request_id,
                    address=address,
                    name=node.name,
                    is_root=address == self.graph.root,
                    status=NodeStatus.PENDING.value,
                )
                session.add(record)

            if event == NodeEvent.STARTED:
                record.mark_running()
            else:
                record.mark_finished(_TERMINAL_EVENTS[event])

            session.flush()
            self._record_ids[address] = record.id

    def record_report(self, report: BuildReport) -> None:
        """Attach failure details from a finished report to the records."""
        with self._lock, get_session(self.session_factory) as session:
            for address, result in report.results.items():
                record_id = self._record_ids.get(address)
                record = session.get(BuildRecord, record_id) if record_id else None
                if record is None:
                    continue
                if result.entry is not None and result.entry.log_path:
                    record.log_path = str(result.entry.log_path)
                    record.exit_status = result.entry.exit_status
                failure = result.failure
                if failure is not None:
                    record.error_type = failure.reason
                    record.error_message = str(failure)
                    record.exit_status = failure.exit_status
                    if failure.log_path:
                        record.log_path = str(failure.log_path)


def _chain_hooks(*hooks: EventHook | None) -> EventHook | None:
    active = [h for h in hooks if h is not None]
    if not active:
        return None

    def hook(event: NodeEvent, address: str) -> None:
        for h in active:
            h(event, address)

    return hook


def run_build_request(
    root: str | BuildDescription,
    catalog: Catalog,
    settings: Settings | None = None,
    store: ContentStore | None = None,
    session_factory: sessionmaker[Session] | None = None,
    cancel_event: threading.Event | None = None,
    max_workers: int | None = None,
    timeout: float | None = None,
    on_event: EventHook | None = None,
) -> BuildReport:
    """Build a root description and everything it depends on.

    This is the main entry point for a build request. It:
    1. Resolves the root into an execution graph (no builder runs if this fails)
    2. Runs the scheduler over the graph
    3. Records node events when a session factory is given

    Args:
        root: Root description or its catalog name.
        catalog: Descriptions references are resolved against.
        settings: Application settings.
        store: Content store; opened at ``settings.store_dir`` if not given.
        session_factory: Database session factory for build records.
        cancel_event: Event that cancels the request when set.
        max_workers: Override for ``settings.max_workers``.
        timeout: Override for ``settings.build_timeout``.
        on_event: Extra hook receiving every node event.

    Returns:
        BuildReport for the request.

    Raises:
        CyclicDependency: If the graph has a cycle.
        UnresolvedReference: If a reference names no known description.
        StoreCorruption: If a result contradicts an existing entry.
    """
    if settings is None:
        settings = get_settings()
    if store is None:
        store = ContentStore(settings.store_dir)

    graph = build_graph(root, catalog)
    root_name = graph.nodes[graph.root].name
    logger.info("Resolved %s to %s", root_name, graph.root)

    recorder: BuildRecorder | None = None
    if session_factory is not None:
        recorder = BuildRecorder(session_factory, graph)

    scheduler = Scheduler(
        store,
        max_workers=max_workers or settings.max_workers,
        timeout=timeout if timeout is not None else settings.build_timeout,
        terminate_grace=settings.terminate_grace,
        on_event=_chain_hooks(recorder.on_event if recorder else None, on_event),
    )
    report = scheduler.run(graph, cancel_event=cancel_event)

    if recorder is not None:
        recorder.record_report(report)

    if report.success:
        logger.info("Build of %s succeeded", root_name)
    else:
        logger.error(
            "Build of %s failed: %d node(s) did not build",
            root_name,
            len(report.failures),
        )
    return report


def describe_graph(graph: ExecutionGraph, store: ContentStore) -> list[dict[str, Any]]:
    """Describe each graph node in build order without building anything.

    Args:
        graph: Execution graph.
        store: Content store to check for cached entries.

    Returns:
        List of node dictionaries (name, address, path, cached, inputs).
    """
    rows: list[dict[str, Any]] = []
    for address in graph.topological_order():
        node = graph.nodes[address]
        rows.append(
            {
                "name": node.name,
                "address": address,
                "short": short_address(address),
                "path": str(store.path_for(address)),
                "cached": store.has(address),
                "root": address == graph.root,
                "inputs": {b: graph.nodes[a].name for b, a in node.inputs},
            }
        )
    return rows


def get_build(session: Session, build_id: int) -> BuildRecord:
    """Get a build record by ID.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(BuildRecord, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def list_builds(
    session: Session,
    address: str | None = None,
    request_id: str | None = None,
    status: NodeStatus | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records with optional filters.

    Args:
        session: Database session.
        address: Filter by content address.
        request_id: Filter by build request.
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances, newest first.
    """
    stmt = select(BuildRecord)

    if address is not None:
        stmt = stmt.where(BuildRecord.address == address)
    if request_id is not None:
        stmt = stmt.where(BuildRecord.request_id == request_id)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


__all__ = [
    "BuildNotFoundError",
    "BuildRecorder",
    "describe_graph",
    "get_build",
    "list_builds",
    "run_build_request",
]
