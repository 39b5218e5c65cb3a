"""Build record ORM model.

A BuildRecord is the history row for one node of one build request. The
content store is the source of truth for outputs; records only describe
what happened when.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from storebuild.db import Base
from storebuild.types import NodeStatus


class BuildRecord(Base):
    """ORM model for node execution records.

    Attributes:
        id: Primary key.
        request_id: Identifier shared by all nodes of one build request.
        address: Content address of the node.
        name: Description name.
        is_root: Whether the node is the root of the request.
        status: Node status (see NodeStatus).
        requested_at: Timestamp when the record was created.
        started_at: Timestamp when the builder started.
        finished_at: Timestamp when the node reached a terminal state.
        exit_status: Builder exit status, if it ran.
        log_path: Path to the build log file.
        error_type: Failure reason if the node failed.
        error_message: Failure message if the node failed.
        is_cache_hit: Whether the node was already in the store.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    request_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    address: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_root: Mapped[bool] = mapped_column(nullable=False, default=False)

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=NodeStatus.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Execution details
    exit_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_cache_hit: Mapped[bool] = mapped_column(nullable=False, default=False)

    __table_args__ = (Index("ix_build_records_request_address", "request_id", "address"),)

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, name='{self.name}', "
            f"status='{self.status}', address='{self.address[:23]}...')>"
        )

    def mark_running(self) -> None:
        """Mark this node as running."""
        self.status = NodeStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_finished(self, status: NodeStatus) -> None:
        """Mark this node as finished with a terminal status."""
        self.status = status.value
        self.finished_at = datetime.now()
        if status == NodeStatus.CACHED:
            self.is_cache_hit = True

    def is_succeeded(self) -> bool:
        """Check if this node ended with its output in the store."""
        return self.status in (NodeStatus.SUCCEEDED.value, NodeStatus.CACHED.value)


__all__ = ["BuildRecord"]
