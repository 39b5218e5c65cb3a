"""Shared type definitions for storebuild.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class NodeStatus(str, Enum):
    """Status of a graph node within one build request."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CACHED = "cached"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class NodeEvent(str, Enum):
    """Events emitted by the scheduler for a graph node."""

    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CACHED = "cached"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class OutputInfo:
    """Information about a single file in a store entry."""

    relative_path: str
    size_bytes: int
    sha256: str
    executable: bool = False


__all__ = [
    "NodeEvent",
    "NodeStatus",
    "OutputInfo",
]
