"""Builder runner.

This module handles:
- Executing a builder process from a launch specification
- Capturing stdout/stderr to the build log
- Enforcing build timeouts
- Terminating builders on cancellation
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from storebuild.builds.environment import LaunchSpec

logger = logging.getLogger(__name__)

# How often a waiting worker checks for cancellation (seconds)
POLL_INTERVAL = 0.1


class BuilderStartError(Exception):
    """Raised when a builder process cannot be started."""

    def __init__(self, message: str, code: str = "builder_start_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class BuilderResult:
    """Result of a builder execution.

    Attributes:
        exit_code: Process exit code (negative for signals).
        log_path: Path to the build log file.
        started_at: Builder start time.
        finished_at: Builder finish time.
        command: The command that was executed.
        timed_out: Whether the builder was stopped by the timeout.
        cancelled: Whether the builder was stopped by cancellation.
    """

    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    timed_out: bool = False
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


def terminate_process(proc: subprocess.Popen[bytes], grace: float) -> None:
    """Stop a builder and its process group.

    Sends SIGTERM, then SIGKILL if the process is still alive after
    ``grace`` seconds.
    """
    if proc.poll() is not None:
        return

    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return

    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning("Builder %d ignored SIGTERM, killing", proc.pid)
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        proc.wait()


def run_builder(
    launch: LaunchSpec,
    log_path: Path,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
    terminate_grace: float = 5.0,
) -> BuilderResult:
    """Execute a builder.

    The builder gets no stdin; stdout and stderr both go to the log file.

    Args:
        launch: Launch specification.
        log_path: Build log file (overwritten).
        timeout: Builder timeout in seconds (None = no timeout).
        cancel_event: When set, the builder is terminated.
        terminate_grace: Seconds between SIGTERM and SIGKILL.

    Returns:
        BuilderResult with execution details.

    Raises:
        BuilderStartError: If the builder cannot be started.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    launch.cwd.mkdir(parents=True, exist_ok=True)

    cmd_str = shlex.join(launch.command)
    logger.debug("Executing builder: %s", cmd_str)
    logger.debug("Working directory: %s", launch.cwd)

    started_at = datetime.now(timezone.utc)
    timed_out = False
    cancelled = False

    with log_path.open("w") as log_file:
        log_file.write(f"# Command: {cmd_str}\n")
        log_file.write(f"# Started: {started_at.isoformat()}\n")
        log_file.write(f"# CWD: {launch.cwd}\n")
        log_file.write("# " + "=" * 70 + "\n\n")
        log_file.flush()

        try:
            proc = subprocess.Popen(
                launch.command,
                cwd=launch.cwd,
                env=launch.env,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            log_file.write(f"# Failed to start builder: {e}\n")
            raise BuilderStartError(f"Failed to start builder {launch.executable}: {e}") from e

        deadline = None
        if timeout is not None:
            deadline = started_at.timestamp() + timeout

        while True:
            try:
                exit_code = proc.wait(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                pass

            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
            elif deadline is not None and datetime.now(timezone.utc).timestamp() >= deadline:
                timed_out = True
            else:
                continue

            terminate_process(proc, terminate_grace)
            exit_code = proc.returncode
            break

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        if timed_out:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
        if cancelled:
            log_file.write("\n# CANCELLED\n")
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    if exit_code != 0 and not cancelled:
        logger.debug("Builder exited with %d. See log: %s", exit_code, log_path)

    return BuilderResult(
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        timed_out=timed_out,
        cancelled=cancelled,
    )


__all__ = [
    "POLL_INTERVAL",
    "BuilderResult",
    "BuilderStartError",
    "run_builder",
    "terminate_process",
]
