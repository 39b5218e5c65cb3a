"""Environment materialization for builders.

Turns a resolved graph node into a concrete process launch specification.
References are replaced by paths; nothing is evaluated by a shell here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from storebuild.builds.description import InputRef, OutputRef, ScriptRef, Value
from storebuild.builds.graph import GraphNode
from storebuild.builds.store import ContentStore

# Builders must not depend on the caller's PATH or home directory
UNSET_PATH = "/path-not-set"
UNSET_HOME = "/homeless-shelter"


class UnmaterializedReference(Exception):
    """Raised when a node references an input that has no store entry.

    The scheduler only starts nodes whose inputs are present, so this
    indicates a scheduler bug rather than a user error.
    """

    def __init__(
        self,
        address: str,
        binding: str,
        input_address: str,
        code: str = "unmaterialized_reference",
    ) -> None:
        super().__init__(
            f"Input {binding!r} ({input_address}) of {address} is not in the store"
        )
        self.address = address
        self.binding = binding
        self.input_address = input_address
        self.code = code


@dataclass(frozen=True)
class LaunchSpec:
    """Everything needed to start a builder process.

    Attributes:
        executable: Absolute path of the builder.
        args: Arguments after the executable.
        env: Complete process environment.
        cwd: Working directory.
    """

    executable: str
    args: tuple[str, ...]
    env: dict[str, str] = field(hash=False)
    cwd: Path = Path(".")

    @property
    def command(self) -> list[str]:
        """Return the full command line."""
        return [self.executable, *self.args]


def _join(base: Path, subpath: str) -> str:
    return str(base / subpath) if subpath else str(base)


def resolve_value(
    value: Value,
    input_paths: dict[str, Path],
    out_path: Path,
    script_path: Path | None,
) -> str:
    """Substitute a reference with its path.

    Args:
        value: Literal or reference.
        input_paths: Mapping of input binding to store entry path.
        out_path: This node's output path.
        script_path: Path of the written inline script.

    Returns:
        The string passed to the builder.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, InputRef):
        return _join(input_paths[value.binding], value.subpath)
    if isinstance(value, OutputRef):
        return _join(out_path, value.subpath)
    if isinstance(value, ScriptRef):
        if script_path is None:
            raise ValueError("Script reference without a script file")
        return str(script_path)
    raise TypeError(f"Unsupported value type: {type(value).__name__}")


def materialize(
    node: GraphNode,
    store: ContentStore,
    workdir: Path,
    out_path: Path,
    script_path: Path | None = None,
) -> LaunchSpec:
    """Build the launch specification for a node.

    The environment is built from scratch; nothing is inherited from the
    calling process. Every input binding is exported as a variable holding
    its store path, and ``out`` holds the output path.

    Args:
        node: Resolved graph node.
        store: Content store holding the node's inputs.
        workdir: Working directory for the builder.
        out_path: Path the builder must create its output at.
        script_path: Path of the written inline script, if any.

    Returns:
        The launch specification.

    Raises:
        UnmaterializedReference: If an input has no store entry.
    """
    description = node.description

    input_paths: dict[str, Path] = {}
    for binding, input_address in node.inputs:
        if not store.has(input_address):
            raise UnmaterializedReference(node.address, binding, input_address)
        input_paths[binding] = store.path_for(input_address)

    def resolve(value: Value) -> str:
        return resolve_value(value, input_paths, out_path, script_path)

    env: dict[str, str] = {
        "PATH": UNSET_PATH,
        "HOME": UNSET_HOME,
        "TMPDIR": str(workdir),
        "TMP": str(workdir),
        "TEMP": str(workdir),
        "STOREBUILD_BUILD_TOP": str(workdir),
        "STOREBUILD_NAME": description.name,
        "STOREBUILD_SYSTEM": description.system,
    }
    for binding, path in input_paths.items():
        env[binding] = str(path)
    for key, value in description.env:
        env[key] = resolve(value)
    env["out"] = str(out_path)
    if script_path is not None:
        env["script"] = str(script_path)

    return LaunchSpec(
        executable=resolve(description.builder),
        args=tuple(resolve(a) for a in description.args),
        env=env,
        cwd=workdir,
    )


__all__ = [
    "UNSET_HOME",
    "UNSET_PATH",
    "LaunchSpec",
    "UnmaterializedReference",
    "materialize",
    "resolve_value",
]
