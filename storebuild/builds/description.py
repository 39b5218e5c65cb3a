"""Build description model.

A BuildDescription is the immutable record of one desired output: its name,
target platform, builder program, argument list, environment bindings and
the inputs it consumes. Descriptions reference each other by name through
their enumerated ``inputs``; the graph builder resolves those names against
a Catalog and computes content addresses bottom-up.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Union

from storebuild.config import current_system

# Same character set a store path name may use
NAME_PATTERN = re.compile(r"^[A-Za-z0-9+_?=-][A-Za-z0-9+._?=-]*$")
BINDING_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Names the materializer defines itself
RESERVED_BINDINGS = frozenset({"out", "script"})

# Builder used by source-import descriptions
SOURCE_BUILDER = "builtin:source"


class DescriptionError(ValueError):
    """Raised when a build description is malformed."""

    def __init__(self, message: str, code: str = "invalid_description") -> None:
        super().__init__(message)
        self.code = code


class DuplicateDescriptionError(Exception):
    """Raised when two different descriptions claim the same name."""

    def __init__(self, name: str, code: str = "duplicate_description") -> None:
        super().__init__(f"A different description is already named {name!r}")
        self.name = name
        self.code = code


@dataclass(frozen=True)
class InputRef:
    """Reference to the output path of an input binding."""

    binding: str
    subpath: str = ""


@dataclass(frozen=True)
class OutputRef:
    """Reference to this description's own output path ($out)."""

    subpath: str = ""


@dataclass(frozen=True)
class ScriptRef:
    """Reference to the file holding the inline builder script."""


Value = Union[str, InputRef, OutputRef, ScriptRef]


@dataclass(frozen=True)
class SourceSpec:
    """A local file or directory imported into the store.

    Only the digest takes part in the content address; the path is where
    the content is read from when the import is realised.
    """

    path: Path
    sha256: str


def _check_subpath(subpath: str, what: str) -> None:
    if not subpath:
        return
    pure = PurePosixPath(subpath)
    if pure.is_absolute() or ".." in pure.parts:
        raise DescriptionError(f"{what} must be a relative path inside the output: {subpath!r}")


@dataclass(frozen=True)
class BuildDescription:
    """Immutable description of one build output.

    Attributes:
        name: Output name, used in logs and as the catalog key.
        system: Target platform identifier (e.g. ``x86_64-linux``).
        builder: Absolute path of the builder executable, or a reference
            to an executable inside an input.
        args: Arguments passed to the builder.
        env: Sorted ``(key, value)`` environment bindings.
        inputs: Sorted ``(binding, target)`` pairs naming the descriptions
            this one consumes.
        script: Optional inline builder script, exposed as ``$script``.
        source: Set for source-import descriptions.
        outputs: Paths under ``$out`` that must exist after a build.
    """

    name: str
    system: str
    builder: str | InputRef
    args: tuple[Value, ...] = ()
    env: tuple[tuple[str, Value], ...] = ()
    inputs: tuple[tuple[str, str], ...] = ()
    script: str | None = None
    source: SourceSpec | None = None
    outputs: tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        if not NAME_PATTERN.match(self.name):
            raise DescriptionError(f"Invalid description name: {self.name!r}")
        if not self.system:
            raise DescriptionError(f"{self.name}: system must not be empty")

        bindings = [binding for binding, _ in self.inputs]
        if list(self.inputs) != sorted(self.inputs) or len(set(bindings)) != len(bindings):
            raise DescriptionError(f"{self.name}: inputs must be sorted and unique")
        for binding, target in self.inputs:
            if not BINDING_PATTERN.match(binding) or binding in RESERVED_BINDINGS:
                raise DescriptionError(f"{self.name}: invalid input binding {binding!r}")
            if not target:
                raise DescriptionError(f"{self.name}: input {binding!r} has no target")

        keys = [key for key, _ in self.env]
        if keys != sorted(keys) or len(set(keys)) != len(keys):
            raise DescriptionError(f"{self.name}: env keys must be sorted and unique")
        for key in keys:
            if not key or "=" in key or key in RESERVED_BINDINGS or key in bindings:
                raise DescriptionError(f"{self.name}: invalid env key {key!r}")

        for value in self.values():
            self._check_value(value, set(bindings))

        for output in self.outputs:
            if not output:
                raise DescriptionError(f"{self.name}: empty declared output")
            _check_subpath(output, "declared output")

        if self.source is not None:
            if self.builder != SOURCE_BUILDER or self.args or self.env or self.inputs:
                raise DescriptionError(
                    f"{self.name}: a source import takes no builder, args, env or inputs"
                )
        elif isinstance(self.builder, str):
            if not self.builder.startswith("/"):
                raise DescriptionError(
                    f"{self.name}: builder must be an absolute path: {self.builder!r}"
                )

    def _check_value(self, value: object, bindings: set[str]) -> None:
        if isinstance(value, str):
            return
        if isinstance(value, InputRef):
            if value.binding not in bindings:
                raise DescriptionError(
                    f"{self.name}: reference to undeclared input {value.binding!r}"
                )
            _check_subpath(value.subpath, "input reference")
        elif isinstance(value, OutputRef):
            _check_subpath(value.subpath, "output reference")
        elif isinstance(value, ScriptRef):
            if self.script is None:
                raise DescriptionError(f"{self.name}: $script used without a script")
        else:
            raise DescriptionError(
                f"{self.name}: unsupported value type {type(value).__name__}"
            )

    @classmethod
    def create(
        cls,
        name: str,
        builder: str | InputRef,
        args: list[Value] | tuple[Value, ...] = (),
        env: Mapping[str, Value] | None = None,
        inputs: Mapping[str, str] | None = None,
        script: str | None = None,
        outputs: list[str] | tuple[str, ...] = (),
        system: str | None = None,
    ) -> BuildDescription:
        """Create a description from plain mappings.

        Args:
            name: Output name.
            builder: Builder executable path or input reference.
            args: Builder arguments.
            env: Environment bindings.
            inputs: Mapping of binding name to the referenced description name.
            script: Optional inline builder script.
            outputs: Declared output paths under ``$out``.
            system: Target platform; defaults to the current host.

        Returns:
            A normalized, validated BuildDescription.
        """
        return cls(
            name=name,
            system=system or current_system(),
            builder=builder,
            args=tuple(args),
            env=tuple(sorted((env or {}).items())),
            inputs=tuple(sorted((inputs or {}).items())),
            script=script,
            outputs=tuple(outputs),
        )

    @classmethod
    def from_source(
        cls,
        name: str,
        path: Path,
        system: str | None = None,
    ) -> BuildDescription:
        """Create a source-import description for a local file or directory.

        The content is hashed now, so editing the file later yields a
        different description.

        Args:
            name: Output name.
            path: File or directory to import.
            system: Target platform; defaults to the current host.

        Returns:
            A source-import BuildDescription.

        Raises:
            DescriptionError: If the path does not exist.
        """
        from storebuild.builds.outputs import compute_tree_hash

        path = Path(path).absolute()
        if not path.exists():
            raise DescriptionError(f"Source not found: {path}", code="source_not_found")
        return cls(
            name=name,
            system=system or current_system(),
            builder=SOURCE_BUILDER,
            source=SourceSpec(path=path, sha256=compute_tree_hash(path)),
        )

    @property
    def is_source(self) -> bool:
        """Whether this description imports a local source."""
        return self.source is not None

    @property
    def input_map(self) -> dict[str, str]:
        """Return inputs as a binding -> target mapping."""
        return dict(self.inputs)

    def values(self) -> Iterator[Value]:
        """Iterate over the builder, argument and environment values."""
        yield self.builder
        yield from self.args
        for _, value in self.env:
            yield value


class Catalog:
    """Named collection of build descriptions.

    References between descriptions are resolved against a catalog.
    """

    def __init__(self, descriptions: list[BuildDescription] | None = None) -> None:
        self._descriptions: dict[str, BuildDescription] = {}
        for description in descriptions or []:
            self.add(description)

    def add(self, description: BuildDescription) -> BuildDescription:
        """Register a description under its name.

        Raises:
            DuplicateDescriptionError: If a different description has the name.
        """
        existing = self._descriptions.get(description.name)
        if existing is not None and existing != description:
            raise DuplicateDescriptionError(description.name)
        self._descriptions[description.name] = description
        return description

    def get(self, name: str) -> BuildDescription | None:
        return self._descriptions.get(name)

    def names(self) -> list[str]:
        return sorted(self._descriptions)

    def copy(self) -> Catalog:
        catalog = Catalog()
        catalog._descriptions = dict(self._descriptions)
        return catalog

    def __contains__(self, name: object) -> bool:
        return name in self._descriptions

    def __len__(self) -> int:
        return len(self._descriptions)

    def __iter__(self) -> Iterator[BuildDescription]:
        return iter(self._descriptions.values())


__all__ = [
    "BINDING_PATTERN",
    "NAME_PATTERN",
    "RESERVED_BINDINGS",
    "SOURCE_BUILDER",
    "BuildDescription",
    "Catalog",
    "DescriptionError",
    "DuplicateDescriptionError",
    "InputRef",
    "OutputRef",
    "ScriptRef",
    "SourceSpec",
    "Value",
]
