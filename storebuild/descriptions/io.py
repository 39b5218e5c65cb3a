"""Description file loading.

This module provides helpers for loading description files from YAML/JSON
and turning their entries into BuildDescriptions.

Argument, environment and builder strings may reference paths:

- ``$out`` or ``$out/<path>``: this description's output
- ``$script``: the inline script file
- ``$<binding>`` or ``$<binding>/<path>``: an input's output
- a leading ``$$`` stands for a literal ``$``

Any other string is passed through unchanged.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

from storebuild.builds.description import (
    BuildDescription,
    Catalog,
    DescriptionError,
    InputRef,
    OutputRef,
    ScriptRef,
    Value,
)
from storebuild.descriptions.schema import DescriptionEntrySchema, DescriptionFileSchema


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_value(raw: str, bindings: set[str], has_script: bool = False) -> Value:
    """Parse a string from a description file into a value.

    Args:
        raw: String as written in the file.
        bindings: Input bindings declared by the entry.
        has_script: Whether the entry has an inline script.

    Returns:
        A literal string or a reference.
    """
    if raw.startswith("$$"):
        return raw[1:]
    if not raw.startswith("$"):
        return raw

    head, _, subpath = raw[1:].partition("/")
    if head == "out":
        return OutputRef(subpath)
    if head == "script" and has_script and not subpath:
        return ScriptRef()
    if head in bindings:
        return InputRef(head, subpath)
    return raw


def entry_to_description(
    name: str,
    entry: DescriptionEntrySchema,
    base_dir: Path,
    system: str | None = None,
) -> BuildDescription:
    """Convert a validated file entry into a BuildDescription.

    Args:
        name: Entry name.
        entry: Validated entry.
        base_dir: Directory relative source paths are resolved against.
        system: Default platform for entries that do not set one.

    Returns:
        The BuildDescription.

    Raises:
        DescriptionError: If the entry is not a valid description.
    """
    effective_system = entry.system or system

    if entry.source is not None:
        source_path = Path(entry.source).expanduser()
        if not source_path.is_absolute():
            source_path = base_dir / source_path
        return BuildDescription.from_source(name, source_path, system=effective_system)

    bindings = set(entry.inputs)
    has_script = entry.script is not None

    def parse(raw: str) -> Value:
        return parse_value(raw, bindings, has_script)

    builder = parse(entry.builder or "")
    if not isinstance(builder, (str, InputRef)):
        raise DescriptionError(f"{name}: builder must be a path or an input reference")

    return BuildDescription.create(
        name=name,
        builder=builder,
        args=[parse(a) for a in entry.args],
        env={key: parse(v) for key, v in entry.env.items()},
        inputs=entry.inputs,
        script=entry.script,
        outputs=entry.outputs,
        system=effective_system,
    )


def parse_description_file(
    data: dict[str, Any],
    base_dir: Path,
    system: str | None = None,
) -> tuple[Catalog, str | None]:
    """Validate description file data and build a catalog.

    Args:
        data: Parsed file content.
        base_dir: Directory relative source paths are resolved against.
        system: Default platform for entries that do not set one.

    Returns:
        Tuple of (catalog, root name or None).

    Raises:
        pydantic.ValidationError: If data does not match the schema.
        DescriptionError: If an entry is not a valid description.
    """
    schema = DescriptionFileSchema.model_validate(data)
    catalog = Catalog()
    for name, entry in schema.descriptions.items():
        catalog.add(entry_to_description(name, entry, base_dir, system))
    return catalog, schema.root


def load_catalog(path: Path, system: str | None = None) -> tuple[Catalog, str | None]:
    """Load a description file (YAML or JSON).

    File format is determined by extension (.yaml, .yml for YAML,
    .json for JSON).

    Args:
        path: Path to the description file.
        system: Default platform for entries that do not set one.

    Returns:
        Tuple of (catalog, root name or None).

    Raises:
        ValueError: If file extension is not supported.
        FileNotFoundError: If the file does not exist.
        pydantic.ValidationError: If data does not match the schema.
    """
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        data = load_yaml(path)
    elif suffix == ".json":
        data = load_json(path)
    else:
        raise ValueError(
            f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json"
        )
    return parse_description_file(data, path.parent.absolute(), system)


__all__ = [
    "entry_to_description",
    "load_catalog",
    "load_json",
    "load_yaml",
    "parse_description_file",
    "parse_value",
]
