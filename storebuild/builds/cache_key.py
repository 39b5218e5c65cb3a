"""Content address computation for build descriptions.

This module handles:
- Canonical snapshot creation from a description and its resolved inputs
- Deterministic hash computation over the normalized snapshot
- Address parsing helpers

Two descriptions that are structurally identical, with inputs resolving to
the same addresses, always produce the same address.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Mapping
from typing import Any

from storebuild.builds.description import (
    BuildDescription,
    InputRef,
    OutputRef,
    ScriptRef,
    Value,
)

# Schema version for address format; bump when the snapshot format changes
ADDRESS_SCHEMA_VERSION = "1"

ADDRESS_PREFIX = "sha256:"
ADDRESS_PATTERN = re.compile(r"^sha256:[0-9a-f]{64}$")


def serialize_value(value: Value) -> Any:
    """Convert an argument or environment value to a JSON-compatible form.

    Args:
        value: Literal string or reference.

    Returns:
        The literal itself, or a tagged dictionary for references.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, InputRef):
        return {"input": value.binding, "path": value.subpath}
    if isinstance(value, OutputRef):
        return {"out": value.subpath}
    if isinstance(value, ScriptRef):
        return {"script": True}
    raise TypeError(f"Unsupported value type: {type(value).__name__}")


def description_snapshot(
    description: BuildDescription,
    input_addresses: Mapping[str, str],
) -> dict[str, Any]:
    """Create the normalized snapshot hashed into a content address.

    Args:
        description: The description to snapshot.
        input_addresses: Mapping of input binding to resolved address.

    Returns:
        Dictionary with every field that affects the build output.

    Raises:
        ValueError: If an input binding has no resolved address.
    """
    resolved: dict[str, str] = {}
    for binding, target in description.inputs:
        if binding not in input_addresses:
            raise ValueError(
                f"{description.name}: input {binding!r} ({target}) is not resolved"
            )
        resolved[binding] = input_addresses[binding]

    snapshot: dict[str, Any] = {
        "schema_version": ADDRESS_SCHEMA_VERSION,
        "name": description.name,
        "system": description.system,
        "builder": serialize_value(description.builder),
        "args": [serialize_value(a) for a in description.args],
        "env": {key: serialize_value(v) for key, v in description.env},
        "inputs": resolved,
        "outputs": list(description.outputs),
    }

    # The inline script is hashed with the description it belongs to
    if description.script is not None:
        snapshot["script"] = description.script
    if description.source is not None:
        snapshot["source_sha256"] = description.source.sha256

    return snapshot


def compute_address(
    description: BuildDescription,
    input_addresses: Mapping[str, str] | None = None,
) -> str:
    """Compute the content address of a description.

    The address is a SHA-256 hash of the canonical JSON representation of
    the description snapshot.

    Args:
        description: The description to address.
        input_addresses: Mapping of input binding to resolved address.

    Returns:
        Address as a string (sha256:...).
    """
    snapshot = description_snapshot(description, input_addresses or {})

    # Serialize to canonical JSON (sorted keys, no extra whitespace)
    canonical_json = json.dumps(
        snapshot,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )

    hash_hex = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"{ADDRESS_PREFIX}{hash_hex}"


def is_address(value: str) -> bool:
    """Check whether a string is a well-formed content address."""
    return bool(ADDRESS_PATTERN.match(value))


def address_digest(address: str) -> str:
    """Return the hex digest part of an address.

    Args:
        address: Address string (sha256:...).

    Returns:
        The 64-character hex digest.

    Raises:
        ValueError: If the address is malformed.
    """
    if not is_address(address):
        raise ValueError(f"Malformed content address: {address!r}")
    return address[len(ADDRESS_PREFIX) :]


def short_address(address: str, length: int = 12) -> str:
    """Return a shortened digest for display."""
    return address.removeprefix(ADDRESS_PREFIX)[:length]


__all__ = [
    "ADDRESS_PATTERN",
    "ADDRESS_PREFIX",
    "ADDRESS_SCHEMA_VERSION",
    "address_digest",
    "compute_address",
    "description_snapshot",
    "is_address",
    "serialize_value",
    "short_address",
]
