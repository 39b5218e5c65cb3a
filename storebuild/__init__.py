"""storebuild - a content-addressed build orchestrator.

This package resolves immutable build descriptions into a dependency graph,
addresses every node by the hash of its inputs, and runs builder executables
for the nodes that are not already present in the content store.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
