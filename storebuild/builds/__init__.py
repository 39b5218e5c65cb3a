"""Build orchestration module.

This module handles:
- Build descriptions and content address computation
- The content store
- Dependency graph resolution
- Environment materialization and builder execution
- Scheduling and build records
"""

from storebuild.builds.description import BuildDescription, Catalog
from storebuild.builds.store import ContentStore, StoreEntry

__all__ = ["BuildDescription", "Catalog", "ContentStore", "StoreEntry"]

# Access submodules via storebuild.builds.graph, storebuild.builds.scheduler, etc.
