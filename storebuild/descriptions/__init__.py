"""Description file module.

This module handles:
- Schema validation of YAML/JSON description files
- Converting file entries into BuildDescriptions and a Catalog
"""

from storebuild.descriptions.io import load_catalog
from storebuild.descriptions.schema import DescriptionEntrySchema, DescriptionFileSchema

__all__ = ["DescriptionEntrySchema", "DescriptionFileSchema", "load_catalog"]
