"""Pydantic models for description file validation.

A description file holds a set of named build descriptions and, optionally,
the name of the one to build by default::

    root: app
    descriptions:
      main.c:
        source: ./main.c
      app:
        builder: /usr/bin/gcc
        args: ["-o", "$out/app", "$src"]
        inputs: {src: main.c}
        outputs: [app]
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from storebuild.builds.description import BINDING_PATTERN, NAME_PATTERN, RESERVED_BINDINGS


class DescriptionEntrySchema(BaseModel):
    """Schema for one description in a file.

    Exactly one of ``builder`` and ``source`` must be given.

    Attributes:
        builder: Builder executable; an absolute path or ``$binding/path``.
        source: Local file or directory to import (relative to the file).
        system: Target platform; defaults to the configured system.
        args: Builder arguments.
        env: Environment bindings.
        inputs: Mapping of binding name to description name.
        outputs: Paths under ``$out`` that must exist after the build.
        script: Inline builder script, reachable as ``$script``.
    """

    model_config = ConfigDict(extra="forbid")

    builder: str | None = Field(default=None, description="Builder executable")
    source: str | None = Field(default=None, description="Local source to import")
    system: str | None = Field(default=None, description="Target platform")
    args: list[str] = Field(default_factory=list, description="Builder arguments")
    env: dict[str, str] = Field(default_factory=dict, description="Environment")
    inputs: dict[str, str] = Field(
        default_factory=dict, description="Binding name -> description name"
    )
    outputs: list[str] = Field(default_factory=list, description="Declared outputs")
    script: str | None = Field(default=None, description="Inline builder script")

    @field_validator("inputs")
    @classmethod
    def validate_inputs(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate binding names."""
        for binding in v:
            if not BINDING_PATTERN.match(binding):
                raise ValueError(f"invalid input binding '{binding}'")
            if binding in RESERVED_BINDINGS:
                raise ValueError(f"input binding '{binding}' is reserved")
        return v

    @model_validator(mode="after")
    def validate_kind(self) -> "DescriptionEntrySchema":
        """Validate that the entry is either a build or a source import."""
        if (self.builder is None) == (self.source is None):
            raise ValueError("exactly one of 'builder' or 'source' is required")
        if self.source is not None and (
            self.args or self.env or self.inputs or self.outputs or self.script
        ):
            raise ValueError("a source import takes only 'source' and 'system'")
        return self


class DescriptionFileSchema(BaseModel):
    """Schema for a complete description file.

    Attributes:
        root: Name of the description built by default.
        descriptions: Named description entries.
    """

    model_config = ConfigDict(extra="forbid")

    root: str | None = Field(default=None, description="Default description to build")
    descriptions: dict[str, DescriptionEntrySchema] = Field(
        description="Named description entries"
    )

    @field_validator("descriptions")
    @classmethod
    def validate_names(
        cls, v: dict[str, DescriptionEntrySchema]
    ) -> dict[str, DescriptionEntrySchema]:
        """Validate that the file is not empty and names are well formed."""
        if not v:
            raise ValueError("at least one description is required")
        for name in v:
            if not NAME_PATTERN.match(name):
                raise ValueError(f"invalid description name '{name}'")
        return v

    @model_validator(mode="after")
    def validate_root(self) -> "DescriptionFileSchema":
        """Validate that the root names a description in the file."""
        if self.root is not None and self.root not in self.descriptions:
            raise ValueError(f"root '{self.root}' is not defined in descriptions")
        return self


__all__ = ["DescriptionEntrySchema", "DescriptionFileSchema"]
