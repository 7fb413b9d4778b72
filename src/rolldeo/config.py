"""
Configuration model for the table engine.
"""

import os
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class EngineConfig(BaseModel):
    """Settings controlling resolution limits, tracing and display.

    Document metadata may lower or raise the recursion and inheritance
    limits for a single collection; everything else is engine-wide.
    """

    # Resolution limits
    max_recursion_depth: int = Field(
        default=20,
        ge=1,
        le=200,
        description="Maximum nesting of {{...}} expansions before aborting"
    )
    max_inheritance_depth: int = Field(
        default=5,
        ge=0,
        le=50,
        description="Maximum number of `extends` hops followed"
    )
    max_exploding_dice: int = Field(
        default=100,
        ge=1,
        description="Cap on extra dice produced by exploding rolls"
    )
    unique_overflow: Literal["stop", "error"] = Field(
        default="stop",
        description="What a unique multi-roll does once every entry has been used"
    )
    separator: str = Field(
        default=", ",
        description="Joiner for multi-roll results"
    )

    # Debugging and display
    trace_enabled: bool = Field(
        default=False,
        description="Record a trace tree for every roll"
    )
    seed: int | None = Field(
        default=None,
        description="Seed for the engine's random source (tests and debugging only)"
    )
    max_entries_display: int = Field(
        default=20,
        ge=1,
        description="Entries shown per table in visualizations (not a resolution parameter)"
    )

    @field_validator("separator")
    @classmethod
    def validate_separator(cls, v: str) -> str:
        """Reject separators containing expression braces."""
        if "{{" in v or "}}" in v:
            raise ValueError("separator must not contain '{{' or '}}'")
        return v

    @classmethod
    def from_env(cls, prefix: str = "ROLLDEO_") -> "EngineConfig":
        """Build a config from environment variables.

        Recognised variables (with the default prefix): ROLLDEO_TRACE,
        ROLLDEO_SEED, ROLLDEO_MAX_RECURSION_DEPTH, ROLLDEO_MAX_INHERITANCE_DEPTH.
        Unset variables keep their defaults.
        """
        values: dict[str, object] = {}
        trace = os.getenv(f"{prefix}TRACE")
        if trace is not None:
            values["trace_enabled"] = trace.strip().lower() in ("1", "true", "yes", "on")
        seed = os.getenv(f"{prefix}SEED")
        if seed:
            values["seed"] = int(seed)
        recursion = os.getenv(f"{prefix}MAX_RECURSION_DEPTH")
        if recursion:
            values["max_recursion_depth"] = int(recursion)
        inheritance = os.getenv(f"{prefix}MAX_INHERITANCE_DEPTH")
        if inheritance:
            values["max_inheritance_depth"] = int(inheritance)
        return cls(**values)
