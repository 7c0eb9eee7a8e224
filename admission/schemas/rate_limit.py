"""Pydantic schemas for rate limit rules."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class KeyStrategy(str, Enum):
    """How a request is mapped onto a rate limit partition."""

    ORIGIN = "origin"
    PRINCIPAL = "principal"
    PRINCIPAL_OR_ORIGIN = "principalOrOrigin"


class RateLimitRule(BaseModel):
    """Immutable limit applied to one protected operation.

    Accepts both the camelCase configuration names (``windowMs``, ``keyBy``)
    and the Python field names.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(
        ...,
        min_length=1,
        pattern=r"^[^:\s]+$",
        description="Rule name; isolates this limit from every other rule.",
    )
    window_ms: int = Field(
        ...,
        alias="windowMs",
        gt=0,
        description="Sliding window length in milliseconds.",
    )
    max: int = Field(
        ...,
        gt=0,
        description="Maximum admitted requests per window.",
    )
    key_by: KeyStrategy = Field(
        KeyStrategy.ORIGIN,
        alias="keyBy",
        description="Partitioning strategy: origin, principal or principalOrOrigin.",
    )

