"""Pydantic models for the GraphQL response envelope."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

RATE_LIMITED = "RATE_LIMITED"


class GraphQLErrorEntry(BaseModel):
    """One item of a response's ``errors`` array."""

    model_config = ConfigDict(extra="allow")

    message: str = ""
    type: str | None = None
    path: list[str | int] | None = None
    locations: list[dict[str, int]] | None = None
    extensions: dict[str, Any] = Field(default_factory=dict)

    @property
    def kind(self) -> str | None:
        """Error classification, from ``type`` or ``extensions.code``."""
        return self.type or self.extensions.get("code")


class GraphQLResponseBody(BaseModel):
    """The ``{"data": ..., "errors": ...}`` envelope of a GraphQL response."""

    model_config = ConfigDict(extra="allow")

    data: dict[str, Any] | None = None
    errors: list[GraphQLErrorEntry] | None = None
