"""Pydantic response schemas for the state API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Error envelope returned by every non-2xx response."""

    error: str
    detail: str = ""


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    stack: str = ""
    resources: int = 0


class ResourceSummary(BaseModel):
    name: str
    kind: str
    dependencies: list[str] = Field(default_factory=list)
    updated_at: str = ""


class ResourceDetail(ResourceSummary):
    descriptor_hash: str
    properties: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)


class ResourceListResponse(BaseModel):
    stack: str = ""
    resources: list[ResourceSummary] = Field(default_factory=list)


class OutputsResponse(BaseModel):
    stack: str = ""
    outputs: dict[str, Any] = Field(default_factory=dict)
