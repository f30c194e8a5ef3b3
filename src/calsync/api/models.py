"""Shared Pydantic response/request models for the calsync HTTP API.

Successful responses follow ``{"data": T, "meta": {...}}``; errors follow
``{"error": {"code": "...", "message": "...", "details": {...}}}``.
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Base response wrappers
# ---------------------------------------------------------------------------


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Generic API response wrapper."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------


class AuthorizationStart(BaseModel):
    authorization_url: str
    state: str


class CalendarSelection(BaseModel):
    """Body of ``PUT /api/integrations/{provider}/calendars``."""

    model_config = ConfigDict(extra="forbid")

    calendar_ids: list[str] = Field(default_factory=list, max_length=100)
