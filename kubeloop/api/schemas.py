"""Pydantic request/response models for the kubeloop REST API.

All models use Pydantic v2 syntax. Response fields that mirror manifest
keys are serialised under their camelCase alias.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RollbackRequest(BaseModel):
    """Request body for ``POST /api/v1/deployments/{namespace}/{name}/rollback``."""

    revision: int | None = Field(
        default=None,
        description="Revision to roll back to. Omit for the revision before the current one.",
        examples=[2],
    )

    @field_validator("revision")
    @classmethod
    def validate_revision(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError(f"revision must be a positive integer, got: {value}")
        return value


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SubmitResponse(BaseModel):
    """Response body for ``POST /api/v1/objects``."""

    model_config = ConfigDict(populate_by_name=True)

    resource_version: int = Field(..., alias="resourceVersion")


class ObjectListResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: str
    items: list[dict[str, Any]] = Field(default_factory=list)
    resource_version: int = Field(0, alias="resourceVersion")


class HealthStatus(BaseModel):
    """Response body for ``GET /api/v1/health``."""

    status: str = Field(..., description="'ok' when the process is up.")
    version: str
    controllers_running: bool = False
    objects: dict[str, int] = Field(default_factory=dict, description="Stored object count per kind.")


class ErrorResponse(BaseModel):
    """Standard error envelope returned on 4xx/5xx responses."""

    error: str = Field(..., description="Machine-readable error code.")
    detail: str = Field(..., description="Human-readable description.")
