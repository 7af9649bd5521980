"""Pydantic request and response schemas for the controls engine API.

Schemas are grouped by resource type.

Resources:
- Control — definition validation and control CRUD
- ControlRun — execution and run history
- Dataset — deletion
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Control schemas
# ---------------------------------------------------------------------------


class ControlValidateRequest(BaseModel):
    """Request body for validating control definition text."""

    yaml_config: str = Field(description="Raw YAML control definition")


class ControlValidateResponse(BaseModel):
    """Validation outcome for a control definition.

    When ``valid`` is false, ``error`` and (when applicable) ``field`` describe
    the first problem found; the remaining fields are empty.
    """

    valid: bool = Field(description="Whether the definition parses and validates")
    error: str | None = Field(default=None, description="Validation error message")
    field: str | None = Field(default=None, description="Dotted path of the offending field")
    id: str | None = Field(default=None, description="Definition id")
    title: str | None = Field(default=None, description="Definition title")
    dataset: str | None = Field(default=None, description="Logical dataset reference")
    pass_condition: str | None = Field(default=None, description="Pass condition as authored")
    pass_condition_supported: bool | None = Field(
        default=None,
        description="False when the pass condition is outside the supported grammar "
        "and would always evaluate to failed",
    )
    export_names: list[str] = Field(
        default_factory=list,
        description="Declared evidence export names, in order",
    )


class ControlCreateRequest(BaseModel):
    """Request body for creating a control. Identity and title come from the definition."""

    yaml_config: str = Field(description="Raw YAML control definition")
    description: str = Field(default="", description="Free-text description")
    category: str = Field(
        default="segregation",
        description="segregation | ucc | margin | networth | reconciliation | dormant",
        max_length=50,
    )


class ControlUpdateRequest(BaseModel):
    """Request body for updating a control. Omitted fields are unchanged."""

    yaml_config: str | None = Field(
        default=None,
        description="New definition text. Its id must equal the control id. Bumps version.",
    )
    description: str | None = Field(default=None, description="Free-text description")
    category: str | None = Field(default=None, description="Control category", max_length=50)
    is_active: bool | None = Field(default=None, description="Soft-disable flag")


class ControlResponse(BaseModel):
    """Response schema for a control."""

    id: str = Field(description="Stable control identifier")
    tenant_id: uuid.UUID = Field(description="Owning tenant UUID")
    title: str = Field(description="Control title")
    description: str = Field(description="Control description")
    category: str = Field(description="Control category")
    dataset: str = Field(description="Logical dataset type")
    frequency: str = Field(description="daily | weekly | monthly | on_demand")
    severity: str = Field(description="high | medium | low")
    version: int = Field(description="Definition version, incremented on every yaml_config change")
    yaml_config: str = Field(description="Current definition text")
    is_active: bool = Field(description="Whether the control can be executed")
    created_by: uuid.UUID = Field(description="Creating user UUID")
    created_at: datetime = Field(description="Creation timestamp (UTC)")
    updated_at: datetime = Field(description="Last update timestamp (UTC)")


# ---------------------------------------------------------------------------
# ControlRun schemas
# ---------------------------------------------------------------------------


class ControlExecuteRequest(BaseModel):
    """Request body for executing a control."""

    dataset_id: uuid.UUID = Field(description="Dataset to execute the control against")


class EvidenceFileResponse(BaseModel):
    """One persisted evidence artifact."""

    name: str = Field(description="Export name from the definition")
    path: str = Field(description="Blob store path")
    hash: str = Field(description="SHA-256 of the stored bytes")
    row_count: int = Field(description="Rows in the export")
    description: str = Field(description="Human-readable description")


class ControlRunResults(BaseModel):
    """Structured outcome of a completed run."""

    passed: bool = Field(description="Pass condition verdict")
    result_count: int = Field(description="Rows returned by the control logic")
    evidence_count: int = Field(description="Evidence files produced")
    execution_time_ms: int = Field(description="Wall-clock execution time")
    evidence_files: list[EvidenceFileResponse] = Field(description="Evidence files, in declaration order")
    summary: str = Field(description="Human-readable summary")
    declared_export_count: int = Field(default=0, description="Evidence exports declared")
    failed_exports: list[str] = Field(default_factory=list, description="Names of exports that failed")


class ControlRunResponse(BaseModel):
    """Response schema for a control run."""

    id: uuid.UUID = Field(description="Run UUID")
    control_id: str = Field(description="Executed control id")
    dataset_id: uuid.UUID = Field(description="Dataset the control ran against")
    tenant_id: uuid.UUID = Field(description="Owning tenant UUID")
    triggered_by: uuid.UUID = Field(description="Requesting user UUID")
    status: str = Field(description="pending | running | completed | failed")
    started_at: datetime = Field(description="Run start (UTC)")
    completed_at: datetime | None = Field(description="Terminal transition time (UTC)")
    results: ControlRunResults | None = Field(description="Outcome; set only when completed")
    evidence_hash: str | None = Field(description="Aggregate evidence hash; set only when completed")
    error_message: str | None = Field(description="'<kind>: <message>'; set only when failed")


# ---------------------------------------------------------------------------
# Dataset schemas
# ---------------------------------------------------------------------------


class DatasetDeleteResponse(BaseModel):
    """Outcome of a dataset deletion."""

    id: uuid.UUID = Field(description="Deleted dataset UUID")
    blob_removed: bool = Field(
        description="False when the metadata row and table were deleted but the source "
        "blob could not be removed (left as a logged orphan)",
    )
