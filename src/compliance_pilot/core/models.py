"""SQLAlchemy ORM models for the controls engine.

All models use the `cp_` table prefix. Column types are portable (generic
Uuid and JSON, with JSONB on PostgreSQL) so the same models run against the
asyncpg production database and the aiosqlite test database.

Models:
- Control     — Tenant-owned declarative compliance rule with version tracking
- Dataset     — Tenant-owned ingested dataset; rows live in a physical table
- ControlRun  — One execution of a control against a dataset (audit record)

Dataset rows themselves are NOT mapped here. Each dataset's rows live in a
physical table named by ``physical_table_name(dataset.id)`` which is created
by the ingestion pipeline and read only through the query sandbox.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

PortableJSON = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Declarative base shared by all controls engine models."""


class Control(Base):
    """Declarative compliance control owned by a tenant.

    The control's identity is the pair (tenant_id, id), where ``id`` is the
    stable identifier declared inside ``yaml_config`` (e.g. "SEG-001"). Every
    change to ``yaml_config`` increments ``version``. Runs always re-parse the
    current ``yaml_config`` so edits take effect on the next execution.

    Attributes:
        id: Stable control identifier; equals the definition's ``id`` field.
        tenant_id: Owning tenant UUID.
        title: Human-readable title.
        description: Optional free-text description.
        category: segregation | ucc | margin | networth | reconciliation | dormant.
        dataset: Logical dataset type the control is written against.
        frequency: daily | weekly | monthly | on_demand.
        severity: high | medium | low.
        version: Monotonically increasing definition version.
        yaml_config: Raw definition text.
        is_active: Soft-disable flag. Inactive controls cannot be executed.
        created_by: UUID of the creating user.
    """

    __tablename__ = "cp_controls"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="segregation")
    dataset: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Logical dataset type: orders | trades | ledger | ucc | recon_bank | recon_dp | nbbo",
    )
    frequency: Mapped[str] = mapped_column(String(30), nullable=False, default="on_demand")
    severity: Mapped[str] = mapped_column(String(30), nullable=False, default="medium")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    yaml_config: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class Dataset(Base):
    """An ingested dataset owned by a tenant.

    Read-only from the engine's perspective. Deleting a dataset removes the
    metadata row and its physical table in one transaction, then the backing
    blob (see DatasetService.delete_dataset).

    Attributes:
        id: Dataset UUID. The physical table name is derived from it.
        tenant_id: Owning tenant UUID.
        name: Human-readable name.
        type: orders | trades | ledger | ucc | recon_bank | recon_dp | nbbo.
        schema: Column list as recorded at ingestion time.
        file_path: Blob store path of the uploaded source file.
        file_hash: SHA-256 of the uploaded source file.
        row_count: Rows ingested.
        uploaded_by: UUID of the uploading user.
    """

    __tablename__ = "cp_datasets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    schema: Mapped[dict[str, Any]] = mapped_column(PortableJSON, nullable=False, default=dict)
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    row_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    uploaded_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class ControlRun(Base):
    """One execution of a control against a dataset; the unit of audit truth.

    Lifecycle: pending -> running -> completed | failed. Once terminal, exactly
    one of ``results`` and ``error_message`` is populated and the row is never
    modified again. Re-executing a control creates a new row.

    Attributes:
        id: Run UUID, fresh per execution.
        control_id: Executed control's stable id.
        dataset_id: Dataset the control ran against.
        tenant_id: Owning tenant UUID.
        triggered_by: UUID of the requesting user.
        status: pending | running | completed | failed.
        started_at: When the run record was created.
        completed_at: When the run reached a terminal state.
        results: Structured outcome (passed, counts, evidence_files, summary).
        evidence_hash: Aggregate SHA-256 over evidence file hashes (completed only).
        error_message: "<error_kind>: <message>" (failed only).
    """

    __tablename__ = "cp_control_runs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="ck_cp_control_runs_status",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    control_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    dataset_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    triggered_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="Lifecycle state: pending | running | completed | failed",
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    results: Mapped[dict[str, Any] | None] = mapped_column(PortableJSON, nullable=True)
    evidence_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
