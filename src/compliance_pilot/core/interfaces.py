"""Abstract interfaces (Protocol classes) for the controls engine.

Defines the contracts between the engine/service layer and the adapter
layer using typing.Protocol. The engine depends on these protocols, never on
concrete adapters, so tests can substitute stores freely.

Protocols defined:
- IControlRepository
- IDatasetRepository
- IControlRunRepository
- IBlobStore
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from compliance_pilot.core.models import Control, ControlRun, Dataset


class IControlRepository(Protocol):
    """Repository contract for Control persistence."""

    async def get_by_id(self, control_id: str, tenant_id: uuid.UUID) -> Control | None:
        """Retrieve a control by id, scoped to the tenant.

        Args:
            control_id: Stable control identifier.
            tenant_id: Owning tenant UUID.

        Returns:
            The Control, or None if no row exists for this id and tenant.
        """
        ...

    async def list_all(
        self,
        tenant_id: uuid.UUID,
        active_only: bool = True,
        category: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> list[Control]:
        """List a tenant's controls, newest first."""
        ...

    async def create(
        self,
        tenant_id: uuid.UUID,
        control_id: str,
        title: str,
        dataset: str,
        yaml_config: str,
        created_by: uuid.UUID,
        description: str = "",
        category: str = "segregation",
        frequency: str = "on_demand",
        severity: str = "medium",
    ) -> Control:
        """Create a control at version 1."""
        ...

    async def update(
        self,
        control_id: str,
        tenant_id: uuid.UUID,
        changes: dict[str, Any],
    ) -> Control:
        """Apply field changes; bumps ``version`` when ``yaml_config`` changes.

        Raises:
            ControlNotFound: If the control does not exist for this tenant.
        """
        ...


class IDatasetRepository(Protocol):
    """Repository contract for Dataset metadata."""

    async def get_by_id(self, dataset_id: uuid.UUID, tenant_id: uuid.UUID) -> Dataset | None:
        """Retrieve a dataset by id, scoped to the tenant.

        Returns:
            The Dataset, or None if no row exists for this id and tenant.
        """
        ...

    async def delete(self, dataset_id: uuid.UUID, tenant_id: uuid.UUID) -> Dataset | None:
        """Delete the metadata row and physical table in one transaction.

        Returns:
            The deleted Dataset, or None if it did not exist.
        """
        ...


class IControlRunRepository(Protocol):
    """Repository contract for ControlRun records.

    Every method is a single committed statement so each state transition is
    durable on its own. Transitions are guarded on the expected current
    status, so a terminal run can never be updated again.
    """

    async def create(
        self,
        run_id: uuid.UUID,
        control_id: str,
        dataset_id: uuid.UUID,
        tenant_id: uuid.UUID,
        triggered_by: uuid.UUID,
        started_at: datetime,
    ) -> ControlRun:
        """Insert a new run in ``pending`` status."""
        ...

    async def transition(
        self,
        run_id: uuid.UUID,
        expected_status: str,
        new_status: str,
        values: dict[str, Any] | None = None,
    ) -> ControlRun:
        """Move a run from ``expected_status`` to ``new_status``.

        Raises:
            InvalidRunTransition: If the run is not currently in ``expected_status``.
        """
        ...

    async def get_by_id(self, run_id: uuid.UUID, tenant_id: uuid.UUID) -> ControlRun | None:
        """Retrieve a run by id, scoped to the tenant."""
        ...

    async def list_for_control(
        self,
        control_id: str,
        tenant_id: uuid.UUID,
        page: int = 1,
        page_size: int = 20,
    ) -> list[ControlRun]:
        """List runs of a control, newest first."""
        ...


@dataclass(frozen=True)
class StoredBlob:
    """Result of a blob store write.

    Attributes:
        path: Object path within the bucket.
        content_hash: SHA-256 hex digest of the bytes stored at ``path``.
        size: Stored size in bytes.
    """

    path: str
    content_hash: str
    size: int


class IBlobStore(Protocol):
    """Content-addressed blob storage for evidence files and dataset uploads."""

    async def put(
        self,
        data: bytes,
        name: str,
        tenant_id: uuid.UUID,
        category: str,
        content_type: str = "application/octet-stream",
    ) -> StoredBlob:
        """Store bytes under a tenant- and category-scoped path.

        The returned content_hash must be recomputable from the stored bytes
        by any reader.
        """
        ...

    async def get(self, path: str) -> bytes:
        """Return the bytes stored at ``path``."""
        ...

    async def delete(self, path: str) -> None:
        """Remove the object at ``path``."""
        ...
