"""SQLAlchemy repositories for the controls engine metadata store.

Each repository implements the corresponding protocol from core/interfaces.py.

Repositories:
- ControlRepository     — Control CRUD with definition version tracking
- DatasetRepository     — Dataset lookup and atomic deletion
- ControlRunRepository  — Append-only run records with guarded transitions

ControlRepository and DatasetRepository work on a request-scoped session
committed by get_db_session(). ControlRunRepository owns its sessions: every
call is a single statement in its own committed transaction, so each
lifecycle state is durable the moment it is reached.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from compliance_pilot.controls_engine.binding import physical_table_name
from compliance_pilot.core.models import Control, ControlRun, Dataset
from compliance_pilot.errors import (
    ControlAlreadyExists,
    ControlNotFound,
    InvalidRunTransition,
    RunNotFound,
)
from compliance_pilot.observability import get_logger

logger = get_logger(__name__)

_UPDATABLE_CONTROL_FIELDS = frozenset(
    {
        "title",
        "description",
        "category",
        "dataset",
        "frequency",
        "severity",
        "yaml_config",
        "is_active",
    }
)


class ControlRepository:
    """Repository for Control persistence.

    Args:
        session: The request-scoped async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, control_id: str, tenant_id: uuid.UUID) -> Control | None:
        stmt = select(Control).where(
            Control.id == control_id,
            Control.tenant_id == tenant_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(
        self,
        tenant_id: uuid.UUID,
        active_only: bool = True,
        category: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> list[Control]:
        """List controls for a tenant.

        Args:
            tenant_id: Owning tenant.
            active_only: Exclude soft-disabled controls.
            category: Optional category filter.
            page: Page number (1-based).
            page_size: Records per page.

        Returns:
            Controls ordered newest first.
        """
        stmt = select(Control).where(Control.tenant_id == tenant_id)
        if active_only:
            stmt = stmt.where(Control.is_active.is_(True))
        if category:
            stmt = stmt.where(Control.category == category)
        stmt = stmt.order_by(Control.created_at.desc(), Control.id)
        stmt = stmt.offset((page - 1) * page_size).limit(page_size)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

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
        """Create and persist a control at version 1.

        Returns:
            The persisted Control.

        Raises:
            ControlAlreadyExists: If the tenant already has a control with
                this id, including one inserted by a concurrent request.
        """
        control = Control(
            id=control_id,
            tenant_id=tenant_id,
            title=title,
            description=description,
            category=category,
            dataset=dataset,
            frequency=frequency,
            severity=severity,
            yaml_config=yaml_config,
            version=1,
            is_active=True,
            created_by=created_by,
        )
        self._session.add(control)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            await self._session.rollback()
            logger.info(
                "Control insert rejected as duplicate",
                control_id=control_id,
                tenant_id=str(tenant_id),
            )
            raise ControlAlreadyExists(control_id) from exc
        await self._session.refresh(control)
        logger.info(
            "Control created in DB",
            control_id=control_id,
            tenant_id=str(tenant_id),
        )
        return control

    async def update(
        self,
        control_id: str,
        tenant_id: uuid.UUID,
        changes: dict[str, Any],
    ) -> Control:
        """Apply field changes to a control.

        ``version`` is incremented whenever ``yaml_config`` is part of the
        changes and differs from the stored text. Unknown keys are ignored.

        Raises:
            ControlNotFound: If the control does not exist for this tenant.
        """
        control = await self.get_by_id(control_id, tenant_id)
        if control is None:
            raise ControlNotFound(control_id)

        new_config = changes.get("yaml_config")
        if new_config is not None and new_config != control.yaml_config:
            control.version += 1

        for key, value in changes.items():
            if key in _UPDATABLE_CONTROL_FIELDS and value is not None:
                setattr(control, key, value)

        await self._session.flush()
        await self._session.refresh(control)
        logger.info(
            "Control updated in DB",
            control_id=control_id,
            tenant_id=str(tenant_id),
            version=control.version,
        )
        return control


class DatasetRepository:
    """Repository for Dataset metadata.

    Dataset rows are created by the ingestion pipeline; this repository only
    reads and deletes them.

    Args:
        session: The request-scoped async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, dataset_id: uuid.UUID, tenant_id: uuid.UUID) -> Dataset | None:
        stmt = select(Dataset).where(
            Dataset.id == dataset_id,
            Dataset.tenant_id == tenant_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def delete(self, dataset_id: uuid.UUID, tenant_id: uuid.UUID) -> Dataset | None:
        """Delete the metadata row and drop the physical table.

        Both statements run in the session's transaction, which is committed
        here so the blob can be removed afterwards without risking a
        metadata row that points at a missing blob.

        Returns:
            The deleted Dataset, or None if it did not exist for this tenant.
        """
        dataset = await self.get_by_id(dataset_id, tenant_id)
        if dataset is None:
            return None

        table_name = physical_table_name(dataset.id)
        await self._session.execute(
            delete(Dataset).where(
                Dataset.id == dataset_id,
                Dataset.tenant_id == tenant_id,
            )
        )
        await self._session.execute(text(f'DROP TABLE IF EXISTS "{table_name}"'))
        await self._session.commit()

        logger.info(
            "Dataset row and table deleted",
            dataset_id=str(dataset_id),
            tenant_id=str(tenant_id),
            table_name=table_name,
        )
        return dataset


class ControlRunRepository:
    """Append-only repository for ControlRun records.

    There is no delete method and no unguarded update: a run only changes
    through ``transition``, whose UPDATE matches on the expected current
    status. Once a run is terminal no transition can match it.

    Args:
        session_factory: Factory for short-lived sessions, one per call.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(
        self,
        run_id: uuid.UUID,
        control_id: str,
        dataset_id: uuid.UUID,
        tenant_id: uuid.UUID,
        triggered_by: uuid.UUID,
        started_at: datetime,
    ) -> ControlRun:
        """Insert a new run in ``pending`` status and commit it."""
        run = ControlRun(
            id=run_id,
            control_id=control_id,
            dataset_id=dataset_id,
            tenant_id=tenant_id,
            triggered_by=triggered_by,
            status="pending",
            started_at=started_at,
        )
        async with self._session_factory() as session, session.begin():
            session.add(run)
        return run

    async def transition(
        self,
        run_id: uuid.UUID,
        expected_status: str,
        new_status: str,
        values: dict[str, Any] | None = None,
    ) -> ControlRun:
        """Move a run from ``expected_status`` to ``new_status`` atomically.

        Args:
            run_id: The run UUID.
            expected_status: Status the run must currently have.
            new_status: Target status.
            values: Extra columns written in the same statement.

        Returns:
            The updated ControlRun.

        Raises:
            InvalidRunTransition: If the run is not in ``expected_status``.
            RunNotFound: If the run does not exist.
        """
        stmt = (
            update(ControlRun)
            .where(
                ControlRun.id == run_id,
                ControlRun.status == expected_status,
            )
            .values(status=new_status, **(values or {}))
            .returning(ControlRun)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            run = result.scalar_one_or_none()
            if run is None:
                current = await session.scalar(
                    select(ControlRun.status).where(ControlRun.id == run_id)
                )
                if current is None:
                    raise RunNotFound(str(run_id))
                raise InvalidRunTransition(current, new_status)
        return run

    async def get_by_id(self, run_id: uuid.UUID, tenant_id: uuid.UUID) -> ControlRun | None:
        stmt = select(ControlRun).where(
            ControlRun.id == run_id,
            ControlRun.tenant_id == tenant_id,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_for_control(
        self,
        control_id: str,
        tenant_id: uuid.UUID,
        page: int = 1,
        page_size: int = 20,
    ) -> list[ControlRun]:
        """List a control's runs for a tenant, newest first."""
        stmt = (
            select(ControlRun)
            .where(
                ControlRun.control_id == control_id,
                ControlRun.tenant_id == tenant_id,
            )
            .order_by(ControlRun.started_at.desc(), ControlRun.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
