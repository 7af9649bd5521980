"""Core business logic services for the controls engine.

Two service classes:
- ControlService: Control definition validation, CRUD, execution and run history
- DatasetService: Atomic dataset deletion

Services accept injected repositories and adapters through their
constructors, contain no framework code, and return API response schemas.
"""

import uuid
from typing import Any

from compliance_pilot.api.schemas import (
    ControlResponse,
    ControlRunResponse,
    ControlValidateResponse,
    DatasetDeleteResponse,
)
from compliance_pilot.auth import TenantContext
from compliance_pilot.controls_engine.definition import (
    ControlDefinition,
    validate_control_definition,
)
from compliance_pilot.controls_engine.engine import ControlsEngine
from compliance_pilot.core.interfaces import (
    IBlobStore,
    IControlRepository,
    IControlRunRepository,
    IDatasetRepository,
)
from compliance_pilot.core.models import Control, ControlRun
from compliance_pilot.errors import (
    ControlAlreadyExists,
    ControlNotFound,
    DatasetNotFound,
    InvalidDefinition,
    RunNotFound,
)
from compliance_pilot.observability import get_logger

logger = get_logger(__name__)


class ControlService:
    """Control lifecycle and execution.

    Args:
        control_repo: Repository for Control persistence.
        run_repo: Repository for ControlRun records.
        engine: Controls engine used for execution.
        strict_pass_condition: Reject pass conditions outside the grammar.
    """

    def __init__(
        self,
        control_repo: IControlRepository,
        run_repo: IControlRunRepository,
        engine: ControlsEngine,
        strict_pass_condition: bool = False,
    ) -> None:
        self._control_repo = control_repo
        self._run_repo = run_repo
        self._engine = engine
        self._strict_pass_condition = strict_pass_condition

    def validate_definition(self, yaml_config: str) -> ControlValidateResponse:
        """Validate definition text and report the outcome without raising.

        Args:
            yaml_config: Raw YAML definition text.

        Returns:
            ControlValidateResponse with ``valid`` set accordingly.
        """
        try:
            definition = self._validate(yaml_config)
        except InvalidDefinition as exc:
            return ControlValidateResponse(valid=False, error=exc.message, field=exc.field)

        return ControlValidateResponse(
            valid=True,
            id=definition.id,
            title=definition.title,
            dataset=definition.dataset,
            pass_condition=definition.pass_condition,
            pass_condition_supported=definition.condition is not None,
            export_names=[export.name for export in definition.exports],
        )

    async def create_control(
        self,
        tenant: TenantContext,
        yaml_config: str,
        description: str = "",
        category: str = "segregation",
    ) -> ControlResponse:
        """Create a control from validated definition text.

        The control's id, title, dataset, frequency and severity are taken
        from the definition.

        Raises:
            InvalidDefinition: If the definition is invalid.
            ControlAlreadyExists: If the tenant already has a control with this id.
        """
        definition = self._validate(yaml_config)

        existing = await self._control_repo.get_by_id(definition.id, tenant.tenant_id)
        if existing is not None:
            raise ControlAlreadyExists(definition.id)

        control = await self._control_repo.create(
            tenant_id=tenant.tenant_id,
            control_id=definition.id,
            title=definition.title,
            dataset=definition.dataset,
            yaml_config=yaml_config,
            created_by=tenant.user_id,
            description=description,
            category=category,
            frequency=definition.frequency or "on_demand",
            severity=definition.severity or "medium",
        )
        logger.info(
            "Control created",
            control_id=control.id,
            tenant_id=str(tenant.tenant_id),
            exports=len(definition.exports),
        )
        return _control_to_response(control)

    async def update_control(
        self,
        control_id: str,
        tenant: TenantContext,
        yaml_config: str | None = None,
        description: str | None = None,
        category: str | None = None,
        is_active: bool | None = None,
    ) -> ControlResponse:
        """Update a control; a new definition is validated and bumps the version.

        Raises:
            ControlNotFound: If the control does not exist for this tenant.
            InvalidDefinition: If the new definition is invalid or its id differs.
        """
        changes: dict[str, Any] = {
            "description": description,
            "category": category,
            "is_active": is_active,
        }
        if yaml_config is not None:
            definition = self._validate(yaml_config)
            if definition.id != control_id:
                raise InvalidDefinition(
                    f"definition id '{definition.id}' does not match control id '{control_id}'",
                    field="id",
                )
            changes.update(
                yaml_config=yaml_config,
                title=definition.title,
                dataset=definition.dataset,
                frequency=definition.frequency or None,
                severity=definition.severity or None,
            )

        control = await self._control_repo.update(control_id, tenant.tenant_id, changes)
        return _control_to_response(control)

    async def get_control(self, control_id: str, tenant: TenantContext) -> ControlResponse:
        control = await self._control_repo.get_by_id(control_id, tenant.tenant_id)
        if control is None:
            raise ControlNotFound(control_id)
        return _control_to_response(control)

    async def list_controls(
        self,
        tenant: TenantContext,
        active_only: bool = True,
        category: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> list[ControlResponse]:
        controls = await self._control_repo.list_all(
            tenant.tenant_id,
            active_only=active_only,
            category=category,
            page=page,
            page_size=page_size,
        )
        return [_control_to_response(c) for c in controls]

    async def execute_control(
        self,
        control_id: str,
        dataset_id: uuid.UUID,
        tenant: TenantContext,
    ) -> ControlRunResponse:
        """Execute a control and return the terminal run.

        A failed run is a normal result here, not an exception.

        Raises:
            ControlNotFound: If the control does not exist for this tenant.
            ControlInactive: If the control is disabled.
            InvalidDefinition: If the persisted definition is invalid.
        """
        run = await self._engine.execute_control(control_id, dataset_id, tenant)
        return _run_to_response(run)

    async def list_runs(
        self,
        control_id: str,
        tenant: TenantContext,
        page: int = 1,
        page_size: int = 20,
    ) -> list[ControlRunResponse]:
        """List a control's runs, newest first.

        Raises:
            ControlNotFound: If the control does not exist for this tenant.
        """
        if await self._control_repo.get_by_id(control_id, tenant.tenant_id) is None:
            raise ControlNotFound(control_id)
        runs = await self._run_repo.list_for_control(
            control_id, tenant.tenant_id, page=page, page_size=page_size
        )
        return [_run_to_response(r) for r in runs]

    async def get_run(self, run_id: uuid.UUID, tenant: TenantContext) -> ControlRunResponse:
        run = await self._run_repo.get_by_id(run_id, tenant.tenant_id)
        if run is None:
            raise RunNotFound(str(run_id))
        return _run_to_response(run)

    def _validate(self, yaml_config: str) -> ControlDefinition:
        return validate_control_definition(
            yaml_config, strict_pass_condition=self._strict_pass_condition
        )


class DatasetService:
    """Dataset deletion.

    Args:
        dataset_repo: Repository for Dataset metadata.
        blob_store: Store holding the dataset's uploaded source file.
    """

    def __init__(self, dataset_repo: IDatasetRepository, blob_store: IBlobStore) -> None:
        self._dataset_repo = dataset_repo
        self._blob_store = blob_store

    async def delete_dataset(
        self,
        dataset_id: uuid.UUID,
        tenant: TenantContext,
    ) -> DatasetDeleteResponse:
        """Delete a dataset's row and table, then its source blob.

        A blob that cannot be removed is left as an orphan and logged with
        its path; the deletion itself still succeeds.

        Raises:
            DatasetNotFound: If the dataset does not exist for this tenant.
        """
        dataset = await self._dataset_repo.delete(dataset_id, tenant.tenant_id)
        if dataset is None:
            raise DatasetNotFound(str(dataset_id))

        blob_removed = True
        try:
            await self._blob_store.delete(dataset.file_path)
        except Exception as exc:  # noqa: BLE001
            blob_removed = False
            logger.error(
                "Dataset blob orphaned after deletion",
                dataset_id=str(dataset_id),
                tenant_id=str(tenant.tenant_id),
                file_path=dataset.file_path,
                error=f"{type(exc).__name__}: {exc}",
            )

        logger.info(
            "Dataset deleted",
            dataset_id=str(dataset_id),
            tenant_id=str(tenant.tenant_id),
            blob_removed=blob_removed,
        )
        return DatasetDeleteResponse(id=dataset_id, blob_removed=blob_removed)


# ---------------------------------------------------------------------------
# ORM → response conversion helpers
# ---------------------------------------------------------------------------


def _control_to_response(control: Control) -> ControlResponse:
    return ControlResponse(
        id=control.id,
        tenant_id=control.tenant_id,
        title=control.title,
        description=control.description,
        category=control.category,
        dataset=control.dataset,
        frequency=control.frequency,
        severity=control.severity,
        version=control.version,
        yaml_config=control.yaml_config,
        is_active=control.is_active,
        created_by=control.created_by,
        created_at=control.created_at,
        updated_at=control.updated_at,
    )


def _run_to_response(run: ControlRun) -> ControlRunResponse:
    return ControlRunResponse(
        id=run.id,
        control_id=run.control_id,
        dataset_id=run.dataset_id,
        tenant_id=run.tenant_id,
        triggered_by=run.triggered_by,
        status=run.status,
        started_at=run.started_at,
        completed_at=run.completed_at,
        results=run.results,
        evidence_hash=run.evidence_hash,
        error_message=run.error_message,
    )
