"""API router for compliance-pilot.

All controls engine endpoints are registered here and included in main.py
under the /api/v1 prefix. Routes only parse input and delegate; business
logic lives in the service layer.

Endpoints:
- POST        /controls/validate          — Validate definition text
- POST/GET    /controls                   — Create / list controls
- GET/PUT     /controls/{id}              — Get / update a control
- POST        /controls/{id}/execute      — Execute a control against a dataset
- GET         /controls/{id}/runs         — Run history for a control
- GET         /runs/{run_id}              — Get a run by ID
- DELETE      /datasets/{id}              — Delete a dataset (row, table, blob)

Roles admin and compliance_officer may create, update and execute controls
and delete datasets. Every authenticated role may read.
"""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_pilot.adapters.database import get_db_session, get_engine, get_session_factory
from compliance_pilot.adapters.repositories import (
    ControlRepository,
    ControlRunRepository,
    DatasetRepository,
)
from compliance_pilot.api.schemas import (
    ControlCreateRequest,
    ControlExecuteRequest,
    ControlResponse,
    ControlRunResponse,
    ControlUpdateRequest,
    ControlValidateRequest,
    ControlValidateResponse,
    DatasetDeleteResponse,
)
from compliance_pilot.auth import TenantContext, get_current_user, require_control_author
from compliance_pilot.controls_engine.binding import DatasetBindingResolver
from compliance_pilot.controls_engine.engine import ControlsEngine
from compliance_pilot.controls_engine.evidence import EvidenceGenerator
from compliance_pilot.controls_engine.sandbox import QuerySandbox
from compliance_pilot.core.interfaces import IBlobStore
from compliance_pilot.core.services import ControlService, DatasetService
from compliance_pilot.observability import get_logger
from compliance_pilot.settings import Settings, get_settings

logger = get_logger(__name__)

router = APIRouter(tags=["controls"])


# ---------------------------------------------------------------------------
# Dependency factories: wire repositories, engine, and clients together
# ---------------------------------------------------------------------------


def get_blob_store(request: Request) -> IBlobStore:
    """Return the blob store created in the application lifespan."""
    return request.app.state.blob_store


def get_control_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    blob_store: Annotated[IBlobStore, Depends(get_blob_store)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> ControlService:
    """Construct ControlService with a fully wired ControlsEngine.

    Args:
        session: Request-scoped metadata store session.
        blob_store: Evidence blob store.
        settings: Service settings.

    Returns:
        Fully wired ControlService instance.
    """
    control_repo = ControlRepository(session)
    run_repo = ControlRunRepository(get_session_factory())
    sandbox = QuerySandbox(
        get_engine(),
        timeout_seconds=settings.query_timeout_seconds,
        max_rows=settings.max_result_rows,
    )
    engine = ControlsEngine(
        control_repo=control_repo,
        run_repo=run_repo,
        resolver=DatasetBindingResolver(
            DatasetRepository(session),
            timeout_seconds=settings.binding_timeout_seconds,
        ),
        sandbox=sandbox,
        evidence_generator=EvidenceGenerator(
            sandbox,
            blob_store,
            upload_timeout_seconds=settings.evidence_upload_timeout_seconds,
            concurrency=settings.evidence_export_concurrency,
        ),
        strict_pass_condition=settings.strict_pass_condition,
    )
    return ControlService(
        control_repo=control_repo,
        run_repo=run_repo,
        engine=engine,
        strict_pass_condition=settings.strict_pass_condition,
    )


def get_dataset_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    blob_store: Annotated[IBlobStore, Depends(get_blob_store)],
) -> DatasetService:
    return DatasetService(DatasetRepository(session), blob_store)


# ---------------------------------------------------------------------------
# Control endpoints
# ---------------------------------------------------------------------------


@router.post("/controls/validate", response_model=ControlValidateResponse)
async def validate_control(
    request: ControlValidateRequest,
    tenant: Annotated[TenantContext, Depends(get_current_user)],
    service: Annotated[ControlService, Depends(get_control_service)],
) -> ControlValidateResponse:
    """Validate control definition text without saving it.

    Returns 200 for both outcomes; ``valid`` tells them apart.
    """
    return service.validate_definition(request.yaml_config)


@router.post("/controls", response_model=ControlResponse, status_code=201)
async def create_control(
    request: ControlCreateRequest,
    tenant: Annotated[TenantContext, Depends(require_control_author)],
    service: Annotated[ControlService, Depends(get_control_service)],
) -> ControlResponse:
    """Create a control from a definition.

    Args:
        request: Control creation request body.
        tenant: Caller with an authoring role.
        service: Injected ControlService.

    Returns:
        The created control at version 1.
    """
    logger.info("POST /controls", tenant_id=str(tenant.tenant_id))
    return await service.create_control(
        tenant=tenant,
        yaml_config=request.yaml_config,
        description=request.description,
        category=request.category,
    )


@router.get("/controls", response_model=list[ControlResponse])
async def list_controls(
    tenant: Annotated[TenantContext, Depends(get_current_user)],
    service: Annotated[ControlService, Depends(get_control_service)],
    category: str | None = Query(default=None, description="Filter by category"),
    include_inactive: bool = Query(default=False, description="Include soft-disabled controls"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> list[ControlResponse]:
    return await service.list_controls(
        tenant,
        active_only=not include_inactive,
        category=category,
        page=page,
        page_size=page_size,
    )


@router.get("/controls/{control_id}", response_model=ControlResponse)
async def get_control(
    control_id: str,
    tenant: Annotated[TenantContext, Depends(get_current_user)],
    service: Annotated[ControlService, Depends(get_control_service)],
) -> ControlResponse:
    return await service.get_control(control_id, tenant)


@router.put("/controls/{control_id}", response_model=ControlResponse)
async def update_control(
    control_id: str,
    request: ControlUpdateRequest,
    tenant: Annotated[TenantContext, Depends(require_control_author)],
    service: Annotated[ControlService, Depends(get_control_service)],
) -> ControlResponse:
    """Update a control. A changed definition increments its version.

    Args:
        control_id: The control id.
        request: Fields to change.
        tenant: Caller with an authoring role.
        service: Injected ControlService.

    Returns:
        The updated control.
    """
    logger.info("PUT /controls/{id}", tenant_id=str(tenant.tenant_id), control_id=control_id)
    return await service.update_control(
        control_id,
        tenant,
        yaml_config=request.yaml_config,
        description=request.description,
        category=request.category,
        is_active=request.is_active,
    )


@router.post("/controls/{control_id}/execute", response_model=ControlRunResponse)
async def execute_control(
    control_id: str,
    request: ControlExecuteRequest,
    tenant: Annotated[TenantContext, Depends(require_control_author)],
    service: Annotated[ControlService, Depends(get_control_service)],
) -> ControlRunResponse:
    """Execute a control against a dataset.

    The response is the terminal run. A run that failed after it started
    (missing dataset, query error, timeout) is returned with status
    ``failed`` and HTTP 200; it is a recorded outcome, not a request error.

    Args:
        control_id: The control id.
        request: Execution request with the dataset id.
        tenant: Caller with an authoring role.
        service: Injected ControlService.

    Returns:
        The completed or failed run.
    """
    logger.info(
        "POST /controls/{id}/execute",
        tenant_id=str(tenant.tenant_id),
        control_id=control_id,
        dataset_id=str(request.dataset_id),
    )
    return await service.execute_control(control_id, request.dataset_id, tenant)


@router.get("/controls/{control_id}/runs", response_model=list[ControlRunResponse])
async def list_control_runs(
    control_id: str,
    tenant: Annotated[TenantContext, Depends(get_current_user)],
    service: Annotated[ControlService, Depends(get_control_service)],
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> list[ControlRunResponse]:
    return await service.list_runs(control_id, tenant, page=page, page_size=page_size)


@router.get("/runs/{run_id}", response_model=ControlRunResponse)
async def get_run(
    run_id: uuid.UUID,
    tenant: Annotated[TenantContext, Depends(get_current_user)],
    service: Annotated[ControlService, Depends(get_control_service)],
) -> ControlRunResponse:
    return await service.get_run(run_id, tenant)


# ---------------------------------------------------------------------------
# Dataset endpoints
# ---------------------------------------------------------------------------


@router.delete("/datasets/{dataset_id}", response_model=DatasetDeleteResponse)
async def delete_dataset(
    dataset_id: uuid.UUID,
    tenant: Annotated[TenantContext, Depends(require_control_author)],
    service: Annotated[DatasetService, Depends(get_dataset_service)],
) -> DatasetDeleteResponse:
    """Delete a dataset's metadata row and table, then its source blob."""
    logger.info("DELETE /datasets/{id}", tenant_id=str(tenant.tenant_id), dataset_id=str(dataset_id))
    return await service.delete_dataset(dataset_id, tenant)
