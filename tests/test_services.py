"""Tests for core business logic services.

Tests ControlService and DatasetService. Uses mock repositories, a mock
engine and the in-memory blob store.
"""

import uuid
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from compliance_pilot.adapters.blob_store import InMemoryBlobStore
from compliance_pilot.auth import TenantContext
from compliance_pilot.core.services import ControlService, DatasetService
from compliance_pilot.errors import (
    ControlAlreadyExists,
    ControlInactive,
    ControlNotFound,
    DatasetNotFound,
    InvalidDefinition,
    RunNotFound,
)
from tests.conftest import make_control_yaml


def make_fake_control(tenant_id: uuid.UUID, **overrides: Any) -> MagicMock:
    """Create a fake Control ORM object for tests."""
    control = MagicMock()
    control.id = "SEG-001"
    control.tenant_id = tenant_id
    control.title = "Client funds segregation"
    control.description = ""
    control.category = "segregation"
    control.dataset = "ledger"
    control.frequency = "daily"
    control.severity = "high"
    control.version = 1
    control.yaml_config = make_control_yaml()
    control.is_active = True
    control.created_by = uuid.uuid4()
    control.created_at = datetime.now(UTC)
    control.updated_at = datetime.now(UTC)
    for key, value in overrides.items():
        setattr(control, key, value)
    return control


def make_fake_run(tenant_id: uuid.UUID, status: str = "completed") -> MagicMock:
    """Create a fake ControlRun ORM object for tests."""
    run = MagicMock()
    run.id = uuid.uuid4()
    run.control_id = "SEG-001"
    run.dataset_id = uuid.uuid4()
    run.tenant_id = tenant_id
    run.triggered_by = uuid.uuid4()
    run.status = status
    run.started_at = datetime.now(UTC)
    run.completed_at = datetime.now(UTC)
    if status == "completed":
        run.results = {
            "passed": True,
            "result_count": 0,
            "evidence_count": 0,
            "execution_time_ms": 12,
            "evidence_files": [],
            "summary": "Client funds segregation: PASSED - Found 0 violations",
            "declared_export_count": 0,
            "failed_exports": [],
        }
        run.evidence_hash = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        run.error_message = None
    else:
        run.results = None
        run.evidence_hash = None
        run.error_message = "DatasetNotFound: Dataset not found: x"
    return run


# ---------------------------------------------------------------------------
# ControlService tests
# ---------------------------------------------------------------------------


class TestControlService:
    """Tests for ControlService — control lifecycle and execution."""

    def _make_service(
        self,
        control_repo: AsyncMock | None = None,
        run_repo: AsyncMock | None = None,
        engine: AsyncMock | None = None,
        strict_pass_condition: bool = False,
    ) -> ControlService:
        """Construct a ControlService with mock dependencies."""
        return ControlService(
            control_repo=control_repo or AsyncMock(),
            run_repo=run_repo or AsyncMock(),
            engine=engine or AsyncMock(),
            strict_pass_condition=strict_pass_condition,
        )

    def test_validate_definition_valid(self) -> None:
        service = self._make_service()
        exports = [{"name": "negatives", "query": "SELECT * FROM ledger WHERE balance < 0"}]

        response = service.validate_definition(make_control_yaml(exports=exports))

        assert response.valid is True
        assert response.id == "SEG-001"
        assert response.pass_condition == "result_count = 0"
        assert response.pass_condition_supported is True
        assert response.export_names == ["negatives"]
        assert response.error is None

    def test_validate_definition_invalid_reports_field(self) -> None:
        service = self._make_service()

        response = service.validate_definition(make_control_yaml(query=""))

        assert response.valid is False
        assert response.field == "logic.query"
        assert response.error

    def test_validate_definition_unsupported_condition(self) -> None:
        lenient = self._make_service()
        strict = self._make_service(strict_pass_condition=True)
        yaml_config = make_control_yaml(pass_condition="violations are tolerable")

        assert lenient.validate_definition(yaml_config).pass_condition_supported is False
        assert strict.validate_definition(yaml_config).valid is False

    @pytest.mark.asyncio()
    async def test_create_control_takes_metadata_from_definition(
        self,
        tenant: TenantContext,
    ) -> None:
        control_repo = AsyncMock()
        control_repo.get_by_id.return_value = None
        control_repo.create.return_value = make_fake_control(tenant.tenant_id)
        service = self._make_service(control_repo=control_repo)

        result = await service.create_control(tenant, make_control_yaml(), description="Daily check")

        kwargs = control_repo.create.call_args.kwargs
        assert kwargs["control_id"] == "SEG-001"
        assert kwargs["title"] == "Client funds segregation"
        assert kwargs["dataset"] == "ledger"
        assert kwargs["frequency"] == "daily"
        assert kwargs["severity"] == "high"
        assert kwargs["description"] == "Daily check"
        assert kwargs["created_by"] == tenant.user_id
        assert result.version == 1

    @pytest.mark.asyncio()
    async def test_create_control_duplicate_raises(self, tenant: TenantContext) -> None:
        control_repo = AsyncMock()
        control_repo.get_by_id.return_value = make_fake_control(tenant.tenant_id)
        service = self._make_service(control_repo=control_repo)

        with pytest.raises(ControlAlreadyExists):
            await service.create_control(tenant, make_control_yaml())

        control_repo.create.assert_not_called()

    @pytest.mark.asyncio()
    async def test_create_control_invalid_definition_raises(self, tenant: TenantContext) -> None:
        control_repo = AsyncMock()
        service = self._make_service(control_repo=control_repo)

        with pytest.raises(InvalidDefinition):
            await service.create_control(tenant, "id: [unclosed")

        control_repo.get_by_id.assert_not_called()

    @pytest.mark.asyncio()
    async def test_update_control_passes_new_definition(self, tenant: TenantContext) -> None:
        control_repo = AsyncMock()
        control_repo.update.return_value = make_fake_control(tenant.tenant_id, version=2)
        service = self._make_service(control_repo=control_repo)
        new_yaml = make_control_yaml(pass_condition="result_count < 3")

        result = await service.update_control("SEG-001", tenant, yaml_config=new_yaml)

        changes = control_repo.update.call_args.args[2]
        assert changes["yaml_config"] == new_yaml
        assert changes["title"] == "Client funds segregation"
        assert result.version == 2

    @pytest.mark.asyncio()
    async def test_update_control_rejects_id_change(self, tenant: TenantContext) -> None:
        control_repo = AsyncMock()
        service = self._make_service(control_repo=control_repo)

        with pytest.raises(InvalidDefinition) as exc_info:
            await service.update_control(
                "SEG-001", tenant, yaml_config=make_control_yaml(control_id="SEG-002")
            )

        assert exc_info.value.field == "id"
        control_repo.update.assert_not_called()

    @pytest.mark.asyncio()
    async def test_update_control_metadata_only(self, tenant: TenantContext) -> None:
        control_repo = AsyncMock()
        control_repo.update.return_value = make_fake_control(tenant.tenant_id, is_active=False)
        service = self._make_service(control_repo=control_repo)

        result = await service.update_control("SEG-001", tenant, is_active=False)

        changes = control_repo.update.call_args.args[2]
        assert "yaml_config" not in changes
        assert changes["is_active"] is False
        assert result.is_active is False

    @pytest.mark.asyncio()
    async def test_get_control_not_found_raises(self, tenant: TenantContext) -> None:
        control_repo = AsyncMock()
        control_repo.get_by_id.return_value = None
        service = self._make_service(control_repo=control_repo)

        with pytest.raises(ControlNotFound):
            await service.get_control("NOPE", tenant)

    @pytest.mark.asyncio()
    async def test_execute_control_returns_failed_run_as_result(
        self,
        tenant: TenantContext,
    ) -> None:
        engine = AsyncMock()
        engine.execute_control.return_value = make_fake_run(tenant.tenant_id, status="failed")
        service = self._make_service(engine=engine)
        dataset_id = uuid.uuid4()

        result = await service.execute_control("SEG-001", dataset_id, tenant)

        engine.execute_control.assert_awaited_once_with("SEG-001", dataset_id, tenant)
        assert result.status == "failed"
        assert result.results is None
        assert result.error_message.startswith("DatasetNotFound:")  # type: ignore[union-attr]

    @pytest.mark.asyncio()
    async def test_execute_control_propagates_pre_run_errors(
        self,
        tenant: TenantContext,
    ) -> None:
        engine = AsyncMock()
        engine.execute_control.side_effect = ControlInactive("SEG-001")
        service = self._make_service(engine=engine)

        with pytest.raises(ControlInactive):
            await service.execute_control("SEG-001", uuid.uuid4(), tenant)

    @pytest.mark.asyncio()
    async def test_execute_control_completed_run_results_are_typed(
        self,
        tenant: TenantContext,
    ) -> None:
        engine = AsyncMock()
        engine.execute_control.return_value = make_fake_run(tenant.tenant_id)
        service = self._make_service(engine=engine)

        result = await service.execute_control("SEG-001", uuid.uuid4(), tenant)

        assert result.results is not None
        assert result.results.passed is True
        assert result.results.summary.endswith("PASSED - Found 0 violations")

    @pytest.mark.asyncio()
    async def test_list_runs_unknown_control_raises(self, tenant: TenantContext) -> None:
        control_repo = AsyncMock()
        control_repo.get_by_id.return_value = None
        run_repo = AsyncMock()
        service = self._make_service(control_repo=control_repo, run_repo=run_repo)

        with pytest.raises(ControlNotFound):
            await service.list_runs("NOPE", tenant)

        run_repo.list_for_control.assert_not_called()

    @pytest.mark.asyncio()
    async def test_get_run_not_found_raises(self, tenant: TenantContext) -> None:
        run_repo = AsyncMock()
        run_repo.get_by_id.return_value = None
        service = self._make_service(run_repo=run_repo)

        with pytest.raises(RunNotFound):
            await service.get_run(uuid.uuid4(), tenant)


# ---------------------------------------------------------------------------
# DatasetService tests
# ---------------------------------------------------------------------------


class TestDatasetService:
    """Tests for DatasetService — dataset deletion."""

    @pytest.mark.asyncio()
    async def test_delete_removes_blob(self, tenant: TenantContext) -> None:
        dataset = MagicMock()
        dataset.file_path = f"{tenant.tenant_id}/ledger/2026-01-01/x_upload.csv"
        dataset_repo = AsyncMock()
        dataset_repo.delete.return_value = dataset
        store = InMemoryBlobStore()
        store.objects[dataset.file_path] = b"client_id\nC001\n"
        dataset_id = uuid.uuid4()

        result = await DatasetService(dataset_repo, store).delete_dataset(dataset_id, tenant)

        assert result.id == dataset_id
        assert result.blob_removed is True
        assert store.objects == {}
        dataset_repo.delete.assert_awaited_once_with(dataset_id, tenant.tenant_id)

    @pytest.mark.asyncio()
    async def test_blob_failure_leaves_orphan_but_succeeds(self, tenant: TenantContext) -> None:
        dataset = MagicMock()
        dataset.file_path = "missing/blob.csv"
        dataset_repo = AsyncMock()
        dataset_repo.delete.return_value = dataset

        result = await DatasetService(dataset_repo, InMemoryBlobStore()).delete_dataset(
            uuid.uuid4(), tenant
        )

        assert result.blob_removed is False

    @pytest.mark.asyncio()
    async def test_missing_dataset_raises_without_touching_blob(
        self,
        tenant: TenantContext,
    ) -> None:
        dataset_repo = AsyncMock()
        dataset_repo.delete.return_value = None
        store = AsyncMock()

        with pytest.raises(DatasetNotFound):
            await DatasetService(dataset_repo, store).delete_dataset(uuid.uuid4(), tenant)

        store.delete.assert_not_called()
