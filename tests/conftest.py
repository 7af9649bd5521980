"""Test fixtures for compliance-pilot.

Provides:
- tenant_id / actor_id / other_tenant_id: deterministic UUIDs
- tenant / other_tenant: TenantContext instances for two isolated tenants
- db_engine: a file-backed sqlite+aiosqlite engine with all tables created
- session_factory / db_session: sessions on db_engine
- blob_store: an InMemoryBlobStore
- make_control_yaml(): builds control definition text
- create_dataset(): inserts a Dataset row and its physical table
- create_control(): persists a Control
"""

import uuid
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
import yaml
from sqlalchemy import Column, Float, Integer, MetaData, String, Table
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from compliance_pilot.adapters.blob_store import InMemoryBlobStore
from compliance_pilot.adapters.repositories import ControlRepository
from compliance_pilot.auth import TenantContext
from compliance_pilot.controls_engine.binding import physical_table_name
from compliance_pilot.core.models import Base, Control, Dataset

LEDGER_ROWS: list[dict[str, Any]] = [
    {"client_id": "C001", "balance": 1500.0, "segregated": 1},
    {"client_id": "C002", "balance": -250.0, "segregated": 1},
    {"client_id": "C003", "balance": 900.0, "segregated": 0},
    {"client_id": "C004", "balance": -10.0, "segregated": 0},
]


@pytest.fixture()
def tenant_id() -> uuid.UUID:
    """Return a fixed tenant UUID for consistent test assertions."""
    return uuid.UUID("00000000-0000-0000-0000-000000000001")


@pytest.fixture()
def actor_id() -> uuid.UUID:
    """Return a fixed actor UUID for consistent test assertions."""
    return uuid.UUID("00000000-0000-0000-0000-000000000002")


@pytest.fixture()
def other_tenant_id() -> uuid.UUID:
    return uuid.UUID("00000000-0000-0000-0000-0000000000ff")


@pytest.fixture()
def tenant(tenant_id: uuid.UUID, actor_id: uuid.UUID) -> TenantContext:
    """Create a compliance officer TenantContext for the test tenant."""
    return TenantContext(tenant_id=tenant_id, user_id=actor_id, role="compliance_officer")


@pytest.fixture()
def other_tenant(other_tenant_id: uuid.UUID, actor_id: uuid.UUID) -> TenantContext:
    return TenantContext(tenant_id=other_tenant_id, user_id=actor_id, role="compliance_officer")


@pytest_asyncio.fixture()
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a file-backed sqlite engine with the metadata tables.

    A file (not ``:memory:``) is used so that every pooled connection sees
    the same database.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'compliance_pilot.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


def make_control_yaml(
    control_id: str = "SEG-001",
    title: str = "Client funds segregation",
    query: str = "SELECT client_id, balance FROM ledger WHERE balance < :min_balance",
    params: dict[str, Any] | None = None,
    pass_condition: str | None = "result_count = 0",
    exports: list[dict[str, str]] | None = None,
    dataset: str = "ledger",
) -> str:
    """Build control definition YAML text.

    Args:
        control_id: Definition id.
        title: Definition title.
        query: Logic query template.
        params: Logic parameters; defaults to ``{"min_balance": 0}``.
        pass_condition: Pass condition, omitted when None.
        exports: Evidence exports as ``{"name", "query"}`` dicts.
        dataset: Logical dataset reference.

    Returns:
        YAML text.
    """
    document: dict[str, Any] = {
        "id": control_id,
        "title": title,
        "dataset": dataset,
        "frequency": "daily",
        "severity": "high",
        "logic": {
            "query": query,
            "params": {"min_balance": 0} if params is None else params,
        },
    }
    if pass_condition is not None:
        document["pass_condition"] = pass_condition
    if exports is not None:
        document["evidence"] = {"exports": exports}
    return yaml.safe_dump(document, sort_keys=False)


def _column_for(name: str, value: Any) -> Column:
    if isinstance(value, bool) or isinstance(value, int):
        return Column(name, Integer)
    if isinstance(value, float):
        return Column(name, Float)
    return Column(name, String)


async def create_dataset(
    db_engine: AsyncEngine,
    tenant_id: uuid.UUID,
    rows: list[dict[str, Any]] | None = None,
    dataset_type: str = "ledger",
    uploaded_by: uuid.UUID | None = None,
    file_path: str | None = None,
) -> Dataset:
    """Insert a Dataset row and create its physical table holding ``rows``.

    Column types are inferred from the first row.
    """
    rows = LEDGER_ROWS if rows is None else rows
    dataset_id = uuid.uuid4()

    metadata = MetaData()
    table = Table(
        physical_table_name(dataset_id),
        metadata,
        *(_column_for(name, value) for name, value in rows[0].items()),
    )

    dataset = Dataset(
        id=dataset_id,
        tenant_id=tenant_id,
        name=f"{dataset_type} upload",
        type=dataset_type,
        schema={"columns": list(rows[0].keys())},
        file_path=file_path or f"{tenant_id}/{dataset_type}/2026-01-01/{dataset_id}_upload.csv",
        file_hash="0" * 64,
        row_count=len(rows),
        uploaded_by=uploaded_by or uuid.uuid4(),
    )

    async with db_engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        await conn.execute(table.insert(), rows)

    factory = async_sessionmaker(bind=db_engine, expire_on_commit=False)
    async with factory() as session, session.begin():
        session.add(dataset)
    return dataset


async def create_control(
    session: AsyncSession,
    tenant: TenantContext,
    yaml_config: str | None = None,
    control_id: str = "SEG-001",
    title: str = "Client funds segregation",
    is_active: bool = True,
) -> Control:
    """Persist a Control through ControlRepository and commit."""
    repo = ControlRepository(session)
    control = await repo.create(
        tenant_id=tenant.tenant_id,
        control_id=control_id,
        title=title,
        dataset="ledger",
        yaml_config=yaml_config or make_control_yaml(control_id=control_id, title=title),
        created_by=tenant.user_id,
    )
    if not is_active:
        control = await repo.update(control_id, tenant.tenant_id, {"is_active": False})
    await session.commit()
    return control
