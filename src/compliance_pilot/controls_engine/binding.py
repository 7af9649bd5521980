"""Dataset binding resolver.

Maps a (dataset_id, tenant_id) pair to the physical table holding that
dataset's rows. The physical name is derived from the dataset id alone, so
binding is deterministic, idempotent and needs no mapping table. Tenant
scoping is checked here, at resolution time: a dataset id that exists only
under another tenant resolves to DatasetNotFound.

The metadata lookup is bounded by a timeout; a lookup that does not answer
in time raises BindingTimeout so the run is finalized instead of hanging.
"""

import asyncio
import uuid
from dataclasses import dataclass

from compliance_pilot.core.interfaces import IDatasetRepository
from compliance_pilot.errors import BindingTimeout, DatasetNotFound
from compliance_pilot.observability import get_logger

logger = get_logger(__name__)

_PHYSICAL_TABLE_PREFIX = "dataset_"


def physical_table_name(dataset_id: uuid.UUID | str) -> str:
    """Derive the physical table name for a dataset.

    Args:
        dataset_id: Dataset UUID (or its canonical string form).

    Returns:
        ``dataset_<hex id with '-' replaced by '_'>``, lower-cased.

    Raises:
        ValueError: If dataset_id is not a valid UUID.
    """
    normalized = uuid.UUID(str(dataset_id))
    return f"{_PHYSICAL_TABLE_PREFIX}{str(normalized).replace('-', '_')}"


@dataclass(frozen=True)
class DatasetBinding:
    """Resolved physical location of one tenant's dataset.

    Attributes:
        dataset_id: Dataset UUID.
        tenant_id: Owning tenant UUID (verified at resolution time).
        dataset_type: Semantic category, used to scope evidence blob paths.
        table_name: Physical table identifier for query binding.
        row_count: Rows recorded at ingestion.
    """

    dataset_id: uuid.UUID
    tenant_id: uuid.UUID
    dataset_type: str
    table_name: str
    row_count: int


class DatasetBindingResolver:
    """Resolves dataset references to tenant-scoped physical tables.

    Args:
        dataset_repo: Metadata store access for Dataset rows.
        timeout_seconds: Upper bound for the dataset lookup.
    """

    def __init__(self, dataset_repo: IDatasetRepository, timeout_seconds: float = 10.0) -> None:
        self._dataset_repo = dataset_repo
        self._timeout_seconds = timeout_seconds

    async def resolve(self, dataset_id: uuid.UUID, tenant_id: uuid.UUID) -> DatasetBinding:
        """Resolve a dataset for a tenant.

        Args:
            dataset_id: Dataset UUID from the execution request.
            tenant_id: Tenant executing the control.

        Returns:
            The DatasetBinding.

        Raises:
            DatasetNotFound: If no dataset row exists for this id and tenant.
            BindingTimeout: If the lookup exceeds the binding timeout.
        """
        try:
            async with asyncio.timeout(self._timeout_seconds):
                dataset = await self._dataset_repo.get_by_id(dataset_id, tenant_id)
        except TimeoutError as exc:
            logger.warning(
                "Dataset binding timed out",
                dataset_id=str(dataset_id),
                tenant_id=str(tenant_id),
                timeout_seconds=self._timeout_seconds,
            )
            raise BindingTimeout(str(dataset_id), self._timeout_seconds) from exc

        if dataset is None or dataset.tenant_id != tenant_id:
            logger.info(
                "Dataset binding failed",
                dataset_id=str(dataset_id),
                tenant_id=str(tenant_id),
            )
            raise DatasetNotFound(str(dataset_id))

        binding = DatasetBinding(
            dataset_id=dataset.id,
            tenant_id=dataset.tenant_id,
            dataset_type=dataset.type,
            table_name=physical_table_name(dataset.id),
            row_count=dataset.row_count,
        )
        logger.debug(
            "Dataset bound",
            dataset_id=str(dataset_id),
            table_name=binding.table_name,
        )
        return binding
