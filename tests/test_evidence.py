"""Tests for evidence generation.

Tests verify:
- CSV serialization (header from first row, quoting)
- File hashes are recomputable from the stored bytes
- The aggregate evidence hash is deterministic and order-sensitive
- A failing export is isolated from the others
- Cancellation stops exports that have not started
"""

import asyncio
import hashlib
import uuid
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from compliance_pilot.adapters.blob_store import InMemoryBlobStore
from compliance_pilot.controls_engine.binding import DatasetBinding, physical_table_name
from compliance_pilot.controls_engine.definition import parse_control_definition
from compliance_pilot.controls_engine.evidence import (
    EvidenceGenerator,
    compute_evidence_hash,
    rows_to_csv,
)
from compliance_pilot.controls_engine.sandbox import QuerySandbox
from compliance_pilot.core.interfaces import StoredBlob
from compliance_pilot.errors import RunCancelled
from tests.conftest import create_dataset, make_control_yaml

EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def _binding_for(dataset_id: uuid.UUID, tenant_id: uuid.UUID) -> DatasetBinding:
    return DatasetBinding(
        dataset_id=dataset_id,
        tenant_id=tenant_id,
        dataset_type="ledger",
        table_name=physical_table_name(dataset_id),
        row_count=4,
    )


THREE_EXPORTS = [
    {"name": "negative_balances", "query": "SELECT * FROM ledger WHERE balance < 0 ORDER BY client_id"},
    {"name": "broken_export", "query": "SELECT missing_column FROM ledger"},
    {"name": "unsegregated", "query": "SELECT client_id FROM ledger WHERE segregated = 0 ORDER BY client_id"},
]


class TestRowsToCsv:
    def test_header_from_first_row_keys(self) -> None:
        csv_text = rows_to_csv([{"b": 1, "a": 2}, {"b": 3, "a": 4}])

        assert csv_text == "b,a\n1,2\n3,4\n"

    def test_values_with_delimiters_and_quotes_are_quoted(self) -> None:
        csv_text = rows_to_csv([{"name": 'Acme, "Ltd"', "note": "line1\nline2"}])

        assert csv_text == 'name,note\n"Acme, ""Ltd""","line1\nline2"\n'

    def test_empty_rows_serialize_to_empty_string(self) -> None:
        assert rows_to_csv([]) == ""


class TestComputeEvidenceHash:
    def test_empty_sequence_is_sha256_of_nothing(self) -> None:
        assert compute_evidence_hash([]) == EMPTY_SHA256

    def test_is_sha256_over_concatenated_hashes(self) -> None:
        hashes = ["aa" * 32, "bb" * 32]

        expected = hashlib.sha256(("aa" * 32 + "bb" * 32).encode()).hexdigest()

        assert compute_evidence_hash(hashes) == expected

    def test_is_order_sensitive(self) -> None:
        assert compute_evidence_hash(["a", "b"]) != compute_evidence_hash(["b", "a"])


class TestEvidenceGenerator:
    """Tests for EvidenceGenerator.generate()."""

    @pytest.mark.asyncio()
    async def test_partial_failure_keeps_successful_exports(
        self,
        db_engine: AsyncEngine,
        tenant_id: uuid.UUID,
        blob_store: InMemoryBlobStore,
    ) -> None:
        dataset = await create_dataset(db_engine, tenant_id)
        definition = parse_control_definition(make_control_yaml(exports=THREE_EXPORTS))
        generator = EvidenceGenerator(QuerySandbox(db_engine), blob_store)

        bundle = await generator.generate(definition, _binding_for(dataset.id, tenant_id), tenant_id)

        assert bundle.declared_count == 3
        assert [f.name for f in bundle.files] == ["negative_balances", "unsegregated"]
        assert [o.export.name for o in bundle.failures] == ["broken_export"]
        assert bundle.failures[0].error is not None
        assert bundle.failures[0].error.error_kind == "EvidenceExportFailed"
        assert len(blob_store.objects) == 2

    @pytest.mark.asyncio()
    async def test_file_hash_matches_stored_bytes(
        self,
        db_engine: AsyncEngine,
        tenant_id: uuid.UUID,
        blob_store: InMemoryBlobStore,
    ) -> None:
        dataset = await create_dataset(db_engine, tenant_id)
        definition = parse_control_definition(make_control_yaml(exports=THREE_EXPORTS[:1]))
        generator = EvidenceGenerator(QuerySandbox(db_engine), blob_store)

        bundle = await generator.generate(definition, _binding_for(dataset.id, tenant_id), tenant_id)

        evidence_file = bundle.files[0]
        stored = blob_store.objects[evidence_file.path]
        assert hashlib.sha256(stored).hexdigest() == evidence_file.hash
        assert stored.decode().splitlines()[0] == "client_id,balance,segregated"
        assert evidence_file.row_count == 2
        assert evidence_file.path.startswith(f"{tenant_id}/ledger/")
        assert evidence_file.path.endswith("_negative_balances.csv")
        assert bundle.evidence_hash == compute_evidence_hash([evidence_file.hash])

    @pytest.mark.asyncio()
    async def test_same_data_yields_same_evidence_hash(
        self,
        db_engine: AsyncEngine,
        tenant_id: uuid.UUID,
        blob_store: InMemoryBlobStore,
    ) -> None:
        dataset = await create_dataset(db_engine, tenant_id)
        definition = parse_control_definition(make_control_yaml(exports=THREE_EXPORTS))
        generator = EvidenceGenerator(QuerySandbox(db_engine), blob_store, concurrency=2)
        binding = _binding_for(dataset.id, tenant_id)

        first = await generator.generate(definition, binding, tenant_id)
        second = await generator.generate(definition, binding, tenant_id)

        assert first.evidence_hash == second.evidence_hash
        assert [f.path for f in first.files] != [f.path for f in second.files]

    @pytest.mark.asyncio()
    async def test_no_exports_yields_empty_hash(
        self,
        db_engine: AsyncEngine,
        tenant_id: uuid.UUID,
        blob_store: InMemoryBlobStore,
    ) -> None:
        dataset = await create_dataset(db_engine, tenant_id)
        definition = parse_control_definition(make_control_yaml())
        generator = EvidenceGenerator(QuerySandbox(db_engine), blob_store)

        bundle = await generator.generate(definition, _binding_for(dataset.id, tenant_id), tenant_id)

        assert bundle.files == []
        assert bundle.evidence_hash == EMPTY_SHA256

    @pytest.mark.asyncio()
    async def test_blob_store_error_fails_only_that_export(
        self,
        db_engine: AsyncEngine,
        tenant_id: uuid.UUID,
    ) -> None:
        dataset = await create_dataset(db_engine, tenant_id)
        exports = [THREE_EXPORTS[0], THREE_EXPORTS[2]]
        definition = parse_control_definition(make_control_yaml(exports=exports))

        store = AsyncMock()
        store.put.side_effect = [
            ConnectionError("minio unreachable"),
            StoredBlob(path="p/unsegregated.csv", content_hash="ab" * 32, size=10),
        ]
        generator = EvidenceGenerator(QuerySandbox(db_engine), store, concurrency=1)

        bundle = await generator.generate(definition, _binding_for(dataset.id, tenant_id), tenant_id)

        assert [f.name for f in bundle.files] == ["unsegregated"]
        assert "minio unreachable" in bundle.failures[0].error.message  # type: ignore[union-attr]

    @pytest.mark.asyncio()
    async def test_upload_timeout_fails_only_that_export(
        self,
        db_engine: AsyncEngine,
        tenant_id: uuid.UUID,
    ) -> None:
        dataset = await create_dataset(db_engine, tenant_id)
        definition = parse_control_definition(make_control_yaml(exports=THREE_EXPORTS[:1]))

        async def _hang(*args: object, **kwargs: object) -> StoredBlob:
            await asyncio.sleep(5)
            raise AssertionError("unreachable")

        store = AsyncMock()
        store.put.side_effect = _hang
        generator = EvidenceGenerator(QuerySandbox(db_engine), store, upload_timeout_seconds=0.01)

        bundle = await generator.generate(definition, _binding_for(dataset.id, tenant_id), tenant_id)

        assert bundle.files == []
        assert "timeout" in bundle.failures[0].error.message  # type: ignore[union-attr]

    @pytest.mark.asyncio()
    async def test_cancel_event_stops_pending_exports(
        self,
        db_engine: AsyncEngine,
        tenant_id: uuid.UUID,
        blob_store: InMemoryBlobStore,
    ) -> None:
        dataset = await create_dataset(db_engine, tenant_id)
        definition = parse_control_definition(make_control_yaml(exports=THREE_EXPORTS))
        generator = EvidenceGenerator(QuerySandbox(db_engine), blob_store)
        cancel_event = asyncio.Event()
        cancel_event.set()

        with pytest.raises(RunCancelled):
            await generator.generate(
                definition, _binding_for(dataset.id, tenant_id), tenant_id, cancel_event=cancel_event
            )

        assert blob_store.objects == {}
