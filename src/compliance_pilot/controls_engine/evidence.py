"""Evidence generation for control runs.

For each evidence export declared by a control, in declaration order:

1. Execute the export query through the QuerySandbox (same binding and
   parameters as the control logic).
2. Serialize the rows to CSV (column order from the first row's keys).
3. Upload the bytes to the blob store under a tenant- and dataset-type-scoped
   path. The file hash is the one the blob store computed over the bytes it
   stored, never a hash of the in-memory rows.

Exports are best-effort: each one yields an ExportOutcome holding either an
EvidenceFile or an EvidenceExportFailed. A failing export is logged and
left out of the evidence list; it never aborts the other exports or the run.

The aggregate evidence hash is SHA-256 over the successful files' hashes in
declaration order. With no successful exports it is the SHA-256 of empty
input, a fixed value, so "no evidence" is distinguishable from "no hash".
"""

import asyncio
import csv
import hashlib
import io
import re
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from compliance_pilot.controls_engine.binding import DatasetBinding
from compliance_pilot.controls_engine.definition import ControlDefinition, EvidenceExportSpec
from compliance_pilot.controls_engine.sandbox import QuerySandbox
from compliance_pilot.core.interfaces import IBlobStore
from compliance_pilot.errors import CompliancePilotError, EvidenceExportFailed, RunCancelled
from compliance_pilot.observability import get_logger

logger = get_logger(__name__)

EVIDENCE_CONTENT_TYPE = "text/csv"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class EvidenceFile:
    """One persisted evidence artifact.

    Attributes:
        name: Export name as declared in the control definition.
        path: Blob store path.
        hash: SHA-256 hex digest of the stored bytes.
        row_count: Rows in the export.
        description: Human-readable description.
    """

    name: str
    path: str
    hash: str
    row_count: int
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "hash": self.hash,
            "row_count": self.row_count,
            "description": self.description,
        }


@dataclass(frozen=True)
class ExportOutcome:
    """Result of attempting one evidence export.

    Exactly one of ``evidence_file`` and ``error`` is set.
    """

    export: EvidenceExportSpec
    evidence_file: EvidenceFile | None = None
    error: CompliancePilotError | None = None

    @property
    def succeeded(self) -> bool:
        return self.evidence_file is not None


@dataclass(frozen=True)
class EvidenceBundle:
    """All export outcomes of one run, in declaration order."""

    outcomes: tuple[ExportOutcome, ...]

    @property
    def files(self) -> list[EvidenceFile]:
        return [o.evidence_file for o in self.outcomes if o.evidence_file is not None]

    @property
    def failures(self) -> list[ExportOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    @property
    def declared_count(self) -> int:
        return len(self.outcomes)

    @property
    def evidence_hash(self) -> str:
        return compute_evidence_hash(f.hash for f in self.files)


def rows_to_csv(rows: list[dict[str, Any]]) -> str:
    """Serialize rows to CSV text.

    Column order is taken from the first row's keys. Values containing the
    delimiter, quotes or newlines are quoted. An empty row list serializes to
    an empty string (no header, since there are no keys to take it from).

    Args:
        rows: Result rows as dicts.

    Returns:
        CSV text with ``\\n`` line endings.
    """
    if not rows:
        return ""

    buffer = io.StringIO()
    writer = csv.DictWriter(
        buffer,
        fieldnames=list(rows[0].keys()),
        extrasaction="ignore",
        restval="",
        lineterminator="\n",
    )
    writer.writeheader()
    writer.writerows(rows)
    return buffer.getvalue()


def compute_evidence_hash(file_hashes: Iterable[str]) -> str:
    """Compute the run-level aggregate evidence hash.

    Args:
        file_hashes: Per-file content hashes in export declaration order.

    Returns:
        SHA-256 hex digest over the concatenated hashes.
    """
    digest = hashlib.sha256()
    for file_hash in file_hashes:
        digest.update(file_hash.encode("utf-8"))
    return digest.hexdigest()


def _blob_name(export_name: str) -> str:
    safe = _UNSAFE_NAME_CHARS.sub("_", export_name).strip("._") or "export"
    return f"{safe}.csv"


class EvidenceGenerator:
    """Runs a control's evidence exports and persists them as blobs.

    Args:
        sandbox: Query sandbox used for export queries.
        blob_store: Destination for serialized evidence.
        upload_timeout_seconds: Timeout for one blob upload.
        concurrency: Maximum exports in flight at once.
    """

    def __init__(
        self,
        sandbox: QuerySandbox,
        blob_store: IBlobStore,
        upload_timeout_seconds: float = 30.0,
        concurrency: int = 4,
    ) -> None:
        self._sandbox = sandbox
        self._blob_store = blob_store
        self._upload_timeout_seconds = upload_timeout_seconds
        self._concurrency = max(1, concurrency)

    async def generate(
        self,
        definition: ControlDefinition,
        binding: DatasetBinding,
        tenant_id: uuid.UUID,
        cancel_event: asyncio.Event | None = None,
    ) -> EvidenceBundle:
        """Attempt every declared export and collect the outcomes.

        Args:
            definition: Parsed control definition.
            binding: Dataset binding shared with the control logic.
            tenant_id: Owning tenant, used to scope blob paths.
            cancel_event: Checked before each export starts.

        Returns:
            EvidenceBundle with one outcome per declared export, in order.

        Raises:
            RunCancelled: If cancellation prevented one or more exports from starting.
        """
        semaphore = asyncio.Semaphore(self._concurrency)
        skipped: list[str] = []

        async def _guarded(export: EvidenceExportSpec) -> ExportOutcome:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    skipped.append(export.name)
                    cancelled = RunCancelled(f"evidence export '{export.name}'")
                    return ExportOutcome(export=export, error=cancelled)
                return await self._run_export(export, definition, binding, tenant_id)

        outcomes = await asyncio.gather(*(_guarded(export) for export in definition.exports))

        if skipped:
            raise RunCancelled(f"evidence export '{skipped[0]}'")

        bundle = EvidenceBundle(outcomes=tuple(outcomes))
        logger.info(
            "Evidence generation finished",
            control_id=definition.id,
            declared=bundle.declared_count,
            produced=len(bundle.files),
            failed=[o.export.name for o in bundle.failures],
        )
        return bundle

    async def _run_export(
        self,
        export: EvidenceExportSpec,
        definition: ControlDefinition,
        binding: DatasetBinding,
        tenant_id: uuid.UUID,
    ) -> ExportOutcome:
        """Execute, serialize and upload one export, absorbing its failure."""
        try:
            result = await self._sandbox.execute(export.query, definition.logic.params, binding)
            payload = rows_to_csv(result.rows).encode("utf-8")
            async with asyncio.timeout(self._upload_timeout_seconds):
                stored = await self._blob_store.put(
                    payload,
                    _blob_name(export.name),
                    tenant_id,
                    binding.dataset_type,
                    EVIDENCE_CONTENT_TYPE,
                )
        except TimeoutError:
            error = EvidenceExportFailed(
                export.name, f"upload exceeded timeout of {self._upload_timeout_seconds}s"
            )
        except CompliancePilotError as exc:
            error = EvidenceExportFailed(export.name, exc.to_run_error())
        except Exception as exc:  # noqa: BLE001
            error = EvidenceExportFailed(export.name, f"{type(exc).__name__}: {exc}")
        else:
            return ExportOutcome(
                export=export,
                evidence_file=EvidenceFile(
                    name=export.name,
                    path=stored.path,
                    hash=stored.content_hash,
                    row_count=result.row_count,
                    description=f"Evidence for {definition.title}",
                ),
            )

        logger.error(
            "Evidence export failed",
            control_id=definition.id,
            export_name=export.name,
            error=error.message,
        )
        return ExportOutcome(export=export, error=error)
