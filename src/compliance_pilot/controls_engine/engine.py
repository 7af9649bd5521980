"""Controls engine: executes one control against one dataset for one tenant.

Execution order:

1. Load the Control (tenant-scoped) and parse its current ``yaml_config``.
   ControlNotFound, ControlInactive and InvalidDefinition are raised to the
   caller here; no run record exists yet.
2. Create the run record (``pending``) and move it to ``running``.
3. Resolve the dataset binding, execute the logic query, evaluate the pass
   condition and generate evidence.
4. Finalize the run as ``completed`` (results + evidence hash) or ``failed``
   (error message). Every error after step 2 is recorded on the run and the
   failed run is returned, never raised.

A run can be cancelled cooperatively through an ``asyncio.Event``, checked
before binding, before query execution and before each evidence export.
Task cancellation (``asyncio.CancelledError``) also fails the run before the
cancellation is re-raised.
"""

import asyncio
import time
import uuid
from typing import Any

import structlog

from compliance_pilot.auth import TenantContext
from compliance_pilot.controls_engine.binding import DatasetBindingResolver
from compliance_pilot.controls_engine.definition import (
    ControlDefinition,
    parse_control_definition,
    validate_control_definition,
)
from compliance_pilot.controls_engine.evidence import EvidenceBundle, EvidenceGenerator
from compliance_pilot.controls_engine.lifecycle import RunLifecycle
from compliance_pilot.controls_engine.pass_condition import evaluate_pass_condition
from compliance_pilot.controls_engine.sandbox import QuerySandbox
from compliance_pilot.core.interfaces import IControlRepository, IControlRunRepository
from compliance_pilot.core.models import ControlRun
from compliance_pilot.errors import (
    CompliancePilotError,
    ControlInactive,
    ControlNotFound,
    InvalidDefinition,
    RunCancelled,
)
from compliance_pilot.observability import get_logger

logger = get_logger(__name__)


class UnexpectedExecutionError(CompliancePilotError):
    """Wraps an unclassified exception raised while a run was in progress."""

    error_kind = "InternalError"


def build_summary(title: str, passed: bool, result_count: int) -> str:
    """Format the one-line human-readable run summary."""
    verdict = "PASSED" if passed else "FAILED"
    return f"{title}: {verdict} - Found {result_count} violations"


def build_results(
    definition: ControlDefinition,
    passed: bool,
    result_count: int,
    bundle: EvidenceBundle,
    execution_time_ms: int,
) -> dict[str, Any]:
    """Assemble the ``results`` document stored on a completed run."""
    files = bundle.files
    return {
        "passed": passed,
        "result_count": result_count,
        "evidence_count": len(files),
        "execution_time_ms": execution_time_ms,
        "evidence_files": [f.to_dict() for f in files],
        "summary": build_summary(definition.title, passed, result_count),
        "declared_export_count": bundle.declared_count,
        "failed_exports": [o.export.name for o in bundle.failures],
    }


def _check_cancelled(cancel_event: asyncio.Event | None, stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RunCancelled(stage)


class ControlsEngine:
    """Orchestrates control execution over explicit collaborators.

    Args:
        control_repo: Control persistence.
        run_repo: ControlRun persistence.
        resolver: Dataset binding resolver.
        sandbox: Query sandbox for the control logic.
        evidence_generator: Evidence export runner.
        strict_pass_condition: Reject pass conditions outside the grammar
            at validation time.
    """

    def __init__(
        self,
        control_repo: IControlRepository,
        run_repo: IControlRunRepository,
        resolver: DatasetBindingResolver,
        sandbox: QuerySandbox,
        evidence_generator: EvidenceGenerator,
        strict_pass_condition: bool = False,
    ) -> None:
        self._control_repo = control_repo
        self._run_repo = run_repo
        self._resolver = resolver
        self._sandbox = sandbox
        self._evidence_generator = evidence_generator
        self._strict_pass_condition = strict_pass_condition

    def validate_definition(self, text: str) -> ControlDefinition:
        """Validate definition text without persisting anything.

        Raises:
            InvalidDefinition: If the definition is invalid.
        """
        return validate_control_definition(text, strict_pass_condition=self._strict_pass_condition)

    async def execute_control(
        self,
        control_id: str,
        dataset_id: uuid.UUID,
        tenant: TenantContext,
        cancel_event: asyncio.Event | None = None,
    ) -> ControlRun:
        """Execute a control against a dataset and return the finalized run.

        Args:
            control_id: Control to execute.
            dataset_id: Dataset to run it against.
            tenant: Caller identity; scopes every lookup.
            cancel_event: Optional cooperative cancellation signal.

        Returns:
            The terminal ControlRun, either ``completed`` or ``failed``.

        Raises:
            ControlNotFound: If the control does not exist for this tenant.
            ControlInactive: If the control is disabled.
            InvalidDefinition: If the persisted definition does not parse or
                its id does not match the control.
        """
        definition = await self._load_definition(control_id, tenant.tenant_id)

        lifecycle = RunLifecycle(
            run_repo=self._run_repo,
            control_id=control_id,
            dataset_id=dataset_id,
            tenant_id=tenant.tenant_id,
            triggered_by=tenant.user_id,
        )

        with structlog.contextvars.bound_contextvars(
            run_id=str(lifecycle.run_id),
            tenant_id=str(tenant.tenant_id),
            control_id=control_id,
        ):
            await lifecycle.start()
            started = time.perf_counter()

            try:
                run = await self._run(definition, dataset_id, tenant, lifecycle, started, cancel_event)
            except CompliancePilotError as exc:
                return await self._fail(lifecycle, exc)
            except asyncio.CancelledError:
                cancelled = RunCancelled(lifecycle.stage, in_flight=True)
                await asyncio.shield(self._fail(lifecycle, cancelled))
                raise
            except Exception as exc:
                logger.exception("Unexpected error during control run")
                return await self._fail(
                    lifecycle, UnexpectedExecutionError(f"{type(exc).__name__}: {exc}")
                )

            return run

    async def _load_definition(self, control_id: str, tenant_id: uuid.UUID) -> ControlDefinition:
        control = await self._control_repo.get_by_id(control_id, tenant_id)
        if control is None:
            raise ControlNotFound(control_id)
        if not control.is_active:
            raise ControlInactive(control_id)

        definition = parse_control_definition(control.yaml_config)
        if definition.id != control.id:
            raise InvalidDefinition(
                f"definition id '{definition.id}' does not match control id '{control.id}'",
                field="id",
            )
        return definition

    async def _run(
        self,
        definition: ControlDefinition,
        dataset_id: uuid.UUID,
        tenant: TenantContext,
        lifecycle: RunLifecycle,
        started: float,
        cancel_event: asyncio.Event | None,
    ) -> ControlRun:
        lifecycle.stage = "dataset binding"
        _check_cancelled(cancel_event, lifecycle.stage)
        binding = await self._resolver.resolve(dataset_id, tenant.tenant_id)

        lifecycle.stage = "query execution"
        _check_cancelled(cancel_event, lifecycle.stage)
        result = await self._sandbox.execute(
            definition.logic.query, definition.logic.params, binding
        )

        passed = evaluate_pass_condition(
            definition.condition, result.row_count, raw_condition=definition.pass_condition
        )

        lifecycle.stage = "evidence generation"
        bundle = await self._evidence_generator.generate(
            definition, binding, tenant.tenant_id, cancel_event=cancel_event
        )

        execution_time_ms = int((time.perf_counter() - started) * 1000)
        results = build_results(definition, passed, result.row_count, bundle, execution_time_ms)
        lifecycle.stage = "finalization"
        run = await lifecycle.complete(results, bundle.evidence_hash)

        logger.info(
            "Control run completed",
            passed=passed,
            result_count=result.row_count,
            evidence_count=len(bundle.files),
            execution_time_ms=execution_time_ms,
        )
        return run

    async def _fail(self, lifecycle: RunLifecycle, error: CompliancePilotError) -> ControlRun:
        logger.warning(
            "Control run failed",
            error_kind=error.error_kind,
            error=error.message,
        )
        return await lifecycle.fail(error)
