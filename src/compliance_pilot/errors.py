"""Error taxonomy for the CompliancePilot controls engine.

Every error carries an ``error_kind`` string. When an error ends a control
run, the run's ``error_message`` is stored as ``"<error_kind>: <message>"``
so operators can tell a timeout from a missing dataset without parsing prose.

Hierarchy:
- CompliancePilotError
  - NotFoundError
    - ControlNotFound
    - DatasetNotFound
    - RunNotFound
  - InvalidDefinition
  - ControlInactive
  - ControlAlreadyExists
  - LogicExecutionFailed
    - ExecutionTimeout
    - ResultTooLarge
  - BindingTimeout
  - EvidenceExportFailed
  - RunCancelled
  - InvalidRunTransition
"""

from __future__ import annotations


class CompliancePilotError(Exception):
    """Base class for all controls engine errors."""

    error_kind = "CompliancePilotError"

    def __init__(self, message: str) -> None:
        """Initialize with a human-readable message.

        Args:
            message: Description of what went wrong.
        """
        super().__init__(message)
        self.message = message

    def to_run_error(self) -> str:
        """Format the error for storage in ControlRun.error_message."""
        return f"{self.error_kind}: {self.message}"


class NotFoundError(CompliancePilotError):
    """A tenant-scoped resource does not exist."""

    error_kind = "NotFound"

    def __init__(self, resource: str, resource_id: str) -> None:
        """Initialize NotFoundError.

        Args:
            resource: Resource type name (e.g., "Control").
            resource_id: Identifier that was looked up.
        """
        super().__init__(f"{resource} not found: {resource_id}")
        self.resource = resource
        self.resource_id = resource_id


class ControlNotFound(NotFoundError):
    error_kind = "ControlNotFound"

    def __init__(self, control_id: str) -> None:
        super().__init__(resource="Control", resource_id=control_id)


class DatasetNotFound(NotFoundError):
    error_kind = "DatasetNotFound"

    def __init__(self, dataset_id: str) -> None:
        super().__init__(resource="Dataset", resource_id=dataset_id)


class RunNotFound(NotFoundError):
    error_kind = "RunNotFound"

    def __init__(self, run_id: str) -> None:
        super().__init__(resource="ControlRun", resource_id=run_id)


class InvalidDefinition(CompliancePilotError):
    """A control definition is structurally or semantically invalid.

    Surfaced to the caller before a run record exists; never stored as a
    run failure.

    Attributes:
        reason: Human-readable explanation.
        field: Dotted path of the offending field, when one applies.
    """

    error_kind = "InvalidDefinition"

    def __init__(self, reason: str, field: str | None = None) -> None:
        message = f"{field}: {reason}" if field else reason
        super().__init__(message)
        self.reason = reason
        self.field = field


class ControlInactive(CompliancePilotError):
    """Execution was requested for a soft-disabled control."""

    error_kind = "ControlInactive"

    def __init__(self, control_id: str) -> None:
        super().__init__(f"Control is inactive: {control_id}")
        self.control_id = control_id


class LogicExecutionFailed(CompliancePilotError):
    """The core logic query (or an export query) failed in the data store."""

    error_kind = "LogicExecutionFailed"


class ExecutionTimeout(LogicExecutionFailed):
    error_kind = "ExecutionTimeout"

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Query exceeded timeout of {timeout_seconds}s")
        self.timeout_seconds = timeout_seconds


class ResultTooLarge(LogicExecutionFailed):
    error_kind = "ResultTooLarge"

    def __init__(self, max_rows: int) -> None:
        super().__init__(f"Query returned more than {max_rows} rows")
        self.max_rows = max_rows


class BindingTimeout(CompliancePilotError):
    """The dataset lookup did not answer within the binding timeout."""

    error_kind = "BindingTimeout"

    def __init__(self, dataset_id: str, timeout_seconds: float) -> None:
        super().__init__(f"Dataset binding for {dataset_id} exceeded timeout of {timeout_seconds}s")
        self.dataset_id = dataset_id
        self.timeout_seconds = timeout_seconds


class EvidenceExportFailed(CompliancePilotError):
    """A single evidence export failed. Absorbed by the evidence generator."""

    error_kind = "EvidenceExportFailed"

    def __init__(self, export_name: str, message: str) -> None:
        super().__init__(f"Evidence export '{export_name}' failed: {message}")
        self.export_name = export_name


class RunCancelled(CompliancePilotError):
    error_kind = "Cancelled"

    def __init__(self, stage: str, in_flight: bool = False) -> None:
        super().__init__(f"Run cancelled {'during' if in_flight else 'before'} {stage}")
        self.stage = stage
        self.in_flight = in_flight


class InvalidRunTransition(CompliancePilotError):
    """A run status transition outside the lifecycle state machine."""

    error_kind = "InvalidRunTransition"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot transition run from '{current}' to '{target}'")
        self.current = current
        self.target = target


class ControlAlreadyExists(CompliancePilotError):
    """A control with this id already exists for the tenant."""

    error_kind = "ControlAlreadyExists"

    def __init__(self, control_id: str) -> None:
        super().__init__(f"Control already exists: {control_id}")
        self.control_id = control_id
