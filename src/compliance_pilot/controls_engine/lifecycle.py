"""Control run lifecycle state machine.

States::

    pending -> running -> completed
                       -> failed

``pending`` is written first and flipped to ``running`` immediately after,
as two separate committed statements, so a crash between record creation
and execution is visible in storage as a stuck ``pending`` run.
``completed`` and ``failed`` are terminal. Each terminal transition sets
``completed_at`` together with either ``results`` + ``evidence_hash`` or
``error_message`` in the same statement.

Transitions are enforced twice: in memory by ``ensure_transition`` and in
the database by the repository's status-guarded UPDATE.
"""

import enum
import uuid
from datetime import UTC, datetime
from typing import Any

from compliance_pilot.core.interfaces import IControlRunRepository
from compliance_pilot.core.models import ControlRun
from compliance_pilot.errors import CompliancePilotError, InvalidRunTransition
from compliance_pilot.observability import get_logger

logger = get_logger(__name__)


class RunStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})

_ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING}),
    RunStatus.RUNNING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


def ensure_transition(current: RunStatus, target: RunStatus) -> None:
    """Raise InvalidRunTransition unless ``current -> target`` is allowed."""
    if target not in _ALLOWED_TRANSITIONS[current]:
        raise InvalidRunTransition(current.value, target.value)


class RunLifecycle:
    """Drives one ControlRun record through its states.

    One instance per execution. Not reusable: once terminal, every further
    transition raises InvalidRunTransition.

    Args:
        run_repo: Run record persistence.
        control_id: Executed control's id.
        dataset_id: Requested dataset id.
        tenant_id: Owning tenant.
        triggered_by: Requesting user.

    Attributes:
        stage: Execution step in flight, kept current by the engine so an
            interrupted run records where it stopped.
    """

    def __init__(
        self,
        run_repo: IControlRunRepository,
        control_id: str,
        dataset_id: uuid.UUID,
        tenant_id: uuid.UUID,
        triggered_by: uuid.UUID,
    ) -> None:
        self._run_repo = run_repo
        self.run_id = uuid.uuid4()
        self.control_id = control_id
        self.dataset_id = dataset_id
        self.tenant_id = tenant_id
        self.triggered_by = triggered_by
        self.status: RunStatus | None = None
        self.started_at: datetime | None = None
        self.stage = "run start"

    async def start(self) -> ControlRun:
        """Create the run record as ``pending`` and move it to ``running``."""
        if self.status is not None:
            raise InvalidRunTransition(self.status.value, RunStatus.PENDING.value)

        self.started_at = datetime.now(UTC)
        await self._run_repo.create(
            run_id=self.run_id,
            control_id=self.control_id,
            dataset_id=self.dataset_id,
            tenant_id=self.tenant_id,
            triggered_by=self.triggered_by,
            started_at=self.started_at,
        )
        self.status = RunStatus.PENDING
        return await self._transition(RunStatus.RUNNING)

    async def complete(self, results: dict[str, Any], evidence_hash: str) -> ControlRun:
        """Finalize the run as ``completed`` with its results and evidence hash."""
        return await self._transition(
            RunStatus.COMPLETED,
            {
                "completed_at": datetime.now(UTC),
                "results": results,
                "evidence_hash": evidence_hash,
            },
        )

    async def fail(self, error: CompliancePilotError) -> ControlRun:
        """Finalize the run as ``failed`` with the error's stored message."""
        return await self._transition(
            RunStatus.FAILED,
            {
                "completed_at": datetime.now(UTC),
                "error_message": error.to_run_error(),
            },
        )

    async def _transition(
        self,
        target: RunStatus,
        values: dict[str, Any] | None = None,
    ) -> ControlRun:
        if self.status is None:
            raise InvalidRunTransition("none", target.value)
        ensure_transition(self.status, target)

        run = await self._run_repo.transition(
            run_id=self.run_id,
            expected_status=self.status.value,
            new_status=target.value,
            values=values,
        )
        logger.info(
            "Control run status changed",
            run_id=str(self.run_id),
            from_status=self.status.value,
            to_status=target.value,
        )
        self.status = target
        return run
