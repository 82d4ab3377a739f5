"""
Batch scheduling of module updates.

Requests are classified against each module's current version and executed
one at a time, lowest risk first. Requests of equal risk keep their input
order. A failed update does not affect the others unless stop_on_error is
set; a failed rollback always halts the batch.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator

from safe_update.errors import (
    FailedPreconditionError,
    InvalidArgumentError,
    RollbackError,
    UpdateError,
)
from safe_update.logging import get_logger
from safe_update.updates.state_machine import OutcomeKind, UpdateOutcome, UpdateStateMachine
from safe_update.updates.version import RiskLevel, UpdateType, classify, get_strategy, risk_rank

logger = get_logger(__name__)


class UpdateRequest(BaseModel):
    """
    One requested module update.

    Attributes:
        module: Module path relative to the repository root.
        target_version: Version to update to.
        approved: Caller approves updates that require approval.
    """

    module: str = Field(..., min_length=1)
    target_version: str = Field(..., min_length=1)
    approved: bool = False

    @field_validator("module", "target_version")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Reject blank values."""
        v = v.strip()
        if not v:
            raise ValueError("Value must not be blank")
        return v


class BatchStatus(str, Enum):
    """Per-request status within a batch."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class BatchEntry(BaseModel):
    """
    Result of one request in a batch.

    Attributes:
        request: The request.
        update_type: Classification used for ordering.
        risk_level: Risk used for ordering.
        status: Whether the update succeeded, failed or was skipped.
        reason: Why the request failed or was skipped.
        outcome: Update outcome, when the update ran.
    """

    request: UpdateRequest
    update_type: UpdateType
    risk_level: RiskLevel
    status: BatchStatus
    reason: str | None = None
    outcome: UpdateOutcome | None = None


class BatchResult(BaseModel):
    """
    Result of a batch, in execution order.

    Attributes:
        entries: One entry per request, in risk-sorted order.
        halted: The batch stopped before running every request.
    """

    entries: list[BatchEntry] = Field(default_factory=list)
    halted: bool = False

    def _with_status(self, status: BatchStatus) -> list[BatchEntry]:
        return [entry for entry in self.entries if entry.status == status]

    @property
    def succeeded(self) -> list[BatchEntry]:
        """Get entries whose update succeeded."""
        return self._with_status(BatchStatus.SUCCEEDED)

    @property
    def failed(self) -> list[BatchEntry]:
        """Get entries whose update failed."""
        return self._with_status(BatchStatus.FAILED)

    @property
    def skipped(self) -> list[BatchEntry]:
        """Get entries that were not applied."""
        return self._with_status(BatchStatus.SKIPPED)

    @property
    def fatal(self) -> bool:
        """Check if a rollback failed during the batch."""
        return any(
            entry.outcome is not None
            and entry.outcome.kind == OutcomeKind.FATAL_MANUAL_INTERVENTION_REQUIRED
            for entry in self.entries
        )

    def summary(self) -> dict[str, int | bool]:
        """Return entry counts by status."""
        return {
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
            "halted": self.halted,
        }


class BatchScheduler:
    """
    Runs update requests sequentially, ordered by risk.

    Attributes:
        machine: State machine executing each update.
        stop_on_error: Halt after the first failed update.
    """

    def __init__(self, machine: UpdateStateMachine, stop_on_error: bool = False) -> None:
        self.machine = machine
        self.stop_on_error = stop_on_error

    def classify_request(self, request: UpdateRequest) -> UpdateType:
        """Classify a request against the module's current version."""
        try:
            current = self.machine.module_repository(request.module).describe_version()
        except (UpdateError, OSError) as e:
            # Unknown current versions take the strictest path
            logger.warning(
                "Could not read current version",
                extra={"module_path": request.module, "error": str(e)},
            )
            current = None
        return classify(current, request.target_version)

    def order(self, requests: list[UpdateRequest]) -> list[tuple[UpdateRequest, UpdateType]]:
        """
        Classify requests and sort them by ascending risk.

        The sort is stable: requests of equal risk keep their input order.
        """
        classified = [(request, self.classify_request(request)) for request in requests]
        return sorted(
            classified,
            key=lambda item: risk_rank(get_strategy(item[1]).risk_level),
        )

    def run(self, requests: list[UpdateRequest]) -> BatchResult:
        """
        Run a batch of updates.

        Args:
            requests: Requests in caller order.

        Returns:
            BatchResult with one entry per request, in execution order.
        """
        ordered = self.order(requests)
        result = BatchResult()

        logger.info(
            "Starting batch update",
            extra={
                "count": len(ordered),
                "order": [request.module for request, _ in ordered],
                "stop_on_error": self.stop_on_error,
            },
        )

        for request, update_type in ordered:
            risk_level = get_strategy(update_type).risk_level

            if result.halted:
                result.entries.append(
                    BatchEntry(
                        request=request,
                        update_type=update_type,
                        risk_level=risk_level,
                        status=BatchStatus.SKIPPED,
                        reason="Batch halted before this update ran",
                    )
                )
                continue

            entry = self._run_one(request, update_type, risk_level)
            result.entries.append(entry)

            fatal = (
                entry.outcome is not None
                and entry.outcome.kind == OutcomeKind.FATAL_MANUAL_INTERVENTION_REQUIRED
            )
            if fatal or (entry.status == BatchStatus.FAILED and self.stop_on_error):
                result.halted = True
                logger.warning(
                    "Batch halted",
                    extra={"module_path": request.module, "fatal": fatal},
                )

        logger.info("Batch update finished", extra=result.summary())
        return result

    def _run_one(
        self,
        request: UpdateRequest,
        update_type: UpdateType,
        risk_level: RiskLevel,
    ) -> BatchEntry:
        logger.info(
            "Processing batch update",
            extra={
                "module_path": request.module,
                "target_version": request.target_version,
                "update_type": update_type.value,
            },
        )

        try:
            outcome = self.machine.update(
                request.module,
                request.target_version,
                approved=request.approved,
            )
        except RollbackError as e:
            outcome = self.machine.fatal_outcome(e)
        except (FailedPreconditionError, InvalidArgumentError) as e:
            return BatchEntry(
                request=request,
                update_type=update_type,
                risk_level=risk_level,
                status=BatchStatus.FAILED,
                reason=e.message,
            )

        if outcome.kind == OutcomeKind.SUCCESS:
            status = BatchStatus.SUCCEEDED
        elif outcome.kind == OutcomeKind.REJECTED_NEEDS_APPROVAL:
            status = BatchStatus.SKIPPED
        else:
            status = BatchStatus.FAILED
            logger.warning(
                f"Update of {request.module} failed: {outcome.message}",
                extra={"module_path": request.module, "kind": outcome.kind.value},
            )

        return BatchEntry(
            request=request,
            update_type=outcome.update_type or update_type,
            risk_level=risk_level,
            status=status,
            reason=None if status == BatchStatus.SUCCEEDED else outcome.message,
            outcome=outcome,
        )
