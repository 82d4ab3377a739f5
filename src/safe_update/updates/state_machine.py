"""
Update state machine for safe-update.

This module implements the UpdateStateMachine class that drives one module
through a controlled, reversible version switch.

State machine states:
- idle: No update in progress
- pre_validating: Checking the module, working trees and target version
- approved: Update may proceed under its strategy
- rejected: Update requires approval that was not given
- aborted: Validation failed before anything was changed
- snapshotted: Rollback point recorded
- applying: Checking out the target version
- post_validating: Re-running quality gates and the compatibility check
- committing: Recording the new module ref in the parent repository
- done: Update completed successfully
- rolling_back: Restoring the rollback point
- rolled_back: Rollback completed
- failed: Rollback failed, manual intervention required

Every failure after the snapshot leads to rolling_back. A failure of the
rollback itself escapes as RollbackError.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from safe_update.errors import (
    ApplyError,
    CompatibilityError,
    FailedPreconditionError,
    GateFailure,
    InternalError,
    InvalidArgumentError,
    RepositoryError,
    RollbackError,
    UpdateError,
    ValidationError,
)
from safe_update.gates.models import QualityReport
from safe_update.logging import get_logger
from safe_update.updates.context import Module, UpdateContext
from safe_update.updates.rollback import RepositoryFactory, RollbackManager
from safe_update.updates.version import UpdateType, classify, get_strategy

if TYPE_CHECKING:
    from safe_update.gates.contract import ContractComparator
    from safe_update.gates.quality import QualityGates
    from safe_update.repository import Repository

logger = get_logger(__name__)


class UpdateState(str, Enum):
    """
    States for the update state machine.

    State transitions:
    - idle → pre_validating (start update)
    - pre_validating → approved | rejected | aborted
    - pre_validating → done (target is already checked out, nothing to change)
    - approved → snapshotted (rollback point recorded)
    - approved → aborted (snapshot could not be recorded)
    - snapshotted → applying
    - applying → post_validating (target checked out)
    - post_validating → committing (gates passed)
    - committing → done (parent commit recorded)
    - snapshotted | applying | post_validating | committing → rolling_back
    - rolling_back → rolled_back | failed
    - done | rejected | aborted | rolled_back | failed → idle (reset)
    """

    IDLE = "idle"
    PRE_VALIDATING = "pre_validating"
    APPROVED = "approved"
    REJECTED = "rejected"
    ABORTED = "aborted"
    SNAPSHOTTED = "snapshotted"
    APPLYING = "applying"
    POST_VALIDATING = "post_validating"
    COMMITTING = "committing"
    DONE = "done"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {
        UpdateState.DONE,
        UpdateState.REJECTED,
        UpdateState.ABORTED,
        UpdateState.ROLLED_BACK,
        UpdateState.FAILED,
    }
)

# Valid state transitions
_VALID_TRANSITIONS: dict[UpdateState, set[UpdateState]] = {
    UpdateState.IDLE: {UpdateState.PRE_VALIDATING},
    UpdateState.PRE_VALIDATING: {
        UpdateState.APPROVED,
        UpdateState.REJECTED,
        UpdateState.ABORTED,
        UpdateState.DONE,
    },
    UpdateState.APPROVED: {UpdateState.SNAPSHOTTED, UpdateState.ABORTED},
    UpdateState.SNAPSHOTTED: {UpdateState.APPLYING, UpdateState.ROLLING_BACK},
    UpdateState.APPLYING: {UpdateState.POST_VALIDATING, UpdateState.ROLLING_BACK},
    UpdateState.POST_VALIDATING: {UpdateState.COMMITTING, UpdateState.ROLLING_BACK},
    UpdateState.COMMITTING: {UpdateState.DONE, UpdateState.ROLLING_BACK},
    UpdateState.ROLLING_BACK: {UpdateState.ROLLED_BACK, UpdateState.FAILED},
    UpdateState.DONE: {UpdateState.IDLE},
    UpdateState.REJECTED: {UpdateState.IDLE},
    UpdateState.ABORTED: {UpdateState.IDLE},
    UpdateState.ROLLED_BACK: {UpdateState.IDLE},
    UpdateState.FAILED: {UpdateState.IDLE},
}


class OutcomeKind(str, Enum):
    """Final result of an update request."""

    SUCCESS = "success"
    REJECTED_NEEDS_APPROVAL = "rejected_needs_approval"
    VALIDATION_FAILED = "validation_failed"
    ROLLED_BACK = "rolled_back"
    FATAL_MANUAL_INTERVENTION_REQUIRED = "fatal_manual_intervention_required"


_OUTCOME_BY_STATE: dict[UpdateState, OutcomeKind] = {
    UpdateState.DONE: OutcomeKind.SUCCESS,
    UpdateState.REJECTED: OutcomeKind.REJECTED_NEEDS_APPROVAL,
    UpdateState.ABORTED: OutcomeKind.VALIDATION_FAILED,
    UpdateState.ROLLED_BACK: OutcomeKind.ROLLED_BACK,
    UpdateState.FAILED: OutcomeKind.FATAL_MANUAL_INTERVENTION_REQUIRED,
}


class UpdateOutcome(BaseModel):
    """
    Result of one update request.

    Attributes:
        kind: Outcome classification.
        module: Module path.
        target_version: Requested version.
        update_type: Classification, if pre-validation got that far.
        final_state: Terminal state of the state machine.
        message: Human-readable summary.
        error: Serialized error that ended the attempt, if any.
        commit_ref: Parent commit recording the update, on success.
        report: Post-update quality report, if gates were evaluated.
        context: Full attempt record.
    """

    kind: OutcomeKind
    module: str
    target_version: str
    update_type: UpdateType | None = None
    final_state: UpdateState
    message: str
    error: dict[str, Any] | None = None
    commit_ref: str | None = None
    report: QualityReport | None = None
    context: UpdateContext | None = Field(default=None, exclude=True)

    @property
    def succeeded(self) -> bool:
        """Check if the update was applied and committed."""
        return self.kind == OutcomeKind.SUCCESS


ProgressCallback = Callable[[UpdateState, UpdateContext], None]


class UpdateStateMachine:
    """
    Drives a single module update from validation to commit or rollback.

    One instance runs one update at a time. After an attempt ends the
    machine rests in its terminal state until the next update() resets it.

    Attributes:
        parent: Handle of the enclosing repository.
        quality_gates: Gate evaluation used after the switch.
        comparator: Contract comparison used for the compatibility check.
        rollback_manager: Records and restores rollback points.
    """

    def __init__(
        self,
        parent: Repository,
        quality_gates: QualityGates,
        comparator: ContractComparator,
        repository_factory: RepositoryFactory,
        rollback_manager: RollbackManager | None = None,
        require_tag: bool = True,
        commit_prefix: str = "update",
    ) -> None:
        """
        Initialize the UpdateStateMachine.

        Args:
            parent: Handle of the enclosing repository.
            quality_gates: Gate evaluation used after the switch.
            comparator: Contract comparison used for the compatibility check.
            repository_factory: Builds a Repository handle for a module path.
            rollback_manager: Rollback manager; one is created when omitted.
            require_tag: Target version must be an existing tag.
            commit_prefix: Commit type prefix for parent commits.
        """
        self.parent = parent
        self.quality_gates = quality_gates
        self.comparator = comparator
        self._repository_factory = repository_factory
        self.rollback_manager = rollback_manager or RollbackManager(parent, repository_factory)
        self.require_tag = require_tag
        self.commit_prefix = commit_prefix

        self._state = UpdateState.IDLE
        self._context: UpdateContext | None = None
        self._report: QualityReport | None = None
        self._error: UpdateError | None = None
        self._progress_callbacks: list[ProgressCallback] = []

    @property
    def state(self) -> UpdateState:
        """Get the current state."""
        return self._state

    @property
    def context(self) -> UpdateContext | None:
        """Get the context of the current or last attempt."""
        return self._context

    def add_progress_callback(self, callback: ProgressCallback) -> None:
        """Add a callback to be notified of state changes."""
        self._progress_callbacks.append(callback)

    def _notify_progress(self) -> None:
        """Notify all registered callbacks of state change."""
        if self._context is None:
            return
        for callback in self._progress_callbacks:
            try:
                callback(self._state, self._context)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    def _transition_to(self, new_state: UpdateState) -> None:
        """
        Transition to a new state.

        Raises:
            InvalidArgumentError: If the transition is not valid.
        """
        current = self._state

        if new_state not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidArgumentError(
                f"Invalid state transition from {current.value} to {new_state.value}",
                details={
                    "current_state": current.value,
                    "target_state": new_state.value,
                    "valid_transitions": sorted(
                        s.value for s in _VALID_TRANSITIONS.get(current, set())
                    ),
                },
            )

        module = self._context.module.path if self._context else None
        logger.info(
            f"State transition: {current.value} -> {new_state.value}",
            extra={
                "old_state": current.value,
                "new_state": new_state.value,
                "module_path": module,
            },
        )

        self._state = new_state
        if self._context is not None:
            self._context.transitions.append(new_state.value)
        self._notify_progress()

    def reset(self) -> None:
        """
        Return the state machine to idle from a terminal state.

        Raises:
            FailedPreconditionError: If an update is in progress.
        """
        if self._state == UpdateState.IDLE:
            return
        if self._state not in TERMINAL_STATES:
            raise FailedPreconditionError(
                f"Cannot reset while in {self._state.value} state",
                details={"current_state": self._state.value},
            )
        self._transition_to(UpdateState.IDLE)

    def get_status(self) -> dict[str, Any]:
        """
        Get the current update status.

        Returns:
            Dictionary with state, module, version, update type, visited
            states and the last error, if any.
        """
        context = self._context
        return {
            "state": self._state.value,
            "module": context.module.path if context else None,
            "target_version": context.target_version if context else None,
            "update_type": context.update_type.value if context and context.update_type else None,
            "transitions": list(context.transitions) if context else [],
            "rollback_pending": bool(context and context.rollback_point)
            and self._state not in TERMINAL_STATES,
            "error": self._error.to_dict() if self._error else None,
        }

    # -------------------------------------------------------------------------
    # Update flow
    # -------------------------------------------------------------------------

    def update(
        self,
        module: str,
        target_version: str,
        approved: bool = False,
    ) -> UpdateOutcome:
        """
        Update a module to a target version.

        Args:
            module: Module path relative to the parent repository root.
            target_version: Tag (or ref, when tags are not required) to switch to.
            approved: Caller approves updates whose strategy requires approval.

        Returns:
            UpdateOutcome for success (including a module already at the
            target), rejection, validation failure or a completed rollback.

        Raises:
            InvalidArgumentError: If module or target_version is empty, or the
                module path leaves the repository root.
            FailedPreconditionError: If another update is in progress.
            RollbackError: If the update failed and the rollback failed too.
        """
        if self._state not in TERMINAL_STATES and self._state != UpdateState.IDLE:
            raise FailedPreconditionError(
                f"Cannot start an update while in {self._state.value} state",
                details={"current_state": self._state.value},
            )
        if self.rollback_manager.pending:
            raise FailedPreconditionError(
                "Unresolved rollback point, manual intervention required",
                details={
                    "pending": [point.model_dump() for point in self.rollback_manager.pending]
                },
            )
        self.reset()

        try:
            context = UpdateContext(
                module=Module(path=module),
                target_version=target_version,
                approved=approved,
            )
        except ValueError as e:
            raise InvalidArgumentError(
                f"Invalid update request: {e}",
                details={"module": module, "target_version": target_version},
            ) from e

        self._context = context
        self._report = None
        self._error = None

        logger.info(
            "Starting module update",
            extra={"module_path": context.module.path, "target_version": target_version},
        )
        self._transition_to(UpdateState.PRE_VALIDATING)

        try:
            module_repo = self._pre_validate(context)
        except Exception as e:
            self._error = self._as_update_error(e)
            self._transition_to(UpdateState.ABORTED)
            return self._finish(f"Validation failed: {self._error.message}")

        if self._state == UpdateState.REJECTED:
            return self._finish(
                f"{context.update_type.value} update requires approval"  # type: ignore[union-attr]
            )
        if self._state == UpdateState.DONE:
            return self._finish(
                f"{context.module.path} is already at {context.target_version}, nothing to update"
            )

        try:
            self.rollback_manager.snapshot(context)
        except Exception as e:
            self._error = self._as_update_error(e)
            self._transition_to(UpdateState.ABORTED)
            return self._finish(f"Could not record rollback point: {self._error.message}")
        self._transition_to(UpdateState.SNAPSHOTTED)

        try:
            self._apply(context, module_repo)
            self._post_validate(context, module_repo)
            self._commit(context)
        except Exception as e:
            self._error = self._as_update_error(e)
            logger.warning(
                "Update failed, initiating rollback",
                extra={
                    "module_path": context.module.path,
                    "state": self._state.value,
                    "error_code": self._error.error_code,
                    "error": self._error.message,
                },
            )
            return self._roll_back(context)

        self.rollback_manager.release(context)
        self._transition_to(UpdateState.DONE)
        logger.info(
            "Module update completed",
            extra={
                "module_path": context.module.path,
                "target_version": context.target_version,
                "commit_ref": context.commit_ref,
            },
        )
        return self._finish(
            f"Updated {context.module.path} to {context.target_version}"
        )

    def _pre_validate(self, context: UpdateContext) -> Repository:
        """Validate the request and classify it; ends in approved, rejected or done."""
        module = context.module
        module_repo = self.module_repository(module.path)

        if not module_repo.exists():
            raise ValidationError(
                f"Module {module.path} does not exist",
                details={"module": module.path, "path": str(module_repo.path)},
            )
        if not module_repo.is_clean():
            raise ValidationError(
                f"Module {module.path} has uncommitted changes",
                details={"module": module.path},
            )
        # A dirty parent would lose its changes if the commit had to be undone
        if not self.parent.is_clean():
            raise ValidationError(
                "Parent repository has uncommitted changes",
                details={"path": str(self.parent.path)},
            )
        if self.require_tag and not module_repo.tag_exists(context.target_version):
            raise ValidationError(
                f"Target version {context.target_version} does not exist in {module.path}",
                details={"module": module.path, "target_version": context.target_version},
            )

        try:
            module.target_ref = module_repo.resolve_ref(context.target_version)
        except RepositoryError as e:
            raise ValidationError(
                f"Target version {context.target_version} does not resolve to a commit",
                details={"module": module.path, "target_version": context.target_version},
            ) from e
        module.current_ref = module_repo.current_ref()
        module.current_version = module_repo.describe_version()

        update_type = classify(module.current_version, context.target_version)
        strategy = get_strategy(update_type)
        context.update_type = update_type
        context.validation["pre_validation"] = {
            "current_version": module.current_version,
            "current_ref": module.current_ref,
            "target_ref": module.target_ref,
            "update_type": update_type.value,
            "risk_level": strategy.risk_level.value,
        }

        logger.info(
            "Update classified",
            extra={
                "module_path": module.path,
                "current_version": module.current_version,
                "target_version": context.target_version,
                "update_type": update_type.value,
                "risk_level": strategy.risk_level.value,
            },
        )

        if module.target_ref == module.current_ref:
            context.validation["pre_validation"]["up_to_date"] = True
            logger.info(
                "Module already at target version",
                extra={"module_path": module.path, "target_version": context.target_version},
            )
            self._transition_to(UpdateState.DONE)
        elif strategy.requires_approval and not context.approved:
            self._transition_to(UpdateState.REJECTED)
        else:
            self._transition_to(UpdateState.APPROVED)
        return module_repo

    def _apply(self, context: UpdateContext, module_repo: Repository) -> None:
        """Check out the target version and verify the resulting ref."""
        self._transition_to(UpdateState.APPLYING)
        module = context.module

        module_repo.checkout(context.target_version)
        new_ref = module_repo.current_ref()
        if new_ref != module.target_ref:
            raise ApplyError(
                f"Checkout verification failed: expected {module.target_ref}, got {new_ref}",
                details={
                    "module": module.path,
                    "expected_ref": module.target_ref,
                    "actual_ref": new_ref,
                },
            )

    def _post_validate(self, context: UpdateContext, module_repo: Repository) -> None:
        """Re-run the quality gates and, when required, the compatibility check."""
        self._transition_to(UpdateState.POST_VALIDATING)
        module = context.module
        module_path = self.parent.path / module.path

        contract = self.comparator.compare(module_path, module_repo, module.current_ref)
        report = self.quality_gates.evaluate(
            module_path,
            module_repo,
            previous_ref=module.current_ref,
            contract=contract,
            module_name=module.path,
        )
        self._report = report
        context.validation["quality_gates"] = {
            "overall_score": report.overall_score,
            "can_deploy": report.can_deploy,
            "failed_critical_gates": report.failed_critical_gates,
        }

        if report.failed_critical_gates:
            raise GateFailure(
                f"Quality gate failures: {', '.join(report.failed_critical_gates)}",
                details={
                    "module": module.path,
                    "failed_gates": report.failed_critical_gates,
                    "critical_failures": report.critical_failures,
                    "overall_score": report.overall_score,
                },
            )

        strategy = get_strategy(context.update_type)  # type: ignore[arg-type]
        if strategy.requires_compatibility_test:
            context.validation["contract"] = {
                "has_contract": contract.has_contract,
                "breaking_changes": contract.breaking_changes,
            }
            if contract.breaking_changes:
                raise CompatibilityError(
                    f"Breaking changes detected: {', '.join(contract.breaking_changes)}",
                    details={
                        "module": module.path,
                        "breaking_changes": contract.breaking_changes,
                    },
                )

    def _commit(self, context: UpdateContext) -> None:
        """Record the module's new ref in the parent repository."""
        self._transition_to(UpdateState.COMMITTING)
        message = self.build_commit_message(context, self._report)
        context.commit_ref = self.parent.commit([context.module.path], message)

    def build_commit_message(
        self,
        context: UpdateContext,
        report: QualityReport | None,
    ) -> str:
        """
        Build the parent commit message for an update.

        The subject names the module and versions; the body records the
        update type, both full commit ids and the validation outcome.
        """
        module = context.module
        contract = context.validation.get("contract")
        if contract is None:
            contract_line = "not required"
        elif contract["has_contract"]:
            contract_line = "passed (no breaking changes)"
        else:
            contract_line = "passed (no contract)"

        lines = [
            f"{self.commit_prefix}({module.path}): "
            f"{module.current_version or 'unknown'} -> {context.target_version}",
            "",
            f"Update-Type: {context.update_type.value if context.update_type else 'unknown'}",
            f"Previous-Commit: {module.current_ref}",
            f"New-Commit: {module.target_ref}",
        ]
        if report is not None:
            lines.append(f"Quality-Score: {report.overall_score:.2f}")
            lines.append(
                "Quality-Gates: "
                + ", ".join(
                    f"{name}={'pass' if result.passed else 'fail'}"
                    for name, result in report.gate_results.items()
                )
            )
        lines.append(f"Contract-Check: {contract_line}")
        return "\n".join(lines) + "\n"

    def _roll_back(self, context: UpdateContext) -> UpdateOutcome:
        """Restore the rollback point; raises RollbackError if that fails."""
        self._transition_to(UpdateState.ROLLING_BACK)
        try:
            self.rollback_manager.restore(context)
        except RollbackError as e:
            self._transition_to(UpdateState.FAILED)
            context.finish()
            logger.critical(
                "Rollback failed, manual intervention required",
                extra={
                    "module_path": context.module.path,
                    "rollback_point": context.rollback_point.model_dump()
                    if context.rollback_point
                    else None,
                    "error": e.message,
                },
            )
            raise

        self._transition_to(UpdateState.ROLLED_BACK)
        return self._finish(
            f"Update of {context.module.path} rolled back: {self._error.message}"  # type: ignore[union-attr]
        )

    def module_repository(self, module: str) -> Repository:
        """Return a Repository handle for a module path."""
        return self._repository_factory(self.parent.path / module)

    def fatal_outcome(self, error: RollbackError) -> UpdateOutcome:
        """
        Build the outcome reported for an attempt whose rollback failed.

        Raises:
            FailedPreconditionError: If the machine is not in the failed state.
        """
        if self._state != UpdateState.FAILED or self._context is None:
            raise FailedPreconditionError(
                "No failed update to report",
                details={"current_state": self._state.value},
            )
        context = self._context
        return UpdateOutcome(
            kind=OutcomeKind.FATAL_MANUAL_INTERVENTION_REQUIRED,
            module=context.module.path,
            target_version=context.target_version,
            update_type=context.update_type,
            final_state=self._state,
            message=(
                f"Rollback of {context.module.path} failed, manual intervention required: "
                f"{error.message}"
            ),
            error=error.to_dict(),
            report=self._report,
            context=context,
        )

    def _finish(self, message: str) -> UpdateOutcome:
        context = self._context
        assert context is not None
        context.finish()
        return UpdateOutcome(
            kind=_OUTCOME_BY_STATE[self._state],
            module=context.module.path,
            target_version=context.target_version,
            update_type=context.update_type,
            final_state=self._state,
            message=message,
            error=self._error.to_dict() if self._error else None,
            commit_ref=context.commit_ref,
            report=self._report,
            context=context,
        )

    @staticmethod
    def _as_update_error(error: Exception) -> UpdateError:
        if isinstance(error, UpdateError):
            return error
        logger.error(
            "Unexpected error during update",
            extra={"error_type": type(error).__name__},
            exc_info=error,
        )
        wrapped = InternalError(
            f"Unexpected error: {error}",
            details={"error_type": type(error).__name__},
        )
        wrapped.__cause__ = error
        return wrapped
