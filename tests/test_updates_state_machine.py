"""
Tests for the update state machine.

Tests cover:
- UpdateState enum and transitions
- Pre-validation and approval
- Full update cycle and the parent commit
- Post-validation failures and rollback
- Fatal rollback failures
- Progress callbacks and status reporting
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from safe_update.errors import (
    FailedPreconditionError,
    InvalidArgumentError,
    RepositoryError,
    RollbackError,
)
from safe_update.gates.contract import ContractReport
from safe_update.gates.models import QualityReport
from safe_update.updates.state_machine import (
    _VALID_TRANSITIONS,
    TERMINAL_STATES,
    OutcomeKind,
    UpdateState,
    UpdateStateMachine,
)
from safe_update.updates.version import UpdateType

MODULE = "services/api"

SUCCESS_TRANSITIONS = [
    "pre_validating",
    "approved",
    "snapshotted",
    "applying",
    "post_validating",
    "committing",
    "done",
]


@pytest.fixture
def machine(
    parent_repo: Any,
    quality_gates: MagicMock,
    comparator: MagicMock,
    repository_factory: Callable[[Path], Any],
) -> UpdateStateMachine:
    """State machine over the shared fakes."""
    return UpdateStateMachine(parent_repo, quality_gates, comparator, repository_factory)


# =============================================================================
# UpdateState Tests
# =============================================================================


class TestUpdateState:
    """Tests for UpdateState enum."""

    def test_state_values(self) -> None:
        """Test that states have their string values."""
        assert UpdateState.IDLE.value == "idle"
        assert UpdateState.PRE_VALIDATING.value == "pre_validating"
        assert UpdateState.ROLLING_BACK.value == "rolling_back"
        assert UpdateState("rolled_back") == UpdateState.ROLLED_BACK


class TestValidTransitions:
    """Tests for the transition table."""

    def test_idle_only_starts_validation(self) -> None:
        """Test that idle can only transition to pre_validating."""
        assert _VALID_TRANSITIONS[UpdateState.IDLE] == {UpdateState.PRE_VALIDATING}

    def test_mutating_states_can_roll_back(self) -> None:
        """Test that every state after the snapshot may roll back."""
        for state in (
            UpdateState.SNAPSHOTTED,
            UpdateState.APPLYING,
            UpdateState.POST_VALIDATING,
            UpdateState.COMMITTING,
        ):
            assert UpdateState.ROLLING_BACK in _VALID_TRANSITIONS[state]

    def test_pre_snapshot_states_cannot_roll_back(self) -> None:
        """Test that nothing before the snapshot rolls back."""
        for state in (UpdateState.PRE_VALIDATING, UpdateState.APPROVED):
            assert UpdateState.ROLLING_BACK not in _VALID_TRANSITIONS[state]

    def test_terminal_states_only_reset(self) -> None:
        """Test that terminal states only return to idle."""
        for state in TERMINAL_STATES:
            assert _VALID_TRANSITIONS[state] == {UpdateState.IDLE}

    def test_invalid_transition_raises(self, machine: UpdateStateMachine) -> None:
        """Test that an invalid transition is rejected."""
        with pytest.raises(InvalidArgumentError) as exc_info:
            machine._transition_to(UpdateState.DONE)

        assert exc_info.value.details["current_state"] == "idle"
        assert machine.state == UpdateState.IDLE


# =============================================================================
# Successful Updates
# =============================================================================


class TestSuccessfulUpdate:
    """Tests for updates that complete."""

    def test_patch_update(
        self, machine: UpdateStateMachine, parent_repo: Any, module_repo: Any
    ) -> None:
        """Test a patch update commits one parent change naming both commits."""
        outcome = machine.update(MODULE, "v1.2.4")

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.succeeded is True
        assert outcome.update_type == UpdateType.PATCH
        assert outcome.final_state == UpdateState.DONE
        assert module_repo.current_ref() == "a124"
        assert parent_repo.history == ["p0", outcome.commit_ref]
        assert len(parent_repo.messages) == 1
        message = parent_repo.messages[0]
        assert message.startswith("update(services/api): v1.2.3 -> v1.2.4")
        assert "Previous-Commit: a123" in message
        assert "New-Commit: a124" in message
        assert "Update-Type: patch" in message
        assert outcome.context.transitions == SUCCESS_TRANSITIONS
        assert machine.rollback_manager.pending == []

    def test_gates_score_updated_checkout_only(
        self,
        machine: UpdateStateMachine,
        quality_gates: MagicMock,
        passing_report: QualityReport,
        module_repo: Any,
    ) -> None:
        """Test that the gates run once, after the switch to the target."""
        scored_refs: list[str] = []

        def evaluate(*args: Any, **kwargs: Any) -> QualityReport:
            scored_refs.append(module_repo.current_ref())
            return passing_report

        quality_gates.evaluate.side_effect = evaluate

        outcome = machine.update(MODULE, "v1.2.4")

        assert outcome.kind == OutcomeKind.SUCCESS
        assert scored_refs == ["a124"]

    def test_minor_update_with_approval(
        self, machine: UpdateStateMachine, module_repo: Any
    ) -> None:
        """Test that an approved minor update proceeds."""
        outcome = machine.update(MODULE, "v1.3.0", approved=True)

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.update_type == UpdateType.MINOR
        assert module_repo.current_ref() == "a130"

    def test_major_update_runs_compatibility_check(
        self, machine: UpdateStateMachine, comparator: MagicMock
    ) -> None:
        """Test that an approved major update compares contracts against the old ref."""
        outcome = machine.update(MODULE, "v2.0.0", approved=True)

        assert outcome.kind == OutcomeKind.SUCCESS
        comparator.compare.assert_called_once()
        assert comparator.compare.call_args.args[2] == "a123"
        assert outcome.context.validation["contract"]["breaking_changes"] == []

    def test_quality_report_attached(
        self, machine: UpdateStateMachine, quality_gates: MagicMock
    ) -> None:
        """Test that the post-update report is returned and recorded."""
        outcome = machine.update(MODULE, "v1.2.4")

        assert outcome.report is quality_gates.evaluate.return_value
        assert outcome.context.validation["quality_gates"]["can_deploy"] is True

    def test_custom_commit_prefix(
        self,
        parent_repo: Any,
        quality_gates: MagicMock,
        comparator: MagicMock,
        repository_factory: Callable[[Path], Any],
    ) -> None:
        """Test that the commit prefix is configurable."""
        machine = UpdateStateMachine(
            parent_repo,
            quality_gates,
            comparator,
            repository_factory,
            commit_prefix="chore",
        )
        machine.update(MODULE, "v1.2.4")

        assert parent_repo.messages[0].startswith("chore(services/api):")

    def test_untagged_target_when_tags_not_required(
        self,
        parent_repo: Any,
        quality_gates: MagicMock,
        comparator: MagicMock,
        repository_factory: Callable[[Path], Any],
        module_repo: Any,
    ) -> None:
        """Test that a raw commit is accepted and treated as a major update."""
        machine = UpdateStateMachine(
            parent_repo,
            quality_gates,
            comparator,
            repository_factory,
            require_tag=False,
        )
        outcome = machine.update(MODULE, "a124", approved=True)

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.update_type == UpdateType.MAJOR
        assert module_repo.current_ref() == "a124"

    def test_machine_is_reusable(self, machine: UpdateStateMachine) -> None:
        """Test that a second update starts from a terminal state."""
        machine.update(MODULE, "v1.2.4")
        outcome = machine.update(MODULE, "v1.3.0", approved=True)

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.context.transitions == SUCCESS_TRANSITIONS


# =============================================================================
# Rejection and Validation
# =============================================================================


class TestPreValidation:
    """Tests for updates stopped before any mutation."""

    def test_major_without_approval_rejected(
        self, machine: UpdateStateMachine, parent_repo: Any, module_repo: Any
    ) -> None:
        """Test that a major update without approval is rejected untouched."""
        outcome = machine.update(MODULE, "v2.0.0")

        assert outcome.kind == OutcomeKind.REJECTED_NEEDS_APPROVAL
        assert outcome.final_state == UpdateState.REJECTED
        assert outcome.update_type == UpdateType.MAJOR
        assert module_repo.checkouts == []
        assert parent_repo.history == ["p0"]
        assert outcome.context.rollback_point is None
        assert machine.rollback_manager.pending == []

    def test_minor_without_approval_rejected(self, machine: UpdateStateMachine) -> None:
        """Test that minor updates also need approval."""
        outcome = machine.update(MODULE, "v1.3.0")
        assert outcome.kind == OutcomeKind.REJECTED_NEEDS_APPROVAL

    def test_missing_module(self, machine: UpdateStateMachine) -> None:
        """Test that an unknown module fails validation."""
        outcome = machine.update("services/missing", "v1.0.0")

        assert outcome.kind == OutcomeKind.VALIDATION_FAILED
        assert outcome.final_state == UpdateState.ABORTED
        assert outcome.error["error_code"] == "validation_failed"
        assert "does not exist" in outcome.error["message"]

    def test_dirty_module(self, machine: UpdateStateMachine, module_repo: Any) -> None:
        """Test that uncommitted module changes fail validation."""
        module_repo.clean = False

        outcome = machine.update(MODULE, "v1.2.4")

        assert outcome.kind == OutcomeKind.VALIDATION_FAILED
        assert "uncommitted" in outcome.message

    def test_dirty_parent(self, machine: UpdateStateMachine, parent_repo: Any) -> None:
        """Test that uncommitted parent changes fail validation."""
        parent_repo.clean = False

        outcome = machine.update(MODULE, "v1.2.4")
        assert outcome.kind == OutcomeKind.VALIDATION_FAILED

    def test_unknown_tag(self, machine: UpdateStateMachine, module_repo: Any) -> None:
        """Test that a target tag must exist."""
        outcome = machine.update(MODULE, "v9.9.9")

        assert outcome.kind == OutcomeKind.VALIDATION_FAILED
        assert outcome.error["details"]["target_version"] == "v9.9.9"
        assert module_repo.checkouts == []

    def test_unresolvable_target(self, machine: UpdateStateMachine, module_repo: Any) -> None:
        """Test that a tag that does not resolve fails validation."""
        with patch.object(
            module_repo, "resolve_ref", side_effect=RepositoryError("bad object")
        ):
            outcome = machine.update(MODULE, "v1.2.4")

        assert outcome.kind == OutcomeKind.VALIDATION_FAILED
        assert "does not resolve" in outcome.message

    def test_empty_arguments_rejected(self, machine: UpdateStateMachine) -> None:
        """Test that blank requests are caller errors."""
        with pytest.raises(InvalidArgumentError):
            machine.update("", "v1.2.4")
        with pytest.raises(InvalidArgumentError):
            machine.update(MODULE, "  ")

    @pytest.mark.parametrize("path", ["../elsewhere", "services/../../etc", "/srv/api"])
    def test_paths_outside_repository_rejected(
        self, machine: UpdateStateMachine, module_repo: Any, path: str
    ) -> None:
        """Test that module paths escaping the repository root are caller errors."""
        with pytest.raises(InvalidArgumentError):
            machine.update(path, "v1.2.4")
        assert module_repo.checkouts == []

    def test_already_at_target_is_noop(
        self,
        machine: UpdateStateMachine,
        parent_repo: Any,
        module_repo: Any,
        quality_gates: MagicMock,
    ) -> None:
        """Test that the current version succeeds without touching anything."""
        outcome = machine.update(MODULE, "v1.2.3")

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.final_state == UpdateState.DONE
        assert outcome.update_type == UpdateType.PATCH
        assert outcome.commit_ref is None
        assert "already at v1.2.3" in outcome.message
        assert outcome.context.transitions == ["pre_validating", "done"]
        assert outcome.context.validation["pre_validation"]["up_to_date"] is True
        assert outcome.context.rollback_point is None
        assert module_repo.checkouts == []
        assert parent_repo.history == ["p0"]
        quality_gates.evaluate.assert_not_called()
        assert machine.rollback_manager.pending == []

    def test_same_commit_under_another_tag_needs_no_approval(
        self,
        machine: UpdateStateMachine,
        parent_repo: Any,
        module_repo: Any,
    ) -> None:
        """Test that a major tag on the current commit changes nothing."""
        module_repo.tags["v3.0.0"] = "a123"

        outcome = machine.update(MODULE, "v3.0.0")

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.update_type == UpdateType.MAJOR
        assert module_repo.checkouts == []
        assert parent_repo.history == ["p0"]


# =============================================================================
# Rollback
# =============================================================================


class TestRollback:
    """Tests for failures after the snapshot."""

    def test_security_score_40_rolls_back(
        self,
        machine: UpdateStateMachine,
        quality_gates: MagicMock,
        report_factory: Callable[..., Any],
        parent_repo: Any,
        module_repo: Any,
    ) -> None:
        """Test that a failed critical gate restores the module with no parent commit."""
        quality_gates.evaluate.return_value = report_factory({"security": 40})

        outcome = machine.update(MODULE, "v1.2.4")

        assert outcome.kind == OutcomeKind.ROLLED_BACK
        assert outcome.final_state == UpdateState.ROLLED_BACK
        assert outcome.error["error_code"] == "gate_failure"
        assert outcome.error["details"]["failed_gates"] == ["security"]
        assert module_repo.current_ref() == "a123"
        assert parent_repo.history == ["p0"]
        assert parent_repo.messages == []
        assert outcome.context.transitions[-2:] == ["rolling_back", "rolled_back"]
        assert machine.rollback_manager.pending == []

    def test_non_critical_gate_does_not_roll_back(
        self,
        machine: UpdateStateMachine,
        quality_gates: MagicMock,
        report_factory: Callable[..., Any],
    ) -> None:
        """Test that a failed performance gate alone still commits."""
        quality_gates.evaluate.return_value = report_factory({"performance": 50})

        outcome = machine.update(MODULE, "v1.2.4")
        assert outcome.kind == OutcomeKind.SUCCESS

    def test_breaking_changes_roll_back_major(
        self,
        machine: UpdateStateMachine,
        comparator: MagicMock,
        module_repo: Any,
    ) -> None:
        """Test that a major update with breaking changes is rolled back."""
        comparator.compare.return_value = ContractReport(
            has_contract=True,
            is_valid=True,
            version="2.0.0",
            compatibility_score=80,
            breaking_changes=["Removed endpoints: /users"],
        )

        outcome = machine.update(MODULE, "v2.0.0", approved=True)

        assert outcome.kind == OutcomeKind.ROLLED_BACK
        assert outcome.error["error_code"] == "compatibility_error"
        assert module_repo.current_ref() == "a123"

    def test_breaking_changes_ignored_for_patch(
        self, machine: UpdateStateMachine, comparator: MagicMock
    ) -> None:
        """Test that only strategies requiring it check compatibility."""
        comparator.compare.return_value = ContractReport(
            has_contract=True, is_valid=True, breaking_changes=["Field type changed"]
        )

        outcome = machine.update(MODULE, "v1.2.4")
        assert outcome.kind == OutcomeKind.SUCCESS

    def test_checkout_mismatch_rolls_back(
        self, machine: UpdateStateMachine, module_repo: Any
    ) -> None:
        """Test that a checkout landing on the wrong commit is an apply failure."""
        module_repo.checkout_redirect["v1.2.4"] = "a130"

        outcome = machine.update(MODULE, "v1.2.4")

        assert outcome.kind == OutcomeKind.ROLLED_BACK
        assert outcome.error["error_code"] == "apply_failed"
        assert module_repo.current_ref() == "a123"

    def test_commit_failure_rolls_back(
        self, machine: UpdateStateMachine, parent_repo: Any, module_repo: Any
    ) -> None:
        """Test that a failed parent commit restores the module."""
        with patch.object(
            parent_repo, "commit", side_effect=RepositoryError("git commit failed")
        ):
            outcome = machine.update(MODULE, "v1.2.4")

        assert outcome.kind == OutcomeKind.ROLLED_BACK
        assert outcome.error["error_code"] == "repository_error"
        assert module_repo.current_ref() == "a123"

    def test_unexpected_error_wrapped_and_rolled_back(
        self, machine: UpdateStateMachine, quality_gates: MagicMock, module_repo: Any
    ) -> None:
        """Test that unexpected exceptions become internal errors and roll back."""
        quality_gates.evaluate.side_effect = RuntimeError("boom")

        outcome = machine.update(MODULE, "v1.2.4")

        assert outcome.kind == OutcomeKind.ROLLED_BACK
        assert outcome.error["error_code"] == "internal"
        assert "boom" in outcome.error["message"]
        assert module_repo.current_ref() == "a123"


class TestFatalRollback:
    """Tests for rollback failures."""

    @pytest.fixture
    def failing_rollback(
        self,
        quality_gates: MagicMock,
        report_factory: Callable[..., Any],
        module_repo: Any,
    ) -> None:
        """Fail the gates and break the module checkout once applied."""

        def evaluate(*args: Any, **kwargs: Any) -> Any:
            module_repo.fail_checkout = True
            return report_factory({"security": 40})

        quality_gates.evaluate.side_effect = evaluate

    @pytest.mark.usefixtures("failing_rollback")
    def test_rollback_error_escapes(self, machine: UpdateStateMachine) -> None:
        """Test that a failed rollback raises and leaves the machine failed."""
        with pytest.raises(RollbackError):
            machine.update(MODULE, "v1.2.4")

        assert machine.state == UpdateState.FAILED
        assert machine.context.transitions[-2:] == ["rolling_back", "failed"]
        assert len(machine.rollback_manager.pending) == 1

    @pytest.mark.usefixtures("failing_rollback")
    def test_fatal_outcome(self, machine: UpdateStateMachine) -> None:
        """Test the outcome built for a failed rollback."""
        with pytest.raises(RollbackError) as exc_info:
            machine.update(MODULE, "v1.2.4")

        outcome = machine.fatal_outcome(exc_info.value)

        assert outcome.kind == OutcomeKind.FATAL_MANUAL_INTERVENTION_REQUIRED
        assert outcome.final_state == UpdateState.FAILED
        assert outcome.error["error_code"] == "rollback_failed"

    @pytest.mark.usefixtures("failing_rollback")
    def test_no_further_updates_after_fatal(self, machine: UpdateStateMachine) -> None:
        """Test that an unresolved rollback point blocks new updates."""
        with pytest.raises(RollbackError):
            machine.update(MODULE, "v1.2.4")

        with pytest.raises(FailedPreconditionError):
            machine.update(MODULE, "v1.2.4")

    def test_fatal_outcome_requires_failed_state(self, machine: UpdateStateMachine) -> None:
        """Test that fatal_outcome is only valid after a failed rollback."""
        with pytest.raises(FailedPreconditionError):
            machine.fatal_outcome(RollbackError("x"))


# =============================================================================
# Callbacks and Status
# =============================================================================


class TestProgressAndStatus:
    """Tests for progress callbacks and get_status."""

    def test_callbacks_see_every_transition(self, machine: UpdateStateMachine) -> None:
        """Test that callbacks are notified in order."""
        seen: list[str] = []
        machine.add_progress_callback(lambda state, context: seen.append(state.value))

        machine.update(MODULE, "v1.2.4")

        assert seen == SUCCESS_TRANSITIONS

    def test_failing_callback_does_not_break_update(self, machine: UpdateStateMachine) -> None:
        """Test that callback errors are logged and ignored."""
        machine.add_progress_callback(MagicMock(side_effect=ValueError("callback bug")))

        outcome = machine.update(MODULE, "v1.2.4")
        assert outcome.kind == OutcomeKind.SUCCESS

    def test_status_when_idle(self, machine: UpdateStateMachine) -> None:
        """Test status before any update."""
        status = machine.get_status()

        assert status["state"] == "idle"
        assert status["module"] is None
        assert status["transitions"] == []
        assert status["error"] is None

    def test_status_during_update(self, machine: UpdateStateMachine) -> None:
        """Test live status from inside a callback."""
        snapshots: list[dict[str, Any]] = []

        def capture(state: UpdateState, context: Any) -> None:
            if state == UpdateState.APPLYING:
                snapshots.append(machine.get_status())

        machine.add_progress_callback(capture)
        machine.update(MODULE, "v1.2.4")

        assert snapshots[0]["state"] == "applying"
        assert snapshots[0]["module"] == MODULE
        assert snapshots[0]["update_type"] == "patch"
        assert snapshots[0]["rollback_pending"] is True

    def test_status_after_rollback(
        self,
        machine: UpdateStateMachine,
        quality_gates: MagicMock,
        report_factory: Callable[..., Any],
    ) -> None:
        """Test that status reports the error that caused the rollback."""
        quality_gates.evaluate.return_value = report_factory({"stability": 10})
        machine.update(MODULE, "v1.2.4")

        status = machine.get_status()
        assert status["state"] == "rolled_back"
        assert status["error"]["error_code"] == "gate_failure"
        assert status["rollback_pending"] is False

    def test_reset_refused_mid_update(self, machine: UpdateStateMachine) -> None:
        """Test that reset is refused while an update is running."""
        errors: list[Exception] = []

        def try_reset(state: UpdateState, context: Any) -> None:
            if state == UpdateState.APPLYING:
                try:
                    machine.reset()
                except FailedPreconditionError as e:
                    errors.append(e)

        machine.add_progress_callback(try_reset)
        machine.update(MODULE, "v1.2.4")

        assert len(errors) == 1
