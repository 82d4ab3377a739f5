"""
Rollback management for module updates.

The RollbackManager records the module and parent repository refs before an
update mutates anything, and restores them when the update fails. Points are
kept on a LIFO stack; each attempt gets at most one.

A failed restore raises RollbackError. It is never retried: the repository
may be in a mixed state that needs manual attention.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from safe_update.errors import (
    FailedPreconditionError,
    RepositoryError,
    RollbackError,
    UnavailableError,
)
from safe_update.logging import get_logger
from safe_update.updates.context import RollbackPoint, UpdateContext

if TYPE_CHECKING:
    from safe_update.repository import Repository

logger = get_logger(__name__)

RepositoryFactory = Callable[[Path], "Repository"]


class RollbackManager:
    """
    Records and restores rollback points.

    Attributes:
        parent: Handle of the enclosing repository.
    """

    def __init__(
        self,
        parent: Repository,
        repository_factory: RepositoryFactory,
    ) -> None:
        """
        Initialize the RollbackManager.

        Args:
            parent: Handle of the enclosing repository.
            repository_factory: Builds a Repository handle for a module path.
        """
        self.parent = parent
        self._repository_factory = repository_factory
        self._stack: list[tuple[str, RollbackPoint]] = []

    @property
    def pending(self) -> list[RollbackPoint]:
        """Get rollback points not yet restored or released, oldest first."""
        return [point for _, point in self._stack]

    def _module_repository(self, module: str) -> Repository:
        return self._repository_factory(self.parent.path / module)

    def _find(self, context: UpdateContext) -> int | None:
        for index, (attempt_id, _) in enumerate(self._stack):
            if attempt_id == context.attempt_id:
                return index
        return None

    def snapshot(self, context: UpdateContext) -> RollbackPoint:
        """
        Record the current module and parent refs for an attempt.

        Args:
            context: The update attempt.

        Returns:
            The recorded RollbackPoint, also stored on the context.

        Raises:
            FailedPreconditionError: If the attempt already has a rollback point.
        """
        if context.rollback_point is not None or self._find(context) is not None:
            raise FailedPreconditionError(
                f"Rollback point already recorded for {context.module.path}",
                details={"module": context.module.path, "attempt_id": context.attempt_id},
            )

        module_repo = self._module_repository(context.module.path)
        point = RollbackPoint(
            module=context.module.path,
            module_ref=module_repo.current_ref(),
            module_branch=module_repo.current_branch(),
            parent_ref=self.parent.current_ref(),
            branch=self.parent.current_branch(),
        )
        self._stack.append((context.attempt_id, point))
        context.rollback_point = point

        logger.info(
            "Rollback point recorded",
            extra={
                "module_path": point.module,
                "module_ref": point.module_ref,
                "module_branch": point.module_branch,
                "parent_ref": point.parent_ref,
                "branch": point.branch,
            },
        )
        return point

    def _module_checkout_target(self, module_repo: Repository, point: RollbackPoint) -> str:
        # Reattach the recorded branch only while its tip is still the recorded commit
        if point.module_branch is None:
            return point.module_ref
        try:
            tip = module_repo.resolve_ref(point.module_branch)
        except RepositoryError:
            logger.debug(
                "Recorded module branch no longer resolves",
                extra={"module_path": point.module, "module_branch": point.module_branch},
            )
            return point.module_ref
        return point.module_branch if tip == point.module_ref else point.module_ref

    def restore(self, context: UpdateContext) -> bool:
        """
        Restore the module and parent refs recorded for an attempt.

        Restoring an attempt whose refs already match its point is a no-op.
        A module that was on a branch is checked out on that branch again
        when the branch still points at the recorded commit.

        Args:
            context: The update attempt.

        Returns:
            True if anything was changed, False if already restored.

        Raises:
            RollbackError: If the attempt has no rollback point, a repository
                operation fails, or the refs do not match after restoring.
        """
        point = context.rollback_point
        if point is None:
            raise RollbackError(
                f"No rollback point for {context.module.path}",
                details={"module": context.module.path, "attempt_id": context.attempt_id},
            )

        logger.warning(
            "Rolling back module update",
            extra={
                "module_path": point.module,
                "module_ref": point.module_ref,
                "parent_ref": point.parent_ref,
            },
        )

        changed = False
        try:
            module_repo = self._module_repository(point.module)

            if module_repo.current_ref() != point.module_ref:
                module_repo.checkout(self._module_checkout_target(module_repo, point))
                changed = True

            if self.parent.current_ref() != point.parent_ref:
                self.parent.undo_last_commit()
                changed = True

            module_ref = module_repo.current_ref()
            parent_ref = self.parent.current_ref()
        except (RepositoryError, UnavailableError) as e:
            raise RollbackError(
                f"Rollback of {point.module} failed: {e.message}",
                details={
                    "module": point.module,
                    "module_ref": point.module_ref,
                    "parent_ref": point.parent_ref,
                    "cause": e.to_dict(),
                },
            ) from e

        if module_ref != point.module_ref or parent_ref != point.parent_ref:
            raise RollbackError(
                f"Rollback of {point.module} did not restore the recorded refs",
                details={
                    "module": point.module,
                    "expected_module_ref": point.module_ref,
                    "actual_module_ref": module_ref,
                    "expected_parent_ref": point.parent_ref,
                    "actual_parent_ref": parent_ref,
                },
            )

        index = self._find(context)
        if index is not None:
            del self._stack[index]

        logger.warning(
            "Rollback completed" if changed else "Rollback not needed, refs already restored",
            extra={"module_path": point.module, "module_ref": module_ref, "parent_ref": parent_ref},
        )
        return changed

    def release(self, context: UpdateContext) -> None:
        """Discard the rollback point of a successfully committed attempt."""
        index = self._find(context)
        if index is not None:
            _, point = self._stack.pop(index)
            logger.debug("Rollback point released", extra={"module_path": point.module})
