"""
Command surface for safe-update.

ModuleUpdater wires the repository handles, quality gates, rollback manager
and state machine from an AppConfig and exposes the commands:
- update: update one module to a version
- batch_update: update many modules, lowest risk first
- evaluate: score a module against the quality gates without changing it
- evaluate_all: score every submodule and summarize the repository
"""

from __future__ import annotations

from collections.abc import Sequence
from functools import partial
from pathlib import Path

from safe_update.config import AppConfig
from safe_update.errors import RollbackError, ValidationError
from safe_update.gates.aggregator import summarize
from safe_update.gates.contract import ContractComparator, HeuristicContractComparator
from safe_update.gates.facts import FilesystemFactsProvider, ModuleFactsProvider
from safe_update.gates.models import QualityReport, RepositoryQualityReport
from safe_update.gates.quality import QualityGates
from safe_update.logging import get_logger
from safe_update.repository import GitRepository, Repository
from safe_update.updates.batch import BatchResult, BatchScheduler, UpdateRequest
from safe_update.updates.rollback import RepositoryFactory, RollbackManager
from safe_update.updates.state_machine import UpdateOutcome, UpdateStateMachine

logger = get_logger(__name__)


class ModuleUpdater:
    """
    Entry point for module updates and evaluations.

    Attributes:
        config: Application configuration.
        parent: Handle of the enclosing repository.
        quality_gates: Gate evaluation facade.
        machine: State machine executing updates.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        parent: Repository | None = None,
        repository_factory: RepositoryFactory | None = None,
        facts_provider: ModuleFactsProvider | None = None,
        comparator: ContractComparator | None = None,
    ) -> None:
        """
        Initialize the ModuleUpdater.

        Collaborators default to the git-backed and filesystem-backed
        implementations configured by `config`.

        Args:
            config: Application configuration. Defaults to AppConfig().
            parent: Enclosing repository handle.
            repository_factory: Builds a Repository handle for a module path.
            facts_provider: Module fact collector.
            comparator: Contract comparison strategy.
        """
        self.config = config or AppConfig()
        repo_config = self.config.repository

        self._repository_factory = repository_factory or partial(
            GitRepository,
            git_binary=repo_config.git_binary,
            timeout=repo_config.command_timeout_seconds,
        )
        self.parent = parent or self._repository_factory(Path(repo_config.root))
        self.comparator = comparator or HeuristicContractComparator()
        self.quality_gates = QualityGates(
            facts_provider or FilesystemFactsProvider(self.config.facts),
            self.comparator,
            self.config.gates,
        )
        self.rollback_manager = RollbackManager(self.parent, self._repository_factory)
        self.machine = UpdateStateMachine(
            self.parent,
            self.quality_gates,
            self.comparator,
            self._repository_factory,
            rollback_manager=self.rollback_manager,
            require_tag=repo_config.require_tag,
            commit_prefix=self.config.updates.commit_prefix,
        )

    def update(
        self,
        module: str,
        target_version: str,
        approved: bool = False,
    ) -> UpdateOutcome:
        """
        Update one module.

        A failed rollback is reported as a
        fatal_manual_intervention_required outcome rather than raised.

        Args:
            module: Module path relative to the repository root.
            target_version: Version to update to.
            approved: Approve updates that require approval.

        Returns:
            UpdateOutcome of the attempt.
        """
        try:
            return self.machine.update(module, target_version, approved=approved)
        except RollbackError as e:
            outcome = self.machine.fatal_outcome(e)
            logger.critical(
                "Manual intervention required",
                extra={"module_path": module, "error": e.to_dict()},
            )
            return outcome

    def batch_update(
        self,
        requests: Sequence[UpdateRequest],
        stop_on_error: bool | None = None,
    ) -> BatchResult:
        """
        Update many modules sequentially, lowest risk first.

        Args:
            requests: Update requests in caller order.
            stop_on_error: Halt after the first failure. Defaults to the
                configured updates.stop_on_error.

        Returns:
            BatchResult in execution order.
        """
        if stop_on_error is None:
            stop_on_error = self.config.updates.stop_on_error
        scheduler = BatchScheduler(self.machine, stop_on_error=stop_on_error)
        return scheduler.run(list(requests))

    def evaluate(self, module: str) -> QualityReport:
        """
        Score a module against the quality gates.

        Args:
            module: Module path relative to the repository root.

        Returns:
            QualityReport for the module's current checkout.

        Raises:
            ValidationError: If the module does not exist.
        """
        module_repo = self.machine.module_repository(module)
        if not module_repo.exists():
            raise ValidationError(
                f"Module {module} does not exist",
                details={"module": module, "path": str(module_repo.path)},
            )
        return self.quality_gates.evaluate(module_repo.path, module_repo, module_name=module)

    def evaluate_all(self) -> RepositoryQualityReport:
        """
        Score every submodule of the enclosing repository.

        Modules registered in .gitmodules but missing from the working tree
        are listed as unavailable and block deployment.

        Returns:
            RepositoryQualityReport over all registered submodules.
        """
        modules = self.parent.list_submodules()
        logger.info("Evaluating all modules", extra={"module_count": len(modules)})

        reports: dict[str, QualityReport] = {}
        unavailable: dict[str, str] = {}
        for module in modules:
            try:
                reports[module] = self.evaluate(module)
            except ValidationError as e:
                logger.warning(
                    "Module could not be evaluated",
                    extra={"module_path": module, "error": e.message},
                )
                unavailable[module] = e.message
        return summarize(reports, unavailable)
