"""
Quality gate facade: facts, contract comparison, gate scoring, aggregation.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from safe_update.config import GatesConfig
from safe_update.gates.aggregator import aggregate
from safe_update.gates.contract import ContractComparator, ContractReport
from safe_update.gates.evaluator import GateEvaluator
from safe_update.gates.facts import ModuleFactsProvider
from safe_update.gates.models import QualityReport
from safe_update.logging import get_logger

if TYPE_CHECKING:
    from safe_update.repository import Repository

logger = get_logger(__name__)


class QualityGates:
    """
    Produces a QualityReport for a module.

    Attributes:
        facts_provider: Collector of module facts.
        comparator: Contract comparison strategy.
        config: Gate thresholds and limits.
    """

    def __init__(
        self,
        facts_provider: ModuleFactsProvider,
        comparator: ContractComparator,
        config: GatesConfig | None = None,
    ) -> None:
        self.facts_provider = facts_provider
        self.comparator = comparator
        self.config = config or GatesConfig()
        self._evaluator = GateEvaluator(self.config)

    def evaluate(
        self,
        module_path: Path,
        repository: Repository,
        previous_ref: str | None = None,
        contract: ContractReport | None = None,
        module_name: str | None = None,
    ) -> QualityReport:
        """
        Evaluate all gates for a module.

        Args:
            module_path: Root of the module working tree.
            repository: Repository handle for the module.
            previous_ref: Commit the contract is compared against.
            contract: Precomputed contract report; compared here when None.
            module_name: Name recorded on the report (defaults to the path).

        Returns:
            QualityReport with every evaluated gate.
        """
        facts = self.facts_provider.collect(module_path, repository)
        if contract is None:
            contract = self.comparator.compare(module_path, repository, previous_ref)
        facts = facts.model_copy(update={"contract": contract})

        results = self._evaluator.evaluate_all(facts)
        return aggregate(
            results,
            minimum_score=self.config.minimum_score,
            module=module_name or str(module_path),
        )
