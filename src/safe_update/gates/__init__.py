"""
Quality gates for safe-update.

This package scores how safe a module is to deploy:
- Gate descriptors and result models (models)
- Module fact collection (facts)
- Contract comparison (contract)
- Per-gate scoring (evaluator)
- Weighted aggregation into a deployability decision, per module and
  repository-wide (aggregator)
- The QualityGates facade tying them together (quality)
"""

from safe_update.gates.aggregator import aggregate, summarize
from safe_update.gates.contract import (
    ContractComparator,
    ContractReport,
    HeuristicContractComparator,
)
from safe_update.gates.evaluator import GateEvaluator
from safe_update.gates.facts import FilesystemFactsProvider, ModuleFacts, ModuleFactsProvider
from safe_update.gates.models import (
    GATES,
    Gate,
    GateResult,
    QualityReport,
    RepositoryQualityReport,
)
from safe_update.gates.quality import QualityGates

__all__ = [
    "GATES",
    "ContractComparator",
    "ContractReport",
    "FilesystemFactsProvider",
    "Gate",
    "GateEvaluator",
    "GateResult",
    "HeuristicContractComparator",
    "ModuleFacts",
    "ModuleFactsProvider",
    "QualityGates",
    "QualityReport",
    "RepositoryQualityReport",
    "aggregate",
    "summarize",
]
