"""
Data models for the quality gate engine.

Gates are static descriptors; GateResult and QualityReport are produced
fresh on every evaluation and are frozen once returned.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Gate(BaseModel):
    """
    A named quality dimension with its weight and criticality.

    Attributes:
        name: Gate name (e.g., "security").
        weight: Relative weight in the overall score (0-100).
        critical: Whether failing this gate alone blocks deployment.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Gate name")
    weight: float = Field(..., ge=0, le=100, description="Weight in the overall score")
    critical: bool = Field(default=False, description="Failure blocks deployment")


SECURITY_GATE = Gate(name="security", weight=25, critical=True)
STABILITY_GATE = Gate(name="stability", weight=20, critical=True)
PERFORMANCE_GATE = Gate(name="performance", weight=15, critical=False)
CONTRACT_GATE = Gate(name="contract", weight=20, critical=True)
DEPLOYMENT_GATE = Gate(name="deployment", weight=20, critical=True)

GATES: tuple[Gate, ...] = (
    SECURITY_GATE,
    STABILITY_GATE,
    PERFORMANCE_GATE,
    CONTRACT_GATE,
    DEPLOYMENT_GATE,
)

GATES_BY_NAME: dict[str, Gate] = {gate.name: gate for gate in GATES}


class GateResult(BaseModel):
    """
    Outcome of evaluating one gate.

    Attributes:
        gate: Name of the evaluated gate.
        score: Score between 0 and 100.
        passed: Whether the score met the gate threshold.
        checks: Individual check values that produced the score.
        issues: Unmet checks, populated only when the gate fails.
    """

    model_config = ConfigDict(frozen=True)

    gate: str = Field(..., description="Gate name")
    score: float = Field(..., ge=0, le=100, description="Gate score (0-100)")
    passed: bool = Field(..., description="Score met the gate threshold")
    checks: dict[str, Any] = Field(
        default_factory=dict,
        description="Check name to measured value",
    )
    issues: list[str] = Field(
        default_factory=list,
        description="Unmet checks, in evaluation order",
    )


class QualityReport(BaseModel):
    """
    Deployability decision for one module.

    Attributes:
        module: Module the report was produced for, if known.
        overall_score: Weighted mean of the evaluated gate scores.
        can_deploy: Overall score met the minimum and no critical gate failed.
        gate_results: Gate name to result.
        failed_critical_gates: Names of critical gates that did not pass.
        critical_failures: Issues of failed critical gates.
        warnings: Issues of non-critical gates and notes on imperfect passes.
        evaluated_at: ISO 8601 timestamp of the evaluation.
    """

    model_config = ConfigDict(frozen=True)

    module: str | None = Field(default=None, description="Evaluated module path")
    overall_score: float = Field(..., ge=0, le=100)
    can_deploy: bool = Field(...)
    gate_results: dict[str, GateResult] = Field(default_factory=dict)
    failed_critical_gates: list[str] = Field(default_factory=list)
    critical_failures: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    evaluated_at: str = Field(
        default_factory=lambda: datetime.now(UTC).isoformat(),
        description="ISO 8601 timestamp of the evaluation",
    )



class RepositoryQualityReport(BaseModel):
    """
    Deployability summary over every module of the repository.

    Attributes:
        modules: Module path to its report.
        unavailable: Module path to the reason it could not be evaluated.
        total_modules: Modules listed, evaluated or not.
        deployable_modules: Evaluated modules that can deploy.
        average_score: Mean overall score of the evaluated modules.
        critical_issues: Critical failures and unavailable modules, prefixed
            with the module path.
        can_deploy: Every listed module was evaluated and can deploy.
        evaluated_at: ISO 8601 timestamp of the evaluation.
    """

    model_config = ConfigDict(frozen=True)

    modules: dict[str, QualityReport] = Field(default_factory=dict)
    unavailable: dict[str, str] = Field(default_factory=dict)
    total_modules: int = Field(default=0, ge=0)
    deployable_modules: int = Field(default=0, ge=0)
    average_score: float = Field(default=0.0, ge=0, le=100)
    critical_issues: list[str] = Field(default_factory=list)
    can_deploy: bool = Field(...)
    evaluated_at: str = Field(
        default_factory=lambda: datetime.now(UTC).isoformat(),
        description="ISO 8601 timestamp of the evaluation",
    )
