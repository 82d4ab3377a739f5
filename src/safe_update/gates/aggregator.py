"""
Score aggregation for the quality gates.

Combines per-gate results into one deployability decision. Gates without a
result are excluded from both sides of the weighted mean. Module reports
are summarized into one decision for the whole repository.
"""

from __future__ import annotations

from collections.abc import Mapping

from safe_update.gates.models import Gate, GateResult, QualityReport, RepositoryQualityReport
from safe_update.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MINIMUM_SCORE = 80.0


def weighted_score(gate_results: Mapping[Gate, GateResult]) -> float:
    """
    Return the weighted mean of the gate scores.

    Returns:
        Sum of score * weight over the sum of weights present, or 0 when no
        gate (or only zero-weight gates) was evaluated.
    """
    total_weight = sum(gate.weight for gate in gate_results)
    if total_weight == 0:
        return 0.0
    weighted = sum(result.score * gate.weight for gate, result in gate_results.items())
    return weighted / total_weight


def aggregate(
    gate_results: Mapping[Gate, GateResult],
    minimum_score: float = DEFAULT_MINIMUM_SCORE,
    module: str | None = None,
) -> QualityReport:
    """
    Combine gate results into a QualityReport.

    A module can deploy only when the overall score meets minimum_score and
    every critical gate present passed.

    Args:
        gate_results: Evaluated gates and their results.
        minimum_score: Overall score required for deployment.
        module: Module the results belong to.

    Returns:
        QualityReport for the module.

    Example:
        >>> aggregate({Gate(name="a", weight=25): GateResult(gate="a", score=100, passed=True),
        ...            Gate(name="b", weight=75): GateResult(gate="b", score=50, passed=False)}
        ...           ).overall_score
        62.5
    """
    overall = weighted_score(gate_results)

    failed_critical: list[str] = []
    critical_failures: list[str] = []
    warnings: list[str] = []

    for gate, result in gate_results.items():
        if gate.critical and not result.passed:
            failed_critical.append(gate.name)
            critical_failures.extend(result.issues)
        elif not gate.critical:
            warnings.extend(result.issues)

        if result.passed and result.score < 100:
            warnings.append(f"{gate.name} gate passed with score {result.score:.0f}/100")

    can_deploy = overall >= minimum_score and not failed_critical

    report = QualityReport(
        module=module,
        overall_score=round(overall, 2),
        can_deploy=can_deploy,
        gate_results={gate.name: result for gate, result in gate_results.items()},
        failed_critical_gates=failed_critical,
        critical_failures=critical_failures,
        warnings=warnings,
    )

    logger.info(
        "Quality gates aggregated",
        extra={
            "module_path": module,
            "overall_score": report.overall_score,
            "can_deploy": can_deploy,
            "failed_critical_gates": failed_critical,
        },
    )
    return report


def summarize(
    reports: Mapping[str, QualityReport],
    unavailable: Mapping[str, str] | None = None,
) -> RepositoryQualityReport:
    """
    Summarize module reports into a RepositoryQualityReport.

    The repository can deploy only when every listed module was evaluated
    and can deploy. A repository without modules can deploy.

    Args:
        reports: Module path to its QualityReport.
        unavailable: Module path to the reason it could not be evaluated.

    Returns:
        RepositoryQualityReport over all listed modules.
    """
    unavailable = dict(unavailable or {})
    deployable = sum(1 for report in reports.values() if report.can_deploy)
    average = (
        sum(report.overall_score for report in reports.values()) / len(reports)
        if reports
        else 0.0
    )

    critical_issues = [
        f"{module}: {issue}"
        for module, report in reports.items()
        for issue in report.critical_failures
    ]
    critical_issues.extend(f"{module}: {reason}" for module, reason in unavailable.items())

    summary = RepositoryQualityReport(
        modules=dict(reports),
        unavailable=unavailable,
        total_modules=len(reports) + len(unavailable),
        deployable_modules=deployable,
        average_score=round(average, 2),
        critical_issues=critical_issues,
        can_deploy=not unavailable and deployable == len(reports),
    )

    logger.info(
        "Repository quality summarized",
        extra={
            "total_modules": summary.total_modules,
            "deployable_modules": deployable,
            "average_score": summary.average_score,
            "can_deploy": summary.can_deploy,
        },
    )
    return summary
