"""
Per-gate scoring.

Each evaluate_<gate> function turns one facts section into a GateResult.
Functions are pure: the same facts and thresholds always give the same
result. Unknown facts (None) count as unmet checks.

Issues are only listed when a gate fails, one entry per unmet check.
"""

from __future__ import annotations

from safe_update.config import GatesConfig
from safe_update.gates.contract import ContractReport
from safe_update.gates.facts import (
    DeploymentFacts,
    ModuleFacts,
    PerformanceFacts,
    SecurityFacts,
    StabilityFacts,
)
from safe_update.gates.models import (
    CONTRACT_GATE,
    DEPLOYMENT_GATE,
    PERFORMANCE_GATE,
    SECURITY_GATE,
    STABILITY_GATE,
    Gate,
    GateResult,
)
from safe_update.logging import get_logger

logger = get_logger(__name__)

PERFORMANCE_BASE_SCORE = 85.0
BUNDLE_SIZE_PENALTY = 15.0
BUILD_TIME_PENALTY = 10.0
DEPENDENCY_COUNT_PENALTY = 5.0
VULNERABILITY_PENALTY = 5
MAX_VULNERABILITY_PENALTY = 30


def _clamp(score: float) -> float:
    return max(0.0, min(100.0, score))


def _result(
    gate: Gate,
    score: float,
    threshold: float,
    checks: dict,
    unmet: list[str],
) -> GateResult:
    score = _clamp(score)
    passed = score >= threshold
    return GateResult(
        gate=gate.name,
        score=score,
        passed=passed,
        checks=checks,
        issues=[] if passed else unmet,
    )


def evaluate_security(facts: SecurityFacts, threshold: float = 90.0) -> GateResult:
    """
    Score the security gate.

    Seven checks contribute equally; each known vulnerability then costs 5
    points, capped at 30.
    """
    vulnerabilities = facts.vulnerability_count
    checks = {
        "has_security_policy": facts.has_security_policy,
        "secure_ignore_rules": facts.secure_ignore_rules,
        "has_env_example": facts.has_env_example,
        "no_hardcoded_secrets": facts.no_hardcoded_secrets,
        "no_vulnerabilities": vulnerabilities == 0,
        "https_enforced": facts.https_enforced,
        "has_auth": facts.has_auth,
    }
    messages = {
        "has_security_policy": "Missing SECURITY.md policy",
        "secure_ignore_rules": "Ignore rules do not exclude secrets and dependencies",
        "has_env_example": "Missing .env.example",
        "no_hardcoded_secrets": "Hardcoded secrets detected",
        "no_vulnerabilities": (
            "Vulnerability audit unavailable"
            if vulnerabilities is None
            else f"{vulnerabilities} known vulnerabilities"
        ),
        "https_enforced": "Insecure http:// URLs in sources",
        "has_auth": "No authentication implementation detected",
    }

    score = sum(checks.values()) * 100 / len(checks)
    score -= min((vulnerabilities or 0) * VULNERABILITY_PENALTY, MAX_VULNERABILITY_PENALTY)

    unmet = [messages[name] for name, ok in checks.items() if not ok]
    checks["vulnerability_count"] = vulnerabilities
    return _result(SECURITY_GATE, score, threshold, checks, unmet)


def evaluate_stability(facts: StabilityFacts, threshold: float = 90.0) -> GateResult:
    """Score the stability gate (100 point additive scale)."""
    coverage = facts.test_coverage_percent
    score = 0.0
    score += 20 if facts.has_stable_tag else 0
    score += 15 if facts.has_tests else 0
    score += min(coverage or 0.0, 20.0)
    score += 15 if facts.build_passes else 0
    score += 10 if facts.has_error_handling else 0
    score += 10 if facts.can_rollback else 0
    score += 10 if facts.has_health_endpoint else 0

    unmet = []
    if not facts.has_stable_tag:
        unmet.append("No stable release tag")
    if not facts.has_tests:
        unmet.append("No tests found")
    if coverage is None:
        unmet.append("Test coverage unknown")
    elif coverage < 20:
        unmet.append(f"Test coverage {coverage:g}% below 20%")
    if facts.build_passes is None:
        unmet.append("Build outcome unknown")
    elif not facts.build_passes:
        unmet.append("Build fails")
    if not facts.has_error_handling:
        unmet.append("No error handling detected")
    if not facts.can_rollback:
        unmet.append("No previous release to roll back to")
    if not facts.has_health_endpoint:
        unmet.append("No health endpoint")

    checks = {
        "has_stable_tag": facts.has_stable_tag,
        "stable_tag": facts.stable_tag,
        "has_tests": facts.has_tests,
        "test_coverage_percent": coverage,
        "build_passes": facts.build_passes,
        "has_error_handling": facts.has_error_handling,
        "can_rollback": facts.can_rollback,
        "has_health_endpoint": facts.has_health_endpoint,
    }
    return _result(STABILITY_GATE, score, threshold, checks, unmet)


def evaluate_contract(report: ContractReport, threshold: float = 90.0) -> GateResult:
    """Score the contract gate from a contract comparison report."""
    breaking = len(report.breaking_changes)
    score = 0.0
    score += 30 if report.has_contract else 0
    score += 25 if report.is_valid else 0
    score += min(report.compatibility_score, 25.0)
    score += 10 if report.version else 0
    score += 10 if breaking == 0 else 0

    unmet = []
    if not report.has_contract:
        unmet.append("No API contract")
    if not report.is_valid:
        unmet.append("API contract is invalid")
    if report.compatibility_score < 25:
        unmet.append(f"Low compatibility score ({report.compatibility_score:g})")
    if not report.version:
        unmet.append("API contract has no version")
    if breaking:
        unmet.append(f"{breaking} breaking changes: {'; '.join(report.breaking_changes)}")

    checks = {
        "has_contract": report.has_contract,
        "contract_file": report.contract_file,
        "contract_valid": report.is_valid,
        "compatibility_score": report.compatibility_score,
        "has_version": bool(report.version),
        "breaking_changes": breaking,
    }
    return _result(CONTRACT_GATE, score, threshold, checks, unmet)


def evaluate_deployment(facts: DeploymentFacts, threshold: float = 90.0) -> GateResult:
    """Score the deployment gate as the fraction of satisfied checks."""
    checks = {
        "has_package_manifest": facts.has_package_manifest,
        "has_build_script": facts.has_build_script,
        "has_start_script": facts.has_start_script,
        "has_deployment_config": facts.has_deployment_config,
        "has_env_config": facts.has_env_config,
        "has_health_check_script": facts.has_health_check_script,
        "production_ready": facts.production_ready,
    }
    messages = {
        "has_package_manifest": "Missing package manifest",
        "has_build_script": "No build script",
        "has_start_script": "No start script",
        "has_deployment_config": "No deployment configuration",
        "has_env_config": "No environment configuration",
        "has_health_check_script": "No health check script",
        "production_ready": "Not production ready (lockfile and engines required)",
    }
    score = sum(checks.values()) * 100 / len(checks)
    unmet = [messages[name] for name, ok in checks.items() if not ok]
    return _result(DEPLOYMENT_GATE, score, threshold, checks, unmet)


def evaluate_performance(
    facts: PerformanceFacts,
    threshold: float = 70.0,
    max_bundle_size_bytes: int = 5_000_000,
    max_build_time_seconds: float = 300.0,
    max_dependency_count: int = 50,
) -> GateResult:
    """Score the performance gate: a fixed base with penalties for each exceeded limit."""
    score = PERFORMANCE_BASE_SCORE
    unmet = []

    if facts.bundle_size_bytes > max_bundle_size_bytes:
        score -= BUNDLE_SIZE_PENALTY
        unmet.append(f"Bundle size {facts.bundle_size_bytes} bytes exceeds {max_bundle_size_bytes}")
    if facts.build_time_seconds is not None and facts.build_time_seconds > max_build_time_seconds:
        score -= BUILD_TIME_PENALTY
        unmet.append(
            f"Build time {facts.build_time_seconds:.1f}s exceeds {max_build_time_seconds:g}s"
        )
    if facts.dependency_count > max_dependency_count:
        score -= DEPENDENCY_COUNT_PENALTY
        unmet.append(f"{facts.dependency_count} dependencies exceed {max_dependency_count}")

    checks = {
        "bundle_size_bytes": facts.bundle_size_bytes,
        "build_time_seconds": facts.build_time_seconds,
        "dependency_count": facts.dependency_count,
    }
    return _result(PERFORMANCE_GATE, score, threshold, checks, unmet)


class GateEvaluator:
    """
    Evaluates every gate whose facts are present.

    Attributes:
        config: Thresholds and performance limits.
    """

    def __init__(self, config: GatesConfig | None = None) -> None:
        self.config = config or GatesConfig()

    def evaluate_all(self, facts: ModuleFacts) -> dict[Gate, GateResult]:
        """
        Evaluate all gates with available facts.

        Returns:
            Gate to GateResult, in gate declaration order.
        """
        config = self.config
        results: dict[Gate, GateResult] = {}

        if facts.security is not None:
            results[SECURITY_GATE] = evaluate_security(facts.security, config.critical_threshold)
        if facts.stability is not None:
            results[STABILITY_GATE] = evaluate_stability(facts.stability, config.critical_threshold)
        if facts.performance is not None:
            results[PERFORMANCE_GATE] = evaluate_performance(
                facts.performance,
                config.performance_threshold,
                max_bundle_size_bytes=config.max_bundle_size_bytes,
                max_build_time_seconds=config.max_build_time_seconds,
                max_dependency_count=config.max_dependency_count,
            )
        if facts.contract is not None:
            results[CONTRACT_GATE] = evaluate_contract(facts.contract, config.critical_threshold)
        if facts.deployment is not None:
            results[DEPLOYMENT_GATE] = evaluate_deployment(
                facts.deployment, config.critical_threshold
            )

        for gate, result in results.items():
            logger.info(
                "Gate evaluated",
                extra={"gate": gate.name, "score": result.score, "passed": result.passed},
            )
        return results
