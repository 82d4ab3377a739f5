"""
Module facts for the quality gates.

Facts are the raw inputs of gate scoring: file existence checks, audit
results, coverage, build outcome and timing, bundle size and dependency
counts. Each gate reads one facts section; a missing section means the gate
is not evaluated.

FilesystemFactsProvider measures facts from a module's working tree:
- Security: policy/ignore/env files, secret scan, `npm audit`, HTTPS and auth
  heuristics
- Stability: release tags, tests, coverage reports, build run, error
  handling, rollback capability, health endpoint (optionally probed over HTTP)
- Performance: bundle size, build time, dependency count
- Deployment: manifest scripts, deployment and environment configuration
"""

from __future__ import annotations

import fnmatch
import json
import re
import subprocess
import time
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, Field

from safe_update.config import FactsConfig
from safe_update.errors import RepositoryError, UnavailableError
from safe_update.gates.contract import ContractReport
from safe_update.logging import get_logger
from safe_update.updates.version import parse_semantic_version

if TYPE_CHECKING:
    from safe_update.repository import Repository

logger = get_logger(__name__)

# =============================================================================
# Facts Models
# =============================================================================


class SecurityFacts(BaseModel):
    """Inputs of the security gate."""

    has_security_policy: bool = False
    secure_ignore_rules: bool = False
    has_env_example: bool = False
    no_hardcoded_secrets: bool = False
    vulnerability_count: int | None = Field(
        default=None,
        ge=0,
        description="Known vulnerabilities; None when the audit could not run",
    )
    https_enforced: bool = False
    has_auth: bool = False


class StabilityFacts(BaseModel):
    """Inputs of the stability gate."""

    has_stable_tag: bool = False
    stable_tag: str | None = None
    has_tests: bool = False
    test_coverage_percent: float | None = Field(default=None, ge=0, le=100)
    build_passes: bool | None = Field(
        default=None,
        description="Build outcome; None when the build was not run",
    )
    has_error_handling: bool = False
    can_rollback: bool = False
    has_health_endpoint: bool = False


class PerformanceFacts(BaseModel):
    """Inputs of the performance gate."""

    bundle_size_bytes: int = Field(default=0, ge=0)
    build_time_seconds: float | None = Field(default=None, ge=0)
    dependency_count: int = Field(default=0, ge=0)


class DeploymentFacts(BaseModel):
    """Inputs of the deployment gate."""

    has_package_manifest: bool = False
    has_build_script: bool = False
    has_start_script: bool = False
    has_deployment_config: bool = False
    has_env_config: bool = False
    has_health_check_script: bool = False
    production_ready: bool = False


class ModuleFacts(BaseModel):
    """
    All facts collected for one module.

    A section left as None excludes the corresponding gate from evaluation.
    """

    security: SecurityFacts | None = None
    stability: StabilityFacts | None = None
    performance: PerformanceFacts | None = None
    contract: ContractReport | None = None
    deployment: DeploymentFacts | None = None


class ModuleFactsProvider(ABC):
    """Abstract base class for fact collectors."""

    @abstractmethod
    def collect(self, module_path: Path, repository: Repository) -> ModuleFacts:
        """
        Collect facts for a module.

        The contract section is filled by the caller from a ContractComparator.

        Args:
            module_path: Root of the module working tree.
            repository: Repository handle for the module.

        Returns:
            ModuleFacts with every section this provider measures.
        """
        pass


# =============================================================================
# Filesystem Facts Provider
# =============================================================================

_SECRET_PATTERNS = (
    re.compile(r"password\s*=\s*[\"'][^\"']+[\"']", re.IGNORECASE),
    re.compile(r"api.?key\s*=\s*[\"'][^\"']+[\"']", re.IGNORECASE),
    re.compile(r"secret\s*=\s*[\"'][^\"']+[\"']", re.IGNORECASE),
    re.compile(r"token\s*=\s*[\"'][^\"']+[\"']", re.IGNORECASE),
)
_INSECURE_URL_PATTERN = re.compile(
    r"http://(?!localhost|127\.0\.0\.1|0\.0\.0\.0|\[::1\])[\w.-]+", re.IGNORECASE
)
_AUTH_PATTERN = re.compile(
    r"\b(auth\w*|jwt|passport|bearer|oauth\w*|session)\b", re.IGNORECASE
)
_ERROR_HANDLING_PATTERN = re.compile(
    r"\btry\s*[:{]|\bcatch\s*\(|\.catch\(|\bexcept\b|errorHandler|@app\.exception_handler"
)
_HEALTH_ROUTE_PATTERN = re.compile(r"[\"'`]/(health|healthz|status|ready)[\"'`]")

_SKIP_DIRS = frozenset(
    {".git", "node_modules", "dist", "build", "coverage", ".venv", "venv", "__pycache__"}
)
_TEST_DIRS = ("tests", "test", "__tests__", "spec")
_BUNDLE_DIRS = ("dist", "build", ".next/static")
_DEPLOYMENT_FILES = (
    "Dockerfile",
    "docker-compose.yml",
    "docker-compose.yaml",
    "Procfile",
    "vercel.json",
    "netlify.toml",
    "fly.toml",
    "app.yaml",
    "k8s",
    "helm",
)
_ENV_CONFIG_FILES = (".env.example", ".env.sample", "config", ".envrc")
_LOCK_FILES = ("package-lock.json", "yarn.lock", "pnpm-lock.yaml", "poetry.lock", "uv.lock")
_STABLE_TAG_PATTERN = re.compile(r"^v?\d+\.\d+\.\d+$")


class FilesystemFactsProvider(ModuleFactsProvider):
    """
    Measures module facts from the working tree and external tools.

    Attributes:
        config: Fact measurement settings.
    """

    def __init__(self, config: FactsConfig | None = None) -> None:
        """
        Initialize the provider.

        Args:
            config: Fact measurement settings. Defaults to FactsConfig().
        """
        self.config = config or FactsConfig()

    def collect(self, module_path: Path, repository: Repository) -> ModuleFacts:
        manifest = self._load_manifest(module_path)
        sources = self._read_sources(module_path)
        build_passes, build_time = self.run_build(module_path, manifest)

        facts = ModuleFacts(
            security=self.collect_security(module_path, manifest, sources),
            stability=self.collect_stability(
                module_path, repository, manifest, sources, build_passes
            ),
            performance=PerformanceFacts(
                bundle_size_bytes=self.measure_bundle_size(module_path),
                build_time_seconds=build_time,
                dependency_count=self.count_dependencies(module_path, manifest),
            ),
            deployment=self.collect_deployment(module_path, manifest),
        )

        logger.info(
            "Collected module facts",
            extra={"module_path": str(module_path), "build_passes": build_passes},
        )
        return facts

    # -------------------------------------------------------------------------
    # Sections
    # -------------------------------------------------------------------------

    def collect_security(
        self,
        module_path: Path,
        manifest: dict[str, Any] | None,
        sources: dict[str, str],
    ) -> SecurityFacts:
        """Measure the security gate inputs."""
        return SecurityFacts(
            has_security_policy=(module_path / "SECURITY.md").is_file(),
            secure_ignore_rules=self.check_ignore_rules(module_path),
            has_env_example=(module_path / ".env.example").is_file(),
            no_hardcoded_secrets=not any(
                pattern.search(text) for text in sources.values() for pattern in _SECRET_PATTERNS
            ),
            vulnerability_count=self.count_vulnerabilities(module_path, manifest),
            https_enforced=not any(_INSECURE_URL_PATTERN.search(text) for text in sources.values()),
            has_auth=any(_AUTH_PATTERN.search(text) for text in sources.values()),
        )

    def collect_stability(
        self,
        module_path: Path,
        repository: Repository,
        manifest: dict[str, Any] | None,
        sources: dict[str, str],
        build_passes: bool | None,
    ) -> StabilityFacts:
        """Measure the stability gate inputs."""
        try:
            tags = repository.list_tags()
        except (RepositoryError, UnavailableError) as e:
            logger.warning(
                "Could not list module tags",
                extra={"module_path": str(module_path), "error": str(e)},
            )
            tags = []

        stable_tags = [tag for tag in tags if _STABLE_TAG_PATTERN.match(tag)]
        # Pre-release tags may sort above the newest stable release
        latest = max(stable_tags, key=parse_semantic_version) if stable_tags else None

        return StabilityFacts(
            has_stable_tag=latest is not None,
            stable_tag=latest,
            has_tests=any((module_path / name).is_dir() for name in _TEST_DIRS),
            test_coverage_percent=self.read_coverage(module_path),
            build_passes=build_passes,
            has_error_handling=any(
                _ERROR_HANDLING_PATTERN.search(text) for text in sources.values()
            ),
            # A previous release must exist to roll back to
            can_rollback=len(stable_tags) >= 2,
            has_health_endpoint=self.check_health_endpoint(sources),
        )

    def collect_deployment(
        self,
        module_path: Path,
        manifest: dict[str, Any] | None,
    ) -> DeploymentFacts:
        """Measure the deployment gate inputs."""
        scripts: dict[str, Any] = (manifest or {}).get("scripts") or {}
        dockerfile = module_path / "Dockerfile"

        has_health_check_script = (
            any(name in scripts for name in ("healthcheck", "health-check", "health"))
            or any(module_path.glob("healthcheck*"))
            or any(module_path.glob("scripts/health*"))
            or (dockerfile.is_file() and "HEALTHCHECK" in dockerfile.read_text(errors="replace"))
        )

        return DeploymentFacts(
            has_package_manifest=manifest is not None,
            has_build_script="build" in scripts,
            has_start_script="start" in scripts,
            has_deployment_config=any((module_path / name).exists() for name in _DEPLOYMENT_FILES),
            has_env_config=any((module_path / name).exists() for name in _ENV_CONFIG_FILES),
            has_health_check_script=has_health_check_script,
            production_ready=(
                manifest is not None
                and "engines" in manifest
                and any((module_path / name).is_file() for name in _LOCK_FILES)
            ),
        )

    # -------------------------------------------------------------------------
    # Individual measurements
    # -------------------------------------------------------------------------

    def check_ignore_rules(self, module_path: Path) -> bool:
        """Return True if .gitignore covers every required pattern."""
        gitignore = module_path / ".gitignore"
        if not gitignore.is_file():
            return False
        content = gitignore.read_text(errors="replace")
        return all(pattern in content for pattern in self.config.required_ignore_patterns)

    def count_vulnerabilities(
        self,
        module_path: Path,
        manifest: dict[str, Any] | None,
    ) -> int | None:
        """
        Run the audit command and return the total vulnerability count.

        Returns:
            Vulnerability count, 0 when there is no package.json to audit, or
            None when the audit could not be run or parsed.
        """
        # An unreadable package.json is audited too
        if manifest is None and not (module_path / "package.json").is_file():
            return 0

        try:
            result = subprocess.run(
                self.config.audit_command,
                cwd=module_path,
                capture_output=True,
                text=True,
                timeout=self.config.build_timeout_seconds,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            logger.warning(
                "Vulnerability audit could not run",
                extra={"module_path": str(module_path), "error": str(e)},
            )
            return None

        # npm audit exits non-zero when it finds vulnerabilities
        try:
            audit = json.loads(result.stdout)
            total = audit["metadata"]["vulnerabilities"]["total"]
            return int(total)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(
                "Vulnerability audit output not understood",
                extra={
                    "module_path": str(module_path),
                    "returncode": result.returncode,
                    "error": str(e),
                },
            )
            return None

    def run_build(
        self,
        module_path: Path,
        manifest: dict[str, Any] | None,
    ) -> tuple[bool | None, float | None]:
        """
        Run the module build and time it.

        Returns:
            Tuple of (build_passes, build_time_seconds). A module without a
            build step passes in zero seconds; (None, None) when the build
            exists but is disabled or could not be started. An unreadable
            package.json fails without running anything.
        """
        command = self.config.build_command
        if command is None:
            if manifest is None and (module_path / "package.json").is_file():
                logger.warning(
                    "Build cannot run with an invalid package.json",
                    extra={"module_path": str(module_path)},
                )
                return False, None
            scripts = (manifest or {}).get("scripts") or {}
            if "build" not in scripts:
                return True, 0.0
            command = ["npm", "run", "build"]

        if not self.config.run_build:
            logger.info("Build disabled, build outcome unknown", extra={"module_path": str(module_path)})
            return None, None

        started = time.monotonic()
        try:
            result = subprocess.run(
                command,
                cwd=module_path,
                capture_output=True,
                text=True,
                timeout=self.config.build_timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            elapsed = time.monotonic() - started
            logger.warning(
                "Build timed out",
                extra={"module_path": str(module_path), "timeout": self.config.build_timeout_seconds},
            )
            return False, elapsed
        except FileNotFoundError as e:
            logger.warning(
                "Build command not available",
                extra={"module_path": str(module_path), "command": command, "error": str(e)},
            )
            return None, None

        elapsed = time.monotonic() - started
        if result.returncode != 0:
            logger.warning(
                "Build failed",
                extra={
                    "module_path": str(module_path),
                    "returncode": result.returncode,
                    "stderr": result.stderr[-2000:],
                },
            )
        return result.returncode == 0, elapsed

    def read_coverage(self, module_path: Path) -> float | None:
        """
        Read line coverage from a coverage report.

        Supports istanbul `coverage/coverage-summary.json` and Cobertura
        `coverage.xml`.
        """
        summary = module_path / "coverage" / "coverage-summary.json"
        if summary.is_file():
            try:
                data = json.loads(summary.read_text())
                return float(data["total"]["lines"]["pct"])
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Unreadable coverage summary", extra={"error": str(e)})

        for cobertura in (module_path / "coverage.xml", module_path / "coverage" / "cobertura-coverage.xml"):
            if cobertura.is_file():
                try:
                    root = ET.parse(cobertura).getroot()
                    return float(root.attrib["line-rate"]) * 100
                except (ET.ParseError, KeyError, ValueError) as e:
                    logger.warning("Unreadable Cobertura report", extra={"error": str(e)})

        return None

    def check_health_endpoint(self, sources: dict[str, str]) -> bool:
        """
        Check for a health endpoint.

        When health_url is configured the endpoint is probed and must answer
        200; otherwise the sources are searched for a health route.
        """
        if self.config.health_url:
            try:
                response = httpx.get(
                    self.config.health_url,
                    timeout=self.config.health_timeout_seconds,
                )
            except httpx.HTTPError as e:
                logger.warning(
                    "Health probe failed",
                    extra={"url": self.config.health_url, "error": str(e)},
                )
                return False
            return response.status_code == 200

        return any(_HEALTH_ROUTE_PATTERN.search(text) for text in sources.values())

    def measure_bundle_size(self, module_path: Path) -> int:
        """Return the total size in bytes of the build output directories."""
        total = 0
        for name in _BUNDLE_DIRS:
            bundle_dir = module_path / name
            if bundle_dir.is_dir():
                total += sum(f.stat().st_size for f in bundle_dir.rglob("*") if f.is_file())
        return total

    def count_dependencies(
        self,
        module_path: Path,
        manifest: dict[str, Any] | None,
    ) -> int:
        """Count declared dependencies from package.json or requirements.txt."""
        if manifest is not None:
            return len(manifest.get("dependencies") or {}) + len(
                manifest.get("devDependencies") or {}
            )

        requirements = module_path / "requirements.txt"
        if requirements.is_file():
            return sum(
                1
                for line in requirements.read_text(errors="replace").splitlines()
                if line.strip() and not line.strip().startswith(("#", "-"))
            )
        return 0

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _load_manifest(self, module_path: Path) -> dict[str, Any] | None:
        manifest_path = module_path / "package.json"
        if not manifest_path.is_file():
            return None
        try:
            data = json.loads(manifest_path.read_text())
        except json.JSONDecodeError as e:
            logger.warning(
                "Invalid package.json",
                extra={"module_path": str(module_path), "error": str(e)},
            )
            return None
        if not isinstance(data, dict):
            logger.warning(
                "package.json is not an object",
                extra={"module_path": str(module_path), "type": type(data).__name__},
            )
            return None
        return data

    def _iter_source_files(self, module_path: Path) -> Iterator[Path]:
        extensions = set(self.config.source_extensions)
        for path in sorted(module_path.rglob("*")):
            relative = path.relative_to(module_path)
            if any(part in _SKIP_DIRS for part in relative.parts):
                continue
            if path.is_file() and path.suffix in extensions:
                if fnmatch.fnmatch(path.name, "*.lock") or path.name in _LOCK_FILES:
                    continue
                yield path

    def _read_sources(self, module_path: Path) -> dict[str, str]:
        sources: dict[str, str] = {}
        for path in self._iter_source_files(module_path):
            if len(sources) >= self.config.max_scan_files:
                break
            sources[str(path.relative_to(module_path))] = path.read_text(errors="replace")
        return sources
