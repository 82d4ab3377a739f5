"""
Service contract comparison.

A ContractComparator inspects a module's API contract file and reports
whether it is present and well-formed, which version it declares, and which
breaking changes it carries relative to an earlier commit.

HeuristicContractComparator infers breaking changes from pattern counts on
the raw contract text rather than a structural schema diff. Its results are
best-effort: it can both miss real breaking changes and flag harmless ones.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

import yaml
from pydantic import BaseModel, ConfigDict, Field

from safe_update.errors import RepositoryError, UnavailableError
from safe_update.logging import get_logger

if TYPE_CHECKING:
    from safe_update.repository import Repository

logger = get_logger(__name__)

# Candidate contract files, in lookup order
CONTRACT_FILES = (
    "openapi.yml",
    "openapi.yaml",
    "swagger.json",
    "api.contract.ts",
    "contracts/api.json",
    "src/contracts/index.ts",
)

# Score when there is no earlier contract to compare against
NEW_CONTRACT_SCORE = 90
# Score when the comparison itself could not be performed
UNCHECKED_CONTRACT_SCORE = 70
BREAKING_CHANGE_PENALTY = 20

_VERSION_PATTERNS = (
    re.compile(r"\"version\":\s*\"([^\"]+)\"", re.IGNORECASE),
    re.compile(r"version:\s*['\"]([^'\"]+)['\"]", re.IGNORECASE),
    re.compile(r"version[\"\s]*:[\"\s]*([^\"'\s,]+)", re.IGNORECASE),
    re.compile(r"Version[\"\s]*=[\"\s]*([^\"'\s;]+)", re.IGNORECASE),
)

# A pattern occurring more often in the new contract signals a breaking change
_GROWTH_PATTERNS = (
    (re.compile(r"required:\s*true"), "New required field added"),
    (re.compile(r"type:\s*[\"']?(\w+)[\"']?"), "Field type changed"),
    (re.compile(r"enum:\s*\[([^\]]+)\]"), "Enum values changed"),
)

_PATH_PATTERN = re.compile(r"paths?[:\s]*[\"']([^\"']+)[\"']", re.IGNORECASE)
_OPENAPI_PATH_KEY = re.compile(r"^\s{2}(/[^\s:]*):\s*$", re.MULTILINE)


class ContractReport(BaseModel):
    """
    Result of inspecting a module's API contract.

    Attributes:
        has_contract: A contract file was found.
        contract_file: Path of the contract file relative to the module.
        is_valid: The contract parsed without syntax errors.
        version: Declared contract version, if any.
        compatibility_score: Backward compatibility score (0-100).
        breaking_changes: Detected breaking changes, in detection order.
        warnings: Non-blocking observations about the contract.
    """

    model_config = ConfigDict(frozen=True)

    has_contract: bool = False
    contract_file: str | None = None
    is_valid: bool = False
    version: str | None = None
    compatibility_score: float = Field(default=0, ge=0, le=100)
    breaking_changes: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ContractComparator(ABC):
    """Abstract base class for contract comparison strategies."""

    @abstractmethod
    def compare(
        self,
        module_path: Path,
        repository: Repository,
        previous_ref: str | None = None,
    ) -> ContractReport:
        """
        Inspect the module's contract and compare it with an earlier commit.

        Args:
            module_path: Root of the module working tree.
            repository: Repository handle for the module.
            previous_ref: Commit to compare against. Implementations choose a
                default (typically the previous commit) when None.

        Returns:
            ContractReport describing the current contract.
        """
        pass


class HeuristicContractComparator(ContractComparator):
    """
    Regex-based contract comparison.

    The comparison counts occurrences of a few schema keywords and declared
    endpoint paths in the old and new contract text. Growth in required
    fields, type declarations or enums, and any removed endpoint, are
    reported as breaking changes.
    """

    DEFAULT_PREVIOUS_REF = "HEAD~1"

    def __init__(self, contract_files: tuple[str, ...] = CONTRACT_FILES) -> None:
        self.contract_files = contract_files

    def find_contract_file(self, module_path: Path) -> str | None:
        """Return the first candidate contract file present in the module."""
        for candidate in self.contract_files:
            if (module_path / candidate).is_file():
                return candidate
        return None

    def compare(
        self,
        module_path: Path,
        repository: Repository,
        previous_ref: str | None = None,
    ) -> ContractReport:
        contract_file = self.find_contract_file(module_path)
        if contract_file is None:
            logger.info("No API contract found", extra={"module_path": str(module_path)})
            return ContractReport(warnings=["No API contract found"])

        content = (module_path / contract_file).read_text(encoding="utf-8", errors="replace")
        is_valid, warnings = self.validate_syntax(contract_file, content)
        version = self.extract_version(content)

        score, breaking = self.check_backward_compatibility(
            repository,
            contract_file,
            content,
            previous_ref or self.DEFAULT_PREVIOUS_REF,
        )
        warnings.extend(self.check_production_readiness(content))

        report = ContractReport(
            has_contract=True,
            contract_file=contract_file,
            is_valid=is_valid,
            version=version,
            compatibility_score=score,
            breaking_changes=breaking,
            warnings=warnings,
        )
        logger.info(
            "Contract inspected",
            extra={
                "module_path": str(module_path),
                "contract_file": contract_file,
                "is_valid": is_valid,
                "compatibility_score": score,
                "breaking_changes": len(breaking),
            },
        )
        return report

    def validate_syntax(self, contract_file: str, content: str) -> tuple[bool, list[str]]:
        """
        Check that the contract parses for its file type.

        Returns:
            Tuple of (is_valid, warnings).
        """
        warnings: list[str] = []
        suffix = Path(contract_file).suffix

        try:
            if suffix == ".json":
                json.loads(content)
            elif suffix in (".yml", ".yaml"):
                if "\t" in content:
                    warnings.append("YAML contains tabs, should use spaces")
                yaml.safe_load(content)
            elif suffix == ".ts" and "interface" not in content and "type" not in content:
                warnings.append("TypeScript contract missing interface/type definitions")
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            return False, [f"Syntax error: {e}"]

        if "version" not in content.lower():
            warnings.append("Contract missing version information")

        return True, warnings

    def extract_version(self, content: str) -> str | None:
        """Return the first declared version string in the contract."""
        for pattern in _VERSION_PATTERNS:
            match = pattern.search(content)
            if match:
                return match.group(1)
        return None

    def check_backward_compatibility(
        self,
        repository: Repository,
        contract_file: str,
        content: str,
        previous_ref: str,
    ) -> tuple[float, list[str]]:
        """
        Compare the contract with its content at an earlier commit.

        Returns:
            Tuple of (compatibility_score, breaking_changes).
        """
        try:
            previous = repository.show_file(previous_ref, contract_file)
        except (RepositoryError, UnavailableError) as e:
            logger.warning(
                "Could not read previous contract",
                extra={"contract_file": contract_file, "ref": previous_ref, "error": str(e)},
            )
            return UNCHECKED_CONTRACT_SCORE, ["Unable to validate backward compatibility"]

        if previous is None:
            return NEW_CONTRACT_SCORE, []

        breaking = self.detect_breaking_changes(previous, content)
        score = max(0, 100 - len(breaking) * BREAKING_CHANGE_PENALTY)
        return score, breaking

    def detect_breaking_changes(self, old_content: str, new_content: str) -> list[str]:
        """Return breaking changes inferred from two versions of a contract."""
        breaking: list[str] = []

        for pattern, description in _GROWTH_PATTERNS:
            if len(pattern.findall(new_content)) > len(pattern.findall(old_content)):
                breaking.append(description)

        old_paths = self._endpoint_paths(old_content)
        new_paths = self._endpoint_paths(new_content)
        removed = [path for path in old_paths if path not in new_paths]
        if removed:
            breaking.append(f"Removed endpoints: {', '.join(removed)}")

        return breaking

    def _endpoint_paths(self, content: str) -> list[str]:
        paths = _PATH_PATTERN.findall(content) + _OPENAPI_PATH_KEY.findall(content)
        return list(dict.fromkeys(paths))

    def check_production_readiness(self, content: str) -> list[str]:
        """Return warnings for production concerns missing from the contract."""
        warnings = []
        required = (
            (re.compile(r"security|auth", re.IGNORECASE), "Security definitions"),
            (re.compile(r"error", re.IGNORECASE), "Error handling"),
            (re.compile(r"rate.?limit", re.IGNORECASE), "Rate limiting"),
            (re.compile(r"health|status", re.IGNORECASE), "Health checks"),
        )
        for pattern, name in required:
            if not pattern.search(content):
                warnings.append(f"Missing {name} in contract")

        if "description" not in content and "summary" not in content:
            warnings.append("Contract lacks documentation")

        if "/v1/" not in content and "/v2/" not in content and "version" not in content:
            warnings.append("No API versioning strategy detected")

        return warnings
