"""
Pytest configuration and shared fixtures for the safe-update tests.

FakeRepository is an in-memory Repository used by every test that does not
need a real git binary.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from safe_update.errors import RepositoryError
from safe_update.gates.aggregator import aggregate
from safe_update.gates.contract import ContractComparator, ContractReport
from safe_update.gates.models import GATES, GateResult, QualityReport
from safe_update.gates.quality import QualityGates
from safe_update.repository import Repository

GIT_AVAILABLE = shutil.which("git") is not None


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: tests that drive a real git binary (deselect with '-m \"not integration\"')",
    )


# =============================================================================
# In-memory repository
# =============================================================================


class FakeRepository(Repository):
    """
    In-memory Repository.

    Commits form a linear history; tags and branches map names to commit ids.
    Checking out a branch attaches to it. Failure
    switches (fail_checkout, fail_undo, checkout_redirect) simulate broken
    working trees.
    """

    def __init__(
        self,
        path: Path | str,
        commits: Sequence[str] = ("c0",),
        tags: dict[str, str] | None = None,
        head: str | None = None,
        branch: str | None = "main",
        clean: bool = True,
        exists: bool = True,
        files: dict[tuple[str, str], str] | None = None,
        submodules: Sequence[str] = (),
    ) -> None:
        super().__init__(path)
        self.history = list(commits)
        self.known = set(commits)
        self.tags = dict(tags or {})
        self.head = head or self.history[-1]
        self.branch = branch
        self.branches: dict[str, str] = {branch: self.head} if branch else {}
        self.clean = clean
        self._exists = exists
        self.files = dict(files or {})
        self.submodules = list(submodules)
        self.messages: list[str] = []
        self.checkouts: list[str] = []
        self.fail_checkout = False
        self.fail_undo = False
        self.checkout_redirect: dict[str, str] = {}
        self._counter = 0

    def exists(self) -> bool:
        return self._exists

    def resolve_ref(self, name: str) -> str:
        if name == "HEAD":
            return self.head
        if name in self.tags:
            return self.tags[name]
        if name in self.branches:
            return self.branches[name]
        if name in self.known:
            return name
        raise RepositoryError(f"Cannot resolve {name!r}", details={"name": name})

    def current_ref(self) -> str:
        return self.head

    def current_branch(self) -> str | None:
        return self.branch

    def is_clean(self) -> bool:
        return self.clean

    def checkout(self, ref: str) -> None:
        if self.fail_checkout:
            raise RepositoryError(f"checkout of {ref} failed", details={"ref": ref})
        self.checkouts.append(ref)
        self.head = self.checkout_redirect.get(ref) or self.resolve_ref(ref)
        self.branch = ref if ref in self.branches else None

    def commit(self, paths: Sequence[str], message: str) -> str:
        self._counter += 1
        ref = f"{self.history[-1]}+{self._counter}"
        self.history.append(ref)
        self.known.add(ref)
        self.head = ref
        if self.branch:
            self.branches[self.branch] = ref
        self.messages.append(message)
        return ref

    def undo_last_commit(self) -> None:
        if self.fail_undo:
            raise RepositoryError("reset failed")
        self.history.pop()
        self.head = self.history[-1]
        if self.branch:
            self.branches[self.branch] = self.head

    def tag_exists(self, name: str) -> bool:
        return name in self.tags

    def list_tags(self) -> list[str]:
        return list(self.tags)

    def describe_version(self) -> str | None:
        for name, ref in self.tags.items():
            if ref == self.head:
                return name
        return None

    def show_file(self, ref: str, path: str) -> str | None:
        return self.files.get((ref, path))

    def list_submodules(self) -> list[str]:
        return list(self.submodules)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _reset_package_logger() -> None:
    """Restore the safe_update logger after tests that configure logging."""
    yield
    logger = logging.getLogger("safe_update")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


MODULE_PATH = "services/api"


@pytest.fixture
def git(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Callable[..., str]:
    """
    Run git with an isolated configuration and a fixed identity.

    Tests using this fixture are skipped when git is not installed.
    """
    if not GIT_AVAILABLE:
        pytest.skip("git is not installed")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(tmp_path / "gitconfig"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for role in ("AUTHOR", "COMMITTER"):
        monkeypatch.setenv(f"GIT_{role}_NAME", "Test User")
        monkeypatch.setenv(f"GIT_{role}_EMAIL", "test@example.com")

    def run(path: Path, *args: str) -> str:
        result = subprocess.run(
            ["git", "-C", str(path), *args],
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()

    return run


@pytest.fixture
def make_repo() -> Callable[..., FakeRepository]:
    """Return the FakeRepository constructor."""
    return FakeRepository


@pytest.fixture
def parent_repo(tmp_path: Path) -> FakeRepository:
    """Enclosing repository with a single commit on main."""
    return FakeRepository(tmp_path, commits=["p0"])


@pytest.fixture
def module_repo(parent_repo: FakeRepository) -> FakeRepository:
    """Module at v1.2.3 with v1.2.4, v1.3.0 and v2.0.0 available."""
    return FakeRepository(
        parent_repo.path / MODULE_PATH,
        commits=["a123", "a124", "a130", "a200"],
        tags={"v1.2.3": "a123", "v1.2.4": "a124", "v1.3.0": "a130", "v2.0.0": "a200"},
        head="a123",
    )


@pytest.fixture
def repository_factory(
    parent_repo: FakeRepository,
    module_repo: FakeRepository,
) -> Callable[[Path], Repository]:
    """Factory returning registered fakes, or a non-existent repository."""
    registry: dict[Path, FakeRepository] = {module_repo.path: module_repo}

    def factory(path: Path) -> Repository:
        path = Path(path)
        if path not in registry:
            registry[path] = FakeRepository(path, exists=False)
        return registry[path]

    factory.registry = registry  # type: ignore[attr-defined]
    return factory


def make_report(scores: dict[str, float] | None = None, module: str | None = MODULE_PATH) -> QualityReport:
    """
    Build a QualityReport from gate scores (default: every gate at 100).

    A gate passes when its score reaches 90, or 70 for performance.
    """
    scores = scores or {}
    results: dict[Any, GateResult] = {}
    for gate in GATES:
        score = scores.get(gate.name, 100.0)
        threshold = 90.0 if gate.critical else 70.0
        passed = score >= threshold
        results[gate] = GateResult(
            gate=gate.name,
            score=score,
            passed=passed,
            issues=[] if passed else [f"{gate.name} below threshold"],
        )
    return aggregate(results, module=module)


@pytest.fixture
def passing_report() -> QualityReport:
    """Report with every gate at 100."""
    return make_report()


@pytest.fixture
def quality_gates(passing_report: QualityReport) -> MagicMock:
    """QualityGates mock returning a passing report."""
    gates = MagicMock(spec=QualityGates)
    gates.evaluate.return_value = passing_report
    return gates


@pytest.fixture
def comparator() -> MagicMock:
    """ContractComparator mock reporting a valid contract without breaking changes."""
    mock = MagicMock(spec=ContractComparator)
    mock.compare.return_value = ContractReport(
        has_contract=True,
        contract_file="openapi.yml",
        is_valid=True,
        version="1.0.0",
        compatibility_score=100,
    )
    return mock


@pytest.fixture
def report_factory() -> Callable[..., QualityReport]:
    """Return the QualityReport builder."""
    return make_report
