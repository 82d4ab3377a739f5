"""
Repository abstraction for safe-update.

This module defines the Repository abstract base class that the update
orchestrator uses for every version control operation, and GitRepository,
the implementation backed by the git command line.

Each Repository instance is bound to one explicit path. The enclosing
(parent) repository and every module get their own handle, so no operation
depends on the process working directory.
"""

from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path

from safe_update.errors import RepositoryError, UnavailableError
from safe_update.logging import get_logger

logger = get_logger(__name__)


class Repository(ABC):
    """
    Abstract base class for a version-controlled working tree.

    Implementations are responsible for:
    - Resolving names (tags, branches, commits) to concrete commit ids
    - Reporting and switching the checked-out commit
    - Recording and undoing commits
    - Reading file contents at a given commit
    - Listing the submodules of an enclosing repository

    All methods block until the underlying operation completes.
    """

    def __init__(self, path: Path | str) -> None:
        """
        Initialize the repository handle.

        Args:
            path: Root of the working tree.
        """
        self._path = Path(path)

    @property
    def path(self) -> Path:
        """Get the working tree root."""
        return self._path

    def __repr__(self) -> str:
        """Return a string representation."""
        return f"{self.__class__.__name__}(path={str(self._path)!r})"

    @abstractmethod
    def exists(self) -> bool:
        """Return True if the working tree exists and is a repository."""
        pass

    @abstractmethod
    def resolve_ref(self, name: str) -> str:
        """
        Resolve a name to a commit id.

        Raises:
            RepositoryError: If the name does not resolve to a commit.
        """
        pass

    @abstractmethod
    def current_ref(self) -> str:
        """Return the commit id currently checked out."""
        pass

    @abstractmethod
    def current_branch(self) -> str | None:
        """Return the current branch name, or None when detached."""
        pass

    @abstractmethod
    def is_clean(self) -> bool:
        """Return True if there are no uncommitted tracked changes."""
        pass

    @abstractmethod
    def checkout(self, ref: str) -> None:
        """Switch the working tree to a ref."""
        pass

    @abstractmethod
    def commit(self, paths: Sequence[str], message: str) -> str:
        """
        Stage paths and record a commit.

        Returns:
            Commit id of the new commit.
        """
        pass

    @abstractmethod
    def undo_last_commit(self) -> None:
        """Discard the most recent commit and reset the working tree to its parent."""
        pass

    @abstractmethod
    def tag_exists(self, name: str) -> bool:
        """Return True if a tag with exactly this name exists."""
        pass

    @abstractmethod
    def list_tags(self) -> list[str]:
        """Return all tag names."""
        pass

    @abstractmethod
    def describe_version(self) -> str | None:
        """Return the nearest tag reachable from the current commit, if any."""
        pass

    @abstractmethod
    def show_file(self, ref: str, path: str) -> str | None:
        """Return the content of a file at a ref, or None if it does not exist there."""
        pass

    @abstractmethod
    def list_submodules(self) -> list[str]:
        """Return the paths of the registered submodules, in declaration order."""
        pass


class GitRepository(Repository):
    """
    Repository implementation driving the git command line.

    Every command runs as `git -C <path> ...` with a timeout.
    """

    DEFAULT_TIMEOUT_SECONDS = 120.0

    def __init__(
        self,
        path: Path | str,
        git_binary: str = "git",
        timeout: float | None = None,
    ) -> None:
        """
        Initialize the GitRepository.

        Args:
            path: Root of the working tree.
            git_binary: git executable to invoke.
            timeout: Timeout for a single git command in seconds.
        """
        super().__init__(path)
        self.git_binary = git_binary
        self.timeout = timeout or self.DEFAULT_TIMEOUT_SECONDS

    def _run_git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """
        Run a git command in this working tree.

        Args:
            *args: Arguments passed to git.
            check: Raise RepositoryError on a non-zero exit status.

        Returns:
            The completed process with text stdout/stderr.

        Raises:
            UnavailableError: If git is missing or the command times out.
            RepositoryError: If check is set and git exits non-zero.
        """
        command = [self.git_binary, "-C", str(self._path), *args]
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise UnavailableError(
                f"git executable not found: {self.git_binary}",
                details={"command": " ".join(command)},
            ) from e
        except subprocess.TimeoutExpired as e:
            raise UnavailableError(
                f"git command timed out after {self.timeout}s",
                details={"command": " ".join(command)},
            ) from e

        if check and result.returncode != 0:
            raise RepositoryError(
                f"git {args[0]} failed in {self._path}",
                details={
                    "command": " ".join(command),
                    "returncode": result.returncode,
                    "stderr": result.stderr.strip(),
                },
            )

        logger.debug(
            "git command completed",
            extra={"command": " ".join(args), "returncode": result.returncode},
        )
        return result

    def exists(self) -> bool:
        if not self._path.is_dir():
            return False
        # A plain directory inside another repository is not a repository itself
        result = self._run_git("rev-parse", "--show-toplevel", check=False)
        if result.returncode != 0:
            return False
        return Path(result.stdout.strip()).resolve() == self._path.resolve()

    def resolve_ref(self, name: str) -> str:
        result = self._run_git("rev-parse", "--verify", "--quiet", f"{name}^{{commit}}", check=False)
        if result.returncode != 0 or not result.stdout.strip():
            raise RepositoryError(
                f"Cannot resolve {name!r} to a commit in {self._path}",
                details={"name": name, "path": str(self._path)},
            )
        return result.stdout.strip()

    def current_ref(self) -> str:
        return self._run_git("rev-parse", "HEAD").stdout.strip()

    def current_branch(self) -> str | None:
        branch = self._run_git("branch", "--show-current").stdout.strip()
        return branch or None

    def is_clean(self) -> bool:
        unstaged = self._run_git("diff", "--quiet", check=False)
        staged = self._run_git("diff", "--cached", "--quiet", check=False)
        return unstaged.returncode == 0 and staged.returncode == 0

    def checkout(self, ref: str) -> None:
        self._run_git("checkout", "--quiet", ref)
        logger.info(
            "Checked out ref",
            extra={"path": str(self._path), "ref": ref},
        )

    def commit(self, paths: Sequence[str], message: str) -> str:
        self._run_git("add", "--", *paths)
        self._run_git("commit", "--quiet", "-m", message)
        ref = self.current_ref()
        logger.info(
            "Recorded commit",
            extra={"path": str(self._path), "ref": ref, "paths": list(paths)},
        )
        return ref

    def undo_last_commit(self) -> None:
        self._run_git("reset", "--hard", "--quiet", "HEAD~1")
        logger.warning(
            "Undid last commit",
            extra={"path": str(self._path), "ref": self.current_ref()},
        )

    def tag_exists(self, name: str) -> bool:
        result = self._run_git("tag", "--list", name)
        return name in result.stdout.splitlines()

    def list_tags(self) -> list[str]:
        result = self._run_git("tag", "--list")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def describe_version(self) -> str | None:
        result = self._run_git("describe", "--tags", "--abbrev=0", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def show_file(self, ref: str, path: str) -> str | None:
        result = self._run_git("show", f"{ref}:{path}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout

    def list_submodules(self) -> list[str]:
        if not (self._path / ".gitmodules").is_file():
            return []
        result = self._run_git(
            "config", "--file", ".gitmodules", "--get-regexp", r"^submodule\..*\.path$",
            check=False,
        )
        # Exit status 1 means no submodule declares a path
        if result.returncode == 1:
            return []
        if result.returncode != 0:
            raise RepositoryError(
                f"Cannot read .gitmodules in {self._path}",
                details={"returncode": result.returncode, "stderr": result.stderr.strip()},
            )
        paths = []
        for line in result.stdout.splitlines():
            _, _, path = line.partition(" ")
            if path.strip():
                paths.append(path.strip())
        return paths
