"""
Update attempt records.

This module defines the models shared by the state machine and the rollback
manager:
- Module: the module being updated and the refs involved
- RollbackPoint: the recorded pre-mutation state of one attempt
- UpdateContext: everything known about one update attempt
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import PurePosixPath
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from safe_update.updates.version import UpdateType


def _now() -> str:
    return datetime.now(UTC).isoformat()


class Module(BaseModel):
    """
    A module (git submodule) of the enclosing repository.

    Attributes:
        path: Module path relative to the repository root.
        current_ref: Commit checked out before the update.
        target_ref: Commit the target version resolves to.
        current_version: Nearest tag of the current commit, if any.
    """

    path: str = Field(..., min_length=1, description="Path relative to the repository root")
    current_ref: str | None = Field(default=None, description="Commit before the update")
    target_ref: str | None = Field(default=None, description="Commit of the target version")
    current_version: str | None = Field(default=None, description="Current version tag")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Normalize the module path and reject paths leaving the repository root."""
        v = v.strip().rstrip("/")
        if not v:
            raise ValueError("Module path must not be empty")
        if v.startswith("/"):
            raise ValueError(f"Module path must be relative to the repository root: {v}")
        if ".." in PurePosixPath(v).parts:
            raise ValueError(f"Module path must not contain '..' segments: {v}")
        return v


class RollbackPoint(BaseModel):
    """
    Recorded state to restore when an update fails.

    Attributes:
        module: Module path relative to the repository root.
        module_ref: Commit the module had checked out.
        module_branch: Branch the module had checked out, None when detached.
        parent_ref: Commit of the enclosing repository.
        branch: Branch of the enclosing repository, None when detached.
        timestamp: ISO 8601 time the point was recorded.
    """

    module: str
    module_ref: str
    module_branch: str | None = None
    parent_ref: str
    branch: str | None = None
    timestamp: str = Field(default_factory=_now)


class UpdateContext(BaseModel):
    """
    Transient record of one update attempt.

    Attributes:
        attempt_id: Unique id of the attempt.
        module: Module being updated.
        target_version: Requested version (tag or ref).
        approved: Caller approved updates that require approval.
        update_type: Classification, set during pre-validation.
        validation: Named validation outcomes gathered along the way.
        rollback_point: Recorded pre-mutation state, once snapshotted.
        transitions: States visited, in order.
        commit_ref: Parent commit recording the update, once committed.
        started_at: ISO 8601 start time.
        finished_at: ISO 8601 end time, once the attempt ended.
    """

    attempt_id: str = Field(default_factory=lambda: uuid4().hex)
    module: Module
    target_version: str = Field(..., min_length=1)
    approved: bool = False
    update_type: UpdateType | None = None
    validation: dict[str, Any] = Field(default_factory=dict)
    rollback_point: RollbackPoint | None = None
    transitions: list[str] = Field(default_factory=list)
    commit_ref: str | None = None
    started_at: str = Field(default_factory=_now)
    finished_at: str | None = None

    @field_validator("target_version")
    @classmethod
    def validate_target_version(cls, v: str) -> str:
        """Reject blank target versions."""
        v = v.strip()
        if not v:
            raise ValueError("Target version must not be empty")
        return v

    def finish(self) -> None:
        """Stamp the end of the attempt."""
        self.finished_at = _now()
