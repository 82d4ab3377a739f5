"""
Version classification for module updates.

This module decides how risky an update is from the two version identifiers
involved:
- Lenient semantic version detection (tags such as "v1.2.3" or "1.2.3-rc.1")
- Update type classification (patch, minor, major)
- The static update strategy table keyed by update type

Anything that does not look like a semantic version is classified as a major
update, so unknown versions always take the strictest path.
"""

from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from safe_update.errors import InvalidArgumentError

# Matches the leading MAJOR.MINOR.PATCH of a tag; suffixes are ignored
SEMVER_PREFIX_PATTERN = re.compile(r"^v?(?P<major>\d+)\.(?P<minor>\d+)\.(?P<patch>\d+)")


class UpdateType(str, Enum):
    """Magnitude of a version change."""

    PATCH = "patch"
    MINOR = "minor"
    MAJOR = "major"


class RiskLevel(str, Enum):
    """Coarse risk classification used to order batch updates."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_RISK_RANK: dict[RiskLevel, int] = {
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
}


class UpdateStrategy(BaseModel):
    """
    Policy applied to an update of a given type.

    Attributes:
        risk_level: Risk used to order batch execution.
        requires_approval: Whether the caller must approve the update up front.
        requires_compatibility_test: Whether the contract comparison must
            report zero breaking changes after the switch.
    """

    model_config = ConfigDict(frozen=True)

    risk_level: RiskLevel = Field(..., description="Risk level of the update")
    requires_approval: bool = Field(
        default=False,
        description="Update must be explicitly approved",
    )
    requires_compatibility_test: bool = Field(
        default=False,
        description="Contract must show zero breaking changes after the switch",
    )


UPDATE_STRATEGIES: dict[UpdateType, UpdateStrategy] = {
    UpdateType.PATCH: UpdateStrategy(risk_level=RiskLevel.LOW),
    UpdateType.MINOR: UpdateStrategy(
        risk_level=RiskLevel.MEDIUM,
        requires_approval=True,
    ),
    UpdateType.MAJOR: UpdateStrategy(
        risk_level=RiskLevel.HIGH,
        requires_approval=True,
        requires_compatibility_test=True,
    ),
}


def is_semantic_version(version: str | None) -> bool:
    """Return True if the version starts with MAJOR.MINOR.PATCH."""
    if not version:
        return False
    return SEMVER_PREFIX_PATTERN.match(version) is not None


def parse_semantic_version(version: str) -> tuple[int, int, int]:
    """
    Parse the (major, minor, patch) triple of a version string.

    An optional leading "v" and any pre-release or build suffix are accepted
    and ignored.

    Args:
        version: Version string (e.g., "v1.2.3", "1.2.3-beta.1").

    Returns:
        Tuple of integers (major, minor, patch).

    Raises:
        InvalidArgumentError: If the version string is not semantic.
    """
    match = SEMVER_PREFIX_PATTERN.match(version or "")
    if not match:
        raise InvalidArgumentError(
            f"Invalid semantic version: {version}",
            details={
                "version": version,
                "format": "[v]MAJOR.MINOR.PATCH[suffix]",
                "examples": ["1.0.0", "v1.2.3", "2.0.0-beta.1"],
            },
        )

    return (
        int(match.group("major")),
        int(match.group("minor")),
        int(match.group("patch")),
    )


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two semantic versions by their numeric triple.

    Returns:
        -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2

    Raises:
        InvalidArgumentError: If either version is invalid.
    """
    p1 = parse_semantic_version(v1)
    p2 = parse_semantic_version(v2)
    return (p1 > p2) - (p1 < p2)


def classify(current_version: str | None, target_version: str | None) -> UpdateType:
    """
    Classify the magnitude of an update.

    Components are checked in precedence order: a higher target major is a
    major update, otherwise a higher minor is a minor update, otherwise a
    higher patch is a patch update. Equal or regressive versions are treated
    as patch updates.

    If either version is not semantic (including None, e.g. a module without
    tags), the update is classified as major.

    Args:
        current_version: Version the module is currently on.
        target_version: Version the module is being updated to.

    Returns:
        The UpdateType for this change.

    Example:
        >>> classify("1.2.3", "1.3.0")
        <UpdateType.MINOR: 'minor'>
        >>> classify("HEAD", "v1.0.0")
        <UpdateType.MAJOR: 'major'>
    """
    if not (is_semantic_version(current_version) and is_semantic_version(target_version)):
        return UpdateType.MAJOR

    current = parse_semantic_version(current_version)  # type: ignore[arg-type]
    target = parse_semantic_version(target_version)  # type: ignore[arg-type]

    if target[0] > current[0]:
        return UpdateType.MAJOR
    if target[1] > current[1]:
        return UpdateType.MINOR
    if target[2] > current[2]:
        return UpdateType.PATCH

    return UpdateType.PATCH


def get_strategy(update_type: UpdateType) -> UpdateStrategy:
    """Return the update strategy for an update type."""
    return UPDATE_STRATEGIES[update_type]


def risk_rank(risk_level: RiskLevel) -> int:
    """Return a sortable rank for a risk level (low sorts first)."""
    return _RISK_RANK[risk_level]
