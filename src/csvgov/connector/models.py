"""Data model shared by the reconciliation and role-mining engine.

A CSV ``Row`` is a plain ``dict[str, str]``. Everything derived from it is an
immutable dataclass built once per pass; nothing here talks to the network.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

Row = dict[str, str]

# column name -> sorted unique values
EntitlementCatalog = dict[str, list[str]]
PermissionBundle = dict[str, list[str]]


class ColumnKind(str, Enum):
    """Classification of a CSV column."""

    ENTITLEMENT = "entitlement"
    PROFILE = "profile"


@dataclass(frozen=True)
class AttributeColumn:
    """One header column and what it maps to."""

    name: str
    kind: ColumnKind
    canonical: str | None = None  # only ever set for PROFILE columns

    @property
    def is_entitlement(self) -> bool:
        return self.kind is ColumnKind.ENTITLEMENT


@dataclass(frozen=True)
class Table:
    """A parsed CSV file: header order plus data rows."""

    header: list[str]
    rows: list[Row]


@dataclass(frozen=True)
class RoleCandidate:
    """A group of identities sharing one exact permission bundle."""

    name: str
    bundle: PermissionBundle
    members: list[str]
    member_count: int
    coverage: float
    description: str


@dataclass
class MiningResult:
    """Output of a role-mining run."""

    candidates: list[RoleCandidate] = field(default_factory=list)
    unique_signatures: int = 0
    rows_with_entitlements: int = 0
    total_rows: int = 0
    users_in_roles: int = 0

    @property
    def coverage_percentage(self) -> float:
        if not self.total_rows:
            return 0.0
        return self.users_in_roles / self.total_rows * 100

    def summary(self, top: int = 10) -> str:
        """Get a human-readable summary of the mining run."""
        lines = [
            f"Rows analysed: {self.total_rows}",
            f"Rows with entitlements: {self.rows_with_entitlements}",
            f"Unique permission bundles: {self.unique_signatures}",
            f"Role candidates: {len(self.candidates)}",
            f"Coverage: {self.users_in_roles}/{self.total_rows} "
            f"({self.coverage_percentage:.1f}%)",
        ]
        for idx, candidate in enumerate(self.candidates[:top], start=1):
            lines.append(f"  {idx}. {candidate.name}: {candidate.description}")
        if len(self.candidates) > top:
            lines.append(f"  ... and {len(self.candidates) - top} more")
        return "\n".join(lines)


@dataclass(frozen=True)
class RemoteUser:
    """A user currently assigned to the target application."""

    id: str
    key: str
    profile: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UpdateItem:
    """A desired row matched to a remote user whose attributes differ."""

    key: str
    row: Row
    remote: RemoteUser
    changed_fields: list[str]


@dataclass(frozen=True)
class SkippedRow:
    """A row excluded from reconciliation."""

    index: int
    reason: str


@dataclass
class ChangeSet:
    """Add/update/remove partition of one reconciliation pass."""

    to_add: list[tuple[str, Row]] = field(default_factory=list)
    to_update: list[UpdateItem] = field(default_factory=list)
    to_remove: list[RemoteUser] = field(default_factory=list)

    # Matched keys with nothing to change
    in_sync: list[str] = field(default_factory=list)
    skipped: list[SkippedRow] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_update or self.to_remove)

    @property
    def add_keys(self) -> list[str]:
        return [key for key, _ in self.to_add]

    @property
    def update_keys(self) -> list[str]:
        return [item.key for item in self.to_update]

    @property
    def remove_keys(self) -> list[str]:
        return [user.key for user in self.to_remove]

    def summary(self) -> str:
        """Get a human-readable summary of the change set."""
        lines = []

        if self.to_remove:
            lines.append(f"Users to remove: {len(self.to_remove)}")
            for user in self.to_remove:
                lines.append(f"  - {user.key}")

        if self.to_add:
            lines.append(f"Users to add: {len(self.to_add)}")
            for key, _ in self.to_add:
                lines.append(f"  + {key}")

        if self.to_update:
            lines.append(f"Users to update: {len(self.to_update)}")
            for item in self.to_update:
                lines.append(f"  ~ {item.key} ({', '.join(item.changed_fields)})")

        if self.skipped:
            lines.append(f"Rows skipped: {len(self.skipped)}")
            for skip in self.skipped:
                lines.append(f"  ? row {skip.index}: {skip.reason}")

        if self.is_empty:
            lines.append(f"No changes needed - {len(self.in_sync)} users in sync")

        return "\n".join(lines)


@dataclass
class SyncResult:
    """Result of applying a change set."""

    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: int = 0
    values_created: list[str] = field(default_factory=list)

    # Per-value problems that did not fail the item
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def summary(self) -> str:
        """Get a deterministic human-readable summary of the pass."""
        lines = [
            f"Added: {len(self.added)}",
            f"Updated: {len(self.updated)}",
            f"Removed: {len(self.removed)}",
            f"Failed: {len(self.failed)}",
        ]
        if self.skipped:
            lines.append(f"Skipped rows: {self.skipped}")
        if self.values_created:
            lines.append(f"Entitlement values created: {', '.join(self.values_created)}")
        if self.warnings:
            lines.append(f"Warnings: {len(self.warnings)}")
            for warning in self.warnings:
                lines.append(f"  ? {warning}")

        if self.errors:
            lines.append(f"Errors: {len(self.errors)}")
            for err in self.errors:
                lines.append(f"  ! {err}")

        return "\n".join(lines)
