"""Role mining by exact permission-bundle clustering.

Rows holding the identical set of entitlement values form one group. Groups
that reach the member threshold become role candidates, ranked by size, and
can be pushed to the tenant as entitlement bundles.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable

import structlog

from csvgov.connector.engine.catalog import bundle_signature, extract_bundle
from csvgov.connector.engine.grants import EntitlementIndex
from csvgov.connector.engine.retry import RetryPolicy
from csvgov.connector.engine.schema import (
    DEFAULT_ENTITLEMENT_PREFIX,
    DEFAULT_IDENTITY_COLUMNS,
    entitlement_name,
    identity_key,
)
from csvgov.connector.models import MiningResult, PermissionBundle, RoleCandidate, Row
from csvgov.connector.port import GovernancePort

logger = structlog.get_logger()

MAX_ROLE_NAME_LENGTH = 50
UNKNOWN_MEMBER = "unknown"

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def generate_role_name(bundle: PermissionBundle, index: int) -> str:
    """Join the cleaned first value of each entitlement with underscores.

    Falls back to ``Role_<index + 1>`` when the bundle is empty or the joined
    name is longer than 50 characters.
    """
    parts = [_NON_ALNUM.sub("", values[0]) for values in bundle.values() if values]
    if not parts:
        return f"Role_{index + 1}"
    name = "_".join(parts)
    if len(name) > MAX_ROLE_NAME_LENGTH:
        return f"Role_{index + 1}"
    return name


def unique_role_name(name: str, used: set[str]) -> str:
    """Suffix ``_2``, ``_3``, ... until ``name`` is not in ``used``, then claim it."""
    candidate = name
    suffix = 1
    while candidate.lower() in used:
        suffix += 1
        candidate = f"{name}_{suffix}"
    used.add(candidate.lower())
    return candidate


def generate_role_description(
    bundle: PermissionBundle,
    member_count: int,
    total_rows: int,
    prefix: str = DEFAULT_ENTITLEMENT_PREFIX,
) -> str:
    """e.g. ``8 users (19.0%) - Manager (Role) + Finance (Dept)``"""
    percentage = member_count / total_rows * 100 if total_rows > 0 else 0.0
    parts = [
        f"{', '.join(values)} ({entitlement_name(column, prefix)})"
        for column, values in bundle.items()
    ]
    return f"{member_count} users ({percentage:.1f}%) - {' + '.join(parts)}"


@dataclass
class _Group:
    bundle: PermissionBundle
    members: list[str] = field(default_factory=list)


def mine_roles(
    rows: list[Row],
    min_user_threshold: int = 2,
    prefix: str = DEFAULT_ENTITLEMENT_PREFIX,
    identity_columns: Iterable[str] = DEFAULT_IDENTITY_COLUMNS,
) -> MiningResult:
    """Cluster rows by permission-bundle signature.

    Percentages are relative to ``len(rows)``, rows without entitlements
    included. Candidates are ordered by member count, ties in first-seen order.
    """
    if min_user_threshold < 1:
        raise ValueError("min_user_threshold must be at least 1")

    identity_columns = tuple(identity_columns)
    groups: dict[str, _Group] = {}
    rows_with_entitlements = 0

    for row in rows:
        bundle = extract_bundle(row, prefix)
        if not bundle:
            continue
        rows_with_entitlements += 1

        signature = bundle_signature(bundle)
        group = groups.get(signature)
        if group is None:
            group = groups[signature] = _Group(bundle=bundle)
        group.members.append(identity_key(row, identity_columns) or UNKNOWN_MEMBER)

    total = len(rows)
    candidates: list[RoleCandidate] = []
    used_names: set[str] = set()
    for group in groups.values():
        count = len(group.members)
        if count < min_user_threshold:
            continue
        name = unique_role_name(generate_role_name(group.bundle, len(candidates)), used_names)
        candidates.append(
            RoleCandidate(
                name=name,
                bundle=group.bundle,
                members=list(group.members),
                member_count=count,
                coverage=count / total * 100 if total else 0.0,
                description=generate_role_description(group.bundle, count, total, prefix),
            )
        )

    # sorted() is stable, so equal counts keep discovery order
    candidates = sorted(candidates, key=lambda c: c.member_count, reverse=True)

    result = MiningResult(
        candidates=candidates,
        unique_signatures=len(groups),
        rows_with_entitlements=rows_with_entitlements,
        total_rows=total,
        users_in_roles=sum(c.member_count for c in candidates),
    )
    logger.info(
        "Role mining complete",
        rows=total,
        unique_signatures=result.unique_signatures,
        candidates=len(candidates),
        threshold=min_user_threshold,
    )
    return result


def candidate_to_bundle_payload(
    candidate: RoleCandidate,
    index: EntitlementIndex,
    application_id: str,
    prefix: str = DEFAULT_ENTITLEMENT_PREFIX,
) -> dict[str, Any]:
    """Map a candidate onto remote entitlement and value ids.

    Entitlements or values unknown remotely are left out of the payload.
    """
    entitlements = []
    for column, values in candidate.bundle.items():
        name = entitlement_name(column, prefix)
        entitlement = index.get(name)
        if entitlement is None:
            logger.warning("Entitlement not found for bundle", role=candidate.name, entitlement=name)
            continue

        value_ids = []
        for value_name in values:
            value = entitlement.find_value(value_name)
            if value is None:
                logger.warning(
                    "Value not found for bundle",
                    role=candidate.name,
                    entitlement=name,
                    value=value_name,
                )
                continue
            value_ids.append({"id": value.id})

        if value_ids:
            entitlements.append({"id": entitlement.id, "values": value_ids})

    return {
        "name": candidate.name,
        "description": candidate.description,
        "target": {"externalId": application_id, "type": "APPLICATION"},
        "entitlements": entitlements,
    }


def rows_with_entitlements(rows: list[Row], prefix: str = DEFAULT_ENTITLEMENT_PREFIX) -> list[Row]:
    return [row for row in rows if extract_bundle(row, prefix)]


@dataclass
class RoleMiningReport:
    """Outcome of a mining run including bundle creation."""

    mining: MiningResult
    bundles_created: list[str] = field(default_factory=list)
    bundles_skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def summary(self) -> str:
        lines = [self.mining.summary()]
        if self.bundles_created:
            lines.append(f"Bundles created: {len(self.bundles_created)}")
            for name in self.bundles_created:
                lines.append(f"  + {name}")
        if self.bundles_skipped:
            lines.append(f"Bundles skipped (no resolvable entitlements): {len(self.bundles_skipped)}")
        if self.errors:
            lines.append(f"Errors: {len(self.errors)}")
            for err in self.errors:
                lines.append(f"  ! {err}")
        return "\n".join(lines)


async def run_role_mining(
    rows: list[Row],
    port: GovernancePort | None = None,
    application_id: str | None = None,
    index: EntitlementIndex | None = None,
    *,
    min_user_threshold: int = 2,
    create_bundles: bool = True,
    prefix: str = DEFAULT_ENTITLEMENT_PREFIX,
    identity_columns: Iterable[str] = DEFAULT_IDENTITY_COLUMNS,
    dry_run: bool = False,
    retry: RetryPolicy | None = None,
) -> RoleMiningReport:
    """Mine roles over rows that hold entitlements and optionally create bundles.

    Bundle creation needs ``port``, ``application_id`` and ``index``; without
    them the run is report-only. Each failed bundle is recorded and the rest
    proceed.
    """
    considered = rows_with_entitlements(rows, prefix)
    if not considered:
        logger.info("No rows with entitlements, skipping role mining")

    mining = mine_roles(considered, min_user_threshold, prefix, identity_columns)
    report = RoleMiningReport(mining=mining)

    if not create_bundles or port is None or application_id is None or index is None:
        return report

    for candidate in mining.candidates:
        payload = candidate_to_bundle_payload(candidate, index, application_id, prefix)
        if not payload["entitlements"]:
            report.bundles_skipped.append(candidate.name)
            continue

        if dry_run:
            logger.info("[DRY RUN] Would create bundle", role=candidate.name)
            report.bundles_created.append(candidate.name)
            continue

        try:
            if retry is not None:
                await retry.run(
                    lambda: port.create_bundle(payload),
                    on_auth_expired=port.refresh_credentials,
                    description=f"create bundle {candidate.name}",
                )
            else:
                await port.create_bundle(payload)
            report.bundles_created.append(candidate.name)
            logger.info("Created bundle", role=candidate.name, members=candidate.member_count)
        except Exception as e:
            report.errors.append(f"Failed to create bundle {candidate.name}: {e}")

    return report
