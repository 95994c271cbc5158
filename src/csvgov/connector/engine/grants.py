"""Resolve CSV entitlement values to remote entitlement and value ids.

The :class:`EntitlementIndex` mirrors the entitlement catalog on the remote
side. It is built once per pass from ``list_entitlements`` and updated in
place when values are minted on demand.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

from csvgov.connector.engine.catalog import split_values
from csvgov.connector.engine.retry import RetryPolicy
from csvgov.connector.engine.schema import (
    DEFAULT_ENTITLEMENT_PREFIX,
    entitlement_name,
    is_entitlement_column,
)
from csvgov.connector.models import EntitlementCatalog, Row
from csvgov.connector.port import GovernancePort

logger = structlog.get_logger()


@dataclass
class RemoteValue:
    id: str
    name: str
    description: str = ""
    external_value: str | None = None


@dataclass
class RemoteEntitlement:
    """An entitlement as known remotely, with its values."""

    id: str
    name: str
    values: list[RemoteValue] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteEntitlement":
        values = [
            RemoteValue(
                id=v["id"],
                name=v.get("name", ""),
                description=v.get("description") or "",
                external_value=v.get("externalValue"),
            )
            for v in data.get("values") or []
            if v.get("id")
        ]
        return cls(id=data["id"], name=data.get("name", ""), values=values)

    def find_value(self, name: str) -> RemoteValue | None:
        """Case-insensitive value lookup."""
        wanted = name.lower()
        for value in self.values:
            if value.name.lower() == wanted:
                return value
        return None


class EntitlementIndex:
    """Entitlement name (case-insensitive) -> remote entitlement."""

    def __init__(self, entitlements: list[RemoteEntitlement] | None = None):
        self._by_name: dict[str, RemoteEntitlement] = {}
        for entitlement in entitlements or []:
            self.add(entitlement)

    @classmethod
    def from_api(cls, items: list[dict[str, Any]]) -> "EntitlementIndex":
        return cls([RemoteEntitlement.from_api(item) for item in items if item.get("id")])

    def add(self, entitlement: RemoteEntitlement) -> None:
        self._by_name[entitlement.name.lower()] = entitlement

    def get(self, name: str) -> RemoteEntitlement | None:
        return self._by_name.get(name.lower())

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._by_name

    def __len__(self) -> int:
        return len(self._by_name)

    def __iter__(self):
        return iter(self._by_name.values())

    def names(self) -> list[str]:
        return sorted(e.name for e in self._by_name.values())


@dataclass
class GrantGroup:
    """Value ids granted under one entitlement."""

    entitlement_id: str
    values: list[RemoteValue] = field(default_factory=list)

    @property
    def value_ids(self) -> list[str]:
        return [v.id for v in self.values]

    def add(self, value: RemoteValue) -> None:
        if value.id not in self.value_ids:
            self.values.append(value)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.entitlement_id,
            "values": [
                {
                    "id": v.id,
                    "name": v.name,
                    "description": v.description,
                    "label": v.name,
                }
                for v in self.values
            ],
        }


@dataclass
class GrantResolution:
    """Grant groups for a row plus the values that could not be resolved."""

    groups: list[GrantGroup] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.groups

    def to_payload(self) -> list[dict[str, Any]]:
        return [group.to_payload() for group in self.groups]


async def _mint_value(
    port: GovernancePort,
    entitlement: RemoteEntitlement,
    value_name: str,
    retry: RetryPolicy | None,
) -> RemoteValue:
    async def call():
        return await port.add_entitlement_value(entitlement.id, value_name)

    if retry is not None:
        created = await retry.run(
            call,
            on_auth_expired=port.refresh_credentials,
            description=f"add value {value_name}",
        )
    else:
        created = await call()

    value = RemoteValue(
        id=created["id"],
        name=created.get("name", value_name),
        description=created.get("description") or "",
        external_value=created.get("externalValue"),
    )
    entitlement.values.append(value)
    return value


async def resolve_grant(
    row: Row,
    index: EntitlementIndex,
    port: GovernancePort,
    prefix: str = DEFAULT_ENTITLEMENT_PREFIX,
    *,
    create_missing: bool = True,
    retry: RetryPolicy | None = None,
) -> GrantResolution:
    """Build the grant groups for one row.

    Values unknown remotely are minted through ``add_entitlement_value`` when
    ``create_missing`` is set. A value that cannot be resolved is skipped and
    reported; the rest of the row still resolves.
    """
    resolution = GrantResolution()
    groups: dict[str, GrantGroup] = {}

    for column, raw in row.items():
        if not is_entitlement_column(column, prefix):
            continue
        values = split_values(raw)
        if not values:
            continue

        name = entitlement_name(column, prefix)
        entitlement = index.get(name)
        if entitlement is None:
            logger.warning("Entitlement not found remotely", entitlement=name)
            resolution.unresolved.extend(f"{name}:{v}" for v in values)
            continue

        for value_name in values:
            value = entitlement.find_value(value_name)
            if value is None and create_missing:
                try:
                    value = await _mint_value(port, entitlement, value_name, retry)
                    resolution.created.append(f"{name}:{value_name}")
                    logger.info("Created entitlement value", entitlement=name, value=value_name)
                except Exception as e:
                    logger.warning(
                        "Failed to create entitlement value",
                        entitlement=name,
                        value=value_name,
                        error=str(e),
                    )
            if value is None:
                resolution.unresolved.append(f"{name}:{value_name}")
                continue

            group = groups.get(entitlement.id)
            if group is None:
                group = groups[entitlement.id] = GrantGroup(entitlement_id=entitlement.id)
            group.add(value)

    resolution.groups = list(groups.values())
    return resolution


async def ensure_entitlement_values(
    catalog: EntitlementCatalog,
    index: EntitlementIndex,
    port: GovernancePort,
    prefix: str = DEFAULT_ENTITLEMENT_PREFIX,
    *,
    dry_run: bool = False,
    retry: RetryPolicy | None = None,
) -> tuple[list[str], list[str]]:
    """Create catalog values that are missing remotely.

    Returns ``(created, errors)``.
    """
    created: list[str] = []
    errors: list[str] = []

    for column, values in catalog.items():
        name = entitlement_name(column, prefix)
        entitlement = index.get(name)
        if entitlement is None:
            errors.append(f"Entitlement {name} not found remotely")
            continue

        for value_name in values:
            if entitlement.find_value(value_name) is not None:
                continue
            if dry_run:
                logger.info("[DRY RUN] Would create entitlement value", entitlement=name, value=value_name)
                created.append(f"{name}:{value_name}")
                continue
            try:
                await _mint_value(port, entitlement, value_name, retry)
                created.append(f"{name}:{value_name}")
            except Exception as e:
                errors.append(f"Failed to create value {value_name} for {name}: {e}")

    return created, errors
