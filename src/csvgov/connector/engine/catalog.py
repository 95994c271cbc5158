"""Entitlement catalog and permission-bundle signatures."""

from __future__ import annotations

import json
from typing import Iterable

from csvgov.connector.engine.schema import (
    DEFAULT_ENTITLEMENT_PREFIX,
    entitlement_columns,
    is_entitlement_column,
)
from csvgov.connector.models import EntitlementCatalog, PermissionBundle, Row

VALUE_DELIMITER = ","


def split_values(raw: str | None) -> list[str]:
    """Split a multi-valued cell into sorted unique, trimmed values.

    ``"View,View, Edit"`` -> ``["Edit", "View"]``
    """
    if raw is None:
        return []
    pieces = (piece.strip() for piece in str(raw).split(VALUE_DELIMITER))
    return sorted({piece for piece in pieces if piece})


def build_catalog(rows: list[Row], prefix: str = DEFAULT_ENTITLEMENT_PREFIX) -> EntitlementCatalog:
    """Collect every value seen per entitlement column.

    Entitlement columns are taken from the first row's keys; all rows are
    assumed to share one header.
    """
    if not rows:
        return {}

    columns = entitlement_columns(rows[0], prefix)
    catalog: EntitlementCatalog = {}
    for column in columns:
        values: set[str] = set()
        for row in rows:
            values.update(split_values(row.get(column)))
        catalog[column] = sorted(values)
    return catalog


def extract_bundle(row: Row, prefix: str = DEFAULT_ENTITLEMENT_PREFIX) -> PermissionBundle:
    """Entitlement columns populated in a row, with sorted values."""
    bundle: PermissionBundle = {}
    for name, raw in row.items():
        if not is_entitlement_column(name, prefix):
            continue
        values = split_values(raw)
        if values:
            bundle[name] = values
    return bundle


def canonicalize_bundle(bundle: PermissionBundle) -> PermissionBundle:
    """Sorted keys, each with a sorted de-duplicated value list."""
    return {key: sorted(set(bundle[key])) for key in sorted(bundle)}


def bundle_signature(bundle: PermissionBundle) -> str:
    """Deterministic clustering key for a bundle.

    Two bundles share a signature exactly when their canonical forms are equal.
    """
    return json.dumps(canonicalize_bundle(bundle), sort_keys=True, separators=(",", ":"))


def catalog_size(catalog: EntitlementCatalog) -> int:
    return sum(len(values) for values in catalog.values())


def iter_catalog(catalog: EntitlementCatalog) -> Iterable[tuple[str, list[str]]]:
    for column in sorted(catalog):
        yield column, catalog[column]
