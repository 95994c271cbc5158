"""Reconciliation and role-mining engine."""

from .catalog import build_catalog, bundle_signature, extract_bundle, split_values
from .grants import EntitlementIndex, RemoteEntitlement, resolve_grant
from .mining import mine_roles, run_role_mining
from .reconcile import (
    ReconcileOptions,
    apply_change_set,
    compute_change_set,
    run_sync_loop,
    run_sync_pass,
)
from .retry import RetryPolicy
from .schema import classify_columns, identity_key, match_canonical_attribute

__all__ = [
    "build_catalog",
    "bundle_signature",
    "extract_bundle",
    "split_values",
    "EntitlementIndex",
    "RemoteEntitlement",
    "resolve_grant",
    "mine_roles",
    "run_role_mining",
    "ReconcileOptions",
    "apply_change_set",
    "compute_change_set",
    "run_sync_loop",
    "run_sync_pass",
    "RetryPolicy",
    "classify_columns",
    "identity_key",
    "match_canonical_attribute",
]
