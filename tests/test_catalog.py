import json

import pytest

from csvgov.connector.engine.catalog import (
    build_catalog,
    bundle_signature,
    canonicalize_bundle,
    catalog_size,
    extract_bundle,
    iter_catalog,
    split_values,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("View,View, Edit", ["Edit", "View"]),
        ("  Admin  ", ["Admin"]),
        ("a,,b, ,", ["a", "b"]),
        ("", []),
        ("   ", []),
        (None, []),
    ],
)
def test_split_values(raw, expected):
    assert split_values(raw) == expected


def test_build_catalog(sample_rows):
    catalog = build_catalog(sample_rows)

    assert catalog == {
        "ent_Role": ["Admin", "Manager"],
        "ent_App": ["Console", "Ledger", "Payroll"],
    }
    assert catalog_size(catalog) == 5


def test_build_catalog_columns_from_first_row():
    rows = [
        {"email": "a@example.com", "ent_Role": "A"},
        {"email": "b@example.com", "ent_Role": "B", "ent_Extra": "X"},
    ]
    assert build_catalog(rows) == {"ent_Role": ["A", "B"]}


def test_build_catalog_edge_cases():
    assert build_catalog([]) == {}
    assert build_catalog([{"email": "a@example.com"}]) == {}
    # Column present but never populated still yields an entry
    assert build_catalog([{"email": "a@example.com", "ent_Role": ""}]) == {"ent_Role": []}


def test_iter_catalog_sorted_by_column(sample_rows):
    assert [column for column, _ in iter_catalog(build_catalog(sample_rows))] == ["ent_App", "ent_Role"]


class TestBundles:
    def test_extract_bundle_skips_empty_columns(self, sample_rows):
        assert extract_bundle(sample_rows[0]) == {
            "ent_Role": ["Manager"],
            "ent_App": ["Ledger", "Payroll"],
        }
        assert extract_bundle(sample_rows[3]) == {}

    def test_signature_ignores_key_and_value_order(self):
        b1 = {"ent_Role": ["Manager"], "ent_App": ["Payroll", "Ledger"]}
        b2 = {"ent_App": ["Ledger", "Payroll"], "ent_Role": ["Manager"]}
        assert bundle_signature(b1) == bundle_signature(b2)

    def test_signature_distinguishes_bundles(self):
        assert bundle_signature({"ent_A": ["x"]}) != bundle_signature({"ent_A": ["y"]})
        assert bundle_signature({"ent_A": ["x"]}) != bundle_signature({"ent_B": ["x"]})
        assert bundle_signature({"ent_A": ["x", "y"]}) != bundle_signature({"ent_A": ["x,y"]})

    def test_rows_with_same_permissions_share_signature(self, sample_rows):
        alice = bundle_signature(extract_bundle(sample_rows[0]))
        bob = bundle_signature(extract_bundle(sample_rows[1]))
        carol = bundle_signature(extract_bundle(sample_rows[2]))
        assert alice == bob
        assert alice != carol

    def test_canonical_form(self):
        canonical = canonicalize_bundle({"b": ["z", "y", "z"], "a": ["x"]})
        assert list(canonical) == ["a", "b"]
        assert canonical["b"] == ["y", "z"]
        assert json.loads(bundle_signature({"b": ["z", "y"], "a": ["x"]})) == {"a": ["x"], "b": ["y", "z"]}
