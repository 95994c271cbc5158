import pytest

from csvgov.connector.engine.schema import (
    build_app_profile,
    build_user_profile,
    classify_columns,
    entitlement_columns,
    entitlement_name,
    identity_key,
    identity_value,
    match_canonical_attribute,
    normalize_attribute_name,
)
from csvgov.connector.models import ColumnKind


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("First Name", "firstName"),
        ("first_name", "firstName"),
        ("first-name", "firstName"),
        ("FNAME", "firstName"),
        ("Surname", "lastName"),
        ("E-Mail", "email"),
        ("email", "email"),
        ("Dept", "department"),
        ("zip code", "zipCode"),
        ("favourite_colour", None),
    ],
)
def test_match_canonical_attribute(raw, expected):
    assert match_canonical_attribute(raw) == expected


def test_normalize_strips_separators_and_case():
    assert normalize_attribute_name(" Employee_ID-No ") == "employeeidno"


def test_match_with_custom_dictionary():
    assert match_canonical_attribute("Badge No", {"badgeno": "employeeNumber"}) == "employeeNumber"
    assert match_canonical_attribute("first_name", {}) is None


def test_classify_columns_preserves_order_and_kinds(sample_header):
    columns = classify_columns(sample_header)

    assert [c.name for c in columns] == sample_header
    kinds = {c.name: c.kind for c in columns}
    assert kinds["ent_Role"] is ColumnKind.ENTITLEMENT
    assert kinds["ent_App"] is ColumnKind.ENTITLEMENT
    assert kinds["department"] is ColumnKind.PROFILE

    canonical = {c.name: c.canonical for c in columns}
    assert canonical["first_name"] == "firstName"
    assert canonical["username"] == "login"
    assert canonical["ent_Role"] is None


def test_classify_columns_empty_header():
    assert classify_columns([]) == []


def test_classify_columns_deduplicates():
    columns = classify_columns(["email", "email", "ent_X"])
    assert [c.name for c in columns] == ["email", "ent_X"]


def test_entitlement_prefix_is_configurable():
    header = ["perm_Role", "ent_Role", "email"]
    assert entitlement_columns(header, prefix="perm_") == ["perm_Role"]
    assert entitlement_name("perm_Role", "perm_") == "Role"
    assert entitlement_name("email") == "email"


class TestIdentity:
    def test_first_populated_candidate_wins(self):
        row = {"Email": "Alice@Example.com", "username": ""}
        assert identity_value(row) == "Alice@Example.com"
        assert identity_key(row) == "alice@example.com"

    def test_candidate_order_matters(self):
        row = {"email": "a@example.com", "username": "alice"}
        assert identity_key(row) == "alice"
        assert identity_key(row, ["email", "username"]) == "a@example.com"

    def test_case_insensitive_column_match(self):
        assert identity_key({"USERNAME": "Bob"}) == "bob"

    def test_no_identity(self):
        assert identity_key({"first_name": "Ghost"}) is None
        assert identity_key({"username": "   "}) is None


class TestProfiles:
    def test_app_profile_drops_empty_values(self):
        row = {"username": "a@example.com", "department": " ", "ent_Role": "Manager"}
        assert build_app_profile(row) == {"username": "a@example.com", "ent_Role": "Manager"}

    def test_user_profile_defaults(self, sample_header):
        columns = classify_columns(sample_header)
        profile = build_user_profile({"username": "x@example.com"}, "x@example.com", columns)

        assert profile == {
            "login": "x@example.com",
            "email": "x@example.com",
            "firstName": "",
            "lastName": "",
        }

    def test_user_profile_uses_canonical_columns(self, sample_rows, sample_header):
        columns = classify_columns(sample_header)
        profile = build_user_profile(sample_rows[0], "alice@example.com", columns)

        assert profile["firstName"] == "Alice"
        assert profile["lastName"] == "Smith"
        assert profile["department"] == "Finance"
        assert "ent_Role" not in profile

    def test_login_always_comes_from_identity(self):
        columns = classify_columns(["login", "email"])
        row = {"login": "OtherLogin", "email": "real@example.com"}
        profile = build_user_profile(row, "real@example.com", columns)

        assert profile["login"] == "real@example.com"
        assert profile["email"] == "real@example.com"
