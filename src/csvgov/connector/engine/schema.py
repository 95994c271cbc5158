"""Column classification and canonical attribute matching.

Columns carrying the entitlement prefix (``ent_`` by default) are
entitlements; everything else is a profile attribute. Profile columns are
matched against a fixed dictionary of Okta base-profile attributes so that
``First Name``, ``first_name`` and ``fname`` all land on ``firstName``.
"""

from __future__ import annotations

import re
from typing import Iterable

from csvgov.connector.models import AttributeColumn, ColumnKind, Row

DEFAULT_ENTITLEMENT_PREFIX = "ent_"

# normalized column name -> Okta base profile attribute
CANONICAL_ATTRIBUTES: dict[str, str] = {
    # Identity
    "login": "login",
    "email": "email",
    "username": "login",
    # Name
    "firstname": "firstName",
    "fname": "firstName",
    "givenname": "firstName",
    "lastname": "lastName",
    "lname": "lastName",
    "surname": "lastName",
    "familyname": "lastName",
    "middlename": "middleName",
    "displayname": "displayName",
    "nickname": "nickName",
    # Title and prefix
    "title": "title",
    "jobtitle": "title",
    "honorificprefix": "honorificPrefix",
    "prefix": "honorificPrefix",
    "honorificsuffix": "honorificSuffix",
    "suffix": "honorificSuffix",
    # Contact
    "primaryphone": "primaryPhone",
    "phone": "primaryPhone",
    "phonenumber": "primaryPhone",
    "mobilephone": "mobilePhone",
    "mobile": "mobilePhone",
    "cellphone": "mobilePhone",
    # Address
    "streetaddress": "streetAddress",
    "address": "streetAddress",
    "street": "streetAddress",
    "city": "city",
    "state": "state",
    "stateprovince": "state",
    "province": "state",
    "zipcode": "zipCode",
    "zip": "zipCode",
    "postalcode": "zipCode",
    "countrycode": "countryCode",
    "country": "countryCode",
    "postaladdress": "postalAddress",
    # Locale
    "preferredlanguage": "preferredLanguage",
    "language": "preferredLanguage",
    "locale": "locale",
    "timezone": "timezone",
    # Organization
    "usertype": "userType",
    "employeenumber": "employeeNumber",
    "employeeid": "employeeNumber",
    "costcenter": "costCenter",
    "organization": "organization",
    "org": "organization",
    "company": "organization",
    "division": "division",
    "department": "department",
    "dept": "department",
    "managerid": "managerId",
    "manager": "manager",
    # Profile
    "profileurl": "profileUrl",
}

_SEPARATORS = re.compile(r"[-_\s]")


def normalize_attribute_name(name: str) -> str:
    """Lower-case a column name and strip hyphens, underscores and whitespace."""
    return _SEPARATORS.sub("", name.lower())


def match_canonical_attribute(
    name: str,
    dictionary: dict[str, str] | None = None,
) -> str | None:
    """Return the canonical attribute a column maps to, or None."""
    lookup = CANONICAL_ATTRIBUTES if dictionary is None else dictionary
    return lookup.get(normalize_attribute_name(name))


def is_entitlement_column(name: str, prefix: str = DEFAULT_ENTITLEMENT_PREFIX) -> bool:
    return name.startswith(prefix)


def entitlement_name(column: str, prefix: str = DEFAULT_ENTITLEMENT_PREFIX) -> str:
    """Strip the entitlement prefix: ``ent_Role`` -> ``Role``."""
    if column.startswith(prefix):
        return column[len(prefix):]
    return column


def classify_columns(
    header: Iterable[str],
    prefix: str = DEFAULT_ENTITLEMENT_PREFIX,
    dictionary: dict[str, str] | None = None,
) -> list[AttributeColumn]:
    """Classify each distinct header column, preserving header order."""
    columns: list[AttributeColumn] = []
    seen: set[str] = set()
    for name in header:
        if name in seen:
            continue
        seen.add(name)
        if is_entitlement_column(name, prefix):
            columns.append(AttributeColumn(name=name, kind=ColumnKind.ENTITLEMENT))
        else:
            columns.append(
                AttributeColumn(
                    name=name,
                    kind=ColumnKind.PROFILE,
                    canonical=match_canonical_attribute(name, dictionary),
                )
            )
    return columns


def entitlement_columns(header: Iterable[str], prefix: str = DEFAULT_ENTITLEMENT_PREFIX) -> list[str]:
    return [c.name for c in classify_columns(header, prefix) if c.is_entitlement]


def row_pairs(row: Row) -> list[tuple[str, str]]:
    """Ordered ``(column, value)`` pairs with stripped, non-empty values."""
    pairs = []
    for name, value in row.items():
        if value is None:
            continue
        value = str(value).strip()
        if value:
            pairs.append((name, value))
    return pairs


def build_app_profile(row: Row) -> dict[str, str]:
    """App-user attributes for a row: every non-empty column, as-is."""
    return dict(row_pairs(row))


def build_user_profile(
    row: Row,
    identity: str,
    columns: list[AttributeColumn],
) -> dict[str, str]:
    """Base user profile for a row.

    ``login`` and ``email`` default to the identity value; ``firstName`` and
    ``lastName`` are always present because the base profile requires them.
    """
    profile: dict[str, str] = {
        "login": identity,
        "email": identity,
        "firstName": "",
        "lastName": "",
    }
    by_name = {c.name: c for c in columns}
    for name, value in row_pairs(row):
        column = by_name.get(name)
        if column is None or column.canonical is None:
            continue
        # Identity columns such as "username" map to login; keep the identity
        if column.canonical == "login":
            continue
        profile[column.canonical] = value
    return profile


DEFAULT_IDENTITY_COLUMNS: tuple[str, ...] = (
    "username",
    "login",
    "email",
    "user",
    "userid",
    "user_id",
    "mail",
)


def identity_value(row: Row, candidates: Iterable[str] = DEFAULT_IDENTITY_COLUMNS) -> str | None:
    """Raw identity value of a row, taken from the first populated candidate column.

    Column names are compared case-insensitively.
    """
    lowered = {name.lower(): name for name in row}
    for candidate in candidates:
        column = lowered.get(candidate.lower())
        if column is None:
            continue
        value = row.get(column)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def identity_key(row: Row, candidates: Iterable[str] = DEFAULT_IDENTITY_COLUMNS) -> str | None:
    """Lower-cased identity of a row, or None when no candidate column is populated."""
    value = identity_value(row, candidates)
    return value.lower() if value is not None else None
