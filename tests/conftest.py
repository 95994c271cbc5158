"""Pytest configuration and fixtures."""

from __future__ import annotations

import copy
import itertools
from pathlib import Path
from typing import Any

import pytest

from csvgov.connector.engine.reconcile import ReconcileOptions
from csvgov.connector.engine.retry import RetryPolicy
from csvgov.connector.port import ConflictError, NotFoundError

CSV_TEXT = """username,first_name,last_name,department,ent_Role,ent_App
alice@example.com,Alice,Smith,Finance,Manager,"Payroll, Ledger"
bob@example.com,Bob,Jones,Finance,Manager,"Ledger,Payroll"
carol@example.com,Carol,White,IT,Admin,Console
dave@example.com,Dave,Brown,Sales,,
"""


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakePort:
    """In-memory tenant implementing GovernancePort.

    ``fail(method, *errors)`` queues exceptions raised by the next calls.
    """

    def __init__(self, org: str = "acme"):
        self.org = org
        self.calls: list[tuple[str, tuple]] = []
        self.failures: dict[str, list[Exception]] = {}
        self.refreshes = 0
        self._ids = itertools.count(1)

        self.apps: dict[str, dict[str, Any]] = {}
        self.schemas: dict[str, set[str]] = {}
        self.mappings: dict[str, dict[str, Any]] = {}
        self.resources: dict[str, str] = {}
        self.enabled_resources: set[str] = set()
        self.entitlements: dict[str, dict[str, Any]] = {}
        self.users: dict[str, dict[str, Any]] = {}
        self.app_users: dict[str, dict[str, dict[str, Any]]] = {}
        self.grants: dict[str, dict[str, Any]] = {}
        self.bundles: list[dict[str, Any]] = []

    # helpers

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        queue = self.failures.get(name)
        if queue:
            raise queue.pop(0)

    def _id(self, prefix: str) -> str:
        return f"{prefix}{next(self._ids)}"

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def calls_to(self, name: str) -> list[tuple]:
        return [args for call, args in self.calls if call == name]

    def seed_application(self, label: str) -> dict[str, Any]:
        app = {"id": self._id("app"), "label": label, "status": "ACTIVE"}
        self.apps[app["id"]] = app
        self.schemas[app["id"]] = set()
        self.mappings[app["id"]] = {"id": self._id("map"), "properties": {}}
        self.app_users[app["id"]] = {}
        return app

    def seed_entitlement(self, application_id: str, name: str, values: list[str]) -> dict[str, Any]:
        entitlement = {
            "id": self._id("ent"),
            "name": name,
            "parent": {"externalId": application_id, "type": "APPLICATION"},
            "values": [{"id": self._id("val"), "name": v, "description": v} for v in values],
        }
        self.entitlements[entitlement["id"]] = entitlement
        return entitlement

    def seed_app_user(self, application_id: str, login: str, profile: dict[str, str]) -> str:
        user_id = self._id("usr")
        self.users[user_id] = {"id": user_id, "profile": {"login": login, "email": login}}
        self.app_users[application_id][user_id] = {
            "id": user_id,
            "credentials": {"userName": login},
            "profile": dict(profile),
        }
        return user_id

    def grants_for(self, user_id: str) -> list[dict[str, Any]]:
        return [g for g in self.grants.values() if g["user_id"] == user_id]

    def user_id_for(self, login: str) -> str | None:
        for user in self.users.values():
            if user["profile"]["login"].lower() == login.lower():
                return user["id"]
        return None

    # applications and schema

    async def find_application_by_name(self, name):
        self._record("find_application_by_name", name)
        for app in self.apps.values():
            if app["label"] == name:
                return dict(app)
        return None

    async def create_application(self, definition):
        self._record("create_application", definition)
        return dict(self.seed_application(definition["label"]))

    async def get_remote_schema(self, application_id):
        self._record("get_remote_schema", application_id)
        properties = {name: {"type": "string"} for name in self.schemas.get(application_id, set())}
        return {"definitions": {"custom": {"properties": properties}}}

    async def create_custom_attribute(self, application_id, attribute_name):
        self._record("create_custom_attribute", application_id, attribute_name)
        self.schemas.setdefault(application_id, set()).add(attribute_name)

    async def get_profile_mapping(self, application_id):
        self._record("get_profile_mapping", application_id)
        mapping = self.mappings.get(application_id)
        return copy.deepcopy(mapping) if mapping else None

    async def update_profile_mapping(self, mapping_id, properties):
        self._record("update_profile_mapping", mapping_id, properties)
        for mapping in self.mappings.values():
            if mapping["id"] == mapping_id:
                mapping["properties"] = copy.deepcopy(properties)

    # governance

    async def get_governance_resource(self, application_id):
        self._record("get_governance_resource", application_id)
        return self.resources.get(application_id)

    async def register_governance_resource(self, application_id, application_name):
        self._record("register_governance_resource", application_id, application_name)
        resource_id = self._id("res")
        self.resources[application_id] = resource_id
        return resource_id

    async def enable_entitlement_management(self, resource_id):
        self._record("enable_entitlement_management", resource_id)
        self.enabled_resources.add(resource_id)

    async def list_entitlements(self, resource_id, application_id):
        self._record("list_entitlements", resource_id, application_id)
        return [
            copy.deepcopy(e)
            for e in self.entitlements.values()
            if e["parent"]["externalId"] == application_id
        ]

    async def create_entitlement(self, resource_id, data):
        self._record("create_entitlement", resource_id, data)
        application_id = data["parent"]["externalId"]
        for existing in self.entitlements.values():
            if (
                existing["name"].lower() == data["name"].lower()
                and existing["parent"]["externalId"] == application_id
            ):
                raise ConflictError(f"Entitlement {data['name']} needs to be unique", status_code=400)
        created = self.seed_entitlement(application_id, data["name"], [v["name"] for v in data["values"]])
        return copy.deepcopy(created)

    async def find_entitlement_by_name(self, application_id, name):
        self._record("find_entitlement_by_name", application_id, name)
        for entitlement in self.entitlements.values():
            if (
                entitlement["name"].lower() == name.lower()
                and entitlement["parent"]["externalId"] == application_id
            ):
                return copy.deepcopy(entitlement)
        return None

    async def add_entitlement_value(self, entitlement_id, value_name):
        self._record("add_entitlement_value", entitlement_id, value_name)
        entitlement = self.entitlements.get(entitlement_id)
        if entitlement is None:
            raise NotFoundError(f"Entitlement {entitlement_id} not found", status_code=404)
        value = {"id": self._id("val"), "name": value_name, "description": value_name}
        entitlement["values"].append(value)
        return dict(value)

    # users and assignments

    async def find_user(self, identity_key):
        self._record("find_user", identity_key)
        user_id = self.user_id_for(identity_key)
        return copy.deepcopy(self.users[user_id]) if user_id else None

    async def create_user(self, profile, credentials):
        self._record("create_user", profile, credentials)
        user_id = self._id("usr")
        self.users[user_id] = {"id": user_id, "profile": dict(profile)}
        return {"id": user_id, "profile": dict(profile)}

    async def update_user(self, user_id, profile):
        self._record("update_user", user_id, profile)
        self.users[user_id]["profile"].update(profile)

    async def assign_user_to_application(self, application_id, user_id, attributes):
        self._record("assign_user_to_application", application_id, user_id, attributes)
        login = self.users[user_id]["profile"]["login"]
        self.app_users.setdefault(application_id, {})[user_id] = {
            "id": user_id,
            "credentials": {"userName": login},
            "profile": dict(attributes),
        }

    async def update_application_user(self, application_id, user_id, attributes):
        self._record("update_application_user", application_id, user_id, attributes)
        self.app_users[application_id][user_id]["profile"].update(attributes)

    async def unassign_user_from_application(self, application_id, user_id):
        self._record("unassign_user_from_application", application_id, user_id)
        del self.app_users[application_id][user_id]

    async def list_application_users(self, application_id):
        self._record("list_application_users", application_id)
        return copy.deepcopy(list(self.app_users.get(application_id, {}).values()))

    # grants and bundles

    async def create_grant(self, application_id, user_id, entitlement_groups):
        self._record("create_grant", application_id, user_id, entitlement_groups)
        grant_id = self._id("grt")
        self.grants[grant_id] = {
            "id": grant_id,
            "application_id": application_id,
            "user_id": user_id,
            "entitlements": copy.deepcopy(entitlement_groups),
        }

    async def list_user_grants(self, application_id, user_id):
        self._record("list_user_grants", application_id, user_id)
        return [
            {"id": g["id"]}
            for g in self.grants.values()
            if g["user_id"] == user_id and g["application_id"] == application_id
        ]

    async def revoke_grant(self, grant_id):
        self._record("revoke_grant", grant_id)
        self.grants.pop(grant_id, None)

    async def create_bundle(self, payload):
        self._record("create_bundle", payload)
        bundle = {"id": self._id("bnd"), **copy.deepcopy(payload)}
        self.bundles.append(bundle)
        return bundle

    async def refresh_credentials(self):
        self._record("refresh_credentials")
        self.refreshes += 1


@pytest.fixture
def fake_port() -> FakePort:
    return FakePort()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def options(fake_sleep) -> ReconcileOptions:
    """Reconcile options that never really sleep."""
    return ReconcileOptions(
        retry=RetryPolicy(max_attempts=3, delay=5.0, sleep=fake_sleep),
        sleep=fake_sleep,
        password_factory=lambda: "Str0ng!Passw0rd",
    )


@pytest.fixture
def sample_rows() -> list[dict[str, str]]:
    return [
        {
            "username": "alice@example.com",
            "first_name": "Alice",
            "last_name": "Smith",
            "department": "Finance",
            "ent_Role": "Manager",
            "ent_App": "Payroll, Ledger",
        },
        {
            "username": "bob@example.com",
            "first_name": "Bob",
            "last_name": "Jones",
            "department": "Finance",
            "ent_Role": "Manager",
            "ent_App": "Ledger,Payroll",
        },
        {
            "username": "carol@example.com",
            "first_name": "Carol",
            "last_name": "White",
            "department": "IT",
            "ent_Role": "Admin",
            "ent_App": "Console",
        },
        {
            "username": "dave@example.com",
            "first_name": "Dave",
            "last_name": "Brown",
            "department": "Sales",
            "ent_Role": "",
            "ent_App": "",
        },
    ]


@pytest.fixture
def sample_header() -> list[str]:
    return ["username", "first_name", "last_name", "department", "ent_Role", "ent_App"]


@pytest.fixture
def csv_file(tmp_path) -> Path:
    path = tmp_path / "employees.csv"
    path.write_text(CSV_TEXT)
    return path
