import pytest

from csvgov.connector.engine.catalog import build_catalog
from csvgov.connector.engine.provisioning import (
    ProvisioningReport,
    build_application_definition,
    build_entitlement_definition,
    ensure_application,
    ensure_governance_resource,
    sync_custom_attributes,
    sync_entitlement_catalog,
    sync_profile_mappings,
)
from csvgov.connector.engine.retry import RetryPolicy
from csvgov.connector.engine.schema import classify_columns
from csvgov.connector.port import ConflictError, GovernanceError


def test_application_definition_is_saml():
    definition = build_application_definition("HR Portal")
    assert definition["label"] == "HR Portal"
    assert definition["signOnMode"] == "SAML_2_0"
    assert definition["settings"]["signOn"]["audience"] == "https://example.com/HR Portal"


def test_entitlement_definition():
    definition = build_entitlement_definition("Role", ["Admin", "Manager"], "app1")
    assert definition["multiValue"] is True
    assert definition["parent"] == {"externalId": "app1", "type": "APPLICATION"}
    assert [v["name"] for v in definition["values"]] == ["Admin", "Manager"]


class TestEnsureApplication:
    @pytest.mark.asyncio
    async def test_existing_application_is_reused(self, fake_port):
        app = fake_port.seed_application("HR")

        found, created = await ensure_application(fake_port, "HR")

        assert found["id"] == app["id"]
        assert created is False
        assert fake_port.calls_to("create_application") == []

    @pytest.mark.asyncio
    async def test_missing_application_is_created(self, fake_port):
        app, created = await ensure_application(fake_port, "HR")
        assert created is True
        assert app["label"] == "HR"

    @pytest.mark.asyncio
    async def test_dry_run(self, fake_port):
        app, created = await ensure_application(fake_port, "HR", dry_run=True)
        assert (app, created) == (None, True)
        assert fake_port.apps == {}


class TestGovernanceResource:
    @pytest.mark.asyncio
    async def test_registers_and_enables(self, fake_port):
        app = fake_port.seed_application("HR")
        report = ProvisioningReport()

        resource_id = await ensure_governance_resource(fake_port, app["id"], "HR", report)

        assert resource_id == fake_port.resources[app["id"]]
        assert resource_id in fake_port.enabled_resources
        assert report.resource_id == resource_id
        assert report.warnings == []

    @pytest.mark.asyncio
    async def test_failures_become_warnings(self, fake_port):
        app = fake_port.seed_application("HR")
        fake_port.fail("register_governance_resource", GovernanceError("no licence", status_code=403))
        report = ProvisioningReport()

        resource_id = await ensure_governance_resource(fake_port, app["id"], "HR", report)

        assert resource_id is None
        assert "no licence" in report.warnings[0]
        assert report.success

    @pytest.mark.asyncio
    async def test_dry_run_does_not_register(self, fake_port):
        app = fake_port.seed_application("HR")

        resource_id = await ensure_governance_resource(fake_port, app["id"], "HR", dry_run=True)

        assert resource_id is None
        assert fake_port.calls_to("register_governance_resource") == []


class TestSchemaSync:
    @pytest.mark.asyncio
    async def test_creates_only_missing_attributes(self, fake_port, sample_header):
        app = fake_port.seed_application("HR")
        fake_port.schemas[app["id"]].add("username")

        report = await sync_custom_attributes(fake_port, app["id"], sample_header)

        assert report.attributes_existing == ["username"]
        assert report.attributes_created == sample_header[1:]
        assert fake_port.schemas[app["id"]] == set(sample_header)

    @pytest.mark.asyncio
    async def test_attribute_failure_is_recorded(self, fake_port):
        app = fake_port.seed_application("HR")
        fake_port.fail("create_custom_attribute", GovernanceError("invalid name", status_code=400))

        report = await sync_custom_attributes(fake_port, app["id"], ["bad name", "department"])

        assert report.attributes_created == ["department"]
        assert "bad name" in report.errors[0]

    @pytest.mark.asyncio
    async def test_profile_mappings_never_overwrite(self, fake_port, sample_header):
        app = fake_port.seed_application("HR")
        fake_port.mappings[app["id"]]["properties"] = {"firstName": {"expression": "appuser.given"}}
        columns = classify_columns(sample_header)

        report = await sync_profile_mappings(fake_port, app["id"], columns)

        properties = fake_port.mappings[app["id"]]["properties"]
        assert properties["firstName"] == {"expression": "appuser.given"}
        assert properties["lastName"] == {"expression": "appuser.last_name"}
        assert properties["department"] == {"expression": "appuser.department"}
        assert properties["login"] == {"expression": "appuser.username"}
        assert report.mappings_existing == ["appuser.first_name -> user.firstName"]
        assert len(fake_port.calls_to("update_profile_mapping")) == 1

    @pytest.mark.asyncio
    async def test_profile_mappings_no_write_when_nothing_added(self, fake_port):
        app = fake_port.seed_application("HR")
        fake_port.mappings[app["id"]]["properties"] = {"department": {"expression": "appuser.dept"}}

        await sync_profile_mappings(fake_port, app["id"], classify_columns(["dept", "custom"]))

        assert fake_port.calls_to("update_profile_mapping") == []

    @pytest.mark.asyncio
    async def test_missing_mapping_is_a_warning(self, fake_port, sample_header):
        app = fake_port.seed_application("HR")
        del fake_port.mappings[app["id"]]

        report = await sync_profile_mappings(fake_port, app["id"], classify_columns(sample_header))

        assert report.warnings == ["Profile mapping not found for this application"]


class TestEntitlementCatalogSync:
    @pytest.mark.asyncio
    async def test_creates_one_entitlement_per_column(self, fake_port, sample_rows):
        app = fake_port.seed_application("HR")
        fake_port.seed_entitlement(app["id"], "role", ["Manager"])
        report = ProvisioningReport()

        index = await sync_entitlement_catalog(
            fake_port, None, app["id"], build_catalog(sample_rows), report=report
        )

        assert report.entitlements_existing == ["Role"]
        assert report.entitlements_created == ["App"]
        assert sorted(index.names()) == ["App", "role"]
        assert [v.name for v in index.get("App").values] == ["Console", "Ledger", "Payroll"]

    @pytest.mark.asyncio
    async def test_conflict_falls_back_to_lookup(self, fake_port, fake_sleep):
        app = fake_port.seed_application("HR")
        existing = fake_port.seed_entitlement(app["id"], "Role", ["Manager"])
        # Listing misses the entitlement, creation then conflicts
        fake_port.fail("create_entitlement", ConflictError("Role needs to be unique", status_code=400))
        fake_port.fail("find_entitlement_by_name", GovernanceError("flaky", status_code=500))
        original_list = fake_port.list_entitlements

        async def empty_list(resource_id, application_id):
            await original_list(resource_id, application_id)
            return []

        fake_port.list_entitlements = empty_list
        report = ProvisioningReport()

        index = await sync_entitlement_catalog(
            fake_port,
            None,
            app["id"],
            {"ent_Role": ["Manager"]},
            report=report,
            retry=RetryPolicy(sleep=fake_sleep),
        )

        # The lookup error is reported, not raised
        assert "Role" not in index
        assert "Failed to fetch existing entitlement Role" in report.errors[0]

        fake_port.fail("create_entitlement", ConflictError("Role needs to be unique", status_code=400))
        report = ProvisioningReport()
        index = await sync_entitlement_catalog(
            fake_port,
            None,
            app["id"],
            {"ent_Role": ["Manager"]},
            report=report,
            retry=RetryPolicy(sleep=fake_sleep),
        )

        assert index.get("Role").id == existing["id"]
        assert report.entitlements_existing == ["Role"]
        assert report.errors == []

    @pytest.mark.asyncio
    async def test_dry_run(self, fake_port, sample_rows):
        app = fake_port.seed_application("HR")
        report = ProvisioningReport()

        index = await sync_entitlement_catalog(
            fake_port, None, app["id"], build_catalog(sample_rows), report=report, dry_run=True
        )

        assert len(index) == 0
        assert report.entitlements_created == ["Role", "App"]
        assert fake_port.entitlements == {}


def test_report_summary():
    report = ProvisioningReport(
        application_id="app1",
        application_created=True,
        attributes_created=["a", "b"],
        warnings=["no licence"],
    )
    text = report.summary()
    assert "Created application: app1" in text
    assert "Created 2 custom attributes: a, b" in text
    assert "  ? no licence" in text
    assert ProvisioningReport().summary() == "Nothing to provision"
