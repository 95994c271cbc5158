"""One-time setup that precedes reconciliation.

Makes sure the application exists, registers it for entitlement management,
mirrors CSV columns into the app-user schema and profile mappings, and
creates one multi-valued entitlement per entitlement column.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

from csvgov.connector.engine.grants import EntitlementIndex, RemoteEntitlement
from csvgov.connector.engine.retry import RetryPolicy
from csvgov.connector.engine.schema import DEFAULT_ENTITLEMENT_PREFIX, entitlement_name
from csvgov.connector.models import AttributeColumn, EntitlementCatalog
from csvgov.connector.port import ConflictError, GovernancePort

logger = structlog.get_logger()

PLACEHOLDER_SSO_URL = "https://example.com/sso/saml"


def build_application_definition(name: str) -> dict[str, Any]:
    """SAML 2.0 application with placeholder endpoints."""
    return {
        "label": name,
        "visibility": {
            "autoSubmitToolbar": False,
            "hide": {"iOS": False, "web": False},
        },
        "features": [],
        "signOnMode": "SAML_2_0",
        "settings": {
            "signOn": {
                "defaultRelayState": "",
                "ssoAcsUrl": PLACEHOLDER_SSO_URL,
                "idpIssuer": "http://www.okta.com/${org.externalKey}",
                "audience": f"https://example.com/{name}",
                "recipient": PLACEHOLDER_SSO_URL,
                "destination": PLACEHOLDER_SSO_URL,
                "subjectNameIdTemplate": "${user.userName}",
                "subjectNameIdFormat": "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress",
                "responseSigned": True,
                "assertionSigned": True,
                "signatureAlgorithm": "RSA_SHA256",
                "digestAlgorithm": "SHA256",
                "honorForceAuthn": True,
                "authnContextClassRef": (
                    "urn:oasis:names:tc:SAML:2.0:ac:classes:PasswordProtectedTransport"
                ),
            }
        },
    }


def build_entitlement_definition(
    name: str,
    values: list[str],
    application_id: str,
) -> dict[str, Any]:
    return {
        "name": name,
        "externalValue": name,
        "description": f"{name} entitlement from CSV",
        "parent": {"externalId": application_id, "type": "APPLICATION"},
        "multiValue": True,
        "dataType": "string",
        "values": [
            {"name": value, "description": value, "externalValue": value}
            for value in values
        ],
    }


@dataclass
class ProvisioningReport:
    """What the setup phase did."""

    application_id: str | None = None
    application_created: bool = False
    resource_id: str | None = None

    attributes_created: list[str] = field(default_factory=list)
    attributes_existing: list[str] = field(default_factory=list)

    mappings_added: list[str] = field(default_factory=list)
    mappings_existing: list[str] = field(default_factory=list)

    entitlements_created: list[str] = field(default_factory=list)
    entitlements_existing: list[str] = field(default_factory=list)

    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def summary(self) -> str:
        lines = []
        if self.application_id:
            verb = "Created" if self.application_created else "Using existing"
            lines.append(f"{verb} application: {self.application_id}")
        if self.resource_id:
            lines.append(f"Governance resource: {self.resource_id}")

        if self.attributes_created:
            lines.append(
                f"Created {len(self.attributes_created)} custom attributes: "
                f"{', '.join(self.attributes_created)}"
            )
        if self.attributes_existing:
            lines.append(f"Custom attributes already present: {len(self.attributes_existing)}")

        if self.mappings_added:
            lines.append(f"Added {len(self.mappings_added)} profile mappings")
            for mapping in self.mappings_added:
                lines.append(f"  + {mapping}")
        if self.mappings_existing:
            lines.append(f"Profile mappings already present: {len(self.mappings_existing)}")

        if self.entitlements_created:
            lines.append(
                f"Created {len(self.entitlements_created)} entitlements: "
                f"{', '.join(self.entitlements_created)}"
            )
        if self.entitlements_existing:
            lines.append(f"Entitlements already present: {', '.join(self.entitlements_existing)}")

        if self.warnings:
            lines.append(f"Warnings: {len(self.warnings)}")
            for warning in self.warnings:
                lines.append(f"  ? {warning}")
        if self.errors:
            lines.append(f"Errors: {len(self.errors)}")
            for err in self.errors:
                lines.append(f"  ! {err}")

        if not lines:
            lines.append("Nothing to provision")
        return "\n".join(lines)


async def ensure_application(
    port: GovernancePort,
    name: str,
    *,
    dry_run: bool = False,
) -> tuple[dict[str, Any] | None, bool]:
    """Find the application by exact label, creating it when absent.

    Returns ``(application, created)``. In dry-run mode a missing application
    is reported as ``(None, True)``.
    """
    app = await port.find_application_by_name(name)
    if app:
        logger.info("Application found", name=name, application_id=app.get("id"))
        return app, False

    if dry_run:
        logger.info("[DRY RUN] Would create application", name=name)
        return None, True

    app = await port.create_application(build_application_definition(name))
    logger.info("Application created", name=name, application_id=app.get("id"))
    return app, True


async def ensure_governance_resource(
    port: GovernancePort,
    application_id: str,
    application_name: str,
    report: ProvisioningReport | None = None,
    *,
    dry_run: bool = False,
) -> str | None:
    """Look up or register the governance resource and enable entitlement management.

    Every failure is downgraded to a warning since the feature needs a
    governance licence on the tenant.
    """
    report = report if report is not None else ProvisioningReport()

    try:
        resource_id = await port.get_governance_resource(application_id)
    except Exception as e:
        logger.warning("Governance resource lookup failed", error=str(e))
        resource_id = None

    if resource_id is None and dry_run:
        logger.info("[DRY RUN] Would register governance resource", application_id=application_id)
        return None

    if resource_id is None:
        try:
            resource_id = await port.register_governance_resource(application_id, application_name)
            logger.info("Registered governance resource", resource_id=resource_id)
        except Exception as e:
            report.warnings.append(f"Could not register governance resource: {e}")
            return None

    if resource_id and not dry_run:
        try:
            await port.enable_entitlement_management(resource_id)
        except Exception as e:
            report.warnings.append(f"Could not enable entitlement management: {e}")

    report.resource_id = resource_id
    return resource_id


def existing_custom_attributes(schema: dict[str, Any]) -> set[str]:
    custom = ((schema or {}).get("definitions") or {}).get("custom") or {}
    return set((custom.get("properties") or {}).keys())


async def sync_custom_attributes(
    port: GovernancePort,
    application_id: str,
    header: list[str],
    report: ProvisioningReport | None = None,
    *,
    dry_run: bool = False,
) -> ProvisioningReport:
    """Create an app-user custom attribute for every CSV column not yet in the schema."""
    report = report if report is not None else ProvisioningReport()
    schema = await port.get_remote_schema(application_id)
    existing = existing_custom_attributes(schema)

    for column in header:
        if column in existing:
            report.attributes_existing.append(column)
            continue
        if dry_run:
            logger.info("[DRY RUN] Would create custom attribute", attribute=column)
            report.attributes_created.append(column)
            continue
        try:
            await port.create_custom_attribute(application_id, column)
            report.attributes_created.append(column)
            existing.add(column)
        except Exception as e:
            report.errors.append(f"Failed to create attribute {column}: {e}")

    return report


async def sync_profile_mappings(
    port: GovernancePort,
    application_id: str,
    columns: list[AttributeColumn],
    report: ProvisioningReport | None = None,
    *,
    dry_run: bool = False,
) -> ProvisioningReport:
    """Map matched profile columns onto base-profile attributes.

    Existing target properties are never overwritten and the mapping is
    written once, only when something was added.
    """
    report = report if report is not None else ProvisioningReport()
    matched = [c for c in columns if not c.is_entitlement and c.canonical]
    if not matched:
        return report

    mapping = await port.get_profile_mapping(application_id)
    if not mapping:
        report.warnings.append("Profile mapping not found for this application")
        return report

    properties = dict(mapping.get("properties") or {})
    added = 0
    for column in matched:
        if column.canonical in properties:
            report.mappings_existing.append(f"appuser.{column.name} -> user.{column.canonical}")
            continue
        properties[column.canonical] = {"expression": f"appuser.{column.name}"}
        report.mappings_added.append(f"appuser.{column.name} -> user.{column.canonical}")
        added += 1

    if added and not dry_run:
        await port.update_profile_mapping(mapping["id"], properties)
    return report


async def _find_existing_entitlement(
    port: GovernancePort,
    application_id: str,
    name: str,
    retry: RetryPolicy,
) -> dict[str, Any] | None:
    for attempt in range(1, retry.max_attempts + 1):
        found = await port.find_entitlement_by_name(application_id, name)
        if found:
            return found
        if attempt < retry.max_attempts:
            await retry.sleep(retry.delay_for(attempt))
    return None


async def sync_entitlement_catalog(
    port: GovernancePort,
    resource_id: str | None,
    application_id: str,
    catalog: EntitlementCatalog,
    prefix: str = DEFAULT_ENTITLEMENT_PREFIX,
    report: ProvisioningReport | None = None,
    *,
    retry: RetryPolicy | None = None,
    dry_run: bool = False,
) -> EntitlementIndex:
    """Create one multi-valued entitlement per catalog column.

    Existing entitlements (case-insensitive name match) are reused. A
    uniqueness conflict falls back to fetching the entitlement by name.
    """
    report = report if report is not None else ProvisioningReport()
    retry = retry or RetryPolicy()

    index = EntitlementIndex.from_api(await port.list_entitlements(resource_id, application_id))

    for column, values in catalog.items():
        name = entitlement_name(column, prefix)
        if name in index:
            report.entitlements_existing.append(name)
            continue

        if dry_run:
            logger.info("[DRY RUN] Would create entitlement", entitlement=name, values=values)
            report.entitlements_created.append(name)
            continue

        try:
            created = await port.create_entitlement(
                resource_id,
                build_entitlement_definition(name, values, application_id),
            )
            index.add(RemoteEntitlement.from_api(created))
            report.entitlements_created.append(name)
            logger.info("Entitlement created", entitlement=name, values=len(values))
        except ConflictError:
            logger.info("Entitlement already exists, fetching", entitlement=name)
            try:
                existing = await _find_existing_entitlement(port, application_id, name, retry)
            except Exception as e:
                report.errors.append(f"Failed to fetch existing entitlement {name}: {e}")
                continue
            if existing and existing.get("id"):
                index.add(RemoteEntitlement.from_api(existing))
                report.entitlements_existing.append(name)
            else:
                report.errors.append(f"Entitlement {name} exists but could not be fetched")
        except Exception as e:
            report.errors.append(f"Failed to create entitlement {name}: {e}")

    return index