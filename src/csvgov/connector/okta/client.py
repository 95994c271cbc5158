"""Okta Management and Governance API client.

Wraps the REST endpoints the connector needs for:
- Applications, app-user schema and profile mappings
- Users and application assignments
- Governance resources, entitlements, grants and bundles

Every non-success response is classified into one of the typed errors from
:mod:`csvgov.connector.port`, so callers retry on error kind only.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any
from urllib.parse import quote

import httpx

from csvgov.connector.okta.auth import CredentialCache, client_credentials_fetcher
from csvgov.connector.okta.settings import OktaSettings
from csvgov.connector.port import (
    AuthError,
    ConflictError,
    GovernanceError,
    NotFoundError,
    RateLimitError,
)

logger = logging.getLogger(__name__)

PAGE_SIZE = 200
UNIQUE_VIOLATION_MARKER = "needs to be unique"


def _items(payload: Any) -> list[dict[str, Any]]:
    """Governance list endpoints return either a list or ``{"data": [...]}``."""
    if payload is None:
        return []
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list):
            return data
    return []


def _retry_after(response: httpx.Response) -> float | None:
    """Seconds to wait, from ``Retry-After`` or Okta's ``X-Rate-Limit-Reset`` epoch."""
    header = response.headers.get("Retry-After")
    if header:
        try:
            return max(float(header), 0.0)
        except ValueError:
            pass
    reset = response.headers.get("X-Rate-Limit-Reset")
    if reset:
        try:
            return max(float(reset) - time.time(), 0.0)
        except ValueError:
            pass
    return None


def classify_response(response: httpx.Response, expected: list[int]) -> GovernanceError | None:
    """Map an HTTP response onto a typed error, or None on success."""
    status = response.status_code
    if status in expected:
        return None

    text = response.text
    url = response.request.url if response.request else ""

    if status == 429:
        return RateLimitError(
            f"Rate limited: {url}",
            status_code=429,
            response=text,
            retry_after=_retry_after(response),
        )
    if status == 401:
        return AuthError("Authentication expired or invalid", status_code=401, response=text)
    if status == 404:
        return NotFoundError(f"Resource not found: {url}", status_code=404, response=text)
    if status == 409 or (status == 400 and UNIQUE_VIOLATION_MARKER in text):
        return ConflictError(f"Resource already exists: {text}", status_code=status, response=text)
    return GovernanceError(f"Unexpected response {status}: {text}", status_code=status, response=text)


class OktaClient:
    """Async client for the Okta Management and Governance APIs."""

    def __init__(
        self,
        settings: OktaSettings,
        credentials: CredentialCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings
        self._credentials = credentials
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "OktaClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            base_url=self._settings.base_url,
            timeout=self._settings.timeout,
            transport=self._transport,
        )
        if self._credentials is None and self._settings.has_client_credentials:
            self._credentials = CredentialCache(
                client_credentials_fetcher(self._settings, self._client)
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def settings(self) -> OktaSettings:
        """Get settings."""
        return self._settings

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    async def _authorization(self, governance: bool = False) -> str:
        """Authorization header value.

        Governance endpoints prefer the SSWS token when one is configured.
        """
        if governance and self._settings.has_api_token:
            return f"SSWS {self._settings.api_token}"
        if self._credentials is not None:
            return f"Bearer {await self._credentials.get()}"
        if self._settings.has_api_token:
            return f"SSWS {self._settings.api_token}"
        raise AuthError(
            "No credentials provided. Set CSVGOV_CLIENT_ID with a client secret or "
            "private key, or CSVGOV_API_TOKEN"
        )

    async def refresh_credentials(self) -> None:
        """Drop the cached token and fetch a new one."""
        if self._credentials is not None:
            logger.info("Refreshing OAuth token")
            await self._credentials.refresh()

    # -------------------------------------------------------------------------
    # HTTP helpers
    # -------------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        *,
        governance: bool = False,
        expected: list[int] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        if self._client is None:
            raise RuntimeError("OktaClient must be used as an async context manager")
        headers = {
            "Authorization": await self._authorization(governance),
            "Accept": "application/json",
        }
        response = await self._client.request(method, path, headers=headers, **kwargs)
        error = classify_response(response, expected or [200])
        if error is not None:
            raise error
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def _get(self, path: str, *, governance: bool = False, params: dict | None = None) -> Any:
        response = await self._send("GET", path, governance=governance, params=params)
        return self._json(response)

    async def _post(
        self,
        path: str,
        json: Any = None,
        *,
        governance: bool = False,
        params: dict | None = None,
    ) -> Any:
        response = await self._send(
            "POST",
            path,
            governance=governance,
            expected=[200, 201, 204],
            json=json,
            params=params,
        )
        return self._json(response)

    async def _put(self, path: str, json: Any = None, *, governance: bool = False) -> Any:
        response = await self._send("PUT", path, governance=governance, expected=[200, 204], json=json)
        return self._json(response)

    async def _delete(self, path: str, *, governance: bool = False) -> None:
        await self._send("DELETE", path, governance=governance, expected=[200, 202, 204])

    # -------------------------------------------------------------------------
    # Applications
    # -------------------------------------------------------------------------

    async def find_application_by_name(self, name: str) -> dict[str, Any] | None:
        """Find an application by exact label."""
        apps = await self._get("/api/v1/apps", params={"q": name})
        for app in apps or []:
            if app.get("label") == name:
                return app
        return None

    async def create_application(self, definition: dict[str, Any]) -> dict[str, Any]:
        logger.debug("Creating application: %s", definition.get("label"))
        app = await self._post("/api/v1/apps", json=definition)
        logger.info("Created application: %s (id=%s)", app.get("label"), app.get("id"))
        return app

    # -------------------------------------------------------------------------
    # App-user schema and profile mappings
    # -------------------------------------------------------------------------

    async def get_remote_schema(self, application_id: str) -> dict[str, Any]:
        return await self._get(f"/api/v1/meta/schemas/apps/{application_id}/default") or {}

    async def create_custom_attribute(self, application_id: str, attribute_name: str) -> None:
        payload = {
            "definitions": {
                "custom": {
                    "id": "#custom",
                    "type": "object",
                    "properties": {
                        attribute_name: {
                            "title": attribute_name,
                            "description": f"Custom attribute: {attribute_name}",
                            "type": "string",
                            "scope": "NONE",
                            "master": {"type": "PROFILE_MASTER"},
                        }
                    },
                    "required": [],
                }
            }
        }
        await self._post(f"/api/v1/meta/schemas/apps/{application_id}/default", json=payload)
        logger.info("Created custom attribute: %s", attribute_name)

    async def get_profile_mapping(self, application_id: str) -> dict[str, Any] | None:
        """The app-to-user profile mapping, with its properties."""
        mappings = await self._get("/api/v1/mappings", params={"sourceId": application_id})
        for mapping in mappings or []:
            if (mapping.get("target") or {}).get("type") == "user":
                return await self._get(f"/api/v1/mappings/{mapping['id']}")
        return None

    async def update_profile_mapping(self, mapping_id: str, properties: dict[str, Any]) -> None:
        await self._post(f"/api/v1/mappings/{mapping_id}", json={"properties": properties})
        logger.info("Updated profile mapping: %s", mapping_id)

    # -------------------------------------------------------------------------
    # Governance resources
    # -------------------------------------------------------------------------

    async def get_governance_resource(self, application_id: str) -> str | None:
        try:
            payload = await self._get(
                "/governance/api/v1/resources",
                governance=True,
                params={"filter": f'source.id eq "{application_id}"'},
            )
        except NotFoundError:
            return None
        resources = _items(payload)
        return resources[0].get("id") if resources else None

    async def register_governance_resource(self, application_id: str, application_name: str) -> str:
        """Opt the application into entitlement management."""
        formatted = re.sub(r"[^a-z0-9]", "", application_name.lower())
        payload = {
            "name": f"{self._settings.org_name}_{formatted}",
            "rampResourceType": "OKTA_APP",
        }
        result = await self._post(
            f"/api/v1/governance/resources/source/{application_id}/optIn",
            json=payload,
            governance=True,
        )
        resource_id = (result or {}).get("id") or (result or {}).get("resourceId")
        if not resource_id:
            resource_id = await self.get_governance_resource(application_id)
        if not resource_id:
            raise GovernanceError(f"Governance resource not found after opt-in for {application_id}")
        logger.info("Registered governance resource %s for %s", resource_id, application_id)
        return resource_id

    async def enable_entitlement_management(self, resource_id: str) -> None:
        await self._put(
            f"/governance/api/v1/resources/{resource_id}/entitlement-management",
            json={"status": "ENABLED"},
            governance=True,
        )

    # -------------------------------------------------------------------------
    # Entitlements
    # -------------------------------------------------------------------------

    def _entitlement_filters(self, resource_id: str | None, application_id: str) -> list[str]:
        """Query strategies tried in order; the first non-empty result wins."""
        filters = [f'parent.externalId eq "{application_id}"']
        if resource_id:
            filters.append(f'resource.id eq "{resource_id}"')
            filters.append(f'parent.id eq "{resource_id}"')
        return filters

    async def list_entitlements(self, resource_id: str | None, application_id: str) -> list[dict[str, Any]]:
        for flt in self._entitlement_filters(resource_id, application_id):
            try:
                payload = await self._get(
                    "/governance/api/v1/entitlements",
                    governance=True,
                    params={"filter": flt},
                )
            except GovernanceError as e:
                if e.transient:
                    raise
                logger.debug("Entitlement query failed filter=%s error=%s", flt, e)
                continue
            items = _items(payload)
            if items:
                logger.debug("Found %d entitlements with filter=%s", len(items), flt)
                return items
        return []

    async def create_entitlement(self, resource_id: str | None, data: dict[str, Any]) -> dict[str, Any]:
        logger.debug("Creating entitlement: %s", data.get("name"))
        return await self._post("/governance/api/v1/entitlements", json=data, governance=True)

    async def get_entitlement(self, entitlement_id: str) -> dict[str, Any]:
        return await self._get(f"/governance/api/v1/entitlements/{entitlement_id}", governance=True)

    async def find_entitlement_by_name(self, application_id: str, name: str) -> dict[str, Any] | None:
        """Filter by name first, then scan a page of entitlements case-insensitively."""
        flt = f'name eq "{name}" and parent.externalId eq "{application_id}"'
        try:
            items = _items(
                await self._get(
                    "/governance/api/v1/entitlements",
                    governance=True,
                    params={"filter": flt},
                )
            )
        except GovernanceError as e:
            if e.transient:
                raise
            items = []
        if items:
            return items[0]

        payload = await self._get(
            "/governance/api/v1/entitlements",
            governance=True,
            params={"limit": PAGE_SIZE},
        )
        wanted = name.lower()
        for item in _items(payload):
            parent = (item.get("parent") or {}).get("externalId")
            if (item.get("name") or "").lower() == wanted and parent in (None, application_id):
                return item
        return None

    async def add_entitlement_value(self, entitlement_id: str, value_name: str) -> dict[str, Any]:
        """Append a value to an entitlement and return the created value."""
        current = await self.get_entitlement(entitlement_id)
        values = list(current.get("values") or [])
        values.append({"name": value_name, "description": value_name, "externalValue": value_name})
        updated = await self._put(
            f"/governance/api/v1/entitlements/{entitlement_id}",
            json={**current, "values": values},
            governance=True,
        )
        wanted = value_name.lower()
        for value in (updated or {}).get("values") or []:
            if (value.get("name") or "").lower() == wanted and value.get("id"):
                return value
        raise GovernanceError(f"Value {value_name} missing from entitlement {entitlement_id} after update")

    # -------------------------------------------------------------------------
    # Users and assignments
    # -------------------------------------------------------------------------

    async def find_user(self, identity_key: str) -> dict[str, Any] | None:
        try:
            return await self._get(f"/api/v1/users/{quote(identity_key, safe='')}")
        except NotFoundError:
            return None

    async def create_user(self, profile: dict[str, Any], credentials: dict[str, Any]) -> dict[str, Any]:
        user = await self._post(
            "/api/v1/users",
            json={"profile": profile, "credentials": credentials},
            params={"activate": "true"},
        )
        logger.info("Created user: %s (id=%s)", profile.get("login"), user.get("id"))
        return user

    async def update_user(self, user_id: str, profile: dict[str, Any]) -> None:
        await self._post(f"/api/v1/users/{user_id}", json={"profile": profile})

    async def assign_user_to_application(
        self, application_id: str, user_id: str, attributes: dict[str, Any]
    ) -> None:
        await self._post(
            f"/api/v1/apps/{application_id}/users",
            json={"id": user_id, "scope": "USER", "profile": attributes},
        )

    async def update_application_user(
        self, application_id: str, user_id: str, attributes: dict[str, Any]
    ) -> None:
        await self._post(f"/api/v1/apps/{application_id}/users/{user_id}", json={"profile": attributes})

    async def unassign_user_from_application(self, application_id: str, user_id: str) -> None:
        await self._delete(f"/api/v1/apps/{application_id}/users/{user_id}")

    async def list_application_users(self, application_id: str) -> list[dict[str, Any]]:
        """All users assigned to the application, following ``Link: rel="next"``."""
        users: list[dict[str, Any]] = []
        url: str | None = f"/api/v1/apps/{application_id}/users"
        params: dict | None = {"limit": PAGE_SIZE}
        while url:
            response = await self._send("GET", url, params=params)
            users.extend(self._json(response) or [])
            url = response.links.get("next", {}).get("url")
            # The next link already carries the cursor and limit
            params = None
        logger.debug("Fetched %d users assigned to %s", len(users), application_id)
        return users

    # -------------------------------------------------------------------------
    # Grants and bundles
    # -------------------------------------------------------------------------

    async def create_grant(
        self, application_id: str, user_id: str, entitlement_groups: list[dict[str, Any]]
    ) -> None:
        payload = {
            "grantType": "CUSTOM",
            "targetPrincipal": {"externalId": user_id, "type": "OKTA_USER"},
            "actor": "ADMIN",
            "target": {"externalId": application_id, "type": "APPLICATION"},
            "entitlements": entitlement_groups,
        }
        await self._post("/governance/api/v1/grants", json=payload, governance=True)

    async def list_user_grants(self, application_id: str, user_id: str) -> list[dict[str, Any]]:
        flt = f'targetPrincipal.externalId eq "{user_id}" and target.externalId eq "{application_id}"'
        try:
            payload = await self._get(
                "/governance/api/v1/grants",
                governance=True,
                params={"filter": flt},
            )
        except NotFoundError:
            return []
        return _items(payload)

    async def revoke_grant(self, grant_id: str) -> None:
        await self._delete(f"/governance/api/v1/grants/{grant_id}", governance=True)

    async def create_bundle(self, payload: dict[str, Any]) -> dict[str, Any]:
        bundle = await self._post("/governance/api/v1/entitlement-bundles", json=payload, governance=True)
        logger.info("Created entitlement bundle: %s", payload.get("name"))
        return bundle or {}

