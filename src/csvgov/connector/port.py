"""Remote identity/governance port.

The engine only talks to the tenant through :class:`GovernancePort`. Bindings
classify every failure into an :class:`ErrorKind` so retry decisions never
depend on message text.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol, runtime_checkable


class ErrorKind(str, Enum):
    """Failure classes a port binding reports."""

    RATE_LIMITED = "rate_limited"
    AUTH_EXPIRED = "auth_expired"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PERMANENT = "permanent"


class GovernanceError(Exception):
    """Base exception for remote governance API errors."""

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response = response

    @property
    def transient(self) -> bool:
        return self.kind in (ErrorKind.RATE_LIMITED, ErrorKind.AUTH_EXPIRED)


class RateLimitError(GovernanceError):
    """Tenant rate limit hit."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        status_code: int | None = 429,
        response: Any = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, status_code=status_code, response=response)
        self.retry_after = retry_after


class AuthError(GovernanceError):
    """Authentication failed or credential expired."""

    kind = ErrorKind.AUTH_EXPIRED


class NotFoundError(GovernanceError):
    """Resource not found."""

    kind = ErrorKind.NOT_FOUND


class ConflictError(GovernanceError):
    """Resource already exists."""

    kind = ErrorKind.CONFLICT


@runtime_checkable
class GovernancePort(Protocol):
    """Operations the engine drives against the remote tenant.

    Entities are plain JSON-like dicts as returned by the remote API.
    """

    # Applications and schema
    async def find_application_by_name(self, name: str) -> dict[str, Any] | None: ...

    async def create_application(self, definition: dict[str, Any]) -> dict[str, Any]: ...

    async def get_remote_schema(self, application_id: str) -> dict[str, Any]: ...

    async def create_custom_attribute(self, application_id: str, attribute_name: str) -> None: ...

    async def get_profile_mapping(self, application_id: str) -> dict[str, Any] | None: ...

    async def update_profile_mapping(self, mapping_id: str, properties: dict[str, Any]) -> None: ...

    # Governance resource and entitlements
    async def get_governance_resource(self, application_id: str) -> str | None: ...

    async def register_governance_resource(self, application_id: str, application_name: str) -> str: ...

    async def enable_entitlement_management(self, resource_id: str) -> None: ...

    async def list_entitlements(self, resource_id: str | None, application_id: str) -> list[dict[str, Any]]: ...

    async def create_entitlement(self, resource_id: str | None, data: dict[str, Any]) -> dict[str, Any]: ...

    async def find_entitlement_by_name(self, application_id: str, name: str) -> dict[str, Any] | None: ...

    async def add_entitlement_value(self, entitlement_id: str, value_name: str) -> dict[str, Any]: ...

    # Users and assignments
    async def find_user(self, identity_key: str) -> dict[str, Any] | None: ...

    async def create_user(self, profile: dict[str, Any], credentials: dict[str, Any]) -> dict[str, Any]: ...

    async def update_user(self, user_id: str, profile: dict[str, Any]) -> None: ...

    async def assign_user_to_application(
        self, application_id: str, user_id: str, attributes: dict[str, Any]
    ) -> None: ...

    async def update_application_user(
        self, application_id: str, user_id: str, attributes: dict[str, Any]
    ) -> None: ...

    async def unassign_user_from_application(self, application_id: str, user_id: str) -> None: ...

    async def list_application_users(self, application_id: str) -> list[dict[str, Any]]: ...

    # Grants and bundles
    async def create_grant(
        self, application_id: str, user_id: str, entitlement_groups: list[dict[str, Any]]
    ) -> None: ...

    async def list_user_grants(self, application_id: str, user_id: str) -> list[dict[str, Any]]: ...

    async def revoke_grant(self, grant_id: str) -> None: ...

    async def create_bundle(self, payload: dict[str, Any]) -> dict[str, Any]: ...

    # Credentials
    async def refresh_credentials(self) -> None: ...
