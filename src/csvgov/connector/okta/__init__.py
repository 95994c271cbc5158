"""Okta binding of the governance port.

Provides the settings, OAuth credential cache and HTTP client used to drive
an Okta tenant.
"""

from csvgov.connector.okta.auth import CredentialCache, TokenInfo
from csvgov.connector.okta.client import OktaClient
from csvgov.connector.okta.settings import OktaSettings

__all__ = [
    "CredentialCache",
    "TokenInfo",
    "OktaClient",
    "OktaSettings",
]
