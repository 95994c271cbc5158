"""OAuth client-credential tokens and the single-owner credential cache."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx
import jwt

from csvgov.connector.okta.settings import OktaSettings
from csvgov.connector.port import AuthError

logger = logging.getLogger(__name__)

# Refresh tokens this long before they expire
DEFAULT_LEEWAY_SECONDS = 300
CLIENT_ASSERTION_TTL_SECONDS = 300
CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


@dataclass
class TokenInfo:
    """OAuth token information."""

    access_token: str
    expires_at: float
    scope: str | None = None

    def is_valid(self, leeway: int = DEFAULT_LEEWAY_SECONDS, now: float | None = None) -> bool:
        """Check if token is still valid."""
        current = time.time() if now is None else now
        return current < (self.expires_at - leeway)


TokenFetcher = Callable[[], Awaitable[TokenInfo]]


class CredentialCache:
    """Holds the current access token and replaces it on refresh.

    Execution is single-threaded, so a refresh simply swaps the token.
    """

    def __init__(
        self,
        fetch: TokenFetcher,
        leeway: int = DEFAULT_LEEWAY_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._fetch = fetch
        self._leeway = leeway
        self._clock = clock
        self._token: TokenInfo | None = None

    @property
    def token(self) -> TokenInfo | None:
        return self._token

    def is_expired(self) -> bool:
        if self._token is None:
            return True
        return not self._token.is_valid(self._leeway, now=self._clock())

    def invalidate(self) -> None:
        self._token = None

    async def refresh(self) -> TokenInfo:
        self.invalidate()
        self._token = await self._fetch()
        return self._token

    async def get(self) -> str:
        """Return a valid access token, fetching a new one when needed."""
        if self.is_expired():
            await self.refresh()
        return self._token.access_token


def build_client_assertion(
    client_id: str,
    token_url: str,
    private_key: str,
    key_id: str | None = None,
    now: float | None = None,
) -> str:
    """RS256-signed ``private_key_jwt`` client assertion."""
    issued_at = int(time.time() if now is None else now)
    claims = {
        "iss": client_id,
        "sub": client_id,
        "aud": token_url,
        "iat": issued_at,
        "exp": issued_at + CLIENT_ASSERTION_TTL_SECONDS,
        "jti": str(uuid.uuid4()),
    }
    headers = {"kid": key_id} if key_id else None
    return jwt.encode(claims, private_key, algorithm="RS256", headers=headers)


def _auth_failure_message(settings: OktaSettings, response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = {"error_description": response.text}
    if not isinstance(body, dict):
        body = {"error_description": response.text}

    description = body.get("error_description") or response.text
    if body.get("error") == "invalid_client":
        if "application_type" in (description or ""):
            return (
                f"OAuth application {settings.client_id} must be an 'API Services' "
                f"application. Create an API Services app integration in the Okta Admin "
                f"Console, grant it the Okta API scopes and use its credentials. "
                f"Original error: {description}"
            )
        return (
            f"Invalid OAuth client credentials for {settings.client_id}. Verify the "
            f"client secret or key, that the app is ACTIVE and that it is an "
            f"'API Services' application. Original error: {description}"
        )
    return f"Failed to get access token: {response.status_code} - {description}"


def client_credentials_fetcher(settings: OktaSettings, http: httpx.AsyncClient) -> TokenFetcher:
    """Token fetcher for the OAuth client-credentials grant.

    Uses ``private_key_jwt`` when a private key is configured, otherwise
    HTTP Basic authentication with the client secret.
    """

    async def fetch() -> TokenInfo:
        token_url = settings.token_url
        data = {"grant_type": "client_credentials"}
        auth = None

        private_key = settings.load_private_key()
        if private_key:
            data["scope"] = " ".join(settings.scopes)
            data["client_assertion_type"] = CLIENT_ASSERTION_TYPE
            data["client_assertion"] = build_client_assertion(
                settings.client_id,
                token_url,
                private_key,
                settings.private_key_id,
            )
        else:
            auth = (settings.client_id, settings.client_secret)

        logger.debug("Requesting OAuth token from %s for %s", token_url, settings.client_id)
        response = await http.post(
            token_url,
            data=data,
            auth=auth,
            headers={"Accept": "application/json"},
        )

        if response.status_code != 200:
            raise AuthError(_auth_failure_message(settings, response), status_code=response.status_code)

        payload = response.json()
        logger.info("OAuth token acquired for %s", settings.client_id)
        if payload.get("scope"):
            logger.debug("Granted scopes: %s", payload["scope"])
        return TokenInfo(
            access_token=payload["access_token"],
            expires_at=time.time() + float(payload.get("expires_in", 3600)),
            scope=payload.get("scope"),
        )

    return fetch
