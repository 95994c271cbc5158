"""Okta connection settings.

Settings can be provided via:
1. Environment variables (CSVGOV_*)
2. A local .env file
3. CLI arguments (--okta-domain, --client-id, etc.)
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ALLOWED_DOMAIN_SUFFIXES = (".okta.com", ".oktapreview.com")
DEFAULT_SCOPES = [
    "okta.apps.manage",
    "okta.users.manage",
    "okta.schemas.manage",
    "okta.profileMappings.manage",
    "okta.governance.entitlements.manage",
    "okta.governance.accessRequests.manage",
]


def normalize_okta_domain(value: str) -> str:
    """Strip protocol and trailing slashes; reject non-Okta hosts."""
    domain = value.strip()
    for scheme in ("https://", "http://"):
        if domain.lower().startswith(scheme):
            domain = domain[len(scheme):]
    domain = domain.rstrip("/")
    lowered = domain.lower()
    if not domain or not any(lowered.endswith(suffix) for suffix in ALLOWED_DOMAIN_SUFFIXES):
        raise ValueError("Invalid Okta domain. Must end with .okta.com or .oktapreview.com")
    return domain


class OktaSettings(BaseSettings):
    """Okta tenant connection and authentication settings."""

    model_config = SettingsConfigDict(
        env_prefix="CSVGOV_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Connection
    okta_domain: str | None = Field(
        default=None,
        description="Okta org domain, e.g. acme.okta.com",
    )
    timeout: float = Field(
        default=30.0,
        description="HTTP request timeout in seconds",
    )

    # OAuth service app (preferred)
    client_id: str | None = Field(default=None, description="OAuth service app client ID")
    client_secret: str | None = Field(default=None, description="OAuth client secret")
    private_key: str | None = Field(
        default=None,
        description="PEM private key for private_key_jwt client authentication",
    )
    private_key_path: Path | None = Field(
        default=None,
        description="Path to a PEM private key file",
    )
    private_key_id: str | None = Field(default=None, description="Key ID (kid) of the private key")
    scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))

    # SSWS API token (fallback, preferred for governance endpoints)
    api_token: str | None = Field(default=None, description="Okta SSWS API token")

    # Logging
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)

    @field_validator("okta_domain", mode="before")
    @classmethod
    def _validate_domain(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return None
        return normalize_okta_domain(str(v))

    @property
    def base_url(self) -> str:
        if not self.okta_domain:
            raise ValueError("Okta domain is not configured (set CSVGOV_OKTA_DOMAIN or --okta-domain)")
        return f"https://{self.okta_domain}"

    @property
    def token_url(self) -> str:
        return f"{self.base_url}/oauth2/v1/token"

    @property
    def org_name(self) -> str:
        """First label of the domain: ``acme`` for ``acme.okta.com``."""
        return (self.okta_domain or "").split(".")[0]

    @property
    def has_private_key(self) -> bool:
        return bool(self.private_key or self.private_key_path)

    @property
    def has_client_credentials(self) -> bool:
        """Check if OAuth client credentials are available."""
        return bool(self.client_id and (self.client_secret or self.has_private_key))

    @property
    def has_api_token(self) -> bool:
        return bool(self.api_token)

    def load_private_key(self) -> str | None:
        if self.private_key:
            return self.private_key
        if self.private_key_path:
            return Path(self.private_key_path).read_text()
        return None

    def with_overrides(
        self,
        *,
        okta_domain: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        private_key_path: Path | None = None,
        api_token: str | None = None,
        log_level: str | None = None,
    ) -> "OktaSettings":
        """Create a new settings instance with CLI overrides applied."""
        return OktaSettings(
            okta_domain=okta_domain or self.okta_domain,
            timeout=self.timeout,
            client_id=client_id or self.client_id,
            client_secret=client_secret or self.client_secret,
            private_key=self.private_key,
            private_key_path=private_key_path or self.private_key_path,
            private_key_id=self.private_key_id,
            scopes=self.scopes,
            api_token=api_token or self.api_token,
            log_level=log_level or self.log_level,
            json_logs=self.json_logs,
        )
