"""Run configuration loaded from YAML.

Example YAML structure:
    csv_file: employees.csv
    application_name: HR Portal
    entitlement_prefix: ent_
    sync_interval: 15              # minutes, 0 disables the poll loop

    role_mining:
      enabled: true
      min_user_threshold: 2
      create_bundles: true

    reconcile:
      remove_missing: true
      pause_every: 10
      pause_seconds: 2
      max_attempts: 3
      retry_delay: ${CSVGOV_RETRY_DELAY:-5}
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from csvgov.connector.engine.reconcile import ReconcileOptions
from csvgov.connector.engine.retry import RetryPolicy
from csvgov.connector.engine.schema import DEFAULT_ENTITLEMENT_PREFIX, DEFAULT_IDENTITY_COLUMNS

DEFAULT_CONFIG_FILE = Path("connector.yaml")

# Pattern for ${VAR} and ${VAR:-default} interpolation
_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(:-([^}]*))?\}")


def _resolve_env_str(s: str) -> str:
    """Resolve environment variable placeholders in a string."""
    def repl(m: re.Match[str]) -> str:
        val = os.getenv(m.group(1))
        if val is None or val == "":
            default = m.group(3)
            return default if default is not None else ""
        return val

    return _ENV_PATTERN.sub(repl, s)


def _resolve_env(value: Any) -> Any:
    """Recursively resolve environment variables in a data structure."""
    if isinstance(value, str):
        return _resolve_env_str(value)
    if isinstance(value, list):
        return [_resolve_env(v) for v in value]
    if isinstance(value, dict):
        return {k: _resolve_env(v) for k, v in value.items()}
    return value


class RoleMiningConfig(BaseModel):
    """Role mining options."""

    enabled: bool = Field(default=True, description="Run role mining after provisioning")
    min_user_threshold: int = Field(
        default=2,
        ge=1,
        description="Minimum members for a permission bundle to become a role",
    )
    create_bundles: bool = Field(
        default=True,
        description="Create entitlement bundles for discovered roles (false = report only)",
    )


class ReconcileConfig(BaseModel):
    """Reconciliation pass options."""

    remove_missing: bool = Field(
        default=True,
        description="Unassign users that are no longer in the CSV",
    )
    create_missing_values: bool = Field(
        default=True,
        description="Create entitlement values found in the CSV but missing remotely",
    )
    pause_every: int = Field(default=10, ge=0, description="Pause after this many processed users")
    pause_seconds: float = Field(default=2.0, ge=0)
    max_attempts: int = Field(default=3, ge=1, description="Attempts per call on rate limiting")
    retry_delay: float = Field(default=5.0, ge=0, description="Base retry delay in seconds")


class ConnectorConfig(BaseModel):
    """Top-level configuration for a provisioning/sync run."""

    csv_file: Path | None = Field(default=None, description="CSV file with the desired state")
    application_name: str | None = Field(
        default=None,
        description="Application label (defaults to the CSV file name without extension)",
    )
    entitlement_prefix: str = Field(default=DEFAULT_ENTITLEMENT_PREFIX)
    identity_columns: list[str] = Field(default_factory=lambda: list(DEFAULT_IDENTITY_COLUMNS))
    sync_interval: float = Field(
        default=0,
        ge=0,
        description="Minutes between sync passes; 0 runs a single pass",
    )

    role_mining: RoleMiningConfig = Field(default_factory=RoleMiningConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "ConnectorConfig":
        """Load configuration from a YAML file with env var interpolation."""
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        raw = yaml.safe_load(p.read_text())
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config file must be a YAML mapping: {path}")

        return cls.model_validate(_resolve_env(raw))

    @classmethod
    def load(cls, path: str | Path = DEFAULT_CONFIG_FILE) -> "ConnectorConfig":
        """Load the config file if it exists, defaults otherwise."""
        if Path(path).exists():
            return cls.from_yaml(path)
        return cls()

    def remember_csv_file(self, csv_file: str | Path, path: str | Path = DEFAULT_CONFIG_FILE) -> None:
        """Record the selected CSV in the config file.

        Only ``csv_file`` is written; every other key keeps its raw value,
        ``${VAR:-default}`` placeholders included, and unset fields stay unset.
        """
        self.csv_file = Path(csv_file)

        p = Path(path)
        raw = yaml.safe_load(p.read_text()) if p.exists() else None
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config file must be a YAML mapping: {path}")

        raw["csv_file"] = str(csv_file)
        p.write_text(yaml.safe_dump(raw, sort_keys=False))

    def resolve_application_name(self, csv_path: Path | None = None) -> str:
        if self.application_name:
            return self.application_name
        source = csv_path or self.csv_file
        if source is None:
            raise ValueError("No application name configured and no CSV file selected")
        return Path(source).stem

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.reconcile.max_attempts,
            delay=self.reconcile.retry_delay,
        )

    def reconcile_options(self, *, dry_run: bool = False) -> ReconcileOptions:
        return ReconcileOptions(
            prefix=self.entitlement_prefix,
            identity_columns=tuple(self.identity_columns),
            remove_missing=self.reconcile.remove_missing,
            create_missing_values=self.reconcile.create_missing_values,
            dry_run=dry_run,
            pause_every=self.reconcile.pause_every,
            pause_seconds=self.reconcile.pause_seconds,
            retry=self.retry_policy(),
        )
