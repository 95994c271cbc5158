"""CSV-to-tenant reconciliation.

Computes a change set by diffing desired rows (keyed by identity) against the
users currently assigned to the application, then applies it through the
governance port: removals first, then additions, then updates.

Each pass recomputes everything from scratch, so running it again against
converged state yields an empty change set.
"""

from __future__ import annotations

import asyncio
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable

import structlog

from csvgov.connector.engine.catalog import build_catalog
from csvgov.connector.engine.grants import (
    EntitlementIndex,
    ensure_entitlement_values,
    resolve_grant,
)
from csvgov.connector.engine.retry import RetryPolicy
from csvgov.connector.engine.schema import (
    DEFAULT_ENTITLEMENT_PREFIX,
    DEFAULT_IDENTITY_COLUMNS,
    build_app_profile,
    build_user_profile,
    classify_columns,
    identity_key,
    identity_value,
)
from csvgov.connector.models import (
    AttributeColumn,
    ChangeSet,
    RemoteUser,
    Row,
    SkippedRow,
    SyncResult,
    UpdateItem,
)
from csvgov.connector.port import GovernancePort

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[Any]]

_PASSWORD_SYMBOLS = "!@#$%^&*"


def generate_password(length: int = 16) -> str:
    """Random password with at least one lower, upper, digit and symbol."""
    pools = [
        string.ascii_lowercase,
        string.ascii_uppercase,
        string.digits,
        _PASSWORD_SYMBOLS,
    ]
    alphabet = "".join(pools)
    chars = [secrets.choice(pool) for pool in pools]
    chars += [secrets.choice(alphabet) for _ in range(max(length, len(pools)) - len(pools))]
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


@dataclass
class ReconcileOptions:
    """Knobs for one reconciliation pass."""

    prefix: str = DEFAULT_ENTITLEMENT_PREFIX
    identity_columns: tuple[str, ...] = DEFAULT_IDENTITY_COLUMNS
    remove_missing: bool = True
    create_missing_values: bool = True
    dry_run: bool = False

    # Courtesy pause for tenant rate limits
    pause_every: int = 10
    pause_seconds: float = 2.0

    retry: RetryPolicy = field(default_factory=RetryPolicy)
    sleep: Sleep = field(default=asyncio.sleep, repr=False)
    password_factory: Callable[[], str] = field(default=generate_password, repr=False)


# -----------------------------------------------------------------------------
# Diff
# -----------------------------------------------------------------------------


def remote_user_key(app_user: dict[str, Any]) -> str | None:
    """Identity key of an assigned app user: credential user name, else profile email."""
    login = (app_user.get("credentials") or {}).get("userName") or (
        app_user.get("profile") or {}
    ).get("email")
    return str(login).lower() if login else None


def snapshot_from_app_users(app_users: list[dict[str, Any]]) -> dict[str, RemoteUser]:
    """Key the application's assigned users like local rows."""
    snapshot: dict[str, RemoteUser] = {}
    for app_user in app_users:
        key = remote_user_key(app_user)
        if key is None or not app_user.get("id"):
            logger.warning("Assigned user without identity ignored", user_id=app_user.get("id"))
            continue
        snapshot[key] = RemoteUser(
            id=app_user["id"],
            key=key,
            profile=dict(app_user.get("profile") or {}),
        )
    return snapshot


def build_desired_state(
    rows: list[Row],
    identity_columns: Iterable[str] = DEFAULT_IDENTITY_COLUMNS,
) -> tuple[dict[str, Row], list[SkippedRow]]:
    """Index rows by identity key.

    Rows without an identity are skipped. When two rows share a key the later
    one wins and the earlier one is reported as skipped.
    """
    identity_columns = tuple(identity_columns)
    desired: dict[str, Row] = {}
    positions: dict[str, int] = {}
    skipped: list[SkippedRow] = []

    for idx, row in enumerate(rows, start=1):
        key = identity_key(row, identity_columns)
        if key is None:
            skipped.append(SkippedRow(index=idx, reason="no identity column populated"))
            continue
        if key in desired:
            skipped.append(SkippedRow(index=positions[key], reason=f"duplicate identity {key}"))
            logger.warning("Duplicate identity in CSV, last row wins", key=key, row=idx)
        desired[key] = row
        positions[key] = idx

    return desired, skipped


def _as_text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def changed_fields(row: Row, remote: RemoteUser) -> list[str]:
    """Columns whose desired value differs from the remote app-user attribute.

    Every column of the row is compared, so a cell cleared in the CSV differs
    from a remote attribute that still holds a value.
    """
    return [
        name
        for name, value in row.items()
        if name is not None and _as_text(value) != _as_text(remote.profile.get(name))
    ]


def update_attributes(item: UpdateItem) -> dict[str, str | None]:
    """App-user attributes for an update; cleared columns are sent as null."""
    attributes: dict[str, str | None] = dict(build_app_profile(item.row))
    for name in item.changed_fields:
        attributes.setdefault(name, None)
    return attributes


def compute_change_set(
    rows: list[Row],
    snapshot: dict[str, RemoteUser],
    identity_columns: Iterable[str] = DEFAULT_IDENTITY_COLUMNS,
) -> ChangeSet:
    """Partition desired and remote identities into add/update/remove."""
    desired, skipped = build_desired_state(rows, identity_columns)
    remote_by_key = {key.lower(): user for key, user in snapshot.items()}

    change_set = ChangeSet(skipped=skipped)

    for key, row in desired.items():
        remote = remote_by_key.get(key)
        if remote is None:
            change_set.to_add.append((key, row))
            continue
        fields = changed_fields(row, remote)
        if fields:
            change_set.to_update.append(
                UpdateItem(key=key, row=row, remote=remote, changed_fields=fields)
            )
        else:
            change_set.in_sync.append(key)

    for key, remote in remote_by_key.items():
        if key not in desired:
            change_set.to_remove.append(remote)

    return change_set


# -----------------------------------------------------------------------------
# Apply
# -----------------------------------------------------------------------------


class _Applier:
    """Applies one change set; holds the per-pass context."""

    def __init__(
        self,
        port: GovernancePort,
        application_id: str,
        index: EntitlementIndex,
        columns: list[AttributeColumn],
        options: ReconcileOptions,
        result: SyncResult,
    ):
        self._port = port
        self._app_id = application_id
        self._index = index
        self._columns = columns
        self._options = options
        self._result = result

    async def _call(self, description: str, op: Callable[[], Awaitable[Any]]) -> Any:
        return await self._options.retry.run(
            op,
            on_auth_expired=self._port.refresh_credentials,
            description=description,
        )

    async def _revoke_all(self, user_id: str) -> None:
        grants = await self._call(
            "list grants",
            lambda: self._port.list_user_grants(self._app_id, user_id),
        )
        for grant in grants or []:
            grant_id = grant.get("id")
            if not grant_id:
                continue
            try:
                await self._call("revoke grant", lambda: self._port.revoke_grant(grant_id))
            except Exception as e:
                logger.warning("Failed to revoke grant", grant_id=grant_id, error=str(e))

    async def _grant(self, key: str, user_id: str, row: Row, replace: bool) -> None:
        resolution = await resolve_grant(
            row,
            self._index,
            self._port,
            self._options.prefix,
            create_missing=self._options.create_missing_values,
            retry=self._options.retry,
        )
        self._result.values_created.extend(resolution.created)
        for unresolved in resolution.unresolved:
            self._result.warnings.append(f"{key}: could not resolve {unresolved}")

        # Replacing with an empty resolution still takes the old grants away
        if replace:
            await self._revoke_all(user_id)
        if resolution.is_empty:
            return
        payload = resolution.to_payload()
        await self._call(
            "create grant",
            lambda: self._port.create_grant(self._app_id, user_id, payload),
        )

    async def remove(self, user: RemoteUser) -> None:
        await self._revoke_all(user.id)
        await self._call(
            "unassign user",
            lambda: self._port.unassign_user_from_application(self._app_id, user.id),
        )

    async def add(self, key: str, row: Row) -> None:
        login = identity_value(row, self._options.identity_columns) or key
        profile = build_user_profile(row, login, self._columns)

        existing = await self._call("find user", lambda: self._port.find_user(login))
        if existing:
            user_id = existing["id"]
            await self._call("update user", lambda: self._port.update_user(user_id, profile))
        else:
            credentials = {"password": {"value": self._options.password_factory()}}
            created = await self._call(
                "create user",
                lambda: self._port.create_user(profile, credentials),
            )
            user_id = created["id"]

        attributes = build_app_profile(row)
        await self._call(
            "assign user",
            lambda: self._port.assign_user_to_application(self._app_id, user_id, attributes),
        )
        try:
            await self._grant(key, user_id, row, replace=False)
        except Exception:
            # Unassigned again so the next pass sees the user as missing
            try:
                await self._call(
                    "unassign user",
                    lambda: self._port.unassign_user_from_application(self._app_id, user_id),
                )
            except Exception as e:
                logger.warning("Failed to roll back assignment", key=key, error=str(e))
            raise

    async def update(self, item: UpdateItem) -> None:
        # Grants before attributes: a failed grant leaves the row out of sync
        await self._grant(item.key, item.remote.id, item.row, replace=True)
        attributes = update_attributes(item)
        await self._call(
            "update app user",
            lambda: self._port.update_application_user(self._app_id, item.remote.id, attributes),
        )


async def apply_change_set(
    port: GovernancePort,
    application_id: str,
    change_set: ChangeSet,
    index: EntitlementIndex | None = None,
    columns: list[AttributeColumn] | None = None,
    options: ReconcileOptions | None = None,
) -> SyncResult:
    """Apply a change set item by item.

    Every removal completes before the first addition starts. A failing item
    is recorded and the pass moves on.
    """
    options = options or ReconcileOptions()
    index = index if index is not None else EntitlementIndex()
    if columns is None:
        header: list[str] = []
        for _, row in change_set.to_add:
            header.extend(name for name in row if name not in header)
        columns = classify_columns(header, options.prefix)

    result = SyncResult(skipped=len(change_set.skipped))
    applier = _Applier(port, application_id, index, columns, options, result)

    # 1. Removals
    if options.remove_missing:
        for user in change_set.to_remove:
            if options.dry_run:
                logger.info("[DRY RUN] Would remove user", key=user.key)
                result.removed.append(user.key)
                continue
            try:
                await applier.remove(user)
                result.removed.append(user.key)
                logger.info("Removed user", key=user.key)
            except Exception as e:
                result.failed.append(user.key)
                result.errors.append(f"Failed to remove {user.key}: {e}")
    elif change_set.to_remove:
        logger.info("Removal disabled, leaving users assigned", count=len(change_set.to_remove))

    processed = 0

    async def courtesy_pause() -> None:
        nonlocal processed
        processed += 1
        if options.pause_every > 0 and processed % options.pause_every == 0:
            logger.debug("Pausing for rate limits", seconds=options.pause_seconds)
            await options.sleep(options.pause_seconds)

    # 2. Additions
    for key, row in change_set.to_add:
        if options.dry_run:
            logger.info("[DRY RUN] Would add user", key=key)
            result.added.append(key)
            continue
        try:
            await applier.add(key, row)
            result.added.append(key)
            logger.info("Added user", key=key)
        except Exception as e:
            result.failed.append(key)
            result.errors.append(f"Failed to add {key}: {e}")
        await courtesy_pause()

    # 3. Updates
    for item in change_set.to_update:
        if options.dry_run:
            logger.info("[DRY RUN] Would update user", key=item.key, fields=item.changed_fields)
            result.updated.append(item.key)
            continue
        try:
            await applier.update(item)
            result.updated.append(item.key)
            logger.info("Updated user", key=item.key, fields=item.changed_fields)
        except Exception as e:
            result.failed.append(item.key)
            result.errors.append(f"Failed to update {item.key}: {e}")
        await courtesy_pause()

    return result


# -----------------------------------------------------------------------------
# Passes
# -----------------------------------------------------------------------------


@dataclass
class SyncPass:
    """Everything one reconciliation pass produced."""

    change_set: ChangeSet
    result: SyncResult
    remote_count: int = 0
    desired_count: int = 0
    finished_at: datetime = field(default_factory=datetime.now)

    def summary(self) -> str:
        lines = [
            f"Sync results [{self.finished_at:%H:%M:%S}]",
            self.result.summary(),
            f"Total assigned before pass: {self.remote_count}",
            f"Total in CSV: {self.desired_count}",
        ]
        return "\n".join(lines)


async def fetch_snapshot(
    port: GovernancePort,
    application_id: str,
    retry: RetryPolicy | None = None,
) -> dict[str, RemoteUser]:
    """List assigned users through the port and key them."""
    retry = retry or RetryPolicy()
    app_users = await retry.run(
        lambda: port.list_application_users(application_id),
        on_auth_expired=port.refresh_credentials,
        description="list application users",
    )
    return snapshot_from_app_users(app_users or [])


async def load_entitlement_index(
    port: GovernancePort,
    resource_id: str | None,
    application_id: str,
    retry: RetryPolicy | None = None,
) -> EntitlementIndex:
    retry = retry or RetryPolicy()
    items = await retry.run(
        lambda: port.list_entitlements(resource_id, application_id),
        on_auth_expired=port.refresh_credentials,
        description="list entitlements",
    )
    return EntitlementIndex.from_api(items or [])


async def run_sync_pass(
    port: GovernancePort,
    application_id: str,
    rows: list[Row],
    *,
    header: list[str] | None = None,
    index: EntitlementIndex | None = None,
    resource_id: str | None = None,
    options: ReconcileOptions | None = None,
) -> SyncPass:
    """One full pass: top up values, snapshot, diff, apply."""
    options = options or ReconcileOptions()
    if header is None:
        header = list(rows[0]) if rows else []
    columns = classify_columns(header, options.prefix)

    if index is None:
        index = await load_entitlement_index(port, resource_id, application_id, options.retry)

    created: list[str] = []
    value_errors: list[str] = []
    if len(index):
        created, value_errors = await ensure_entitlement_values(
            build_catalog(rows, options.prefix),
            index,
            port,
            options.prefix,
            dry_run=options.dry_run,
            retry=options.retry,
        )

    snapshot = await fetch_snapshot(port, application_id, options.retry)
    change_set = compute_change_set(rows, snapshot, options.identity_columns)
    logger.info(
        "Change set computed",
        to_add=len(change_set.to_add),
        to_update=len(change_set.to_update),
        to_remove=len(change_set.to_remove),
        in_sync=len(change_set.in_sync),
        skipped=len(change_set.skipped),
    )

    result = await apply_change_set(port, application_id, change_set, index, columns, options)
    result.values_created[:0] = created
    result.warnings.extend(value_errors)

    return SyncPass(
        change_set=change_set,
        result=result,
        remote_count=len(snapshot),
        desired_count=len(rows) - len(change_set.skipped),
    )


async def run_sync_loop(
    run_pass: Callable[[], Awaitable[SyncPass]],
    interval_minutes: float,
    *,
    on_pass: Callable[[SyncPass], Any] | None = None,
    on_error: Callable[[Exception], Any] | None = None,
    max_passes: int | None = None,
    wait_first: bool = False,
    sleep: Sleep = asyncio.sleep,
) -> int:
    """Repeat ``run_pass`` every ``interval_minutes`` until cancelled.

    A pass that raises is reported through ``on_error`` and the loop carries
    on with the next one. With ``wait_first`` the loop sleeps one interval
    before its first pass, for callers that have just run one themselves.
    Returns the number of passes attempted.
    """
    if interval_minutes <= 0:
        raise ValueError("interval_minutes must be positive")

    if wait_first:
        await sleep(interval_minutes * 60)

    passes = 0
    while True:
        passes += 1
        try:
            sync_pass = await run_pass()
        except Exception as e:
            logger.error("Sync pass failed", error=str(e), attempt=passes)
            if on_error is not None:
                on_error(e)
        else:
            if on_pass is not None:
                on_pass(sync_pass)

        if max_passes is not None and passes >= max_passes:
            break
        await sleep(interval_minutes * 60)

    return passes
