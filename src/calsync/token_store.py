"""Integration (OAuth credential) store backed by the ``calendar_integrations`` table.

Exactly one row exists per ``(user_id, provider)``.  The interface accepts
and returns plaintext :class:`~calsync.models.Integration` objects; tokens
are encrypted on write and decrypted on read with the process-wide
:class:`~calsync.crypto.TokenCipher`.

Persisting after an OAuth callback::

    store = TokenStore(pool, cipher)
    await store.put(user_id, Provider.google, integration)

Reading for a refresh::

    integration = await store.get(user_id, Provider.google)
    if integration is None:
        raise NotConnectedError("google")

Raw token values are never logged.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from calsync.crypto import TokenCipher, TokenDecryptionError
from calsync.db import acquire_conn
from calsync.errors import ReauthRequiredError
from calsync.models import Integration, Provider

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "calendar_integrations"

_INTEGRATIONS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    user_id               TEXT NOT NULL,
    provider              TEXT NOT NULL,
    provider_user_id      TEXT,
    access_token          TEXT NOT NULL,
    refresh_token         TEXT,
    token_expiry          TIMESTAMPTZ,
    scope                 TEXT,
    selected_calendar_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
    last_sync_at          TIMESTAMPTZ,
    needs_reauth          BOOLEAN NOT NULL DEFAULT false,
    created_at            TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at            TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (user_id, provider)
)
"""

_SELECT_COLUMNS = """
    user_id, provider, provider_user_id, access_token, refresh_token,
    token_expiry, scope, selected_calendar_ids, last_sync_at, needs_reauth,
    created_at, updated_at
"""


class TokenStore:
    """Async store of encrypted Integration records.

    Parameters
    ----------
    pool:
        An asyncpg connection pool.
    cipher:
        The process-wide token cipher.  Constructing the cipher is what loads
        the key, so a misconfigured key fails before the store exists.
    """

    def __init__(self, pool: asyncpg.Pool, cipher: TokenCipher) -> None:
        self.pool = pool
        self._cipher = cipher

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def get(self, user_id: str, provider: Provider | str) -> Integration | None:
        """Return the decrypted Integration, or ``None`` when not connected."""
        provider = Provider(provider)
        async with acquire_conn(self.pool) as conn:
            row = await conn.fetchrow(
                f"SELECT {_SELECT_COLUMNS} FROM {_TABLE} WHERE user_id = $1 AND provider = $2",
                user_id,
                provider.value,
            )
        if row is None:
            return None
        return self._row_to_integration(row)

    async def list_for_user(self, user_id: str) -> list[Integration]:
        async with acquire_conn(self.pool) as conn:
            rows = await conn.fetch(
                f"SELECT {_SELECT_COLUMNS} FROM {_TABLE} WHERE user_id = $1 ORDER BY provider",
                user_id,
            )
        return [self._row_to_integration(row) for row in rows]

    async def connected_providers(self, user_id: str) -> list[Provider]:
        """Providers with a stored Integration, read without decrypting tokens."""
        async with acquire_conn(self.pool) as conn:
            rows = await conn.fetch(
                f"SELECT provider FROM {_TABLE} WHERE user_id = $1 ORDER BY provider",
                user_id,
            )
        providers: list[Provider] = []
        for row in rows:
            try:
                providers.append(Provider(row["provider"]))
            except ValueError:
                logger.warning("Ignoring integration with unknown provider %r", row["provider"])
        return providers

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def put(self, user_id: str, provider: Provider | str, integration: Integration) -> None:
        """Insert or replace the Integration for ``(user_id, provider)``.

        Uses INSERT … ON CONFLICT DO UPDATE so exactly one row exists per
        pair.  ``created_at`` is preserved on update.
        """
        provider = Provider(provider)
        if integration.user_id != user_id or integration.provider != provider:
            raise ValueError("integration identity does not match (user_id, provider)")

        refresh_ciphertext = (
            self._cipher.encrypt(integration.refresh_token)
            if integration.refresh_token
            else None
        )
        async with acquire_conn(self.pool) as conn:
            await conn.execute(
                f"""
                INSERT INTO {_TABLE}
                    (user_id, provider, provider_user_id, access_token, refresh_token,
                     token_expiry, scope, selected_calendar_ids, last_sync_at, needs_reauth)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10)
                ON CONFLICT (user_id, provider) DO UPDATE SET
                    provider_user_id      = EXCLUDED.provider_user_id,
                    access_token          = EXCLUDED.access_token,
                    refresh_token         = EXCLUDED.refresh_token,
                    token_expiry          = EXCLUDED.token_expiry,
                    scope                 = EXCLUDED.scope,
                    selected_calendar_ids = EXCLUDED.selected_calendar_ids,
                    last_sync_at          = EXCLUDED.last_sync_at,
                    needs_reauth          = EXCLUDED.needs_reauth,
                    updated_at            = now()
                """,
                user_id,
                provider.value,
                integration.provider_user_id,
                self._cipher.encrypt(integration.access_token),
                refresh_ciphertext,
                integration.token_expiry,
                integration.scope,
                json.dumps(integration.selected_calendar_ids),
                integration.last_sync_at,
                integration.needs_reauth,
            )
        logger.info(
            "Integration stored: user_id=%r provider=%s expiry=%s",
            user_id,
            provider.value,
            integration.token_expiry.isoformat() if integration.token_expiry else None,
        )

    async def mark_needs_reauth(self, user_id: str, provider: Provider | str) -> None:
        provider = Provider(provider)
        async with acquire_conn(self.pool) as conn:
            await conn.execute(
                f"""
                UPDATE {_TABLE} SET needs_reauth = true, updated_at = now()
                WHERE user_id = $1 AND provider = $2
                """,
                user_id,
                provider.value,
            )
        logger.warning(
            "Integration flagged for reconnection: user_id=%r provider=%s",
            user_id,
            provider.value,
        )

    async def set_selected_calendars(
        self,
        user_id: str,
        provider: Provider | str,
        calendar_ids: Iterable[str],
    ) -> bool:
        """Replace the opted-in calendar ids.  Returns ``False`` when not connected."""
        provider = Provider(provider)
        normalized: list[str] = []
        for calendar_id in calendar_ids:
            stripped = calendar_id.strip()
            if stripped and stripped not in normalized:
                normalized.append(stripped)
        async with acquire_conn(self.pool) as conn:
            result = await conn.execute(
                f"""
                UPDATE {_TABLE} SET selected_calendar_ids = $3::jsonb, updated_at = now()
                WHERE user_id = $1 AND provider = $2
                """,
                user_id,
                provider.value,
                json.dumps(normalized),
            )
        return _rows_affected(result) > 0

    async def record_sync(
        self,
        user_id: str,
        providers: Iterable[Provider | str],
        synced_at: datetime,
    ) -> None:
        """Set ``last_sync_at`` for every given provider in one transaction."""
        names = sorted({Provider(p).value for p in providers})
        if not names:
            return
        async with acquire_conn(self.pool) as conn:
            async with conn.transaction():
                for name in names:
                    await conn.execute(
                        f"""
                        UPDATE {_TABLE} SET last_sync_at = $3, updated_at = now()
                        WHERE user_id = $1 AND provider = $2
                        """,
                        user_id,
                        name,
                        synced_at,
                    )
        logger.debug("Recorded sync for user_id=%r providers=%s at %s", user_id, names, synced_at)

    async def delete(self, user_id: str, provider: Provider | str) -> bool:
        """Delete the Integration.  Returns ``True`` if a row was removed."""
        provider = Provider(provider)
        async with acquire_conn(self.pool) as conn:
            result = await conn.execute(
                f"DELETE FROM {_TABLE} WHERE user_id = $1 AND provider = $2",
                user_id,
                provider.value,
            )
        deleted = _rows_affected(result) > 0
        if deleted:
            logger.info("Integration deleted: user_id=%r provider=%s", user_id, provider.value)
        else:
            logger.debug(
                "Integration not found for deletion: user_id=%r provider=%s",
                user_id,
                provider.value,
            )
        return deleted

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _decrypt(self, value: str, *, provider: Provider) -> str:
        try:
            return self._cipher.decrypt(value)
        except TokenDecryptionError as exc:
            # Key rotated or row tampered with: the credential is unusable.
            raise ReauthRequiredError(provider.value, detail=str(exc)) from exc

    def _row_to_integration(self, row: Mapping[str, Any]) -> Integration:
        provider = Provider(row["provider"])
        refresh_raw = row["refresh_token"]
        return Integration(
            user_id=row["user_id"],
            provider=provider,
            provider_user_id=row["provider_user_id"],
            access_token=self._decrypt(row["access_token"], provider=provider),
            refresh_token=self._decrypt(refresh_raw, provider=provider) if refresh_raw else None,
            token_expiry=_ensure_utc(row["token_expiry"]),
            scope=row["scope"],
            selected_calendar_ids=_decode_calendar_ids(row["selected_calendar_ids"]),
            last_sync_at=_ensure_utc(row["last_sync_at"]),
            needs_reauth=bool(row["needs_reauth"]),
            created_at=_ensure_utc(row["created_at"]),
            updated_at=_ensure_utc(row["updated_at"]),
        )

    def __repr__(self) -> str:
        return f"TokenStore(pool={self.pool!r})"


async def ensure_integrations_schema(pool: asyncpg.Pool) -> None:
    """Ensure ``calendar_integrations`` exists on the target database."""
    async with acquire_conn(pool) as conn:
        await conn.execute(_INTEGRATIONS_TABLE_DDL)


def _ensure_utc(dt: datetime | None) -> datetime | None:
    """Attach UTC timezone to a naive datetime returned by asyncpg."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def _decode_calendar_ids(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed selected_calendar_ids payload")
            return []
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _rows_affected(result: str | None) -> int:
    # asyncpg returns a status string like "DELETE 1" or "UPDATE 0"
    if not result:
        return 0
    try:
        return int(result.split()[-1])
    except ValueError:
        return 0

