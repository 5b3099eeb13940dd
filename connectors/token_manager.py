"""
Token manager — store / refresh per-user OAuth credentials.

``CredentialStore`` is the persistence contract (one Credential per
user + provider).  ``TokenRefresher`` is the single interface delivery
code uses to get a usable access token: it refreshes expired credentials
and guarantees at most one in-flight refresh per (user_id, provider), so
concurrent destinations sharing a grant never race two refresh calls
against a provider that rotates refresh tokens.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import config
from connectors.base import BaseConnector
from connectors.encryption import TokenCipher, get_cipher
from core.exceptions import CredentialRevoked, NoConnection, ProviderRejected
from database.models import UserCredential
from utils.schemas import Credential, CredentialStatus, Provider

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    """Per-(user, provider) credential persistence."""

    async def get(self, user_id: str, provider: Provider) -> Optional[Credential]: ...

    async def upsert(self, credential: Credential) -> None: ...

    async def mark_revoked(self, user_id: str, provider: Provider, reason: str) -> None: ...

    async def delete(self, user_id: str, provider: Provider) -> bool: ...


# ── SQL-backed store ──────────────────────────────────────────────────────


class SqlCredentialStore:
    """
    Credentials in ``user_credentials``, tokens Fernet-encrypted at rest.

    Each call opens its own session: the store is used from background
    delivery tasks that outlive the request that scheduled them.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        cipher: Optional[TokenCipher] = None,
    ):
        if session_factory is None:
            from database.session import async_session_factory

            session_factory = async_session_factory
        self._session_factory = session_factory
        self._cipher = cipher or get_cipher()

    def _to_schema(self, row: UserCredential) -> Credential:
        return Credential(
            user_id=str(row.user_id),
            provider=Provider(row.provider),
            access_token=self._cipher.decrypt(row.access_token),
            refresh_token=self._cipher.decrypt(row.refresh_token or ""),
            expires_at=row.expires_at,
            status=CredentialStatus(row.status),
            error_message=row.error_message,
            account_label=row.account_label,
        )

    async def get(self, user_id: str, provider: Provider) -> Optional[Credential]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserCredential).where(
                    UserCredential.user_id == uuid.UUID(user_id),
                    UserCredential.provider == Provider(provider).value,
                )
            )
            row = result.scalar_one_or_none()
            return self._to_schema(row) if row else None

    async def upsert(self, credential: Credential) -> None:
        values = {
            "user_id": uuid.UUID(credential.user_id),
            "provider": credential.provider.value,
            "access_token": self._cipher.encrypt(credential.access_token),
            "refresh_token": self._cipher.encrypt(credential.refresh_token),
            "expires_at": credential.expires_at,
            "status": credential.status.value,
            "error_message": credential.error_message,
            "account_label": credential.account_label,
            "last_refreshed": datetime.now(timezone.utc),
        }
        stmt = pg_insert(UserCredential).values(**values)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_user_credentials_user_provider",
            set_={k: stmt.excluded[k] for k in values if k not in ("user_id", "provider")},
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def mark_revoked(self, user_id: str, provider: Provider, reason: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(UserCredential)
                .where(
                    UserCredential.user_id == uuid.UUID(user_id),
                    UserCredential.provider == Provider(provider).value,
                )
                .values(status=CredentialStatus.REVOKED.value, error_message=reason)
            )
            await session.commit()

    async def delete(self, user_id: str, provider: Provider) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(UserCredential).where(
                    UserCredential.user_id == uuid.UUID(user_id),
                    UserCredential.provider == Provider(provider).value,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        """All credentials for a user (no tokens exposed)."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserCredential).where(UserCredential.user_id == uuid.UUID(user_id))
            )
            return [
                {
                    "provider": row.provider,
                    "account_label": row.account_label,
                    "status": row.status,
                    "expires_at": row.expires_at.isoformat() if row.expires_at else None,
                    "connected_at": row.connected_at.isoformat() if row.connected_at else None,
                    "error_message": row.error_message,
                }
                for row in result.scalars().all()
            ]


# ── Refresh coordination ──────────────────────────────────────────────────


class TokenRefresher:
    """
    Hands out fresh credentials, refreshing through the provider's token
    endpoint when needed.

    Parameters
    ----------
    store       : credential persistence
    connectors  : provider slug → connector lookup (``ConnectorRegistry``
                  by default)
    skew_seconds: refresh this long before ``expires_at``
    """

    def __init__(
        self,
        store: CredentialStore,
        connectors: Optional[Mapping[str, BaseConnector]] = None,
        skew_seconds: Optional[int] = None,
    ):
        if connectors is None:
            from connectors.registry import ConnectorRegistry

            connectors = ConnectorRegistry()
        self._store = store
        self._connectors = connectors
        self._skew = config.token_refresh_skew_seconds if skew_seconds is None else skew_seconds
        self._inflight: Dict[Tuple[str, str], asyncio.Future] = {}

    async def acquire(self, user_id: str, provider: Provider) -> Credential:
        """
        Load and freshen the owner's credential.

        Raises ``NoConnection`` when the user never connected the provider.
        """
        credential = await self._store.get(user_id, provider)
        if credential is None:
            raise NoConnection(f"User has not connected {Provider(provider).value}")
        return await self.ensure_fresh(credential)

    async def ensure_fresh(self, credential: Credential, *, force: bool = False) -> Credential:
        """
        Return ``credential`` untouched while it is fresh; otherwise join
        (or start) the single in-flight refresh for its key.

        ``force=True`` is used after the provider rejected the access
        token with a 401 even though it looked fresh.
        """
        if credential.status == CredentialStatus.REVOKED:
            raise CredentialRevoked(
                credential.error_message or "Credential revoked; reconnect your Google account"
            )
        if not force and credential.is_fresh(self._skew):
            return credential

        key = credential.key
        inflight = self._inflight.get(key)
        if inflight is None:
            inflight = asyncio.ensure_future(self._refresh(credential, force))
            self._inflight[key] = inflight
            inflight.add_done_callback(functools.partial(self._forget, key))
        else:
            logger.debug("Joining in-flight %s refresh for user %s", key[1], key[0])
        # Shield so a caller timing out does not cancel the refresh its peers await.
        return await asyncio.shield(inflight)

    def _forget(self, key: Tuple[str, str], future: asyncio.Future) -> None:
        if self._inflight.get(key) is future:
            del self._inflight[key]
        if not future.cancelled():
            future.exception()  # mark retrieved when every waiter went away

    async def _refresh(self, stale: Credential, force: bool) -> Credential:
        latest = await self._store.get(stale.user_id, stale.provider)
        if latest is None:
            raise NoConnection("Credential was disconnected")
        if latest.status == CredentialStatus.REVOKED:
            raise CredentialRevoked(latest.error_message or "Credential revoked")
        if latest.access_token != stale.access_token and latest.is_fresh(self._skew):
            # Another refresh landed between our read and now.
            return latest
        if not force and latest.is_fresh(self._skew):
            return latest

        if not latest.refresh_token:
            reason = "Token expired and no refresh token available"
            await self._store.mark_revoked(latest.user_id, latest.provider, reason)
            raise CredentialRevoked(reason)

        connector = self._connectors.get(latest.provider.value)
        if connector is None:
            raise ProviderRejected(f"No connector configured for {latest.provider.value}")

        try:
            refreshed = await connector.refresh_access_token(latest.refresh_token)
        except CredentialRevoked as exc:
            await self._store.mark_revoked(latest.user_id, latest.provider, str(exc))
            logger.warning(
                "Refresh token revoked for %s/%s: %s", latest.provider.value, latest.user_id, exc
            )
            raise

        fresh = latest.model_copy(
            update={
                "access_token": refreshed["access_token"],
                # Some providers rotate refresh tokens
                "refresh_token": refreshed.get("refresh_token") or latest.refresh_token,
                "expires_at": datetime.now(timezone.utc)
                + timedelta(seconds=refreshed.get("expires_in", 3600)),
                "status": CredentialStatus.ACTIVE,
                "error_message": None,
            }
        )
        await self._store.upsert(fresh)
        logger.info("Refreshed %s token for user %s", latest.provider.value, latest.user_id)
        return fresh


async def store_oauth_grant(
    store: CredentialStore,
    user_id: str,
    provider: Provider,
    token_data: Dict[str, Any],
) -> Credential:
    """
    Persist the tokens from an OAuth consent callback.

    Re-consent reactivates a revoked credential.  Google omits the refresh
    token on repeat consent, so the stored one is kept in that case.
    """
    existing = await store.get(user_id, provider)
    refresh_token = token_data.get("refresh_token") or (existing.refresh_token if existing else "")
    credential = Credential(
        user_id=user_id,
        provider=provider,
        access_token=token_data["access_token"],
        refresh_token=refresh_token or "",
        expires_at=datetime.now(timezone.utc)
        + timedelta(seconds=token_data.get("expires_in", 3600)),
        status=CredentialStatus.ACTIVE,
        account_label=token_data.get("account_label") or (existing.account_label if existing else None),
    )
    await store.upsert(credential)
    logger.info(
        "%s %s credential for user %s",
        "Updated" if existing else "Created",
        Provider(provider).value,
        user_id,
    )
    return credential
