"""
Credential vault — encrypted per-tenant OAuth token storage.

The bundle lives in ``tenants.email_oauth_tokens`` as::

    {
      "provider": "gmail",
      "access_token":  {"kid": ..., "iv": ..., "ciphertext": ...},
      "refresh_token": {"kid": ..., "iv": ..., "ciphertext": ...} | null,
      "token_type": "Bearer",
      "expires_at": "2025-01-01T12:00:00+00:00",
      "scope": "..."
    }

Plaintext tokens never reach the logs; only presence and expiry do.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.constants import STATUS_NOT_STARTED, STATUS_TOKENS_SAVED
from connectors.encryption import TokenCipher
from database.tenants import ensure_tenant_exists, get_tenant, update_tenant
from utils.exceptions import NoTokensFound, TokenPersistFailed
from utils.schemas import RefreshedToken, TokenBundle

logger = logging.getLogger(__name__)


class CredentialVault:
    """get / set encrypted token bundles keyed by tenant id."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], cipher: TokenCipher):
        self._session_factory = session_factory
        self._cipher = cipher

    # ── (de)serialisation ───────────────────────────────────────────────

    def _seal(self, provider: str, bundle: TokenBundle) -> Dict[str, Any]:
        return {
            "provider": provider,
            "access_token": self._cipher.encrypt(bundle.access_token),
            "refresh_token": (
                self._cipher.encrypt(bundle.refresh_token) if bundle.refresh_token else None
            ),
            "token_type": bundle.token_type,
            "expires_at": bundle.expires_at.isoformat(),
            "scope": bundle.scope,
        }

    def _open(self, blob: Dict[str, Any]) -> TokenBundle:
        refresh = blob.get("refresh_token")
        return TokenBundle(
            access_token=self._cipher.decrypt(blob["access_token"]),
            refresh_token=self._cipher.decrypt(refresh) if refresh else None,
            token_type=blob.get("token_type") or "Bearer",
            expires_at=datetime.fromisoformat(blob["expires_at"]),
            scope=blob.get("scope") or "",
        )

    # ── reads ───────────────────────────────────────────────────────────

    async def get_tokens(self, tenant_id: str) -> TokenBundle:
        """Return the decrypted bundle; raises ``NoTokensFound``."""
        _, bundle = await self.get_tokens_with_provider(tenant_id)
        return bundle

    async def get_tokens_with_provider(self, tenant_id: str) -> Tuple[str, TokenBundle]:
        async with self._session_factory() as session:
            tenant = await get_tenant(session, tenant_id)
        if tenant is None or not tenant.email_oauth_tokens or not tenant.email_provider:
            raise NoTokensFound(tenant_id)
        return tenant.email_provider, self._open(tenant.email_oauth_tokens)

    # ── writes ──────────────────────────────────────────────────────────

    async def set_tokens(
        self,
        tenant_id: str,
        provider: str,
        bundle: TokenBundle,
        company_name: Optional[str] = None,
        email_filters: Optional[list[str]] = None,
    ) -> None:
        """
        Upsert the tenant and write the whole bundle in one transaction.

        A previously stored refresh token is kept when ``bundle`` carries
        none and the provider is unchanged.  Switching provider clears the
        engine resources bound to the old one.
        """
        try:
            async with self._session_factory() as session, session.begin():
                await ensure_tenant_exists(session, tenant_id, company_name, email_filters)
                tenant = await get_tenant(session, tenant_id)

                fields: Dict[str, Any] = {"email_provider": provider}
                same_provider = tenant.email_provider == provider
                sealed = self._seal(provider, bundle)
                previous = (tenant.email_oauth_tokens or {}).get("refresh_token")
                if bundle.refresh_token is None and same_provider and previous:
                    # Google only issues a refresh token on first consent
                    sealed["refresh_token"] = previous
                    logger.info("Kept existing refresh token for tenant %s", tenant_id)
                fields["email_oauth_tokens"] = sealed

                if tenant.email_provider and not same_provider:
                    logger.info(
                        "Tenant %s switches provider %s → %s; clearing engine ids",
                        tenant_id, tenant.email_provider, provider,
                    )
                    fields.update(
                        n8n_credential_id=None,
                        n8n_workflow_id=None,
                        provisioning_status=STATUS_NOT_STARTED,
                    )
                if fields.get("provisioning_status", tenant.provisioning_status) == STATUS_NOT_STARTED:
                    fields["provisioning_status"] = STATUS_TOKENS_SAVED

                await update_tenant(session, tenant_id, **fields)
        except SQLAlchemyError as exc:
            logger.error("Token persist failed for tenant %s: %s", tenant_id, type(exc).__name__)
            raise TokenPersistFailed() from exc

        logger.info(
            "Saved %s tokens for tenant %s (refresh_token=%s, expires_at=%s)",
            provider,
            tenant_id,
            "yes" if sealed.get("refresh_token") else "no",
            bundle.expires_at.isoformat(),
        )

    async def update_access_token(self, tenant_id: str, refreshed: RefreshedToken) -> TokenBundle:
        """
        Replace access token, expiry and token type together.

        The refresh token is only replaced when the provider rotated it.
        """
        try:
            async with self._session_factory() as session, session.begin():
                tenant = await get_tenant(session, tenant_id)
                if tenant is None or not tenant.email_oauth_tokens:
                    raise NoTokensFound(tenant_id)
                blob = dict(tenant.email_oauth_tokens)
                blob["access_token"] = self._cipher.encrypt(refreshed.access_token)
                blob["expires_at"] = refreshed.expires_at.isoformat()
                blob["token_type"] = refreshed.token_type or "Bearer"
                previous = blob.get("refresh_token")
                if refreshed.refresh_token:
                    blob["refresh_token"] = self._cipher.encrypt(refreshed.refresh_token)
                elif previous and self._cipher.needs_rotation(previous):
                    # re-seal under the current key while we hold the row
                    blob["refresh_token"] = self._cipher.encrypt(self._cipher.decrypt(previous))
                await update_tenant(session, tenant_id, email_oauth_tokens=blob)
        except SQLAlchemyError as exc:
            logger.error("Refreshed token persist failed for tenant %s: %s", tenant_id, type(exc).__name__)
            raise TokenPersistFailed() from exc

        logger.info(
            "Stored refreshed access token for tenant %s (expires_at=%s)",
            tenant_id,
            refreshed.expires_at.isoformat(),
        )
        return self._open(blob)
